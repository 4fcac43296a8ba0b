import asyncio
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[2]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

import tracker as tracker_module  # noqa: E402
from database import fetch_recent_sessions  # noqa: E402
from loot_matcher import LootMatcher  # noqa: E402
from tracker import LootSessionTracker  # noqa: E402

ITEMS = ["Ogre Ring", "Memory Fragment", "Black Stone (Armor)"]
REGION = {'x': 0, 'y': 0, 'width': 100, 'height': 100}
LOCATION = ('Bloody Monastery', 2)
OGRE_RING = {
    'originalText': 'Ogre Ring x 1',
    'confidence': 0.9,
    'bbox': [[12, 40], [110, 40], [110, 58], [12, 58]],
}


class _Recognizer:
    """Scripted recognition engine; empty frames once the script runs out."""

    def __init__(self, script=None, gate=None):
        self.script = list(script or [])
        self.gate = gate
        self.calls = 0

    async def recognize(self, region):
        self.calls += 1
        if self.gate is not None:
            await self.gate.wait()
        step = self.script.pop(0) if self.script else {'success': True, 'items': []}
        if isinstance(step, Exception):
            raise step
        return step


class _RecordingMatcher(LootMatcher):
    def __init__(self):
        super().__init__(loot_table_loader=lambda location_id: ITEMS)
        self.received = []

    def process_ocr_results(self, ocr_results):
        self.received.extend(ocr_results)
        return super().process_ocr_results(ocr_results)


def _tracker(recognizer, matcher=None, clock=None, persist=False):
    matcher = matcher or _RecordingMatcher()
    t = LootSessionTracker(recognizer, matcher, clock=clock, persist=persist)
    events = []
    t.add_listener(lambda name, payload: events.append((name, payload)))
    return t, matcher, events


def _frame(*items):
    return {'success': True, 'items': list(items)}


def test_end_to_end_repeated_pickup_is_reported_once():
    now = {'t': 0.0}
    recognizer = _Recognizer([_frame(OGRE_RING), _frame(OGRE_RING)])
    t, matcher, events = _tracker(recognizer, clock=lambda: now['t'])

    async def scenario():
        assert (await t.start(REGION, cadence_ms=50, location=LOCATION))['success']
        now['t'] = 1000.0
        t._tick()
        await t.drain()
        now['t'] = 2000.0
        t._tick()
        await t.drain()
        t.reconciler.poll()
        return await t.stop()

    result = asyncio.run(scenario())

    assert [p['text'] for p in matcher.received] == ['Ogre Ring x 1']
    loot_events = [p for name, p in events if name == 'loot detected']
    assert len(loot_events) == 1
    assert loot_events[0]['items'] == [{'name': 'Ogre Ring', 'quantity': 1}]
    assert loot_events[0]['source'] == 'template_matching'

    summary = result['summary']
    assert summary['loot'] == {'Ogre Ring': 1}
    assert summary['itemCount'] == 1
    assert summary['debug']['ocrDetections'] >= 2
    assert summary['debug']['templateMatches'] == 1
    assert summary['debug']['sessionUpdates'] == 1
    assert summary['debug']['statsItemCount'] == 1
    assert events[-1][0] == 'session stopped'


def test_start_while_active_fails_without_resetting_counters():
    t, _, _ = _tracker(_Recognizer())

    async def scenario():
        await t.start(REGION, cadence_ms=5000, location=LOCATION)
        t._tick()
        await t.drain()
        before = t.get_stats()
        again = await t.start(REGION, cadence_ms=5000, location=LOCATION)
        after = t.get_stats()
        await t.stop()
        return before, again, after

    before, again, after = asyncio.run(scenario())
    assert again == {'success': False, 'error': 'Session is already running'}
    assert before['capturesPerformed'] == 1
    assert after == before


def test_stop_clears_pending_queue(monkeypatch):
    monkeypatch.setattr(tracker_module, "STOP_POLL_INTERVAL_MS", 10)

    async def scenario():
        gate = asyncio.Event()
        t, _, _ = _tracker(_Recognizer([_frame(OGRE_RING)], gate=gate))
        await t.start(REGION, cadence_ms=5000, location=LOCATION)
        for _ in range(4):
            t._tick()
        await asyncio.sleep(0)
        assert t.processing is True
        assert len(t.queue) == 3
        asyncio.get_running_loop().call_later(0.05, gate.set)
        result = await t.stop()
        return t, result

    t, result = asyncio.run(scenario())
    assert result['success'] is True
    assert len(t.queue) == 0
    assert t.processing is False
    # late result of the in-flight task is discarded
    assert t.stats.successful_captures == 0
    assert result['summary']['loot'] == {}


def test_stop_abandons_hung_recognition_after_timeout(monkeypatch):
    monkeypatch.setattr(tracker_module, "STOP_POLL_INTERVAL_MS", 10)
    monkeypatch.setattr(tracker_module, "STOP_TIMEOUT_MS", 30)

    async def scenario():
        t, _, _ = _tracker(_Recognizer(gate=asyncio.Event()))
        await t.start(REGION, cadence_ms=5000, location=LOCATION)
        t._tick()
        await asyncio.sleep(0)
        result = await t.stop()
        return t, result

    t, result = asyncio.run(scenario())
    assert result['success'] is True
    assert t.is_active() is False
    assert len(t.queue) == 0


def test_stop_while_idle_returns_zero_summary():
    t, _, events = _tracker(_Recognizer())
    result = asyncio.run(t.stop())
    assert result['success'] is True
    assert result['summary']['itemCount'] == 0
    assert result['summary']['loot'] == {}
    assert result['stats']['capturesPerformed'] == 0
    assert events == []


def test_failed_recognitions_are_counted_and_skipped():
    script = [{'success': False, 'error': 'Screenshot error: no display'}, RuntimeError("engine crashed"),
              _frame(OGRE_RING)]
    now = {'t': 0.0}
    t, matcher, events = _tracker(_Recognizer(script), clock=lambda: now['t'])

    async def scenario():
        await t.start(REGION, cadence_ms=5000, location=LOCATION)
        for i in range(3):
            now['t'] = 100.0 * (i + 1)
            t._tick()
        await t.drain()
        stats = t.get_stats()
        await t.stop()
        return stats

    stats = asyncio.run(scenario())
    assert stats['capturesPerformed'] == 3
    assert stats['failedCaptures'] == 2
    assert stats['successfulCaptures'] == 1
    assert stats['itemsDetected'] == 1
    assert stats['lastCaptureTime'] == 300.0
    assert t.stats.sample_count == 3
    assert len([name for name, _ in events if name == 'stats update']) == 3


def test_tasks_are_processed_in_enqueue_order():
    t, _, _ = _tracker(_Recognizer())

    async def scenario():
        await t.start(REGION, cadence_ms=5000, location=LOCATION)
        ids = []
        original = t._process_task

        async def _spy(task, generation):
            ids.append(task.task_id)
            await original(task, generation)

        t._process_task = _spy
        for _ in range(5):
            t._tick()
        await t.drain()
        await t.stop()
        return ids

    ids = asyncio.run(scenario())
    assert ids == sorted(ids)
    assert len(ids) == 5


def test_start_rejects_bad_input():
    t, _, _ = _tracker(_Recognizer())

    async def scenario():
        bad_region = await t.start({'x': 0, 'y': 0, 'width': 0, 'height': 10}, location=LOCATION)
        bad_interval = await t.start(REGION, cadence_ms=5, location=LOCATION)
        no_location = await t.start(REGION, cadence_ms=5000)
        return bad_region, bad_interval, no_location

    bad_region, bad_interval, no_location = asyncio.run(scenario())
    assert bad_region['success'] is False
    assert 'Width and height must be positive' in bad_region['error']
    assert bad_interval['success'] is False
    assert no_location == {'success': False, 'error': 'No grind location set'}
    assert t.is_active() is False


def test_update_capture_interval_restarts_timer():
    t, _, _ = _tracker(_Recognizer())

    async def scenario():
        assert t.update_capture_interval(5)['success'] is False
        assert t.update_capture_interval('fast')['success'] is False
        await t.start(REGION, cadence_ms=5000, location=LOCATION)
        t._tick()
        await t.drain()
        old_task = t._capture_task
        result = t.update_capture_interval(1000)
        new_task = t._capture_task
        await asyncio.sleep(0)
        stats = t.get_stats()
        await t.stop()
        return result, old_task, new_task, stats

    result, old_task, new_task, stats = asyncio.run(scenario())
    assert result == {'success': True}
    assert t.cadence_ms == 1000
    assert old_task is not new_task
    assert old_task.cancelled()
    assert stats['capturesPerformed'] == 1


def test_preview_capture_does_not_touch_session():
    t, matcher, _ = _tracker(_Recognizer([_frame(OGRE_RING)]))
    result = asyncio.run(t.preview_capture(REGION))
    assert result['success'] is True
    assert result['region'] == REGION
    assert result['ocrResults'][0]['originalText'] == 'Ogre Ring x 1'
    assert t.get_stats()['capturesPerformed'] == 0
    assert matcher.received == []

    bad = asyncio.run(t.preview_capture({'x': 0, 'y': 0, 'width': -0.1, 'height': 5}))
    assert bad['success'] is False


def test_sync_recognizer_runs_in_executor():
    class _SyncRecognizer:
        def recognize(self, region):
            return _frame(OGRE_RING)

    t, matcher, _ = _tracker(_SyncRecognizer())

    async def scenario():
        await t.start(REGION, cadence_ms=5000, location=LOCATION)
        t._tick()
        await t.drain()
        return await t.stop()

    try:
        result = asyncio.run(scenario())
    finally:
        t.close()
    assert result['summary']['loot'] == {'Ogre Ring': 1}
    assert t.executor is None


def test_listener_errors_do_not_break_processing():
    t, _, _ = _tracker(_Recognizer([_frame(OGRE_RING)]))

    def _broken(name, payload):
        raise ValueError("ui gone")

    t.add_listener(_broken)

    async def scenario():
        await t.start(REGION, cadence_ms=5000, location=LOCATION)
        t._tick()
        await t.drain()
        return await t.stop()

    result = asyncio.run(scenario())
    assert result['summary']['itemCount'] == 1


def test_stop_persists_session_summary():
    t, _, _ = _tracker(_Recognizer([_frame(OGRE_RING)]), persist=True)

    async def scenario():
        await t.start(REGION, cadence_ms=5000, location=LOCATION)
        t._tick()
        await t.drain()
        await t.stop()

    asyncio.run(scenario())
    sessions = fetch_recent_sessions()
    assert len(sessions) == 1
    assert sessions[0]['location'] == 'Bloody Monastery'
    assert sessions[0]['loot'] == {'Ogre Ring': 1}
    assert sessions[0]['itemCount'] == 1


def test_start_is_rejected_while_stop_is_draining(monkeypatch):
    monkeypatch.setattr(tracker_module, "STOP_POLL_INTERVAL_MS", 10)

    async def scenario():
        gate = asyncio.Event()
        t, matcher, _ = _tracker(_Recognizer([_frame(), _frame(OGRE_RING)], gate=gate))
        await t.start(REGION, cadence_ms=5000, location=LOCATION)
        t._tick()
        await asyncio.sleep(0)
        stop_task = asyncio.create_task(t.stop())
        await asyncio.sleep(0.02)

        status = t.get_status()
        during = await t.start(REGION, cadence_ms=5000, location=LOCATION)
        gate.set()
        await stop_task

        again = await t.start(REGION, cadence_ms=5000, location=LOCATION)
        t._tick()
        await t.drain()
        result = await t.stop()
        return t, status, during, again, result

    t, status, during, again, result = asyncio.run(scenario())
    assert status['isActive'] is False
    assert status['isStopping'] is True
    assert during == {'success': False, 'error': 'Session is stopping'}
    assert again == {'success': True}
    assert t.stopping is False
    assert result['summary']['loot'] == {'Ogre Ring': 1}


def test_late_result_of_abandoned_session_does_not_touch_new_stats(monkeypatch):
    monkeypatch.setattr(tracker_module, "STOP_POLL_INTERVAL_MS", 10)
    monkeypatch.setattr(tracker_module, "STOP_TIMEOUT_MS", 30)

    async def scenario():
        gate = asyncio.Event()
        t, _, events = _tracker(_Recognizer([RuntimeError("engine crashed late")], gate=gate))
        await t.start(REGION, cadence_ms=5000, location=LOCATION)
        t._tick()
        await asyncio.sleep(0)
        await t.stop()

        assert (await t.start(REGION, cadence_ms=5000, location=LOCATION))['success']
        events.clear()
        gate.set()
        await asyncio.sleep(0.02)
        stats = t.get_stats()
        samples = t.stats.sample_count
        processing = t.processing
        await t.stop()
        return stats, samples, processing, events

    stats, samples, processing, events = asyncio.run(scenario())
    assert stats['failedCaptures'] == 0
    assert stats['capturesPerformed'] == 0
    assert samples == 0
    assert processing is False
    assert [name for name, _ in events if name == 'stats update'] == []


def test_timers_capture_and_sync_on_their_own(monkeypatch):
    monkeypatch.setattr(tracker_module, "STATE_SYNC_INTERVAL_MS", 50)
    memory_fragment = {
        'originalText': 'Memory Fragment x 2',
        'confidence': 0.88,
        'bbox': [[12, 60], [150, 60], [150, 78], [12, 78]],
    }
    t, _, events = _tracker(_Recognizer([_frame(OGRE_RING, memory_fragment)]))

    async def scenario():
        await t.start(REGION, cadence_ms=16, location=LOCATION)
        await asyncio.sleep(0.3)
        stats = t.get_stats()
        loot_events = [p for name, p in events if name == 'loot detected']
        await t.stop()
        return stats, loot_events

    stats, loot_events = asyncio.run(scenario())
    assert stats['capturesPerformed'] > 0
    assert len(loot_events) == 1
    assert loot_events[0]['items'] == [
        {'name': 'Ogre Ring', 'quantity': 1},
        {'name': 'Memory Fragment', 'quantity': 2},
    ]


def test_removed_listener_gets_no_more_notifications():
    t, _, events = _tracker(_Recognizer([_frame(OGRE_RING)]))
    seen = []

    def _listener(name, payload):
        seen.append(name)

    t.add_listener(_listener)

    async def scenario():
        await t.start(REGION, cadence_ms=5000, location=LOCATION)
        t._tick()
        await t.drain()
        t.remove_listener(_listener)
        t.remove_listener(_listener)
        await t.stop()

    asyncio.run(scenario())
    assert seen == ['stats update']
    assert events[-1][0] == 'session stopped'
