import asyncio
import inspect
import time
from collections import deque
from concurrent.futures import ThreadPoolExecutor

from config import (
    CAPTURE_INTERVAL_MS,
    MIN_CAPTURE_INTERVAL_MS,
    MAX_CAPTURE_INTERVAL_MS,
    STATE_SYNC_INTERVAL_MS,
    STOP_TIMEOUT_MS,
    STOP_POLL_INTERVAL_MS,
    get_capture_region,
)
from database import save_session_summary
from dedup import Deduplicator
from models import CaptureRegion, QueuedTask
from parsing import events_from_recognition
from reconciler import LootReconciler
from telemetry import SessionStats
from utils import log_debug, log_text

EVENT_STATS_UPDATE = 'stats update'
EVENT_LOOT_DETECTED = 'loot detected'
EVENT_SUMMARY_UPDATE = 'session summary update'
EVENT_SESSION_STOPPED = 'session stopped'


def _parse_location(location):
    """(name, id) from a str, (name, id) pair or {'name', 'id'} mapping."""
    if location is None:
        return None, None
    if isinstance(location, dict):
        return location.get('name'), location.get('id')
    if isinstance(location, (tuple, list)):
        name = location[0] if len(location) > 0 else None
        loc_id = location[1] if len(location) > 1 else None
        return name, loc_id
    return str(location), None


def empty_summary() -> dict:
    return {
        'location': None,
        'duration_ms': 0,
        'loot': {},
        'silver': 0,
        'totalValue': 0,
        'itemCount': 0,
        'debug': {'ocrDetections': 0, 'templateMatches': 0, 'sessionUpdates': 0, 'statsItemCount': 0},
    }


# -----------------------
# Session: Timer → Queue → OCR → Dedup → Matcher, Sync-Timer → Reconciler
# -----------------------
class LootSessionTracker:
    """One grind session at a time on a single asyncio loop.

    The capture timer only enqueues; a single drain task pulls tasks FIFO so
    at most one recognition call is ever in flight. The sync timer diffs the
    matcher's accumulated loot every STATE_SYNC_INTERVAL_MS.
    """

    def __init__(self, recognizer, matcher, clock=None, wall_clock=None, debug=False, persist=True):
        self.recognizer = recognizer
        self.matcher = matcher
        self.debug = bool(debug)
        self.persist = persist
        # monotonic ms for task/dedup timing, wall ms for emitted timestamps
        self.clock = clock or (lambda: time.monotonic() * 1000)
        self.wall_clock = wall_clock or (lambda: time.time() * 1000)

        self.active = False
        self.stopping = False
        self.start_time = None
        self.region = None
        self.cadence_ms = CAPTURE_INTERVAL_MS
        self.location = None
        self.stats = SessionStats()
        self.queue = deque()
        self.processing = False
        self._task_id = 0
        self._generation = 0

        self.deduplicator = Deduplicator(logger=log_debug if self.debug else None)
        self.reconciler = LootReconciler(
            matcher,
            emit=self._emit,
            summary_fn=self.build_summary,
            clock=self.wall_clock,
            debug=self.debug,
        )
        self._listeners = []
        self._capture_task = None
        self._sync_task = None
        self._drain_task = None
        self.executor = None
        self.last_summary = None

    # -----------------------
    # Notifications
    # -----------------------
    def add_listener(self, callback) -> None:
        """callback(event_name, payload) for every emitted notification."""
        self._listeners.append(callback)

    def remove_listener(self, callback) -> None:
        if callback in self._listeners:
            self._listeners.remove(callback)

    def _emit(self, name: str, payload: dict) -> None:
        if name == EVENT_LOOT_DETECTED:
            self.stats.session_updates = self.reconciler.items_surfaced
        for listener in list(self._listeners):
            try:
                listener(name, payload)
            except Exception as exc:
                log_debug(f"[SESSION] Listener error on '{name}': {exc}")

    # -----------------------
    # Lifecycle
    # -----------------------
    async def start(self, region=None, cadence_ms=None, location=None) -> dict:
        if self.active:
            return {'success': False, 'error': 'Session is already running'}
        if self.stopping:
            return {'success': False, 'error': 'Session is stopping'}

        try:
            region = CaptureRegion.from_mapping(region if region is not None else get_capture_region())
        except ValueError as exc:
            return {'success': False, 'error': str(exc)}

        try:
            cadence_ms = CAPTURE_INTERVAL_MS if cadence_ms is None else int(cadence_ms)
        except (TypeError, ValueError):
            return {'success': False, 'error': 'Capture interval must be a number'}
        if not (MIN_CAPTURE_INTERVAL_MS <= cadence_ms <= MAX_CAPTURE_INTERVAL_MS):
            return {
                'success': False,
                'error': f'Capture interval must be between {MIN_CAPTURE_INTERVAL_MS}ms '
                         f'and {MAX_CAPTURE_INTERVAL_MS}ms',
            }

        name, location_id = _parse_location(location)
        if name:
            try:
                result = self.matcher.set_grind_location(name, location_id)
            except Exception as exc:
                result = {'success': False, 'error': str(exc)}
            if not result.get('success'):
                return {'success': False, 'error': result.get('error') or 'Failed to set grind location'}

        try:
            result = self.matcher.start_session()
        except Exception as exc:
            result = {'success': False, 'error': str(exc)}
        if not result.get('success'):
            return {'success': False, 'error': result.get('error') or 'Failed to start loot session'}

        self.region = region
        self.cadence_ms = cadence_ms
        self.location = name
        self.stats = SessionStats(session_start_time=self.wall_clock())
        self.start_time = self.stats.session_start_time
        self.deduplicator.reset()
        self.queue.clear()
        self.processing = False
        # ein haengender Drain der Vorsession wird nicht weiterverwendet
        self._generation += 1
        self._drain_task = None
        self.reconciler.reset()
        self.last_summary = None
        self.active = True

        # erster Sync-Tick: Baseline ohne Emission
        self.reconciler.poll()
        self._capture_task = asyncio.create_task(self._capture_loop(), name="loot-capture")
        self._sync_task = asyncio.create_task(self._sync_loop(), name="loot-sync")

        print(f"▶ Loot session started at {name or 'unknown location'}")
        log_debug(
            f"[SESSION] Started: region={region.as_dict()} cadence={cadence_ms}ms "
            f"sync={STATE_SYNC_INTERVAL_MS}ms location={name} ({location_id})"
        )
        return {'success': True}

    async def stop(self) -> dict:
        if not self.active:
            return {'success': True, 'summary': empty_summary(), 'stats': SessionStats().as_dict()}

        self.active = False
        self.stopping = True
        try:
            for task in (self._capture_task, self._sync_task):
                if task and not task.done():
                    task.cancel()
            self._capture_task = None
            self._sync_task = None

            dropped = len(self.queue)
            self.queue.clear()
            if dropped:
                log_debug(f"[QUEUE] Dropped {dropped} pending tasks on stop")

            waited = 0
            while self.processing and waited < STOP_TIMEOUT_MS:
                await asyncio.sleep(STOP_POLL_INTERVAL_MS / 1000)
                waited += STOP_POLL_INTERVAL_MS
            if self.processing:
                log_debug(f"[SESSION] In-flight recognition abandoned after {STOP_TIMEOUT_MS}ms")

            # letzte Änderungen seit dem letzten Sync-Tick melden
            self.reconciler.poll()

            try:
                self.matcher.end_session()
            except Exception as exc:
                log_debug(f"[SESSION] Matcher end_session failed: {exc}")
            summary = self.build_summary()
            stats = self.get_stats()
            self.last_summary = summary

            self._emit(EVENT_SESSION_STOPPED, {'summary': summary, 'stats': stats})
            if self.persist:
                save_session_summary(summary, stats, started_at_ms=self.start_time, ended_at_ms=self.wall_clock())

            print(
                f"⏹ Loot session stopped: {summary['itemCount']} items, "
                f"{self.stats.successful_captures}/{self.stats.captures_performed} successful captures"
            )
            return {'success': True, 'summary': summary, 'stats': stats}
        finally:
            self.stopping = False

    def close(self) -> None:
        if self.executor is not None:
            self.executor.shutdown(wait=False)
            self.executor = None

    # -----------------------
    # Timers
    # -----------------------
    async def _capture_loop(self) -> None:
        while self.active:
            await asyncio.sleep(self.cadence_ms / 1000)
            if not self.active:
                break
            self._tick()

    async def _sync_loop(self) -> None:
        while self.active:
            await asyncio.sleep(STATE_SYNC_INTERVAL_MS / 1000)
            if not self.active:
                break
            self.reconciler.poll()

    def _tick(self) -> None:
        if not self.active:
            return
        self.stats.captures_performed += 1
        self._task_id += 1
        self.queue.append(QueuedTask(region=self.region, enqueue_time=self.clock(), task_id=self._task_id))
        if self._drain_task is None or self._drain_task.done():
            self._drain_task = asyncio.create_task(self._drain_queue(self._generation), name="loot-drain")

    def update_capture_interval(self, interval_ms) -> dict:
        try:
            interval_ms = int(interval_ms)
        except (TypeError, ValueError):
            return {'success': False, 'error': 'Capture interval must be a number'}
        if interval_ms < MIN_CAPTURE_INTERVAL_MS or interval_ms > MAX_CAPTURE_INTERVAL_MS:
            return {
                'success': False,
                'error': f'Capture interval must be between {MIN_CAPTURE_INTERVAL_MS}ms (60 FPS) '
                         f'and {MAX_CAPTURE_INTERVAL_MS}ms',
            }
        self.cadence_ms = interval_ms
        if self.active and self._capture_task is not None:
            self._capture_task.cancel()
            self._capture_task = asyncio.create_task(self._capture_loop(), name="loot-capture")
        log_debug(f"[SESSION] Capture interval set to {interval_ms}ms")
        return {'success': True}

    # -----------------------
    # Queue / Drain
    # -----------------------
    async def drain(self) -> None:
        """Wait for the current drain pass (if any) to finish."""
        task = self._drain_task
        if task is not None and not task.done():
            await task

    def _is_current(self, generation: int) -> bool:
        return self.active and generation == self._generation

    async def _drain_queue(self, generation: int) -> None:
        if not self._is_current(generation):
            return
        self.processing = True
        try:
            while self.queue and self._is_current(generation):
                task = self.queue.popleft()
                await self._process_task(task, generation)
        finally:
            if generation == self._generation:
                self.processing = False

    async def _recognize(self, region) -> dict:
        recognize = self.recognizer.recognize
        if inspect.iscoroutinefunction(recognize):
            return await recognize(region)
        if self.executor is None:
            self.executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="loot-ocr")
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(self.executor, recognize, region)

    async def _process_task(self, task: QueuedTask, generation: int) -> None:
        started = time.perf_counter()
        try:
            try:
                response = await self._recognize(task.region)
            except Exception as exc:
                if self._is_current(generation):
                    self.stats.failed_captures += 1
                log_debug(f"[QUEUE] Recognition failed for task {task.task_id}: {exc}")
                return

            if not self._is_current(generation):
                if self.debug:
                    log_debug(f"[QUEUE] Discarding late result of task {task.task_id}")
                return

            if not response or not response.get('success'):
                self.stats.failed_captures += 1
                log_debug(f"[QUEUE] Task {task.task_id} failed: {(response or {}).get('error', 'no response')}")
                return

            self.stats.successful_captures += 1
            self.stats.last_capture_time = task.enqueue_time

            events = events_from_recognition(response, task.enqueue_time)
            self.stats.ocr_detections += len(events)
            if not events:
                return

            accepted = self.deduplicator.filter(events, now=task.enqueue_time)
            if not accepted:
                return
            self.stats.items_detected += len(accepted)

            elapsed_ms = (time.perf_counter() - started) * 1000
            for event in accepted:
                log_text(
                    f"[TASK {task.task_id}] {event.text} "
                    f"(confidence: {event.confidence:.2f}, processing: {elapsed_ms:.0f}ms)"
                )

            try:
                result = self.matcher.process_ocr_results([e.as_engine_payload() for e in accepted])
            except Exception as exc:
                result = {'success': False, 'error': str(exc)}
            if result.get('success'):
                self.stats.template_matches += int(result.get('itemsFound') or 0)
            else:
                log_debug(f"[MATCH] Task {task.task_id}: {result.get('error')}")
        finally:
            # Ergebnisse einer beendeten Session zaehlen nicht mehr
            if self._is_current(generation):
                self.stats.record_processing_time((time.perf_counter() - started) * 1000)
                self._emit(EVENT_STATS_UPDATE, {
                    'stats': self.stats.as_dict(),
                    'taskId': task.task_id,
                    'timestamp': self.wall_clock(),
                })

    # -----------------------
    # Queries
    # -----------------------
    def is_active(self) -> bool:
        return self.active

    def get_stats(self) -> dict:
        return self.stats.as_dict()

    def build_summary(self) -> dict:
        try:
            summary = dict(self.matcher.get_session_summary())
        except Exception as exc:
            log_debug(f"[SESSION] Summary read failed: {exc}")
            summary = empty_summary()
            summary['location'] = self.location
        self.stats.session_updates = self.reconciler.items_surfaced
        summary['debug'] = self.stats.debug_counters(stats_item_count=self.stats.items_detected)
        return summary

    def get_status(self) -> dict:
        return {
            'isActive': self.active,
            'isStopping': self.stopping,
            'stats': self.get_stats(),
            'config': self.get_config(),
            'queueLength': len(self.queue),
            'processing': self.processing,
        }

    def get_config(self):
        if self.region is None:
            return None
        return {
            'captureInterval': self.cadence_ms,
            'ocrRegion': self.region.as_dict(),
            'location': self.location,
        }

    def get_current_session(self) -> dict:
        try:
            current = self.matcher.get_current_session()
        except Exception as exc:
            log_debug(f"[SESSION] Current session read failed: {exc}")
            current = None
        return {
            'isActive': self.active,
            'config': self.get_config(),
            'stats': self.get_stats(),
            'loot': (current or {}).get('loot', {}),
        }

    async def preview_capture(self, region=None) -> dict:
        """One recognition call on a region: no dedup, no matching, no counters."""
        try:
            region = CaptureRegion.from_mapping(region if region is not None else get_capture_region())
        except ValueError as exc:
            return {'success': False, 'error': str(exc)}
        try:
            response = await self._recognize(region)
        except Exception as exc:
            return {'success': False, 'error': str(exc)}
        if not response or not response.get('success'):
            return {'success': False, 'error': (response or {}).get('error', 'Recognition failed')}
        return {
            'success': True,
            'region': region.as_dict(),
            'ocrResults': list(response.get('items') or []),
        }
