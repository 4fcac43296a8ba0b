import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[2]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from reconciler import LootReconciler, diff_loot, loot_total  # noqa: E402


class _Matcher:
    def __init__(self):
        self.loot = {}
        self.fail = False

    def get_current_session(self):
        if self.fail:
            raise RuntimeError("engine busy")
        return {'loot': dict(self.loot)}


def _make(matcher, events):
    return LootReconciler(
        matcher,
        emit=lambda name, payload: events.append((name, payload)),
        summary_fn=lambda: {'loot': dict(matcher.loot)},
        clock=lambda: 1234.0,
    )


def test_first_poll_only_sets_baseline():
    matcher, events = _Matcher(), []
    matcher.loot = {'Ogre Ring': 1}
    rec = _make(matcher, events)
    assert rec.poll() is None
    assert events == []
    assert rec.snapshot == {'Ogre Ring': 1}


def test_increase_emits_loot_and_summary_once():
    matcher, events = _Matcher(), []
    rec = _make(matcher, events)
    rec.poll()
    matcher.loot = {'Ogre Ring': 1}
    payload = rec.poll()
    assert payload == {'items': [{'name': 'Ogre Ring', 'quantity': 1}], 'timestamp': 1234.0,
                       'source': 'template_matching'}
    assert [name for name, _ in events] == ['loot detected', 'session summary update']
    assert events[1][1]['summary'] == {'loot': {'Ogre Ring': 1}}

    # no change in between: nothing the second time
    assert rec.poll() is None
    assert len(events) == 2


def test_pickups_between_polls_are_coalesced():
    matcher, events = _Matcher(), []
    rec = _make(matcher, events)
    matcher.loot = {'Memory Fragment': 1}
    rec.poll()
    matcher.loot = {'Memory Fragment': 3, 'Black Stone (Armor)': 2}
    payload = rec.poll()
    assert payload['items'] == [
        {'name': 'Memory Fragment', 'quantity': 2},
        {'name': 'Black Stone (Armor)', 'quantity': 2},
    ]
    assert rec.updates_emitted == 1
    assert rec.items_surfaced == 4


def test_shrinking_total_rebaselines_without_emitting():
    matcher, events = _Matcher(), []
    rec = _make(matcher, events)
    matcher.loot = {'Ogre Ring': 3}
    rec.poll()
    matcher.loot = {'Ogre Ring': 1}
    assert rec.poll() is None
    assert rec.snapshot == {'Ogre Ring': 1}
    matcher.loot = {'Ogre Ring': 2}
    assert rec.poll()['items'] == [{'name': 'Ogre Ring', 'quantity': 1}]


def test_equal_total_replaces_snapshot_silently():
    matcher, events = _Matcher(), []
    rec = _make(matcher, events)
    matcher.loot = {'A': 1}
    rec.poll()
    matcher.loot = {'B': 1}
    assert rec.poll() is None
    assert events == []
    assert rec.snapshot == {'B': 1}


def test_read_failure_keeps_snapshot():
    matcher, events = _Matcher(), []
    rec = _make(matcher, events)
    matcher.loot = {'A': 1}
    rec.poll()
    matcher.fail = True
    assert rec.poll() is None
    assert rec.snapshot == {'A': 1}
    matcher.fail = False
    matcher.loot = {'A': 2}
    assert rec.poll()['items'] == [{'name': 'A', 'quantity': 1}]


def test_reset_forgets_baseline():
    matcher, events = _Matcher(), []
    rec = _make(matcher, events)
    rec.poll()
    rec.reset()
    matcher.loot = {'A': 5}
    assert rec.poll() is None
    assert events == []


def test_diff_helpers():
    assert loot_total({'a': 2, 'b': '3', 'c': None}) == 5
    assert diff_loot({'a': 2, 'b': 5}, {'a': 4, 'b': 1, 'c': 1}) == [
        {'name': 'a', 'quantity': 2},
        {'name': 'c', 'quantity': 1},
    ]
