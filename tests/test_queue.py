# tests/test_queue.py
import threading

import pytest

from defairy.services.rebalancing import (
    AlertType,
    QueueStatus,
    RebalanceQueue,
    Urgency,
    analyze,
    render_alert,
    validate_preferences,
)

from conftest import WALLET, make_position


@pytest.fixture
def queue(clock):
    return RebalanceQueue(ttl_seconds=900, display_seconds=300, snooze_seconds=3600, clock=clock)


def prefs(**raw):
    return validate_preferences(WALLET, raw)


def swap_position(pool="SOL/USDC"):
    # 700/300 split, swap worth 100
    return make_position(pool=pool, amount0=7, amount1=300)


def enqueue(queue, position, preferences=None, deviation=0.0):
    preferences = preferences or prefs(rebalanceThresholds={'imbalanceRatio': 0.15})
    return queue.enqueue(position, analyze(position, preferences, deviation), preferences)


def test_entry_is_keyed_by_pool_and_venue(queue):
    entry = enqueue(queue, swap_position())
    assert entry.key == 'SOL/USDC-Orca'
    assert entry.status == QueueStatus.PENDING
    assert queue.get(WALLET, 'SOL/USDC-Orca') is entry
    assert queue.get(WALLET, 'SOL/USDC') is entry
    assert queue.get('someone-else', 'SOL/USDC') is None


def test_small_value_renders_one_click_alert(queue):
    position = make_position(in_range=False, amount0=2.5, amount1=250)  # estimated 50
    entry = enqueue(queue, position, prefs(autoExecuteBelow=100))
    alert = render_alert(entry)

    assert entry.analysis.estimated_value == pytest.approx(50)
    assert alert.type == AlertType.ONE_CLICK_REBALANCE
    assert alert.auto_executable is True
    assert alert.location == 'Orca'
    assert alert.urgency == Urgency.HIGH
    assert alert.to_dict()['requiresConfirmation'] is False


def test_large_value_renders_confirmation_alert(queue):
    position = make_position(in_range=False, amount0=25, amount1=2500)  # estimated 500
    alert = render_alert(enqueue(queue, position, prefs(autoExecuteBelow=100)))
    assert alert.type == AlertType.REBALANCE_NEEDED
    assert alert.auto_executable is False


def test_alert_payload_has_render_fields(queue):
    data = render_alert(enqueue(queue, swap_position())).to_dict()
    for key in ('type', 'urgency', 'reasons', 'estimatedValue', 'actions', 'location', 'pool'):
        assert key in data
    assert data['actions'][0]['type'] == 'swap_rebalance'


def test_non_urgent_alert_leaves_display_after_window(queue, clock):
    enqueue(queue, swap_position())
    assert len(queue.active_alerts(WALLET)) == 1

    clock.advance(300)
    assert queue.active_alerts(WALLET) == []
    assert len(queue) == 1


def test_high_urgency_alert_persists_past_ttl(queue, clock):
    enqueue(queue, make_position(in_range=False))
    clock.advance(901)
    assert len(queue.active_alerts(WALLET)) == 1
    assert queue.purge_expired() == []

    clock.advance(24 * 3600)
    entry = queue.claim(WALLET, 'SOL/USDC')
    assert entry is not None
    assert entry.status == QueueStatus.EXECUTING


def test_high_urgency_alert_leaves_when_dismissed(queue, clock):
    enqueue(queue, make_position(in_range=False))
    clock.advance(5000)
    queue.dismiss(WALLET, 'SOL/USDC')
    assert queue.active_alerts(WALLET) == []
    assert len(queue) == 0


def test_snooze_hides_alert_but_keeps_entry(queue, clock):
    enqueue(queue, make_position(in_range=False))
    entry = queue.snooze(WALLET, 'SOL/USDC')

    assert entry.snoozed_until == clock.now + 3600
    assert queue.active_alerts(WALLET) == []
    assert queue.get(WALLET, 'SOL/USDC') is entry


def test_re_enqueue_keeps_snooze(queue, clock):
    enqueue(queue, make_position(in_range=False))
    queue.snooze(WALLET, 'SOL/USDC', 120)
    clock.advance(60)
    refreshed = enqueue(queue, make_position(in_range=False))

    assert refreshed.enqueued_at == clock.now
    assert refreshed.is_snoozed(clock.now)


def test_dismiss_removes_entry(queue):
    enqueue(queue, swap_position())
    assert queue.dismiss(WALLET, 'SOL/USDC') is not None
    assert queue.get(WALLET, 'SOL/USDC') is None
    assert queue.dismiss(WALLET, 'SOL/USDC') is None


def test_claim_is_exclusive(queue):
    enqueue(queue, swap_position())
    first = queue.claim(WALLET, 'SOL/USDC')
    assert first.status == QueueStatus.EXECUTING
    assert queue.claim(WALLET, 'SOL/USDC') is None

    queue.release(first)
    assert queue.claim(WALLET, 'SOL/USDC') is first


def test_concurrent_claims_hand_entry_to_one_executor(queue):
    enqueue(queue, swap_position())
    barrier = threading.Barrier(8)
    winners = []

    def worker():
        barrier.wait()
        entry = queue.claim(WALLET, 'SOL/USDC')
        if entry is not None:
            winners.append(entry)

    threads = [threading.Thread(target=worker) for _ in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    assert len(winners) == 1


def test_enqueue_does_not_replace_executing_entry(queue):
    enqueue(queue, swap_position())
    claimed = queue.claim(WALLET, 'SOL/USDC')
    again = enqueue(queue, swap_position())
    assert again is claimed
    assert again.status == QueueStatus.EXECUTING


def test_complete_removes_entry(queue):
    enqueue(queue, swap_position())
    entry = queue.claim(WALLET, 'SOL/USDC')
    queue.complete(entry)
    assert entry.status == QueueStatus.DONE
    assert len(queue) == 0


def test_expired_entry_cannot_be_claimed(queue, clock):
    enqueue(queue, swap_position())
    clock.advance(900)
    assert queue.claim(WALLET, 'SOL/USDC') is None
    assert len(queue) == 0


def test_purge_expired_returns_entries(queue, clock):
    enqueue(queue, swap_position("SOL/USDC"))
    clock.advance(500)
    enqueue(queue, swap_position("JUP/SOL"))
    clock.advance(400)

    expired = queue.purge_expired()
    assert [e.key for e in expired] == ['SOL/USDC-Orca']
    assert all(e.status == QueueStatus.EXPIRED for e in expired)
    assert queue.get(WALLET, 'JUP/SOL') is not None


@pytest.mark.parametrize("ref, expected", [
    ('SOL/USDC-Orca', 'SOL/USDC-Orca'),
    ('SOL/USDC', 'SOL/USDC-Orca'),
    ('SOLX/USDC', 'SOLX/USDC-Orca'),
    ('SOL', None),
    ('SOL/USD', None),
    ('', None),
])
def test_pool_reference_matches_pool_id_not_any_prefix(queue, ref, expected):
    enqueue(queue, swap_position("SOLX/USDC"))
    enqueue(queue, swap_position("SOL/USDC"))
    assert queue.resolve_key(WALLET, ref) == expected
