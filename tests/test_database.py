# tests/test_database.py
import pytest
import sqlalchemy as sa
from sqlalchemy.pool import StaticPool

from defairy.database import DefairyDB
from defairy.services.rebalancing import PreferenceStore
from defairy.services.rebalancing.preferences import DatabasePreferenceBackend

from conftest import WALLET, FakeClock


@pytest.fixture
def db():
    engine = sa.create_engine("sqlite://", poolclass=StaticPool, connect_args={'check_same_thread': False})
    database = DefairyDB(engine=engine)
    database.create_schema()
    return database


def history_row(signature, timestamp, wallet=WALLET, pool_key='SOL/USDC-Orca'):
    return {
        'signature': signature,
        'action': {'type': 'close_and_reopen_position', 'reason': 'Position out of range'},
        'timestamp': timestamp,
        'pool': pool_key.split('-')[0],
        'poolKey': pool_key,
        'venue': 'Orca',
        'estimatedValue': 100.0,
        'walletAddress': wallet,
    }


def test_preferences_upsert(db):
    assert db.load_preferences(WALLET) is None
    db.save_preferences(WALLET, {'maxRebalanceAmount': 100})
    db.save_preferences(WALLET, {'maxRebalanceAmount': 250})

    assert db.load_preferences(WALLET) == {'maxRebalanceAmount': 250}
    assert db.list_preference_wallets() == [WALLET]


def test_history_is_newest_first_and_filtered(db):
    db.record_rebalance(history_row('sig_a', 100.0))
    db.record_rebalance(history_row('sig_b', 200.0))
    db.record_rebalance(history_row('sig_c', 150.0, wallet='other-wallet'))

    assert [r['signature'] for r in db.get_rebalance_history()] == ['sig_b', 'sig_c', 'sig_a']
    mine = db.get_rebalance_history(WALLET, limit=1)
    assert len(mine) == 1
    assert mine[0]['signature'] == 'sig_b'
    assert mine[0]['action_type'] == 'close_and_reopen_position'
    assert mine[0]['reason'] == 'Position out of range'


def test_store_reloads_preferences_and_counters_from_database(db):
    clock = FakeClock()
    store = PreferenceStore(backend=DatabasePreferenceBackend(db), clock=clock)
    prefs = store.configure(WALLET, {'enableGlobalRebalancing': True, 'maxRebalanceAmount': 750})
    prefs.record_transaction(120.0, clock.now)
    prefs.set_pool_enabled('BONK/SOL-Raydium', False, 'user')
    store.save(prefs)

    reloaded = PreferenceStore(backend=DatabasePreferenceBackend(db), clock=clock).get(WALLET)
    assert reloaded.enable_global_rebalancing is True
    assert reloaded.max_rebalance_amount == 750
    assert reloaded.daily_transaction_count == 1
    assert reloaded.weekly_transaction_amount == pytest.approx(120.0)
    assert reloaded.is_pool_enabled('BONK/SOL-Raydium') is False
    assert reloaded.last_transaction_reset == clock.now


def test_memory_sqlite_engine_is_shared_and_single_connection():
    from defairy.db_engine import get_engine, is_memory_sqlite

    url = "sqlite:///file:defairy_engine_test?mode=memory&uri=true"
    assert is_memory_sqlite(url)
    assert not is_memory_sqlite("sqlite:///defairy.db")

    engine = get_engine(url)
    assert get_engine(url) is engine
    assert isinstance(engine.pool, StaticPool)

    DefairyDB(url=url).create_schema()
    other = DefairyDB(url=url)
    other.save_preferences(WALLET, {'maxRebalanceAmount': 75})
    assert DefairyDB(url=url).load_preferences(WALLET) == {'maxRebalanceAmount': 75}
