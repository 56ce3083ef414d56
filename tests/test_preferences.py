# tests/test_preferences.py
import pytest

from defairy.services.rebalancing import (
    InMemoryPreferenceBackend,
    PreferenceStore,
    UserPreferences,
    validate_preferences,
)
from defairy.services.rebalancing.preferences import DAY_SECONDS, WEEK_SECONDS

from conftest import START, WALLET, FakeClock


def test_defaults_fill_omitted_fields():
    prefs = validate_preferences(WALLET, {})
    assert prefs.enable_global_rebalancing is False
    assert prefs.max_rebalance_amount == 1000
    assert prefs.max_daily_transactions == 5
    assert prefs.rebalance_thresholds.imbalance_ratio == 0.25
    assert prefs.rebalance_thresholds.price_deviation == 0.05
    assert prefs.rebalance_thresholds.out_of_range_action == 'alert'
    assert prefs.notification_channels.in_app is True
    assert prefs.notification_channels.email is False
    assert prefs.notification_channels.telegram is False
    assert prefs.auto_execute_below == 100
    assert prefs.require_confirmation_above == 1000


def test_values_are_clamped_not_rejected():
    prefs = validate_preferences(WALLET, {
        'maxRebalanceAmount': 999999,
        'maxDailyTransactions': 500,
        'requireConfirmationAbove': 50000,
        'autoExecuteBelow': 90000,
        'rebalanceThresholds': {'imbalanceRatio': 7, 'priceDeviation': -3, 'outOfRangeAction': 'explode'},
    })
    assert prefs.max_rebalance_amount == 5000
    assert prefs.max_daily_transactions == 10
    assert prefs.require_confirmation_above == 1000
    assert prefs.auto_execute_below == 1000
    assert prefs.rebalance_thresholds.imbalance_ratio == 1.0
    assert prefs.rebalance_thresholds.price_deviation == 0.0
    assert prefs.rebalance_thresholds.out_of_range_action == 'alert'


def test_non_numeric_values_fall_back_to_defaults():
    prefs = validate_preferences(WALLET, {'maxRebalanceAmount': 'lots', 'maxDailyTransactions': None})
    assert prefs.max_rebalance_amount == 1000
    assert prefs.max_daily_transactions == 5


@pytest.mark.parametrize("value", [float('nan'), float('inf'), float('-inf'), '1e999', '-1e999', 'nan'])
def test_non_finite_values_fall_back_to_defaults(value):
    prefs = validate_preferences(WALLET, {
        'maxDailyTransactions': value,
        'maxRebalanceAmount': value,
        'autoExecuteBelow': value,
        'rebalanceThresholds': {'imbalanceRatio': value},
    })
    assert prefs.max_daily_transactions == 5
    assert prefs.max_rebalance_amount == 1000
    assert prefs.auto_execute_below == 100
    assert prefs.rebalance_thresholds.imbalance_ratio == 0.25


def test_in_app_defaults_on():
    def in_app(value):
        return validate_preferences(WALLET, {'notificationChannels': {'inApp': value}}).notification_channels.in_app

    assert in_app(None) is True
    assert in_app(False) is False
    assert in_app('false') is False


@pytest.mark.parametrize("raw, expected", [
    (True, True),
    (False, False),
    ('true', True),
    ('false', False),
    ('FALSE', False),
    ('0', False),
    ('off', False),
    (1, True),
    (0, False),
    ('maybe', False),
    ([], False),
])
def test_flags_parse_strings_and_numbers(raw, expected):
    prefs = validate_preferences(WALLET, {
        'enableGlobalRebalancing': raw,
        'notificationChannels': {'email': raw},
    })
    assert prefs.enable_global_rebalancing is expected
    assert prefs.notification_channels.email is expected


def test_pool_setting_string_false_disables_pool():
    prefs = validate_preferences(WALLET, {'poolSpecificSettings': {
        'SOL/USDC-Orca': {'enabled': 'false'},
        'JUP/SOL-Orca': 'false',
        'BONK/SOL-Raydium': {'enabled': 'garbage'},
    }})
    assert prefs.is_pool_enabled('SOL/USDC-Orca') is False
    assert prefs.is_pool_enabled('JUP/SOL-Orca') is False
    assert prefs.is_pool_enabled('BONK/SOL-Raydium') is True


def test_configure_then_get_round_trip():
    store = PreferenceStore(clock=FakeClock())
    store.configure(WALLET, {'enableGlobalRebalancing': True, 'maxRebalanceAmount': 8000})

    prefs = store.get(WALLET)
    assert prefs.enable_global_rebalancing is True
    assert prefs.max_rebalance_amount == 5000
    assert prefs.max_daily_transactions == 5
    assert prefs.last_transaction_reset == START


def test_get_unknown_wallet_returns_none():
    assert PreferenceStore().get("unknown") is None


def test_configure_twice_is_idempotent():
    backend = InMemoryPreferenceBackend()
    store = PreferenceStore(backend, clock=FakeClock())
    raw = {'enableGlobalRebalancing': True, 'maxRebalanceAmount': 2500, 'poolSpecificSettings': {'SOL/USDC-Orca': {'enabled': False}}}

    store.configure(WALLET, raw)
    first = backend.load(WALLET)
    store.configure(WALLET, raw)
    assert backend.load(WALLET) == first


def test_counters_survive_reconfiguration():
    store = PreferenceStore(clock=FakeClock())
    prefs = store.configure(WALLET, {})
    prefs.record_transaction(250.0, now=START + 10)
    store.save(prefs)

    again = store.configure(WALLET, {'maxDailyTransactions': 3})
    assert again is prefs
    assert again.daily_transaction_count == 1
    assert again.weekly_transaction_amount == 250.0
    assert again.max_daily_transactions == 3


def test_store_reloads_from_backend():
    backend = InMemoryPreferenceBackend()
    store = PreferenceStore(backend, clock=FakeClock())
    prefs = store.configure(WALLET, {'autoExecuteBelow': 50})
    prefs.record_transaction(100.0, now=START)
    store.save(prefs)

    reloaded = PreferenceStore(backend).get(WALLET)
    assert reloaded.auto_execute_below == 50
    assert reloaded.daily_transaction_count == 1
    assert reloaded.weekly_transaction_amount == 100.0


def test_pool_toggle_records_reason():
    store = PreferenceStore()
    store.configure(WALLET, {})
    prefs = store.set_pool_enabled(WALLET, 'SOL/USDC-Orca', False, reason='user')

    assert prefs.is_pool_enabled('SOL/USDC-Orca') is False
    assert prefs.pool_specific_settings['SOL/USDC-Orca'].disabled_reason == 'user'
    assert prefs.is_pool_enabled('BONK/SOL-Raydium') is True

    store.set_pool_enabled(WALLET, 'SOL/USDC-Orca', True)
    assert prefs.pool_specific_settings['SOL/USDC-Orca'].disabled_reason is None


def test_rolling_windows_reset_counters():
    prefs = UserPreferences(wallet_address=WALLET, last_transaction_reset=START, last_weekly_reset=START)
    prefs.record_transaction(100.0, now=START)
    prefs.record_transaction(100.0, now=START + 60)
    assert prefs.daily_transaction_count == 2

    prefs.record_transaction(100.0, now=START + DAY_SECONDS + 1)
    assert prefs.daily_transaction_count == 1
    assert prefs.weekly_transaction_amount == 300.0

    prefs.roll_windows(now=START + WEEK_SECONDS + 1)
    assert prefs.weekly_transaction_amount == 0.0
