# tests/test_positions.py
import pytest
import requests

from defairy.services.rebalancing.positions import HttpPositionFeed, Position, TokenBalance, Venue

from conftest import WALLET, make_position

RECORD = {
    'pool': 'SOL/USDC',
    'location': 'orca',
    'inRange': False,
    'token0': {'symbol': 'SOL', 'amount': 5, 'price': 100},
    'token1': {'symbol': 'USDC', 'amount': 500, 'price': 1},
    'balance': 1000,
    'apy24h': 31.5,
    'address': 'HJPjoWUrhoZzkNfRpHuieeFk9WcZWjwy6PBjZ81ngndJ',
}


@pytest.mark.parametrize("raw, expected", [
    ('Orca', Venue.ORCA),
    ('raydium', Venue.RAYDIUM),
    (' METEORA ', Venue.METEORA),
    ('Lifinity', Venue.UNKNOWN),
    (None, Venue.UNKNOWN),
    (Venue.ORCA, Venue.ORCA),
])
def test_venue_parse(raw, expected):
    assert Venue.parse(raw) == expected


def test_from_dict_parses_dashboard_record():
    position = Position.from_dict(RECORD)
    assert position.pool_key == 'SOL/USDC-Orca'
    assert position.in_range is False
    assert position.token0.value_usd == 500
    assert position.current_price == 100
    assert position.pool_address == RECORD['address']
    assert position.balance_consistent()


def test_from_dict_derives_missing_fields():
    record = {k: v for k, v in RECORD.items() if k not in ('inRange', 'balance')}
    record['status'] = 'Out of Range'
    position = Position.from_dict(record)
    assert position.in_range is False
    assert position.balance_usd == 1000


@pytest.mark.parametrize("record", [
    None,
    {'location': 'Orca'},
    {'pool': 'SOL/USDC', 'token0': {'symbol': 'SOL', 'amount': -1, 'price': 1}},
    {'pool': 'SOL/USDC', 'token0': {'symbol': 'SOL', 'amount': 'lots', 'price': 1}},
    {'pool': 'SOL/USDC', 'balance': -5},
])
def test_from_dict_rejects_malformed_records(record):
    with pytest.raises(ValueError):
        Position.from_dict(record)


def test_negative_token_price_rejected():
    with pytest.raises(ValueError):
        TokenBalance('SOL', 1, -1)


def test_balance_inconsistency_detected():
    assert make_position(balance=1500).balance_consistent() is False


def test_to_dict_round_trip_keys():
    data = make_position().to_dict()
    assert data['poolKey'] == 'SOL/USDC-Orca'
    assert Position.from_dict(data).pool_key == 'SOL/USDC-Orca'


class FakeResponse:
    def __init__(self, payload):
        self.payload = payload

    def raise_for_status(self):
        pass

    def json(self):
        return self.payload


class FakeSession:
    def __init__(self, payload=None, error=None):
        self.payload = payload
        self.error = error
        self.calls = []

    def get(self, url, params=None, timeout=None):
        self.calls.append((url, params, timeout))
        if self.error:
            raise self.error
        return FakeResponse(self.payload)


def test_feed_reads_flat_list():
    session = FakeSession([RECORD, {'bogus': True}])
    feed = HttpPositionFeed(url='http://dash.test/api/positions', session=session)

    positions = feed.get_positions(WALLET)
    assert [p.pool_key for p in positions] == ['SOL/USDC-Orca']
    assert session.calls == [('http://dash.test/api/positions', {'wallet': WALLET}, 15)]


def test_feed_flattens_venue_mapping():
    raydium = dict(RECORD, pool='RAY/SOL', location='Raydium')
    session = FakeSession({'positions': {'orca': [RECORD], 'raydium': [raydium], 'meteora': None}})
    positions = HttpPositionFeed(url='http://dash.test', session=session).get_positions(WALLET)
    assert sorted(p.pool_key for p in positions) == ['RAY/SOL-Raydium', 'SOL/USDC-Orca']


def test_feed_errors_yield_no_positions():
    session = FakeSession(error=requests.Timeout("slow"))
    assert HttpPositionFeed(url='http://dash.test', session=session).get_positions(WALLET) == []
