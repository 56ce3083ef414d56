# tests/test_prices.py
import pytest
import requests

from defairy.services.prices import CoinGeckoPriceHistory

from conftest import START, FakeClock


class FakeResponse:
    def __init__(self, payload, status=200):
        self.payload = payload
        self.status_code = status

    def raise_for_status(self):
        if self.status_code >= 400:
            raise requests.HTTPError(f"{self.status_code} Error")

    def json(self):
        return self.payload


class FakeSession:
    def __init__(self, response=None, error=None):
        self.response = response
        self.error = error
        self.calls = []

    def get(self, url, params=None, headers=None, timeout=None):
        self.calls.append({'url': url, 'params': params, 'headers': headers, 'timeout': timeout})
        if self.error:
            raise self.error
        return self.response


def chart(*points):
    return FakeResponse({'prices': [[ts * 1000, price] for ts, price in points]})


@pytest.fixture
def clock():
    return FakeClock()


def test_picks_point_closest_to_target_time(clock):
    day_ago = START - 24 * 3600
    session = FakeSession(chart((day_ago - 3600, 90.0), (day_ago + 60, 100.0), (START, 120.0)))
    history = CoinGeckoPriceHistory(api_base='https://cg.test/api/v3/', api_key='demo', session=session, clock=clock)

    assert history.get_historical_price('sol', 24) == 100.0
    call = session.calls[0]
    assert call['url'] == 'https://cg.test/api/v3/coins/solana/market_chart'
    assert call['params'] == {'vs_currency': 'usd', 'days': 1}
    assert call['headers'] == {'x-cg-demo-api-key': 'demo'}
    assert call['timeout'] == 10


def test_results_are_cached_until_ttl(clock):
    session = FakeSession(chart((START - 24 * 3600, 100.0)))
    history = CoinGeckoPriceHistory(api_key='', session=session, cache_ttl=300, clock=clock)

    history.get_historical_price('SOL', 24)
    history.get_historical_price('SOL', 24)
    assert len(session.calls) == 1
    assert session.calls[0]['headers'] == {}

    clock.advance(300)
    history.get_historical_price('SOL', 24)
    assert len(session.calls) == 2


def test_unknown_symbol_returns_zero_without_request(clock):
    session = FakeSession(chart((START, 1.0)))
    history = CoinGeckoPriceHistory(session=session, clock=clock)
    assert history.get_historical_price('NOTACOIN', 24) == 0.0
    assert session.calls == []


@pytest.mark.parametrize("session", [
    FakeSession(error=requests.ConnectionError("down")),
    FakeSession(response=FakeResponse({}, status=429)),
    FakeSession(response=FakeResponse({'prices': []})),
])
def test_failures_return_zero(session, clock):
    history = CoinGeckoPriceHistory(session=session, clock=clock)
    assert history.get_historical_price('SOL', 24) == 0.0


def test_longer_lookback_requests_more_days(clock):
    session = FakeSession(chart((START - 48 * 3600, 80.0)))
    history = CoinGeckoPriceHistory(session=session, clock=clock)
    assert history.get_historical_price('SOL', 48) == 80.0
    assert session.calls[0]['params']['days'] == 2
