# tests/conftest.py
import pytest

from defairy.services.audit import AuditLog
from defairy.services.rebalancing import (
    Position,
    PreferenceStore,
    RebalanceQueue,
    SecurityConfig,
    SmartRebalancer,
    TokenBalance,
    Venue,
)

WALLET = "7xKXtg2CW87d97TXJSDpbD5jBkheTqA83TZRuJosgAsU"
START = 1_700_000_000.0


class FakeClock:
    def __init__(self, now: float = START):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds


class FakePositionFeed:
    def __init__(self):
        self.positions = {}
        self.error = None
        self.calls = 0

    def get_positions(self, wallet_address):
        self.calls += 1
        if self.error:
            raise self.error
        return list(self.positions.get(wallet_address, []))


class FakePriceHistory:
    def __init__(self, prices=None):
        self.prices = prices or {}
        self.calls = []

    def get_historical_price(self, symbol, hours_back):
        self.calls.append((symbol, hours_back))
        return self.prices.get(symbol, 0.0)


class FakeWallet:
    public_key = WALLET

    def __init__(self, fail_with=None):
        self.fail_with = fail_with
        self.signed = []

    def sign_transaction(self, plan):
        if self.fail_with:
            raise self.fail_with
        self.signed.append(plan)
        return f"sig_{len(self.signed)}"


class FakeWalletAdapter:
    def __init__(self, wallet=None, connected=True):
        self.wallet = wallet or FakeWallet()
        self.connected = connected

    def is_connected(self):
        return self.connected

    def get_connected_wallet(self):
        return self.wallet if self.connected else None


class ScriptedConfirmations:
    """Answers confirmation dialogs and records what was shown."""

    def __init__(self, confirm=True, preview=True):
        self.confirm = confirm
        self.preview = preview
        self.confirm_calls = []
        self.preview_calls = []

    def confirm_rebalance(self, entry):
        self.confirm_calls.append(entry)
        return self.confirm

    def preview_transaction(self, plan, action):
        self.preview_calls.append((plan, action))
        if isinstance(self.preview, list):
            return self.preview.pop(0)
        return self.preview


class RecordingNotifier:
    def __init__(self):
        self.messages = []

    def notify(self, message, severity=None, **kwargs):
        self.messages.append((message, severity, kwargs))

    def texts(self):
        return [m[0] for m in self.messages]


def make_position(
    pool="SOL/USDC",
    venue="Orca",
    in_range=True,
    amount0=5.0,
    price0=100.0,
    amount1=500.0,
    price1=1.0,
    balance=None,
    symbols=("SOL", "USDC"),
):
    token0 = TokenBalance(symbols[0], amount0, price0)
    token1 = TokenBalance(symbols[1], amount1, price1)
    if balance is None:
        balance = token0.value_usd + token1.value_usd
    return Position(
        pool_id=pool,
        venue=Venue.parse(venue),
        in_range=in_range,
        token0=token0,
        token1=token1,
        balance_usd=balance,
        apy_24h=42.0,
        pool_address="HJPjoWUrhoZzkNfRpHuieeFk9WcZWjwy6PBjZ81ngndJ",
        position_address="5Zk1yTXKyzM2h4B2aQ6p4Ph8b2ecX7uwjWhGJ9Wnq2xA",
    )


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def feed():
    return FakePositionFeed()


@pytest.fixture
def price_history():
    return FakePriceHistory()


@pytest.fixture
def wallet_adapter():
    return FakeWalletAdapter()


@pytest.fixture
def confirmations():
    return ScriptedConfirmations()


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def engine(clock, feed, price_history, wallet_adapter, confirmations, notifier):
    config = SecurityConfig()
    rebalancer = SmartRebalancer(
        position_feed=feed,
        price_history=price_history,
        wallet_adapter=wallet_adapter,
        confirmations=confirmations,
        notifier=notifier,
        store=PreferenceStore(limits=config.limits(), clock=clock),
        security_config=config,
        audit=AuditLog(clock=clock),
        queue=RebalanceQueue(clock=clock),
        clock=clock,
    )
    yield rebalancer
    rebalancer.stop()
