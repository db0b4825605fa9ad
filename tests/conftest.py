import pytest
import os
import tempfile
import atexit
from datetime import datetime, timedelta
from decimal import Decimal

# Point the app at a throwaway SQLite file and set the test secret key
# before any project module creates its engine or reads the key
_test_db_file = tempfile.NamedTemporaryFile(delete=False, suffix='.db')
_test_db_file.close()
os.environ["DATABASE_URL"] = f"sqlite:///{_test_db_file.name}"
os.environ["SECRET_KEY"] = "test-secret-key"


def _cleanup_test_db():
    if os.path.exists(_test_db_file.name):
        os.unlink(_test_db_file.name)


atexit.register(_cleanup_test_db)

import jwt  # noqa: E402
from sqlalchemy import create_engine  # noqa: E402
from sqlalchemy.orm import sessionmaker  # noqa: E402

from database.models import Base, Account, Auction, AuctionType, Transaction  # noqa: E402
from auction import AuctionHouse, InlineDispatcher, RetryPolicy  # noqa: E402
from auction.notifications import NotificationSink  # noqa: E402

NOW = datetime(2026, 3, 14, 12, 0, 0)


class RecordingSink(NotificationSink):
    """Keeps every delivered event for assertions."""

    def __init__(self):
        self.events = []

    def send(self, event):
        self.events.append(event)

    def kinds_for(self, account_id):
        return [e.kind for e in self.events if e.account_id == account_id]


@pytest.fixture(scope="function")
def db_engine():
    """Create a test database engine."""
    # Use a unique database file per test to avoid conflicts
    test_db = tempfile.NamedTemporaryFile(delete=False, suffix='.db')
    test_db.close()
    engine = create_engine(f"sqlite:///{test_db.name}", connect_args={"check_same_thread": False})
    Base.metadata.create_all(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)
    engine.dispose()
    os.unlink(test_db.name)


@pytest.fixture(scope="function")
def session_factory(db_engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=db_engine)


@pytest.fixture(scope="function")
def db_session(session_factory):
    """Create a test database session."""
    session = session_factory()
    try:
        yield session
        session.rollback()
    finally:
        session.close()


@pytest.fixture
def sink():
    return RecordingSink()


@pytest.fixture
def no_sleep_policy():
    return RetryPolicy(max_attempts=3, base_delay=0.05, sleep=lambda seconds: None)


@pytest.fixture
def house(sink, no_sleep_policy):
    """Auction house running escalation inline on the caller's session."""
    return AuctionHouse(sink=sink, dispatcher=InlineDispatcher(), retry_policy=no_sleep_policy)


@pytest.fixture
def make_account(db_session, house):
    """Factory: an account funded through the ledger so balances reconcile."""
    counter = {"n": 0}

    def _make(username=None, balance="1000.00", is_admin=False):
        counter["n"] += 1
        account = Account(username=username or f"user{counter['n']}", is_admin=is_admin)
        db_session.add(account)
        db_session.commit()
        db_session.refresh(account)
        if Decimal(balance) > 0:
            house.balance.deposit(db_session, account.id, balance, description="Opening balance")
            db_session.refresh(account)
        return account

    return _make


@pytest.fixture
def admin(make_account):
    return make_account("admin", balance="0", is_admin=True)


@pytest.fixture
def seller(make_account):
    return make_account("seller", balance="0")


@pytest.fixture
def make_auction(db_session, seller):
    """Factory: an open auction. Timed auctions run for a day around NOW."""

    def _make(**overrides):
        values = {
            "seller_id": seller.id,
            "title": "Georgian silver teapot",
            "auction_type": AuctionType.LIVE.value,
            "starting_bid": Decimal("100.00"),
            "reserve_price": Decimal("0.00"),
            "instant_purchase_price": None,
            "bid_increment": Decimal("10.00"),
            "commission": Decimal("10.00"),
        }
        if overrides.get("auction_type") == AuctionType.TIMED.value:
            values["auction_start_date"] = NOW - timedelta(hours=12)
            values["auction_end_date"] = NOW + timedelta(hours=12)
        values.update(overrides)
        auction = Auction(**values)
        db_session.add(auction)
        db_session.commit()
        db_session.refresh(auction)
        return auction

    return _make


@pytest.fixture
def assert_ledger_consistent(db_session, house):
    """Every account balance equals the sum of its completed ledger rows."""

    def _check():
        db_session.expire_all()
        for account in db_session.query(Account).all():
            assert house.balance.reconstruct_balance(db_session, account.id) == Decimal(str(account.balance)).quantize(
                Decimal("0.01")
            ), f"account {account.username} drifted from its ledger"
            for txn in db_session.query(Transaction).filter(Transaction.account_id == account.id).all():
                assert txn.amount > 0

    return _check


def make_token(username):
    payload = {"sub": username, "exp": datetime.utcnow() + timedelta(days=30)}
    return jwt.encode(payload, os.environ["SECRET_KEY"], algorithm="HS256")


@pytest.fixture
def auth_headers_for():
    """Build authorization headers for an account."""

    def _headers(account):
        return {"Authorization": f"Bearer {make_token(account.username)}"}

    return _headers


@pytest.fixture(scope="function")
def client(db_session, house):
    """Create a test client with database and auction house overrides."""
    from fastapi.testclient import TestClient
    from server.api import app, get_auction_house
    from database.session import get_db

    def _get_test_db():
        yield db_session

    app.dependency_overrides.clear()
    app.dependency_overrides[get_db] = _get_test_db
    app.dependency_overrides[get_auction_house] = lambda: house
    yield TestClient(app)
    app.dependency_overrides.clear()
