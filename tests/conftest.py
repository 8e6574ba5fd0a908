import pytest
import os
import tempfile
from datetime import datetime, timedelta
from decimal import Decimal
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
import jwt

# Set test secret key before any server imports
os.environ["SECRET_KEY"] = "test-secret-key"
os.environ.pop("NOTIFY_WEBHOOK_URL", None)

from database.models import Base, Auction, AuctionStatus, AuctionType, AuctionWatcher
from server.notifier import Notifier
from server.wallet import WalletLedger


class RecordingNotifier(Notifier):
    """Collects delivered events as (user_id, event_type, payload) tuples."""

    def __init__(self):
        self.events = []

    def _deliver(self, user_id, event_type, payload):
        self.events.append((user_id, event_type.value, payload))

    def recipients(self, event_type: str):
        return sorted(user_id for user_id, kind, _ in self.events if kind == event_type)


@pytest.fixture(scope="function")
def db_engine():
    """Create a test database engine backed by a unique SQLite file."""
    test_db = tempfile.NamedTemporaryFile(delete=False, suffix='.db')
    test_db.close()
    test_db_url = f"sqlite:///{test_db.name}"

    engine = create_engine(test_db_url, connect_args={"check_same_thread": False, "timeout": 30})
    Base.metadata.create_all(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)
    engine.dispose()
    try:
        os.unlink(test_db.name)
    except OSError:
        pass


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


@pytest.fixture(scope="function")
def override_get_db(db_engine, db_session):
    """Override get_db dependency for FastAPI tests."""
    from server.api import app
    from database.session import get_db

    def _get_test_db():
        try:
            yield db_session
        finally:
            pass

    app.dependency_overrides.clear()
    app.dependency_overrides[get_db] = _get_test_db
    yield
    app.dependency_overrides.clear()


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def make_auction(db_session):
    """Factory for auctions inserted directly in a given state (active time_based by default)."""

    def _make(**overrides):
        now = datetime.utcnow()
        values = dict(
            seller_id="seller",
            product_ref="product-1",
            title="Test Item",
            auction_type=AuctionType.TIME_BASED.value,
            starting_price=Decimal("45.00"),
            current_price=Decimal("45.00"),
            min_bid_increment=Decimal("5.00"),
            start_time=now - timedelta(hours=1),
            end_time=now + timedelta(hours=1),
            auto_extend_minutes=5,
            status=AuctionStatus.ACTIVE.value,
        )
        values.update(overrides)
        auction = Auction(**values)
        db_session.add(auction)
        db_session.commit()
        db_session.refresh(auction)
        return auction

    return _make


@pytest.fixture
def sample_auction(make_auction):
    return make_auction()


@pytest.fixture
def fund(db_session):
    """Credit a user's wallet: fund("alice", "500")."""
    wallet = WalletLedger()
    counter = {"n": 0}

    def _fund(user_id: str, amount):
        counter["n"] += 1
        wallet.credit(db_session, user_id, Decimal(str(amount)), idempotency_key=f"test-fund:{user_id}:{counter['n']}")
        db_session.commit()

    return _fund


@pytest.fixture
def watch(db_session):
    def _watch(auction_id: int, user_id: str):
        db_session.add(AuctionWatcher(auction_id=auction_id, user_id=user_id))
        db_session.commit()

    return _watch


def make_token(user_id: str) -> str:
    secret_key = os.getenv("SECRET_KEY", "test-secret-key")
    payload = {"sub": user_id, "exp": datetime.utcnow() + timedelta(days=30)}
    return jwt.encode(payload, secret_key, algorithm="HS256")


@pytest.fixture
def auth_token():
    """Generate a test JWT token."""
    return make_token("testuser")


@pytest.fixture
def auth_headers(auth_token):
    """Get authorization headers."""
    return {"Authorization": f"Bearer {auth_token}"}


@pytest.fixture
def headers_for():
    """Authorization headers for an arbitrary user: headers_for("alice")."""

    def _headers(user_id: str):
        return {"Authorization": f"Bearer {make_token(user_id)}"}

    return _headers


@pytest.fixture
def client(override_get_db):
    """Create a test client with database override."""
    from fastapi.testclient import TestClient
    from server.api import app
    return TestClient(app)
