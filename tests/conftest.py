import pytest
import os
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

# Set env before importing app components
os.environ["APP_ENV"] = "testing"
os.environ["DATABASE_URL"] = "sqlite:///:memory:"

from leaveflow.database import Base, enable_sqlite_savepoints, get_db
from leaveflow.main import app
from fastapi.testclient import TestClient

# SQLite in-memory database configuration
SQLALCHEMY_DATABASE_URL = "sqlite:///:memory:"

engine = enable_sqlite_savepoints(create_engine(
    SQLALCHEMY_DATABASE_URL,
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
))
# Service commits/rollbacks act on a savepoint; the test's outer transaction survives them
TestingSessionLocal = sessionmaker(
    autocommit=False, autoflush=False, bind=engine, join_transaction_mode="create_savepoint"
)


@pytest.fixture(scope="session", autouse=True)
def setup_database():
    """Create tables once for the whole test session."""
    Base.metadata.create_all(bind=engine)
    yield
    Base.metadata.drop_all(bind=engine)


@pytest.fixture(scope="function")
def db_session():
    """Get a clean database session for each test function with rollback safety."""
    connection = engine.connect()
    transaction = connection.begin()
    session = TestingSessionLocal(bind=connection)

    yield session

    session.close()
    transaction.rollback()
    connection.close()


@pytest.fixture(scope="function")
def client(db_session):
    """Get a TestClient that uses the test database session via dependency override."""
    def override_get_db():
        try:
            yield db_session
        finally:
            pass

    app.dependency_overrides[get_db] = override_get_db
    with TestClient(app) as c:
        yield c
    app.dependency_overrides.clear()


# --- Actors and tokens ---

@pytest.fixture
def employee():
    from leaveflow.schemas.auth import Actor, Role
    return Actor(staff_id="S1", role=Role.EMPLOYEE, name="Ama Mensah")


@pytest.fixture
def manager():
    from leaveflow.schemas.auth import Actor, Role
    return Actor(staff_id="M1", role=Role.MANAGER, name="Kofi Boateng")


@pytest.fixture
def hr():
    from leaveflow.schemas.auth import Actor, Role
    return Actor(staff_id="H1", role=Role.HR, name="Efua Owusu")


@pytest.fixture
def admin():
    from leaveflow.schemas.auth import Actor, Role
    return Actor(staff_id="A1", role=Role.ADMIN, name="System Admin")


@pytest.fixture(scope="function")
def get_token():
    """Helper fixture to create access tokens for an actor."""
    from leaveflow.core.security import create_access_token

    def _get_token(actor):
        return create_access_token(data={
            "sub": actor.staff_id,
            "role": actor.role.value,
            "name": actor.name,
            "type": "access"
        })
    return _get_token


@pytest.fixture
def auth_headers(get_token):
    def _headers(actor):
        return {"Authorization": f"Bearer {get_token(actor)}"}
    return _headers


# --- Domain fixtures ---

@pytest.fixture
def make_policy(db_session):
    """Insert an active policy directly (bypasses administrative validation)."""
    from leaveflow.models.leave_policy import LeavePolicy

    def _make(leave_type="Annual", **overrides):
        values = dict(
            leave_type=leave_type,
            max_days=30,
            accrual_rate=0.0,
            accrual_frequency="monthly",
            carryover_allowed=False,
            max_carryover=0.0,
            expires_after_months=None,
            requires_approval=True,
            approval_levels=1,
            active=True,
        )
        values.update(overrides)
        policy = LeavePolicy(**values)
        db_session.add(policy)
        db_session.commit()
        return policy
    return _make


@pytest.fixture
def make_balance(db_session):
    """Insert a balance row; keyword arguments are leave type field names, e.g. annual=10."""
    from leaveflow.models.leave_balance import LeaveBalance, LeaveType

    def _make(staff_id="S1", accrual_start_date=None, **days):
        balance = LeaveBalance(staff_id=staff_id, accrual_start_date=accrual_start_date)
        for leave_type in LeaveType:
            balance.set_days(leave_type, 0.0)
            balance.set_carry_forward(leave_type, 0.0)
        for field, value in days.items():
            setattr(balance, field, value)
        db_session.add(balance)
        db_session.commit()
        return balance
    return _make


@pytest.fixture
def notifier():
    from leaveflow.services.notification import RecordingDispatcher
    return RecordingDispatcher()


@pytest.fixture
def approval_router(db_session, notifier):
    from leaveflow.services.approval_router import ApprovalRouter
    return ApprovalRouter(db_session, notifier=notifier, strict_policy_lookup=False)


@pytest.fixture
def leave_service(db_session, approval_router):
    from leaveflow.services.leave_request import LeaveRequestService
    return LeaveRequestService(db_session, router=approval_router, reject_overlaps=True)


@pytest.fixture
def ledger(db_session):
    from leaveflow.services.balance_ledger import LeaveBalanceLedger
    return LeaveBalanceLedger(db_session, exempt_types=["Unpaid"])


@pytest.fixture
def accrual_engine(db_session):
    from leaveflow.services.accrual import AccrualEngine
    return AccrualEngine(db_session, retry_attempts=2)
