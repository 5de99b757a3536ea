from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker, declarative_base
from leaveflow.core.config import settings

# Support both PostgreSQL and SQLite via centralized settings
DATABASE_URL = settings.database_url


def enable_sqlite_savepoints(target: Engine) -> Engine:
    """
    Let SQLAlchemy own BEGIN on pysqlite so SAVEPOINT (begin_nested) works.
    Audit entries are written inside savepoints.
    """
    @event.listens_for(target, "connect")
    def _on_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(target, "begin")
    def _on_begin(conn):
        conn.exec_driver_sql("BEGIN")

    return target


if DATABASE_URL.startswith("postgresql"):
    engine = create_engine(DATABASE_URL, pool_pre_ping=True)
else:
    # SQLite configuration for local development/testing
    engine = enable_sqlite_savepoints(create_engine(
        DATABASE_URL, connect_args={"check_same_thread": False}
    ))

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

Base = declarative_base()


def get_db():
    """
    Session Provider: Provides a database session per request.
    Transaction management is handled explicitly in the Service Layer.
    """
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def init_db():
    """
    Registers all domain models and initializes the database schema.
    This should be called during the application startup lifespan.
    """
    # Import all models to ensure they are registered with Base.metadata before create_all
    from leaveflow.models import (  # noqa: F401
        leave_policy, leave_balance, leave_accrual_history,
        leave_request, audit_log, notification
    )
    Base.metadata.create_all(bind=engine)
