"""
Shared test fixtures for the shopfloor execution core tests

Provides an in-memory SQLite database with savepoint support and a fresh
session per test.
"""
import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from shopfloor.db.base import Base
from shopfloor.db.session import enable_sqlite_savepoints

from tests.factories import reset_sequences


# Create in-memory SQLite database for testing
SQLALCHEMY_DATABASE_URL = "sqlite:///:memory:"
engine = create_engine(
    SQLALCHEMY_DATABASE_URL,
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)
# consume_all_outstanding runs each BOM line in a SAVEPOINT
enable_sqlite_savepoints(engine)
TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


def create_tables(engine):
    """Create all tables for testing using SQLAlchemy metadata"""
    # Import all models to ensure they're registered with Base
    from shopfloor.models import (  # noqa: F401
        Part, StockLocation, InventoryBalance, SerializedUnit,
        ProductionOrder, ProductionStep, BOMLine, MaterialConsumption,
        WorkCenter, WorkCenterAllocation,
    )

    Base.metadata.create_all(bind=engine)


def drop_tables(engine):
    """Drop all tables after testing"""
    Base.metadata.drop_all(bind=engine)


@pytest.fixture
def db_session():
    """Create a fresh database session for each test"""
    create_tables(engine)
    reset_sequences()

    db = TestingSessionLocal()
    try:
        yield db
    finally:
        db.rollback()
        db.close()
        drop_tables(engine)


@pytest.fixture
def db(db_session):
    """Alias for db_session"""
    return db_session


@pytest.fixture
def stocked_part(db):
    """A part with 15 on hand at a line-side location"""
    from tests.factories import create_test_balance, create_test_location, create_test_part

    part = create_test_part(db, part_number="P-100", name="Bracket", standard_cost="2.50")
    location = create_test_location(db, code="LINE-1", name="Line side 1")
    create_test_balance(db, part=part, location=location, quantity="15", unit_cost="2.50")
    db.commit()
    return part, location
