"""Pytest configuration and fixtures."""

import os

# Keep the application engine off the on-disk database during tests
os.environ.setdefault("DATABASE_URL", "sqlite:///:memory:")

from datetime import datetime, timezone
from typing import Callable, Generator

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from cylinder_ledger.db.base import Base
from cylinder_ledger.db.session import configure_sqlite, get_db
from cylinder_ledger.main import app
# Import all models to ensure they're registered with Base.metadata
from cylinder_ledger.models import *  # noqa: F401,F403
from cylinder_ledger.models.delivery import DeliveryOrder, DeliveryPlan, OrderStatus
from cylinder_ledger.models.inventory import CylinderStatus, CylinderType, LocationType
from cylinder_ledger.services.inventory_service import InventoryService
from cylinder_ledger.services.order_service import OrderService

# Use in-memory SQLite for tests
TEST_DATABASE_URL = "sqlite:///:memory:"

VEHICLE_ID = 7
CUSTOMER_ID = 501


@pytest.fixture(scope="function")
def db_engine():
    """Create a test database engine."""
    engine = create_engine(
        TEST_DATABASE_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    configure_sqlite(engine)
    Base.metadata.create_all(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)


@pytest.fixture(scope="function")
def db_session(db_engine) -> Generator[Session, None, None]:
    """Create a test database session."""
    SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=db_engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture(scope="function")
def client(db_session: Session) -> Generator[TestClient, None, None]:
    """Create a test client with database override."""
    def override_get_db():
        try:
            yield db_session
        finally:
            pass

    app.dependency_overrides[get_db] = override_get_db
    # Disable the rate limiter during tests to avoid flaky failures
    from cylinder_ledger.core.rate_limit import limiter
    limiter.enabled = False
    # Don't raise server exceptions so we can test error status codes
    with TestClient(app, raise_server_exceptions=False) as test_client:
        yield test_client
    limiter.enabled = True
    app.dependency_overrides.clear()


@pytest.fixture
def inventory(db_session: Session) -> InventoryService:
    return InventoryService(db_session)


@pytest.fixture
def cylinder_type(db_session: Session) -> CylinderType:
    """A 14.2 kg domestic cylinder."""
    cylinder_type = CylinderType(code="DOM-14", capacity_label="14.2 kg", description="Domestic")
    db_session.add(cylinder_type)
    db_session.commit()
    db_session.refresh(cylinder_type)
    return cylinder_type


@pytest.fixture
def commercial_type(db_session: Session) -> CylinderType:
    """A 19 kg commercial cylinder."""
    cylinder_type = CylinderType(code="COM-19", capacity_label="19 kg", description="Commercial")
    db_session.add(cylinder_type)
    db_session.commit()
    db_session.refresh(cylinder_type)
    return cylinder_type


@pytest.fixture
def seed(inventory: InventoryService) -> Callable[..., None]:
    """Seed stock at a key through the initialization path."""
    def _seed(location_type, reference_id, cylinder_type_id, status, quantity):
        inventory.initialize(
            location_type,
            reference_id,
            [{"cylinder_type_id": cylinder_type_id, "quantity": quantity, "cylinder_status": status}],
        )
    return _seed


@pytest.fixture
def make_order(db_session: Session) -> Callable[..., DeliveryOrder]:
    """Create a CONFIRMED order. ``lines`` is a list of (cylinder_type_id, ordered_qty)."""
    counter = {"n": 0}

    def _make_order(lines, customer_id=CUSTOMER_ID, expected_empty_override=None):
        counter["n"] += 1
        service = OrderService(db_session)
        order = service.create_order(
            order_number=f"ORD-{counter['n']:04d}",
            customer_id=customer_id,
            customer_name=f"Customer {customer_id}",
            lines=[{"cylinder_type_id": t, "ordered_qty": q} for t, q in lines],
            expected_empty_override=expected_empty_override,
        )
        return service.transition(order.id, OrderStatus.CONFIRMED, changed_by="dispatcher")
    return _make_order


@pytest.fixture
def make_plan(db_session: Session) -> Callable[..., DeliveryPlan]:
    """Assign orders to VEHICLE_ID for today (UTC)."""
    def _make_plan(orders, vehicle_id=VEHICLE_ID, driver_id=11, plan_date=None):
        return OrderService(db_session).create_plan(
            plan_date=plan_date or datetime.now(timezone.utc).date(),
            vehicle_id=vehicle_id,
            driver_id=driver_id,
            order_ids=[o.id for o in orders],
            vehicle_number=f"KA-01-{vehicle_id:04d}",
        )
    return _make_plan


@pytest.fixture
def single_line_delivery(cylinder_type, make_order, make_plan, seed):
    """One 50-cylinder order on a plan with the vehicle loaded with 50 filled."""
    order = make_order([(cylinder_type.id, 50)])
    plan = make_plan([order])
    seed(LocationType.VEHICLE, VEHICLE_ID, cylinder_type.id, CylinderStatus.FILLED, 50)
    return order, plan


@pytest.fixture
def vehicle_id() -> int:
    return VEHICLE_ID


@pytest.fixture
def customer_id() -> int:
    return CUSTOMER_ID
