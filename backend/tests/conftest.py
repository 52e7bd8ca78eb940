"""Pytest configuration and fixtures."""

import os

# Keep the app's own engine off the working directory during tests
os.environ.setdefault("DATABASE_URL", "sqlite:///:memory:")

import pytest
from decimal import Decimal
from typing import Callable, Generator

from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from app.core.rbac import UserRole
from app.core.security import get_password_hash, create_access_token
from app.db.base import Base
from app.db.session import get_db
from app.main import app
# Import all models to ensure they're registered with Base.metadata
from app.models import *
from app.models.counting import CountingScopeType, CountingSession, ExecutionMode
from app.models.location import Location, Warehouse
from app.models.product import Product, ProductCategory, ProductVariant
from app.models.stock import StockOnHand
from app.models.user import User
from app.services.blind_count_service import BlindCountService
from app.services.counting_session_service import CountingSessionService

# Use in-memory SQLite for tests
TEST_DATABASE_URL = "sqlite:///:memory:"


@pytest.fixture(scope="function")
def db_engine():
    """Create a test database engine."""
    engine = create_engine(
        TEST_DATABASE_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
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
    # Disable rate limiters during tests to avoid flaky failures
    from app.core.rate_limit import limiter as global_limiter, counter_limiter
    global_limiter.enabled = False
    counter_limiter.enabled = False
    # Don't raise server exceptions so we can test error status codes
    with TestClient(app, raise_server_exceptions=False) as test_client:
        yield test_client
    global_limiter.enabled = True
    counter_limiter.enabled = True
    app.dependency_overrides.clear()


def _make_user(db: Session, email: str, name: str, role: UserRole) -> User:
    user = User(
        email=email,
        password_hash=get_password_hash("testpass123"),
        role=role,
        name=name,
        is_active=True,
    )
    db.add(user)
    db.commit()
    db.refresh(user)
    return user


def _headers(user: User) -> dict:
    token = create_access_token(
        data={"sub": str(user.id), "email": user.email, "role": user.role.value}
    )
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def supervisor(db_session: Session) -> User:
    return _make_user(db_session, "supervisor@example.com", "Sam Supervisor", UserRole.MANAGER)


@pytest.fixture
def alice(db_session: Session) -> User:
    return _make_user(db_session, "alice@example.com", "Alice", UserRole.STAFF)


@pytest.fixture
def bob(db_session: Session) -> User:
    return _make_user(db_session, "bob@example.com", "Bob", UserRole.STAFF)


@pytest.fixture
def carol(db_session: Session) -> User:
    return _make_user(db_session, "carol@example.com", "Carol", UserRole.STAFF)


@pytest.fixture
def supervisor_headers(supervisor: User) -> dict:
    return _headers(supervisor)


@pytest.fixture
def alice_headers(alice: User) -> dict:
    return _headers(alice)


@pytest.fixture
def bob_headers(bob: User) -> dict:
    return _headers(bob)


@pytest.fixture
def carol_headers(carol: User) -> dict:
    return _headers(carol)


@pytest.fixture
def warehouse(db_session: Session) -> Warehouse:
    warehouse = Warehouse(name="Central Warehouse", code="WH1", active=True)
    db_session.add(warehouse)
    db_session.commit()
    db_session.refresh(warehouse)
    return warehouse


@pytest.fixture
def location(db_session: Session, warehouse: Warehouse) -> Location:
    """Create a test location."""
    location = Location(warehouse_id=warehouse.id, name="Aisle 1", code="A1", active=True)
    db_session.add(location)
    db_session.commit()
    db_session.refresh(location)
    return location


@pytest.fixture
def other_location(db_session: Session, warehouse: Warehouse) -> Location:
    location = Location(warehouse_id=warehouse.id, name="Aisle 2", code="A2", active=True)
    db_session.add(location)
    db_session.commit()
    db_session.refresh(location)
    return location


@pytest.fixture
def category(db_session: Session) -> ProductCategory:
    category = ProductCategory(name="Beverages")
    db_session.add(category)
    db_session.commit()
    db_session.refresh(category)
    return category


@pytest.fixture
def product(db_session: Session, category: ProductCategory) -> Product:
    """Create a test product."""
    product = Product(
        name="Sparkling Water 1L",
        sku="SW-1L",
        barcode="1234567890123",
        category_id=category.id,
        unit="pcs",
        active=True,
    )
    db_session.add(product)
    db_session.commit()
    db_session.refresh(product)
    return product


@pytest.fixture
def second_product(db_session: Session) -> Product:
    product = Product(name="Orange Juice 1L", sku="OJ-1L", barcode="9876543210987", unit="pcs", active=True)
    db_session.add(product)
    db_session.commit()
    db_session.refresh(product)
    return product


@pytest.fixture
def stock_factory(db_session: Session) -> Callable[..., StockOnHand]:
    """Put a ledger row in place: ``stock_factory(product, location, qty, variant=None)``."""
    def _create(product: Product, location: Location, qty, variant: ProductVariant = None) -> StockOnHand:
        stock = StockOnHand(
            product_id=product.id,
            variant_id=variant.id if variant is not None else None,
            location_id=location.id,
            qty=Decimal(str(qty)),
        )
        db_session.add(stock)
        db_session.commit()
        db_session.refresh(stock)
        return stock
    return _create


@pytest.fixture
def session_factory(
    db_session: Session, supervisor: User, alice: User, bob: User, carol: User, product: Product, location: Location
) -> Callable[..., CountingSession]:
    """Create a counting session over ``product`` at ``location``.

    Defaults to a parallel double count by alice and bob with carol as the
    third counter; keyword arguments override any ``create_session`` field.
    """
    def _create(activate: bool = False, **overrides) -> CountingSession:
        params = dict(
            scope_type=CountingScopeType.PRODUCT_LOCATION,
            scope_filters={"product_ids": [product.id], "location_id": location.id},
            execution_mode=ExecutionMode.PARALLEL,
            requires_count_2=True,
            requires_count_3=True,
            count_1_user_id=alice.id,
            count_2_user_id=bob.id,
            count_3_user_id=carol.id,
            created_by_user_id=supervisor.id,
        )
        params.update(overrides)
        service = CountingSessionService(db_session)
        session = service.create_session(**params)
        if activate:
            session = service.activate_session(session.id, user_id=supervisor.id)
        return session
    return _create


@pytest.fixture
def submit(db_session: Session) -> Callable:
    """Submit a count through the intake service: ``submit(session, item, user, qty)``."""
    def _submit(session: CountingSession, item_id: int, user: User, quantity, notes=None):
        return BlindCountService(db_session).submit_count(
            session.id, item_id, user.id, Decimal(str(quantity)), notes
        )
    return _submit
