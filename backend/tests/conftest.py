"""
Pytest fixtures for back-office backend tests.

Provides test database setup, store/user/product fixtures, bearer sessions,
and the test client.
"""

import pytest

from backoffice import create_app
from backoffice.config import TestConfig
from backoffice.extensions import db
from backoffice.models import Product, ProductUnit, Store, Unit, User
from backoffice.services import permission_service, session_service
from backoffice.services.cache_service import read_cache


@pytest.fixture(scope='session')
def app():
    """Create application for testing."""
    app = create_app(TestConfig)

    with app.app_context():
        db.create_all()
        yield app
        db.drop_all()


@pytest.fixture(scope='function')
def client(app):
    """Create test client."""
    return app.test_client()


@pytest.fixture(scope='function')
def db_session(app):
    """Create fresh database for each test."""
    with app.app_context():
        # Clear all data but keep schema
        meta = db.metadata
        for table in reversed(meta.sorted_tables):
            db.session.execute(table.delete())
        db.session.commit()
        read_cache.clear()

        yield db.session

        # Cleanup after test
        db.session.rollback()
        read_cache.clear()


@pytest.fixture(scope='function')
def store(db_session):
    """Main store: base LAK, also accepts THB and USD."""
    store = Store(name="Main Store", code="MAIN", currency="LAK", supported_currencies="LAK,THB,USD")
    db_session.add(store)
    db_session.commit()
    return store


@pytest.fixture(scope='function')
def other_store(db_session):
    """Second tenant, used for isolation checks."""
    store = Store(name="Other Store", code="OTHER", currency="LAK", supported_currencies="LAK")
    db_session.add(store)
    db_session.commit()
    return store


@pytest.fixture(scope='function')
def units(db_session, store):
    """Piece (base) and box units."""
    pcs = Unit(store_id=store.id, code="PCS", name="Piece")
    box = Unit(store_id=store.id, code="BOX", name="Box")
    db_session.add_all([pcs, box])
    db_session.commit()
    return {"pcs": pcs, "box": box}


def make_product(db_session, store, base_unit, *, sku, name, box_unit=None, box_size=12, **fields):
    """Helper to create a product, optionally with a box conversion."""
    product = Product(store_id=store.id, sku=sku, name=name, base_unit_id=base_unit.id, **fields)
    db_session.add(product)
    db_session.flush()
    if box_unit is not None:
        db_session.add(ProductUnit(product_id=product.id, unit_id=box_unit.id, multiplier_to_base=box_size))
    db_session.commit()
    return product


@pytest.fixture(scope='function')
def product(db_session, store, units):
    """Cola sold by piece, bought by box of 12."""
    return make_product(
        db_session, store, units["pcs"],
        sku="COLA-330", name="Cola 330ml", box_unit=units["box"], box_size=12,
        cost_base=0, price_base=8000,
    )


@pytest.fixture(scope='function')
def second_product(db_session, store, units):
    return make_product(
        db_session, store, units["pcs"],
        sku="WATER-500", name="Water 500ml", cost_base=0, price_base=4000,
    )


def make_user(db_session, store, username, *, role=None, permissions=()):
    """Helper to create a user with a role's permissions and/or explicit grants."""
    user = User(store_id=store.id, username=username, display_name=username.title(), is_active=True)
    db_session.add(user)
    db_session.commit()
    if role:
        permission_service.grant_role(user.id, role)
    if permissions:
        permission_service.grant_permissions(user.id, list(permissions))
    return user


def auth_headers(token: str) -> dict:
    """Helper to create Authorization headers."""
    return {'Authorization': f'Bearer {token}'}


def headers_for(user) -> dict:
    """Issue a session for user and return bearer headers."""
    _, token = session_service.issue_session(user.id)
    return auth_headers(token)


@pytest.fixture(scope='function')
def admin_user(db_session, store):
    return make_user(db_session, store, "admin", role="admin")


@pytest.fixture(scope='function')
def clerk_user(db_session, store):
    return make_user(db_session, store, "clerk", role="clerk")


@pytest.fixture(scope='function')
def viewer_user(db_session, store):
    return make_user(db_session, store, "viewer", role="viewer")


@pytest.fixture(scope='function')
def admin_headers(admin_user):
    return headers_for(admin_user)


@pytest.fixture(scope='function')
def clerk_headers(clerk_user):
    return headers_for(clerk_user)


@pytest.fixture(scope='function')
def viewer_headers(viewer_user):
    return headers_for(viewer_user)


@pytest.fixture(scope='function')
def outsider_user(db_session, other_store):
    """Admin of the other store; must never see the main store's data."""
    return make_user(db_session, other_store, "outsider", role="admin")


@pytest.fixture(scope='function')
def outsider_headers(outsider_user):
    return headers_for(outsider_user)


@pytest.fixture(scope='function')
def unprivileged_headers(db_session, store):
    """Valid session for a user holding no permissions at all."""
    return headers_for(make_user(db_session, store, "nobody"))
