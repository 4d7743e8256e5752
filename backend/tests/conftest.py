"""
Pytest fixtures for rental desk backend tests.

Provides the app with an in-memory database, branch/staff/customer fixtures,
an order factory, and auth helpers for the HTTP tests.
"""

from datetime import datetime, timedelta

import pytest

from rentaldesk import create_app
from rentaldesk.extensions import db
from rentaldesk.models import Branch, Customer
from rentaldesk.services import auth_service, order_service
from rentaldesk.validation import ItemInput, OrderCreateRequest


NOW = datetime(2026, 3, 10, 12, 0, 0)
PASSWORD = "Password123!"
PHOTO = "https://cdn.example.com/items/sherwani.jpg"


@pytest.fixture(scope='session')
def app():
    """Create application for testing."""
    app = create_app({
        'TESTING': True,
        'SQLALCHEMY_DATABASE_URI': 'sqlite:///:memory:',
        'SQLALCHEMY_TRACK_MODIFICATIONS': False,
        'BCRYPT_ROUNDS': 4,
    })

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

        yield db.session

        # Cleanup after test
        db.session.rollback()


@pytest.fixture(scope='function')
def branch(db_session):
    """Main branch, UTC, no GST."""
    branch = Branch(name="Main Branch", code="MAIN", timezone="UTC", gst_enabled=False)
    db_session.add(branch)
    db_session.commit()
    return branch


@pytest.fixture(scope='function')
def other_branch(db_session):
    branch = Branch(name="Second Branch", code="SECOND", timezone="UTC", gst_enabled=False)
    db_session.add(branch)
    db_session.commit()
    return branch


@pytest.fixture(scope='function')
def staff(db_session, branch):
    """Branch admin in the main branch."""
    return auth_service.create_staff(
        username="asha",
        full_name="Asha Rao",
        password=PASSWORD,
        role="branch_admin",
        branch_id=branch.id,
    )


@pytest.fixture(scope='function')
def other_staff(db_session, other_branch):
    return auth_service.create_staff(
        username="vikram",
        full_name="Vikram Shah",
        password=PASSWORD,
        role="staff",
        branch_id=other_branch.id,
    )


@pytest.fixture(scope='function')
def customer(db_session, branch):
    customer = Customer(branch_id=branch.id, customer_number="C-0001", name="Meera Iyer", phone="9800000001")
    db_session.add(customer)
    db_session.commit()
    return customer


def item_input(quantity=1, price_per_day_cents=300, days=1, product_name="Sherwani"):
    return ItemInput(
        quantity=quantity,
        price_per_day_cents=price_per_day_cents,
        days=days,
        product_name=product_name,
        photo_url=PHOTO,
    )


@pytest.fixture(scope='function')
def make_order(db_session, branch, staff, customer):
    """
    Factory for orders created through the order service.

    Defaults: two items (qty 2 and qty 1 at 300/day for one day, subtotal
    900), rental running from one hour before `now` for two days.
    """
    def _make(*, now=NOW, start_at=None, end_at=None, items=None, branch_id=None, customer_id=None):
        start_at = start_at or now - timedelta(hours=1)
        end_at = end_at or start_at + timedelta(days=2)
        items = items or (item_input(quantity=2), item_input(quantity=1, product_name="Turban"))
        request = OrderCreateRequest(
            customer_id=customer_id or customer.id,
            start_at=start_at,
            end_at=end_at,
            items=tuple(items),
        )
        return order_service.create_order(
            request,
            branch_id=branch_id or branch.id,
            actor_id=staff.id,
            now=now,
        )

    return _make


def get_auth_token(client, username: str, password: str = PASSWORD) -> str:
    """Helper to get auth token for a staff member."""
    response = client.post('/api/auth/login', json={
        'username': username,
        'password': password
    })
    if response.status_code == 200:
        return response.json.get('token')
    return None


def auth_headers(token: str) -> dict:
    """Helper to create Authorization headers."""
    return {'Authorization': f'Bearer {token}'}


@pytest.fixture(scope='function')
def headers(client, staff):
    return auth_headers(get_auth_token(client, staff.username))
