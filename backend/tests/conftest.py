"""
Pytest fixtures for store POS backend tests.

Provides test database setup, users with each role, catalog/customer
factories and a test client.
"""

from decimal import Decimal

import pytest

from storepos import create_app
from storepos.extensions import db
from storepos.models import Customer, Product, User
from storepos.models.auth import ROLE_ADMIN, ROLE_CASHIER, ROLE_MANAGER
from storepos.services.auth_service import hash_password


TEST_PASSWORD = "Password123!"


@pytest.fixture(scope='session')
def app():
    """Create application for testing."""
    app = create_app({
        'TESTING': True,
        'SQLALCHEMY_DATABASE_URI': 'sqlite:///:memory:',
        'SQLALCHEMY_TRACK_MODIFICATIONS': False,
        'UPI_ID': 'corner-store@okbank',
        'UPI_PAYEE_NAME': 'Corner Store',
        'PAYMENT_WEBHOOK_SECRET': None,
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


def _make_user(session, username: str, role: str) -> User:
    user = User(
        username=username,
        full_name=username.title(),
        password_hash=hash_password(TEST_PASSWORD, rounds=4),
        role=role,
        is_active=True,
    )
    session.add(user)
    session.commit()
    return user


@pytest.fixture(scope='function')
def admin_user(db_session):
    return _make_user(db_session, "admin", ROLE_ADMIN)


@pytest.fixture(scope='function')
def manager_user(db_session):
    return _make_user(db_session, "manager", ROLE_MANAGER)


@pytest.fixture(scope='function')
def cashier_user(db_session):
    return _make_user(db_session, "cashier", ROLE_CASHIER)


@pytest.fixture(scope='function')
def make_product(db_session):
    """Factory: make_product(name, price, stock, **overrides)."""
    def _make(name="Rice 1kg", price="50.00", stock="10", **overrides):
        product = Product(
            name=name,
            retail_price=Decimal(price),
            stock=Decimal(stock),
            **overrides,
        )
        db_session.add(product)
        db_session.commit()
        return product
    return _make


@pytest.fixture(scope='function')
def product(make_product):
    """Product A: price 50.00, stock 10."""
    return make_product()


@pytest.fixture(scope='function')
def make_customer(db_session):
    def _make(phone="9876543210", name="Ravi", debt="0"):
        customer = Customer(name=name, phone=phone, debt_amount=Decimal(debt))
        db_session.add(customer)
        db_session.commit()
        return customer
    return _make


@pytest.fixture(scope='function')
def customer(make_customer):
    return make_customer()


def get_auth_token(client, username: str, password: str = TEST_PASSWORD) -> str:
    """Helper to get auth token for a user."""
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
def cashier_headers(client, cashier_user):
    return auth_headers(get_auth_token(client, cashier_user.username))


@pytest.fixture(scope='function')
def manager_headers(client, manager_user):
    return auth_headers(get_auth_token(client, manager_user.username))


@pytest.fixture(scope='function')
def admin_headers(client, admin_user):
    return auth_headers(get_auth_token(client, admin_user.username))
