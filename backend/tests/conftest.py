"""
Pytest fixtures for possync backend tests.

Provides the in-memory server app, a fresh database per test, the Flask test
client, and simulated devices (local store + sync engine) that talk to the
server in-process through httpx.WSGITransport.
"""

from dataclasses import dataclass

import httpx
import pytest

from possync import create_app
from possync.extensions import db
from possync.client import LocalStore, SyncApi, SyncContext, SyncEngine, VoucherClient
from possync.services.auth_service import create_user


@pytest.fixture(scope='session')
def app():
    """Create application for testing."""
    app = create_app({
        'TESTING': True,
        'SQLALCHEMY_DATABASE_URI': 'sqlite:///:memory:',
        'SQLALCHEMY_TRACK_MODIFICATIONS': False,
        'JWT_SECRET': 'test-jwt-secret',
        'SYNC_PULL_OVERLAP_MS': 0,
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
def http(app):
    """httpx client bound to the Flask app (no network)."""
    with httpx.Client(transport=httpx.WSGITransport(app=app), base_url="http://testserver") as http_client:
        yield http_client


@dataclass
class Device:
    store: LocalStore
    context: SyncContext
    api: SyncApi
    engine: SyncEngine
    vouchers: VoucherClient


@pytest.fixture(scope='function')
def make_device(db_session, http):
    """Factory for simulated devices, each with its own in-memory local store."""
    stores = []

    def _make(user_id: str = "user-1", token: str | None = None, company_code: str | None = None,
              shop_name: str | None = None) -> Device:
        store = LocalStore("sqlite://")
        stores.append(store)
        context = SyncContext(user_id=user_id, token=token, company_code=company_code, shop_name=shop_name)
        api = SyncApi("http://testserver", context, client=http)
        return Device(
            store=store,
            context=context,
            api=api,
            engine=SyncEngine(store, api, context),
            vouchers=VoucherClient(store, api, context),
        )

    yield _make

    for store in stores:
        store.close()


@pytest.fixture(scope='function')
def shop_user(db_session):
    """Signed-up shop account (company code GUR from 'Guru Stores')."""
    return create_user(
        name="Guru",
        email="guru@example.com",
        password="Password123",
        company="Guru Stores",
    )


def get_auth_token(client, email: str, password: str) -> str:
    """Helper to get auth token for a user."""
    response = client.post('/api/auth/login', json={
        'email': email,
        'password': password
    })
    if response.status_code == 200:
        return response.json.get('token')
    return None


def auth_headers(token: str) -> dict:
    """Helper to create Authorization headers."""
    return {'Authorization': f'Bearer {token}'}


def device_headers(user_id: str, **extra) -> dict:
    """Headers of a device that registered offline (no token)."""
    headers = {'X-User-Id': user_id}
    headers.update(extra)
    return headers
