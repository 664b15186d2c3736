"""Pytest configuration shared across the suite."""
from __future__ import annotations

import pytest

from idp_core import create_app
from idp_core.config import Settings
from idp_core.db import Database
from idp_core.models import ExchangePolicy, OAuth2Client, TokenRecord
from idp_core.token_exchange import ACCESS_TOKEN_TYPE, GRANT_TYPE as TOKEN_EXCHANGE

ADMIN_TOKEN = 'admin-secret'
CLIENT_SECRET = 'client-secret'


@pytest.fixture(autouse=True)
def insecure_transport(monkeypatch):
    # The Flask test client talks plain http://localhost/
    monkeypatch.setenv('AUTHLIB_INSECURE_TRANSPORT', '1')


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(
        database_url=f"sqlite:///{tmp_path / 'idp.db'}",
        secret_key='test-secret',
        admin_token=ADMIN_TOKEN,
        log_level='DEBUG',
    )


@pytest.fixture
def database(tmp_path) -> Database:
    db = Database(f"sqlite:///{tmp_path / 'store.db'}")
    db.create_all()
    yield db
    db.dispose()


@pytest.fixture
def app(settings):
    app = create_app(settings)
    app.config['TESTING'] = True
    yield app
    app.extensions['idp'].database.dispose()


@pytest.fixture
def provider(app):
    return app.extensions['idp']


@pytest.fixture
def http(app):
    return app.test_client()


@pytest.fixture
def make_client(provider):
    """Register an OAuth client directly in the store."""

    def _make(client_id='client-c', secret=CLIENT_SECRET, grant_types=None,
              auth_method='client_secret_post', scope='read write admin',
              redirect_uris='http://localhost:3000/callback'):
        client = OAuth2Client(
            client_id=client_id,
            client_name=client_id,
            grant_types=' '.join(grant_types or [TOKEN_EXCHANGE, 'client_credentials']),
            redirect_uris=redirect_uris,
            response_types='code',
            scope=scope,
            token_endpoint_auth_method=auth_method,
        )
        client.set_client_secret(secret)
        with provider.database.session() as db:
            db.add(client)
            db.commit()
        return client

    return _make


@pytest.fixture
def make_policy(provider):
    def _make(**fields):
        fields.setdefault('client_id', 'client-c')
        fields.setdefault('subject', '*')
        fields.setdefault('subject_token_types', [ACCESS_TOKEN_TYPE])
        fields.setdefault('audiences', ['svcB'])
        policy = ExchangePolicy(**fields)
        with provider.database.session() as db:
            db.add(policy)
            db.commit()
        return policy

    return _make


@pytest.fixture
def issue_subject_token(provider):
    """Mint an access token as if it came out of an authorization code flow."""

    def _issue(client, account_id='U1', scope='read write', grant_id='grant-1', **extra):
        issued = provider.issue_access_token(
            account_id=account_id,
            client=client,
            grant_id=grant_id,
            scope=scope,
            gty='authorization_code',
            session_uid='session-uid-1',
            **extra,
        )
        return issued.value

    return _issue


@pytest.fixture
def count_records(provider):
    def _count(kind: str) -> int:
        with provider.database.session() as db:
            return db.query(TokenRecord).filter_by(kind=kind).count()

    return _count
