"""
The provider handle.

One ``Provider`` owns the database, the Authlib authorization server and the
per-kind storage adapters. ``init_provider`` binds it to a Flask app exactly
once; request handlers reach it through ``get_provider``.
"""
from __future__ import annotations

import logging

from authlib.integrations.flask_oauth2 import AuthorizationServer
from authlib.oauth2.rfc7636 import CodeChallenge
from flask import Flask, current_app

from .adapter import SQLAlchemyAdapter, StoreObserver
from .config import Settings
from .db import Database
from .entities import Account, IssuedToken, StoredToken, now_ts
from .grants import (
    AuthorizationCodeGrant,
    ClientCredentialsGrant,
    IntrospectionEndpoint,
    RefreshTokenGrant,
    RevocationEndpoint,
    payload_value,
)
from .models import OAuth2Client
from .token_exchange import GRANT_TYPE as TOKEN_EXCHANGE, TokenExchangeGrant

logger = logging.getLogger(__name__)

EXTENSION_KEY = 'idp'

ACCESS_TOKEN_KINDS = ('AccessToken', 'ClientCredentials')


class IdentityServer(AuthorizationServer):
    """Authlib authorization server that knows the provider it belongs to."""

    def __init__(self, provider: 'Provider', app: Flask | None = None):
        self.provider = provider
        super().__init__(app)


class Provider:
    def __init__(self, settings: Settings, database: Database | None = None,
                 observer: StoreObserver | None = None):
        self.settings = settings
        self.database = database or Database(settings.database_url)
        self.observer = observer
        self.server = IdentityServer(self)
        self._adapters: dict[str, SQLAlchemyAdapter] = {}

    def adapter(self, kind: str) -> SQLAlchemyAdapter:
        if kind not in self._adapters:
            self._adapters[kind] = SQLAlchemyAdapter(kind, self.database, self.observer)
        return self._adapters[kind]

    # ----------------------
    # Flask / Authlib wiring
    # ----------------------
    def init_app(self, app: Flask) -> None:
        self.database.create_all()
        ttl = self.settings.access_token_ttl
        app.config.setdefault('OAUTH2_TOKEN_EXPIRES_IN', {
            'authorization_code': ttl,
            'refresh_token': ttl,
            'client_credentials': ttl,
            TOKEN_EXCHANGE: ttl,
        })
        self.server.init_app(app, query_client=self.query_client, save_token=self.save_token)
        self.server.register_grant(AuthorizationCodeGrant, [CodeChallenge(required=self.settings.require_pkce)])
        self.server.register_grant(RefreshTokenGrant)
        self.server.register_grant(ClientCredentialsGrant)
        self.server.register_grant(TokenExchangeGrant)
        self.server.register_endpoint(RevocationEndpoint)
        self.server.register_endpoint(IntrospectionEndpoint)
        logger.info('Provider ready (issuer=%s, database=%s)', self.settings.issuer, self.database.dialect)

    def query_client(self, client_id: str) -> OAuth2Client | None:
        with self.database.session() as db:
            return db.query(OAuth2Client).filter_by(client_id=client_id).first()

    def save_token(self, token: dict, request) -> None:
        grant_type = payload_value(request, 'grant_type')
        user = getattr(request, 'user', None)
        client = request.client
        kind = 'ClientCredentials' if grant_type == 'client_credentials' else 'AccessToken'
        self._store_access_token(
            token['access_token'],
            kind=kind,
            client_id=client.get_client_id(),
            account_id=user.account_id if user else None,
            grant_id=user.grant_id if user else None,
            scope=token.get('scope') or '',
            expires_in=int(token.get('expires_in') or self.settings.access_token_ttl),
            gty=grant_type,
            session_uid=user.session_uid if user else None,
            sid=user.sid if user else None,
        )
        refresh_token = token.get('refresh_token')
        if refresh_token and user is not None:
            now = now_ts()
            ttl = self.settings.refresh_token_ttl
            self.adapter('RefreshToken').upsert(refresh_token, {
                'jti': refresh_token,
                'kind': 'RefreshToken',
                'accountId': user.account_id,
                'clientId': client.get_client_id(),
                'grantId': user.grant_id,
                'sessionUid': user.session_uid,
                'sid': user.sid,
                'scope': token.get('scope') or '',
                'gty': grant_type,
                'iat': now,
                'exp': now + ttl,
            }, ttl)

    def _store_access_token(self, value: str, kind: str, client_id: str, account_id: str | None,
                            grant_id: str | None, scope: str, expires_in: int, gty: str | None,
                            audience: str | None = None, extra: dict | None = None,
                            claims: dict | None = None, session_uid: str | None = None,
                            sid: str | None = None) -> None:
        now = now_ts()
        payload = {
            'jti': value,
            'kind': kind,
            'accountId': account_id,
            'clientId': client_id,
            'grantId': grant_id,
            'sessionUid': session_uid,
            'sid': sid,
            'scope': scope,
            'gty': gty,
            'aud': audience,
            'extra': extra or {},
            'iat': now,
            'exp': now + expires_in,
        }
        if claims:
            payload['claims'] = claims
        self.adapter(kind).upsert(value, payload, expires_in)

    # ----------------------
    # Runtime capabilities
    # ----------------------
    def find_access_token(self, value: str) -> StoredToken | None:
        payload = self.adapter('AccessToken').find(value)
        if payload is None:
            return None
        return StoredToken.from_payload('AccessToken', value, payload)

    def lookup_token(self, value: str, hint: str | None = None) -> StoredToken | None:
        """Find an access, client-credentials or refresh token, honouring the type hint."""
        kinds = list(ACCESS_TOKEN_KINDS) + ['RefreshToken']
        if hint == 'refresh_token':
            kinds.reverse()
        for kind in kinds:
            payload = self.adapter(kind).find(value)
            if payload is not None:
                return StoredToken.from_payload(kind, value, payload)
        return None

    def issue_access_token(self, account_id: str | None, client, grant_id: str | None, scope: str | None,
                           gty: str, audience: str | None = None, extra: dict | None = None,
                           claims: dict | None = None, session_uid: str | None = None,
                           sid: str | None = None) -> IssuedToken:
        expires_in = self.settings.access_token_ttl
        token = self.server.generate_token(
            gty, client, user=Account(account_id, grant_id=grant_id), scope=scope,
            expires_in=expires_in, include_refresh_token=False,
        )
        value = token['access_token']
        self._store_access_token(
            value,
            kind='AccessToken',
            client_id=client.get_client_id(),
            account_id=account_id,
            grant_id=grant_id,
            scope=scope or '',
            expires_in=expires_in,
            gty=gty,
            audience=audience,
            extra=extra,
            claims=claims,
            session_uid=session_uid,
            sid=sid,
        )
        return IssuedToken(value=value, token_type=token.get('token_type', 'Bearer'),
                           expires_in=expires_in, jti=value)

    # ----------------------
    # Maintenance
    # ----------------------
    def revoke_grant(self, grant_id: str) -> None:
        """Drop a consent grant and every record issued under it."""
        self.adapter('Grant').destroy(grant_id)
        self.adapter('Grant').grant_cleaner(grant_id)
        logger.info('Revoked grant %s', grant_id)

    def clean_expired(self) -> None:
        self.adapter('AccessToken').clean_expired()


def init_provider(app: Flask, settings: Settings | None = None) -> Provider:
    """Return the provider bound to ``app``, creating it on first call."""
    provider = app.extensions.get(EXTENSION_KEY)
    if provider is None:
        provider = Provider(settings or Settings.from_env())
        provider.init_app(app)
        app.extensions[EXTENSION_KEY] = provider
    return provider


def get_provider() -> Provider:
    provider = current_app.extensions.get(EXTENSION_KEY)
    if provider is None:
        raise RuntimeError('identity provider is not initialised for this app')
    return provider
