"""Authlib grants and endpoints wired to the token record store."""
from __future__ import annotations

import logging

from authlib.oauth2.rfc6749 import grants
from authlib.oauth2.rfc6749.errors import InvalidGrantError
from authlib.oauth2.rfc7009 import RevocationEndpoint as _RevocationEndpoint
from authlib.oauth2.rfc7662 import IntrospectionEndpoint as _IntrospectionEndpoint

from .entities import Account, StoredAuthorizationCode, StoredToken, now_ts

logger = logging.getLogger(__name__)

CONFIDENTIAL_AUTH_METHODS = ['client_secret_basic', 'client_secret_post']


def payload_value(request, name: str):
    # Authlib >= 1.3 keeps parsed parameters on request.payload; older releases on the request
    payload = getattr(request, 'payload', None)
    value = getattr(payload, name, None) if payload is not None else None
    if value is None:
        value = getattr(request, name, None)
    return value


def request_data(request) -> dict:
    data = payload_value(request, 'data')
    return dict(data) if data else {}


class AuthorizationCodeGrant(grants.AuthorizationCodeGrant):
    TOKEN_ENDPOINT_AUTH_METHODS = ['none'] + CONFIDENTIAL_AUTH_METHODS

    def save_authorization_code(self, code, request):
        provider = self.server.provider
        data = request_data(request)
        user = request.user
        now = now_ts()
        ttl = provider.settings.authorization_code_ttl
        provider.adapter('AuthorizationCode').upsert(code, {
            'jti': code,
            'kind': 'AuthorizationCode',
            'accountId': user.account_id,
            'clientId': request.client.get_client_id(),
            'grantId': user.grant_id,
            'sessionUid': user.session_uid,
            'redirectUri': payload_value(request, 'redirect_uri'),
            'scope': payload_value(request, 'scope') or '',
            'codeChallenge': data.get('code_challenge'),
            'codeChallengeMethod': data.get('code_challenge_method'),
            'nonce': data.get('nonce'),
            'iat': now,
            'exp': now + ttl,
        }, ttl)
        return code

    def query_authorization_code(self, code, client):
        payload = self.server.provider.adapter('AuthorizationCode').find(code)
        if payload and payload.get('clientId') == client.get_client_id():
            return StoredAuthorizationCode(code, payload)
        return None

    def authenticate_user(self, authorization_code):
        adapter = self.server.provider.adapter('AuthorizationCode')
        if authorization_code.consumed is not None or not adapter.consume(authorization_code.code):
            # A replayed code invalidates everything issued from its grant
            logger.warning('Authorization code replay detected (grant=%s)', authorization_code.grant_id)
            if authorization_code.grant_id:
                adapter.revoke_by_grant_id(authorization_code.grant_id)
            raise InvalidGrantError(description='authorization code has already been used')
        return Account(
            authorization_code.account_id,
            grant_id=authorization_code.grant_id,
            session_uid=authorization_code.session_uid,
        )

    def delete_authorization_code(self, authorization_code):
        # Already consumed in authenticate_user; the record is left to expire
        return None


class RefreshTokenGrant(grants.RefreshTokenGrant):
    INCLUDE_NEW_REFRESH_TOKEN = True
    TOKEN_ENDPOINT_AUTH_METHODS = ['none'] + CONFIDENTIAL_AUTH_METHODS

    def authenticate_refresh_token(self, refresh_token):
        adapter = self.server.provider.adapter('RefreshToken')
        payload = adapter.find(refresh_token)
        if payload is None:
            return None
        token = StoredToken.from_payload('RefreshToken', refresh_token, payload)
        if token.is_revoked():
            logger.warning('Rotated refresh token reused (grant=%s)', token.grant_id)
            if token.grant_id:
                adapter.revoke_by_grant_id(token.grant_id)
            return None
        return token

    def authenticate_user(self, refresh_token):
        if not self.server.provider.adapter('RefreshToken').consume(refresh_token.jti):
            raise InvalidGrantError(description='refresh token has already been used')
        return Account(
            refresh_token.account_id,
            grant_id=refresh_token.grant_id,
            session_uid=refresh_token.session_uid,
            sid=refresh_token.sid,
        )

    def revoke_old_credential(self, refresh_token):
        # Rotation consumed the old token in authenticate_user
        return None


class ClientCredentialsGrant(grants.ClientCredentialsGrant):
    TOKEN_ENDPOINT_AUTH_METHODS = CONFIDENTIAL_AUTH_METHODS


class RevocationEndpoint(_RevocationEndpoint):
    CLIENT_AUTH_METHODS = CONFIDENTIAL_AUTH_METHODS

    def query_token(self, token_string, token_type_hint):
        return self.server.provider.lookup_token(token_string, token_type_hint)

    def revoke_token(self, token, request):
        provider = self.server.provider
        provider.adapter(token.kind).destroy(token.jti)
        if token.kind == 'RefreshToken' and token.grant_id:
            provider.adapter('RefreshToken').revoke_by_grant_id(token.grant_id)
        logger.info('Revoked %s for client %s', token.kind, token.client_id)


class IntrospectionEndpoint(_IntrospectionEndpoint):
    CLIENT_AUTH_METHODS = CONFIDENTIAL_AUTH_METHODS

    def query_token(self, token_string, token_type_hint):
        return self.server.provider.lookup_token(token_string, token_type_hint)

    def check_permission(self, token, client, request):
        return token.check_client(client)

    def introspect_token(self, token):
        data = {
            'active': True,
            'client_id': token.client_id,
            'token_type': 'refresh_token' if token.kind == 'RefreshToken' else 'Bearer',
            'scope': token.get_scope(),
            'sub': token.account_id,
            'aud': token.audience,
            'iat': token.iat,
            'exp': token.exp,
            'jti': token.jti,
            'iss': self.server.provider.settings.issuer,
        }
        if token.gty:
            data['gty'] = token.gty
        for claim in ('act', 'may_act'):
            if claim in token.extra:
                data[claim] = token.extra[claim]
        return {k: v for k, v in data.items() if v is not None}
