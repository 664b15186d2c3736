"""
OAuth 2.0 Token Exchange (RFC 8693).

A client presents one of its own live access tokens as ``subject_token``
(optionally with an ``actor_token``) and receives a new access token for a
single audience, with scopes narrowed by the subject token and by the
matching exchange policy. Every attempt made by an authenticated client
leaves exactly one row in the exchange audit trail.
"""
from __future__ import annotations

import logging
from typing import Mapping, Sequence

from authlib.oauth2.rfc6749 import grants
from authlib.oauth2.rfc6749.errors import (
    InvalidClientError,
    InvalidGrantError,
    InvalidRequestError,
    InvalidScopeError,
    OAuth2Error,
    UnauthorizedClientError,
)

from .entities import StoredToken
from .errors import InvalidTargetError
from .grants import CONFIDENTIAL_AUTH_METHODS, payload_value
from .policies import WILDCARD, ExchangeEventLog, find_applicable_policy, log_exchange_event

logger = logging.getLogger(__name__)

GRANT_TYPE = 'urn:ietf:params:oauth:grant-type:token-exchange'
ACCESS_TOKEN_TYPE = 'urn:ietf:params:oauth:token-type:access_token'
ISSUED_TOKEN_TYPE = ACCESS_TOKEN_TYPE

GRANT_PARAMETERS = frozenset({
    'subject_token',
    'subject_token_type',
    'actor_token',
    'actor_token_type',
    'resource',
    'audience',
    'scope',
    'requested_token_type',
})

SUPPORTED_TOKEN_TYPES = frozenset({ACCESS_TOKEN_TYPE})

Params = Mapping[str, Sequence[str]]


def parse_scope(value: str | None) -> list[str]:
    """Split a space separated scope string, dropping blanks and duplicates."""
    if not isinstance(value, str):
        return []
    seen: list[str] = []
    for item in value.split():
        if item not in seen:
            seen.append(item)
    return seen


def scope_to_string(scopes: Sequence[str]) -> str | None:
    return ' '.join(scopes) if scopes else None


def _first(params: Params, name: str) -> str | None:
    values = params.get(name) or []
    return values[0] if values else None


def single_param(params: Params, name: str) -> str | None:
    values = params.get(name) or []
    if len(values) > 1:
        raise InvalidRequestError(description=f'{name} must not be repeated')
    return values[0] if values else None


def _non_empty(value: str | None, name: str) -> str:
    if not isinstance(value, str) or not value:
        raise InvalidRequestError(description=f'{name} must be a non-empty string')
    return value


def check_requested_token_type(value: str | None) -> None:
    if value is None:
        return
    _non_empty(value, 'requested_token_type')
    if value != ISSUED_TOKEN_TYPE:
        raise InvalidRequestError(description='requested_token_type is not supported')


def check_token_type(value: str | None, name: str) -> str:
    _non_empty(value, name)
    if value not in SUPPORTED_TOKEN_TYPES:
        raise InvalidRequestError(description=f'unsupported {name}')
    return value


def resolve_audience(params: Params) -> str:
    """``audience`` wins over ``resource``; exactly one value is accepted."""
    for name in ('audience', 'resource'):
        values = [v.strip() for v in params.get(name) or [] if isinstance(v, str) and v.strip()]
        if len(values) > 1:
            raise InvalidTargetError(description='multiple audience/resource values are not supported')
        if values:
            return values[0]
    raise InvalidRequestError(description='audience parameter is required for token exchange')


def restricting_scopes(policy_scopes: Sequence[str] | None) -> list[str] | None:
    """The policy allow-list, or None when the policy does not restrict scopes."""
    allowed = [s.strip() for s in policy_scopes or [] if s and s.strip()]
    if not allowed or WILDCARD in allowed:
        return None
    return allowed


class TokenExchangeHandler:
    """Validates one exchange request and mints the resulting access token."""

    def __init__(self, provider):
        self.provider = provider

    def handle(self, client, params: Params) -> dict:
        if client is None:
            raise InvalidClientError(description='client authentication is required')
        client_id = client.get_client_id()

        raw_type = _first(params, 'subject_token_type')
        entry = ExchangeEventLog(
            client_id=client_id,
            subject_token_type=raw_type if isinstance(raw_type, str) and raw_type else 'unknown',
            requested_scopes=parse_scope(_first(params, 'scope')),
        )
        try:
            body = self._exchange(client, params, entry)
        except OAuth2Error as error:
            entry.error = error.description or error.error
            logger.warning('Token exchange rejected for client %s: %s', client_id, entry.error)
            raise
        except Exception as error:
            entry.error = str(error) or error.__class__.__name__
            raise
        finally:
            log_exchange_event(self.provider.database, entry)
        logger.info('Token exchange for client %s issued token for %s (policy %s)',
                    client_id, entry.granted_audience, entry.policy_id)
        return body

    def _resolve_token(self, value: str, name: str, client_id: str) -> StoredToken:
        token = self.provider.find_access_token(value)
        if token is None or not token.is_valid:
            raise InvalidGrantError(description=f'invalid {name}')
        if token.client_id != client_id:
            raise InvalidGrantError(description=f'{name} was not issued to the authenticated client')
        if token.kind != 'AccessToken':
            raise InvalidGrantError(description=f'unsupported {name}')
        return token

    def _exchange(self, client, params: Params, entry: ExchangeEventLog) -> dict:
        client_id = client.get_client_id()

        check_requested_token_type(single_param(params, 'requested_token_type'))

        subject_token_type = check_token_type(single_param(params, 'subject_token_type'), 'subject_token_type')
        entry.subject_token_type = subject_token_type

        subject_value = _non_empty(single_param(params, 'subject_token'), 'subject_token')
        subject_token = self._resolve_token(subject_value, 'subject_token', client_id)
        entry.subject = subject_token.account_id
        entry.subject_token_id = subject_token.jti

        audience = resolve_audience(params)
        entry.requested_audience = audience

        actor_value = single_param(params, 'actor_token')
        actor_type = single_param(params, 'actor_token_type')
        actor_present = actor_value is not None
        actor_subject = None
        if actor_present:
            if actor_type is None:
                raise InvalidRequestError(description='actor_token_type must be provided with actor_token')
            actor_type = check_token_type(actor_type, 'actor_token_type')
            if actor_type != subject_token_type:
                raise InvalidRequestError(description='actor_token_type must match subject_token_type')
            actor_token = self._resolve_token(_non_empty(actor_value, 'actor_token'), 'actor_token', client_id)
            actor_subject = actor_token.account_id
            entry.actor_subject = actor_subject

        match = find_applicable_policy(
            self.provider.database,
            client_id=client_id,
            subject=subject_token.account_id,
            subject_token_type=subject_token_type,
            requested_audience=audience,
            actor_present=actor_present,
        )
        if match is None:
            raise InvalidGrantError(description='token exchange is not permitted for this subject or audience')
        entry.policy_id = match.policy.id

        subject_scopes = parse_scope(subject_token.scope)
        explicit = parse_scope(single_param(params, 'scope'))
        requested = explicit or list(subject_scopes)

        missing = [s for s in requested if s not in subject_scopes]
        if missing:
            raise InvalidScopeError(
                description='requested scope exceeds the rights of the subject_token: ' + ' '.join(missing))
        entry.requested_scopes = list(requested)

        allowed = restricting_scopes(match.policy.scopes)
        if allowed is None:
            granted = list(requested)
        else:
            forbidden = [s for s in explicit if s not in allowed]
            if forbidden:
                raise InvalidScopeError(
                    description='requested scope is not permitted by policy: ' + ' '.join(forbidden))
            granted = [s for s in requested if s in allowed]

        extra = dict(subject_token.extra)
        extra['token_exchange'] = {
            'subject_token_jti': subject_token.jti,
            'subject_token_type': subject_token_type,
        }
        if actor_subject:
            extra['act'] = {'sub': actor_subject}
            if subject_token.account_id and subject_token.account_id != actor_subject:
                extra['may_act'] = {'sub': subject_token.account_id}

        scope = scope_to_string(granted)
        issued = self.provider.issue_access_token(
            account_id=subject_token.account_id,
            client=client,
            grant_id=subject_token.grant_id,
            scope=scope,
            gty=GRANT_TYPE,
            audience=audience,
            extra=extra,
            claims=subject_token.claims,
            session_uid=subject_token.session_uid,
            sid=subject_token.sid,
        )

        entry.success = True
        entry.granted_audience = audience
        entry.granted_scopes = list(granted)
        entry.issued_token_id = issued.jti

        body = {
            'access_token': issued.value,
            'issued_token_type': ISSUED_TOKEN_TYPE,
            'token_type': issued.token_type,
            'expires_in': issued.expires_in,
        }
        if scope:
            body['scope'] = scope
        return body


class TokenExchangeGrant(grants.BaseGrant, grants.TokenEndpointMixin):
    GRANT_TYPE = GRANT_TYPE
    TOKEN_ENDPOINT_AUTH_METHODS = CONFIDENTIAL_AUTH_METHODS

    def validate_token_request(self):
        client = self.authenticate_token_endpoint_client()
        if not client.check_grant_type(self.GRANT_TYPE):
            raise UnauthorizedClientError(
                description=f'The client is not authorized to use grant_type {self.GRANT_TYPE}')
        self.request.client = client

    def create_token_response(self):
        datalist = payload_value(self.request, 'datalist') or {}
        params = {name: list(values) for name, values in datalist.items() if name in GRANT_PARAMETERS}
        handler = TokenExchangeHandler(self.server.provider)
        body = handler.handle(self.request.client, params)
        return 200, body, self.TOKEN_RESPONSE_HEADER
