"""
End-user sessions, login interactions and consent grants.

All three are plain adapter records (``Session``, ``Interaction``, ``Grant``).
The browser only carries the session id in the Flask session cookie.
"""
from __future__ import annotations

import logging
import secrets

from flask import session as cookie

from .entities import Account, now_ts

logger = logging.getLogger(__name__)

SESSION_COOKIE_KEY = 'idp_session'


def _remaining(payload: dict, default: int) -> int:
    exp = payload.get('exp')
    if isinstance(exp, (int, float)):
        return max(int(exp) - now_ts(), 1)
    return default


def start_interaction(provider, params: dict, return_to: str) -> str:
    """Park an authorization request until the user has logged in."""
    uid = secrets.token_urlsafe(16)
    now = now_ts()
    ttl = provider.settings.interaction_ttl
    provider.adapter('Interaction').upsert(uid, {
        'jti': uid,
        'kind': 'Interaction',
        'uid': uid,
        'prompt': {'name': 'login'},
        'params': params,
        'returnTo': return_to,
        'iat': now,
        'exp': now + ttl,
    }, ttl)
    logger.info('Started login interaction %s for client %s', uid, params.get('client_id'))
    return uid


def find_interaction(provider, uid: str) -> dict | None:
    return provider.adapter('Interaction').find_by_uid(uid)


def finish_login(provider, uid: str, account_id: str) -> str | None:
    """
    Create a session for ``account_id`` and close the interaction. Returns the
    URL to resume the authorization request at, or None when the interaction
    is unknown, expired or already finished.
    """
    interaction = find_interaction(provider, uid)
    if interaction is None:
        return None
    if not provider.adapter('Interaction').consume(interaction['jti']):
        return None

    session_id = secrets.token_urlsafe(32)
    now = now_ts()
    ttl = provider.settings.session_ttl
    provider.adapter('Session').upsert(session_id, {
        'jti': session_id,
        'kind': 'Session',
        'uid': secrets.token_urlsafe(16),
        'accountId': account_id,
        'loginTs': now,
        'authorizations': {},
        'iat': now,
        'exp': now + ttl,
    }, ttl)
    cookie[SESSION_COOKIE_KEY] = session_id
    logger.info('Account %s logged in through interaction %s', account_id, uid)
    return interaction.get('returnTo')


def current_session(provider) -> dict | None:
    session_id = cookie.get(SESSION_COOKIE_KEY)
    if not session_id:
        return None
    payload = provider.adapter('Session').find(session_id)
    if payload is None:
        cookie.pop(SESSION_COOKIE_KEY, None)
    return payload


def ensure_grant(provider, session_payload: dict, client_id: str, scope: str) -> Account:
    """
    Find or create the consent grant of the session's account for
    ``client_id`` and return the account bound to it.
    """
    grants = provider.adapter('Grant')
    authorizations = dict(session_payload.get('authorizations') or {})
    existing = authorizations.get(client_id) or {}
    grant_id = existing.get('grantId')
    grant = grants.find(grant_id) if grant_id else None

    requested = scope.split() if scope else []
    now = now_ts()
    if grant is None:
        grant_id = secrets.token_urlsafe(24)
        grant = {
            'jti': grant_id,
            'kind': 'Grant',
            'accountId': session_payload['accountId'],
            'clientId': client_id,
            'scope': ' '.join(requested),
            'iat': now,
            'exp': now + provider.settings.grant_ttl,
        }
    else:
        granted = grant.get('scope', '').split()
        grant['scope'] = ' '.join(granted + [s for s in requested if s not in granted])
    grant.pop('consumed', None)
    grants.upsert(grant_id, grant, _remaining(grant, provider.settings.grant_ttl))

    sid = existing.get('sid') or secrets.token_urlsafe(16)
    if existing.get('grantId') != grant_id:
        authorizations[client_id] = {'grantId': grant_id, 'sid': sid}
        updated = dict(session_payload, authorizations=authorizations)
        updated.pop('consumed', None)
        provider.adapter('Session').upsert(
            updated['jti'], updated, _remaining(updated, provider.settings.session_ttl))

    return Account(
        session_payload['accountId'],
        grant_id=grant_id,
        session_uid=session_payload.get('uid'),
        sid=sid,
    )
