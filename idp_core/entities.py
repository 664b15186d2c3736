"""Read-only views over adapter payloads, shaped the way Authlib expects."""
from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Any, Mapping


def now_ts() -> int:
    return int(time.time())


class Account:
    """The end user a grant or token is bound to."""

    def __init__(self, account_id: str, grant_id: str | None = None,
                 session_uid: str | None = None, sid: str | None = None):
        self.account_id = account_id
        self.grant_id = grant_id
        self.session_uid = session_uid
        self.sid = sid

    def get_user_id(self) -> str:
        return self.account_id

    def __repr__(self) -> str:
        return f'<Account {self.account_id}>'


@dataclass
class StoredToken:
    """An access, client-credentials or refresh token as persisted by the adapter."""

    kind: str
    jti: str
    client_id: str | None
    account_id: str | None = None
    grant_id: str | None = None
    session_uid: str | None = None
    sid: str | None = None
    scope: str = ''
    gty: str | None = None
    audience: str | list[str] | None = None
    extra: dict[str, Any] = field(default_factory=dict)
    claims: dict[str, Any] | None = None
    iat: int | None = None
    exp: int | None = None
    consumed: int | None = None

    @classmethod
    def from_payload(cls, kind: str, jti: str, payload: Mapping[str, Any]) -> 'StoredToken':
        return cls(
            kind=payload.get('kind', kind),
            jti=payload.get('jti', jti),
            client_id=payload.get('clientId'),
            account_id=payload.get('accountId'),
            grant_id=payload.get('grantId'),
            session_uid=payload.get('sessionUid'),
            sid=payload.get('sid'),
            scope=payload.get('scope') or '',
            gty=payload.get('gty'),
            audience=payload.get('aud'),
            extra=dict(payload.get('extra') or {}),
            claims=payload.get('claims'),
            iat=payload.get('iat'),
            exp=payload.get('exp'),
            consumed=payload.get('consumed'),
        )

    @property
    def is_valid(self) -> bool:
        return not self.is_expired() and not self.is_revoked()

    # Authlib token contract
    def is_expired(self) -> bool:
        return isinstance(self.exp, (int, float)) and self.exp <= now_ts()

    def is_revoked(self) -> bool:
        return self.consumed is not None

    def get_scope(self) -> str:
        return self.scope

    def get_expires_in(self) -> int:
        if not isinstance(self.exp, (int, float)):
            return 0
        return max(int(self.exp) - now_ts(), 0)

    def check_client(self, client) -> bool:
        return self.client_id == client.get_client_id()


class StoredAuthorizationCode:
    def __init__(self, code: str, payload: Mapping[str, Any]):
        self.code = code
        self.payload = dict(payload)

    @property
    def account_id(self) -> str | None:
        return self.payload.get('accountId')

    @property
    def grant_id(self) -> str | None:
        return self.payload.get('grantId')

    @property
    def session_uid(self) -> str | None:
        return self.payload.get('sessionUid')

    @property
    def consumed(self) -> int | None:
        return self.payload.get('consumed')

    # Authlib authorization code contract
    def get_redirect_uri(self) -> str | None:
        return self.payload.get('redirectUri')

    def get_scope(self) -> str:
        return self.payload.get('scope') or ''

    # rfc7636.CodeChallenge reads these as attributes
    @property
    def code_challenge(self) -> str | None:
        return self.payload.get('codeChallenge')

    @property
    def code_challenge_method(self) -> str | None:
        return self.payload.get('codeChallengeMethod')

    def get_code_challenge(self) -> str | None:
        return self.code_challenge

    def get_code_challenge_method(self) -> str | None:
        return self.code_challenge_method

    def get_nonce(self) -> str | None:
        return self.payload.get('nonce')

    def get_auth_time(self) -> int | None:
        return self.payload.get('authTime')


@dataclass(frozen=True)
class IssuedToken:
    value: str
    token_type: str
    expires_in: int
    jti: str
