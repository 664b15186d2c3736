"""Runtime configuration for the identity provider.

Values come from environment variables so the same code runs under a WSGI
server, in tests and from ``server.py``.
"""
from __future__ import annotations

import logging
import os
import sys
from dataclasses import dataclass, field


def _env_bool(name: str, default: bool) -> bool:
    raw = os.environ.get(name)
    if raw is None:
        return default
    return raw.strip().lower() in ('1', 'true', 'yes', 'on')


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None or not raw.strip():
        return default
    return int(raw)


@dataclass
class Settings:
    database_url: str = 'sqlite:///idp.db'
    secret_key: bytes | str = field(default_factory=lambda: os.urandom(32))
    admin_token: str | None = None
    issuer: str = 'http://localhost:8000'
    # Where the external login UI lives; ``{uid}`` is the interaction id
    interaction_url: str = '/interaction/{uid}'
    require_pkce: bool = True
    access_token_ttl: int = 600
    authorization_code_ttl: int = 300
    refresh_token_ttl: int = 60 * 60 * 24 * 30
    interaction_ttl: int = 60 * 60
    session_ttl: int = 60 * 60 * 24 * 14
    grant_ttl: int = 60 * 60 * 24 * 14
    log_level: str = 'INFO'

    @classmethod
    def from_env(cls) -> 'Settings':
        defaults = cls()
        return cls(
            database_url=os.environ.get('DATABASE_URL', defaults.database_url),
            secret_key=os.environ.get('APP_SECRET') or defaults.secret_key,
            admin_token=os.environ.get('ADMIN_TOKEN') or None,
            issuer=os.environ.get('IDP_ISSUER', defaults.issuer),
            interaction_url=os.environ.get('IDP_INTERACTION_URL', defaults.interaction_url),
            require_pkce=_env_bool('IDP_REQUIRE_PKCE', defaults.require_pkce),
            access_token_ttl=_env_int('IDP_ACCESS_TOKEN_TTL', defaults.access_token_ttl),
            authorization_code_ttl=_env_int('IDP_AUTHORIZATION_CODE_TTL', defaults.authorization_code_ttl),
            refresh_token_ttl=_env_int('IDP_REFRESH_TOKEN_TTL', defaults.refresh_token_ttl),
            interaction_ttl=_env_int('IDP_INTERACTION_TTL', defaults.interaction_ttl),
            session_ttl=_env_int('IDP_SESSION_TTL', defaults.session_ttl),
            grant_ttl=_env_int('IDP_GRANT_TTL', defaults.grant_ttl),
            log_level=os.environ.get('LOG_LEVEL', defaults.log_level),
        )


def configure_logging(level: str = 'INFO') -> None:
    """Configure root logging with a pipe-separated format on stdout."""
    logging.basicConfig(
        level=level.upper(),
        format='%(asctime)s | %(levelname)s | %(name)s | %(message)s',
        stream=sys.stdout,
    )
