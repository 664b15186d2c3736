from __future__ import annotations

import uuid

from authlib.oauth2.rfc6749 import ClientMixin
from authlib.oauth2.rfc6749.util import scope_to_list
from sqlalchemy import JSON, Boolean, Column, DateTime, Index, Integer, String, Text
from werkzeug.security import check_password_hash, generate_password_hash

from .db import Base, utcnow


def _split(value: str | None) -> list[str]:
    if not value:
        return []
    return [u.strip() for u in value.replace("\n", " ").split(" ") if u.strip()]


def _new_id() -> str:
    return str(uuid.uuid4())


class OAuth2Client(Base, ClientMixin):
    __tablename__ = 'oauth2_client'
    id = Column(Integer, primary_key=True)
    client_id = Column(String(128), unique=True, nullable=False)
    client_secret_hash = Column(String(255), nullable=True)  # public clients have none
    client_name = Column(String(255))
    grant_types = Column(Text)          # space separated
    redirect_uris = Column(Text)        # space/newline separated
    response_types = Column(String(120))
    scope = Column(Text)                # space separated
    token_endpoint_auth_method = Column(String(120), default='client_secret_basic')
    created_at = Column(DateTime(timezone=True), default=utcnow)

    def set_client_secret(self, secret: str | None) -> None:
        self.client_secret_hash = generate_password_hash(secret) if secret else None

    def get_client_id(self) -> str:
        return self.client_id

    def get_default_redirect_uri(self) -> str | None:
        allowed = _split(self.redirect_uris)
        return allowed[0] if allowed else None

    def get_allowed_scope(self, scope: str) -> str:
        if not scope:
            return ''
        allowed = set(scope_to_list(self.scope or ''))
        return ' '.join(s for s in scope_to_list(scope) if s in allowed)

    def check_redirect_uri(self, redirect_uri: str) -> bool:
        return redirect_uri in _split(self.redirect_uris)

    def check_client_secret(self, client_secret: str | None) -> bool:
        if not self.client_secret_hash:
            return False
        return bool(client_secret and check_password_hash(self.client_secret_hash, client_secret))

    def check_endpoint_auth_method(self, method: str, endpoint: str) -> bool:
        """
        Authlib calls this for every authenticated endpoint ('token', 'revocation',
        'introspection'). Public clients may only use 'none'.
        """
        if not self.client_secret_hash:
            return method == 'none'
        configured = (self.token_endpoint_auth_method or '').strip() or 'client_secret_basic'
        return method == configured

    def check_response_type(self, response_type: str) -> bool:
        return response_type in _split(self.response_types)

    def check_grant_type(self, grant_type: str) -> bool:
        return grant_type in _split(self.grant_types)

    def to_dict(self) -> dict:
        return {
            'client_id': self.client_id,
            'client_name': self.client_name,
            'grant_types': _split(self.grant_types),
            'redirect_uris': _split(self.redirect_uris),
            'response_types': _split(self.response_types),
            'scope': self.scope or '',
            'token_endpoint_auth_method': self.token_endpoint_auth_method,
            'public': not self.client_secret_hash,
        }


class TokenRecord(Base):
    """One persisted runtime entity; ``kind`` partitions the id namespace."""

    __tablename__ = 'oidc_adapter_store'
    id = Column(String(128), primary_key=True)
    kind = Column(String(64), primary_key=True)
    payload = Column(JSON, nullable=False, default=dict)
    grant_id = Column(String(128), nullable=True)
    user_code = Column(String(128), nullable=True, unique=True)
    uid = Column(String(128), nullable=True, unique=True)
    expires_at = Column(DateTime(timezone=True), nullable=True)
    consumed_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        Index('oidc_adapter_store_kind_idx', 'kind'),
        Index('oidc_adapter_store_grant_id_idx', 'grant_id'),
        Index('oidc_adapter_store_expires_at_idx', 'expires_at'),
    )


class ExchangePolicy(Base):
    __tablename__ = 'token_exchange_policies'
    id = Column(String(36), primary_key=True, default=_new_id)
    client_id = Column(String(128), nullable=False)
    priority = Column(Integer, nullable=False, default=0)
    subject = Column(String(255), nullable=True)           # None or '*' matches any account
    subject_token_types = Column(JSON, nullable=False, default=list)
    audiences = Column(JSON, nullable=False, default=list)
    scopes = Column(JSON, nullable=True)                    # None/[] inherit requested scopes
    actor_token_required = Column(Boolean, nullable=False, default=False)
    enabled = Column(Boolean, nullable=False, default=True)
    description = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        Index('token_exchange_policies_client_priority_idx', 'client_id', 'priority'),
        Index('token_exchange_policies_client_subject_idx', 'client_id', 'subject'),
    )

    def to_dict(self) -> dict:
        return {
            'id': self.id,
            'client_id': self.client_id,
            'priority': self.priority,
            'subject': self.subject,
            'subject_token_types': self.subject_token_types or [],
            'audiences': self.audiences or [],
            'scopes': self.scopes,
            'actor_token_required': bool(self.actor_token_required),
            'enabled': bool(self.enabled),
            'description': self.description,
            'created_at': self.created_at.isoformat() if self.created_at else None,
            'updated_at': self.updated_at.isoformat() if self.updated_at else None,
        }


class ExchangeEvent(Base):
    """Audit trail of token exchange attempts. Rows are never updated."""

    __tablename__ = 'token_exchange_events'
    id = Column(String(36), primary_key=True, default=_new_id)
    client_id = Column(String(128), nullable=False)
    policy_id = Column(String(36), nullable=True)
    subject = Column(String(255), nullable=True)
    subject_token_type = Column(String(255), nullable=False)
    subject_token_id = Column(String(255), nullable=True)
    requested_audience = Column(String(512), nullable=True)
    granted_audience = Column(String(512), nullable=True)
    requested_scopes = Column(JSON, nullable=True)
    granted_scopes = Column(JSON, nullable=True)
    actor_subject = Column(String(255), nullable=True)
    success = Column(Boolean, nullable=False, default=False)
    error = Column(Text, nullable=True)
    issued_token_id = Column(String(255), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)

    __table_args__ = (
        Index('token_exchange_events_client_created_idx', 'client_id', 'created_at'),
    )

    def to_dict(self) -> dict:
        return {
            'id': self.id,
            'client_id': self.client_id,
            'policy_id': self.policy_id,
            'subject': self.subject,
            'subject_token_type': self.subject_token_type,
            'subject_token_id': self.subject_token_id,
            'requested_audience': self.requested_audience,
            'granted_audience': self.granted_audience,
            'requested_scopes': self.requested_scopes,
            'granted_scopes': self.granted_scopes,
            'actor_subject': self.actor_subject,
            'success': bool(self.success),
            'error': self.error,
            'issued_token_id': self.issued_token_id,
            'created_at': self.created_at.isoformat() if self.created_at else None,
        }
