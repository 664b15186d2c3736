"""Token exchange policies and the exchange audit trail."""
from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import Any

from .db import Database
from .models import ExchangeEvent, ExchangePolicy

logger = logging.getLogger(__name__)

WILDCARD = '*'


def normalize_list(value: Any) -> list[str]:
    """Accept a JSON list or a whitespace/comma separated string."""
    if isinstance(value, (list, tuple)):
        items = [str(item).strip() for item in value]
    elif isinstance(value, str):
        items = [item.strip() for item in re.split(r'[\s,]+', value)]
    else:
        return []
    return [item for item in items if item]


@dataclass(frozen=True)
class PolicySnapshot:
    id: str
    client_id: str
    priority: int
    subject: str | None
    subject_token_types: list[str]
    audiences: list[str]
    scopes: list[str] | None
    actor_token_required: bool

    @classmethod
    def from_model(cls, policy: ExchangePolicy) -> 'PolicySnapshot':
        return cls(
            id=policy.id,
            client_id=policy.client_id,
            priority=policy.priority or 0,
            subject=policy.subject,
            subject_token_types=normalize_list(policy.subject_token_types),
            audiences=normalize_list(policy.audiences),
            scopes=None if policy.scopes is None else normalize_list(policy.scopes),
            actor_token_required=bool(policy.actor_token_required),
        )


@dataclass(frozen=True)
class PolicyMatch:
    policy: PolicySnapshot


def matches_subject(policy_subject: str | None, subject: str | None) -> bool:
    if not policy_subject or policy_subject == WILDCARD:
        return True
    if not subject:
        return False
    return policy_subject == subject


def _matches_any(allowed: list[str], presented: str) -> bool:
    if not allowed or WILDCARD in allowed:
        return True
    return presented in allowed


def matches_token_type(policy_types: list[str], presented_type: str) -> bool:
    return _matches_any(normalize_list(policy_types), presented_type)


def matches_audience(policy_audiences: list[str], requested_audience: str) -> bool:
    return _matches_any(normalize_list(policy_audiences), requested_audience)


def matches_actor_requirement(actor_required: bool, actor_present: bool) -> bool:
    return actor_present if actor_required else True


def find_applicable_policy(
    database: Database,
    client_id: str,
    subject: str | None,
    subject_token_type: str,
    requested_audience: str,
    actor_present: bool,
) -> PolicyMatch | None:
    """
    Return the first enabled policy of ``client_id`` whose subject, token type,
    audience and actor predicates all pass. Policies are scanned by priority
    (highest first), oldest first within a priority.
    """
    with database.session() as db:
        records = (
            db.query(ExchangePolicy)
            .filter_by(client_id=client_id, enabled=True)
            .order_by(ExchangePolicy.priority.desc(), ExchangePolicy.created_at.asc())
            .all()
        )
        policies = [PolicySnapshot.from_model(r) for r in records]

    for policy in policies:
        if (
            matches_subject(policy.subject, subject)
            and matches_token_type(policy.subject_token_types, subject_token_type)
            and matches_audience(policy.audiences, requested_audience)
            and matches_actor_requirement(policy.actor_token_required, actor_present)
        ):
            return PolicyMatch(policy=policy)
    return None


@dataclass
class ExchangeEventLog:
    client_id: str
    subject_token_type: str
    success: bool = False
    policy_id: str | None = None
    subject: str | None = None
    subject_token_id: str | None = None
    requested_audience: str | None = None
    granted_audience: str | None = None
    requested_scopes: list[str] = field(default_factory=list)
    granted_scopes: list[str] | None = None
    actor_subject: str | None = None
    error: str | None = None
    issued_token_id: str | None = None


def log_exchange_event(database: Database, entry: ExchangeEventLog) -> None:
    """Append one audit row. Failures are logged and never raised."""
    try:
        with database.session() as db:
            db.add(ExchangeEvent(
                client_id=entry.client_id,
                policy_id=entry.policy_id,
                subject=entry.subject,
                subject_token_type=entry.subject_token_type,
                subject_token_id=entry.subject_token_id,
                requested_audience=entry.requested_audience,
                granted_audience=entry.granted_audience,
                requested_scopes=list(entry.requested_scopes) if entry.requested_scopes is not None else None,
                granted_scopes=list(entry.granted_scopes) if entry.granted_scopes is not None else None,
                actor_subject=entry.actor_subject,
                success=entry.success,
                error=entry.error,
                issued_token_id=entry.issued_token_id,
            ))
            db.commit()
    except Exception:
        logger.exception('Failed to log token exchange event for client %s', entry.client_id)
