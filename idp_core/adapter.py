"""SQLAlchemy-backed storage adapter for the OAuth runtime.

Every runtime entity (codes, tokens, sessions, grants, interactions, ...) lives
in the single ``oidc_adapter_store`` table, partitioned by ``kind``. One
adapter instance is created per kind, but grant revocation and the expiry
sweep act across kinds.
"""
from __future__ import annotations

import json
import logging
import math
from datetime import timedelta
from typing import Any, Callable, Mapping

from sqlalchemy.dialects import postgresql, sqlite

from .db import Database, as_utc, utcnow
from .models import TokenRecord

logger = logging.getLogger(__name__)

Payload = dict[str, Any]
StoreObserver = Callable[[str, str, str, Mapping[str, Any]], None]

GRANTABLE_KINDS = frozenset({
    'AccessToken',
    'AuthorizationCode',
    'BackchannelAuthenticationRequest',
    'ClientCredentials',
    'DeviceCode',
    'RefreshToken',
    'Session',
})

TTL_KINDS = frozenset({
    'AccessToken',
    'AuthorizationCode',
    'BackchannelAuthenticationRequest',
    'ClientCredentials',
    'DeviceCode',
    'RefreshToken',
    'Interaction',
    'Session',
    'Grant',
    'PushedAuthorizationRequest',
})

NUMERIC_FIELDS = ('exp', 'iat', 'nbf', 'auth_time')


def log_store_event(event: str, kind: str, id: str, details: Mapping[str, Any]) -> None:
    logger.debug('%s %s id=%s %s', kind, event, id, dict(details))


def _coerce_number(value: Any) -> Any:
    if not isinstance(value, str) or value == '':
        return value
    try:
        return int(value)
    except ValueError:
        pass
    try:
        parsed = float(value)
    except ValueError:
        return value
    return parsed if math.isfinite(parsed) else value


class SQLAlchemyAdapter:
    """Storage contract the runtime uses for one entity ``kind``."""

    def __init__(self, kind: str, database: Database, observer: StoreObserver | None = None):
        self.kind = kind
        self.database = database
        self.observer = observer or log_store_event

    def _notify(self, event: str, id: str, **details: Any) -> None:
        self.observer(event, self.kind, id, details)

    # ----------------------
    # Writes
    # ----------------------
    def upsert(self, id: str, payload: Mapping[str, Any], expires_in: int | None = None) -> None:
        """Insert or fully replace the ``(id, kind)`` record."""
        stored = dict(payload)
        now = utcnow()
        values = {
            'id': id,
            'kind': self.kind,
            'payload': stored,
            'grant_id': stored.get('grantId'),
            'user_code': stored.get('userCode'),
            'uid': stored.get('uid'),
            'expires_at': now + timedelta(seconds=expires_in) if expires_in else None,
            'consumed_at': None,
            'created_at': now,
            'updated_at': now,
        }
        replace = {k: v for k, v in values.items() if k not in ('id', 'kind', 'created_at')}
        with self.database.session() as db:
            dialect = self.database.dialect
            if dialect in ('sqlite', 'postgresql'):
                insert = sqlite.insert if dialect == 'sqlite' else postgresql.insert
                stmt = insert(TokenRecord).values(**values)
                stmt = stmt.on_conflict_do_update(index_elements=['id', 'kind'], set_=replace)
                db.execute(stmt)
            else:
                existing = db.get(TokenRecord, (id, self.kind))
                if existing is None:
                    db.add(TokenRecord(**values))
                else:
                    for key, value in replace.items():
                        setattr(existing, key, value)
            db.commit()
        self._notify('upsert', id, expires_at=values['expires_at'], keys=sorted(stored))

    def destroy(self, id: str) -> None:
        with self.database.session() as db:
            deleted = db.query(TokenRecord).filter_by(id=id, kind=self.kind).delete(synchronize_session=False)
            db.commit()
        self._notify('destroy', id, deleted=deleted)

    def consume(self, id: str) -> bool:
        """
        Mark the record as redeemed. The update only matches a record that has
        not been consumed yet, so of two racing calls exactly one returns True
        and the first timestamp is kept.
        """
        with self.database.session() as db:
            updated = (
                db.query(TokenRecord)
                .filter(TokenRecord.id == id, TokenRecord.kind == self.kind, TokenRecord.consumed_at.is_(None))
                .update({'consumed_at': utcnow()}, synchronize_session=False)
            )
            db.commit()
        self._notify('consume', id, consumed=bool(updated))
        return bool(updated)

    def revoke_by_grant_id(self, grant_id: str) -> None:
        if self.kind not in GRANTABLE_KINDS:
            return
        with self.database.session() as db:
            deleted = (
                db.query(TokenRecord)
                .filter(TokenRecord.grant_id == grant_id, TokenRecord.kind.in_(GRANTABLE_KINDS))
                .delete(synchronize_session=False)
            )
            db.commit()
        self._notify('revoke', grant_id, deleted=deleted)

    def clean_expired(self) -> None:
        with self.database.session() as db:
            deleted = (
                db.query(TokenRecord)
                .filter(TokenRecord.expires_at.is_not(None), TokenRecord.expires_at < utcnow())
                .delete(synchronize_session=False)
            )
            db.commit()
        self._notify('clean', '*', deleted=deleted)

    def grant_cleaner(self, grant_id: str) -> None:
        """Drop every record of any kind tied to ``grant_id``."""
        with self.database.session() as db:
            deleted = db.query(TokenRecord).filter_by(grant_id=grant_id).delete(synchronize_session=False)
            db.commit()
        self._notify('revoke', grant_id, deleted=deleted, all_kinds=True)

    # ----------------------
    # Reads
    # ----------------------
    def find(self, id: str) -> Payload | None:
        return self._find_one(id, id=id)

    def find_by_user_code(self, user_code: str) -> Payload | None:
        return self._find_one(user_code, user_code=user_code)

    def find_by_uid(self, uid: str) -> Payload | None:
        return self._find_one(uid, uid=uid)

    def _find_one(self, key: str, **criteria: str) -> Payload | None:
        # a NULL lookup key would match every record without one
        if not key:
            self._notify('miss', key)
            return None
        with self.database.session() as db:
            entry = db.query(TokenRecord).filter_by(kind=self.kind, **criteria).first()
            if entry is None:
                self._notify('miss', key)
                return None
            record_id = entry.id
            expires_at = as_utc(entry.expires_at)
            now = utcnow()
            if expires_at is not None and expires_at < now:
                # only the stale row; a concurrent upsert may have refreshed it
                (
                    db.query(TokenRecord)
                    .filter(
                        TokenRecord.id == record_id,
                        TokenRecord.kind == self.kind,
                        TokenRecord.expires_at.is_not(None),
                        TokenRecord.expires_at < now,
                    )
                    .delete(synchronize_session=False)
                )
                db.commit()
                self._notify('expired', record_id)
                return None
            payload = self._sanitize(entry)
        self._notify('hit', record_id, keys=sorted(payload))
        return payload

    @staticmethod
    def _sanitize(entry: TokenRecord) -> Payload:
        raw = entry.payload
        payload = json.loads(raw) if isinstance(raw, str) else dict(raw or {})
        for field in NUMERIC_FIELDS:
            if field in payload:
                payload[field] = _coerce_number(payload[field])
        consumed_at = as_utc(entry.consumed_at)
        if consumed_at is not None:
            payload['consumed'] = int(consumed_at.timestamp())
        return payload
