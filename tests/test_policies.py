from datetime import timedelta

import pytest

from idp_core import policies
from idp_core.db import utcnow
from idp_core.models import ExchangeEvent, ExchangePolicy
from idp_core.policies import (
    ExchangeEventLog,
    find_applicable_policy,
    log_exchange_event,
    matches_actor_requirement,
    matches_audience,
    matches_subject,
    matches_token_type,
    normalize_list,
)

AT = 'urn:ietf:params:oauth:token-type:access_token'


def _add(database, **fields):
    fields.setdefault('client_id', 'C')
    policy = ExchangePolicy(**fields)
    with database.session() as db:
        db.add(policy)
        db.commit()
    return policy


def _find(database, client_id='C', subject='U1', token_type=AT, audience='svcB', actor=False):
    return find_applicable_policy(database, client_id, subject, token_type, audience, actor)


def test_higher_priority_wins(database):
    low = _add(database, priority=5, audiences=['svcB'])
    high = _add(database, priority=10, audiences=['svcB'])
    match = _find(database)
    assert match.policy.id == high.id
    assert match.policy.id != low.id


def test_equal_priority_prefers_oldest(database):
    now = utcnow()
    newer = _add(database, priority=0, created_at=now)
    older = _add(database, priority=0, created_at=now - timedelta(hours=1))
    assert _find(database).policy.id == older.id
    assert newer.id != older.id


def test_disabled_policies_are_ignored(database):
    _add(database, priority=10, enabled=False)
    enabled = _add(database, priority=1)
    assert _find(database).policy.id == enabled.id


def test_other_clients_policies_are_ignored(database):
    _add(database, client_id='D')
    assert _find(database) is None


def test_first_matching_policy_skips_non_matching(database):
    _add(database, priority=10, audiences=['svcA'])
    fallback = _add(database, priority=1, audiences=['svcB'])
    assert _find(database).policy.id == fallback.id


def test_actor_required_policy_needs_actor(database):
    _add(database, actor_token_required=True)
    assert _find(database, actor=False) is None
    assert _find(database, actor=True) is not None


def test_snapshot_keeps_null_scopes_distinct_from_empty(database):
    _add(database, priority=2, scopes=None)
    assert _find(database).policy.scopes is None


@pytest.mark.parametrize('policy_subject,subject,expected', [
    (None, 'U1', True),
    ('*', 'U1', True),
    ('*', None, True),
    ('U1', 'U1', True),
    ('U1', 'U2', False),
    ('U1', None, False),
])
def test_matches_subject(policy_subject, subject, expected):
    assert matches_subject(policy_subject, subject) is expected


def test_list_predicates_treat_empty_and_wildcard_as_any():
    assert matches_token_type([], AT)
    assert matches_token_type(['*'], 'anything')
    assert matches_token_type([AT], AT)
    assert not matches_token_type(['urn:other'], AT)
    assert matches_audience([], 'svcB')
    assert matches_audience(['svcA', '*'], 'svcB')
    assert not matches_audience(['svcA'], 'svcB')


def test_actor_requirement():
    assert matches_actor_requirement(False, False)
    assert matches_actor_requirement(False, True)
    assert matches_actor_requirement(True, True)
    assert not matches_actor_requirement(True, False)


def test_normalize_list_accepts_strings_and_lists():
    assert normalize_list('svcA svcB,svcC') == ['svcA', 'svcB', 'svcC']
    assert normalize_list([' a ', '', 'b']) == ['a', 'b']
    assert normalize_list(None) == []


def test_policy_lists_stored_as_strings_still_match(database):
    _add(database, audiences='svcA svcB', subject_token_types=AT)
    assert _find(database) is not None


def test_log_exchange_event_persists_row(database):
    log_exchange_event(database, ExchangeEventLog(
        client_id='C', subject_token_type=AT, success=True, requested_scopes=['read'], granted_scopes=['read']))
    with database.session() as db:
        event = db.query(ExchangeEvent).one()
    assert event.success is True
    assert event.granted_scopes == ['read']


def test_log_exchange_event_swallows_storage_errors(database, monkeypatch, caplog):
    def broken(**kwargs):
        raise RuntimeError('database is gone')

    monkeypatch.setattr(policies, 'ExchangeEvent', broken)
    log_exchange_event(database, ExchangeEventLog(client_id='C', subject_token_type=AT))
    assert 'Failed to log token exchange event' in caplog.text
