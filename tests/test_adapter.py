from datetime import timedelta

from idp_core.adapter import GRANTABLE_KINDS, SQLAlchemyAdapter
from idp_core.db import utcnow
from idp_core.models import TokenRecord


def _expire(database, id, kind):
    with database.session() as db:
        db.query(TokenRecord).filter_by(id=id, kind=kind).update(
            {'expires_at': utcnow() - timedelta(seconds=5)})
        db.commit()


def _exists(database, id, kind):
    with database.session() as db:
        return db.get(TokenRecord, (id, kind)) is not None


def test_upsert_then_find_returns_payload(database):
    adapter = SQLAlchemyAdapter('AccessToken', database)
    adapter.upsert('at-1', {'jti': 'at-1', 'accountId': 'U1', 'scope': 'read'}, 60)
    payload = adapter.find('at-1')
    assert payload == {'jti': 'at-1', 'accountId': 'U1', 'scope': 'read'}


def test_find_is_scoped_by_kind(database):
    SQLAlchemyAdapter('AccessToken', database).upsert('same-id', {'v': 'access'})
    SQLAlchemyAdapter('RefreshToken', database).upsert('same-id', {'v': 'refresh'})
    assert SQLAlchemyAdapter('AccessToken', database).find('same-id') == {'v': 'access'}
    assert SQLAlchemyAdapter('RefreshToken', database).find('same-id') == {'v': 'refresh'}
    assert SQLAlchemyAdapter('Session', database).find('same-id') is None


def test_upsert_replaces_whole_record_and_resets_consumption(database):
    adapter = SQLAlchemyAdapter('AuthorizationCode', database)
    adapter.upsert('code-1', {'a': 1, 'b': 2}, 60)
    assert adapter.consume('code-1') is True
    adapter.upsert('code-1', {'a': 3}, 60)
    payload = adapter.find('code-1')
    assert payload == {'a': 3}
    with database.session() as db:
        assert db.query(TokenRecord).filter_by(id='code-1').count() == 1


def test_expired_record_is_not_returned_and_is_deleted(database):
    adapter = SQLAlchemyAdapter('Interaction', database)
    adapter.upsert('int-1', {'uid': 'uid-1', 'userCode': 'ABCD'}, 60)
    _expire(database, 'int-1', 'Interaction')

    assert adapter.find('int-1') is None
    assert not _exists(database, 'int-1', 'Interaction')


def test_expired_record_is_deleted_by_secondary_lookups(database):
    adapter = SQLAlchemyAdapter('DeviceCode', database)
    adapter.upsert('dc-1', {'userCode': 'WXYZ-1234'}, 60)
    _expire(database, 'dc-1', 'DeviceCode')
    assert adapter.find_by_user_code('WXYZ-1234') is None
    assert not _exists(database, 'dc-1', 'DeviceCode')

    sessions = SQLAlchemyAdapter('Session', database)
    sessions.upsert('sess-1', {'uid': 'suid-1'}, 60)
    _expire(database, 'sess-1', 'Session')
    assert sessions.find_by_uid('suid-1') is None
    assert not _exists(database, 'sess-1', 'Session')


def test_find_by_user_code_and_uid(database):
    devices = SQLAlchemyAdapter('DeviceCode', database)
    devices.upsert('dc-1', {'userCode': 'ABCD-EFGH', 'clientId': 'c'}, 600)
    assert devices.find_by_user_code('ABCD-EFGH')['clientId'] == 'c'
    assert devices.find_by_user_code('nope') is None

    sessions = SQLAlchemyAdapter('Session', database)
    sessions.upsert('sess-1', {'uid': 'uid-42', 'accountId': 'U1'})
    assert sessions.find_by_uid('uid-42')['accountId'] == 'U1'
    # Secondary lookups are still kind scoped
    assert SQLAlchemyAdapter('Interaction', database).find_by_uid('uid-42') is None


def test_secondary_lookups_with_empty_key_find_nothing(database):
    sessions = SQLAlchemyAdapter('Session', database)
    sessions.upsert('sess-1', {'accountId': 'U1'})
    devices = SQLAlchemyAdapter('DeviceCode', database)
    devices.upsert('dc-1', {'clientId': 'c'})

    assert sessions.find_by_uid(None) is None
    assert sessions.find_by_uid('') is None
    assert devices.find_by_user_code(None) is None
    assert _exists(database, 'sess-1', 'Session')


def test_expiry_delete_spares_a_refreshed_record(database, monkeypatch):
    adapter = SQLAlchemyAdapter('Session', database)
    adapter.upsert('sess-1', {'accountId': 'U1'}, 600)
    # The read sees a stale expiry while the stored row has been refreshed
    monkeypatch.setattr('idp_core.adapter.as_utc', lambda value: utcnow() - timedelta(seconds=5))

    assert adapter.find('sess-1') is None
    assert _exists(database, 'sess-1', 'Session')


def test_consume_sets_timestamp_once(database):
    adapter = SQLAlchemyAdapter('AuthorizationCode', database)
    adapter.upsert('code-1', {'jti': 'code-1'}, 60)
    assert 'consumed' not in adapter.find('code-1')

    assert adapter.consume('code-1') is True
    first = adapter.find('code-1')['consumed']
    assert isinstance(first, int)

    assert adapter.consume('code-1') is False
    assert adapter.find('code-1')['consumed'] == first


def test_consume_unknown_record_is_a_noop(database):
    adapter = SQLAlchemyAdapter('AuthorizationCode', database)
    assert adapter.consume('missing') is False


def test_consumed_record_is_not_deleted(database):
    adapter = SQLAlchemyAdapter('RefreshToken', database)
    adapter.upsert('rt-1', {'jti': 'rt-1'}, 60)
    adapter.consume('rt-1')
    assert _exists(database, 'rt-1', 'RefreshToken')


def test_destroy_removes_only_that_kind(database):
    SQLAlchemyAdapter('AccessToken', database).upsert('x', {})
    SQLAlchemyAdapter('RefreshToken', database).upsert('x', {})
    SQLAlchemyAdapter('AccessToken', database).destroy('x')
    assert not _exists(database, 'x', 'AccessToken')
    assert _exists(database, 'x', 'RefreshToken')


def test_revoke_by_grant_id_cascades_only_grantable_kinds(database):
    grantable = sorted(GRANTABLE_KINDS)
    assert {'DeviceCode', 'BackchannelAuthenticationRequest'} <= set(grantable)
    for i, kind in enumerate(grantable):
        SQLAlchemyAdapter(kind, database).upsert(f'g-{i}', {'grantId': 'G'})
    SQLAlchemyAdapter('Grant', database).upsert('grant-rec', {'grantId': 'G'})
    SQLAlchemyAdapter('Interaction', database).upsert('int-rec', {'grantId': 'G'})
    SQLAlchemyAdapter('AccessToken', database).upsert('other', {'grantId': 'H'})

    SQLAlchemyAdapter('AccessToken', database).revoke_by_grant_id('G')

    for i, kind in enumerate(grantable):
        assert not _exists(database, f'g-{i}', kind)
    assert _exists(database, 'grant-rec', 'Grant')
    assert _exists(database, 'int-rec', 'Interaction')
    assert _exists(database, 'other', 'AccessToken')


def test_revoke_by_grant_id_is_noop_for_non_grantable_adapter(database):
    SQLAlchemyAdapter('AccessToken', database).upsert('at', {'grantId': 'G'})
    SQLAlchemyAdapter('Interaction', database).revoke_by_grant_id('G')
    assert _exists(database, 'at', 'AccessToken')
    assert 'Interaction' not in GRANTABLE_KINDS


def test_grant_cleaner_removes_every_kind(database):
    SQLAlchemyAdapter('AccessToken', database).upsert('at', {'grantId': 'G'})
    SQLAlchemyAdapter('Interaction', database).upsert('int', {'grantId': 'G'})
    SQLAlchemyAdapter('AccessToken', database).upsert('keep', {'grantId': 'K'})

    SQLAlchemyAdapter('Grant', database).grant_cleaner('G')

    assert not _exists(database, 'at', 'AccessToken')
    assert not _exists(database, 'int', 'Interaction')
    assert _exists(database, 'keep', 'AccessToken')


def test_numeric_fields_round_trip_as_numbers(database):
    adapter = SQLAlchemyAdapter('AccessToken', database)
    adapter.upsert('at-1', {'exp': '1700000000', 'iat': '1.5', 'nbf': 'soon', 'auth_time': 1699999999,
                            'other': '42'})
    payload = adapter.find('at-1')
    assert payload['exp'] == 1700000000
    assert isinstance(payload['exp'], int)
    assert payload['iat'] == 1.5
    assert payload['nbf'] == 'soon'
    assert payload['auth_time'] == 1699999999
    assert payload['other'] == '42'


def test_clean_expired_sweeps_all_kinds(database):
    SQLAlchemyAdapter('AccessToken', database).upsert('old-at', {}, 60)
    SQLAlchemyAdapter('Session', database).upsert('old-sess', {}, 60)
    SQLAlchemyAdapter('Session', database).upsert('live-sess', {}, 600)
    SQLAlchemyAdapter('Grant', database).upsert('forever', {})
    _expire(database, 'old-at', 'AccessToken')
    _expire(database, 'old-sess', 'Session')

    SQLAlchemyAdapter('AccessToken', database).clean_expired()

    assert not _exists(database, 'old-at', 'AccessToken')
    assert not _exists(database, 'old-sess', 'Session')
    assert _exists(database, 'live-sess', 'Session')
    assert _exists(database, 'forever', 'Grant')


def test_observer_sees_every_kind(database):
    events = []
    observer = lambda event, kind, id, details: events.append((event, kind, id))  # noqa: E731

    interactions = SQLAlchemyAdapter('Interaction', database, observer=observer)
    tokens = SQLAlchemyAdapter('AccessToken', database, observer=observer)
    interactions.upsert('i-1', {'uid': 'u'}, 60)
    interactions.find('i-1')
    tokens.find('missing')
    tokens.upsert('t-1', {}, 60)
    tokens.consume('t-1')
    tokens.destroy('t-1')

    assert events == [
        ('upsert', 'Interaction', 'i-1'),
        ('hit', 'Interaction', 'i-1'),
        ('miss', 'AccessToken', 'missing'),
        ('upsert', 'AccessToken', 't-1'),
        ('consume', 'AccessToken', 't-1'),
        ('destroy', 'AccessToken', 't-1'),
    ]
