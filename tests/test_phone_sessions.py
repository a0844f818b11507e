import pytest
from unittest.mock import patch

from api.services.sessions import PhoneSessionService, wants_new_session, next_version
from api.services.storage import SessionRecord
from lib.error_handler import InvalidIdentifierError
from conftest import T0, MINUTE, HOUR

DAY = 24 * HOUR
PHONE = '+1 (234) 567-8900'


@pytest.fixture
def phone_sessions(session_store):
    return PhoneSessionService(session_store, gap_ms=DAY)


def active_rows(fake_supabase):
    return [row for row in fake_supabase.rows() if row['is_active']]


def test_first_message_creates_v1(phone_sessions, fake_supabase):
    assert phone_sessions.resolve_session_id('sms', PHONE, 'hello', now=T0) == '12345678900-v1'
    row = fake_supabase.rows()[0]
    assert row['session_key'] == 'sms-12345678900'
    assert row['created_at'] == row['last_activity'] == T0


def test_conversation_continues_then_rotates(phone_sessions, fake_supabase):
    assert phone_sessions.resolve_session_id('sms', PHONE, 'hi', now=T0) == '12345678900-v1'
    assert phone_sessions.resolve_session_id('sms', PHONE, 'more', now=T0 + 5 * MINUTE) == '12345678900-v1'
    assert active_rows(fake_supabase)[0]['last_activity'] == T0 + 5 * MINUTE

    assert phone_sessions.resolve_session_id('sms', PHONE, 'back', now=T0 + 25 * HOUR) == '12345678900-v2'
    assert len(active_rows(fake_supabase)) == 1


def test_gap_is_inclusive(phone_sessions):
    phone_sessions.resolve_session_id('sms', PHONE, now=T0)
    assert phone_sessions.resolve_session_id('sms', PHONE, now=T0 + DAY) == '12345678900-v1'
    assert phone_sessions.resolve_session_id('sms', PHONE, now=T0 + 2 * DAY + 1) == '12345678900-v2'


def test_new_session_command(phone_sessions):
    phone_sessions.resolve_session_id('sms', PHONE, 'hi', now=T0)
    assert phone_sessions.resolve_session_id('sms', PHONE, 'Please start a NEW SESSION', now=T0 + MINUTE) \
        == '12345678900-v2'
    assert phone_sessions.resolve_session_id('sms', PHONE, 'thanks', now=T0 + 2 * MINUTE) == '12345678900-v2'


def test_new_session_command_on_first_message(phone_sessions):
    assert phone_sessions.resolve_session_id('sms', PHONE, 'new session', now=T0) == '12345678900-v1'


def test_channels_are_separate(phone_sessions, fake_supabase):
    phone_sessions.resolve_session_id('sms', PHONE, now=T0)
    phone_sessions.resolve_session_id('whatsapp', 'whatsapp:+12345678900', now=T0 + MINUTE)
    rows = sorted((row['session_key'], row['session_id']) for row in fake_supabase.rows())
    assert rows == [('sms-12345678900', '12345678900-v1'), ('whatsapp-12345678900', '12345678900-v1')]


def test_whatsapp_rotates_without_touching_sms(phone_sessions, fake_supabase):
    phone_sessions.resolve_session_id('sms', PHONE, now=T0)
    phone_sessions.resolve_session_id('whatsapp', 'whatsapp:+12345678900', now=T0)
    assert phone_sessions.resolve_session_id('whatsapp', 'whatsapp:+12345678900', 'new session', now=T0 + MINUTE) \
        == '12345678900-v2'
    assert phone_sessions.resolve_session_id('sms', PHONE, now=T0 + 2 * MINUTE) == '12345678900-v1'
    sms_rows = [row for row in fake_supabase.rows() if row['session_key'] == 'sms-12345678900']
    assert [row['is_active'] for row in sms_rows] == [True]


def test_inactive_record_rotates(phone_sessions, fake_supabase):
    fake_supabase.rows().append(SessionRecord(
        session_key='sms-12345678900', session_id='12345678900-v5', session_version=5,
        channel='sms', created_at=T0, last_activity=T0, is_active=False,
    ).to_row())
    assert phone_sessions.resolve_session_id('sms', PHONE, now=T0 + MINUTE) == '12345678900-v6'


def test_malformed_record_rotates(phone_sessions, fake_supabase):
    fake_supabase.rows().append({
        'session_key': 'sms-12345678900',
        'session_id': '12345678900-v3',
        'session_version': '3',
        'channel': 'sms',
        'created_at': T0,
        'last_activity': T0,
        'is_active': True,
    })
    assert phone_sessions.resolve_session_id('sms', PHONE, now=T0 + MINUTE) == '12345678900-v4'


def test_store_failure_falls_back(broken_store):
    service = PhoneSessionService(broken_store, gap_ms=DAY)
    with patch('api.services.sessions.ErrorHandler.handle_session_error') as handle_error:
        assert service.resolve_session_id('sms', PHONE, 'hi', now=T0) == '12345678900-v1'
    handle_error.assert_called_once()
    assert handle_error.call_args[0][5] == 'resolve_phone_session'


def test_lost_race_adopts_winner(phone_sessions, session_store, fake_supabase):
    stale = SessionRecord(
        session_key='sms-12345678900', session_id='12345678900-v1', session_version=1,
        channel='sms', created_at=T0, last_activity=T0, is_active=True,
    )
    winner = SessionRecord(
        session_key='sms-12345678900', session_id='12345678900-v2', session_version=2,
        channel='sms', created_at=T0 + 2 * DAY, last_activity=T0 + 2 * DAY, is_active=True,
    )
    fake_supabase.rows().extend([stale.model_copy(update={'is_active': False}).to_row(), winner.to_row()])

    with patch.object(session_store, 'get', side_effect=[stale, winner]):
        assert phone_sessions.resolve_session_id('sms', PHONE, now=T0 + 2 * DAY) == '12345678900-v2'
    assert len(fake_supabase.rows()) == 2


def test_rejects_empty_phone(phone_sessions):
    with pytest.raises(InvalidIdentifierError):
        phone_sessions.resolve_session_id('sms', ' ( ) ', now=T0)
    with pytest.raises(InvalidIdentifierError):
        phone_sessions.resolve_session_id('email', PHONE, now=T0)


def test_wants_new_session():
    assert wants_new_session('new session please')
    assert wants_new_session('NEW Session')
    assert not wants_new_session('newsession')
    assert not wants_new_session(None)


def test_next_version_from_suffix():
    record = SessionRecord(session_key='k', session_id='12345678900-v7', channel='sms')
    assert next_version(record) == 8
    assert next_version(SessionRecord(session_key='k', session_id='garbled', channel='sms')) == 1
