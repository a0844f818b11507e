import logging
import re
from typing import Optional

from api.services.storage import SessionStore, SessionRecord
from api.services.session_ids import (
    CHANNELS, PHONE_CHANNELS, DEFAULT_WINDOW_MS, now_ms,
    phone_session_key, phone_session_id, email_session_key, email_session_id,
    windowed_session_id,
)
from lib.error_handler import ErrorHandler, InvalidIdentifierError, SessionConflictError
from lib.normalize import normalize_phone, normalize_subject, normalize_email, extract_email_address

logger = logging.getLogger(__name__)

NEW_SESSION_PHRASE = 'new session'
_VERSION_SUFFIX = re.compile(r'-v(\d+)$')


def wants_new_session(message_text: Optional[str]) -> bool:
    return bool(message_text) and NEW_SESSION_PHRASE in message_text.lower()


def next_version(record: SessionRecord) -> int:
    if record.session_version is not None:
        return record.session_version + 1
    # Version column lost; fall back to the suffix of the stored id
    match = _VERSION_SUFFIX.search(record.session_id or '')
    return int(match.group(1)) + 1 if match else 1


class PhoneSessionService:
    """
    SMS/WhatsApp sessions: one conversation per number per channel, rotated
    after SESSION_GAP_SMS_WA of inactivity or when the user texts "new session".
    """

    def __init__(self, store: SessionStore, gap_ms: int = 86_400_000):
        self.store = store
        self.gap_ms = gap_ms

    def resolve_session_id(self, channel: str, phone_number: str,
                           message_text: Optional[str] = None, now: Optional[int] = None) -> str:
        if channel not in PHONE_CHANNELS:
            raise InvalidIdentifierError(f"Unsupported channel for phone sessions: {channel}")
        phone = normalize_phone(phone_number)
        if not phone:
            raise InvalidIdentifierError("Phone number is required for SMS/WhatsApp session")

        session_key = phone_session_key(channel, phone)
        now = now_ms() if now is None else now

        try:
            return self._resolve(channel, phone, session_key, wants_new_session(message_text), now)
        except SessionConflictError as e:
            logger.warning(f"Concurrent session update for {channel}, re-reading: {str(e)}")
            try:
                return self._adopt_current(session_key, phone)
            except Exception as retry_error:
                error = retry_error
        except Exception as e:
            error = e

        ErrorHandler.handle_session_error(
            error, channel, phone, session_key, self.store.table_name, 'resolve_phone_session'
        )
        fallback_id = phone_session_id(phone, 1)
        logger.warning(f"Using fallback session ID (not persisted): {fallback_id}")
        return fallback_id

    def _resolve(self, channel: str, phone: str, session_key: str, wants_new: bool, now: int) -> str:
        record = self.store.get(session_key)

        if record is None:
            created = self.store.create(self._new_record(channel, phone, session_key, 1, now))
            logger.info(f"Created first session: {created.session_id}")
            return created.session_id

        if wants_new:
            return self._rotate(record, channel, phone, session_key, now, 'user requested')

        if record.is_malformed:
            logger.warning("Existing session missing required fields, creating new session")
            return self._rotate(record, channel, phone, session_key, now, 'malformed record')

        if not record.is_active:
            return self._rotate(record, channel, phone, session_key, now, 'previous ended')

        if now - record.last_activity <= self.gap_ms:
            self.store.touch(session_key, now)
            logger.info(f"Using existing session: {record.session_id}")
            return record.session_id

        return self._rotate(record, channel, phone, session_key, now, 'gap exceeded')

    def _rotate(self, record: SessionRecord, channel: str, phone: str, session_key: str,
                now: int, reason: str) -> str:
        replacement = self._new_record(channel, phone, session_key, next_version(record), now)
        self.store.supersede(record, replacement)
        logger.info(f"Created new session ({reason}): {replacement.session_id}")
        return replacement.session_id

    def _adopt_current(self, session_key: str, phone: str) -> str:
        record = self.store.get(session_key)
        if record is None or not record.is_active or record.is_malformed:
            raise SessionConflictError(f"No usable session after conflict on {session_key}")
        logger.info(f"Adopted concurrently created session: {record.session_id}")
        return record.session_id

    @staticmethod
    def _new_record(channel: str, phone: str, session_key: str, version: int, now: int) -> SessionRecord:
        return SessionRecord(
            session_key=session_key,
            session_id=phone_session_id(phone, version),
            session_version=version,
            channel=channel,
            phone_number=phone,
            created_at=now,
            last_activity=now,
            is_active=True,
        )


class EmailSessionService:
    """
    Email sessions keyed by normalized subject and sender.

    Gmail thread ids and In-Reply-To/References headers are recorded but never
    used to find a session: they change once our own reply lands in the
    sender's mailbox, which would split one conversation into several.
    """

    def __init__(self, store: SessionStore, gap_ms: int = 604_800_000, enforce_gap: bool = False):
        self.store = store
        self.gap_ms = gap_ms
        self.enforce_gap = enforce_gap

    def resolve_session_id(self, subject: Optional[str], sender: str,
                           thread_id: Optional[str] = None, in_reply_to: Optional[str] = None,
                           references: Optional[str] = None, now: Optional[int] = None) -> str:
        sender_email = normalize_email(extract_email_address(sender))
        if not sender_email:
            raise InvalidIdentifierError("Sender email is required for email session")

        subject = subject or ''
        session_key = email_session_key(subject, sender_email)
        now = now_ms() if now is None else now
        headers = {'thread_id': thread_id, 'in_reply_to': in_reply_to, 'references': references}

        try:
            return self._resolve(subject, sender_email, session_key, headers, now)
        except SessionConflictError as e:
            logger.warning(f"Concurrent email session update, re-reading: {str(e)}")
            try:
                record = self.store.get(session_key)
                if record is not None and record.is_active and not record.is_malformed:
                    logger.info(f"Adopted concurrently created email session: {record.session_id}")
                    return record.session_id
                error = e
            except Exception as retry_error:
                error = retry_error
        except Exception as e:
            error = e

        ErrorHandler.handle_session_error(
            error, 'email', sender_email, session_key, self.store.table_name, 'resolve_email_session'
        )
        fallback_id = email_session_id(subject, sender_email, 1)
        logger.warning(f"Using fallback email session ID (not persisted): {fallback_id}")
        return fallback_id

    def _resolve(self, subject: str, sender_email: str, session_key: str, headers: dict, now: int) -> str:
        record = self.store.get(session_key)

        if record is None:
            created = self.store.create(
                self._new_record(subject, sender_email, session_key, 1, now, headers)
            )
            logger.info(f"Created first email session: {created.session_id}")
            return created.session_id

        if record.is_active and not record.is_malformed and self._continues(record, subject, sender_email, now):
            self.store.touch(session_key, now)
            logger.info(f"Using existing email session: {record.session_id}")
            return record.session_id

        replacement = self._new_record(subject, sender_email, session_key, next_version(record), now, headers)
        self.store.supersede(record, replacement)
        logger.info(f"Created new email session (subject/from changed): {replacement.session_id}")
        return replacement.session_id

    def _continues(self, record: SessionRecord, subject: str, sender_email: str, now: int) -> bool:
        same_thread = (
            normalize_subject(record.subject) == normalize_subject(subject)
            and normalize_email(record.sender_email) == sender_email
        )
        if not same_thread:
            return False
        if self.enforce_gap and now - record.last_activity > self.gap_ms:
            return False
        return True

    @staticmethod
    def _new_record(subject: str, sender_email: str, session_key: str, version: int,
                    now: int, headers: dict) -> SessionRecord:
        return SessionRecord(
            session_key=session_key,
            session_id=email_session_id(subject, sender_email, version),
            session_version=version,
            channel='email',
            sender_email=sender_email,
            subject=normalize_subject(subject),
            created_at=now,
            last_activity=now,
            is_active=True,
            **headers,
        )


class SessionResolver:
    """Single entry point mapping an inbound message to a session id"""

    def __init__(self, phone_sessions: Optional[PhoneSessionService] = None,
                 email_sessions: Optional[EmailSessionService] = None,
                 strategy: str = 'store', window_ms: int = DEFAULT_WINDOW_MS):
        self.phone_sessions = phone_sessions
        self.email_sessions = email_sessions
        self.strategy = strategy.lower()
        self.window_ms = window_ms

    def resolve_session_id(self, channel: str, identifier: str, message_text: Optional[str] = None,
                           subject: Optional[str] = None, thread_id: Optional[str] = None,
                           in_reply_to: Optional[str] = None, references: Optional[str] = None,
                           wa_id: Optional[str] = None, now: Optional[int] = None) -> str:
        channel = (channel or '').strip().lower()
        if channel not in CHANNELS:
            raise InvalidIdentifierError(f"Unknown channel: {channel}")

        service = self.email_sessions if channel == 'email' else self.phone_sessions
        if self.strategy == 'windowed' or service is None:
            return windowed_session_id(channel, identifier, now=now, window_ms=self.window_ms, wa_id=wa_id)

        if channel == 'email':
            return self.email_sessions.resolve_session_id(
                subject, identifier,
                thread_id=thread_id, in_reply_to=in_reply_to, references=references, now=now,
            )
        return self.phone_sessions.resolve_session_id(channel, identifier, message_text, now=now)
