"""
Session id formats, plus the stateless time-windowed generator.

The windowed generator needs no store: it floors `now` to a fixed-width
bucket and embeds the bucket start in the id. Two messages share an id only
when they land in the same bucket, so a message one second before a bucket
boundary and one a second after it get different ids. That differs from the
store-backed strategies, which rotate after a rolling inactivity gap.
"""
import time
from typing import Optional

from lib.error_handler import InvalidIdentifierError
from lib.normalize import (
    normalize_phone, normalize_email, extract_email_address,
    subject_for_id, email_for_id, id_token,
)

DEFAULT_WINDOW_MS = 5 * 60 * 1000

CHANNELS = ('sms', 'whatsapp', 'email')
PHONE_CHANNELS = ('sms', 'whatsapp')


def now_ms() -> int:
    return int(time.time() * 1000)


def phone_session_key(channel: str, phone_number: str) -> str:
    return f"{channel}-{normalize_phone(phone_number)}"


def phone_session_id(phone_number: str, version: int) -> str:
    return f"{id_token(normalize_phone(phone_number))}-v{version}"


def email_session_key(subject: str, sender: str) -> str:
    parts = []
    subject_part = subject_for_id(subject)
    if subject_part:
        parts.append(f"subject:{subject_part}")
    sender_part = normalize_email(sender)
    if sender_part:
        parts.append(f"from:{sender_part}")
    return f"email-{'|'.join(parts)}"


def email_session_id(subject: str, sender: str, version: int) -> str:
    subject_part = subject_for_id(subject)
    sender_part = email_for_id(sender)
    if subject_part:
        return f"{sender_part}-{subject_part}-v{version}"
    return f"{sender_part}-v{version}"


def window_start(now: int, window_ms: int = DEFAULT_WINDOW_MS) -> int:
    return (now // window_ms) * window_ms


def windowed_session_id(channel: str, identifier: str, now: Optional[int] = None,
                        window_ms: int = DEFAULT_WINDOW_MS, wa_id: Optional[str] = None) -> str:
    """
    {channel}-{identifier}-{bucket start}, e.g. sms-12345678900-1735128000000.

    For WhatsApp a WaId, when Twilio sends one, is used instead of the number.
    """
    if channel not in CHANNELS:
        raise InvalidIdentifierError(f"Unknown channel: {channel}")
    if window_ms <= 0:
        raise ValueError("window_ms must be positive")

    if channel == 'whatsapp' and wa_id and wa_id.strip():
        token = id_token(normalize_phone(wa_id))
    elif channel == 'email':
        sender = normalize_email(extract_email_address(identifier))
        if not sender:
            raise InvalidIdentifierError("Sender email is required for email session ID")
        token = email_for_id(sender)
    else:
        phone = normalize_phone(identifier)
        if not phone:
            raise InvalidIdentifierError(f"Phone number is required for {channel} session ID")
        token = id_token(phone)

    if now is None:
        now = now_ms()
    return f"{channel}-{token}-{window_start(now, window_ms)}"
