"""
Canonical forms for channel identifiers.

Every function here is pure, accepts any string (None counts as empty) and
is idempotent: applying it to its own output returns that output unchanged.
"""
import hashlib
import re
from email.utils import parseaddr
from typing import Optional

_PHONE_NOISE = re.compile(r'[\s()+\-]')
_WHATSAPP_PREFIX = re.compile(r'^(?:whatsapp:)+')
_REPLY_MARKERS = re.compile(r'^(?:(?:re|fwd?)\s*:\s*)+')
_SUBJECT_UNSAFE = re.compile(r'[^a-z0-9\s-]')
_ID_UNSAFE = re.compile(r'[^0-9a-zA-Z._:-]')
_ADDRESS = re.compile(r'[\w.+-]+@[\w.-]+\.\w+')

SUBJECT_ID_MAX_LENGTH = 50


def normalize_phone(raw: Optional[str]) -> str:
    """'whatsapp:+1 (234) 567-8900' -> '12345678900'"""
    value = _PHONE_NOISE.sub('', (raw or '').lower())
    return _WHATSAPP_PREFIX.sub('', value)


def normalize_subject(raw: Optional[str]) -> str:
    """'  Re: FWD:  Login   bug ' -> 'login bug'"""
    value = ' '.join((raw or '').split()).lower()
    return _REPLY_MARKERS.sub('', value).strip()


def normalize_email(raw: Optional[str]) -> str:
    return (raw or '').strip().lower()


def subject_for_id(raw: Optional[str]) -> str:
    """Subject reduced to a short hyphenated slug, e.g. 'Invoice #42' -> 'invoice-42'"""
    value = _SUBJECT_UNSAFE.sub('-', normalize_subject(raw))
    value = re.sub(r'\s+', '-', value)
    value = re.sub(r'-+', '-', value).strip('-')
    return value[:SUBJECT_ID_MAX_LENGTH].strip('-')


def extract_email_address(raw_from: Optional[str]) -> str:
    """Address part of a From header ('Jane Doe <jane@x.com>' -> 'jane@x.com')"""
    raw_from = (raw_from or '').strip()
    if not raw_from:
        return ''
    _, address = parseaddr(raw_from)
    if '@' in address:
        return address.strip()
    match = _ADDRESS.search(raw_from)
    if match:
        return match.group(0)
    return raw_from


def id_token(value: Optional[str]) -> str:
    """
    Reduce a normalized identifier to characters the query API accepts in a
    session id ([0-9a-zA-Z._:-]). Values with nothing usable left map to a
    short digest so distinct inputs still get distinct tokens.
    """
    value = value or ''
    token = _ID_UNSAFE.sub('', value)
    if token:
        return token
    return 'x' + hashlib.sha1(value.encode('utf-8')).hexdigest()[:12]


def email_for_id(raw: Optional[str]) -> str:
    """'Jane@X.com' -> 'jane-x-com'"""
    value = re.sub(r'[@.]', '-', normalize_email(raw))
    value = re.sub(r'-+', '-', _ID_UNSAFE.sub('-', value)).strip('-')
    return value or id_token(normalize_email(raw))
