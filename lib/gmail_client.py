import base64
import html
import logging
import re
from email.mime.text import MIMEText
from typing import Any, Dict, List, Optional

from google.oauth2.credentials import Credentials
from googleapiclient.discovery import build
from googleapiclient.errors import HttpError

from lib.config import Settings
from lib.error_handler import AppError

logger = logging.getLogger(__name__)

TOKEN_URI = 'https://oauth2.googleapis.com/token'
SCOPES = [
    'https://www.googleapis.com/auth/gmail.readonly',
    'https://www.googleapis.com/auth/gmail.modify',
    'https://www.googleapis.com/auth/gmail.send',
]

# Lines that open a signature, footer or quoted reply
_SIGNATURE_START = [
    re.compile(pattern, re.IGNORECASE) for pattern in (
        r'^--$',
        r'^[-=_]{3,}',
        r'^sent from',
        r'^get outlook',
        r'^best regards',
        r'^regards',
        r'^sincerely',
        r'^on .* wrote:$',
        r'^confidentiality',
        r'^disclaimer:',
    )
]


def build_sender_query(senders: List[str]) -> str:
    """Gmail search filter for one or more senders: from:a or from:(a OR b)"""
    if not senders:
        return ''
    if len(senders) == 1:
        return f"from:{senders[0]}"
    return f"from:({' OR '.join(senders)})"


def reply_subject(subject: str) -> str:
    subject = (subject or '').strip()
    return subject if subject.lower().startswith('re:') else f"Re: {subject}"


def _decode(data: str) -> str:
    padded = data + '=' * (-len(data) % 4)
    return base64.urlsafe_b64decode(padded.encode('ascii')).decode('utf-8', errors='replace')


def sanitize_body(body: str) -> str:
    """Drop HTML markup, signatures and quoted replies from an email body"""
    if not body:
        return ''
    text = re.sub(r'<(script|style)[^>]*>.*?</\1>', '', body, flags=re.IGNORECASE | re.DOTALL)
    text = re.sub(r'<br\s*/?>|</p>', '\n', text, flags=re.IGNORECASE)
    text = html.unescape(re.sub(r'<[^>]+>', '', text))

    lines = text.replace('\r\n', '\n').split('\n')
    for index, line in enumerate(lines):
        stripped = line.strip()
        if stripped.startswith('>') or any(p.search(stripped) for p in _SIGNATURE_START):
            lines = lines[:index]
            break

    text = '\n'.join(line.rstrip() for line in lines)
    return re.sub(r'\n{3,}', '\n\n', text).strip()


class GmailClient:
    def __init__(self, service, user_id: str = 'me'):
        self.service = service
        self.user_id = user_id

    @classmethod
    def from_settings(cls, settings: Settings) -> 'GmailClient':
        if not (settings.gmail_client_id and settings.gmail_client_secret and settings.gmail_refresh_token):
            raise AppError(
                "Missing Gmail OAuth2 credentials: set GMAIL_CLIENT_ID, GMAIL_CLIENT_SECRET "
                "and GMAIL_REFRESH_TOKEN"
            )
        # google-auth refreshes the access token from the refresh token on first use
        credentials = Credentials(
            token=None,
            refresh_token=settings.gmail_refresh_token,
            token_uri=TOKEN_URI,
            client_id=settings.gmail_client_id,
            client_secret=settings.gmail_client_secret,
            scopes=SCOPES,
        )
        service = build('gmail', 'v1', credentials=credentials, cache_discovery=False)
        return cls(service)

    def list_unread(self, query: str = 'is:unread', max_results: int = 5) -> List[Dict[str, Any]]:
        try:
            response = self.service.users().messages().list(
                userId=self.user_id, q=query, maxResults=max_results
            ).execute()
        except HttpError as e:
            raise AppError(f"Failed to list emails: {e.reason}", status_code=502)
        return response.get('messages', [])

    def read_message(self, message_id: str) -> Dict[str, Any]:
        try:
            return self.service.users().messages().get(
                userId=self.user_id, id=message_id, format='full'
            ).execute()
        except HttpError as e:
            raise AppError(f"Failed to read email {message_id}: {e.reason}", status_code=502)

    @staticmethod
    def get_headers(message: Dict[str, Any]) -> Dict[str, str]:
        """Message headers keyed by lowercased name"""
        headers = message.get('payload', {}).get('headers', [])
        return {header['name'].lower(): header.get('value', '') for header in headers if 'name' in header}

    @staticmethod
    def get_body_text(message: Dict[str, Any]) -> str:
        """Plain-text body if present, otherwise the HTML body, otherwise the snippet"""
        found = {'text/plain': '', 'text/html': ''}

        def walk(part: Dict[str, Any]) -> None:
            mime_type = part.get('mimeType', '')
            data = part.get('body', {}).get('data')
            if data and mime_type in found and not found[mime_type]:
                found[mime_type] = _decode(data)
            for sub_part in part.get('parts', []) or []:
                walk(sub_part)

        walk(message.get('payload', {}))
        body = found['text/plain'] or found['text/html']
        return sanitize_body(body) or message.get('snippet', '') or ''

    def send_reply(self, to: str, subject: str, body: str, thread_id: Optional[str] = None,
                   in_reply_to: Optional[str] = None, references: Optional[str] = None,
                   from_email: Optional[str] = None) -> str:
        """Send a plain-text email, threaded onto `thread_id` when given; returns the message id"""
        mime = MIMEText(body, 'plain', 'utf-8')
        mime['To'] = to
        mime['Subject'] = subject
        if from_email:
            mime['From'] = from_email
        if in_reply_to:
            mime['In-Reply-To'] = in_reply_to
            mime['References'] = f"{references} {in_reply_to}".strip() if references else in_reply_to

        request_body = {'raw': base64.urlsafe_b64encode(mime.as_bytes()).decode('ascii')}
        if thread_id:
            request_body['threadId'] = thread_id

        try:
            sent = self.service.users().messages().send(userId=self.user_id, body=request_body).execute()
        except HttpError as e:
            raise AppError(f"Failed to send email: {e.reason}", status_code=502)
        logger.info(f"Email sent to {to}: {sent.get('id')}")
        return sent.get('id', '')

    def mark_read(self, message_id: str) -> None:
        try:
            self.service.users().messages().modify(
                userId=self.user_id, id=message_id, body={'removeLabelIds': ['UNREAD']}
            ).execute()
        except HttpError as e:
            raise AppError(f"Failed to mark email as read: {e.reason}", status_code=502)
