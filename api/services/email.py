import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import List, Optional

from api.services.sessions import SessionResolver
from lib.error_handler import ErrorHandler, EMAIL_ACKNOWLEDGEMENT
from lib.gmail_client import GmailClient, build_sender_query, reply_subject
from lib.normalize import extract_email_address, normalize_email
from lib.query_client import QueryClient, get_response_text

logger = logging.getLogger(__name__)

# Stop polling this long before the deadline so the last cycle can finish
TIMEOUT_BUFFER_MS = 30_000


@dataclass
class PollResult:
    processed: int = 0
    failed: int = 0
    skipped: int = 0
    session_ids: List[str] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            'processed': self.processed,
            'failed': self.failed,
            'skipped': self.skipped,
            'session_ids': self.session_ids,
            'errors': self.errors,
        }


class EmailService:
    def __init__(self, gmail_client: GmailClient, query_client: QueryClient, resolver: SessionResolver,
                 sender_emails: Optional[List[str]] = None, max_results: int = 5,
                 poll_interval_ms: int = 3000, from_email: Optional[str] = None):
        self.gmail = gmail_client
        self.query = query_client
        self.resolver = resolver
        self.sender_emails = sender_emails or []
        self.max_results = max_results
        self.poll_interval_ms = poll_interval_ms
        self.from_email = from_email
        logger.info(f"Email service initialized, sender filter: {self.sender_emails or 'none'}")

    @property
    def search_query(self) -> str:
        sender_filter = build_sender_query(self.sender_emails)
        return f"is:unread {sender_filter}".strip()

    async def poll_once(self) -> PollResult:
        """Answer every unread email matching the sender filter"""
        result = PollResult()
        loop = asyncio.get_running_loop()

        messages = await loop.run_in_executor(
            None, lambda: self.gmail.list_unread(self.search_query, self.max_results)
        )
        if not messages:
            logger.info("No unread emails found")
            return result

        logger.info(f"Found {len(messages)} unread email(s)")
        for summary in messages:
            message_id = summary.get('id')
            if not message_id:
                result.skipped += 1
                continue
            try:
                session_id = await self._process_message(message_id)
            except Exception as e:
                # One bad message must not block the rest of the batch
                logger.error(f"Error processing email {message_id}: {str(e)}", exc_info=True)
                result.failed += 1
                result.errors.append(f"{message_id}: {str(e)}")
                continue
            if session_id is None:
                result.skipped += 1
            else:
                result.processed += 1
                result.session_ids.append(session_id)

        logger.info(f"Poll complete: {result.processed} processed, {result.failed} failed, {result.skipped} skipped")
        return result

    async def _process_message(self, message_id: str) -> Optional[str]:
        loop = asyncio.get_running_loop()
        message = await loop.run_in_executor(None, lambda: self.gmail.read_message(message_id))

        headers = GmailClient.get_headers(message)
        sender = normalize_email(extract_email_address(headers.get('from', '')))
        subject = headers.get('subject', '')
        body = GmailClient.get_body_text(message)

        # Subject-only emails are answered with the subject as the question
        query_text = body.strip() or subject.strip()
        if not sender or not query_text:
            logger.warning(f"Skipping email {message_id}: missing sender or text")
            await loop.run_in_executor(None, lambda: self.gmail.mark_read(message_id))
            return None

        thread_id = message.get('threadId')
        message_header_id = headers.get('message-id')
        session_id = self.resolver.resolve_session_id(
            'email', sender,
            subject=subject,
            thread_id=thread_id,
            in_reply_to=headers.get('in-reply-to'),
            references=headers.get('references'),
        )
        logger.info(f"Email from {sender[:6]}*** subject={subject!r} session={session_id}")

        try:
            api_response = await self.query.ask(query_text, session_id=session_id)
            reply = get_response_text(api_response, fallback_message=EMAIL_ACKNOWLEDGEMENT)
        except Exception as e:
            reply = ErrorHandler.handle_email_query_error(e)

        await loop.run_in_executor(
            None,
            lambda: self.gmail.send_reply(
                sender, reply_subject(subject), reply,
                thread_id=thread_id,
                in_reply_to=message_header_id,
                references=headers.get('references'),
                from_email=self.from_email,
            )
        )
        await loop.run_in_executor(None, lambda: self.gmail.mark_read(message_id))
        return session_id

    async def send(self, to: str, subject: str, body: str) -> str:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(
            None, lambda: self.gmail.send_reply(to, subject, body, from_email=self.from_email)
        )

    async def run(self, deadline: float) -> PollResult:
        """
        Poll repeatedly until `deadline` (epoch seconds) minus the timeout
        buffer. A failed cycle is logged and the loop carries on.
        """
        total = PollResult()
        cycles = 0
        stop_at = deadline - TIMEOUT_BUFFER_MS / 1000

        while time.time() < stop_at:
            cycles += 1
            try:
                cycle = await self.poll_once()
            except Exception as e:
                logger.error(f"Poll cycle {cycles} failed: {str(e)}", exc_info=True)
                total.errors.append(str(e))
            else:
                total.processed += cycle.processed
                total.failed += cycle.failed
                total.skipped += cycle.skipped
                total.session_ids.extend(cycle.session_ids)
                total.errors.extend(cycle.errors)

            remaining = stop_at - time.time()
            if remaining <= 0:
                break
            await asyncio.sleep(min(self.poll_interval_ms / 1000, remaining))

        logger.info(f"Poller stopping after {cycles} cycle(s): {total.processed} email(s) processed")
        return total
