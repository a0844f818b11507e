import asyncio
import logging
from typing import Dict, Optional

from api.services.sessions import SessionResolver
from lib.error_handler import AppError, ErrorHandler, InvalidIdentifierError
from lib.query_client import DEFAULT_FALLBACK, QueryClient, get_response_text
from lib.twilio_client import TwilioClient, WHATSAPP_PREFIX

logger = logging.getLogger(__name__)


class MessagingService:
    def __init__(self, twilio_client: TwilioClient, query_client: QueryClient, resolver: SessionResolver):
        self.twilio = twilio_client
        self.query = query_client
        self.resolver = resolver
        logger.info("Messaging service initialized")

    @staticmethod
    def _validate(channel: str, payload: Dict[str, str]) -> None:
        from_number = (payload.get('From') or '').strip()
        if not from_number:
            raise AppError("Missing required field: From", status_code=400)
        to_number = (payload.get('To') or '').strip()

        is_whatsapp = (
            from_number.lower().startswith(WHATSAPP_PREFIX)
            or to_number.lower().startswith(WHATSAPP_PREFIX)
            or bool(payload.get('WaId'))
        )
        if channel == 'sms' and is_whatsapp:
            raise AppError("WhatsApp message received on the SMS webhook", status_code=400)
        if channel == 'whatsapp' and not is_whatsapp:
            raise AppError("SMS message received on the WhatsApp webhook", status_code=400)

    async def handle_inbound(self, channel: str, payload: Dict[str, str]) -> str:
        """
        Relay one inbound Twilio message: resolve its session, ask the query
        API and send the answer back on the same channel. Returns the session id.
        """
        if channel not in ('sms', 'whatsapp'):
            raise InvalidIdentifierError(f"Unsupported messaging channel: {channel}")
        self._validate(channel, payload)

        from_number = payload['From'].strip()
        body = (payload.get('Body') or '').strip()
        logger.info(f"Processing {channel} message {payload.get('MessageSid', '')} from {from_number[:6]}***")

        session_id = self.resolver.resolve_session_id(
            channel, from_number, message_text=body, wa_id=payload.get('WaId')
        )
        logger.info(f"Session ID: {session_id}")

        if not body:
            # Media-only message: nothing to ask, acknowledge receipt
            logger.info(f"No text in message (NumMedia={payload.get('NumMedia', '0')}), sending acknowledgement")
            reply = DEFAULT_FALLBACK
        else:
            try:
                api_response = await self.query.ask(body, session_id=session_id)
                reply = get_response_text(api_response)
            except Exception as e:
                reply = ErrorHandler.handle_query_error(e)

        try:
            await self.send(channel, from_number, reply, from_=payload.get('To') or None)
        except Exception as e:
            # Twilio already has the inbound message; a failed reply is logged, not retried
            ErrorHandler.handle_send_error(e)
        return session_id

    async def send(self, channel: str, to: str, message: str, from_: Optional[str] = None) -> str:
        """Send a message on `channel`; returns the Twilio message SID"""
        if not to or not to.strip():
            raise AppError("Missing required field: to", status_code=400)
        if not message or not message.strip():
            raise AppError("Missing required field: message", status_code=400)

        logger.info(f"Sending {channel} message: {message[:20]}...")
        if channel == 'whatsapp':
            sender = self.twilio.send_whatsapp
        elif channel == 'sms':
            sender = self.twilio.send_sms
        else:
            raise AppError(f"Unsupported messaging channel: {channel}", status_code=400)

        # Run Twilio API call in an executor to prevent blocking
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, lambda: sender(to.strip(), message, from_))
