from twilio.rest import Client
from twilio.base.exceptions import TwilioRestException
from typing import Optional
import logging
from lib.config import Settings
from lib.error_handler import AppError

logger = logging.getLogger(__name__)

WHATSAPP_PREFIX = 'whatsapp:'

def whatsapp_address(number: str) -> str:
    """'+1234567890' -> 'whatsapp:+1234567890'"""
    number = number.strip()
    return number if number.startswith(WHATSAPP_PREFIX) else f"{WHATSAPP_PREFIX}{number}"

class TwilioClient:
    def __init__(self, sms_client: Client, whatsapp_client: Client,
                 phone_number: str = '', whatsapp_number: str = ''):
        self.sms_client = sms_client
        self.whatsapp_client = whatsapp_client
        self.phone_number = phone_number
        self.whatsapp_number = whatsapp_number

    @classmethod
    def from_settings(cls, settings: Settings) -> 'TwilioClient':
        if not settings.twilio_account_sid or not settings.sms_auth_token:
            raise AppError(
                "TWILIO_ACCOUNT_SID and TWILIO_SMS_AUTH_TOKEN (or TWILIO_WHATSAPP_AUTH_TOKEN) must be set"
            )
        try:
            # SMS and WhatsApp may run under different auth tokens
            sms_client = Client(settings.twilio_account_sid, settings.sms_auth_token)
            whatsapp_client = Client(settings.twilio_account_sid, settings.whatsapp_auth_token)
        except Exception as e:
            logger.error(f"Failed to initialize Twilio client: {str(e)}")
            raise AppError("Failed to initialize messaging service")
        return cls(
            sms_client,
            whatsapp_client,
            phone_number=settings.twilio_phone_number,
            whatsapp_number=settings.twilio_whatsapp_phone_number,
        )

    def send_sms(self, to_number: str, message: str, from_number: Optional[str] = None) -> str:
        """Send an SMS message and return the message SID."""
        from_number = from_number or self.phone_number
        if not from_number:
            raise AppError("TWILIO_PHONE_NUMBER must be set")
        return self._send(self.sms_client, to_number, from_number, message)

    def send_whatsapp(self, to_number: str, message: str, from_number: Optional[str] = None) -> str:
        """Send a WhatsApp message and return the message SID."""
        from_number = from_number or self.whatsapp_number
        if not from_number:
            raise AppError("TWILIO_WHATSAPP_PHONE_NUMBER must be set")
        return self._send(
            self.whatsapp_client, whatsapp_address(to_number), whatsapp_address(from_number), message
        )

    def _send(self, client: Client, to_number: str, from_number: str, message: str) -> str:
        try:
            sent = client.messages.create(
                body=message,
                from_=from_number,
                to=to_number
            )
            logger.info(f"Message sent successfully to {to_number}: {sent.sid} ({sent.status})")
            return sent.sid
        except TwilioRestException as e:
            logger.error(f"Twilio error sending message: {str(e)}")
            if e.code == 21608:  # Unverified number
                raise AppError("This phone number is not verified with our test account.", status_code=400)
            elif e.code == 21211:  # Invalid phone number
                raise AppError("Invalid phone number format.", status_code=400)
            else:
                raise AppError(f"Failed to send message: {str(e)}", status_code=502)
        except Exception as e:
            logger.error(f"Unexpected error sending message: {str(e)}")
            raise AppError("An unexpected error occurred while sending the message.")
