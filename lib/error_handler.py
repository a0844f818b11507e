from typing import Optional
import logging

logger = logging.getLogger(__name__)

class AppError(Exception):
    def __init__(self, message: str, status_code: int = 500, user_message: Optional[str] = None):
        self.message = message
        self.status_code = status_code
        self.user_message = user_message or "An error occurred. Please try again later."
        super().__init__(self.message)

class InvalidIdentifierError(AppError):
    """Raised when a payload carries no usable phone number or sender"""
    def __init__(self, message: str):
        super().__init__(message, status_code=400, user_message=message)

class SessionStoreError(AppError):
    pass

class SessionConflictError(SessionStoreError):
    """A conditional write lost against a concurrent invocation"""
    def __init__(self, message: str):
        super().__init__(message, status_code=409)

class QueryApiError(AppError):
    pass

EMAIL_ACKNOWLEDGEMENT = (
    "Thank you for your email.\n\n"
    "This is an automated acknowledgment that your email has been received and processed."
)

def redact(value: Optional[str], keep: int = 6) -> str:
    """Keep only the first few characters of an identifier for log output"""
    if not value:
        return ''
    if len(value) <= keep:
        return '***'
    return f"{value[:keep]}***"

class ErrorHandler:
    @staticmethod
    def handle_session_error(error: Exception, channel: str, identifier: str, session_key: str,
                             table_name: str, operation: str) -> None:
        logger.error(
            f"Session store error ({operation}): {str(error)} "
            f"[channel={channel} identifier={redact(identifier)} "
            f"session_key={redact(session_key, keep=12)} table={table_name} "
            f"error_type={type(error).__name__}]"
        )

    @staticmethod
    def handle_query_error(error: Exception) -> str:
        logger.error(f"Query API error: {str(error)}")
        return "Thank you for your message. We have received it and will get back to you soon."

    @staticmethod
    def handle_email_query_error(error: Exception) -> str:
        logger.error(f"Query API error for email: {str(error)}")
        return EMAIL_ACKNOWLEDGEMENT

    @staticmethod
    def handle_send_error(error: Exception) -> str:
        logger.error(f"Send error: {str(error)}")
        return "Message couldn't be sent. Please try again later."
