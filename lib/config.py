from typing import List
from pydantic_settings import BaseSettings, SettingsConfigDict
from dotenv import load_dotenv

load_dotenv()

class Settings(BaseSettings):
    model_config = SettingsConfigDict(extra='ignore')

    # Twilio settings
    twilio_account_sid: str = ''
    twilio_sms_auth_token: str = ''
    twilio_whatsapp_auth_token: str = ''
    twilio_phone_number: str = ''
    twilio_whatsapp_phone_number: str = ''

    # Supabase settings
    supabase_url: str = ''
    supabase_key: str = ''

    # Session settings (durations in milliseconds)
    session_table_name: str = 'session-store'
    session_strategy: str = 'store'  # store | windowed
    session_gap_sms_wa: int = 86_400_000  # 24 hours
    session_gap_mail: int = 604_800_000  # 7 days
    session_mail_gap_enforced: bool = False
    session_window_ms: int = 300_000  # 5 minutes

    # Query API settings
    query_api_url: str = 'https://uzq2msccdm2sczqgr2kseiwuma0jdgav.lambda-url.us-west-2.on.aws/'
    query_api_employee_id: str = '1892'
    query_api_timeout: int = 30  # seconds

    # Gmail settings
    gmail_client_id: str = ''
    gmail_client_secret: str = ''
    gmail_refresh_token: str = ''
    google_workspace_email: str = ''
    sender_email: str = ''
    max_results: int = 5
    poll_interval: int = 3000

    @property
    def sms_auth_token(self) -> str:
        return self.twilio_sms_auth_token or self.twilio_whatsapp_auth_token

    @property
    def whatsapp_auth_token(self) -> str:
        return self.twilio_whatsapp_auth_token or self.twilio_sms_auth_token

    @property
    def sender_emails(self) -> List[str]:
        """SENDER_EMAIL as a list; accepts a comma-separated value"""
        return [email.strip() for email in self.sender_email.split(',') if email.strip()]

    @property
    def uses_session_store(self) -> bool:
        return self.session_strategy.lower() != 'windowed'

def get_settings() -> Settings:
    return Settings()
