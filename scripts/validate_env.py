import sys
from pathlib import Path

sys.path.append(str(Path(__file__).parent.parent))

from lib.config import get_settings

REQUIRED = {
    'twilio_account_sid': 'TWILIO_ACCOUNT_SID',
    'query_api_url': 'QUERY_API_URL',
}
STORE_REQUIRED = {
    'supabase_url': 'SUPABASE_URL',
    'supabase_key': 'SUPABASE_KEY',
}
GMAIL_REQUIRED = {
    'gmail_client_id': 'GMAIL_CLIENT_ID',
    'gmail_client_secret': 'GMAIL_CLIENT_SECRET',
    'gmail_refresh_token': 'GMAIL_REFRESH_TOKEN',
}

def validate_env() -> bool:
    """Report missing environment variables; returns True when the relay can start"""
    settings = get_settings()
    ok = True

    missing = [name for field, name in REQUIRED.items() if not getattr(settings, field)]
    if not settings.sms_auth_token:
        missing.append('TWILIO_SMS_AUTH_TOKEN or TWILIO_WHATSAPP_AUTH_TOKEN')
    if settings.uses_session_store:
        missing += [name for field, name in STORE_REQUIRED.items() if not getattr(settings, field)]
    if missing:
        ok = False
        print(f"Missing required variables: {', '.join(missing)}")

    if settings.session_strategy.lower() not in ('store', 'windowed'):
        ok = False
        print(f"SESSION_STRATEGY must be 'store' or 'windowed', got {settings.session_strategy!r}")
    for field in ('session_gap_sms_wa', 'session_gap_mail', 'session_window_ms'):
        if getattr(settings, field) <= 0:
            ok = False
            print(f"{field.upper()} must be positive")

    gmail_missing = [name for field, name in GMAIL_REQUIRED.items() if not getattr(settings, field)]
    if gmail_missing:
        print(f"Email relay disabled, missing: {', '.join(gmail_missing)}")

    print("Environment OK" if ok else "Environment invalid")
    return ok

if __name__ == "__main__":
    sys.exit(0 if validate_env() else 1)
