from flask import Flask, request, Response, jsonify
import logging
import sys
from typing import Any, Dict, Optional
from supabase import create_client
from twilio.twiml.messaging_response import MessagingResponse

from lib.config import Settings, get_settings
from lib.error_handler import AppError, ErrorHandler
from lib.gmail_client import GmailClient
from lib.query_client import QueryClient
from lib.twilio_client import TwilioClient
from .services.email import EmailService
from .services.sessions import PhoneSessionService, EmailSessionService, SessionResolver
from .services.sms import MessagingService
from .services.storage import SessionStore

# Configure detailed logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    stream=sys.stdout,
    force=True  # Ensure our config takes precedence
)

logger = logging.getLogger(__name__)


def build_resolver(settings: Settings) -> SessionResolver:
    if not settings.uses_session_store:
        logger.info("Using windowed session IDs (no session store)")
        return SessionResolver(strategy='windowed', window_ms=settings.session_window_ms)

    logger.info("Initializing Supabase client...")
    supabase = create_client(settings.supabase_url, settings.supabase_key)
    store = SessionStore(supabase, settings.session_table_name)
    return SessionResolver(
        phone_sessions=PhoneSessionService(store, settings.session_gap_sms_wa),
        email_sessions=EmailSessionService(
            store, settings.session_gap_mail, enforce_gap=settings.session_mail_gap_enforced
        ),
        window_ms=settings.session_window_ms,
    )


def build_services(settings: Settings) -> Dict[str, Any]:
    """Wire clients and services from settings; Gmail is optional"""
    resolver = build_resolver(settings)
    query_client = QueryClient(
        settings.query_api_url,
        employee_id=settings.query_api_employee_id,
        timeout=settings.query_api_timeout,
    )

    logger.info("Initializing Twilio client...")
    messaging = MessagingService(TwilioClient.from_settings(settings), query_client, resolver)

    email_service = None
    try:
        email_service = EmailService(
            GmailClient.from_settings(settings),
            query_client,
            resolver,
            sender_emails=settings.sender_emails,
            max_results=settings.max_results,
            poll_interval_ms=settings.poll_interval,
            from_email=settings.google_workspace_email or None,
        )
    except AppError as e:
        logger.warning(f"Email relay disabled: {e.message}")

    logger.info("All services initialized successfully")
    return {
        'resolver': resolver,
        'query': query_client,
        'messaging': messaging,
        'email': email_service,
    }


def create_app(settings: Optional[Settings] = None, services: Optional[Dict[str, Any]] = None) -> Flask:
    app = Flask(__name__)
    if services is None:
        services = build_services(settings or get_settings())

    def error_response(error: AppError):
        return jsonify({'success': False, 'error': error.message}), error.status_code

    def empty_twiml() -> Response:
        return Response(str(MessagingResponse()), mimetype='text/xml')

    async def handle_webhook(channel: str):
        try:
            form_data = request.form.to_dict()
            logger.info(f"{channel} webhook received: MessageSid={form_data.get('MessageSid')}")
            await services['messaging'].handle_inbound(channel, form_data)
            return empty_twiml()
        except AppError as e:
            logger.warning(f"Rejected {channel} webhook: {e.message}")
            return error_response(e)
        except Exception as e:
            logger.error(f"Webhook error: {str(e)}", exc_info=True)
            return jsonify({'success': False, 'error': 'Internal server error'}), 500

    @app.route('/webhook/sms', methods=['POST'])
    async def sms_webhook():
        return await handle_webhook('sms')

    @app.route('/webhook/whatsapp', methods=['POST'])
    async def whatsapp_webhook():
        return await handle_webhook('whatsapp')

    @app.route('/webhook/email', methods=['POST'])
    async def email_webhook():
        email_service = services.get('email')
        if email_service is None:
            return jsonify({'success': False, 'error': 'Email relay is not configured'}), 503
        try:
            result = await email_service.poll_once()
            return jsonify({'success': True, **result.to_dict()})
        except AppError as e:
            return error_response(e)
        except Exception as e:
            logger.error(f"Email poll error: {str(e)}", exc_info=True)
            return jsonify({'success': False, 'error': 'Internal server error'}), 500

    async def handle_send(channel: str):
        data = request.get_json(silent=True) or {}
        try:
            message = data.get('message') or data.get('body') or ''
            if channel == 'email':
                email_service = services.get('email')
                if email_service is None:
                    return jsonify({'success': False, 'error': 'Email relay is not configured'}), 503
                if not data.get('to') or not message:
                    raise AppError("Missing required fields: to, body", status_code=400)
                message_id = await email_service.send(data['to'], data.get('subject') or '', message)
            else:
                message_id = await services['messaging'].send(
                    channel, data.get('to') or '', message, from_=data.get('from')
                )
            return jsonify({'success': True, 'message_id': message_id})
        except AppError as e:
            return error_response(e)
        except Exception as e:
            return jsonify({'success': False, 'error': ErrorHandler.handle_send_error(e)}), 500

    @app.route('/send/sms', methods=['POST'])
    async def send_sms():
        return await handle_send('sms')

    @app.route('/send/whatsapp', methods=['POST'])
    async def send_whatsapp():
        return await handle_send('whatsapp')

    @app.route('/send/email', methods=['POST'])
    async def send_email():
        return await handle_send('email')

    @app.route('/query', methods=['POST'])
    async def query():
        data = request.get_json(silent=True) or {}
        try:
            response = await services['query'].ask(
                data.get('query') or '',
                session_id=data.get('session_id'),
                employee_id=data.get('employee_id'),
            )
            return jsonify(response)
        except AppError as e:
            return error_response(e)
        except Exception as e:
            logger.error(f"Query error: {str(e)}", exc_info=True)
            return jsonify({'success': False, 'error': 'Internal server error'}), 500

    @app.route('/', methods=['GET'])
    def root():
        """Basic health check"""
        resolver = services.get('resolver')
        return {
            'status': 'healthy',
            'session_strategy': resolver.strategy if resolver else None,
            'email_relay': services.get('email') is not None,
        }

    return app
