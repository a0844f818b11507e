import pytest
from unittest.mock import AsyncMock

from api.routes import create_app
from api.services.email import PollResult
from lib.error_handler import AppError


def test_sms_webhook_returns_empty_twiml(test_client, mock_services):
    form = {'From': '+12345678900', 'Body': 'hello', 'MessageSid': 'SM1'}
    response = test_client.post('/webhook/sms', data=form)

    assert response.status_code == 200
    assert response.mimetype == 'text/xml'
    assert '<Response />' in response.get_data(as_text=True)
    mock_services['messaging'].handle_inbound.assert_awaited_once_with('sms', form)


def test_whatsapp_webhook(test_client, mock_services):
    form = {'From': 'whatsapp:+12345678900', 'Body': 'hello', 'WaId': '12345678900'}
    response = test_client.post('/webhook/whatsapp', data=form)
    assert response.status_code == 200
    mock_services['messaging'].handle_inbound.assert_awaited_once_with('whatsapp', form)


def test_webhook_rejects_bad_payload(test_client, mock_services):
    mock_services['messaging'].handle_inbound.side_effect = AppError(
        "WhatsApp message received on the SMS webhook", status_code=400
    )
    response = test_client.post('/webhook/sms', data={'From': 'whatsapp:+12345678900', 'Body': 'hi'})
    assert response.status_code == 400
    assert response.get_json()['success'] is False


def test_webhook_unexpected_error(test_client, mock_services):
    mock_services['messaging'].handle_inbound.side_effect = RuntimeError("boom")
    response = test_client.post('/webhook/sms', data={'From': '+12345678900', 'Body': 'hi'})
    assert response.status_code == 500
    assert response.get_json() == {'success': False, 'error': 'Internal server error'}


def test_email_webhook_polls(test_client, mock_services):
    mock_services['email'].poll_once.return_value = PollResult(processed=2, session_ids=['a-v1', 'b-v1'])
    response = test_client.post('/webhook/email')
    assert response.status_code == 200
    body = response.get_json()
    assert body['success'] is True
    assert body['processed'] == 2
    assert body['session_ids'] == ['a-v1', 'b-v1']


def test_email_webhook_without_gmail(mock_services):
    mock_services['email'] = None
    client = create_app(services=mock_services).test_client()
    assert client.post('/webhook/email').status_code == 503
    assert client.get('/').get_json()['email_relay'] is False


@pytest.mark.parametrize("channel", ['sms', 'whatsapp'])
def test_send_messaging(test_client, mock_services, channel):
    response = test_client.post(f'/send/{channel}', json={'to': '+12345678900', 'message': 'Hi', 'from': '+1555'})
    assert response.status_code == 200
    assert response.get_json() == {'success': True, 'message_id': 'SM123'}
    mock_services['messaging'].send.assert_awaited_once_with(channel, '+12345678900', 'Hi', from_='+1555')


def test_send_email(test_client, mock_services):
    response = test_client.post('/send/email', json={'to': 'jane@x.com', 'subject': 'Hello', 'body': 'Hi Jane'})
    assert response.status_code == 200
    mock_services['email'].send.assert_awaited_once_with('jane@x.com', 'Hello', 'Hi Jane')


def test_send_email_requires_fields(test_client):
    response = test_client.post('/send/email', json={'subject': 'Hello'})
    assert response.status_code == 400


def test_send_error_status(test_client, mock_services):
    mock_services['messaging'].send.side_effect = AppError("Invalid phone number format.", status_code=400)
    response = test_client.post('/send/sms', json={'to': 'nope', 'message': 'Hi'})
    assert response.status_code == 400
    assert response.get_json()['error'] == 'Invalid phone number format.'


def test_query_proxy(test_client, mock_services):
    response = test_client.post('/query', json={'query': 'balance?', 'session_id': '12345678900-v1'})
    assert response.status_code == 200
    assert response.get_json() == {'agent_response': 'Hello from the API'}
    mock_services['query'].ask.assert_awaited_once_with('balance?', session_id='12345678900-v1', employee_id=None)


def test_query_proxy_error(test_client, mock_services):
    mock_services['query'].ask = AsyncMock(side_effect=AppError("Query text is required", status_code=400))
    assert test_client.post('/query', json={}).status_code == 400


def test_health(test_client):
    response = test_client.get('/')
    assert response.status_code == 200
    assert response.get_json() == {'status': 'healthy', 'session_strategy': 'store', 'email_relay': True}
