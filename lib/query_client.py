import logging
from typing import Optional, Dict, Any
import aiohttp

from lib.error_handler import AppError, QueryApiError

logger = logging.getLogger(__name__)

DEFAULT_FALLBACK = "Thank you for your message. We have received it and will get back to you soon."

def _preview(text: str, limit: int = 100) -> str:
    return text[:limit] + ('...' if len(text) > limit else '')

class QueryClient:
    def __init__(self, api_url: str, employee_id: str = '1892', timeout: int = 30):
        self.api_url = api_url
        self.employee_id = employee_id
        self.timeout = timeout

    async def ask(self, query: str, session_id: Optional[str] = None,
                  employee_id: Optional[str] = None) -> Dict[str, Any]:
        """
        POST the query text to the query API and return its JSON body.
        The session id keeps multi-turn context on the API side.
        """
        if not query or not query.strip():
            raise AppError("Query text is required", status_code=400)

        payload = {
            'query': query.strip(),
            'employee_id': employee_id or self.employee_id,
        }
        if session_id:
            payload['session_id'] = session_id

        logger.info(
            f"Calling Query API: query={_preview(payload['query'])!r} "
            f"employee_id={payload['employee_id']} session_id={session_id or 'not provided'}"
        )

        timeout = aiohttp.ClientTimeout(total=self.timeout)
        async with aiohttp.ClientSession(timeout=timeout) as session:
            async with session.post(self.api_url, json=payload) as response:
                if response.status < 200 or response.status >= 300:
                    error_text = await response.text()
                    logger.error(f"Query API call failed: {response.status} {error_text}")
                    raise QueryApiError(f"API call failed: {response.status}", status_code=502)
                data = await response.json(content_type=None)

        if not isinstance(data, dict):
            data = {'data': data}
        logger.info(f"Query API call successful, has agent_response: {bool(data.get('agent_response'))}")
        return data

def get_response_text(api_response: Dict[str, Any], fallback_message: str = DEFAULT_FALLBACK) -> str:
    """Pick the reply text: agent_response, then message, then data"""
    agent_response = api_response.get('agent_response')
    if isinstance(agent_response, str) and agent_response.strip():
        return agent_response.strip()

    message = api_response.get('message')
    if isinstance(message, str) and message.strip():
        return message.strip()

    data = api_response.get('data')
    if isinstance(data, str) and data.strip():
        return data.strip()
    if isinstance(data, dict) and data.get('response'):
        return str(data['response']).strip()

    return fallback_message
