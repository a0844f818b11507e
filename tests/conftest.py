import pytest
from unittest.mock import AsyncMock, MagicMock
import sys
from pathlib import Path
from postgrest.exceptions import APIError

# Add project root to Python path
project_root = str(Path(__file__).parent.parent)
sys.path.append(project_root)

from api.routes import create_app
from api.services.storage import SessionStore

T0 = 1_735_128_000_000  # 2024-12-25 12:00:00 UTC, a 5-minute boundary
MINUTE = 60_000
HOUR = 60 * MINUTE


class FakeResult:
    def __init__(self, data):
        self.data = data


def _same_version(row, other):
    return (row['session_key'], row['session_id']) == (other['session_key'], other['session_id'])


class FakeQuery:
    """Just enough of the postgrest query builder for the session store"""

    def __init__(self, rows: list, action: str, payload=None):
        self.rows = rows
        self.action = action
        self.payload = payload
        self.filters = []

    def eq(self, column, value):
        self.filters.append((column, value))
        return self

    def _matches(self, row):
        return all(row.get(column) == value for column, value in self.filters)

    def _unique_violation(self, row):
        for existing in self.rows:
            if _same_version(existing, row):
                return True
            if row.get('is_active') and existing.get('is_active') and existing['session_key'] == row['session_key']:
                return True
        return False

    def execute(self):
        if self.action == 'select':
            return FakeResult([dict(row) for row in self.rows if self._matches(row)])

        if self.action == 'insert':
            if self._unique_violation(self.payload):
                raise APIError({'code': '23505', 'message': 'duplicate key value violates unique constraint'})
            self.rows.append(dict(self.payload))
            return FakeResult([dict(self.payload)])

        if self.action == 'upsert':
            for existing in self.rows:
                if _same_version(existing, self.payload):
                    existing.update(self.payload)
                    return FakeResult([dict(existing)])
            self.rows.append(dict(self.payload))
            return FakeResult([dict(self.payload)])

        if self.action == 'update':
            updated = []
            for row in self.rows:
                if self._matches(row):
                    row.update(self.payload)
                    updated.append(dict(row))
            return FakeResult(updated)

        raise AssertionError(f"unexpected action {self.action}")


class FakeTable:
    def __init__(self, rows: list):
        self.rows = rows

    def select(self, *columns):
        return FakeQuery(self.rows, 'select')

    def insert(self, row):
        return FakeQuery(self.rows, 'insert', row)

    def upsert(self, row, on_conflict=None):
        return FakeQuery(self.rows, 'upsert', row)

    def update(self, values):
        return FakeQuery(self.rows, 'update', values)


class FakeSupabase:
    def __init__(self):
        self.tables = {}

    def table(self, name):
        return FakeTable(self.tables.setdefault(name, []))

    def rows(self, name='session-store'):
        return self.tables.setdefault(name, [])


@pytest.fixture
def fake_supabase():
    return FakeSupabase()


@pytest.fixture
def session_store(fake_supabase):
    return SessionStore(fake_supabase, 'session-store')


@pytest.fixture
def broken_store():
    """A store whose backing table is unreachable"""
    supabase = MagicMock()
    supabase.table.side_effect = ConnectionError("connection refused")
    return SessionStore(supabase, 'session-store')


@pytest.fixture
def mock_services():
    messaging = MagicMock()
    messaging.handle_inbound = AsyncMock(return_value='12345678900-v1')
    messaging.send = AsyncMock(return_value='SM123')

    email = MagicMock()
    email.poll_once = AsyncMock()
    email.send = AsyncMock(return_value='gmail-msg-1')

    query = MagicMock()
    query.ask = AsyncMock(return_value={'agent_response': 'Hello from the API'})

    resolver = MagicMock()
    resolver.strategy = 'store'

    return {'messaging': messaging, 'email': email, 'query': query, 'resolver': resolver}


@pytest.fixture
def test_client(mock_services):
    app = create_app(services=mock_services)
    app.config['TESTING'] = True
    return app.test_client()
