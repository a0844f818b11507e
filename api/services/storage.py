import logging
from typing import Optional, List, Dict, Any
from pydantic import BaseModel
from postgrest.exceptions import APIError

from lib.error_handler import SessionStoreError, SessionConflictError

logger = logging.getLogger(__name__)

UNIQUE_VIOLATION = '23505'

class SessionRecord(BaseModel):
    session_key: str
    session_id: str
    session_version: Optional[int] = None
    channel: str
    created_at: Optional[int] = None
    last_activity: Optional[int] = None
    is_active: bool = True

    # Correlation fields, kept for reference only
    phone_number: Optional[str] = None
    sender_email: Optional[str] = None
    subject: Optional[str] = None
    thread_id: Optional[str] = None
    in_reply_to: Optional[str] = None
    references: Optional[str] = None

    @property
    def is_malformed(self) -> bool:
        return self.session_version is None or self.last_activity is None

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> 'SessionRecord':
        """Build a record from a raw table row, blanking fields of the wrong type"""
        data = {key: row.get(key) for key in cls.model_fields if key in row}
        for field in ('session_version', 'created_at', 'last_activity'):
            value = data.get(field)
            if not isinstance(value, int) or isinstance(value, bool):
                data[field] = None
        data['is_active'] = row.get('is_active') is not False
        data['channel'] = str(row.get('channel') or '')
        data['session_id'] = str(row.get('session_id') or '')
        return cls(**data)

    def to_row(self) -> Dict[str, Any]:
        return self.model_dump()

class SessionStore:
    """
    Session records in a single Supabase table, one row per session version.

    The primary key is (session_key, session_id): SMS and WhatsApp sessions
    for one number carry the same session_id under different keys. Superseded
    versions stay in the table with is_active = false.
    """

    def __init__(self, supabase_client, table_name: str = 'session-store'):
        self.supabase = supabase_client
        self.table_name = table_name
        logger.info(f"Session store initialized with table: {table_name}")

    def _table(self):
        return self.supabase.table(self.table_name)

    def get(self, session_key: str) -> Optional[SessionRecord]:
        """Current record for a key: the active version, else the newest one"""
        try:
            result = self._table().select('*').eq('session_key', session_key).execute()
        except Exception as e:
            raise SessionStoreError(f"Failed to read session {session_key}: {str(e)}")

        rows: List[Dict[str, Any]] = result.data or []
        if not rows:
            return None

        records = [SessionRecord.from_row(row) for row in rows]
        records.sort(key=lambda r: (r.is_active, r.session_version or 0), reverse=True)
        return records[0]

    def put(self, record: SessionRecord) -> SessionRecord:
        """Unconditional upsert of one version, for backfills and manual repair"""
        try:
            self._table().upsert(record.to_row(), on_conflict='session_key,session_id').execute()
        except Exception as e:
            raise SessionStoreError(f"Failed to write session {record.session_id}: {str(e)}")
        return record

    def create(self, record: SessionRecord) -> SessionRecord:
        """Insert a new version; fails if that version or another active one exists for the key"""
        try:
            self._table().insert(record.to_row()).execute()
        except APIError as e:
            if e.code == UNIQUE_VIOLATION:
                raise SessionConflictError(f"Session {record.session_id} already exists")
            raise SessionStoreError(f"Failed to create session {record.session_id}: {e.message}")
        except Exception as e:
            raise SessionStoreError(f"Failed to create session {record.session_id}: {str(e)}")
        return record

    def touch(self, session_key: str, now: int) -> None:
        try:
            self._table().update({'last_activity': now})\
                .eq('session_key', session_key)\
                .eq('is_active', True)\
                .execute()
        except Exception as e:
            raise SessionStoreError(f"Failed to touch session {session_key}: {str(e)}")

    def supersede(self, current: SessionRecord, replacement: SessionRecord) -> SessionRecord:
        """
        Retire `current` and insert `replacement` as the active version.

        The retire step only matches while `current` is still active, so of two
        invocations racing to rotate the same session only one gets through;
        the other raises SessionConflictError.
        """
        if current.is_active:
            try:
                result = self._table().update({'is_active': False})\
                    .eq('session_key', current.session_key)\
                    .eq('session_id', current.session_id)\
                    .eq('is_active', True)\
                    .execute()
            except Exception as e:
                raise SessionStoreError(f"Failed to retire session {current.session_id}: {str(e)}")
            if not result.data:
                raise SessionConflictError(f"Session {current.session_id} was already superseded")

        return self.create(replacement)
