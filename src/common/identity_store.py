"""
Identity Store client - the remote directory of screen records.

REST requests go to a PostgREST endpoint (``/rest/v1/<table>``) with
``requests``; push notifications come from the realtime socket in
``src.common.realtime``. ``IdentityStore`` is the async facade used by
the screen agent: blocking HTTP calls run in a worker thread so the
event loop never stalls on the network.
"""

import asyncio
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

import requests

from src.common.logger import setup_logger
from src.common.realtime import RealtimeClient, Subscription

logger = setup_logger(__name__)

DEFAULT_TIMEOUT = 10
DEFAULT_TABLE = "screens"

# PostgreSQL unique_violation
UNIQUE_VIOLATION_CODE = "23505"
# PostgREST: single object requested, zero rows returned
NO_ROWS_CODE = "PGRST116"


class IdentityStoreError(Exception):
    """Base class for identity store failures."""
    pass


class UniqueConstraintError(IdentityStoreError):
    """Raised when an insert collides with an existing unique value."""
    pass


class RecordNotFound(IdentityStoreError):
    """Raised when the requested screen record does not exist."""
    pass


class TransientError(IdentityStoreError):
    """Raised for network failures, rate limiting and server errors."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


@dataclass
class ScreenRecord:
    """One row of the screens table."""
    id: str
    code: str
    assigned_path: Optional[str] = None
    last_seen: Optional[str] = None
    current_page: Optional[str] = None
    name: Optional[str] = None
    user_agent: Optional[str] = None
    extra: Dict[str, Any] = field(default_factory=dict, repr=False)

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "ScreenRecord":
        """Build a record from a row dict, keeping unknown columns in extra."""
        known = {
            'id', 'code', 'assigned_path', 'last_seen',
            'current_page', 'name', 'user_agent',
        }
        return cls(
            id=str(row['id']),
            code=row.get('code') or '',
            assigned_path=row.get('assigned_path'),
            last_seen=row.get('last_seen'),
            current_page=row.get('current_page'),
            name=row.get('name'),
            user_agent=row.get('user_agent'),
            extra={k: v for k, v in row.items() if k not in known},
        )


class ScreenDirectory:
    """Blocking REST client for the screens table."""

    def __init__(
        self,
        base_url: str,
        api_key: str,
        table: str = DEFAULT_TABLE,
        timeout: float = DEFAULT_TIMEOUT,
        session: Optional[requests.Session] = None,
    ):
        """
        Args:
            base_url: Project URL, e.g. https://xyz.supabase.co
            api_key: Anonymous API key
            table: Table holding screen records
            timeout: Per-request timeout in seconds
            session: Optional requests session (tests inject a mock)
        """
        self.base_url = base_url.rstrip('/')
        self.table = table
        self.timeout = timeout
        self._session = session or requests.Session()
        self._session.headers.update({
            'apikey': api_key,
            'Authorization': f'Bearer {api_key}',
            'Content-Type': 'application/json',
            'Accept': 'application/json',
            'Prefer': 'return=representation',
        })

    @property
    def table_url(self) -> str:
        return f"{self.base_url}/rest/v1/{self.table}"

    def insert(self, fields: Dict[str, Any]) -> ScreenRecord:
        """
        Insert a new screen record.

        Raises:
            UniqueConstraintError: The code is already taken
            TransientError: Network or server failure
        """
        rows = self._request('POST', json=fields)
        return self._single(rows, "insert")

    def get_by_id(self, screen_id: str) -> ScreenRecord:
        """Look up a record by id. Raises RecordNotFound if absent."""
        rows = self._request('GET', params={'id': f'eq.{screen_id}', 'select': '*'})
        return self._single(rows, f"id={screen_id}")

    def get_by_code(self, code: str) -> ScreenRecord:
        """Look up a record by pairing code. Raises RecordNotFound if absent."""
        rows = self._request('GET', params={'code': f'eq.{code}', 'select': '*'})
        return self._single(rows, f"code={code}")

    def update(self, screen_id: str, fields: Dict[str, Any]) -> ScreenRecord:
        """
        Partially update a record; columns not in fields are left alone.

        Returns:
            The updated record as stored

        Raises:
            RecordNotFound: No row with this id (operator deleted it)
            TransientError: Network or server failure
        """
        rows = self._request('PATCH', params={'id': f'eq.{screen_id}'}, json=fields)
        return self._single(rows, f"id={screen_id}")

    def _single(self, rows: List[Dict[str, Any]], what: str) -> ScreenRecord:
        if not rows:
            raise RecordNotFound(f"No screen record for {what}")
        return ScreenRecord.from_row(rows[0])

    def _request(
        self,
        method: str,
        params: Optional[Dict[str, str]] = None,
        json: Optional[Dict[str, Any]] = None,
    ) -> List[Dict[str, Any]]:
        """Send one request and map failures onto the store error taxonomy."""
        try:
            response = self._session.request(
                method,
                self.table_url,
                params=params,
                json=json,
                timeout=self.timeout,
            )
        except requests.Timeout as e:
            raise TransientError(f"{method} timed out: {e}") from e
        except requests.RequestException as e:
            raise TransientError(f"{method} failed: {e}") from e

        if response.status_code < 400:
            if not response.content:
                return []
            try:
                data = response.json()
            except ValueError as e:
                raise TransientError(
                    f"{method} returned invalid JSON", response.status_code
                ) from e
            return data if isinstance(data, list) else [data]

        error_code = self._error_code(response)
        if response.status_code == 409 or error_code == UNIQUE_VIOLATION_CODE:
            raise UniqueConstraintError(f"Unique constraint violated ({error_code})")
        if error_code == NO_ROWS_CODE:
            raise RecordNotFound("No screen record matched")

        raise TransientError(
            f"{method} failed: HTTP {response.status_code}", response.status_code
        )

    @staticmethod
    def _error_code(response: requests.Response) -> Optional[str]:
        try:
            body = response.json()
        except ValueError:
            return None
        if isinstance(body, dict):
            return body.get('code')
        return None


class IdentityStore:
    """
    Async facade over the REST directory and the realtime socket.

    Usage:
        store = IdentityStore(ScreenDirectory(url, key), RealtimeClient(url, key))
        record = await store.get_by_id(screen_id)
        sub = await store.subscribe_to_row_change(record.id, on_change)
    """

    def __init__(self, directory: ScreenDirectory, realtime: RealtimeClient):
        self._directory = directory
        self._realtime = realtime

    @property
    def realtime(self) -> RealtimeClient:
        return self._realtime

    async def insert(self, fields: Dict[str, Any]) -> ScreenRecord:
        return await asyncio.to_thread(self._directory.insert, fields)

    async def get_by_id(self, screen_id: str) -> ScreenRecord:
        return await asyncio.to_thread(self._directory.get_by_id, screen_id)

    async def get_by_code(self, code: str) -> ScreenRecord:
        return await asyncio.to_thread(self._directory.get_by_code, code)

    async def update(self, screen_id: str, fields: Dict[str, Any]) -> ScreenRecord:
        return await asyncio.to_thread(self._directory.update, screen_id, fields)

    async def subscribe_to_row_change(
        self,
        screen_id: str,
        on_change: Callable[[ScreenRecord], None],
    ) -> Subscription:
        """Deliver every pushed UPDATE of this screen's row to on_change."""
        def _on_row(row: Dict[str, Any]) -> None:
            on_change(ScreenRecord.from_row(row))

        return await self._realtime.subscribe_to_row_change(
            self._directory.table, screen_id, _on_row
        )

    async def subscribe_to_broadcast(
        self,
        channel_id: str,
        event_name: str,
        on_event: Callable[[Dict[str, Any]], None],
    ) -> Subscription:
        return await self._realtime.subscribe_to_broadcast(channel_id, event_name, on_event)

    def channel_states(self) -> List[str]:
        return self._realtime.channel_states()
