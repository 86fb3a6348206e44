"""Supabase (PostgREST) gateway for the hosted ``tasks`` table.

Rows use the column names of the mobile app that shares the table
(``userId``, ``isCompleted``, ``createdAt``, ...). Deletions are soft: the row
keeps its id with ``deleted = true`` so that other clients can pull the
tombstone.

``updatedAt`` is stamped by the writing client and only feeds last-write-wins.
The sync cursor is a server-assigned revision instead, so a row edited offline
and uploaded late is still seen by clients that synced in the meantime. The
table needs a revision column bumped on every write::

    alter table tasks add column revision bigint;
    create sequence tasks_revision_seq owned by tasks.revision;
    create function bump_task_revision() returns trigger as $$
    begin
        new.revision := nextval('tasks_revision_seq');
        return new;
    end $$ language plpgsql;
    create trigger tasks_revision before insert or update on tasks
        for each row execute function bump_task_revision();
"""

import asyncio
import logging
from typing import Any, AsyncIterator, Dict, List, Optional, Tuple

import httpx

from ..task import Priority, Task
from ..utils.datetime import now_utc, parse_iso, to_iso_string
from .errors import TransportError
from .gateway import RemoteGateway
from .models import Ack, ChangeOperation, PendingChange, PushResult, RejectReason


logger = logging.getLogger(__name__)

# Status codes worth retrying; any other 4xx refuses the change for good
RETRYABLE_STATUS = {401, 408, 425, 429}


def task_to_row(task: Task) -> Dict[str, Any]:
    """Map a task to a ``tasks`` table row."""
    return {
        "id": task.id,
        "userId": task.user_id,
        "title": task.title,
        "description": task.description,
        "isCompleted": task.is_completed,
        "createdAt": to_iso_string(task.created_at),
        "updatedAt": to_iso_string(task.updated_at),
        "dueDate": to_iso_string(task.due_date),
        "priority": task.priority.value,
        "tags": [tag.to_dict() for tag in sorted(task.tags, key=lambda t: t.id)],
        "deleted": task.deleted,
    }


def row_to_task(row: Dict[str, Any]) -> Task:
    """Map a ``tasks`` table row to a task."""
    deleted = bool(row.get("deleted", False))
    updated_at = parse_iso(row.get("updatedAt")) or now_utc()
    if deleted:
        return Task.tombstone(row["id"], row.get("userId", ""), updated_at)
    return Task(
        id=row["id"],
        user_id=row.get("userId", ""),
        title=row.get("title", ""),
        description=row.get("description"),
        priority=Priority((row.get("priority") or "medium").lower()),
        is_completed=bool(row.get("isCompleted", False)),
        created_at=parse_iso(row.get("createdAt")) or updated_at,
        updated_at=updated_at,
        due_date=parse_iso(row.get("dueDate")),
        tags=row.get("tags") or [],
    )


class SupabaseGateway(RemoteGateway):
    """Remote gateway speaking the PostgREST dialect exposed by Supabase."""

    def __init__(self, url: str, anon_key: str, user_id: Optional[str] = None,
                 access_token: Optional[str] = None, table: str = "tasks",
                 cursor_column: str = "revision", page_size: int = 500,
                 poll_interval: float = 15.0, client: Optional[httpx.AsyncClient] = None,
                 timeout: float = 30.0):
        """Initialize the gateway.

        Args:
            url: Project URL, e.g. ``https://xyz.supabase.co``
            anon_key: Public API key sent as ``apikey``
            user_id: Only this user's rows are fetched when given
            access_token: User JWT; falls back to the anon key
            table: Table holding the tasks
            cursor_column: Server-assigned, increasing column the cursor follows
            page_size: Rows requested per page when fetching
            poll_interval: Seconds between polls in ``subscribe``
            client: Preconfigured HTTP client (tests pass a mock transport)
            timeout: Request timeout for the default client
        """
        self.base_url = url.rstrip("/") + "/rest/v1/"
        self.table = table
        self.cursor_column = cursor_column
        self.user_id = user_id
        self.page_size = page_size
        self.poll_interval = poll_interval
        self.headers = {
            "apikey": anon_key,
            "Authorization": f"Bearer {access_token or anon_key}",
            "Content-Type": "application/json",
        }
        self.client = client or httpx.AsyncClient(timeout=timeout)
        self.logger = logging.getLogger(__name__)

    @classmethod
    def from_settings(cls, settings, user_id: Optional[str] = None, **kwargs) -> "SupabaseGateway":
        """Build a gateway from ``BackendSettings``."""
        if not settings.configured:
            raise ValueError("SUPABASE_URL and SUPABASE_ANON_KEY must be set")
        return cls(
            settings.url,
            settings.anon_key,
            user_id=user_id,
            access_token=settings.access_token,
            table=settings.tasks_table,
            cursor_column=settings.cursor_column,
            **kwargs,
        )

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    async def close(self):
        await self.client.aclose()

    async def _request(self, method: str, params: Optional[Dict[str, str]] = None,
                       json: Any = None, prefer: Optional[str] = None) -> httpx.Response:
        """Send a request to the table endpoint.

        Raises:
            TransportError: On network failures and retryable statuses
        """
        headers = dict(self.headers)
        if prefer:
            headers["Prefer"] = prefer
        try:
            response = await self.client.request(
                method, self.base_url + self.table, params=params, json=json, headers=headers
            )
        except httpx.TimeoutException:
            raise TransportError("Supabase request timed out")
        except httpx.RequestError as e:
            raise TransportError(f"Supabase request failed: {e}")

        if response.status_code in RETRYABLE_STATUS or response.status_code >= 500:
            raise TransportError(f"Supabase error {response.status_code}: {response.text}")
        return response

    # Pull

    async def fetch_since(self, cursor: Optional[str]) -> Tuple[List[Task], Optional[str]]:
        return await self._fetch(cursor, self.user_id)

    async def _fetch(self, cursor: Optional[str], user_id: Optional[str]) -> Tuple[List[Task], Optional[str]]:
        tasks: List[Task] = []
        new_cursor = cursor

        while True:
            params = {
                "select": "*",
                "order": f"{self.cursor_column}.asc",
                "limit": str(self.page_size),
            }
            if new_cursor:
                params[self.cursor_column] = f"gt.{new_cursor}"
            if user_id:
                params["userId"] = f"eq.{user_id}"

            response = await self._request("GET", params=params)
            if response.status_code >= 400:
                raise TransportError(f"Fetch rejected ({response.status_code}): {response.text}")

            rows = response.json()
            for row in rows:
                try:
                    tasks.append(row_to_task(row))
                except (KeyError, TypeError, ValueError) as e:
                    self.logger.warning(f"Skipping malformed row {row.get('id')!r}: {e}")

            if rows:
                revision = rows[-1].get(self.cursor_column)
                if revision is None:
                    raise TransportError(f"Rows carry no {self.cursor_column!r} column")
                new_cursor = str(revision)
            if len(rows) < self.page_size:
                break

        self.logger.debug(f"Fetched {len(tasks)} row(s) from {self.table}")
        return tasks, new_cursor

    async def _latest_cursor(self, user_id: Optional[str]) -> Optional[str]:
        params = {
            "select": self.cursor_column,
            "order": f"{self.cursor_column}.desc",
            "limit": "1",
        }
        if user_id:
            params["userId"] = f"eq.{user_id}"
        response = await self._request("GET", params=params)
        if response.status_code >= 400:
            raise TransportError(f"Fetch rejected ({response.status_code}): {response.text}")
        rows = response.json()
        if not rows or rows[0].get(self.cursor_column) is None:
            return None
        return str(rows[0][self.cursor_column])

    # Push

    async def push_change(self, change: PendingChange) -> PushResult:
        if change.operation == ChangeOperation.DELETE:
            response = await self._request(
                "PATCH",
                params={"id": f"eq.{change.task_id}"},
                json={"deleted": True, "updatedAt": to_iso_string(now_utc())},
                prefer="return=minimal",
            )
        elif change.operation == ChangeOperation.CREATE:
            response = await self._insert(change.payload)
        else:
            response = await self._update(change.payload)

        if response.status_code >= 400:
            return self._reject(change, response)
        return Ack(change.change_id, change.task_id)

    async def _insert(self, task: Task) -> httpx.Response:
        # Re-delivered creates hit the primary key and are ignored
        return await self._request(
            "POST",
            params={"on_conflict": "id"},
            json=task_to_row(task),
            prefer="resolution=ignore-duplicates,return=minimal",
        )

    async def _update(self, task: Task) -> httpx.Response:
        response = await self._request(
            "PATCH",
            params={"id": f"eq.{task.id}", "deleted": "is.false"},
            json=task_to_row(task),
            prefer="return=representation",
        )
        if response.status_code >= 400 or response.json():
            return response
        # No live row matched: insert it unless a tombstone already holds the id
        return await self._insert(task)

    def _reject(self, change: PendingChange, response: httpx.Response) -> RejectReason:
        code = "permission" if response.status_code == 403 else "validation"
        try:
            message = response.json().get("message") or response.text
        except ValueError:
            message = response.text
        self.logger.warning(f"Supabase rejected change {change.change_id}: {message}")
        return RejectReason(change.change_id, change.task_id,
                            f"{response.status_code}: {message}", code=code)

    # Realtime

    async def subscribe(self, user_id: str) -> AsyncIterator[Task]:
        """Poll for rows changed after the subscription started."""
        cursor = await self._latest_cursor(user_id)
        while True:
            await asyncio.sleep(self.poll_interval)
            tasks, cursor = await self._fetch(cursor, user_id)
            for task in tasks:
                yield task
