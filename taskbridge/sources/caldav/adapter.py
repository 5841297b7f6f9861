"""CalDAV transport for VTODO entries (NextCloud, Radicale, Baikal, iCloud, ...)."""

import asyncio
import logging
from collections.abc import Callable
from typing import Any, TypeVar
from urllib.parse import quote

from caldav import DAVClient
from caldav.elements import dav
from caldav.lib import error as caldav_error

from taskbridge.core.errors import ConfigurationError
from taskbridge.core.models import EntryRef, RemoteEntry
from taskbridge.core.vtodo import read_entry
from taskbridge.sources.caldav.errors import (
    CalDAVAuthError,
    CalDAVError,
    CalDAVNetworkError,
    CalDAVNotFoundError,
    CalDAVServerError,
    CalDAVTimeoutError,
    error_for_status,
)
from taskbridge.sources.caldav.retry import RetryPolicy, with_retry

logger = logging.getLogger(__name__)

T = TypeVar("T")

ICAL_CONTENT_TYPE = 'text/calendar; charset="utf-8"'


def translate_exception(exc: Exception, action: str) -> CalDAVError:
    """Map caldav / HTTP client exceptions onto the transport error taxonomy."""
    if isinstance(exc, CalDAVError):
        return exc
    if isinstance(exc, caldav_error.AuthorizationError):
        return CalDAVAuthError(f"{action}: authentication failed: {exc}", 401)
    if isinstance(exc, caldav_error.NotFoundError):
        return CalDAVNotFoundError(f"{action}: not found: {exc}", 404)
    if "timeout" in type(exc).__name__.lower():
        return CalDAVTimeoutError(f"{action}: timed out: {exc}")
    if isinstance(exc, (ConnectionError, OSError)):
        return CalDAVNetworkError(f"{action}: network error: {exc}")
    if isinstance(exc, caldav_error.DAVError):
        return CalDAVServerError(f"{action}: {exc}")
    return CalDAVServerError(f"{action}: unexpected error: {exc}")


class CalDAVTransport:
    """
    Transport for one CalDAV task calendar.

    All caldav calls are blocking and run in a worker thread. Writes use
    conditional PUTs: ``If-None-Match: *`` on create and ``If-Match`` with
    the stored ETag on update, so a concurrent server-side change surfaces as
    ``CalDAVConflictError`` instead of being overwritten.
    """

    def __init__(
        self,
        url: str,
        username: str,
        password: str,
        calendar: str | None = None,
        ssl_verify_cert: bool | str = True,
        timeout: float = 30.0,
        retry_policy: RetryPolicy | None = None,
    ):
        """
        Initialize CalDAV transport.

        Args:
            url: CalDAV server URL (e.g., https://nextcloud.example.com/remote.php/dav)
            username: CalDAV username
            password: CalDAV password
            calendar: Calendar URL/path or display name (defaults to the first todo-capable calendar)
            ssl_verify_cert: SSL verification flag or CA bundle path
            timeout: Per-request timeout in seconds
            retry_policy: Backoff settings for transient failures
        """
        self.url = url
        self.username = username
        self.password = password
        self.calendar_ref = calendar
        self.ssl_verify_cert = ssl_verify_cert
        self.timeout = timeout
        self.retry_policy = retry_policy or RetryPolicy()
        self.client: DAVClient | None = None
        self.calendar: Any = None

    async def _call(self, action: str, func: Callable[[], T]) -> T:
        async def attempt() -> T:
            try:
                return await asyncio.to_thread(func)
            except Exception as e:
                raise translate_exception(e, action) from e

        return await with_retry(attempt, policy=self.retry_policy, label=action)

    async def connect(self) -> None:
        """
        Connect to the server and resolve the task calendar.

        Raises:
            ConfigurationError: If the server is unreachable, the credentials are
                rejected, or the calendar cannot be found
        """
        if self.client is not None and self.calendar is not None:
            return

        def _connect():
            logger.debug(f"Connecting to CalDAV server: {self.url}")
            client = DAVClient(
                url=self.url,
                username=self.username,
                password=self.password,
                ssl_verify_cert=self.ssl_verify_cert,
                timeout=self.timeout,
            )
            return client, self._resolve_calendar(client)

        try:
            self.client, self.calendar = await self._call("Connect", _connect)
        except CalDAVAuthError:
            raise
        except CalDAVError as e:
            raise ConfigurationError(f"Cannot reach CalDAV server {self.url}: {e}") from e

        if self.calendar is None:
            raise ConfigurationError(f"CalDAV calendar not found: {self.calendar_ref or '(first task calendar)'}")
        logger.info(f"Connected to CalDAV calendar: {self.calendar.url}")

    def _resolve_calendar(self, client: DAVClient) -> Any:
        ref = self.calendar_ref
        if ref and (ref.startswith(("http://", "https://", "/"))):
            return client.calendar(url=ref)

        calendars = client.principal().calendars()
        logger.debug(f"Found {len(calendars)} calendars")
        for cal in calendars:
            if ref is None:
                components = cal.get_supported_components()
                if not components or "VTODO" in components:
                    return cal
            elif cal.name == ref or (cal.name or "").lower() == ref.lower():
                return cal
        return None

    async def fetch_all_entries(self) -> list[RemoteEntry]:
        """
        Fetch every VTODO in the calendar, including completed ones.

        Raises:
            TransportError: If the calendar cannot be listed
        """
        await self.connect()

        def _fetch():
            return self.calendar.search(todo=True, include_completed=True, props=[dav.GetEtag()])

        todos = await self._call("Fetch entries", _fetch)
        entries = []
        for todo in todos:
            try:
                raw = todo.data
                uid = read_entry(raw).uid
            except Exception as e:
                logger.error(f"Skipping unreadable entry {getattr(todo, 'url', '?')}: {e}")
                continue
            if not uid:
                logger.warning(f"Skipping entry without UID: {todo.url}")
                continue
            entries.append(
                RemoteEntry(
                    uid=uid,
                    href=str(todo.url),
                    revision_tag=(todo.props or {}).get(dav.GetEtag.tag),
                    raw_text=raw,
                )
            )

        logger.info(f"Fetched {len(entries)} entries from {self.calendar.url}")
        return entries

    async def create_entry(self, raw_text: str) -> EntryRef:
        """
        Upload a new entry as ``<UID>.ics``.

        Raises:
            TransportError: If the server refuses the entry
        """
        await self.connect()
        uid = read_entry(raw_text).uid
        href = str(self.calendar.url.join(quote(f"{uid}.ics")))

        def _put():
            return self.client.put(
                href,
                raw_text,
                {"Content-Type": ICAL_CONTENT_TYPE, "If-None-Match": "*"},
            )

        response = await self._call("Create entry", _put)
        if response.status not in (200, 201, 204):
            raise error_for_status(response.status, f"Create entry {uid}", response.headers)

        etag = response.headers.get("ETag")
        logger.debug(f"Created entry {uid} at {href} (etag={etag})")
        return EntryRef(uid=uid, href=href, revision_tag=etag)

    async def update_entry(self, href: str, revision_tag: str | None, raw_text: str) -> str | None:
        """
        Replace an entry, guarded by its revision tag.

        Returns:
            The new ETag if the server sent one

        Raises:
            CalDAVConflictError: If the entry changed on the server (412)
            TransportError: For any other failure
        """
        await self.connect()
        headers = {"Content-Type": ICAL_CONTENT_TYPE}
        if revision_tag:
            headers["If-Match"] = revision_tag

        response = await self._call("Update entry", lambda: self.client.put(href, raw_text, headers))
        if response.status not in (200, 201, 204):
            raise error_for_status(response.status, f"Update entry {href}", response.headers)

        etag = response.headers.get("ETag")
        logger.debug(f"Updated entry {href} (etag={etag})")
        return etag

    async def fetch_entry_raw_text(self, uid: str) -> str | None:
        """Return the current text of one entry, or None if it does not exist."""
        await self.connect()
        try:
            todo = await self._call("Fetch entry", lambda: self.calendar.todo_by_uid(uid))
        except CalDAVNotFoundError:
            return None
        return todo.data

    async def list_calendars(self) -> list[dict[str, str]]:
        """List the calendars of the authenticated principal."""
        def _list():
            client = self.client or DAVClient(
                url=self.url,
                username=self.username,
                password=self.password,
                ssl_verify_cert=self.ssl_verify_cert,
                timeout=self.timeout,
            )
            return [{"name": cal.name or "", "url": str(cal.url)} for cal in client.principal().calendars()]

        return await self._call("List calendars", _list)
