"""
Port to the CalDAV server.

The sync tracker depends on this Protocol rather than on an HTTP client, so
the reconciliation logic runs unchanged against a real connector or the
in-memory fake used by the tests.  Implementations translate their own
errors into TransientFetchFailure, RemoteNotFound, PreconditionFailed and
SyncTokenExpired from caldav_tasks.models.
"""

from dataclasses import dataclass
from dataclasses import field
from typing import Protocol

from caldav_tasks.models import Account
from caldav_tasks.models import Calendar


@dataclass
class RemoteCalendar:
    """One collection as reported by the server's calendar-home listing."""

    url: str
    display_name: str
    ctag: str | None = None
    sync_token: str | None = None
    color: str | None = None
    supported_components: list[str] | None = None


@dataclass
class RemoteResource:
    """One calendar object: its path, version tag and raw iCalendar text."""

    href: str
    etag: str
    body: str


@dataclass
class RemoteListing:
    """Every member of a collection plus the sync token valid after it."""

    resources: list[RemoteResource] = field(default_factory=list)
    sync_token: str | None = None


@dataclass
class RemoteDelta:
    """Changes since a sync token (RFC 6578 sync-collection report)."""

    changed: list[RemoteResource] = field(default_factory=list)
    deleted_hrefs: list[str] = field(default_factory=list)
    sync_token: str | None = None


@dataclass
class PushResult:
    href: str
    etag: str


class CalDAVTransport(Protocol):
    def list_calendars(self, account: Account) -> list[RemoteCalendar]: ...

    def get_ctag(self, calendar: Calendar) -> str | None: ...

    def list_resources(self, calendar: Calendar) -> RemoteListing: ...

    def fetch_changes(self, calendar: Calendar, sync_token: str) -> RemoteDelta:
        """Raises SyncTokenExpired when the server no longer accepts the token."""
        ...

    def put(
        self, calendar: Calendar, href: str | None, body: str, etag: str | None
    ) -> PushResult:
        """Create (``href`` None) or update a resource.

        ``etag`` is sent as If-Match; a mismatch raises PreconditionFailed.
        """
        ...

    def delete(self, href: str, etag: str | None) -> None:
        """Raises RemoteNotFound when the resource is already gone."""
        ...
