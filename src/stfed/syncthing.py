"""Client for the Syncthing REST API event stream.

The client turns the raw long-polling ``rest/events`` feed into
:mod:`stfed.events` domain events. Raw events that are premature (a folder
summary with items still to sync) or redundant (a repeated summary for the
same folder state) are swallowed here, so consumers only ever see domain
events or a terminal :class:`StreamError`.

See https://docs.syncthing.net/dev/events.html for the event payloads.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from importlib import metadata
from pathlib import Path
from typing import Any, Dict, Iterator, Optional, Union

import httpx

from .config import SyncthingConfig, normalize_folder
from .events import DomainEvent, FileConflict, FileDownSyncDone, FolderDownSyncDone

logger = logging.getLogger(__name__)

# Seconds the server may hold a long poll open before answering with nothing
EVENT_STREAM_TIMEOUT = 60 * 60
# Client side margin so the server always answers before the read times out
EVENT_STREAM_READ_MARGIN = 60
# Seconds allowed for any other request
REST_TIMEOUT = 10.0

HEADER_API_KEY = "X-API-Key"

SUBSCRIBED_EVENTS = ("ItemFinished", "FolderSummary", "LocalChangeDetected", "ConfigSaved")

# Syncthing names conflict copies "<name>.sync-conflict-<date>-<time>-<device>.<ext>"
CONFLICT_MARKER = ".sync-conflict-"


def is_conflict_file(path: Union[str, Path]) -> bool:
    return CONFLICT_MARKER in Path(path).name


def _user_agent() -> str:
    try:
        version = metadata.version("stfed")
    except metadata.PackageNotFoundError:
        version = "unknown"
    return f"stfed/{version}"


class SyncthingError(Exception):
    """Raised when Syncthing cannot be queried or answers unexpectedly."""


class ServerUnreachable(SyncthingError):
    """Raised when no connection to the Syncthing server can be made."""


class StreamErrorKind(str, Enum):
    """Terminal conditions of an event stream."""

    GONE = "gone"
    CONFIG_CHANGED = "config_changed"
    TRANSPORT = "transport"
    FATAL = "fatal"


@dataclass(frozen=True)
class StreamError:
    """Last item of an event stream, telling the consumer why it ended."""

    kind: StreamErrorKind
    detail: str

    @property
    def is_retryable(self) -> bool:
        return self.kind in (StreamErrorKind.GONE, StreamErrorKind.CONFIG_CHANGED)


StreamItem = Union[DomainEvent, StreamError]


@dataclass
class _StreamCursor:
    last_event_id: int = 0
    folder_state_change_time: Dict[str, str] = field(default_factory=dict)


class SyncthingClient:
    """Connection to one Syncthing instance.

    Building a client fetches the folder list, so a client only exists while
    the server is reachable. Raises :class:`ServerUnreachable` when the
    connection is refused and :class:`SyncthingError` for any other failure.
    """

    def __init__(self, config: SyncthingConfig, *, transport: Optional[httpx.BaseTransport] = None):
        self.base_url = config.url
        self._session = httpx.Client(
            base_url=config.url,
            headers={HEADER_API_KEY: config.api_key, "User-Agent": _user_agent()},
            timeout=httpx.Timeout(REST_TIMEOUT, read=EVENT_STREAM_TIMEOUT + EVENT_STREAM_READ_MARGIN),
            transport=transport,
        )
        try:
            self.folder_map = self._fetch_folder_map()
        except BaseException:
            self._session.close()
            raise
        logger.info("Connected to Syncthing at %s, %s folder(s)", self.base_url, len(self.folder_map))

    def __enter__(self) -> "SyncthingClient":
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()

    def close(self) -> None:
        self._session.close()

    def iter_events(self) -> Iterator[StreamItem]:
        """Yield domain events forever, or until a terminal :class:`StreamError`.

        Every call starts from a fresh cursor, i.e. from event id 0.
        """

        cursor = _StreamCursor()
        while True:
            raw = self._next_raw_event(cursor.last_event_id)
            if isinstance(raw, StreamError):
                yield raw
                return

            try:
                cursor.last_event_id = int(raw["id"])
                item = self._classify(raw, cursor)
            except (KeyError, TypeError, ValueError, SyncthingError) as exc:
                yield StreamError(StreamErrorKind.FATAL, f"Malformed event {raw!r}: {exc!r}")
                return

            if item is None:
                continue
            yield item
            if isinstance(item, StreamError):
                return

    def _fetch_folder_map(self) -> Dict[str, Path]:
        logger.debug("GET %srest/system/config", self.base_url)
        try:
            response = self._session.get("rest/system/config", timeout=REST_TIMEOUT)
            response.raise_for_status()
            payload = response.json()
        except (httpx.ConnectError, httpx.ConnectTimeout) as exc:
            raise ServerUnreachable(f"Unable to connect to Syncthing at {self.base_url}: {exc}") from exc
        except httpx.HTTPStatusError as exc:
            raise SyncthingError(
                f"Syncthing answered HTTP {exc.response.status_code} to the folder list request"
            ) from exc
        except httpx.HTTPError as exc:
            raise SyncthingError(f"Failed to fetch Syncthing folder list: {exc}") from exc
        except ValueError as exc:
            raise SyncthingError(f"Syncthing folder list is not valid JSON: {exc}") from exc

        try:
            return {folder["id"]: normalize_folder(folder["path"]) for folder in payload["folders"]}
        except (KeyError, TypeError) as exc:
            raise SyncthingError(f"Unexpected Syncthing folder list format: {exc!r}") from exc

    def _next_raw_event(self, since: int) -> Union[Dict[str, Any], StreamError]:
        params = {
            "since": since,
            "limit": 1,
            "events": ",".join(SUBSCRIBED_EVENTS),
            "timeout": EVENT_STREAM_TIMEOUT,
        }
        while True:
            logger.debug("GET %srest/events since=%s", self.base_url, since)
            try:
                response = self._session.get("rest/events", params=params)
                response.raise_for_status()
            except (
                httpx.RemoteProtocolError,
                httpx.ReadError,
                httpx.ReadTimeout,
                httpx.ConnectError,
                httpx.ConnectTimeout,
            ) as exc:
                return StreamError(StreamErrorKind.GONE, f"{type(exc).__name__}: {exc}")
            except httpx.HTTPError as exc:
                return StreamError(StreamErrorKind.TRANSPORT, f"{type(exc).__name__}: {exc}")

            try:
                events = response.json()
            except ValueError as exc:
                return StreamError(StreamErrorKind.FATAL, f"Events response is not valid JSON: {exc}")
            if not isinstance(events, list) or len(events) > 1:
                return StreamError(StreamErrorKind.FATAL, f"Unexpected events response: {events!r}")
            if not events:
                # Server side timeout elapsed without news
                continue
            logger.debug("Raw event: %s", events[0])
            return events[0]

    def _classify(self, raw: Dict[str, Any], cursor: _StreamCursor) -> Optional[StreamItem]:
        event_type = raw["type"]
        data = raw["data"]

        if event_type == "ItemFinished":
            folder = self._folder_path(data["folder"])
            return FileDownSyncDone(path=folder / data["item"], folder=folder)

        if event_type == "FolderSummary":
            summary = data["summary"]
            if summary["needTotalItems"] > 0:
                return None
            folder_id = data["folder"]
            folder = self._folder_path(folder_id)
            changed = summary["stateChanged"]
            if cursor.folder_state_change_time.get(folder_id) == changed:
                logger.debug("Duplicate summary for folder %s (state changed %s)", folder_id, changed)
                return None
            cursor.folder_state_change_time[folder_id] = changed
            return FolderDownSyncDone(folder=folder)

        if event_type == "LocalChangeDetected":
            # see https://github.com/syncthing/syncthing/issues/6121#issuecomment-549077477
            if data["type"] == "file" and data["action"] == "modified" and CONFLICT_MARKER in data["path"]:
                folder = self._folder_path(data["folder"])
                return FileConflict(path=folder / data["path"], folder=folder)
            return None

        if event_type == "ConfigSaved":
            return StreamError(StreamErrorKind.CONFIG_CHANGED, f"Server sent ConfigSaved event {raw['id']}")

        return StreamError(
            StreamErrorKind.FATAL,
            f"Received {event_type!r} event which is not among subscribed events {SUBSCRIBED_EVENTS}",
        )

    def _folder_path(self, folder_id: str) -> Path:
        try:
            return self.folder_map[folder_id]
        except KeyError:
            raise SyncthingError(f"Unknown folder id {folder_id!r}") from None
