"""Event models shared across daemon components."""
from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import ClassVar, Optional, Union


class EventKind(str, Enum):
    """Kinds of folder events hooks can be bound to."""

    FOLDER_DOWN_SYNC_DONE = "folder_down_sync_done"
    FILE_DOWN_SYNC_DONE = "file_down_sync_done"
    FILE_CONFLICT = "file_conflict"
    REMOTE_FILE_CONFLICT = "remote_file_conflict"


@dataclass(frozen=True)
class FileDownSyncDone:
    """A single file finished synchronizing into a folder."""

    kind: ClassVar[EventKind] = EventKind.FILE_DOWN_SYNC_DONE

    path: Path
    folder: Path


@dataclass(frozen=True)
class FolderDownSyncDone:
    """A folder reached a fully synced state."""

    kind: ClassVar[EventKind] = EventKind.FOLDER_DOWN_SYNC_DONE

    folder: Path

    @property
    def path(self) -> Optional[Path]:
        return None


@dataclass(frozen=True)
class FileConflict:
    """A local conflict copy was detected for a file."""

    kind: ClassVar[EventKind] = EventKind.FILE_CONFLICT

    path: Path
    folder: Path


@dataclass(frozen=True)
class RemoteFileConflict:
    """A synced down file is a conflict copy created on another device."""

    kind: ClassVar[EventKind] = EventKind.REMOTE_FILE_CONFLICT

    path: Path
    folder: Path


DomainEvent = Union[FileDownSyncDone, FolderDownSyncDone, FileConflict, RemoteFileConflict]
