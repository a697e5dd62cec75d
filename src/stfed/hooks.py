"""Hook lookup by event kind and folder."""
from __future__ import annotations

import logging
import shlex
from dataclasses import dataclass
from pathlib import Path, PurePosixPath
from typing import Dict, Iterable, Iterator, List, Tuple

from .config import HookConfig
from .events import DomainEvent, EventKind, FileDownSyncDone, RemoteFileConflict
from .syncthing import is_conflict_file

logger = logging.getLogger(__name__)

HookKey = Tuple[EventKind, Path]


@dataclass(frozen=True, eq=False)
class Hook:
    """A configured hook with an identity stable for the process lifetime.

    Two hooks with identical configuration still get distinct ids.
    """

    hook_id: int
    config: HookConfig

    @property
    def allow_concurrent(self) -> bool:
        return self.config.allow_concurrent

    def describe(self) -> str:
        return f"#{self.hook_id} [{self.config.event.value}] {shlex.join(self.config.command)}"

    def accepts(self, event: DomainEvent) -> bool:
        """Whether the event path passes this hook's filter."""

        path_filter = self.config.filter
        if path_filter is None or event.path is None:
            return True
        try:
            relative = event.path.relative_to(event.folder)
        except ValueError:
            relative = event.path
        return path_filter.matches(PurePosixPath(relative.as_posix()))


class HookRegistry:
    """Maps (event kind, folder) to hooks, in configuration order."""

    def __init__(self, hooks: Iterable[HookConfig]):
        self._hooks: List[Hook] = [Hook(hook_id=index, config=cfg) for index, cfg in enumerate(hooks)]
        self._by_key: Dict[HookKey, List[Hook]] = {}
        for hook in self._hooks:
            self._by_key.setdefault((hook.config.event, hook.config.folder), []).append(hook)

    def __iter__(self) -> Iterator[Hook]:
        return iter(self._hooks)

    def __len__(self) -> int:
        return len(self._hooks)

    def lookup(self, kind: EventKind, folder: Path) -> List[Hook]:
        return list(self._by_key.get((kind, folder), ()))

    def match(self, event: DomainEvent) -> List[Tuple[DomainEvent, Hook]]:
        """Return the (event, hook) pairs to run for an event.

        A synced down file named like a conflict copy is also dispatched as
        a :class:`RemoteFileConflict` to conflict hooks.
        """

        matches: List[Tuple[DomainEvent, Hook]] = []
        for dispatched in _expand(event):
            for hook in self.lookup(dispatched.kind, dispatched.folder):
                if hook.accepts(dispatched):
                    matches.append((dispatched, hook))
                else:
                    logger.debug("Hook %s filter rejects %s", hook.describe(), dispatched.path)
        return matches


def _expand(event: DomainEvent) -> Iterator[DomainEvent]:
    yield event
    if isinstance(event, FileDownSyncDone) and is_conflict_file(event.path):
        yield RemoteFileConflict(path=event.path, folder=event.folder)
