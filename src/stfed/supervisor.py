"""Hook process launching and reaping."""
from __future__ import annotations

import logging
import os
import subprocess
import threading
from collections import Counter
from pathlib import Path
from queue import Empty, Queue
from typing import List, Optional, Tuple, Union

from .hooks import Hook

logger = logging.getLogger(__name__)

ENV_PATH = "STFED_PATH"
ENV_FOLDER = "STFED_FOLDER"

# Seconds the reaper waits for a new process before polling the watched ones again
REAPER_WAIT_DELAY = 0.5

Watched = Tuple[Hook, subprocess.Popen]

_STOP = object()


class HookSpawnError(Exception):
    """Raised when a hook command cannot be started."""


class RunningHookTracker:
    """Hook ids with a process that has not been reaped yet.

    Shared by the dispatcher, which marks hooks as started, and the reaper,
    which releases them. The lock only guards counter updates.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._running: Counter[int] = Counter()

    def try_start(self, hook: Hook) -> bool:
        """Atomically check the concurrency policy and mark the hook running."""

        with self._lock:
            if not hook.allow_concurrent and self._running[hook.hook_id] > 0:
                return False
            self._running[hook.hook_id] += 1
            return True

    def release(self, hook_id: int) -> None:
        with self._lock:
            if self._running[hook_id] > 1:
                self._running[hook_id] -= 1
            else:
                self._running.pop(hook_id, None)

    def is_running(self, hook_id: int) -> bool:
        with self._lock:
            return self._running[hook_id] > 0

    def running_count(self, hook_id: int) -> int:
        with self._lock:
            return self._running[hook_id]


class ProcessReaper:
    """Waits for hook processes from a single background thread.

    Processes are handed over with :meth:`watch`; the reaper polls them until
    they exit, logs the exit code and releases the hook in the tracker.
    Processes are never killed.
    """

    def __init__(self, tracker: RunningHookTracker, *, wait_delay: float = REAPER_WAIT_DELAY):
        self._tracker = tracker
        self._wait_delay = wait_delay
        self._queue: "Queue[Union[Watched, object]]" = Queue()
        self._watched: List[Watched] = []
        self._thread: Optional[threading.Thread] = None

    def start(self) -> None:
        self._thread = threading.Thread(target=self._run, name="stfed-reaper", daemon=True)
        self._thread.start()

    def stop(self, timeout: Optional[float] = None) -> None:
        """Stop the reaper thread; watched processes keep running."""

        if self._thread is None:
            return
        self._queue.put(_STOP)
        self._thread.join(timeout=timeout)
        self._thread = None

    def watch(self, hook: Hook, process: subprocess.Popen) -> None:
        self._queue.put((hook, process))

    @property
    def watched_count(self) -> int:
        return len(self._watched)

    def _run(self) -> None:
        while True:
            try:
                if self._watched:
                    item = self._queue.get(timeout=self._wait_delay)
                else:
                    item = self._queue.get()
            except Empty:
                item = None

            if item is _STOP:
                logger.debug("Reaper stopping with %s process(es) still watched", len(self._watched))
                return
            if item is not None:
                self._watched.append(item)  # type: ignore[arg-type]
            self.reap()

    def reap(self) -> int:
        """Release every watched process that has exited, return how many."""

        reaped = 0
        while True:
            finished = [entry for entry in self._watched if entry[1].poll() is not None]
            if not finished:
                return reaped
            for entry in finished:
                hook, process = entry
                returncode = process.returncode
                if returncode < 0:
                    logger.warning(
                        "Hook %s (pid %s) was killed by signal %s", hook.describe(), process.pid, -returncode
                    )
                else:
                    logger.info("Hook %s (pid %s) exited with code %s", hook.describe(), process.pid, returncode)
                self._tracker.release(hook.hook_id)
                self._watched.remove(entry)
                reaped += 1


class HookRunner:
    """Starts hook commands if their concurrency policy allows it."""

    def __init__(self, tracker: RunningHookTracker, reaper: ProcessReaper):
        self._tracker = tracker
        self._reaper = reaper

    def run(self, hook: Hook, path: Optional[Path], folder: Path) -> bool:
        """Start the hook, return False if it was skipped.

        Raises :class:`HookSpawnError` if the command cannot be started.
        """

        if not self._tracker.try_start(hook):
            logger.warning(
                "Hook %s is already running and allow_concurrent is false, ignoring path %s in folder %s",
                hook.describe(),
                path,
                folder,
            )
            return False

        logger.info("Running hook %s with path %s and folder %s", hook.describe(), path, folder)
        env = dict(os.environ)
        env[ENV_PATH] = str(path) if path is not None else ""
        env[ENV_FOLDER] = str(folder)
        try:
            process = subprocess.Popen(hook.config.command, env=env, stdin=subprocess.DEVNULL)
        except OSError as exc:
            self._tracker.release(hook.hook_id)
            raise HookSpawnError(f"Failed to start hook {hook.describe()}: {exc}") from exc

        self._reaper.watch(hook, process)
        return True
