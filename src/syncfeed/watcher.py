"""Watch the data directory for units written by sync tools or other instances.

Notifications are treated as hints. Bursts are coalesced into one ChangedSet,
and whenever the watcher cannot be sure it saw everything it asks for a full
rescan instead of trusting partial information.
"""

import asyncio
import inspect
import logging
import os
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from watchdog.events import (
    EVENT_TYPE_MODIFIED,
    FileSystemEvent,
    FileSystemEventHandler,
)
from watchdog.observers import Observer

from syncfeed.models import RecordKey
from syncfeed.store import Store

logger = logging.getLogger(__name__)

DEFAULT_DEBOUNCE = 0.25  # seconds of quiet before a batch is delivered
DEFAULT_MAX_DELAY = 1.0  # upper bound on how long a busy burst is held back
DEFAULT_RESCAN_INTERVAL = 60.0
DEFAULT_MAX_PENDING = 4096

# Opening or reading a unit does not change it.
IGNORED_EVENT_TYPES = frozenset({"opened", "closed_no_write"})


@dataclass(frozen=True)
class ChangedSet:
    """Record keys touched on disk since the last delivery."""

    keys: frozenset[RecordKey] = field(default_factory=frozenset)
    full_rescan: bool = False


ChangeCallback = Callable[[ChangedSet], Any]


class _EventHandler(FileSystemEventHandler):
    """Runs on the observer thread; only forwards events to the watcher."""

    def __init__(self, watcher: "ChangeWatcher"):
        self._watcher = watcher

    def on_any_event(self, event: FileSystemEvent) -> None:
        self._watcher._post(event)


class ChangeWatcher:
    """Debounced change notifications for a Store's data directory.

    Args:
        store: The store whose directory is watched.
        callback: Called (and awaited, if it returns an awaitable) with each ChangedSet.
        debounce: Quiet period that ends a burst.
        max_delay: Longest a continuous burst may defer delivery.
        rescan_interval: Seconds between safety rescans; None disables them.
        max_pending: Pending keys beyond which the batch becomes a full rescan.
        observer_factory: Builds the watchdog observer.
    """

    def __init__(
        self,
        store: Store,
        callback: ChangeCallback,
        debounce: float = DEFAULT_DEBOUNCE,
        max_delay: float = DEFAULT_MAX_DELAY,
        rescan_interval: float | None = DEFAULT_RESCAN_INTERVAL,
        max_pending: int = DEFAULT_MAX_PENDING,
        observer_factory: Callable[[], Any] = Observer,
    ):
        self.store = store
        self.callback = callback
        self.debounce = debounce
        self.max_delay = max(max_delay, debounce)
        self.rescan_interval = rescan_interval
        self.max_pending = max_pending
        self._observer_factory = observer_factory
        self._handler = _EventHandler(self)
        self._observer = None
        self._loop: asyncio.AbstractEventLoop | None = None
        self._wakeup: asyncio.Event | None = None
        self._task: asyncio.Task | None = None
        self._pending: set[RecordKey] = set()
        self._full_rescan = False

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start(self) -> None:
        """Subscribe to the directory and start delivering change sets."""
        if self._task is not None:
            return
        self._loop = asyncio.get_running_loop()
        self._wakeup = asyncio.Event()
        self._start_observer()
        self._task = asyncio.create_task(self._run(), name="syncfeed-watcher")
        logger.info("Watching %s", self.store.data_dir)

    async def stop(self) -> None:
        """Tear down the subscription. Nothing is delivered afterwards."""
        self._loop = None
        task, self._task = self._task, None
        if task is not None:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        observer, self._observer = self._observer, None
        if observer is not None:
            observer.stop()
            await asyncio.to_thread(observer.join)
        self._pending.clear()
        self._full_rescan = False

    def request_rescan(self, reason: str = "requested") -> None:
        """Ask for a full reconciliation pass on the next delivery."""
        if not self._full_rescan:
            logger.debug("Full rescan scheduled (%s)", reason)
        self._full_rescan = True
        self._pending.clear()
        if self._wakeup is not None:
            self._wakeup.set()

    def notice(self, event: FileSystemEvent) -> None:
        """Record one filesystem event. Must run on the event loop thread."""
        if event.event_type in IGNORED_EVENT_TYPES:
            return

        if event.is_directory:
            # Creating a file bumps the directory's own mtime; that is noise.
            if event.event_type != EVENT_TYPE_MODIFIED:
                self.request_rescan(f"directory {event.event_type}")
            return

        for raw_path in (event.src_path, getattr(event, "dest_path", "")):
            if not raw_path:
                continue
            path = os.fsdecode(raw_path)
            if self.store.is_scratch(path):
                continue
            key = self.store.key_for_path(path)
            if key is not None:
                if not self._full_rescan:
                    self._pending.add(key)
            elif self.store.is_unit(path):
                # Sync tools rename conflicting copies; only a scan finds their key.
                self.request_rescan(f"unrecognized unit {os.path.basename(path)}")

        if len(self._pending) > self.max_pending:
            self.request_rescan("event overflow")
        if self._wakeup is not None:
            self._wakeup.set()

    # --- Internals ---

    def _post(self, event: FileSystemEvent) -> None:
        loop = self._loop
        if loop is None:
            return
        try:
            loop.call_soon_threadsafe(self.notice, event)
        except RuntimeError:
            logger.debug("Event loop closed, dropping %s", event)

    def _start_observer(self) -> None:
        observer = self._observer_factory()
        observer.schedule(self._handler, str(self.store.data_dir), recursive=False)
        observer.start()
        self._observer = observer

    def _check_observer(self) -> None:
        if self._observer is None or self._observer.is_alive():
            return
        logger.warning("File watcher stopped unexpectedly, restarting it")
        self._observer = None
        self.request_rescan("watcher restarted")
        try:
            self._start_observer()
        except OSError as e:
            logger.error("Could not restart file watcher: %s", e)

    async def _run(self) -> None:
        while True:
            if await self._wait_for_activity():
                await self._settle()
            else:
                self.request_rescan("periodic")
            self._check_observer()

            changed = self._drain()
            if changed is None:
                continue
            try:
                result = self.callback(changed)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                logger.error("Change handler failed: %s", e)

    async def _wait_for_activity(self) -> bool:
        if self._wakeup.is_set():
            return True
        try:
            await asyncio.wait_for(self._wakeup.wait(), timeout=self.rescan_interval)
        except asyncio.TimeoutError:
            return False
        return True

    async def _settle(self) -> None:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.max_delay
        while True:
            self._wakeup.clear()
            remaining = min(self.debounce, deadline - loop.time())
            if remaining <= 0:
                return
            try:
                await asyncio.wait_for(self._wakeup.wait(), timeout=remaining)
            except asyncio.TimeoutError:
                return

    def _drain(self) -> ChangedSet | None:
        self._wakeup.clear()
        if not self._pending and not self._full_rescan:
            return None
        changed = ChangedSet(keys=frozenset(self._pending), full_rescan=self._full_rescan)
        self._pending.clear()
        self._full_rescan = False
        return changed
