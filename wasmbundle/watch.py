"""Watch the filesystem and trigger builds when sources change."""

from __future__ import annotations

import asyncio
import logging
import os
from pathlib import Path
from typing import Awaitable, Callable, Iterable

from watchdog.events import (
    EVENT_TYPE_CREATED,
    EVENT_TYPE_DELETED,
    EVENT_TYPE_MODIFIED,
    EVENT_TYPE_MOVED,
    FileSystemEvent,
    FileSystemEventHandler,
)
from watchdog.observers import Observer

log = logging.getLogger(__name__)

BLACKLIST = (".git",)
"""Path segments ignored by the watcher by default."""

DEBOUNCE = 1.0
"""Seconds of quiet to wait for before handling a burst of filesystem events."""

Builder = Callable[[], Awaitable[object]]


def is_blacklisted(path: Path | str) -> bool:
    """True when any segment of ``path`` is on the blacklist."""
    return any(part in BLACKLIST for part in Path(path).parts)


class _EventForwarder(FileSystemEventHandler):
    """Forwards the paths of relevant watchdog events into an asyncio queue."""

    def __init__(self, loop: asyncio.AbstractEventLoop, queue: asyncio.Queue[Path]) -> None:
        super().__init__()
        self._loop = loop
        self._queue = queue

    def on_any_event(self, event: FileSystemEvent) -> None:
        if event.event_type in (EVENT_TYPE_CREATED, EVENT_TYPE_MODIFIED, EVENT_TYPE_DELETED):
            raw = event.src_path
        elif event.event_type == EVENT_TYPE_MOVED:
            raw = event.dest_path
        else:
            return
        try:
            self._loop.call_soon_threadsafe(self._queue.put_nowait, Path(os.fsdecode(raw)))
        except RuntimeError:
            # The event loop has already been closed.
            pass


class WatchSystem:
    """Runs builds whenever a watched path changes, honouring ignored paths."""

    def __init__(
        self,
        builder: Builder,
        paths: Iterable[Path | str] = (),
        ignored_paths: Iterable[Path | str] = (),
        *,
        shutdown: asyncio.Event | None = None,
        on_build_done: Callable[[], None] | None = None,
        ignore_chan: asyncio.Queue[Path] | None = None,
        debounce: float = DEBOUNCE,
    ) -> None:
        self._builder = builder
        self.paths = [Path(p) for p in paths]
        self.ignored_paths = [Path(p) for p in ignored_paths]
        self.shutdown = shutdown if shutdown is not None else asyncio.Event()
        self.on_build_done = on_build_done
        self.ignore_chan: asyncio.Queue[Path] = (
            ignore_chan if ignore_chan is not None else asyncio.Queue()
        )
        self.debounce = debounce
        self._events: asyncio.Queue[Path] = asyncio.Queue()

    async def build(self) -> None:
        """Run a build, propagating its errors."""
        await self._builder()

    async def run(self) -> None:
        """Respond to filesystem events and ignore requests until shutdown is signalled."""
        observer = self._start_observer(asyncio.get_running_loop())
        shutdown_task = asyncio.create_task(self.shutdown.wait())
        ignore_task: asyncio.Task[Path] | None = None
        event_task: asyncio.Task[list[Path]] | None = None
        try:
            while True:
                if ignore_task is None:
                    ignore_task = asyncio.create_task(self.ignore_chan.get())
                if event_task is None:
                    event_task = asyncio.create_task(self._next_events())
                done, _ = await asyncio.wait(
                    {shutdown_task, ignore_task, event_task},
                    return_when=asyncio.FIRST_COMPLETED,
                )
                if shutdown_task in done:
                    break
                if ignore_task in done:
                    self.update_ignore_list(ignore_task.result())
                    ignore_task = None
                if event_task in done:
                    for path in event_task.result():
                        await self.handle_watch_event(path)
                    event_task = None
        finally:
            pending = [t for t in (shutdown_task, ignore_task, event_task) if t is not None]
            for task in pending:
                task.cancel()
            await asyncio.gather(*pending, return_exceptions=True)
            if observer is not None:
                observer.stop()
                await asyncio.to_thread(observer.join)
        log.debug("watcher system has shut down")

    async def handle_watch_event(self, path: Path | str) -> bool:
        """Build for a changed path unless it is gone, ignored or blacklisted.

        Returns whether a build was triggered.
        """
        try:
            ev_path = Path(path).resolve(strict=True)
        except OSError:
            # Removed resources cannot be canonicalized; nothing to do for them.
            return False

        if any(ev_path == ignored or ignored in ev_path.parents for ignored in self.ignored_paths):
            return False
        if is_blacklisted(ev_path):
            return False

        log.debug("change detected in %s", ev_path)
        try:
            await self._builder()
        except Exception as err:  # build errors are reported by the build itself
            log.debug("build failed: %s", err)

        if self.on_build_done is not None:
            self.on_build_done()
        return True

    def update_ignore_list(self, path: Path | str) -> None:
        """Add ``path`` (canonicalized where possible) to the ignored paths."""
        path = Path(path)
        try:
            path = path.resolve(strict=True)
        except OSError:
            pass
        if path not in self.ignored_paths:
            self.ignored_paths.append(path)

    async def _next_events(self) -> list[Path]:
        first = await self._events.get()
        if self.debounce > 0:
            await asyncio.sleep(self.debounce)
        batch = [first]
        while not self._events.empty():
            batch.append(self._events.get_nowait())
        return list(dict.fromkeys(batch))

    def _start_observer(self, loop: asyncio.AbstractEventLoop) -> Observer | None:
        if not self.paths:
            return None
        handler = _EventForwarder(loop, self._events)
        observer = Observer()
        for path in self.paths:
            if not path.exists():
                raise FileNotFoundError(f"failed to watch {path} for file system changes")
            observer.schedule(handler, str(path), recursive=True)
        observer.start()
        return observer