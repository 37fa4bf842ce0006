"""
Monitor

Drives the duty cycle: pulls the remote history, refreshes filesystem
watches on every search path share, and reacts to configuration file changes
by rediscovering the affected application and committing the result.
"""

import asyncio
import logging
import os
import threading
from typing import Dict, Optional, Set

from watchdog.events import FileSystemEvent, PatternMatchingEventHandler
from watchdog.observers import Observer
from watchdog.observers.api import ObservedWatch

from .discovery import DiscoveryContext, discover_all, discover_app
from .models import SearchPath
from .schedule import Schedule
from .store import SnapshotStore, StoreError

logger = logging.getLogger(__name__)

WATCH_PATTERNS = ["*.config"]


class ConfigChangeHandler(PatternMatchingEventHandler):
    """Forwards configuration file events under one share to the monitor."""

    def __init__(self, monitor: "Monitor", search_path: SearchPath):
        super().__init__(patterns=WATCH_PATTERNS, ignore_directories=True, case_sensitive=False)
        self.monitor = monitor
        self.search_path = search_path

    def on_any_event(self, event: FileSystemEvent) -> None:
        if event.event_type not in ("created", "modified", "deleted", "moved"):
            return
        changed_path = event.dest_path if event.event_type == "moved" else event.src_path
        self.monitor.on_changed(self.search_path, changed_path)


class Monitor:
    """Scheduler loop plus live watches on every search path share."""

    def __init__(
        self,
        ctx: DiscoveryContext,
        store: SnapshotStore,
        schedule: Schedule,
    ):
        self.ctx = ctx
        self.store = store
        self.schedule = schedule
        self._stop = asyncio.Event()
        self._working = asyncio.Lock()
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._observer: Optional[Observer] = None
        self._watches: Dict[str, ObservedWatch] = {}
        self._watches_lock = threading.Lock()
        self._pending: Set[str] = set()
        self._dirty: Set[str] = set()
        self._tasks: Set[asyncio.Task] = set()

    async def init(self) -> None:
        """Bring the data directory up to date and run a full discovery."""
        logger.info("Monitor initialising...")
        self._loop = asyncio.get_running_loop()
        await asyncio.to_thread(self.store.ensure_initialized)
        await discover_all(self.ctx)
        await asyncio.to_thread(self.store.commit_pending_changes)

    async def run(self) -> None:
        """Loop until stopped: work when the schedule allows, then sleep."""
        logger.info("Monitor running...")
        self._loop = asyncio.get_running_loop()
        self._observer = Observer()
        self._observer.start()
        try:
            while not self._stop.is_set():
                async with self._working:
                    try:
                        await self._work()
                    except StoreError as e:
                        logger.error(f"Work cycle failed, data directory not trusted: {e}", exc_info=True)
                    except Exception as e:
                        logger.error(f"Work cycle failed: {e}", exc_info=True)
                await self._sleep(self.schedule.pause_between_cycles())
        finally:
            await self._cleanup()

    async def stop(self) -> None:
        """Request a stop and wait for any in-flight work cycle to finish."""
        logger.info("Monitor stopping...")
        self._stop.set()
        async with self._working:
            pass

    async def _work(self) -> None:
        if not self.schedule.should_work():
            logger.info("Monitor ignoring work due to scheduling...")
            return
        logger.info("Monitor working...")
        if await asyncio.to_thread(self.store.pull):
            # configuration changed elsewhere
            await discover_all(self.ctx)
            await asyncio.to_thread(self.store.commit_pending_changes)
        self.refresh_watches()

    async def _sleep(self, seconds: float) -> None:
        if self._stop.is_set():
            return
        logger.info(f"Monitor sleeping for {_describe(seconds)}...")
        try:
            await asyncio.wait_for(self._stop.wait(), timeout=seconds)
            logger.info("Sleep interrupted by stop request.")
        except asyncio.TimeoutError:
            pass

    async def _cleanup(self) -> None:
        logger.info("Monitor cleaning up...")
        with self._watches_lock:
            keys = list(self._watches)
        for key in keys:
            self.ignore(key)
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        if self._observer is not None:
            self._observer.stop()
            await asyncio.to_thread(self._observer.join)
            self._observer = None

    # Filesystem watches

    def refresh_watches(self) -> None:
        """Watch every configured share that exists and drop watches on shares no longer configured."""
        to_watch = {}
        for search_path in self.ctx.data_dir.get_paths():
            if os.path.isdir(search_path.share):
                to_watch[_key(search_path.share)] = search_path
        with self._watches_lock:
            stale = [k for k in self._watches if k not in to_watch]
        for key in stale:
            self.ignore(key)
        for search_path in to_watch.values():
            self.watch(search_path)

    def watch(self, search_path: SearchPath) -> None:
        key = _key(search_path.share)
        with self._watches_lock:
            if key in self._watches or self._observer is None:
                return
            handler = ConfigChangeHandler(self, search_path)
            try:
                self._watches[key] = self._observer.schedule(handler, search_path.share, recursive=True)
            except OSError as e:
                logger.warning(f"Failed to watch {search_path.share}: {e}")
                return
        logger.info(f"Watching {search_path.share} ({search_path.environment}/{search_path.host}).")

    def ignore(self, key: str) -> None:
        with self._watches_lock:
            watch = self._watches.pop(key, None)
            if watch is not None and self._observer is not None:
                self._observer.unschedule(watch)
        if watch is not None:
            logger.info(f"Stopped watching {key}.")

    @property
    def watched(self) -> Set[str]:
        with self._watches_lock:
            return set(self._watches)

    def on_changed(self, search_path: SearchPath, changed_path: str) -> None:
        """Called from the watcher thread for every configuration file event."""
        app_path = owning_app_dir(search_path.share, changed_path)
        if app_path is None or self._loop is None or self._stop.is_set():
            return
        key = _key(app_path)
        with self._watches_lock:
            if key in self._pending:
                # rediscovery already queued or running, have it run once more
                self._dirty.add(key)
                return
            self._pending.add(key)
        logger.info(f"Configuration change detected: {changed_path}")
        asyncio.run_coroutine_threadsafe(self._schedule_rediscovery(search_path, app_path), self._loop)

    async def _schedule_rediscovery(self, search_path: SearchPath, app_path: str) -> None:
        task = asyncio.ensure_future(self.rediscover(search_path, app_path))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def rediscover(self, search_path: SearchPath, app_path: str) -> None:
        """Rediscover one application, repeating while further changes arrive."""
        key = _key(app_path)
        try:
            while True:
                await self._rediscover_once(search_path, app_path)
                with self._watches_lock:
                    if key not in self._dirty:
                        self._pending.discard(key)
                        return
                    self._dirty.discard(key)
                logger.info(f"Further changes in {app_path}, rediscovering again...")
        except asyncio.CancelledError:
            with self._watches_lock:
                self._pending.discard(key)
                self._dirty.discard(key)
            raise

    async def _rediscover_once(self, search_path: SearchPath, app_path: str) -> None:
        try:
            await discover_app(self.ctx, search_path, app_path)
            await asyncio.to_thread(self.store.commit_pending_changes)
        except StoreError as e:
            logger.error(f"Commit after change in {app_path} failed: {e}", exc_info=True)
        except Exception as e:
            logger.warning(f"Failed to rediscover application at: {app_path}")
            logger.error(f"Rediscovery error: {e}", exc_info=True)


def owning_app_dir(share: str, changed_path: str) -> Optional[str]:
    """The immediate child directory of ``share`` that contains ``changed_path``."""
    try:
        relative = os.path.relpath(changed_path, share)
    except ValueError:
        return None
    parts = relative.replace("\\", "/").split("/")
    if parts[0] in (".", "..") or len(parts) < 2:
        return None
    return os.path.join(share, parts[0])


def _key(path: str) -> str:
    return os.path.normcase(os.path.normpath(path)).lower()


def _describe(seconds: float) -> str:
    if seconds < 60:
        return f"{int(seconds)} seconds"
    return f"{int(seconds // 60)} minutes"
