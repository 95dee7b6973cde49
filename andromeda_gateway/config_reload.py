"""Hot reload of the YAML config file via watchdog."""

from __future__ import annotations

import asyncio
import contextlib
import hashlib
import logging
from pathlib import Path
from typing import Awaitable, Callable

from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer


def is_config_event(path: str | bytes | Path | None, config_name: str) -> bool:
    """Return true when a filesystem event path names the watched config file."""
    if not path:
        return False
    if isinstance(path, bytes):
        path = path.decode("utf-8", errors="replace")
    return Path(path).name == config_name


class _ConfigEventHandler(FileSystemEventHandler):
    """Forward events for one file name to the asyncio loop."""

    def __init__(self, loop: asyncio.AbstractEventLoop, changed: asyncio.Event, config_name: str) -> None:
        super().__init__()
        self._loop = loop
        self._changed = changed
        self._config_name = config_name

    def on_any_event(self, event: FileSystemEvent) -> None:
        if event.is_directory:
            return
        paths = (getattr(event, "src_path", None), getattr(event, "dest_path", None))
        if any(is_config_event(path, self._config_name) for path in paths):
            self._loop.call_soon_threadsafe(self._changed.set)


class ConfigFileWatcher:
    """Watch one config file and invoke an async callback when its content changes.

    Editors often emit several events per save, so the callback fires only
    when the file digest differs from the last applied one.
    """

    def __init__(
        self,
        *,
        config_file: Path,
        on_change: Callable[[Path], Awaitable[None]],
        logger: logging.Logger,
        debounce_seconds: float = 0.2,
    ) -> None:
        self._config_file = config_file
        self._on_change = on_change
        self._log = logger
        self._debounce_seconds = debounce_seconds
        self._digest = self._current_digest()

    def _current_digest(self) -> str | None:
        try:
            return hashlib.sha256(self._config_file.read_bytes()).hexdigest()
        except OSError:
            return None

    async def apply_if_changed(self) -> bool:
        """Run the callback when the file content differs from the last applied version."""
        digest = self._current_digest()
        if digest is None or digest == self._digest:
            return False
        self._log.info("Configuration change detected at %s, reloading...", self._config_file)
        await self._on_change(self._config_file)
        self._digest = digest
        self._log.info("Configuration reloaded successfully")
        return True

    async def _watch_once(self) -> None:
        changed = asyncio.Event()
        handler = _ConfigEventHandler(asyncio.get_running_loop(), changed, self._config_file.name)
        observer = Observer()
        observer.schedule(handler, str(self._config_file.parent.resolve()), recursive=False)
        observer.start()
        try:
            while True:
                await changed.wait()
                await asyncio.sleep(self._debounce_seconds)
                changed.clear()
                try:
                    await self.apply_if_changed()
                except Exception as exc:
                    self._log.warning("Configuration reload failed, keeping current config: %s", exc)
        finally:
            observer.stop()
            with contextlib.suppress(Exception):
                await asyncio.to_thread(observer.join, 2.0)

    async def run_forever(self) -> None:
        """Keep watching; a crashed observer is restarted after one second."""
        if not self._config_file.parent.exists():
            self._log.info("config directory %s missing, hot reload disabled", self._config_file.parent)
            return
        while True:
            try:
                await self._watch_once()
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                self._log.warning("config watcher failed (%s), retrying in 1s", exc)
                await asyncio.sleep(1.0)
