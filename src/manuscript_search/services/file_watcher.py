"""
File Change Watcher

Watches the projects root with watchdog and turns raw filesystem events into
debounced, project-scoped FileChangeEvent messages on a queue.

- Only allow-listed extensions are reported.
- The owning project is the first path segment below the root; hidden
  segments, files directly in the root and paths outside it are ignored.
- Events are debounced per (event type, path): each new event restarts the
  timer and only the last one is emitted.
"""

import queue
import threading
from pathlib import Path
from typing import Dict, Iterable, Optional, Tuple, Union

from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer

from ..logging_config import configure_logger_for_debug_trace
from ..models import FileChangeEvent, FileEventType

logger = configure_logger_for_debug_trace(__name__)

DEFAULT_EXTENSIONS = ("md", "txt")


class _FileChangeHandler(FileSystemEventHandler):
    """
    Watchdog event handler that forwards file events to the watcher.

    Uses the specific on_created/on_deleted/on_modified/on_moved handlers
    instead of on_any_event so that file access events are not reported.
    """

    def __init__(self, watcher: "FileChangeWatcher"):
        super().__init__()
        self._watcher = watcher

    def on_created(self, event: FileSystemEvent) -> None:
        if not event.is_directory:
            self._watcher.notify(FileEventType.ADD, event.src_path)

    def on_modified(self, event: FileSystemEvent) -> None:
        if not event.is_directory:
            self._watcher.notify(FileEventType.CHANGE, event.src_path)

    def on_deleted(self, event: FileSystemEvent) -> None:
        if not event.is_directory:
            self._watcher.notify(FileEventType.UNLINK, event.src_path)

    def on_moved(self, event: FileSystemEvent) -> None:
        if not event.is_directory:
            self._watcher.notify(FileEventType.UNLINK, event.src_path)
            self._watcher.notify(FileEventType.ADD, event.dest_path)


class FileChangeWatcher:
    """
    Debounced watcher over the projects root.

    ::: This is-in-layer Infrastructure-Layer.
    ::: This is a watcher.
    ::: This is-in-process Main-Process.
    ::: This is stateful.

    Attributes:
        events: Queue receiving FileChangeEvent messages
    """

    def __init__(
        self,
        root: Union[str, Path],
        extensions: Iterable[str] = DEFAULT_EXTENSIONS,
        debounce_seconds: float = 0.5,
        events: Optional["queue.Queue[FileChangeEvent]"] = None,
    ):
        self.root = Path(root).resolve()
        self.extensions = frozenset(ext.lower().lstrip(".") for ext in extensions)
        self.debounce_seconds = debounce_seconds
        self.events: "queue.Queue[FileChangeEvent]" = events if events is not None else queue.Queue()

        self._observer: Optional[Observer] = None
        self._running = False
        self._lock = threading.Lock()
        self._timers: Dict[Tuple[FileEventType, str], threading.Timer] = {}

    def is_running(self) -> bool:
        return self._running

    def start(self) -> None:
        """Start watching. Logs a warning and does nothing if already running."""
        with self._lock:
            if self._running:
                logger.warning(f"File watcher for {self.root} is already running")
                return
            observer = Observer()
            observer.schedule(_FileChangeHandler(self), str(self.root), recursive=True)
            observer.start()
            self._observer = observer
            self._running = True
        logger.info(f"[FileWatcher] Started watching {self.root}")

    def stop(self) -> None:
        """Stop watching and drop every pending debounce timer."""
        with self._lock:
            observer, self._observer = self._observer, None
            was_running, self._running = self._running, False
            timers = list(self._timers.values())
            self._timers.clear()

        for timer in timers:
            timer.cancel()

        if observer is not None:
            observer.stop()
            observer.join(timeout=2.0)
        if was_running:
            logger.info("[FileWatcher] Stopped")

    def extract_project_id(self, path: Union[str, Path]) -> Optional[str]:
        """
        Project id of a path: its first segment below the root.

        Returns None for paths outside the root, files directly in the root
        and paths with a hidden segment.
        """
        try:
            parts = Path(path).resolve().relative_to(self.root).parts
        except ValueError:
            return None
        if len(parts) < 2 or any(part.startswith(".") for part in parts):
            return None
        return parts[0]

    def _accepts(self, path: Path) -> bool:
        return path.suffix.lower().lstrip(".") in self.extensions

    def notify(self, event_type: FileEventType, path: Union[str, Path]) -> None:
        """
        Report a raw filesystem event.

        Called by the watchdog handler; tests call it directly with
        synthetic events. Ignored while the watcher is stopped.
        """
        if not self._running:
            return
        file_path = Path(path)
        if not self._accepts(file_path):
            return
        project_id = self.extract_project_id(file_path)
        if project_id is None:
            return

        event = FileChangeEvent(type=event_type, path=str(file_path.resolve()), project_id=project_id)
        key = (event_type, event.path)
        timer = threading.Timer(self.debounce_seconds, self._fire, args=(key, event))
        timer.daemon = True

        with self._lock:
            if not self._running:
                return
            previous = self._timers.get(key)
            if previous is not None:
                previous.cancel()
            self._timers[key] = timer
        timer.start()

    def _fire(self, key: Tuple[FileEventType, str], event: FileChangeEvent) -> None:
        with self._lock:
            # A newer event for the same key replaced this timer, or stop() ran
            if not self._running or self._timers.get(key) is not threading.current_thread():
                return
            del self._timers[key]
        logger.debug(f"[FileWatcher] {event.type.value} {event.path} ({event.project_id})")
        self.events.put(event)

    def pending_count(self) -> int:
        """Number of debounce timers not yet fired."""
        with self._lock:
            return len(self._timers)
