from __future__ import annotations

import logging
import queue
import threading
import time
from pathlib import Path
from typing import Optional

from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer

from callaudit.core.config import AppConfig
from callaudit.pipelines.batch import process_file
from callaudit.pipelines.orchestrator import PipelineOrchestrator

logger = logging.getLogger(__name__)


class IncomingHandler(FileSystemEventHandler):
    """Queues audio files that appear in the inbox, by creation or rename."""

    def __init__(self, cfg: AppConfig, pending: "queue.Queue[Path]") -> None:
        self.cfg = cfg
        self.pending = pending

    def on_created(self, event: FileSystemEvent) -> None:
        if not event.is_directory:
            self._enqueue(Path(event.src_path))

    def on_moved(self, event: FileSystemEvent) -> None:
        if not event.is_directory:
            self._enqueue(Path(event.dest_path))

    def _enqueue(self, path: Path) -> None:
        if path.suffix.lower() in self.cfg.audio_extensions:
            self.pending.put(path)


def _wait_for_settle(path: Path, settle_time_sec: float, poll_sec: float = 1.0) -> bool:
    """Block until the file size stops changing. False if the file disappears."""
    last_size = -1
    stable_for = 0.0
    while stable_for < settle_time_sec:
        if not path.exists():
            return False
        size = path.stat().st_size
        if size == last_size:
            stable_for += poll_sec
        else:
            stable_for = 0.0
            last_size = size
        time.sleep(poll_sec)
    return path.exists()


def drain(cfg: AppConfig, orchestrator: PipelineOrchestrator, pending: "queue.Queue[Path]", timeout: float) -> int:
    """Process queued files until the queue stays empty for ``timeout`` seconds."""
    settle = float(cfg.watcher.get("settle_time_sec", 2))
    handled = 0
    while True:
        try:
            path = pending.get(timeout=timeout)
        except queue.Empty:
            return handled
        try:
            if not _wait_for_settle(path, settle):
                logger.info("%s vanished before it settled", path.name)
                continue
            logger.info("New recording: %s", path.name)
            process_file(path, cfg, orchestrator)
            handled += 1
        finally:
            pending.task_done()


def run_watcher(
    cfg: AppConfig,
    orchestrator: PipelineOrchestrator,
    stop_event: Optional[threading.Event] = None,
) -> None:
    cfg.input_dir.mkdir(parents=True, exist_ok=True)
    stop_event = stop_event or threading.Event()
    pending: "queue.Queue[Path]" = queue.Queue()

    # recordings dropped while the watcher was down
    for path in sorted(cfg.input_dir.iterdir()):
        if path.is_file() and path.suffix.lower() in cfg.audio_extensions:
            pending.put(path)

    observer = Observer()
    observer.schedule(IncomingHandler(cfg, pending), str(cfg.input_dir), recursive=False)
    observer.start()
    logger.info("Watching %s", cfg.input_dir)

    idle = float(cfg.watcher.get("idle_sleep_sec", 1))
    try:
        # one consumer: the orchestrator's sqlite connection is not shared across threads
        while not stop_event.is_set():
            drain(cfg, orchestrator, pending, timeout=idle)
    except KeyboardInterrupt:
        logger.info("Watcher interrupted")
    finally:
        observer.stop()
        observer.join()
