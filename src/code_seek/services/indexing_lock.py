"""
Single-writer gate for indexing passes.

Two layers guard the Embedding/Committing path: an in-process lock that
is tried without blocking, and a heartbeat file in the index directory
that excludes writers in other processes. A heartbeat whose process is
gone, or that has not been refreshed within the timeout, is stale and
gets replaced.
"""

import json
import logging
import os
import threading
import time
from pathlib import Path
from typing import Any, Dict, Optional

from ..errors import ConcurrencyConflict

logger = logging.getLogger(__name__)

HEARTBEAT_FILE = "indexing_heartbeat.json"


class IndexingLock:
    """Heartbeat-based, non-queuing lock for one index directory."""

    def __init__(
        self,
        index_dir: Path,
        heartbeat_interval: float = 30.0,
        timeout: float = 300.0,
    ):
        """
        Args:
            index_dir: Directory holding the heartbeat file
            heartbeat_interval: How often to refresh the heartbeat in seconds
            timeout: Age after which a heartbeat is considered stale in seconds
        """
        self.index_dir = Path(index_dir)
        self.heartbeat_interval = heartbeat_interval
        self.timeout = timeout
        self.heartbeat_path = self.index_dir / HEARTBEAT_FILE
        self.lock_acquired = False
        self._gate = threading.Lock()
        self._heartbeat_thread: Optional[threading.Thread] = None
        self._stop_heartbeat = threading.Event()

    @property
    def held(self) -> bool:
        return self.lock_acquired

    def acquire(self, project_path: str) -> None:
        """
        Acquire the lock or fail immediately.

        Raises:
            ConcurrencyConflict: If another pass holds the lock
        """
        if not self._gate.acquire(blocking=False):
            raise ConcurrencyConflict(
                "Indexing already in progress in this process", owner_pid=os.getpid()
            )
        try:
            self._claim_heartbeat(project_path)
        except BaseException:
            self._gate.release()
            raise

        self.lock_acquired = True
        self._start_heartbeat_thread()
        logger.info(f"Acquired indexing lock for project: {project_path}")

    def release(self) -> None:
        """Release the lock and remove the heartbeat file."""
        if not self.lock_acquired:
            return
        self._stop_heartbeat_thread()
        self._cleanup_heartbeat()
        self.lock_acquired = False
        self._gate.release()
        logger.info("Released indexing lock")

    def _claim_heartbeat(self, project_path: str) -> None:
        self.index_dir.mkdir(parents=True, exist_ok=True)
        for _ in range(2):
            try:
                fd = os.open(self.heartbeat_path, os.O_CREAT | os.O_EXCL | os.O_WRONLY)
            except FileExistsError:
                existing = self._read_heartbeat()
                if existing and self._is_heartbeat_active(existing):
                    pid = existing.get("pid")
                    duration = time.time() - existing.get("started_at", time.time())
                    raise ConcurrencyConflict(
                        f"Indexing already in progress (PID: {pid}, running for {duration:.1f}s)",
                        owner_pid=pid if isinstance(pid, int) else None,
                    )
                logger.info("Removing stale indexing heartbeat")
                self._cleanup_heartbeat()
                continue

            now = time.time()
            data = {
                "pid": os.getpid(),
                "project_path": project_path,
                "started_at": now,
                "last_heartbeat": now,
            }
            with os.fdopen(fd, "w") as f:
                json.dump(data, f, indent=2)
            return
        raise ConcurrencyConflict("Another process claimed the indexing lock")

    def _update_heartbeat(self) -> None:
        data = self._read_heartbeat()
        if not data or data.get("pid") != os.getpid():
            return
        data["last_heartbeat"] = time.time()
        tmp_path = self.heartbeat_path.with_suffix(".tmp")
        try:
            with open(tmp_path, "w") as f:
                json.dump(data, f, indent=2)
            os.replace(tmp_path, self.heartbeat_path)
        except OSError as e:
            logger.warning(f"Failed to update heartbeat: {e}")

    def _read_heartbeat(self) -> Optional[Dict[str, Any]]:
        try:
            with open(self.heartbeat_path, "r") as f:
                data = json.load(f)
            if isinstance(data, dict):
                return data
        except FileNotFoundError:
            return None
        except (OSError, ValueError) as e:
            logger.warning(f"Failed to read heartbeat file: {e}")
        return None

    def _is_heartbeat_active(self, heartbeat_data: Dict[str, Any]) -> bool:
        pid = heartbeat_data.get("pid")
        if isinstance(pid, int):
            try:
                # Signal 0 only checks that the process exists.
                os.kill(pid, 0)
            except (OSError, ProcessLookupError):
                return False
        age = time.time() - heartbeat_data.get("last_heartbeat", 0)
        return bool(age <= self.timeout)

    def _cleanup_heartbeat(self) -> None:
        try:
            self.heartbeat_path.unlink()
        except FileNotFoundError:
            pass
        except OSError as e:
            logger.warning(f"Failed to remove heartbeat file: {e}")

    def _start_heartbeat_thread(self) -> None:
        self._stop_heartbeat.clear()
        self._heartbeat_thread = threading.Thread(
            target=self._heartbeat_worker, daemon=True, name="IndexingHeartbeat"
        )
        self._heartbeat_thread.start()

    def _stop_heartbeat_thread(self) -> None:
        if self._heartbeat_thread and self._heartbeat_thread.is_alive():
            self._stop_heartbeat.set()
            self._heartbeat_thread.join(timeout=5.0)
        self._heartbeat_thread = None

    def _heartbeat_worker(self) -> None:
        while not self._stop_heartbeat.wait(self.heartbeat_interval):
            self._update_heartbeat()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.release()
