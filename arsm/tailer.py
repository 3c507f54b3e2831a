"""
ARSM - Log File Tailer
========================
Follows the newest game-server log file and publishes each new line to the
LogBroadcaster.

The dedicated server started with ``-profile`` writes its logs below
``<server_path>/profile/logs`` (one sub-directory per session). Every poll
the tailer picks the most recently modified ``*.log`` / ``*.rpt`` file:

    - the first file it ever opens is followed from its end (old sessions
      are not replayed into the console)
    - when a newer file appears (server restarted, log rotated) the new
      file is read from the beginning

Partial lines are held back until their newline arrives.
"""

import os
import logging
import threading
from typing import Callable

from arsm.websocket import LogBroadcaster

logger = logging.getLogger(__name__)

LOG_SUFFIXES = (".log", ".rpt")


def latest_log_file(log_dir: str) -> str | None:
    """Most recently modified log file below ``log_dir``, or None."""
    newest, newest_mtime = None, -1.0
    for root, _, files in os.walk(log_dir):
        for name in files:
            if not name.endswith(LOG_SUFFIXES):
                continue
            path = os.path.join(root, name)
            try:
                mtime = os.path.getmtime(path)
            except OSError:
                continue
            if mtime > newest_mtime:
                newest, newest_mtime = path, mtime
    return newest


class LogTailer:
    """
    Background follower of the newest log file.

    Attributes:
        broadcaster:   Where lines are published.
        log_dir:       Callable returning the directory to watch; called on
                       every poll so path changes in settings apply live.
        poll_interval: Seconds between polls.
    """

    def __init__(
        self,
        broadcaster: LogBroadcaster,
        log_dir: Callable[[], str],
        poll_interval: float = 1.0,
    ):
        self.broadcaster = broadcaster
        self.log_dir = log_dir
        self.poll_interval = poll_interval

        self.current_path: str | None = None
        self._file = None
        self._partial = ""
        self._seen_any = False
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None

    def start(self) -> None:
        if self._thread and self._thread.is_alive():
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._run, daemon=True, name="arsm-log-tailer")
        self._thread.start()

    def stop(self, timeout: float = 5.0) -> None:
        self._stop_event.set()
        if self._thread:
            self._thread.join(timeout=timeout)
            self._thread = None
        self._close()

    def _run(self) -> None:
        while not self._stop_event.is_set():
            try:
                self.poll_once()
            except Exception:
                logger.exception("[Logs] Tailer poll failed")
                self._close()
            self._stop_event.wait(self.poll_interval)

    def poll_once(self) -> int:
        """
        Switch to the newest file if needed and publish any new lines.

        Returns:
            Number of lines published.
        """
        latest = latest_log_file(self.log_dir())
        if latest and latest != self.current_path:
            self._open(latest)

        if self._file is None:
            return 0

        try:
            chunk = self._file.read()
        except OSError as e:
            logger.warning("[Logs] Lost %s: %s", self.current_path, e)
            self._close()
            return 0

        if not chunk:
            return 0

        data = self._partial + chunk
        lines = data.split("\n")
        self._partial = lines.pop()
        for line in lines:
            self.broadcaster.publish(line.rstrip("\r"), stream="file")
        return len(lines)

    def _open(self, path: str) -> None:
        self._close()
        try:
            f = open(path, "r", encoding="utf-8", errors="replace")
        except OSError as e:
            logger.warning("[Logs] Cannot open %s: %s", path, e)
            return
        if not self._seen_any:
            f.seek(0, os.SEEK_END)
        self._seen_any = True
        self._file = f
        self.current_path = path
        logger.info("[Logs] Following %s", path)

    def _close(self) -> None:
        if self._file is not None:
            try:
                self._file.close()
            except OSError:
                pass
        self._file = None
        self.current_path = None
        self._partial = ""
