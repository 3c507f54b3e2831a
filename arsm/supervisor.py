"""
ARSM - Game Server Process Supervisor
========================================
Owns the lifecycle of the dedicated server process.

The supervisor holds at most one process handle. Starting spawns the
executable with piped output and returns immediately; three daemon threads
then take over:

    stdout drain   -> every line is published to the LogBroadcaster
    stderr drain   -> same, prefixed with "SERVER ERROR: "
    exit watcher   -> waits for the process, clears the handle and
                      publishes a termination message

The exit watcher is the only code that marks a handle as exited. stop()
asks for a graceful shutdown (SIGTERM, or CTRL_BREAK on Windows), gives the
process a grace period to exit and then kills it along with any children it
spawned, because an abrupt kill can corrupt the game's save state.

States:
    - "stopped"  : No process
    - "starting" : Spawning the process
    - "running"  : Process alive
    - "stopping" : Termination requested, waiting for exit

Usage:
    supervisor = ProcessSupervisor(broadcaster)
    pid = supervisor.start(executable, args, workdir)
    supervisor.stop()
    supervisor.status(executable)
"""

import os
import time
import signal
import logging
import threading
import subprocess
from enum import Enum
from typing import IO, Callable

import psutil

from arsm.config import IS_WINDOWS
from arsm.errors import AlreadyRunning, IOFailure, NotRunning
from arsm.websocket import LogBroadcaster

logger = logging.getLogger(__name__)

GRACE_PERIOD = 3.0
RESTART_DELAY = 0.5
KILL_TIMEOUT = 5.0
DRAIN_JOIN_TIMEOUT = 2.0

STDERR_PREFIX = "SERVER ERROR: "


class State(str, Enum):
    STOPPED = "stopped"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"


class ProcessHandle:
    """
    A live child process. Only the exit watcher sets ``exited``.

    Attributes:
        popen:      The subprocess.Popen object.
        pid:        Operating system process id.
        exited:     Set once the process has been reaped.
        returncode: Exit status, available after ``exited`` is set.
    """

    def __init__(self, popen: subprocess.Popen):
        self.popen = popen
        self.pid = popen.pid
        self.exited = threading.Event()
        self.returncode: int | None = None
        self.threads: list[threading.Thread] = []

    @property
    def alive(self) -> bool:
        return not self.exited.is_set()


def popen_kwargs() -> dict:
    """Platform flags for spawning managed processes."""
    if IS_WINDOWS:
        # Own process group so CTRL_BREAK reaches only the child; no console window
        return {
            "creationflags": subprocess.CREATE_NEW_PROCESS_GROUP | subprocess.CREATE_NO_WINDOW,
        }
    return {}


def drain_lines(stream: IO[str], publish: Callable[[str], object], prefix: str = "") -> None:
    """
    Forward every line of a text stream to ``publish`` until EOF.

    Used as a thread target for both the game server and installer
    commands. Read errors end the drain quietly; the exit watcher reports
    the process outcome.
    """
    try:
        with stream:
            for line in stream:
                publish(prefix + line.rstrip("\r\n"))
    except (OSError, ValueError) as e:
        logger.debug("Output drain ended: %s", e)


def request_termination(popen: subprocess.Popen) -> None:
    """Ask a process to exit gracefully using the platform's mechanism."""
    if IS_WINDOWS:
        popen.send_signal(signal.CTRL_BREAK_EVENT)
    else:
        popen.terminate()


def kill_tree(popen: subprocess.Popen) -> None:
    """Kill a process and every descendant it spawned."""
    try:
        children = psutil.Process(popen.pid).children(recursive=True)
    except psutil.NoSuchProcess:
        children = []
    for child in children:
        try:
            child.kill()
        except (psutil.NoSuchProcess, psutil.AccessDenied):
            continue
    popen.kill()


def find_process(executable: str) -> int | None:
    """
    Look for a running process whose name or executable matches
    ``executable``. Used when the panel restarted while the server kept
    running, so no handle of ours exists.

    Returns:
        The pid of the first match, or None.
    """
    target = os.path.basename(executable)
    if IS_WINDOWS:
        target = target.lower()
    own_pid = os.getpid()

    for proc in psutil.process_iter(["pid", "name", "exe"]):
        try:
            if proc.info["pid"] == own_pid:
                continue
            names = [proc.info.get("name") or "", os.path.basename(proc.info.get("exe") or "")]
            if IS_WINDOWS:
                names = [n.lower() for n in names]
            if target in names:
                return proc.info["pid"]
        except (psutil.NoSuchProcess, psutil.AccessDenied):
            continue
    return None


class ProcessSupervisor:
    """
    Start/stop/restart the game server and report its status.

    Attributes:
        broadcaster:     Receives process output and lifecycle messages.
        grace_period:    Seconds to wait after a graceful stop request
                         before killing.
        restart_delay:   Pause between the stop and start halves of a
                         restart, letting the OS release ports and locks.
        kill_timeout:    Seconds to wait for the exit watcher after a kill.
        detect_external: Whether status() falls back to the OS process list.
    """

    def __init__(
        self,
        broadcaster: LogBroadcaster,
        grace_period: float = GRACE_PERIOD,
        restart_delay: float = RESTART_DELAY,
        kill_timeout: float = KILL_TIMEOUT,
        detect_external: bool = True,
    ):
        self.broadcaster = broadcaster
        self.grace_period = grace_period
        self.restart_delay = restart_delay
        self.kill_timeout = kill_timeout
        self.detect_external = detect_external

        self._lock = threading.Lock()
        self._handle: ProcessHandle | None = None
        self._state = State.STOPPED
        self._last_launch: tuple[str, list[str], str | None] | None = None

    @property
    def state(self) -> State:
        with self._lock:
            return self._state

    @property
    def is_running(self) -> bool:
        with self._lock:
            return self._handle is not None and self._handle.alive

    @property
    def handle(self) -> ProcessHandle | None:
        """The live handle, for inspection only."""
        with self._lock:
            return self._handle

    def _log(self, text: str) -> None:
        self.broadcaster.publish(text, stream="system")

    # -- Start -----------------------------------------------------------------

    def start(self, executable: str, args: list[str] | None = None, workdir: str | None = None) -> int:
        """
        Spawn the server process and return its pid without waiting for it.

        Raises:
            AlreadyRunning: A live process is already supervised.
            IOFailure:      The executable could not be spawned.
        """
        args = list(args or [])

        with self._lock:
            if self._handle is not None and self._handle.alive:
                raise AlreadyRunning()

            self._state = State.STARTING
            try:
                popen = subprocess.Popen(
                    [executable, *args],
                    cwd=workdir or None,
                    stdin=subprocess.DEVNULL,
                    stdout=subprocess.PIPE,
                    stderr=subprocess.PIPE,
                    text=True,
                    encoding="utf-8",
                    errors="replace",
                    bufsize=1,
                    **popen_kwargs(),
                )
            except (OSError, ValueError) as e:
                self._state = State.STOPPED
                logger.error("[Server] Failed to start %s: %s", executable, e)
                raise IOFailure(f"Failed to start: {e}") from e

            handle = ProcessHandle(popen)
            self._handle = handle
            self._state = State.RUNNING
            self._last_launch = (executable, args, workdir)

        logger.info("[Server] Started %s (pid %d)", executable, handle.pid)
        self._log("Game server is starting...")

        handle.threads = [
            threading.Thread(
                target=drain_lines,
                args=(popen.stdout, lambda text: self.broadcaster.publish(text, stream="stdout")),
                daemon=True,
                name=f"arsm-stdout-{handle.pid}",
            ),
            threading.Thread(
                target=drain_lines,
                args=(
                    popen.stderr,
                    lambda text: self.broadcaster.publish(text, stream="stderr"),
                    STDERR_PREFIX,
                ),
                daemon=True,
                name=f"arsm-stderr-{handle.pid}",
            ),
        ]
        watcher = threading.Thread(
            target=self._watch,
            args=(handle,),
            daemon=True,
            name=f"arsm-exit-{handle.pid}",
        )
        for thread in handle.threads:
            thread.start()
        watcher.start()

        return handle.pid

    def _watch(self, handle: ProcessHandle) -> None:
        """Thread target: reap the process and clear the handle."""
        try:
            handle.returncode = handle.popen.wait()
        except OSError as e:
            logger.error("[Server] Error waiting for pid %d: %s", handle.pid, e)

        with self._lock:
            if self._handle is handle:
                self._handle = None
                self._state = State.STOPPED
        handle.exited.set()

        # Let the drains flush what the process wrote before it died
        for thread in handle.threads:
            thread.join(timeout=DRAIN_JOIN_TIMEOUT)

        logger.info("[Server] Process %d exited with code %s", handle.pid, handle.returncode)
        self._log(f"Game server stopped (exit code {handle.returncode}).")

    # -- Stop ------------------------------------------------------------------

    def stop(self) -> None:
        """
        Stop the server: graceful request, grace period, then kill.

        Blocks for at most grace_period + kill_timeout seconds.

        Raises:
            NotRunning: No live process is supervised.
            IOFailure:  The process survived the kill.
        """
        with self._lock:
            handle = self._handle
            if handle is None or not handle.alive:
                raise NotRunning()
            self._state = State.STOPPING

        self._log("Stopping game server...")
        try:
            request_termination(handle.popen)
        except OSError as e:
            # Already gone; the watcher will notice
            logger.debug("[Server] Terminate request failed: %s", e)

        if handle.exited.wait(self.grace_period):
            return

        logger.warning(
            "[Server] Process %d ignored the stop request for %.1fs, killing",
            handle.pid, self.grace_period,
        )
        self._log("Game server did not exit in time, forcing shutdown.")
        try:
            kill_tree(handle.popen)
        except OSError as e:
            logger.debug("[Server] Kill failed: %s", e)

        if not handle.exited.wait(self.kill_timeout):
            raise IOFailure(f"Process {handle.pid} did not exit after kill")

    def restart(
        self,
        executable: str | None = None,
        args: list[str] | None = None,
        workdir: str | None = None,
    ) -> int:
        """
        Stop (if running), pause, then start again.

        Without arguments the last launch command is reused.

        Raises:
            NotRunning: No launch command given and none used before.
        """
        self._log("Restarting game server...")
        try:
            self.stop()
        except NotRunning:
            pass

        time.sleep(self.restart_delay)

        if executable is None:
            if self._last_launch is None:
                raise NotRunning("Server has not been started yet")
            executable, args, workdir = self._last_launch
        return self.start(executable, args, workdir)

    # -- Status ----------------------------------------------------------------

    def status(self, executable: str | None = None) -> dict:
        """
        Report install and run state.

        Args:
            executable: Expected server executable; used for the "installed"
                        check and the process-list fallback.

        Returns:
            {"installed", "running", "pid"?, "state", "managed"}
        """
        installed = bool(executable) and os.path.isfile(executable)

        with self._lock:
            handle = self._handle
            state = self._state

        if handle is not None and handle.alive:
            return {
                "installed": installed,
                "running": True,
                "pid": handle.pid,
                "state": state.value,
                "managed": True,
            }

        result = {
            "installed": installed,
            "running": False,
            "state": State.STOPPED.value,
            "managed": False,
        }
        if executable and self.detect_external:
            pid = find_process(executable)
            if pid:
                result.update(running=True, pid=pid, state=State.RUNNING.value)
        return result
