"""
ARSM - Installer
==================
SteamCMD and dedicated-server installation, update and removal.

Every step reports progress as text lines into the LogBroadcaster, so the
console shows installer output live next to the game server's own output.

Operations:
    install_steamcmd()  -> download + unpack the SteamCMD bootstrapper
    update_steamcmd()   -> let SteamCMD self-update (+login anonymous +quit)
    delete_steamcmd()
    install_server()    -> steamcmd +app_update 1874900 validate
    update_server()     -> same as install_server()
    delete_server()

Failures raise IOFailure with a message suitable for the response envelope.
"""

import io
import os
import stat
import shutil
import logging
import tarfile
import zipfile
import threading
import subprocess
from contextlib import contextmanager

import httpx

from arsm.config import IS_WINDOWS, SERVER_APP_ID, steamcmd_executable
from arsm.errors import IOFailure
from arsm.supervisor import drain_lines, popen_kwargs
from arsm.websocket import LogBroadcaster

logger = logging.getLogger(__name__)

STEAMCMD_URL_LINUX = "https://steamcdn-a.akamaihd.net/client/installer/steamcmd_linux.tar.gz"
STEAMCMD_URL_WINDOWS = "https://steamcdn-a.akamaihd.net/client/installer/steamcmd.zip"

# SteamCMD downloads several GB for the server; allow it plenty of time
COMMAND_TIMEOUT = 3600.0
DOWNLOAD_TIMEOUT = 120.0


class Installer:
    """
    Runs installer commands and streams their output.

    Attributes:
        broadcaster:     Receives progress lines.
        command_timeout: Upper bound for a single external command.
    """

    def __init__(self, broadcaster: LogBroadcaster, command_timeout: float = COMMAND_TIMEOUT):
        self.broadcaster = broadcaster
        self.command_timeout = command_timeout
        # One install/update/delete at a time
        self._busy = threading.Lock()

    def _log(self, text: str) -> None:
        self.broadcaster.publish(text, stream="installer")

    @contextmanager
    def _exclusive(self):
        if not self._busy.acquire(blocking=False):
            raise IOFailure("Another installer operation is in progress")
        try:
            yield
        finally:
            self._busy.release()

    # -- Command runner --------------------------------------------------------

    def run_and_stream(self, cmd: list[str], cwd: str | None = None) -> int:
        """
        Run a command to completion, publishing stdout and stderr lines.

        stderr lines are prefixed with "ERROR: ".

        Raises:
            IOFailure: Spawn failure, timeout, or non-zero exit status.
        """
        logger.info("[Installer] Running %s", " ".join(cmd))
        try:
            popen = subprocess.Popen(
                cmd,
                cwd=cwd,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
                encoding="utf-8",
                errors="replace",
                **popen_kwargs(),
            )
        except OSError as e:
            raise IOFailure(f"Failed to run {os.path.basename(cmd[0])}: {e}") from e

        drains = [
            threading.Thread(
                target=drain_lines,
                args=(popen.stdout, lambda text: self.broadcaster.publish(text, stream="installer")),
                daemon=True,
            ),
            threading.Thread(
                target=drain_lines,
                args=(popen.stderr, lambda text: self.broadcaster.publish(text, stream="installer"), "ERROR: "),
                daemon=True,
            ),
        ]
        for thread in drains:
            thread.start()

        try:
            returncode = popen.wait(timeout=self.command_timeout)
        except subprocess.TimeoutExpired:
            popen.kill()
            popen.wait()
            raise IOFailure(f"Command timed out after {self.command_timeout:.0f}s")
        finally:
            for thread in drains:
                thread.join(timeout=2)

        if returncode != 0:
            raise IOFailure(f"Command exited with status {returncode}")
        return returncode

    # -- SteamCMD --------------------------------------------------------------

    def steamcmd_status(self, steamcmd_path: str) -> dict:
        return {
            "installed": os.path.isfile(steamcmd_executable(steamcmd_path)),
            "path": steamcmd_path,
        }

    def install_steamcmd(self, steamcmd_path: str) -> None:
        """Download the SteamCMD archive and unpack it into steamcmd_path."""
        with self._exclusive():
            try:
                os.makedirs(steamcmd_path, exist_ok=True)
            except OSError as e:
                raise IOFailure(f"Failed to create directory: {e}") from e

            url = STEAMCMD_URL_WINDOWS if IS_WINDOWS else STEAMCMD_URL_LINUX
            self._log(f"Downloading SteamCMD from {url} ...")
            try:
                response = httpx.get(url, timeout=DOWNLOAD_TIMEOUT, follow_redirects=True)
                response.raise_for_status()
            except httpx.HTTPError as e:
                raise IOFailure(f"Download failed: {e}") from e

            self._log(f"Downloaded {len(response.content)} bytes, extracting...")
            try:
                extract_archive(response.content, steamcmd_path, zip_format=IS_WINDOWS)
            except (OSError, tarfile.TarError, zipfile.BadZipFile) as e:
                raise IOFailure(f"Extraction failed: {e}") from e

            executable = steamcmd_executable(steamcmd_path)
            if not IS_WINDOWS and os.path.isfile(executable):
                mode = os.stat(executable).st_mode
                os.chmod(executable, mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)

            self._log("SteamCMD installed.")

    def update_steamcmd(self, steamcmd_path: str) -> None:
        with self._exclusive():
            executable = self._require_steamcmd(steamcmd_path)
            self._log("Updating SteamCMD...")
            self.run_and_stream([executable, "+login", "anonymous", "+quit"], cwd=steamcmd_path)
            self._log("SteamCMD updated.")

    def delete_steamcmd(self, steamcmd_path: str) -> None:
        with self._exclusive():
            self._log("Deleting SteamCMD...")
            _remove_tree(steamcmd_path)
            self._log("SteamCMD deleted.")

    def _require_steamcmd(self, steamcmd_path: str) -> str:
        executable = steamcmd_executable(steamcmd_path)
        if not os.path.isfile(executable):
            raise IOFailure("SteamCMD is not installed")
        return executable

    # -- Dedicated server ------------------------------------------------------

    def install_server(self, steamcmd_path: str, server_path: str) -> None:
        """Install or update the dedicated server through SteamCMD."""
        with self._exclusive():
            executable = self._require_steamcmd(steamcmd_path)
            try:
                os.makedirs(server_path, exist_ok=True)
            except OSError as e:
                raise IOFailure(f"Failed to create directory: {e}") from e

            self._log(f"Installing/updating Arma Reforger server (AppID {SERVER_APP_ID})...")
            self.run_and_stream(
                [
                    executable,
                    "+force_install_dir", server_path,
                    "+login", "anonymous",
                    "+app_update", SERVER_APP_ID, "validate",
                    "+quit",
                ],
                cwd=steamcmd_path,
            )
            self._log("Server install/update finished.")

    def update_server(self, steamcmd_path: str, server_path: str) -> None:
        self.install_server(steamcmd_path, server_path)

    def delete_server(self, server_path: str) -> None:
        with self._exclusive():
            self._log("Deleting game server files...")
            _remove_tree(server_path)
            self._log("Game server deleted.")


def extract_archive(data: bytes, destination: str, zip_format: bool = False) -> None:
    """Unpack a .tar.gz (or .zip) archive held in memory."""
    if zip_format:
        with zipfile.ZipFile(io.BytesIO(data)) as archive:
            archive.extractall(destination)
    else:
        with tarfile.open(fileobj=io.BytesIO(data), mode="r:gz") as archive:
            archive.extractall(destination, filter="data")


def _remove_tree(path: str) -> None:
    if not os.path.exists(path):
        return
    try:
        shutil.rmtree(path)
    except OSError as e:
        raise IOFailure(f"Delete failed: {e}") from e
