"""Tests for the installer command runner and archive handling.

Nothing here touches the network; SteamCMD itself is never run.
"""
import io
import sys
import tarfile
import threading

import pytest

from arsm.errors import IOFailure
from arsm.installer import Installer, extract_archive
from arsm.websocket import LogBroadcaster


@pytest.fixture
def broadcaster():
    return LogBroadcaster()


@pytest.fixture
def installer(broadcaster):
    return Installer(broadcaster, command_timeout=10)


def texts(broadcaster):
    return [line.text for line in broadcaster.recent()]


def test_run_and_stream_publishes_output(installer, broadcaster):
    code = (
        "import sys\n"
        "print('step 1', flush=True)\n"
        "print('warn', file=sys.stderr, flush=True)\n"
    )
    assert installer.run_and_stream([sys.executable, "-c", code]) == 0
    assert "step 1" in texts(broadcaster)
    assert "ERROR: warn" in texts(broadcaster)
    assert all(line.stream == "installer" for line in broadcaster.recent())


def test_nonzero_exit_raises(installer):
    with pytest.raises(IOFailure) as excinfo:
        installer.run_and_stream([sys.executable, "-c", "raise SystemExit(7)"])
    assert "7" in excinfo.value.message


def test_timeout_kills_command(broadcaster):
    installer = Installer(broadcaster, command_timeout=0.5)
    with pytest.raises(IOFailure, match="timed out"):
        installer.run_and_stream([sys.executable, "-c", "import time; time.sleep(30)"])


def test_missing_command(installer, tmp_path):
    with pytest.raises(IOFailure):
        installer.run_and_stream([str(tmp_path / "nope")])


def test_server_install_requires_steamcmd(installer, tmp_path):
    with pytest.raises(IOFailure, match="SteamCMD is not installed"):
        installer.install_server(str(tmp_path / "steamcmd"), str(tmp_path / "server"))


def test_steamcmd_status(installer, tmp_path):
    status = installer.steamcmd_status(str(tmp_path / "steamcmd"))
    assert status["installed"] is False


def test_delete_server(installer, broadcaster, tmp_path):
    server = tmp_path / "server"
    (server / "addons").mkdir(parents=True)
    (server / "addons" / "data.pak").write_bytes(b"x")

    installer.delete_server(str(server))
    assert not server.exists()
    assert "Game server deleted." in texts(broadcaster)

    # Deleting again is a no-op
    installer.delete_server(str(server))


def test_operations_are_exclusive(broadcaster, tmp_path):
    installer = Installer(broadcaster, command_timeout=10)
    started = threading.Event()

    def slow_command():
        with installer._exclusive():
            started.set()
            installer.run_and_stream([sys.executable, "-c", "import time; time.sleep(1)"])

    thread = threading.Thread(target=slow_command)
    thread.start()
    started.wait(5)
    try:
        with pytest.raises(IOFailure, match="in progress"):
            installer.delete_steamcmd(str(tmp_path / "steamcmd"))
    finally:
        thread.join()


def test_extract_tar_archive(tmp_path):
    payload = b"#!/bin/sh\necho steam\n"
    buffer = io.BytesIO()
    with tarfile.open(fileobj=buffer, mode="w:gz") as archive:
        info = tarfile.TarInfo("steamcmd.sh")
        info.size = len(payload)
        info.mode = 0o755
        archive.addfile(info, io.BytesIO(payload))

    extract_archive(buffer.getvalue(), str(tmp_path))
    assert (tmp_path / "steamcmd.sh").read_bytes() == payload
