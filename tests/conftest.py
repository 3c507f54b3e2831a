"""Pytest configuration and fixtures for ARSM tests."""
import os
import sys
import stat
import textwrap

import pytest
import yaml
from httpx import ASGITransport, AsyncClient

from arsm.config import IS_WINDOWS, server_executable
from arsm.errors import NotRunning
from arsm.main import create_app


# Stand-in for the dedicated server: echoes a line per stream, then idles
FAKE_SERVER = textwrap.dedent("""\
    #!{python}
    import sys, time
    print("fake server up", flush=True)
    print("fake warning", file=sys.stderr, flush=True)
    time.sleep(60)
""")


@pytest.fixture
def project_dir(tmp_path, monkeypatch):
    """A panel project directory with config.yaml pointing into tmp_path."""
    monkeypatch.delenv("ARSM_DATA_DIR", raising=False)
    monkeypatch.delenv("ARSM_JWT_SECRET", raising=False)

    config = {
        "paths": {
            "steamcmd_path": str(tmp_path / "steamcmd"),
            "server_path": str(tmp_path / "server"),
        },
        "supervisor": {"grace_period": 1, "restart_delay": 0},
        "logs": {"buffer_size": 500, "poll_interval": 0.1},
    }
    (tmp_path / "config.yaml").write_text(yaml.safe_dump(config), encoding="utf-8")
    return tmp_path


@pytest.fixture
def fake_server(project_dir):
    """Install an executable fake ArmaReforgerServer into the server path."""
    if IS_WINDOWS:
        pytest.skip("fake server script needs a POSIX shebang")
    server_dir = project_dir / "server"
    server_dir.mkdir(exist_ok=True)
    path = server_executable(str(server_dir))
    with open(path, "w", encoding="utf-8") as f:
        f.write(FAKE_SERVER.format(python=os.path.realpath(sys.executable)))
    os.chmod(path, os.stat(path).st_mode | stat.S_IXUSR)
    return path


@pytest.fixture
def app(project_dir):
    app = create_app(str(project_dir), bcrypt_rounds=4)
    yield app
    try:
        app.state.supervisor.stop()
    except NotRunning:
        pass


@pytest.fixture
async def client(app):
    """Async HTTP client for testing the API."""
    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
    ) as ac:
        yield ac


@pytest.fixture
async def auth_headers(client):
    """Login as the bootstrap admin and return Authorization headers."""
    r = await client.post(
        "/api/auth/login",
        json={"username": "admin", "password": "admin"},
    )
    assert r.status_code == 200, f"Login failed: {r.text}"
    body = r.json()
    assert body["code"] == 0, body
    return {"Authorization": f"Bearer {body['data']['token']}"}
