"""
ARSM - REST API Routes
========================
All HTTP API endpoints for the management panel.

Route groups:
    /api/auth/*        - Login, status, profile, password, user management
    /api/server/*      - Game server status / start / stop / restart /
                         install / update / delete
    /api/steamcmd/*    - SteamCMD status / install / update / delete
    /api/config/*      - Game server config.json editor, presets, import,
                         export, official scenario list
    /api/settings      - Panel paths (SteamCMD, server, default preset)
    /api/system/info   - Host OS, CPU, memory and disk usage
    /api/logs          - Recently buffered console lines
    /api/health        - Liveness check

Every response uses the envelope {"code": 0, "message": "success", "data": ...}.
Domain errors are raised as PanelError and rendered by the handler in
main.py with a non-zero code; only authentication (401) and authorization
(403) problems change the HTTP status.

Handlers that block (bcrypt, process control, installers) are plain ``def``
functions so FastAPI runs them in its threadpool.
"""

import os
import socket
import platform
from typing import Any

import psutil
from fastapi import APIRouter, Body, Depends, HTTPException, Query, Response
from pydantic import BaseModel, Field

from arsm.auth import Identity, TokenIssuer, optional_auth, require_admin, require_auth
from arsm.config import (
    IS_WINDOWS,
    ConfigManager,
    server_config_path,
    server_executable,
    server_launch,
    server_presets_path,
)
from arsm.errors import AlreadyExists, AlreadyRunning, InvalidCredentials, IOFailure, PermissionDenied
from arsm.installer import Installer
from arsm.server_config import (
    OFFICIAL_SCENARIOS,
    delete_preset,
    list_presets,
    load_preset,
    load_server_config,
    save_preset,
    save_server_config,
    validate_server_config,
)
from arsm.supervisor import ProcessSupervisor
from arsm.users import DEFAULT_USERNAME, UserStore
from arsm.websocket import LogBroadcaster


# =============================================================================
# Request Models (Pydantic)
# =============================================================================

class LoginRequest(BaseModel):
    username: str = Field(..., min_length=1)
    password: str = Field(..., min_length=1)

class ChangePasswordRequest(BaseModel):
    """Change own password, optionally renaming the account."""
    new_username: str = ""
    old_password: str = Field(..., min_length=1)
    new_password: str = Field(..., min_length=6)

class CreateUserRequest(BaseModel):
    username: str = Field(..., min_length=1)
    password: str = Field(..., min_length=6)
    role: str = Field(..., pattern="^(admin|user)$")

class UpdateUserRequest(BaseModel):
    """Empty fields are left unchanged."""
    password: str = ""
    role: str = Field("", pattern="^(admin|user)?$")

class SavePresetRequest(BaseModel):
    name: str = Field(..., min_length=1)
    config: dict[str, Any]

class SettingsRequest(BaseModel):
    steamcmd_path: str | None = None
    server_path: str | None = None
    default_preset: str | None = None


def success(data: Any = None, message: str = "success") -> dict:
    """Build a successful response envelope."""
    return {"code": 0, "message": message, "data": data}


# =============================================================================
# Router Factory
# =============================================================================

def create_router(
    users: UserStore,
    tokens: TokenIssuer,
    config_manager: ConfigManager,
    supervisor: ProcessSupervisor,
    broadcaster: LogBroadcaster,
    installer: Installer,
) -> APIRouter:
    """
    Create and configure the API router with all endpoints.

    Managers are injected so the routes carry no global state and tests can
    build the app around temporary directories.

    Returns:
        Configured APIRouter with all endpoints registered.
    """
    router = APIRouter(prefix="/api")

    auth = require_auth(users, tokens)
    admin = require_admin(users, tokens)
    maybe_auth = optional_auth(tokens)

    def paths() -> dict:
        return config_manager.load()["paths"]

    # =========================================================================
    # PUBLIC ROUTES
    # =========================================================================

    @router.get("/health")
    async def health():
        return success({"status": "ok"})

    @router.post("/auth/login")
    def login(req: LoginRequest):
        """
        Log in with username and password.
        When authentication is disabled the response only says so.
        """
        user = users.authenticate(req.username, req.password)
        if user is None:
            return success({"enabled": False})

        token, expires_at = tokens.issue(user.username, user.role)
        users.record_login(user.username)
        return success({
            "enabled": True,
            "token": token,
            "username": user.username,
            "role": user.role,
            "expires_at": expires_at,
        })

    @router.get("/auth/status")
    def auth_status(identity: Identity | None = Depends(maybe_auth)):
        """Whether login is enforced, and who the caller is (if anyone)."""
        status = {
            "enabled": users.is_enabled(),
            "default_password": users.uses_default_password(),
            "authenticated": identity is not None,
        }
        if identity is not None:
            status["username"] = identity.username
            status["role"] = identity.role
        return success(status)

    # =========================================================================
    # ACCOUNT ROUTES - Requires authentication
    # =========================================================================

    @router.post("/auth/logout")
    async def logout(identity: Identity = Depends(auth)):
        # Tokens are stateless; the client just forgets its token
        return success({"message": "Logged out"})

    @router.get("/auth/profile")
    async def profile(identity: Identity = Depends(auth)):
        return success({"username": identity.username, "role": identity.role})

    @router.post("/auth/password")
    def change_password(req: ChangePasswordRequest, identity: Identity = Depends(auth)):
        """
        Change the caller's password, optionally renaming the account.

        The bootstrap admin account cannot be renamed; for it only the
        password changes.
        """
        if identity.anonymous:
            raise PermissionDenied("Not logged in")

        try:
            user = users.authenticate(identity.username, req.old_password)
        except InvalidCredentials:
            raise InvalidCredentials("Current password is incorrect") from None
        if user is None:
            raise PermissionDenied("Not logged in")

        new_username = req.new_username.strip()
        if new_username and new_username != user.username:
            if users.get(new_username) is not None:
                raise AlreadyExists("Username already exists")

            if user.username == DEFAULT_USERNAME:
                users.update(user.username, password=req.new_password)
                return success({
                    "message": "System account cannot be renamed; only the password was updated",
                    "username": user.username,
                })

            users.create(new_username, req.new_password, user.role)
            users.delete(user.username)
            return success({
                "message": "Username and password updated, please log in again",
                "relogin": True,
            })

        users.update(user.username, password=req.new_password)
        return success({"message": "Password changed"})

    # =========================================================================
    # USER MANAGEMENT ROUTES
    # =========================================================================

    @router.get("/auth/users")
    async def list_users(identity: Identity = Depends(admin)):
        return success(users.list())

    @router.post("/auth/users")
    def create_user(req: CreateUserRequest, identity: Identity = Depends(admin)):
        users.create(req.username, req.password, req.role)
        # Creating a user while login is off switches it on
        if not users.is_enabled():
            users.set_enabled(True)
        return success({"message": "User created"})

    @router.put("/auth/users/{username}")
    def update_user(username: str, req: UpdateUserRequest, identity: Identity = Depends(auth)):
        """Admins may edit anyone; users may change only their own password."""
        if not identity.is_admin and identity.username != username:
            raise HTTPException(status_code=403, detail="Cannot modify other users")
        if not identity.is_admin and req.role:
            raise PermissionDenied("Cannot change your own role")

        users.update(username, password=req.password, role=req.role)
        return success({"message": "User updated"})

    @router.delete("/auth/users/{username}")
    def delete_user(username: str, identity: Identity = Depends(admin)):
        users.delete(username)
        return success({"message": "User deleted"})

    # =========================================================================
    # GAME SERVER ROUTES - Requires authentication
    # =========================================================================

    @router.get("/server/status")
    def server_status(identity: Identity = Depends(auth)):
        return success(supervisor.status(server_executable(paths()["server_path"])))

    @router.post("/server/start")
    def start_server(identity: Identity = Depends(auth)):
        executable, args, workdir = server_launch(paths()["server_path"])
        pid = supervisor.start(executable, args, workdir)
        return success({"pid": pid})

    @router.post("/server/stop")
    def stop_server(identity: Identity = Depends(auth)):
        supervisor.stop()
        return success()

    @router.post("/server/restart")
    def restart_server(identity: Identity = Depends(auth)):
        executable, args, workdir = server_launch(paths()["server_path"])
        pid = supervisor.restart(executable, args, workdir)
        return success({"pid": pid})

    @router.post("/server/install")
    def install_server(identity: Identity = Depends(auth)):
        p = paths()
        installer.install_server(p["steamcmd_path"], p["server_path"])
        return success()

    @router.post("/server/update")
    def update_server(identity: Identity = Depends(auth)):
        p = paths()
        installer.update_server(p["steamcmd_path"], p["server_path"])
        return success()

    @router.delete("/server")
    def delete_server(identity: Identity = Depends(auth)):
        if supervisor.is_running:
            raise AlreadyRunning("Stop the server before deleting it")
        installer.delete_server(paths()["server_path"])
        return success()

    # =========================================================================
    # STEAMCMD ROUTES - Requires authentication
    # =========================================================================

    @router.get("/steamcmd/status")
    def steamcmd_status(identity: Identity = Depends(auth)):
        return success(installer.steamcmd_status(paths()["steamcmd_path"]))

    @router.post("/steamcmd/install")
    def install_steamcmd(identity: Identity = Depends(auth)):
        installer.install_steamcmd(paths()["steamcmd_path"])
        return success()

    @router.post("/steamcmd/update")
    def update_steamcmd(identity: Identity = Depends(auth)):
        installer.update_steamcmd(paths()["steamcmd_path"])
        return success()

    @router.delete("/steamcmd")
    def delete_steamcmd(identity: Identity = Depends(auth)):
        installer.delete_steamcmd(paths()["steamcmd_path"])
        return success()

    # =========================================================================
    # SERVER CONFIG / PANEL SETTINGS - Requires authentication
    # =========================================================================

    @router.get("/config")
    def get_server_config(identity: Identity = Depends(auth)):
        """
        The game server's config.json. When it does not exist yet, the
        default preset from the panel settings, or built-in defaults.
        """
        p = paths()
        return success(load_server_config(
            server_config_path(p["server_path"]),
            presets_dir=server_presets_path(p["server_path"]),
            default_preset=p.get("default_preset") or "",
        ))

    @router.post("/config")
    def save_config(body: dict[str, Any] = Body(...), identity: Identity = Depends(auth)):
        saved = save_server_config(server_config_path(paths()["server_path"]), body)
        return success(saved)

    @router.get("/config/presets")
    def get_presets(identity: Identity = Depends(auth)):
        return success(list_presets(server_presets_path(paths()["server_path"])))

    @router.get("/config/presets/{name}")
    def get_preset(name: str, identity: Identity = Depends(auth)):
        return success(load_preset(server_presets_path(paths()["server_path"]), name))

    @router.post("/config/presets")
    def create_preset(req: SavePresetRequest, identity: Identity = Depends(auth)):
        saved = save_preset(server_presets_path(paths()["server_path"]), req.name, req.config)
        return success(saved)

    @router.delete("/config/presets/{name}")
    def remove_preset(name: str, identity: Identity = Depends(auth)):
        delete_preset(server_presets_path(paths()["server_path"]), name)
        return success()

    @router.post("/config/import")
    def import_config(body: dict[str, Any] = Body(...), identity: Identity = Depends(auth)):
        """Validate an uploaded config document and hand it back for editing. Nothing is saved."""
        return success(validate_server_config(body))

    @router.get("/config/export")
    def export_config(identity: Identity = Depends(auth)):
        """Download the current config.json as a file."""
        path = server_config_path(paths()["server_path"])
        try:
            with open(path, "rb") as f:
                content = f.read()
        except OSError as e:
            raise IOFailure("Failed to read server config") from e
        return Response(
            content=content,
            media_type="application/json",
            headers={"Content-Disposition": "attachment; filename=config.json"},
        )

    @router.get("/config/scenarios")
    async def get_scenarios(identity: Identity = Depends(auth)):
        return success([s.model_dump() for s in OFFICIAL_SCENARIOS])

    @router.get("/settings")
    def get_settings(identity: Identity = Depends(auth)):
        return success(config_manager.get_settings())

    @router.post("/settings")
    def save_settings(req: SettingsRequest, identity: Identity = Depends(auth)):
        updates = req.model_dump(exclude_none=True)
        config_manager.save_settings(updates)
        return success(config_manager.get_settings())

    # =========================================================================
    # SYSTEM / LOG ROUTES - Requires authentication
    # =========================================================================

    @router.get("/system/info")
    def system_info(identity: Identity = Depends(auth)):
        """Host facts plus CPU (200 ms sample), memory and disk usage."""
        if IS_WINDOWS:
            disk_path = os.path.splitdrive(paths()["server_path"])[0] or "C:"
            disk_path += "\\"
        else:
            disk_path = "/"

        memory = psutil.virtual_memory()
        disk = psutil.disk_usage(disk_path)
        return success({
            "os": platform.system().lower(),
            "arch": platform.machine(),
            "hostname": socket.gethostname(),
            "cpu_usage": psutil.cpu_percent(interval=0.2),
            "memory_total": memory.total,
            "memory_used": memory.used,
            "memory_free": memory.available,
            "disk_total": disk.total,
            "disk_used": disk.used,
            "disk_free": disk.free,
        })

    @router.get("/logs")
    async def get_logs(
        lines: int = Query(100, ge=1, le=1000),
        identity: Identity = Depends(auth),
    ):
        """Most recent buffered console lines, oldest first."""
        recent = broadcaster.recent(lines)
        return success({
            "lines": [line.to_message() for line in recent],
            "total": len(recent),
        })

    return router
