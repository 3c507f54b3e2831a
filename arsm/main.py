"""
ARSM - FastAPI Application
============================
Creates and configures the FastAPI web application that serves the game
server management panel.

Responsibilities:
    - Build every manager explicitly (user store, token issuer, log
      broadcaster, process supervisor, installer, log tailer) and inject
      them into the routes; nothing lives in module-level singletons
    - Translate PanelError into the {"code", "message", "data"} envelope
    - Register the /ws/logs WebSocket endpoint
    - Start and stop the log tailer with the application lifespan
    - Serve the built frontend from web/ when it exists

Architecture:
    API endpoints are prefixed with /api/.
    The live console is available at /ws/logs.
"""

import os
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Depends, Request, WebSocket
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.staticfiles import StaticFiles
from starlette.exceptions import HTTPException as StarletteHTTPException

from arsm.auth import Identity, TokenIssuer, websocket_auth
from arsm.config import ConfigManager, server_log_dir
from arsm.errors import PanelError
from arsm.installer import Installer
from arsm.routes import create_router
from arsm.supervisor import ProcessSupervisor
from arsm.tailer import LogTailer
from arsm.users import UserStore
from arsm.websocket import LogBroadcaster

logger = logging.getLogger(__name__)


def create_app(project_dir: str | None = None, bcrypt_rounds: int = 12) -> FastAPI:
    """
    Application factory: create and configure the FastAPI instance.

    Args:
        project_dir:   Root directory holding config.yaml, .env and data/.
                       If None, auto-detected from this file's location.
        bcrypt_rounds: Cost factor for new password hashes.

    Returns:
        Configured FastAPI application ready to run with uvicorn.
    """
    # -- Resolve directories ---------------------------------------------------
    if project_dir is None:
        project_dir = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))

    config_manager = ConfigManager(project_dir)
    config = config_manager.load()
    if "_config_error" in config:
        logger.error("[ARSM] config.yaml could not be read, using defaults: %s", config["_config_error"])

    data_dir = config_manager.data_dir()
    web_dir = os.path.join(project_dir, "web")

    # -- Initialize managers ---------------------------------------------------
    users = UserStore(data_dir, rounds=bcrypt_rounds)
    users.load()
    tokens = TokenIssuer(config_manager.ensure_jwt_secret())
    broadcaster = LogBroadcaster(buffer_size=int(config["logs"]["buffer_size"]))
    supervisor = ProcessSupervisor(
        broadcaster,
        grace_period=float(config["supervisor"]["grace_period"]),
        restart_delay=float(config["supervisor"]["restart_delay"]),
    )
    installer = Installer(broadcaster)
    tailer = LogTailer(
        broadcaster,
        log_dir=lambda: server_log_dir(config_manager.load()["paths"]["server_path"]),
        poll_interval=float(config["logs"]["poll_interval"]),
    )

    logger.info("[ARSM] Data directory: %s", os.path.abspath(data_dir))
    logger.info("[ARSM] Authentication: %s", "enabled" if users.is_enabled() else "disabled")
    if users.uses_default_password():
        logger.warning("[ARSM] The admin account still uses the default password (admin/admin), change it!")

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        tailer.start()
        try:
            yield
        finally:
            tailer.stop()

    # -- Create FastAPI app ----------------------------------------------------
    app = FastAPI(
        title="ARSM",
        description="Management panel for the Arma Reforger dedicated server",
        version="1.0.0",
        docs_url="/docs",
        redoc_url=None,
        lifespan=lifespan,
    )

    # -- CORS middleware -------------------------------------------------------
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # -- Store managers on app state -------------------------------------------
    app.state.config_manager = config_manager
    app.state.users = users
    app.state.tokens = tokens
    app.state.broadcaster = broadcaster
    app.state.supervisor = supervisor
    app.state.installer = installer
    app.state.tailer = tailer

    # -- Error envelope --------------------------------------------------------
    @app.exception_handler(PanelError)
    async def panel_error_handler(request: Request, exc: PanelError):
        return JSONResponse(
            status_code=200,
            content={"code": exc.code, "message": exc.message, "data": None},
        )

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError):
        return JSONResponse(
            status_code=200,
            content={"code": 1, "message": "Invalid request data", "data": jsonable_encoder(exc.errors())},
        )

    @app.exception_handler(StarletteHTTPException)
    async def http_error_handler(request: Request, exc: StarletteHTTPException):
        return JSONResponse(
            status_code=exc.status_code,
            content={"code": exc.status_code, "message": exc.detail, "data": None},
            headers=getattr(exc, "headers", None),
        )

    # -- Register API routes ---------------------------------------------------
    app.include_router(create_router(
        users=users,
        tokens=tokens,
        config_manager=config_manager,
        supervisor=supervisor,
        broadcaster=broadcaster,
        installer=installer,
    ))

    # -- WebSocket endpoint ----------------------------------------------------
    ws_identity = websocket_auth(users, tokens)

    @app.websocket("/ws/logs")
    async def websocket_logs(websocket: WebSocket, identity: Identity | None = Depends(ws_identity)):
        """
        Live console. Replays buffered lines, then streams new ones.
        Pass the login token as ?token=... while authentication is enabled.
        """
        if identity is None:
            await websocket.close(code=1008)
            return
        await websocket.accept()
        await broadcaster.serve(websocket)

    # -- Frontend --------------------------------------------------------------
    if os.path.isdir(web_dir):
        app.mount("/", StaticFiles(directory=web_dir, html=True), name="web")

    return app
