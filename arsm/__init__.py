"""
ARSM - Arma Reforger Server Manager
=====================================
Web management panel for an Arma Reforger dedicated server.

This package provides:
- FastAPI web application serving the management API
- Token authentication backed by a file-based user store
- Supervision of the game server process (start/stop/restart)
- SteamCMD and server installation with live progress output
- WebSocket endpoint streaming server output and log files

Architecture:
    main.py          -> FastAPI app creation, managers, error envelope
    auth.py          -> JWT tokens, route protection dependencies
    users.py         -> User table in data/users.json, bcrypt hashes
    config.py        -> Read/write config.yaml and .env, server file layout
    routes.py        -> All REST API endpoint handlers
    supervisor.py    -> Game server process lifecycle
    websocket.py     -> Log broadcaster (ring buffer + subscribers)
    tailer.py        -> Follows the newest server log file
    installer.py     -> SteamCMD / server install, update, delete
    server_config.py -> The server's own config.json
    errors.py        -> Error types rendered into the response envelope
"""

__version__ = "1.0.0"
