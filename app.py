#!/usr/bin/env python3
"""
ARSM - Entry Point
====================
One-command startup for the Arma Reforger Server Manager panel.

Usage:
    python app.py              # Start with default settings
    python app.py --port 9000  # Start on custom port

This script:
    1. Creates config.yaml from config.yaml.example if missing
    2. Loads environment variables from .env (JWT secret, ARSM_DATA_DIR)
    3. Configures logging
    4. Starts uvicorn with the arsm.main:create_app factory

After starting, open the printed URL in a browser. The first login is
admin / admin; change it right away.
"""

import os
import shutil
import logging
import argparse

import uvicorn
from dotenv import load_dotenv


def main():
    """Parse arguments, load config, and start the web server."""

    # -- Parse command-line arguments ------------------------------------------
    parser = argparse.ArgumentParser(
        description="ARSM - Arma Reforger Server Manager",
    )
    parser.add_argument(
        "--port", type=int, default=None,
        help="Port number for the web panel (overrides config.yaml)",
    )
    parser.add_argument(
        "--host", type=str, default=None,
        help="Host binding address (overrides config.yaml)",
    )
    parser.add_argument(
        "--log-level", type=str, default="info",
        choices=["debug", "info", "warning", "error"],
        help="Logging verbosity",
    )
    args = parser.parse_args()

    logging.basicConfig(
        level=args.log_level.upper(),
        format="%(asctime)s %(levelname)-7s %(name)s: %(message)s",
    )
    log = logging.getLogger("arsm")

    # -- Resolve project directory ---------------------------------------------
    project_dir = os.path.dirname(os.path.abspath(__file__))

    # -- Ensure configuration file exists --------------------------------------
    config_path = os.path.join(project_dir, "config.yaml")
    config_example = os.path.join(project_dir, "config.yaml.example")
    if not os.path.exists(config_path) and os.path.exists(config_example):
        shutil.copy2(config_example, config_path)
        log.info("[INIT] Created config.yaml from template")

    # -- Load environment variables from .env ----------------------------------
    env_path = os.path.join(project_dir, ".env")
    if os.path.exists(env_path):
        load_dotenv(env_path)

    # -- Load configuration to get web server settings -------------------------
    from arsm.config import ConfigManager, DEFAULTS
    config = ConfigManager(project_dir).load()

    # Command-line args override config file
    host = args.host or config["web"].get("host", DEFAULTS["web"]["host"])
    port = args.port or config["web"].get("port", DEFAULTS["web"]["port"])

    log.info("ARSM panel listening on http://%s:%s", host, port)

    # -- Start the web server --------------------------------------------------
    uvicorn.run(
        "arsm.main:create_app",
        factory=True,
        host=host,
        port=port,
        reload=False,
        log_level=args.log_level,
    )


if __name__ == "__main__":
    main()
