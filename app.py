#!/usr/bin/env python3
"""
JSON Server - Entry Point
===========================
One-command startup for the JSON WebSocket server.

Usage:
    python app.py                      # Start with config.yaml settings
    python app.py --port 9000          # Start on custom port
    python app.py --factory-handlers   # Enable ALL built-in handlers (dangerous)
    python app.py --set-key            # Set the client key, then exit

This script:
    1. Loads environment variables from .env (JSONSERVER_* overrides)
    2. Loads configuration from config.yaml
    3. Creates the JsonServer and installs handlers
    4. Installs the key authentication handler if a key has been set
    5. Starts the uvicorn server
"""

import os
import sys
import argparse
import getpass
from dotenv import load_dotenv


def main():
    """Parse arguments, load config, and start the server."""

    # -- Parse command-line arguments ------------------------------------------
    parser = argparse.ArgumentParser(
        description="JSON WebSocket Server",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument(
        "--port", type=int, default=None,
        help="Port to listen on (overrides config.yaml)",
    )
    parser.add_argument(
        "--host", type=str, default=None,
        help="Host binding address (overrides config.yaml)",
    )
    parser.add_argument(
        "--verbosity", type=int, default=None,
        help="Log verbosity, larger numbers for more output",
    )
    parser.add_argument(
        "--handler-dir", type=str, default=None,
        help="Directory to load handler modules from",
    )
    parser.add_argument(
        "--factory-handlers", action="store_true", default=None,
        help="Install every built-in handler, including exec/kill/fs (dangerous)",
    )
    parser.add_argument(
        "--config", type=str, default=None,
        help="Path to the settings file (default: config.yaml in project dir)",
    )
    parser.add_argument(
        "--set-key", action="store_true",
        help="Prompt for the client authentication key, store it, and exit",
    )
    args = parser.parse_args()

    # -- Resolve project directory ---------------------------------------------
    project_dir = os.path.dirname(os.path.abspath(__file__))

    # -- Load environment variables from .env ----------------------------------
    env_path = os.path.join(project_dir, ".env")
    if os.path.exists(env_path):
        load_dotenv(env_path)

    from jsonserver import AuthManager, ConfigManager, JsonServer, install_auth_handler

    config_manager = ConfigManager(project_dir, args.config)
    settings = config_manager.load()
    if "_config_error" in settings:
        print(f"[WARN] Ignoring unreadable config file: {settings['_config_error']}", flush=True)

    auth_manager = AuthManager(config_manager.auth_data_dir(settings))

    # -- Key setup mode --------------------------------------------------------
    if args.set_key:
        key = getpass.getpass("New client key: ")
        if key != getpass.getpass("Repeat client key: "):
            print("[ERROR] Keys do not match", file=sys.stderr)
            sys.exit(1)
        try:
            auth_manager.set_key(key)
        except ValueError as e:
            print(f"[ERROR] {e}", file=sys.stderr)
            sys.exit(1)
        print(f"[INIT] Client key stored in {auth_manager.auth_file}")
        return

    # -- Build the server ------------------------------------------------------
    config = config_manager.build({
        "port": args.port,
        "bindHost": args.host,
        "verbosity": args.verbosity,
        "handlerDir": args.handler_dir,
        "factoryHandlers": args.factory_handlers,
    })
    server = JsonServer(config)

    # Safe built-ins are always available
    server.add_status_handler()
    server.add_echo_handler()
    server.add_time_handler()
    server.add_verbosity_handler()

    # DANGER! exec lets clients run any executable the server can access
    if config.factory_handlers:
        server.add_exec_handler()
        server.add_kill_handler()
        server.install_handlers("jsonserver.handlers.fs", "jsonserver.handlers.demo")

    if auth_manager.is_configured():
        install_auth_handler(server, auth_manager)

    # -- Print startup banner --------------------------------------------------
    host = config.bind_host or "0.0.0.0"
    print()
    print("  JSON WebSocket Server")
    print(f"  Endpoint : ws://{host}:{config.port}/")
    print(f"  Auth     : {'key required' if server.registry.requires_auth else 'DISABLED'}")
    print()

    server.start()


if __name__ == "__main__":
    main()
