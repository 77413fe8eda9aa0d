"""
JSON Server - Handler Registry
================================
Operation name -> callback tables owned by one server instance.

Two tables exist:
    all_handlers  : Every capability the server offers (the "full" table)
    auth_handlers : Operations reachable before a client authenticates.
                    None until the first auth handler is registered, in
                    which case connections start with the full table.

A handler is any callable taking (connection, message). It may be a
coroutine function. Registering a name twice replaces the earlier
handler.

Handler modules
---------------
A handler module is an ordinary Python module exposing::

    def install_handlers(server):
        server.set_handler("stat", handle_stat)

Modules are installed explicitly by the caller, either as a list of
module objects / dotted names, or from a directory the server
configuration names. Directory loading only considers regular *.py
files (not starting with "_") and fails loudly on a module without an
install_handlers() entry point.
"""

import importlib
import importlib.util
import os
from types import ModuleType
from typing import Any, Callable

Handler = Callable[[Any, dict], Any]

INSTALL_ENTRY_POINT = "install_handlers"


class HandlerLoadError(Exception):
    """Raised when a handler module or directory cannot be installed."""


class HandlerRegistry:
    """
    Full and auth-only handler tables for one server.

    Attributes:
        all_handlers:  Full table of operation handlers.
        auth_handlers: Pre-authentication table, or None if not configured.
    """

    def __init__(self):
        self.all_handlers: dict[str, Handler] = {}
        self.auth_handlers: dict[str, Handler] | None = None

    def set_handler(self, name: str, handler: Handler) -> None:
        """Install (or replace) a handler in the full table."""
        self.all_handlers[name] = handler

    def set_auth_handler(self, name: str, handler: Handler) -> None:
        """Install (or replace) a handler in the pre-authentication table."""
        if self.auth_handlers is None:
            self.auth_handlers = {}
        self.auth_handlers[name] = handler

    @property
    def requires_auth(self) -> bool:
        """True once at least one auth handler has been registered."""
        return self.auth_handlers is not None

    def initial_handlers(self) -> dict[str, Handler]:
        """Table a brand new connection starts with."""
        if self.auth_handlers is not None:
            return self.auth_handlers
        return self.all_handlers


def install_module(module: ModuleType | str, server: Any) -> ModuleType:
    """
    Run a handler module's install_handlers(server) entry point.

    Args:
        module: Module object or dotted module name to import.
        server: The JsonServer passed to the entry point.

    Returns:
        The installed module.

    Raises:
        HandlerLoadError: If the module has no install_handlers() callable.
    """
    if isinstance(module, str):
        module = importlib.import_module(module)

    install = getattr(module, INSTALL_ENTRY_POINT, None)
    if not callable(install):
        raise HandlerLoadError(
            f"Handler module '{module.__name__}' has no {INSTALL_ENTRY_POINT}() function"
        )
    install(server)
    return module


def discover_modules(hdir: str) -> list[str]:
    """
    List the handler module files found in a directory.

    Args:
        hdir: Directory to scan (must exist, may be empty).

    Returns:
        Sorted absolute paths of candidate *.py files.

    Raises:
        HandlerLoadError: If hdir is not a readable directory.
    """
    if not os.path.isdir(hdir):
        raise HandlerLoadError(f"Handler directory '{hdir}' does not exist")

    paths = []
    for fname in sorted(os.listdir(hdir)):
        path = os.path.join(hdir, fname)
        if fname.endswith(".py") and not fname.startswith("_") and os.path.isfile(path):
            paths.append(os.path.abspath(path))
    return paths


def load_module_file(path: str) -> ModuleType:
    """
    Import a single handler module from a file path.

    The module is imported under a private name derived from the file
    name so it cannot shadow an installed package.
    """
    name = "jsonserver_handlers_" + os.path.splitext(os.path.basename(path))[0]
    spec = importlib.util.spec_from_file_location(name, path)
    if spec is None or spec.loader is None:
        raise HandlerLoadError(f"Cannot import handler module from '{path}'")
    module = importlib.util.module_from_spec(spec)
    spec.loader.exec_module(module)
    return module
