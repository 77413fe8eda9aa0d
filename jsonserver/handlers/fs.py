"""
JSON Server - Filesystem Handlers
===================================
Read-only filesystem queries.

    { "op": "stat", "path": "/etc/hosts" }
        -> request fields + "stats": {...}, "err": null

    { "op": "readdir", "path": "/etc", "options": { "withFileTypes": true } }
        -> request fields + "files": [...], "err": null

Filesystem failures are reported in "err" and keep the connection open:

    "err": { "code": "ENOENT", "errno": 2, "message": "...", "path": "..." }
"""

import asyncio
import errno
import os
import stat as stat_flags


def _error_info(e: OSError, path: str) -> dict:
    code = errno.errorcode.get(e.errno, "EUNKNOWN") if e.errno is not None else "EUNKNOWN"
    return {
        "code": code,
        "errno": e.errno,
        "message": e.strerror or str(e),
        "path": path,
    }


def _stat_info(path: str) -> dict:
    st = os.stat(path)
    link = os.lstat(path)
    return {
        "size": st.st_size,
        "mode": st.st_mode,
        "uid": st.st_uid,
        "gid": st.st_gid,
        "atimeMs": st.st_atime_ns // 1_000_000,
        "mtimeMs": st.st_mtime_ns // 1_000_000,
        "ctimeMs": st.st_ctime_ns // 1_000_000,
        "isFile": stat_flags.S_ISREG(st.st_mode),
        "isDirectory": stat_flags.S_ISDIR(st.st_mode),
        "isSymbolicLink": stat_flags.S_ISLNK(link.st_mode),
    }


def _list_dir(path: str, with_file_types: bool) -> list:
    with os.scandir(path) as entries:
        entries = sorted(entries, key=lambda entry: entry.name)
        if not with_file_types:
            return [entry.name for entry in entries]
        return [
            {
                "name": entry.name,
                "isFile": entry.is_file(follow_symlinks=False),
                "isDirectory": entry.is_dir(follow_symlinks=False),
            }
            for entry in entries
        ]


def _require_path(msg: dict) -> str:
    path = msg.get("path")
    if not isinstance(path, str) or not path:
        raise ValueError("'path' must be a non-empty string")
    return path


async def handle_stat(cc, msg: dict) -> None:
    path = _require_path(msg)
    reply = dict(msg)
    try:
        reply["stats"] = await asyncio.to_thread(_stat_info, path)
        reply["err"] = None
    except OSError as e:
        reply["stats"] = None
        reply["err"] = _error_info(e, path)
    await cc.send_obj("stat", reply)


async def handle_readdir(cc, msg: dict) -> None:
    path = _require_path(msg)
    options = msg.get("options") or {}
    with_types = bool(options.get("withFileTypes", False)) if isinstance(options, dict) else False
    reply = dict(msg)
    try:
        reply["files"] = await asyncio.to_thread(_list_dir, path, with_types)
        reply["err"] = None
    except OSError as e:
        reply["files"] = None
        reply["err"] = _error_info(e, path)
    await cc.send_obj("readdir", reply)


def install_handlers(server) -> None:
    """Register "stat" and "readdir" on the server's full handler table."""
    server.set_handler("stat", handle_stat)
    server.set_handler("readdir", handle_readdir)
