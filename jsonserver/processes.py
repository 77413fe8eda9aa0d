"""
JSON Server - Background Process Manager
==========================================
Runs external commands on behalf of one client connection and streams
their output back to that connection as reply messages.

Each ClientConnection owns exactly one ProcessManager; a client can only
see and signal the processes it started itself.

Reply sequence for one "exec" request (all carry the request's "op"):

    { "state": "started", "pid": 1234, ...request fields }
    { "state": "out",  "pid": 1234, "text": "..." }      (stdout chunk)
    { "state": "err",  "pid": 1234, "text": "..." }      (stderr chunk)
    { "state": "exit", "pid": 1234, "code": 0, "signal": null, "startedBy": {...} }

When no "encoding" is requested, output chunks carry "bytes" (a list of
byte values) instead of "text". Chunk boundaries are whatever the pipe
delivers; nothing is line buffered.

If the command cannot be started, a single reply is sent instead:

    { "state": "error", "message": "...", "startedBy": {...} }

Spawn failures are detected before a pid exists, so "error" always
replaces "started" here. Clients must still be prepared to see "error"
without any "started".

The exit reply is sent once the process has terminated and its buffered
output has been forwarded. Output readers are stopped before the exit
reply, so no output reply can follow it.
"""

import asyncio
import codecs
import signal as signals
from dataclasses import dataclass, field
from typing import Any

from pydantic import BaseModel, Field


# Bytes read from a pipe per output reply (upper bound, not a buffer size).
CHUNK_SIZE = 64 * 1024

# Seconds to keep reading output after the process exits. Pipes can stay
# open longer when the command left background children behind.
EXIT_DRAIN_TIMEOUT = 0.5

# Request "options" understood by exec -> asyncio.create_subprocess_exec kwargs.
SPAWN_OPTIONS = {
    "cwd": "cwd",
    "env": "env",
    "detached": "start_new_session",
}


class ExecRequest(BaseModel):
    """Fields of an "exec" message the process manager relies on."""
    cmd: str = Field(..., min_length=1, description="Executable to run (like: /bin/ps)")
    args: list[str] = Field(default_factory=list, description="Arguments for the command")
    options: dict[str, Any] | None = Field(None, description="Spawn options (cwd, env, detached)")
    encoding: str | None = Field(None, description="Decode output as text with this codec")


@dataclass
class ManagedProcess:
    """
    One running command tied to one connection.

    Attributes:
        pid:        OS process id.
        op:         Operation name used for every reply about this process.
        started_by: Copy of the request message that started it.
        encoding:   Text codec for output, or None for raw bytes.
        process:    The asyncio process handle.
        watcher:    Task streaming output and reporting the exit.
    """
    pid: int
    op: str
    started_by: dict
    encoding: str | None
    process: asyncio.subprocess.Process
    watcher: asyncio.Task | None = field(default=None, repr=False)

    @property
    def alive(self) -> bool:
        """True until the process has been reaped."""
        return self.process.returncode is None


class ProcessManager:
    """
    Spawns, tracks and signals the background processes of one connection.

    Attributes:
        cc:        The owning ClientConnection (used to send replies and log).
        processes: Live processes keyed by pid.
    """

    def __init__(self, cc):
        self.cc = cc
        self.processes: dict[int, ManagedProcess] = {}

    # -- Queries ---------------------------------------------------------------

    def find(self, pid: int) -> ManagedProcess | None:
        """Look up one of this connection's live processes."""
        return self.processes.get(pid)

    def running(self) -> list[dict]:
        """Summary of live processes for status reports."""
        return [
            {"pid": mp.pid, "startedBy": mp.started_by}
            for mp in self.processes.values()
        ]

    # -- exec ------------------------------------------------------------------

    async def exec(self, msg: dict, op: str | None = None) -> ManagedProcess | None:
        """
        Start executing a process in the background and stream its output.

        Args:
            msg: Request message with "cmd", "args", optional "options" and
                 optional "encoding" (see ExecRequest).
            op:  Reply operation name (defaults to the request's "op").

        Returns:
            The ManagedProcess, or None if the process could not be started
            (an "error" reply has been sent in that case).

        Raises:
            pydantic.ValidationError: If the request itself is malformed.
        """
        req = ExecRequest.model_validate(msg)
        op = op or msg.get("op", "exec")
        started_by = dict(msg)

        try:
            if req.encoding is not None:
                codecs.lookup(req.encoding)
            proc = await asyncio.create_subprocess_exec(
                req.cmd,
                *req.args,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                **self._spawn_kwargs(req.options),
            )
        except (OSError, LookupError, TypeError, ValueError) as e:
            self.cc.log(3, f"[EXEC] {self.cc} failed to start {req.cmd}: {e}")
            await self.cc.send_obj(op, {
                "state": "error",
                "message": _describe_error(e),
                "startedBy": started_by,
            })
            return None

        mp = ManagedProcess(
            pid=proc.pid,
            op=op,
            started_by=started_by,
            encoding=req.encoding,
            process=proc,
        )
        self.processes[mp.pid] = mp
        self.cc.log(3, f"[EXEC] {self.cc} started PID {mp.pid}: {req.cmd} {' '.join(req.args)}")

        reply = dict(msg)
        reply["pid"] = mp.pid
        reply["state"] = "started"
        await self.cc.send_obj(op, reply)

        mp.watcher = asyncio.create_task(self._watch(mp), name=f"exec-{mp.pid}")
        mp.watcher.add_done_callback(self._watch_done)
        return mp

    def _watch_done(self, task: asyncio.Task) -> None:
        """Report a watcher that died (usually a transport send failure)."""
        if task.cancelled():
            return
        e = task.exception()
        if e is not None:
            self.cc.log(1, f"[FAULT] {self.cc} output stream {task.get_name()} failed: "
                           f"{type(e).__name__}: {e}")

    def _spawn_kwargs(self, options: dict | None) -> dict:
        """Translate request "options" into create_subprocess_exec kwargs."""
        kwargs = {}
        for key, value in (options or {}).items():
            target = SPAWN_OPTIONS.get(key)
            if target is None:
                self.cc.log(2, f"[EXEC] {self.cc} ignoring unsupported spawn option '{key}'")
                continue
            if key == "env" and value is not None:
                if not isinstance(value, dict):
                    raise TypeError("'env' option must be a mapping")
                value = {str(k): str(v) for k, v in value.items()}
            kwargs[target] = value
        return kwargs

    async def _watch(self, mp: ManagedProcess) -> None:
        """
        Stream both pipes until the process exits, then report the exit.

        Output still buffered when the process exits is forwarded for up
        to EXIT_DRAIN_TIMEOUT seconds; pipes held open beyond that (by
        children the command left running) are abandoned so the exit is
        never delayed. If forwarding output fails, the process is
        terminated since nobody reads its pipes anymore.
        """
        pumps = {
            asyncio.create_task(self._pump(mp, mp.process.stdout, "out")),
            asyncio.create_task(self._pump(mp, mp.process.stderr, "err")),
        }
        reaper = asyncio.create_task(mp.process.wait())
        try:
            pending = set(pumps)
            while not reaper.done():
                done, _ = await asyncio.wait(
                    pending | {reaper}, return_when=asyncio.FIRST_COMPLETED,
                )
                for task in done & pending:
                    task.result()
                pending -= done

            if pending:
                done, pending = await asyncio.wait(pending, timeout=EXIT_DRAIN_TIMEOUT)
                for task in done:
                    task.result()
                for task in pending:
                    task.cancel()
                await asyncio.gather(*pending, return_exceptions=True)
            returncode = reaper.result()
        except BaseException:
            for task in pumps | {reaper}:
                task.cancel()
            if mp.alive:
                try:
                    mp.process.terminate()
                except ProcessLookupError:
                    pass
            self.processes.pop(mp.pid, None)
            raise

        self.processes.pop(mp.pid, None)
        code, sig = _exit_status(returncode)
        self.cc.log(3, f"[EXEC] {self.cc} PID {mp.pid} exited (code={code}, signal={sig})")
        await self.cc.send_obj(mp.op, {
            "pid": mp.pid,
            "state": "exit",
            "code": code,
            "signal": sig,
            "startedBy": mp.started_by,
        })

    async def _pump(self, mp: ManagedProcess, stream: asyncio.StreamReader, state: str) -> None:
        """Forward every chunk read from one pipe as an output reply."""
        while True:
            data = await stream.read(CHUNK_SIZE)
            if not data:
                break
            await self._send_output(mp, data, state)

    async def _send_output(self, mp: ManagedProcess, data: bytes, state: str) -> None:
        resp = {"pid": mp.pid, "state": state}
        if mp.encoding is None:
            resp["bytes"] = list(data)
        else:
            resp["text"] = data.decode(mp.encoding, errors="replace")
        await self.cc.send_obj(mp.op, resp)

    # -- kill ------------------------------------------------------------------

    async def kill(self, msg: dict, op: str | None = None) -> bool:
        """
        Send a signal to one of this connection's processes.

        The acknowledgement only says whether the signal was delivered.
        The "exit" reply from exec() confirms that the process is gone.

        Args:
            msg: Request message with "pid" and optional "signal" (name like
                 "SIGTERM" / "TERM" or a number; defaults to SIGTERM).
            op:  Reply operation name (defaults to the request's "op").

        Returns:
            True if the signal was sent.
        """
        op = op or msg.get("op", "kill")
        reply = dict(msg)

        pid = _coerce_pid(msg.get("pid"))
        mp = self.find(pid) if pid is not None else None
        if mp is None or not mp.alive:
            reply["message"] = "Failed to locate PID in client command list (ignored request)"
            reply["killed"] = False
            reply["code"] = 1
            await self.cc.send_obj(op, reply)
            return False

        sig = resolve_signal(msg.get("signal", "SIGTERM"))
        if sig is None:
            reply["message"] = f"Unknown signal: {msg.get('signal')}"
            reply["killed"] = False
            reply["code"] = 1
            await self.cc.send_obj(op, reply)
            return False

        try:
            mp.process.send_signal(sig)
            killed = True
        except ProcessLookupError:
            killed = False

        self.cc.log(3, f"[KILL] {self.cc} sent {sig.name} to PID {pid} (delivered={killed})")
        reply["startedBy"] = mp.started_by
        reply["message"] = f"Sent signal {sig.name} to PID {pid}"
        reply["killed"] = killed
        await self.cc.send_obj(op, reply)
        return killed

    # -- teardown --------------------------------------------------------------

    def terminate_all(self) -> int:
        """
        Send SIGTERM to every live process (used when the connection closes).

        Returns:
            Number of processes signalled.
        """
        count = 0
        for mp in list(self.processes.values()):
            if not mp.alive:
                continue
            try:
                mp.process.terminate()
                count += 1
            except ProcessLookupError:
                continue
        return count


# -- Helper Functions ---------------------------------------------------------

def resolve_signal(value: Any) -> signals.Signals | None:
    """
    Map a signal name ("SIGTERM", "term") or number to a Signals member.

    Returns:
        The signal, or None if it is not known on this platform.
    """
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        try:
            return signals.Signals(value)
        except ValueError:
            return None
    if isinstance(value, str):
        name = value.strip().upper()
        if name.isdigit():
            return resolve_signal(int(name))
        if not name.startswith("SIG"):
            name = "SIG" + name
        return getattr(signals.Signals, name, None)
    return None


def _coerce_pid(value: Any) -> int | None:
    """Coerce a requested pid to int (None when impossible)."""
    if isinstance(value, bool):
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def _exit_status(returncode: int) -> tuple[int | None, str | None]:
    """
    Split an asyncio return code into (code, signal name).

    A negative return code means the process was killed by a signal.
    """
    if returncode is not None and returncode < 0:
        try:
            return None, signals.Signals(-returncode).name
        except ValueError:
            return None, str(-returncode)
    return returncode, None


def _describe_error(e: Exception) -> str:
    """Human readable spawn failure message."""
    return f"{type(e).__name__}: {e}"
