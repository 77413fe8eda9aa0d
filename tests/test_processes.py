"""Tests for ProcessManager: exec streaming, exit reporting and kill."""

import asyncio
import os
import signal

import pytest
from pydantic import ValidationError

from jsonserver.processes import resolve_signal

pytestmark = pytest.mark.skipif(os.name != "posix", reason="needs POSIX processes")


async def _wait_exit(mp, timeout: float = 10.0) -> None:
    await asyncio.wait_for(mp.watcher, timeout)


def _states(replies: list[dict]) -> list[str]:
    return [r.get("state") for r in replies]


class TestExec:
    @pytest.mark.asyncio
    async def test_echo_text_output(self, cc):
        mp = await cc.exec({"op": "exec", "cmd": "/bin/echo", "args": ["ok"], "encoding": "utf-8"})
        await _wait_exit(mp)

        started, out, exited = cc.ws.replies
        assert started["op"] == "exec"
        assert started["state"] == "started"
        assert started["pid"] == mp.pid
        assert started["cmd"] == "/bin/echo"
        assert out == {"op": "exec", "pid": mp.pid, "state": "out", "text": "ok\n"}
        assert exited["state"] == "exit"
        assert exited["code"] == 0
        assert exited["signal"] is None
        assert exited["startedBy"]["args"] == ["ok"]
        assert cc.processes.find(mp.pid) is None

    @pytest.mark.asyncio
    async def test_raw_bytes_without_encoding(self, cc):
        mp = await cc.exec({"op": "exec", "cmd": "/bin/echo", "args": ["ok"]})
        await _wait_exit(mp)
        out = cc.ws.replies[1]
        assert out["state"] == "out"
        assert out["bytes"] == list(b"ok\n")
        assert "text" not in out

    @pytest.mark.asyncio
    async def test_stderr_is_reported_as_err(self, cc):
        mp = await cc.exec({
            "op": "exec", "cmd": "/bin/sh", "args": ["-c", "echo oops 1>&2; exit 3"],
            "encoding": "utf-8",
        })
        await _wait_exit(mp)
        replies = cc.ws.replies
        assert _states(replies) == ["started", "err", "exit"]
        assert replies[1]["text"] == "oops\n"
        assert replies[2]["code"] == 3

    @pytest.mark.asyncio
    async def test_reply_op_follows_request(self, cc):
        mp = await cc.exec({"op": "run", "cmd": "/bin/echo", "args": [], "encoding": "utf-8"})
        await _wait_exit(mp)
        assert {r["op"] for r in cc.ws.replies} == {"run"}

    @pytest.mark.asyncio
    async def test_exit_is_last_reply(self, cc):
        mp = await cc.exec({
            "op": "exec", "cmd": "/bin/sh",
            "args": ["-c", "for i in 1 2 3 4 5; do echo $i; echo e$i 1>&2; done"],
            "encoding": "utf-8",
        })
        await _wait_exit(mp)
        states = _states(cc.ws.replies)
        assert states[0] == "started"
        assert states[-1] == "exit"
        assert states.count("exit") == 1
        stdout = "".join(r["text"] for r in cc.ws.replies if r["state"] == "out")
        assert stdout == "1\n2\n3\n4\n5\n"

    @pytest.mark.asyncio
    async def test_cwd_and_env_options(self, cc, tmp_path):
        mp = await cc.exec({
            "op": "exec", "cmd": "/bin/sh", "args": ["-c", "pwd -P; echo $GREETING"],
            "options": {"cwd": str(tmp_path), "env": {"GREETING": "hello"}},
            "encoding": "utf-8",
        })
        await _wait_exit(mp)
        stdout = "".join(r["text"] for r in cc.ws.replies if r["state"] == "out")
        assert stdout == f"{os.path.realpath(tmp_path)}\nhello\n"

    @pytest.mark.asyncio
    async def test_spawn_failure_sends_single_error(self, cc):
        mp = await cc.exec({"op": "exec", "cmd": "/no/such/program", "args": []})
        assert mp is None
        (reply,) = cc.ws.replies
        assert reply["op"] == "exec"
        assert reply["state"] == "error"
        assert "No such file" in reply["message"]
        assert reply["startedBy"]["cmd"] == "/no/such/program"
        assert cc.processes.processes == {}
        assert cc.is_open()

    @pytest.mark.asyncio
    async def test_unknown_encoding_is_a_spawn_failure(self, cc):
        mp = await cc.exec({"op": "exec", "cmd": "/bin/echo", "args": [], "encoding": "klingon"})
        assert mp is None
        assert _states(cc.ws.replies) == ["error"]

    @pytest.mark.asyncio
    async def test_bad_cwd_is_a_spawn_failure(self, cc, tmp_path):
        mp = await cc.exec({
            "op": "exec", "cmd": "/bin/echo", "args": [],
            "options": {"cwd": str(tmp_path / "missing")},
        })
        assert mp is None
        assert _states(cc.ws.replies) == ["error"]

    @pytest.mark.asyncio
    async def test_malformed_request_raises(self, cc):
        with pytest.raises(ValidationError):
            await cc.exec({"op": "exec", "args": []})
        with pytest.raises(ValidationError):
            await cc.exec({"op": "exec", "cmd": "/bin/echo", "args": "not-a-list"})

    @pytest.mark.asyncio
    async def test_malformed_request_closes_connection(self, server, cc):
        server.add_exec_handler()
        assert not await cc.process_message('{"op": "exec"}')
        assert cc.closed

    @pytest.mark.asyncio
    async def test_request_message_not_mutated(self, cc):
        msg = {"op": "exec", "cmd": "/bin/echo", "args": ["x"]}
        mp = await cc.exec(msg)
        await _wait_exit(mp)
        assert msg == {"op": "exec", "cmd": "/bin/echo", "args": ["x"]}

    @pytest.mark.asyncio
    async def test_status_lists_running_processes(self, cc):
        mp = await cc.exec({"op": "exec", "cmd": "/bin/sleep", "args": ["30"]})
        try:
            running = cc.get_status()["running"]
            assert running == [{"pid": mp.pid, "startedBy": mp.started_by}]
        finally:
            mp.process.kill()
            await _wait_exit(mp)
        assert cc.get_status()["running"] == []


class TestKill:
    @pytest.mark.asyncio
    async def test_unknown_pid(self, cc):
        assert not await cc.kill({"op": "kill", "pid": 999999, "signal": "SIGTERM"})
        (reply,) = cc.ws.replies
        assert reply["op"] == "kill"
        assert reply["killed"] is False
        assert reply["code"] == 1
        assert reply["pid"] == 999999
        assert cc.is_open()

    @pytest.mark.asyncio
    async def test_uncoercible_pid(self, cc):
        assert not await cc.kill({"op": "kill", "pid": "abc"})
        assert cc.ws.replies[0]["killed"] is False

    @pytest.mark.asyncio
    async def test_kill_running_process(self, cc):
        mp = await cc.exec({"op": "exec", "cmd": "/bin/sleep", "args": ["30"]})
        assert await cc.kill({"op": "kill", "pid": str(mp.pid), "signal": "SIGTERM"})
        await _wait_exit(mp)

        ack = next(r for r in cc.ws.replies if r["op"] == "kill")
        assert ack["killed"] is True
        assert ack["startedBy"]["cmd"] == "/bin/sleep"
        assert ack["message"] == f"Sent signal SIGTERM to PID {mp.pid}"

        exited = cc.ws.replies[-1]
        assert exited["state"] == "exit"
        assert exited["code"] is None
        assert exited["signal"] == "SIGTERM"
        assert cc.processes.find(mp.pid) is None

    @pytest.mark.asyncio
    async def test_numeric_signal(self, cc):
        mp = await cc.exec({"op": "exec", "cmd": "/bin/sleep", "args": ["30"]})
        assert await cc.kill({"op": "kill", "pid": mp.pid, "signal": int(signal.SIGKILL)})
        await _wait_exit(mp)
        assert cc.ws.replies[-1]["signal"] == "SIGKILL"

    @pytest.mark.asyncio
    async def test_unknown_signal(self, cc):
        mp = await cc.exec({"op": "exec", "cmd": "/bin/sleep", "args": ["30"]})
        try:
            assert not await cc.kill({"op": "kill", "pid": mp.pid, "signal": "SIGNOPE"})
            ack = cc.ws.replies[-1]
            assert ack["killed"] is False
            assert ack["code"] == 1
            assert cc.processes.find(mp.pid) is mp
        finally:
            mp.process.kill()
            await _wait_exit(mp)

    @pytest.mark.asyncio
    async def test_other_connections_processes_are_invisible(self, server, make_connection):
        owner = make_connection(server)
        other = make_connection(server)
        mp = await owner.exec({"op": "exec", "cmd": "/bin/sleep", "args": ["30"]})
        try:
            assert not await other.kill({"op": "kill", "pid": mp.pid})
            assert other.ws.replies[0]["killed"] is False
            assert mp.alive
        finally:
            mp.process.kill()
            await _wait_exit(mp)


class TestTeardown:
    @pytest.mark.asyncio
    async def test_close_terminates_processes(self, cc):
        mp = await cc.exec({"op": "exec", "cmd": "/bin/sleep", "args": ["30"]})
        await cc.close()
        await _wait_exit(mp)
        assert mp.process.returncode == -signal.SIGTERM
        # exit reply is dropped because the connection is gone
        assert _states(cc.ws.replies) == ["started"]

    @pytest.mark.asyncio
    async def test_close_while_streaming_output(self, cc):
        mp = await cc.exec({
            "op": "exec", "cmd": "/bin/sh", "args": ["-c", "while :; do echo y; done"],
            "encoding": "utf-8",
        })
        await asyncio.sleep(0.05)
        await cc.close()
        await _wait_exit(mp)
        assert mp.process.returncode == -signal.SIGTERM
        assert cc.processes.find(mp.pid) is None


class TestWatcher:
    @pytest.mark.asyncio
    async def test_exit_reported_while_child_holds_pipes(self, cc):
        mp = await cc.exec({
            "op": "exec", "cmd": "/bin/sh", "args": ["-c", "echo before; sleep 5 & exit 0"],
            "encoding": "utf-8",
        })
        await _wait_exit(mp, timeout=3.0)

        replies = cc.ws.replies
        assert replies[-1]["state"] == "exit"
        assert replies[-1]["code"] == 0
        assert {"op": "exec", "pid": mp.pid, "state": "out", "text": "before\n"} in replies
        assert cc.processes.find(mp.pid) is None
        assert cc.get_status()["running"] == []

    @pytest.mark.asyncio
    async def test_kill_after_exit_reports_not_found(self, cc):
        mp = await cc.exec({"op": "exec", "cmd": "/bin/sh", "args": ["-c", "sleep 5 & exit 0"]})
        await _wait_exit(mp, timeout=3.0)
        assert not await cc.kill({"op": "kill", "pid": mp.pid})
        assert cc.ws.replies[-1]["killed"] is False

    @pytest.mark.asyncio
    async def test_send_failure_terminates_process(self, cc):
        cc.ws.fail_after = 1
        mp = await cc.exec({
            "op": "exec", "cmd": "/bin/sh", "args": ["-c", "echo x; exec sleep 30"],
            "encoding": "utf-8",
        })
        with pytest.raises(RuntimeError):
            await _wait_exit(mp)

        assert cc.processes.find(mp.pid) is None
        returncode = await asyncio.wait_for(mp.process.wait(), 5.0)
        assert returncode == -signal.SIGTERM
        assert _states(cc.ws.replies) == ["started"]


class TestResolveSignal:
    @pytest.mark.parametrize("value, expected", [
        ("SIGTERM", signal.SIGTERM),
        ("term", signal.SIGTERM),
        ("9", signal.SIGKILL),
        (int(signal.SIGINT), signal.SIGINT),
    ])
    def test_known(self, value, expected):
        assert resolve_signal(value) is expected

    @pytest.mark.parametrize("value", ["SIGNOPE", 100000, None, True, 1.5])
    def test_unknown(self, value):
        assert resolve_signal(value) is None
