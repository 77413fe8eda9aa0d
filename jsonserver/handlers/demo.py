"""
JSON Server - Demo Handlers
=============================
Small examples of the three kinds of handlers a server usually has:

    circle : plain request/response
             { "op": "circle", "radius": 2 }
             -> radius, diameter, area, circum
             (NaN or infinite radius -> "err" instead)

    timeIs : periodic push from the server
             { "op": "timeIs", "millisBetween": 1000 }  start (or restart)
             { "op": "timeIs", "millisBetween": 0 }     stop
             -> { "op": "timeIs", "time": <epoch millis> } every interval

    top    : fixed system command streamed through the process manager
             { "op": "top" }
             -> "top" replies with state started / out / err / exit
"""

import asyncio
import math
import time

TOP_COMMAND = {
    "cmd": "/usr/bin/top",
    "args": ["-b", "-n", "1"],
    "encoding": "utf-8",
}

# Attribute name used to remember the timeIs task on the connection.
_TIME_IS_TASK = "_time_is_task"


async def handle_circle(cc, msg: dict) -> None:
    r = float(msg.get("radius", 1.0))
    reply = dict(msg)
    if not math.isfinite(r):
        reply.pop("radius", None)
        reply["err"] = "radius must be a finite number"
        await cc.send_obj("circle", reply)
        return
    reply["radius"] = r
    reply["diameter"] = r * 2
    reply["area"] = math.pi * r * r
    reply["circum"] = math.pi * 2 * r
    await cc.send_obj("circle", reply)


async def _post_time(cc, seconds: float) -> None:
    while cc.is_open():
        await asyncio.sleep(seconds)
        cc.log(6, f"[SEND] Sending time to: {cc}")
        if not await cc.send_obj("timeIs", {"time": int(time.time() * 1000)}):
            break
    cc.log(2, f"[CLOSE] Connection closed while timeIs was active to: {cc}")


async def handle_time_is(cc, msg: dict) -> None:
    millis = int(msg.get("millisBetween", 0))

    task = getattr(cc, _TIME_IS_TASK, None)
    if task is not None:
        task.cancel()
        setattr(cc, _TIME_IS_TASK, None)

    if millis > 0:
        cc.log(3, f"[DEMO] Starting timeIs interval to post time every {millis} milliseconds")
        setattr(cc, _TIME_IS_TASK, cc.add_task(_post_time(cc, millis / 1000.0)))


async def handle_top(cc, msg: dict) -> None:
    await cc.exec({"op": "top", **TOP_COMMAND})


def install_handlers(server) -> None:
    """Register the demo handlers on the server's full handler table."""
    server.set_handler("circle", handle_circle)
    server.set_handler("timeIs", handle_time_is)
    server.set_handler("top", handle_top)
