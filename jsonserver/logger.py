"""
JSON Server - Verbosity Logger
================================
Verbosity-gated logger shared by the server and its connections.

Every message carries a numeric level. It is emitted only when the
level is less than or equal to the server's current verbosity, so
larger verbosity values produce more output:

    1 : Lifecycle events and errors (connect, close, protocol violations)
    2 : Handler installation, dropped sends
    3 : Background process lifecycle (exec / kill / exit)
    6 : Per-module handler install detail
    8 : Full message traces (every frame received and sent)

Output goes to the terminal and, when a log directory is configured,
to per-day files like logs/2026-02-09.log.
"""

import os
from datetime import datetime


class ServerLogger:
    """
    Dual-output logger: prints to the terminal AND appends to per-day
    log files (when log_dir is set).

    Attributes:
        verbosity: Current verbosity threshold (may change at run time).
        log_dir:   Directory for log files (None disables file output).
    """

    def __init__(self, verbosity: int = 1, log_dir: str | None = None):
        """
        Initialize the logger.

        Args:
            verbosity: Initial verbosity threshold.
            log_dir:   Directory path for log files (optional).
        """
        self.verbosity = int(verbosity)
        self.log_dir = log_dir

        if log_dir:
            os.makedirs(log_dir, exist_ok=True)

    def should_log(self, level: int) -> bool:
        """Return True if a message at ``level`` would be emitted."""
        return level <= self.verbosity

    def _get_log_path(self) -> str:
        """Get today's log file path."""
        today = datetime.now().strftime("%Y-%m-%d")
        return os.path.join(self.log_dir, f"{today}.log")

    def _timestamp(self) -> str:
        """Get current time formatted for log entries."""
        return datetime.now().strftime("%H:%M:%S")

    def _write(self, text: str) -> None:
        """Append a line to today's log file."""
        if not self.log_dir:
            return
        try:
            with open(self._get_log_path(), "a", encoding="utf-8") as f:
                f.write(text + "\n")
        except OSError as e:
            print(f"[WARN] Could not write log file: {e}", flush=True)

    def log(self, level: int, text: str) -> None:
        """
        Emit a log line if the verbosity allows it.

        Args:
            level: Verbosity level of this message.
            text:  Message text (usually starts with a [TAG]).
        """
        if not self.should_log(level):
            return
        line = f"[{self._timestamp()}] {text}"
        self._write(line)
        print(line, flush=True)

    def info(self, text: str) -> None:
        """Log a lifecycle message (level 1)."""
        self.log(1, text)

    def warning(self, text: str) -> None:
        """Log a warning (level 1)."""
        self.log(1, f"[WARN] {text}")
