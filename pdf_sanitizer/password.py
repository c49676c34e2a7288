from __future__ import annotations

import logging
import os
import queue
import select
import sys
import threading
import time
from abc import ABC, abstractmethod
from typing import Optional, TextIO

from .schema import WorkItem

logger = logging.getLogger(__name__)

try:
    import termios
except ImportError:  # Windows
    termios = None  # type: ignore[assignment]


class PasswordProvider(ABC):
    """
    Bounded password request.

    `request` must return within `timeout` seconds; None means no password
    arrived in time.
    """

    @abstractmethod
    def request(self, item: WorkItem, timeout: float) -> Optional[str]:
        raise NotImplementedError


class TerminalPasswordPrompt(PasswordProvider):
    """
    Prompt on stderr and read one line from stdin, with echo disabled.

    The wait is measured against a monotonic deadline. Prompts are serialized
    so concurrent items never share the terminal; waiting for the terminal
    counts against the same deadline.
    """

    def __init__(self, stdin: TextIO | None = None, stderr: TextIO | None = None):
        self.stdin = stdin or sys.stdin
        self.stderr = stderr or sys.stderr
        self._lock = threading.Lock()
        self._pending = b""
        self._eof = False
        self._lines: "queue.Queue[Optional[str]]" = queue.Queue()
        self._reader: Optional[threading.Thread] = None

    def request(self, item: WorkItem, timeout: float) -> Optional[str]:
        deadline = time.monotonic() + timeout
        if not self._lock.acquire(timeout=max(0.0, timeout)):
            logger.debug("Terminal busy until deadline for %s", item.input_path)
            return None
        try:
            self.stderr.write(f"Password for {item.input_path.name}: ")
            self.stderr.flush()
            line = self._read_line(deadline)
            self.stderr.write("\n")
            self.stderr.flush()
        finally:
            self._lock.release()
        if line is None:
            logger.debug("No password read for %s", item.input_path)
            return None
        return line.rstrip("\r\n")

    def _read_line(self, deadline: float) -> Optional[str]:
        try:
            fd = self.stdin.fileno()
        except (AttributeError, OSError, ValueError):
            return self._read_line_threaded(deadline)
        if os.name == "nt":
            return self._read_line_threaded(deadline)

        saved = None
        if termios is not None and os.isatty(fd):
            saved = termios.tcgetattr(fd)
            quiet = termios.tcgetattr(fd)
            quiet[3] &= ~termios.ECHO
            termios.tcsetattr(fd, termios.TCSAFLUSH, quiet)
        try:
            return self._read_fd_line(fd, deadline)
        finally:
            if saved is not None:
                termios.tcsetattr(fd, termios.TCSAFLUSH, saved)

    def _read_fd_line(self, fd: int, deadline: float) -> Optional[str]:
        # Unbuffered reads only; every wait is bounded by the deadline and
        # bytes past the first newline stay in _pending for the next request.
        while True:
            newline = self._pending.find(b"\n")
            if newline >= 0:
                line, self._pending = self._pending[:newline], self._pending[newline + 1 :]
                return self._decode(line)
            if self._eof:
                # EOF on stdin counts as "no password"; a final unterminated line still counts.
                line, self._pending = self._pending, b""
                return self._decode(line) if line else None
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return None
            ready, _, _ = select.select([fd], [], [], remaining)
            if not ready:
                return None
            chunk = os.read(fd, 4096)
            if chunk:
                self._pending += chunk
            else:
                self._eof = True

    def _decode(self, raw: bytes) -> str:
        encoding = getattr(self.stdin, "encoding", None) or "utf-8"
        return raw.decode(encoding, errors="replace")

    def _read_line_threaded(self, deadline: float) -> Optional[str]:
        if self._reader is None:
            self._reader = threading.Thread(target=self._pump_lines, name="password-reader", daemon=True)
            self._reader.start()
        try:
            line = self._lines.get(timeout=max(0.0, deadline - time.monotonic()))
        except queue.Empty:
            return None
        if line is None:
            # Keep the EOF marker for later requests.
            self._lines.put(None)
        return line

    def _pump_lines(self) -> None:
        """Single reader shared by every request; lines queue up until a request takes them."""
        while True:
            line = self.stdin.readline()
            if not line:
                self._lines.put(None)
                return
            self._lines.put(line)
