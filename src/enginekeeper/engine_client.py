"""Launch the engine and relay its notifications over stdio JSON-RPC."""

from __future__ import annotations

import contextlib
import json
import logging
import os
import subprocess
import threading
import time
from collections.abc import Callable
from pathlib import Path
from typing import Any, BinaryIO

from . import __version__
from .context import CloseOnExitMixin
from .resolver import ServerCommand
from .status import LifecycleReporter

logger = logging.getLogger(__name__)

STATUS_NOTIFICATION = "$window/status"
OBJECT_TREE_NOTIFICATION = "experimental/dreammaker/objectTree"


def encode_message(payload: dict[str, Any]) -> bytes:
    body = json.dumps(payload, separators=(",", ":")).encode("utf-8")
    header = f"Content-Length: {len(body)}\r\n\r\n".encode("ascii")
    return header + body


def read_message(stream: BinaryIO) -> dict[str, Any] | None:
    """Read one Content-Length framed message; None on EOF or garbage."""
    headers: dict[str, str] = {}
    while True:
        raw = stream.readline()
        if not raw:
            return None

        line = raw.decode("ascii", errors="replace").strip()
        if not line:
            break

        if ":" not in line:
            continue

        name, value = line.split(":", 1)
        headers[name.strip().lower()] = value.strip()

    try:
        content_length = int(headers.get("content-length", "0"))
    except (ValueError, TypeError):
        return None
    if content_length <= 0:
        return None

    payload = stream.read(content_length)
    if len(payload) != content_length:
        return None

    try:
        decoded = json.loads(payload.decode("utf-8"))
    except (json.JSONDecodeError, UnicodeDecodeError):
        return None
    return decoded if isinstance(decoded, dict) else None


class EngineProcess(CloseOnExitMixin):
    """One running engine instance wired to a :class:`LifecycleReporter`."""

    def __init__(
        self,
        command: ServerCommand,
        reporter: LifecycleReporter,
        *,
        root_path: str | Path | None = None,
        request_timeout: float = 10.0,
    ) -> None:
        self.command = command
        self._reporter = reporter
        self._root_path = Path(root_path) if root_path is not None else Path.cwd()
        self._request_timeout = request_timeout

        self._proc: subprocess.Popen[bytes] | None = None
        self._reader: threading.Thread | None = None
        self._write_lock = threading.Lock()
        self._cv = threading.Condition()
        self._responses: dict[int, dict[str, Any]] = {}
        self._next_id = 1
        self._reader_done = False
        self._stopping = False
        self._notification_handlers: dict[str, Callable[[dict[str, Any] | None], Any]] = {
            STATUS_NOTIFICATION: reporter.handle_status,
            OBJECT_TREE_NOTIFICATION: reporter.handle_object_tree,
        }

    @property
    def is_running(self) -> bool:
        return self._proc is not None and self._proc.poll() is None

    @property
    def returncode(self) -> int | None:
        return None if self._proc is None else self._proc.poll()

    def start(self) -> bool:
        """Spawn the engine and complete the initialize handshake."""
        if self.is_running:
            return True

        try:
            self._proc = subprocess.Popen(
                self.command.argv,
                stdin=subprocess.PIPE,
                stdout=subprocess.PIPE,
                stderr=subprocess.DEVNULL,
                cwd=str(self._root_path) if self._root_path.is_dir() else None,
            )
        except OSError as exc:
            logger.warning("Failed to start engine %s: %s", self.command.argv, exc)
            self._reporter.mark_exited(None)
            return False

        self._reader_done = False
        self._stopping = False
        self._reader = threading.Thread(
            target=self._read_loop, name="enginekeeper-reader", daemon=True
        )
        self._reader.start()

        try:
            self._request("initialize", self._initialize_params())
            self._notify("initialized", {})
        except (OSError, TimeoutError, RuntimeError) as exc:
            logger.warning("Engine %s failed to initialize: %s", self.command.path, exc)
            self.stop(force=True)
            return False

        logger.info("Engine %s started (pid %s)", self.command.path, self._proc.pid)
        return True

    def _initialize_params(self) -> dict[str, Any]:
        return {
            "processId": os.getpid(),
            "rootUri": self._root_path.resolve().as_uri(),
            "capabilities": {
                "experimental": {"dreammaker": {"objectTree": True}},
            },
            "clientInfo": {"name": "enginekeeper", "version": __version__},
        }

    def _send_message(self, payload: dict[str, Any]) -> None:
        proc = self._proc
        if proc is None or proc.stdin is None:
            raise RuntimeError("engine stdin is not available")
        with self._write_lock:
            proc.stdin.write(encode_message(payload))
            proc.stdin.flush()

    def _notify(self, method: str, params: dict[str, Any] | None = None) -> None:
        payload: dict[str, Any] = {"jsonrpc": "2.0", "method": method}
        if params is not None:
            payload["params"] = params
        self._send_message(payload)

    def _request(
        self, method: str, params: dict[str, Any] | None, *, timeout: float | None = None
    ) -> Any:
        with self._cv:
            request_id = self._next_id
            self._next_id += 1

        payload: dict[str, Any] = {"jsonrpc": "2.0", "id": request_id, "method": method}
        if params is not None:
            payload["params"] = params
        self._send_message(payload)

        deadline = time.monotonic() + (timeout if timeout is not None else self._request_timeout)
        with self._cv:
            while request_id not in self._responses:
                if self._reader_done:
                    raise RuntimeError(f"engine exited before answering {method}")
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    raise TimeoutError(f"Timed out waiting for engine response to {method}")
                self._cv.wait(remaining)
            message = self._responses.pop(request_id)

        if "error" in message:
            raise RuntimeError(f"engine error in {method}: {message['error']}")
        return message.get("result")

    def _read_loop(self) -> None:
        proc = self._proc
        assert proc is not None and proc.stdout is not None
        while True:
            message = read_message(proc.stdout)
            if message is None:
                break
            self._dispatch(message)

        with self._cv:
            self._reader_done = True
            self._cv.notify_all()

        returncode = None
        with contextlib.suppress(subprocess.TimeoutExpired):
            returncode = proc.wait(timeout=1.0)
        if not self._stopping:
            logger.warning("Engine %s exited with %s", self.command.path, returncode)
            self._reporter.mark_exited(returncode)

    def _dispatch(self, message: dict[str, Any]) -> None:
        method = message.get("method")
        if method is None:
            if isinstance(message.get("id"), int):
                with self._cv:
                    self._responses[message["id"]] = message
                    self._cv.notify_all()
            return

        if "id" in message:
            # Server-to-client request; nothing here needs a real answer.
            with contextlib.suppress(OSError, RuntimeError):
                self._send_message({"jsonrpc": "2.0", "id": message["id"], "result": None})
            return

        handler = self._notification_handlers.get(method)
        if handler is None:
            logger.debug("Ignoring engine notification %s", method)
            return
        try:
            handler(message.get("params"))
        except Exception:
            logger.exception("Error handling engine notification %s", method)

    def stop(self, *, force: bool = False, timeout: float = 2.0) -> None:
        """Shut the engine down, killing it if it does not exit in time."""
        proc = self._proc
        if proc is None:
            return
        self._stopping = True

        if not force and proc.poll() is None:
            with contextlib.suppress(Exception):
                self._request("shutdown", None, timeout=min(self._request_timeout, 1.0))
                self._notify("exit")

        if proc.stdin is not None:
            with contextlib.suppress(Exception):
                proc.stdin.close()

        try:
            proc.wait(timeout=timeout)
        except subprocess.TimeoutExpired:
            proc.kill()
            with contextlib.suppress(subprocess.TimeoutExpired):
                proc.wait(timeout=timeout)

        # The reader sees EOF once the process is gone.
        if self._reader is not None:
            self._reader.join(timeout=timeout)
            self._reader = None
        if proc.stdout is not None:
            with contextlib.suppress(Exception):
                proc.stdout.close()
        self._proc = None

    close = stop
