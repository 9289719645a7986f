"""Background worker transport: runs the engine in a child process.

The child is ``python -m windify.worker --engine <path>``, started lazily on
the first send. Messages are JSON lines over stdin/stdout:

    → {"type": "transform", "id": ..., "payload": {"css": ..., "options": ...}}
    ← {"type": "ready"}                                   (once, after start)
    ← {"type": "success" | "error", "id": ..., "payload": ...}

The child handles one request at a time. If it exits while a request is in
flight, one TransportCrash response is synthesized for that id and the dead
process is dropped; the next send starts a fresh one.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import sys
from pathlib import Path
from typing import TYPE_CHECKING

from pydantic import ValidationError

from windify.errors import TransportCrash, TransportFailure, TransportNotReady
from windify.schemas import ErrorInfo, ErrorKind, TransformResponse
from windify.transports import register
from windify.transports.base import Transport

if TYPE_CHECKING:
    from windify.config import WindifyConfig
    from windify.schemas import TransformRequest

logger = logging.getLogger(__name__)

# Directory containing the windify package, so the child can import it
# even when the project is not installed.
_PACKAGE_ROOT = str(Path(__file__).resolve().parents[2])

_SHUTDOWN_GRACE = 2.0  # seconds to wait for a clean exit before killing


@register
class BackgroundTransport(Transport):
    kind = "worker"

    def __init__(
        self,
        engine: str,
        *,
        python: str | None = None,
        pythonpath: list[str] | None = None,
        startup_timeout: float = 10.0,
        abort_policy: str = "ignore",
        max_message_bytes: int = 16 * 1024 * 1024,
    ) -> None:
        super().__init__()
        if abort_policy not in ("ignore", "terminate"):
            raise ValueError(f"Unknown abort_policy: {abort_policy}")
        self.engine = engine
        self.python = python or sys.executable
        self.pythonpath = list(pythonpath or [])
        self.startup_timeout = startup_timeout
        self.abort_policy = abort_policy
        self.max_message_bytes = max_message_bytes

        self._process: asyncio.subprocess.Process | None = None
        self._inflight_id: str | None = None
        self._readers: set[asyncio.Task] = set()
        self._start_lock: asyncio.Lock | None = None

    @classmethod
    def from_config(cls, config: WindifyConfig) -> BackgroundTransport:
        worker = config.transport.worker
        return cls(
            config.engine,
            python=worker.python,
            pythonpath=worker.pythonpath,
            startup_timeout=worker.startup_timeout,
            abort_policy=worker.abort_policy,
            max_message_bytes=worker.max_message_bytes,
        )

    @property
    def running(self) -> bool:
        return self._process is not None and self._process.returncode is None

    @property
    def pid(self) -> int | None:
        return self._process.pid if self._process is not None else None

    # ------------------------------------------------------------------
    # Transport API
    # ------------------------------------------------------------------

    async def send(self, request: TransformRequest) -> None:
        try:
            line = json.dumps(request.to_message()).encode("utf-8") + b"\n"
        except (TypeError, ValueError) as exc:
            raise TransportFailure(f"Request is not JSON-serialisable: {exc}") from exc

        # One retry covers a child that died before its EOF was observed.
        for attempt in (1, 2):
            process = await self._ensure_started()
            self._inflight_id = request.id
            try:
                process.stdin.write(line)
                await process.stdin.drain()
                return
            except (BrokenPipeError, ConnectionResetError) as exc:
                self._discard(process)
                if attempt == 2 or self._inflight_id != request.id:
                    # Either out of retries or the crash was already reported.
                    self._inflight_id = None
                    raise TransportCrash(f"Worker pipe closed: {exc}") from exc
                logger.warning(f"Worker pipe closed while sending {request.id}, restarting")

    def abort(self, request_id: str) -> None:
        if request_id != self._inflight_id:
            return
        if self.abort_policy == "ignore":
            # Let it run; the late response is dropped as stale.
            logger.debug(f"Leaving request {request_id} to finish in the worker")
            return
        logger.info(f"Terminating worker to abort request {request_id}")
        self._inflight_id = None
        if self._process is not None:
            self._discard(self._process)

    async def aclose(self) -> None:
        process = self._process
        self._process = None
        self._inflight_id = None
        if process is not None and process.returncode is None:
            process.stdin.close()
            try:
                await asyncio.wait_for(process.wait(), _SHUTDOWN_GRACE)
            except asyncio.TimeoutError:
                _kill(process)
                await process.wait()
        if self._readers:
            await asyncio.gather(*self._readers, return_exceptions=True)
        logger.debug("Background transport closed")

    # ------------------------------------------------------------------
    # Process lifecycle
    # ------------------------------------------------------------------

    async def _ensure_started(self) -> asyncio.subprocess.Process:
        if self._start_lock is None:
            self._start_lock = asyncio.Lock()
        async with self._start_lock:
            if self._process is not None and self._process.returncode is None:
                return self._process
            self._process = await self._start()
            return self._process

    async def _start(self) -> asyncio.subprocess.Process:
        env = os.environ.copy()
        paths = [*self.pythonpath, _PACKAGE_ROOT]
        if env.get("PYTHONPATH"):
            paths.append(env["PYTHONPATH"])
        env["PYTHONPATH"] = os.pathsep.join(paths)

        try:
            process = await asyncio.create_subprocess_exec(
                self.python, "-m", "windify.worker", "--engine", self.engine,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                env=env,
                limit=self.max_message_bytes,
            )
        except OSError as exc:
            raise TransportNotReady(f"Could not start worker: {exc}") from exc

        try:
            line = await asyncio.wait_for(process.stdout.readline(), self.startup_timeout)
        except asyncio.TimeoutError:
            _kill(process)
            await process.wait()
            raise TransportNotReady(
                f"Worker did not become ready within {self.startup_timeout}s"
            ) from None

        message = _decode(line)
        if message.get("type") != "ready":
            payload = message.get("payload") or {}
            detail = payload.get("message") if isinstance(payload, dict) else None
            _kill(process)
            await process.wait()
            raise TransportNotReady(
                f"Worker failed to start: {detail or 'no ready handshake'}"
            )

        reader = asyncio.create_task(self._read_loop(process), name=f"windify-worker-{process.pid}")
        self._readers.add(reader)
        reader.add_done_callback(self._readers.discard)
        logger.info(f"Started worker pid={process.pid} engine={self.engine}")
        return process

    def _discard(self, process: asyncio.subprocess.Process) -> None:
        """Forget a process and make sure it is gone. Its exit is not a crash."""
        if process is self._process:
            self._process = None
        _kill(process)

    async def _read_loop(self, process: asyncio.subprocess.Process) -> None:
        while True:
            try:
                line = await process.stdout.readline()
            except ValueError as exc:
                # Line longer than max_message_bytes; the stream is unusable now.
                logger.error(f"Worker pid={process.pid} sent an oversized message: {exc}")
                _kill(process)
                break
            if not line:
                break
            try:
                response = TransformResponse.model_validate_json(line)
            except ValidationError as exc:
                logger.warning(f"Discarding malformed worker message: {exc}")
                continue
            if response.id is not None and response.id == self._inflight_id:
                self._inflight_id = None
            self._emit(response)

        self._on_exit(process)
        returncode = await process.wait()
        logger.debug(f"Worker pid={process.pid} exited with code {returncode}")

    def _on_exit(self, process: asyncio.subprocess.Process) -> None:
        if process is not self._process:
            return  # discarded on purpose
        self._process = None
        request_id, self._inflight_id = self._inflight_id, None
        logger.warning(f"Worker pid={process.pid} terminated unexpectedly")
        if request_id is None:
            return
        self._emit(
            TransformResponse.failure(
                request_id,
                ErrorInfo(
                    kind=ErrorKind.TRANSPORT_CRASH,
                    name="WorkerError",
                    message="Worker process terminated unexpectedly",
                ),
            )
        )


def _kill(process: asyncio.subprocess.Process) -> None:
    if process.returncode is None:
        try:
            process.kill()
        except ProcessLookupError:
            pass


def _decode(line: bytes) -> dict:
    try:
        message = json.loads(line)
    except ValueError:
        return {}
    return message if isinstance(message, dict) else {}
