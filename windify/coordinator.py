"""Transform coordinator: one logical request in flight, exposed as a state machine.

States and transitions:

    idle | success | error  --transform-->  processing
    processing  --matching success-->        success
    processing  --matching failure-->        error
    processing  --cancel-->                  error (Cancelled)
    processing  --transform-->               processing (prior request superseded)
    any         --reset-->                   idle

The pending table holds at most one entry (request id → caller future).
Every response from the transport passes the correlator check against that
entry before anything else happens; a response for any other id is stale
and has no effect at all.

All methods must be called from the event loop that owns the coordinator.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Any

from windify.correlator import RequestCorrelator
from windify.errors import TransformError, TransportError
from windify.schemas import ErrorInfo, ErrorKind, MatchOptions, TransformRequest, TransformResponse

if TYPE_CHECKING:
    from windify.config import WindifyConfig
    from windify.transports.base import Transport

logger = logging.getLogger(__name__)


class CoordinatorState(str, Enum):
    IDLE = "idle"
    PROCESSING = "processing"
    SUCCESS = "success"
    ERROR = "error"


@dataclass(frozen=True)
class CoordinatorSnapshot:
    """Read-only view handed to consumers.

    request  the pending request while processing, else None
    result   engine result after success, else None
    error    ErrorInfo after a failure, else None
    """

    state: CoordinatorState
    request: TransformRequest | None = None
    result: Any = None
    error: ErrorInfo | None = None


Listener = Callable[[CoordinatorSnapshot], None]


class TransformCoordinator:
    """Owns one transport and the single pending-request slot."""

    def __init__(self, transport: Transport, correlator: RequestCorrelator | None = None) -> None:
        self._transport = transport
        self._correlator = correlator or RequestCorrelator()
        self._snapshot = CoordinatorSnapshot(CoordinatorState.IDLE)
        self._pending: dict[str, asyncio.Future] = {}
        self._listeners: list[Listener] = []
        self._closed = False
        transport.bind(self._on_response)

    @classmethod
    def from_config(cls, config: WindifyConfig) -> TransformCoordinator:
        from windify.transports import create_transport

        return cls(create_transport(config))

    async def __aenter__(self) -> TransformCoordinator:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()

    # ------------------------------------------------------------------
    # Consumer API
    # ------------------------------------------------------------------

    @property
    def transport(self) -> Transport:
        return self._transport

    @property
    def state(self) -> CoordinatorState:
        return self._snapshot.state

    @property
    def pending_id(self) -> str | None:
        return next(iter(self._pending), None)

    def get_state(self) -> CoordinatorSnapshot:
        return self._snapshot

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Register a snapshot listener. Returns a callable that unsubscribes it."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    async def transform(self, css: str, options: MatchOptions | dict[str, Any]) -> Any:
        """Run one transform and return the engine result.

        Supersedes any request still pending. Raises TransformError carrying
        the ErrorInfo on cancellation, supersession or failure.
        """
        if self._closed:
            info = ErrorInfo(
                kind=ErrorKind.NOT_READY,
                name="WorkerNotInitialized",
                message="Coordinator has been closed",
            )
            self._publish(CoordinatorSnapshot(CoordinatorState.ERROR, error=info))
            raise TransformError(info)

        self._supersede("Transform superseded by a newer request")

        request = TransformRequest(id=self._correlator.new_id(), css=css, options=options)
        future = asyncio.get_running_loop().create_future()
        self._pending = {request.id: future}
        self._publish(CoordinatorSnapshot(CoordinatorState.PROCESSING, request=request))
        logger.debug(f"Dispatching request {request.id} via {self._transport.kind} transport")

        try:
            try:
                await self._transport.send(request)
            except TransportError as exc:
                logger.warning(f"Could not dispatch request {request.id}: {exc}")
                self._on_response(TransformResponse.failure(request.id, exc.to_info()))
            except Exception as exc:
                logger.error(f"Transport raised while dispatching {request.id}", exc_info=True)
                self._on_response(
                    TransformResponse.failure(
                        request.id,
                        ErrorInfo(
                            kind=ErrorKind.TRANSPORT_FAILURE,
                            name=type(exc).__name__,
                            message=str(exc),
                        ),
                    )
                )
            return await future
        except asyncio.CancelledError:
            # The caller gave up (e.g. asyncio.wait_for); release the request.
            if self.pending_id == request.id:
                self.cancel()
            raise

    def cancel(self) -> None:
        """Cancel the pending request. No-op unless processing."""
        request_id = self.pending_id
        if request_id is None:
            return
        future = self._pending.pop(request_id)
        error = TransformError.cancelled()
        self._publish(CoordinatorSnapshot(CoordinatorState.ERROR, error=error.info))
        _reject(future, error)
        self._transport.abort(request_id)
        logger.debug(f"Cancelled request {request_id}")

    def reset(self) -> None:
        """Return to idle, dropping any pending request, result and error."""
        self._supersede("Transform cancelled by reset")
        if self._snapshot.state is not CoordinatorState.IDLE:
            self._publish(CoordinatorSnapshot(CoordinatorState.IDLE))

    async def aclose(self) -> None:
        """Cancel anything pending and release the transport."""
        if self._closed:
            return
        self._closed = True
        self._supersede("Coordinator closed")
        await self._transport.aclose()
        logger.debug("Coordinator closed")

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _supersede(self, message: str) -> None:
        """Void the pending request without publishing a state of its own."""
        request_id = self.pending_id
        if request_id is None:
            return
        future = self._pending.pop(request_id)
        _reject(future, TransformError.cancelled(message))
        self._transport.abort(request_id)
        logger.debug(f"Superseded request {request_id}")

    def _on_response(self, response: TransformResponse) -> None:
        """Transport sink. Check, clear and apply with no suspension point."""
        pending_id = self.pending_id
        if not self._correlator.accept(response.id, pending_id):
            logger.debug(f"Dropping stale response for {response.id} (pending={pending_id})")
            return

        future = self._pending.pop(pending_id)
        if response.ok:
            self._publish(CoordinatorSnapshot(CoordinatorState.SUCCESS, result=response.payload))
            if not future.done():
                future.set_result(response.payload)
        else:
            info = response.error_info()
            logger.info(f"Request {pending_id} failed: {info.kind.value}: {info.message}")
            self._publish(CoordinatorSnapshot(CoordinatorState.ERROR, error=info))
            _reject(future, TransformError(info))

    def _publish(self, snapshot: CoordinatorSnapshot) -> None:
        self._snapshot = snapshot
        for listener in list(self._listeners):
            try:
                listener(snapshot)
            except Exception:
                logger.exception("State listener failed")


def _reject(future: asyncio.Future, error: TransformError) -> None:
    if future.done():
        return
    future.set_exception(error)
    # Mark retrieved so an abandoned caller does not trigger loop warnings.
    future.exception()
