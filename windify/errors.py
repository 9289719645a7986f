"""Exceptions raised to callers of the coordinator and by transports."""

from __future__ import annotations

from windify.schemas import ErrorInfo, ErrorKind


class TransformError(Exception):
    """Raised from `TransformCoordinator.transform` with the failure's ErrorInfo."""

    def __init__(self, info: ErrorInfo):
        super().__init__(f"{info.kind.value}: {info.message}")
        self.info = info

    @property
    def kind(self) -> ErrorKind:
        return self.info.kind

    @classmethod
    def cancelled(cls, message: str = "Transform operation was cancelled") -> TransformError:
        return cls(ErrorInfo(kind=ErrorKind.CANCELLED, name="TransformCancelled", message=message))


# ---------------------------------------------------------------------------
# Transport-level errors
# ---------------------------------------------------------------------------


class TransportError(Exception):
    """Base for failures a transport raises while dispatching a request.

    The coordinator converts these into an error response for the id that
    was being dispatched.
    """

    kind: ErrorKind = ErrorKind.TRANSPORT_FAILURE
    name: str = "TransportError"

    def to_info(self) -> ErrorInfo:
        return ErrorInfo(kind=self.kind, name=self.name, message=str(self) or self.name)


class TransportNotReady(TransportError):
    kind = ErrorKind.NOT_READY
    name = "WorkerNotInitialized"


class TransportFailure(TransportError):
    kind = ErrorKind.TRANSPORT_FAILURE
    name = "TransportFailure"


class TransportCrash(TransportError):
    kind = ErrorKind.TRANSPORT_CRASH
    name = "TransportCrash"
