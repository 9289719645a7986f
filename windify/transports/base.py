"""Transport interface shared by the background-worker and remote-call variants.

A transport accepts requests through `send` and reports every outcome it
observes through the `deliver` callback bound by the coordinator. It never
decides whether an outcome is stale: that is the coordinator's job.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from collections.abc import Callable
from typing import TYPE_CHECKING, ClassVar

if TYPE_CHECKING:
    from windify.config import WindifyConfig
    from windify.schemas import TransformRequest, TransformResponse

logger = logging.getLogger(__name__)

Deliver = Callable[["TransformResponse"], None]


class Transport(ABC):
    """One execution context, owned by exactly one coordinator."""

    kind: ClassVar[str]

    def __init__(self) -> None:
        self._deliver: Deliver | None = None

    def bind(self, deliver: Deliver) -> None:
        """Attach the coordinator's response sink."""
        self._deliver = deliver

    def _emit(self, response: TransformResponse) -> None:
        if self._deliver is None:
            logger.debug(f"{self.kind} transport has no sink, dropping response {response.id}")
            return
        self._deliver(response)

    @classmethod
    @abstractmethod
    def from_config(cls, config: WindifyConfig) -> Transport:
        """Build the transport from the loaded configuration."""

    @abstractmethod
    async def send(self, request: TransformRequest) -> None:
        """Dispatch a request. Raises a TransportError if it cannot be dispatched."""

    @abstractmethod
    def abort(self, request_id: str) -> None:
        """Best-effort abort of a dispatched request. Must not block."""

    @abstractmethod
    async def aclose(self) -> None:
        """Release the execution context."""
