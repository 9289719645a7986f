"""Remote-call transport: runs the engine behind an HTTP endpoint.

Each request is one ``POST {base_url}{path}`` with body ``{css, options}``,
carried by its own asyncio task so ``abort`` can cancel the exchange
mid-flight. A task that has already finished is unaffected by ``abort``:
a response fully received first is delivered as a normal outcome.

Install: pip install httpx
"""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING, Any

import httpx

from windify.errors import TransportCrash, TransportError, TransportFailure
from windify.schemas import ErrorInfo, ErrorKind, TransformResponse, dump_options
from windify.transports import register
from windify.transports.base import Transport

if TYPE_CHECKING:
    from windify.config import WindifyConfig
    from windify.schemas import TransformRequest

logger = logging.getLogger(__name__)


@register
class RemoteTransport(Transport):
    kind = "remote"

    def __init__(
        self,
        base_url: str,
        *,
        path: str = "/api/transform",
        api_key: str | None = None,
        timeout: float = 30.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        super().__init__()
        self.base_url = base_url
        self.path = path
        self.api_key = api_key
        self.timeout = timeout

        self._client = client
        self._owns_client = client is None
        self._tasks: dict[str, asyncio.Task] = {}

    @classmethod
    def from_config(cls, config: WindifyConfig) -> RemoteTransport:
        remote = config.transport.remote
        return cls(
            remote.base_url,
            path=remote.path,
            api_key=remote.api_key,
            timeout=remote.timeout,
        )

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(base_url=self.base_url, timeout=self.timeout)
        return self._client

    # ------------------------------------------------------------------
    # Transport API
    # ------------------------------------------------------------------

    async def send(self, request: TransformRequest) -> None:
        task = asyncio.create_task(self._round_trip(request), name=f"windify-remote-{request.id}")
        self._tasks[request.id] = task
        task.add_done_callback(lambda _t, rid=request.id: self._tasks.pop(rid, None))

    def abort(self, request_id: str) -> None:
        task = self._tasks.pop(request_id, None)
        if task is not None and not task.done():
            logger.debug(f"Aborting remote request {request_id}")
            task.cancel()

    async def aclose(self) -> None:
        tasks = list(self._tasks.values())
        self._tasks.clear()
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None
        logger.debug("Remote transport closed")

    # ------------------------------------------------------------------
    # Round trip
    # ------------------------------------------------------------------

    async def _round_trip(self, request: TransformRequest) -> None:
        try:
            result = await self._post(request)
        except asyncio.CancelledError:
            logger.debug(f"Remote request {request.id} cancelled")
            raise
        except TransportError as exc:
            logger.warning(f"Remote request {request.id} failed: {exc}")
            self._emit(TransformResponse.failure(request.id, exc.to_info()))
        except Exception as exc:
            logger.error(f"Remote request {request.id} raised unexpectedly", exc_info=True)
            info = ErrorInfo(
                kind=ErrorKind.TRANSPORT_FAILURE,
                name=type(exc).__name__,
                message=str(exc),
            )
            self._emit(TransformResponse.failure(request.id, info))
        else:
            self._emit(TransformResponse.success(request.id, result))

    async def _post(self, request: TransformRequest) -> Any:
        body = {"css": request.css, "options": dump_options(request.options)}
        headers = {"X-API-Key": self.api_key} if self.api_key else None

        try:
            response = await self._get_client().post(self.path, json=body, headers=headers)
        except (httpx.RemoteProtocolError, httpx.ReadError) as exc:
            raise TransportCrash(f"Connection to transform service dropped: {exc}") from exc
        except httpx.HTTPError as exc:
            raise TransportFailure(f"Transform service unreachable: {exc}") from exc

        try:
            data = response.json()
        except ValueError:
            data = None

        if response.is_error:
            message = None
            if isinstance(data, dict):
                message = data.get("message") or data.get("error") or data.get("detail")
            if not message:
                message = f"Transform service returned HTTP {response.status_code}"
            raise TransportFailure(str(message))

        if not isinstance(data, dict):
            raise TransportFailure("Transform service returned a malformed payload")
        return data
