"""Worker process: hosts the transform engine behind a JSON-lines protocol.

Started by the background transport as::

    python -m windify.worker --engine package.module:callable

Reads one request per stdin line and writes one response per stdout line.
stdout is reserved for the protocol; anything the engine prints is sent to
stderr along with the logs.
"""

from __future__ import annotations

import argparse
import io
import json
import logging
import sys
import traceback
from typing import Any, TextIO

from windify.engine import Engine, load_engine
from windify.schemas import ErrorInfo, ErrorKind, TransformResponse

logger = logging.getLogger(__name__)


def _failure(
    request_id: str | None,
    name: str,
    message: str,
    trace: str | None = None,
    kind: ErrorKind = ErrorKind.TRANSPORT_FAILURE,
) -> TransformResponse:
    return TransformResponse.failure(
        request_id, ErrorInfo(kind=kind, name=name, message=message, trace=trace)
    )


def handle_message(engine: Engine, message: Any) -> TransformResponse:
    """Run one decoded request through the engine and build its response."""
    if not isinstance(message, dict):
        return _failure(None, "InvalidMessage", "Message must be a JSON object")

    request_id = message.get("id")
    if request_id is not None and not isinstance(request_id, str):
        request_id = str(request_id)

    msg_type = message.get("type")
    if msg_type != "transform":
        return _failure(request_id, "InvalidMessageType", f"Unknown message type: {msg_type}")

    payload = message.get("payload")
    if not isinstance(payload, dict):
        payload = {}
    css = payload.get("css")
    options = payload.get("options")

    if not isinstance(css, str):
        return _failure(request_id, "TypeError", "CSS must be a string")
    if not isinstance(options, dict):
        return _failure(request_id, "TypeError", "Options must be an object")

    try:
        result = engine(css, options)
    except Exception as exc:
        logger.info(f"Engine rejected request {request_id}: {exc}")
        return _failure(request_id, type(exc).__name__, str(exc), traceback.format_exc())

    return TransformResponse.success(request_id, result)


def encode_response(response: TransformResponse) -> str:
    """Serialise a response as one protocol line, failing over to an error line."""
    try:
        return json.dumps(response.model_dump())
    except (TypeError, ValueError) as exc:
        message = f"Engine result is not JSON-serialisable: {exc}"
        fallback = _failure(response.id, type(exc).__name__, message)
        return json.dumps(fallback.model_dump(mode="json"))


def _write(out: TextIO, line: str) -> None:
    out.write(line + "\n")
    out.flush()


def serve(engine: Engine, stdin: TextIO, out: TextIO) -> int:
    """Answer requests until stdin closes. Returns the number handled."""
    handled = 0
    for raw in stdin:
        raw = raw.strip()
        if not raw:
            continue
        try:
            message = json.loads(raw)
        except ValueError as exc:
            response = _failure(None, "InvalidMessage", f"Malformed JSON: {exc}")
        else:
            response = handle_message(engine, message)
        _write(out, encode_response(response))
        handled += 1
    return handled


def main(argv: list[str] | None = None) -> int:
    p = argparse.ArgumentParser(description="Host a CSS transform engine over stdin/stdout.")
    p.add_argument("--engine", required=True, help="Engine import path, 'package.module:callable'.")
    args = p.parse_args(argv)

    logging.basicConfig(level=logging.INFO, stream=sys.stderr)
    for stream in (sys.stdin, sys.stdout):
        if isinstance(stream, io.TextIOWrapper):
            stream.reconfigure(encoding="utf-8")

    # Keep the protocol channel to ourselves.
    out = sys.stdout
    sys.stdout = sys.stderr

    try:
        engine = load_engine(args.engine)
    except Exception as exc:
        logger.error(f"Could not load engine '{args.engine}': {exc}")
        response = _failure(
            None,
            type(exc).__name__,
            str(exc),
            traceback.format_exc(),
            kind=ErrorKind.NOT_READY,
        )
        _write(out, encode_response(response))
        return 1

    _write(out, json.dumps({"type": "ready"}))
    handled = serve(engine, sys.stdin, out)
    logger.info(f"Worker shutting down after {handled} request(s)")
    return 0


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
