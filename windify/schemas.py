"""Request/response models: the contract between coordinator, transports and service."""

from __future__ import annotations

from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field


class ErrorKind(str, Enum):
    """Failure taxonomy surfaced to consumers."""

    CANCELLED = "Cancelled"
    TRANSPORT_FAILURE = "TransportFailure"
    TRANSPORT_CRASH = "TransportCrash"
    NOT_READY = "NotReady"


class ErrorInfo(BaseModel):
    """Structured failure description.

    kind     taxonomy bucket (see ErrorKind)
    name     name of the originating error, e.g. the engine exception class
    message  human-readable description
    trace    formatted traceback, when one exists
    """

    kind: ErrorKind
    name: str
    message: str
    trace: str | None = None


# ---------------------------------------------------------------------------
# Match options (passed through to the engine untouched)
# ---------------------------------------------------------------------------


class Thresholds(BaseModel):
    """Approximation tolerances, in pixels."""

    model_config = ConfigDict(populate_by_name=True, extra="allow")

    spacing_px: float = Field(default=2, alias="spacingPx")
    font_px: float = Field(default=1, alias="fontPx")
    radii_px: float = Field(default=2, alias="radiiPx")


class MatchFlags(BaseModel):
    model_config = ConfigDict(extra="allow")

    strict: bool = False
    approximate: bool = True
    thresholds: Thresholds = Field(default_factory=Thresholds)
    screens: dict[str, int] = {}


class MatchOptions(BaseModel):
    """Engine match context. Unknown keys are preserved for the engine."""

    model_config = ConfigDict(extra="allow")

    version: Literal["v3", "v4", "auto"] = "auto"
    opts: MatchFlags = Field(default_factory=MatchFlags)
    theme: Any = None
    tokens: Any = None

    def to_payload(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)


def dump_options(options: MatchOptions | dict[str, Any]) -> dict[str, Any]:
    """Serialise options for the wire; plain dicts are sent as given."""
    if isinstance(options, MatchOptions):
        return options.to_payload()
    return options


# ---------------------------------------------------------------------------
# Requests and responses
# ---------------------------------------------------------------------------


class TransformBody(BaseModel):
    """The `{css, options}` shape shared by the worker payload and the HTTP body."""

    css: str = ""
    options: dict[str, Any] = {}


class TransformRequest(BaseModel):
    """One logical request issued by the coordinator."""

    model_config = ConfigDict(frozen=True)

    id: str
    css: str
    options: Any

    def to_message(self) -> dict[str, Any]:
        """Outbound worker message: `{type: "transform", id, payload: {css, options}}`."""
        return {
            "type": "transform",
            "id": self.id,
            "payload": {"css": self.css, "options": dump_options(self.options)},
        }


class TransformResponse(BaseModel):
    """Inbound response: `{type: "success"|"error", id, payload}`.

    For `success` the payload is the engine result; for `error` it is an
    ErrorInfo-shaped dict.
    """

    type: Literal["success", "error"]
    id: str | None = None
    payload: Any = None

    @classmethod
    def success(cls, request_id: str | None, result: Any) -> TransformResponse:
        return cls(type="success", id=request_id, payload=result)

    @classmethod
    def failure(cls, request_id: str | None, info: ErrorInfo) -> TransformResponse:
        return cls(type="error", id=request_id, payload=info.model_dump(mode="json"))

    @property
    def ok(self) -> bool:
        return self.type == "success"

    def error_info(self) -> ErrorInfo:
        """Parse the error payload; anything malformed becomes a TransportFailure."""
        payload = self.payload if isinstance(self.payload, dict) else {}
        try:
            kind = ErrorKind(payload.get("kind", ErrorKind.TRANSPORT_FAILURE))
        except ValueError:
            kind = ErrorKind.TRANSPORT_FAILURE
        return ErrorInfo(
            kind=kind,
            name=str(payload.get("name") or "TransformError"),
            message=str(payload.get("message") or "Unknown error"),
            trace=payload.get("trace") or payload.get("stack"),
        )
