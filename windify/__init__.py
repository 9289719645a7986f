"""Windify: coordinates CSS transform requests against an out-of-process engine."""

from windify.coordinator import CoordinatorSnapshot, CoordinatorState, TransformCoordinator
from windify.errors import TransformError
from windify.schemas import ErrorInfo, ErrorKind, MatchOptions

__all__ = [
    "CoordinatorSnapshot",
    "CoordinatorState",
    "ErrorInfo",
    "ErrorKind",
    "MatchOptions",
    "TransformCoordinator",
    "TransformError",
]
