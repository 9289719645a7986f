"""Shared fixtures for the windify test suite."""

import asyncio
import os
import sys
from pathlib import Path

import pytest

TESTS_DIR = Path(__file__).resolve().parent
PROJECT_ROOT = TESTS_DIR.parent

# Make the project and the fake engine importable from any working directory.
for path in (str(PROJECT_ROOT), str(TESTS_DIR)):
    if path not in sys.path:
        sys.path.insert(0, path)

# windify.main reads its config at import time.
os.environ.setdefault("WINDIFY_CONFIG", str(TESTS_DIR / "config.test.yaml"))

from windify.coordinator import TransformCoordinator  # noqa: E402
from windify.schemas import ErrorInfo, ErrorKind, TransformResponse  # noqa: E402
from windify.transports.base import Transport  # noqa: E402

ENGINE = "fake_engine:evaluate"

RED_RESULT = {".a": {"classes": ["text-red-500"]}}


class FakeTransport(Transport):
    """In-memory transport: records what the coordinator does and lets the
    test decide when, and with what, each request is answered."""

    kind = "fake"

    def __init__(self):
        super().__init__()
        self.sent = []
        self.aborted = []
        self.closed = False
        self.fail_with = None

    @classmethod
    def from_config(cls, config):
        return cls()

    async def send(self, request):
        if self.fail_with is not None:
            raise self.fail_with
        self.sent.append(request)

    def abort(self, request_id):
        self.aborted.append(request_id)

    async def aclose(self):
        self.closed = True

    def reply(self, request_id, result):
        self._emit(TransformResponse.success(request_id, result))

    def reply_error(self, request_id, kind=ErrorKind.TRANSPORT_FAILURE, message="Invalid CSS"):
        self._emit(
            TransformResponse.failure(
                request_id, ErrorInfo(kind=kind, name="ValueError", message=message)
            )
        )


@pytest.fixture
def transport():
    return FakeTransport()


@pytest.fixture
def coordinator(transport):
    return TransformCoordinator(transport)


@pytest.fixture
def snapshots(coordinator):
    """Every snapshot the coordinator publishes, in order."""
    seen = []
    coordinator.subscribe(seen.append)
    return seen


async def start_transform(coordinator, css=".a{color:red}", options=None):
    """Begin a transform and return its task once it is waiting on a response."""
    task = asyncio.create_task(coordinator.transform(css, options or {"strict": False}))
    await asyncio.sleep(0)
    return task
