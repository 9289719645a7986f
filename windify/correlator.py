"""Request correlator: mints request ids and gates response acceptance."""

from __future__ import annotations

import itertools
import uuid

# Random per-process prefix plus a monotonic counter: ids cannot repeat
# within a process, and ids from different processes do not collide.
_PROCESS_TOKEN = uuid.uuid4().hex[:12]
_counter = itertools.count(1)


class RequestCorrelator:
    """Stateless; the pending id itself is owned by the coordinator."""

    def new_id(self) -> str:
        return f"{_PROCESS_TOKEN}-{next(_counter)}"

    @staticmethod
    def accept(response_id: str | None, pending_id: str | None) -> bool:
        """True iff a response bearing `response_id` belongs to the pending request."""
        return pending_id is not None and response_id == pending_id
