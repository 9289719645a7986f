"""Transport registry: kind-based lookup for execution transports.

Transports are classes decorated with ``@register``. The ``transport.kind``
value in ``config.yaml`` selects one at coordinator construction time.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from windify.transports.base import Transport

if TYPE_CHECKING:
    from windify.config import WindifyConfig

_registry: dict[str, type[Transport]] = {}


def register(cls: type[Transport]) -> type[Transport]:
    """Add a Transport class to the registry by its ``.kind``::

        @register
        class MyTransport(Transport):
            kind = "mine"
    """
    _registry[cls.kind] = cls
    return cls


def create_transport(config: WindifyConfig) -> Transport:
    """Instantiate the transport named by ``config.transport.kind``.

    Raises ``ValueError`` if the kind is not registered.
    """
    kind = config.transport.kind
    if kind not in _registry:
        raise ValueError(
            f"Unknown transport kind '{kind}'. Available: {list(_registry.keys())}"
        )
    return _registry[kind].from_config(config)


def list_transports() -> list[str]:
    """Return all registered transport kinds."""
    return list(_registry.keys())


# Auto-import variants so the registry is populated on first access.
import windify.transports.background as _background  # noqa: E402, F401
import windify.transports.remote as _remote  # noqa: E402, F401

__all__ = ["Transport", "create_transport", "list_transports", "register"]
