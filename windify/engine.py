"""Engine loader: resolves the external transform engine by import path.

The engine is any callable `evaluate(css: str, options: dict) -> result`.
It signals malformed input by raising; the result is returned as-is.
"""

from __future__ import annotations

import importlib
import logging
from collections.abc import Callable
from typing import Any

logger = logging.getLogger(__name__)

Engine = Callable[[str, dict[str, Any]], Any]


def load_engine(path: str) -> Engine:
    """Import `package.module:callable` and return the callable.

    Raises ImportError if the module or attribute cannot be found and
    TypeError if the attribute is not callable.
    """
    module_name, _, attr = path.partition(":")
    if not module_name or not attr:
        raise ImportError(f"Invalid engine path '{path}', expected 'module:callable'")

    module = importlib.import_module(module_name)
    try:
        engine = getattr(module, attr)
    except AttributeError:
        raise ImportError(f"Module '{module_name}' has no attribute '{attr}'") from None

    if not callable(engine):
        raise TypeError(f"Engine '{path}' is not callable")

    logger.info(f"Loaded transform engine: {path}")
    return engine
