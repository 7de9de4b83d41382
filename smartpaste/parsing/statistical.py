"""Guarded calls into the external statistical entity extractor.

The extractor is whatever the host plugs in (an on-device NER model, a
rules engine, a test double).  Its contract::

    extractor(text: str, high_accuracy_mode: bool)
        -> {"amount"?, "currency"?, "vendor"?, "account"?, "type"?, "date"?}

It may be a plain function or a coroutine function, may raise, and may
expose ``reset()`` to drop internal state.  Nothing it does is allowed to
escape into the cascade: failures, timeouts and cancellation of the
extractor all come back as ``None``.  Cancellation of the *caller's* task
still propagates.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from collections.abc import Mapping
from typing import Any, Awaitable, Callable, Optional, Union

logger = logging.getLogger(__name__)

ML_CONFIDENCE = 0.65
HIGH_ACCURACY_LENGTH = 150
RESULT_KEYS = ("amount", "currency", "vendor", "account", "type", "date")

StatisticalExtractor = Callable[
    [str, bool], Union[Mapping[str, Any], Awaitable[Mapping[str, Any]]]
]


def high_accuracy_mode(text: str, forced: bool = False) -> bool:
    """Long messages get the slower, more accurate extractor mode."""
    return forced or len(text) > HIGH_ACCURACY_LENGTH


def _is_async(extractor: Any) -> bool:
    return inspect.iscoroutinefunction(extractor) or inspect.iscoroutinefunction(
        getattr(extractor, "__call__", None)
    )


def reset_extractor(extractor: Any) -> None:
    reset = getattr(extractor, "reset", None)
    if not callable(reset):
        return
    try:
        reset()
    except Exception:
        logger.warning("[ML] Extractor reset failed", exc_info=True)


def _clean(result: Any) -> Optional[dict[str, Any]]:
    if not isinstance(result, Mapping):
        logger.warning("[ML] Expected a mapping from the extractor, got %s", type(result).__name__)
        return None
    cleaned = {
        key: result[key] for key in RESULT_KEYS
        if result.get(key) not in (None, "")
    }
    return cleaned or None


async def run_extractor(
    extractor: StatisticalExtractor,
    text: str,
    *,
    high_accuracy: bool,
    timeout: float,
) -> Optional[dict[str, Any]]:
    """Call ``extractor`` under a timeout; ``None`` on any failure.

    Parameters
    ----------
    extractor:
        Sync or async callable following the module contract.
    text:
        Message to analyse.
    high_accuracy:
        Passed through as the extractor's second argument.
    timeout:
        Seconds before the call is abandoned.  A synchronous extractor runs
        in a worker thread, which cannot be interrupted; its late result is
        discarded.

    Returns
    -------
    dict or None
        Non-empty values for the contract keys, or ``None`` when the
        extractor raised, timed out, was cancelled or returned nothing.
    """
    try:
        if _is_async(extractor):
            raw = await asyncio.wait_for(extractor(text, high_accuracy), timeout)
        else:
            raw = await asyncio.wait_for(asyncio.to_thread(extractor, text, high_accuracy), timeout)
            if inspect.isawaitable(raw):
                raw = await asyncio.wait_for(raw, timeout)
    except asyncio.CancelledError:
        reset_extractor(extractor)
        task = asyncio.current_task()
        if task is not None and task.cancelling():
            raise
        logger.warning("[ML] Extractor was cancelled, falling through")
        return None
    except TimeoutError:
        logger.warning("[ML] Extractor timed out after %.1fs", timeout)
        reset_extractor(extractor)
        return None
    except Exception:
        logger.warning("[ML] Extractor failed", exc_info=True)
        reset_extractor(extractor)
        return None

    cleaned = _clean(raw)
    if cleaned is None:
        logger.debug("[ML] Extractor returned no usable fields")
    return cleaned
