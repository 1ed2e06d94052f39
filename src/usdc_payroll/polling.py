"""Bounded, cancellable polling used by attestation and receipt monitors."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import TypeVar

from usdc_payroll.errors import GatewayError, PollTimeout

logger = logging.getLogger(__name__)

T = TypeVar("T")


async def poll_until(
    fetch: Callable[[], Awaitable[T | None]],
    *,
    subject: str,
    interval: float,
    max_attempts: int,
    timeout_error: type[PollTimeout] = PollTimeout,
) -> T:
    """Call ``fetch`` until it returns a value other than None.

    Upstream failures count as an attempt and are retried; any other
    exception propagates. No database state is held across the sleeps, and
    cancelling the awaiting task stops the loop at the next await.

    Raises:
        PollTimeout (or ``timeout_error``) once ``max_attempts`` is exhausted.
    """
    for attempt in range(1, max_attempts + 1):
        try:
            result = await fetch()
        except GatewayError as exc:
            logger.warning("Polling %s failed (attempt %d/%d): %s", subject, attempt, max_attempts, exc)
        else:
            if result is not None:
                return result
            logger.debug("%s not ready (attempt %d/%d)", subject, attempt, max_attempts)
        if attempt < max_attempts:
            await asyncio.sleep(interval)
    raise timeout_error(subject, max_attempts)
