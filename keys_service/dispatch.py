from __future__ import annotations

import logging
from typing import Awaitable, Callable, Optional

from common.errors import AuthRejectedError, NoKeysConfiguredError, PoolExhaustedError
from common.schemas import ApiKey, ErrorKind, RequestOutcome
from keys_service.manager import KeyRotationManager

logger = logging.getLogger(__name__)

Sender = Callable[[ApiKey], Awaitable[RequestOutcome]]


async def call_with_rotation(
    manager: KeyRotationManager,
    send: Sender,
    max_attempts: Optional[int] = None,
    on_status: Optional[Callable[[str], None]] = None,
) -> RequestOutcome:
    """Issue a request with the next key, rotating on transient failures.

    Rate limit, quota and server errors are retried on whichever key the
    manager switched to. Auth rejection and an exhausted pool are raised.
    """
    if manager.key_count == 0:
        raise NoKeysConfiguredError("No API keys configured")

    key = manager.get_next_key()
    if key is None:
        raise PoolExhaustedError("No eligible API key available")

    attempts = max(1, max_attempts or manager.key_count)
    last_error = ""
    for attempt in range(1, attempts + 1):
        outcome = await send(key)
        if outcome.ok:
            manager.report_success()
            return outcome

        last_error = outcome.message or f"HTTP {outcome.status_code}"
        result = manager.handle_error(outcome.status_code, outcome.message)
        if result.kind is ErrorKind.auth_rejected:
            raise AuthRejectedError(key.name, outcome.message)
        if not result.switched or result.new_key is None:
            raise PoolExhaustedError(result.message)

        logger.info("Attempt %d/%d failed: %s", attempt, attempts, result.message)
        if on_status is not None:
            on_status(result.message)
        key = result.new_key

    raise PoolExhaustedError(f"Gave up after {attempts} attempts: {last_error}")
