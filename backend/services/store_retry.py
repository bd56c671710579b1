"""
ARTIS SALES - Retry des erreurs transitoires MongoDB

Utilisé par les jobs batch (sweeper SLA, compilateur DSR) au niveau de
chaque item. Le dispatcher d'events n'en a pas besoin: son budget de
retry est porté par l'event lui-même (retry_count).
"""

import asyncio
import logging
from typing import Awaitable, Callable, TypeVar

from pymongo.errors import AutoReconnect, ConnectionFailure, NetworkTimeout

from config import STORE_RETRY_ATTEMPTS, STORE_RETRY_BASE_DELAY

logger = logging.getLogger("store_retry")

T = TypeVar("T")

TRANSIENT_STORE_ERRORS = (AutoReconnect, ConnectionFailure, NetworkTimeout)


def is_transient_store_error(exc: BaseException) -> bool:
    return isinstance(exc, TRANSIENT_STORE_ERRORS)


async def with_store_retry(
    operation: Callable[[], Awaitable[T]],
    label: str,
    attempts: int = None,
    base_delay: float = None,
) -> T:
    """
    Exécute `operation` et la relance sur erreur transitoire du store.
    Backoff exponentiel: base, base*2, base*4...
    Les autres exceptions remontent immédiatement.
    """
    # Au moins un essai, même avec attempts=0
    attempts = STORE_RETRY_ATTEMPTS if attempts is None else max(1, attempts)
    delay = STORE_RETRY_BASE_DELAY if base_delay is None else base_delay

    for attempt in range(1, attempts + 1):
        try:
            return await operation()
        except TRANSIENT_STORE_ERRORS as e:
            if attempt >= attempts:
                logger.error(f"[{label}] store still unavailable after {attempts} attempts: {e}")
                raise
            logger.warning(f"[{label}] transient store error (attempt {attempt}/{attempts}): {e}")
            await asyncio.sleep(delay)
            delay *= 2
