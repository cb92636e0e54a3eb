"""Bounded retry policy for transient storage failures."""
import logging

from tenacity import (
    Retrying,
    before_sleep_log,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from episode_rpc.config import Settings
from episode_rpc.errors import StoreUnavailable


logger = logging.getLogger(__name__)


def store_retrying(settings: Settings) -> Retrying:
    """Retry only ``StoreUnavailable``; the last failure is re-raised as-is."""
    return Retrying(
        retry=retry_if_exception_type(StoreUnavailable),
        stop=stop_after_attempt(settings.store_retry_attempts),
        wait=wait_exponential(
            multiplier=settings.store_retry_backoff,
            max=settings.store_retry_max_wait,
        ),
        before_sleep=before_sleep_log(logger, logging.WARNING),
        reraise=True,
    )
