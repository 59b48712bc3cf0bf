import asyncio
import logging
import os
from typing import Callable, TypeVar

from dotenv import load_dotenv
from sqlalchemy.orm import Session, sessionmaker
from tenacity import (
    AsyncRetrying, RetryCallState, retry_if_exception, stop_after_attempt, wait_exponential,
)

from .errors import is_transient_error

load_dotenv()

logger = logging.getLogger(__name__)

# ── Retry policy (from .env) ──
STORE_MAX_ATTEMPTS = int(os.getenv("STORE_MAX_ATTEMPTS", "3"))
STORE_BACKOFF_BASE = float(os.getenv("STORE_BACKOFF_BASE", "1.0"))
STORE_BACKOFF_FACTOR = float(os.getenv("STORE_BACKOFF_FACTOR", "2.0"))

T = TypeVar("T")


class RetryableStore:
    """
    Runs persistence calls off the event loop, retrying transient connectivity
    failures with exponential backoff (base * factor ** (attempt - 1)).

    Callers must hand in operations that are safe to run again; `transaction`
    gives each attempt its own session and transaction, so a failed attempt
    leaves nothing behind.
    """

    def __init__(
        self,
        session_factory: sessionmaker,
        max_attempts: int = STORE_MAX_ATTEMPTS,
        base_delay: float = STORE_BACKOFF_BASE,
        factor: float = STORE_BACKOFF_FACTOR,
    ):
        self.session_factory = session_factory
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self.factor = factor

    def _log_retry(self, description: str):
        def before_sleep(retry_state: RetryCallState) -> None:
            delay = retry_state.next_action.sleep if retry_state.next_action else 0
            logger.warning(
                "%s failed with transient error on attempt %d/%d (%s); retrying in %.2fs",
                description,
                retry_state.attempt_number,
                self.max_attempts,
                retry_state.outcome.exception(),
                delay,
            )
        return before_sleep

    async def execute(self, operation: Callable[[], T], description: str = "store operation") -> T:
        retrying = AsyncRetrying(
            stop=stop_after_attempt(self.max_attempts),
            wait=wait_exponential(multiplier=self.base_delay, exp_base=self.factor),
            retry=retry_if_exception(is_transient_error),
            before_sleep=self._log_retry(description),
            reraise=True,
        )
        async for attempt in retrying:
            with attempt:
                logger.debug(
                    "%s attempt %d/%d", description, attempt.retry_state.attempt_number, self.max_attempts
                )
                result = await asyncio.to_thread(operation)
        return result

    async def transaction(self, fn: Callable[[Session], T], description: str = "store transaction") -> T:
        def run() -> T:
            with self.session_factory() as session, session.begin():
                return fn(session)

        return await self.execute(run, description=description)
