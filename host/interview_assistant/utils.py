# interview_assistant/utils.py
"""
Utility functions for the interview assistant
"""

import asyncio
import logging
from typing import Awaitable, Callable, Tuple, Type, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


async def retry_with_backoff(
    make_call: Callable[[], Awaitable[T]],
    max_retries: int = 3,
    base_delay: float = 1.0,
    retry_on: Tuple[Type[BaseException], ...] = (Exception,),
) -> T:
    """Retry an async call with exponential backoff.

    `make_call` is invoked once per attempt since a coroutine can only be
    awaited once.
    """
    for attempt in range(max_retries + 1):
        try:
            return await make_call()
        except retry_on as e:
            if attempt == max_retries:
                logger.error(f"Final retry attempt failed: {e}")
                raise

            delay = base_delay * (2 ** attempt)
            logger.warning(f"Attempt {attempt + 1} failed: {e}. Retrying in {delay}s...")
            await asyncio.sleep(delay)
