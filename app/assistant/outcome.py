import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Generic, Optional, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


# -----------------------------------------------------------------------------
# OUTCOME MODULE
# Purpose: give every pipeline stage one return shape (value or failure reason)
# so the orchestrator chains primary -> fallback by inspecting results.
# -----------------------------------------------------------------------------


class CompletionError(Exception):
    """The text-completion service is unavailable, failed, or answered with nothing usable."""


class QueryExecutionError(Exception):
    """A query path could not produce a result."""


@dataclass(frozen=True)
class Outcome(Generic[T]):
    ok: bool
    value: Optional[T] = None
    reason: str = ""

    @classmethod
    def success(cls, value: T) -> "Outcome[T]":
        return cls(ok=True, value=value)

    @classmethod
    def failure(cls, reason: str) -> "Outcome[T]":
        return cls(ok=False, reason=reason)


async def run_stage(
    stage: str, awaitable: Awaitable[T], timeout: float
) -> Outcome[T]:
    """
    Await one stage under a deadline and fold every way it can go wrong
    (timeout, raised error) into a failed Outcome.

    Cancellation is not folded: a cancelled request must stop, not degrade.
    """
    try:
        value = await asyncio.wait_for(awaitable, timeout=timeout)
    except asyncio.TimeoutError:
        logger.warning(f"[{stage}] timed out after {timeout:.1f}s")
        return Outcome.failure(f"{stage} timed out")
    except Exception as error:
        logger.warning(f"[{stage}] failed: {error}")
        return Outcome.failure(f"{stage} failed: {error}")
    return Outcome.success(value)
