"""Best-effort side effects (timer cancel, notifications, tier log)."""

import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Optional

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class BestEffortOutcome:
    """What happened to a side effect whose failure must not fail the caller."""

    label: str
    ok: bool
    error: Optional[str] = None
    value: Any = None


async def best_effort(label: str, awaitable: Awaitable[Any]) -> BestEffortOutcome:
    """Await a side effect, capturing any failure instead of raising it.

    A falsy return value (e.g. ``cancel() -> False``) counts as a failure.
    """
    try:
        value = await awaitable
    except Exception as e:
        logger.warning(f"Best-effort '{label}' failed: {e}")
        return BestEffortOutcome(label=label, ok=False, error=str(e) or type(e).__name__)
    if value is False:
        logger.warning(f"Best-effort '{label}' was refused")
        return BestEffortOutcome(label=label, ok=False, error="refused", value=value)
    return BestEffortOutcome(label=label, ok=True, value=value)
