# rfid_portal/retry.py
"""
Bounded retry policy shared by the reconnect path and the auto-restart path.

A policy is just data: how many attempts, the first delay, and how the delay
grows. `factor=1.0` gives the fixed-delay schedule the supervisor uses for
reconnects; `factor=2.0` gives the doubling backoff the scanner readers use.
"""

from __future__ import annotations
import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Iterator, Optional

from .errors import RetryExhausted

log = logging.getLogger("portal.retry")


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 5
    delay_s: float = 3.0
    factor: float = 1.0
    max_delay_s: float = 30.0

    @classmethod
    def from_cfg(cls, cfg: Optional[Dict[str, Any]], **defaults: Any) -> "RetryPolicy":
        cfg = cfg or {}
        base = cls(**defaults) if defaults else cls()
        return cls(
            max_attempts=max(1, int(cfg.get("max_attempts", base.max_attempts))),
            delay_s=max(0.0, float(cfg.get("delay_s", base.delay_s))),
            factor=max(1.0, float(cfg.get("factor", base.factor))),
            max_delay_s=max(0.0, float(cfg.get("max_delay_s", base.max_delay_s))),
        )

    def delay_for(self, attempt: int) -> float:
        """Delay to wait *before* attempt number `attempt` (1-based). Attempt 1 is immediate."""
        if attempt <= 1:
            return 0.0
        d = self.delay_s * (self.factor ** (attempt - 2))
        return min(d, self.max_delay_s) if self.max_delay_s > 0 else d

    def schedule(self) -> Iterator[float]:
        for n in range(1, self.max_attempts + 1):
            yield self.delay_for(n)

    async def run(
        self,
        op: Callable[[], Awaitable[Any]],
        *,
        name: str = "op",
        should_continue: Optional[Callable[[], bool]] = None,
        on_failure: Optional[Callable[[int, BaseException], None]] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> Any:
        """
        Call `op` until it succeeds or the attempt budget is spent.

        `should_continue` is checked before every attempt; returning False
        aborts with RetryExhausted (used when an operator disconnects while a
        reconnect is pending). CancelledError is never swallowed.
        """
        last: Optional[BaseException] = None
        attempt = 0
        for attempt, delay in enumerate(self.schedule(), start=1):
            if delay > 0:
                await sleep(delay)
            if should_continue is not None and not should_continue():
                log.info("retry_aborted", extra={"op": name, "attempt": attempt})
                raise RetryExhausted(attempt - 1, last)
            try:
                return await op()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                last = e
                log.warning("retry_attempt_failed",
                            extra={"op": name, "attempt": attempt, "max_attempts": self.max_attempts, "err": str(e)})
                if on_failure is not None:
                    on_failure(attempt, e)
        raise RetryExhausted(attempt, last)
