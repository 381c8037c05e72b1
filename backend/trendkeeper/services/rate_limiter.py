"""
Rate-limited admission gate for upstream fetches.

Provides a single admission point for every request the refresh loop sends
upstream. Four constraints must all hold before a dispatch is admitted:

- a minimum interval between any two dispatches,
- a bound on concurrently outstanding dispatches,
- a token reservoir replenished on a fixed schedule (burst ceiling),
- a random jitter slept before each dispatch, so the cadence is not mechanical.

The gate never fails; it only delays. Cancelling a pending ``admit()`` gives
back anything it had already taken.
"""
import asyncio
import logging
import random
from typing import Optional

from ..domain.refresh.models import RateBudget
from ..utils.clock import Clock, system_clock

logger = logging.getLogger(__name__)


class GateTicket:
    """Handle for one admitted dispatch; ``release()`` frees its concurrency slot."""

    def __init__(self, gate: "FetchGate"):
        self._gate = gate
        self._released = False

    @property
    def released(self) -> bool:
        return self._released

    def release(self) -> None:
        if self._released:
            return
        self._released = True
        self._gate._release_slot()

    async def __aenter__(self) -> "GateTicket":
        return self

    async def __aexit__(self, *exc_info) -> None:
        self.release()


class FetchGate:
    """
    Async admission gate combining a minimum interval, a concurrency bound,
    a token reservoir and pre-dispatch jitter.
    """

    def __init__(
        self,
        min_interval_s: float = 45.0,
        max_concurrent: int = 1,
        reservoir: int = 1,
        refill_amount: int = 1,
        refill_interval_s: float = 60.0,
        max_jitter_s: float = 10.0,
        clock: Optional[Clock] = None,
        rng: Optional[random.Random] = None,
    ):
        """
        Initialize the gate.

        Args:
            min_interval_s: Hard floor in seconds between two dispatch starts.
            max_concurrent: Maximum tickets outstanding at once.
            reservoir: Initial token count (and capacity, together with refill_amount).
            refill_amount: Tokens added every refill_interval_s.
            refill_interval_s: Seconds between reservoir refills.
            max_jitter_s: Upper bound of the uniform jitter slept before dispatch.
            clock: Time source (monotonic + sleep); system clock by default.
            rng: Random source for jitter.
        """
        if max_concurrent < 1:
            raise ValueError(f"max_concurrent must be >= 1, got {max_concurrent}")
        if refill_interval_s <= 0:
            raise ValueError(f"refill_interval_s must be > 0, got {refill_interval_s}")
        if refill_amount < 1:
            raise ValueError(f"refill_amount must be >= 1, got {refill_amount}")

        self.min_interval_s = max(0.0, float(min_interval_s))
        self.max_concurrent = int(max_concurrent)
        self.reservoir = int(reservoir)
        self.refill_amount = int(refill_amount)
        self.refill_interval_s = float(refill_interval_s)
        self.max_jitter_s = max(0.0, float(max_jitter_s))
        self._clock = clock or system_clock
        self._rng = rng or random.Random()

        self._capacity = max(self.reservoir, self.refill_amount)
        self._tokens = float(self.reservoir)
        self._last_refill = self._clock.monotonic()
        self._last_dispatch: Optional[float] = None
        self._active = 0

        # Both primitives are created lazily so the gate can be built outside a running loop
        self._admission_lock: Optional[asyncio.Lock] = None
        self._slots: Optional[asyncio.Semaphore] = None

        logger.info(
            f"Fetch gate initialized: min_interval={self.min_interval_s}s "
            f"max_concurrent={self.max_concurrent} reservoir={self.reservoir} "
            f"(+{self.refill_amount}/{self.refill_interval_s}s) jitter<= {self.max_jitter_s}s"
        )

    @property
    def active_count(self) -> int:
        return self._active

    @property
    def tokens_available(self) -> float:
        self._refill(self._clock.monotonic())
        return self._tokens

    def snapshot(self) -> RateBudget:
        return RateBudget(
            tokens_available=self.tokens_available,
            reservoir=self.reservoir,
            refill_amount=self.refill_amount,
            refill_interval_s=self.refill_interval_s,
            min_interval_s=self.min_interval_s,
            active_count=self._active,
            max_concurrent=self.max_concurrent,
        )

    async def admit(self) -> GateTicket:
        """
        Suspend until a dispatch is permitted.

        Returns:
            GateTicket to release once the dispatch completes.
        """
        if self._admission_lock is None:
            self._admission_lock = asyncio.Lock()
            self._slots = asyncio.Semaphore(self.max_concurrent)

        # The lock makes admission FIFO and keeps interval bookkeeping race-free
        async with self._admission_lock:
            await self._slots.acquire()
            token_taken = False
            try:
                waited = await self._wait_for_budget()
                self._tokens -= 1
                token_taken = True

                jitter = self._rng.uniform(0, self.max_jitter_s) if self.max_jitter_s else 0.0
                if jitter > 0:
                    await self._clock.sleep(jitter)

                self._last_dispatch = self._clock.monotonic()
            except BaseException:
                if token_taken:
                    self._tokens = min(float(self._capacity), self._tokens + 1)
                self._slots.release()
                raise

            self._active += 1
            logger.debug(
                f"Fetch gate: admitted after {waited + jitter:.3f}s "
                f"(tokens={self._tokens:.2f}, active={self._active})"
            )
            return GateTicket(self)

    async def _wait_for_budget(self) -> float:
        """Sleep until both the interval floor and the reservoir allow a dispatch."""
        waited = 0.0
        while True:
            now = self._clock.monotonic()
            self._refill(now)

            wait_time = 0.0
            if self._last_dispatch is not None:
                wait_time = max(wait_time, self._last_dispatch + self.min_interval_s - now)
            if self._tokens < 1:
                next_refill = self._last_refill + self.refill_interval_s
                wait_time = max(wait_time, next_refill - now)

            if wait_time <= 0:
                return waited

            logger.debug(f"Fetch gate: waiting {wait_time:.3f}s (tokens={self._tokens:.2f})")
            await self._clock.sleep(wait_time)
            waited += wait_time

    def _refill(self, now: float) -> None:
        elapsed = now - self._last_refill
        if elapsed < self.refill_interval_s:
            return
        periods = int(elapsed // self.refill_interval_s)
        self._tokens = min(float(self._capacity), self._tokens + periods * self.refill_amount)
        self._last_refill += periods * self.refill_interval_s

    def _release_slot(self) -> None:
        self._active = max(0, self._active - 1)
        if self._slots is not None:
            self._slots.release()
