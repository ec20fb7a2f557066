from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Sequence

from .errors import KernelError, Stall
from .models import Failure, Outcome, Success
from .report import ResultReporter, Timer

log = logging.getLogger(__name__)

Check = Callable[[], Awaitable[Any]]


@dataclass(frozen=True)
class TestCase:
    """A named check producing exactly one Outcome when run."""

    __test__ = False

    name: str
    check: Check

    async def run(self) -> Outcome:
        timer = Timer()
        try:
            value = await self.check()
        except KernelError as exc:
            return Failure(reason=str(exc), code=exc.code, elapsed_ms=timer.elapsed_ms())
        except Exception as exc:
            log.exception("test case %s raised", self.name)
            return Failure(
                reason=f"{exc.__class__.__name__}: {exc}",
                code="internal_error",
                elapsed_ms=timer.elapsed_ms(),
            )
        return Success(value=value, elapsed_ms=timer.elapsed_ms())


class TurnCounter:
    """
    Process-wide queue position.

    One writer (the settlement of the current case) advances it; any number of
    readers wait on its *value*, so a reader that missed a transition still
    starts as soon as the counter has reached its position.
    """

    def __init__(self) -> None:
        self._turn = 0
        self._changed = asyncio.Condition()

    @property
    def value(self) -> int:
        return self._turn

    async def wait_for(self, position: int) -> int:
        async with self._changed:
            await self._changed.wait_for(lambda: self._turn >= position)
            return self._turn

    async def advance(self, expected: int) -> int:
        async with self._changed:
            if self._turn != expected:
                raise RuntimeError(f"turn is {self._turn}, refusing to advance from {expected}")
            self._turn += 1
            self._changed.notify_all()
            return self._turn


class SequentialScheduler:
    """
    Runs test cases strictly one at a time, in registration order.

    Case ``k`` is admitted only after case ``k-1`` has produced its Outcome;
    failures never stop the queue. Without ``stall_timeout_s`` a case that
    never settles stalls every case behind it. With it, such a case is
    recorded as a ``stall`` Failure and the queue moves on.
    """

    def __init__(
        self,
        cases: Sequence[TestCase],
        *,
        reporter: ResultReporter | None = None,
        stall_timeout_s: float | None = None,
    ) -> None:
        names = [case.name for case in cases]
        duplicates = sorted({name for name in names if names.count(name) > 1})
        if duplicates:
            raise ValueError(f"Duplicate test case names: {', '.join(duplicates)}")
        if stall_timeout_s is not None and stall_timeout_s <= 0:
            raise ValueError("stall_timeout_s must be positive")
        self._cases = tuple(cases)
        self._reporter = reporter or ResultReporter()
        self._stall_timeout_s = stall_timeout_s
        self._outcomes: list[tuple[str, Outcome]] = []
        self.turn = TurnCounter()
        self.in_flight = 0
        self.max_in_flight = 0
        self._reporter.register(names)

    @property
    def reporter(self) -> ResultReporter:
        return self._reporter

    @property
    def outcomes(self) -> list[tuple[str, Outcome]]:
        return list(self._outcomes)

    async def run(self) -> list[tuple[str, Outcome]]:
        drivers = [asyncio.ensure_future(self._drive(position, case)) for position, case in enumerate(self._cases)]
        try:
            await asyncio.gather(*drivers)
        finally:
            for driver in drivers:
                if not driver.done():
                    driver.cancel()
        return self.outcomes

    async def _drive(self, position: int, case: TestCase) -> None:
        await self.turn.wait_for(position)
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        log.info("[%d/%d] %s running", position + 1, len(self._cases), case.name)
        self._reporter.mark_running(case.name)
        try:
            outcome = await self._settle(case)
        finally:
            self.in_flight -= 1
        self._outcomes.append((case.name, outcome))
        self._reporter.record(case.name, outcome)
        if outcome.ok:
            log.info("[%d/%d] %s succeeded in %.1fms", position + 1, len(self._cases), case.name, outcome.elapsed_ms)
        else:
            log.warning("[%d/%d] %s failed: %s", position + 1, len(self._cases), case.name, outcome.reason)
        await self.turn.advance(position)

    async def _settle(self, case: TestCase) -> Outcome:
        if self._stall_timeout_s is None:
            return await case.run()
        timer = Timer()
        try:
            return await asyncio.wait_for(case.run(), timeout=self._stall_timeout_s)
        except asyncio.TimeoutError:
            error = Stall(f"{case.name} did not settle within {self._stall_timeout_s:g}s")
            return Failure(reason=str(error), code=error.code, elapsed_ms=timer.elapsed_ms())
