from __future__ import annotations

import logging
import time
from dataclasses import dataclass

from . import CONTRACT_REF
from .client import KernelClient
from .config import SuiteSettings
from .report import ConformanceReport, Listener, ResultReporter
from .scheduler import SequentialScheduler
from .suite import KernelSuite

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class RunnerOptions:
    stall_timeout_s: float | None = None
    connect_timeout_s: float = 10.0


def _epoch_ms() -> int:
    return int(time.time() * 1000)


class ConformanceRunner:
    def __init__(
        self,
        *,
        client: KernelClient,
        settings: SuiteSettings,
        options: RunnerOptions,
        target: str,
        listeners: list[Listener] | None = None,
    ) -> None:
        self._client = client
        self._settings = settings
        self._options = options
        self._target = target
        self._listeners = list(listeners or [])

    async def run(self) -> ConformanceReport:
        started = _epoch_ms()
        reporter = ResultReporter()
        for listener in self._listeners:
            reporter.subscribe(listener)
        scheduler = SequentialScheduler(
            KernelSuite(self._client, self._settings).cases(),
            reporter=reporter,
            stall_timeout_s=self._options.stall_timeout_s,
        )
        log.info("running %d conformance checks against %s", len(reporter.results()), self._target)
        try:
            await scheduler.run()
        finally:
            await self._client.close()
        return ConformanceReport(
            target=self._target,
            contract_ref=CONTRACT_REF,
            started_at_epoch_ms=started,
            finished_at_epoch_ms=_epoch_ms(),
            results=reporter.results(),
        )
