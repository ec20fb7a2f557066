from __future__ import annotations

import json
import logging
import time
import xml.etree.ElementTree as ET
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Iterable

from .models import Failure, Outcome

log = logging.getLogger(__name__)


class TestState(str, Enum):
    __test__ = False

    WAITING = "waiting"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class Timer:
    def __init__(self) -> None:
        self._start = time.perf_counter()

    def elapsed_ms(self) -> float:
        return (time.perf_counter() - self._start) * 1000.0


@dataclass
class CaseResult:
    name: str
    position: int
    state: TestState = TestState.WAITING
    message: str = ""
    code: str | None = None
    duration_ms: float | None = None

    @property
    def terminal(self) -> bool:
        return self.state in {TestState.SUCCEEDED, TestState.FAILED}

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {
            "name": self.name,
            "position": self.position,
            "state": self.state.value,
            "message": self.message,
            "duration_ms": self.duration_ms,
        }
        if self.code is not None:
            out["code"] = self.code
        return out


Listener = Callable[[CaseResult], None]


def _describe(value: Any) -> str:
    if isinstance(value, str):
        return value
    return json.dumps(value, sort_keys=True, default=str)


class ResultReporter:
    """
    Sink for ``(name, Outcome)`` pairs.

    Holds the latest state per test case for display. It has no say in
    scheduling: listener failures are logged and never propagate back.
    """

    def __init__(self) -> None:
        self._results: dict[str, CaseResult] = {}
        self._listeners: list[Listener] = []

    def subscribe(self, listener: Listener) -> None:
        self._listeners.append(listener)

    def register(self, names: Iterable[str]) -> None:
        for position, name in enumerate(names):
            self._results[name] = CaseResult(name=name, position=position)

    def mark_running(self, name: str) -> None:
        result = self._results[name]
        result.state = TestState.RUNNING
        result.message = "test is running"
        self._notify(result)

    def record(self, name: str, outcome: Outcome) -> None:
        result = self._results[name]
        result.duration_ms = outcome.elapsed_ms
        if isinstance(outcome, Failure):
            result.state = TestState.FAILED
            result.message = outcome.reason
            result.code = outcome.code
        else:
            result.state = TestState.SUCCEEDED
            result.message = _describe(outcome.value)
        self._notify(result)

    def get(self, name: str) -> CaseResult:
        return self._results[name]

    def results(self) -> list[CaseResult]:
        return sorted(self._results.values(), key=lambda r: r.position)

    def _notify(self, result: CaseResult) -> None:
        for listener in self._listeners:
            try:
                listener(result)
            except Exception:
                log.exception("result listener failed for %s", result.name)


@dataclass(frozen=True)
class ConformanceReport:
    target: str
    contract_ref: str
    started_at_epoch_ms: int
    finished_at_epoch_ms: int
    results: list[CaseResult] = field(default_factory=list)

    def counts(self) -> dict[str, int]:
        out = {state.value: 0 for state in TestState}
        for r in self.results:
            out[r.state.value] += 1
        return out

    @property
    def ok(self) -> bool:
        return all(r.state == TestState.SUCCEEDED for r in self.results)

    def to_dict(self) -> dict[str, Any]:
        return {
            "target": self.target,
            "contract_ref": self.contract_ref,
            "started_at_epoch_ms": self.started_at_epoch_ms,
            "finished_at_epoch_ms": self.finished_at_epoch_ms,
            "counts": self.counts(),
            "ok": self.ok,
            "results": [r.to_dict() for r in self.results],
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), indent=2, sort_keys=False) + "\n"

    def to_text(self) -> str:
        lines = [
            f"target={self.target} contract={self.contract_ref}",
            f"counts={self.counts()} ok={self.ok}",
        ]
        for r in self.results:
            duration = "-" if r.duration_ms is None else f"{r.duration_ms:.1f}ms"
            lines.append(f"- {r.state.value.upper()} {r.name} ({duration}): {r.message}")
        return "\n".join(lines) + "\n"

    def to_junit_xml(self) -> str:
        return reports_to_junit_xml([self])


def _testsuite_element(report: ConformanceReport) -> ET.Element:
    counts = report.counts()
    total_s = max(report.finished_at_epoch_ms - report.started_at_epoch_ms, 0) / 1000.0
    suite = ET.Element(
        "testsuite",
        {
            "name": f"kernel-conformance.{report.target}",
            "tests": str(len(report.results)),
            "failures": str(counts[TestState.FAILED.value]),
            "skipped": str(counts[TestState.WAITING.value] + counts[TestState.RUNNING.value]),
            "time": f"{total_s:.3f}",
        },
    )
    for r in report.results:
        case = ET.SubElement(
            suite,
            "testcase",
            {
                "classname": "kernel-conformance",
                "name": r.name,
                "time": f"{(r.duration_ms or 0.0) / 1000.0:.3f}",
            },
        )
        if r.state == TestState.FAILED:
            failure = ET.SubElement(case, "failure", {"message": r.message, "type": r.code or "failure"})
            failure.text = r.message
        elif not r.terminal:
            ET.SubElement(case, "skipped", {"message": f"never settled ({r.state.value})"})
    return suite


def reports_to_junit_xml(reports: list[ConformanceReport]) -> str:
    root = ET.Element("testsuites")
    for report in reports:
        root.append(_testsuite_element(report))
    return ET.tostring(root, encoding="unicode")
