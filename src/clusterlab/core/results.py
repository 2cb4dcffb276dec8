from __future__ import annotations

import threading
from dataclasses import dataclass, field
from typing import Any

from .model import ClusterState, FatalError, PhaseResult, PhaseStatus


@dataclass(slots=True)
class RunReport:
    run: str
    profile: str
    outcome: ClusterState = ClusterState.UNINITIALIZED
    expected: ClusterState = ClusterState.CLUSTER_READY
    results: list[PhaseResult] = field(default_factory=list)
    errors: list[FatalError] = field(default_factory=list)
    diagnostics: list[str] = field(default_factory=list)
    metadata: dict[str, Any] = field(default_factory=dict)
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    def add(self, result: PhaseResult) -> None:
        with self._lock:
            self.results.append(result)

    def add_error(self, error: FatalError) -> None:
        with self._lock:
            self.errors.append(error)

    def log(self, line: str) -> None:
        with self._lock:
            self.diagnostics.append(line)

    def for_node(self, node: str) -> list[PhaseResult]:
        return [r for r in self.results if r.node == node]

    def for_phase(self, phase: str) -> list[PhaseResult]:
        return [r for r in self.results if r.phase == phase]

    def counts_by_status(self) -> dict[str, int]:
        counts = {status.value: 0 for status in PhaseStatus}
        for r in self.results:
            counts[r.status.value] += 1
        return counts

    def counts_by_phase(self) -> dict[str, int]:
        out: dict[str, int] = {}
        for r in self.results:
            out[r.phase] = out.get(r.phase, 0) + 1
        return out

    @property
    def exit_code(self) -> int:
        return 0 if self.outcome == ClusterState.CLUSTER_READY else 1

    def to_dict(self) -> dict[str, Any]:
        return {
            "run": self.run,
            "profile": self.profile,
            "metadata": self.metadata,
            "summary": {
                "outcome": self.outcome.value,
                "expected_outcome": self.expected.value,
                "expectation_met": self.outcome == self.expected,
                "counts_by_status": self.counts_by_status(),
                "counts_by_phase": self.counts_by_phase(),
                "exit_code": self.exit_code,
            },
            "results": [r.to_dict() for r in self.results],
            "errors": [e.to_dict() for e in self.errors],
            "diagnostics": list(self.diagnostics),
        }
