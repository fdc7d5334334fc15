"""
Sweep Report
Per-run summary returned by periodic entry points
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List


@dataclass
class SweepReport:
    """Counts of items processed by one sweep; per-item failures never abort the run"""
    name: str
    started_at: datetime
    examined: int = 0
    succeeded: int = 0
    failed: int = 0
    skipped: int = 0
    errors: List[str] = field(default_factory=list)
    counters: Dict[str, int] = field(default_factory=dict)

    def record_failure(self, item: str, error: Exception):
        self.failed += 1
        self.errors.append(f"{item}: {type(error).__name__}: {error}")

    def bump(self, counter: str, amount: int = 1):
        self.counters[counter] = self.counters.get(counter, 0) + amount

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "started_at": self.started_at.isoformat(),
            "examined": self.examined,
            "succeeded": self.succeeded,
            "failed": self.failed,
            "skipped": self.skipped,
            "errors": self.errors,
            "counters": dict(self.counters),
        }
