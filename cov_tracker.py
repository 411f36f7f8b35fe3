"""
Coverage Tracker
=================
Counts which operation kinds were committed and which hazard paths were
exercised during a run.  The pipeline reports into the tracker; it never
influences timing.  Counters only ever grow.

Subscribers are called as ``fn(name, cycle)`` on every hit, like the
``on_output`` style hooks on the run object.
"""

from __future__ import annotations
from collections import Counter
from typing import Callable, Iterable, Optional

from hazard import HAZARD_PATHS
from isa import OpKind

BRANCH_FLUSH = "branch_flush"
SATURATION = "saturation"
PREFETCH_HIT = "prefetch_hit"

PATHS = HAZARD_PATHS + (BRANCH_FLUSH, SATURATION, PREFETCH_HIT)

# Kinds a complete stimulus is expected to commit
KINDS = tuple(k.value for k in OpKind if k not in (OpKind.SYSTEM, OpKind.ILLEGAL))
ALL_KINDS = tuple(k.value for k in OpKind)


class CoverageTracker:
    def __init__(self, goals: Optional[Iterable[str]] = None):
        self.kinds: Counter = Counter({k: 0 for k in KINDS})
        self.paths: Counter = Counter({p: 0 for p in PATHS})
        self.first_hit: dict[str, int] = {}
        self.goals = tuple(goals) if goals is not None else KINDS + PATHS
        for goal in self.goals:
            _check_name(goal)
        self.subscribers: list[Callable[[str, int], None]] = []

    def subscribe(self, fn: Callable[[str, int], None]):
        self.subscribers.append(fn)

    def hit(self, name: str, cycle: int = 0, count: int = 1):
        _check_name(name)
        if name in PATHS:
            self.paths[name] += count
        else:
            self.kinds[name] += count
        self.first_hit.setdefault(name, cycle)
        for fn in self.subscribers:
            fn(name, cycle)

    def record_commit(self, rec):
        """Count one retired instruction and every forwarding path it used."""
        self.hit(rec.ins.kind.value, rec.cycle)
        for path in rec.paths:
            self.hit(path, rec.cycle)

    def count(self, name: str) -> int:
        return self.paths.get(name, self.kinds.get(name, 0))

    # -- Completeness --

    def missing(self) -> list[str]:
        return [g for g in self.goals if self.count(g) == 0]

    def is_complete(self) -> bool:
        return not self.missing()

    def merge(self, other: "CoverageTracker"):
        """Fold another run's counters into this one (batch totals)."""
        self.kinds.update(other.kinds)
        self.paths.update(other.paths)
        for name, cycle in other.first_hit.items():
            self.first_hit.setdefault(name, cycle)

    # -- Reporting --

    def as_dict(self) -> dict:
        return {
            "kinds": dict(self.kinds),
            "paths": dict(self.paths),
            "missing": self.missing(),
            "complete": self.is_complete(),
        }

    def report(self) -> str:
        lines = ["  Coverage", "  " + "-" * 38]
        for title, table in (("kind", self.kinds), ("path", self.paths)):
            for name, n in table.items():
                mark = " " if n else "!"
                first = self.first_hit.get(name)
                at = f"@{first}" if first is not None and n else ""
                lines.append(f"  {mark} {title:<4s} {name:<16s} {n:>7d} {at}")
        missing = self.missing()
        lines.append("  " + "-" * 38)
        lines.append("  complete" if not missing else f"  missing: {', '.join(missing)}")
        return "\n".join(lines)


def _check_name(name: str):
    if name not in PATHS and name not in ALL_KINDS:
        raise ValueError(f"Unknown coverage point: {name!r}")
