"""
AICore-5 System Simulator
==========================
Wires together:
  - the five-stage pipeline engine (pipeline.py)
  - the banked data memory (memory.py)
  - the MAC / ReLU / Conv2D / FIR / Pool units (ai_units.py)
  - the golden-model oracle (golden.py) and coverage tracker (cov_tracker.py)

A :class:`Simulator` owns every piece of state for one run; nothing is
shared between runs, so independent programs can be simulated side by side
or in worker processes with :func:`run_batch`.
"""

from __future__ import annotations
import logging
from concurrent.futures import ProcessPoolExecutor
from dataclasses import dataclass, field
from typing import Callable, Optional, Union

from ai_units import build_units
from config import SimConfig
from cov_tracker import CoverageTracker
from faults import Fault, FaultKind, HaltError, RunStatus
from golden import GoldenModelOracle
from memory import MemorySubsystem
from pipeline import PipelineEngine, CommitRecord

log = logging.getLogger(__name__)

ProgramImage = Union[bytes, bytearray, list]


def words_from_bytes(data: bytes) -> list[int]:
    """Little-endian 32-bit words; a short tail is zero-padded."""
    if len(data) % 4:
        data = bytes(data) + b"\x00" * (4 - len(data) % 4)
    return [int.from_bytes(data[i:i + 4], "little") for i in range(0, len(data), 4)]


# ---------------------------------------------------------------------------
#  Run report
# ---------------------------------------------------------------------------

@dataclass
class RunReport:
    status: RunStatus
    cycles: int
    retired: int
    cpi: float
    faults: dict = field(default_factory=dict)       # kind -> count
    correctness: list = field(default_factory=list)  # mismatch messages
    stalls: dict = field(default_factory=dict)
    flushes: int = 0
    bank_conflicts: int = 0
    prefetch_hits: int = 0
    coverage: dict = field(default_factory=dict)
    regs: list = field(default_factory=list)

    @property
    def passed(self) -> bool:
        """True only for a clean exit with every golden comparison matching."""
        return self.status == RunStatus.EXITED and not self.correctness

    def to_dict(self) -> dict:
        return {
            "status": self.status.value,
            "passed": self.passed,
            "cycles": self.cycles,
            "retired": self.retired,
            "cpi": self.cpi,
            "faults": dict(self.faults),
            "correctness": list(self.correctness),
            "stalls": dict(self.stalls),
            "flushes": self.flushes,
            "bank_conflicts": self.bank_conflicts,
            "prefetch_hits": self.prefetch_hits,
            "coverage": self.coverage,
            "regs": list(self.regs),
        }

    def __str__(self) -> str:
        verdict = "PASS" if self.passed else "FAIL"
        lines = [
            f"  {verdict}  status={self.status.value}  cycles={self.cycles}  "
            f"retired={self.retired}  CPI={self.cpi:.3f}",
            f"  flushes={self.flushes}  bank_conflicts={self.bank_conflicts}  "
            f"prefetch_hits={self.prefetch_hits}",
        ]
        if self.stalls:
            lines.append("  stalls: " + ", ".join(f"{k}={v}" for k, v in sorted(self.stalls.items())))
        if self.faults:
            lines.append("  faults: " + ", ".join(f"{k}={v}" for k, v in sorted(self.faults.items())))
        for msg in self.correctness[:10]:
            lines.append(f"    mismatch: {msg}")
        if len(self.correctness) > 10:
            lines.append(f"    ... {len(self.correctness) - 10} more")
        return "\n".join(lines)


# ---------------------------------------------------------------------------
#  Simulator
# ---------------------------------------------------------------------------

class Simulator:
    """One simulated run: program, configuration and all run state."""

    def __init__(self, config: Union[SimConfig, dict, None] = None,
                 program: Optional[ProgramImage] = None):
        if config is None:
            config = SimConfig()
        elif isinstance(config, dict):
            config = SimConfig.from_dict(config)
        self.config = config.validate()
        self.program: list[int] = []
        self._data: list[tuple[int, list[int]]] = []
        self._subscribers: dict[str, list[Callable]] = {"commit": [], "fault": [], "coverage": []}
        self._build()
        if program is not None:
            self.load_program(program)

    def _build(self):
        cfg = self.config
        self.memory = MemorySubsystem(cfg)
        self.units = build_units(cfg)
        self.coverage = CoverageTracker()
        self.oracle = GoldenModelOracle(cfg, self.program) if cfg.check_golden else None
        self.engine = PipelineEngine(cfg, self.memory, self.units, self.program,
                                     coverage=self.coverage, oracle=self.oracle)
        for addr, words in self._data:
            self._preload(addr, words)
        self.engine.on_commit.append(self._emit_commit)
        self.engine.on_fault.append(self._emit_fault)
        self.coverage.subscribe(self._emit_coverage)
        self._finalized = False

    def reset(self):
        """Fresh run of the same program, data and configuration."""
        self._build()

    # -- Loading --

    def load_program(self, image: ProgramImage, pc: Optional[int] = None):
        """Load a program image (bytes, or a list of 32-bit words) and reset."""
        if isinstance(image, (bytes, bytearray)):
            words = words_from_bytes(image)
        else:
            words = [int(w) & 0xFFFFFFFF for w in image]
        self.program = words
        if pc is not None:
            self.config = self.config.replace(start_pc=pc)
        self._build()
        log.debug("loaded %d words at pc %#x", len(words), self.config.start_pc)

    def load_program_file(self, path: str):
        """Load a raw binary image, or assemble ``.s``/``.asm`` source."""
        if path.endswith((".s", ".asm")):
            from asm import assemble
            with open(path) as f:
                self.load_program(assemble(f.read()))
            return
        with open(path, "rb") as f:
            self.load_program(f.read())

    def load_data(self, addr: int, words):
        """Preload data memory (and the oracle's copy) starting at *addr*."""
        words = [int(w) for w in words]
        self._data.append((addr, words))
        self._preload(addr, words)

    def _preload(self, addr: int, words: list[int]):
        self.memory.load_words(addr, words)
        if self.oracle is not None:
            self.oracle.load_data(addr, words)

    # -- Execution --

    @property
    def status(self) -> RunStatus:
        return self.engine.status

    @property
    def cycle(self) -> int:
        return self.engine.cycle

    def tick(self):
        """Advance one clock cycle.  Raises HaltError once the run is over."""
        self._tick(self.config.max_cycles)

    def _tick(self, budget: int):
        if self.engine.status.finished:
            raise HaltError(f"Run already finished ({self.engine.status.value})")
        if self.engine.cycle >= budget:
            self.engine.timeout()
        else:
            self.engine.tick()
        if self.engine.status.finished:
            self._finalize()

    def run(self, max_cycles: Optional[int] = None) -> RunReport:
        """Tick until the program exits, faults or runs out of cycles.

        *max_cycles* replaces the configured cycle budget for this call.
        """
        budget = self.config.max_cycles if max_cycles is None else max_cycles
        while not self.engine.status.finished:
            self._tick(budget)
        return self.report()

    def _finalize(self):
        if self._finalized:
            return
        self._finalized = True
        if self.oracle is not None and self.engine.status != RunStatus.TIMEOUT:
            pc = self.engine.pc or 0
            for msg in self.oracle.compare_final(self.engine.regfile.snapshot(),
                                                 self.memory.snapshot()):
                self.engine.record_fault(FaultKind.CORRECTNESS, pc, msg)
        log.info("run finished: %s after %d cycles, %d retired",
                 self.engine.status.value, self.engine.cycle, self.engine.retired)

    # -- Inspection --

    def read_reg(self, idx: int) -> int:
        return self.engine.regfile.read(idx)

    def read_regs(self) -> list[int]:
        return self.engine.regfile.snapshot()

    def read_mem(self, addr: int, count: Optional[int] = None):
        if count is None:
            return self.memory.peek(addr)
        return [self.memory.peek(addr + i) for i in range(count)]

    @property
    def faults(self) -> list[Fault]:
        return list(self.engine.faults)

    @property
    def correctness_faults(self) -> list[Fault]:
        return [f for f in self.engine.faults if f.kind == FaultKind.CORRECTNESS]

    def subscribe(self, event: str, fn: Callable):
        """Register a callback for ``commit``, ``fault`` or ``coverage`` events."""
        if event not in self._subscribers:
            raise ValueError(f"Unknown event {event!r}; expected one of {sorted(self._subscribers)}")
        self._subscribers[event].append(fn)

    def _emit_commit(self, rec: CommitRecord):
        for fn in self._subscribers["commit"]:
            fn(rec)

    def _emit_fault(self, fault: Fault):
        if fault.kind == FaultKind.CORRECTNESS:
            log.error("%s", fault)
        elif fault.terminal:
            log.warning("%s", fault)
        else:
            log.debug("%s", fault)
        for fn in self._subscribers["fault"]:
            fn(fault)

    def _emit_coverage(self, name: str, cycle: int):
        for fn in self._subscribers["coverage"]:
            fn(name, cycle)

    def report(self) -> RunReport:
        stats = self.engine.stats()
        kinds: dict[str, int] = {}
        for f in self.engine.faults:
            kinds[f.kind.value] = kinds.get(f.kind.value, 0) + 1
        return RunReport(
            status=self.engine.status,
            cycles=stats["cycles"],
            retired=stats["retired"],
            cpi=stats["cpi"],
            faults=kinds,
            correctness=[f.message for f in self.correctness_faults],
            stalls=stats["stalls"],
            flushes=stats["flushes"],
            bank_conflicts=stats["bank_conflicts"],
            prefetch_hits=stats["prefetch_hits"],
            coverage=self.coverage.as_dict(),
            regs=self.read_regs(),
        )

    def unit_state(self) -> dict:
        return {kind.value: unit.snapshot() for kind, unit in self.units.items()}

    def dump_state(self, as_dict: bool = False):
        """Registers, pipeline occupancy, unit state and memory summary."""
        if as_dict:
            return {
                "cycle": self.engine.cycle,
                "status": self.engine.status.value,
                "pc": self.engine.pc,
                "regs": self.read_regs(),
                "pipeline": [s.label() for s in self.engine.slots],
                "units": self.unit_state(),
                "memory": self.memory.nonzero(),
                "banks": self.memory.bank_stats(),
            }
        lines = ["=== Registers ===", self.engine.regfile.dump(), "",
                 "=== Pipeline ===", self.engine.pipeline_view(), "",
                 "=== Units ==="]
        for kind, state in self.unit_state().items():
            cells = " ".join(f"{k}={v}" for k, v in state.items())
            lines.append(f"  {kind:<7s} {cells}")
        lines.append("")
        lines.append("=== Memory banks ===")
        for b in self.memory.bank_stats():
            lines.append(f"  bank {b['bank']}: accesses={b['accesses']} conflicts={b['conflicts']}")
        nz = self.memory.nonzero()
        lines.append(f"  nonzero words: {len(nz)}")
        return "\n".join(lines)

    def trace_text(self, start: int = 0, count: Optional[int] = None) -> str:
        entries = self.engine.trace[start:] if count is None else self.engine.trace[start:start + count]
        header = f"{'cycle':>6s} | " + " | ".join(f"{s:<22s}" for s in ("IF", "ID", "EX", "MEM", "WB"))
        return "\n".join([header] + [str(e) for e in entries])

    def coverage_report(self, as_dict: bool = False):
        return self.coverage.as_dict() if as_dict else self.coverage.report()


# ---------------------------------------------------------------------------
#  Batch runs
# ---------------------------------------------------------------------------

def _run_job(job: dict) -> RunReport:
    sim = Simulator(job["config"])
    sim.load_program(job["program"])
    for addr, words in job.get("data", ()):
        sim.load_data(addr, words)
    return sim.run()


def run_batch(programs, config: Union[SimConfig, dict, None] = None,
              data=None, workers: Optional[int] = None) -> list[RunReport]:
    """Run independent programs in worker processes, one Simulator each.

    *programs* is a list of images; *data* an optional matching list of
    ``[(addr, words), ...]`` preloads.  Reports come back in input order.
    """
    if config is None:
        config = SimConfig()
    cfg = config if isinstance(config, dict) else config.to_dict()
    jobs = [{"config": cfg, "program": list(p) if not isinstance(p, (bytes, bytearray)) else bytes(p),
             "data": (data[i] if data else ())}
            for i, p in enumerate(programs)]
    if workers == 1 or len(jobs) <= 1:
        return [_run_job(j) for j in jobs]
    with ProcessPoolExecutor(max_workers=workers) as pool:
        return list(pool.map(_run_job, jobs))
