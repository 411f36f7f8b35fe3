"""
AICore-5 Pipeline Engine
=========================
A cycle-accurate model of the five-stage in-order pipeline

    IF -> ID -> EX -> MEM -> WB

Each call to :meth:`PipelineEngine.tick` evaluates every stage against the
slots committed at the end of the previous tick, oldest stage first so that
stall signals propagate upstream within the tick, and then commits all new
slots and register writes at once.  No stage ever observes another stage's
partial update.

Timing rules:
  - ALU, branch and address generation take one Execute tick.
  - AI operations hold Execute for the unit's fixed latency.
  - Loads/stores hold Memory for the bank latency (1 tick on a prefetch
    hit); a busy bank stalls Memory and counts as a bank conflict.
  - Branches resolve in Execute with static not-taken prediction; a taken
    branch or jump flushes IF and ID (two bubbles).
  - ``ecall``/``ebreak`` and illegal instructions stop fetch when they enter
    Execute and end the run when they reach Writeback, so every older
    instruction commits and no younger one does.
"""

from __future__ import annotations
from collections import Counter
from dataclasses import dataclass, field
from typing import Callable, Optional

from ai_units import AIUnit
from config import SimConfig
from cov_tracker import CoverageTracker, BRANCH_FLUSH, SATURATION, PREFETCH_HIT
from faults import Fault, FaultKind, HaltError, RunStatus
from hazard import (
    HazardUnit, IF, ID, EX, MEM, WB, STAGE_NAMES,
    STALL_MEM_ORDER, STALL_LOAD_USE, BANK_CONFLICT,
)
from isa import Instruction, OpKind, AI_KINDS, NUM_REGS, decode, s32, u32
from memory import MemorySubsystem


# ---------------------------------------------------------------------------
#  Architectural register file
# ---------------------------------------------------------------------------

class RegisterFile:
    """32 signed 32-bit registers; x0 is hard-wired to zero."""

    def __init__(self):
        self.regs: list[int] = [0] * NUM_REGS

    def read(self, idx: int) -> int:
        return 0 if idx == 0 else self.regs[idx]

    def write(self, idx: int, value: int):
        if idx:
            self.regs[idx] = s32(value)

    def snapshot(self) -> list[int]:
        return list(self.regs)

    def dump(self) -> str:
        lines = []
        for row in range(0, NUM_REGS, 4):
            cells = "  ".join(f"x{r:<2d}={u32(self.regs[r]):08x}" for r in range(row, row + 4))
            lines.append(f"  {cells}")
        return "\n".join(lines)


# ---------------------------------------------------------------------------
#  Pipeline slot
# ---------------------------------------------------------------------------

@dataclass
class PipelineSlot:
    pc: int = 0
    word: int = 0
    ins: Optional[Instruction] = None
    operands: dict = field(default_factory=dict)
    sources: dict = field(default_factory=dict)   # operand -> forwarding path
    result: Optional[int] = None
    valid: bool = False
    stalled: bool = False
    started: bool = False
    done: bool = False
    remaining: int = 0
    mem_addr: Optional[int] = None
    store_value: Optional[int] = None
    taken: bool = False
    target: Optional[int] = None
    saturated: bool = False
    seq: int = 0

    @classmethod
    def bubble(cls) -> "PipelineSlot":
        return cls()

    def clone(self) -> "PipelineSlot":
        s = PipelineSlot(**self.__dict__)
        s.operands = dict(self.operands)
        s.sources = dict(self.sources)
        return s

    def enter(self) -> "PipelineSlot":
        """Copy for the next stage with per-stage progress cleared."""
        s = self.clone()
        s.stalled = False
        s.started = False
        s.done = False
        s.remaining = 0
        return s

    @property
    def kind(self) -> Optional[OpKind]:
        return self.ins.kind if self.ins is not None else None

    def label(self) -> str:
        if not self.valid:
            return "-"
        text = str(self.ins) if self.ins is not None else f"@{self.pc:#x}"
        return text + (" *" if self.stalled else "")


@dataclass(frozen=True)
class CommitRecord:
    """One retired instruction as seen by the oracle and subscribers."""
    cycle: int
    seq: int
    pc: int
    ins: Instruction
    rd: int
    value: Optional[int]
    store: Optional[tuple[int, int]]
    taken: bool
    target: Optional[int]
    saturated: bool
    paths: tuple[str, ...]


@dataclass(frozen=True)
class TraceEntry:
    cycle: int
    stages: tuple[str, ...]
    stalls: tuple[str, ...]
    committed: Optional[int]
    flushed: bool

    def __str__(self) -> str:
        cells = " | ".join(f"{s[:22]:<22s}" for s in self.stages)
        extra = []
        if self.committed is not None:
            extra.append(f"commit {self.committed:#x}")
        if self.flushed:
            extra.append("flush")
        extra.extend(self.stalls)
        return f"{self.cycle:>6d} | {cells} | {', '.join(extra)}"


# ---------------------------------------------------------------------------
#  Engine
# ---------------------------------------------------------------------------

class PipelineEngine:
    """Owns the five slots, the register file and the fetch PC."""

    def __init__(self, config: SimConfig, memory: MemorySubsystem,
                 units: dict[OpKind, AIUnit], program: list[int] = (),
                 coverage: Optional[CoverageTracker] = None,
                 oracle=None):
        self.config = config
        self.memory = memory
        self.units = units
        self.coverage = coverage if coverage is not None else CoverageTracker()
        self.oracle = oracle
        self.hazard = HazardUnit(frozenset(k for k, u in units.items() if not u.pipelined))
        self.regfile = RegisterFile()
        self.program: list[int] = list(program)

        self.cycle = 0
        self.status = RunStatus.READY
        self.faults: list[Fault] = []
        self.trace: list[TraceEntry] = []
        self.retired = 0
        self.fetched = 0
        self.flushes = 0
        self.stalls: Counter = Counter()
        self.fetch_stopped = False
        self.slots: list[PipelineSlot] = [PipelineSlot.bubble() for _ in STAGE_NAMES]
        self.reset(config.start_pc)

        # Callbacks
        self.on_commit: list[Callable[[CommitRecord], None]] = []
        self.on_fault: list[Callable[[Fault], None]] = []

    # -- Setup --

    def reset(self, pc: int = 0):
        self.regfile = RegisterFile()
        self.cycle = 0
        self.status = RunStatus.READY
        self.faults = []
        self.trace = []
        self.retired = 0
        self.fetched = 0
        self.flushes = 0
        self.stalls = Counter()
        self.fetch_stopped = False
        self._seq = 0
        self.slots = [PipelineSlot.bubble() for _ in STAGE_NAMES]
        self.slots[IF] = self._fetch_slot(pc)

    def load_program(self, words: list[int], pc: Optional[int] = None):
        self.program = [u32(w) for w in words]
        self.reset(self.config.start_pc if pc is None else pc)

    @property
    def pc(self) -> Optional[int]:
        """Address the fetch stage is working on (None once fetch stopped)."""
        return self.slots[IF].pc if self.slots[IF].valid else None

    def fetch_word(self, pc: int) -> int:
        if pc < 0 or pc % 4:
            return 0
        i = pc // 4
        return self.program[i] if i < len(self.program) else 0

    def _fetch_slot(self, pc: int) -> PipelineSlot:
        self._seq += 1
        return PipelineSlot(pc=pc, valid=True, seq=self._seq)

    # -- Fault channel --

    def record_fault(self, kind: FaultKind, pc: int, message: str):
        fault = Fault(kind, self.cycle, pc, message)
        self.faults.append(fault)
        for cb in self.on_fault:
            cb(fault)

    # =====================================================================
    #  TICK
    # =====================================================================

    def tick(self):
        """Advance the pipeline by one clock cycle."""
        if self.status.finished:
            raise HaltError(f"Run already finished ({self.status.value})")
        self.status = RunStatus.RUNNING
        cur = self.slots
        nxt: list[PipelineSlot] = [PipelineSlot.bubble() for _ in STAGE_NAMES]
        stalls: list[str] = []
        pending_write = None
        commit: Optional[CommitRecord] = None
        end_status = None
        flushed = False

        # ---- WB ----
        wb = cur[WB]
        if wb.valid:
            commit = self._commit_record(wb)
            if wb.ins.writes_rd:
                pending_write = (wb.ins.rd, wb.result)
            if wb.kind == OpKind.SYSTEM:
                end_status = RunStatus.EXITED
            elif wb.kind == OpKind.ILLEGAL:
                end_status = RunStatus.ILLEGAL_INSTRUCTION

        # ---- MEM ----
        mem = cur[MEM].clone()
        mem_done = True
        if mem.valid:
            mem_done = self._stage_mem(mem, stalls)
            if mem_done:
                nxt[WB] = mem.enter()
            else:
                nxt[MEM] = mem
        mem_free = mem_done

        # ---- EX ----
        ex = cur[EX].clone()
        ex_leaves = False
        redirect = None
        squash = False
        if ex.valid:
            ex_done = self._stage_ex(ex, cur, stalls)
            if ex.started and not cur[EX].started:
                if ex.kind == OpKind.BRANCH and ex.taken:
                    redirect = ex.target
                elif ex.kind in (OpKind.SYSTEM, OpKind.ILLEGAL):
                    squash = True
            ex_leaves = ex_done and mem_free
            if ex_leaves:
                nxt[MEM] = ex.enter()
            else:
                ex.stalled = True
                nxt[EX] = ex
        ex_free = not ex.valid or ex_leaves

        # ---- ID ----
        idd = cur[ID].clone()
        id_leaves = False
        if redirect is not None or squash:
            if idd.valid or cur[IF].valid:
                flushed = True
        elif idd.valid:
            if idd.ins is None:
                idd.ins = decode(idd.word)
            idd.operands, idd.sources = self.hazard.read_operands(idd.ins, self.regfile, wb)
            reason = self.hazard.decode_stall(idd.ins, cur[EX], cur[MEM], mem_done)
            if ex_free and reason is None:
                nxt[EX] = idd.enter()
                id_leaves = True
            else:
                if ex_free and reason:
                    stalls.append(reason)
                idd.stalled = True
                nxt[ID] = idd
        id_free = not idd.valid or id_leaves

        # ---- IF ----
        fetch = cur[IF].clone()
        if redirect is not None:
            nxt[IF] = self._fetch_slot(redirect)
            self.flushes += 1
            self.coverage.hit(BRANCH_FLUSH, self.cycle)
        elif squash:
            self.fetch_stopped = True
        elif fetch.valid and not self.fetch_stopped:
            if id_free:
                fetch.word = self.fetch_word(fetch.pc)
                nxt[ID] = fetch.enter()
                self.fetched += 1
                nxt[IF] = self._fetch_slot(fetch.pc + 4)
            else:
                fetch.stalled = True
                nxt[IF] = fetch

        # ---- Commit point ----
        if self.config.trace:
            self.trace.append(TraceEntry(
                self.cycle, tuple(s.label() for s in cur), tuple(stalls),
                commit.pc if commit else None, flushed))
        for reason in stalls:
            self.stalls[reason] += 1
            self.coverage.hit(reason, self.cycle)
        if pending_write is not None:
            self.regfile.write(*pending_write)
        self.slots = nxt
        self.cycle += 1
        if commit is not None:
            self._retire(commit)
        if end_status is not None:
            self.status = end_status
            self.slots = [PipelineSlot.bubble() for _ in STAGE_NAMES]

    # -- Stage helpers --

    def _stage_mem(self, mem: PipelineSlot, stalls: list[str]) -> bool:
        """Advance a Memory-stage slot; returns True when it may leave."""
        if mem.kind not in (OpKind.LOAD, OpKind.STORE):
            mem.done = True
            return True
        if not mem.started:
            hits = self.memory.prefetch_hits
            ticks = self.memory.begin_access(mem.mem_addr, self.cycle,
                                             mem.kind == OpKind.LOAD)
            if self.memory.prefetch_hits != hits:
                self.coverage.hit(PREFETCH_HIT, self.cycle)
            if ticks is None:
                mem.stalled = True
                self._bank_conflict(mem, [self.memory.bank_of(mem.mem_addr)], stalls)
                return False
            mem.started = True
            mem.remaining = ticks
        mem.remaining -= 1
        if mem.remaining > 0:
            mem.stalled = True
            return False
        if mem.kind == OpKind.LOAD:
            mem.result = self.memory.complete_load(mem.mem_addr)
        else:
            self.memory.complete_store(mem.mem_addr, mem.store_value)
            addr = self.memory.wrap(mem.mem_addr)
            for unit in self.units.values():
                unit.snoop_store(addr)
        mem.done = True
        return True

    def _stage_ex(self, ex: PipelineSlot, cur: list[PipelineSlot],
                  stalls: list[str]) -> bool:
        """Advance an Execute-stage slot; returns True when its result is valid."""
        if not ex.started:
            ops, srcs, ready = self.hazard.forward(ex.ins, ex.operands, ex.sources,
                                                   cur[MEM], cur[WB])
            ex.operands, ex.sources = ops, srcs
            if not ready:
                stalls.append(STALL_LOAD_USE)
                return False
            if not self._issue(ex, cur, stalls):
                return False
            ex.started = True
        if ex.remaining > 0:
            ex.remaining -= 1
        ex.done = ex.remaining == 0
        return ex.done

    def _issue(self, ex: PipelineSlot, cur: list[PipelineSlot],
               stalls: list[str]) -> bool:
        """Dispatch on the decoded kind.  False means retry next tick."""
        ins, ops = ex.ins, ex.operands
        ex.remaining = 1
        kind = ins.kind

        if kind == OpKind.ALU:
            ex.result = alu(ins, ops, ex.pc)
        elif kind == OpKind.BRANCH:
            ex.taken, ex.target = branch_outcome(ins, ops, ex.pc)
            if ins.writes_rd:
                ex.result = s32(ex.pc + 4)
        elif kind == OpKind.LOAD:
            ex.mem_addr = ops["rs1"] + ins.imm
        elif kind == OpKind.STORE:
            ex.mem_addr = ops["rs1"] + ins.imm
            ex.store_value = ops["rs2"]
        elif kind in AI_KINDS:
            unit = self.units[kind]
            addrs = unit.memory_reads(ins, ops)
            if addrs:
                if self.hazard.memory_order_stall(cur[MEM]):
                    stalls.append(STALL_MEM_ORDER)
                    return False
                latency = unit.latency(ins)
                blocked = self.memory.reserve_burst(addrs, self.cycle, latency)
                if blocked:
                    self._bank_conflict(ex, blocked, stalls)
                    return False
            words = self.memory.read_block(addrs)
            res = unit.execute(ins, ops, words)
            ex.result = res.value
            ex.saturated = res.saturated
            ex.remaining = unit.latency(ins)
        # SYSTEM / ILLEGAL: nothing to compute
        ex.stalled = False
        return True

    def _bank_conflict(self, slot: PipelineSlot, banks: list[int], stalls: list[str]):
        stalls.append(BANK_CONFLICT)
        self.record_fault(FaultKind.BANK_CONFLICT, slot.pc,
                          f"{slot.ins} waits for bank {', '.join(map(str, banks))}")

    # -- Retirement --

    def _commit_record(self, wb: PipelineSlot) -> CommitRecord:
        ins = wb.ins
        store = None
        if ins.kind == OpKind.STORE:
            store = (self.memory.wrap(wb.mem_addr), s32(wb.store_value))
        return CommitRecord(
            cycle=self.cycle, seq=wb.seq, pc=wb.pc, ins=ins,
            rd=ins.rd if ins.writes_rd else 0,
            value=wb.result if ins.writes_rd else None,
            store=store, taken=wb.taken, target=wb.target,
            saturated=wb.saturated,
            paths=tuple(sorted(set(wb.sources.values()))))

    def _retire(self, rec: CommitRecord):
        if rec.ins.kind == OpKind.ILLEGAL:
            self.record_fault(FaultKind.DECODE, rec.pc,
                              f"illegal instruction {rec.ins.word:#010x}")
            return
        self.retired += 1
        self.coverage.record_commit(rec)
        self.hazard.note_forwards(rec.paths)
        if rec.saturated:
            self.coverage.hit(SATURATION, rec.cycle)
            self.record_fault(FaultKind.SATURATION, rec.pc,
                              f"{rec.ins.mnemonic} clamped to {rec.value}")
        if self.oracle is not None:
            for msg in self.oracle.check(rec):
                self.record_fault(FaultKind.CORRECTNESS, rec.pc, msg)
        for cb in self.on_commit:
            cb(rec)

    def timeout(self):
        """Mark the run failed after exceeding the cycle budget."""
        self.record_fault(FaultKind.TIMEOUT, self.pc if self.pc is not None else 0,
                          f"no exit after {self.cycle} cycles")
        self.status = RunStatus.TIMEOUT

    # -- Introspection --

    def pipeline_view(self) -> str:
        lines = [f"  cycle {self.cycle}  status {self.status.value}"]
        for name, slot in zip(STAGE_NAMES, self.slots):
            pc = f"{slot.pc:#010x}" if slot.valid else " " * 10
            lines.append(f"  {name:<4s} {pc}  {slot.label()}")
        return "\n".join(lines)

    def stats(self) -> dict:
        cpi = self.cycle / self.retired if self.retired else 0.0
        return {
            "cycles": self.cycle,
            "retired": self.retired,
            "fetched": self.fetched,
            "cpi": round(cpi, 3),
            "flushes": self.flushes,
            "stalls": dict(self.stalls),
            "forwards": dict(self.hazard.forwards),
            "bank_conflicts": self.memory.conflicts,
            "prefetch_hits": self.memory.prefetch_hits,
        }


# ---------------------------------------------------------------------------
#  Integer ALU and branch unit
# ---------------------------------------------------------------------------

def alu(ins: Instruction, ops: dict, pc: int) -> int:
    """RV32I arithmetic; results are signed 32-bit."""
    m = ins.mnemonic
    a = ops.get("rs1", 0)
    if ins.fmt == "R":
        b = ops.get("rs2", 0)
    else:
        b = ins.imm
    if m in ("add", "addi"):
        r = a + b
    elif m == "sub":
        r = a - b
    elif m in ("sll", "slli"):
        r = a << (b & 0x1F)
    elif m in ("slt", "slti"):
        r = 1 if s32(a) < s32(b) else 0
    elif m in ("sltu", "sltiu"):
        r = 1 if u32(a) < u32(b) else 0
    elif m in ("xor", "xori"):
        r = a ^ b
    elif m in ("srl", "srli"):
        r = u32(a) >> (b & 0x1F)
    elif m in ("sra", "srai"):
        r = s32(a) >> (b & 0x1F)
    elif m in ("or", "ori"):
        r = a | b
    elif m in ("and", "andi"):
        r = a & b
    elif m == "lui":
        r = ins.imm
    elif m == "auipc":
        r = pc + ins.imm
    else:
        raise ValueError(f"ALU: no operation for {m}")
    return s32(r)


def branch_outcome(ins: Instruction, ops: dict, pc: int) -> tuple[bool, int]:
    """Return (taken, target) for a branch or jump."""
    m = ins.mnemonic
    if m == "jal":
        return True, u32(pc + ins.imm)
    if m == "jalr":
        return True, u32(ops.get("rs1", 0) + ins.imm) & ~1
    a, b = s32(ops.get("rs1", 0)), s32(ops.get("rs2", 0))
    if m == "beq":
        taken = a == b
    elif m == "bne":
        taken = a != b
    elif m == "blt":
        taken = a < b
    elif m == "bge":
        taken = a >= b
    elif m == "bltu":
        taken = u32(a) < u32(b)
    elif m == "bgeu":
        taken = u32(a) >= u32(b)
    else:
        raise ValueError(f"Branch: no condition for {m}")
    return taken, u32(pc + ins.imm)
