"""
AI Execution Units
===================
The five fixed-function datapaths behind the custom opcodes.  Every unit
presents the same contract to the Execute stage:

    latency(ins)              cycles until the result is valid (fixed per
                              kind and precision mode)
    pipelined                 can accept a new operation before the previous
                              one has committed
    memory_reads(ins, ops)    word addresses the operation reads
    execute(ins, ops, words)  -> AIResult(value, saturated)

``ops`` maps operand names ("rs1", "rs2", "rd") to the forwarded register
values; ``words`` holds the memory values for ``memory_reads`` in order.

Arithmetic follows the run's PrecisionConfig: register and memory words are
viewed at operand width (sign-extended low bits), sums are exact and the
overflow rule is applied once, when the value leaves the accumulator.
Each unit owns its state; nothing is shared between units or runs.
"""

from __future__ import annotations
from dataclasses import dataclass
from math import ceil

from config import PrecisionConfig, SimConfig
from isa import (
    Instruction, OpKind, MAC_SAT, MAC_WRAP, MAC_ACC, MAC_ZERO,
    RELU_BOUNDED, CONV_LOAD, FIR_LOAD, FIR_CLEAR, POOL_MAX, POOL_AVG,
    POOL_SLIDE,
)


@dataclass(frozen=True)
class AIResult:
    value: int
    saturated: bool = False


class AIUnit:
    """Abstract accelerator datapath."""

    kind: OpKind = None
    pipelined: bool = True

    def __init__(self, precision: PrecisionConfig):
        self.precision = precision
        self.ops = 0
        self.saturations = 0

    @property
    def name(self) -> str:
        return self.kind.value.upper()

    def latency(self, ins: Instruction) -> int:
        return 1

    def memory_reads(self, ins: Instruction, ops: dict) -> list[int]:
        return []

    def execute(self, ins: Instruction, ops: dict, words: list[int]) -> AIResult:
        raise NotImplementedError

    def snoop_store(self, addr: int):
        """Called for every committed store (word address, already wrapped)."""
        pass

    def reset(self):
        self.ops = 0
        self.saturations = 0

    def snapshot(self) -> dict:
        return {}

    # -- shared helpers --

    def _beats(self, elements: int) -> int:
        return max(1, ceil(elements / self.precision.lanes))

    def _finish(self, total: int, saturate=None) -> tuple[int, bool]:
        acc, sat = self.precision.accumulate(total, saturate)
        self.ops += 1
        if sat:
            self.saturations += 1
        return acc, sat

    def _result(self, acc: int, sat: bool, saturate=None) -> AIResult:
        value, narrowed = self.precision.result(acc, saturate)
        if narrowed and not sat:
            self.saturations += 1
        return AIResult(value, sat or narrowed)


# ---------------------------------------------------------------------------
#  MAC: multiply-accumulate
# ---------------------------------------------------------------------------

class MACUnit(AIUnit):
    """acc += a*b.  ``mac``/``mac.w`` accumulate into rd, ``maca``/``macz``
    into the unit's own accumulator; all variants leave the result in it."""

    kind = OpKind.MAC
    pipelined = True

    def __init__(self, precision: PrecisionConfig):
        super().__init__(precision)
        self.acc = 0

    def execute(self, ins, ops, words):
        p = self.precision
        prod = p.operand(ops.get("rs1", 0)) * p.operand(ops.get("rs2", 0))
        saturate = None
        if ins.funct3 == MAC_SAT:
            saturate = True
            acc, sat = self._finish(ops.get("rd", 0) + prod, saturate)
        elif ins.funct3 == MAC_WRAP:
            saturate = False
            acc, sat = self._finish(ops.get("rd", 0) + prod, saturate)
        elif ins.funct3 == MAC_ACC:
            acc, sat = self._finish(self.acc + prod)
        elif ins.funct3 == MAC_ZERO:
            acc, sat = self._finish(prod)
        else:
            raise ValueError(f"MAC: unsupported variant {ins.mnemonic}")
        self.acc = acc
        return self._result(acc, sat, saturate)

    def reset(self):
        super().reset()
        self.acc = 0

    def snapshot(self):
        return {"acc": self.acc}


# ---------------------------------------------------------------------------
#  ReLU
# ---------------------------------------------------------------------------

class ReLUUnit(AIUnit):
    kind = OpKind.RELU
    pipelined = True

    def execute(self, ins, ops, words):
        x = self.precision.operand(ops.get("rs1", 0))
        y = max(0, x)
        if ins.funct3 == RELU_BOUNDED:
            y = min(y, max(0, ins.imm))
        self.ops += 1
        return AIResult(y)


# ---------------------------------------------------------------------------
#  Conv2D
# ---------------------------------------------------------------------------

class Conv2DUnit(AIUnit):
    """K×K dot product of the coefficient table against a memory window.

    The window buffer keeps the last window read.  When the next window is
    the same geometry shifted one column right, only the new column is
    fetched from memory; a store into the buffered window invalidates it.
    """

    kind = OpKind.CONV2D
    pipelined = False

    def __init__(self, precision: PrecisionConfig, kernel_size: int, kernel: list[int],
                 mem_words: int = 1 << 32):
        super().__init__(precision)
        self.k = kernel_size
        self.kernel = [precision.operand(c) for c in kernel]
        self.mem_words = mem_words
        self.window: list[int] = []        # row-major K*K raw words
        self.window_addrs: set[int] = set()
        self.window_base = None
        self.window_pitch = None
        self.buffer_hits = 0

    def latency(self, ins):
        return self._beats(self.k * self.k)

    def _addrs(self, base: int, pitch: int) -> list[int]:
        return [base + i * pitch + j for i in range(self.k) for j in range(self.k)]

    def _slides(self, base: int, pitch: int) -> bool:
        return (self.window_base is not None and pitch == self.window_pitch
                and base == self.window_base + 1)

    def memory_reads(self, ins, ops):
        if ins.funct3 == CONV_LOAD:
            base = ops.get("rs1", 0) + ins.imm
            return [base + i for i in range(self.k * self.k)]
        base, pitch = ops.get("rs1", 0), ops.get("rs2", 0)
        if self._slides(base, pitch):
            return [base + i * pitch + self.k - 1 for i in range(self.k)]
        return self._addrs(base, pitch)

    def execute(self, ins, ops, words):
        p = self.precision
        if ins.funct3 == CONV_LOAD:
            self.kernel = [p.operand(w) for w in words]
            self.ops += 1
            return AIResult(len(self.kernel))

        base, pitch = ops.get("rs1", 0), ops.get("rs2", 0)
        if self._slides(base, pitch):
            k = self.k
            win = []
            for i in range(k):
                win.extend(self.window[i * k + 1:(i + 1) * k])
                win.append(words[i])
            self.buffer_hits += 1
        else:
            win = list(words)
        self.window = win
        self.window_base, self.window_pitch = base, pitch
        self.window_addrs = {a % self.mem_words for a in self._addrs(base, pitch)}

        total = sum(c * p.operand(w) for c, w in zip(self.kernel, win))
        acc, sat = self._finish(total)
        return self._result(acc, sat)

    def snoop_store(self, addr):
        if self.window_base is not None and addr in self.window_addrs:
            self.invalidate()

    def invalidate(self):
        self.window_base = None
        self.window_pitch = None

    def reset(self):
        super().reset()
        self.window = []
        self.window_addrs = set()
        self.invalidate()

    def snapshot(self):
        return {"kernel": list(self.kernel), "window": list(self.window),
                "window_base": self.window_base, "buffer_hits": self.buffer_hits}


# ---------------------------------------------------------------------------
#  FIR
# ---------------------------------------------------------------------------

class FIRUnit(AIUnit):
    """T-tap FIR: each ``fir`` shifts a new sample in (sample[0] is newest,
    the oldest drops out) and returns Σ coeff[i]·sample[i]."""

    kind = OpKind.FIR
    pipelined = False

    def __init__(self, precision: PrecisionConfig, taps: int, coeffs: list[int]):
        super().__init__(precision)
        self.taps = taps
        self.coeffs = [precision.operand(c) for c in coeffs]
        self.samples = [0] * taps
        self.acc = 0

    def latency(self, ins):
        return self._beats(self.taps)

    def memory_reads(self, ins, ops):
        if ins.funct3 == FIR_LOAD:
            base = ops.get("rs1", 0) + ins.imm
            return [base + i for i in range(self.taps)]
        return []

    def execute(self, ins, ops, words):
        p = self.precision
        if ins.funct3 == FIR_LOAD:
            self.coeffs = [p.operand(w) for w in words]
            self.ops += 1
            return AIResult(self.taps)
        if ins.funct3 == FIR_CLEAR:
            self.samples = [0] * self.taps
            self.acc = 0
            self.ops += 1
            return AIResult(0)

        self.samples = [p.operand(ops.get("rs1", 0))] + self.samples[:-1]
        total = sum(c * s for c, s in zip(self.coeffs, self.samples))
        self.acc, sat = self._finish(total)
        return self._result(self.acc, sat)

    def reset(self):
        super().reset()
        self.samples = [0] * self.taps
        self.acc = 0

    def snapshot(self):
        return {"coeffs": list(self.coeffs), "samples": list(self.samples), "acc": self.acc}


# ---------------------------------------------------------------------------
#  Pool
# ---------------------------------------------------------------------------

class PoolUnit(AIUnit):
    """N×N max/average pooling.  The ``.n`` form slides the window origin
    by the configured stride from the previous window."""

    kind = OpKind.POOL
    pipelined = True

    def __init__(self, precision: PrecisionConfig, window: int, stride: int,
                 mode: str = "max", rounding: str = "floor"):
        super().__init__(precision)
        self.n = window
        self.stride = stride
        self.mode = mode
        self.rounding = rounding
        self.next_base = 0
        self.pitch = window
        self.window: list[int] = []

    def latency(self, ins):
        return self._beats(self.n * self.n)

    def origin(self, ins, ops) -> tuple[int, int]:
        if ins.funct7 & POOL_SLIDE:
            return self.next_base, self.pitch
        return ops.get("rs1", 0), ops.get("rs2", 0)

    def memory_reads(self, ins, ops):
        base, pitch = self.origin(ins, ops)
        return [base + i * pitch + j for i in range(self.n) for j in range(self.n)]

    def mode_of(self, ins) -> str:
        if ins.funct3 == POOL_MAX:
            return "max"
        if ins.funct3 == POOL_AVG:
            return "avg"
        return self.mode

    def execute(self, ins, ops, words):
        p = self.precision
        base, pitch = self.origin(ins, ops)
        self.next_base, self.pitch = base + self.stride, pitch
        vals = [p.operand(w) for w in words]
        self.window = vals
        if self.mode_of(ins) == "max":
            total = max(vals)
        else:
            total = average(sum(vals), len(vals), self.rounding)
        acc, sat = self._finish(total)
        return self._result(acc, sat)

    def reset(self):
        super().reset()
        self.next_base = 0
        self.pitch = self.n
        self.window = []

    def snapshot(self):
        return {"window": list(self.window), "next_base": self.next_base,
                "pitch": self.pitch}


def average(total: int, n: int, rounding: str = "floor") -> int:
    """Integer mean; ``floor`` rounds toward -inf, ``nearest`` half-up."""
    if rounding == "nearest":
        return (2 * total + n) // (2 * n)
    return total // n


# ---------------------------------------------------------------------------
#  Registry
# ---------------------------------------------------------------------------

def build_units(config: SimConfig) -> dict[OpKind, AIUnit]:
    """Fresh, privately owned unit set for one run."""
    p = config.precision_config
    units = [
        MACUnit(p),
        ReLUUnit(p),
        Conv2DUnit(p, config.kernel_size, config.kernel_table, config.mem_words),
        FIRUnit(p, config.fir_taps, config.fir_table),
        PoolUnit(p, config.pool_window, config.pool_stride,
                 config.pool_mode, config.pool_rounding),
    ]
    return {u.kind: u for u in units}
