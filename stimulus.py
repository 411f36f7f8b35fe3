"""
stimulus.py - Seeded random instruction streams

Produces self-terminating programs that mix every operation kind with
dense register reuse, so that forwarding paths, load-use stalls, unit-busy
stalls, memory-ordering stalls, bank conflicts and branch flushes all occur
naturally.  Runs are reproducible: the same seed always yields the same
program and data.

Register conventions inside a generated program:
    x1  - x15   data registers (random sources and destinations)
    x20         data region base (loads, stores, pool/conv windows)
    x21         row pitch for conv2d/pool windows
    x22         coefficient table base (conv2d.ld / fir.ld)
    x25         link register for jalr

Usage:
    from stimulus import random_program
    stim = random_program(seed=7, length=200)
    sim.load_program(stim.image)
    for addr, words in stim.data:
        sim.load_data(addr, words)
"""

from __future__ import annotations
import random
from dataclasses import dataclass, field

from asm import assemble
from config import SimConfig

DATA_BASE = 64
DATA_WORDS = 128
COEFF_BASE = 0
PITCH = 8

DATA_REGS = list(range(1, 16))

ALU_R = ["add", "sub", "sll", "slt", "sltu", "xor", "srl", "sra", "or", "and"]
ALU_I = ["addi", "slti", "sltiu", "xori", "ori", "andi"]
SHIFT_I = ["slli", "srli", "srai"]
BRANCHES = ["beq", "bne", "blt", "bge", "bltu", "bgeu"]
POOLS = ["pool", "pool.max", "pool.avg"]
MACS = ["mac", "mac.w", "maca", "macz"]

# Relative weight of each generator
WEIGHTS = {
    "alu": 14, "alu_imm": 10, "load": 8, "store": 6, "branch": 5,
    "jump": 2, "mac": 8, "relu": 5, "conv2d": 3, "fir": 4, "pool": 5,
    "coeffs": 1,
}


@dataclass
class Stimulus:
    seed: int
    source: str
    image: bytes
    data: list = field(default_factory=list)   # [(addr, [words])]

    @property
    def words(self) -> int:
        return len(self.image) // 4


class StreamGenerator:
    """Builds one random program; each ``gen_*`` method emits one or two lines."""

    def __init__(self, seed: int, length: int, config: SimConfig):
        self.rng = random.Random(seed)
        self.seed = seed
        self.length = length
        self.config = config
        self.lines: list[str] = []
        self.recent: list[int] = []      # most recent destinations first
        self.head_words = 3 + len(DATA_REGS)

    # -- operand choice --

    def src(self) -> int:
        """Favour registers written in the last few instructions."""
        if self.recent and self.rng.random() < 0.6:
            return self.rng.choice(self.recent[:3])
        return self.rng.choice(DATA_REGS)

    def dst(self) -> int:
        rd = self.rng.choice(DATA_REGS)
        self.recent.insert(0, rd)
        del self.recent[4:]
        return rd

    def value(self) -> int:
        bits = {"INT8": 8, "INT16": 16}.get(self.config.precision, 32)
        if self.rng.random() < 0.2:
            return self.rng.choice([(1 << (bits - 1)) - 1, -(1 << (bits - 1))])
        return self.rng.randint(-(1 << (bits - 2)), (1 << (bits - 2)))

    def emit(self, text: str):
        self.lines.append(f"    {text}")

    # -- generators --

    def gen_alu(self, left):
        self.emit(f"{self.rng.choice(ALU_R)} x{self.dst()}, x{self.src()}, x{self.src()}")

    def gen_alu_imm(self, left):
        r = self.rng.random()
        if r < 0.05:
            self.emit(f"auipc x{self.dst()}, {self.rng.randint(0, 15)}")
        elif r < 0.3:
            self.emit(f"{self.rng.choice(SHIFT_I)} x{self.dst()}, x{self.src()}, {self.rng.randint(0, 31)}")
        else:
            self.emit(f"{self.rng.choice(ALU_I)} x{self.dst()}, x{self.src()}, {self.rng.randint(-2048, 2047)}")

    def gen_load(self, left):
        self.emit(f"lw x{self.dst()}, {self.rng.randrange(DATA_WORDS)}(x20)")

    def gen_store(self, left):
        self.emit(f"sw x{self.src()}, {self.rng.randrange(DATA_WORDS)}(x20)")

    def gen_branch(self, left):
        if left < 2:
            return self.gen_alu(left)
        # the target never lies past the closing ecall
        skip = self.rng.randint(1, min(3, left - 1))
        self.emit(f"{self.rng.choice(BRANCHES)} x{self.src()}, x{self.src()}, {4 * (skip + 1)}")

    def gen_jump(self, left):
        if left < 2:
            return self.gen_alu(left)
        addr = 4 * (self.head_words + len(self.lines))
        if addr + 8 <= 2047 and self.rng.random() < 0.4:
            # absolute jalr over the next instruction
            self.emit(f"jalr x25, {addr + 8}(x0)")
            self.gen_alu(left)
            return
        skip = self.rng.randint(1, min(2, left - 1))
        self.emit(f"jal x{self.dst()}, {4 * (skip + 1)}")

    def gen_mac(self, left):
        self.emit(f"{self.rng.choice(MACS)} x{self.dst()}, x{self.src()}, x{self.src()}")

    def gen_relu(self, left):
        if self.rng.random() < 0.3:
            self.emit(f"relu.b x{self.dst()}, x{self.src()}, {self.rng.randint(0, 2047)}")
        else:
            self.emit(f"relu x{self.dst()}, x{self.src()}")

    def gen_conv2d(self, left):
        # same origin, or one column right to reuse the window buffer
        self.emit(f"addi x20, x20, {self.rng.choice([0, 1, 1, 2])}")
        self.emit(f"conv2d x{self.dst()}, x20, x21")

    def gen_fir(self, left):
        r = self.rng.random()
        if r < 0.1:
            self.emit(f"fir.clr x{self.dst()}")
        else:
            self.emit(f"fir x{self.dst()}, x{self.src()}")

    def gen_pool(self, left):
        op = self.rng.choice(POOLS)
        if self.rng.random() < 0.4:
            self.emit(f"{op}.n x{self.dst()}")
        else:
            self.emit(f"{op} x{self.dst()}, x20, x21")

    def gen_coeffs(self, left):
        if self.rng.random() < 0.5:
            self.emit(f"conv2d.ld x{self.dst()}, 0(x22)")
        else:
            self.emit(f"fir.ld x{self.dst()}, 0(x22)")

    # -- program --

    def build(self) -> Stimulus:
        rng = self.rng
        head = [
            f"; random stream seed={self.seed} length={self.length}",
            f"    li x20, {DATA_BASE}",
            f"    li x21, {PITCH}",
            f"    li x22, {COEFF_BASE}",
        ]
        for r in DATA_REGS:
            head.append(f"    li x{r}, {rng.randint(-2048, 2047)}")

        kinds = list(WEIGHTS)
        weights = [WEIGHTS[k] for k in kinds]
        last_reset = 0
        while len(self.lines) < self.length:
            left = self.length - len(self.lines)
            kind = rng.choices(kinds, weights)[0]
            getattr(self, f"gen_{kind}")(left)
            # keep the window base from drifting out of the data region
            if len(self.lines) - last_reset >= 32:
                self.emit(f"li x20, {DATA_BASE}")
                last_reset = len(self.lines)
        self.lines.append("    ecall")

        source = "\n".join(head + self.lines) + "\n"
        k = self.config.kernel_size
        coeff_count = max(k * k, self.config.fir_taps)
        bits = {"INT8": 8, "INT16": 16}.get(self.config.precision, 32)
        lo, hi = -(1 << (bits - 1)), (1 << (bits - 1)) - 1
        coeffs = [rng.randint(max(lo, -4), min(hi, 4)) for _ in range(coeff_count)]
        data = [(COEFF_BASE, coeffs),
                (DATA_BASE, [self.value() for _ in range(DATA_WORDS + PITCH * 8)])]
        return Stimulus(self.seed, source, assemble(source), data)


def random_program(seed: int = 0, length: int = 100,
                   config: SimConfig = None) -> Stimulus:
    """One reproducible random program of roughly *length* instructions."""
    return StreamGenerator(seed, length, config or SimConfig()).build()


def random_programs(count: int, seed: int = 0, length: int = 100,
                    config: SimConfig = None) -> list[Stimulus]:
    return [random_program(seed + i, length, config) for i in range(count)]
