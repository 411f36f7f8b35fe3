"""
Golden Model Oracle
====================
An untimed, instruction-at-a-time reference for the ISA.  The oracle keeps
its own register file, data memory (a numpy array) and accelerator state and
re-executes every instruction the pipeline retires, in commit order, from
the program image rather than from the pipeline's latches.  Each commit is
checked for:

  - program order: the committed PC is the one sequential execution expects
    (catches lost, duplicated and wrongly squashed instructions)
  - the instruction word fetched at that PC
  - the register value written back
  - the address/value of a committed store

Every mismatch is returned as a message; the pipeline turns it into a
CORRECTNESS fault.  At the end of a run :meth:`compare_final` checks the
whole architectural state.
"""

from __future__ import annotations
from typing import Optional

import numpy as np

from config import SimConfig
from isa import (
    Instruction, OpKind, NUM_REGS, decode, s32, u32,
    MAC_SAT, MAC_WRAP, MAC_ACC, RELU_BOUNDED,
    CONV_LOAD, FIR_LOAD, FIR_CLEAR, POOL_MAX, POOL_AVG, POOL_SLIDE,
)

# Arithmetic reference; operands are signed 32-bit Python ints.
_ALU = {
    "add":  lambda a, b: a + b,
    "sub":  lambda a, b: a - b,
    "sll":  lambda a, b: a << (b & 31),
    "slt":  lambda a, b: int(a < b),
    "sltu": lambda a, b: int(u32(a) < u32(b)),
    "xor":  lambda a, b: a ^ b,
    "srl":  lambda a, b: u32(a) >> (b & 31),
    "sra":  lambda a, b: a >> (b & 31),
    "or":   lambda a, b: a | b,
    "and":  lambda a, b: a & b,
}
_IMM_ALIAS = {
    "addi": "add", "slti": "slt", "sltiu": "sltu", "xori": "xor",
    "ori": "or", "andi": "and", "slli": "sll", "srli": "srl", "srai": "sra",
}
_COND = {
    "beq":  lambda a, b: a == b,
    "bne":  lambda a, b: a != b,
    "blt":  lambda a, b: a < b,
    "bge":  lambda a, b: a >= b,
    "bltu": lambda a, b: u32(a) < u32(b),
    "bgeu": lambda a, b: u32(a) >= u32(b),
}


def exact_dot(a, b) -> int:
    """Exact integer dot product (object arrays never overflow)."""
    return int(np.dot(np.asarray(a, dtype=object), np.asarray(b, dtype=object)))


class GoldenModelOracle:
    """Sequential reference model checked against every commit."""

    def __init__(self, config: SimConfig, program: list[int] = (),
                 data: Optional[dict[int, list[int]]] = None):
        self.config = config
        self.precision = config.precision_config
        self.program = [u32(w) for w in program]
        self.regs = np.zeros(NUM_REGS, dtype=np.int64)
        self.mem = np.zeros(config.mem_words, dtype=np.int64)
        for addr, words in (data or {}).items():
            self.load_data(addr, words)
        self.expected_pc = config.start_pc
        self.checked = 0
        self.mismatches = 0

        # Accelerator state, mirrored independently of ai_units
        k = config.kernel_size
        self.kernel = np.array([self.precision.operand(c) for c in config.kernel_table],
                               dtype=np.int64)
        self.fir_coeffs = np.array([self.precision.operand(c) for c in config.fir_table],
                                   dtype=np.int64)
        self.fir_samples = np.zeros(config.fir_taps, dtype=np.int64)
        self.mac_acc = 0
        self.pool_next = 0
        self.pool_pitch = config.pool_window
        self._k = k

    # -- Setup --

    def load_data(self, addr: int, words):
        for i, w in enumerate(words):
            self.mem[(addr + i) % len(self.mem)] = s32(w)

    def fetch(self, pc: int) -> int:
        if pc < 0 or pc % 4 or pc // 4 >= len(self.program):
            return 0
        return self.program[pc // 4]

    def reg(self, idx: int) -> int:
        return 0 if idx == 0 else int(self.regs[idx])

    def _window(self, base: int, pitch: int, n: int) -> np.ndarray:
        """n*n row-major block of memory words (addresses wrap)."""
        rows = np.arange(n) * pitch
        idx = (np.add.outer(rows, np.arange(n)) + base) % len(self.mem)
        return self.mem[idx].ravel()

    # -- Check one commit --

    def check(self, rec) -> list[str]:
        """Re-execute the instruction behind *rec*; return mismatch messages."""
        errors = []
        if rec.pc != self.expected_pc:
            errors.append(f"committed pc {rec.pc:#x}, expected {self.expected_pc:#x}")
        word = self.fetch(rec.pc)
        if word != rec.ins.word:
            errors.append(f"word {rec.ins.word:#010x} at {rec.pc:#x}, program has {word:#010x}")

        ins = decode(word)
        value, store, next_pc = self.execute(ins, rec.pc)

        if ins.writes_rd and ins.rd != 0:
            if rec.value is None or s32(rec.value) != value:
                errors.append(f"{ins}: x{ins.rd} = {rec.value}, expected {value}")
        if store != rec.store:
            errors.append(f"{ins}: store {rec.store}, expected {store}")

        self.expected_pc = next_pc
        self.checked += 1
        self.mismatches += len(errors)
        return errors

    def execute(self, ins: Instruction, pc: int) -> tuple[Optional[int], Optional[tuple], int]:
        """Apply one instruction; returns (rd value, store, next pc)."""
        a, b = self.reg(ins.rs1), self.reg(ins.rs2)
        value = None
        store = None
        next_pc = u32(pc + 4)
        m = ins.mnemonic

        if ins.kind == OpKind.ALU:
            if m == "lui":
                value = ins.imm
            elif m == "auipc":
                value = pc + ins.imm
            elif m in _ALU:
                value = _ALU[m](a, b)
            else:
                value = _ALU[_IMM_ALIAS[m]](a, ins.imm)
        elif ins.kind == OpKind.LOAD:
            value = int(self.mem[(a + ins.imm) % len(self.mem)])
        elif ins.kind == OpKind.STORE:
            addr = (a + ins.imm) % len(self.mem)
            self.mem[addr] = b
            store = (addr, b)
        elif ins.kind == OpKind.BRANCH:
            if m == "jal":
                value, next_pc = pc + 4, u32(pc + ins.imm)
            elif m == "jalr":
                value, next_pc = pc + 4, u32(a + ins.imm) & ~1
            elif _COND[m](a, b):
                next_pc = u32(pc + ins.imm)
        elif ins.kind == OpKind.MAC:
            value = self._mac(ins, a, b)
        elif ins.kind == OpKind.RELU:
            value = max(0, self.precision.operand(a))
            if ins.funct3 == RELU_BOUNDED:
                value = min(value, max(0, ins.imm))
        elif ins.kind == OpKind.CONV2D:
            value = self._conv(ins, a, b)
        elif ins.kind == OpKind.FIR:
            value = self._fir(ins, a)
        elif ins.kind == OpKind.POOL:
            value = self._pool(ins, a, b)

        if value is not None:
            value = s32(value)
            if ins.writes_rd and ins.rd:
                self.regs[ins.rd] = value
        return value, store, next_pc

    # -- Accelerator references --

    def _acc(self, total: int, saturate=None) -> int:
        return self.precision.accumulate(total, saturate)[0]

    def _out(self, acc: int, saturate=None) -> int:
        """Accumulator narrowed to the 32-bit destination register."""
        return self.precision.result(acc, saturate)[0]

    def _mac(self, ins, a, b):
        p = self.precision
        prod = p.operand(a) * p.operand(b)
        saturate = None
        if ins.funct3 == MAC_SAT:
            saturate = True
            self.mac_acc = self._acc(self.reg(ins.rd) + prod, saturate)
        elif ins.funct3 == MAC_WRAP:
            saturate = False
            self.mac_acc = self._acc(self.reg(ins.rd) + prod, saturate)
        elif ins.funct3 == MAC_ACC:
            self.mac_acc = self._acc(self.mac_acc + prod)
        else:
            self.mac_acc = self._acc(prod)
        return self._out(self.mac_acc, saturate)

    def _conv(self, ins, a, b):
        p = self.precision
        n = self._k * self._k
        if ins.funct3 == CONV_LOAD:
            base = a + ins.imm
            idx = (base + np.arange(n)) % len(self.mem)
            self.kernel = np.array([p.operand(int(w)) for w in self.mem[idx]], dtype=np.int64)
            return n
        win = [p.operand(int(w)) for w in self._window(a, b, self._k)]
        return self._out(self._acc(exact_dot(self.kernel, win)))

    def _fir(self, ins, a):
        p = self.precision
        taps = len(self.fir_samples)
        if ins.funct3 == FIR_LOAD:
            idx = (a + ins.imm + np.arange(taps)) % len(self.mem)
            self.fir_coeffs = np.array([p.operand(int(w)) for w in self.mem[idx]], dtype=np.int64)
            return taps
        if ins.funct3 == FIR_CLEAR:
            self.fir_samples[:] = 0
            return 0
        self.fir_samples = np.roll(self.fir_samples, 1)
        self.fir_samples[0] = p.operand(a)
        return self._out(self._acc(exact_dot(self.fir_coeffs, self.fir_samples)))

    def _pool(self, ins, a, b):
        p = self.precision
        if ins.funct7 & POOL_SLIDE:
            base, pitch = self.pool_next, self.pool_pitch
        else:
            base, pitch = a, b
        self.pool_next, self.pool_pitch = base + self.config.pool_stride, pitch
        n = self.config.pool_window
        vals = np.array([p.operand(int(w)) for w in self._window(base, pitch, n)], dtype=object)
        mode = {POOL_MAX: "max", POOL_AVG: "avg"}.get(ins.funct3, self.config.pool_mode)
        if mode == "max":
            total = int(vals.max())
        else:
            total, count = int(vals.sum()), len(vals)
            if self.config.pool_rounding == "nearest":
                total = (2 * total + count) // (2 * count)
            else:
                total //= count
        return self._out(self._acc(total))

    # -- End-of-run comparison --

    def compare_final(self, regs: list[int], memory: list[int]) -> list[str]:
        """Compare the pipeline's final architectural state with the oracle's."""
        errors = []
        for r in range(1, NUM_REGS):
            if s32(regs[r]) != int(self.regs[r]):
                errors.append(f"final x{r} = {regs[r]}, expected {int(self.regs[r])}")
        mem = np.asarray(memory, dtype=np.int64)
        diff = np.nonzero(mem != self.mem)[0]
        for addr in diff[:8]:
            errors.append(f"final mem[{int(addr)}] = {int(mem[addr])}, "
                          f"expected {int(self.mem[addr])}")
        if len(diff) > 8:
            errors.append(f"... {len(diff) - 8} more memory mismatches")
        return errors
