"""
AICore-5 Instruction Set
=========================
Bit-level definitions for the RV32I subset executed by the pipeline plus the
five custom acceleration opcodes.  ``decode()`` turns a raw 32-bit word into
an immutable :class:`Instruction`; it never raises.  Anything outside the
recognised table decodes as ``OpKind.ILLEGAL`` and is handled downstream.

Encodings (bit positions as in the RISC-V base formats):

    R-type: funct7[31:25] | rs2[24:20] | rs1[19:15] | funct3[14:12] | rd[11:7] | opcode[6:0]
    I-type: imm[31:20]               | rs1[19:15] | funct3[14:12] | rd[11:7] | opcode[6:0]
    S-type: imm[11:5] | rs2 | rs1 | funct3 | imm[4:0] | opcode
    B-type: imm[12|10:5] | rs2 | rs1 | funct3 | imm[4:1|11] | opcode
    U-type: imm[31:12] | rd | opcode
    J-type: imm[20|10:1|11|19:12] | rd | opcode

Custom opcode space 0001011..0001111 maps one-to-one onto FIR, MAC, RELU,
CONV2D and POOL.  Data memory is word-addressed: ``lw``/``sw`` and the AI
window operands use word indices, the program counter counts bytes.
"""

from __future__ import annotations
from dataclasses import dataclass
from enum import Enum

# ---------------------------------------------------------------------------
#  Constants
# ---------------------------------------------------------------------------

XLEN = 32
NUM_REGS = 32
MASK32 = (1 << 32) - 1
SIGN32 = 1 << 31

# Base opcodes
OPC_LOAD    = 0b0000011
OPC_OP_IMM  = 0b0010011
OPC_AUIPC   = 0b0010111
OPC_STORE   = 0b0100011
OPC_OP      = 0b0110011
OPC_LUI     = 0b0110111
OPC_BRANCH  = 0b1100011
OPC_JALR    = 0b1100111
OPC_JAL     = 0b1101111
OPC_SYSTEM  = 0b1110011

# Custom acceleration opcodes
OPC_FIR     = 0b0001011
OPC_MAC     = 0b0001100
OPC_RELU    = 0b0001101
OPC_CONV2D  = 0b0001110
OPC_POOL    = 0b0001111

# Sub-variant selectors (funct3) for the custom opcodes
MAC_SAT    = 0b000   # rd <- clamp(rd + rs1*rs2)
MAC_WRAP   = 0b001   # rd <- wrap(rd + rs1*rs2)
MAC_ACC    = 0b010   # acc <- acc + rs1*rs2, rd <- acc
MAC_ZERO   = 0b011   # acc <- rs1*rs2, rd <- acc

RELU_PLAIN   = 0b000
RELU_BOUNDED = 0b001

CONV_RUN  = 0b000
CONV_LOAD = 0b001

FIR_RUN   = 0b000
FIR_LOAD  = 0b001
FIR_CLEAR = 0b010

POOL_CFG = 0b000
POOL_MAX = 0b001
POOL_AVG = 0b010
POOL_SLIDE = 0b0000001   # funct7 flag: next window at previous + stride


class OpKind(Enum):
    ALU     = "alu"
    LOAD    = "load"
    STORE   = "store"
    BRANCH  = "branch"
    MAC     = "mac"
    RELU    = "relu"
    CONV2D  = "conv2d"
    FIR     = "fir"
    POOL    = "pool"
    SYSTEM  = "system"
    ILLEGAL = "illegal"


AI_KINDS = frozenset({OpKind.MAC, OpKind.RELU, OpKind.CONV2D,
                      OpKind.FIR, OpKind.POOL})

# ---------------------------------------------------------------------------
#  Helpers
# ---------------------------------------------------------------------------

def u32(v: int) -> int:
    """Mask to unsigned 32 bits."""
    return v & MASK32

def s32(v: int) -> int:
    """Interpret a 32-bit value as signed."""
    v = u32(v)
    return v - (1 << 32) if v >= SIGN32 else v

def sign_extend(val: int, bits: int) -> int:
    """Sign-extend the low *bits* of *val* to a Python int."""
    mask = (1 << bits) - 1
    val &= mask
    if val & (1 << (bits - 1)):
        val -= (1 << bits)
    return val

def signed_range(bits: int) -> tuple[int, int]:
    return -(1 << (bits - 1)), (1 << (bits - 1)) - 1

def clamp(val: int, bits: int) -> tuple[int, bool]:
    """Saturate *val* to a signed *bits*-wide range.

    Returns ``(value, saturated)`` where ``saturated`` reports whether the
    value had to be clamped.
    """
    lo, hi = signed_range(bits)
    if val > hi:
        return hi, True
    if val < lo:
        return lo, True
    return val, False

def wrap(val: int, bits: int) -> tuple[int, bool]:
    """Two's-complement wrap to *bits*; ``overflowed`` mirrors :func:`clamp`."""
    r = sign_extend(val, bits)
    return r, r != val

# ---------------------------------------------------------------------------
#  Decoded instruction
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class Instruction:
    word: int
    opcode: int
    funct3: int
    funct7: int
    rs1: int
    rs2: int
    rd: int
    imm: int
    kind: OpKind
    mnemonic: str
    fmt: str = "R"

    @property
    def sources(self) -> tuple[tuple[str, int], ...]:
        """(operand name, register index) pairs read by this instruction."""
        return _SOURCES.get(self.mnemonic, _no_sources)(self)

    @property
    def writes_rd(self) -> bool:
        """True if the instruction produces a register result."""
        if self.kind in (OpKind.STORE, OpKind.SYSTEM, OpKind.ILLEGAL):
            return False
        if self.kind == OpKind.BRANCH:
            return self.mnemonic in ("jal", "jalr")
        return True

    @property
    def produces(self) -> int:
        """Destination register as seen by the hazard logic (0 = none)."""
        return self.rd if self.writes_rd else 0

    @property
    def reads_memory(self) -> bool:
        return self.kind == OpKind.LOAD

    def __str__(self) -> str:
        return format_instruction(self)


def _no_sources(ins: Instruction):
    return ()

def _rs1(ins: Instruction):
    return (("rs1", ins.rs1),)

def _rs1_rs2(ins: Instruction):
    return (("rs1", ins.rs1), ("rs2", ins.rs2))

def _rd_rs1_rs2(ins: Instruction):
    return (("rd", ins.rd), ("rs1", ins.rs1), ("rs2", ins.rs2))

def _pool_sources(ins: Instruction):
    if ins.funct7 & POOL_SLIDE:
        return ()
    return _rs1_rs2(ins)


# ---------------------------------------------------------------------------
#  Decode tables
# ---------------------------------------------------------------------------

# OP (R-type): (funct3, funct7) -> mnemonic
R_ALU = {
    (0b000, 0x00): "add",  (0b000, 0x20): "sub",
    (0b001, 0x00): "sll",  (0b010, 0x00): "slt",
    (0b011, 0x00): "sltu", (0b100, 0x00): "xor",
    (0b101, 0x00): "srl",  (0b101, 0x20): "sra",
    (0b110, 0x00): "or",   (0b111, 0x00): "and",
}

# OP-IMM (I-type): funct3 -> mnemonic (shifts checked separately)
I_ALU = {
    0b000: "addi", 0b010: "slti", 0b011: "sltiu",
    0b100: "xori", 0b110: "ori",  0b111: "andi",
}
I_SHIFT = {
    (0b001, 0x00): "slli", (0b101, 0x00): "srli", (0b101, 0x20): "srai",
}

BRANCH_F3 = {
    0b000: "beq", 0b001: "bne", 0b100: "blt",
    0b101: "bge", 0b110: "bltu", 0b111: "bgeu",
}

# Custom ops: (opcode, funct3) -> (mnemonic, format, allowed funct7 set)
CUSTOM = {
    (OPC_MAC, MAC_SAT):        ("mac",       "R", {0}),
    (OPC_MAC, MAC_WRAP):       ("mac.w",     "R", {0}),
    (OPC_MAC, MAC_ACC):        ("maca",      "R", {0}),
    (OPC_MAC, MAC_ZERO):       ("macz",      "R", {0}),
    (OPC_RELU, RELU_PLAIN):    ("relu",      "I", None),
    (OPC_RELU, RELU_BOUNDED):  ("relu.b",    "I", None),
    (OPC_CONV2D, CONV_RUN):    ("conv2d",    "R", {0}),
    (OPC_CONV2D, CONV_LOAD):   ("conv2d.ld", "I", None),
    (OPC_FIR, FIR_RUN):        ("fir",       "I", None),
    (OPC_FIR, FIR_LOAD):       ("fir.ld",    "I", None),
    (OPC_FIR, FIR_CLEAR):      ("fir.clr",   "I", None),
    (OPC_POOL, POOL_CFG):      ("pool",      "R", {0, POOL_SLIDE}),
    (OPC_POOL, POOL_MAX):      ("pool.max",  "R", {0, POOL_SLIDE}),
    (OPC_POOL, POOL_AVG):      ("pool.avg",  "R", {0, POOL_SLIDE}),
}

CUSTOM_KIND = {
    OPC_FIR: OpKind.FIR, OPC_MAC: OpKind.MAC, OPC_RELU: OpKind.RELU,
    OPC_CONV2D: OpKind.CONV2D, OPC_POOL: OpKind.POOL,
}

_SOURCES = {
    "lui": _no_sources, "auipc": _no_sources, "jal": _no_sources,
    "jalr": _rs1, "lw": _rs1, "sw": _rs1_rs2,
    "mac": _rd_rs1_rs2, "mac.w": _rd_rs1_rs2,
    "maca": _rs1_rs2, "macz": _rs1_rs2,
    "relu": _rs1, "relu.b": _rs1,
    "conv2d": _rs1_rs2, "conv2d.ld": _rs1,
    "fir": _rs1, "fir.ld": _rs1, "fir.clr": _no_sources,
    "pool": _pool_sources, "pool.max": _pool_sources, "pool.avg": _pool_sources,
}
_SOURCES.update({m: _rs1_rs2 for m in R_ALU.values()})
_SOURCES.update({m: _rs1 for m in I_ALU.values()})
_SOURCES.update({m: _rs1 for m in I_SHIFT.values()})
_SOURCES.update({m: _rs1_rs2 for m in BRANCH_F3.values()})

# ---------------------------------------------------------------------------
#  Immediate extraction
# ---------------------------------------------------------------------------

def imm_i(word: int) -> int:
    return sign_extend(word >> 20, 12)

def imm_s(word: int) -> int:
    return sign_extend(((word >> 25) << 5) | ((word >> 7) & 0x1F), 12)

def imm_b(word: int) -> int:
    v = (((word >> 31) & 1) << 12) | (((word >> 7) & 1) << 11) \
        | (((word >> 25) & 0x3F) << 5) | (((word >> 8) & 0xF) << 1)
    return sign_extend(v, 13)

def imm_u(word: int) -> int:
    return s32(word & 0xFFFFF000)

def imm_j(word: int) -> int:
    v = (((word >> 31) & 1) << 20) | (((word >> 12) & 0xFF) << 12) \
        | (((word >> 20) & 1) << 11) | (((word >> 21) & 0x3FF) << 1)
    return sign_extend(v, 21)

# ---------------------------------------------------------------------------
#  Decoder
# ---------------------------------------------------------------------------

def decode(word: int) -> Instruction:
    """Decode a 32-bit instruction word.  Pure; never raises."""
    word = u32(word)
    opcode = word & 0x7F
    rd     = (word >> 7) & 0x1F
    funct3 = (word >> 12) & 0x7
    rs1    = (word >> 15) & 0x1F
    rs2    = (word >> 20) & 0x1F
    funct7 = (word >> 25) & 0x7F

    def make(kind, mnem, imm=0, fmt="R", **over):
        fields = dict(word=word, opcode=opcode, funct3=funct3, funct7=funct7,
                      rs1=rs1, rs2=rs2, rd=rd, imm=imm, kind=kind,
                      mnemonic=mnem, fmt=fmt)
        fields.update(over)
        return Instruction(**fields)

    def illegal():
        return make(OpKind.ILLEGAL, "illegal")

    if opcode == OPC_OP:
        mnem = R_ALU.get((funct3, funct7))
        return make(OpKind.ALU, mnem) if mnem else illegal()

    if opcode == OPC_OP_IMM:
        if funct3 in I_ALU:
            return make(OpKind.ALU, I_ALU[funct3], imm_i(word), "I", rs2=0, funct7=0)
        mnem = I_SHIFT.get((funct3, funct7))
        if mnem:
            return make(OpKind.ALU, mnem, rs2, "I", rs2=0)
        return illegal()

    if opcode == OPC_LUI:
        return make(OpKind.ALU, "lui", imm_u(word), "U", rs1=0, rs2=0, funct3=0, funct7=0)
    if opcode == OPC_AUIPC:
        return make(OpKind.ALU, "auipc", imm_u(word), "U", rs1=0, rs2=0, funct3=0, funct7=0)

    if opcode == OPC_LOAD:
        if funct3 == 0b010:
            return make(OpKind.LOAD, "lw", imm_i(word), "I", rs2=0, funct7=0)
        return illegal()

    if opcode == OPC_STORE:
        if funct3 == 0b010:
            return make(OpKind.STORE, "sw", imm_s(word), "S", rd=0, funct7=0)
        return illegal()

    if opcode == OPC_BRANCH:
        mnem = BRANCH_F3.get(funct3)
        if mnem:
            return make(OpKind.BRANCH, mnem, imm_b(word), "B", rd=0, funct7=0)
        return illegal()

    if opcode == OPC_JAL:
        return make(OpKind.BRANCH, "jal", imm_j(word), "J", rs1=0, rs2=0, funct3=0, funct7=0)

    if opcode == OPC_JALR:
        if funct3 == 0:
            return make(OpKind.BRANCH, "jalr", imm_i(word), "I", rs2=0, funct7=0)
        return illegal()

    if opcode == OPC_SYSTEM:
        if funct3 == 0 and rs1 == 0 and rd == 0:
            if (word >> 20) == 0:
                return make(OpKind.SYSTEM, "ecall", 0, "I", rs2=0, funct7=0)
            if (word >> 20) == 1:
                return make(OpKind.SYSTEM, "ebreak", 1, "I", rs2=0, funct7=0)
        return illegal()

    if opcode in CUSTOM_KIND:
        entry = CUSTOM.get((opcode, funct3))
        if entry is None:
            return illegal()
        mnem, fmt, allowed_f7 = entry
        kind = CUSTOM_KIND[opcode]
        if fmt == "I":
            return make(kind, mnem, imm_i(word), "I", rs2=0, funct7=0)
        if funct7 not in allowed_f7:
            return illegal()
        return make(kind, mnem)

    return illegal()

# ---------------------------------------------------------------------------
#  Encoders (used by the assembler and the stimulus generator)
# ---------------------------------------------------------------------------

def _check_reg(r: int):
    if not (0 <= r < NUM_REGS):
        raise ValueError(f"Invalid register index: {r}")

def _check_imm(imm: int, bits: int, what: str):
    lo, hi = signed_range(bits)
    if not (lo <= imm <= hi):
        raise ValueError(f"{what} immediate {imm} out of range [{lo}, {hi}]")

def encode_r(opcode: int, rd: int, funct3: int, rs1: int, rs2: int,
             funct7: int = 0) -> int:
    for r in (rd, rs1, rs2):
        _check_reg(r)
    return ((funct7 & 0x7F) << 25) | (rs2 << 20) | (rs1 << 15) \
        | ((funct3 & 0x7) << 12) | (rd << 7) | (opcode & 0x7F)

def encode_i(opcode: int, rd: int, funct3: int, rs1: int, imm: int) -> int:
    _check_reg(rd)
    _check_reg(rs1)
    _check_imm(imm, 12, "I-type")
    return ((imm & 0xFFF) << 20) | (rs1 << 15) | ((funct3 & 0x7) << 12) \
        | (rd << 7) | (opcode & 0x7F)

def encode_s(opcode: int, funct3: int, rs1: int, rs2: int, imm: int) -> int:
    _check_reg(rs1)
    _check_reg(rs2)
    _check_imm(imm, 12, "S-type")
    imm &= 0xFFF
    return ((imm >> 5) << 25) | (rs2 << 20) | (rs1 << 15) \
        | ((funct3 & 0x7) << 12) | ((imm & 0x1F) << 7) | (opcode & 0x7F)

def encode_b(funct3: int, rs1: int, rs2: int, offset: int) -> int:
    _check_reg(rs1)
    _check_reg(rs2)
    if offset & 1:
        raise ValueError(f"Branch offset {offset} is not 2-byte aligned")
    _check_imm(offset, 13, "B-type")
    v = offset & 0x1FFF
    return (((v >> 12) & 1) << 31) | (((v >> 5) & 0x3F) << 25) | (rs2 << 20) \
        | (rs1 << 15) | ((funct3 & 0x7) << 12) | (((v >> 1) & 0xF) << 8) \
        | (((v >> 11) & 1) << 7) | OPC_BRANCH

def encode_u(opcode: int, rd: int, imm20: int) -> int:
    _check_reg(rd)
    return ((imm20 & 0xFFFFF) << 12) | (rd << 7) | (opcode & 0x7F)

def encode_j(rd: int, offset: int) -> int:
    _check_reg(rd)
    if offset & 1:
        raise ValueError(f"Jump offset {offset} is not 2-byte aligned")
    _check_imm(offset, 21, "J-type")
    v = offset & 0x1FFFFF
    return (((v >> 20) & 1) << 31) | (((v >> 1) & 0x3FF) << 21) \
        | (((v >> 11) & 1) << 20) | (((v >> 12) & 0xFF) << 12) \
        | (rd << 7) | OPC_JAL

# ---------------------------------------------------------------------------
#  Text rendering
# ---------------------------------------------------------------------------

def format_instruction(ins: Instruction) -> str:
    """Render a decoded instruction in assembler syntax."""
    m = ins.mnemonic
    if ins.kind == OpKind.ILLEGAL:
        return f".word {ins.word:#010x}"
    if ins.kind == OpKind.SYSTEM:
        return m
    if m in ("lui", "auipc"):
        return f"{m} x{ins.rd}, {u32(ins.imm) >> 12:#x}"
    if m == "jal":
        return f"jal x{ins.rd}, {ins.imm:+d}"
    if m in ("jalr", "lw"):
        return f"{m} x{ins.rd}, {ins.imm}(x{ins.rs1})"
    if m == "sw":
        return f"sw x{ins.rs2}, {ins.imm}(x{ins.rs1})"
    if ins.kind == OpKind.BRANCH:
        return f"{m} x{ins.rs1}, x{ins.rs2}, {ins.imm:+d}"
    if m in ("conv2d.ld", "fir.ld"):
        return f"{m} x{ins.rd}, {ins.imm}(x{ins.rs1})"
    if m == "fir.clr":
        return f"{m} x{ins.rd}"
    if m in ("fir", "relu"):
        return f"{m} x{ins.rd}, x{ins.rs1}"
    if ins.kind == OpKind.POOL and ins.funct7 & POOL_SLIDE:
        return f"{m}.n x{ins.rd}"
    if ins.fmt == "I":
        return f"{m} x{ins.rd}, x{ins.rs1}, {ins.imm}"
    return f"{m} x{ins.rd}, x{ins.rs1}, x{ins.rs2}"
