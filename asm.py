"""
AICore-5 Assembler
===================
Translates assembly text into a little-endian program image.

Supports:
  - Labels (terminated with ':', optionally followed by an instruction)
  - The RV32I subset plus the mac/relu/conv2d/fir/pool extensions
  - Register names x0-x31 and the usual ABI aliases (zero, ra, sp, t0, a0 ...)
  - Immediate literals (decimal, hex with 0x prefix, negative values)
  - Comments (';' or '#' to end of line)
  - .org and .word directives
  - Pseudo-instructions: nop, li, mv, not, neg, j, jr, ret, beqz, bnez,
    halt (ecall)

Usage:
  from asm import assemble
  image = assemble(source_text)
"""

from __future__ import annotations
import re

from isa import (
    OPC_LOAD, OPC_OP_IMM, OPC_AUIPC, OPC_STORE, OPC_OP, OPC_LUI, OPC_JALR,
    OPC_SYSTEM, OPC_MAC, OPC_RELU, OPC_CONV2D, OPC_FIR, OPC_POOL,
    MAC_SAT, MAC_WRAP, MAC_ACC, MAC_ZERO, RELU_PLAIN, RELU_BOUNDED,
    CONV_RUN, CONV_LOAD, FIR_RUN, FIR_LOAD, FIR_CLEAR,
    POOL_CFG, POOL_MAX, POOL_AVG, POOL_SLIDE,
    R_ALU, I_ALU, I_SHIFT, BRANCH_F3,
    encode_r, encode_i, encode_s, encode_b, encode_u, encode_j,
    decode, sign_extend, u32,
)

# ---------------------------------------------------------------------------
#  Mnemonic tables
# ---------------------------------------------------------------------------

ABI_NAMES = {
    "zero": 0, "ra": 1, "sp": 2, "gp": 3, "tp": 4,
    "t0": 5, "t1": 6, "t2": 7, "s0": 8, "fp": 8, "s1": 9,
    "a0": 10, "a1": 11, "a2": 12, "a3": 13, "a4": 14, "a5": 15, "a6": 16, "a7": 17,
    "s2": 18, "s3": 19, "s4": 20, "s5": 21, "s6": 22, "s7": 23, "s8": 24,
    "s9": 25, "s10": 26, "s11": 27, "t3": 28, "t4": 29, "t5": 30, "t6": 31,
}

R_OPS = {m: key for key, m in R_ALU.items()}          # mnem -> (funct3, funct7)
I_OPS = {m: f3 for f3, m in I_ALU.items()}            # mnem -> funct3
SHIFT_OPS = {m: key for key, m in I_SHIFT.items()}    # mnem -> (funct3, funct7)
BRANCH_OPS = {m: f3 for f3, m in BRANCH_F3.items()}

# R-format accelerator ops: mnem -> (opcode, funct3)
AI_R_OPS = {
    "mac": (OPC_MAC, MAC_SAT), "mac.w": (OPC_MAC, MAC_WRAP),
    "maca": (OPC_MAC, MAC_ACC), "macz": (OPC_MAC, MAC_ZERO),
    "conv2d": (OPC_CONV2D, CONV_RUN),
    "pool": (OPC_POOL, POOL_CFG), "pool.max": (OPC_POOL, POOL_MAX),
    "pool.avg": (OPC_POOL, POOL_AVG),
}
# Memory-operand accelerator ops: rd, imm(rs1)
AI_LOAD_OPS = {"conv2d.ld": (OPC_CONV2D, CONV_LOAD), "fir.ld": (OPC_FIR, FIR_LOAD)}

_MEM_OPERAND = re.compile(r"^(-?(?:0[xX][0-9a-fA-F]+|\d+))?\s*\(\s*(\w+)\s*\)$")

# ---------------------------------------------------------------------------
#  Parser helpers
# ---------------------------------------------------------------------------

class AsmError(Exception):
    def __init__(self, line: int, msg: str):
        self.line = line
        super().__init__(f"Line {line}: {msg}")


def _parse_reg(tok: str) -> int:
    """Parse 'x0'-'x31' or an ABI name.  Returns register index."""
    tok = tok.strip().lower()
    if tok in ABI_NAMES:
        return ABI_NAMES[tok]
    if tok.startswith("x") and tok[1:].isdigit():
        n = int(tok[1:])
        if 0 <= n <= 31:
            return n
    raise ValueError(f"Invalid register: {tok!r}")

def _parse_imm(tok: str) -> int:
    """Parse an immediate value (decimal or 0x hex)."""
    return int(tok.strip(), 0)

def _split_ops(rest: str) -> list[str]:
    """Split operand string by comma, trimming whitespace."""
    return [s.strip() for s in rest.split(",") if s.strip()]

def _split_mnemonic(text: str) -> tuple[str, str]:
    parts = text.split(None, 1)
    if len(parts) == 1:
        return parts[0].lower(), ""
    return parts[0].lower(), parts[1]

def _parse_mem(tok: str) -> tuple[int, int]:
    """'imm(reg)' -> (imm, reg)."""
    m = _MEM_OPERAND.match(tok.strip())
    if not m:
        raise ValueError(f"Expected imm(reg), got {tok!r}")
    imm = _parse_imm(m.group(1)) if m.group(1) else 0
    return imm, _parse_reg(m.group(2))

def _strip_comment(raw: str) -> str:
    for mark in (";", "#"):
        idx = raw.find(mark)
        if idx >= 0:
            raw = raw[:idx]
    return raw.strip()

def split_li(value: int) -> tuple[int, int]:
    """Split a 32-bit constant into (lui imm20, addi imm12)."""
    value = u32(value)
    lo = sign_extend(value & 0xFFF, 12)
    hi = u32(value - lo) >> 12
    return hi, lo

def _li_size(ops: list[str]) -> int:
    if len(ops) == 2:
        try:
            v = _parse_imm(ops[1])
        except ValueError:
            return 8       # label: always lui+addi
        if -2048 <= v <= 2047:
            return 4
    return 8

# ---------------------------------------------------------------------------
#  Assembler
# ---------------------------------------------------------------------------

def assemble(source: str, base_addr: int = 0, listing: bool = False) -> bytes:
    """
    Two-pass assembler.
    Pass 1: collect labels, compute instruction sizes.
    Pass 2: emit words with resolved addresses.
    If listing=True, print an address/hex/source listing to stdout.
    """
    cleaned: list[tuple[int, str]] = []
    for i, raw in enumerate(source.split("\n"), 1):
        text = _strip_comment(raw)
        # peel off any number of leading labels
        while True:
            m = re.match(r"^([A-Za-z_.][\w.]*)\s*:\s*(.*)$", text)
            if not m:
                break
            cleaned.append((i, m.group(1) + ":"))
            text = m.group(2).strip()
        if text:
            cleaned.append((i, text))

    # ---- Pass 1: label collection and size computation ----
    labels: dict[str, int] = {}
    sizes: list[tuple[int, str, int]] = []
    pc = base_addr

    for lineno, text in cleaned:
        if text.endswith(":"):
            lbl = text[:-1]
            if lbl in labels:
                raise AsmError(lineno, f"Duplicate label: {lbl}")
            labels[lbl] = pc
            continue
        mnem, rest = _split_mnemonic(text)
        if mnem == ".org":
            try:
                target = _parse_imm(rest)
            except ValueError:
                raise AsmError(lineno, f"Bad .org address: {rest}")
            if target < pc or target % 4:
                raise AsmError(lineno, f".org {target:#x} must be word aligned and not behind pc {pc:#x}")
            sizes.append((lineno, text, target - pc))
            pc = target
            continue
        if mnem == ".word":
            sz = 4 * len(_split_ops(rest))
        elif mnem == "li":
            sz = _li_size(_split_ops(rest))
        else:
            sz = 4
        sizes.append((lineno, text, sz))
        pc += sz

    # ---- Pass 2: emit words ----
    words: list[int] = []
    pc = base_addr
    listing_lines = []

    for lineno, text, sz in sizes:
        mnem, rest = _split_mnemonic(text)
        if mnem == ".org":
            words.extend([0] * (sz // 4))
            pc += sz
            if listing:
                listing_lines.append((pc, "", text))
            continue
        try:
            if mnem == ".word":
                emitted = [u32(_resolve(tok, labels)) for tok in _split_ops(rest)]
            else:
                emitted = _emit_instruction(mnem, _split_ops(rest), pc, labels, sz)
        except AsmError:
            raise
        except (ValueError, KeyError, IndexError) as e:
            raise AsmError(lineno, f"{e} in: {text}")
        if len(emitted) * 4 != sz:
            raise AsmError(lineno, f"size mismatch: expected {sz}, got {len(emitted) * 4}")
        if listing:
            listing_lines.append((pc, " ".join(f"{w:08x}" for w in emitted), text))
        words.extend(emitted)
        pc += sz

    if listing:
        addr_labels = {}
        for lbl, addr in labels.items():
            addr_labels.setdefault(addr, []).append(lbl)
        for addr, hexstr, src in listing_lines:
            for lbl in addr_labels.pop(addr, []):
                print(f"                    {lbl}:")
            print(f"  {addr:06X}  {hexstr:<18s}  {src}")

    return b"".join(w.to_bytes(4, "little") for w in words)


def _resolve(tok: str, labels: dict[str, int]) -> int:
    tok = tok.strip()
    if tok in labels:
        return labels[tok]
    try:
        return _parse_imm(tok)
    except ValueError:
        raise ValueError(f"Unknown label or bad immediate: {tok!r}")

def _offset(tok: str, labels: dict[str, int], pc: int) -> int:
    """Branch/jump target: a label (pc-relative) or a literal offset."""
    tok = tok.strip()
    if tok in labels:
        return labels[tok] - pc
    return _resolve(tok, labels)


def _emit_instruction(mnem: str, ops: list[str], pc: int,
                      labels: dict[str, int], size: int) -> list[int]:
    """Encode one (possibly pseudo) instruction into 32-bit words."""
    R = _parse_reg

    # ---- Pseudo-instructions ----
    if mnem == "nop":
        return [encode_i(OPC_OP_IMM, 0, 0, 0, 0)]
    if mnem in ("halt", "ecall"):
        return [OPC_SYSTEM]
    if mnem == "ebreak":
        return [(1 << 20) | OPC_SYSTEM]
    if mnem == "li":
        rd, value = R(ops[0]), _resolve(ops[1], labels)
        if size == 4:
            return [encode_i(OPC_OP_IMM, rd, 0, 0, value)]
        hi, lo = split_li(value)
        return [encode_u(OPC_LUI, rd, hi), encode_i(OPC_OP_IMM, rd, 0, rd, lo)]
    if mnem == "mv":
        return [encode_i(OPC_OP_IMM, R(ops[0]), 0, R(ops[1]), 0)]
    if mnem == "not":
        return [encode_i(OPC_OP_IMM, R(ops[0]), I_OPS["xori"], R(ops[1]), -1)]
    if mnem == "neg":
        f3, f7 = R_OPS["sub"]
        return [encode_r(OPC_OP, R(ops[0]), f3, 0, R(ops[1]), f7)]
    if mnem == "j":
        return [encode_j(0, _offset(ops[0], labels, pc))]
    if mnem == "jr":
        return [encode_i(OPC_JALR, 0, 0, R(ops[0]), 0)]
    if mnem == "ret":
        return [encode_i(OPC_JALR, 0, 0, 1, 0)]
    if mnem in ("beqz", "bnez"):
        f3 = BRANCH_OPS["beq" if mnem == "beqz" else "bne"]
        return [encode_b(f3, R(ops[0]), 0, _offset(ops[1], labels, pc))]

    # ---- RV32I ----
    if mnem in R_OPS:
        f3, f7 = R_OPS[mnem]
        return [encode_r(OPC_OP, R(ops[0]), f3, R(ops[1]), R(ops[2]), f7)]
    if mnem in I_OPS:
        return [encode_i(OPC_OP_IMM, R(ops[0]), I_OPS[mnem], R(ops[1]), _resolve(ops[2], labels))]
    if mnem in SHIFT_OPS:
        f3, f7 = SHIFT_OPS[mnem]
        shamt = _parse_imm(ops[2])
        if not 0 <= shamt <= 31:
            raise ValueError(f"Shift amount {shamt} out of range")
        return [encode_r(OPC_OP_IMM, R(ops[0]), f3, R(ops[1]), shamt, f7)]
    if mnem in ("lui", "auipc"):
        opc = OPC_LUI if mnem == "lui" else OPC_AUIPC
        imm = _resolve(ops[1], labels)
        if not 0 <= imm <= 0xFFFFF:
            raise ValueError(f"{mnem} immediate {imm:#x} does not fit 20 bits")
        return [encode_u(opc, R(ops[0]), imm)]
    if mnem == "lw":
        imm, rs1 = _parse_mem(ops[1])
        return [encode_i(OPC_LOAD, R(ops[0]), 0b010, rs1, imm)]
    if mnem == "sw":
        imm, rs1 = _parse_mem(ops[1])
        return [encode_s(OPC_STORE, 0b010, rs1, R(ops[0]), imm)]
    if mnem in BRANCH_OPS:
        return [encode_b(BRANCH_OPS[mnem], R(ops[0]), R(ops[1]), _offset(ops[2], labels, pc))]
    if mnem == "jal":
        if len(ops) == 1:
            return [encode_j(1, _offset(ops[0], labels, pc))]
        return [encode_j(R(ops[0]), _offset(ops[1], labels, pc))]
    if mnem == "jalr":
        if len(ops) == 1:
            return [encode_i(OPC_JALR, 1, 0, R(ops[0]), 0)]
        if len(ops) == 2:
            imm, rs1 = _parse_mem(ops[1])
        else:
            rs1, imm = R(ops[1]), _parse_imm(ops[2])
        return [encode_i(OPC_JALR, R(ops[0]), 0, rs1, imm)]

    # ---- Accelerator extensions ----
    if mnem in AI_R_OPS:
        opc, f3 = AI_R_OPS[mnem]
        return [encode_r(opc, R(ops[0]), f3, R(ops[1]), R(ops[2]))]
    if mnem.startswith("pool") and mnem.endswith(".n") and mnem[:-2] in AI_R_OPS:
        opc, f3 = AI_R_OPS[mnem[:-2]]
        return [encode_r(opc, R(ops[0]), f3, 0, 0, POOL_SLIDE)]
    if mnem in AI_LOAD_OPS:
        opc, f3 = AI_LOAD_OPS[mnem]
        imm, rs1 = _parse_mem(ops[1])
        return [encode_i(opc, R(ops[0]), f3, rs1, imm)]
    if mnem == "relu":
        return [encode_i(OPC_RELU, R(ops[0]), RELU_PLAIN, R(ops[1]), 0)]
    if mnem == "relu.b":
        return [encode_i(OPC_RELU, R(ops[0]), RELU_BOUNDED, R(ops[1]), _resolve(ops[2], labels))]
    if mnem == "fir":
        return [encode_i(OPC_FIR, R(ops[0]), FIR_RUN, R(ops[1]), 0)]
    if mnem == "fir.clr":
        return [encode_i(OPC_FIR, R(ops[0]) if ops else 0, FIR_CLEAR, 0, 0)]

    raise ValueError(f"Unknown mnemonic: {mnem}")


# ---------------------------------------------------------------------------
#  Disassembly
# ---------------------------------------------------------------------------

def disassemble(image, base_addr: int = 0) -> list[str]:
    """Render a program image (bytes or words) one instruction per line."""
    if isinstance(image, (bytes, bytearray)):
        image = [int.from_bytes(image[i:i + 4].ljust(4, b"\x00"), "little")
                 for i in range(0, len(image), 4)]
    return [f"  {base_addr + 4 * i:06X}  {w:08x}  {decode(w)}" for i, w in enumerate(image)]
