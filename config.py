"""
Simulation Configuration
=========================
Everything fixed for the lifetime of one run: precision mode, memory
geometry, accelerator parameters and the cycle budget.  A configuration is
validated once, when the simulator is built; any inconsistency raises
:class:`faults.ConfigFault` and no tick is ever executed.

Configurations load from a plain dict or a JSON file:

    {
      "precision": "INT8",
      "bank_count": 4, "ports": 1, "mem_latency": 2,
      "kernel_size": 3, "kernel": [[0,0,0],[0,1,0],[0,0,0]],
      "fir_taps": 4, "fir_coeffs": [1, 0, 0, 0],
      "pool_mode": "max", "pool_window": 2, "pool_stride": 2,
      "max_cycles": 100000
    }
"""

from __future__ import annotations
import json
from dataclasses import dataclass, fields, asdict
from typing import Optional

from faults import ConfigFault
from isa import sign_extend, clamp, wrap, signed_range

PRECISION_BITS = {"INT8": 8, "INT16": 16, "INT32": 32}
SATURATION_RULES = ("clamp", "wrap")
BANK_MAPPINGS = ("modulo", "stride")
POOL_MODES = ("max", "avg")
POOL_ROUNDING = ("floor", "nearest")
KERNEL_SIZES = (3, 5)
MAX_FIR_TAPS = 64
MAX_POOL_WINDOW = 8

INT_FIELDS = (
    "acc_width", "bank_count", "ports", "mem_latency", "interleave", "mem_words",
    "prefetch_stride", "prefetch_window", "kernel_size", "fir_taps",
    "pool_window", "pool_stride", "max_cycles", "start_pc",
)
STR_FIELDS = ("precision", "saturation", "bank_mapping", "pool_mode", "pool_rounding")
BOOL_FIELDS = ("trace", "check_golden")

# ---------------------------------------------------------------------------
#  Precision
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class PrecisionConfig:
    """Operand width, accumulator width and overflow rule for the AI units."""
    operand_bits: int = 32
    acc_bits: int = 32
    saturate: bool = True

    @property
    def lanes(self) -> int:
        """Operand lanes per 32-bit datapath beat."""
        return 32 // self.operand_bits

    @property
    def acc_range(self) -> tuple[int, int]:
        return signed_range(self.acc_bits)

    def operand(self, v: int) -> int:
        """View a register or memory word at operand width."""
        return sign_extend(v, self.operand_bits)

    def accumulate(self, v: int, saturate: Optional[bool] = None) -> tuple[int, bool]:
        """Apply the overflow rule at accumulator width.

        Returns ``(value, overflowed)``.  *saturate* overrides the configured
        rule for instruction variants that pick their own.
        """
        if saturate is None:
            saturate = self.saturate
        if saturate:
            return clamp(v, self.acc_bits)
        return wrap(v, self.acc_bits)

    def result(self, v: int, saturate: Optional[bool] = None) -> tuple[int, bool]:
        """Accumulator value as written back to a 32-bit register.

        Accumulators wider than the register are narrowed with the same
        overflow rule as :meth:`accumulate`; returns ``(value, overflowed)``.
        """
        if saturate is None:
            saturate = self.saturate
        if saturate:
            return clamp(v, 32)
        return wrap(v, 32)

    def label(self) -> str:
        rule = "clamp" if self.saturate else "wrap"
        return f"INT{self.operand_bits}/acc{self.acc_bits}/{rule}"


# ---------------------------------------------------------------------------
#  Full configuration
# ---------------------------------------------------------------------------

@dataclass
class SimConfig:
    # Precision
    precision: str = "INT32"
    acc_width: Optional[int] = None      # None: same as operand width
    saturation: str = "clamp"

    # Memory subsystem
    bank_count: int = 4
    ports: int = 1
    mem_latency: int = 1
    bank_mapping: str = "modulo"
    interleave: int = 1                  # block size for "stride" mapping
    mem_words: int = 4096
    prefetch_stride: int = 0             # 0 disables the prefetcher
    prefetch_window: int = 0

    # Accelerators
    kernel_size: int = 3
    kernel: Optional[list] = None        # K*K coefficients, flat or nested
    fir_taps: int = 4
    fir_coeffs: Optional[list] = None
    pool_mode: str = "max"
    pool_window: int = 2
    pool_stride: int = 2
    pool_rounding: str = "floor"

    # Run control
    max_cycles: int = 100_000
    start_pc: int = 0
    trace: bool = True
    check_golden: bool = True

    # -- Derived --

    @property
    def precision_config(self) -> PrecisionConfig:
        bits = PRECISION_BITS[self.precision]
        acc = self.acc_width if self.acc_width is not None else bits
        return PrecisionConfig(operand_bits=bits, acc_bits=acc,
                               saturate=self.saturation == "clamp")

    @property
    def kernel_table(self) -> list[int]:
        """Flattened row-major kernel coefficients (identity by default)."""
        k = self.kernel_size
        if self.kernel is None:
            table = [0] * (k * k)
            table[(k * k) // 2] = 1
            return table
        return _flatten(self.kernel)

    @property
    def fir_table(self) -> list[int]:
        if self.fir_coeffs is None:
            return [1] + [0] * (self.fir_taps - 1)
        return list(self.fir_coeffs)

    # -- Validation --

    def _check_types(self):
        for name in INT_FIELDS:
            value = getattr(self, name)
            if value is None and name == "acc_width":
                continue
            if not _is_int(value):
                raise ConfigFault(name, f"must be an integer, got {value!r}")
        for name in STR_FIELDS:
            value = getattr(self, name)
            if not isinstance(value, str):
                raise ConfigFault(name, f"must be a string, got {value!r}")
        for name in BOOL_FIELDS:
            value = getattr(self, name)
            if not isinstance(value, bool):
                raise ConfigFault(name, f"must be true or false, got {value!r}")
        for name in ("kernel", "fir_coeffs"):
            table = getattr(self, name)
            if table is None:
                continue
            if not isinstance(table, (list, tuple)) or not table:
                raise ConfigFault(name, f"must be a non-empty list of integers, got {table!r}")
            for row in table:
                # kernels may be given as a list of rows
                values = row if name == "kernel" and isinstance(row, (list, tuple)) else [row]
                if not all(_is_int(v) for v in values):
                    raise ConfigFault(name, f"coefficients must be integers, got {row!r}")

    def validate(self) -> "SimConfig":
        """Raise ConfigFault on the first inconsistent field."""
        self._check_types()
        if self.precision not in PRECISION_BITS:
            raise ConfigFault("precision", f"must be one of {sorted(PRECISION_BITS)}, got {self.precision!r}")
        bits = PRECISION_BITS[self.precision]
        if self.acc_width is not None and not (bits <= self.acc_width <= 64):
            raise ConfigFault("acc_width", f"must be between {bits} and 64, got {self.acc_width}")
        _choice("saturation", self.saturation, SATURATION_RULES)

        if not (2 <= self.bank_count <= 8):
            raise ConfigFault("bank_count", f"must be 2..8, got {self.bank_count}")
        if self.ports not in (1, 2):
            raise ConfigFault("ports", f"must be 1 (single) or 2 (dual), got {self.ports}")
        if self.mem_latency < 1:
            raise ConfigFault("mem_latency", "must be at least 1 tick")
        _choice("bank_mapping", self.bank_mapping, BANK_MAPPINGS)
        if self.interleave < 1:
            raise ConfigFault("interleave", "must be at least 1 word")
        if self.mem_words <= 0 or self.mem_words % (self.bank_count * self.interleave):
            raise ConfigFault("mem_words",
                              f"{self.mem_words} is not a multiple of bank_count*interleave "
                              f"({self.bank_count * self.interleave})")
        if self.prefetch_stride < 0 or self.prefetch_window < 0:
            raise ConfigFault("prefetch_stride", "prefetch stride/window cannot be negative")
        if (self.prefetch_stride == 0) != (self.prefetch_window == 0):
            raise ConfigFault("prefetch_window",
                              "prefetch_stride and prefetch_window must both be set or both be 0")

        if self.kernel_size not in KERNEL_SIZES:
            raise ConfigFault("kernel_size", f"must be 3 or 5, got {self.kernel_size}")
        table = self.kernel_table
        if len(table) != self.kernel_size ** 2:
            raise ConfigFault("kernel", f"{len(table)} coefficients for a "
                              f"{self.kernel_size}x{self.kernel_size} kernel")
        if self.kernel is not None and isinstance(self.kernel[0], (list, tuple)):
            if any(len(row) != self.kernel_size for row in self.kernel):
                raise ConfigFault("kernel", "kernel rows do not match kernel_size")
        _check_coeffs("kernel", table, bits)

        if not (1 <= self.fir_taps <= MAX_FIR_TAPS):
            raise ConfigFault("fir_taps", f"must be 1..{MAX_FIR_TAPS}, got {self.fir_taps}")
        if len(self.fir_table) != self.fir_taps:
            raise ConfigFault("fir_coeffs", f"{len(self.fir_table)} coefficients for "
                              f"{self.fir_taps} taps")
        _check_coeffs("fir_coeffs", self.fir_table, bits)

        _choice("pool_mode", self.pool_mode, POOL_MODES)
        _choice("pool_rounding", self.pool_rounding, POOL_ROUNDING)
        if not (1 <= self.pool_window <= MAX_POOL_WINDOW):
            raise ConfigFault("pool_window", f"must be 1..{MAX_POOL_WINDOW}, got {self.pool_window}")
        if self.pool_stride < 1:
            raise ConfigFault("pool_stride", "must be at least 1")

        if self.max_cycles < 1:
            raise ConfigFault("max_cycles", "must be positive")
        if self.start_pc % 4:
            raise ConfigFault("start_pc", "must be word aligned")
        return self

    # -- Loading --

    @classmethod
    def from_dict(cls, data: dict) -> "SimConfig":
        known = {f.name for f in fields(cls)}
        unknown = set(data) - known
        if unknown:
            raise ConfigFault(sorted(unknown)[0], "unknown configuration field")
        data = dict(data)
        if isinstance(data.get("ports"), str):
            data["ports"] = {"single": 1, "dual": 2}.get(data["ports"].lower(), data["ports"])
        if isinstance(data.get("precision"), str):
            data["precision"] = data["precision"].upper()
        return cls(**data).validate()

    @classmethod
    def from_json(cls, path: str) -> "SimConfig":
        try:
            with open(path) as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            raise ConfigFault("file", f"cannot load {path}: {e}") from e
        if not isinstance(data, dict):
            raise ConfigFault("file", f"{path} does not contain a JSON object")
        return cls.from_dict(data)

    def replace(self, **changes) -> "SimConfig":
        data = asdict(self)
        data.update(changes)
        return SimConfig.from_dict(data)

    def to_dict(self) -> dict:
        return asdict(self)


def _choice(name: str, value, options):
    if value not in options:
        raise ConfigFault(name, f"must be one of {list(options)}, got {value!r}")

def _flatten(table) -> list[int]:
    out = []
    for row in table:
        if isinstance(row, (list, tuple)):
            out.extend(int(v) for v in row)
        else:
            out.append(int(row))
    return out

def _check_coeffs(name: str, table: list[int], bits: int):
    lo, hi = signed_range(bits)
    for i, c in enumerate(table):
        if not (lo <= c <= hi):
            raise ConfigFault(name, f"coefficient {i} = {c} does not fit INT{bits}")

def _is_int(value) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)
