"""
Banked Data Memory
===================
Word-addressable data memory split across 2-8 banks.  Each bank has one or
two ports and a fixed access latency; a port stays busy for the whole
latency of the access it accepted.  Two accesses that need the same bank in
the same tick with no free port are a *bank conflict*; the requester is
told to retry next tick, it is never failed.

Address → bank mapping (fixed at configuration time):

    modulo : bank = addr mod N,              offset = addr div N
    stride : bank = (addr div B) mod N,      offset = (addr div (B*N))*B + addr mod B

Addresses wrap modulo the configured memory size, like the CPU bus.  An
optional stride prefetcher snapshots ``window`` words after each load;
later loads that hit the snapshot complete in one tick without a bank port.
"""

from __future__ import annotations
from typing import Optional

from config import SimConfig
from isa import s32


class MemoryBank:
    """One physical bank: storage plus per-port busy timers."""

    def __init__(self, index: int, words: int, ports: int = 1, latency: int = 1):
        self.index = index
        self.words = words
        self.ports = ports
        self.latency = latency
        self.data: list[int] = [0] * words
        self.port_busy_until: list[int] = [0] * ports   # first free cycle
        self.accesses = 0
        self.conflicts = 0

    def free_port(self, cycle: int) -> Optional[int]:
        for p, until in enumerate(self.port_busy_until):
            if until <= cycle:
                return p
        return None

    def busy(self, cycle: int) -> bool:
        return self.free_port(cycle) is None

    def reserve(self, cycle: int, ticks: Optional[int] = None) -> bool:
        """Claim a port from *cycle* for *ticks* (default: bank latency)."""
        p = self.free_port(cycle)
        if p is None:
            self.conflicts += 1
            return False
        self.port_busy_until[p] = cycle + (ticks or self.latency)
        self.accesses += 1
        return True

    def read(self, offset: int) -> int:
        return self.data[offset]

    def write(self, offset: int, value: int):
        self.data[offset] = s32(value)

    def reset_ports(self):
        self.port_busy_until = [0] * self.ports


class MemorySubsystem:
    """Set of banks behind a fixed address mapping."""

    def __init__(self, config: SimConfig):
        self.size = config.mem_words
        self.mapping = config.bank_mapping
        self.interleave = config.interleave
        self.latency = config.mem_latency
        n = config.bank_count
        self.banks: list[MemoryBank] = [
            MemoryBank(i, self.size // n, config.ports, config.mem_latency)
            for i in range(n)
        ]

        # Prefetch buffer: addr -> value snapshot
        self.prefetch_stride = config.prefetch_stride
        self.prefetch_window = config.prefetch_window
        self.prefetch: dict[int, int] = {}
        self.prefetch_hits = 0
        self.prefetch_fills = 0

    # -- Mapping --

    def wrap(self, addr: int) -> int:
        return addr % self.size

    def locate(self, addr: int) -> tuple[MemoryBank, int]:
        """Return (bank, offset-within-bank) for a word address."""
        a = self.wrap(addr)
        n = len(self.banks)
        if self.mapping == "modulo":
            return self.banks[a % n], a // n
        b = self.interleave
        block = a // b
        return self.banks[block % n], (block // n) * b + a % b

    def bank_of(self, addr: int) -> int:
        return self.locate(addr)[0].index

    # -- Untimed access (loading, inspection, functional completion) --

    def peek(self, addr: int) -> int:
        bank, off = self.locate(addr)
        return bank.read(off)

    def poke(self, addr: int, value: int):
        bank, off = self.locate(addr)
        bank.write(off, value)
        a = self.wrap(addr)
        if a in self.prefetch:
            self.prefetch[a] = s32(value)

    def load_words(self, addr: int, words):
        """Write a block of words starting at *addr* (data preload)."""
        for i, w in enumerate(words):
            self.poke(addr + i, w)

    def read_block(self, addrs) -> list[int]:
        return [self.peek(a) for a in addrs]

    # -- Timed access (pipeline Memory stage) --

    def begin_access(self, addr: int, cycle: int, is_load: bool) -> Optional[int]:
        """Start a load/store at *cycle*.

        Returns the number of ticks until the access completes, ``None`` on a
        bank conflict.  Loads that hit the prefetch buffer take one tick and
        do not occupy a bank port.
        """
        a = self.wrap(addr)
        if is_load and a in self.prefetch:
            self.prefetch_hits += 1
            return 1
        bank, _ = self.locate(a)
        if not bank.reserve(cycle):
            return None
        return bank.latency

    def reserve_burst(self, addrs, cycle: int, ticks: int) -> Optional[list[int]]:
        """All-or-nothing port claim for an accelerator window read.

        One port is claimed on every bank touched by *addrs*.  Returns the
        list of conflicting bank indices on failure, ``None`` on success.
        """
        touched = sorted({self.bank_of(a) for a in addrs})
        blocked = [i for i in touched if self.banks[i].busy(cycle)]
        if blocked:
            for i in blocked:
                self.banks[i].conflicts += 1
            return blocked
        for i in touched:
            self.banks[i].reserve(cycle, max(ticks, self.banks[i].latency))
        return None

    def complete_load(self, addr: int) -> int:
        a = self.wrap(addr)
        if a in self.prefetch:
            return self.prefetch[a]
        value = self.peek(a)
        if self.prefetch_stride:
            self._fill_prefetch(a)
        return value

    def complete_store(self, addr: int, value: int):
        self.poke(addr, value)

    def _fill_prefetch(self, addr: int):
        self.prefetch = {}
        for k in range(1, self.prefetch_window + 1):
            a = self.wrap(addr + k * self.prefetch_stride)
            self.prefetch[a] = self.peek(a)
        self.prefetch_fills += 1

    # -- Introspection --

    @property
    def conflicts(self) -> int:
        return sum(b.conflicts for b in self.banks)

    @property
    def accesses(self) -> int:
        return sum(b.accesses for b in self.banks)

    def snapshot(self) -> list[int]:
        """Full memory contents in address order."""
        return [self.peek(a) for a in range(self.size)]

    def nonzero(self) -> dict[int, int]:
        return {a: v for a, v in enumerate(self.snapshot()) if v}

    def dump(self, start: int = 0, count: int = 64, per_line: int = 8) -> str:
        lines = []
        for base in range(start, start + count, per_line):
            vals = [self.peek(base + i) for i in range(min(per_line, start + count - base))]
            cells = " ".join(f"{v & 0xFFFFFFFF:08x}" for v in vals)
            lines.append(f"  {self.wrap(base):06x}: {cells}")
        return "\n".join(lines)

    def bank_stats(self) -> list[dict]:
        return [{"bank": b.index, "accesses": b.accesses, "conflicts": b.conflicts}
                for b in self.banks]
