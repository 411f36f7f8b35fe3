"""
Hazard Detection and Forwarding
================================
Read-after-write hazards are resolved from an explicit forwarding table
keyed by the distance (in stages) between a producer still in flight and
the consumer that needs its value:

    distance 1   EX  -> EX    value in the EX/MEM latch (producer now in MEM)
    distance 2   MEM -> EX    value in the MEM/WB latch (producer now in WB)
    distance 3   WB  -> ID    register file written before it is read

A load has no value until it leaves the Memory stage, so a consumer in
Decode stalls while the load is in Execute, or in Memory and not finishing
this tick.  Blocking accelerator units take a new operation only after the
previous one has committed.  Accelerator window reads wait while an older
store is still in Memory.

The unit is purely combinational: it looks at the slots committed at the
end of the previous tick and never modifies them.
"""

from __future__ import annotations
from dataclasses import dataclass
from typing import Optional

from isa import Instruction, OpKind

# Stage indices shared with the pipeline engine
IF, ID, EX, MEM, WB = range(5)
STAGE_NAMES = ("IF", "ID", "EX", "MEM", "WB")


@dataclass(frozen=True)
class ForwardPath:
    name: str
    producer: str
    consumer: str
    distance: int


FORWARD_TABLE = {
    1: ForwardPath("fwd_ex_ex", "EX", "EX", 1),
    2: ForwardPath("fwd_mem_ex", "MEM", "EX", 2),
    3: ForwardPath("fwd_wb_id", "WB", "ID", 3),
}

# Stall causes reported to coverage
STALL_LOAD_USE   = "stall_load_use"
STALL_UNIT_BUSY  = "stall_unit_busy"
STALL_MEM_ORDER  = "stall_mem_order"
BANK_CONFLICT    = "bank_conflict"

HAZARD_PATHS = tuple(p.name for p in FORWARD_TABLE.values()) + (
    STALL_LOAD_USE, STALL_UNIT_BUSY, STALL_MEM_ORDER, BANK_CONFLICT,
)


def path_for(producer_stage: int, consumer_stage: int) -> Optional[ForwardPath]:
    """Forwarding path between two stage indices, if one exists."""
    return FORWARD_TABLE.get(producer_stage - consumer_stage)


def value_ready(slot) -> bool:
    """True if *slot* holds a register result that can be forwarded."""
    if not slot.valid or slot.ins is None or not slot.ins.produces:
        return False
    # loads fill in their result only when the Memory access completes
    return slot.result is not None


class HazardUnit:
    """Stall and forwarding decisions for one pipeline."""

    def __init__(self, blocking_kinds=frozenset({OpKind.CONV2D, OpKind.FIR})):
        self.blocking_kinds = frozenset(blocking_kinds)
        self.forwards = {p.name: 0 for p in FORWARD_TABLE.values()}

    # -- Decode stage --

    def read_operands(self, ins: Instruction, regfile, wb_slot) -> tuple[dict, dict]:
        """Register-file read with the WB->ID write-before-read path.

        Returns ``(operands, sources)`` where ``sources`` maps each operand
        name that bypassed the register file to its path name.
        """
        ops, srcs = {}, {}
        bypass = path_for(WB, ID)
        for name, reg in ins.sources:
            if reg and value_ready(wb_slot) and wb_slot.ins.produces == reg:
                ops[name] = wb_slot.result
                srcs[name] = bypass.name
            else:
                ops[name] = regfile.read(reg)
        return ops, srcs

    def decode_stall(self, ins: Instruction, ex_slot, mem_slot,
                     mem_completes: bool) -> Optional[str]:
        """Reason the instruction in Decode must wait, or None."""
        regs = {reg for _, reg in ins.sources if reg}
        if regs:
            if (ex_slot.valid and ex_slot.ins.kind == OpKind.LOAD
                    and ex_slot.ins.produces in regs):
                return STALL_LOAD_USE
            if (mem_slot.valid and mem_slot.ins.kind == OpKind.LOAD
                    and mem_slot.ins.produces in regs and not mem_completes):
                return STALL_LOAD_USE
        if ins.kind in self.blocking_kinds:
            for slot in (ex_slot, mem_slot):
                if slot.valid and slot.ins.kind == ins.kind:
                    return STALL_UNIT_BUSY
        return None

    # -- Execute stage --

    def forward(self, ins: Instruction, operands: dict, sources: dict,
                mem_slot, wb_slot) -> tuple[dict, dict, bool]:
        """Apply EX->EX and MEM->EX forwarding to latched operands.

        Returns ``(operands, sources, ready)``; ``ready`` is False when the
        nearest producer is a load whose value does not exist yet.
        """
        ops, srcs = dict(operands), dict(sources)
        ready = True
        for name, reg in ins.sources:
            if not reg:
                continue
            for stage, slot in ((MEM, mem_slot), (WB, wb_slot)):
                if not (slot.valid and slot.ins is not None and slot.ins.produces == reg):
                    continue
                if value_ready(slot):
                    ops[name] = slot.result
                    srcs[name] = path_for(stage, EX).name
                else:
                    ready = False
                break
        return ops, srcs, ready

    def memory_order_stall(self, mem_slot) -> bool:
        """An older store still in Memory blocks accelerator window reads."""
        return mem_slot.valid and mem_slot.ins.kind == OpKind.STORE

    def note_forwards(self, paths):
        for path in set(paths):
            self.forwards[path] += 1
