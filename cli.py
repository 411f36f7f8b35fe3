#!/usr/bin/env python3
"""
AICore-5 Simulator Monitor / CLI
=================================
Command-line front end for the pipeline simulator.

Provides:
  - Configuration from a JSON file, with flag overrides
  - Binary / assembly loading and data preload
  - Run / tick / breakpoint execution
  - Register, memory, pipeline and unit inspection
  - Cycle trace, coverage and fault reports
  - Disassembly
  - Batch runs of seeded random programs

Usage:
  python cli.py PROGRAM [--config FILE] [--precision INT8] [--trace] [--json]
  python cli.py PROGRAM -i                 # interactive monitor
  python cli.py --assemble SRC OUT [-l]
  python cli.py --batch 16 --seed 1 --length 200
"""

from __future__ import annotations
import argparse
import cmd
import json
import logging
import shlex
import sys
from typing import Optional

from asm import assemble, disassemble, AsmError
from config import SimConfig
from faults import SimError, HaltError, ConfigFault
from system import Simulator, run_batch

# ---------------------------------------------------------------------------
#  Interactive monitor
# ---------------------------------------------------------------------------

class SimulatorCLI(cmd.Cmd):
    """Interactive monitor for one simulator run."""

    intro = (
        "\n"
        "AICore-5 pipeline monitor.  Type 'help' for commands, 'quit' to exit.\n"
    )
    prompt = "AIC5> "

    def __init__(self, sim: Simulator, stdout=None):
        super().__init__(stdout=stdout)
        self.sim = sim
        self.breakpoints: set[int] = set()
        self._hit: Optional[int] = None
        self.sim.subscribe("commit", self._on_commit)

    def _on_commit(self, rec):
        if rec.pc in self.breakpoints:
            self._hit = rec.pc

    def out(self, text: str = ""):
        print(text, file=self.stdout)

    def _parse_int(self, s: str) -> int:
        return int(s.strip(), 0)

    def onecmd(self, line):
        try:
            return super().onecmd(line)
        except ValueError as e:
            self.out(f"  Error: {e}")
            name = self.parseline(line)[0]
            doc = getattr(getattr(self, f"do_{name}", None), "__doc__", None)
            if doc:
                self.out(f"  {doc.strip().splitlines()[0]}")

    # ================================================================
    #  Commands
    # ================================================================

    # -- Loading --

    def do_load(self, arg):
        """Load a program image or assembly file: load <file>"""
        parts = shlex.split(arg)
        if not parts:
            self.out("Usage: load <file>")
            return
        try:
            self.sim.load_program_file(parts[0])
            self.out(f"Loaded {len(self.sim.program)} words from '{parts[0]}'")
        except (OSError, AsmError) as e:
            self.out(f"Error: {e}")

    def do_asm(self, arg):
        """Assemble inline source and load it: asm "li x1, 5; ecall" """
        parts = shlex.split(arg)
        if not parts:
            self.out('Usage: asm "code; code; ..."')
            return
        try:
            image = assemble(parts[0].replace(";", "\n"))
        except AsmError as e:
            self.out(f"Assembly error: {e}")
            return
        self.sim.load_program(image)
        self.out(f"Assembled {len(image) // 4} words")

    def do_data(self, arg):
        """Preload data words: data <addr> <word> [word ...]"""
        parts = shlex.split(arg)
        if len(parts) < 2:
            self.out("Usage: data <addr> <word...>")
            return
        addr = self._parse_int(parts[0])
        words = [self._parse_int(p) for p in parts[1:]]
        self.sim.load_data(addr, words)
        self.out(f"  Wrote {len(words)} words at {addr:#x}")

    def do_reset(self, arg):
        """Restart the run with the same program and data."""
        self.sim.reset()
        self.out("Reset.")

    # -- Execution --

    def do_tick(self, arg):
        """Advance N clock cycles: tick [count]"""
        count = self._parse_int(arg) if arg.strip() else 1
        for _ in range(count):
            try:
                self.sim.tick()
            except HaltError as e:
                self.out(str(e))
                break
        self.out(self.sim.engine.pipeline_view())
    do_step = do_tick

    def do_run(self, arg):
        """Run until exit, fault, breakpoint or cycle budget: run [max_cycles]"""
        budget = self._parse_int(arg) if arg.strip() else self.sim.config.max_cycles
        self._hit = None
        start = self.sim.cycle
        while not self.sim.status.finished and self.sim.cycle - start < budget:
            self.sim.tick()
            if self._hit is not None:
                self.out(f"Breakpoint: committed {self._hit:#010x} at cycle {self.sim.cycle}")
                return
        self.out(str(self.sim.report()))

    def do_bp(self, arg):
        """Break after the instruction at an address commits: bp <address>"""
        if not arg.strip():
            for a in sorted(self.breakpoints):
                self.out(f"  {a:#010x}")
            return
        addr = self._parse_int(arg)
        self.breakpoints.add(addr)
        self.out(f"Breakpoint set at {addr:#010x}")

    def do_bpd(self, arg):
        """Delete a breakpoint: bpd <address>"""
        self.breakpoints.discard(self._parse_int(arg))

    # -- Inspection --

    def do_regs(self, arg):
        """Show the register file."""
        self.out(self.sim.engine.regfile.dump())
        self.out(f"  Cycle: {self.sim.cycle}  Status: {self.sim.status.value}")

    def do_pipe(self, arg):
        """Show pipeline stage occupancy."""
        self.out(self.sim.engine.pipeline_view())

    def do_dump(self, arg):
        """Dump data memory words: dump <address> [count]"""
        parts = shlex.split(arg)
        addr = self._parse_int(parts[0]) if parts else 0
        count = self._parse_int(parts[1]) if len(parts) > 1 else 64
        self.out(self.sim.memory.dump(addr, count))

    def do_disasm(self, arg):
        """Disassemble the program: disasm [address] [count]"""
        parts = shlex.split(arg)
        addr = self._parse_int(parts[0]) if parts else 0
        count = self._parse_int(parts[1]) if len(parts) > 1 else 16
        first = addr // 4
        pc = self.sim.engine.pc
        for i, line in enumerate(disassemble(self.sim.program[first:first + count], first * 4)):
            marker = ">>>" if pc == (first + i) * 4 else "   "
            self.out(f"{marker}{line}")

    def do_units(self, arg):
        """Show accelerator unit state."""
        for kind, state in self.sim.unit_state().items():
            self.out(f"  {kind:<7s} {state}")

    def do_trace(self, arg):
        """Show the cycle trace: trace [start] [count]"""
        parts = shlex.split(arg)
        start = self._parse_int(parts[0]) if parts else 0
        count = self._parse_int(parts[1]) if len(parts) > 1 else 32
        self.out(self.sim.trace_text(start, count))

    def do_coverage(self, arg):
        """Show the coverage report."""
        self.out(self.sim.coverage_report())

    def do_faults(self, arg):
        """List recorded faults."""
        faults = self.sim.faults
        if not faults:
            self.out("  no faults")
        for f in faults:
            self.out(f"  {f}")

    def do_report(self, arg):
        """Show the run report."""
        self.out(str(self.sim.report()))

    def do_status(self, arg):
        """Show full simulator state."""
        self.out(self.sim.dump_state())

    def do_config(self, arg):
        """Show the active configuration."""
        for k, v in self.sim.config.to_dict().items():
            self.out(f"  {k:<16s} {v}")

    def do_quit(self, arg):
        """Exit the monitor."""
        self.out("Goodbye.")
        return True
    do_exit = do_quit
    do_q = do_quit

    def do_EOF(self, arg):
        self.out()
        return self.do_quit(arg)

    def default(self, line):
        self.out(f"Unknown command: {line.split()[0]!r}. Type 'help' for available commands.")

    def emptyline(self):
        pass


# ---------------------------------------------------------------------------
#  Main
# ---------------------------------------------------------------------------

# flag -> SimConfig field
OVERRIDES = {
    "precision": "precision", "acc_width": "acc_width", "saturation": "saturation",
    "banks": "bank_count", "ports": "ports", "latency": "mem_latency",
    "mapping": "bank_mapping", "interleave": "interleave", "mem_words": "mem_words",
    "kernel_size": "kernel_size", "fir_taps": "fir_taps", "pool_mode": "pool_mode",
    "pool_window": "pool_window", "pool_stride": "pool_stride",
    "pool_rounding": "pool_rounding", "max_cycles": "max_cycles",
}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="AICore-5 cycle-accurate pipeline simulator",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("program", nargs="?", help="program image (.bin) or assembly (.s/.asm)")
    parser.add_argument("--config", "-c", help="JSON configuration file")
    parser.add_argument("--precision", choices=["INT8", "INT16", "INT32"])
    parser.add_argument("--acc-width", dest="acc_width", type=int)
    parser.add_argument("--saturation", choices=["clamp", "wrap"])
    parser.add_argument("--banks", type=int)
    parser.add_argument("--ports", type=int, choices=[1, 2])
    parser.add_argument("--latency", type=int, help="bank access latency in ticks")
    parser.add_argument("--mapping", choices=["modulo", "stride"])
    parser.add_argument("--interleave", type=int)
    parser.add_argument("--mem-words", dest="mem_words", type=int)
    parser.add_argument("--prefetch", nargs=2, type=int, metavar=("STRIDE", "WINDOW"))
    parser.add_argument("--kernel-size", dest="kernel_size", type=int, choices=[3, 5])
    parser.add_argument("--fir-taps", dest="fir_taps", type=int)
    parser.add_argument("--pool-mode", dest="pool_mode", choices=["max", "avg"])
    parser.add_argument("--pool-window", dest="pool_window", type=int)
    parser.add_argument("--pool-stride", dest="pool_stride", type=int)
    parser.add_argument("--pool-rounding", dest="pool_rounding", choices=["floor", "nearest"])
    parser.add_argument("--max-cycles", dest="max_cycles", type=int)
    parser.add_argument("--no-golden", action="store_true", help="disable the golden-model oracle")
    parser.add_argument("--data", action="append", default=[], metavar="ADDR:W,W,...",
                        help="preload data words (repeatable)")

    parser.add_argument("--trace", action="store_true", help="print the cycle trace")
    parser.add_argument("--coverage", action="store_true", help="print the coverage report")
    parser.add_argument("--state", action="store_true", help="print the final state dump")
    parser.add_argument("--json", action="store_true", help="print the report as JSON")
    parser.add_argument("-i", "--interactive", action="store_true", help="start the monitor")

    parser.add_argument("--assemble", nargs=2, metavar=("SRC", "OUT"),
                        help="assemble SRC to a binary image and exit")
    parser.add_argument("--listing", "-l", action="store_true", help="print an assembly listing")
    parser.add_argument("--disasm", action="store_true", help="disassemble PROGRAM and exit")

    parser.add_argument("--batch", type=int, metavar="N", help="run N seeded random programs")
    parser.add_argument("--seed", type=int, default=0)
    parser.add_argument("--length", type=int, default=100)
    parser.add_argument("--workers", type=int, default=None)
    parser.add_argument("-v", "--verbose", action="count", default=0)
    return parser


def load_config(args) -> SimConfig:
    """JSON file first, then command-line overrides."""
    cfg = SimConfig.from_json(args.config) if args.config else SimConfig()
    changes = {}
    for flag, name in OVERRIDES.items():
        val = getattr(args, flag)
        if val is not None:
            changes[name] = val
    if args.prefetch:
        changes["prefetch_stride"], changes["prefetch_window"] = args.prefetch
    if args.no_golden:
        changes["check_golden"] = False
    if args.trace:
        changes["trace"] = True
    return cfg.replace(**changes) if changes else cfg.validate()


def parse_data(text: str) -> tuple[int, list[int]]:
    addr_s, _, words_s = text.partition(":")
    return int(addr_s, 0), [int(w, 0) for w in words_s.split(",") if w.strip()]


def _batch(args, cfg: SimConfig) -> int:
    from stimulus import random_programs
    stims = random_programs(args.batch, seed=args.seed, length=args.length, config=cfg)
    reports = run_batch([s.image for s in stims], cfg,
                        data=[s.data for s in stims], workers=args.workers)
    failed = 0
    for stim, rep in zip(stims, reports):
        verdict = "PASS" if rep.passed else "FAIL"
        failed += not rep.passed
        print(f"  seed {stim.seed:>5d}  {verdict}  {rep.status.value:<20s} "
              f"cycles={rep.cycles:<7d} retired={rep.retired:<6d} CPI={rep.cpi:.3f}")
    print(f"{len(reports) - failed}/{len(reports)} passed")
    return 1 if failed else 0


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)
    level = logging.WARNING - 10 * min(args.verbose, 2)
    logging.basicConfig(level=level, format="%(levelname)s %(name)s: %(message)s")

    # ---- Assemble-only mode -------------------------------------------
    if args.assemble:
        src_path, out_path = args.assemble
        with open(src_path, "r") as f:
            source = f.read()
        try:
            code = assemble(source, 0, listing=args.listing)
        except AsmError as e:
            print(f"Assembly error: {e}", file=sys.stderr)
            return 1
        with open(out_path, "wb") as f:
            f.write(code)
        print(f"Assembled {src_path} -> {out_path} ({len(code)} bytes)")
        return 0

    try:
        cfg = load_config(args)
    except ConfigFault as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        return 2

    if args.batch:
        return _batch(args, cfg)

    sim = Simulator(cfg)
    if args.program:
        try:
            sim.load_program_file(args.program)
        except (OSError, AsmError) as e:
            print(f"Error loading {args.program}: {e}", file=sys.stderr)
            return 1
    for item in args.data:
        sim.load_data(*parse_data(item))

    if args.disasm:
        print("\n".join(disassemble(sim.program)))
        return 0

    if args.interactive or not args.program:
        cli = SimulatorCLI(sim)
        try:
            cli.cmdloop()
        except KeyboardInterrupt:
            print("\nInterrupted. Goodbye.")
        return 0

    try:
        report = sim.run()
    except SimError as e:
        print(f"Simulation error: {e}", file=sys.stderr)
        return 1

    if args.trace:
        print(sim.trace_text())
    if args.state:
        print(sim.dump_state())
    if args.coverage:
        print(sim.coverage_report())
    if args.json:
        print(json.dumps(report.to_dict(), indent=2))
    else:
        print(report)
    return 0 if report.passed else 1


if __name__ == "__main__":
    sys.exit(main())
