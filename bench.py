#!/usr/bin/env python3
"""
bench.py - Simulator throughput and CPI per configuration
=========================================================

Runs a counted MAC loop and a seeded random stream under a few
configurations and reports simulated cycles/second and CPI.

Usage:
    python bench.py
    python bench.py --iterations 5000 --length 2000
"""

import argparse
import time

from asm import assemble
from config import SimConfig
from stimulus import random_program
from system import Simulator


def make_loop_program(iterations: int) -> bytes:
    """
        li   x1, N        ; loop counter
        li   x2, 3
        li   x3, 4
    loop:
        mac  x4, x2, x3   ; x4 += 12
        addi x1, x1, -1
        bne  x1, x0, loop
        ecall
    """
    return assemble(f"""
        li   x1, {iterations}
        li   x2, 3
        li   x3, 4
    loop:
        mac  x4, x2, x3
        addi x1, x1, -1
        bne  x1, x0, loop
        ecall
    """)


CONFIGS = {
    "INT32 1-port":      {},
    "INT8 1-port":       {"precision": "INT8"},
    "INT32 2-port lat2": {"ports": 2, "mem_latency": 2},
    "INT16 prefetch":    {"precision": "INT16", "prefetch_stride": 1, "prefetch_window": 4},
}


def run_one(name: str, overrides: dict, image: bytes, data=()) -> tuple[float, Simulator]:
    cfg = SimConfig.from_dict(dict(overrides, trace=False, max_cycles=10_000_000))
    sim = Simulator(cfg, image)
    for addr, words in data:
        sim.load_data(addr, words)
    t0 = time.perf_counter()
    sim.run()
    return time.perf_counter() - t0, sim


def main():
    parser = argparse.ArgumentParser(description="AICore-5 simulator benchmark")
    parser.add_argument("--iterations", type=int, default=2000,
                        help="MAC loop iterations (default: 2000)")
    parser.add_argument("--length", type=int, default=1000,
                        help="random stream length (default: 1000)")
    parser.add_argument("--seed", type=int, default=1)
    args = parser.parse_args()

    loop = make_loop_program(args.iterations)
    print(f"MAC loop: {args.iterations:,} iterations")
    for name, overrides in CONFIGS.items():
        elapsed, sim = run_one(name, overrides, loop)
        rep = sim.report()
        print(f"  {name:<20s} {elapsed:7.3f}s  {rep.cycles / elapsed:>10,.0f} cyc/s  "
              f"CPI={rep.cpi:.3f}  {'PASS' if rep.passed else 'FAIL'}")

    print()
    print(f"Random stream: seed {args.seed}, {args.length} instructions")
    for name, overrides in CONFIGS.items():
        stim = random_program(args.seed, args.length, SimConfig.from_dict(overrides))
        elapsed, sim = run_one(name, overrides, stim.image, stim.data)
        rep = sim.report()
        print(f"  {name:<20s} {elapsed:7.3f}s  {rep.cycles / elapsed:>10,.0f} cyc/s  "
              f"CPI={rep.cpi:.3f}  stalls={sum(rep.stalls.values())}  "
              f"{'PASS' if rep.passed else 'FAIL'}")


if __name__ == "__main__":
    main()
