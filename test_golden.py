"""
Golden-model oracle tests: direct checks against hand-made commit records,
and random instruction streams run end to end through the pipeline.
"""

import unittest

import pytest

from asm import assemble
from config import SimConfig
from golden import GoldenModelOracle, exact_dot
from isa import decode
from pipeline import CommitRecord
from stimulus import random_program
from system import Simulator, words_from_bytes


def commit(program, index, value=None, store=None, rd=None, pc=None):
    word = program[index]
    ins = decode(word)
    return CommitRecord(
        cycle=0, seq=index, pc=4 * index if pc is None else pc, ins=ins,
        rd=ins.rd if rd is None else rd, value=value, store=store,
        taken=False, target=None, saturated=False, paths=())


def run_stimulus(seed, length, **cfg):
    config = SimConfig(**cfg).validate()
    stim = random_program(seed, length, config)
    sim = Simulator(config, stim.image)
    for addr, words in stim.data:
        sim.load_data(addr, words)
    return sim.run()


class TestOracle(unittest.TestCase):
    PROGRAM = words_from_bytes(assemble("""
        li   x1, 5
        sw   x1, 3(x0)
        lw   x2, 3(x0)
        ecall
    """))

    def make(self):
        return GoldenModelOracle(SimConfig().validate(), self.PROGRAM)

    def test_matching_commits(self):
        oracle = self.make()
        self.assertEqual(oracle.check(commit(self.PROGRAM, 0, value=5)), [])
        self.assertEqual(oracle.check(commit(self.PROGRAM, 1, store=(3, 5))), [])
        self.assertEqual(oracle.check(commit(self.PROGRAM, 2, value=5)), [])
        self.assertEqual(oracle.checked, 3)
        self.assertEqual(oracle.mismatches, 0)

    def test_wrong_value(self):
        oracle = self.make()
        errors = oracle.check(commit(self.PROGRAM, 0, value=6))
        self.assertEqual(len(errors), 1)
        self.assertIn("expected 5", errors[0])

    def test_wrong_store(self):
        oracle = self.make()
        oracle.check(commit(self.PROGRAM, 0, value=5))
        errors = oracle.check(commit(self.PROGRAM, 1, store=(4, 5)))
        self.assertEqual(len(errors), 1)
        self.assertIn("store", errors[0])

    def test_skipped_instruction(self):
        oracle = self.make()
        errors = oracle.check(commit(self.PROGRAM, 1, store=(3, 0)))
        self.assertTrue(any("expected 0x0" in e for e in errors))

    def test_compare_final(self):
        oracle = self.make()
        for i, kw in enumerate(({"value": 5}, {"store": (3, 5)}, {"value": 5})):
            oracle.check(commit(self.PROGRAM, i, **kw))
        regs = [0] * 32
        regs[1] = regs[2] = 5
        memory = [0] * 4096
        memory[3] = 5
        self.assertEqual(oracle.compare_final(regs, memory), [])
        memory[7] = 1
        regs[2] = 4
        errors = oracle.compare_final(regs, memory)
        self.assertEqual(len(errors), 2)

    def test_exact_dot_is_unbounded(self):
        big = 1 << 40
        self.assertEqual(exact_dot([big, big], [big, 1]), big * big + big)

    def test_accelerator_references(self):
        cfg = SimConfig(precision="INT8", pool_mode="avg").validate()
        program = words_from_bytes(assemble("""
            li       x2, 100
            li       x3, 2
            mac.w    x1, x2, x3
            fir      x4, x3
            pool     x5, x0, x3
        """))
        oracle = GoldenModelOracle(cfg, program, data={0: [1, 5, 3, 2]})
        results = [oracle.execute(decode(w), 4 * i)[0] for i, w in enumerate(program)]
        self.assertEqual(results, [100, 2, -56, 2, 2])


class TestAgainstPipeline(unittest.TestCase):
    def test_random_streams_agree(self):
        for seed in range(4):
            with self.subTest(seed=seed):
                rep = run_stimulus(seed, 150)
                self.assertEqual(rep.correctness, [])
                self.assertTrue(rep.passed, str(rep))

    def test_random_streams_all_precisions(self):
        for precision in ("INT8", "INT16"):
            with self.subTest(precision=precision):
                rep = run_stimulus(7, 150, precision=precision)
                self.assertTrue(rep.passed, str(rep))

    def test_random_stream_busy_memory(self):
        rep = run_stimulus(3, 150, mem_latency=3, bank_count=2,
                           prefetch_stride=1, prefetch_window=4)
        self.assertTrue(rep.passed, str(rep))

    def test_corrupted_result_is_caught(self):
        sim = Simulator(SimConfig(), assemble("""
            li   x1, 5
            nop
            nop
            nop
            addi x2, x1, 1
            ecall
        """))

        def corrupt(rec):
            if rec.pc == 0:
                sim.engine.regfile.write(1, 99)
        sim.subscribe("commit", corrupt)
        rep = sim.run()
        self.assertEqual(rep.status.value, "exited")
        self.assertFalse(rep.passed)
        self.assertTrue(any("x2 = 100, expected 6" in msg for msg in rep.correctness))
        self.assertTrue(any("final x1 = 99" in msg for msg in rep.correctness))


@pytest.mark.slow
class TestLongStreams(unittest.TestCase):
    def test_long_streams(self):
        configs = [{}, {"precision": "INT8"}, {"ports": 2, "bank_mapping": "stride",
                                               "interleave": 2},
                   {"kernel_size": 5, "fir_taps": 8, "pool_window": 3, "pool_stride": 1}]
        for i, cfg in enumerate(configs):
            for seed in range(5):
                with self.subTest(config=i, seed=seed):
                    rep = run_stimulus(100 + seed, 1000, **cfg)
                    self.assertTrue(rep.passed, str(rep))


if __name__ == "__main__":
    unittest.main()
