"""
Random stream generator tests.
"""

import unittest

from config import SimConfig
from faults import RunStatus
from isa import decode, OpKind
from stimulus import random_program, random_programs, DATA_BASE, COEFF_BASE, DATA_WORDS
from system import Simulator


def program_words(stim):
    return [int.from_bytes(stim.image[4 * i:4 * i + 4], "little") for i in range(stim.words)]


class TestGenerator(unittest.TestCase):
    def test_same_seed_same_program(self):
        a, b = random_program(3, 80), random_program(3, 80)
        self.assertEqual(a.image, b.image)
        self.assertEqual(a.data, b.data)
        self.assertNotEqual(a.image, random_program(4, 80).image)

    def test_ends_with_ecall(self):
        stim = random_program(1, 50)
        last = int.from_bytes(stim.image[-4:], "little")
        self.assertEqual(decode(last).mnemonic, "ecall")
        self.assertGreaterEqual(stim.words, 50)

    def test_every_word_decodes(self):
        stim = random_program(2, 200)
        for i, word in enumerate(program_words(stim)):
            self.assertNotEqual(decode(word).kind, OpKind.ILLEGAL, f"word {i}")

    def test_branches_only_go_forward(self):
        stim = random_program(9, 300)
        for word in program_words(stim):
            ins = decode(word)
            if ins.mnemonic != "jalr" and ins.kind == OpKind.BRANCH:
                self.assertGreater(ins.imm, 0)

    def test_jump_targets_stay_inside_program(self):
        for seed in range(200):
            stim = random_program(seed, 40)
            end = 4 * (stim.words - 1)
            for i, word in enumerate(program_words(stim)):
                ins = decode(word)
                if ins.kind != OpKind.BRANCH:
                    continue
                target = ins.imm if ins.mnemonic == "jalr" else 4 * i + ins.imm
                self.assertLessEqual(target, end, f"seed {seed} word {i}: {ins}")

    def test_data_layout_follows_config(self):
        cfg = SimConfig(kernel_size=5, fir_taps=32, precision="INT8").validate()
        stim = random_program(5, 20, cfg)
        (coeff_addr, coeffs), (data_addr, values) = stim.data
        self.assertEqual((coeff_addr, data_addr), (COEFF_BASE, DATA_BASE))
        self.assertEqual(len(coeffs), 32)
        self.assertGreaterEqual(len(values), DATA_WORDS)
        self.assertTrue(all(-128 <= v <= 127 for v in values))

    def test_random_programs(self):
        stims = random_programs(3, seed=10, length=30)
        self.assertEqual([s.seed for s in stims], [10, 11, 12])


class TestTermination(unittest.TestCase):
    def test_streams_exit_through_ecall(self):
        cfg = SimConfig().validate()
        failures = []
        for stim in random_programs(200, seed=0, length=40, config=cfg):
            sim = Simulator(cfg, stim.image)
            for addr, words in stim.data:
                sim.load_data(addr, words)
            rep = sim.run()
            if rep.status != RunStatus.EXITED or not rep.passed:
                failures.append((stim.seed, rep.status.value))
        self.assertEqual(failures, [])


if __name__ == "__main__":
    unittest.main()
