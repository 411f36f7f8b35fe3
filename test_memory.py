"""
Banked memory tests: address mapping, port timing and the prefetcher.
"""

import unittest

from config import SimConfig
from memory import MemorySubsystem


def make_mem(**kw):
    return MemorySubsystem(SimConfig(**kw).validate())


class TestMapping(unittest.TestCase):
    def test_modulo(self):
        mem = make_mem(bank_count=4, mem_words=64)
        self.assertEqual([mem.bank_of(a) for a in range(6)], [0, 1, 2, 3, 0, 1])
        bank, off = mem.locate(9)
        self.assertEqual((bank.index, off), (1, 2))

    def test_stride(self):
        mem = make_mem(bank_count=2, bank_mapping="stride", interleave=4, mem_words=64)
        self.assertEqual([mem.bank_of(a) for a in range(10)],
                         [0, 0, 0, 0, 1, 1, 1, 1, 0, 0])
        bank, off = mem.locate(9)
        self.assertEqual((bank.index, off), (0, 5))

    def test_addresses_wrap(self):
        mem = make_mem(mem_words=64)
        mem.poke(-1, 7)
        self.assertEqual(mem.peek(63), 7)
        mem.poke(64 + 3, 0x1_0000_0005)
        self.assertEqual(mem.peek(3), 5)

    def test_load_words_and_snapshot(self):
        mem = make_mem(mem_words=16)
        mem.load_words(2, [1, -2, 3])
        self.assertEqual(mem.snapshot()[:6], [0, 0, 1, -2, 3, 0])
        self.assertEqual(mem.nonzero(), {2: 1, 3: -2, 4: 3})


class TestTiming(unittest.TestCase):
    def test_single_port_conflict(self):
        mem = make_mem(bank_count=2, mem_latency=2, mem_words=64)
        self.assertEqual(mem.begin_access(0, 10, True), 2)
        self.assertIsNone(mem.begin_access(2, 10, True))    # same bank
        self.assertIsNone(mem.begin_access(4, 11, False))   # still busy
        self.assertEqual(mem.begin_access(1, 10, True), 2)  # other bank
        self.assertEqual(mem.begin_access(2, 12, True), 2)
        self.assertEqual(mem.conflicts, 2)

    def test_dual_port(self):
        mem = make_mem(bank_count=2, ports=2, mem_words=64)
        self.assertEqual(mem.begin_access(0, 0, True), 1)
        self.assertEqual(mem.begin_access(2, 0, True), 1)
        self.assertIsNone(mem.begin_access(4, 0, True))

    def test_burst_is_all_or_nothing(self):
        mem = make_mem(bank_count=4, mem_words=64)
        self.assertEqual(mem.begin_access(1, 0, True), 1)
        self.assertEqual(mem.reserve_burst([0, 1, 2], 0, 3), [1])
        # nothing was claimed by the failed burst
        self.assertEqual(mem.begin_access(0, 0, True), 1)
        self.assertIsNone(mem.reserve_burst([2, 3], 1, 3))
        self.assertIsNone(mem.begin_access(2, 3, True))
        self.assertEqual(mem.begin_access(2, 4, True), 1)


class TestPrefetch(unittest.TestCase):
    def test_hit_after_stride_load(self):
        mem = make_mem(prefetch_stride=1, prefetch_window=2, mem_words=64)
        mem.load_words(10, [5, 6, 7])
        self.assertEqual(mem.begin_access(10, 0, True), 1)
        self.assertEqual(mem.complete_load(10), 5)
        self.assertEqual(sorted(mem.prefetch), [11, 12])
        self.assertEqual(mem.begin_access(11, 0, True), 1)  # no port needed
        self.assertEqual(mem.prefetch_hits, 1)
        self.assertEqual(mem.complete_load(11), 6)

    def test_store_updates_snapshot(self):
        mem = make_mem(prefetch_stride=1, prefetch_window=2, mem_words=64)
        mem.complete_load(10)
        mem.complete_store(11, 42)
        self.assertEqual(mem.complete_load(11), 42)

    def test_stores_never_hit(self):
        mem = make_mem(prefetch_stride=1, prefetch_window=2, mem_words=64, mem_latency=3)
        mem.complete_load(10)
        self.assertEqual(mem.begin_access(11, 0, False), 3)


if __name__ == "__main__":
    unittest.main()
