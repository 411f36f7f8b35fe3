"""
Configuration tests: defaults, validation and JSON loading.
"""

import json
import os
import tempfile
import unittest

from config import SimConfig, PrecisionConfig
from faults import ConfigFault


class TestPrecision(unittest.TestCase):
    def test_defaults_follow_operand_width(self):
        p = SimConfig(precision="INT8").precision_config
        self.assertEqual((p.operand_bits, p.acc_bits, p.lanes), (8, 8, 4))
        p = SimConfig(precision="INT16", acc_width=32).precision_config
        self.assertEqual((p.operand_bits, p.acc_bits, p.lanes), (16, 32, 2))

    def test_accumulate(self):
        p = PrecisionConfig(8, 8, True)
        self.assertEqual(p.accumulate(300), (127, True))
        self.assertEqual(p.accumulate(300, saturate=False), (44, True))
        self.assertEqual(p.operand(0x1FF), -1)
        self.assertEqual(p.label(), "INT8/acc8/clamp")


class TestValidation(unittest.TestCase):
    def assertRejects(self, field, **kw):
        with self.assertRaises(ConfigFault) as cm:
            SimConfig(**kw).validate()
        self.assertEqual(cm.exception.field, field)

    def test_defaults_valid(self):
        cfg = SimConfig().validate()
        self.assertEqual(cfg.kernel_table, [0, 0, 0, 0, 1, 0, 0, 0, 0])
        self.assertEqual(cfg.fir_table, [1, 0, 0, 0])

    def test_bad_fields(self):
        self.assertRejects("precision", precision="INT4")
        self.assertRejects("bank_count", bank_count=1)
        self.assertRejects("bank_count", bank_count=9)
        self.assertRejects("ports", ports=3)
        self.assertRejects("kernel_size", kernel_size=4)
        self.assertRejects("kernel", kernel=[1, 2, 3])
        self.assertRejects("fir_coeffs", fir_taps=3, fir_coeffs=[1, 0])
        self.assertRejects("pool_mode", pool_mode="min")
        self.assertRejects("mem_words", mem_words=1000, bank_count=3)
        self.assertRejects("prefetch_window", prefetch_stride=1)
        self.assertRejects("start_pc", start_pc=2)

    def test_wrong_types(self):
        self.assertRejects("bank_count", bank_count="4")
        self.assertRejects("max_cycles", max_cycles=1.5)
        self.assertRejects("ports", ports=True)
        self.assertRejects("acc_width", acc_width="32")
        self.assertRejects("precision", precision=["INT8"])
        self.assertRejects("pool_mode", pool_mode=None)
        self.assertRejects("trace", trace="yes")
        self.assertRejects("kernel", kernel=5)
        self.assertRejects("kernel", kernel=[])
        self.assertRejects("kernel", kernel=[[1, 2, 3], [4, "5", 6], [7, 8, 9]])
        self.assertRejects("fir_coeffs", fir_coeffs=["a", 0, 0, 0])
        self.assertRejects("fir_coeffs", fir_coeffs=[[1], 0, 0, 0])

    def test_coefficients_must_fit_precision(self):
        self.assertRejects("kernel", precision="INT8",
                           kernel=[0, 0, 0, 0, 200, 0, 0, 0, 0])
        SimConfig(precision="INT16", kernel=[0, 0, 0, 0, 200, 0, 0, 0, 0]).validate()

    def test_nested_kernel(self):
        cfg = SimConfig(kernel=[[1, 2, 3], [4, 5, 6], [7, 8, 9]]).validate()
        self.assertEqual(cfg.kernel_table, list(range(1, 10)))


class TestLoading(unittest.TestCase):
    def test_from_dict(self):
        cfg = SimConfig.from_dict({"precision": "int8", "ports": "dual", "bank_count": 2})
        self.assertEqual((cfg.precision, cfg.ports, cfg.bank_count), ("INT8", 2, 2))

    def test_from_dict_wrong_types(self):
        for data, field in (({"bank_count": "4"}, "bank_count"),
                            ({"kernel": 5}, "kernel"),
                            ({"fir_coeffs": ["a", 0, 0, 0]}, "fir_coeffs"),
                            ({"ports": "triple"}, "ports")):
            with self.assertRaises(ConfigFault) as cm:
                SimConfig.from_dict(data)
            self.assertEqual(cm.exception.field, field)

    def test_unknown_field(self):
        with self.assertRaises(ConfigFault) as cm:
            SimConfig.from_dict({"banks": 4})
        self.assertEqual(cm.exception.field, "banks")

    def test_from_json(self):
        with tempfile.TemporaryDirectory() as d:
            path = os.path.join(d, "cfg.json")
            with open(path, "w") as f:
                json.dump({"precision": "INT16", "fir_taps": 2, "fir_coeffs": [1, 1]}, f)
            cfg = SimConfig.from_json(path)
            self.assertEqual(cfg.fir_table, [1, 1])

            with open(path, "w") as f:
                f.write("[1, 2]")
            with self.assertRaises(ConfigFault):
                SimConfig.from_json(path)
        with self.assertRaises(ConfigFault):
            SimConfig.from_json("/nonexistent/cfg.json")

    def test_replace_revalidates(self):
        cfg = SimConfig()
        self.assertEqual(cfg.replace(max_cycles=50).max_cycles, 50)
        with self.assertRaises(ConfigFault):
            cfg.replace(max_cycles=0)
        self.assertEqual(cfg.max_cycles, 100_000)


if __name__ == "__main__":
    unittest.main()
