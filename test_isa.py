"""
Instruction set tests: bit helpers, decoder, encoders and rendering.
"""

import unittest

from isa import (
    OpKind, decode, encode_r, encode_i, encode_s, encode_b, encode_j, encode_u,
    sign_extend, clamp, wrap, u32, s32,
    OPC_OP_IMM, OPC_MAC, OPC_POOL, OPC_LUI, OPC_SYSTEM,
    MAC_SAT, POOL_MAX, POOL_SLIDE,
)


class TestHelpers(unittest.TestCase):
    def test_sign_extend(self):
        self.assertEqual(sign_extend(0xFF, 8), -1)
        self.assertEqual(sign_extend(0x7F, 8), 127)
        self.assertEqual(sign_extend(0x1FF, 8), -1)
        self.assertEqual(sign_extend(0x8000, 16), -32768)

    def test_u32_s32(self):
        self.assertEqual(u32(-1), 0xFFFFFFFF)
        self.assertEqual(s32(0xFFFFFFFF), -1)
        self.assertEqual(s32(0x80000000), -(1 << 31))
        self.assertEqual(s32(1 << 32), 0)

    def test_clamp(self):
        self.assertEqual(clamp(200, 8), (127, True))
        self.assertEqual(clamp(-200, 8), (-128, True))
        self.assertEqual(clamp(100, 8), (100, False))
        self.assertEqual(clamp(1 << 40, 32), ((1 << 31) - 1, True))

    def test_wrap(self):
        self.assertEqual(wrap(200, 8), (-56, True))
        self.assertEqual(wrap(-1, 8), (-1, False))
        self.assertEqual(wrap(1 << 31, 32), (-(1 << 31), True))


class TestDecode(unittest.TestCase):
    def test_known_rv32i_words(self):
        ins = decode(0x00500093)            # addi x1, x0, 5
        self.assertEqual(ins.mnemonic, "addi")
        self.assertEqual((ins.rd, ins.rs1, ins.imm), (1, 0, 5))
        self.assertEqual(ins.kind, OpKind.ALU)

        ins = decode(0x000082B3)            # add x5, x1, x0
        self.assertEqual(ins.mnemonic, "add")
        self.assertEqual((ins.rd, ins.rs1, ins.rs2), (5, 1, 0))

        ins = decode(0x00A02103)            # lw x2, 10(x0)
        self.assertEqual(ins.kind, OpKind.LOAD)
        self.assertEqual((ins.rd, ins.imm), (2, 10))

        ins = decode(0x00102523)            # sw x1, 10(x0)
        self.assertEqual(ins.kind, OpKind.STORE)
        self.assertEqual((ins.rs2, ins.imm), (1, 10))
        self.assertFalse(ins.writes_rd)

    def test_system(self):
        self.assertEqual(decode(0x00000073).mnemonic, "ecall")
        self.assertEqual(decode(0x00100073).mnemonic, "ebreak")
        self.assertEqual(decode(0x00000073).kind, OpKind.SYSTEM)

    def test_illegal_never_raises(self):
        for word in (0, 0xFFFFFFFF, 0x0000707F, 0x00001003, 0x00200073):
            ins = decode(word)
            self.assertEqual(ins.kind, OpKind.ILLEGAL, f"{word:#x}")
            self.assertFalse(ins.writes_rd)

    def test_custom_bad_selector_is_illegal(self):
        word = encode_r(OPC_MAC, 1, 0b111, 2, 3)
        self.assertEqual(decode(word).kind, OpKind.ILLEGAL)
        word = encode_r(OPC_POOL, 1, POOL_MAX, 2, 3, funct7=2)
        self.assertEqual(decode(word).kind, OpKind.ILLEGAL)

    def test_custom_kinds(self):
        mac = decode(encode_r(OPC_MAC, 1, MAC_SAT, 2, 3))
        self.assertEqual(mac.kind, OpKind.MAC)
        self.assertEqual(mac.mnemonic, "mac")
        self.assertEqual(mac.sources, (("rd", 1), ("rs1", 2), ("rs2", 3)))

        slide = decode(encode_r(OPC_POOL, 4, POOL_MAX, 0, 0, POOL_SLIDE))
        self.assertEqual(slide.kind, OpKind.POOL)
        self.assertEqual(slide.sources, ())
        self.assertEqual(str(slide), "pool.max.n x4")

    def test_branch_and_jump_immediates(self):
        ins = decode(encode_b(0b000, 1, 2, -8))
        self.assertEqual((ins.mnemonic, ins.imm), ("beq", -8))
        ins = decode(encode_j(1, 2048))
        self.assertEqual((ins.mnemonic, ins.rd, ins.imm), ("jal", 1, 2048))
        self.assertTrue(ins.writes_rd)

    def test_lui(self):
        ins = decode(encode_u(OPC_LUI, 3, 0x12345))
        self.assertEqual(ins.imm, 0x12345000)
        ins = decode(encode_u(OPC_LUI, 3, 0xFFFFF))
        self.assertEqual(ins.imm, -4096)


class TestEncode(unittest.TestCase):
    def test_range_checks(self):
        with self.assertRaises(ValueError):
            encode_i(OPC_OP_IMM, 1, 0, 0, 2048)
        with self.assertRaises(ValueError):
            encode_r(OPC_MAC, 32, 0, 0, 0)
        with self.assertRaises(ValueError):
            encode_b(0, 1, 2, 3)            # odd offset
        with self.assertRaises(ValueError):
            encode_s(0x23, 2, 0, 1, -2049)

    def test_ecall_word(self):
        self.assertEqual(decode(OPC_SYSTEM).mnemonic, "ecall")


class TestFormat(unittest.TestCase):
    def test_render(self):
        self.assertEqual(str(decode(0x00500093)), "addi x1, x0, 5")
        self.assertEqual(str(decode(0x00A02103)), "lw x2, 10(x0)")
        self.assertEqual(str(decode(0x00102523)), "sw x1, 10(x0)")
        self.assertEqual(str(decode(0xFFFFFFFF)), ".word 0xffffffff")


if __name__ == "__main__":
    unittest.main()
