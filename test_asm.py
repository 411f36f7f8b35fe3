"""
Assembler and disassembler tests.
"""

import io
import unittest
from contextlib import redirect_stdout

from asm import assemble, disassemble, split_li, AsmError
from isa import decode
from system import words_from_bytes


def words(source):
    return words_from_bytes(assemble(source))


def text(source):
    return [str(decode(w)) for w in words(source)]


class TestBasics(unittest.TestCase):
    def test_known_encodings(self):
        self.assertEqual(words("addi x1, x0, 5"), [0x00500093])
        self.assertEqual(words("add x5, x1, x0"), [0x000082B3])
        self.assertEqual(words("lw x2, 10(x0)"), [0x00A02103])
        self.assertEqual(words("sw x1, 10(x0)"), [0x00102523])
        self.assertEqual(words("ecall"), [0x73])

    def test_little_endian_image(self):
        self.assertEqual(assemble("addi x1, x0, 5"), bytes([0x93, 0x00, 0x50, 0x00]))

    def test_comments_and_abi_names(self):
        src = """
            ; full-line comment
            add  t0, ra, zero   # trailing comment
            mv   a0, sp         ; another
        """
        self.assertEqual(text(src), ["add x5, x1, x0", "addi x10, x2, 0"])

    def test_accelerator_mnemonics(self):
        src = """
            mac       x1, x2, x3
            mac.w     x1, x2, x3
            maca      x1, x2, x3
            macz      x1, x2, x3
            relu      x4, x5
            relu.b    x4, x5, 6
            conv2d    x6, x7, x8
            conv2d.ld x6, 16(x7)
            fir       x9, x10
            fir.ld    x9, 0(x11)
            fir.clr
            pool.max  x12, x13, x14
            pool.avg.n x12
        """
        self.assertEqual(text(src), [
            "mac x1, x2, x3", "mac.w x1, x2, x3", "maca x1, x2, x3", "macz x1, x2, x3",
            "relu x4, x5", "relu.b x4, x5, 6", "conv2d x6, x7, x8",
            "conv2d.ld x6, 16(x7)", "fir x9, x10", "fir.ld x9, 0(x11)", "fir.clr x0",
            "pool.max x12, x13, x14", "pool.avg.n x12",
        ])


class TestPseudo(unittest.TestCase):
    def test_li_small_is_one_word(self):
        self.assertEqual(text("li x1, -2048"), ["addi x1, x0, -2048"])

    def test_li_large_splits(self):
        self.assertEqual(split_li(0x12345FFF), (0x12346, -1))
        self.assertEqual(text("li x1, 0x12345FFF"), ["lui x1, 0x12346", "addi x1, x1, -1"])
        self.assertEqual(len(words("li x1, 2048")), 2)

    def test_misc(self):
        self.assertEqual(text("nop"), ["addi x0, x0, 0"])
        self.assertEqual(text("not x1, x2"), ["xori x1, x2, -1"])
        self.assertEqual(text("neg x1, x2"), ["sub x1, x0, x2"])
        self.assertEqual(text("ret"), ["jalr x0, 0(x1)"])
        self.assertEqual(text("jr x5"), ["jalr x0, 0(x5)"])
        self.assertEqual(text("halt"), ["ecall"])
        self.assertEqual(text("ebreak"), ["ebreak"])


class TestLabels(unittest.TestCase):
    def test_branch_targets(self):
        src = """
        start:
            addi x1, x1, 1
            bnez x1, start
            j    end
            nop
        end: ecall
        """
        self.assertEqual(text(src), [
            "addi x1, x1, 1", "bne x1, x0, -4", "jal x0, +8", "addi x0, x0, 0", "ecall",
        ])

    def test_labels_after_multiword_li(self):
        src = """
            li  x1, 100000
        here:
            jal here
        """
        self.assertEqual(text(src)[2], "jal x1, +0")

    def test_org_and_word(self):
        w = words("""
            ecall
            .org 0x10
        data: .word 1, 0x20, data
        """)
        self.assertEqual(w, [0x73, 0, 0, 0, 1, 0x20, 0x10])

    def test_listing(self):
        buf = io.StringIO()
        with redirect_stdout(buf):
            assemble("top: nop\necall", listing=True)
        out = buf.getvalue()
        self.assertIn("top:", out)
        self.assertIn("00000013", out)


class TestErrors(unittest.TestCase):
    def assertAsmError(self, source, line, fragment):
        with self.assertRaises(AsmError) as cm:
            assemble(source)
        self.assertEqual(cm.exception.line, line)
        self.assertIn(fragment, str(cm.exception))

    def test_unknown_mnemonic(self):
        self.assertAsmError("nop\nfrobnicate x1", 2, "Unknown mnemonic")

    def test_bad_register(self):
        self.assertAsmError("add x1, x2, x32", 1, "Invalid register")

    def test_immediate_range(self):
        self.assertAsmError("nop\nnop\naddi x1, x0, 5000", 3, "out of range")

    def test_unknown_label(self):
        self.assertAsmError("beq x1, x2, nowhere", 1, "nowhere")

    def test_duplicate_label(self):
        self.assertAsmError("a: nop\na: nop", 2, "Duplicate label")

    def test_missing_operand(self):
        self.assertAsmError("lw x1", 1, "lw x1")

    def test_org_backwards(self):
        self.assertAsmError("nop\nnop\n.org 4", 3, ".org")


class TestDisassemble(unittest.TestCase):
    def test_lines(self):
        lines = disassemble(assemble("li x1, 5\necall"))
        self.assertEqual(lines, ["  000000  00500093  addi x1, x0, 5",
                                 "  000004  00000073  ecall"])

    def test_base_and_words(self):
        lines = disassemble([0xFFFFFFFF], base_addr=0x40)
        self.assertEqual(lines, ["  000040  ffffffff  .word 0xffffffff"])


if __name__ == "__main__":
    unittest.main()
