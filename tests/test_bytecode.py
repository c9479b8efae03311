# tests/test_bytecode.py
"""Tests for the instruction decoder."""

import struct

import pytest

from msgkeys.bytecode import OPCODES, InsnKind, decode, decode_method
from msgkeys.classfile import CpTag, parse_class
from msgkeys.errors import DecodeError
from tests.conftest import ClassBuilder, assemble_method


def _decode(build, **kwargs):
    return decode_method(assemble_method(build, **kwargs))


@pytest.fixture
def empty_pool():
    return parse_class(ClassBuilder().build()).constant_pool


class TestOpcodeTable:

    def test_every_opcode_up_to_jsr_w_is_known(self):
        assert set(OPCODES) == set(range(0x00, 0xCA))

    def test_stack_effects_of_wide_arithmetic(self):
        ladd = next(i for i in OPCODES.values() if i.mnemonic == "ladd")
        assert (ladd.pops, ladd.pushes) == (4, 2)
        lshl = next(i for i in OPCODES.values() if i.mnemonic == "lshl")
        assert (lshl.pops, lshl.pushes) == (3, 2)


class TestSwitches:

    def test_tableswitch_padding_and_targets(self):
        labels = {}

        def build(c):
            c.op("iconst_0")
            c.tableswitch("dflt", 5, ["a", "b"])
            c.label("a").op("return")
            c.label("b").op("return")
            c.label("dflt").op("return")
            labels.update(c.labels)

        insns = _decode(build)
        switch = insns[1]
        assert switch.mnemonic == "tableswitch"
        assert switch.kind is InsnKind.SWITCH
        assert switch.length == 23
        assert switch.targets == (labels["dflt"], labels["a"], labels["b"])
        assert switch.switch_keys == (5, 6)
        assert insns[2].offset == 24
        assert not switch.falls_through

    def test_lookupswitch_at_offset_zero(self):
        labels = {}

        def build(c):
            c.lookupswitch("dflt", [(-1, "neg"), (100, "big")])
            c.label("neg").op("return")
            c.label("big").op("return")
            c.label("dflt").op("return")
            labels.update(c.labels)

        insns = _decode(build)
        switch = insns[0]
        assert switch.length == 28
        assert switch.switch_keys == (-1, 100)
        assert switch.targets == (labels["dflt"], labels["neg"], labels["big"])


class TestOperands:

    def test_wide_forms(self):
        insns = _decode(lambda c: c.wide("iinc", 300, -2).wide("aload", 256).op("return"),
                        max_locals=400)
        iinc, aload, ret = insns
        assert iinc.mnemonic == "iinc" and iinc.wide
        assert (iinc.local, iinc.increment, iinc.length) == (300, -2, 6)
        assert aload.mnemonic == "aload" and aload.wide
        assert (aload.local, aload.offset, aload.length) == (256, 6, 4)
        assert ret.offset == 10

    def test_implicit_local_indices(self):
        insns = _decode(lambda c: c.op("lload_2").op("astore_3").op("return"))
        assert insns[0].local == 2 and insns[0].info.words == 2
        assert insns[1].local == 3 and insns[1].kind is InsnKind.STORE

    def test_ldc_family_resolves_constants(self):
        insns = _decode(lambda c: c.ldc("msg.key").ldc_int(7).ldc_long(9).op("return"))
        text, number, wide = insns[:3]
        assert text.constant.is_string and text.constant.value == "msg.key"
        assert number.mnemonic == "ldc_w" and number.constant.tag is CpTag.INTEGER
        assert wide.mnemonic == "ldc2_w" and wide.constant.size == 2

    def test_invocation_operands(self):
        def build(c):
            c.invoke("invokeinterface", "java/util/List", "size", "()I")
            c.invokedynamic("makeConcatWithConstants", "(Ljava/lang/String;)Ljava/lang/String;")
            c.invoke("invokestatic", "com/example/Util", "go", "()V")
            c.op("return")

        iface, indy, static, _ = _decode(build)
        assert iface.length == 5
        assert iface.member.owner == "java/util/List"
        assert not iface.is_static_call
        assert indy.length == 5
        assert indy.member.owner == "<bootstrap:0>"
        assert indy.is_static_call
        assert static.member.name == "go"
        assert static.is_invoke and static.is_static_call

    def test_immediates_and_class_operands(self):
        def build(c):
            c.op("bipush", "b", -5)
            c.op("sipush", "h", 1000)
            c.op("newarray", "B", 10)
            c.op("multianewarray", "HB", c.cls.class_ref("[[I"), 2)
            c.type_op("checkcast", "java/lang/String")
            c.op("return")

        bipush, sipush, newarray, multi, cast, _ = _decode(build)
        assert bipush.immediate == -5
        assert sipush.immediate == 1000
        assert newarray.immediate == 10
        assert multi.class_ref == "[[I" and multi.immediate == 2
        assert cast.class_ref == "java/lang/String"

    def test_branches(self):
        labels = {}

        def build(c):
            c.op("iconst_0")
            c.branch("ifeq", "end")
            c.branch("goto_w", "end")
            c.label("end").op("return")
            labels.update(c.labels)

        _, ifeq, goto_w, _ = _decode(build)
        assert ifeq.targets == (labels["end"],) and ifeq.falls_through
        assert goto_w.length == 5 and not goto_w.falls_through
        assert "goto_w" in str(goto_w)


class TestDecodeErrors:

    @pytest.mark.parametrize("code", [
        b"\xcb",                  # unknown opcode
        b"\x11\x00",              # truncated sipush
        b"\xa7\x00\x01\xb1",      # goto into its own operand
        b"\xc4\x60\x00\x01",      # wide iadd
        b"\x12\xc8",              # ldc of a missing pool entry
        b"",                      # empty code
        b"\xaa\x00\x00\x00" + struct.pack(">iii", 0, -2**31, 2**31 - 1),  # huge tableswitch range
        b"\xab\x00\x00\x00" + struct.pack(">ii", 0, 2**31 - 1),          # huge lookupswitch npairs
    ])
    def test_malformed_code(self, empty_pool, code):
        with pytest.raises(DecodeError):
            decode(code, empty_pool)

    def test_error_carries_offset(self, empty_pool):
        with pytest.raises(DecodeError) as exc_info:
            decode(b"\x00\x00\xcb", empty_pool)
        assert exc_info.value.offset == 2
        assert "offset 2" in str(exc_info.value)
