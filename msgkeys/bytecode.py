"""
msgkeys.bytecode
================

Decodes a method's ``Code`` array into a list of typed, immutable
:class:`Instruction` records.

Each opcode is described once in :data:`OPCODES` by an :class:`OpcodeInfo`
carrying its mnemonic, its :class:`InsnKind`, the layout of its inline
operands and, where it is fixed, its operand-stack effect in words.  The
abstract interpreter relies on those effects for every instruction it does
not model specially, so the table is the single source of truth for
"how many words does this pop and push".

Operand layouts
---------------
``""``      no operands
``"b"``     signed byte (``bipush``, ``newarray`` uses ``"B"``)
``"B"``     unsigned byte (local index, ``ldc`` pool index, array type)
``"h"``     signed short (``sipush``, 16-bit branch offsets)
``"H"``     unsigned short (constant-pool index)
``"i"``     signed int (32-bit branch offsets)
``"Bb"``    ``iinc``: local index + signed increment
``"HBB"``   ``invokeinterface``: pool index, count, zero
``"HBx"``   ``invokedynamic``: pool index, two zero bytes
``"HB"``    ``multianewarray``: pool index, dimensions
``"T"`` /
``"L"``     ``tableswitch`` / ``lookupswitch`` (padded, variable length)
``"W"``     ``wide`` prefix

Usage::

    from msgkeys.bytecode import decode_method

    for insn in decode_method(method_body):
        print(insn)
"""

from __future__ import annotations

import enum
import struct
from dataclasses import dataclass
from typing import Dict, List, Optional, Tuple

from msgkeys.classfile import (
    ConstantPool,
    LoadableConstant,
    MemberRef,
    MethodBody,
)
from msgkeys.errors import ClassFormatError, DecodeError


# ===========================================================================
# INSTRUCTION KINDS
# ===========================================================================

class InsnKind(enum.Enum):
    """Coarse classification of an instruction."""

    NOP = "nop"
    CONSTANT = "constant"        # pushes a literal (incl. ldc family)
    LOAD = "load"                # xload: local slot → stack
    STORE = "store"              # xstore: stack → local slot
    IINC = "iinc"
    STACK = "stack"              # pop/dup/swap family
    ARRAY = "array"              # xaload / xastore / arraylength
    ARITHMETIC = "arithmetic"
    CONVERSION = "conversion"
    COMPARE = "compare"
    BRANCH = "branch"            # conditional jump
    GOTO = "goto"
    JSR = "jsr"
    RET = "ret"
    SWITCH = "switch"
    RETURN = "return"
    THROW = "throw"
    FIELD = "field"
    INVOKE = "invoke"
    NEW = "new"                  # new / newarray / anewarray / multianewarray
    TYPE = "type"                # checkcast / instanceof
    MONITOR = "monitor"
    WIDE = "wide"


@dataclass(frozen=True)
class OpcodeInfo:
    """Static description of one opcode.

    ``pops`` / ``pushes`` are operand-stack words; ``None`` means the effect
    depends on the operand (``ldc``, field access, invocations, ...).
    ``words`` is the width of the value a load/store/return moves.
    """

    code: int
    mnemonic: str
    kind: InsnKind
    operands: str = ""
    pops: Optional[int] = 0
    pushes: Optional[int] = 0
    words: int = 1


OPCODES: Dict[int, OpcodeInfo] = {}


def _op(code, mnemonic, kind, operands="", pops=0, pushes=0, words=1):
    OPCODES[code] = OpcodeInfo(code, mnemonic, kind, operands, pops, pushes, words)


def _typed(base: int, prefixes: str, stem: str, kind: InsnKind, **kw) -> None:
    """Register ``<p><stem>`` for each type prefix in *prefixes*."""
    for i, p in enumerate(prefixes):
        words = 2 if p in "ld" else 1
        _op(base + i, f"{p}{stem}", kind, words=words, **kw)


# ----- constants -------------------------------------------------------------

_op(0x00, "nop", InsnKind.NOP)
_op(0x01, "aconst_null", InsnKind.CONSTANT, pushes=1)
for _i, _n in enumerate(("m1", "0", "1", "2", "3", "4", "5")):
    _op(0x02 + _i, f"iconst_{_n}", InsnKind.CONSTANT, pushes=1)
_op(0x09, "lconst_0", InsnKind.CONSTANT, pushes=2)
_op(0x0A, "lconst_1", InsnKind.CONSTANT, pushes=2)
_op(0x0B, "fconst_0", InsnKind.CONSTANT, pushes=1)
_op(0x0C, "fconst_1", InsnKind.CONSTANT, pushes=1)
_op(0x0D, "fconst_2", InsnKind.CONSTANT, pushes=1)
_op(0x0E, "dconst_0", InsnKind.CONSTANT, pushes=2)
_op(0x0F, "dconst_1", InsnKind.CONSTANT, pushes=2)
_op(0x10, "bipush", InsnKind.CONSTANT, "b", pushes=1)
_op(0x11, "sipush", InsnKind.CONSTANT, "h", pushes=1)
_op(0x12, "ldc", InsnKind.CONSTANT, "B", pushes=None)
_op(0x13, "ldc_w", InsnKind.CONSTANT, "H", pushes=None)
_op(0x14, "ldc2_w", InsnKind.CONSTANT, "H", pushes=None)

# ----- loads / stores ----------------------------------------------------------

_typed(0x15, "ilfda", "load", InsnKind.LOAD, operands="B")
for _t, _p in enumerate("ilfda"):
    for _n in range(4):
        _op(0x1A + _t * 4 + _n, f"{_p}load_{_n}", InsnKind.LOAD,
            words=2 if _p in "ld" else 1)
_op(0x2E, "iaload", InsnKind.ARRAY, pops=2, pushes=1)
_op(0x2F, "laload", InsnKind.ARRAY, pops=2, pushes=2)
_op(0x30, "faload", InsnKind.ARRAY, pops=2, pushes=1)
_op(0x31, "daload", InsnKind.ARRAY, pops=2, pushes=2)
_op(0x32, "aaload", InsnKind.ARRAY, pops=2, pushes=1)
_op(0x33, "baload", InsnKind.ARRAY, pops=2, pushes=1)
_op(0x34, "caload", InsnKind.ARRAY, pops=2, pushes=1)
_op(0x35, "saload", InsnKind.ARRAY, pops=2, pushes=1)

_typed(0x36, "ilfda", "store", InsnKind.STORE, operands="B")
for _t, _p in enumerate("ilfda"):
    for _n in range(4):
        _op(0x3B + _t * 4 + _n, f"{_p}store_{_n}", InsnKind.STORE,
            words=2 if _p in "ld" else 1)
_op(0x4F, "iastore", InsnKind.ARRAY, pops=3)
_op(0x50, "lastore", InsnKind.ARRAY, pops=4)
_op(0x51, "fastore", InsnKind.ARRAY, pops=3)
_op(0x52, "dastore", InsnKind.ARRAY, pops=4)
_op(0x53, "aastore", InsnKind.ARRAY, pops=3)
_op(0x54, "bastore", InsnKind.ARRAY, pops=3)
_op(0x55, "castore", InsnKind.ARRAY, pops=3)
_op(0x56, "sastore", InsnKind.ARRAY, pops=3)

# ----- stack manipulation ------------------------------------------------------

for _code, _name in ((0x57, "pop"), (0x58, "pop2"), (0x59, "dup"),
                     (0x5A, "dup_x1"), (0x5B, "dup_x2"), (0x5C, "dup2"),
                     (0x5D, "dup2_x1"), (0x5E, "dup2_x2"), (0x5F, "swap")):
    _op(_code, _name, InsnKind.STACK, pops=None, pushes=None)

# ----- arithmetic ----------------------------------------------------------------

for _i, _stem in enumerate(("add", "sub", "mul", "div", "rem")):
    _op(0x60 + _i * 4, f"i{_stem}", InsnKind.ARITHMETIC, pops=2, pushes=1)
    _op(0x61 + _i * 4, f"l{_stem}", InsnKind.ARITHMETIC, pops=4, pushes=2)
    _op(0x62 + _i * 4, f"f{_stem}", InsnKind.ARITHMETIC, pops=2, pushes=1)
    _op(0x63 + _i * 4, f"d{_stem}", InsnKind.ARITHMETIC, pops=4, pushes=2)
_op(0x74, "ineg", InsnKind.ARITHMETIC, pops=1, pushes=1)
_op(0x75, "lneg", InsnKind.ARITHMETIC, pops=2, pushes=2)
_op(0x76, "fneg", InsnKind.ARITHMETIC, pops=1, pushes=1)
_op(0x77, "dneg", InsnKind.ARITHMETIC, pops=2, pushes=2)
_op(0x78, "ishl", InsnKind.ARITHMETIC, pops=2, pushes=1)
_op(0x79, "lshl", InsnKind.ARITHMETIC, pops=3, pushes=2)
_op(0x7A, "ishr", InsnKind.ARITHMETIC, pops=2, pushes=1)
_op(0x7B, "lshr", InsnKind.ARITHMETIC, pops=3, pushes=2)
_op(0x7C, "iushr", InsnKind.ARITHMETIC, pops=2, pushes=1)
_op(0x7D, "lushr", InsnKind.ARITHMETIC, pops=3, pushes=2)
for _i, _stem in enumerate(("and", "or", "xor")):
    _op(0x7E + _i * 2, f"i{_stem}", InsnKind.ARITHMETIC, pops=2, pushes=1)
    _op(0x7F + _i * 2, f"l{_stem}", InsnKind.ARITHMETIC, pops=4, pushes=2)
_op(0x84, "iinc", InsnKind.IINC, "Bb")

# ----- conversions ---------------------------------------------------------------

for _code, _name, _pops, _pushes in (
    (0x85, "i2l", 1, 2), (0x86, "i2f", 1, 1), (0x87, "i2d", 1, 2),
    (0x88, "l2i", 2, 1), (0x89, "l2f", 2, 1), (0x8A, "l2d", 2, 2),
    (0x8B, "f2i", 1, 1), (0x8C, "f2l", 1, 2), (0x8D, "f2d", 1, 2),
    (0x8E, "d2i", 2, 1), (0x8F, "d2l", 2, 2), (0x90, "d2f", 2, 1),
    (0x91, "i2b", 1, 1), (0x92, "i2c", 1, 1), (0x93, "i2s", 1, 1),
):
    _op(_code, _name, InsnKind.CONVERSION, pops=_pops, pushes=_pushes)

# ----- comparisons and branches ----------------------------------------------------

_op(0x94, "lcmp", InsnKind.COMPARE, pops=4, pushes=1)
_op(0x95, "fcmpl", InsnKind.COMPARE, pops=2, pushes=1)
_op(0x96, "fcmpg", InsnKind.COMPARE, pops=2, pushes=1)
_op(0x97, "dcmpl", InsnKind.COMPARE, pops=4, pushes=1)
_op(0x98, "dcmpg", InsnKind.COMPARE, pops=4, pushes=1)
for _i, _cond in enumerate(("eq", "ne", "lt", "ge", "gt", "le")):
    _op(0x99 + _i, f"if{_cond}", InsnKind.BRANCH, "h", pops=1)
    _op(0x9F + _i, f"if_icmp{_cond}", InsnKind.BRANCH, "h", pops=2)
_op(0xA5, "if_acmpeq", InsnKind.BRANCH, "h", pops=2)
_op(0xA6, "if_acmpne", InsnKind.BRANCH, "h", pops=2)
_op(0xA7, "goto", InsnKind.GOTO, "h")
_op(0xA8, "jsr", InsnKind.JSR, "h", pushes=1)
_op(0xA9, "ret", InsnKind.RET, "B")
_op(0xAA, "tableswitch", InsnKind.SWITCH, "T", pops=1)
_op(0xAB, "lookupswitch", InsnKind.SWITCH, "L", pops=1)

# ----- returns ---------------------------------------------------------------------

_op(0xAC, "ireturn", InsnKind.RETURN, pops=1)
_op(0xAD, "lreturn", InsnKind.RETURN, pops=2, words=2)
_op(0xAE, "freturn", InsnKind.RETURN, pops=1)
_op(0xAF, "dreturn", InsnKind.RETURN, pops=2, words=2)
_op(0xB0, "areturn", InsnKind.RETURN, pops=1)
_op(0xB1, "return", InsnKind.RETURN, words=0)

# ----- fields, invocations, objects ------------------------------------------------

_op(0xB2, "getstatic", InsnKind.FIELD, "H", pops=None, pushes=None)
_op(0xB3, "putstatic", InsnKind.FIELD, "H", pops=None, pushes=None)
_op(0xB4, "getfield", InsnKind.FIELD, "H", pops=None, pushes=None)
_op(0xB5, "putfield", InsnKind.FIELD, "H", pops=None, pushes=None)
_op(0xB6, "invokevirtual", InsnKind.INVOKE, "H", pops=None, pushes=None)
_op(0xB7, "invokespecial", InsnKind.INVOKE, "H", pops=None, pushes=None)
_op(0xB8, "invokestatic", InsnKind.INVOKE, "H", pops=None, pushes=None)
_op(0xB9, "invokeinterface", InsnKind.INVOKE, "HBB", pops=None, pushes=None)
_op(0xBA, "invokedynamic", InsnKind.INVOKE, "HBx", pops=None, pushes=None)
_op(0xBB, "new", InsnKind.NEW, "H", pushes=1)
_op(0xBC, "newarray", InsnKind.NEW, "B", pops=1, pushes=1)
_op(0xBD, "anewarray", InsnKind.NEW, "H", pops=1, pushes=1)
_op(0xBE, "arraylength", InsnKind.ARRAY, pops=1, pushes=1)
_op(0xBF, "athrow", InsnKind.THROW, pops=1)
_op(0xC0, "checkcast", InsnKind.TYPE, "H", pops=1, pushes=1)
_op(0xC1, "instanceof", InsnKind.TYPE, "H", pops=1, pushes=1)
_op(0xC2, "monitorenter", InsnKind.MONITOR, pops=1)
_op(0xC3, "monitorexit", InsnKind.MONITOR, pops=1)
_op(0xC4, "wide", InsnKind.WIDE, "W")
_op(0xC5, "multianewarray", InsnKind.NEW, "HB", pops=None, pushes=1)
_op(0xC6, "ifnull", InsnKind.BRANCH, "h", pops=1)
_op(0xC7, "ifnonnull", InsnKind.BRANCH, "h", pops=1)
_op(0xC8, "goto_w", InsnKind.GOTO, "i")
_op(0xC9, "jsr_w", InsnKind.JSR, "i", pushes=1)

OPCODES_BY_NAME: Dict[str, OpcodeInfo] = {i.mnemonic: i for i in OPCODES.values()}

# Opcodes that may follow a ``wide`` prefix.
_WIDENABLE = frozenset(
    info.code for info in OPCODES.values()
    if info.kind in (InsnKind.LOAD, InsnKind.STORE, InsnKind.IINC, InsnKind.RET)
    and info.operands
)

# Kinds after which control never reaches the next instruction.
_NO_FALL_THROUGH = frozenset({
    InsnKind.GOTO, InsnKind.JSR, InsnKind.RET, InsnKind.SWITCH,
    InsnKind.RETURN, InsnKind.THROW,
})


# ===========================================================================
# INSTRUCTION
# ===========================================================================

@dataclass(frozen=True)
class Instruction:
    """One decoded instruction.

    Attributes
    ----------
    index : int
        Position in the method's instruction list (the CFG arena index).
    offset : int
        Byte offset in the code array.
    info : OpcodeInfo
        Static opcode description.
    length : int
        Encoded length in bytes, including any ``wide`` prefix.
    local : int or None
        Local-variable slot for loads, stores, ``iinc`` and ``ret``.
    increment : int or None
        ``iinc`` increment.
    immediate : int or None
        ``bipush``/``sipush`` value, ``newarray`` type code or
        ``multianewarray`` dimension count.
    constant : LoadableConstant or None
        Operand of ``ldc``/``ldc_w``/``ldc2_w``.
    member : MemberRef or None
        Field or method referenced by field/invoke instructions.
    class_ref : str or None
        Class operand of ``new``/``anewarray``/``checkcast``/``instanceof``/
        ``multianewarray``.
    targets : tuple of int
        Absolute jump targets (byte offsets).  For switches the default
        target comes first, followed by the case targets in table order.
    switch_keys : tuple of int
        Case keys of a switch, parallel to ``targets[1:]``.
    wide : bool
        Whether the instruction was prefixed by ``wide``.
    """

    index: int
    offset: int
    info: OpcodeInfo
    length: int
    local: Optional[int] = None
    increment: Optional[int] = None
    immediate: Optional[int] = None
    constant: Optional[LoadableConstant] = None
    member: Optional[MemberRef] = None
    class_ref: Optional[str] = None
    targets: Tuple[int, ...] = ()
    switch_keys: Tuple[int, ...] = ()
    wide: bool = False

    @property
    def opcode(self) -> int:
        return self.info.code

    @property
    def mnemonic(self) -> str:
        return self.info.mnemonic

    @property
    def kind(self) -> InsnKind:
        return self.info.kind

    @property
    def next_offset(self) -> int:
        return self.offset + self.length

    @property
    def falls_through(self) -> bool:
        """Whether control may continue with the next instruction."""
        return self.kind not in _NO_FALL_THROUGH

    @property
    def is_invoke(self) -> bool:
        return self.kind is InsnKind.INVOKE

    @property
    def is_static_call(self) -> bool:
        return self.mnemonic in ("invokestatic", "invokedynamic")

    def __str__(self) -> str:
        parts = [f"{self.offset:5d}: {self.mnemonic}"]
        if self.local is not None:
            parts.append(str(self.local))
        if self.increment is not None:
            parts.append(str(self.increment))
        if self.immediate is not None:
            parts.append(str(self.immediate))
        if self.constant is not None:
            parts.append(repr(self.constant.value))
        if self.member is not None:
            parts.append(str(self.member))
        if self.class_ref is not None:
            parts.append(self.class_ref)
        if self.targets:
            parts.append("-> " + ", ".join(str(t) for t in self.targets))
        return " ".join(parts)


# ===========================================================================
# DECODER
# ===========================================================================

class _CodeReader:
    """Cursor over a code array; raises :class:`DecodeError` on truncation."""

    def __init__(self, code: bytes) -> None:
        self.code = code
        self.pos = 0

    def at_end(self) -> bool:
        return self.pos >= len(self.code)

    def _unpack(self, fmt: str):
        size = struct.calcsize(fmt)
        if self.pos + size > len(self.code):
            raise DecodeError("truncated instruction operand", offset=self.pos)
        value = struct.unpack_from(fmt, self.code, self.pos)[0]
        self.pos += size
        return value

    def s1(self) -> int:
        return self._unpack(">b")

    def u1(self) -> int:
        return self._unpack(">B")

    def s2(self) -> int:
        return self._unpack(">h")

    def u2(self) -> int:
        return self._unpack(">H")

    def s4(self) -> int:
        return self._unpack(">i")


def _implicit_local(mnemonic: str) -> Optional[int]:
    """``3`` for ``aload_3``; ``None`` when the slot is an explicit operand."""
    stem, sep, suffix = mnemonic.rpartition("_")
    if sep and suffix.isdigit() and stem.endswith(("load", "store")):
        return int(suffix)
    return None


def _decode_one(
    r: _CodeReader,
    index: int,
    pool: ConstantPool,
) -> Instruction:
    offset = r.pos
    code = r.u1()
    info = OPCODES.get(code)
    if info is None:
        raise DecodeError(f"unknown opcode 0x{code:02x}", offset=offset)

    fields: Dict[str, object] = {}
    wide = False
    fmt = info.operands

    if fmt == "W":
        inner = r.u1()
        if inner not in _WIDENABLE:
            raise DecodeError(f"opcode 0x{inner:02x} cannot be widened", offset=offset)
        info = OPCODES[inner]
        wide = True
        fields["local"] = r.u2()
        if info.kind is InsnKind.IINC:
            fields["increment"] = r.s2()
    elif info.kind in (InsnKind.LOAD, InsnKind.STORE, InsnKind.RET):
        fields["local"] = r.u1() if fmt == "B" else _implicit_local(info.mnemonic)
    elif info.kind is InsnKind.IINC:
        fields["local"] = r.u1()
        fields["increment"] = r.s1()
    elif info.mnemonic in ("bipush", "newarray"):
        fields["immediate"] = r.s1() if info.mnemonic == "bipush" else r.u1()
    elif info.mnemonic == "sipush":
        fields["immediate"] = r.s2()
    elif info.mnemonic in ("ldc", "ldc_w", "ldc2_w"):
        cp_index = r.u1() if fmt == "B" else r.u2()
        fields["constant"] = pool.loadable(cp_index)
    elif info.kind in (InsnKind.FIELD, InsnKind.INVOKE):
        cp_index = r.u2()
        if info.mnemonic == "invokedynamic":
            fields["member"] = pool.dynamic_ref(cp_index)
            r.u2()
        else:
            fields["member"] = pool.member_ref(cp_index)
            if info.mnemonic == "invokeinterface":
                r.u1()
                r.u1()
    elif info.kind in (InsnKind.NEW, InsnKind.TYPE) and fmt.startswith("H"):
        fields["class_ref"] = pool.class_name(r.u2())
        if info.mnemonic == "multianewarray":
            fields["immediate"] = r.u1()
    elif fmt == "h":
        fields["targets"] = (offset + r.s2(),)
    elif fmt == "i":
        fields["targets"] = (offset + r.s4(),)
    elif fmt in ("T", "L"):
        # operands start on a 4-byte boundary relative to the code start
        r.pos += (4 - r.pos % 4) % 4
        default = offset + r.s4()
        if fmt == "T":
            low, high = r.s4(), r.s4()
            if high < low:
                raise DecodeError("tableswitch high < low", offset=offset)
            if 4 * (high - low + 1) > len(r.code) - r.pos:
                raise DecodeError("tableswitch exceeds code length", offset=offset)
            keys = tuple(range(low, high + 1))
            cases = tuple(offset + r.s4() for _ in keys)
        else:
            npairs = r.s4()
            if npairs < 0:
                raise DecodeError("lookupswitch with negative npairs", offset=offset)
            if 8 * npairs > len(r.code) - r.pos:
                raise DecodeError("lookupswitch exceeds code length", offset=offset)
            pairs = [(r.s4(), offset + r.s4()) for _ in range(npairs)]
            keys = tuple(k for k, _ in pairs)
            cases = tuple(t for _, t in pairs)
        fields["targets"] = (default,) + cases
        fields["switch_keys"] = keys
    elif fmt:
        raise DecodeError(f"unhandled operand layout {fmt!r}", offset=offset)

    return Instruction(
        index=index,
        offset=offset,
        info=info,
        length=r.pos - offset,
        wide=wide,
        **fields,
    )


def decode(code: bytes, pool: ConstantPool) -> List[Instruction]:
    """Decode a code array.

    Parameters
    ----------
    code : bytes
        The ``code`` bytes of a ``Code`` attribute.
    pool : ConstantPool
        The owning class's constant pool, used to resolve operands.

    Returns
    -------
    list[Instruction]
        Instructions in code order; ``insn.index`` equals the list position.

    Raises
    ------
    DecodeError
        On unknown opcodes, truncated operands, unresolvable pool
        references or jump targets that are not instruction boundaries.
    """
    if not code:
        raise DecodeError("empty code array")
    r = _CodeReader(code)
    insns: List[Instruction] = []
    while not r.at_end():
        try:
            insns.append(_decode_one(r, len(insns), pool))
        except DecodeError:
            raise
        except ClassFormatError as exc:
            raise DecodeError(exc.message, offset=r.pos) from exc

    boundaries = {i.offset for i in insns}
    for insn in insns:
        for t in insn.targets:
            if t not in boundaries:
                raise DecodeError(
                    f"{insn.mnemonic} targets {t}, which is not an instruction start",
                    offset=insn.offset,
                )
    return insns


def decode_method(method: MethodBody) -> List[Instruction]:
    """Decode the code of *method* (which must have a ``Code`` attribute)."""
    if method.code is None:
        raise DecodeError(f"{method.signature} has no code")
    return decode(method.code, method.constant_pool)
