"""
msgkeys.classfile
=================

Reads the JVM class-file container: constant pool, methods and their
``Code`` attributes.  Nothing here interprets bytecode; the raw code array
of each method is handed to :mod:`msgkeys.bytecode` together with the
constant pool needed to resolve its operands.

Public API
----------
    CpTag            - constant-pool tag numbers
    ConstantPool     - resolved access to pool entries
    MemberRef        - (owner, name, descriptor) of a field/method reference
    LoadableConstant - value pushed by ``ldc``/``ldc_w``/``ldc2_w``
    ExceptionHandler - one row of a method's exception table
    MethodBody       - a method with its code, as consumed by the analyzer
    ClassFile        - a parsed class
    parse_class      - parse class-file bytes
    read_class_file  - parse a ``.class`` file from disk

Implementation notes
--------------------
* Only the parts of the format the analyzer needs are materialised.  Field
  and class attributes are skipped by length.
* Strings use *modified* UTF-8: ``U+0000`` is encoded as ``C0 80`` and
  supplementary characters as surrogate pairs.  :func:`_decode_modified_utf8`
  undoes both.
"""

from __future__ import annotations

import enum
import struct
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Iterator, List, Optional, Tuple, Union

from msgkeys.errors import ClassFormatError

CLASS_MAGIC = 0xCAFEBABE

ACC_STATIC = 0x0008
ACC_NATIVE = 0x0100
ACC_ABSTRACT = 0x0400


# ---------------------------------------------------------------------------
# Constant pool
# ---------------------------------------------------------------------------

class CpTag(enum.IntEnum):
    """Constant-pool entry tags (JVMS §4.4)."""

    UTF8 = 1
    INTEGER = 3
    FLOAT = 4
    LONG = 5
    DOUBLE = 6
    CLASS = 7
    STRING = 8
    FIELDREF = 9
    METHODREF = 10
    INTERFACE_METHODREF = 11
    NAME_AND_TYPE = 12
    METHOD_HANDLE = 15
    METHOD_TYPE = 16
    DYNAMIC = 17
    INVOKE_DYNAMIC = 18
    MODULE = 19
    PACKAGE = 20


@dataclass(frozen=True)
class CpEntry:
    tag: CpTag
    values: Tuple[Any, ...]


@dataclass(frozen=True)
class MemberRef:
    """A symbolic reference to a field or method."""

    owner: str
    name: str
    descriptor: str

    def __str__(self) -> str:
        return f"{self.owner}.{self.name}{self.descriptor}"


@dataclass(frozen=True)
class LoadableConstant:
    """The value an ``ldc``-family instruction pushes.

    ``value`` is the Python value for strings and numbers, the internal
    name for class literals and the descriptor for method types; ``size``
    is the number of operand-stack words (2 for long/double).
    """

    tag: CpTag
    value: Any
    size: int = 1

    @property
    def is_string(self) -> bool:
        return self.tag is CpTag.STRING


def _decode_modified_utf8(raw: bytes) -> str:
    text = raw.replace(b"\xc0\x80", b"\x00").decode("utf-8", "surrogatepass")
    # Re-pair surrogate halves emitted for supplementary characters.
    return text.encode("utf-16", "surrogatepass").decode("utf-16", "surrogatepass")


class ConstantPool:
    """Indexed access to a class's constant pool.

    Index 0 and the slot following every long/double entry are unusable
    and stored as ``None``.
    """

    def __init__(self, entries: List[Optional[CpEntry]]) -> None:
        self._entries = entries

    def __len__(self) -> int:
        return len(self._entries)

    def entry(self, index: int, *tags: CpTag) -> CpEntry:
        """Return entry *index*, checking its tag against *tags*."""
        if index <= 0 or index >= len(self._entries):
            raise ClassFormatError(f"constant pool index {index} out of range")
        e = self._entries[index]
        if e is None:
            raise ClassFormatError(f"constant pool index {index} is unusable")
        if tags and e.tag not in tags:
            expected = "/".join(t.name for t in tags)
            raise ClassFormatError(
                f"constant pool index {index} is {e.tag.name}, expected {expected}"
            )
        return e

    def utf8(self, index: int) -> str:
        return self.entry(index, CpTag.UTF8).values[0]

    def class_name(self, index: int) -> str:
        return self.utf8(self.entry(index, CpTag.CLASS).values[0])

    def name_and_type(self, index: int) -> Tuple[str, str]:
        name_idx, desc_idx = self.entry(index, CpTag.NAME_AND_TYPE).values
        return self.utf8(name_idx), self.utf8(desc_idx)

    def member_ref(self, index: int) -> MemberRef:
        """Resolve a Fieldref / Methodref / InterfaceMethodref."""
        class_idx, nat_idx = self.entry(
            index,
            CpTag.FIELDREF, CpTag.METHODREF, CpTag.INTERFACE_METHODREF,
        ).values
        name, descriptor = self.name_and_type(nat_idx)
        return MemberRef(self.class_name(class_idx), name, descriptor)

    def dynamic_ref(self, index: int) -> MemberRef:
        """Resolve an InvokeDynamic / Dynamic entry.

        The owner is reported as ``"<bootstrap:N>"`` since call sites of
        this kind have no static owner type.
        """
        bsm_idx, nat_idx = self.entry(
            index, CpTag.INVOKE_DYNAMIC, CpTag.DYNAMIC
        ).values
        name, descriptor = self.name_and_type(nat_idx)
        return MemberRef(f"<bootstrap:{bsm_idx}>", name, descriptor)

    def loadable(self, index: int) -> LoadableConstant:
        """Resolve the operand of an ``ldc``-family instruction."""
        e = self.entry(index)
        if e.tag is CpTag.STRING:
            return LoadableConstant(e.tag, self.utf8(e.values[0]))
        if e.tag in (CpTag.INTEGER, CpTag.FLOAT):
            return LoadableConstant(e.tag, e.values[0])
        if e.tag in (CpTag.LONG, CpTag.DOUBLE):
            return LoadableConstant(e.tag, e.values[0], size=2)
        if e.tag is CpTag.CLASS:
            return LoadableConstant(e.tag, self.utf8(e.values[0]))
        if e.tag is CpTag.METHOD_TYPE:
            return LoadableConstant(e.tag, self.utf8(e.values[0]))
        if e.tag is CpTag.METHOD_HANDLE:
            return LoadableConstant(e.tag, e.values)
        if e.tag is CpTag.DYNAMIC:
            ref = self.dynamic_ref(index)
            size = 2 if ref.descriptor in ("J", "D") else 1
            return LoadableConstant(e.tag, ref, size=size)
        raise ClassFormatError(
            f"constant pool index {index} ({e.tag.name}) is not loadable"
        )


# ---------------------------------------------------------------------------
# Methods and classes
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ExceptionHandler:
    """One row of a ``Code`` attribute's exception table.

    ``catch_type`` is the internal name of the caught class, or ``None``
    for a catch-all (``finally``) handler.
    """

    start_pc: int
    end_pc: int
    handler_pc: int
    catch_type: Optional[str] = None

    def covers(self, offset: int) -> bool:
        return self.start_pc <= offset < self.end_pc


@dataclass
class MethodBody:
    """A compiled method as seen by the analyzer."""

    owner: str
    name: str
    descriptor: str
    access_flags: int = 0
    max_stack: int = 0
    max_locals: int = 0
    code: Optional[bytes] = None
    exception_table: Tuple[ExceptionHandler, ...] = ()
    constant_pool: ConstantPool = field(
        default_factory=lambda: ConstantPool([None])
    )

    @property
    def has_code(self) -> bool:
        return self.code is not None

    @property
    def is_static(self) -> bool:
        return bool(self.access_flags & ACC_STATIC)

    @property
    def signature(self) -> str:
        return f"{self.name}{self.descriptor}"

    def __repr__(self) -> str:
        size = len(self.code) if self.code is not None else 0
        return f"MethodBody({self.owner}.{self.signature}, code={size} bytes)"


@dataclass
class ClassFile:
    """A parsed class file."""

    name: str
    super_name: Optional[str]
    access_flags: int
    major_version: int
    minor_version: int
    constant_pool: ConstantPool
    methods: List[MethodBody] = field(default_factory=list)
    source: str = ""

    def methods_with_code(self) -> Iterator[MethodBody]:
        return (m for m in self.methods if m.has_code)


# ---------------------------------------------------------------------------
# Parsing
# ---------------------------------------------------------------------------

class _Reader:
    """Big-endian cursor over class-file bytes with bounds checking."""

    def __init__(self, data: bytes) -> None:
        self._data = data
        self.pos = 0

    def _take(self, n: int) -> bytes:
        end = self.pos + n
        if end > len(self._data):
            raise ClassFormatError(
                f"truncated class file: need {n} bytes at offset {self.pos}"
            )
        chunk = self._data[self.pos:end]
        self.pos = end
        return chunk

    def u1(self) -> int:
        return self._take(1)[0]

    def u2(self) -> int:
        return struct.unpack(">H", self._take(2))[0]

    def u4(self) -> int:
        return struct.unpack(">I", self._take(4))[0]

    def unpack(self, fmt: str) -> Any:
        return struct.unpack(fmt, self._take(struct.calcsize(fmt)))[0]

    def raw(self, n: int) -> bytes:
        return self._take(n)

    def skip_attributes(self) -> None:
        for _ in range(self.u2()):
            self.u2()
            self._take(self.u4())


def _read_constant_pool(r: _Reader) -> ConstantPool:
    count = r.u2()
    entries: List[Optional[CpEntry]] = [None] * max(count, 1)
    i = 1
    while i < count:
        raw_tag = r.u1()
        try:
            tag = CpTag(raw_tag)
        except ValueError:
            raise ClassFormatError(
                f"unknown constant pool tag {raw_tag} at index {i}"
            ) from None
        if tag is CpTag.UTF8:
            length = r.u2()
            try:
                values: Tuple[Any, ...] = (_decode_modified_utf8(r.raw(length)),)
            except UnicodeError as exc:
                raise ClassFormatError(f"bad Utf8 constant at index {i}") from exc
        elif tag is CpTag.INTEGER:
            values = (r.unpack(">i"),)
        elif tag is CpTag.FLOAT:
            values = (r.unpack(">f"),)
        elif tag is CpTag.LONG:
            values = (r.unpack(">q"),)
        elif tag is CpTag.DOUBLE:
            values = (r.unpack(">d"),)
        elif tag in (CpTag.CLASS, CpTag.STRING, CpTag.METHOD_TYPE,
                     CpTag.MODULE, CpTag.PACKAGE):
            values = (r.u2(),)
        elif tag is CpTag.METHOD_HANDLE:
            values = (r.u1(), r.u2())
        else:
            values = (r.u2(), r.u2())
        entries[i] = CpEntry(tag, values)
        # long and double take two slots
        i += 2 if tag in (CpTag.LONG, CpTag.DOUBLE) else 1
    return ConstantPool(entries)


def _read_code_attribute(r: _Reader, pool: ConstantPool) -> Tuple[int, int, bytes, Tuple[ExceptionHandler, ...]]:
    max_stack = r.u2()
    max_locals = r.u2()
    code = r.raw(r.u4())
    handlers = []
    for _ in range(r.u2()):
        start_pc, end_pc, handler_pc, catch_idx = r.u2(), r.u2(), r.u2(), r.u2()
        catch_type = pool.class_name(catch_idx) if catch_idx else None
        handlers.append(ExceptionHandler(start_pc, end_pc, handler_pc, catch_type))
    r.skip_attributes()
    return max_stack, max_locals, code, tuple(handlers)


def _read_method(r: _Reader, owner: str, pool: ConstantPool) -> MethodBody:
    access = r.u2()
    name = pool.utf8(r.u2())
    descriptor = pool.utf8(r.u2())
    method = MethodBody(
        owner=owner,
        name=name,
        descriptor=descriptor,
        access_flags=access,
        constant_pool=pool,
    )
    for _ in range(r.u2()):
        attr_name = pool.utf8(r.u2())
        length = r.u4()
        if attr_name != "Code":
            r.raw(length)
            continue
        body = _Reader(r.raw(length))
        (method.max_stack, method.max_locals,
         method.code, method.exception_table) = _read_code_attribute(body, pool)
    return method


def parse_class(data: bytes, source: str = "") -> ClassFile:
    """Parse class-file *data*.

    Parameters
    ----------
    data : bytes
        The complete contents of a ``.class`` file.
    source : str
        Where the bytes came from; used only in messages.

    Raises
    ------
    ClassFormatError
        On a bad magic number, truncation or an inconsistent constant pool.
    """
    r = _Reader(data)
    if r.u4() != CLASS_MAGIC:
        raise ClassFormatError(f"not a class file: {source or '<bytes>'}")
    minor = r.u2()
    major = r.u2()
    pool = _read_constant_pool(r)
    access = r.u2()
    name = pool.class_name(r.u2())
    super_idx = r.u2()
    super_name = pool.class_name(super_idx) if super_idx else None
    for _ in range(r.u2()):
        r.u2()
    # fields
    for _ in range(r.u2()):
        r.raw(6)  # access_flags, name_index, descriptor_index
        r.skip_attributes()
    cls = ClassFile(
        name=name,
        super_name=super_name,
        access_flags=access,
        major_version=major,
        minor_version=minor,
        constant_pool=pool,
        source=source,
    )
    for _ in range(r.u2()):
        cls.methods.append(_read_method(r, name, pool))
    return cls


def read_class_file(path: Union[str, Path]) -> ClassFile:
    """Read and parse a ``.class`` file from disk."""
    p = Path(path)
    return parse_class(p.read_bytes(), source=str(p))
