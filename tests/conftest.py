# tests/conftest.py
"""
Shared builders for the msgkeys test-suite.

``ClassBuilder`` assembles real class-file bytes (constant pool, methods,
``Code`` attributes, exception tables) and ``CodeBuilder`` assembles method
bodies with symbolic labels, so tests exercise the same parsing path as
classes produced by ``javac``.
"""

import struct
import zipfile
from pathlib import Path
from typing import Callable, Dict, List, Optional, Sequence, Tuple

import pytest

from msgkeys.bytecode import OPCODES_BY_NAME
from msgkeys.classfile import ACC_STATIC, MethodBody, parse_class
from msgkeys.descriptor import parse_method_descriptor

MESSAGE_SERVICE = "de/t14d3/rapunzellib/message/MessageService"
COMPONENT_DESC = "(Ljava/lang/String;)Lnet/kyori/adventure/text/Component;"
RAW_DESC = "(Ljava/lang/String;)Ljava/lang/String;"
ACC_PUBLIC = 0x0001
ACC_SUPER = 0x0020


def modified_utf8(text: str) -> bytes:
    out = bytearray()
    for ch in text:
        cp = ord(ch)
        if cp == 0:
            out += b"\xc0\x80"
        elif cp > 0xFFFF:
            cp -= 0x10000
            for unit in (0xD800 + (cp >> 10), 0xDC00 + (cp & 0x3FF)):
                out += chr(unit).encode("utf-8", "surrogatepass")
        else:
            out += ch.encode("utf-8")
    return bytes(out)


# ── Class assembler ─────────────────────────────────────────────

class ClassBuilder:
    """Builds class-file bytes with a deduplicated constant pool."""

    def __init__(self, name: str = "com/example/Demo", super_name: str = "java/lang/Object"):
        self.name = name
        self.super_name = super_name
        self._pool: List[bytes] = []
        self._index: Dict[Tuple, int] = {}
        self._next = 1
        self._methods: List[bytes] = []

    # constant pool ---------------------------------------------------

    def _add(self, key: Tuple, payload: bytes, slots: int = 1) -> int:
        if key in self._index:
            return self._index[key]
        idx = self._next
        self._pool.append(payload)
        self._index[key] = idx
        self._next += slots
        return idx

    def utf8(self, text: str) -> int:
        raw = modified_utf8(text)
        return self._add(("utf8", text), struct.pack(">BH", 1, len(raw)) + raw)

    def class_ref(self, name: str) -> int:
        return self._add(("class", name), struct.pack(">BH", 7, self.utf8(name)))

    def string(self, text: str) -> int:
        return self._add(("string", text), struct.pack(">BH", 8, self.utf8(text)))

    def integer(self, value: int) -> int:
        return self._add(("int", value), struct.pack(">Bi", 3, value))

    def long(self, value: int) -> int:
        return self._add(("long", value), struct.pack(">Bq", 5, value), slots=2)

    def double(self, value: float) -> int:
        return self._add(("double", value), struct.pack(">Bd", 6, value), slots=2)

    def name_and_type(self, name: str, descriptor: str) -> int:
        return self._add(
            ("nat", name, descriptor),
            struct.pack(">BHH", 12, self.utf8(name), self.utf8(descriptor)),
        )

    def member_ref(self, tag: int, owner: str, name: str, descriptor: str) -> int:
        return self._add(
            ("ref", tag, owner, name, descriptor),
            struct.pack(">BHH", tag, self.class_ref(owner), self.name_and_type(name, descriptor)),
        )

    def method_ref(self, owner: str, name: str, descriptor: str, interface: bool = False) -> int:
        return self.member_ref(11 if interface else 10, owner, name, descriptor)

    def field_ref(self, owner: str, name: str, descriptor: str) -> int:
        return self.member_ref(9, owner, name, descriptor)

    def invoke_dynamic(self, name: str, descriptor: str, bootstrap: int = 0) -> int:
        return self._add(
            ("indy", name, descriptor, bootstrap),
            struct.pack(">BHH", 18, bootstrap, self.name_and_type(name, descriptor)),
        )

    # methods ---------------------------------------------------------

    def add_method(
        self,
        name: str,
        descriptor: str,
        code: Optional["CodeBuilder"] = None,
        max_stack: int = 16,
        max_locals: int = 4,
        access: int = ACC_PUBLIC | ACC_STATIC,
    ) -> None:
        header = struct.pack(">HHH", access, self.utf8(name), self.utf8(descriptor))
        if code is None:
            self._methods.append(header + struct.pack(">H", 0))
            return
        body = code.assemble()
        handlers = code.resolved_handlers()
        attr = struct.pack(">HHI", max_stack, max_locals, len(body)) + body
        attr += struct.pack(">H", len(handlers))
        for start, end, handler, catch in handlers:
            catch_idx = self.class_ref(catch) if catch else 0
            attr += struct.pack(">HHHH", start, end, handler, catch_idx)
        attr += struct.pack(">H", 0)
        code_name = self.utf8("Code")
        self._methods.append(
            header + struct.pack(">HHI", 1, code_name, len(attr)) + attr
        )

    def code(self) -> "CodeBuilder":
        return CodeBuilder(self)

    def build(self) -> bytes:
        this_idx = self.class_ref(self.name)
        super_idx = self.class_ref(self.super_name) if self.super_name else 0
        out = struct.pack(">IHH", 0xCAFEBABE, 0, 52)
        out += struct.pack(">H", self._next) + b"".join(self._pool)
        out += struct.pack(">HHH", ACC_PUBLIC | ACC_SUPER, this_idx, super_idx)
        out += struct.pack(">HH", 0, 0)  # interfaces, fields
        out += struct.pack(">H", len(self._methods)) + b"".join(self._methods)
        out += struct.pack(">H", 0)
        return out


# ── Code assembler ──────────────────────────────────────────────

class CodeBuilder:
    """Assembles a code array; jump operands may name labels."""

    def __init__(self, cls: ClassBuilder):
        self.cls = cls
        self.buf = bytearray()
        self.labels: Dict[str, int] = {}
        self._fixups: List[Tuple[int, int, str, int]] = []
        self._handlers: List[Tuple[str, str, str, Optional[str]]] = []

    # primitives ------------------------------------------------------

    @property
    def offset(self) -> int:
        return len(self.buf)

    def label(self, name: str) -> "CodeBuilder":
        self.labels[name] = self.offset
        return self

    def op(self, mnemonic: str, fmt: str = "", *values) -> "CodeBuilder":
        self.buf.append(OPCODES_BY_NAME[mnemonic].code)
        if fmt:
            self.buf += struct.pack(">" + fmt, *values)
        return self

    def raw(self, data: bytes) -> "CodeBuilder":
        self.buf += data
        return self

    def _jump_operand(self, start: int, label: str, width: int) -> None:
        self._fixups.append((self.offset, start, label, width))
        self.buf += b"\x00" * width

    # instructions ----------------------------------------------------

    def ldc(self, text: str) -> "CodeBuilder":
        idx = self.cls.string(text)
        if idx < 256:
            return self.op("ldc", "B", idx)
        return self.op("ldc_w", "H", idx)

    def ldc_int(self, value: int) -> "CodeBuilder":
        return self.op("ldc_w", "H", self.cls.integer(value))

    def ldc_long(self, value: int) -> "CodeBuilder":
        return self.op("ldc2_w", "H", self.cls.long(value))

    def load(self, prefix: str, index: int) -> "CodeBuilder":
        if index <= 3:
            return self.op(f"{prefix}load_{index}")
        return self.op(f"{prefix}load", "B", index)

    def store(self, prefix: str, index: int) -> "CodeBuilder":
        if index <= 3:
            return self.op(f"{prefix}store_{index}")
        return self.op(f"{prefix}store", "B", index)

    def wide(self, mnemonic: str, index: int, increment: Optional[int] = None) -> "CodeBuilder":
        self.buf.append(OPCODES_BY_NAME["wide"].code)
        self.buf.append(OPCODES_BY_NAME[mnemonic].code)
        self.buf += struct.pack(">H", index)
        if increment is not None:
            self.buf += struct.pack(">h", increment)
        return self

    def invoke(self, mnemonic: str, owner: str, name: str, descriptor: str) -> "CodeBuilder":
        interface = mnemonic == "invokeinterface"
        self.op(mnemonic, "H", self.cls.method_ref(owner, name, descriptor, interface))
        if interface:
            count = parse_method_descriptor(descriptor).argument_words + 1
            self.buf += struct.pack(">BB", count, 0)
        return self

    def invokedynamic(self, name: str, descriptor: str) -> "CodeBuilder":
        return self.op("invokedynamic", "HH", self.cls.invoke_dynamic(name, descriptor), 0)

    def component(self, owner: str = MESSAGE_SERVICE, name: str = "component",
                  descriptor: str = COMPONENT_DESC) -> "CodeBuilder":
        """``invokestatic owner.name(descriptor)``."""
        return self.invoke("invokestatic", owner, name, descriptor)

    def field(self, mnemonic: str, owner: str, name: str, descriptor: str) -> "CodeBuilder":
        return self.op(mnemonic, "H", self.cls.field_ref(owner, name, descriptor))

    def type_op(self, mnemonic: str, class_name: str) -> "CodeBuilder":
        return self.op(mnemonic, "H", self.cls.class_ref(class_name))

    def branch(self, mnemonic: str, label: str) -> "CodeBuilder":
        start = self.offset
        self.buf.append(OPCODES_BY_NAME[mnemonic].code)
        self._jump_operand(start, label, 4 if mnemonic.endswith("_w") else 2)
        return self

    def _switch_header(self, mnemonic: str) -> int:
        start = self.offset
        self.buf.append(OPCODES_BY_NAME[mnemonic].code)
        while len(self.buf) % 4:
            self.buf.append(0)
        return start

    def tableswitch(self, default: str, low: int, cases: Sequence[str]) -> "CodeBuilder":
        start = self._switch_header("tableswitch")
        self._jump_operand(start, default, 4)
        self.buf += struct.pack(">ii", low, low + len(cases) - 1)
        for label in cases:
            self._jump_operand(start, label, 4)
        return self

    def lookupswitch(self, default: str, pairs: Sequence[Tuple[int, str]]) -> "CodeBuilder":
        start = self._switch_header("lookupswitch")
        self._jump_operand(start, default, 4)
        self.buf += struct.pack(">i", len(pairs))
        for key, label in pairs:
            self.buf += struct.pack(">i", key)
            self._jump_operand(start, label, 4)
        return self

    def handler(self, start: str, end: str, target: str, catch_type: Optional[str] = None) -> "CodeBuilder":
        self._handlers.append((start, end, target, catch_type))
        return self

    # output ----------------------------------------------------------

    def assemble(self) -> bytes:
        out = bytearray(self.buf)
        for pos, start, label, width in self._fixups:
            rel = self.labels[label] - start
            out[pos:pos + width] = struct.pack(">h" if width == 2 else ">i", rel)
        return bytes(out)

    def resolved_handlers(self) -> List[Tuple[int, int, int, Optional[str]]]:
        return [
            (self.labels[s], self.labels[e], self.labels[h], c)
            for s, e, h, c in self._handlers
        ]


# ── Convenience ─────────────────────────────────────────────────

def assemble_method(
    build: Callable[[CodeBuilder], object],
    descriptor: str = "()V",
    max_locals: int = 4,
    static: bool = True,
    name: str = "run",
    class_name: str = "com/example/Demo",
) -> MethodBody:
    """Assemble one method into a class, parse it back and return it."""
    cls = ClassBuilder(class_name)
    code = cls.code()
    build(code)
    access = ACC_PUBLIC | (ACC_STATIC if static else 0)
    cls.add_method(name, descriptor, code, max_locals=max_locals, access=access)
    return parse_class(cls.build()).methods[0]


def class_with_keys(keys: Sequence[str], class_name: str = "com/example/Demo") -> bytes:
    """A class whose single method passes each key to ``MessageService.component``."""
    cls = ClassBuilder(class_name)
    code = cls.code()
    for key in keys:
        code.ldc(key).component().op("pop")
    code.op("return")
    cls.add_method("send", "()V", code)
    return cls.build()


def write_class(directory: Path, data: bytes, name: str = "Demo") -> Path:
    directory.mkdir(parents=True, exist_ok=True)
    path = directory / f"{name}.class"
    path.write_bytes(data)
    return path


def write_jar(path: Path, entries: Dict[str, bytes]) -> Path:
    with zipfile.ZipFile(path, "w") as archive:
        for name, data in entries.items():
            archive.writestr(name, data)
    return path


@pytest.fixture
def class_builder():
    return ClassBuilder()


@pytest.fixture
def messages_file(tmp_path):
    path = tmp_path / "messages.yml"
    path.write_text(
        "prefix: '<gray>[Demo]</gray> '\n"
        "greeting:\n"
        "  hello: 'Hello!'\n"
        "  bye: 'Bye!'\n"
        "count: 3\n",
        encoding="utf-8",
    )
    return path
