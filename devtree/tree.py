"""In-memory device tree: data blobs, properties, nodes and boot information."""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from typing import Iterator, Optional

DEFAULT_FDT_VERSION = 17

PHANDLE_LEGACY = 0x1
PHANDLE_EPAPR = 0x2
PHANDLE_BOTH = 0x3

MAX_PROPNAME_LEN = 31
MAX_NODENAME_LEN = 31

DTSF_V1 = 0x0001
DTSF_PLUGIN = 0x0002

_CELL_MASK = 0xFFFFFFFF


def phandle_is_valid(phandle: int) -> bool:
    """Return True unless the phandle is 0 or all ones."""
    return phandle != 0 and phandle != _CELL_MASK


def _load_be(buf: bytes, size: int) -> int:
    if len(buf) < size:
        raise ValueError(f"need {size} bytes, got {len(buf)}")
    return int.from_bytes(bytes(buf[:size]), "big")


def dtb_ld16(buf: bytes) -> int:
    """Read a big-endian 16-bit value from the start of buf."""
    return _load_be(buf, 2)


def dtb_ld32(buf: bytes) -> int:
    """Read a big-endian 32-bit value from the start of buf."""
    return _load_be(buf, 4)


def dtb_ld64(buf: bytes) -> int:
    """Read a big-endian 64-bit value from the start of buf."""
    return _load_be(buf, 8)


def align(value: int, alignment: int) -> int:
    """Round value up to a multiple of alignment (a power of two)."""
    return (value + alignment - 1) & ~(alignment - 1)


class MarkerType(enum.Enum):
    TYPE_NONE = 0
    REF_PHANDLE = 1
    REF_PATH = 2
    LABEL = 3
    TYPE_UINT8 = 4
    TYPE_UINT16 = 5
    TYPE_UINT32 = 6
    TYPE_UINT64 = 7
    TYPE_STRING = 8


@dataclass
class Marker:
    type: MarkerType
    offset: int
    ref: Optional[str] = None


_INTEGER_BITS = {8, 16, 32, 64}


@dataclass
class Data:
    """A byte value with position markers; the append methods return self."""

    val: bytearray = field(default_factory=bytearray)
    markers: list[Marker] = field(default_factory=list)

    def __post_init__(self) -> None:
        if not isinstance(self.val, bytearray):
            self.val = bytearray(self.val)

    def __len__(self) -> int:
        return len(self.val)

    def __bytes__(self) -> bytes:
        return bytes(self.val)

    def append_bytes(self, raw: bytes) -> Data:
        self.val += raw
        return self

    def append_cell(self, word: int) -> Data:
        return self.append_integer(word, 32)

    def append_integer(self, value: int, bits: int) -> Data:
        if bits not in _INTEGER_BITS:
            raise ValueError(f"invalid literal size {bits}")
        mask = (1 << bits) - 1
        self.val += (value & mask).to_bytes(bits // 8, "big")
        return self

    def append_re(self, address: int, size: int) -> Data:
        return self.append_integer(address, 64).append_integer(size, 64)

    def append_byte(self, byte: int) -> Data:
        self.val.append(byte & 0xFF)
        return self

    def append_zeroes(self, count: int) -> Data:
        self.val += bytes(count)
        return self

    def append_align(self, alignment: int) -> Data:
        return self.append_zeroes(align(len(self.val), alignment) - len(self.val))

    def add_marker(self, type: MarkerType, ref: Optional[str] = None) -> Data:
        self.markers.append(Marker(type, len(self.val), ref))
        return self

    def markers_of_type(self, type: MarkerType) -> Iterator[Marker]:
        return (m for m in self.markers if m.type is type)


@dataclass
class Label:
    label: str
    deleted: bool = False


@dataclass
class Property:
    name: str
    val: Data = field(default_factory=Data)
    labels: list[Label] = field(default_factory=list)
    deleted: bool = False
    srcpos: Optional[object] = None


@dataclass(eq=False)
class Node:
    name: str = ""
    proplist: list[Property] = field(default_factory=list)
    children: list[Node] = field(default_factory=list)
    parent: Optional[Node] = None
    fullpath: str = ""
    basenamelen: int = 0
    phandle: int = 0
    addr_cells: int = -1
    size_cells: int = -1
    labels: list[Label] = field(default_factory=list)
    deleted: bool = False
    srcpos: Optional[object] = None
    omit_if_unused: bool = False
    is_referenced: bool = False

    def add_property(self, prop: Property) -> None:
        self.proplist.append(prop)

    def add_child(self, child: Node) -> None:
        child.parent = self
        self.children.append(child)

    def live_properties(self) -> Iterator[Property]:
        return (p for p in self.proplist if not p.deleted)

    def live_children(self) -> Iterator[Node]:
        return (c for c in self.children if not c.deleted)

    def get_property(self, name: str) -> Optional[Property]:
        return next((p for p in self.live_properties() if p.name == name), None)

    def get_subnode(self, name: str) -> Optional[Node]:
        return next((c for c in self.live_children() if c.name == name), None)


@dataclass
class ReserveEntry:
    address: int
    size: int
    labels: list[Label] = field(default_factory=list)


@dataclass
class DTInfo:
    dt: Node
    dtsflags: int = DTSF_V1
    reservelist: list[ReserveEntry] = field(default_factory=list)
    boot_cpuid_phys: int = 0
    outname: str = "-"