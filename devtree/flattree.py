"""Flattened device tree blobs: binary and assembler output, and reading blobs back."""

from __future__ import annotations

import struct
import sys
from dataclasses import dataclass
from typing import Iterable, Iterator, Optional, Protocol

from .tree import (
    DEFAULT_FDT_VERSION,
    DTSF_V1,
    Data,
    DTInfo,
    Label,
    MarkerType,
    Node,
    Property,
    ReserveEntry,
    align,
    dtb_ld32,
)

FDT_MAGIC = 0xD00DFEED

FDT_BEGIN_NODE = 0x1
FDT_END_NODE = 0x2
FDT_PROP = 0x3
FDT_NOP = 0x4
FDT_END = 0x9

FDT_V1_SIZE = 7 * 4
FDT_V2_SIZE = FDT_V1_SIZE + 4
FDT_V3_SIZE = FDT_V2_SIZE + 4
FDT_V16_SIZE = FDT_V3_SIZE
FDT_V17_SIZE = FDT_V16_SIZE + 4

FDT_RESERVE_ENTRY_SIZE = 16
CELL_SIZE = 4

FTF_FULLPATH = 0x1
FTF_VARALIGN = 0x2
FTF_NAMEPROPS = 0x4
FTF_BOOTCPUID = 0x8
FTF_STRTABSIZE = 0x10
FTF_STRUCTSIZE = 0x20
FTF_NOPS = 0x40

_U32 = 0xFFFFFFFF
_PREMATURE_END = "Premature end of data parsing flat device tree"


class FlatTreeError(Exception):
    """Raised when a blob cannot be produced or parsed."""


@dataclass(frozen=True)
class VersionInfo:
    version: int
    last_comp_version: int
    hdr_size: int
    flags: int


_VERSION_TABLE = (
    VersionInfo(1, 1, FDT_V1_SIZE, FTF_FULLPATH | FTF_VARALIGN | FTF_NAMEPROPS),
    VersionInfo(
        2, 1, FDT_V2_SIZE,
        FTF_FULLPATH | FTF_VARALIGN | FTF_NAMEPROPS | FTF_BOOTCPUID,
    ),
    VersionInfo(
        3, 1, FDT_V3_SIZE,
        FTF_FULLPATH | FTF_VARALIGN | FTF_NAMEPROPS | FTF_BOOTCPUID | FTF_STRTABSIZE,
    ),
    VersionInfo(16, 16, FDT_V3_SIZE, FTF_BOOTCPUID | FTF_STRTABSIZE | FTF_NOPS),
    VersionInfo(
        17, 16, FDT_V17_SIZE,
        FTF_BOOTCPUID | FTF_STRTABSIZE | FTF_STRUCTSIZE | FTF_NOPS,
    ),
)


@dataclass
class BlobOptions:
    """Layout options for blob and assembler output."""

    reservenum: int = 0
    minsize: int = 0
    padsize: int = 0
    alignsize: int = 0
    quiet: int = 0


def version_info(version: int) -> VersionInfo:
    """Return the layout description of a blob version."""
    for vi in _VERSION_TABLE:
        if vi.version == version:
            return vi
    raise FlatTreeError(f"Unknown device tree blob version {version}")


def _encode(text: str) -> bytes:
    return text.encode("utf-8", "surrogateescape")


def _decode(raw: bytes) -> str:
    return raw.decode("utf-8", "surrogateescape")


def _live_labels(labels: Optional[Iterable[Label]]) -> Iterator[Label]:
    return (lab for lab in (labels or ()) if not lab.deleted)


class _Emitter(Protocol):
    def cell(self, val: int) -> None: ...
    def string(self, text: str, length: int) -> None: ...
    def align(self, alignment: int) -> None: ...
    def data(self, d: Data) -> None: ...
    def begin_node(self, labels: Optional[list[Label]]) -> None: ...
    def end_node(self, labels: Optional[list[Label]]) -> None: ...
    def property(self, labels: Optional[list[Label]]) -> None: ...


class _BinEmitter:
    def __init__(self) -> None:
        self.buf = Data()

    def cell(self, val: int) -> None:
        self.buf.append_cell(val)

    def string(self, text: str, length: int) -> None:
        raw = _encode(text)
        if length:
            raw = raw[:length]
        self.buf.append_bytes(raw).append_byte(0)

    def align(self, alignment: int) -> None:
        self.buf.append_align(alignment)

    def data(self, d: Data) -> None:
        self.buf.append_bytes(bytes(d.val))

    def begin_node(self, labels: Optional[list[Label]]) -> None:
        self.cell(FDT_BEGIN_NODE)

    def end_node(self, labels: Optional[list[Label]]) -> None:
        self.cell(FDT_END_NODE)

    def property(self, labels: Optional[list[Label]]) -> None:
        self.cell(FDT_PROP)


class _AsmEmitter:
    def __init__(self) -> None:
        self.parts: list[str] = []

    def write(self, text: str) -> None:
        self.parts.append(text)

    def text(self) -> str:
        return "".join(self.parts)

    def cell(self, val: int) -> None:
        val &= _U32
        self.write(
            f"\t.byte 0x{(val >> 24) & 0xff:02x}; .byte 0x{(val >> 16) & 0xff:02x};"
            f" .byte 0x{(val >> 8) & 0xff:02x}; .byte 0x{val & 0xff:02x}\n"
        )

    def belong(self, expr: str) -> None:
        self.write(f"\t.byte\t(({expr}) >> 24) & 0xff\n")
        self.write(f"\t.byte\t(({expr}) >> 16) & 0xff\n")
        self.write(f"\t.byte\t(({expr}) >> 8) & 0xff\n")
        self.write(f"\t.byte\t({expr}) & 0xff\n")

    def label(self, prefix: str, label: str) -> None:
        self.write(f"\t.globl\t{prefix}_{label}\n")
        self.write(f"{prefix}_{label}:\n")
        self.write(f"_{prefix}_{label}:\n")

    def offset_label(self, label: str, offset: int) -> None:
        self.write(f"\t.globl\t{label}\n")
        self.write(f"{label}\t= . + {offset}\n")

    def global_labels(self, labels: Optional[list[Label]], suffix: str = "") -> None:
        for lab in _live_labels(labels):
            self.write(f"\t.globl\t{lab.label}{suffix}\n")
            self.write(f"{lab.label}{suffix}:\n")

    def string(self, text: str, length: int) -> None:
        if length:
            text = _decode(_encode(text)[:length])
        self.write(f'\t.string\t"{text}"\n')

    def align(self, alignment: int) -> None:
        self.write(f"\t.balign\t{alignment}, 0\n")

    def data(self, d: Data) -> None:
        for m in d.markers_of_type(MarkerType.LABEL):
            self.offset_label(m.ref or "", m.offset)
        raw = bytes(d.val)
        whole = len(raw) - len(raw) % CELL_SIZE
        for off in range(0, whole, CELL_SIZE):
            self.cell(dtb_ld32(raw[off:off + CELL_SIZE]))
        for byte in raw[whole:]:
            self.write(f"\t.byte\t0x{byte:x}\n")

    def begin_node(self, labels: Optional[list[Label]]) -> None:
        self.global_labels(labels)
        self.write("\t/* FDT_BEGIN_NODE */\n")
        self.cell(FDT_BEGIN_NODE)

    def end_node(self, labels: Optional[list[Label]]) -> None:
        self.write("\t/* FDT_END_NODE */\n")
        self.cell(FDT_END_NODE)
        self.global_labels(labels, "_end")

    def property(self, labels: Optional[list[Label]]) -> None:
        self.global_labels(labels)
        self.write("\t/* FDT_PROP */\n")
        self.cell(FDT_PROP)


def _stringtable_insert(table: bytearray, name: str) -> int:
    entry = _encode(name) + b"\0"
    found = table.find(entry)
    if found >= 0:
        return found
    offset = len(table)
    table += entry
    return offset


def _flatten_tree(tree: Node, emit: _Emitter, strtab: bytearray, vi: VersionInfo) -> None:
    if tree.deleted:
        return

    emit.begin_node(tree.labels)
    emit.string(tree.fullpath if vi.flags & FTF_FULLPATH else tree.name, 0)
    emit.align(CELL_SIZE)

    seen_name_prop = False
    for prop in tree.live_properties():
        if prop.name == "name":
            seen_name_prop = True
        nameoff = _stringtable_insert(strtab, prop.name)
        emit.property(prop.labels)
        emit.cell(len(prop.val))
        emit.cell(nameoff)
        if vi.flags & FTF_VARALIGN and len(prop.val) >= 8:
            emit.align(8)
        emit.data(prop.val)
        emit.align(CELL_SIZE)

    if vi.flags & FTF_NAMEPROPS and not seen_name_prop:
        emit.property(None)
        emit.cell(tree.basenamelen + 1)
        emit.cell(_stringtable_insert(strtab, "name"))
        if vi.flags & FTF_VARALIGN and tree.basenamelen + 1 >= 8:
            emit.align(8)
        emit.string(tree.name, tree.basenamelen)
        emit.align(CELL_SIZE)

    for child in tree.live_children():
        _flatten_tree(child, emit, strtab, vi)

    emit.end_node(tree.labels)


def _flatten_reserve_list(reservelist: Iterable[ReserveEntry], reservenum: int) -> Data:
    d = Data()
    for re in reservelist:
        d.append_re(re.address, re.size)
    for _ in range(reservenum):
        d.append_re(0, 0)
    return d


def _make_header(vi: VersionInfo, reservesize: int, dtsize: int, strsize: int,
                 boot_cpuid_phys: int) -> list[int]:
    reservesize += FDT_RESERVE_ENTRY_SIZE
    reserve_off = align(vi.hdr_size, 8)
    fields = [_U32] * 10
    fields[0] = FDT_MAGIC
    fields[1] = reserve_off + reservesize + dtsize + strsize
    fields[2] = reserve_off + reservesize
    fields[3] = reserve_off + reservesize + dtsize
    fields[4] = reserve_off
    fields[5] = vi.version
    fields[6] = vi.last_comp_version
    if vi.flags & FTF_BOOTCPUID:
        fields[7] = boot_cpuid_phys & _U32
    if vi.flags & FTF_STRTABSIZE:
        fields[8] = strsize
    if vi.flags & FTF_STRUCTSIZE:
        fields[9] = dtsize
    return fields


def dt_to_blob(dti: DTInfo, version: int = DEFAULT_FDT_VERSION,
               options: Optional[BlobOptions] = None) -> bytes:
    """Flatten a tree into a binary blob of the given version."""
    opts = options or BlobOptions()
    vi = version_info(version)

    emitter = _BinEmitter()
    strtab = bytearray()
    _flatten_tree(dti.dt, emitter, strtab, vi)
    emitter.cell(FDT_END)
    dtbuf = emitter.buf

    reservebuf = _flatten_reserve_list(dti.reservelist, opts.reservenum)
    header = _make_header(vi, len(reservebuf), len(dtbuf), len(strtab),
                          dti.boot_cpuid_phys)
    totalsize = header[1]

    padlen = 0
    if opts.minsize > 0:
        padlen = opts.minsize - totalsize
        if padlen < 0:
            padlen = 0
            if opts.quiet < 1:
                print(f"Warning: blob size {totalsize} >= minimum size {opts.minsize}",
                      file=sys.stderr)
    if opts.padsize > 0:
        padlen = opts.padsize
    if opts.alignsize > 0:
        padlen = align(totalsize + padlen, opts.alignsize) - totalsize
    if padlen > 0:
        header[1] = totalsize + padlen

    blob = Data(struct.pack(">10I", *header)[:vi.hdr_size])
    blob.append_align(8)
    blob.append_bytes(bytes(reservebuf.val))
    blob.append_zeroes(FDT_RESERVE_ENTRY_SIZE)
    blob.append_bytes(bytes(dtbuf.val))
    blob.append_bytes(bytes(strtab))
    if padlen > 0:
        blob.append_zeroes(padlen)
    return bytes(blob.val)


def _dump_stringtable_asm(out: _AsmEmitter, strtab: bytes) -> None:
    pos = 0
    while pos < len(strtab):
        end = strtab.find(b"\0", pos)
        if end < 0:
            end = len(strtab)
        out.write(f'\t.string "{_decode(strtab[pos:end])}"\n')
        pos = end + 1


def dt_to_asm(dti: DTInfo, version: int = DEFAULT_FDT_VERSION,
              options: Optional[BlobOptions] = None) -> str:
    """Render a tree as assembler source that builds the blob."""
    opts = options or BlobOptions()
    vi = version_info(version)
    prefix = "dt"
    out = _AsmEmitter()

    out.write("/* autogenerated by dtc, do not edit */\n\n")
    out.label(prefix, "blob_start")
    out.label(prefix, "header")
    out.write("\t/* magic */\n")
    out.cell(FDT_MAGIC)
    out.write("\t/* totalsize */\n")
    out.belong(f"_{prefix}_blob_abs_end - _{prefix}_blob_start")
    out.write("\t/* off_dt_struct */\n")
    out.belong(f"_{prefix}_struct_start - _{prefix}_blob_start")
    out.write("\t/* off_dt_strings */\n")
    out.belong(f"_{prefix}_strings_start - _{prefix}_blob_start")
    out.write("\t/* off_mem_rsvmap */\n")
    out.belong(f"_{prefix}_reserve_map - _{prefix}_blob_start")
    out.write("\t/* version */\n")
    out.cell(vi.version)
    out.write("\t/* last_comp_version */\n")
    out.cell(vi.last_comp_version)

    if vi.flags & FTF_BOOTCPUID:
        out.write("\t/* boot_cpuid_phys */\n")
        out.cell(dti.boot_cpuid_phys)
    if vi.flags & FTF_STRTABSIZE:
        out.write("\t/* size_dt_strings */\n")
        out.belong(f"_{prefix}_strings_end - _{prefix}_strings_start")
    if vi.flags & FTF_STRUCTSIZE:
        out.write("\t/* size_dt_struct */\n")
        out.belong(f"_{prefix}_struct_end - _{prefix}_struct_start")

    out.align(8)
    out.label(prefix, "reserve_map")
    out.write("/* Memory reserve map from source file */\n")
    for re in dti.reservelist:
        out.global_labels(re.labels)
        out.belong(f"0x{(re.address >> 32) & _U32:08x}")
        out.belong(f"0x{re.address & _U32:08x}")
        out.belong(f"0x{(re.size >> 32) & _U32:08x}")
        out.belong(f"0x{re.size & _U32:08x}")
    for _ in range(opts.reservenum):
        out.write("\t.long\t0, 0\n\t.long\t0, 0\n")
    out.write("\t.long\t0, 0\n\t.long\t0, 0\n")

    strtab = bytearray()
    out.label(prefix, "struct_start")
    _flatten_tree(dti.dt, out, strtab, vi)
    out.write("\t/* FDT_END */\n")
    out.cell(FDT_END)
    out.label(prefix, "struct_end")

    out.label(prefix, "strings_start")
    _dump_stringtable_asm(out, bytes(strtab))
    out.label(prefix, "strings_end")

    out.label(prefix, "blob_end")
    if opts.minsize > 0:
        out.write(f"\t.space\t{opts.minsize} - (_{prefix}_blob_end - _{prefix}_blob_start), 0\n")
    if opts.padsize > 0:
        out.write(f"\t.space\t{opts.padsize}, 0\n")
    if opts.alignsize > 0:
        out.align(opts.alignsize)
    out.label(prefix, "blob_abs_end")
    return out.text()


class _InBuf:
    """A bounded read cursor over a region of a blob."""

    def __init__(self, blob: bytes, base: int, limit: int) -> None:
        self.blob = blob
        self.base = base
        self.limit = limit
        self.ptr = base

    def read_chunk(self, length: int) -> bytes:
        if self.ptr + length > self.limit:
            raise FlatTreeError(_PREMATURE_END)
        chunk = self.blob[self.ptr:self.ptr + length]
        self.ptr += length
        return chunk

    def read_word(self) -> int:
        return int.from_bytes(self.read_chunk(CELL_SIZE), "big")

    def realign(self, alignment: int) -> None:
        self.ptr = self.base + align(self.ptr - self.base, alignment)
        if self.ptr > self.limit:
            raise FlatTreeError(_PREMATURE_END)

    def read_string(self) -> str:
        end = self.blob.find(b"\0", self.ptr, self.limit)
        if end < 0:
            raise FlatTreeError(_PREMATURE_END)
        text = _decode(self.blob[self.ptr:end])
        self.ptr = end + 1
        self.realign(CELL_SIZE)
        return text

    def read_data(self, length: int) -> Data:
        if length == 0:
            return Data()
        d = Data(self.read_chunk(length))
        self.realign(CELL_SIZE)
        return d

    def read_table_string(self, offset: int) -> str:
        signed = offset - (1 << 32) if offset & 0x80000000 else offset
        start = self.base + signed
        if start < self.base or start >= self.limit:
            raise FlatTreeError(f"String offset {signed} overruns string table")
        end = self.blob.find(b"\0", start, self.limit)
        if end < 0:
            raise FlatTreeError(f"String offset {signed} overruns string table")
        return _decode(self.blob[start:end])


def _read_property(dtbuf: _InBuf, strbuf: _InBuf, flags: int) -> Property:
    proplen = dtbuf.read_word()
    stroff = dtbuf.read_word()
    name = strbuf.read_table_string(stroff)
    if flags & FTF_VARALIGN and proplen >= 8:
        dtbuf.realign(8)
    return Property(name, dtbuf.read_data(proplen))


def _read_mem_reserve(inb: _InBuf) -> list[ReserveEntry]:
    entries = []
    while True:
        address, size = struct.unpack(">QQ", inb.read_chunk(FDT_RESERVE_ENTRY_SIZE))
        if size == 0:
            return entries
        entries.append(ReserveEntry(address, size))


def _nodename_from_path(ppath: str, cpath: str) -> str:
    if not cpath.startswith(ppath):
        raise FlatTreeError(f'Path "{cpath}" is not valid as a child of "{ppath}"')
    plen = len(ppath)
    if ppath != "/":
        plen += 1
    return cpath[plen:]


def _unflatten_tree(dtbuf: _InBuf, strbuf: _InBuf, parent_flatname: str,
                    flags: int) -> Node:
    node = Node()
    flatname = dtbuf.read_string()
    node.name = (_nodename_from_path(parent_flatname, flatname)
                 if flags & FTF_FULLPATH else flatname)

    while True:
        val = dtbuf.read_word()
        if val == FDT_PROP:
            if node.children:
                print("Warning: Flat tree input has subnodes preceding a property.",
                      file=sys.stderr)
            node.add_property(_read_property(dtbuf, strbuf, flags))
        elif val == FDT_BEGIN_NODE:
            node.add_child(_unflatten_tree(dtbuf, strbuf, flatname, flags))
        elif val == FDT_END_NODE:
            return node
        elif val == FDT_END:
            raise FlatTreeError("Premature FDT_END in device tree blob")
        elif val == FDT_NOP:
            if not flags & FTF_NOPS:
                print("Warning: NOP tag found in flat tree version <16", file=sys.stderr)
        else:
            raise FlatTreeError(f"Invalid opcode word {val:08x} in device tree blob")


def _header_word(blob: bytes, index: int) -> int:
    offset = index * 4
    if offset + 4 > len(blob):
        return 0
    return int.from_bytes(blob[offset:offset + 4], "big")


def dt_from_blob(blob: bytes) -> DTInfo:
    """Parse a binary blob into a live tree."""
    raw = bytes(blob)
    if len(raw) < 4:
        raise FlatTreeError("EOF reading DT blob magic number")
    if _header_word(raw, 0) != FDT_MAGIC:
        raise FlatTreeError("Blob has incorrect magic number")
    if len(raw) < 8:
        raise FlatTreeError("EOF reading DT blob size")
    totalsize = _header_word(raw, 1)
    if totalsize < FDT_V1_SIZE:
        raise FlatTreeError(f"DT blob size ({totalsize}) is too small")
    if len(raw) < totalsize:
        raise FlatTreeError(f"EOF before reading {totalsize} bytes of DT blob")
    raw = raw[:totalsize]

    off_dt = _header_word(raw, 2)
    off_str = _header_word(raw, 3)
    off_mem_rsvmap = _header_word(raw, 4)
    version = _header_word(raw, 5)
    boot_cpuid_phys = _header_word(raw, 7)

    if off_mem_rsvmap >= totalsize:
        raise FlatTreeError("Mem Reserve structure offset exceeds total size")
    if off_dt >= totalsize:
        raise FlatTreeError("DT structure offset exceeds total size")
    if off_str > totalsize:
        raise FlatTreeError("String table offset exceeds total size")

    if version >= 3:
        size_str = _header_word(raw, 8)
        end = (off_str + size_str) & _U32
        if end < off_str or end > totalsize:
            raise FlatTreeError("String table extends past total size")
        strbuf = _InBuf(raw, off_str, end)
    else:
        strbuf = _InBuf(raw, off_str, totalsize)

    if version >= 17:
        size_dt = _header_word(raw, 9)
        end = (off_dt + size_dt) & _U32
        if end < off_dt or end > totalsize:
            raise FlatTreeError("Structure block extends past total size")

    if version < 16:
        flags = FTF_FULLPATH | FTF_NAMEPROPS | FTF_VARALIGN
    else:
        flags = FTF_NOPS

    memresvbuf = _InBuf(raw, off_mem_rsvmap, totalsize)
    dtbuf = _InBuf(raw, off_dt, totalsize)

    reservelist = _read_mem_reserve(memresvbuf)

    val = dtbuf.read_word()
    if val != FDT_BEGIN_NODE:
        raise FlatTreeError(
            "Device tree blob doesn't begin with FDT_BEGIN_NODE "
            f"(begins with 0x{val:08x})"
        )
    tree = _unflatten_tree(dtbuf, strbuf, "", flags)

    if dtbuf.read_word() != FDT_END:
        raise FlatTreeError("Device tree blob doesn't end with FDT_END")

    return DTInfo(dt=tree, dtsflags=DTSF_V1, reservelist=reservelist,
                  boot_cpuid_phys=boot_cpuid_phys)