# devtree

`devtree` works with device trees: the hardware descriptions that
bootloaders and operating system kernels use. It holds a tree in memory,
writes it out as a flattened device tree blob (`.dtb`) or as assembler
source, and reads blobs and `/proc/device-tree` style directories back into
a tree.

It needs nothing outside the standard library.

## The in-memory tree

`devtree.tree` holds the model:

- `Node`: a node with its properties and children. `add_property`,
  `add_child` (which also sets the child's `parent`), `get_property`,
  `get_subnode`, and `live_properties` / `live_children` to walk what has
  not been marked `deleted`.
- `Property`: a named value, held as `Data`, with its labels.
- `Data`: the raw bytes of a value plus its markers. It grows with
  `append_cell`, `append_integer` (8, 16, 32 or 64 bits, big-endian;
  any other width raises `ValueError`), `append_byte`, `append_bytes`,
  `append_re`, `append_zeroes` and `append_align`; each returns the same
  `Data`, so calls can be chained. `add_marker` records a `Marker` of a
  given `MarkerType` at the current end, and `markers_of_type` yields the
  markers of one type.
- `Label`, `ReserveEntry` and `DTInfo`: labels, memory reservations, and
  the whole tree with its reserve map and boot CPU.

Helpers for the blob format live alongside: `dtb_ld16`, `dtb_ld32` and
`dtb_ld64` read big-endian integers from the start of a buffer (a buffer
that is too short raises `ValueError`), `align` rounds up to a multiple of a
power of two, and `phandle_is_valid` tells a usable phandle from 0 and
0xffffffff.

## Blobs

`devtree.flattree` converts between a `DTInfo` and the binary format:

```python
from pathlib import Path

from devtree.flattree import BlobOptions, dt_from_blob, dt_to_blob
from devtree.formats import fill_fullpaths

dti = dt_from_blob(Path("board.dtb").read_bytes())
fill_fullpaths(dti.dt, "")

Path("copy.dtb").write_bytes(dt_to_blob(dti, 17, BlobOptions()))
```

Blob versions 1, 2, 3, 16 and 17 can be written; `version_info` describes
each one (header size, last compatible version and layout flags) and raises
`FlatTreeError` for any other. Versions 1 to 3 store each node's full path
and a `name` property, so call `fill_fullpaths` on the tree before writing
them.

`BlobOptions` carries `reservenum` (extra empty reserve map slots),
`minsize`, `padsize` and `alignsize` (the minimum size, padding and
alignment of the output) and `quiet`. A `minsize` smaller than the blob
prints a warning to standard error unless `quiet` is at least 1.

`dt_to_asm` returns the same tree as assembler source, with global labels
for the blob, its blocks and every labelled node, property and reserve
entry.

`dt_from_blob` accepts blobs of any version. A damaged or truncated blob
raises `FlatTreeError`; tags that are unusual but harmless (a property after
subnodes, a NOP in an old-version blob) print a warning to standard error.

## Directories

`devtree.fstree.dt_from_fs` reads a directory laid out like
`/proc/device-tree`: each regular file becomes a property holding the file's
bytes and each subdirectory a child node, in name order. A file that cannot
be opened is skipped with a warning on standard error; a directory that
cannot be listed raises `OSError`. The boot CPU of the result is left at 0.

## Guessing formats

`devtree.formats` holds the helpers a front end needs:

- `guess_input_format` looks at a path: a directory gives `"fs"`, a regular
  file starting with the blob magic number gives `"dtb"`, and otherwise the
  extension decides. A missing path, or one that is neither a directory nor
  a regular file, gives the fallback.
- `guess_type_by_name` goes by the extension alone, case-insensitively:
  `.dts` gives `"dts"`, `.yaml` gives `"yaml"`, `.dtb` and `.dtbo` give
  `"dtb"`, and anything else the fallback.
- `join_path` and `fill_fullpaths` give every live node its full path and
  the length of its name before any `@`.
- `is_power_of_2` checks alignment values.

## What it does not do

There is no command-line program. The package does not read or write
device tree source text (`.dts`) or YAML; `guess_type_by_name` only names
those formats. It does not run consistency checks on a tree, resolve
labels or phandle references, generate `aliases`, `__symbols__` or fixup
nodes, or sort a tree.