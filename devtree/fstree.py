"""Build a live tree from a /proc/device-tree style directory."""

from __future__ import annotations

import os
import stat
import sys

from .formats import join_path
from .tree import DTSF_V1, Data, DTInfo, Node, Property


def _read_fstree(dirname: str) -> Node:
    try:
        entries = sorted(os.listdir(dirname))
    except OSError as exc:
        raise OSError(exc.errno, f'Couldn\'t opendir() "{dirname}": {exc.strerror}') from exc

    tree = Node()
    for entry in entries:
        path = join_path(dirname, entry)
        try:
            st = os.stat(path)
        except OSError as exc:
            raise OSError(exc.errno, f"stat({path}): {exc.strerror}") from exc

        if stat.S_ISREG(st.st_mode):
            try:
                with open(path, "rb") as pfile:
                    content = pfile.read(st.st_size)
            except OSError as exc:
                print(f"WARNING: Cannot open {path}: {exc.strerror}", file=sys.stderr)
                continue
            tree.add_property(Property(entry, Data(content)))
        elif stat.S_ISDIR(st.st_mode):
            child = _read_fstree(path)
            child.name = entry
            tree.add_child(child)
    return tree


def dt_from_fs(dirname: str) -> DTInfo:
    """Read a directory tree: files become properties, directories become nodes."""
    tree = _read_fstree(dirname)
    tree.name = ""
    return DTInfo(dt=tree, dtsflags=DTSF_V1)