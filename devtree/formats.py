"""Helpers for choosing input and output formats and preparing a tree for output."""

from __future__ import annotations

import os
import stat
from typing import Optional

from .flattree import FDT_MAGIC
from .tree import Node


def is_power_of_2(x: int) -> bool:
    """Return True if x is a positive power of two."""
    return x > 0 and (x & (x - 1)) == 0


def join_path(prefix: str, name: str) -> str:
    """Join a path and a name, adding a separating '/' unless one is already there."""
    if prefix.endswith("/"):
        return prefix + name
    return f"{prefix}/{name}"


def fill_fullpaths(tree: Node, prefix: str) -> None:
    """Set the full path and base name length of every live node below tree."""
    tree.fullpath = join_path(prefix, tree.name)
    unit = tree.name.find("@")
    tree.basenamelen = unit if unit >= 0 else len(tree.name)
    for child in tree.live_children():
        fill_fullpaths(child, tree.fullpath)


_SUFFIX_TYPES = {
    ".dts": "dts",
    ".yaml": "yaml",
    ".dtbo": "dtb",
    ".dtb": "dtb",
}


def guess_type_by_name(fname: str, fallback: Optional[str]) -> Optional[str]:
    """Guess a format from a file name's extension."""
    dot = fname.rfind(".")
    if dot < 0:
        return fallback
    return _SUFFIX_TYPES.get(fname[dot:].lower(), fallback)


def guess_input_format(fname: str, fallback: Optional[str]) -> Optional[str]:
    """Guess the input format from the file's kind, magic number and name."""
    try:
        st = os.stat(fname)
    except OSError:
        return fallback
    if stat.S_ISDIR(st.st_mode):
        return "fs"
    if not stat.S_ISREG(st.st_mode):
        return fallback
    try:
        with open(fname, "rb") as f:
            magic = f.read(4)
    except OSError:
        return fallback
    if len(magic) != 4:
        return fallback
    if int.from_bytes(magic, "big") == FDT_MAGIC:
        return "dtb"
    return guess_type_by_name(fname, fallback)