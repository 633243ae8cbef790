import pytest

from devtree.flattree import dt_to_blob
from devtree.formats import (
    fill_fullpaths,
    guess_input_format,
    guess_type_by_name,
    is_power_of_2,
    join_path,
)
from devtree.tree import DTInfo, Node


@pytest.mark.parametrize("x", [1, 2, 4, 8, 1024])
def test_powers_of_two(x):
    assert is_power_of_2(x) is True


@pytest.mark.parametrize("x", [0, -2, 3, 6, 1000])
def test_not_powers_of_two(x):
    assert is_power_of_2(x) is False


def test_join_path_adds_separator():
    assert join_path("/soc", "uart") == "/soc/uart"


def test_join_path_keeps_existing_separator():
    assert join_path("/", "cpus") == "/cpus"


def test_join_path_empty_prefix_gives_absolute():
    assert join_path("", "cpus").startswith("/")
    assert join_path("", "") == "/"


def test_fill_fullpaths():
    root = Node(name="")
    soc = Node(name="soc")
    uart = Node(name="uart@1000")
    root.add_child(soc)
    soc.add_child(uart)
    fill_fullpaths(root, "")
    assert root.fullpath == "/"
    assert soc.fullpath == "/soc"
    assert uart.fullpath == "/soc/uart@1000"
    assert uart.basenamelen == len("uart")
    assert soc.basenamelen == len("soc")


def test_fill_fullpaths_skips_deleted():
    root = Node(name="")
    gone = Node(name="gone", deleted=True)
    root.add_child(gone)
    fill_fullpaths(root, "")
    assert gone.fullpath == ""


@pytest.mark.parametrize(
    "name,expected",
    [
        ("board.dts", "dts"),
        ("BOARD.DTS", "dts"),
        ("board.yaml", "yaml"),
        ("overlay.dtbo", "dtb"),
        ("board.dtb", "dtb"),
        ("board.txt", None),
        ("board", None),
    ],
)
def test_guess_type_by_name(name, expected):
    assert guess_type_by_name(name, None) == expected


def test_guess_type_by_name_fallback():
    assert guess_type_by_name("noext", "dts") == "dts"


def test_guess_input_format_directory(tmp_path):
    assert guess_input_format(str(tmp_path), "dts") == "fs"


def test_guess_input_format_missing(tmp_path):
    assert guess_input_format(str(tmp_path / "nope"), "dts") == "dts"


def test_guess_input_format_magic_overrides_name(tmp_path):
    dti = DTInfo(dt=Node(name=""))
    fill_fullpaths(dti.dt, "")
    path = tmp_path / "tree.dts"
    path.write_bytes(dt_to_blob(dti))
    assert guess_input_format(str(path), "dts") == "dtb"


def test_guess_input_format_uses_name_without_magic(tmp_path):
    path = tmp_path / "tree.yaml"
    path.write_bytes(b"/dts-v1/;\n")
    assert guess_input_format(str(path), "dts") == "yaml"


def test_guess_input_format_short_file(tmp_path):
    path = tmp_path / "tiny.dtb"
    path.write_bytes(b"\xd0")
    assert guess_input_format(str(path), "dts") == "dts"