import pytest

from devtree.flattree import dt_from_blob, dt_to_blob
from devtree.formats import fill_fullpaths
from devtree.fstree import dt_from_fs


@pytest.fixture
def fsdir(tmp_path):
    root = tmp_path / "dt"
    root.mkdir()
    (root / "compatible").write_bytes(b"test_tree1\0")
    (root / "prop-int").write_bytes(b"\xde\xad\xbe\xef")
    sub = root / "subnode@1"
    sub.mkdir()
    (sub / "prop-str").write_bytes(b"hello world\0")
    (sub / "subsubnode").mkdir()
    return root


def test_root_is_nameless(fsdir):
    dti = dt_from_fs(str(fsdir))
    assert dti.dt.name == ""


def test_files_become_properties(fsdir):
    dti = dt_from_fs(str(fsdir))
    prop = dti.dt.get_property("prop-int")
    assert bytes(prop.val) == b"\xde\xad\xbe\xef"
    assert bytes(dti.dt.get_property("compatible").val) == b"test_tree1\0"
    assert sorted(p.name for p in dti.dt.live_properties()) == ["compatible", "prop-int"]


def test_directories_become_nodes(fsdir):
    dti = dt_from_fs(str(fsdir))
    sub = dti.dt.get_subnode("subnode@1")
    assert sub.parent is dti.dt
    assert bytes(sub.get_property("prop-str").val) == b"hello world\0"
    subsub = sub.get_subnode("subsubnode")
    assert list(subsub.live_properties()) == []
    assert list(subsub.live_children()) == []


def test_empty_file_gives_empty_property(tmp_path):
    (tmp_path / "empty").write_bytes(b"")
    dti = dt_from_fs(str(tmp_path))
    assert len(dti.dt.get_property("empty").val) == 0


def test_missing_directory_raises(tmp_path):
    with pytest.raises(FileNotFoundError):
        dt_from_fs(str(tmp_path / "absent"))


def test_blob_round_trip(fsdir):
    dti = dt_from_fs(str(fsdir))
    fill_fullpaths(dti.dt, "")
    back = dt_from_blob(dt_to_blob(dti))
    sub = back.dt.get_subnode("subnode@1")
    assert bytes(sub.get_property("prop-str").val) == b"hello world\0"
    assert bytes(back.dt.get_property("prop-int").val) == b"\xde\xad\xbe\xef"
    assert sub.get_subnode("subsubnode").name == "subsubnode"