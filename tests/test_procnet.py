import sys

import psutil
import pytest

from hostreport.procnet import (
    container_from_cgroups, format_address, list_pids, listening_entries, parse_socket_table,
    procfs_path, read_cgroup_paths, read_socket_table, socket_inodes,
)
from conftest import TCP_HEADER, table_row

little_endian = pytest.mark.skipif(sys.byteorder != "little", reason="fixtures are little-endian")


@little_endian
@pytest.mark.parametrize("raw, expected", [
    ("0100007F:0035", "127.0.0.1:53"),
    ("00000000:0016", "0.0.0.0:22"),
    ("00000000000000000000000000000000:0016", "[::]:22"),
    ("00000000000000000000000001000000:1F90", "[::1]:8080"),
    ("0000000000000000FFFF000000000000:0017", "[::ffff:0.0.0.0]:23"),
])
def test_format_address(raw, expected):
    assert format_address(raw) == expected


@little_endian
def test_parse_tcp_table_maps_states_and_inodes():
    text = TCP_HEADER + table_row(0, "00000000:0016", "0A", 1111) + \
        table_row(1, "0100007F:1F90", "01", 2222, remote="0100007F:C350")
    entries = parse_socket_table(text, "tcp")

    assert [(e.local_address, e.state, e.inode) for e in entries] == [
        ("0.0.0.0:22", "LISTEN", 1111),
        ("127.0.0.1:8080", "ESTABLISHED", 2222),
    ]
    assert [e.inode for e in listening_entries(entries)] == [1111]


@little_endian
def test_udp_rows_have_no_state_and_all_count():
    text = TCP_HEADER + table_row(0, "00000000:0035", "07", 10) + table_row(1, "0100007F:0044", "07", 11)
    entries = parse_socket_table(text, "udp")
    assert all(e.state is None for e in entries)
    assert len(listening_entries(entries)) == 2


def test_parse_skips_short_and_garbage_rows():
    text = TCP_HEADER + "   0: nonsense\n" + table_row(1, "ZZZZZZZZ:0016", "0A", 5)
    assert parse_socket_table(text, "tcp") == []


def test_read_socket_table_missing_file_raises(tmp_path):
    with pytest.raises(OSError):
        read_socket_table("tcp6", str(tmp_path))


def test_socket_inodes_only_returns_sockets(fake_proc):
    fake_proc.process(300, inodes=[4242, 4343], files=["/dev/null", "pipe:[99]"])
    assert sorted(socket_inodes(300, fake_proc.path)) == [4242, 4343]


def test_socket_inodes_missing_process(fake_proc):
    with pytest.raises(OSError):
        socket_inodes(999999, fake_proc.path)


def test_read_cgroup_paths(fake_proc):
    fake_proc.process(12, cgroup="12:memory:/docker/abc\n0::/system.slice/sshd.service\n")
    assert read_cgroup_paths(12, fake_proc.path) == ["/docker/abc", "/system.slice/sshd.service"]


@pytest.mark.parametrize("paths, expected", [
    (["/docker/3f2a9c/init"], "3f2a9c"),
    (["/system.slice/docker/deadbeef"], "deadbeef"),
    (["/kubepods/burstable/pod1234/cafe01"], "cafe01"),
    (["/user.slice/user-1000.slice/session-2.scope"], None),
    (["/", "/docker/"], None),
    ([], None),
])
def test_container_from_cgroups(paths, expected):
    assert container_from_cgroups(paths) == expected


def test_list_pids(fake_proc):
    fake_proc.process(42)
    fake_proc.process(7)
    assert list_pids(fake_proc.path) == [7, 42]     # "net" is skipped


def test_list_pids_missing_root(tmp_path):
    with pytest.raises(OSError):
        list_pids(str(tmp_path / "absent"))


def test_procfs_path_is_restored():
    before = psutil.PROCFS_PATH
    with pytest.raises(RuntimeError):
        with procfs_path("/host/proc"):
            assert psutil.PROCFS_PATH == "/host/proc"
            raise RuntimeError("scan failed")
    assert psutil.PROCFS_PATH == before
