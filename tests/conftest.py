import os
from collections import namedtuple

import pytest

from hostreport.models import CollectionContext, CollectorMetadata, Section
from hostreport.registry import Collector

TCP_HEADER = ("  sl  local_address rem_address   st tx_queue rx_queue tr tm->when "
              "retrnsmt   uid  timeout inode\n")


def table_row(n, local, state, inode, remote="00000000:0000"):
    return (f"   {n}: {local} {remote} {state} 00000000:00000000 00:00000000 "
            f"00000000     0        0 {inode} 1 0000000000000000 100 0 0 10 0\n")


@pytest.fixture
def fake_proc(tmp_path):
    """
    Builds a throwaway /proc tree.
    fake_proc.table("tcp", [(local_hex, state_hex, inode), ...])
    fake_proc.process(pid, inodes=[...], cgroup="0::/...")
    """
    root = tmp_path / "proc"
    (root / "net").mkdir(parents=True)

    class FakeProc:
        path = str(root)

        def table(self, proto, rows):
            text = TCP_HEADER + "".join(
                table_row(i, local, state, inode) for i, (local, state, inode) in enumerate(rows)
            )
            (root / "net" / proto).write_text(text)

        def process(self, pid, inodes=(), cgroup=None, files=()):
            fd = root / str(pid) / "fd"
            fd.mkdir(parents=True)
            n = 0
            for inode in inodes:
                os.symlink(f"socket:[{inode}]", fd / str(n))
                n += 1
            for target in files:
                os.symlink(target, fd / str(n))
                n += 1
            if cgroup is not None:
                (root / str(pid) / "cgroup").write_text(cgroup)

    return FakeProc()


class StaticCollector(Collector):
    def __init__(self, section_id, status="success", body=None):
        self.section_id = section_id
        self.status = status
        self.body = body or {}
        self.calls = 0

    def metadata(self):
        return CollectorMetadata(self.section_id, self.section_id.title(), "test collector")

    def collect(self, ctx: CollectionContext):
        self.calls += 1
        if self.status == "degraded":
            return Section.degraded(self.section_id, self.section_id.title(), "partly broken", self.body)
        return Section.success(self.section_id, self.section_id.title(), self.body,
                               summary=f"{self.section_id} ok")


class FailingCollector(Collector):
    def __init__(self, exc=None):
        self.exc = exc or RuntimeError("boom")

    def metadata(self):
        return CollectorMetadata("broken", "Broken Source", "always fails")

    def collect(self, ctx):
        raise self.exc


@pytest.fixture
def static_collector():
    return StaticCollector


@pytest.fixture
def failing_collector():
    return FailingCollector


FakeCounters = namedtuple("FakeCounters", "bytes_sent bytes_recv packets_sent packets_recv")
FakeUids = namedtuple("FakeUids", "real effective saved")


@pytest.fixture
def fake_counters():
    return FakeCounters


@pytest.fixture
def process_identities(monkeypatch):
    """
    Replaces psutil.Process in hostreport.network with a stand-in driven by
    {pid: (name, uid)}. Pids missing from the table raise NoSuchProcess.
    """
    import psutil
    from hostreport import network

    table = {}

    class FakeProcess:
        def __init__(self, pid):
            if pid not in table:
                raise psutil.NoSuchProcess(pid)
            self.pid = pid

        def name(self):
            return table[self.pid][0]

        def uids(self):
            uid = table[self.pid][1]
            if uid is None:
                raise psutil.AccessDenied(self.pid)
            return FakeUids(uid, uid, uid)

    monkeypatch.setattr(network.psutil, "Process", FakeProcess)
    return table
