import threading
import time

import pytest

from lvmlocal.controller import Informer
from lvmlocal.models import LVMSnapshot
from lvmlocal.snapshot import SnapController, SnapshotBackend, start

NODE = "node-1"


class FakeBackend(SnapshotBackend):
    def __init__(self, fail_on=()):
        self.calls = []
        self.fail_on = set(fail_on)

    def _record(self, op, snap):
        self.calls.append((op, snap.name))
        if op in self.fail_on:
            raise RuntimeError(op)

    def create_snapshot(self, snap):
        self._record("create", snap)

    def destroy_snapshot(self, snap):
        self._record("destroy", snap)

    def remove_finalizer(self, snap):
        self._record("remove_finalizer", snap)

    def update_snap_info(self, snap):
        self._record("update_info", snap)


def snap_dict(name="snap1", namespace="openebs", owner=NODE, state="Pending", deleting=False):
    metadata = {"name": name, "namespace": namespace}
    if deleting:
        metadata["deletionTimestamp"] = "2024-01-01T00:00:00Z"
    return {
        "metadata": metadata,
        "spec": {"ownerNodeID": owner, "volGroup": "lvmvg"},
        "status": {"state": state},
    }


@pytest.fixture
def setup():
    informer = Informer("lvmsnapshots")
    backend = FakeBackend()
    controller = SnapController(informer, backend, NODE)
    return informer, backend, controller


def test_pending_snapshot_is_created(setup):
    informer, backend, controller = setup
    informer._store["openebs/snap1"] = snap_dict()
    controller.sync_handler("openebs/snap1")
    assert backend.calls == [("create", "snap1"), ("update_info", "snap1")]


def test_deleting_snapshot_is_destroyed(setup):
    informer, backend, controller = setup
    informer._store["openebs/snap1"] = snap_dict(deleting=True)
    controller.sync_handler("openebs/snap1")
    assert backend.calls == [("destroy", "snap1"), ("remove_finalizer", "snap1")]


def test_ready_snapshot_is_left_alone(setup):
    informer, backend, controller = setup
    informer._store["openebs/snap1"] = snap_dict(state="Ready")
    controller.sync_handler("openebs/snap1")
    assert backend.calls == []


def test_missing_snapshot_is_ignored(setup):
    _, backend, controller = setup
    controller.sync_handler("openebs/absent")
    assert backend.calls == []


def test_invalid_key_is_ignored(setup):
    _, backend, controller = setup
    controller.sync_handler("a/b/c")
    assert backend.calls == []


def test_destroy_failure_skips_finalizer_removal():
    backend = FakeBackend(fail_on={"destroy"})
    controller = SnapController(Informer(), backend, NODE)
    snap = LVMSnapshot.from_dict(snap_dict(deleting=True))
    with pytest.raises(RuntimeError, match="destroy"):
        controller.sync_snap(snap)
    assert backend.calls == [("destroy", "snap1")]


def test_create_failure_skips_info_update():
    backend = FakeBackend(fail_on={"create"})
    controller = SnapController(Informer(), backend, NODE)
    with pytest.raises(RuntimeError):
        controller.sync_snap(LVMSnapshot.from_dict(snap_dict()))
    assert backend.calls == [("create", "snap1")]


def test_is_deletion_candidate(setup):
    _, _, controller = setup
    assert controller.is_deletion_candidate(LVMSnapshot.from_dict(snap_dict(deleting=True)))
    assert not controller.is_deletion_candidate(LVMSnapshot.from_dict(snap_dict()))


def test_add_event_enqueues_own_snapshot(setup):
    informer, _, controller = setup
    informer.add(snap_dict())
    assert len(controller.queue) == 1
    assert controller.queue.get() == "openebs/snap1"


def test_add_event_ignores_other_node(setup):
    informer, _, controller = setup
    informer.add(snap_dict(owner="other-node"))
    assert len(controller.queue) == 0


def test_add_ignores_non_mapping(setup):
    _, _, controller = setup
    controller.add_snap("not an object")
    assert len(controller.queue) == 0


def test_update_enqueues_only_deletion_candidates(setup):
    _, _, controller = setup
    controller.update_snap(snap_dict(), snap_dict(state="Ready"))
    assert len(controller.queue) == 0
    controller.update_snap(snap_dict(), snap_dict(deleting=True))
    assert controller.queue.get() == "openebs/snap1"


def test_delete_event_enqueues(setup):
    _, _, controller = setup
    controller.delete_snap(snap_dict(name="gone"))
    assert controller.queue.get() == "openebs/gone"


def test_delete_event_ignores_other_node(setup):
    _, _, controller = setup
    controller.delete_snap(snap_dict(owner="other-node"))
    assert len(controller.queue) == 0


def test_run_fails_when_cache_never_syncs(setup):
    _, _, controller = setup
    stop = threading.Event()
    stop.set()
    with pytest.raises(RuntimeError, match="sync"):
        controller.run(1, stop)
    assert controller.queue.shutting_down()


def _wait_for(predicate, timeout=5.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return False


def test_run_processes_queued_snapshot(setup):
    informer, backend, controller = setup
    informer.mark_synced()
    informer.add(snap_dict())
    stop = threading.Event()
    thread = threading.Thread(target=controller.run, args=(1, stop), daemon=True)
    thread.start()
    assert _wait_for(lambda: len(backend.calls) == 2)
    stop.set()
    thread.join(5.0)
    assert not thread.is_alive()
    assert backend.calls == [("create", "snap1"), ("update_info", "snap1")]
    assert controller.queue.shutting_down()


def test_start_runs_controller_until_stopped():
    informer = Informer()
    informer.mark_synced()
    backend = FakeBackend()
    stop = threading.Event()
    lock = threading.Lock()
    thread = threading.Thread(
        target=start, args=(lock, stop, informer, backend, NODE), daemon=True
    )
    thread.start()
    assert _wait_for(lambda: len(informer._handlers) == 1)
    informer.add(snap_dict(deleting=True))
    assert _wait_for(lambda: len(backend.calls) == 2)
    stop.set()
    thread.join(5.0)
    assert not thread.is_alive()
    assert backend.calls == [("destroy", "snap1"), ("remove_finalizer", "snap1")]
    assert not lock.locked()