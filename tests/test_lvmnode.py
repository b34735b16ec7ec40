import threading
import time
from types import SimpleNamespace

import pytest

from lvmlocal.controller import Informer
from lvmlocal.lvmnode import NodeBackend, NodeClient, NodeController, start
from lvmlocal.models import LVMNode, ObjectMeta, OwnerReference, VolumeGroup

NS = "openebs"
NODE = "node-1"


class FakeBackend(NodeBackend):
    def __init__(self, vgs):
        self.vgs = vgs

    def list_volume_groups(self):
        return list(self.vgs)


class FakeClient(NodeClient):
    def __init__(self, fail=False):
        self.created = []
        self.updated = []
        self.fail = fail

    def create(self, node):
        if self.fail:
            raise OSError("boom")
        self.created.append(node)
        return node

    def update(self, node):
        if self.fail:
            raise OSError("boom")
        self.updated.append(node)
        return node


def owner_ref(controller=True):
    return OwnerReference(api_version="v1", kind="Node", name=NODE, uid="uid-1", controller=controller)


def vg(name, free):
    return VolumeGroup(name=name, uuid="u-" + name, size=free * 2, free=free)


def node_dict(vgs, refs):
    return {
        "metadata": {
            "name": NODE,
            "namespace": NS,
            "ownerReferences": refs,
        },
        "volumeGroups": [
            {"name": v.name, "uuid": v.uuid, "size": v.size, "free": v.free} for v in vgs
        ],
    }


REF_DICT = {"apiVersion": "v1", "kind": "Node", "name": NODE, "uid": "uid-1", "controller": True}


def make(vgs=None, client=None, poll=60):
    informer = Informer("lvmnodes")
    backend = FakeBackend(vgs if vgs is not None else [vg("lvmvg", 1024)])
    client = client or FakeClient()
    ctrl = NodeController(informer, backend, client, NODE, NS, owner_ref(), poll)
    return ctrl, informer, backend, client


def test_sync_node_creates_missing_node():
    ctrl, _, backend, client = make()
    ctrl.sync_node(NS, NODE)
    assert len(client.created) == 1
    node = client.created[0]
    assert node.name == NODE
    assert node.namespace == NS
    assert node.volume_groups == backend.vgs
    assert node.metadata.owner_references == [owner_ref()]
    assert client.updated == []


def test_sync_node_create_error_is_wrapped():
    ctrl, _, _, _ = make(client=FakeClient(fail=True))
    with pytest.raises(RuntimeError, match="create lvm node openebs/node-1"):
        ctrl.sync_node(NS, NODE)


def test_sync_node_up_to_date_does_nothing():
    vgs = [vg("lvmvg", 1024)]
    ctrl, informer, _, client = make(vgs=vgs)
    informer.add(node_dict(vgs, [REF_DICT]))
    ctrl.sync_node(NS, NODE)
    assert client.created == []
    assert client.updated == []


def test_sync_node_updates_volume_groups():
    old = [vg("lvmvg", 1024)]
    new = [vg("lvmvg", 512), vg("other", 2048)]
    ctrl, informer, _, client = make(vgs=new)
    informer.add(node_dict(old, [REF_DICT]))
    ctrl.sync_node(NS, NODE)
    assert len(client.updated) == 1
    assert client.updated[0].volume_groups == new


def test_sync_node_updates_owner_controller_flag():
    vgs = [vg("lvmvg", 1024)]
    ctrl, informer, _, client = make(vgs=vgs)
    informer.add(node_dict(vgs, [dict(REF_DICT, controller=False)]))
    ctrl.sync_node(NS, NODE)
    assert len(client.updated) == 1
    assert client.updated[0].metadata.owner_references == [owner_ref()]


def test_sync_node_update_error_is_wrapped():
    client = FakeClient(fail=True)
    ctrl, informer, _, _ = make(vgs=[vg("a", 1)], client=client)
    informer.add(node_dict([], [REF_DICT]))
    with pytest.raises(RuntimeError, match="update lvm node"):
        ctrl.sync_node(NS, NODE)


def test_owner_refs_appended_when_missing():
    ctrl, *_ = make()
    other = OwnerReference(api_version="v1", kind="Pod", name="p", uid="uid-2")
    refs, changed = ctrl.is_owner_refs_update_required([other])
    assert changed is True
    assert refs == [other, owner_ref()]


def test_owner_refs_unchanged_when_present():
    ctrl, *_ = make()
    refs, changed = ctrl.is_owner_refs_update_required([owner_ref()])
    assert changed is False
    assert refs == [owner_ref()]


def test_owner_refs_controller_fixed_without_mutating_input():
    ctrl, *_ = make()
    original = [owner_ref(controller=None)]
    refs, changed = ctrl.is_owner_refs_update_required(original)
    assert changed is True
    assert refs[0].controller is True
    assert original[0].controller is None


def test_enqueue_node_skips_other_nodes():
    ctrl, *_ = make()
    ctrl.enqueue_node(LVMNode(metadata=ObjectMeta(name="node-2", namespace=NS)))
    ctrl.enqueue_node(LVMNode(metadata=ObjectMeta(name=NODE, namespace="default")))
    assert len(ctrl.queue) == 0


def test_add_event_enqueues_own_node():
    ctrl, informer, _, _ = make()
    informer.add(node_dict([], [REF_DICT]))
    assert len(ctrl.queue) == 1
    assert ctrl.queue.get() == f"{NS}/{NODE}"


def test_delete_event_with_tombstone():
    ctrl, *_ = make()
    tombstone = SimpleNamespace(obj=LVMNode(metadata=ObjectMeta(name=NODE, namespace=NS)))
    ctrl.delete_node(tombstone)
    assert ctrl.queue.get() == f"{NS}/{NODE}"


def test_delete_event_with_bad_tombstone_is_ignored():
    ctrl, *_ = make()
    ctrl.delete_node(SimpleNamespace(obj="nope"))
    assert len(ctrl.queue) == 0


def test_sync_handler_invalid_key_does_nothing():
    ctrl, _, _, client = make()
    assert ctrl.sync_handler("a/b/c") is None
    assert client.created == []


def test_process_next_work_item_creates_node():
    ctrl, _, _, client = make()
    ctrl.enqueue(f"{NS}/{NODE}")
    assert ctrl.process_next_work_item() is True
    assert [n.name for n in client.created] == [NODE]


def test_run_fails_when_stopped_before_sync():
    ctrl, *_ = make()
    stop = threading.Event()
    stop.set()
    with pytest.raises(RuntimeError, match="failed to wait for caches to sync"):
        ctrl.run(1, stop)
    assert ctrl.queue.shutting_down() is True


def test_start_runs_until_stopped_and_creates_node():
    informer = Informer("lvmnodes")
    informer.mark_synced()
    client = FakeClient()
    stop = threading.Event()
    thread = threading.Thread(
        target=start,
        args=(threading.Lock(), stop, informer, FakeBackend([vg("lvmvg", 10)]), client, NODE, NS, owner_ref(), 0.05),
        daemon=True,
    )
    thread.start()
    deadline = time.monotonic() + 5
    while not client.created and time.monotonic() < deadline:
        time.sleep(0.02)
    stop.set()
    thread.join(5)
    assert not thread.is_alive()
    assert client.created[0].name == NODE
    assert client.created[0].volume_groups == [vg("lvmvg", 10)]