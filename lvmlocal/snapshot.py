"""Controller that creates and removes LVM snapshots for LVMSnapshot resources."""

from __future__ import annotations

import abc
import copy
import logging
import threading
from collections.abc import Mapping
from typing import Any, Optional

from lvmlocal.controller import (
    Controller,
    Informer,
    InvalidKeyError,
    meta_namespace_key,
    split_meta_namespace_key,
)
from lvmlocal.models import LVMSnapshot, LVMSnapshotStatus, NotFoundError
from lvmlocal.workqueue import ItemFastSlowRateLimiter, RateLimitingQueue

log = logging.getLogger(__name__)

CONTROLLER_AGENT_NAME = "lvmsnap-controller"
GROUP = "local.openebs.io"
VERSION = "v1alpha1"
RESOURCE = "lvmsnapshots"

_CONVERSION_ERRORS = (ValueError, TypeError, AttributeError, KeyError)


class SnapshotBackend(abc.ABC):
    """Operations on the node's snapshots and on LVMSnapshot resources."""

    @abc.abstractmethod
    def create_snapshot(self, snap: LVMSnapshot) -> None:
        """Create the snapshot described by snap on this node."""

    @abc.abstractmethod
    def destroy_snapshot(self, snap: LVMSnapshot) -> None:
        """Remove the snapshot described by snap from this node."""

    @abc.abstractmethod
    def remove_finalizer(self, snap: LVMSnapshot) -> None:
        """Drop the finalizer from the LVMSnapshot resource."""

    @abc.abstractmethod
    def update_snap_info(self, snap: LVMSnapshot) -> None:
        """Record that the snapshot has been created."""


class SnapController(Controller):
    """Watches LVMSnapshot resources owned by this node and converges them."""

    def __init__(self, informer: Informer, backend: SnapshotBackend, node_id: str) -> None:
        # Failed items are retried after 5s for the first 12 attempts, then every 30s.
        queue = RateLimitingQueue(ItemFastSlowRateLimiter(5.0, 30.0, 12), name="Snap")
        super().__init__(CONTROLLER_AGENT_NAME, queue)
        self.informer = informer
        self.backend = backend
        self.node_id = node_id
        log.info("Adding Event handler functions for lvm snapshot controller")
        informer.add_event_handler(
            on_add=self.add_snap,
            on_update=self.update_snap,
            on_delete=self.delete_snap,
        )

    def is_deletion_candidate(self, snap: LVMSnapshot) -> bool:
        return snap.metadata.deletion_timestamp is not None

    def _structured(self, obj: Any) -> Optional[LVMSnapshot]:
        if not isinstance(obj, Mapping):
            log.error("couldnt type assert obj: %r to unstructured obj", obj)
            return None
        try:
            return LVMSnapshot.from_dict(dict(obj))
        except _CONVERSION_ERRORS as exc:
            log.error("err %s, While converting unstructured obj to typed object", exc)
            return None

    def sync_handler(self, key: str) -> None:
        try:
            namespace, name = split_meta_namespace_key(key)
        except InvalidKeyError:
            log.error("invalid resource key: %s", key)
            return
        try:
            raw = self.informer.get(namespace, name)
        except NotFoundError:
            log.error("lvm snapshot '%s' has been deleted", key)
            return
        try:
            snap = LVMSnapshot.from_dict(dict(raw))
        except _CONVERSION_ERRORS as exc:
            log.info("err %s, While converting unstructured obj to typed object", exc)
            snap = LVMSnapshot()
        self.sync_snap(copy.deepcopy(snap))

    def sync_snap(self, snap: LVMSnapshot) -> None:
        """Create or destroy the snapshot so that it matches the resource."""
        if self.is_deletion_candidate(snap):
            self.backend.destroy_snapshot(snap)
            self.backend.remove_finalizer(snap)
        elif snap.status.state == LVMSnapshotStatus.PENDING:
            self.backend.create_snapshot(snap)
            self.backend.update_snap_info(snap)

    def _enqueue_snap(self, snap: LVMSnapshot) -> None:
        try:
            key = meta_namespace_key(snap)
        except TypeError as exc:
            log.error("%s", exc)
            return
        self.enqueue(key)

    def add_snap(self, obj: Any) -> None:
        snap = self._structured(obj)
        if snap is None:
            log.error("Couldn't get snapshot object %r", obj)
            return
        if snap.spec.owner_node_id != self.node_id:
            return
        log.info("Got add event for Snapshot %s/%s", snap.spec.vol_group, snap.name)
        self._enqueue_snap(snap)

    def update_snap(self, old_obj: Any, new_obj: Any) -> None:
        snap = self._structured(new_obj)
        if snap is None:
            log.error("Couldn't get snap object %r", new_obj)
            return
        if snap.spec.owner_node_id != self.node_id:
            return
        # An update only matters once the snapshot is marked for deletion.
        if self.is_deletion_candidate(snap):
            log.info("Got update event for Snapshot %s/%s", snap.spec.vol_group, snap.name)
            self._enqueue_snap(snap)

    def delete_snap(self, obj: Any) -> None:
        snap = self._structured(obj)
        if snap is None:
            tombstone_obj = getattr(obj, "obj", None)
            if not isinstance(tombstone_obj, LVMSnapshot):
                log.error("tombstone contained object that is not a lvmsnapshot %r", obj)
                return
            snap = tombstone_obj
        if snap.spec.owner_node_id != self.node_id:
            return
        log.info("Got delete event for Snapshot %s/%s", snap.spec.vol_group, snap.name)
        self._enqueue_snap(snap)

    def run(self, threadiness: int, stop_event: threading.Event) -> None:
        """Run workers until stop_event is set, then shut the queue down."""
        try:
            log.info("Starting Snap controller")
            log.info("Waiting for informer caches to sync")
            if not self.informer.wait_for_sync(stop_event):
                raise RuntimeError("failed to wait for caches to sync")
            log.info("Starting Snap workers")
            self.start_workers(threadiness, stop_event)
            log.info("Started Snap workers")
            stop_event.wait()
            log.info("Shutting down Snap workers")
        finally:
            self.queue.shut_down()


def start(
    controller_lock: threading.Lock,
    stop_event: threading.Event,
    informer: Informer,
    backend: SnapshotBackend,
    node_id: str,
) -> None:
    """Build the snapshot controller and run it with two workers until stopped."""
    with controller_lock:
        controller = SnapController(informer, backend, node_id)
    log.info("Starting Lvm snapshot controller")
    controller.run(2, stop_event)