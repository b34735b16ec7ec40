"""Controller that keeps this node's LVMNode resource in step with its volume groups."""

from __future__ import annotations

import abc
import copy
import dataclasses
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
from lvmlocal.models import LVMNode, NotFoundError, ObjectMeta, OwnerReference, VolumeGroup
from lvmlocal.workqueue import RateLimitingQueue, default_controller_rate_limiter

log = logging.getLogger(__name__)

CONTROLLER_AGENT_NAME = "lvmnode-controller"
GROUP = "local.openebs.io"
VERSION = "v1alpha1"
RESOURCE = "lvmnodes"

_CONVERSION_ERRORS = (ValueError, TypeError, AttributeError, KeyError)


class NodeBackend(abc.ABC):
    """Access to the volume groups present on this node."""

    @abc.abstractmethod
    def list_volume_groups(self) -> list[VolumeGroup]:
        """Return the volume groups present on this node."""


class NodeClient(abc.ABC):
    """Writes LVMNode resources to the cluster."""

    @abc.abstractmethod
    def create(self, node: LVMNode) -> LVMNode:
        """Create the LVMNode resource."""

    @abc.abstractmethod
    def update(self, node: LVMNode) -> LVMNode:
        """Replace the LVMNode resource."""


class NodeController(Controller):
    """Publishes the volume groups of one node as an LVMNode resource."""

    def __init__(
        self,
        informer: Informer,
        backend: NodeBackend,
        client: NodeClient,
        node_id: str,
        namespace: str,
        owner_ref: OwnerReference,
        poll_interval: float,
    ) -> None:
        queue = RateLimitingQueue(default_controller_rate_limiter(), name="Node")
        super().__init__(CONTROLLER_AGENT_NAME, queue)
        self.informer = informer
        self.backend = backend
        self.client = client
        self.node_id = node_id
        self.namespace = namespace
        self.owner_ref = owner_ref
        self.poll_interval = poll_interval
        log.info("Adding Event handler functions for lvm node controller")
        informer.add_event_handler(
            on_add=self.add_node,
            on_update=self.update_node,
            on_delete=self.delete_node,
        )

    def _structured(self, obj: Any) -> Optional[LVMNode]:
        if not isinstance(obj, Mapping):
            log.error("couldnt type assert obj: %r to unstructured obj", obj)
            return None
        try:
            return LVMNode.from_dict(dict(obj))
        except _CONVERSION_ERRORS as exc:
            log.error("err %s, While converting unstructured obj to typed object", exc)
            return None

    def sync_handler(self, key: str) -> None:
        try:
            namespace, name = split_meta_namespace_key(key)
        except InvalidKeyError:
            log.error("invalid resource key: %s", key)
            return
        self.sync_node(namespace, name)

    def sync_node(self, namespace: str, name: str) -> None:
        """Create the LVMNode resource, or update it when it is out of date."""
        try:
            cached: Optional[Mapping[str, Any]] = self.informer.get(namespace, name)
        except NotFoundError:
            cached = None

        node: Optional[LVMNode] = None
        if cached is not None:
            structured = self._structured(cached)
            if structured is None:
                raise ValueError(f"couldn't get node object {cached!r}")
            node = copy.deepcopy(structured)

        vgs = self.backend.list_volume_groups()

        if node is None:
            node = LVMNode(
                metadata=ObjectMeta(
                    name=name,
                    namespace=namespace,
                    owner_references=[dataclasses.replace(self.owner_ref)],
                ),
                volume_groups=list(vgs),
            )
            log.info("lvm node controller: creating new node object for %r", node)
            try:
                self.client.create(node)
            except Exception as exc:
                raise RuntimeError(f"create lvm node {namespace}/{name}: {exc}") from exc
            log.info("lvm node controller: created node object %s/%s", namespace, name)
            return

        update_required = False
        owner_refs, changed = self.is_owner_refs_update_required(node.metadata.owner_references)
        if changed:
            log.info(
                "lvm node controller: node owner references updated current=%r, required=%r",
                node.metadata.owner_references,
                owner_refs,
            )
            node.metadata.owner_references = owner_refs
            update_required = True

        if node.volume_groups != list(vgs):
            log.info(
                "lvm node controller: node volume groups updated current=%r, required=%r",
                node.volume_groups,
                vgs,
            )
            node.volume_groups = list(vgs)
            update_required = True

        if not update_required:
            return

        log.info("lvm node controller: updating node object with %r", node)
        try:
            self.client.update(node)
        except Exception as exc:
            raise RuntimeError(f"update lvm node {namespace}/{name}: {exc}") from exc
        log.info("lvm node controller: updated node object %s/%s", namespace, name)

    def add_node(self, obj: Any) -> None:
        node = self._structured(obj)
        if node is None:
            log.error("Couldn't get node object %r", obj)
            return
        log.info("Got add event for lvm node %s/%s", node.namespace, node.name)
        self.enqueue_node(node)

    def update_node(self, old_obj: Any, new_obj: Any) -> None:
        node = self._structured(new_obj)
        if node is None:
            log.error("Couldn't get node object %r", new_obj)
            return
        log.info("Got update event for lvm node %s/%s", node.namespace, node.name)
        self.enqueue_node(node)

    def delete_node(self, obj: Any) -> None:
        node = self._structured(obj)
        if node is None:
            tombstone_obj = getattr(obj, "obj", None)
            if not isinstance(tombstone_obj, LVMNode):
                log.error("tombstone contained object that is not a lvmnode %r", obj)
                return
            node = tombstone_obj
        log.info("Got delete event for node %s/%s", node.namespace, node.name)
        self.enqueue_node(node)

    def enqueue_node(self, node: LVMNode) -> None:
        """Queue the node's key, but only for this node in the watched namespace."""
        if node.namespace != self.namespace or node.name != self.node_id:
            log.warning("skipping lvm node object %s/%s", node.namespace, node.name)
            return
        try:
            key = meta_namespace_key(node)
        except TypeError as exc:
            log.error("%s", exc)
            return
        self.enqueue(key)

    def is_owner_refs_update_required(
        self, owner_refs: list[OwnerReference]
    ) -> tuple[list[OwnerReference], bool]:
        """Return the owner references the node should carry and whether they changed."""
        refs = [dataclasses.replace(ref) for ref in owner_refs]
        required = self.owner_ref
        for ref in refs:
            if ref.uid != required.uid:
                continue
            if ref.controller != required.controller:
                ref.controller = required.controller
                return refs, True
            return refs, False
        refs.append(dataclasses.replace(required))
        return refs, True

    def run(self, threadiness: int, stop_event: threading.Event) -> None:
        """Run workers and resync the node every poll_interval seconds until stopped."""
        try:
            log.info("Starting Node controller")
            log.info("Waiting for informer caches to sync")
            if not self.informer.wait_for_sync(stop_event):
                raise RuntimeError("failed to wait for caches to sync")
            log.info("Starting Node workers")
            self.start_workers(threadiness, stop_event)
            log.info("Started Node workers")
            item = f"{self.namespace}/{self.node_id}"
            delay = 0.0
            while not stop_event.wait(delay):
                self.queue.add(item)
                delay = self.poll_interval
            log.info("Shutting down Node controller")
        finally:
            self.queue.shut_down()


def start(
    controller_lock: threading.Lock,
    stop_event: threading.Event,
    informer: Informer,
    backend: NodeBackend,
    client: NodeClient,
    node_id: str,
    namespace: str,
    owner_ref: OwnerReference,
    poll_interval: float,
) -> None:
    """Build the node controller and run it with one worker until stopped."""
    with controller_lock:
        controller = NodeController(
            informer, backend, client, node_id, namespace, owner_ref, poll_interval
        )
    log.info("Starting Lvm node controller")
    controller.run(1, stop_event)