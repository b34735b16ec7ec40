"""Controller that provisions and removes logical volumes for LVMVolume resources."""

from __future__ import annotations

import abc
import copy
import logging
import re
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
from lvmlocal.models import (
    ExecError,
    LVMVolume,
    LVMVolumeStatus,
    NotFoundError,
    VolumeError,
    VolumeErrorCode,
    VolumeGroup,
)
from lvmlocal.workqueue import ItemFastSlowRateLimiter, RateLimitingQueue

log = logging.getLogger(__name__)

CONTROLLER_AGENT_NAME = "lvmvolume-controller"
GROUP = "local.openebs.io"
VERSION = "v1alpha1"
RESOURCE = "lvmvolumes"

_INTEGER_RE = re.compile(r"[+-]?[0-9]+")


class VolumeBackend(abc.ABC):
    """Operations on the node's volume groups and on LVMVolume resources."""

    @abc.abstractmethod
    def create_volume(self, vol: LVMVolume) -> None:
        """Create the logical volume described by vol."""

    @abc.abstractmethod
    def destroy_volume(self, vol: LVMVolume) -> None:
        """Remove the logical volume described by vol."""

    @abc.abstractmethod
    def remove_finalizer(self, vol: LVMVolume) -> None:
        """Drop the finalizer from the LVMVolume resource."""

    @abc.abstractmethod
    def update_vol_info(self, vol: LVMVolume, state: str) -> None:
        """Record the state (and any error) of the LVMVolume resource."""

    @abc.abstractmethod
    def update_vol_group(self, vol: LVMVolume, vg_name: str) -> LVMVolume:
        """Set the volume group of the resource and return the updated resource."""

    @abc.abstractmethod
    def list_volume_groups(self) -> list[VolumeGroup]:
        """Return the volume groups present on this node."""


class VolController(Controller):
    """Watches LVMVolume resources owned by this node and converges them."""

    def __init__(self, informer: Informer, backend: VolumeBackend, node_id: str) -> None:
        # Failed items are retried after 5s for the first 12 attempts, then every 30s.
        queue = RateLimitingQueue(ItemFastSlowRateLimiter(5.0, 30.0, 12), name="Vol")
        super().__init__(CONTROLLER_AGENT_NAME, queue)
        self.informer = informer
        self.backend = backend
        self.node_id = node_id
        log.info("Adding Event handler functions for lvm volume controller")
        informer.add_event_handler(
            on_add=self.add_vol,
            on_update=self.update_vol,
            on_delete=self.delete_vol,
        )

    def is_deletion_candidate(self, vol: LVMVolume) -> bool:
        return vol.metadata.deletion_timestamp is not None

    def _structured(self, obj: Any) -> Optional[LVMVolume]:
        if not isinstance(obj, Mapping):
            log.error("couldnt type assert obj: %r to unstructured obj", obj)
            return None
        try:
            return LVMVolume.from_dict(dict(obj))
        except (ValueError, TypeError, AttributeError, KeyError) as exc:
            log.error("err %s, While converting unstructured obj to typed object", exc)
            return None

    def sync_handler(self, key: str) -> None:
        try:
            namespace, name = split_meta_namespace_key(key)
        except InvalidKeyError:
            log.error("invalid resource key: %s", key)
            return
        log.info("Getting lvmvol object name:%s, ns:%s from cache", name, namespace)
        try:
            raw = self.informer.get(namespace, name)
        except NotFoundError:
            log.error("lvmvolume '%s' has been deleted", key)
            return
        try:
            vol = LVMVolume.from_dict(dict(raw))
        except (ValueError, TypeError, AttributeError, KeyError) as exc:
            log.info("err %s, While converting unstructured obj to typed object", exc)
            vol = LVMVolume()
        self.sync_vol(copy.deepcopy(vol))

    def sync_vol(self, vol: LVMVolume) -> None:
        """Create or destroy the volume so that it matches the resource."""
        if self.is_deletion_candidate(vol):
            self.backend.destroy_volume(vol)
            self.backend.remove_finalizer(vol)
            return

        state = vol.status.state
        if state == LVMVolumeStatus.FAILED:
            log.warning(
                "Skipping retrying lvm volume provisioning as its already in failed state: %r",
                vol.status.error,
            )
            return
        if state == LVMVolumeStatus.READY:
            log.info("lvm volume already provisioned")
            return

        if vol.spec.vol_group:
            try:
                self.backend.create_volume(vol)
            except Exception as exc:
                log.info("volume %s not created in %s: %s", vol.name, vol.spec.vol_group, exc)
            else:
                self.backend.update_vol_info(vol, LVMVolumeStatus.READY)
                return

        vgs = self.get_vg_priority_list(vol)
        err: Optional[BaseException] = None
        if not vgs:
            err = RuntimeError(
                f'no vg available to serve volume request having regex="{vol.spec.vg_pattern}"'
                f' & capacity="{vol.spec.capacity}"'
            )
            log.error("lvm volume %s - %s", vol.name, err)
        else:
            for vg in vgs:
                # Record the volume group first so a crash cannot leak a volume.
                try:
                    vol = self.backend.update_vol_group(vol, vg.name)
                except Exception as exc:
                    log.error("failed to update volGroup to %s: %s", vg.name, exc)
                    raise
                try:
                    self.backend.create_volume(vol)
                except Exception as exc:
                    err = exc
                    continue
                self.backend.update_vol_info(vol, LVMVolumeStatus.READY)
                return

        # No vg fits or creation failed everywhere: mark failed so it can be rescheduled.
        vol.status.error = self.transform_lvm_error(err)
        self.backend.update_vol_info(vol, LVMVolumeStatus.FAILED)

    def get_vg_priority_list(self, vol: LVMVolume) -> list[VolumeGroup]:
        """Return matching volume groups, the one with most free space first."""
        try:
            pattern = re.compile(vol.spec.vg_pattern)
        except re.error as exc:
            raise ValueError(
                f"invalid regular expression {vol.spec.vg_pattern} for lvm volume {vol.name}: {exc}"
            ) from exc
        if not _INTEGER_RE.fullmatch(vol.spec.capacity):
            raise ValueError(
                f"invalid requested capacity {vol.spec.capacity} for lvm volume {vol.name}"
            )
        capacity = int(vol.spec.capacity)

        try:
            vgs = self.backend.list_volume_groups()
        except Exception as exc:
            raise RuntimeError(f"failed to list vgs available on node: {exc}") from exc

        thin = vol.spec.thin_provision == "yes"
        filtered = [
            vg
            for vg in vgs
            if pattern.search(vg.name) and (thin or vg.free >= capacity)
        ]
        return sorted(filtered, key=lambda vg: vg.free, reverse=True)

    def transform_lvm_error(self, err: BaseException) -> VolumeError:
        volume_error = VolumeError(code=VolumeErrorCode.INTERNAL, message=str(err))
        if isinstance(err, ExecError):
            output = err.output
            text = output.decode(errors="replace") if isinstance(output, bytes) else str(output)
            if "insufficient free space" in text.lower():
                volume_error.code = VolumeErrorCode.INSUFFICIENT_CAPACITY
        return volume_error

    def _enqueue_vol(self, vol: LVMVolume) -> None:
        try:
            key = meta_namespace_key(vol)
        except TypeError as exc:
            log.error("%s", exc)
            return
        self.enqueue(key)

    def add_vol(self, obj: Any) -> None:
        vol = self._structured(obj)
        if vol is None:
            log.error("Couldn't get Vol object %r", obj)
            return
        if vol.spec.owner_node_id != self.node_id:
            return
        log.info("Got add event for Vol %s", vol.name)
        self._enqueue_vol(vol)

    def update_vol(self, old_obj: Any, new_obj: Any) -> None:
        vol = self._structured(new_obj)
        if vol is None:
            log.error("Couldn't get Vol object %r", new_obj)
            return
        if vol.spec.owner_node_id != self.node_id:
            return
        if self.is_deletion_candidate(vol):
            log.info(
                "Got update event for deleted Vol %s, Deletion timestamp %s",
                vol.name,
                vol.metadata.deletion_timestamp,
            )
            self._enqueue_vol(vol)

    def delete_vol(self, obj: Any) -> None:
        vol = self._structured(obj)
        if vol is None:
            tombstone_obj = getattr(obj, "obj", None)
            if not isinstance(tombstone_obj, LVMVolume):
                log.error("tombstone contained object that is not a lvmvolume %r", obj)
                return
            vol = tombstone_obj
        if vol.spec.owner_node_id != self.node_id:
            return
        log.info("Got delete event for Vol %s", vol.name)
        self._enqueue_vol(vol)

    def run(self, threadiness: int, stop_event: threading.Event) -> None:
        """Run workers until stop_event is set, then shut the queue down."""
        try:
            log.info("Starting Vol controller")
            log.info("Waiting for informer caches to sync")
            if not self.informer.wait_for_sync(stop_event):
                raise RuntimeError("failed to wait for caches to sync")
            log.info("Starting Vol workers")
            self.start_workers(threadiness, stop_event)
            log.info("Started Vol workers")
            stop_event.wait()
            log.info("Shutting down Vol workers")
        finally:
            self.queue.shut_down()


def start(
    controller_lock: threading.Lock,
    stop_event: threading.Event,
    informer: Informer,
    backend: VolumeBackend,
    node_id: str,
) -> None:
    """Build the volume controller and run it with one worker until stopped."""
    with controller_lock:
        controller = VolController(informer, backend, node_id)
    log.info("Starting Lvm volume controller")
    controller.run(1, stop_event)