# lvmlocal

Reconciliation controllers for node-local LVM storage, plus builders for
CSI-style responses.

## Controllers

Each controller registers add, update and delete handlers on an informer,
puts `namespace/name` keys on a rate-limited work queue, and brings the
state on the node in line with the declared state:

- `lvmlocal.volume.VolController` handles `LVMVolume` objects owned by its
  node. A volume marked for deletion is destroyed and its finalizer removed.
  A pending volume is created in its `vol_group` if one is set; otherwise
  the volume groups whose names match `vg_pattern` and that have enough free
  space (any free space for thin volumes) are tried, most free space first.
  When none works, the volume is marked `Failed` with a `VolumeError`; the
  code is `InsufficientCapacity` when an `ExecError`'s output reports
  "insufficient free space", and `Internal` otherwise. Volumes already
  `Ready` or `Failed` are left alone.
- `lvmlocal.snapshot.SnapController` handles `LVMSnapshot` objects owned by
  its node: it destroys snapshots marked for deletion and creates pending
  ones.
- `lvmlocal.lvmnode.NodeController` keeps the node's `LVMNode` object in
  step with the volume groups on the node and with its owner reference. It
  creates the object when it is missing and re-queues the node every
  `poll_interval` seconds.

Each module has a `start(...)` function that builds its controller under the
given lock and runs it until the stop event is set.

## Supporting modules

- `lvmlocal.models`: data classes (`LVMVolume`, `LVMSnapshot`, `LVMNode`,
  `VolumeGroup`, `ObjectMeta`, `OwnerReference`, `VolumeError`) with
  `from_dict` constructors for unstructured objects, plus `ExecError` and
  `NotFoundError`. Volume-group sizes such as `"10Gi"` are parsed to bytes.
- `lvmlocal.workqueue`: `RateLimitingQueue`, a de-duplicating work queue,
  with `ItemExponentialFailureRateLimiter`, `ItemFastSlowRateLimiter` and
  `default_controller_rate_limiter()`.
- `lvmlocal.controller`: `Informer`, an in-memory object cache that calls
  registered handlers; the `Controller` base class with its worker loop; and
  the key helpers `split_meta_namespace_key` and `meta_namespace_key`.
- `lvmlocal.response`: builders for create-volume, delete-volume,
  expand-volume and create-snapshot responses.
- `lvmlocal.version`: `get()`, `get_build_meta()`, `get_git_commit()`,
  `verbose()` and `get_version_details()`. Unset values are read from
  `VERSION`/`BUILDMETA` files under `$GOPATH`, and the commit from
  `git rev-parse --verify HEAD`.

## Example

```python
import threading

from lvmlocal import volume
from lvmlocal.controller import Informer

lock = threading.Lock()
stop = threading.Event()

informer = Informer("lvmvolumes")
informer.mark_synced()

# my_backend: your implementation of volume.VolumeBackend.
volume.start(lock, stop, informer, my_backend, node_id="node-1")
```

`start` blocks until `stop` is set. Feed objects to the controller by calling
`informer.add(...)`, `informer.update(...)` and `informer.delete(...)` with
unstructured dictionaries.

```python
from lvmlocal.response import CreateVolumeResponseBuilder

resp = (
    CreateVolumeResponseBuilder()
    .with_name("pvc-1")
    .with_capacity(1 << 30)
    .with_topology({"openebs.io/nodename": "node-1"})
    .build()
)
```

## What the package does not do

- It has no cluster client. It does not watch an API server and does not
  write objects back. You fill the `Informer` yourself and implement
  `NodeClient` to store `LVMNode` objects.
- It runs no LVM commands. `VolumeBackend`, `SnapshotBackend` and
  `NodeBackend` are abstract, and you supply the implementations that create,
  remove and list volumes, snapshots and volume groups.
- It has no command-line program and no CSI server. The response builders
  only build data objects.

## Running the tests

```
pip install -e .[test]
pytest
```