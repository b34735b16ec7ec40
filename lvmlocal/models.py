"""Resource objects handled by the controllers and the errors they raise."""

from __future__ import annotations

import enum
import re
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from typing import Any, ClassVar, Optional

_BINARY_SUFFIXES = {
    "Ki": 2**10,
    "Mi": 2**20,
    "Gi": 2**30,
    "Ti": 2**40,
    "Pi": 2**50,
    "Ei": 2**60,
}
_DECIMAL_SUFFIXES = {
    "": 1,
    "k": 10**3,
    "M": 10**6,
    "G": 10**9,
    "T": 10**12,
    "P": 10**15,
    "E": 10**18,
}
_QUANTITY_RE = re.compile(r"^([+-]?[0-9.]+)([A-Za-z]*)$")


def _parse_quantity(value: Any) -> int:
    """Parse a resource quantity such as '10Gi' or '512M' into bytes."""
    if value is None:
        return 0
    if isinstance(value, bool):
        raise ValueError(f"invalid quantity {value!r}")
    if isinstance(value, int):
        return value
    match = _QUANTITY_RE.match(str(value).strip())
    if not match:
        raise ValueError(f"invalid quantity {value!r}")
    number, suffix = match.groups()
    multiplier = _BINARY_SUFFIXES.get(suffix, _DECIMAL_SUFFIXES.get(suffix))
    if multiplier is None:
        raise ValueError(f"invalid quantity suffix {suffix!r} in {value!r}")
    try:
        amount = Decimal(number) * multiplier
    except InvalidOperation as exc:
        raise ValueError(f"invalid quantity {value!r}") from exc
    return int(amount.to_integral_value(rounding="ROUND_CEILING"))


@dataclass
class OwnerReference:
    api_version: str = ""
    kind: str = ""
    name: str = ""
    uid: str = ""
    controller: Optional[bool] = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> OwnerReference:
        return cls(
            api_version=data.get("apiVersion", ""),
            kind=data.get("kind", ""),
            name=data.get("name", ""),
            uid=data.get("uid", ""),
            controller=data.get("controller"),
        )


@dataclass
class ObjectMeta:
    name: str = ""
    namespace: str = ""
    labels: dict[str, str] = field(default_factory=dict)
    finalizers: list[str] = field(default_factory=list)
    deletion_timestamp: Optional[str] = None
    owner_references: list[OwnerReference] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ObjectMeta:
        return cls(
            name=data.get("name", ""),
            namespace=data.get("namespace", ""),
            labels=dict(data.get("labels") or {}),
            finalizers=list(data.get("finalizers") or []),
            deletion_timestamp=data.get("deletionTimestamp"),
            owner_references=[
                OwnerReference.from_dict(ref) for ref in data.get("ownerReferences") or []
            ],
        )


@dataclass
class VolumeGroup:
    """A volume group on a node; sizes are in bytes."""

    name: str = ""
    uuid: str = ""
    size: int = 0
    free: int = 0
    lv_count: int = 0
    pv_count: int = 0
    snap_count: int = 0

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> VolumeGroup:
        return cls(
            name=data.get("name", ""),
            uuid=data.get("uuid", ""),
            size=_parse_quantity(data.get("size")),
            free=_parse_quantity(data.get("free")),
            lv_count=int(data.get("lvCount", 0)),
            pv_count=int(data.get("pvCount", 0)),
            snap_count=int(data.get("snapCount", 0)),
        )


class VolumeErrorCode(str, enum.Enum):
    INTERNAL = "Internal"
    INSUFFICIENT_CAPACITY = "InsufficientCapacity"


@dataclass
class VolumeError:
    code: VolumeErrorCode = VolumeErrorCode.INTERNAL
    message: str = ""

    @classmethod
    def _from_dict(cls, data: Optional[dict[str, Any]]) -> Optional[VolumeError]:
        if not data:
            return None
        return cls(
            code=VolumeErrorCode(data.get("code", VolumeErrorCode.INTERNAL.value)),
            message=data.get("message", ""),
        )


@dataclass
class LVMVolumeSpec:
    owner_node_id: str = ""
    vol_group: str = ""
    vg_pattern: str = ""
    capacity: str = ""
    shared: str = ""
    thin_provision: str = ""


@dataclass
class LVMVolumeStatus:
    PENDING: ClassVar[str] = "Pending"
    READY: ClassVar[str] = "Ready"
    FAILED: ClassVar[str] = "Failed"

    state: str = ""
    error: Optional[VolumeError] = None


@dataclass
class LVMVolume:
    metadata: ObjectMeta = field(default_factory=ObjectMeta)
    spec: LVMVolumeSpec = field(default_factory=LVMVolumeSpec)
    status: LVMVolumeStatus = field(default_factory=LVMVolumeStatus)

    @property
    def name(self) -> str:
        return self.metadata.name

    @property
    def namespace(self) -> str:
        return self.metadata.namespace

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> LVMVolume:
        spec = data.get("spec") or {}
        status = data.get("status") or {}
        return cls(
            metadata=ObjectMeta.from_dict(data.get("metadata") or {}),
            spec=LVMVolumeSpec(
                owner_node_id=spec.get("ownerNodeID", ""),
                vol_group=spec.get("volGroup", ""),
                vg_pattern=spec.get("vgPattern", ""),
                capacity=str(spec.get("capacity", "")),
                shared=spec.get("shared", ""),
                thin_provision=spec.get("thinProvision", ""),
            ),
            status=LVMVolumeStatus(
                state=status.get("state", ""),
                error=VolumeError._from_dict(status.get("error")),
            ),
        )


@dataclass
class LVMSnapshotSpec:
    owner_node_id: str = ""
    vol_group: str = ""
    snap_size: str = ""


@dataclass
class LVMSnapshotStatus:
    PENDING: ClassVar[str] = "Pending"
    READY: ClassVar[str] = "Ready"

    state: str = ""


@dataclass
class LVMSnapshot:
    metadata: ObjectMeta = field(default_factory=ObjectMeta)
    spec: LVMSnapshotSpec = field(default_factory=LVMSnapshotSpec)
    status: LVMSnapshotStatus = field(default_factory=LVMSnapshotStatus)

    @property
    def name(self) -> str:
        return self.metadata.name

    @property
    def namespace(self) -> str:
        return self.metadata.namespace

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> LVMSnapshot:
        spec = data.get("spec") or {}
        status = data.get("status") or {}
        return cls(
            metadata=ObjectMeta.from_dict(data.get("metadata") or {}),
            spec=LVMSnapshotSpec(
                owner_node_id=spec.get("ownerNodeID", ""),
                vol_group=spec.get("volGroup", ""),
                snap_size=str(spec.get("snapSize", "")),
            ),
            status=LVMSnapshotStatus(state=status.get("state", "")),
        )


@dataclass
class LVMNode:
    metadata: ObjectMeta = field(default_factory=ObjectMeta)
    volume_groups: list[VolumeGroup] = field(default_factory=list)

    @property
    def name(self) -> str:
        return self.metadata.name

    @property
    def namespace(self) -> str:
        return self.metadata.namespace

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> LVMNode:
        return cls(
            metadata=ObjectMeta.from_dict(data.get("metadata") or {}),
            volume_groups=[
                VolumeGroup.from_dict(vg) for vg in data.get("volumeGroups") or []
            ],
        )


class ExecError(Exception):
    """A failed LVM command, carrying the command's output."""

    def __init__(self, message: str, output: bytes = b"") -> None:
        super().__init__(message)
        self.output = output


class NotFoundError(LookupError):
    """The requested object does not exist."""