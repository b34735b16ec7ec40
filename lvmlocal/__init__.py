"""Controllers, work queue, models and response builders for node-local LVM volumes, snapshots and nodes."""

__version__ = "0.1.0"

__all__ = [
    "controller",
    "lvmnode",
    "models",
    "response",
    "snapshot",
    "version",
    "volume",
    "workqueue",
]