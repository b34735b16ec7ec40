"""Shared pieces of the resource controllers: keys, an informer cache and the worker loop."""

from __future__ import annotations

import abc
import logging
import threading
from collections.abc import Callable, Mapping
from typing import Any, Optional

from lvmlocal.models import NotFoundError, ObjectMeta
from lvmlocal.workqueue import QueueShutDown, RateLimitingQueue

log = logging.getLogger(__name__)


class InvalidKeyError(ValueError):
    """A work-queue key is not of the form 'namespace/name' or 'name'."""


def split_meta_namespace_key(key: str) -> tuple[str, str]:
    """Split 'namespace/name' into its parts; a bare 'name' has an empty namespace."""
    parts = key.split("/")
    if len(parts) == 1:
        return "", parts[0]
    if len(parts) == 2:
        return parts[0], parts[1]
    raise InvalidKeyError(f"unexpected key format: {key!r}")


def _namespace_and_name(obj: Any) -> tuple[str, str]:
    if isinstance(obj, Mapping):
        metadata = obj.get("metadata")
        if not isinstance(metadata, Mapping):
            raise TypeError(f"object has no meta: {obj!r}")
        return metadata.get("namespace") or "", metadata.get("name") or ""
    metadata = getattr(obj, "metadata", None)
    if isinstance(metadata, ObjectMeta):
        return metadata.namespace, metadata.name
    raise TypeError(f"object has no meta: {obj!r}")


def meta_namespace_key(obj: Any) -> str:
    """Return the 'namespace/name' key of an object, or 'name' when it has no namespace.

    A string is taken to be a key already and returned unchanged.
    """
    if isinstance(obj, str):
        return obj
    namespace, name = _namespace_and_name(obj)
    return f"{namespace}/{name}" if namespace else name


_AddHandler = Callable[[Any], None]
_UpdateHandler = Callable[[Any, Any], None]


class Informer:
    """A local cache of unstructured objects that notifies registered handlers."""

    def __init__(self, resource: str = "") -> None:
        self.resource = resource
        self._store: dict[str, Mapping[str, Any]] = {}
        self._handlers: list[tuple[Optional[_AddHandler], Optional[_UpdateHandler], Optional[_AddHandler]]] = []
        self._synced = threading.Event()
        self._lock = threading.RLock()

    def add_event_handler(
        self,
        on_add: Optional[_AddHandler] = None,
        on_update: Optional[_UpdateHandler] = None,
        on_delete: Optional[_AddHandler] = None,
    ) -> None:
        with self._lock:
            self._handlers.append((on_add, on_update, on_delete))

    def add(self, obj: Mapping[str, Any]) -> None:
        with self._lock:
            self._store[meta_namespace_key(obj)] = obj
            handlers = list(self._handlers)
        for on_add, _, _ in handlers:
            if on_add is not None:
                on_add(obj)

    def update(self, obj: Mapping[str, Any]) -> None:
        key = meta_namespace_key(obj)
        with self._lock:
            old = self._store.get(key)
            self._store[key] = obj
            handlers = list(self._handlers)
        for on_add, on_update, _ in handlers:
            if old is None:
                if on_add is not None:
                    on_add(obj)
            elif on_update is not None:
                on_update(old, obj)

    def delete(self, obj: Mapping[str, Any]) -> None:
        with self._lock:
            self._store.pop(meta_namespace_key(obj), None)
            handlers = list(self._handlers)
        for _, _, on_delete in handlers:
            if on_delete is not None:
                on_delete(obj)

    def get(self, namespace: str, name: str) -> Mapping[str, Any]:
        """Return the cached object or raise NotFoundError."""
        key = f"{namespace}/{name}" if namespace else name
        with self._lock:
            try:
                return self._store[key]
            except KeyError:
                raise NotFoundError(f"{self.resource or 'object'} {key!r} not found") from None

    def list(self) -> list[Mapping[str, Any]]:
        with self._lock:
            return list(self._store.values())

    def mark_synced(self) -> None:
        self._synced.set()

    def has_synced(self) -> bool:
        return self._synced.is_set()

    def wait_for_sync(self, stop_event: threading.Event, poll_interval: float = 0.1) -> bool:
        """Wait until the cache is synced; False if stop_event is set first."""
        while not stop_event.is_set():
            if self._synced.wait(poll_interval):
                return True
        return self._synced.is_set() and not stop_event.is_set()


class Controller(abc.ABC):
    """Pulls keys off a work queue and hands them to sync_handler."""

    def __init__(self, name: str, queue: RateLimitingQueue) -> None:
        self.name = name
        self.queue = queue

    @abc.abstractmethod
    def sync_handler(self, key: str) -> None:
        """Bring the object named by key to its desired state; raise to retry."""

    def enqueue(self, key: str) -> None:
        self.queue.add(key)

    def process_next_work_item(self) -> bool:
        """Process one item; False once the queue has shut down."""
        try:
            item = self.queue.get()
        except QueueShutDown:
            return False
        try:
            if not isinstance(item, str):
                self.queue.forget(item)
                log.error("expected string in workqueue but got %r", item)
                return True
            try:
                self.sync_handler(item)
            except Exception as exc:
                self.queue.add_rate_limited(item)
                log.error("error syncing '%s': %s, requeuing", item, exc)
                return True
            self.queue.forget(item)
            log.info("Successfully synced '%s'", item)
            return True
        finally:
            self.queue.done(item)

    def run_worker(self) -> None:
        while self.process_next_work_item():
            pass

    def start_workers(self, threadiness: int, stop_event: threading.Event) -> list[threading.Thread]:
        """Start threadiness worker threads that run until stop_event is set."""

        def loop() -> None:
            while not stop_event.is_set():
                self.run_worker()
                stop_event.wait(1.0)

        threads = [
            threading.Thread(target=loop, name=f"{self.name}-worker-{index}", daemon=True)
            for index in range(threadiness)
        ]
        for thread in threads:
            thread.start()
        return threads