"""
Per-Instance Lock Registry

Single-writer guarantee for workflow mutations. Each workflow instance (and
each entity, while an instance is being started for it) gets its own lock,
created on first use and dropped once no thread holds or waits for it.
Different keys never contend with each other.
"""

import threading
from contextlib import contextmanager
from typing import Dict, List


class InstanceLockRegistry:
    """Registry of reference-counted locks keyed by an arbitrary string"""

    def __init__(self):
        self._locks: Dict[str, List] = {}  # key -> [lock, refcount]
        self._registry_lock = threading.Lock()

    @contextmanager
    def hold(self, key: str):
        """Hold the exclusive lock for ``key`` for the duration of the block"""
        with self._registry_lock:
            entry = self._locks.get(key)
            if entry is None:
                entry = [threading.Lock(), 0]
                self._locks[key] = entry
            entry[1] += 1

        lock = entry[0]
        lock.acquire()
        try:
            yield
        finally:
            lock.release()
            with self._registry_lock:
                entry[1] -= 1
                if entry[1] == 0:
                    del self._locks[key]

    def instance(self, instance_id: str):
        """Lock scoped to one workflow instance"""
        return self.hold(f"instance:{instance_id}")

    def entity(self, entity_type: str, entity_id: str):
        """Lock scoped to one approvable entity"""
        return self.hold(f"entity:{entity_type}:{entity_id}")

    def definition(self, organization_id: str, entity_type: str):
        """Lock scoped to the definition versions of one (organization, entity type)"""
        return self.hold(f"definition:{organization_id}:{entity_type}")

    def active_keys(self) -> int:
        """Number of keys currently held or awaited"""
        with self._registry_lock:
            return len(self._locks)
