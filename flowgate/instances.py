"""In-process bookkeeping for workflow instances.

Engines bound to different dispatchers drive the same instances, so the
registry hands one :class:`InstanceTracker` to all of them.
"""

from __future__ import annotations

import asyncio
import functools
from typing import Callable, Dict, Set, Tuple

NodeKey = Tuple[str, str, str]


def instance_key(workflow_id: str, service_id: str) -> str:
    return f"{workflow_id}:{service_id}"


class InstanceTracker:
    """Completed and failed instances plus the join locks of their nodes."""

    def __init__(self) -> None:
        self.completed: Set[str] = set()
        self.failed: Set[str] = set()
        self._node_locks: Dict[NodeKey, asyncio.Lock] = {}
        self._lock_users: Dict[NodeKey, int] = {}

    async def lock_node(
        self, workflow_id: str, service_id: str, node_id: str
    ) -> Callable[[], None]:
        """Acquire the join lock of one node and return its release callback.

        A lock is dropped once its last holder or waiter has released it.
        """
        key = (workflow_id, service_id, node_id)
        lock = self._node_locks.get(key)
        if lock is None:
            lock = self._node_locks[key] = asyncio.Lock()
        self._lock_users[key] = self._lock_users.get(key, 0) + 1
        try:
            await lock.acquire()
        except BaseException:
            self._forget(key)
            raise
        return functools.partial(self._release, key)

    def _release(self, key: NodeKey) -> None:
        self._node_locks[key].release()
        self._forget(key)

    def _forget(self, key: NodeKey) -> None:
        users = self._lock_users[key] - 1
        if users:
            self._lock_users[key] = users
        else:
            del self._lock_users[key]
            del self._node_locks[key]

    @property
    def held_locks(self) -> int:
        return len(self._node_locks)
