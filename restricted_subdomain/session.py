"""Tenant partitioning over a shared session mapping.

With a tenant bound, session data lives in a sub-dict keyed by the tenant's
identifier, so ``secksi.example.com`` and ``acme.example.com`` never see
each other's values even when they share a cookie. With no tenant bound the
session is used as is.
"""

import logging
from collections.abc import Iterator, MutableMapping
from typing import Any

from restricted_subdomain.context import TenantContext

logger = logging.getLogger(__name__)

SessionStore = MutableMapping[str, Any]


class SessionPartitioner:
    """Routes session reads and writes to the bound tenant's partition."""

    def __init__(self, context: TenantContext) -> None:
        """Initialize partitioner.

        Args:
            context: Tenant context that selects the partition
        """
        self._context = context

    def partition(self, store: SessionStore) -> SessionStore:
        """Return the bound tenant's partition, creating it on first touch.

        A root value stored under the tenant's key that is not a mapping is
        replaced by the new partition and a warning is logged.

        Args:
            store: Shared session mapping

        Returns:
            Partition mapping, or store itself when no tenant is bound
        """
        key = self._context.current_identifier()
        if key is None:
            return store
        partition = store.get(key)
        if not isinstance(partition, MutableMapping):
            if partition is not None:
                logger.warning(
                    "Session key %r holds a %s, replacing it with the tenant partition",
                    key,
                    type(partition).__name__,
                )
            partition = {}
            store[key] = partition
        return partition

    def read(self, store: SessionStore, key: str, default: Any = None) -> Any:
        """Read a value from the current partition."""
        return self.partition(store).get(key, default)

    def write(self, store: SessionStore, key: str, value: Any) -> None:
        """Write a value to the current partition."""
        self.partition(store)[key] = value

    def delete(self, store: SessionStore, key: str) -> None:
        """Remove a key from the current partition if present."""
        self.partition(store).pop(key, None)

    def replace(self, store: SessionStore, values: MutableMapping[str, Any]) -> None:
        """Replace the whole current partition with values."""
        key = self._context.current_identifier()
        if key is None:
            store.clear()
            store.update(values)
            return
        store[key] = dict(values)

    def reset(self, store: SessionStore) -> None:
        """Clear the current partition, keeping every other tenant's data.

        Without a bound tenant the whole store is cleared.
        """
        key = self._context.current_identifier()
        if key is None:
            store.clear()
            return

        kept = {name: value for name, value in store.items() if name != key}
        store.clear()
        store.update(kept)


class PartitionedSession(MutableMapping[str, Any]):
    """Mapping view of a session store restricted to the bound tenant."""

    def __init__(self, store: SessionStore, partitioner: SessionPartitioner) -> None:
        self._store = store
        self._partitioner = partitioner

    def __getitem__(self, key: str) -> Any:
        return self._partitioner.partition(self._store)[key]

    def __setitem__(self, key: str, value: Any) -> None:
        self._partitioner.write(self._store, key, value)

    def __delitem__(self, key: str) -> None:
        partition = self._partitioner.partition(self._store)
        del partition[key]

    def __iter__(self) -> Iterator[str]:
        return iter(list(self._partitioner.partition(self._store)))

    def __len__(self) -> int:
        return len(self._partitioner.partition(self._store))

    def reset(self) -> None:
        """Reset this tenant's session data."""
        self._partitioner.reset(self._store)
