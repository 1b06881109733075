"""Account state store.

Maps an account id to its current counter resource and the key that controls
it. Entries are immutable; ``put`` swaps the whole entry under one map lock,
so a reader never sees a resource from one transition paired with a key from
another.

The store also hands out the per-account ``asyncio.Lock`` the orchestrator
holds across read, assemble, submit and commit.
"""

from __future__ import annotations

import asyncio
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, Iterator, Optional, Protocol

from shielded_counter.resource import NullifierKey, Resource


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass(frozen=True)
class AccountEntry:
    """The committed counter of one account."""
    resource: Resource
    key: NullifierKey = field(repr=False)
    version: int
    updated_at: str = field(default_factory=_now)

    @property
    def counter_value(self) -> int:
        return self.resource.counter_value

    def to_dict(self) -> Dict[str, object]:
        return {
            "commitment": self.resource.commitment,
            "counter_value": self.counter_value,
            "version": self.version,
            "updated_at": self.updated_at,
        }


class AccountStore(Protocol):
    """Protocol for account state storage."""

    def get(self, account_id: str) -> Optional[AccountEntry]:
        ...

    def put(self, account_id: str, resource: Resource, key: NullifierKey) -> AccountEntry:
        ...

    def lock_for(self, account_id: str) -> asyncio.Lock:
        ...


class InMemoryAccountStore:
    """
    Process-local account store.

    ``put`` never checks the previous entry: callers serialize writers per
    account through ``lock_for``.
    """

    def __init__(self):
        self._entries: Dict[str, AccountEntry] = {}
        self._locks: Dict[str, asyncio.Lock] = {}
        self._lock = threading.RLock()

    def get(self, account_id: str) -> Optional[AccountEntry]:
        with self._lock:
            return self._entries.get(account_id)

    def put(self, account_id: str, resource: Resource, key: NullifierKey) -> AccountEntry:
        if not resource.is_controlled_by(key):
            raise ValueError("key does not control the resource")
        with self._lock:
            previous = self._entries.get(account_id)
            entry = AccountEntry(
                resource=resource,
                key=key,
                version=(previous.version + 1) if previous else 1,
            )
            self._entries[account_id] = entry
            return entry

    def lock_for(self, account_id: str) -> asyncio.Lock:
        with self._lock:
            lock = self._locks.get(account_id)
            if lock is None:
                lock = asyncio.Lock()
                self._locks[account_id] = lock
            return lock

    def __contains__(self, account_id: object) -> bool:
        with self._lock:
            return account_id in self._entries

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def __iter__(self) -> Iterator[str]:
        with self._lock:
            return iter(list(self._entries))
