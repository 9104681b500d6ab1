"""
Lease tracking for a read-only store.

The versioned store attaches every key that carries a lease to the
lessor while it restores its index, so a lessor must exist even though
a snapshot scan never grants, renews or revokes anything.

Invariants:
    - The lessor never writes to the backend
    - The cluster is only asked for its version
    - attach() fails for leases missing from the lease bucket
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Protocol

from google.protobuf.message import DecodeError

from .backend import Backend
from .schema import LEASE_BUCKET, Lease, decode_uint64

logger = logging.getLogger(__name__)

# Remaining TTLs are checkpointed to the backend from this version on
CHECKPOINT_PERSIST_VERSION = (3, 6)


class LeaseError(Exception):
    """Base exception for lease operations."""

    pass


class LeaseNotFoundError(LeaseError):
    """Lease id is unknown to the lessor."""

    pass


class Cluster(Protocol):
    """What the lessor needs to know about the cluster."""

    def version(self) -> str:
        """Cluster version, e.g. "3.6.0"."""
        ...


class NoOpCluster:
    """Stand-in cluster for read-only snapshot inspection.

    Reports a fixed compatible version and nothing else.
    """

    VERSION = "3.6.0"

    def version(self) -> str:
        return self.VERSION


@dataclass
class LeaseItem:
    """A recovered lease and the keys attached to it.

    Attributes:
        id: Lease id
        ttl: Granted TTL in seconds
        remaining_ttl: Checkpointed remaining TTL (0 if never checkpointed)
        keys: Keys attached during store restore
    """

    id: int
    ttl: int
    remaining_ttl: int = 0
    keys: set[bytes] = field(default_factory=set)


@dataclass(frozen=True)
class LessorConfig:
    """Lessor settings.

    Attributes:
        min_lease_ttl: Recovered TTLs below this are raised to it
    """

    min_lease_ttl: int = 0


def _parse_version(version: str) -> tuple[int, ...]:
    parts = []
    for part in version.split(".")[:2]:
        digits = "".join(c for c in part if c.isdigit())
        parts.append(int(digits or 0))
    return tuple(parts)


class Lessor:
    """Read-only lessor recovered from a snapshot backend.

    Example:
        >>> with Lessor(backend, NoOpCluster()) as lessor:
        ...     lessor.lookup(0x1234)
    """

    def __init__(
        self,
        backend: Backend,
        cluster: Cluster,
        config: LessorConfig | None = None,
    ) -> None:
        """Recover leases from the backend.

        Args:
            backend: Open snapshot backend (borrowed, not owned)
            cluster: Cluster version provider
            config: Optional lessor configuration
        """
        self.backend = backend
        self.cluster = cluster
        self.config = config or LessorConfig()
        self._leases: dict[int, LeaseItem] = {}
        self._stopped = False

        self.checkpoint_persist = (
            _parse_version(self.cluster.version()) >= CHECKPOINT_PERSIST_VERSION
        )
        self._recover()

    def _recover(self) -> None:
        tx = self.backend.read_tx()

        def visit(key: bytes, value: bytes) -> None:
            msg = Lease()
            try:
                msg.ParseFromString(value)
            except DecodeError as e:
                raise LeaseError(f"bad lease record {key.hex()}: {e}") from e
            lease_id = msg.ID or decode_uint64(key)
            ttl = max(msg.TTL, self.config.min_lease_ttl)
            remaining = msg.RemainingTTL if self.checkpoint_persist else 0
            self._leases[lease_id] = LeaseItem(id=lease_id, ttl=ttl, remaining_ttl=remaining)

        tx.unsafe_for_each(LEASE_BUCKET, visit)
        logger.debug("Recovered leases", extra={"count": len(self._leases)})

    def lookup(self, lease_id: int) -> LeaseItem | None:
        return self._leases.get(lease_id)

    def leases(self) -> list[LeaseItem]:
        """All recovered leases, ordered by id."""
        return [self._leases[i] for i in sorted(self._leases)]

    def attach(self, lease_id: int, key: bytes) -> None:
        """Attach a key to a lease.

        Raises:
            LeaseNotFoundError: If the lease was not recovered
        """
        item = self._leases.get(lease_id)
        if item is None:
            raise LeaseNotFoundError(f"lease {lease_id:#x} not found")
        item.keys.add(key)

    def stop(self) -> None:
        """Release recovered state. Safe to call twice."""
        if not self._stopped:
            self._stopped = True
            self._leases.clear()

    def __enter__(self) -> Lessor:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.stop()
