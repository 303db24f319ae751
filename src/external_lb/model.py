"""Endpoint data model shared by the reconciler, metadata client and providers.

An ``EndpointConfig`` describes one externally reachable endpoint and the
backend ``Target`` instances that should receive its traffic. Configs are
rebuilt from scratch on every reconciliation pass.

Pool names follow the ``<service>_<stack>_<environmentUUID>_<suffix>`` scheme.
The trailing ``_<environmentUUID>_<suffix>`` part marks the entries owned by a
single controller instance; anything else on a shared provider account is
invisible to it.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from types import MappingProxyType
from typing import FrozenSet, Iterable, Mapping, Optional, Tuple

# =============================================================================
# Data Classes
# =============================================================================


@dataclass(frozen=True)
class Target:
    """A single backend instance address."""

    host_ip: str
    port: str

    @property
    def key(self) -> str:
        return f"{self.host_ip}:{self.port}"

    @classmethod
    def from_key(cls, key: str) -> Optional["Target"]:
        """Parse a ``host:port`` member name, returns None if malformed."""
        host_ip, sep, port = key.rpartition(":")
        if not sep or not host_ip or not port:
            return None
        return cls(host_ip=host_ip, port=port)

    def __str__(self) -> str:
        return self.key


@dataclass(frozen=True)
class EndpointConfig:
    """Desired or observed configuration of one endpoint.

    ``targets`` is order-irrelevant: it is stored sorted so that two configs
    built from differently ordered target lists compare equal. ``labels`` is
    stored read-only and left out of the hash.
    """

    endpoint: str
    target_pool_name: str
    target_port: str = ""
    targets: Tuple[Target, ...] = ()
    labels: Mapping[str, str] = field(default_factory=dict, hash=False)

    def __post_init__(self) -> None:
        ordered = tuple(sorted(self.targets, key=lambda t: (t.host_ip, t.port)))
        object.__setattr__(self, "targets", ordered)
        object.__setattr__(self, "labels", MappingProxyType(dict(self.labels or {})))

    def target_set(self) -> FrozenSet[Target]:
        return frozenset(self.targets)

    def label(self, name: str, default: str = "") -> str:
        return self.labels.get(name, default)

    def __str__(self) -> str:
        targets = " ".join(f"({t})" for t in self.targets)
        return (
            f"LBConfig [Endpoint: {self.endpoint}, Pool Name: {self.target_pool_name}, "
            f"TargetPort: {self.target_port}, Targets: {targets}]"
        )


# =============================================================================
# Pool Naming
# =============================================================================


def build_pool_name(service: str, stack: str, environment_uuid: str, suffix: str) -> str:
    return f"{service}_{stack}_{environment_uuid}_{suffix}"


def ownership_suffix(environment_uuid: str, suffix: str) -> str:
    """Return the trailing pool-name token owned by one controller instance."""
    return f"_{environment_uuid}_{suffix}"


def is_owned(pool_name: str, owner_suffix: str) -> bool:
    return bool(owner_suffix) and pool_name.endswith(owner_suffix)


def pool_owner_suffix(pool_name: str) -> str:
    """Return the ``_<environment>_<suffix>`` tail following service and stack.

    Empty when the pool name carries no such tail.
    """
    parsed = parse_pool_name(pool_name)
    if parsed is None:
        return ""
    tail = pool_name[len(f"{parsed[0]}_{parsed[1]}"):]
    return tail if len(tail) > 1 else ""


def parse_pool_name(pool_name: str) -> Optional[Tuple[str, str]]:
    """Extract ``(service, stack)`` from a pool name.

    Returns None when the name does not carry at least two non-empty
    ``_``-delimited components.
    """
    parts = pool_name.split("_")
    if len(parts) < 2 or not parts[0] or not parts[1]:
        return None
    return parts[0], parts[1]


def format_targets(targets: Iterable[Target]) -> str:
    """Render targets sorted for deterministic log lines."""
    return ", ".join(sorted(t.key for t in targets)) or "-"
