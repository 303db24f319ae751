"""Set differences between current and desired membership.

Used for whole-endpoint classification (keyed by endpoint name) and for
backend-target convergence inside the reconciler and the provider adapters.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import FrozenSet, Generic, Hashable, Iterable, TypeVar

from external_lb.model import EndpointConfig, Target

K = TypeVar("K", bound=Hashable)


@dataclass(frozen=True)
class MembershipDiff(Generic[K]):
    """Result of comparing a current set against a desired set."""

    to_add: FrozenSet[K]
    to_remove: FrozenSet[K]
    to_retain: FrozenSet[K]

    @property
    def unchanged(self) -> bool:
        return not self.to_add and not self.to_remove


def diff(current: Iterable[K], desired: Iterable[K]) -> MembershipDiff[K]:
    """Compute ``desired - current``, ``current - desired`` and the intersection.

    An empty desired set drains everything currently present.
    """
    current_set = frozenset(current)
    desired_set = frozenset(desired)
    return MembershipDiff(
        to_add=desired_set - current_set,
        to_remove=current_set - desired_set,
        to_retain=current_set & desired_set,
    )


def diff_targets(current: Iterable[Target], desired: Iterable[Target]) -> MembershipDiff[Target]:
    # Target equality is by value, i.e. by its host:port key.
    return diff(current, desired)


def configs_equivalent(desired: EndpointConfig, observed: EndpointConfig) -> bool:
    """Decide whether an observed endpoint already matches the desired one.

    Pool names are compared case-insensitively and targets as sets. Labels
    and the target port are not part of the decision.
    """
    if desired.target_pool_name.lower() != observed.target_pool_name.lower():
        return False
    return diff_targets(observed.targets, desired.targets).unchanged
