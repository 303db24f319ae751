"""Reconciliation of desired endpoint state against a load balancer provider.

One pass fetches the provider's owned entries, classifies every endpoint as
to-remove, to-add or to-update, and applies the operations one at a time in
that order. A failing endpoint operation is logged and skipped; it never
aborts the rest of the pass.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from typing import Dict, List, Mapping

from external_lb.differ import configs_equivalent, diff
from external_lb.model import EndpointConfig, format_targets, is_owned
from external_lb.providers.base import Provider, ProviderError

logger = logging.getLogger(__name__)


@dataclass
class ReconcilePlan:
    """Endpoint operations computed for one pass."""

    to_remove: List[EndpointConfig] = field(default_factory=list)
    to_add: List[EndpointConfig] = field(default_factory=list)
    to_update: List[EndpointConfig] = field(default_factory=list)

    @property
    def empty(self) -> bool:
        return not (self.to_remove or self.to_add or self.to_update)


class Reconciler:
    def __init__(self, *, provider: Provider, owner_suffix: str):
        self.provider = provider
        self.owner_suffix = owner_suffix

    def get_observed(self) -> Dict[str, EndpointConfig]:
        """Fetch the provider's entries carrying this controller's ownership suffix.

        Provider errors propagate; a partial snapshot is never used.
        """
        try:
            all_configs = self.provider.get_lb_configs()
        except ProviderError:
            raise
        except Exception as e:
            raise ProviderError(f"{self.provider.name}: error reading LB configs: {e}") from e

        observed: Dict[str, EndpointConfig] = {}
        for config in all_configs:
            if not is_owned(config.target_pool_name, self.owner_suffix):
                continue
            if config.endpoint in observed:
                logger.warning(
                    f"Provider reports endpoint '{config.endpoint}' more than once; "
                    f"keeping pool '{observed[config.endpoint].target_pool_name}', "
                    f"ignoring '{config.target_pool_name}'"
                )
                continue
            observed[config.endpoint] = config
        logger.debug(f"Owned LB configs from provider: {len(observed)}")
        return observed

    def plan(
        self,
        desired: Mapping[str, EndpointConfig],
        observed: Mapping[str, EndpointConfig],
    ) -> ReconcilePlan:
        endpoints = diff(observed.keys(), desired.keys())
        plan = ReconcilePlan(
            to_remove=[observed[e] for e in sorted(endpoints.to_remove)],
            to_add=[desired[e] for e in sorted(endpoints.to_add)],
        )

        for endpoint in sorted(endpoints.to_retain):
            wanted = desired[endpoint]
            current = observed[endpoint]
            if configs_equivalent(wanted, current):
                continue
            if wanted.target_pool_name.lower() != current.target_pool_name.lower():
                logger.debug(
                    f"Endpoint {endpoint} will be mapped to new pool {wanted.target_pool_name} "
                    f"(was {current.target_pool_name})"
                )
            else:
                logger.debug(
                    f"Endpoint {endpoint} targets changed: "
                    f"[{format_targets(current.targets)}] -> [{format_targets(wanted.targets)}]"
                )
            plan.to_update.append(wanted)

        return plan

    def reconcile(self, desired: Mapping[str, EndpointConfig]) -> Dict[str, EndpointConfig]:
        """Run one pass and return the FQDNs reported by add/update operations.

        Raises ``ProviderError`` only when the observed state cannot be read.
        """
        desired = self._validate_desired(desired)
        observed = self.get_observed()
        plan = self.plan(desired, observed)

        self._log_phase("remove", plan.to_remove)
        self._log_phase("add", plan.to_add)
        self._log_phase("update", plan.to_update)

        updated_fqdns: Dict[str, EndpointConfig] = {}

        for config in plan.to_remove:
            logger.info(f"Removing LB config: {config}")
            try:
                self.provider.remove_lb_config(config)
            except Exception as e:
                self._log_failure("remove", config, e)

        for config in plan.to_add:
            logger.info(f"Adding LB config: {config}")
            try:
                fqdn = self.provider.add_lb_config(config)
            except Exception as e:
                self._log_failure("add", config, e)
                continue
            self._collect_fqdn(updated_fqdns, fqdn, config)

        for config in plan.to_update:
            logger.info(f"Updating LB config: {config}")
            try:
                fqdn = self.provider.update_lb_config(config)
            except Exception as e:
                self._log_failure("update", config, e)
                continue
            self._collect_fqdn(updated_fqdns, fqdn, config)

        return updated_fqdns

    def _validate_desired(self, desired: Mapping[str, EndpointConfig]) -> Dict[str, EndpointConfig]:
        valid: Dict[str, EndpointConfig] = {}
        for key, config in desired.items():
            if not key:
                logger.error(f"Skipping LB config without endpoint: {config}")
                continue
            if config.endpoint != key:
                logger.warning(
                    f"Desired LB config keyed by '{key}' names endpoint '{config.endpoint}'; "
                    f"using '{key}'"
                )
                config = replace(config, endpoint=key)
            valid[key] = config
        return valid

    @staticmethod
    def _collect_fqdn(
        updated_fqdns: Dict[str, EndpointConfig], fqdn: str, config: EndpointConfig
    ) -> None:
        if not fqdn:
            return
        if fqdn in updated_fqdns and updated_fqdns[fqdn] != config:
            logger.warning(
                f"FQDN {fqdn} reported for both {updated_fqdns[fqdn].endpoint} and "
                f"{config.endpoint}; keeping the first"
            )
            return
        updated_fqdns[fqdn] = config

    def _log_failure(self, operation: str, config: EndpointConfig, error: Exception) -> None:
        logger.error(
            f"Failed to {operation} LB config for endpoint {config.endpoint} "
            f"on {self.provider.name}: {error}",
            exc_info=not isinstance(error, ProviderError),
        )

    @staticmethod
    def _log_phase(operation: str, configs: List[EndpointConfig]) -> None:
        if not configs:
            logger.debug(f"No LB configs to {operation}")
        else:
            logger.info(
                f"LB configs to {operation}: {', '.join(c.endpoint for c in configs)}"
            )
