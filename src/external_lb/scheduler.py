"""Poll loop deciding when a reconciliation pass runs.

Every tick reads the cheap metadata version token. A pass is triggered when
the token changed or when the last sync is older than the force-update
interval. Desired state identical to the last applied snapshot is not
reconciled again unless the update was forced.
"""

from __future__ import annotations

import logging
import time
from typing import Callable, Dict, Optional

from external_lb.cattle import CattleClient
from external_lb.metadata import RancherMetadataClient
from external_lb.model import EndpointConfig, parse_pool_name
from external_lb.reconciler import Reconciler

logger = logging.getLogger(__name__)

INITIAL_VERSION = "init"


class Scheduler:
    def __init__(
        self,
        *,
        metadata: RancherMetadataClient,
        reconciler: Reconciler,
        target_pool_suffix: str,
        registrar: Optional[CattleClient] = None,
        poll_interval_seconds: float = 1.0,
        force_update_interval_seconds: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.metadata = metadata
        self.reconciler = reconciler
        self.target_pool_suffix = target_pool_suffix
        self.registrar = registrar
        self.poll_interval_seconds = poll_interval_seconds
        self.force_update_interval_seconds = force_update_interval_seconds
        self._clock = clock
        self._sleep = sleep

        # Owned by the loop only.
        self.last_version = INITIAL_VERSION
        self.last_sync = clock()
        self.last_desired: Optional[Dict[str, EndpointConfig]] = None

    def tick(self) -> bool:
        """Run one poll step; returns True when a reconciliation pass ran."""
        try:
            version = self.metadata.get_version()
        except Exception as e:
            logger.error(f"Error reading metadata version: {e}")
            return False

        version_changed = version != self.last_version
        forced = False
        if version_changed:
            logger.debug(
                f"Metadata version has been changed. Old version: {self.last_version}. "
                f"New version: {version}."
            )
        else:
            logger.debug(f"No changes in metadata version: {version}")
            if self._clock() - self.last_sync >= self.force_update_interval_seconds:
                logger.debug(
                    "Executing force update as metadata version hasn't been changed in "
                    f"{self.force_update_interval_seconds:.0f}s"
                )
                forced = True

        if not version_changed and not forced:
            return False

        try:
            desired = self.metadata.get_desired_endpoints(self.target_pool_suffix)
        except Exception as e:
            logger.error(f"Error reading metadata LB configs: {e}")
            return False
        logger.debug(f"LB configs from metadata: {len(desired)}")

        if not forced and desired == self.last_desired:
            logger.debug("Desired LB configs unchanged, skipping reconciliation")
            self.last_version = version
            return False

        try:
            updated_fqdns = self.reconciler.reconcile(desired)
        except Exception as e:
            logger.error(f"Error reconciling provider LB configs: {e}")
            return False

        self.last_desired = desired
        self.last_version = version
        self.last_sync = self._clock()

        self._register_fqdns(updated_fqdns)
        return True

    def run(self) -> None:
        """Poll forever; only process termination ends the loop."""
        logger.info(
            f"Polling metadata every {self.poll_interval_seconds:g}s "
            f"(force update after {self.force_update_interval_seconds:g}s)"
        )
        while True:
            self.tick()
            self._sleep(self.poll_interval_seconds)

    def _register_fqdns(self, updated_fqdns: Dict[str, EndpointConfig]) -> None:
        if not updated_fqdns:
            return
        if self.registrar is None:
            logger.debug(
                f"FQDN registration disabled, dropping: {', '.join(sorted(updated_fqdns))}"
            )
            return

        for fqdn, config in sorted(updated_fqdns.items()):
            parsed = parse_pool_name(config.target_pool_name)
            if parsed is None:
                logger.warning(
                    f"Cannot derive service/stack from pool {config.target_pool_name}, "
                    f"skipping FQDN {fqdn}"
                )
                continue
            service_name, stack_name = parsed
            try:
                self.registrar.register_fqdn(service_name, stack_name, fqdn)
            except Exception as e:
                logger.error(f"Failed to register FQDN {fqdn} for endpoint {config.endpoint}: {e}")
