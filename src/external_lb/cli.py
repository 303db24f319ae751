#!/usr/bin/env python3
"""external-lb - External load balancer synchronization

Keeps the backend pools of pre-existing load balancer endpoints in sync with
the services Rancher wants exposed. Services carrying the label
``io.rancher.service.external_lb.endpoint=<endpoint>`` are published on that
endpoint; their healthy containers become the endpoint's targets.

Supported Providers:
    - f5_BigIP: F5 BIG-IP virtual servers and pools (iControl REST)
    - zevenet: services of a Zevenet farm (ZAPI v3.1)

See ``external_lb.config`` for the environment variables.
"""

from __future__ import annotations

import logging
import sys
from typing import Optional

from external_lb.cattle import CattleClient
from external_lb.config import ConfigError, Settings
from external_lb.healthcheck import HealthcheckServer
from external_lb.metadata import MetadataError, RancherMetadataClient
from external_lb.model import ownership_suffix
from external_lb.providers import f5, zevenet
from external_lb.providers.base import Provider, ProviderError, ProviderRegistry
from external_lb.reconciler import Reconciler
from external_lb.scheduler import Scheduler

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(message)s"
LOG_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

logger = logging.getLogger(__name__)

# =============================================================================
# Logging Setup
# =============================================================================


def setup_logging(level: str = "INFO", log_file: str = "") -> None:
    handlers = None
    if log_file:
        handlers = [logging.FileHandler(log_file, mode="a")]
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format=LOG_FORMAT,
        datefmt=LOG_DATE_FORMAT,
        handlers=handlers,
        force=True,
    )


# =============================================================================
# Provider Registry
# =============================================================================


def build_registry() -> ProviderRegistry:
    registry = ProviderRegistry()
    registry.register(f5.PROVIDER_SLUG, f5.F5BigIPProvider.from_options)
    registry.register(zevenet.PROVIDER_SLUG, zevenet.ZevenetProvider.from_options)
    return registry


def create_provider(settings: Settings, registry: ProviderRegistry) -> Provider:
    if settings.provider not in registry:
        raise ConfigError(
            f"Unsupported provider: '{settings.provider}'. "
            f"Supported providers: {', '.join(registry.names())}"
        )
    return registry.create(settings.provider, settings.provider_options)


def create_registrar(settings: Settings) -> Optional[CattleClient]:
    if not settings.registration_enabled:
        logger.warning("CATTLE_URL not set. FQDN registration is disabled.")
        return None
    client = CattleClient(
        settings.cattle_url, settings.cattle_access_key, settings.cattle_secret_key
    )
    if not client.test_connection():
        logger.warning(f"{client.name} unreachable at startup; registrations will be retried")
    return client


# =============================================================================
# Main
# =============================================================================


def main():
    """Main entry point."""
    try:
        settings = Settings.from_env()
    except ConfigError as e:
        setup_logging()
        logger.error(f"Configuration validation failed: {e}")
        sys.exit(1)

    setup_logging(settings.log_level, settings.log_file)
    logger.info("Starting Rancher External LoadBalancer service")

    try:
        provider = create_provider(settings, build_registry())
        metadata = RancherMetadataClient(settings.metadata_url)
        environment_uuid = metadata.resolve_environment_uuid()
        registrar = create_registrar(settings)
    except (ConfigError, ProviderError, MetadataError) as e:
        logger.error(f"Startup failed: {e}")
        sys.exit(1)

    logger.info(f"Powered by {provider.name}")
    logger.info(f"Metadata: {metadata.url}")
    logger.info(f"Target pool suffix: {settings.target_pool_suffix}")
    logger.info(f"Poll interval: {settings.poll_interval_ms}ms")
    logger.info(f"Force update interval: {settings.force_update_interval_minutes}m")

    healthcheck = HealthcheckServer(
        metadata=metadata, provider=provider, port=settings.healthcheck_port
    )
    try:
        healthcheck.start()
    except OSError as e:
        logger.error(f"Failed to start healthcheck on port {settings.healthcheck_port}: {e}")
        sys.exit(1)

    reconciler = Reconciler(
        provider=provider,
        owner_suffix=ownership_suffix(environment_uuid, settings.target_pool_suffix),
    )
    scheduler = Scheduler(
        metadata=metadata,
        reconciler=reconciler,
        target_pool_suffix=settings.target_pool_suffix,
        registrar=registrar,
        poll_interval_seconds=settings.poll_interval_seconds,
        force_update_interval_seconds=settings.force_update_interval_seconds,
    )

    try:
        scheduler.run()
    except KeyboardInterrupt:
        logger.info("Shutting down gracefully...")
    except Exception as e:
        logger.error(f"Fatal error: {e}", exc_info=True)
        sys.exit(1)
    finally:
        healthcheck.stop()


if __name__ == "__main__":
    main()
