"""Rancher metadata client: version token and desired endpoint state."""

from __future__ import annotations

import json
import logging
import time
from typing import Any, Callable, Dict, List, Optional

import requests
from tenacity import RetryError, Retrying, retry_if_exception_type, stop_after_delay, stop_any
from tenacity import wait_exponential

from external_lb.model import EndpointConfig, Target, build_pool_name

logger = logging.getLogger(__name__)

DEFAULT_METADATA_URL = "http://rancher-metadata/2015-12-19"

SERVICE_LABEL_ENDPOINT = "io.rancher.service.external_lb.endpoint"
SERVICE_LABEL_ENDPOINT_LEGACY = "io.rancher.service.external_lb_endpoint"
SERVICE_LABEL_PREFIX = "io.rancher.service.external_lb."

HEALTHY_STATES = {"healthy", "updating-healthy", ""}

# Startup discovery of the environment UUID: 1s, 2s, 4s, ... within 30s.
DISCOVERY_TIMEOUT_SECONDS = 30


class MetadataError(Exception):
    """The metadata service could not be read."""


class RancherMetadataClient:
    def __init__(
        self,
        url: str = DEFAULT_METADATA_URL,
        *,
        environment_uuid: str = "",
        timeout_seconds: float = 5.0,
    ):
        self._url = url.rstrip("/")
        self._timeout = timeout_seconds
        self._session = requests.Session()
        self._session.headers["Accept"] = "application/json"
        self.environment_uuid = environment_uuid

    @property
    def url(self) -> str:
        return self._url

    def _get(self, path: str) -> requests.Response:
        try:
            response = self._session.get(f"{self._url}/{path}", timeout=self._timeout)
            response.raise_for_status()
        except requests.exceptions.RequestException as e:
            raise MetadataError(f"Error reading metadata '{path}': {e}") from e
        return response

    def _get_json(self, path: str) -> Any:
        response = self._get(path)
        try:
            return response.json()
        except (ValueError, json.JSONDecodeError) as e:
            raise MetadataError(f"Malformed metadata '{path}': {e}") from e

    # -------------------------------------------------------------------------
    # Version / health
    # -------------------------------------------------------------------------

    def get_version(self) -> str:
        response = self._get("version")
        return response.text.strip().strip('"')

    def get_self_stack(self) -> Dict[str, Any]:
        stack = self._get_json("self/stack")
        if not isinstance(stack, dict):
            raise MetadataError(f"Unexpected self/stack payload: {stack!r}")
        return stack

    def health_check(self) -> None:
        self.get_self_stack()

    def resolve_environment_uuid(
        self,
        *,
        timeout_seconds: float = DISCOVERY_TIMEOUT_SECONDS,
        sleep: Callable[[float], None] = time.sleep,
    ) -> str:
        """Read the environment UUID of our own stack, retrying with backoff.

        Raises ``MetadataError`` once the retry budget is spent.
        """

        def _log_retry(retry_state) -> None:
            exc = retry_state.outcome.exception() if retry_state.outcome else None
            logger.error(f"Error reading stack info: {exc}...will retry")

        retrying = Retrying(
            retry=retry_if_exception_type(MetadataError),
            wait=wait_exponential(multiplier=1, min=1),
            stop=stop_any(stop_after_delay(timeout_seconds), _stop_after_idle(timeout_seconds)),
            before_sleep=_log_retry,
            sleep=sleep,
        )
        try:
            stack = retrying(self.get_self_stack)
        except RetryError as e:
            last = e.last_attempt.exception()
            raise MetadataError(f"Error reading stack info: {last}") from last

        uuid = str(stack.get("environment_uuid") or "").strip()
        if not uuid:
            raise MetadataError("Stack info carries no environment_uuid")
        self.environment_uuid = uuid
        logger.info(f"Environment UUID: {uuid}")
        return uuid

    # -------------------------------------------------------------------------
    # Desired state
    # -------------------------------------------------------------------------

    def get_services(self) -> List[Dict[str, Any]]:
        services = self._get_json("services")
        if not isinstance(services, list):
            raise MetadataError(f"Unexpected services payload: {type(services).__name__}")
        return [s for s in services if isinstance(s, dict)]

    def get_desired_endpoints(self, target_pool_suffix: str) -> Dict[str, EndpointConfig]:
        if not self.environment_uuid:
            raise MetadataError("Environment UUID has not been resolved")

        configs: Dict[str, EndpointConfig] = {}
        owners: Dict[str, str] = {}
        for service in self.get_services():
            config = self._service_config(service, target_pool_suffix)
            if config is None:
                continue
            name = service.get("name", "")
            if config.endpoint in configs:
                logger.error(
                    f"Endpoint {config.endpoint} already used by service "
                    f"{owners[config.endpoint]}, will skip this service: {name}"
                )
                continue
            configs[config.endpoint] = config
            owners[config.endpoint] = name
        return configs

    def _service_config(
        self, service: Dict[str, Any], target_pool_suffix: str
    ) -> Optional[EndpointConfig]:
        labels = service.get("labels") or {}
        if not isinstance(labels, dict):
            labels = {}
        endpoint = labels.get(SERVICE_LABEL_ENDPOINT) or labels.get(SERVICE_LABEL_ENDPOINT_LEGACY)
        if not endpoint:
            return None

        name = str(service.get("name") or "")
        stack_name = str(service.get("stack_name") or "")
        logger.debug(f"LB label exists for service: {name}")

        ports = service.get("ports") or []
        if not ports:
            logger.warning(
                f"Skipping LB configuration for service {name}: service hasn't any ports exposed"
            )
            return None
        portspec = str(ports[0]).split(":")
        if len(portspec) != 2:
            logger.warning(
                f"Skipping LB configuration for service {name}: "
                f"unexpected format of service port spec: {ports[0]}"
            )
            return None
        target_port = portspec[0]

        passthrough = {
            key[len(SERVICE_LABEL_PREFIX):]: str(value)
            for key, value in labels.items()
            if key.startswith(SERVICE_LABEL_PREFIX) and key != SERVICE_LABEL_ENDPOINT
        }

        targets = self._container_targets(service, name, stack_name, target_port)
        logger.debug(f"Found {len(targets)} target IPs for service {name}")

        return EndpointConfig(
            endpoint=str(endpoint),
            target_pool_name=build_pool_name(
                name, stack_name, self.environment_uuid, target_pool_suffix
            ),
            target_port=target_port,
            targets=tuple(targets),
            labels=passthrough,
        )

    def _container_targets(
        self, service: Dict[str, Any], name: str, stack_name: str, target_port: str
    ) -> List[Target]:
        seen: Dict[str, Target] = {}
        for container in service.get("containers") or []:
            if not isinstance(container, dict) or not container.get("service_name"):
                continue
            if not _container_state_ok(container):
                logger.debug(
                    f"Skipping container {container.get('name')} with state "
                    f"'{container.get('state')}' and health '{container.get('health_state')}'"
                )
                continue
            if name and (
                container.get("service_name") != name or container.get("stack_name") != stack_name
            ):
                continue

            for port in container.get("ports") or []:
                # <public ip>:<public port>:<private port>[/proto]
                portspec = str(port).split(":")
                if len(portspec) != 3:
                    logger.warning(
                        f"Unexpected format of port spec for container "
                        f"{container.get('name')}: {port}"
                    )
                    continue
                ip, public_port = portspec[0], portspec[1]
                if public_port != target_port:
                    continue
                target = Target(host_ip=ip, port=public_port)
                seen.setdefault(target.key, target)
        return list(seen.values())


def _container_state_ok(container: Dict[str, Any]) -> bool:
    if container.get("state") != "running":
        return False
    return (container.get("health_state") or "") in HEALTHY_STATES


def _stop_after_idle(budget_seconds: float) -> Callable[[Any], bool]:
    """Stop once the accumulated backoff sleep reaches the budget."""

    def _stop(retry_state) -> bool:
        return retry_state.idle_for >= budget_seconds

    return _stop
