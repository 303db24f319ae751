"""Zevenet load balancer provider using the ZAPI v3.1 REST API.

All endpoints are services of one pre-existing HTTP(S) farm. A service's id
is the endpoint's target pool name with characters ZAPI rejects replaced,
its virtual host pattern is the endpoint, and its backends are the targets.
"""

from __future__ import annotations

import json
import logging
from typing import Any, Dict, List, Mapping, Optional

import requests

from external_lb.config import parse_bool
from external_lb.differ import diff_targets
from external_lb.model import EndpointConfig, Target, format_targets, is_owned, pool_owner_suffix
from external_lb.providers.base import Provider, ProviderError, require_option

logger = logging.getLogger(__name__)

PROVIDER_SLUG = "zevenet"
ZAPI_VERSION = "3.1"

LABEL_HTTP_REDIRECT_URL = "httpRedirectUrl"


def service_id(pool_name: str) -> str:
    """Encode a target pool name as a ZAPI service id."""
    return pool_name.replace(".", "--D--").replace("_", "--U--")


def pool_name(service_id: str) -> str:
    return service_id.replace("--D--", ".").replace("--U--", "_")


class ZevenetProvider(Provider):
    def __init__(
        self,
        host: str,
        zapi_key: str,
        farm_name: str,
        *,
        verify_tls: bool = False,
        timeout_seconds: float = 60.0,
    ):
        if not host.startswith("http"):
            host = f"https://{host}"
        self._url = f"{host.rstrip('/')}/zapi/v{ZAPI_VERSION}/zapi.cgi"
        self._timeout = timeout_seconds
        self._session = requests.Session()
        self._session.headers["ZAPI_KEY"] = zapi_key
        self._session.verify = verify_tls
        self.farm_name = farm_name

    @classmethod
    def from_options(cls, options: Mapping[str, str]) -> "ZevenetProvider":
        host = require_option(options, "ZAPI_HOST")
        zapi_key = require_option(options, "ZAPI_KEY")
        farm_name = require_option(options, "ZAPI_FARM")
        verify_tls = parse_bool(options.get("ZAPI_VERIFY_TLS"), default=False)
        logger.debug(
            f"Initializing Zevenet provider with farm {farm_name} on host: {host}, "
            f"key-length: {len(zapi_key)}"
        )

        provider = cls(host, zapi_key, farm_name, verify_tls=verify_tls)
        provider.health_check()
        logger.info(f"Configured {provider.name} provider using farm {farm_name} on host {host}")
        return provider

    @property
    def name(self) -> str:
        return "Zevenet"

    # -------------------------------------------------------------------------
    # REST helpers
    # -------------------------------------------------------------------------

    def _request(
        self,
        method: str,
        path: str,
        *,
        body: Optional[Dict[str, Any]] = None,
        allow_missing: bool = False,
    ) -> Optional[Dict[str, Any]]:
        url = f"{self._url}/{path}"
        try:
            response = self._session.request(method, url, json=body, timeout=self._timeout)
        except requests.exceptions.RequestException as e:
            raise ProviderError(f"{method} {path} failed: {e}") from e

        if allow_missing and response.status_code == 404:
            return None
        if response.status_code >= 400:
            raise ProviderError(f"{method} {path} failed: {_error_message(response)}")
        if not response.content:
            return {}
        try:
            data = response.json()
        except (requests.exceptions.RequestException, json.JSONDecodeError) as e:
            raise ProviderError(f"{method} {path} returned malformed JSON: {e}") from e
        return data if isinstance(data, dict) else {}

    def _get_farm(self) -> Dict[str, Any]:
        data = self._request("GET", f"farms/{self.farm_name}", allow_missing=True)
        if data is None:
            raise ProviderError(f"Farm not found on Zevenet loadbalancer: {self.farm_name}")
        farm = dict(data.get("params") or {})
        farm["services"] = [s for s in data.get("services") or [] if isinstance(s, dict)]
        return farm

    def _restart_farm(self) -> None:
        self._request("PUT", f"farms/{self.farm_name}/actions", body={"action": "restart"})

    def _service_path(self, sid: str) -> str:
        return f"farms/{self.farm_name}/services/{sid}"

    @staticmethod
    def _find_service(farm: Dict[str, Any], sid: str) -> Optional[Dict[str, Any]]:
        for service in farm["services"]:
            if service.get("id") == sid:
                return service
        return None

    @staticmethod
    def _backends(service: Dict[str, Any]) -> Dict[Target, Any]:
        """Map each backend's target to its ZAPI backend id."""
        backends: Dict[Target, Any] = {}
        for backend in service.get("backends") or []:
            ip = backend.get("ip")
            port = backend.get("port")
            if not ip or port in (None, ""):
                continue
            backends[Target(host_ip=str(ip), port=str(port))] = backend.get("id")
        return backends

    def _create_backend(self, sid: str, target: Target, endpoint: str) -> None:
        try:
            port = int(target.port)
        except ValueError:
            raise ProviderError(
                f"Failed to parse port number '{target.port}' of {endpoint}"
            ) from None
        self._request(
            "POST", f"{self._service_path(sid)}/backends", body={"ip": target.host_ip, "port": port}
        )

    def _apply(self, config: EndpointConfig, *, converge: bool) -> None:
        farm = self._get_farm()
        sid = service_id(config.target_pool_name)

        redirect_url = config.label(LABEL_HTTP_REDIRECT_URL)
        if farm.get("listener") != "http":
            redirect_url = ""

        service = self._find_service(farm, sid)
        if service is None:
            self._request("POST", f"farms/{self.farm_name}/services", body={"id": sid})
            service = {"id": sid, "backends": []}

        self._request(
            "PUT",
            self._service_path(sid),
            body={"vhost": config.endpoint, "redirect": redirect_url},
        )

        current = self._backends(service)
        desired = () if redirect_url else config.targets
        membership = diff_targets(current.keys(), desired)

        if converge or redirect_url:
            for target in sorted(membership.to_remove, key=lambda t: t.key):
                backend_path = f"{self._service_path(sid)}/backends/{current[target]}"
                self._request("DELETE", backend_path, allow_missing=True)
        for target in sorted(membership.to_add, key=lambda t: t.key):
            self._create_backend(sid, target, config.endpoint)

        if converge:
            # A renamed pool leaves the endpoint's previous service behind. Only
            # services with our own pool-name tail may be deleted.
            owner = pool_owner_suffix(config.target_pool_name)
            for other in farm["services"]:
                other_id = str(other.get("id") or "")
                if (
                    other_id != sid
                    and other.get("vhost") == config.endpoint
                    and is_owned(pool_name(other_id), owner)
                ):
                    logger.info(f"Zevenet: deleting stale service {other_id} of {config.endpoint}")
                    self._request("DELETE", self._service_path(other_id), allow_missing=True)

        self._restart_farm()
        logger.debug(
            f"Zevenet: service {sid} of {config.endpoint}: "
            f"+[{format_targets(membership.to_add)}] -[{format_targets(membership.to_remove)}]"
        )

    # -------------------------------------------------------------------------
    # Provider interface
    # -------------------------------------------------------------------------

    def health_check(self) -> None:
        try:
            self._request("GET", "system/version")
        except ProviderError as e:
            raise ProviderError(f"Failed to ping Zevenet loadbalancer: {e}") from e

    def get_lb_configs(self) -> List[EndpointConfig]:
        farm = self._get_farm()
        target_port = str(farm.get("vport") or "")
        configs: List[EndpointConfig] = []
        for service in farm["services"]:
            configs.append(
                EndpointConfig(
                    endpoint=str(service.get("vhost") or ""),
                    target_pool_name=pool_name(str(service.get("id") or "")),
                    target_port=target_port,
                    targets=tuple(self._backends(service)),
                )
            )
        return configs

    def add_lb_config(self, config: EndpointConfig) -> str:
        self._apply(config, converge=False)
        return ""

    def update_lb_config(self, config: EndpointConfig) -> str:
        self._apply(config, converge=True)
        return ""

    def remove_lb_config(self, config: EndpointConfig) -> None:
        farm = self._get_farm()
        sid = service_id(config.target_pool_name)
        if self._find_service(farm, sid) is None:
            logger.debug(f"Zevenet: service {sid} of {config.endpoint} already absent")
            return
        self._request("DELETE", self._service_path(sid), allow_missing=True)
        self._restart_farm()


def _error_message(response: requests.Response) -> str:
    try:
        data = response.json()
    except (requests.exceptions.RequestException, json.JSONDecodeError):
        return f"HTTP {response.status_code} :: {response.text}"
    if isinstance(data, dict) and data.get("message"):
        if data.get("description"):
            return f"{data['description']} failed: {data['message']}"
        return str(data["message"])
    return f"HTTP {response.status_code} :: {response.text}"
