"""F5 BIG-IP provider using the iControl REST API.

Each endpoint is a pre-existing virtual server. Its backends live in a pool
named after the endpoint's target pool name; pool members are ``ip:port``
and each member IP is also registered as an LTM node.
"""

from __future__ import annotations

import json
import logging
from typing import Any, Dict, List, Mapping, Optional

import requests
from requests.auth import HTTPBasicAuth

from external_lb.config import parse_bool
from external_lb.differ import diff_targets
from external_lb.model import EndpointConfig, Target, format_targets
from external_lb.providers.base import Provider, ProviderError, require_option

logger = logging.getLogger(__name__)

PROVIDER_SLUG = "f5_BigIP"
PARTITION = "Common"
DETACHED_POOL = "none"


def _uri_name(name: str) -> str:
    """iControl path segment for an object in our partition."""
    return f"~{PARTITION}~{name}"


def _strip_partition(path: str) -> str:
    prefix = f"/{PARTITION}/"
    return path[len(prefix):] if path.startswith(prefix) else path


class F5BigIPProvider(Provider):
    def __init__(
        self,
        host: str,
        username: str,
        password: str,
        *,
        verify_tls: bool = True,
        timeout_seconds: float = 10.0,
    ):
        if not host.startswith("http"):
            host = f"https://{host}"
        self._url = f"{host.rstrip('/')}/mgmt/tm"
        self._timeout = timeout_seconds
        self._session = requests.Session()
        self._session.auth = HTTPBasicAuth(username, password)
        self._session.verify = verify_tls

    @classmethod
    def from_options(cls, options: Mapping[str, str]) -> "F5BigIPProvider":
        host = require_option(options, "F5_BIGIP_HOST")
        user = require_option(options, "F5_BIGIP_USER")
        password = require_option(options, "F5_BIGIP_PWD")
        verify_tls = parse_bool(options.get("F5_BIGIP_VERIFY_TLS"), default=True)
        logger.debug(
            f"Initializing f5 provider with host: {host}, admin: {user}, "
            f"pwd-length: {len(password)}"
        )

        provider = cls(host, user, password, verify_tls=verify_tls)
        try:
            provider.health_check()
        except ProviderError as e:
            raise ProviderError(f"Could not connect to f5 host '{host}': {e}") from e
        logger.info(f"Configured {provider.name} provider using host {host}")
        return provider

    @property
    def name(self) -> str:
        return "F5 BigIP"

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
            if allow_missing and response.status_code == 404:
                return None
            response.raise_for_status()
            if not response.content:
                return {}
            data = response.json()
        except (requests.exceptions.RequestException, json.JSONDecodeError) as e:
            raise ProviderError(f"{method} {path} failed: {e}") from e
        return data if isinstance(data, dict) else {}

    def _get_virtual_server(self, name: str) -> Optional[Dict[str, Any]]:
        return self._request("GET", f"ltm/virtual/{_uri_name(name)}", allow_missing=True)

    def _pool_members(self, pool: str) -> List[Target]:
        data = self._request("GET", f"ltm/pool/{_uri_name(pool)}/members", allow_missing=True)
        targets: List[Target] = []
        for item in (data or {}).get("items", []):
            target = Target.from_key(str(item.get("name", "")))
            if target is None:
                logger.warning(f"f5: ignoring malformed member '{item.get('name')}' of pool {pool}")
                continue
            targets.append(target)
        return targets

    def _ensure_node(self, host_ip: str) -> None:
        node = self._request("GET", f"ltm/node/{_uri_name(host_ip)}", allow_missing=True)
        if node is not None and node.get("address") == host_ip:
            return
        self._request("POST", "ltm/node", body={"name": host_ip, "address": host_ip})
        logger.debug(f"f5: created node {host_ip}")

    def _ensure_pool(self, pool: str) -> None:
        if self._request("GET", f"ltm/pool/{_uri_name(pool)}", allow_missing=True) is None:
            self._request("POST", "ltm/pool", body={"name": pool})
            logger.debug(f"f5: created pool {pool}")
        self._request(
            "PATCH", f"ltm/pool/{_uri_name(pool)}", body={"allowNat": "yes", "allowSnat": "yes"}
        )

    def _add_member(self, pool: str, target: Target) -> None:
        self._ensure_node(target.host_ip)
        self._request("POST", f"ltm/pool/{_uri_name(pool)}/members", body={"name": target.key})

    def _remove_member(self, pool: str, target: Target) -> None:
        self._request(
            "DELETE", f"ltm/pool/{_uri_name(pool)}/members/{_uri_name(target.key)}",
            allow_missing=True,
        )

    def _attach_pool(self, virtual_server: str, pool: str) -> None:
        self._request("PATCH", f"ltm/virtual/{_uri_name(virtual_server)}", body={"pool": pool})

    def _delete_pool(self, pool: str) -> List[Target]:
        members = self._pool_members(pool)
        self._request("DELETE", f"ltm/pool/{_uri_name(pool)}", allow_missing=True)
        for target in members:
            # Nodes shared with other pools cannot be deleted.
            try:
                self._request("DELETE", f"ltm/node/{_uri_name(target.host_ip)}", allow_missing=True)
            except ProviderError as e:
                logger.debug(f"f5: keeping node {target.host_ip}: {e}")
        return members

    # -------------------------------------------------------------------------
    # Provider interface
    # -------------------------------------------------------------------------

    def health_check(self) -> None:
        self._request("GET", "ltm/pool")

    def get_lb_configs(self) -> List[EndpointConfig]:
        data = self._request("GET", "ltm/virtual") or {}
        configs: List[EndpointConfig] = []
        for vs in data.get("items", []):
            pool_path = str(vs.get("pool") or "")
            if not pool_path:
                continue
            pool = _strip_partition(pool_path)
            configs.append(
                EndpointConfig(
                    endpoint=str(vs.get("name", "")),
                    target_pool_name=pool,
                    targets=tuple(self._pool_members(pool)),
                )
            )
        logger.debug(f"f5 GetLBConfigs returned {len(configs)} configs")
        return configs

    def add_lb_config(self, config: EndpointConfig) -> str:
        if self._get_virtual_server(config.endpoint) is None:
            raise ProviderError(f"f5: virtual server {config.endpoint} not found")

        pool = config.target_pool_name
        self._ensure_pool(pool)
        membership = diff_targets(self._pool_members(pool), config.targets)
        for target in sorted(membership.to_add, key=lambda t: t.key):
            self._add_member(pool, target)
        self._attach_pool(config.endpoint, pool)
        logger.debug(
            f"f5: added [{format_targets(membership.to_add)}] to pool {pool} "
            f"of {config.endpoint}"
        )
        return ""

    def update_lb_config(self, config: EndpointConfig) -> str:
        vs = self._get_virtual_server(config.endpoint)
        if vs is None:
            raise ProviderError(f"f5: virtual server {config.endpoint} not found")
        previous_pool = _strip_partition(str(vs.get("pool") or ""))

        pool = config.target_pool_name
        self._ensure_pool(pool)
        membership = diff_targets(self._pool_members(pool), config.targets)
        for target in sorted(membership.to_remove, key=lambda t: t.key):
            self._remove_member(pool, target)
        for target in sorted(membership.to_add, key=lambda t: t.key):
            self._add_member(pool, target)
        self._attach_pool(config.endpoint, pool)

        if previous_pool and previous_pool.lower() != pool.lower():
            logger.info(f"f5: {config.endpoint} moved from pool {previous_pool} to {pool}")
            self._delete_pool(previous_pool)

        logger.debug(
            f"f5: updated pool {pool} of {config.endpoint}: "
            f"+[{format_targets(membership.to_add)}] -[{format_targets(membership.to_remove)}]"
        )
        return ""

    def remove_lb_config(self, config: EndpointConfig) -> None:
        vs = self._get_virtual_server(config.endpoint)
        pool = config.target_pool_name
        if vs is not None and _strip_partition(str(vs.get("pool") or "")) == pool:
            self._attach_pool(config.endpoint, DETACHED_POOL)
        members = self._delete_pool(pool)
        logger.debug(f"f5: removed pool {pool} with [{format_targets(members)}]")
