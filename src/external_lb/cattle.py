"""Registers discovered endpoint FQDNs with the Rancher (Cattle) API."""

from __future__ import annotations

import logging

import requests
from requests.auth import HTTPBasicAuth

logger = logging.getLogger(__name__)


class RegistrationError(Exception):
    """An FQDN could not be registered."""


class CattleClient:
    """Cattle API client posting ``externalDnsEvent`` resources."""

    def __init__(self, url: str, access_key: str, secret_key: str, timeout_seconds: float = 5.0):
        self._url = url.rstrip("/")
        self._timeout = timeout_seconds
        self._session = requests.Session()
        self._session.auth = HTTPBasicAuth(access_key, secret_key)

    @property
    def name(self) -> str:
        return "Rancher Cattle"

    def test_connection(self) -> bool:
        try:
            response = self._session.get(f"{self._url}/externaldnsevents", timeout=self._timeout)
            response.raise_for_status()
            logger.info(f"{self.name} connection successful")
            return True
        except requests.exceptions.RequestException as e:
            logger.error(f"Failed to connect to {self.name}: {e}")
            return False

    def register_fqdn(self, service_name: str, stack_name: str, fqdn: str) -> None:
        event = {
            "type": "externalDnsEvent",
            "eventType": "dns.update",
            "externalId": fqdn,
            "serviceName": service_name,
            "stackName": stack_name,
            "fqdn": fqdn,
        }
        try:
            response = self._session.post(
                f"{self._url}/externaldnsevents", json=event, timeout=self._timeout
            )
            response.raise_for_status()
        except requests.exceptions.RequestException as e:
            raise RegistrationError(
                f"Failed to register FQDN {fqdn} for {stack_name}/{service_name}: {e}"
            ) from e
        logger.info(f"Registered FQDN {fqdn} for {stack_name}/{service_name}")
