"""DNS provider interface and implementations.

Supported DNS Providers:
    - dnsimple: DNSimple v2 REST API
"""

from __future__ import annotations

import json
import logging
from abc import ABC, abstractmethod
from enum import Enum
from typing import Any, Dict, Iterator, List, Optional, Sequence

import requests

from dns_tagger.registry import (
    DEFAULT_TXT_PREFIXES,
    Host,
    RegistryRecord,
    Zone,
    build_zone,
    is_host_record_type,
    is_registry_info,
    is_registry_record_type,
)

logger = logging.getLogger(__name__)

DNSIMPLE_BASE_URL = "https://api.dnsimple.com/v2"
USER_AGENT = "dns-tagger"


class ProviderKind(Enum):
    DNSIMPLE = "dnsimple"


class ProviderError(Exception):
    """Raised when the DNS provider cannot be read or written."""


# =============================================================================
# DNS Provider Interface
# =============================================================================


class DNSProvider(ABC):
    """Abstract base class for DNS providers."""

    @property
    @abstractmethod
    def name(self) -> str:
        """Return the provider name for logging."""
        pass

    @abstractmethod
    def whoami(self) -> str:
        """Describe the identity used to talk to the provider."""
        pass

    @abstractmethod
    def read_zones(self) -> List[Zone]:
        """Read every configured zone with its hosts and registry records."""
        pass

    @abstractmethod
    def update_registry_record(self, zone: Zone, record: RegistryRecord) -> int:
        """Write a registry record's content and return the number of records updated."""
        pass


# =============================================================================
# DNSimple
# =============================================================================


def _relative_name(fqdn: str, zone_name: str) -> str:
    """Convert an FQDN to the zone-relative name DNSimple stores ("" for apex)."""
    if fqdn == zone_name:
        return ""
    suffix = f".{zone_name}"
    if fqdn.endswith(suffix):
        return fqdn[: -len(suffix)]
    return fqdn


def _absolute_name(name: str, zone_name: str) -> str:
    return f"{name}.{zone_name}" if name else zone_name


class DNSimpleProvider(DNSProvider):
    """DNSimple DNS provider implementation."""

    def __init__(
        self,
        token: str,
        zones: Sequence[str],
        *,
        account_id: str = "",
        base_url: str = DNSIMPLE_BASE_URL,
        dry_run: bool = True,
        txt_prefixes: Sequence[str] = DEFAULT_TXT_PREFIXES,
        txt_suffixes: Sequence[str] = (),
        timeout_seconds: float = 10.0,
    ):
        self._url = base_url.rstrip("/")
        self._zones = list(zones)
        self._account_id = account_id
        self._dry_run = dry_run
        self._txt_prefixes = tuple(txt_prefixes)
        self._txt_suffixes = tuple(txt_suffixes)
        self._timeout = timeout_seconds
        self._session = requests.Session()
        self._session.headers.update(
            {
                "Authorization": f"Bearer {token}",
                "Accept": "application/json",
                "User-Agent": USER_AGENT,
            }
        )

    @property
    def name(self) -> str:
        return "DNSimple"

    @property
    def account_id(self) -> str:
        if not self._account_id:
            self._account_id = self._detect_account_id()
        return self._account_id

    def whoami(self) -> str:
        return f"{self.name} for Account {self.account_id}"

    def _get(self, path: str, params: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        try:
            response = self._session.get(f"{self._url}{path}", params=params, timeout=self._timeout)
            response.raise_for_status()
            return response.json()
        except (requests.exceptions.RequestException, json.JSONDecodeError) as e:
            logger.error(f"{self.name} request GET {path} failed: {e}")
            raise ProviderError(f"{self.name} request GET {path} failed: {e}") from e

    def _detect_account_id(self) -> str:
        data = self._get("/whoami").get("data") or {}
        account = data.get("account")
        if not account or "id" not in account:
            raise ProviderError(
                "Cannot detect DNSimple account id, set DNSIMPLE_ACCOUNT_ID to specify it manually"
            )
        return str(account["id"])

    def _list_records(self, zone_name: str, name: Optional[str] = None) -> Iterator[Dict[str, Any]]:
        """Iterate over the zone records, following pagination."""
        page = 1
        while True:
            params: Dict[str, Any] = {"page": page}
            if name is not None:
                params["name"] = name
            payload = self._get(f"/{self.account_id}/zones/{zone_name}/records", params=params)

            for record in payload.get("data") or []:
                if isinstance(record, dict):
                    yield record
                else:
                    logger.warning(f"Skipping malformed record: {record}")

            total_pages = (payload.get("pagination") or {}).get("total_pages") or 1
            page += 1
            if page > total_pages:
                break

    def read_zones(self) -> List[Zone]:
        zones: List[Zone] = []
        for zone_name in self._zones:
            hosts: List[Host] = []
            registry_records: List[RegistryRecord] = []
            for record in self._list_records(zone_name):
                record_type = str(record.get("type") or "")
                content = str(record.get("content") or "")
                name = _absolute_name(str(record.get("name") or ""), zone_name)
                if is_registry_record_type(record_type):
                    if is_registry_info(content):
                        registry_records.append(RegistryRecord.from_text(name, content))
                elif is_host_record_type(record_type):
                    hosts.append(Host(name=name, record_type=record_type, value=content))

            zones.append(
                build_zone(
                    zone_name, hosts, registry_records, self._txt_prefixes, self._txt_suffixes
                )
            )
            logger.info(
                f"Read zone '{zone_name}': {len(hosts)} host records, "
                f"{len(registry_records)} registry records"
            )
        return zones

    def _get_record_id(self, zone: Zone, record_name: str) -> int:
        relative = _relative_name(record_name, zone.name)
        for record in self._list_records(zone.name, name=relative):
            # Other TXT records (SPF, site verification) may share the name.
            if (
                record.get("name") == relative
                and is_registry_record_type(str(record.get("type")))
                and is_registry_info(str(record.get("content") or ""))
            ):
                return int(record["id"])
        raise ProviderError(f"No record id found for '{record_name}' in zone '{zone.name}'")

    def update_registry_record(self, zone: Zone, record: RegistryRecord) -> int:
        if self._dry_run:
            logger.info(f"Dry Run: Updated {record.name} registry value to {record.info}")
            return 1

        record_id = self._get_record_id(zone, record.name)
        path = f"/{self.account_id}/zones/{zone.name}/records/{record_id}"
        try:
            response = self._session.patch(
                f"{self._url}{path}", json={"content": record.info}, timeout=self._timeout
            )
            response.raise_for_status()
        except requests.exceptions.RequestException as e:
            logger.error(f"Failed to update registry record {record.name}: {e}")
            raise ProviderError(f"Failed to update registry record {record.name}: {e}") from e

        logger.info(f"Updated {record.name} registry value to {record.info}")
        return 1


# =============================================================================
# Provider Registry
# =============================================================================


def create_dns_provider(
    kind: str,
    *,
    zones: Sequence[str],
    dry_run: bool,
    txt_prefixes: Sequence[str] = DEFAULT_TXT_PREFIXES,
    txt_suffixes: Sequence[str] = (),
    dnsimple_token: str = "",
    dnsimple_account_id: str = "",
    dnsimple_base_url: str = DNSIMPLE_BASE_URL,
) -> DNSProvider:
    """Factory function to create the configured DNS provider."""
    if kind == ProviderKind.DNSIMPLE.value:
        if not dnsimple_token:
            raise ValueError("No DNSimple authentication provided (DNSIMPLE_OAUTH is missing)")
        return DNSimpleProvider(
            dnsimple_token,
            zones,
            account_id=dnsimple_account_id,
            base_url=dnsimple_base_url,
            dry_run=dry_run,
            txt_prefixes=txt_prefixes,
            txt_suffixes=txt_suffixes,
        )
    raise ValueError(
        f"Unsupported DNS provider: '{kind}'. Supported providers: "
        f"{', '.join(k.value for k in ProviderKind)}"
    )
