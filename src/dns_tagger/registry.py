"""Registry data model: desired endpoints, DNS zones, hosts and ownership records.

Ownership of a DNS name is recorded in TXT "registry" records written by
external-dns:

    heritage=external-dns,external-dns/owner=<owner>,external-dns/resource=<resource>

A registry record is associated with a host record purely by naming convention
(see RegistryRecord.is_managing). Everything here is an immutable snapshot that
is rebuilt from the provider on every pass.
"""

from __future__ import annotations

import dataclasses
import logging
from dataclasses import dataclass, field
from typing import Iterable, List, Optional, Sequence, Tuple

logger = logging.getLogger(__name__)

# =============================================================================
# Constants
# =============================================================================

HERITAGE = "heritage=external-dns"
OWNER_KEY = "external-dns/owner="
RESOURCE_KEY = "external-dns/resource="

REGISTRY_RECORD_TYPE = "TXT"
HOST_RECORD_TYPES = frozenset({"A", "AAAA", "CNAME"})

DEFAULT_TXT_PREFIXES: Tuple[str, ...] = ("edns-",)


def is_host_record_type(record_type: str) -> bool:
    return record_type in HOST_RECORD_TYPES


def is_registry_record_type(record_type: str) -> bool:
    return record_type == REGISTRY_RECORD_TYPE


# =============================================================================
# Registry Record Encoding
# =============================================================================


def decode_info(info: str) -> Tuple[str, str]:
    """Decode registry text into (owner, resource).

    Unknown attributes are ignored and missing ones decode to "".
    """
    owner, resource = "", ""
    for segment in (info or "").split(","):
        if segment.startswith(OWNER_KEY):
            owner = segment[len(OWNER_KEY) :]
        elif segment.startswith(RESOURCE_KEY):
            resource = segment[len(RESOURCE_KEY) :]
    return owner, resource


def encode_info(owner: str, resource: str) -> str:
    """Encode owner and resource in the fixed external-dns attribute order."""
    return f"{HERITAGE},{OWNER_KEY}{owner},{RESOURCE_KEY}{resource}"


def is_registry_info(content: str) -> bool:
    """Check whether TXT content is an external-dns registry entry."""
    return content.strip('"').startswith(HERITAGE)


def _split_first_label(name: str) -> Tuple[str, str]:
    label, dot, rest = name.partition(".")
    return label, dot + rest


# =============================================================================
# Data Classes
# =============================================================================


@dataclass(frozen=True)
class Endpoint:
    """Desired DNS name produced by a cluster workload."""

    host: str
    resource: str
    targets: Tuple[str, ...] = ()

    def __str__(self) -> str:
        return f"Endpoint[Host:{self.host}][Resource:{self.resource}]"


@dataclass(frozen=True)
class RegistryRecord:
    """Ownership ledger entry stored as a TXT record."""

    name: str
    owner: str = ""
    resource: str = ""
    raw: str = field(default="", compare=False)

    @classmethod
    def from_text(cls, name: str, text: str) -> "RegistryRecord":
        raw = text.strip('"')
        owner, resource = decode_info(raw)
        return cls(name=name, owner=owner, resource=resource, raw=raw)

    @property
    def info(self) -> str:
        """Canonical TXT content for this record."""
        return encode_info(self.owner, self.resource)

    def is_managing(
        self,
        host: "Host",
        prefixes: Sequence[str] = DEFAULT_TXT_PREFIXES,
        suffixes: Sequence[str] = (),
    ) -> bool:
        """Check whether this record administers the given host.

        Matches the exact host name, or a name within the same parent domain
        whose first label is the host's first label decorated with a registry
        prefix ("<prefix>[<type>-]<label>") or suffix ("[<type>-]<label><suffix>"),
        where <type> is the lowercase host record type.
        """
        if self.name == host.name:
            return True

        record_label, record_rest = _split_first_label(self.name)
        host_label, host_rest = _split_first_label(host.name)
        if not record_rest or record_rest != host_rest:
            return False

        labels = [host_label]
        if host.record_type:
            labels.append(f"{host.record_type.lower()}-{host_label}")
        for label in labels:
            if any(prefix and record_label == prefix + label for prefix in prefixes):
                return True
            if any(suffix and record_label == label + suffix for suffix in suffixes):
                return True
        return False

    def with_owner(self, owner: str) -> "RegistryRecord":
        return dataclasses.replace(self, owner=owner)

    def with_resource(self, resource: str) -> "RegistryRecord":
        return dataclasses.replace(self, resource=resource)

    def __str__(self) -> str:
        return f"Record[{self.name}][Owner:{self.owner}][Resource:{self.resource}]"


@dataclass(frozen=True)
class Host:
    """A resolvable name in a zone together with the registry records governing it."""

    name: str
    record_type: str = ""
    value: str = ""
    registry_records: Tuple[RegistryRecord, ...] = ()

    def is_managed(self) -> bool:
        return len(self.registry_records) > 0

    def __str__(self) -> str:
        state = "Managed" if self.is_managed() else "Unmanaged"
        return f"Host[{state}][Dns:{self.name}]"


@dataclass(frozen=True)
class Zone:
    """A DNS zone snapshot."""

    name: str
    hosts: Tuple[Host, ...] = ()

    def is_managing_endpoint(self, endpoint: Endpoint) -> bool:
        # Plain suffix test, no label boundary: "dummy.host" also covers
        # "baddummy.host".
        return endpoint.host.endswith(self.name)

    def find_host(self, name: str) -> Optional[Host]:
        for host in self.hosts:
            if host.name == name:
                return host
        return None

    def __str__(self) -> str:
        return f"Zone[{self.name}][Hosts:{len(self.hosts)}]"


# =============================================================================
# Zone Catalog
# =============================================================================


def build_zone(
    name: str,
    hosts: Iterable[Host],
    registry_records: Iterable[RegistryRecord],
    prefixes: Sequence[str] = DEFAULT_TXT_PREFIXES,
    suffixes: Sequence[str] = (),
) -> Zone:
    """Assemble a zone, attaching each registry record to the hosts it manages."""
    records = list(registry_records)
    zone_hosts: List[Host] = []
    for host in hosts:
        managing = tuple(r for r in records if r.is_managing(host, prefixes, suffixes))
        zone_hosts.append(dataclasses.replace(host, registry_records=managing))

    zone = Zone(name=name, hosts=tuple(zone_hosts))
    managed = sum(1 for h in zone.hosts if h.is_managed())
    logger.debug(
        f"Zone '{name}': {len(zone.hosts)} hosts ({managed} managed), "
        f"{len(records)} registry records"
    )
    return zone


def find_endpoint_zone(endpoint: Endpoint, zones: Iterable[Zone]) -> Optional[Zone]:
    """Return the first zone in catalog order covering the endpoint."""
    for zone in zones:
        if zone.is_managing_endpoint(endpoint):
            return zone
    return None
