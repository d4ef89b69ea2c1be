"""Ownership reconciliation.

For every desired endpoint the selector locates its zone and host record, then
brings each registry record governing that host in line with the desired state:

    owner == current owner          -> keep owner
    owner in previous owner ids     -> claim ownership for the current owner
    any other owner                 -> refuse, leave the record untouched

Records that are ours (or claimable) also get their resource corrected when it
differs from the endpoint resource. Records are never created: a host without
registry records is skipped with a warning.
"""

from __future__ import annotations

import logging
from typing import Dict, Iterable, List, Optional, Sequence

from dns_tagger.providers import DNSProvider, ProviderError
from dns_tagger.registry import Endpoint, Host, RegistryRecord, Zone, find_endpoint_zone

logger = logging.getLogger(__name__)


class ReconcileError(Exception):
    """Provider failure during reconciliation.

    ``updated`` holds the number of records committed before the failure.
    """

    def __init__(self, message: str, updated: int):
        super().__init__(message)
        self.updated = updated


def unique_endpoints(endpoints: Iterable[Endpoint]) -> List[Endpoint]:
    """Keep one endpoint per host in first-seen order; the first resource wins."""
    seen: Dict[str, Endpoint] = {}
    for endpoint in endpoints:
        first = seen.get(endpoint.host)
        if first is None:
            seen[endpoint.host] = endpoint
        elif first.resource != endpoint.resource:
            logger.warning(
                f"Host '{endpoint.host}' is declared by both '{first.resource}' and "
                f"'{endpoint.resource}', using '{first.resource}'"
            )
        else:
            logger.debug(f"Skipping duplicate '{endpoint}'")
    return list(seen.values())


class Selector:
    def __init__(
        self,
        provider: DNSProvider,
        current_owner_id: str,
        previous_owner_ids: Sequence[str] = (),
    ):
        if not current_owner_id:
            raise ValueError("current owner id must not be empty")
        self.provider = provider
        self.current_owner_id = current_owner_id
        self.previous_owner_ids = frozenset(previous_owner_ids)

    def is_already_owned(self, owner: str) -> bool:
        return owner == self.current_owner_id

    def is_allowed_owner(self, owner: str) -> bool:
        return owner in self.previous_owner_ids

    def desired_record(self, record: RegistryRecord, endpoint: Endpoint) -> Optional[RegistryRecord]:
        """Return the updated record, or None when no write is needed or allowed."""
        updated = record
        if not self.is_already_owned(record.owner):
            if not self.is_allowed_owner(record.owner):
                logger.warning(
                    f"Owner not updated. Unsupported previous owner '{record.owner}' for '{record}'"
                )
                return None
            logger.info(f"Updating owner info for '{record}' to '{self.current_owner_id}'")
            updated = updated.with_owner(self.current_owner_id)
        else:
            logger.debug(f"Owner info up to date for '{record}'")

        if record.resource != endpoint.resource:
            logger.info(f"Updating resource info for '{record}' to '{endpoint.resource}'")
            updated = updated.with_resource(endpoint.resource)

        if updated == record:
            return None
        return updated

    def reconcile(self, endpoints: Iterable[Endpoint], zones: Sequence[Zone]) -> int:
        """Reconcile registry records against endpoints and return the update count.

        Raises ReconcileError on the first provider failure; updates made before
        the failure are kept.
        """
        updated = 0
        for endpoint in unique_endpoints(endpoints):
            logger.debug(f"Processing '{endpoint}'")
            zone = find_endpoint_zone(endpoint, zones)
            if zone is None:
                logger.warning(f"Can't find DNS zone information for '{endpoint}'")
                continue

            host = zone.find_host(endpoint.host)
            if host is None:
                logger.warning(f"Missing host record for '{endpoint}'")
                continue
            logger.debug(f"Host record found for '{endpoint}': {host}")

            if not host.is_managed():
                logger.warning(f"Missing registry records for '{endpoint}'")
                continue

            updated += self._reconcile_host(endpoint, zone, host, updated)
        return updated

    def _reconcile_host(self, endpoint: Endpoint, zone: Zone, host: Host, committed: int) -> int:
        updated = 0
        for record in host.registry_records:
            new_record = self.desired_record(record, endpoint)
            if new_record is None:
                continue
            try:
                updated += self.provider.update_registry_record(zone, new_record)
            except ProviderError as e:
                raise ReconcileError(
                    f"Failed to update registry record '{record.name}': {e}",
                    updated=committed + updated,
                ) from e
        return updated
