"""Unit tests for DNSimpleProvider."""

from typing import Any, Dict, List
from unittest.mock import MagicMock, patch

import pytest
import requests

from dns_tagger.providers import (
    DNSimpleProvider,
    ProviderError,
    create_dns_provider,
)
from dns_tagger.registry import RegistryRecord, Zone

BASE_URL = "https://api.dnsimple.test/v2"
INFO = "heritage=external-dns,external-dns/owner=cluster-1,external-dns/resource=ingress/test/app"


def make_response(payload: Any) -> MagicMock:
    response = MagicMock()
    response.raise_for_status = MagicMock()
    response.json.return_value = payload
    return response


def records_page(records: List[Dict[str, Any]], page: int = 1, total_pages: int = 1) -> MagicMock:
    return make_response(
        {
            "data": records,
            "pagination": {"current_page": page, "per_page": 30, "total_pages": total_pages},
        }
    )


def create_provider(**kwargs: Any) -> DNSimpleProvider:
    kwargs.setdefault("account_id", "1010")
    kwargs.setdefault("base_url", BASE_URL)
    return DNSimpleProvider("secret-token", ["dummy.host"], **kwargs)


class TestDNSimpleAccount:
    """Tests for account detection."""

    def test_whoami_uses_configured_account(self) -> None:
        provider = create_provider()

        with patch.object(provider._session, "get") as mock_get:
            assert provider.whoami() == "DNSimple for Account 1010"
            mock_get.assert_not_called()

    def test_account_detected_from_whoami_endpoint(self) -> None:
        provider = create_provider(account_id="")

        with patch.object(provider._session, "get") as mock_get:
            mock_get.return_value = make_response({"data": {"user": None, "account": {"id": 42}}})

            assert provider.account_id == "42"
            assert provider.account_id == "42"
            mock_get.assert_called_once_with(f"{BASE_URL}/whoami", params=None, timeout=10.0)

    def test_account_detection_fails_for_user_token(self) -> None:
        provider = create_provider(account_id="")

        with patch.object(provider._session, "get") as mock_get:
            mock_get.return_value = make_response({"data": {"user": {"id": 7}, "account": None}})

            with pytest.raises(ProviderError):
                provider.whoami()

    def test_session_sends_bearer_token(self) -> None:
        provider = create_provider()
        assert provider._session.headers["Authorization"] == "Bearer secret-token"


class TestDNSimpleReadZones:
    """Tests for reading zones and registry records."""

    def test_read_zones_builds_hosts_and_registry_records(self) -> None:
        provider = create_provider()

        with patch.object(provider._session, "get") as mock_get:
            mock_get.return_value = records_page(
                [
                    {"id": 1, "name": "app", "type": "A", "content": "10.0.0.1"},
                    {"id": 2, "name": "edns-app", "type": "TXT", "content": INFO},
                    {"id": 3, "name": "", "type": "TXT", "content": "v=spf1 -all"},
                    {"id": 4, "name": "", "type": "MX", "content": "mail.dummy.host"},
                    {"id": 5, "name": "www", "type": "CNAME", "content": "app.dummy.host"},
                ]
            )

            zones = provider.read_zones()

        assert len(zones) == 1
        zone = zones[0]
        assert zone.name == "dummy.host"
        assert [h.name for h in zone.hosts] == ["app.dummy.host", "www.dummy.host"]

        app = zone.find_host("app.dummy.host")
        assert app.record_type == "A"
        assert app.value == "10.0.0.1"
        assert len(app.registry_records) == 1
        record = app.registry_records[0]
        assert record.name == "edns-app.dummy.host"
        assert record.owner == "cluster-1"
        assert record.resource == "ingress/test/app"
        assert not zone.find_host("www.dummy.host").is_managed()

        mock_get.assert_called_once_with(
            f"{BASE_URL}/1010/zones/dummy.host/records", params={"page": 1}, timeout=10.0
        )

    def test_read_zones_follows_pagination(self) -> None:
        provider = create_provider()

        with patch.object(provider._session, "get") as mock_get:
            mock_get.side_effect = [
                records_page([{"id": 1, "name": "app", "type": "A", "content": "10.0.0.1"}], 1, 2),
                records_page([{"id": 2, "name": "edns-app", "type": "TXT", "content": INFO}], 2, 2),
            ]

            zones = provider.read_zones()

        assert mock_get.call_count == 2
        assert mock_get.call_args_list[1].kwargs["params"] == {"page": 2}
        assert zones[0].find_host("app.dummy.host").is_managed()

    def test_read_zones_apex_host(self) -> None:
        provider = create_provider()

        with patch.object(provider._session, "get") as mock_get:
            mock_get.return_value = records_page(
                [{"id": 1, "name": "", "type": "A", "content": "10.0.0.1"}]
            )

            zones = provider.read_zones()

        assert zones[0].find_host("dummy.host") is not None

    def test_read_zones_raises_provider_error(self) -> None:
        provider = create_provider()

        with patch.object(provider._session, "get") as mock_get:
            mock_get.side_effect = requests.exceptions.ConnectionError("Connection refused")

            with pytest.raises(ProviderError):
                provider.read_zones()

    def test_read_zones_raises_on_http_error(self) -> None:
        provider = create_provider()

        with patch.object(provider._session, "get") as mock_get:
            response = MagicMock()
            response.raise_for_status.side_effect = requests.exceptions.HTTPError("401 Unauthorized")
            mock_get.return_value = response

            with pytest.raises(ProviderError):
                provider.read_zones()


class TestDNSimpleUpdateRegistryRecord:
    """Tests for writing registry records."""

    def test_dry_run_does_not_call_api(self) -> None:
        provider = create_provider(dry_run=True)
        zone = Zone(name="dummy.host")
        record = RegistryRecord(name="edns-app.dummy.host", owner="cluster-2", resource="ingress/test/app")

        with patch.object(provider._session, "get") as mock_get, patch.object(
            provider._session, "patch"
        ) as mock_patch:
            assert provider.update_registry_record(zone, record) == 1
            mock_get.assert_not_called()
            mock_patch.assert_not_called()

    def test_update_patches_record_content(self) -> None:
        provider = create_provider(dry_run=False)
        zone = Zone(name="dummy.host")
        record = RegistryRecord(name="edns-app.dummy.host", owner="cluster-2", resource="ingress/test/app")

        with patch.object(provider._session, "get") as mock_get, patch.object(
            provider._session, "patch"
        ) as mock_patch:
            mock_get.return_value = records_page(
                [
                    {"id": 11, "name": "edns-app", "type": "A", "content": "10.0.0.1"},
                    {"id": 12, "name": "edns-app", "type": "TXT", "content": INFO},
                ]
            )
            mock_patch.return_value = make_response({"data": {}})

            assert provider.update_registry_record(zone, record) == 1

            assert mock_get.call_args.kwargs["params"] == {"page": 1, "name": "edns-app"}
            mock_patch.assert_called_once_with(
                f"{BASE_URL}/1010/zones/dummy.host/records/12",
                json={
                    "content": "heritage=external-dns,external-dns/owner=cluster-2,"
                    "external-dns/resource=ingress/test/app"
                },
                timeout=10.0,
            )

    def test_update_skips_non_registry_txt_with_same_name(self) -> None:
        """An SPF record sharing the apex name must never be overwritten."""
        provider = create_provider(dry_run=False)
        zone = Zone(name="dummy.host")
        record = RegistryRecord(name="dummy.host", owner="cluster-2", resource="ingress/test/app")

        with patch.object(provider._session, "get") as mock_get, patch.object(
            provider._session, "patch"
        ) as mock_patch:
            mock_get.return_value = records_page(
                [
                    {"id": 7, "name": "", "type": "TXT", "content": "v=spf1 include:_spf.dummy.host ~all"},
                    {"id": 8, "name": "", "type": "TXT", "content": f'"{INFO}"'},
                ]
            )
            mock_patch.return_value = make_response({"data": {}})

            assert provider.update_registry_record(zone, record) == 1

            assert mock_get.call_args.kwargs["params"] == {"page": 1, "name": ""}
            assert mock_patch.call_args.args[0] == f"{BASE_URL}/1010/zones/dummy.host/records/8"

    def test_update_only_non_registry_txt_raises(self) -> None:
        provider = create_provider(dry_run=False)
        zone = Zone(name="dummy.host")
        record = RegistryRecord(name="dummy.host", owner="cluster-2")

        with patch.object(provider._session, "get") as mock_get, patch.object(
            provider._session, "patch"
        ) as mock_patch:
            mock_get.return_value = records_page(
                [{"id": 7, "name": "", "type": "TXT", "content": "google-site-verification=abc"}]
            )

            with pytest.raises(ProviderError, match="No record id"):
                provider.update_registry_record(zone, record)
            mock_patch.assert_not_called()

    def test_read_zones_with_registry_suffix(self) -> None:
        provider = create_provider(txt_prefixes=(), txt_suffixes=("-registry",))

        with patch.object(provider._session, "get") as mock_get:
            mock_get.return_value = records_page(
                [
                    {"id": 1, "name": "app", "type": "A", "content": "10.0.0.1"},
                    {"id": 2, "name": "app-registry", "type": "TXT", "content": INFO},
                ]
            )

            zones = provider.read_zones()

        records = zones[0].find_host("app.dummy.host").registry_records
        assert [r.name for r in records] == ["app-registry.dummy.host"]

    def test_update_missing_record_id(self) -> None:
        provider = create_provider(dry_run=False)
        zone = Zone(name="dummy.host")
        record = RegistryRecord(name="edns-app.dummy.host", owner="cluster-2")

        with patch.object(provider._session, "get") as mock_get:
            mock_get.return_value = records_page([])

            with pytest.raises(ProviderError, match="No record id"):
                provider.update_registry_record(zone, record)

    def test_update_failure_raises_provider_error(self) -> None:
        provider = create_provider(dry_run=False)
        zone = Zone(name="dummy.host")
        record = RegistryRecord(name="edns-app.dummy.host", owner="cluster-2")

        with patch.object(provider._session, "get") as mock_get, patch.object(
            provider._session, "patch"
        ) as mock_patch:
            mock_get.return_value = records_page(
                [{"id": 12, "name": "edns-app", "type": "TXT", "content": INFO}]
            )
            mock_patch.side_effect = requests.exceptions.Timeout("timed out")

            with pytest.raises(ProviderError):
                provider.update_registry_record(zone, record)


class TestCreateDNSProvider:
    """Tests for the provider factory."""

    def test_create_dnsimple(self) -> None:
        provider = create_dns_provider(
            "dnsimple", zones=["dummy.host"], dry_run=True, dnsimple_token="token"
        )
        assert isinstance(provider, DNSimpleProvider)
        assert provider.name == "DNSimple"

    def test_missing_token(self) -> None:
        with pytest.raises(ValueError, match="DNSIMPLE_OAUTH"):
            create_dns_provider("dnsimple", zones=["dummy.host"], dry_run=True)

    def test_unsupported_provider(self) -> None:
        with pytest.raises(ValueError, match="Unsupported DNS provider"):
            create_dns_provider("route53", zones=["dummy.host"], dry_run=True, dnsimple_token="t")
