#!/usr/bin/env python3
"""dns-tagger - External DNS ownership migration

Moves ownership of external-dns registry (TXT) records between controller
instances. Several clusters can share a DNS zone: each one claims the records
for hostnames its own workloads declare, but only when the previous owner is
in an explicit allow-list.

Supported Sources:
    - ingress:               Kubernetes Ingress resources
    - istio-virtualservice:  Istio VirtualServices exposed through a Gateway

Supported DNS Providers:
    - dnsimple: DNSimple v2 API

Environment variables:

    Ownership:
        CURRENT_OWNER_ID       Owner id to set when records change ownership (required)
        PREVIOUS_OWNER_IDS     Comma-separated owner ids allowed to hand over records
        TXT_PREFIXES           Comma-separated registry record name prefixes (default: edns-)
        TXT_SUFFIXES           Comma-separated registry record name suffixes (default: none)

    Sources:
        SOURCES                Comma-separated source kinds (required):
                               "ingress", "istio-virtualservice"
        NAMESPACE              Limit sources to a namespace (default: all namespaces)
        LABEL_FILTERS          Comma-separated "key=value" or "key:value" expressions.
                               A resource is used if it matches any of them.
        KUBECONFIG             Kubeconfig path (default: in-cluster, then ~/.kube/config)
        KUBE_API_SERVER        Kubernetes API server URL override
        REQUEST_TIMEOUT_SECONDS  Kubernetes request timeout, 0 disables (default: 30)

    DNS Provider:
        DNS_PROVIDER           DNS provider type: "dnsimple" (default: dnsimple)
        DNS_ZONES              Comma-separated zones to process (required)
        DNSIMPLE_OAUTH         DNSimple API token
        DNSIMPLE_ACCOUNT_ID    DNSimple account id (default: detected via /whoami)
        DNSIMPLE_BASE_URL      API base URL (default: https://api.dnsimple.com/v2)

    Domain exclusions:
        EXCLUDE_DOMAINS        Comma-separated patterns for hostnames to skip.
                               Supports three formats:
                                 - Exact domain: "auth.example.com"
                                 - Wildcard (fnmatch-style): "*.internal.*", "dev-*"
                                 - Regex (prefix with ~): "~^staging-\\d+\\.example\\.com$"

    Runtime:
        DRY_RUN                Report changes without writing them (default: true)
        SYNC_MODE              "once" or "watch" (polling loop) (default: once)
        POLL_INTERVAL_SECONDS  Poll interval in watch mode (default: 60)
        LOG_LEVEL              DEBUG, INFO, WARNING, ERROR (default: INFO)
        LOG_FORMAT             "text" or "json" (default: text)

    Config file:
        DNS_TAGGER_CONFIG_PATH  YAML file, or directory of *.yaml files, holding any
                                of the settings above as lower-case keys, e.g.:
                                  current_owner_id: cluster-2
                                  previous_owner_ids: [cluster-1]
                                  zones: [example.com]
                                  sources: [ingress]
                                Environment variables take precedence.
"""

from __future__ import annotations

import dataclasses
import fnmatch
import json
import logging
import os
import re
import signal
import sys
import threading
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

import yaml

from dns_tagger.providers import DNSProvider, ProviderKind, create_dns_provider
from dns_tagger.registry import DEFAULT_TXT_PREFIXES, Endpoint
from dns_tagger.selector import ReconcileError, Selector
from dns_tagger.sources import (
    Source,
    SourceKind,
    create_api_client,
    create_sources,
    parse_label_filters,
)

logger = logging.getLogger(__name__)

SYNC_MODES = ("once", "watch")
LOG_FORMATS = ("text", "json")
MIN_POLL_INTERVAL_SECONDS = 5

# =============================================================================
# Config File Utilities
# =============================================================================


def find_config_files(config_path: str) -> List[str]:
    """Find all .yaml config files in directory or return single file.

    Args:
        config_path: Path to config file or directory

    Returns:
        List of config file paths (excluding .template files)
    """
    path = Path(config_path)

    if path.is_file():
        return [str(path)]

    if path.is_dir():
        yaml_files = sorted(path.glob("*.yaml"))
        return [str(f) for f in yaml_files if not f.name.endswith(".template")]

    return []


def load_config_files(config_path: str) -> Dict[str, Any]:
    """Merge settings from all YAML config files; later files override earlier ones."""
    settings: Dict[str, Any] = {}
    if not config_path:
        return settings

    for config_file in find_config_files(config_path):
        with open(config_file, "r") as f:
            data = yaml.safe_load(f)
        if data is None:
            continue
        if not isinstance(data, dict):
            raise ValueError(f"Config file {config_file} must contain a mapping")
        settings.update({str(k).lower(): v for k, v in data.items()})
        logger.debug(f"Loaded settings from {config_file}")
    return settings


# =============================================================================
# Utility Functions
# =============================================================================


def _parse_bool(value: Any, *, default: bool = True) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in {"1", "true", "yes", "y", "on"}


def _parse_list(value: Any) -> Tuple[str, ...]:
    """Parse a comma-separated string or a YAML list into a tuple of strings."""
    if value is None:
        return ()
    items = value if isinstance(value, (list, tuple)) else str(value).split(",")
    return tuple(str(item).strip() for item in items if str(item).strip())


def _parse_exclude_patterns(value: Any) -> List[re.Pattern]:
    """Parse domain exclusion patterns."""
    patterns: List[re.Pattern] = []
    for item in _parse_list(value):
        try:
            if item.startswith("~"):
                patterns.append(re.compile(item[1:], re.IGNORECASE))
            elif "*" in item or "?" in item:
                patterns.append(re.compile(fnmatch.translate(item), re.IGNORECASE))
            else:
                patterns.append(re.compile(f"^{re.escape(item)}$", re.IGNORECASE))
            logger.debug(f"Added exclusion pattern: {item}")
        except re.error as e:
            logger.warning(f"Invalid exclusion pattern '{item}': {e}")

    return patterns


def _is_domain_excluded(domain: str, patterns: Sequence[re.Pattern]) -> bool:
    """Check if a domain matches any exclusion pattern."""
    return any(pattern.search(domain) for pattern in patterns)


# =============================================================================
# Configuration
# =============================================================================


@dataclass(frozen=True)
class Config:
    """Process configuration, built once at startup."""

    current_owner_id: str = ""
    previous_owner_ids: Tuple[str, ...] = ()
    txt_prefixes: Tuple[str, ...] = DEFAULT_TXT_PREFIXES
    txt_suffixes: Tuple[str, ...] = ()
    sources: Tuple[str, ...] = ()
    namespace: str = ""
    label_filters: Tuple[str, ...] = ()
    kubeconfig: str = ""
    api_server_url: str = ""
    request_timeout: float = 30.0
    dns_provider: str = ProviderKind.DNSIMPLE.value
    zones: Tuple[str, ...] = ()
    dnsimple_token: str = dataclasses.field(default="", repr=False)
    dnsimple_account_id: str = ""
    dnsimple_base_url: str = "https://api.dnsimple.com/v2"
    exclude_domains: Tuple[str, ...] = ()
    dry_run: bool = True
    sync_mode: str = "once"
    poll_interval: int = 60
    log_level: str = "INFO"
    log_format: str = "text"

    def __str__(self) -> str:
        values = dataclasses.asdict(self)
        if values["dnsimple_token"]:
            values["dnsimple_token"] = "*******"
        return ", ".join(f"{k}={v}" for k, v in values.items())


def load_config(environ: Optional[Mapping[str, str]] = None) -> Config:
    """Load configuration from the optional YAML config file and the environment."""
    env = os.environ if environ is None else environ
    settings = load_config_files(env.get("DNS_TAGGER_CONFIG_PATH", ""))

    def setting(env_name: str, key: str, default: Any = None) -> Any:
        if env.get(env_name) is not None:
            return env[env_name]
        return settings.get(key, default)

    return Config(
        current_owner_id=str(setting("CURRENT_OWNER_ID", "current_owner_id", "")).strip(),
        previous_owner_ids=_parse_list(setting("PREVIOUS_OWNER_IDS", "previous_owner_ids")),
        txt_prefixes=_parse_list(setting("TXT_PREFIXES", "txt_prefixes", ",".join(DEFAULT_TXT_PREFIXES))),
        txt_suffixes=_parse_list(setting("TXT_SUFFIXES", "txt_suffixes")),
        sources=tuple(s.lower() for s in _parse_list(setting("SOURCES", "sources"))),
        namespace=str(setting("NAMESPACE", "namespace", "")).strip(),
        label_filters=_parse_list(setting("LABEL_FILTERS", "label_filters")),
        kubeconfig=str(setting("KUBECONFIG", "kubeconfig", "")).strip(),
        api_server_url=str(setting("KUBE_API_SERVER", "api_server_url", "")).strip(),
        request_timeout=float(setting("REQUEST_TIMEOUT_SECONDS", "request_timeout", 30)),
        dns_provider=str(setting("DNS_PROVIDER", "dns_provider", "dnsimple")).lower().strip(),
        zones=_parse_list(setting("DNS_ZONES", "zones")),
        dnsimple_token=str(setting("DNSIMPLE_OAUTH", "dnsimple_token", "")).strip(),
        dnsimple_account_id=str(setting("DNSIMPLE_ACCOUNT_ID", "dnsimple_account_id", "")).strip(),
        dnsimple_base_url=str(
            setting("DNSIMPLE_BASE_URL", "dnsimple_base_url", "https://api.dnsimple.com/v2")
        ).strip(),
        exclude_domains=_parse_list(setting("EXCLUDE_DOMAINS", "exclude_domains")),
        dry_run=_parse_bool(setting("DRY_RUN", "dry_run"), default=True),
        sync_mode=str(setting("SYNC_MODE", "sync_mode", "once")).lower().strip(),
        poll_interval=int(setting("POLL_INTERVAL_SECONDS", "poll_interval", 60)),
        log_level=str(setting("LOG_LEVEL", "log_level", "INFO")).upper().strip(),
        log_format=str(setting("LOG_FORMAT", "log_format", "text")).lower().strip(),
    )


def validate_config(cfg: Config) -> List[str]:
    """Validate configuration and return every problem found."""
    errors: List[str] = []

    if not cfg.current_owner_id:
        errors.append("CURRENT_OWNER_ID is required")
    if cfg.current_owner_id and cfg.current_owner_id in cfg.previous_owner_ids:
        logger.warning("CURRENT_OWNER_ID is also listed in PREVIOUS_OWNER_IDS")

    if not cfg.sources:
        errors.append("At least one source is required (set SOURCES)")
    supported_sources = {k.value for k in SourceKind}
    for source in cfg.sources:
        if source not in supported_sources:
            errors.append(
                f"Unsupported source: {source}. Supported: {', '.join(sorted(supported_sources))}"
            )
    try:
        parse_label_filters(cfg.label_filters)
    except ValueError as e:
        errors.append(str(e))

    if cfg.dns_provider == ProviderKind.DNSIMPLE.value:
        if not cfg.dnsimple_token:
            errors.append("DNSIMPLE_OAUTH is required when DNS_PROVIDER=dnsimple")
    else:
        errors.append(
            f"Unsupported DNS_PROVIDER: {cfg.dns_provider}. "
            f"Supported: {', '.join(k.value for k in ProviderKind)}"
        )
    if not cfg.zones:
        errors.append("At least one DNS zone is required (set DNS_ZONES)")

    if cfg.sync_mode not in SYNC_MODES:
        errors.append(f"Invalid SYNC_MODE: {cfg.sync_mode}. Use 'once' or 'watch'")
    if cfg.log_format not in LOG_FORMATS:
        errors.append(f"Invalid LOG_FORMAT: {cfg.log_format}. Use 'text' or 'json'")
    if cfg.request_timeout < 0:
        errors.append("REQUEST_TIMEOUT_SECONDS must not be negative")

    return errors


# =============================================================================
# Logging Setup
# =============================================================================


class JSONFormatter(logging.Formatter):
    """One JSON object per log line."""

    def format(self, record: logging.LogRecord) -> str:
        data: Dict[str, Any] = {
            "time": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname.lower(),
            "logger": record.name,
            "msg": record.getMessage(),
        }
        if record.exc_info:
            data["error"] = self.formatException(record.exc_info)
        return json.dumps(data, default=str)


def setup_logging(level: str = "INFO", log_format: str = "text") -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s [%(levelname)s] %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
        force=True,
    )
    if log_format == "json":
        for handler in logging.getLogger().handlers:
            handler.setFormatter(JSONFormatter())


# =============================================================================
# Core Tagger
# =============================================================================


class DNSTagger:
    def __init__(
        self,
        *,
        sources: Sequence[Source],
        dns_provider: DNSProvider,
        selector: Selector,
        exclude_patterns: Sequence[re.Pattern] = (),
        dry_run: bool = True,
    ):
        self.sources = list(sources)
        self.dns_provider = dns_provider
        self.selector = selector
        self.exclude_patterns = list(exclude_patterns)
        self.dry_run = dry_run

    def collect_endpoints(self) -> List[Endpoint]:
        endpoints: List[Endpoint] = []
        for source in self.sources:
            source_endpoints = source.endpoints()
            excluded_count = 0
            for endpoint in source_endpoints:
                if _is_domain_excluded(endpoint.host, self.exclude_patterns):
                    excluded_count += 1
                    logger.debug(f"Excluding domain '{endpoint.host}' (matches exclusion pattern)")
                    continue
                endpoints.append(endpoint)

            stats_msg = f" ({excluded_count} excluded)" if excluded_count else ""
            logger.info(
                f"Source '{source.name}': {len(source_endpoints) - excluded_count} endpoints{stats_msg}"
            )
        return endpoints

    def sync_once(self) -> int:
        """Run a single reconciliation pass and return the number of updated records."""
        endpoints = self.collect_endpoints()
        zones = self.dns_provider.read_zones()
        updated = self.selector.reconcile(endpoints, zones)

        suffix = " (dry run)" if self.dry_run else ""
        logger.info(f"{updated} registry record(s) updated{suffix}")
        return updated


# =============================================================================
# Main
# =============================================================================


def build_tagger(cfg: Config) -> DNSTagger:
    dns_provider = create_dns_provider(
        cfg.dns_provider,
        zones=cfg.zones,
        dry_run=cfg.dry_run,
        txt_prefixes=cfg.txt_prefixes,
        txt_suffixes=cfg.txt_suffixes,
        dnsimple_token=cfg.dnsimple_token,
        dnsimple_account_id=cfg.dnsimple_account_id,
        dnsimple_base_url=cfg.dnsimple_base_url,
    )
    api_client = create_api_client(cfg.kubeconfig, cfg.api_server_url)
    sources = create_sources(
        cfg.sources,
        api_client,
        namespace=cfg.namespace,
        label_filters=parse_label_filters(cfg.label_filters),
        request_timeout=cfg.request_timeout or None,
    )
    selector = Selector(dns_provider, cfg.current_owner_id, cfg.previous_owner_ids)
    return DNSTagger(
        sources=sources,
        dns_provider=dns_provider,
        selector=selector,
        exclude_patterns=_parse_exclude_patterns(cfg.exclude_domains),
        dry_run=cfg.dry_run,
    )


def run(tagger: DNSTagger, sync_mode: str, poll_interval: int, stop: threading.Event) -> None:
    """Run passes until done; a stop request is honoured before each new pass."""
    while not stop.is_set():
        tagger.sync_once()
        if sync_mode == "once":
            return
        stop.wait(max(MIN_POLL_INTERVAL_SECONDS, poll_interval))


def main():
    """Main entry point."""
    try:
        cfg = load_config()
    except (ValueError, OSError, yaml.YAMLError) as e:
        setup_logging()
        logger.error(f"Failed to load configuration: {e}")
        sys.exit(1)

    setup_logging(cfg.log_level, cfg.log_format)
    logger.info(f"dns-tagger: {', '.join(cfg.sources)} -> {cfg.dns_provider}")
    logger.info(f"config: {cfg}")

    errors = validate_config(cfg)
    if errors:
        for error in errors:
            logger.error(error)
        logger.error("Configuration validation failed")
        sys.exit(1)

    stop = threading.Event()

    def handle_sigterm(signum, frame):
        logger.info("Received SIGTERM. Terminating...")
        stop.set()

    signal.signal(signal.SIGTERM, handle_sigterm)

    try:
        tagger = build_tagger(cfg)
        logger.info(f"DNS Provider: {tagger.dns_provider.whoami()}")
        logger.info(f"Current owner: {cfg.current_owner_id}")
        logger.info(f"Allowed previous owners: {', '.join(cfg.previous_owner_ids) or '(none)'}")
        logger.info(f"Sync mode: {cfg.sync_mode}{' (dry run)' if cfg.dry_run else ''}")
        run(tagger, cfg.sync_mode, cfg.poll_interval, stop)
    except KeyboardInterrupt:
        logger.info("Shutting down gracefully...")
    except ReconcileError as e:
        logger.error(
            f"Fatal error: {e} ({e.updated} registry record(s) updated before the failure)",
            exc_info=True,
        )
        sys.exit(1)
    except Exception as e:
        logger.error(f"Fatal error: {e}", exc_info=True)
        sys.exit(1)


if __name__ == "__main__":
    main()
