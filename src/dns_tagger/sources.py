"""Cluster sources of desired endpoints.

Supported sources:
    - ingress:               networking.k8s.io/v1 Ingress rules and hostname annotations
    - istio-virtualservice:  networking.istio.io VirtualService hosts that are
                             exposed through at least one Istio Gateway

Ingresses are read as typed models from NetworkingV1Api. Istio objects are custom
resources and are handled as plain dicts from CustomObjectsApi.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

from kubernetes import client, config
from kubernetes.client.exceptions import ApiException

from dns_tagger.registry import Endpoint

logger = logging.getLogger(__name__)

CONTROLLER_ANNOTATION_KEY = "external-dns.alpha.kubernetes.io/controller"
CONTROLLER_ANNOTATION_VALUE = "dns-controller"
HOSTNAME_ANNOTATION_KEY = "external-dns.alpha.kubernetes.io/hostname"

# Built-in gateway for all sidecars in the mesh; never an external exposure.
ISTIO_MESH_GATEWAY = "mesh"

ISTIO_GROUP = "networking.istio.io"
ISTIO_VERSION = "v1alpha3"


class SourceKind(Enum):
    INGRESS = "ingress"
    ISTIO_VIRTUALSERVICE = "istio-virtualservice"


class InvalidGatewayReference(ValueError):
    """A VirtualService gateway reference is not "name" or "namespace/name"."""


# =============================================================================
# Shared Helpers
# =============================================================================


def hostnames_from_annotations(annotations: Optional[Mapping[str, str]]) -> List[str]:
    """Split the hostname annotation into individual hostnames."""
    value = (annotations or {}).get(HOSTNAME_ANNOTATION_KEY)
    if value is None:
        return []
    return [h for h in value.replace(" ", "").split(",") if h]


def is_delegated(annotations: Optional[Mapping[str, str]]) -> bool:
    """Check whether the controller annotation hands the resource to another controller."""
    controller = (annotations or {}).get(CONTROLLER_ANNOTATION_KEY)
    return controller is not None and controller != CONTROLLER_ANNOTATION_VALUE


def parse_label_filters(values: Sequence[str]) -> List[Tuple[str, str]]:
    """Parse "key=value" / "key:value" label expressions."""
    filters: List[Tuple[str, str]] = []
    for raw_item in values:
        item = raw_item.strip()
        if not item:
            continue
        for sep in ("=", ":"):
            if sep in item:
                key, value = item.split(sep, 1)
                filters.append((key.strip(), value.strip()))
                break
        else:
            raise ValueError(f"Invalid label filter '{item}' (expected key=value or key:value)")
    return filters


def matches_label_filters(
    labels: Optional[Mapping[str, str]], filters: Sequence[Tuple[str, str]]
) -> bool:
    """OR semantics across filters; no filters matches everything."""
    if not filters:
        return True
    labels = labels or {}
    return any(labels.get(key) == value for key, value in filters)


def parse_gateway(gateway: str) -> Tuple[str, str]:
    """Split a gateway reference into (namespace, name); namespace may be ""."""
    parts = gateway.split("/")
    if len(parts) == 2:
        return parts[0], parts[1]
    if len(parts) == 1:
        return "", parts[0]
    raise InvalidGatewayReference(
        f"invalid gateway name (name or namespace/name) found '{gateway}'"
    )


def _meta(obj: Dict[str, Any]) -> Dict[str, Any]:
    return obj.get("metadata") or {}


def _spec(obj: Dict[str, Any]) -> Dict[str, Any]:
    return obj.get("spec") or {}


# =============================================================================
# Ingress Endpoint Extraction
# =============================================================================


def targets_from_ingress_status(ingress: client.V1Ingress) -> Tuple[str, ...]:
    targets: List[str] = []
    status = ingress.status
    load_balancer = status.load_balancer if status else None
    for lb in (load_balancer.ingress if load_balancer else None) or []:
        if lb.ip:
            targets.append(lb.ip)
        if lb.hostname:
            targets.append(lb.hostname)
    return tuple(targets)


def endpoints_from_ingress(ingress: client.V1Ingress) -> List[Endpoint]:
    """Extract endpoints from rule hosts and the hostname annotation of an Ingress."""
    metadata = ingress.metadata
    resource = f"ingress/{metadata.namespace}/{metadata.name}"
    targets = targets_from_ingress_status(ingress)

    hosts: List[str] = []
    rules = ingress.spec.rules if ingress.spec else None
    for rule in rules or []:
        if not rule.host:
            continue
        hosts.append(rule.host)
    hosts.extend(hostnames_from_annotations(metadata.annotations))

    return [Endpoint(host=host, resource=resource, targets=targets) for host in hosts]


# =============================================================================
# Gateway Binding Resolution
# =============================================================================


class GatewayLookup(ABC):
    """Read access to Istio Gateway objects."""

    @abstractmethod
    def get_gateway(self, namespace: str, name: str) -> Optional[Dict[str, Any]]:
        """Return the Gateway, None when it does not exist.

        Any other lookup failure is raised.
        """
        pass


class KubernetesGatewayLookup(GatewayLookup):
    def __init__(self, custom_api: client.CustomObjectsApi, request_timeout: Optional[float] = None):
        self._api = custom_api
        self._timeout = request_timeout

    def get_gateway(self, namespace: str, name: str) -> Optional[Dict[str, Any]]:
        try:
            return self._api.get_namespaced_custom_object(
                group=ISTIO_GROUP,
                version=ISTIO_VERSION,
                namespace=namespace,
                plural="gateways",
                name=name,
                _request_timeout=self._timeout,
            )
        except ApiException as e:
            if e.status == 404:
                return None
            raise


def virtual_service_binds_to_gateway(
    virtual_service: Dict[str, Any], gateway: Dict[str, Any], vs_host: str
) -> bool:
    """Check whether a gateway exposes the given VirtualService host.

    The VirtualService must be exported to the gateway namespace, and one of the
    gateway server hosts ("[namespace/]host", wildcards allowed) must select both
    the VirtualService namespace and the host.
    """
    vs_namespace = _meta(virtual_service).get("namespace") or ""
    gw_namespace = _meta(gateway).get("namespace") or ""
    gw_name = _meta(gateway).get("name") or ""

    export_to = _spec(virtual_service).get("exportTo") or []
    if export_to and not any(
        ns == "*" or ns == gw_namespace or (ns == "." and gw_namespace == vs_namespace)
        for ns in export_to
    ):
        return False

    for server in _spec(gateway).get("servers") or []:
        for entry in (server or {}).get("hosts") or []:
            namespace = "*"
            parts = entry.split("/")
            if len(parts) == 2:
                namespace, host = parts
            elif len(parts) == 1:
                host = entry
            else:
                logger.debug(f"Gateway {gw_namespace}/{gw_name} has invalid host {entry}")
                continue

            if not (
                namespace == "*"
                or namespace == vs_namespace
                or (namespace == "." and vs_namespace == gw_namespace)
            ):
                continue
            if host == "*":
                return True
            if host == vs_host:
                return True
            if host.startswith("*.") and vs_host.endswith(host[1:]):
                return True
    return False


class GatewayBindingResolver:
    """Finds the gateway through which a VirtualService host is externally reachable."""

    def __init__(self, lookup: GatewayLookup):
        self._lookup = lookup

    def _get_gateway(
        self, gateway_ref: str, virtual_service: Dict[str, Any]
    ) -> Optional[Dict[str, Any]]:
        if not gateway_ref or gateway_ref == ISTIO_MESH_GATEWAY:
            return None

        vs_namespace = _meta(virtual_service).get("namespace") or ""
        vs_name = _meta(virtual_service).get("name") or ""
        namespace, name = parse_gateway(gateway_ref)
        if not namespace:
            namespace = vs_namespace

        try:
            gateway = self._lookup.get_gateway(namespace, name)
        except ApiException as e:
            logger.error(
                f"Failed retrieving gateway {gateway_ref} referenced by "
                f"VirtualService {vs_namespace}/{vs_name}: {e}"
            )
            raise

        if gateway is None:
            logger.warning(
                f"VirtualService ({vs_namespace}/{vs_name}) references non-existent gateway: {gateway_ref}"
            )
        return gateway

    def target_gateway(self, virtual_service: Dict[str, Any], vs_host: str) -> str:
        """Return the first gateway (declaration order) exposing vs_host, or ""."""
        for gateway_ref in _spec(virtual_service).get("gateways") or []:
            gateway = self._get_gateway(gateway_ref, virtual_service)
            if gateway is None:
                continue
            if virtual_service_binds_to_gateway(virtual_service, gateway, vs_host):
                return _meta(gateway).get("name") or ""
        return ""


def endpoints_from_virtual_service(
    virtual_service: Dict[str, Any], resolver: GatewayBindingResolver
) -> List[Endpoint]:
    """Extract endpoints for the externally bound hosts of a VirtualService."""
    metadata = _meta(virtual_service)
    resource = f"virtualservice/{metadata.get('namespace')}/{metadata.get('name')}"

    hosts: List[str] = []
    for host in _spec(virtual_service).get("hosts") or []:
        if not host or host == "*":
            continue
        # "my-namespace/foo.bar.com" -> "foo.bar.com"
        parts = host.split("/")
        if len(parts) == 2:
            host = parts[1]
        hosts.append(host)
    hosts.extend(hostnames_from_annotations(metadata.get("annotations")))

    endpoints: List[Endpoint] = []
    for host in hosts:
        gateway = resolver.target_gateway(virtual_service, host)
        if not gateway:
            logger.debug(f"Host '{host}' of {resource} is not exposed by any gateway")
            continue
        endpoints.append(Endpoint(host=host, resource=resource))
    return endpoints


# =============================================================================
# Source Interface and Implementations
# =============================================================================


class Source(ABC):
    """Abstract base class for endpoint sources."""

    @property
    @abstractmethod
    def name(self) -> str:
        """Return the source name for logging."""
        pass

    @abstractmethod
    def endpoints(self) -> List[Endpoint]:
        """Return desired endpoints. Lookup failures are raised."""
        pass


class IngressSource(Source):
    def __init__(
        self,
        networking_api: client.NetworkingV1Api,
        namespace: str = "",
        label_filters: Sequence[Tuple[str, str]] = (),
        request_timeout: Optional[float] = None,
    ):
        self._api = networking_api
        self._namespace = namespace
        self._label_filters = list(label_filters)
        self._timeout = request_timeout

    @property
    def name(self) -> str:
        return SourceKind.INGRESS.value

    def _list_ingresses(self) -> List[client.V1Ingress]:
        if self._namespace:
            result = self._api.list_namespaced_ingress(
                self._namespace, _request_timeout=self._timeout
            )
        else:
            result = self._api.list_ingress_for_all_namespaces(_request_timeout=self._timeout)
        return list(result.items or [])

    def endpoints(self) -> List[Endpoint]:
        endpoints: List[Endpoint] = []
        for ingress in self._list_ingresses():
            metadata = ingress.metadata
            if not matches_label_filters(metadata.labels, self._label_filters):
                logger.debug(f"Skipping ingress {metadata.namespace}/{metadata.name}: labels do not match")
                continue
            if is_delegated(metadata.annotations):
                logger.debug(
                    f"Skipping ingress {metadata.namespace}/{metadata.name} because controller value "
                    f"does not match, found: {metadata.annotations.get(CONTROLLER_ANNOTATION_KEY)}, "
                    f"required: {CONTROLLER_ANNOTATION_VALUE}"
                )
                continue

            ingress_endpoints = endpoints_from_ingress(ingress)
            if not ingress_endpoints:
                logger.debug(f"No endpoints could be generated from ingress {metadata.namespace}/{metadata.name}")
                continue
            logger.debug(
                f"Endpoints generated from ingress {metadata.namespace}/{metadata.name}: "
                f"{', '.join(str(e) for e in ingress_endpoints)}"
            )
            endpoints.extend(ingress_endpoints)
        return endpoints


class VirtualServiceSource(Source):
    def __init__(
        self,
        custom_api: client.CustomObjectsApi,
        resolver: GatewayBindingResolver,
        namespace: str = "",
        label_filters: Sequence[Tuple[str, str]] = (),
        request_timeout: Optional[float] = None,
    ):
        self._api = custom_api
        self._resolver = resolver
        self._namespace = namespace
        self._label_filters = list(label_filters)
        self._timeout = request_timeout

    @property
    def name(self) -> str:
        return SourceKind.ISTIO_VIRTUALSERVICE.value

    def _list_virtual_services(self) -> List[Dict[str, Any]]:
        if self._namespace:
            result = self._api.list_namespaced_custom_object(
                group=ISTIO_GROUP,
                version=ISTIO_VERSION,
                namespace=self._namespace,
                plural="virtualservices",
                _request_timeout=self._timeout,
            )
        else:
            result = self._api.list_cluster_custom_object(
                group=ISTIO_GROUP,
                version=ISTIO_VERSION,
                plural="virtualservices",
                _request_timeout=self._timeout,
            )
        return [item for item in result.get("items", []) if isinstance(item, dict)]

    def endpoints(self) -> List[Endpoint]:
        endpoints: List[Endpoint] = []
        for virtual_service in self._list_virtual_services():
            metadata = _meta(virtual_service)
            ref = f"{metadata.get('namespace')}/{metadata.get('name')}"
            if not matches_label_filters(metadata.get("labels"), self._label_filters):
                logger.debug(f"Skipping VirtualService {ref}: labels do not match")
                continue
            annotations = metadata.get("annotations") or {}
            if is_delegated(annotations):
                logger.debug(
                    f"Skipping VirtualService {ref} because controller value does not match, "
                    f"found: {annotations.get(CONTROLLER_ANNOTATION_KEY)}, "
                    f"required: {CONTROLLER_ANNOTATION_VALUE}"
                )
                continue

            vs_endpoints = endpoints_from_virtual_service(virtual_service, self._resolver)
            if not vs_endpoints:
                logger.debug(f"No endpoints could be generated from VirtualService {ref}")
                continue
            logger.debug(
                f"Endpoints generated from VirtualService {ref}: "
                f"{', '.join(str(e) for e in vs_endpoints)}"
            )
            endpoints.extend(vs_endpoints)
        return endpoints


# =============================================================================
# Source Registry
# =============================================================================


def create_api_client(
    kubeconfig: str = "", api_server_url: str = ""
) -> client.ApiClient:
    """Build a Kubernetes API client.

    Uses the in-cluster service account unless a kubeconfig path is given, then
    falls back to the default kubeconfig location.
    """
    configuration = client.Configuration()
    if kubeconfig:
        logger.info(f"Using kubeconfig {kubeconfig}")
        config.load_kube_config(config_file=kubeconfig, client_configuration=configuration)
    else:
        try:
            config.load_incluster_config(client_configuration=configuration)
            logger.info("Using in-cluster config based on serviceaccount token")
        except config.ConfigException:
            logger.info("Not running in a cluster, using default kubeconfig")
            config.load_kube_config(client_configuration=configuration)

    if api_server_url:
        configuration.host = api_server_url
    logger.info(f"Created Kubernetes client for {configuration.host}")
    return client.ApiClient(configuration)


def create_sources(
    kinds: Sequence[str],
    api_client: client.ApiClient,
    *,
    namespace: str = "",
    label_filters: Sequence[Tuple[str, str]] = (),
    request_timeout: Optional[float] = None,
) -> List[Source]:
    """Factory function to create one source per configured kind."""
    sources: List[Source] = []
    for kind in kinds:
        try:
            source_kind = SourceKind(kind)
        except ValueError:
            raise ValueError(
                f"Unsupported source: '{kind}'. Supported sources: "
                f"{', '.join(k.value for k in SourceKind)}"
            ) from None

        if source_kind == SourceKind.INGRESS:
            sources.append(
                IngressSource(
                    client.NetworkingV1Api(api_client),
                    namespace=namespace,
                    label_filters=label_filters,
                    request_timeout=request_timeout,
                )
            )
        elif source_kind == SourceKind.ISTIO_VIRTUALSERVICE:
            custom_api = client.CustomObjectsApi(api_client)
            resolver = GatewayBindingResolver(KubernetesGatewayLookup(custom_api, request_timeout))
            sources.append(
                VirtualServiceSource(
                    custom_api,
                    resolver,
                    namespace=namespace,
                    label_filters=label_filters,
                    request_timeout=request_timeout,
                )
            )
    return sources
