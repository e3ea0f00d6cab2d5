"""Kubernetes cluster access.

This module provides the Cluster class, which loads credentials and wraps
the API calls made against Bundle resources.
"""

from typing import Any

from icecream import ic
from kubernetes import client, config
from kubernetes.client.exceptions import ApiException
from kubernetes.config.config_exception import ConfigException
from urllib3.exceptions import MaxRetryError

from trust_sync import console
from trust_sync.bundle.parsing import parse_bundle
from trust_sync.bundle.status import serialize_status
from trust_sync.exceptions import BundleParsingError, ClusterConnectionError
from trust_sync.models import API_GROUP, API_VERSION, BUNDLE_PLURAL, Bundle, BundleStatus

IN_CLUSTER_CONTEXT = "in-cluster"


class Cluster:
    """Manages Kubernetes API access for Bundle reconciliation.

    Attributes:
        context: The active Kubernetes context name.
        core_v1: API client for ConfigMaps, Secrets, Namespaces and Events.
        custom_objects: API client for Bundle resources.
        request_timeout: Timeout in seconds applied to every API call.

    """

    def __init__(
        self,
        *,
        context: str | None = None,
        in_cluster: bool = False,
        request_timeout: float | None = None,
    ) -> None:
        """Initialize Cluster and load credentials.

        Args:
            context: Kubeconfig context to use; the current one if None.
            in_cluster: Use the pod service account instead of a kubeconfig.
            request_timeout: Timeout in seconds for API calls.

        Raises:
            ClusterConnectionError: If credentials cannot be loaded.

        """
        self.context: str = self._load_config(context=context, in_cluster=in_cluster)
        self.request_timeout = request_timeout
        self.core_v1 = client.CoreV1Api()
        self.custom_objects = client.CustomObjectsApi()

    @staticmethod
    def _load_config(*, context: str | None, in_cluster: bool) -> str:
        """Load cluster credentials.

        Returns:
            The name of the context in use.

        Raises:
            ClusterConnectionError: If the kubeconfig is invalid or missing,
                or the in-cluster environment is not available.

        """
        if in_cluster:
            try:
                config.load_incluster_config()
            except ConfigException as e:
                raise ClusterConnectionError(f"Unable to load in-cluster configuration: {e}") from e
            console.action(f"Working with {console.highlight(IN_CLUSTER_CONTEXT)} cluster")
            return IN_CLUSTER_CONTEXT

        try:
            contexts, current_context = config.list_kube_config_contexts()
            if context is None:
                context = str(current_context["name"])
            elif context not in [c["name"] for c in contexts]:
                raise ClusterConnectionError(f"Context {context!r} not found in kubeconfig")
            config.load_kube_config(context=context)
        except ConfigException as e:
            raise ClusterConnectionError(f"Invalid or missing kubeconfig: {e}") from e

        console.action(f"Working with {console.highlight(context)} cluster")
        return context

    def list_bundles(self) -> list[Bundle]:
        """List all Bundles in the cluster, ordered by name.

        Raises:
            ClusterConnectionError: If the cluster is unreachable.

        """
        try:
            response: dict[str, Any] = self.custom_objects.list_cluster_custom_object(
                API_GROUP, API_VERSION, BUNDLE_PLURAL, _request_timeout=self.request_timeout
            )
        except MaxRetryError as e:
            raise ClusterConnectionError(f"Failed to connect to the Kubernetes cluster: {e.reason}") from e

        bundles: list[Bundle] = []
        for item in response.get("items", []):
            try:
                bundles.append(parse_bundle(item))
            except BundleParsingError as e:
                name = (item.get("metadata") or {}).get("name", "<unknown>")
                console.warning(f"Skipping invalid Bundle {name}: {e}")
        ic([bundle.name for bundle in bundles])
        return sorted(bundles, key=lambda bundle: bundle.name)

    def get_bundle(self, name: str) -> Bundle | None:
        """Fetch a Bundle by name.

        Returns:
            The Bundle, or None if it does not exist.

        Raises:
            ClusterConnectionError: If the cluster is unreachable.

        """
        try:
            obj = self.custom_objects.get_cluster_custom_object(
                API_GROUP, API_VERSION, BUNDLE_PLURAL, name, _request_timeout=self.request_timeout
            )
        except ApiException as e:
            if e.status == 404:
                return None
            raise
        except MaxRetryError as e:
            raise ClusterConnectionError(f"Failed to connect to the Kubernetes cluster: {e.reason}") from e
        return parse_bundle(obj)

    def patch_bundle_status(self, name: str, status: BundleStatus) -> None:
        """Merge-patch the status subresource of a Bundle.

        Raises:
            ClusterConnectionError: If the cluster is unreachable.

        """
        body = {"status": serialize_status(status)}
        ic(name, body)
        try:
            self.custom_objects.patch_cluster_custom_object_status(
                API_GROUP,
                API_VERSION,
                BUNDLE_PLURAL,
                name,
                body,
                _content_type="application/merge-patch+json",
                _request_timeout=self.request_timeout,
            )
        except MaxRetryError as e:
            raise ClusterConnectionError(f"Failed to connect to the Kubernetes cluster: {e.reason}") from e

    def __repr__(self) -> str:
        """Return a detailed string representation for debugging."""
        return f"Cluster(context={self.context!r}, request_timeout={self.request_timeout!r})"
