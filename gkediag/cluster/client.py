"""
Cluster Data Client

Read-only access to the Kubernetes API. Every call returns JSON-shaped
dicts mirroring the API objects, or raises a DiagnosticError; a failed
query never comes back as an empty list.
"""

import copy
import logging
from typing import Any, Callable, Dict, List, Optional

import urllib3
from kubernetes import client, config
from kubernetes.client.rest import ApiException
from urllib3.exceptions import HTTPError as Urllib3HTTPError
from urllib3.exceptions import InsecureRequestWarning, MaxRetryError, SSLError

from ..config import REQUEST_TIMEOUT
from ..errors import (
    AuthError,
    DiagnosticError,
    NotFoundError,
    PassCancelledError,
    PermissionDeniedError,
    TransportError,
    near_matches,
)
from .cancellation import CancelScope

logger = logging.getLogger(__name__)

_TLS_MARKERS = ("certificate verify failed", "certificate_verify_failed", "unknown authority", "sslerror", "ssl:")


class ClusterClient:
    """
    Kubernetes API client for the diagnostic passes.

    Example:
        kube = ClusterClient.from_kubeconfig(context="gke_proj_us-central1_prod")
        kube.verify_connectivity()
        pods = kube.list_pods(namespace="default")
    """

    def __init__(
        self,
        api_client: client.ApiClient,
        request_timeout: float = REQUEST_TIMEOUT,
        cancel_scope: Optional[CancelScope] = None,
        insecure: bool = False,
    ):
        self.api_client = api_client
        self.request_timeout = request_timeout
        self.cancel_scope = cancel_scope or CancelScope()
        self.insecure = insecure

        self.core_v1 = client.CoreV1Api(api_client)
        self.apps_v1 = client.AppsV1Api(api_client)
        self.policy_v1 = client.PolicyV1Api(api_client)
        self.scheduling_v1 = client.SchedulingV1Api(api_client)

    @classmethod
    def from_kubeconfig(
        cls,
        context: Optional[str] = None,
        config_file: Optional[str] = None,
        **kwargs,
    ) -> "ClusterClient":
        """
        Build a client from kubeconfig (or in-cluster config).

        Raises:
            AuthError: If no usable configuration is found
        """
        configuration = client.Configuration()
        try:
            if context or config_file:
                config.load_kube_config(
                    config_file=config_file,
                    context=context,
                    client_configuration=configuration,
                )
            else:
                # Try in-cluster config first, fall back to kubeconfig
                try:
                    config.load_incluster_config(client_configuration=configuration)
                except config.ConfigException:
                    config.load_kube_config(client_configuration=configuration)
        except (config.ConfigException, OSError) as e:
            raise AuthError(
                f"Failed to load Kubernetes config: {e}",
                hint="No kubectl context is set. Fetch cluster credentials first.",
            )

        if kwargs.get("insecure"):
            configuration.verify_ssl = False
        return cls(client.ApiClient(configuration), **kwargs)

    def relaxed(self) -> "ClusterClient":
        """
        Copy of this client with TLS certificate verification disabled.

        Only the in-memory configuration changes; kubeconfig is untouched.
        """
        configuration = copy.deepcopy(self.api_client.configuration)
        configuration.verify_ssl = False
        urllib3.disable_warnings(InsecureRequestWarning)
        logger.warning("TLS certificate verification disabled for this session")
        return ClusterClient(
            client.ApiClient(configuration),
            request_timeout=self.request_timeout,
            cancel_scope=self.cancel_scope,
            insecure=True,
        )

    # =========================================================================
    # Request plumbing
    # =========================================================================

    def _call(self, description: str, func: Callable, *args, **kwargs) -> Any:
        self.cancel_scope.check()
        kwargs["_request_timeout"] = self.cancel_scope.request_timeout(self.request_timeout)
        logger.debug(f"Kubernetes API: {description}")
        try:
            return func(*args, **kwargs)
        except ApiException as e:
            raise self._translate_api_error(e, description)
        except (MaxRetryError, SSLError, Urllib3HTTPError, OSError) as e:
            if self.cancel_scope.cancelled:
                raise PassCancelledError(f"Cancelled while {description}")
            raise self._translate_transport_error(e, description)

    @staticmethod
    def _translate_api_error(e: ApiException, description: str) -> DiagnosticError:
        status = e.status or 0
        reason = e.reason or "unknown error"
        if status == 401:
            return AuthError(
                f"Unauthorized while {description}: {reason}",
                hint="Credentials are missing or expired; run 'gcloud auth login'",
            )
        if status == 403:
            return PermissionDeniedError(
                f"Permission denied while {description}: {reason}",
                hint="Check RBAC permissions for the current account",
            )
        if status == 404:
            return NotFoundError(f"Not found while {description}: {reason}")
        # Status 0: the client wrapped a urllib3 failure (e.g. SSLError with retries off)
        if status == 0 and any(m in reason.lower() for m in _TLS_MARKERS):
            return TransportError(
                f"TLS trust failure while {description}: {reason.strip()}",
                hint="Pass --fix-tls to retry once without certificate verification",
                tls_failure=True,
            )
        return TransportError(f"Kubernetes API error while {description}: {status} {reason}")

    @staticmethod
    def _translate_transport_error(e: Exception, description: str) -> TransportError:
        reason = getattr(e, "reason", None)
        text = f"{e} {reason or ''}".lower()
        if isinstance(e, SSLError) or isinstance(reason, SSLError) or any(m in text for m in _TLS_MARKERS):
            return TransportError(
                f"TLS trust failure while {description}: {e}",
                hint="Pass --fix-tls to retry once without certificate verification",
                tls_failure=True,
            )
        return TransportError(
            f"Unable to connect to cluster while {description}: {e}",
            hint="Check network connectivity, firewalls, or VPN/bastion access for private clusters",
        )

    def _items(self, response) -> List[Dict[str, Any]]:
        return [self.api_client.sanitize_for_serialization(item) for item in response.items or []]

    # =========================================================================
    # Queries
    # =========================================================================

    def verify_connectivity(self) -> None:
        """List one namespace as a connection test."""
        self._call("verifying connectivity", self.core_v1.list_namespace, limit=1)

    def list_namespaces(self) -> List[str]:
        response = self._call("listing namespaces", self.core_v1.list_namespace)
        return sorted(item["metadata"]["name"] for item in self._items(response))

    def list_pods(self, namespace: Optional[str] = None) -> List[Dict[str, Any]]:
        """List pods in a namespace, or in all namespaces when None."""
        if namespace:
            response = self._call(
                f"listing pods in {namespace}", self.core_v1.list_namespaced_pod, namespace=namespace
            )
        else:
            response = self._call("listing pods", self.core_v1.list_pod_for_all_namespaces)
        return self._items(response)

    def list_events(self, namespace: Optional[str] = None) -> List[Dict[str, Any]]:
        if namespace:
            response = self._call(
                f"listing events in {namespace}", self.core_v1.list_namespaced_event, namespace=namespace
            )
        else:
            response = self._call("listing events", self.core_v1.list_event_for_all_namespaces)
        return self._items(response)

    def list_nodes(self) -> List[Dict[str, Any]]:
        return self._items(self._call("listing nodes", self.core_v1.list_node))

    def list_secrets(self, namespace: Optional[str] = None) -> List[Dict[str, Any]]:
        if namespace:
            response = self._call(
                f"listing secrets in {namespace}", self.core_v1.list_namespaced_secret, namespace=namespace
            )
        else:
            response = self._call("listing secrets", self.core_v1.list_secret_for_all_namespaces)
        return self._items(response)

    def get_secret(self, name: str, namespace: str) -> Dict[str, Any]:
        """
        Read one secret.

        Raises:
            NotFoundError: With the closest secret names as candidates
        """
        try:
            secret = self._call(
                f"reading secret {namespace}/{name}",
                self.core_v1.read_namespaced_secret,
                name=name,
                namespace=namespace,
            )
        except NotFoundError:
            available = [s["metadata"]["name"] for s in self.list_secrets(namespace)]
            raise NotFoundError(
                f"Secret not found: {name} (namespace: {namespace})",
                hint=f"List all secrets in namespace: kubectl get secrets -n {namespace}",
                candidates=near_matches(name, available),
            )
        return self.api_client.sanitize_for_serialization(secret)

    def list_priority_classes(self) -> List[Dict[str, Any]]:
        return self._items(self._call("listing priority classes", self.scheduling_v1.list_priority_class))

    def list_pdbs(self, namespace: Optional[str] = None) -> List[Dict[str, Any]]:
        if namespace:
            response = self._call(
                f"listing PDBs in {namespace}",
                self.policy_v1.list_namespaced_pod_disruption_budget,
                namespace=namespace,
            )
        else:
            response = self._call(
                "listing PDBs", self.policy_v1.list_pod_disruption_budget_for_all_namespaces
            )
        return self._items(response)

    def list_workloads(self, namespace: str) -> List[Dict[str, Any]]:
        """Deployments and StatefulSets in a namespace, tagged with their kind."""
        workloads = []
        deployments = self._call(
            f"listing deployments in {namespace}", self.apps_v1.list_namespaced_deployment, namespace=namespace
        )
        for item in self._items(deployments):
            item["kind"] = "Deployment"
            workloads.append(item)
        statefulsets = self._call(
            f"listing statefulsets in {namespace}", self.apps_v1.list_namespaced_stateful_set, namespace=namespace
        )
        for item in self._items(statefulsets):
            item["kind"] = "StatefulSet"
            workloads.append(item)
        return workloads
