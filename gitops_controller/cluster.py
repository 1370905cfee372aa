"""Kubernetes dynamic client wrapper: generic get/list/create/patch/delete keyed by resource identity."""

import logging
import threading
from typing import Any, Dict, List, Optional

from kubernetes import client, config, dynamic
from kubernetes.client.rest import ApiException
from kubernetes.dynamic.exceptions import ResourceNotFoundError

from gitops_controller.exceptions import (
    ApplyTransientError,
    ClusterAccessError,
    ObservationError,
    classify_api_exception,
)
from gitops_controller.models import Resource, ResourceKey

logger = logging.getLogger(__name__)

MERGE_PATCH = "application/merge-patch+json"


class ClusterClient:
    """Handles interaction with the Kubernetes API for any resource kind.

    All application loops share one instance; a bounded semaphore caps the
    number of API calls in flight across all of them.
    """

    def __init__(
        self,
        kubeconfig: Optional[str] = None,
        context: Optional[str] = None,
        max_concurrency: int = 8,
        request_timeout: float = 30.0,
        api_client: Optional[client.ApiClient] = None,
    ):
        """Initialize the cluster client.

        Args:
            kubeconfig: Path to kubeconfig file (defaults to $KUBECONFIG or ~/.kube/config)
            context: Kubernetes context to use
            max_concurrency: Global cap on concurrent API calls
            request_timeout: Timeout in seconds passed to every API call
            api_client: Preconfigured ApiClient, skips kube config loading

        Raises:
            ClusterAccessError: If Kubernetes configuration cannot be loaded
        """
        self.request_timeout = request_timeout
        self._semaphore = threading.BoundedSemaphore(max_concurrency)

        if api_client is None:
            api_client = self._load_api_client(kubeconfig, context)

        try:
            self.dynamic = dynamic.DynamicClient(api_client)
        except Exception as e:
            raise ClusterAccessError(f"Failed to create Kubernetes API clients: {str(e)}")

    @staticmethod
    def _load_api_client(kubeconfig: Optional[str], context: Optional[str]) -> client.ApiClient:
        try:
            return config.new_client_from_config(config_file=kubeconfig, context=context)
        except config.ConfigException:
            try:
                # Fall back to in-cluster config if kubeconfig is not available
                config.load_incluster_config()
                return client.ApiClient()
            except Exception as e:
                raise ClusterAccessError(f"Failed to load Kubernetes configuration: {str(e)}")
        except Exception as e:
            raise ClusterAccessError(f"Failed to initialize Kubernetes client: {str(e)}")

    def _api(self, api_version: str, kind: str):
        return self.dynamic.resources.get(api_version=api_version, kind=kind)

    @staticmethod
    def _namespace_arg(api, namespace: Optional[str]) -> Optional[str]:
        return namespace if getattr(api, "namespaced", True) else None

    def get(self, key: ResourceKey, api_version: str) -> Optional[Dict[str, Any]]:
        """Get one object.

        Args:
            key: Resource identity
            api_version: apiVersion of the kind

        Returns:
            The raw object, or None when it (or its kind) does not exist

        Raises:
            ObservationError: If the API cannot be queried
        """
        with self._semaphore:
            try:
                api = self._api(api_version, key.kind)
                obj = api.get(
                    name=key.name,
                    namespace=self._namespace_arg(api, key.namespace),
                    _request_timeout=self.request_timeout,
                )
                return obj.to_dict()
            except ResourceNotFoundError:
                # Kind not served yet, e.g. the CRD is part of this sync
                return None
            except ApiException as e:
                if e.status == 404:
                    return None
                raise ObservationError(f"Failed to get {key}: {e.reason} (status: {e.status})", str(key))
            except Exception as e:
                raise ObservationError(f"Unexpected error getting {key}: {str(e)}", str(key))

    def list(
        self,
        api_version: str,
        kind: str,
        namespace: Optional[str] = None,
        label_selector: Optional[str] = None,
    ) -> List[Dict[str, Any]]:
        """List objects of a kind, across all namespaces when namespace is None.

        Raises:
            ObservationError: If the API cannot be queried
        """
        with self._semaphore:
            try:
                api = self._api(api_version, kind)
                response = api.get(
                    namespace=self._namespace_arg(api, namespace),
                    label_selector=label_selector,
                    _request_timeout=self.request_timeout,
                )
                items = response.to_dict().get("items") or []
            except ResourceNotFoundError:
                return []
            except ApiException as e:
                if e.status == 404:
                    return []
                raise ObservationError(f"Failed to list {kind}: {e.reason} (status: {e.status})", kind)
            except Exception as e:
                raise ObservationError(f"Unexpected error listing {kind}: {str(e)}", kind)

        # List items omit apiVersion and kind
        for item in items:
            item.setdefault("apiVersion", api_version)
            item.setdefault("kind", kind)
        return items

    def create(self, resource: Resource) -> Dict[str, Any]:
        """Create an object from its full body.

        Raises:
            ApplyTransientError: On retryable API failures
            ApplyFatalError: On rejections
        """
        with self._semaphore:
            try:
                api = self._api(resource.api_version, resource.kind)
                obj = api.create(
                    body=resource.body,
                    namespace=self._namespace_arg(api, resource.namespace),
                    _request_timeout=self.request_timeout,
                )
                return obj.to_dict()
            except Exception as e:
                raise self._apply_error(e, "create", resource.key)

    def patch(self, key: ResourceKey, api_version: str, patch: Dict[str, Any]) -> Dict[str, Any]:
        """Apply a JSON merge patch to an object.

        Raises:
            ApplyTransientError: On retryable API failures
            ApplyFatalError: On rejections
        """
        with self._semaphore:
            try:
                api = self._api(api_version, key.kind)
                obj = api.patch(
                    body=patch,
                    name=key.name,
                    namespace=self._namespace_arg(api, key.namespace),
                    content_type=MERGE_PATCH,
                    _request_timeout=self.request_timeout,
                )
                return obj.to_dict()
            except Exception as e:
                raise self._apply_error(e, "patch", key)

    def delete(self, key: ResourceKey, api_version: str) -> bool:
        """Delete an object with background propagation.

        Returns:
            True if deleted, False if it was already gone

        Raises:
            ApplyTransientError: On retryable API failures
            ApplyFatalError: On rejections
        """
        with self._semaphore:
            try:
                api = self._api(api_version, key.kind)
                api.delete(
                    name=key.name,
                    namespace=self._namespace_arg(api, key.namespace),
                    body=client.V1DeleteOptions(propagation_policy="Background"),
                    _request_timeout=self.request_timeout,
                )
                return True
            except ApiException as e:
                if e.status == 404:
                    return False
                raise self._apply_error(e, "delete", key)
            except Exception as e:
                raise self._apply_error(e, "delete", key)

    def _apply_error(self, e: Exception, operation: str, key: ResourceKey):
        if isinstance(e, ResourceNotFoundError):
            # Usually a CRD applied earlier in this sync; discovery catches up on retry
            self.dynamic.resources.invalidate_cache()
            return ApplyTransientError(f"Kind {key.kind} is not served by the cluster yet", str(key))
        error = classify_api_exception(e, f"{operation} {key}", str(key))
        logger.debug("%s %s failed: %s", operation, key, error.message)
        return error
