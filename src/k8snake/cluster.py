"""Read-only access to the cluster objects a session is built from."""

import base64
import binascii
from typing import Any

from kubernetes import client, config
from kubernetes.client.rest import ApiException
from kubernetes.config.config_exception import ConfigException

from .exceptions import ClusterError, ConfigurationError, NotFoundError
from .logging import get_logger
from .utils import build_label_selector

logger = get_logger(__name__)

HTTP_NOT_FOUND = 404


def load_core_api(
    kubeconfig: str | None = None, context: str | None = None
) -> client.CoreV1Api:
    """Build a CoreV1Api from kubeconfig, falling back to in-cluster config.

    Raises:
        ConfigurationError: If neither configuration source is usable
    """
    try:
        api_client = config.new_client_from_config(
            config_file=kubeconfig, context=context
        )
        logger.debug("Loaded kubeconfig", kubeconfig=kubeconfig, context=context)
        return client.CoreV1Api(api_client)
    except (ConfigException, OSError) as kube_error:
        if kubeconfig or context:
            raise ConfigurationError(
                f"Failed to load kubeconfig: {kube_error}"
            ) from kube_error
        try:
            config.load_incluster_config()
        except ConfigException as e:
            raise ConfigurationError(
                f"No usable Kubernetes configuration: {kube_error}; {e}"
            ) from e
        logger.debug("Loaded in-cluster configuration")
        return client.CoreV1Api()


class ClusterReader:
    """Thin wrapper around CoreV1Api for services, pods and secrets."""

    def __init__(self, core_api: client.CoreV1Api):
        self._api = core_api

    @classmethod
    def from_kubeconfig(
        cls, kubeconfig: str | None = None, context: str | None = None
    ) -> "ClusterReader":
        return cls(load_core_api(kubeconfig, context))

    def _call(self, kind: str, namespace: str, name: str, fn: Any, *args: Any, **kwargs: Any) -> Any:
        try:
            return fn(*args, **kwargs)
        except ApiException as e:
            if e.status == HTTP_NOT_FOUND:
                raise NotFoundError(
                    f"{kind} {name} not found in namespace {namespace}"
                ) from e
            raise ClusterError(
                f"Error getting {kind.lower()} {name} in namespace {namespace}: "
                f"{e.status} {e.reason}"
            ) from e

    def get_service(self, namespace: str, name: str) -> client.V1Service:
        """Read one Service.

        Raises:
            NotFoundError: If the service does not exist
            ClusterError: On any other API failure
        """
        service = self._call(
            "Service", namespace, name, self._api.read_namespaced_service, name, namespace
        )
        if service is None:
            raise NotFoundError(f"Service {name} not found in namespace {namespace}")
        return service

    def list_pods_for_service(
        self, service: client.V1Service, namespace: str
    ) -> list[client.V1Pod]:
        """List pods matched by the service's label selector, in API order.

        Raises:
            NotFoundError: If the service has no selector
            ClusterError: On API failure
        """
        name = service.metadata.name if service.metadata else "<unknown>"
        selector = build_label_selector(service.spec.selector if service.spec else None)
        if not selector:
            raise NotFoundError(
                f"Service {name} in namespace {namespace} has no pod selector"
            )

        pods = self._call(
            "Pods",
            namespace,
            name,
            self._api.list_namespaced_pod,
            namespace,
            label_selector=selector,
        )
        items = list(pods.items or [])
        logger.debug(
            "Listed pods for service",
            service=name,
            namespace=namespace,
            selector=selector,
            count=len(items),
        )
        return items

    def get_secret_data(self, namespace: str, name: str) -> dict[str, str]:
        """Read a Secret and return its base64-decoded data.

        Raises:
            NotFoundError: If the secret does not exist
            ClusterError: On any other API failure or undecodable data
        """
        secret = self._call(
            "Secret", namespace, name, self._api.read_namespaced_secret, name, namespace
        )
        if secret is None:
            raise NotFoundError(f"Secret {name} not found in namespace {namespace}")

        decoded: dict[str, str] = {}
        for key, value in (secret.data or {}).items():
            try:
                decoded[key] = base64.b64decode(value, validate=True).decode("utf-8")
            except (binascii.Error, UnicodeDecodeError) as e:
                raise ClusterError(
                    f"Secret {name} key {key} is not valid base64 text"
                ) from e
        return decoded
