from __future__ import annotations

import logging
from datetime import UTC, datetime
from typing import Any

from kubernetes import client, config
from kubernetes.client import ApiClient, ApiException, CoreV1Api, CustomObjectsApi
from kubernetes.config.config_exception import ConfigException
from kubernetes.dynamic import DynamicClient
from kubernetes.dynamic.exceptions import ResourceNotFoundError
from urllib3.exceptions import HTTPError

from nsclass.src.config import CLASS_GROUP, CLASS_PLURAL, CLASS_VERSION, CONTROLLER_NAME
from nsclass.src.inventory import InventoryRecord

LOGGER = logging.getLogger(__name__)

MERGE_PATCH = "application/merge-patch+json"


def load_kube_configuration() -> None:
    """Load Kubernetes client configuration.

    Attempts in-cluster config first (running inside a pod), falling back
    to the local kubeconfig for development.
    """
    try:
        config.load_incluster_config()
        LOGGER.info("Loaded in-cluster Kubernetes configuration")
    except ConfigException:
        config.load_kube_config()
        LOGGER.info("Loaded local kubeconfig")


def build_clients() -> tuple[CoreV1Api, CustomObjectsApi, DynamicClient]:
    """Return the core, custom-object and dynamic clients sharing one ApiClient."""
    api_client = client.ApiClient()
    return (
        client.CoreV1Api(api_client),
        client.CustomObjectsApi(api_client),
        DynamicClient(api_client),
    )


def to_dict(obj: Any, api_client: ApiClient | None = None) -> dict[str, Any]:
    """Convert a client model (``V1Namespace``...) into its JSON-shaped dict.

    Custom objects already come back as dicts and are returned unchanged.
    """
    if isinstance(obj, dict):
        return obj
    serializer = api_client or ApiClient()
    return serializer.sanitize_for_serialization(obj)


def is_not_found(exc: ApiException) -> bool:
    return exc.status == 404


class KubeStore:
    """Backing-store operations the reconcilers need, on top of the Kubernetes API.

    Namespaces go through ``CoreV1Api``, NamespaceClasses through
    ``CustomObjectsApi`` and rendered templates (arbitrary kinds) through the
    dynamic client.  Reads return plain dicts and map 404 to ``None``; every
    other :class:`ApiException` propagates to the caller.
    """

    def __init__(
        self,
        core_api: CoreV1Api,
        custom_api: CustomObjectsApi,
        dynamic: DynamicClient,
        request_timeout_seconds: int = 30,
    ) -> None:
        self.core_api = core_api
        self.custom_api = custom_api
        self.dynamic = dynamic
        self.request_timeout_seconds = request_timeout_seconds

    def as_dict(self, obj: Any) -> dict[str, Any]:
        return to_dict(obj, getattr(self.core_api, "api_client", None))

    def get_namespace(self, name: str) -> dict[str, Any] | None:
        try:
            namespace = self.core_api.read_namespace(
                name=name, _request_timeout=self.request_timeout_seconds
            )
        except ApiException as exc:
            if is_not_found(exc):
                return None
            raise
        return self.as_dict(namespace)

    def list_namespaces(self, label_selector: str) -> list[dict[str, Any]]:
        result = self.core_api.list_namespace(
            label_selector=label_selector, _request_timeout=self.request_timeout_seconds
        )
        return [self.as_dict(item) for item in result.items or []]

    def patch_namespace_metadata(
        self,
        name: str,
        *,
        labels: dict[str, str | None] | None = None,
        annotations: dict[str, str | None] | None = None,
        resource_version: str | None = None,
    ) -> None:
        """Merge-patch namespace labels and annotations; ``None`` values delete keys.

        When *resource_version* is given the API server rejects the patch with
        ``409 Conflict`` if the namespace changed since it was read.
        """
        metadata: dict[str, Any] = {}
        if labels is not None:
            metadata["labels"] = labels
        if annotations is not None:
            metadata["annotations"] = annotations
        if resource_version:
            metadata["resourceVersion"] = resource_version
        self.core_api.patch_namespace(
            name=name,
            body={"metadata": metadata},
            _content_type=MERGE_PATCH,
            _request_timeout=self.request_timeout_seconds,
        )

    def get_class(self, name: str) -> dict[str, Any] | None:
        try:
            return self.custom_api.get_cluster_custom_object(
                group=CLASS_GROUP,
                version=CLASS_VERSION,
                plural=CLASS_PLURAL,
                name=name,
                _request_timeout=self.request_timeout_seconds,
            )
        except ApiException as exc:
            if is_not_found(exc):
                return None
            raise

    def set_class_finalizers(
        self, name: str, finalizers: list[str], resource_version: str | None
    ) -> None:
        metadata: dict[str, Any] = {"finalizers": finalizers}
        if resource_version:
            metadata["resourceVersion"] = resource_version
        self.custom_api.patch_cluster_custom_object(
            group=CLASS_GROUP,
            version=CLASS_VERSION,
            plural=CLASS_PLURAL,
            name=name,
            body={"metadata": metadata},
            _content_type=MERGE_PATCH,
            _request_timeout=self.request_timeout_seconds,
        )

    def apply(self, obj: dict[str, Any], field_manager: str, force: bool = True) -> dict[str, Any]:
        """Server-side apply *obj*, claiming its fields for *field_manager*."""
        resource = self.dynamic.resources.get(api_version=obj["apiVersion"], kind=obj["kind"])
        metadata = obj["metadata"]
        applied = self.dynamic.server_side_apply(
            resource,
            body=obj,
            name=metadata["name"],
            namespace=metadata.get("namespace") if resource.namespaced else None,
            field_manager=field_manager,
            force_conflicts=force,
            _request_timeout=self.request_timeout_seconds,
        )
        return applied.to_dict() if hasattr(applied, "to_dict") else applied

    def delete(self, record: InventoryRecord) -> bool:
        """Delete the object named by *record*.

        Returns ``False`` when the object (or its whole kind) is already gone.
        """
        try:
            resource = self.dynamic.resources.get(api_version=record.api_version, kind=record.kind)
        except ResourceNotFoundError:
            return False
        try:
            self.dynamic.delete(
                resource,
                name=record.name,
                namespace=record.namespace if resource.namespaced else None,
                _request_timeout=self.request_timeout_seconds,
            )
        except ApiException as exc:
            if is_not_found(exc):
                return False
            raise
        return True

    def emit_event(
        self, namespace: dict[str, Any], event_type: str, reason: str, message: str
    ) -> None:
        """Record a core ``Event`` against a namespace.

        Events are a user-facing side channel: failures are logged and never
        fail the reconcile that produced them.
        """
        metadata = namespace.get("metadata") or {}
        name = metadata.get("name", "")
        now = datetime.now(UTC)
        event = client.CoreV1Event(
            metadata=client.V1ObjectMeta(generate_name=f"{name}.", namespace=name),
            involved_object=client.V1ObjectReference(
                api_version="v1",
                kind="Namespace",
                name=name,
                uid=metadata.get("uid"),
                resource_version=metadata.get("resourceVersion"),
            ),
            type=event_type,
            reason=reason,
            message=message,
            source=client.V1EventSource(component=CONTROLLER_NAME),
            reporting_component=CONTROLLER_NAME,
            first_timestamp=now,
            last_timestamp=now,
            count=1,
        )
        try:
            self.core_api.create_namespaced_event(
                namespace=name, body=event, _request_timeout=self.request_timeout_seconds
            )
        except ApiException as exc:
            LOGGER.warning(
                "Failed to record %s event %s on namespace %s: %s",
                event_type,
                reason,
                name,
                exc.reason,
            )
        except HTTPError as exc:
            LOGGER.warning(
                "Failed to record %s event %s on namespace %s: %s",
                event_type,
                reason,
                name,
                exc,
            )
