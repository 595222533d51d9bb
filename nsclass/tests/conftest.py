from __future__ import annotations

import copy
from typing import Any

import pytest
from kubernetes.client import ApiException

from nsclass.src.inventory import InventoryRecord
from nsclass.src.render import record_for


class FakeStore:
    """In-memory stand-in for KubeStore with merge-patch and precondition semantics."""

    def __init__(self) -> None:
        self.namespaces: dict[str, dict[str, Any]] = {}
        self.classes: dict[str, dict[str, Any]] = {}
        self.objects: dict[InventoryRecord, dict[str, Any]] = {}
        self.applied: list[dict[str, Any]] = []
        self.deleted: list[InventoryRecord] = []
        self.patches: list[dict[str, Any]] = []
        self.finalizer_writes: list[tuple[str, list[str]]] = []
        self.events: list[tuple[str, str, str, str]] = []
        self.fail_apply: dict[str, int] = {}
        self.fail_delete: dict[str, int] = {}
        self.fail_patch: dict[str, int] = {}
        self.fail_get_namespace: int | None = None
        self.fail_get_class: int | None = None
        self.fail_list: int | None = None
        self.fail_finalizers: int | None = None
        self._version = 0

    def _next_version(self) -> str:
        self._version += 1
        return str(self._version)

    def add_namespace(
        self,
        name: str,
        labels: dict[str, str] | None = None,
        annotations: dict[str, str] | None = None,
        deleting: bool = False,
    ) -> dict[str, Any]:
        metadata: dict[str, Any] = {
            "name": name,
            "uid": f"uid-{name}",
            "resourceVersion": self._next_version(),
            "labels": dict(labels or {}),
            "annotations": dict(annotations or {}),
        }
        if deleting:
            metadata["deletionTimestamp"] = "2026-01-01T00:00:00Z"
        namespace = {"apiVersion": "v1", "kind": "Namespace", "metadata": metadata}
        self.namespaces[name] = namespace
        return namespace

    def add_class(
        self,
        name: str,
        templates: list[Any] | None = None,
        deletion_policy: str | None = None,
        finalizers: list[str] | None = None,
        deleting: bool = False,
    ) -> dict[str, Any]:
        spec: dict[str, Any] = {"resources": [{"template": t} for t in templates or []]}
        if deletion_policy is not None:
            spec["deletionPolicy"] = deletion_policy
        metadata: dict[str, Any] = {
            "name": name,
            "resourceVersion": self._next_version(),
            "finalizers": list(finalizers or []),
        }
        if deleting:
            metadata["deletionTimestamp"] = "2026-01-01T00:00:00Z"
        class_obj = {
            "apiVersion": "akuity.io/v1",
            "kind": "NamespaceClass",
            "metadata": metadata,
            "spec": spec,
        }
        self.classes[name] = class_obj
        return class_obj

    def set_templates(self, name: str, templates: list[Any]) -> None:
        self.classes[name]["spec"]["resources"] = [{"template": t} for t in templates]

    @staticmethod
    def _maybe_fail(failures: dict[str, int], key: str) -> None:
        status = failures.get(key)
        if status is not None:
            raise ApiException(status=status, reason="injected")

    def get_namespace(self, name: str) -> dict[str, Any] | None:
        if self.fail_get_namespace is not None:
            raise ApiException(status=self.fail_get_namespace, reason="injected")
        namespace = self.namespaces.get(name)
        return copy.deepcopy(namespace) if namespace is not None else None

    def list_namespaces(self, label_selector: str) -> list[dict[str, Any]]:
        if self.fail_list is not None:
            raise ApiException(status=self.fail_list, reason="injected")
        key, _, value = label_selector.partition("=")
        return [
            copy.deepcopy(ns)
            for ns in self.namespaces.values()
            if ns["metadata"]["labels"].get(key) == value
        ]

    def patch_namespace_metadata(
        self,
        name: str,
        *,
        labels: dict[str, str | None] | None = None,
        annotations: dict[str, str | None] | None = None,
        resource_version: str | None = None,
    ) -> None:
        self._maybe_fail(self.fail_patch, name)
        namespace = self.namespaces.get(name)
        if namespace is None:
            raise ApiException(status=404, reason="Not Found")
        metadata = namespace["metadata"]
        if resource_version and resource_version != metadata["resourceVersion"]:
            raise ApiException(status=409, reason="Conflict")
        for field, values in (("labels", labels), ("annotations", annotations)):
            if values is None:
                continue
            for key, value in values.items():
                if value is None:
                    metadata[field].pop(key, None)
                else:
                    metadata[field][key] = value
        metadata["resourceVersion"] = self._next_version()
        self.patches.append(
            {
                "name": name,
                "labels": labels,
                "annotations": annotations,
                "resource_version": resource_version,
            }
        )

    def get_class(self, name: str) -> dict[str, Any] | None:
        if self.fail_get_class is not None:
            raise ApiException(status=self.fail_get_class, reason="injected")
        class_obj = self.classes.get(name)
        return copy.deepcopy(class_obj) if class_obj is not None else None

    def set_class_finalizers(
        self, name: str, finalizers: list[str], resource_version: str | None
    ) -> None:
        if self.fail_finalizers is not None:
            raise ApiException(status=self.fail_finalizers, reason="injected")
        class_obj = self.classes.get(name)
        if class_obj is None:
            raise ApiException(status=404, reason="Not Found")
        metadata = class_obj["metadata"]
        if resource_version and resource_version != metadata["resourceVersion"]:
            raise ApiException(status=409, reason="Conflict")
        metadata["finalizers"] = list(finalizers)
        metadata["resourceVersion"] = self._next_version()
        self.finalizer_writes.append((name, list(finalizers)))
        if metadata.get("deletionTimestamp") and not finalizers:
            del self.classes[name]

    def apply(self, obj: dict[str, Any], field_manager: str, force: bool = True) -> dict[str, Any]:
        self._maybe_fail(self.fail_apply, obj["metadata"]["name"])
        self.applied.append(copy.deepcopy(obj))
        self.objects[record_for(obj)] = copy.deepcopy(obj)
        return obj

    def delete(self, record: InventoryRecord) -> bool:
        self._maybe_fail(self.fail_delete, record.name)
        self.deleted.append(record)
        return self.objects.pop(record, None) is not None

    def emit_event(
        self, namespace: dict[str, Any], event_type: str, reason: str, message: str
    ) -> None:
        self.events.append((namespace["metadata"]["name"], event_type, reason, message))

    def annotations(self, name: str) -> dict[str, str]:
        return self.namespaces[name]["metadata"]["annotations"]

    def object_names(self, namespace: str) -> set[str]:
        return {record.name for record in self.objects if record.namespace == namespace}


def config_map(name: str, data: dict[str, str] | None = None) -> dict[str, Any]:
    return {
        "apiVersion": "v1",
        "kind": "ConfigMap",
        "metadata": {"name": name},
        "data": data or {"key": name},
    }


@pytest.fixture
def store() -> FakeStore:
    return FakeStore()


@pytest.fixture
def make_config_map():
    return config_map
