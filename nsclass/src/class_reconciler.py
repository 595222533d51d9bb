from __future__ import annotations

import enum
import logging
from collections.abc import Mapping
from typing import Any, Protocol

from kubernetes.client import ApiException

from nsclass.src.config import CLASS_FINALIZER, CLASS_LABEL
from nsclass.src.errors import DetachError, FinalizerError, ReconcileError
from nsclass.src.mapper import class_selector
from nsclass.src.metrics import METRICS

LOGGER = logging.getLogger(__name__)

CASCADE = "Cascade"
ORPHAN = "Orphan"


class ClassStore(Protocol):
    def get_class(self, name: str) -> dict[str, Any] | None: ...

    def set_class_finalizers(
        self, name: str, finalizers: list[str], resource_version: str | None
    ) -> None: ...

    def list_namespaces(self, label_selector: str) -> list[dict[str, Any]]: ...

    def patch_namespace_metadata(
        self,
        name: str,
        *,
        labels: dict[str, str | None] | None = None,
        annotations: dict[str, str | None] | None = None,
        resource_version: str | None = None,
    ) -> None: ...


class ClassPhase(enum.Enum):
    ACTIVE = "Active"
    TERMINATING_CASCADE = "Terminating-Cascade"
    TERMINATING_ORPHAN = "Terminating-Orphan"
    REMOVED = "Removed"


def deletion_policy(class_obj: Mapping[str, Any]) -> str:
    """Return the class's deletion policy, defaulting to ``Cascade`` when unset."""
    return (class_obj.get("spec") or {}).get("deletionPolicy") or CASCADE


def class_phase(class_obj: Mapping[str, Any] | None) -> ClassPhase:
    """Derive the lifecycle phase of a NamespaceClass.

    A class being deleted without our finalizer has nothing left for the
    controller to do and is treated as already removed.  Only ``Cascade``
    detaches namespaces; any other policy value leaves them untouched.
    """
    if class_obj is None:
        return ClassPhase.REMOVED
    metadata = class_obj.get("metadata") or {}
    if not metadata.get("deletionTimestamp"):
        return ClassPhase.ACTIVE
    if CLASS_FINALIZER not in (metadata.get("finalizers") or []):
        return ClassPhase.REMOVED
    if deletion_policy(class_obj) == CASCADE:
        return ClassPhase.TERMINATING_CASCADE
    return ClassPhase.TERMINATING_ORPHAN


class ClassReconciler:
    """Owns the NamespaceClass lifecycle: finalizer registration and deletion policy.

    On deletion with ``Cascade`` the class label is removed from every attached
    namespace and the namespace reconciler, seeing the label gone, prunes what
    the class created.  This reconciler never touches namespace inventories.
    The finalizer is released only once every namespace has been detached;
    a partial detach is retried and resumes where it stopped.
    """

    def __init__(self, store: ClassStore, logger: logging.Logger | None = None) -> None:
        self.store = store
        self.logger = logger or LOGGER

    def reconcile(self, name: str) -> ClassPhase:
        try:
            class_obj = self.store.get_class(name)
        except ApiException as exc:
            raise ReconcileError(
                f"failed to read NamespaceClass {name}: {exc.reason}", phase="get-class"
            ) from exc

        phase = class_phase(class_obj)
        if class_obj is None or phase is ClassPhase.REMOVED:
            return phase

        metadata = class_obj["metadata"]
        finalizers = list(metadata.get("finalizers") or [])
        log_context = {"class": name}

        if phase is ClassPhase.ACTIVE:
            if CLASS_FINALIZER not in finalizers:
                self._write_finalizers(name, [*finalizers, CLASS_FINALIZER], metadata)
                self.logger.info("Added finalizer to NamespaceClass %s", name, extra=log_context)
            return phase

        policy = deletion_policy(class_obj)
        self.logger.info(
            "NamespaceClass %s is being deleted (policy=%s)", name, policy, extra=log_context
        )
        if policy not in {CASCADE, ORPHAN}:
            self.logger.warning(
                "Unknown deletionPolicy %r on NamespaceClass %s; leaving namespaces untouched",
                policy,
                name,
                extra=log_context,
            )

        if phase is ClassPhase.TERMINATING_CASCADE:
            self.detach_namespaces(name)

        remaining = [item for item in finalizers if item != CLASS_FINALIZER]
        self._write_finalizers(name, remaining, metadata)
        self.logger.info("Removed finalizer from NamespaceClass %s", name, extra=log_context)
        return phase

    def detach_namespaces(self, class_name: str) -> list[str]:
        """Remove the class label from every namespace attached to *class_name*.

        Each label patch is conditional on the namespace's resourceVersion so a
        namespace re-labelled after the list is not stripped of its new class.
        Returns the names of the namespaces that were detached.
        """
        try:
            namespaces = self.store.list_namespaces(class_selector(class_name))
        except ApiException as exc:
            raise DetachError(
                f"failed to list namespaces of NamespaceClass {class_name}: {exc.reason}"
            ) from exc

        detached: list[str] = []
        for namespace in sorted(namespaces, key=lambda ns: ns["metadata"]["name"]):
            metadata = namespace["metadata"]
            ns_name = metadata["name"]
            if (metadata.get("labels") or {}).get(CLASS_LABEL) != class_name:
                continue
            try:
                self.store.patch_namespace_metadata(
                    ns_name,
                    labels={CLASS_LABEL: None},
                    resource_version=metadata.get("resourceVersion"),
                )
            except ApiException as exc:
                if exc.status == 404:
                    continue
                METRICS.reconcile_errors_total.labels(namespace=ns_name, phase="detach").inc()
                self.logger.error(
                    "Failed to remove class label from namespace %s during cascade delete",
                    ns_name,
                    extra={"namespace": ns_name, "class": class_name},
                )
                raise DetachError(
                    f"failed to detach namespace {ns_name} from {class_name}: {exc.reason}"
                ) from exc
            detached.append(ns_name)
            self.logger.info(
                "Detached NamespaceClass %s from namespace %s (Cascade)",
                class_name,
                ns_name,
                extra={"namespace": ns_name, "class": class_name},
            )
        return detached

    def _write_finalizers(
        self, name: str, finalizers: list[str], metadata: Mapping[str, Any]
    ) -> None:
        try:
            self.store.set_class_finalizers(name, finalizers, metadata.get("resourceVersion"))
        except ApiException as exc:
            if exc.status == 404:
                return
            raise FinalizerError(
                f"failed to update finalizers of NamespaceClass {name}: {exc.reason}"
            ) from exc
