from __future__ import annotations

import enum
import logging
import time
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any, Protocol

from kubernetes.client import ApiException

from nsclass.src.apply import apply_object, prune
from nsclass.src.config import ATTACHED_CLASS_ANNOTATION, CLASS_LABEL, INVENTORY_ANNOTATION
from nsclass.src.errors import (
    ApplyError,
    MalformedTemplateError,
    PersistError,
    ReconcileError,
)
from nsclass.src.inventory import InventoryRecord, decode_inventory, dedupe, encode_inventory
from nsclass.src.metrics import METRICS
from nsclass.src.render import render_template

LOGGER = logging.getLogger(__name__)


class NamespaceStore(Protocol):
    def get_namespace(self, name: str) -> dict[str, Any] | None: ...

    def get_class(self, name: str) -> dict[str, Any] | None: ...

    def patch_namespace_metadata(
        self,
        name: str,
        *,
        labels: dict[str, str | None] | None = None,
        annotations: dict[str, str | None] | None = None,
        resource_version: str | None = None,
    ) -> None: ...

    def apply(
        self, obj: dict[str, Any], field_manager: str, force: bool = True
    ) -> dict[str, Any]: ...

    def delete(self, record: InventoryRecord) -> bool: ...

    def emit_event(
        self, namespace: dict[str, Any], event_type: str, reason: str, message: str
    ) -> None: ...


class Attachment(enum.Enum):
    UNATTACHED = "Unattached"
    ATTACHED = "Attached"
    DETACHING = "Detaching"


@dataclass(frozen=True)
class NamespaceState:
    """Attachment state of a namespace, derived from its label and annotations.

    ``class_name`` is the attached class for ``ATTACHED`` and the class that
    produced the recorded inventory for ``DETACHING``.
    """

    attachment: Attachment
    class_name: str | None = None


def derive_namespace_state(
    labels: Mapping[str, str] | None, annotations: Mapping[str, str] | None
) -> NamespaceState:
    class_name = (labels or {}).get(CLASS_LABEL)
    if class_name:
        return NamespaceState(Attachment.ATTACHED, class_name)
    previous = (annotations or {}).get(ATTACHED_CLASS_ANNOTATION)
    if previous:
        return NamespaceState(Attachment.DETACHING, previous)
    return NamespaceState(Attachment.UNATTACHED)


class ReconcileOutcome(enum.Enum):
    NOT_FOUND = "NotFound"
    TERMINATING = "Terminating"
    UNATTACHED = "Unattached"
    CLEANED = "Cleaned"
    CLASS_MISSING = "ClassMissing"
    SYNCED = "Synced"


def class_templates(class_obj: Mapping[str, Any]) -> list[Any]:
    """Return the template payloads of a NamespaceClass in declaration order."""
    resources = (class_obj.get("spec") or {}).get("resources") or []
    if not isinstance(resources, list):
        raise MalformedTemplateError("spec.resources must be a list")
    templates = []
    for index, entry in enumerate(resources):
        if not isinstance(entry, Mapping) or "template" not in entry:
            raise MalformedTemplateError(f"spec.resources[{index}] has no template")
        templates.append(entry["template"])
    return templates


class NamespaceReconciler:
    """Propagates a NamespaceClass's templates into one namespace.

    One pass renders and applies every template of the attached class, prunes
    whatever the previous inventory held that is no longer desired, and then
    records the new inventory on the namespace.  The inventory is written last,
    so a pass that fails half way is simply re-run: applies are idempotent and
    the old inventory still lists everything that may need pruning.
    """

    def __init__(self, store: NamespaceStore, logger: logging.Logger | None = None) -> None:
        self.store = store
        self.logger = logger or LOGGER

    def reconcile(self, name: str) -> ReconcileOutcome:
        try:
            namespace = self.store.get_namespace(name)
        except ApiException as exc:
            METRICS.reconcile_errors_total.labels(namespace=name, phase="get-namespace").inc()
            raise ReconcileError(
                f"failed to read namespace {name}: {exc.reason}", phase="get-namespace"
            ) from exc
        if namespace is None:
            return ReconcileOutcome.NOT_FOUND

        metadata = namespace.get("metadata") or {}
        if metadata.get("deletionTimestamp"):
            # Owner references hand the cleanup to the garbage collector.
            return ReconcileOutcome.TERMINATING

        state = derive_namespace_state(metadata.get("labels"), metadata.get("annotations"))
        if state.attachment is Attachment.UNATTACHED:
            return ReconcileOutcome.UNATTACHED

        started = time.monotonic()
        try:
            if state.attachment is Attachment.DETACHING:
                self._clean_up(namespace, state.class_name or "")
                return ReconcileOutcome.CLEANED
            return self._sync(namespace, state.class_name or "")
        except Exception as exc:
            if state.attachment is Attachment.DETACHING:
                phase = "cleanup"
            else:
                phase = getattr(exc, "phase", "unknown")
            METRICS.reconcile_errors_total.labels(namespace=name, phase=phase).inc()
            raise
        finally:
            METRICS.reconcile_duration_seconds.labels(name, state.class_name or "").observe(
                time.monotonic() - started
            )

    def _sync(self, namespace: dict[str, Any], class_name: str) -> ReconcileOutcome:
        metadata = namespace["metadata"]
        name = metadata["name"]
        log_context = {"namespace": name, "class": class_name}

        try:
            class_obj = self.store.get_class(class_name)
        except ApiException as exc:
            raise ReconcileError(
                f"failed to read NamespaceClass {class_name}: {exc.reason}", phase="get-class"
            ) from exc
        if class_obj is None:
            # Retrying cannot help until the class appears or the label changes,
            # and either of those enqueues this namespace again.
            self.logger.info(
                "Referenced NamespaceClass %s not found", class_name, extra=log_context
            )
            self.store.emit_event(
                namespace, "Warning", "ClassMissing", f"NamespaceClass {class_name} not found"
            )
            METRICS.reconcile_errors_total.labels(namespace=name, phase="class-missing").inc()
            return ReconcileOutcome.CLASS_MISSING

        annotations = metadata.get("annotations") or {}
        old_inventory = decode_inventory(annotations)
        previous_class = annotations.get(ATTACHED_CLASS_ANNOTATION) or class_name

        applied = self._apply_class(namespace, class_name, class_obj)

        for record in prune(self.store, old_inventory, applied):
            METRICS.pruned_resources_total.labels(name, previous_class, record.kind).inc()

        self._persist(namespace, class_name, applied)
        self.logger.info(
            "Reconciled namespace %s with class %s (%d resources)",
            name,
            class_name,
            len(applied),
            extra=log_context,
        )
        return ReconcileOutcome.SYNCED

    def _apply_class(
        self, namespace: dict[str, Any], class_name: str, class_obj: Mapping[str, Any]
    ) -> list[InventoryRecord]:
        metadata = namespace["metadata"]
        name = metadata["name"]
        applied: list[InventoryRecord] = []
        try:
            for template in class_templates(class_obj):
                obj = render_template(template, name, class_name, metadata.get("uid"))
                record = apply_object(self.store, obj)
                METRICS.applied_resources_total.labels(name, class_name, record.kind).inc()
                applied.append(record)
        except MalformedTemplateError as exc:
            self.store.emit_event(
                namespace, "Warning", "InvalidTemplate", f"NamespaceClass {class_name}: {exc}"
            )
            raise
        except ApplyError as exc:
            self.store.emit_event(
                namespace, "Warning", "ApplyFailed", f"Failed to apply resources: {exc}"
            )
            raise
        return dedupe(applied)

    def _clean_up(self, namespace: dict[str, Any], previous_class: str) -> None:
        metadata = namespace["metadata"]
        name = metadata["name"]
        self.logger.info(
            "Class label removed from namespace %s, cleaning up resources of %s",
            name,
            previous_class,
            extra={"namespace": name, "class": previous_class},
        )
        old_inventory = decode_inventory(metadata.get("annotations"))
        for record in prune(self.store, old_inventory, []):
            METRICS.pruned_resources_total.labels(name, previous_class, record.kind).inc()
        self._persist(namespace, None, [])

    def _persist(
        self,
        namespace: dict[str, Any],
        class_name: str | None,
        records: list[InventoryRecord],
    ) -> None:
        """Write inventory and attached-class annotations; ``None`` removes a key."""
        metadata = namespace["metadata"]
        current = metadata.get("annotations") or {}
        desired = {
            INVENTORY_ANNOTATION: encode_inventory(records),
            ATTACHED_CLASS_ANNOTATION: class_name,
        }
        if all(current.get(key) == value for key, value in desired.items()):
            return

        try:
            self.store.patch_namespace_metadata(metadata["name"], annotations=desired)
        except ApiException as exc:
            raise PersistError(
                f"failed to persist inventory on namespace {metadata['name']}: {exc.reason}"
            ) from exc
