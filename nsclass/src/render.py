from __future__ import annotations

import copy
from collections.abc import Mapping
from typing import Any

import yaml

from nsclass.src.config import CONTROLLER_NAME, MANAGED_BY_LABEL, SOURCE_CLASS_LABEL
from nsclass.src.errors import MalformedTemplateError
from nsclass.src.inventory import InventoryRecord


def _load_payload(template: Any) -> dict[str, Any]:
    """Return a private, mutable copy of a template payload.

    Templates usually arrive as already-decoded mappings, but a raw YAML or
    JSON document string is accepted too.
    """
    if isinstance(template, str):
        try:
            template = yaml.safe_load(template)
        except yaml.YAMLError as exc:
            raise MalformedTemplateError(f"template is not parseable: {exc}") from exc

    if not isinstance(template, Mapping):
        raise MalformedTemplateError(
            f"template must be an object, got {type(template).__name__}"
        )
    return copy.deepcopy(dict(template))


def _require_str(value: Any, field: str) -> str:
    if not isinstance(value, str) or not value:
        raise MalformedTemplateError(f"template is missing {field}")
    return value


def render_template(
    template: Any,
    namespace: str,
    class_name: str,
    namespace_uid: str | None = None,
) -> dict[str, Any]:
    """Render one class template into an object addressed to *namespace*.

    The stored template is never mutated.  The rendered copy gets:

    - ``metadata.namespace`` forced to the target namespace;
    - the managed-by and source-class labels merged over any user labels;
    - a single controller owner reference to the target namespace, so the
      garbage collector removes the object when the namespace goes away.
    """
    obj = _load_payload(template)

    _require_str(obj.get("apiVersion"), "apiVersion")
    _require_str(obj.get("kind"), "kind")

    metadata = obj.get("metadata")
    if not isinstance(metadata, dict):
        raise MalformedTemplateError("template is missing metadata")
    _require_str(metadata.get("name"), "metadata.name")

    labels = metadata.get("labels")
    if labels is None:
        labels = {}
    elif not isinstance(labels, dict):
        raise MalformedTemplateError("template metadata.labels must be an object")
    labels[MANAGED_BY_LABEL] = CONTROLLER_NAME
    labels[SOURCE_CLASS_LABEL] = class_name
    metadata["labels"] = labels

    metadata["namespace"] = namespace

    owner: dict[str, Any] = {
        "apiVersion": "v1",
        "kind": "Namespace",
        "name": namespace,
        "controller": True,
        "blockOwnerDeletion": True,
    }
    if namespace_uid:
        owner["uid"] = namespace_uid
    metadata["ownerReferences"] = [owner]

    return obj


def record_for(obj: Mapping[str, Any]) -> InventoryRecord:
    """Return the inventory identity of a rendered object."""
    metadata = obj.get("metadata") or {}
    return InventoryRecord(
        api_version=obj["apiVersion"],
        kind=obj["kind"],
        name=metadata["name"],
        namespace=metadata["namespace"],
    )
