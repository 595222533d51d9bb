from __future__ import annotations

import json
from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from typing import Any

from nsclass.src.config import INVENTORY_ANNOTATION
from nsclass.src.errors import InventoryError

_FIELDS = ("apiVersion", "kind", "name", "namespace")


@dataclass(frozen=True)
class InventoryRecord:
    """Identity of one object previously applied into a namespace.

    Equality and hashing use all four fields, which is the key the pruner
    compares old and new inventories by.
    """

    api_version: str
    kind: str
    name: str
    namespace: str

    def to_dict(self) -> dict[str, str]:
        return {
            "apiVersion": self.api_version,
            "kind": self.kind,
            "name": self.name,
            "namespace": self.namespace,
        }

    def __str__(self) -> str:
        return f"{self.api_version}/{self.kind} {self.namespace}/{self.name}"


def dedupe(records: Iterable[InventoryRecord]) -> list[InventoryRecord]:
    """Drop repeated records, keeping the first occurrence and the original order."""
    seen: set[InventoryRecord] = set()
    result: list[InventoryRecord] = []
    for record in records:
        if record in seen:
            continue
        seen.add(record)
        result.append(record)
    return result


def _record_from_entry(index: int, entry: Any) -> InventoryRecord:
    if not isinstance(entry, dict):
        raise InventoryError(f"inventory entry {index} is not an object")
    values: list[str] = []
    for field in _FIELDS:
        value = entry.get(field)
        if not isinstance(value, str) or not value:
            raise InventoryError(f"inventory entry {index} has no valid {field!r}")
        values.append(value)
    return InventoryRecord(*values)


def decode_inventory(annotations: Mapping[str, str] | None) -> list[InventoryRecord]:
    """Read the inventory annotation from a namespace's annotations.

    A missing key (or an empty value) means the controller owns nothing in the
    namespace.  Anything else must be a JSON array of
    ``{apiVersion, kind, name, namespace}`` objects.
    """
    raw = (annotations or {}).get(INVENTORY_ANNOTATION)
    if not raw:
        return []

    try:
        document = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise InventoryError(f"inventory annotation is not valid JSON: {exc}") from exc
    if not isinstance(document, list):
        raise InventoryError("inventory annotation must be a JSON array")

    return dedupe(_record_from_entry(i, entry) for i, entry in enumerate(document))


def encode_inventory(records: Iterable[InventoryRecord]) -> str | None:
    """Serialize records for the inventory annotation.

    Returns ``None`` for an empty inventory: the annotation key is removed
    rather than written as an empty value.
    """
    unique = dedupe(records)
    if not unique:
        return None
    return json.dumps([record.to_dict() for record in unique], separators=(",", ":"))
