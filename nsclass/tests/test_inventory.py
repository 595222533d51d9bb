from __future__ import annotations

import json

import pytest

from nsclass.src.config import INVENTORY_ANNOTATION
from nsclass.src.errors import InventoryError
from nsclass.src.inventory import InventoryRecord, decode_inventory, dedupe, encode_inventory

CM_A = InventoryRecord("v1", "ConfigMap", "a", "team-a")
CM_B = InventoryRecord("v1", "ConfigMap", "b", "team-a")
ROLE = InventoryRecord("rbac.authorization.k8s.io/v1", "Role", "a", "team-a")


def test_missing_annotation_means_empty_inventory() -> None:
    assert decode_inventory(None) == []
    assert decode_inventory({}) == []
    assert decode_inventory({INVENTORY_ANNOTATION: ""}) == []


def test_decode_reads_records_in_order() -> None:
    raw = json.dumps([CM_B.to_dict(), ROLE.to_dict()])

    assert decode_inventory({INVENTORY_ANNOTATION: raw}) == [CM_B, ROLE]


def test_decode_drops_duplicate_entries() -> None:
    raw = json.dumps([CM_A.to_dict(), CM_B.to_dict(), CM_A.to_dict()])

    assert decode_inventory({INVENTORY_ANNOTATION: raw}) == [CM_A, CM_B]


@pytest.mark.parametrize(
    "raw",
    [
        "not json",
        '{"apiVersion": "v1"}',
        '[{"apiVersion": "v1", "kind": "ConfigMap", "name": "a"}]',
        '[{"apiVersion": "v1", "kind": "", "name": "a", "namespace": "team-a"}]',
        "[42]",
    ],
)
def test_decode_rejects_malformed_annotation(raw: str) -> None:
    with pytest.raises(InventoryError) as exc_info:
        decode_inventory({INVENTORY_ANNOTATION: raw})

    assert exc_info.value.phase == "read-inventory"


def test_records_with_same_name_but_different_kind_are_distinct() -> None:
    assert CM_A != ROLE
    assert dedupe([CM_A, ROLE, CM_A]) == [CM_A, ROLE]


def test_encode_empty_inventory_returns_none() -> None:
    assert encode_inventory([]) is None


def test_encode_is_compact_json_without_duplicates() -> None:
    encoded = encode_inventory([CM_A, CM_A, ROLE])

    assert encoded is not None
    assert " " not in encoded
    assert json.loads(encoded) == [CM_A.to_dict(), ROLE.to_dict()]


def test_encoded_inventory_decodes_to_same_records() -> None:
    encoded = encode_inventory([ROLE, CM_B])

    assert decode_inventory({INVENTORY_ANNOTATION: encoded or ""}) == [ROLE, CM_B]


def test_record_str_names_kind_and_location() -> None:
    assert str(CM_A) == "v1/ConfigMap team-a/a"
