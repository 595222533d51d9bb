from __future__ import annotations

import logging
from collections.abc import Iterable
from typing import Any, Protocol

from kubernetes.client import ApiException
from kubernetes.dynamic.exceptions import ResourceNotFoundError

from nsclass.src.config import CONTROLLER_NAME
from nsclass.src.errors import ApplyError, PruneError
from nsclass.src.inventory import InventoryRecord
from nsclass.src.render import record_for

LOGGER = logging.getLogger(__name__)


class ObjectStore(Protocol):
    def apply(self, obj: dict[str, Any], field_manager: str, force: bool = True) -> dict[str, Any]:
        ...

    def delete(self, record: InventoryRecord) -> bool:
        ...


def apply_object(store: ObjectStore, obj: dict[str, Any]) -> InventoryRecord:
    """Server-side apply one rendered object and return its inventory record.

    The controller owns every field it sets and wins field-manager conflicts.
    Failures are wrapped in :class:`ApplyError` and not retried here.
    """
    record = record_for(obj)
    try:
        store.apply(obj, field_manager=CONTROLLER_NAME, force=True)
    except ApiException as exc:
        raise ApplyError(f"failed to apply {record}: {exc.status} {exc.reason}") from exc
    except ResourceNotFoundError as exc:
        raise ApplyError(f"failed to apply {record}: kind is not served by the API") from exc
    LOGGER.debug("Applied %s", record)
    return record


def prune(
    store: ObjectStore,
    old: Iterable[InventoryRecord],
    keep: Iterable[InventoryRecord],
) -> list[InventoryRecord]:
    """Delete every record of *old* that is not in *keep*.

    Objects that are already gone count as pruned.  The first other failure
    aborts the prune with :class:`PruneError`; records before it stay deleted,
    which is safe because the caller only rewrites the inventory after a
    complete prune.
    """
    keep_set = set(keep)
    pruned: list[InventoryRecord] = []
    for record in old:
        if record in keep_set:
            continue
        LOGGER.info("Pruning %s", record)
        try:
            deleted = store.delete(record)
        except ApiException as exc:
            raise PruneError(f"failed to delete {record}: {exc.status} {exc.reason}") from exc
        if not deleted:
            LOGGER.debug("%s was already gone", record)
        pruned.append(record)
    return pruned
