from __future__ import annotations

import logging
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from typing import Any

from kubernetes.client import ApiException

from nsclass.src.config import CLASS_LABEL

LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True, order=True)
class ReconcileRequest:
    """Work-queue key naming one cluster-scoped object to reconcile."""

    name: str


def class_selector(class_name: str) -> str:
    """Label selector matching every namespace attached to *class_name*."""
    return f"{CLASS_LABEL}={class_name}"


def requests_for_class(
    class_obj: Mapping[str, Any],
    list_namespaces: Callable[[str], list[dict[str, Any]]],
) -> list[ReconcileRequest]:
    """Map one NamespaceClass event to a reconcile request per attached namespace.

    Namespaces are found with a label-selector list query, so editing a
    class's templates reaches every attached namespace without namespaces
    polling their class.  A failed list is logged and produces no requests.
    """
    class_name = (class_obj.get("metadata") or {}).get("name")
    if not class_name:
        return []

    try:
        namespaces = list_namespaces(class_selector(class_name))
    except ApiException as exc:
        LOGGER.error(
            "Failed to list namespaces for NamespaceClass %s: %s",
            class_name,
            exc.reason,
            extra={"class": class_name},
        )
        return []

    names = {(ns.get("metadata") or {}).get("name") for ns in namespaces}
    return sorted(ReconcileRequest(name) for name in names if name)
