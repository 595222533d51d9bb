from __future__ import annotations

import logging

import pytest

from nsclass.src.class_reconciler import ClassPhase, ClassReconciler, class_phase, deletion_policy
from nsclass.src.config import CLASS_FINALIZER, CLASS_LABEL
from nsclass.src.errors import DetachError, FinalizerError, ReconcileError
from nsclass.src.namespace_reconciler import NamespaceReconciler, ReconcileOutcome


def _labels(store, name: str) -> dict[str, str]:
    return store.namespaces[name]["metadata"]["labels"]


def test_phase_of_missing_class_is_removed() -> None:
    assert class_phase(None) is ClassPhase.REMOVED


def test_phase_of_live_class_is_active(store) -> None:
    assert class_phase(store.add_class("basic")) is ClassPhase.ACTIVE


def test_phase_of_deleting_class_follows_policy(store) -> None:
    cascade = store.add_class("a", finalizers=[CLASS_FINALIZER], deleting=True)
    orphan = store.add_class(
        "b", deletion_policy="Orphan", finalizers=[CLASS_FINALIZER], deleting=True
    )

    assert class_phase(cascade) is ClassPhase.TERMINATING_CASCADE
    assert class_phase(orphan) is ClassPhase.TERMINATING_ORPHAN


def test_phase_of_deleting_class_without_finalizer_is_removed(store) -> None:
    assert class_phase(store.add_class("a", deleting=True)) is ClassPhase.REMOVED


def test_deletion_policy_defaults_to_cascade() -> None:
    assert deletion_policy({"spec": {}}) == "Cascade"
    assert deletion_policy({"spec": {"deletionPolicy": "Orphan"}}) == "Orphan"


def test_active_class_gets_finalizer(store) -> None:
    store.add_class("basic", finalizers=["other/finalizer"])

    phase = ClassReconciler(store).reconcile("basic")

    assert phase is ClassPhase.ACTIVE
    assert store.classes["basic"]["metadata"]["finalizers"] == [
        "other/finalizer",
        CLASS_FINALIZER,
    ]


def test_active_class_with_finalizer_is_not_written(store) -> None:
    store.add_class("basic", finalizers=[CLASS_FINALIZER])

    ClassReconciler(store).reconcile("basic")

    assert store.finalizer_writes == []


def test_missing_class_is_a_no_op(store) -> None:
    assert ClassReconciler(store).reconcile("ghost") is ClassPhase.REMOVED
    assert store.finalizer_writes == []


def test_cascade_detaches_only_matching_namespaces(store) -> None:
    store.add_class("basic", finalizers=[CLASS_FINALIZER], deleting=True)
    store.add_namespace("team-b", labels={CLASS_LABEL: "basic", "team": "b"})
    store.add_namespace("team-a", labels={CLASS_LABEL: "basic"})
    store.add_namespace("team-c", labels={CLASS_LABEL: "strict"})

    phase = ClassReconciler(store).reconcile("basic")

    assert phase is ClassPhase.TERMINATING_CASCADE
    assert [patch["name"] for patch in store.patches] == ["team-a", "team-b"]
    assert _labels(store, "team-b") == {"team": "b"}
    assert CLASS_LABEL not in _labels(store, "team-a")
    assert _labels(store, "team-c") == {CLASS_LABEL: "strict"}
    assert "basic" not in store.classes


def test_cascade_detach_is_conditional_on_resource_version(store) -> None:
    store.add_class("basic", finalizers=[CLASS_FINALIZER], deleting=True)
    namespace = store.add_namespace("team-a", labels={CLASS_LABEL: "basic"})
    read_version = namespace["metadata"]["resourceVersion"]

    ClassReconciler(store).reconcile("basic")

    assert store.patches[0]["resource_version"] == read_version
    assert store.patches[0]["labels"] == {CLASS_LABEL: None}


def test_cascade_then_namespace_reconcile_removes_objects(store, make_config_map) -> None:
    store.add_class("basic", [make_config_map("a")], finalizers=[CLASS_FINALIZER])
    store.add_namespace("team-a", labels={CLASS_LABEL: "basic"})
    namespaces = NamespaceReconciler(store)
    namespaces.reconcile("team-a")
    assert store.object_names("team-a") == {"a"}

    store.classes["basic"]["metadata"]["deletionTimestamp"] = "2026-01-01T00:00:00Z"
    ClassReconciler(store).reconcile("basic")

    assert namespaces.reconcile("team-a") is ReconcileOutcome.CLEANED
    assert store.object_names("team-a") == set()


def test_orphan_leaves_namespaces_untouched(store) -> None:
    store.add_class(
        "basic", deletion_policy="Orphan", finalizers=[CLASS_FINALIZER], deleting=True
    )
    store.add_namespace("team-a", labels={CLASS_LABEL: "basic"})

    phase = ClassReconciler(store).reconcile("basic")

    assert phase is ClassPhase.TERMINATING_ORPHAN
    assert store.patches == []
    assert _labels(store, "team-a") == {CLASS_LABEL: "basic"}
    assert "basic" not in store.classes


def test_unknown_policy_behaves_like_orphan_and_warns(store, caplog) -> None:
    store.add_class(
        "basic", deletion_policy="Shred", finalizers=[CLASS_FINALIZER], deleting=True
    )
    store.add_namespace("team-a", labels={CLASS_LABEL: "basic"})

    with caplog.at_level(logging.WARNING):
        phase = ClassReconciler(store).reconcile("basic")

    assert phase is ClassPhase.TERMINATING_ORPHAN
    assert store.patches == []
    assert "Unknown deletionPolicy" in caplog.text


def test_partial_detach_keeps_finalizer_and_resumes(store) -> None:
    store.add_class("basic", finalizers=[CLASS_FINALIZER], deleting=True)
    store.add_namespace("team-a", labels={CLASS_LABEL: "basic"})
    store.add_namespace("team-b", labels={CLASS_LABEL: "basic"})
    store.fail_patch["team-b"] = 500
    reconciler = ClassReconciler(store)

    with pytest.raises(DetachError) as exc_info:
        reconciler.reconcile("basic")

    assert exc_info.value.phase == "detach"
    assert CLASS_LABEL not in _labels(store, "team-a")
    assert store.classes["basic"]["metadata"]["finalizers"] == [CLASS_FINALIZER]

    store.fail_patch.clear()
    reconciler.reconcile("basic")

    assert CLASS_LABEL not in _labels(store, "team-b")
    assert "basic" not in store.classes


def test_detach_skips_namespace_deleted_meanwhile(store) -> None:
    store.add_class("basic", finalizers=[CLASS_FINALIZER], deleting=True)
    store.add_namespace("team-a", labels={CLASS_LABEL: "basic"})
    store.fail_patch["team-a"] = 404

    assert ClassReconciler(store).detach_namespaces("basic") == []


def test_detach_list_failure_raises(store) -> None:
    store.fail_list = 500

    with pytest.raises(DetachError):
        ClassReconciler(store).detach_namespaces("basic")


def test_finalizer_write_failure_raises(store) -> None:
    store.add_class("basic")
    store.fail_finalizers = 500

    with pytest.raises(FinalizerError):
        ClassReconciler(store).reconcile("basic")


def test_finalizer_write_on_vanished_class_is_ignored(store) -> None:
    store.add_class("basic")
    store.fail_finalizers = 404

    assert ClassReconciler(store).reconcile("basic") is ClassPhase.ACTIVE


def test_class_read_failure_carries_phase(store) -> None:
    store.fail_get_class = 500

    with pytest.raises(ReconcileError) as exc_info:
        ClassReconciler(store).reconcile("basic")

    assert exc_info.value.phase == "get-class"
