from __future__ import annotations


class ReconcileError(RuntimeError):
    """Base class for failures that end a reconcile pass and should be retried.

    ``phase`` names the step that failed and is used as the ``phase`` label on
    the reconcile error counter.
    """

    phase = "reconcile"

    def __init__(self, message: str, *, phase: str | None = None) -> None:
        super().__init__(message)
        if phase is not None:
            self.phase = phase


class InventoryError(ReconcileError):
    """Raised when the inventory annotation cannot be decoded."""

    phase = "read-inventory"


class MalformedTemplateError(ReconcileError):
    """Raised when a template payload is not a well-formed object."""

    phase = "render"


class ApplyError(ReconcileError):
    phase = "apply-resources"


class PruneError(ReconcileError):
    phase = "prune"


class PersistError(ReconcileError):
    phase = "persist-inventory"


class DetachError(ReconcileError):
    """Raised when a class label cannot be removed during cascade deletion."""

    phase = "detach"


class FinalizerError(ReconcileError):
    phase = "finalizer"
