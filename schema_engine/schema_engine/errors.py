"""Error taxonomy for attribute change propagation.

Every per-rule failure raised inside the engine maps to exactly one
:class:`FailureReason`.  The executor converts these exceptions into
itemized :class:`~schema_engine.models.change.RuleFailure` entries, so
callers always receive a full report instead of an opaque exception.
"""

from __future__ import annotations

from enum import Enum


class FailureReason(str, Enum):
    """Why a rule operation (or the schema commit) failed."""

    NOT_FOUND = "NOT_FOUND"
    CONFLICT = "CONFLICT"
    UNSAFE_REWRITE = "UNSAFE_REWRITE"
    COMPILE_ERROR = "COMPILE_ERROR"
    STALE_PLAN = "STALE_PLAN"
    CANCELLED = "CANCELLED"
    STORE_UNAVAILABLE = "STORE_UNAVAILABLE"


class PropagationError(Exception):
    """Base exception for all propagation engine errors."""

    reason: FailureReason


class NotFoundError(PropagationError):
    """A schema, attribute, or rule referenced by id does not exist."""

    reason = FailureReason.NOT_FOUND


class ConflictError(PropagationError):
    """Optimistic concurrency failure on a rule persist or schema commit."""

    reason = FailureReason.CONFLICT


class UnsafeRewriteError(PropagationError):
    """A rewrite would change rule semantics and needs human review."""

    reason = FailureReason.UNSAFE_REWRITE


class CompileError(PropagationError):
    """The derived representation could not be regenerated."""

    reason = FailureReason.COMPILE_ERROR


class StalePlanError(PropagationError):
    """The rule changed between analysis and apply."""

    reason = FailureReason.STALE_PLAN


class PropagationCancelledError(PropagationError):
    """The caller aborted the apply before this operation ran."""

    reason = FailureReason.CANCELLED


class TransientStoreError(PropagationError):
    """A store call failed for an infrastructure reason and may be retried."""

    reason = FailureReason.STORE_UNAVAILABLE
