"""
Scan and dish status lifecycles.

Both lifecycles are closed enumerations with a central transition table;
callers go through `scan_transition` / `dish_transition` and never write a
status field directly.
"""

from __future__ import annotations

import datetime
from enum import Enum
from typing import Any, Dict, FrozenSet, Mapping

from .errors import InvalidTransitionError


class ScanStatus(str, Enum):
    PENDING = "pending"
    UPLOADING = "uploading"
    PROCESSING = "processing"
    EXTRACTING = "extracting"
    GENERATING = "generating"
    COMPLETED = "completed"
    FAILED = "failed"


class DishImageStatus(str, Enum):
    PENDING = "pending"
    QUEUED = "queued"
    GENERATING = "generating"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"


SCAN_TRANSITIONS: Mapping[ScanStatus, FrozenSet[ScanStatus]] = {
    ScanStatus.PENDING: frozenset({ScanStatus.UPLOADING, ScanStatus.FAILED}),
    ScanStatus.UPLOADING: frozenset({ScanStatus.PROCESSING, ScanStatus.FAILED}),
    ScanStatus.PROCESSING: frozenset({ScanStatus.EXTRACTING, ScanStatus.FAILED}),
    ScanStatus.EXTRACTING: frozenset({ScanStatus.GENERATING, ScanStatus.COMPLETED, ScanStatus.FAILED}),
    ScanStatus.GENERATING: frozenset({ScanStatus.COMPLETED, ScanStatus.FAILED}),
    ScanStatus.COMPLETED: frozenset(),
    ScanStatus.FAILED: frozenset(),
}

# Queuing more images on a finished scan puts it back to work.
SCAN_REOPEN_TRANSITIONS: Mapping[ScanStatus, FrozenSet[ScanStatus]] = {
    ScanStatus.COMPLETED: frozenset({ScanStatus.GENERATING}),
}

DISH_TRANSITIONS: Mapping[DishImageStatus, FrozenSet[DishImageStatus]] = {
    DishImageStatus.PENDING: frozenset({DishImageStatus.QUEUED, DishImageStatus.SKIPPED}),
    DishImageStatus.QUEUED: frozenset(
        {DishImageStatus.GENERATING, DishImageStatus.SKIPPED, DishImageStatus.FAILED}
    ),
    DishImageStatus.GENERATING: frozenset(
        {DishImageStatus.COMPLETED, DishImageStatus.FAILED, DishImageStatus.SKIPPED}
    ),
    DishImageStatus.COMPLETED: frozenset(),
    DishImageStatus.FAILED: frozenset({DishImageStatus.QUEUED}),
    DishImageStatus.SKIPPED: frozenset({DishImageStatus.QUEUED}),
}

TERMINAL_SCAN_STATUSES = frozenset({ScanStatus.COMPLETED, ScanStatus.FAILED})
TERMINAL_DISH_STATUSES = frozenset(
    {DishImageStatus.COMPLETED, DishImageStatus.FAILED, DishImageStatus.SKIPPED}
)

# Dishes the accountant may (re)queue.
BULK_QUEUEABLE = frozenset({DishImageStatus.PENDING, DishImageStatus.SKIPPED})
SINGLE_QUEUEABLE = frozenset({DishImageStatus.PENDING, DishImageStatus.SKIPPED, DishImageStatus.FAILED})

# Scan states in which extraction has finished.
POST_EXTRACTION_STATUSES = frozenset({ScanStatus.GENERATING, ScanStatus.COMPLETED, ScanStatus.FAILED})

_FIXED_PROGRESS: Mapping[ScanStatus, float] = {
    ScanStatus.PENDING: 0.0,
    ScanStatus.UPLOADING: 10.0,
    ScanStatus.PROCESSING: 25.0,
    ScanStatus.EXTRACTING: 50.0,
    ScanStatus.COMPLETED: 100.0,
    ScanStatus.FAILED: 0.0,
}


def _utcnow() -> datetime.datetime:
    return datetime.datetime.now(datetime.timezone.utc)


def is_terminal(status: ScanStatus) -> bool:
    return ScanStatus(status) in TERMINAL_SCAN_STATUSES


def can_transition_scan(current: ScanStatus, target: ScanStatus, *, reopen: bool = False) -> bool:
    current = ScanStatus(current)
    target = ScanStatus(target)
    if target in SCAN_TRANSITIONS[current]:
        return True
    return reopen and target in SCAN_REOPEN_TRANSITIONS.get(current, frozenset())


def scan_transition(
    current: ScanStatus,
    target: ScanStatus,
    *,
    reopen: bool = False,
    status_message: Any = None,
    error_message: Any = None,
) -> Dict[str, Any]:
    """Validate a scan status change and return the fields to patch.

    Raises InvalidTransitionError for anything outside the table.
    """
    if not can_transition_scan(current, target, reopen=reopen):
        raise InvalidTransitionError(
            f"Illegal scan transition {ScanStatus(current).value} -> {ScanStatus(target).value}"
        )
    target = ScanStatus(target)
    patch: Dict[str, Any] = {"status": target}
    if status_message is not None:
        patch["status_message"] = status_message
    if error_message is not None:
        patch["error_message"] = error_message
    if target == ScanStatus.COMPLETED:
        patch["completed_at"] = _utcnow()
    elif target == ScanStatus.GENERATING:
        patch["completed_at"] = None
    return patch


def dish_transition(current: DishImageStatus, target: DishImageStatus) -> Dict[str, Any]:
    current = DishImageStatus(current)
    target = DishImageStatus(target)
    if target not in DISH_TRANSITIONS[current]:
        raise InvalidTransitionError(f"Illegal dish transition {current.value} -> {target.value}")
    patch: Dict[str, Any] = {"image_status": target}
    if target == DishImageStatus.COMPLETED:
        patch["image_generated_at"] = _utcnow()
    return patch


def can_claim(status: DishImageStatus) -> bool:
    """True when a worker may start generating for a dish in this state."""
    return DishImageStatus(status) == DishImageStatus.QUEUED


def scan_progress(status: ScanStatus, images_generated: int, images_requested: int) -> float:
    """Progress percentage for a scan; pure, recomputed on every read."""
    status = ScanStatus(status)
    if status == ScanStatus.GENERATING:
        if images_requested <= 0:
            return 60.0
        ratio = min(1.0, max(0.0, images_generated / images_requested))
        return 60.0 + 40.0 * ratio
    return _FIXED_PROGRESS[status]
