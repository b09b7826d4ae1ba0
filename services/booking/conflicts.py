"""
services/booking/conflicts.py
Detect existing bookings that clash with a candidate.

A clash needs both an overlapping time window and something in common:
at least one participant, or at least one identical resource (kind + id).
"""

from dataclasses import dataclass
from typing import Iterable, List, Optional
from uuid import UUID

from shared.utils.time_window import overlaps


@dataclass(frozen=True)
class Conflict:
    booking: object
    shared_participants: frozenset
    shared_resources: frozenset


def find_conflicts(
    candidate,
    existing_bookings: Iterable,
    exclude_id: Optional[UUID] = None,
) -> List[Conflict]:
    """
    Return every existing booking that conflicts with `candidate`,
    ordered by start time.

    Bookings are anything exposing `id`, `window`, `participant_ids`
    and `resource_refs` (ORM Booking instances in practice).
    Pass `exclude_id` when re-checking an update against its own row.
    """
    window = candidate.window
    participants = candidate.participant_ids
    resources = candidate.resource_refs

    conflicts = []
    for other in existing_bookings:
        if exclude_id is not None and other.id == exclude_id:
            continue
        if not overlaps(window, other.window):
            continue
        shared_participants = participants & other.participant_ids
        shared_resources = resources & other.resource_refs
        if shared_participants or shared_resources:
            conflicts.append(Conflict(other, shared_participants, shared_resources))

    conflicts.sort(key=lambda c: (c.booking.window.start, str(c.booking.id)))
    return conflicts
