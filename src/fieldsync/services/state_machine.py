"""
Equipment status state machine.

Defines the legal status transitions and computes the snapshot each one
produces. ``status``, ``job_id`` and ``location_id`` only ever change
together through a transition, and every produced snapshot is checked
against the status invariant:

- deployed  <=> job_id is set
- available  => job_id is empty and location_id is set
- maintenance / red-tagged / retired => job_id is empty

A deployed unit moving to an administrative status is planned as two
steps (implicit return, then the administrative change) that the caller
writes atomically.
"""

import logging
from dataclasses import dataclass
from typing import List, Optional

from fieldsync.core.exceptions import InvalidTransition, ValidationFailed
from fieldsync.db.enums import EquipmentStatus, HistoryAction
from fieldsync.schemas.equipment import EquipmentSnapshot

logger = logging.getLogger(__name__)

ADMINISTRATIVE_STATUSES = frozenset({
    EquipmentStatus.MAINTENANCE,
    EquipmentStatus.RED_TAGGED,
    EquipmentStatus.RETIRED,
})

LEGAL_TRANSITIONS = frozenset(
    {
        (EquipmentStatus.AVAILABLE, EquipmentStatus.DEPLOYED),
        (EquipmentStatus.DEPLOYED, EquipmentStatus.AVAILABLE),
    }
    | {(EquipmentStatus.AVAILABLE, s) for s in ADMINISTRATIVE_STATUSES}
    | {(s, EquipmentStatus.AVAILABLE) for s in ADMINISTRATIVE_STATUSES}
)

# Reachable from deployed only through an implicit return first
COMBINED_TRANSITIONS = frozenset({(EquipmentStatus.DEPLOYED, s) for s in ADMINISTRATIVE_STATUSES})

STATUS_ALIASES = {
    "active": EquipmentStatus.AVAILABLE,
    "in service": EquipmentStatus.AVAILABLE,
    "in-use": EquipmentStatus.DEPLOYED,
    "in use": EquipmentStatus.DEPLOYED,
    "out of service": EquipmentStatus.MAINTENANCE,
    "repair": EquipmentStatus.MAINTENANCE,
    "repairs": EquipmentStatus.MAINTENANCE,
    "red tagged": EquipmentStatus.RED_TAGGED,
    "redtagged": EquipmentStatus.RED_TAGGED,
    "red_tagged": EquipmentStatus.RED_TAGGED,
    "decommissioned": EquipmentStatus.RETIRED,
    "scrapped": EquipmentStatus.RETIRED,
}


def normalize_status(value) -> EquipmentStatus:
    """
    Parse a status value, accepting legacy spellings.

    Raises:
        ValidationFailed: empty, non-string or unknown status
    """
    if isinstance(value, EquipmentStatus):
        return value
    if not isinstance(value, str) or not value.strip():
        raise ValidationFailed("Equipment status cannot be empty")

    normalized = value.strip().lower()
    try:
        return EquipmentStatus(normalized)
    except ValueError:
        pass
    if normalized in STATUS_ALIASES:
        return STATUS_ALIASES[normalized]

    valid = ", ".join(s.value for s in EquipmentStatus)
    raise ValidationFailed(f'Invalid equipment status: "{value}". Valid statuses are: {valid}')


def check_invariant(snapshot: EquipmentSnapshot) -> None:
    """
    Raise ValidationFailed when a snapshot breaks the status invariant.
    """
    status = snapshot.status
    if status == EquipmentStatus.DEPLOYED and not snapshot.job_id:
        raise ValidationFailed(f"Equipment {snapshot.id} is deployed without a job")
    if status != EquipmentStatus.DEPLOYED and snapshot.job_id:
        raise ValidationFailed(
            f"Equipment {snapshot.id} has job {snapshot.job_id} while {status.value}"
        )
    if status == EquipmentStatus.AVAILABLE and not snapshot.location_id:
        raise ValidationFailed(f"Equipment {snapshot.id} is available without a storage location")
    if status != EquipmentStatus.RED_TAGGED and snapshot.red_tag_reason:
        raise ValidationFailed(f"Equipment {snapshot.id} carries a red-tag reason while {status.value}")


@dataclass(frozen=True)
class Transition:
    """One applied status change: the snapshot before and after."""

    before: EquipmentSnapshot
    after: EquipmentSnapshot
    action: HistoryAction
    job_id: Optional[str] = None
    notes: Optional[str] = None

    @property
    def from_status(self) -> EquipmentStatus:
        return self.before.status

    @property
    def to_status(self) -> EquipmentStatus:
        return self.after.status


class EquipmentStateMachine:
    """Plans status transitions for equipment snapshots."""

    @staticmethod
    def is_legal(from_status: EquipmentStatus, to_status: EquipmentStatus) -> bool:
        return (from_status, to_status) in LEGAL_TRANSITIONS

    @staticmethod
    def _finish(transition: Transition) -> Transition:
        check_invariant(transition.after)
        return transition

    @classmethod
    def allocate(
        cls, unit: EquipmentSnapshot, job_id: str, notes: Optional[str] = None
    ) -> Transition:
        """available -> deployed. The storage location is kept as the unit's home."""
        if not job_id:
            raise ValidationFailed("Allocation requires a job id")
        if not cls.is_legal(unit.status, EquipmentStatus.DEPLOYED):
            raise InvalidTransition(unit.status.value, EquipmentStatus.DEPLOYED.value)
        after = unit.model_copy(update={"status": EquipmentStatus.DEPLOYED, "job_id": job_id})
        return cls._finish(Transition(unit, after, HistoryAction.ALLOCATE, job_id=job_id, notes=notes))

    @classmethod
    def release(
        cls, unit: EquipmentSnapshot, location_id: Optional[str], notes: Optional[str] = None
    ) -> Transition:
        """deployed -> available, back to a storage location."""
        if unit.status != EquipmentStatus.DEPLOYED:
            raise InvalidTransition(unit.status.value, EquipmentStatus.AVAILABLE.value)
        if not unit.job_id:
            raise InvalidTransition(
                unit.status.value, EquipmentStatus.AVAILABLE.value, "equipment has no job to return from"
            )
        if not location_id:
            raise ValidationFailed(f"No storage location to return equipment {unit.id} to")
        after = unit.model_copy(
            update={"status": EquipmentStatus.AVAILABLE, "job_id": None, "location_id": location_id}
        )
        return cls._finish(
            Transition(unit, after, HistoryAction.RETURN, job_id=unit.job_id, notes=notes)
        )

    @classmethod
    def administrative(
        cls,
        unit: EquipmentSnapshot,
        to_status: EquipmentStatus,
        reason: Optional[str] = None,
        photo: Optional[str] = None,
        location_id: Optional[str] = None,
        notes: Optional[str] = None,
    ) -> Transition:
        """available <-> maintenance / red-tagged / retired."""
        from_status = unit.status
        if from_status == EquipmentStatus.DEPLOYED or to_status == EquipmentStatus.DEPLOYED:
            raise InvalidTransition(from_status.value, to_status.value)
        if not cls.is_legal(from_status, to_status):
            raise InvalidTransition(from_status.value, to_status.value)

        update = {"status": to_status}
        if to_status == EquipmentStatus.RED_TAGGED:
            if not reason or not reason.strip():
                raise ValidationFailed("Red-tagging equipment requires a reason")
            update["red_tag_reason"] = reason.strip()
            update["red_tag_photo"] = photo
        elif from_status == EquipmentStatus.RED_TAGGED:
            update["red_tag_reason"] = None
            update["red_tag_photo"] = None
        if location_id:
            update["location_id"] = location_id

        after = unit.model_copy(update=update)
        return cls._finish(
            Transition(unit, after, HistoryAction.STATUS_CHANGE, notes=notes or reason)
        )

    @classmethod
    def plan(
        cls,
        unit: EquipmentSnapshot,
        to_status: EquipmentStatus,
        *,
        job_id: Optional[str] = None,
        location_id: Optional[str] = None,
        reason: Optional[str] = None,
        photo: Optional[str] = None,
        notes: Optional[str] = None,
    ) -> List[Transition]:
        """
        Plan the steps that take ``unit`` to ``to_status``.

        Returns one step for direct transitions and two for a deployed unit
        going to an administrative status (return, then the change).

        Raises:
            InvalidTransition: the pair is not in the transition table
            ValidationFailed: missing job, location or red-tag reason
        """
        from_status = unit.status
        if to_status == EquipmentStatus.DEPLOYED:
            return [cls.allocate(unit, job_id, notes=notes)]
        if from_status == EquipmentStatus.DEPLOYED and to_status == EquipmentStatus.AVAILABLE:
            return [cls.release(unit, location_id, notes=notes)]
        if (from_status, to_status) in COMBINED_TRANSITIONS:
            returned = cls.release(unit, location_id, notes=notes)
            changed = cls.administrative(
                returned.after, to_status, reason=reason, photo=photo, notes=notes
            )
            logger.debug(
                f"Planned combined transition for {unit.id}: "
                f"{from_status.value} -> available -> {to_status.value}"
            )
            return [returned, changed]
        return [
            cls.administrative(
                unit, to_status, reason=reason, photo=photo, location_id=location_id, notes=notes
            )
        ]
