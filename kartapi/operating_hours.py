"""Fixed registry of operating-hours display slots."""
from __future__ import annotations

import logging
from typing import Dict, List, Optional, Tuple

from .database import Database
from .errors import NotFoundError, ValidationError
from .models import SLOT_RANGES, Group, OperatingHour

logger = logging.getLogger("kartapi.operating_hours")

MAX_LABEL_LENGTH = 200

# (group, slot, label) seeded at provisioning time.
DEFAULT_SLOTS: Tuple[Tuple[Group, int, str], ...] = (
    (Group.HEADER, 1, "Terça - Sexta: 15:30 às 23:00"),
    (Group.HEADER, 2, "Sábados, Domingos e Feriados: 10:00 às 22:00"),
    (Group.FOOTER, 3, "Terça à Sexta<br>15:30 às 23:00"),
    (Group.FOOTER, 4, "Sábados<br>10:00h às 22:00h"),
    (Group.FOOTER, 5, "Domingos e Feriados<br>10:00h às 22:00h"),
    (Group.FOOTER, 6, "Terça à Sexta<br>15:30 às 17h"),
    (Group.FOOTER, 7, "Sábados, Domingos e Feriados<br>10:00 às 14:30"),
    (Group.FOOTER, 8, "Terça à Sexta<br>17:30h às 22h"),
    (Group.FOOTER, 9, "Sábados, Domingos e Feriados<br>15h às 20:30"),
)


def parse_group(value: str) -> Group:
    try:
        return Group(str(value).strip().lower())
    except ValueError as exc:
        raise ValidationError('Group must be "header" or "footer"') from exc


def validate_slot(group: Group, slot: int) -> None:
    """Reject slot numbers outside the range allowed for ``group``."""

    low, high = SLOT_RANGES[Group(group)]
    if not low <= slot <= high:
        raise ValidationError(
            f"Invalid slot {slot} for group {Group(group).value} (header: 1-2, footer: 1-9)"
        )


def clean_label(label: str) -> str:
    cleaned = (label or "").strip()
    if not cleaned:
        raise ValidationError("Label must not be empty")
    if len(cleaned) > MAX_LABEL_LENGTH:
        raise ValidationError(f"Label must be at most {MAX_LABEL_LENGTH} characters")
    return cleaned


class OperatingHoursRegistry:
    """Read and mutate the pre-seeded header/footer slots."""

    def __init__(self, database: Database) -> None:
        self._db = database

    def add_slot(self, group: Group, slot: int, label: str, visible: bool = True) -> OperatingHour:
        """Insert a slot; only used while provisioning the fixed catalogue."""

        group = Group(group)
        validate_slot(group, slot)
        return self._db.insert_operating_hour(group, slot, clean_label(label), visible)

    def seed(self, *, reset: bool = False) -> int:
        """Provision the default slots; return how many were created."""

        if reset:
            self._db.clear_operating_hours()
            logger.info("Operating hours cleared before reseeding")
        elif self._db.count_operating_hours() > 0:
            logger.info("Operating hours already seeded")
            return 0

        for group, slot, label in DEFAULT_SLOTS:
            self.add_slot(group, slot, label)
        logger.info("Seeded %d operating-hour slots", len(DEFAULT_SLOTS))
        return len(DEFAULT_SLOTS)

    def grouped(self, *, visible_only: bool = False) -> Dict[Group, List[OperatingHour]]:
        grouped: Dict[Group, List[OperatingHour]] = {Group.HEADER: [], Group.FOOTER: []}
        for hour in self._db.list_operating_hours(visible_only=visible_only):
            grouped[hour.group].append(hour)
        return grouped

    def by_group(self, group: Group) -> List[OperatingHour]:
        return self._db.list_operating_hours(group=Group(group))

    def get(self, hour_id: int) -> OperatingHour:
        hour = self._db.get_operating_hour(hour_id)
        if hour is None:
            raise NotFoundError("Operating hour not found")
        return hour

    def update(self, hour_id: int, *, label: Optional[str] = None, visible: Optional[bool] = None) -> OperatingHour:
        cleaned = clean_label(label) if label is not None else None
        updated = self._db.update_operating_hour(hour_id, label=cleaned, visible=visible)
        if updated is None:
            raise NotFoundError("Operating hour not found")
        return updated

    def toggle_visibility(self, hour_id: int) -> OperatingHour:
        current = self.get(hour_id)
        return self.update(hour_id, visible=not current.visible)


__all__ = [
    "DEFAULT_SLOTS",
    "MAX_LABEL_LENGTH",
    "OperatingHoursRegistry",
    "clean_label",
    "parse_group",
    "validate_slot",
]
