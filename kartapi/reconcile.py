"""Replace-set bulk updates for classifications and operating hours.

The caller submits the full desired state. Stored records whose id is missing
from the submission are deleted, submitted records carrying a known id are
updated when they differ. Records without an id are matched to a stored record
by category and driver name and created only when nothing matches, so
submitting the same state again changes nothing, with or without ids.

Item-level failures are collected and reported; they never abort the batch.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Sequence, Set, Tuple, TypeVar

from .errors import DuplicateDriverError, KartError, NotFoundError, ValidationError
from .models import Category, Classification, OperatingHour
from .operating_hours import OperatingHoursRegistry, clean_label
from .ranking import RankingEngine, parse_category

logger = logging.getLogger("kartapi.reconcile")

T = TypeVar("T")


@dataclass(frozen=True)
class ClassificationItem:
    """Desired state for one classification; ``id`` is ``None`` for new drivers."""

    category: Category
    driver_name: str
    points: float
    id: Optional[int] = None


@dataclass(frozen=True)
class OperatingHourItem:
    id: int
    label: Optional[str] = None
    visible: Optional[bool] = None


@dataclass(frozen=True)
class ItemError:
    error: str
    id: Optional[int] = None
    driver_name: Optional[str] = None


@dataclass
class ClassificationReconcileResult:
    created: List[Classification] = field(default_factory=list)
    updated: List[Classification] = field(default_factory=list)
    unchanged: List[Classification] = field(default_factory=list)
    deleted: List[int] = field(default_factory=list)
    errors: List[ItemError] = field(default_factory=list)

    @property
    def total(self) -> Dict[str, int]:
        return {
            "created": len(self.created),
            "updated": len(self.updated),
            "unchanged": len(self.unchanged),
            "deleted": len(self.deleted),
            "errors": len(self.errors),
        }


@dataclass
class OperatingHoursReconcileResult:
    updated: List[OperatingHour] = field(default_factory=list)
    unchanged: List[OperatingHour] = field(default_factory=list)
    errors: List[ItemError] = field(default_factory=list)

    @property
    def total(self) -> Dict[str, int]:
        return {
            "updated": len(self.updated),
            "unchanged": len(self.unchanged),
            "errors": len(self.errors),
        }


def partition(stored: Iterable[T], incoming_ids: Set[int], key) -> Tuple[List[T], List[T]]:
    """Split ``stored`` into records referenced by ``incoming_ids`` and the rest."""

    keep: List[T] = []
    drop: List[T] = []
    for record in stored:
        (keep if key(record) in incoming_ids else drop).append(record)
    return keep, drop


def _natural_key(item: ClassificationItem) -> Optional[Tuple[Category, str]]:
    try:
        return parse_category(item.category), item.driver_name.strip()
    except ValidationError:
        return None


def _classification_matches(record: Classification, item: ClassificationItem) -> bool:
    return (
        record.category == parse_category(item.category)
        and record.driver_name == item.driver_name.strip()
        and record.points == float(item.points)
    )


def _operating_hour_matches(record: OperatingHour, item: OperatingHourItem) -> bool:
    if item.label is not None and record.label != clean_label(item.label):
        return False
    if item.visible is not None and record.visible != item.visible:
        return False
    return True


def _claim(seen: Set[int], target: Optional[int], noun: str) -> None:
    if target is None:
        return
    if target in seen:
        raise ValidationError(f"{noun} {target} appears more than once in the batch")
    seen.add(target)


class ReconciliationService:
    """Apply desired-state arrays through the ranking engine and the hours registry."""

    def __init__(self, ranking: RankingEngine, hours: OperatingHoursRegistry) -> None:
        self._ranking = ranking
        self._hours = hours

    def reconcile_classifications(self, items: Sequence[ClassificationItem]) -> ClassificationReconcileResult:
        result = ClassificationReconcileResult()
        current = self._ranking.all()

        # Items without an id address the stored record holding the same (category, driver_name).
        by_key = {(record.category, record.driver_name): record.id for record in current}
        targets = [
            item.id if item.id is not None else by_key.get(_natural_key(item))
            for item in items
        ]

        incoming_ids = {target for target in targets if target is not None}
        keep, drop = partition(current, incoming_ids, key=lambda record: record.id)
        stored: Dict[int, Classification] = {record.id: record for record in keep}

        if drop:
            result.deleted = self._ranking.delete_many(drop)

        seen: Set[int] = set()
        blocked: List[Tuple[ClassificationItem, Optional[int], KartError]] = []
        for item, target in zip(items, targets):
            try:
                _claim(seen, target, "Classification")
                self._apply_classification(item, target, stored, result)
            except DuplicateDriverError as exc:
                blocked.append((item, target, exc))
            except KartError as exc:
                self._classification_failed(result, item, exc)

        # A name may be released by a later item in the batch; retry until no progress.
        while blocked:
            still_blocked: List[Tuple[ClassificationItem, Optional[int], KartError]] = []
            for item, target, _ in blocked:
                try:
                    self._apply_classification(item, target, stored, result)
                except DuplicateDriverError as exc:
                    still_blocked.append((item, target, exc))
                except KartError as exc:
                    self._classification_failed(result, item, exc)
            progressed = len(still_blocked) < len(blocked)
            blocked = still_blocked
            if not progressed:
                break

        for item, _, exc in blocked:
            self._classification_failed(result, item, exc)

        logger.info("Classification reconciliation finished: %s", result.total)
        return result

    def reconcile_operating_hours(self, items: Sequence[OperatingHourItem]) -> OperatingHoursReconcileResult:
        """Update label/visibility of existing slots; the slot set itself never changes."""

        result = OperatingHoursReconcileResult()
        seen: Set[int] = set()
        for item in items:
            try:
                _claim(seen, item.id, "Operating hour")
                existing = self._hours.get(item.id)
                if _operating_hour_matches(existing, item):
                    result.unchanged.append(existing)
                    continue
                result.updated.append(self._hours.update(item.id, label=item.label, visible=item.visible))
            except KartError as exc:
                logger.warning("Failed to reconcile operating hour %s: %s", item.id, exc)
                result.errors.append(ItemError(error=str(exc), id=item.id))

        logger.info("Operating-hours reconciliation finished: %s", result.total)
        return result

    def _apply_classification(
        self,
        item: ClassificationItem,
        target: Optional[int],
        stored: Dict[int, Classification],
        result: ClassificationReconcileResult,
    ) -> None:
        if target is None:
            result.created.append(self._ranking.create(item.category, item.driver_name, item.points))
            return

        existing = stored.get(target)
        if existing is None:
            raise NotFoundError(f"Classification {target} not found")
        if _classification_matches(existing, item):
            result.unchanged.append(existing)
            return
        result.updated.append(
            self._ranking.update(
                target,
                category=item.category,
                driver_name=item.driver_name,
                points=item.points,
            )
        )

    @staticmethod
    def _classification_failed(
        result: ClassificationReconcileResult,
        item: ClassificationItem,
        exc: KartError,
    ) -> None:
        logger.warning("Failed to reconcile classification for %s: %s", item.driver_name, exc)
        result.errors.append(ItemError(error=str(exc), id=item.id, driver_name=item.driver_name))


__all__ = [
    "ClassificationItem",
    "ClassificationReconcileResult",
    "ItemError",
    "OperatingHourItem",
    "OperatingHoursReconcileResult",
    "ReconciliationService",
    "partition",
]
