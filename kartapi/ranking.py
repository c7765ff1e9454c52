"""Per-category leaderboards with automatic position ranking.

Every write that can change the order inside a category (create, update of
``points`` or ``category``, delete) is followed by an explicit recompute of
that category. The recompute re-reads all records ordered by points
descending, breaking ties by insertion order, and assigns dense positions
``1..N``.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from .database import Database
from .errors import DuplicateDriverError, NotFoundError, ValidationError
from .models import Category, Classification, Page

logger = logging.getLogger("kartapi.ranking")

MAX_DRIVER_NAME_LENGTH = 100
MAX_PAGE_SIZE = 100


@dataclass(frozen=True)
class ClassificationFilters:
    category: Optional[Category] = None
    driver_name: Optional[str] = None
    min_points: Optional[float] = None
    max_points: Optional[float] = None


def dense_positions(records: Sequence[Classification]) -> List[Tuple[int, int]]:
    """Return ``(id, position)`` pairs for records already sorted by rank."""

    return [(record.id, index) for index, record in enumerate(records, start=1)]


def parse_category(value: object) -> Category:
    try:
        return Category(str(getattr(value, "value", value)).strip().upper())
    except ValueError as exc:
        raise ValidationError(f"Invalid category {value!r}") from exc


def _clean_driver_name(driver_name: str) -> str:
    cleaned = (driver_name or "").strip()
    if len(cleaned) < 2 or len(cleaned) > MAX_DRIVER_NAME_LENGTH:
        raise ValidationError(
            f"Driver name must be between 2 and {MAX_DRIVER_NAME_LENGTH} characters"
        )
    return cleaned


def _check_points(points: float) -> float:
    if points is None or points < 0:
        raise ValidationError("Points must be greater than or equal to 0")
    return float(points)


class RankingEngine:
    """Classification writes and leaderboard queries."""

    def __init__(self, database: Database) -> None:
        self._db = database

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------
    def create(self, category: Category, driver_name: str, points: float) -> Classification:
        category = parse_category(category)
        driver_name = _clean_driver_name(driver_name)
        points = _check_points(points)

        if self._db.find_classification(category, driver_name) is not None:
            raise DuplicateDriverError(f"Driver {driver_name} already exists in category {category.value}")

        provisional = self._db.count_higher_points(category, points) + 1
        created = self._db.insert_classification(category, driver_name, points, provisional)
        self.recompute(category)
        return self._reload(created.id)

    def update(
        self,
        classification_id: int,
        *,
        category: Optional[Category] = None,
        driver_name: Optional[str] = None,
        points: Optional[float] = None,
    ) -> Classification:
        current = self.get(classification_id)

        new_category = parse_category(category) if category is not None else current.category
        new_driver = _clean_driver_name(driver_name) if driver_name is not None else current.driver_name
        new_points = _check_points(points) if points is not None else current.points

        if (new_category, new_driver) != (current.category, current.driver_name):
            duplicate = self._db.find_classification(new_category, new_driver, exclude_id=classification_id)
            if duplicate is not None:
                raise DuplicateDriverError(
                    f"Driver {new_driver} already exists in category {new_category.value}"
                )

        rank_changed = new_category != current.category or new_points != current.points
        fields: Dict[str, object] = {
            "category": new_category,
            "driver_name": new_driver,
            "points": new_points,
        }
        if rank_changed:
            fields["position"] = (
                self._db.count_higher_points(new_category, new_points, exclude_id=classification_id) + 1
            )

        updated = self._db.update_classification(classification_id, **fields)
        if updated is None:
            raise NotFoundError("Classification not found")

        if rank_changed:
            self.recompute(*{current.category, new_category})
        return self._reload(classification_id)

    def delete(self, classification_id: int) -> Classification:
        current = self.get(classification_id)
        if not self._db.delete_classification(classification_id):
            raise NotFoundError("Classification not found")
        self.recompute(current.category)
        return current

    def delete_many(self, records: Iterable[Classification]) -> List[int]:
        """Delete ``records`` and recompute each touched category once."""

        records = list(records)
        self._db.delete_classifications(record.id for record in records)
        self.recompute(*{record.category for record in records})
        return [record.id for record in records]

    def recompute(self, *categories: Category) -> None:
        """Reassign dense positions for every record in ``categories``."""

        for category in categories:
            ranked = self._db.list_category_by_points(category)
            self._db.set_positions(dense_positions(ranked))
            logger.debug("Recomputed %d positions for category %s", len(ranked), category.value)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------
    def get(self, classification_id: int) -> Classification:
        record = self._db.get_classification(classification_id)
        if record is None:
            raise NotFoundError("Classification not found")
        return record

    def by_category(self, category: Category) -> List[Classification]:
        return self._db.list_category_by_position(parse_category(category))

    def all(self) -> List[Classification]:
        return self._db.list_classifications()

    def leaderboard(self) -> Dict[Category, List[Classification]]:
        """Every category in declaration order, including empty ones."""

        board: Dict[Category, List[Classification]] = {category: [] for category in Category}
        for record in self._db.list_classifications():
            board[record.category].append(record)
        return board

    def list(
        self,
        filters: ClassificationFilters | None = None,
        *,
        page: int = 1,
        limit: int = 10,
    ) -> Tuple[List[Classification], Page]:
        filters = filters or ClassificationFilters()
        if page < 1:
            raise ValidationError("Page must be at least 1")
        if limit < 1 or limit > MAX_PAGE_SIZE:
            raise ValidationError(f"Limit must be between 1 and {MAX_PAGE_SIZE}")
        if (
            filters.min_points is not None
            and filters.max_points is not None
            and filters.min_points > filters.max_points
        ):
            raise ValidationError("minPoints must not exceed maxPoints")

        records, total = self._db.query_classifications(
            category=filters.category,
            driver_name=filters.driver_name,
            min_points=filters.min_points,
            max_points=filters.max_points,
            offset=(page - 1) * limit,
            limit=limit,
        )
        return records, Page(page=page, limit=limit, total=total)

    def _reload(self, classification_id: int) -> Classification:
        return self.get(classification_id)


__all__ = [
    "ClassificationFilters",
    "MAX_PAGE_SIZE",
    "RankingEngine",
    "dense_positions",
    "parse_category",
]
