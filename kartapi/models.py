"""Domain models for the karting venue service."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Tuple


class Role(str, Enum):
    """Closed set of roles a user account can hold."""

    ADMIN = "ADMIN"
    USER = "USER"


class Category(str, Enum):
    """Competitive tiers a driver can be classified in."""

    PREMIUM = "PREMIUM"
    OURO = "OURO"
    A = "A"
    B = "B"
    C = "C"
    D = "D"
    E = "E"
    F = "F"


class Group(str, Enum):
    """Display areas of the operating-hours registry."""

    HEADER = "header"
    FOOTER = "footer"


# Valid slot numbers per group, inclusive.
SLOT_RANGES: dict[Group, Tuple[int, int]] = {
    Group.HEADER: (1, 2),
    Group.FOOTER: (1, 9),
}


@dataclass(frozen=True)
class User:
    """Public view of a user account; the password hash never leaves storage."""

    id: int
    name: str
    email: str
    role: Role
    is_active: bool
    created_at: datetime
    updated_at: datetime


@dataclass(frozen=True)
class Classification:
    """A driver's standing inside a category."""

    id: int
    category: Category
    driver_name: str
    points: float
    position: int
    created_at: datetime
    updated_at: datetime


@dataclass(frozen=True)
class OperatingHour:
    """A labelled display slot in the header or footer."""

    id: int
    group: Group
    slot: int
    label: str
    visible: bool
    created_at: datetime
    updated_at: datetime


@dataclass(frozen=True)
class Page:
    """Pagination metadata returned alongside listing results."""

    page: int
    limit: int
    total: int

    @property
    def pages(self) -> int:
        if self.limit <= 0:
            return 0
        return (self.total + self.limit - 1) // self.limit


__all__ = [
    "Category",
    "Classification",
    "Group",
    "OperatingHour",
    "Page",
    "Role",
    "SLOT_RANGES",
    "User",
]
