"""Read-only boundary to show management, used when a show's inventory is opened."""

from abc import ABC, abstractmethod
from decimal import Decimal
from typing import Dict, List, NamedTuple, Optional


class ShowInfo(NamedTuple):
    total_seats: int
    seat_labels: List[str]
    seat_price: Decimal


class Catalog(ABC):
    @abstractmethod
    def get_show(self, show_id: str) -> Optional[ShowInfo]:
        """Return the seat layout of a scheduled show, or None if it is unknown."""


class StaticCatalog(Catalog):
    """In-memory catalog, populated at startup."""

    def __init__(self, shows: Optional[Dict[str, ShowInfo]] = None):
        self._shows: Dict[str, ShowInfo] = dict(shows or {})

    def add_show(self, show_id: str, seat_labels: List[str], seat_price: Decimal) -> ShowInfo:
        info = ShowInfo(total_seats=len(seat_labels), seat_labels=list(seat_labels),
                        seat_price=Decimal(seat_price))
        self._shows[show_id] = info
        return info

    def get_show(self, show_id: str) -> Optional[ShowInfo]:
        return self._shows.get(show_id)


def grid_labels(rows: str, seats_per_row: int) -> List[str]:
    """Seat labels for a rectangular hall, e.g. grid_labels("AB", 2) -> A1, A2, B1, B2."""
    return [f"{row}{num}" for row in rows for num in range(1, seats_per_row + 1)]
