"""Pagination info shared by the book and rental listings."""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Any, List, Tuple

from errors import ValidationError

SORT_ORDERS = {"asc": "ASC", "desc": "DESC"}


@dataclass
class Page:
    items: List[Any]
    page: int
    limit: int
    total: int

    @property
    def total_pages(self) -> int:
        return math.ceil(self.total / self.limit) if self.limit > 0 else 1

    def pagination(self) -> dict:
        return {
            "current_page": self.page,
            "total_pages": self.total_pages,
            "total_items": self.total,
            "items_per_page": self.limit,
            "has_next_page": self.page < self.total_pages,
            "has_prev_page": self.page > 1,
        }


def page_window(page: int, limit: int, max_limit: int) -> Tuple[int, int, int]:
    """Return (page, limit, offset) with page >= 1 and 1 <= limit <= max_limit."""
    page = max(page, 1)
    limit = min(max(limit, 1), max_limit)
    return page, limit, (page - 1) * limit


def order_clause(sort_by: str, sort_order: str, allowed: dict) -> str:
    """Map a public sort field and order onto a trusted SQL ORDER BY clause."""
    if sort_by not in allowed:
        raise ValidationError(f"Invalid sort field. Allowed: {', '.join(allowed)}")
    direction = SORT_ORDERS.get(sort_order.lower() if sort_order else "")
    if direction is None:
        raise ValidationError("Sort order must be either asc or desc")
    return f"{allowed[sort_by]} {direction}, id {direction}"
