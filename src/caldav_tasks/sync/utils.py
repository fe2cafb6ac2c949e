"""
Stateless helpers shared by the sync submodules.
"""

import logging
from typing import TYPE_CHECKING

from caldav_tasks.models import Task

if TYPE_CHECKING:
    from caldav_tasks.db import TaskStore

_logger = logging.getLogger(__name__)

TAG_PALETTE = (
    "#ef4444",  # red
    "#f97316",  # orange
    "#eab308",  # yellow
    "#22c55e",  # green
    "#14b8a6",  # teal
    "#3b82f6",  # blue
    "#8b5cf6",  # violet
    "#ec4899",  # pink
)


def _to_int32(value: int) -> int:
    value &= 0xFFFFFFFF
    return value - 0x100000000 if value & 0x80000000 else value


def generate_tag_color(name: str) -> str:
    """Pick a stable palette colour for a tag created from a remote category.

    Uses the 32-bit ``h * 31 + c`` string hash over UTF-16 code units.
    """
    units = name.encode("utf-16-le")
    h = 0
    for i in range(0, len(units), 2):
        code_unit = units[i] | (units[i + 1] << 8)
        h = _to_int32(_to_int32(h << 5) - h + code_unit)
    return TAG_PALETTE[abs(h) % len(TAG_PALETTE)]


def split_categories(raw: str | None) -> list[str]:
    """Split a comma-joined CATEGORIES value into trimmed names."""
    if not raw:
        return []
    return [name.strip() for name in raw.split(",") if name.strip()]


def resolve_category_tags(store: "TaskStore", names: list[str]) -> list[str]:
    """Map category names to tag ids, creating missing tags.

    Matching is case-insensitive; the first spelling seen names a new tag.
    """
    tag_ids: list[str] = []
    for name in names:
        tag = store.find_tag_by_name(name)
        if tag is None:
            tag = store.create_tag(name, color=generate_tag_color(name))
            _logger.debug(f"Created tag {name!r} for remote category")
        if tag.id not in tag_ids:
            tag_ids.append(tag.id)
    return tag_ids


def category_names(store: "TaskStore", task: Task) -> list[str]:
    """Tag names to publish as CATEGORIES for ``task``."""
    names = []
    for tag_id in task.tags:
        tag = store.get_tag(tag_id)
        if tag is not None:
            names.append(tag.name)
    return names
