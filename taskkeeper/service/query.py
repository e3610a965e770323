"""Filter, sort and pagination rules for listing a user's tasks.

Every listing is scoped to one owner. Client-supplied sort fields are looked
up in an allow-list and never reach a storage backend verbatim.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Iterable, List, Optional

from taskkeeper.logging import get_logger
from taskkeeper.service.errors import ValidationError
from taskkeeper.storage.models import Task

logger = get_logger(__name__)

# client name -> Task attribute
SORT_FIELDS = {
    "createdAt": "created_at",
    "created_at": "created_at",
    "updatedAt": "updated_at",
    "updated_at": "updated_at",
    "description": "description",
    "completed": "completed",
}

_TRUE_VALUES = {"true", "1"}
_FALSE_VALUES = {"false", "0"}
_MAX_PAGING_VALUE = 2**63 - 1


@dataclass(frozen=True)
class TaskQuery:
    owner_id: str
    completed: Optional[bool] = None
    sort_field: Optional[str] = None
    descending: bool = False
    skip: int = 0
    limit: int = 50


def parse_completed(value: Any) -> Optional[bool]:
    if value is None or value == "":
        return None
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in _TRUE_VALUES:
            return True
        if lowered in _FALSE_VALUES:
            return False
    raise ValidationError.for_fields({"completed": "must be true or false"})


def parse_sort(value: Optional[str]) -> tuple[Optional[str], bool]:
    """Return ``(attribute, descending)``; malformed input falls back to natural order."""
    if not value:
        return None, False
    parts = value.split(":")
    if len(parts) != 2:
        logger.info("task_sort_ignored", sort_by=value)
        return None, False
    name, direction = parts[0].strip(), parts[1].strip().lower()
    attribute = SORT_FIELDS.get(name)
    if attribute is None or direction not in {"asc", "desc"}:
        logger.info("task_sort_ignored", sort_by=value)
        return None, False
    return attribute, direction == "desc"


def _parse_non_negative(name: str, value: Any) -> Optional[int]:
    if value is None or value == "":
        return None
    invalid = ValidationError.for_fields({name: "must be a non-negative integer"})
    if isinstance(value, bool):
        raise invalid
    if isinstance(value, int):
        parsed = value
    elif isinstance(value, str) and value.strip().isascii() and value.strip().isdigit():
        parsed = int(value.strip())
    else:
        raise invalid
    # beyond a bigint OFFSET/LIMIT
    if parsed < 0 or parsed > _MAX_PAGING_VALUE:
        raise invalid
    return parsed


def build_task_query(
    owner_id: str,
    *,
    completed: Any = None,
    sort_by: Optional[str] = None,
    limit: Any = None,
    skip: Any = None,
    default_page_size: int = 50,
    max_page_size: int = 100,
) -> TaskQuery:
    sort_field, descending = parse_sort(sort_by)
    parsed_limit = _parse_non_negative("limit", limit)
    parsed_skip = _parse_non_negative("skip", skip)
    if not parsed_limit:
        parsed_limit = default_page_size
    return TaskQuery(
        owner_id=owner_id,
        completed=parse_completed(completed),
        sort_field=sort_field,
        descending=descending,
        skip=parsed_skip or 0,
        limit=min(parsed_limit, max_page_size),
    )


def apply_task_query(tasks: Iterable[Task], query: TaskQuery) -> List[Task]:
    """Evaluate ``query`` over in-memory tasks."""
    selected = [
        task
        for task in tasks
        if task.owner_id == query.owner_id
        and (query.completed is None or task.completed == query.completed)
    ]
    if query.sort_field:
        selected.sort(
            key=lambda task: (getattr(task, query.sort_field), task.seq),
            reverse=query.descending,
        )
    else:
        selected.sort(key=lambda task: task.seq)
    return selected[query.skip : query.skip + query.limit]
