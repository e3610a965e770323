from __future__ import annotations

from typing import Any, Dict, List, Mapping, Optional, Protocol

from taskkeeper.logging import get_logger
from taskkeeper.service.errors import NotFoundError, ValidationError
from taskkeeper.service.query import TaskQuery, build_task_query
from taskkeeper.service.validation import (
    validate_completed,
    validate_description,
    validate_fields,
)
from taskkeeper.storage.models import Task

logger = get_logger(__name__)

_TASK_VALIDATORS = {
    "description": validate_description,
    "completed": validate_completed,
}


class TaskStore(Protocol):
    def create_task(
        self, owner_id: str, description: str, completed: bool = False
    ) -> Task: ...

    def get_task(self, task_id: str, owner_id: str) -> Optional[Task]: ...

    def list_tasks(self, query: TaskQuery) -> List[Task]: ...

    def update_task(
        self, task_id: str, owner_id: str, fields: Dict[str, Any]
    ) -> Optional[Task]: ...

    def delete_task(self, task_id: str, owner_id: str) -> Optional[Task]: ...

    def delete_tasks_for_owner(self, owner_id: str) -> int: ...


def _not_found(task_id: str) -> NotFoundError:
    # Same error whether the task is missing or belongs to someone else
    return NotFoundError("task not found", detail={"task_id": task_id})


class TaskService:
    """Task CRUD confined to the calling user's own tasks."""

    def __init__(
        self,
        store: TaskStore,
        *,
        default_page_size: int = 50,
        max_page_size: int = 100,
    ) -> None:
        self.store = store
        self.default_page_size = default_page_size
        self.max_page_size = max_page_size

    def create(self, owner_id: str, description: Any, completed: Any = False) -> Task:
        cleaned = validate_fields(
            {"description": description, "completed": completed}, _TASK_VALIDATORS
        )
        task = self.store.create_task(
            owner_id, cleaned["description"], cleaned["completed"]
        )
        logger.info("task_created", owner_id=owner_id, task_id=task.id)
        return task

    def get(self, owner_id: str, task_id: str) -> Task:
        task = self.store.get_task(task_id, owner_id)
        if not task:
            raise _not_found(task_id)
        return task

    def list(
        self,
        owner_id: str,
        *,
        completed: Any = None,
        sort_by: Optional[str] = None,
        limit: Any = None,
        skip: Any = None,
    ) -> List[Task]:
        query = build_task_query(
            owner_id,
            completed=completed,
            sort_by=sort_by,
            limit=limit,
            skip=skip,
            default_page_size=self.default_page_size,
            max_page_size=self.max_page_size,
        )
        return self.store.list_tasks(query)

    def update(self, owner_id: str, task_id: str, fields: Mapping[str, Any]) -> Task:
        if not isinstance(fields, Mapping):
            raise ValidationError("update body must be an object")
        cleaned = validate_fields(fields, _TASK_VALIDATORS)
        if not cleaned:
            return self.get(owner_id, task_id)
        task = self.store.update_task(task_id, owner_id, cleaned)
        if not task:
            raise _not_found(task_id)
        logger.info(
            "task_updated", owner_id=owner_id, task_id=task_id, fields=sorted(cleaned)
        )
        return task

    def delete(self, owner_id: str, task_id: str) -> Task:
        task = self.store.delete_task(task_id, owner_id)
        if not task:
            raise _not_found(task_id)
        logger.info("task_deleted", owner_id=owner_id, task_id=task_id)
        return task

    def delete_all_for_owner(self, owner_id: str) -> int:
        removed = self.store.delete_tasks_for_owner(owner_id)
        logger.info("tasks_deleted_for_owner", owner_id=owner_id, count=removed)
        return removed
