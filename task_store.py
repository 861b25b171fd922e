from __future__ import annotations

import re
import uuid
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Protocol

from state_store import StateStore


TASK_STATUSES = ("pending", "in-progress", "completed", "cancelled")
OPEN_TASK_STATUSES = ("pending", "in-progress")
DEFAULT_TASK_DB: dict[str, Any] = {"users": [], "tasks": []}


class TaskStoreError(Exception):
    pass


@dataclass(frozen=True)
class User:
    id: str
    name: str
    phone: str
    role: str = "member"


@dataclass(frozen=True)
class Task:
    id: str
    title: str
    assigned_to: str
    assigned_by: str
    status: str = "pending"
    description: str = ""
    priority: str = "medium"
    due_date: str | None = None
    created_at: str | None = None
    completed_at: str | None = None


class TaskRepository(Protocol):
    def find_user_by_phone(self, pattern: str) -> User | None: ...

    def find_most_recent_open_task_for_user(self, user_id: str) -> Task | None: ...

    def update_task_status(self, task_id: str, status: str, completed_at: str | None) -> Task | None: ...

    def find_assigner_for_task(self, task_id: str) -> User | None: ...


def _digits(value: str) -> str:
    return re.sub(r"\D", "", value or "")


def phone_matches(stored_phone: str, sender_digits: str) -> bool:
    stored = _digits(stored_phone)
    if not stored or not sender_digits:
        return False
    if re.search(re.escape(sender_digits), stored):
        return True
    # Stored numbers are often entered without the country code.
    return len(stored) >= 10 and sender_digits.endswith(stored)


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class JsonTaskStore:
    def __init__(self, path: Path):
        self.store = StateStore(path, defaults=DEFAULT_TASK_DB)

    def add_user(self, name: str, phone: str, role: str = "member") -> User:
        user = User(id=uuid.uuid4().hex, name=name, phone=phone, role=role)

        def _mutator(db: dict) -> dict:
            db["users"].append(asdict(user))
            return db

        self.store.mutate(_mutator)
        return user

    def add_task(
        self,
        title: str,
        assigned_to: str,
        assigned_by: str,
        *,
        description: str = "",
        priority: str = "medium",
        due_date: str | None = None,
        status: str = "pending",
        created_at: str | None = None,
    ) -> Task:
        if status not in TASK_STATUSES:
            raise TaskStoreError(f"Unknown task status: {status!r}")
        task = Task(
            id=uuid.uuid4().hex,
            title=title,
            assigned_to=assigned_to,
            assigned_by=assigned_by,
            status=status,
            description=description,
            priority=priority,
            due_date=due_date,
            created_at=created_at or utc_now_iso(),
        )

        def _mutator(db: dict) -> dict:
            db["tasks"].append(asdict(task))
            return db

        self.store.mutate(_mutator)
        return task

    def get_user(self, user_id: str) -> User | None:
        for raw in self.store.load()["users"]:
            if raw.get("id") == user_id:
                return User(**raw)
        return None

    def get_task(self, task_id: str) -> Task | None:
        for raw in self.store.load()["tasks"]:
            if raw.get("id") == task_id:
                return Task(**raw)
        return None

    def find_user_by_phone(self, pattern: str) -> User | None:
        sender_digits = _digits(pattern)
        for raw in self.store.load()["users"]:
            if phone_matches(str(raw.get("phone", "")), sender_digits):
                return User(**raw)
        return None

    def find_most_recent_open_task_for_user(self, user_id: str) -> Task | None:
        candidates = [
            (raw.get("created_at") or "", index, raw)
            for index, raw in enumerate(self.store.load()["tasks"])
            if raw.get("assigned_to") == user_id and raw.get("status") in OPEN_TASK_STATUSES
        ]
        if not candidates:
            return None
        _, _, raw = max(candidates, key=lambda item: (item[0], item[1]))
        return Task(**raw)

    def update_task_status(self, task_id: str, status: str, completed_at: str | None) -> Task | None:
        if status not in TASK_STATUSES:
            raise TaskStoreError(f"Unknown task status: {status!r}")
        updated: dict[str, Any] = {}

        def _mutator(db: dict) -> dict:
            for raw in db["tasks"]:
                if raw.get("id") == task_id:
                    raw["status"] = status
                    raw["completed_at"] = completed_at
                    updated.update(raw)
                    break
            return db

        self.store.mutate(_mutator)
        return Task(**updated) if updated else None

    def find_assigner_for_task(self, task_id: str) -> User | None:
        task = self.get_task(task_id)
        if task is None:
            return None
        return self.get_user(task.assigned_by)
