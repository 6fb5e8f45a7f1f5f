"""
Resource kinds served by the default application.

These are deliberately small; each one exercises a different policy of the
generic core (per-tenant natural key, owner scoping with a lock rule, hard
delete).
"""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field

from access.guard import Action, Ownership
from query.plan import FieldType, payload_field

from .kinds import ResourceKind
from .records import Resource


class ProjectPayload(BaseModel):
    model_config = ConfigDict(extra="forbid")

    code: str = Field(..., min_length=1, max_length=64)
    name: str = Field(..., min_length=1, max_length=200)
    description: str | None = Field(default=None, max_length=2000)


class TaskPayload(BaseModel):
    model_config = ConfigDict(extra="forbid")

    title: str = Field(..., min_length=1, max_length=200)
    status: str = Field(default="open", pattern="^(open|in_progress|closed)$")
    priority: int = Field(default=3, ge=1, le=5)
    due_at: datetime | None = None
    project_id: str | None = None


def _closed_task(resource: Resource, action: Action) -> str | None:
    if resource.payload.get("status") == "closed":
        return "Closed tasks cannot be modified."
    return None


PROJECTS = ResourceKind(
    name="projects",
    fields=(
        payload_field("code"),
        payload_field("name", default_operator="contains"),
    ),
    sort_fields=("code", "name"),
    unique=(("code",),),
    permissions={Action.DELETE: frozenset({"manager"})},
    payload_model=ProjectPayload,
)

TASKS = ResourceKind(
    name="tasks",
    fields=(
        payload_field("title", default_operator="contains"),
        payload_field("status"),
        payload_field("priority", FieldType.NUMBER),
        payload_field("due_at", FieldType.DATETIME),
        payload_field("project_id", FieldType.ID),
    ),
    sort_fields=("title", "priority", "due_at"),
    ownership=Ownership.OWNER,
    payload_model=TaskPayload,
    lock_rule=_closed_task,
)

ATTACHMENTS = ResourceKind(
    name="attachments",
    fields=(
        payload_field("filename", default_operator="contains"),
        payload_field("content_type"),
        payload_field("size_bytes", FieldType.NUMBER),
    ),
    sort_fields=("filename", "size_bytes"),
    soft_delete=False,
)

DEFAULT_KINDS: tuple[ResourceKind, ...] = (PROJECTS, TASKS, ATTACHMENTS)
