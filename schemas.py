from datetime import datetime, timezone
from typing import Any, Optional

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    field_validator,
    model_validator,
)
from pydantic.alias_generators import to_camel

from models import UNASSIGNED, UserRole


def naive_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Store every timestamp as naive UTC, the way the database columns hold it."""
    if value is None or value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


class ApiModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        from_attributes=True,
    )


class TodoIn(ApiModel):
    title: str = Field(..., min_length=1, max_length=200)
    description: Optional[str] = None
    category: str = UNASSIGNED
    completed: int = Field(default=0, ge=0, le=1)
    due_date: Optional[datetime] = None
    priority: int = Field(default=0, ge=0, le=1)
    has_associated_expense: int = Field(default=0, ge=0, le=1)
    estimated_amount: Optional[float] = Field(default=None, ge=0)
    project_id: Optional[int] = None

    @field_validator("title")
    @classmethod
    def title_not_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("Title is required")
        return value.strip()

    @field_validator("due_date")
    @classmethod
    def due_date_utc(cls, value: Optional[datetime]) -> Optional[datetime]:
        return naive_utc(value)


class TodoUpdate(ApiModel):
    title: Optional[str] = Field(default=None, min_length=1, max_length=200)
    description: Optional[str] = None
    category: Optional[str] = None
    completed: Optional[int] = Field(default=None, ge=0, le=1)
    due_date: Optional[datetime] = None
    priority: Optional[int] = Field(default=None, ge=0, le=1)
    has_associated_expense: Optional[int] = Field(default=None, ge=0, le=1)
    estimated_amount: Optional[float] = Field(default=None, ge=0)
    project_id: Optional[int] = None

    @field_validator("title", "category", "completed", "priority", "has_associated_expense")
    @classmethod
    def not_null(cls, value):
        if value is None:
            raise ValueError("Field cannot be null")
        return value

    @field_validator("due_date")
    @classmethod
    def due_date_utc(cls, value: Optional[datetime]) -> Optional[datetime]:
        return naive_utc(value)


class TodoOut(ApiModel):
    id: int
    title: str
    description: Optional[str]
    category: str
    completed: int
    due_date: Optional[datetime]
    priority: int
    has_associated_expense: int
    estimated_amount: Optional[float]
    project_id: Optional[int]


class ExpenseIn(ApiModel):
    description: str = Field(..., min_length=1)
    amount: float = Field(..., ge=0)
    category: str = Field(..., min_length=1, max_length=100)
    date: datetime
    todo_id: Optional[int] = None
    is_budget: int = Field(default=0, ge=0, le=1)
    completed_at: Optional[datetime] = None
    project_id: Optional[int] = None

    @field_validator("date", "completed_at")
    @classmethod
    def timestamps_utc(cls, value: Optional[datetime]) -> Optional[datetime]:
        return naive_utc(value)


class ExpenseUpdate(ApiModel):
    description: Optional[str] = Field(default=None, min_length=1)
    amount: Optional[float] = Field(default=None, ge=0)
    category: Optional[str] = Field(default=None, min_length=1, max_length=100)
    date: Optional[datetime] = None
    todo_id: Optional[int] = None
    is_budget: Optional[int] = Field(default=None, ge=0, le=1)
    completed_at: Optional[datetime] = None
    project_id: Optional[int] = None

    @field_validator("description", "amount", "category", "date", "is_budget")
    @classmethod
    def not_null(cls, value):
        if value is None:
            raise ValueError("Field cannot be null")
        return value

    @field_validator("date", "completed_at")
    @classmethod
    def timestamps_utc(cls, value: Optional[datetime]) -> Optional[datetime]:
        return naive_utc(value)


class ExpenseOut(ApiModel):
    id: int
    description: str
    amount: float
    category: str
    date: datetime
    todo_id: Optional[int]
    is_budget: int
    completed_at: Optional[datetime]
    project_id: Optional[int]


class CategoryIn(ApiModel):
    name: str = Field(..., min_length=1, max_length=100)
    project_id: Optional[int] = None

    @field_validator("name")
    @classmethod
    def name_not_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("Category name is required")
        return value.strip()


class CategoryRename(ApiModel):
    name: str = Field(..., min_length=1, max_length=100)


class CategoryReassignIn(ApiModel):
    new_category: str = Field(..., min_length=1, max_length=100)


class CategoryOut(ApiModel):
    id: int
    name: str
    project_id: Optional[int]


class ReassignResult(ApiModel):
    todos: int
    expenses: int


class ProjectIn(ApiModel):
    name: str = Field(..., min_length=1, max_length=200)
    description: Optional[str] = None


class ProjectUpdate(ApiModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=200)
    description: Optional[str] = None

    @field_validator("name")
    @classmethod
    def not_null(cls, value):
        if value is None:
            raise ValueError("Field cannot be null")
        return value


class ProjectOut(ApiModel):
    id: int
    name: str
    description: Optional[str]
    user_id: int
    created_at: datetime
    updated_at: datetime


class ProjectMemberIn(ApiModel):
    user_id: int
    role: UserRole = UserRole.viewer


class ProjectMemberOut(ApiModel):
    id: int
    project_id: int
    user_id: int
    role: UserRole
    joined_at: datetime


class NoteIn(ApiModel):
    title: str = Field(..., min_length=1, max_length=200)
    content: str = Field(..., min_length=1)
    tags: list[str] = Field(default_factory=list)
    markdown_content: Optional[str] = None
    attachments: Optional[Any] = None
    project_id: int


class NoteUpdate(ApiModel):
    title: Optional[str] = Field(default=None, min_length=1, max_length=200)
    content: Optional[str] = Field(default=None, min_length=1)
    tags: Optional[list[str]] = None
    markdown_content: Optional[str] = None
    attachments: Optional[Any] = None

    @field_validator("title", "content", "tags")
    @classmethod
    def not_null(cls, value):
        if value is None:
            raise ValueError("Field cannot be null")
        return value


class NoteOut(ApiModel):
    id: int
    title: str
    content: str
    tags: list[str]
    markdown_content: Optional[str]
    attachments: Optional[Any]
    project_id: int
    created_at: datetime
    updated_at: datetime


class LoginIn(BaseModel):
    username: str = Field(..., min_length=1)
    password: str = Field(..., min_length=1)


class UserIn(BaseModel):
    username: str = Field(..., min_length=1, max_length=100)
    password: str = Field(..., min_length=8)


class UserOut(ApiModel):
    id: int
    username: str
    has_google_calendar: bool = False

    @model_validator(mode="before")
    @classmethod
    def calendar_flag(cls, data):
        token = getattr(data, "google_access_token", None)
        if token is not None:
            return {
                "id": data.id,
                "username": data.username,
                "has_google_calendar": True,
            }
        return data


class PushSubscriptionIn(ApiModel):
    endpoint: str = Field(..., min_length=1)
    p256dh: str = Field(..., min_length=1)
    auth: str = Field(..., min_length=1)

    @model_validator(mode="before")
    @classmethod
    def flatten_keys(cls, data):
        # browsers serialise subscriptions as {endpoint, keys: {p256dh, auth}}
        if isinstance(data, dict) and isinstance(data.get("keys"), dict):
            flat = {k: v for k, v in data.items() if k != "keys"}
            flat.setdefault("p256dh", data["keys"].get("p256dh"))
            flat.setdefault("auth", data["keys"].get("auth"))
            return flat
        return data


class PushSubscriptionOut(ApiModel):
    id: int
    user_id: int
    endpoint: str
    last_notified: Optional[datetime]
