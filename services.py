from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Iterable, Optional

from rapidfuzz.distance import Levenshtein
from sqlalchemy import delete, func, or_, select, update
from sqlalchemy.orm import Session
from werkzeug.security import check_password_hash, generate_password_hash

from models import (
    DEFAULT_CATEGORIES,
    PROTECTED_CATEGORIES,
    UNASSIGNED,
    CustomCategory,
    Expense,
    Note,
    Project,
    ProjectMember,
    PushSubscription,
    Todo,
    User,
    UserRole,
)
from schemas import (
    CategoryIn,
    ExpenseIn,
    ExpenseUpdate,
    NoteIn,
    NoteUpdate,
    ProjectIn,
    ProjectMemberIn,
    ProjectUpdate,
    PushSubscriptionIn,
    TodoIn,
    TodoUpdate,
    UserIn,
)


logger = logging.getLogger(__name__)


class NotFoundError(ValueError):
    pass


class ValidationFailed(ValueError):
    pass


class CategoryConflict(ValueError):
    pass


class PermissionDenied(ValueError):
    pass


class AuthenticationError(ValueError):
    pass


class ExternalServiceError(RuntimeError):
    pass


TodoHook = Callable[[Todo], None]


def _scope(column, project_id: Optional[int]):
    if project_id is None:
        return column.is_(None)
    return column == project_id


def hash_password(password: str) -> str:
    return generate_password_hash(password, method="scrypt")


def verify_password(password: str, stored: str) -> bool:
    return check_password_hash(stored, password)


class CategoryService:
    """Owns category names and every write of the denormalised ``category``
    field on todos and expenses.

    Todos and expenses store the category *name*. Deleting or renaming a
    custom category therefore rewrites all referencing rows of the same
    project scope inside a single transaction.
    """

    def __init__(self, session: Session) -> None:
        self.session = session

    def list_custom(self, project_id: Optional[int] = None) -> list[CustomCategory]:
        stmt = (
            select(CustomCategory)
            .where(_scope(CustomCategory.project_id, project_id))
            .order_by(CustomCategory.id)
        )
        return self.session.scalars(stmt).all()

    def list_names(self, project_id: Optional[int] = None) -> list[str]:
        names = list(DEFAULT_CATEGORIES)
        names.extend(c.name for c in self.list_custom(project_id))
        return names

    def get(self, category_id: int) -> CustomCategory:
        category = self.session.get(CustomCategory, category_id)
        if not category:
            raise NotFoundError("Category not found")
        return category

    def _find(
        self,
        name: str,
        project_id: Optional[int],
        exclude_id: Optional[int] = None,
    ) -> Optional[str]:
        lowered = name.strip().lower()
        for default in DEFAULT_CATEGORIES:
            if default.lower() == lowered:
                return default
        stmt = select(CustomCategory).where(
            _scope(CustomCategory.project_id, project_id),
            func.lower(CustomCategory.name) == lowered,
        )
        if exclude_id is not None:
            stmt = stmt.where(CustomCategory.id != exclude_id)
        existing = self.session.scalars(stmt).first()
        return existing.name if existing else None

    def _closest(self, name: str, project_id: Optional[int]) -> Optional[str]:
        lowered = name.lower()
        best: Optional[str] = None
        best_distance: Optional[int] = None
        for candidate in self.list_names(project_id):
            dist = int(Levenshtein.distance(lowered, candidate.lower()))
            if best_distance is None or dist < best_distance:
                best, best_distance = candidate, dist
        if best_distance is not None and best_distance <= 2:
            return best
        return None

    def resolve_name(self, name: Optional[str], project_id: Optional[int] = None) -> str:
        clean = (name or "").strip()
        if not clean:
            return UNASSIGNED
        known = self._find(clean, project_id)
        if known:
            return known
        hint = self._closest(clean, project_id)
        message = f"Unknown category: {clean}"
        if hint:
            message += f" (did you mean '{hint}'?)"
        raise ValidationFailed(message)

    def create(self, data: CategoryIn) -> CustomCategory:
        name = data.name.strip()
        if not name:
            raise ValidationFailed("Category name is required")
        if self._find(name, data.project_id):
            raise CategoryConflict("Category already exists")
        if data.project_id is not None and not self.session.get(
            Project, data.project_id
        ):
            raise NotFoundError("Project not found")
        category = CustomCategory(name=name, project_id=data.project_id)
        self.session.add(category)
        self.session.commit()
        self.session.refresh(category)
        logger.info(
            f"category_created: id={category.id} project_id={category.project_id}"
        )
        return category

    def rename(self, category_id: int, name: str) -> CustomCategory:
        category = self.get(category_id)
        clean = name.strip()
        if not clean:
            raise ValidationFailed("Category name is required")
        if category.name.lower() in PROTECTED_CATEGORIES:
            raise PermissionDenied(f"Cannot rename the {UNASSIGNED} category")
        if self._find(clean, category.project_id, exclude_id=category.id):
            raise CategoryConflict("Category already exists")
        try:
            self._rewrite(category.name, clean, category.project_id)
            category.name = clean
            self.session.commit()
        except Exception:
            self.session.rollback()
            raise
        self.session.refresh(category)
        return category

    def delete(self, category_id: int) -> None:
        category = self.session.get(CustomCategory, category_id)
        if not category:
            return
        if category.name.strip().lower() in PROTECTED_CATEGORIES:
            raise PermissionDenied(f"Cannot delete the {UNASSIGNED} category")
        try:
            todos, expenses = self._rewrite(
                category.name, UNASSIGNED, category.project_id
            )
            self.session.delete(category)
            self.session.commit()
        except Exception:
            self.session.rollback()
            raise
        logger.info(
            f"category_deleted: id={category_id} reassigned_todos={todos} "
            f"reassigned_expenses={expenses}"
        )

    def reassign(
        self, old_name: str, new_name: str, project_id: Optional[int] = None
    ) -> tuple[int, int]:
        target = self.resolve_name(new_name, project_id)
        try:
            counts = self._rewrite(old_name, target, project_id)
            self.session.commit()
        except Exception:
            self.session.rollback()
            raise
        return counts

    def reassign_category(self, category_id: int, new_name: str) -> tuple[int, int]:
        category = self.get(category_id)
        return self.reassign(category.name, new_name, category.project_id)

    def _rewrite(
        self, old_name: str, new_name: str, project_id: Optional[int]
    ) -> tuple[int, int]:
        lowered = old_name.strip().lower()
        if lowered == new_name.strip().lower() and old_name == new_name:
            return 0, 0
        todo_result = self.session.execute(
            update(Todo)
            .where(
                _scope(Todo.project_id, project_id),
                func.lower(Todo.category) == lowered,
            )
            .values(category=new_name)
            .execution_options(synchronize_session="fetch")
        )
        expense_result = self.session.execute(
            update(Expense)
            .where(
                _scope(Expense.project_id, project_id),
                func.lower(Expense.category) == lowered,
            )
            .values(category=new_name)
            .execution_options(synchronize_session="fetch")
        )
        return todo_result.rowcount or 0, expense_result.rowcount or 0


class TodoService:
    def __init__(
        self, session: Session, hooks: Optional[Iterable[TodoHook]] = None
    ) -> None:
        self.session = session
        self.hooks = list(hooks or [])
        self.categories = CategoryService(session)

    def list(self, project_id: Optional[int] = None) -> list[Todo]:
        stmt = (
            select(Todo).where(_scope(Todo.project_id, project_id)).order_by(Todo.id)
        )
        return self.session.scalars(stmt).all()

    def list_all(self) -> list[Todo]:
        return self.session.scalars(select(Todo).order_by(Todo.id)).all()

    def get(self, todo_id: int) -> Todo:
        todo = self.session.get(Todo, todo_id)
        if not todo:
            raise NotFoundError("Todo not found")
        return todo

    def create(self, data: TodoIn) -> Todo:
        if data.project_id is not None and not self.session.get(
            Project, data.project_id
        ):
            raise NotFoundError("Project not found")
        values = data.model_dump()
        values["category"] = self.categories.resolve_name(
            data.category, data.project_id
        )
        todo = Todo(**values)
        self.session.add(todo)
        self.session.flush()

        if todo.has_associated_expense and (todo.estimated_amount or 0) > 0:
            self.session.add(
                Expense(
                    description=todo.title,
                    amount=todo.estimated_amount,
                    category=todo.category,
                    date=todo.due_date or datetime.utcnow(),
                    todo_id=todo.id,
                    is_budget=1,
                    completed_at=None,
                    project_id=todo.project_id,
                )
            )
        self.session.commit()
        self.session.refresh(todo)
        logger.info(f"todo_created: id={todo.id} project_id={todo.project_id}")
        self._run_hooks(todo)
        return todo

    def update(self, todo_id: int, data: TodoUpdate) -> Todo:
        todo = self.get(todo_id)
        changes = data.model_dump(exclude_unset=True)
        project_id = changes.get("project_id", todo.project_id)
        if "project_id" in changes and project_id is not None:
            if not self.session.get(Project, project_id):
                raise NotFoundError("Project not found")
        if "category" in changes or "project_id" in changes:
            changes["category"] = self.categories.resolve_name(
                changes.get("category", todo.category), project_id
            )
        for field, value in changes.items():
            setattr(todo, field, value)
        if "completed" in changes:
            self._sync_linked_expenses(todo)
        self.session.commit()
        self.session.refresh(todo)
        return todo

    def delete(self, todo_id: int) -> None:
        todo = self.session.get(Todo, todo_id)
        if not todo:
            return
        self.session.execute(delete(Expense).where(Expense.todo_id == todo.id))
        self.session.delete(todo)
        self.session.commit()
        logger.info(f"todo_deleted: id={todo_id}")

    def _sync_linked_expenses(self, todo: Todo) -> None:
        linked = self.session.scalars(
            select(Expense).where(Expense.todo_id == todo.id)
        ).all()
        now = datetime.utcnow()
        for expense in linked:
            if todo.completed and expense.is_budget == 1:
                expense.is_budget = 0
                expense.completed_at = now
            elif not todo.completed and expense.is_budget == 0 and expense.completed_at:
                expense.is_budget = 1
                expense.completed_at = None

    def _run_hooks(self, todo: Todo) -> None:
        for hook in self.hooks:
            name = getattr(hook, "__name__", repr(hook))
            try:
                hook(todo)
            except Exception:
                logger.exception(f"todo_hook_failed: todo_id={todo.id} hook={name}")


@dataclass(frozen=True)
class BudgetSummary:
    planned: float
    paid: float
    total: float


class ExpenseService:
    def __init__(self, session: Session) -> None:
        self.session = session
        self.categories = CategoryService(session)

    def list(self, project_id: Optional[int] = None) -> list[Expense]:
        stmt = (
            select(Expense)
            .where(_scope(Expense.project_id, project_id))
            .order_by(Expense.id)
        )
        return self.session.scalars(stmt).all()

    def list_all(self) -> list[Expense]:
        return self.session.scalars(select(Expense).order_by(Expense.id)).all()

    def get(self, expense_id: int) -> Expense:
        expense = self.session.get(Expense, expense_id)
        if not expense:
            raise NotFoundError("Expense not found")
        return expense

    def for_todo(self, todo_id: int) -> list[Expense]:
        stmt = select(Expense).where(Expense.todo_id == todo_id).order_by(Expense.id)
        return self.session.scalars(stmt).all()

    def create(self, data: ExpenseIn) -> Expense:
        if data.project_id is not None and not self.session.get(
            Project, data.project_id
        ):
            raise NotFoundError("Project not found")
        if data.todo_id is not None and not self.session.get(Todo, data.todo_id):
            raise ValidationFailed("Linked todo not found")
        values = data.model_dump()
        values["category"] = self.categories.resolve_name(
            data.category, data.project_id
        )
        expense = Expense(**values)
        self.session.add(expense)
        self.session.commit()
        self.session.refresh(expense)
        logger.info(
            f"expense_created: id={expense.id} is_budget={expense.is_budget} "
            f"todo_id={expense.todo_id}"
        )
        return expense

    def update(self, expense_id: int, data: ExpenseUpdate) -> Expense:
        expense = self.get(expense_id)
        changes = data.model_dump(exclude_unset=True)
        project_id = changes.get("project_id", expense.project_id)
        if "project_id" in changes and project_id is not None:
            if not self.session.get(Project, project_id):
                raise NotFoundError("Project not found")
        if changes.get("todo_id") is not None and not self.session.get(
            Todo, changes["todo_id"]
        ):
            raise ValidationFailed("Linked todo not found")
        if "category" in changes or "project_id" in changes:
            changes["category"] = self.categories.resolve_name(
                changes.get("category", expense.category), project_id
            )
        if "is_budget" in changes and "completed_at" not in changes:
            changes["completed_at"] = (
                None if changes["is_budget"] else (expense.completed_at or datetime.utcnow())
            )
        for field, value in changes.items():
            setattr(expense, field, value)

        # paying a linked budget item completes its todo, and vice versa
        if "is_budget" in changes and expense.todo_id is not None:
            todo = self.session.get(Todo, expense.todo_id)
            if todo:
                todo.completed = 0 if expense.is_budget else 1
        self.session.commit()
        self.session.refresh(expense)
        return expense

    def delete(self, expense_id: int) -> None:
        expense = self.session.get(Expense, expense_id)
        if not expense:
            return
        self.session.delete(expense)
        self.session.commit()
        logger.info(f"expense_deleted: id={expense_id}")

    def summary(self, project_id: Optional[int] = None) -> BudgetSummary:
        planned = 0.0
        paid = 0.0
        for expense in self.list(project_id):
            if expense.is_budget:
                planned += expense.amount
            else:
                paid += expense.amount
        return BudgetSummary(planned=planned, paid=paid, total=planned + paid)


class UserService:
    def __init__(self, session: Session) -> None:
        self.session = session

    def list_all(self) -> list[User]:
        return self.session.scalars(select(User).order_by(User.id)).all()

    def get(self, user_id: int) -> User:
        user = self.session.get(User, user_id)
        if not user:
            raise NotFoundError("User not found")
        return user

    def get_by_username(self, username: str) -> Optional[User]:
        stmt = select(User).where(func.lower(User.username) == username.strip().lower())
        return self.session.scalar(stmt)

    def create(self, data: UserIn) -> User:
        username = data.username.strip()
        if not username:
            raise ValidationFailed("Username is required")
        if self.get_by_username(username):
            raise ValidationFailed("Username already taken")
        user = User(username=username, password=hash_password(data.password))
        self.session.add(user)
        self.session.commit()
        self.session.refresh(user)
        return user

    def authenticate(self, username: str, password: str) -> User:
        user = self.get_by_username(username)
        if not user or not verify_password(password, user.password):
            raise AuthenticationError("Invalid credentials")
        return user

    def attach_google_tokens(
        self, user_id: int, access_token: str, refresh_token: Optional[str]
    ) -> User:
        user = self.get(user_id)
        user.google_access_token = access_token
        # consent screens only hand out a refresh token the first time
        if refresh_token:
            user.google_refresh_token = refresh_token
        self.session.commit()
        self.session.refresh(user)
        return user

    def ensure_seed_user(self, username: str, password: str) -> User:
        existing = self.get_by_username(username)
        if existing:
            return existing
        user = User(username=username, password=hash_password(password))
        self.session.add(user)
        self.session.commit()
        self.session.refresh(user)
        logger.info(f"seed_user_created: id={user.id}")
        return user


class ProjectService:
    def __init__(self, session: Session, user_id: int) -> None:
        self.session = session
        self.user_id = user_id

    def list_for_user(self) -> list[Project]:
        member_of = select(ProjectMember.project_id).where(
            ProjectMember.user_id == self.user_id
        )
        stmt = (
            select(Project)
            .where(or_(Project.user_id == self.user_id, Project.id.in_(member_of)))
            .order_by(Project.id)
        )
        return self.session.scalars(stmt).all()

    def get(self, project_id: int) -> Project:
        project = self.session.get(Project, project_id)
        if not project:
            raise NotFoundError("Project not found")
        return project

    def role_for(self, project: Project) -> Optional[UserRole]:
        if project.user_id == self.user_id:
            return UserRole.owner
        member = self.session.scalar(
            select(ProjectMember).where(
                ProjectMember.project_id == project.id,
                ProjectMember.user_id == self.user_id,
            )
        )
        return UserRole(member.role) if member else None

    def require_access(
        self, project_id: int, min_role: UserRole = UserRole.viewer
    ) -> Project:
        project = self.get(project_id)
        role = self.role_for(project)
        if role is None:
            raise PermissionDenied("You don't have access to this project")
        if role.rank < min_role.rank:
            raise PermissionDenied(f"This action requires the {min_role.value} role")
        return project

    def create(self, data: ProjectIn) -> Project:
        project = Project(
            name=data.name.strip(),
            description=data.description,
            user_id=self.user_id,
        )
        project.members.append(
            ProjectMember(user_id=self.user_id, role=UserRole.owner.value)
        )
        self.session.add(project)
        self.session.commit()
        self.session.refresh(project)
        logger.info(f"project_created: id={project.id} owner={self.user_id}")
        return project

    def update(self, project_id: int, data: ProjectUpdate) -> Project:
        project = self.require_access(project_id, UserRole.editor)
        for field, value in data.model_dump(exclude_unset=True).items():
            setattr(project, field, value)
        self.session.commit()
        self.session.refresh(project)
        return project

    def delete(self, project_id: int) -> None:
        if not self.session.get(Project, project_id):
            return
        project = self.require_access(project_id, UserRole.owner)
        todo_ids = select(Todo.id).where(Todo.project_id == project.id)
        self.session.execute(
            delete(Expense).where(
                or_(Expense.project_id == project.id, Expense.todo_id.in_(todo_ids))
            )
        )
        self.session.execute(delete(Todo).where(Todo.project_id == project.id))
        self.session.execute(
            delete(CustomCategory).where(CustomCategory.project_id == project.id)
        )
        self.session.execute(delete(Note).where(Note.project_id == project.id))
        self.session.delete(project)
        self.session.commit()
        logger.info(f"project_deleted: id={project_id}")

    def list_members(self, project_id: int) -> list[ProjectMember]:
        self.require_access(project_id)
        stmt = (
            select(ProjectMember)
            .where(ProjectMember.project_id == project_id)
            .order_by(ProjectMember.id)
        )
        return self.session.scalars(stmt).all()

    def add_member(self, project_id: int, data: ProjectMemberIn) -> ProjectMember:
        self.require_access(project_id, UserRole.owner)
        if not self.session.get(User, data.user_id):
            raise NotFoundError("User not found")
        existing = self.session.scalar(
            select(ProjectMember).where(
                ProjectMember.project_id == project_id,
                ProjectMember.user_id == data.user_id,
            )
        )
        if existing:
            raise ValidationFailed("User is already a member of this project")
        member = ProjectMember(
            project_id=project_id, user_id=data.user_id, role=data.role.value
        )
        self.session.add(member)
        self.session.commit()
        self.session.refresh(member)
        return member

    def remove_member(self, project_id: int, user_id: int) -> None:
        project = self.require_access(project_id, UserRole.owner)
        if user_id == project.user_id:
            raise PermissionDenied("The project owner cannot be removed")
        self.session.execute(
            delete(ProjectMember).where(
                ProjectMember.project_id == project_id,
                ProjectMember.user_id == user_id,
            )
        )
        self.session.commit()


class NoteService:
    def __init__(self, session: Session) -> None:
        self.session = session

    def list(self, project_id: int) -> list[Note]:
        stmt = (
            select(Note)
            .where(Note.project_id == project_id)
            .order_by(Note.updated_at.desc(), Note.id.desc())
        )
        return self.session.scalars(stmt).all()

    def get(self, note_id: int) -> Note:
        note = self.session.get(Note, note_id)
        if not note:
            raise NotFoundError("Note not found")
        return note

    def by_tag(self, project_id: int, tag: str) -> list[Note]:
        wanted = tag.strip().lower()
        return [
            note
            for note in self.list(project_id)
            if any(t.strip().lower() == wanted for t in (note.tags or []))
        ]

    def search(self, project_id: int, query: str) -> list[Note]:
        if not query.strip():
            raise ValidationFailed("Search query is required")
        pattern = f"%{query.strip()}%"
        stmt = (
            select(Note)
            .where(
                Note.project_id == project_id,
                or_(
                    Note.title.ilike(pattern),
                    Note.content.ilike(pattern),
                    Note.markdown_content.ilike(pattern),
                ),
            )
            .order_by(Note.updated_at.desc(), Note.id.desc())
        )
        return self.session.scalars(stmt).all()

    def create(self, data: NoteIn) -> Note:
        if not self.session.get(Project, data.project_id):
            raise NotFoundError("Project not found")
        note = Note(**data.model_dump())
        self.session.add(note)
        self.session.commit()
        self.session.refresh(note)
        return note

    def update(self, note_id: int, data: NoteUpdate) -> Note:
        note = self.get(note_id)
        for field, value in data.model_dump(exclude_unset=True).items():
            setattr(note, field, value)
        self.session.commit()
        self.session.refresh(note)
        return note

    def delete(self, note_id: int) -> None:
        note = self.session.get(Note, note_id)
        if not note:
            return
        self.session.delete(note)
        self.session.commit()


class PushSubscriptionService:
    def __init__(self, session: Session) -> None:
        self.session = session

    def list_all(self) -> list[PushSubscription]:
        stmt = select(PushSubscription).order_by(
            PushSubscription.user_id, PushSubscription.id
        )
        return self.session.scalars(stmt).all()

    def list_for_user(self, user_id: int) -> list[PushSubscription]:
        stmt = (
            select(PushSubscription)
            .where(PushSubscription.user_id == user_id)
            .order_by(PushSubscription.id)
        )
        return self.session.scalars(stmt).all()

    def subscribe(self, user_id: int, data: PushSubscriptionIn) -> PushSubscription:
        existing = self.session.scalar(
            select(PushSubscription).where(PushSubscription.endpoint == data.endpoint)
        )
        if existing:
            existing.user_id = user_id
            existing.p256dh = data.p256dh
            existing.auth = data.auth
            subscription = existing
        else:
            subscription = PushSubscription(
                user_id=user_id,
                endpoint=data.endpoint,
                p256dh=data.p256dh,
                auth=data.auth,
            )
            self.session.add(subscription)
        self.session.commit()
        self.session.refresh(subscription)
        return subscription

    def mark_notified(self, subscription: PushSubscription, when: datetime) -> None:
        subscription.last_notified = when
        self.session.commit()

    def delete(self, subscription_id: int) -> None:
        subscription = self.session.get(PushSubscription, subscription_id)
        if not subscription:
            return
        self.session.delete(subscription)
        self.session.commit()
