import logging
from typing import Optional
from urllib.parse import quote

from fastapi import Depends, FastAPI, HTTPException, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, RedirectResponse, Response
from sqlalchemy.orm import Session
from starlette.middleware.sessions import SessionMiddleware

from auth import current_user, get_db, login_user, logout_user, require_user
from calendar_sync import CalendarAuthExpired, CalendarBridge, CalendarError
from config import get_settings
from database import init_db, session_scope
from models import Todo, User, UserRole
from notifications import NotificationSweep, WebPushSender
from oauth_state import generate_state, read_state
from scheduler import SchedulerManager
from schemas import (
    CategoryIn,
    CategoryOut,
    CategoryReassignIn,
    CategoryRename,
    ExpenseIn,
    ExpenseOut,
    ExpenseUpdate,
    LoginIn,
    NoteIn,
    NoteOut,
    NoteUpdate,
    ProjectIn,
    ProjectMemberIn,
    ProjectMemberOut,
    ProjectOut,
    ProjectUpdate,
    PushSubscriptionIn,
    PushSubscriptionOut,
    ReassignResult,
    TodoIn,
    TodoOut,
    TodoUpdate,
    UserIn,
    UserOut,
)
from services import (
    AuthenticationError,
    CategoryService,
    ExpenseService,
    NotFoundError,
    NoteService,
    PermissionDenied,
    ProjectService,
    PushSubscriptionService,
    TodoService,
    UserService,
)


logger = logging.getLogger(__name__)


def _load_app_version() -> str:
    try:
        import tomllib
    except Exception:
        return "unknown"
    try:
        with open("pyproject.toml", "rb") as f:
            data = tomllib.load(f)
        return str(data.get("project", {}).get("version", "unknown"))
    except Exception:
        return "unknown"


APP_VERSION = _load_app_version()

settings = get_settings()
app = FastAPI(title="Move-in Manager", version=APP_VERSION)
app.add_middleware(
    SessionMiddleware,
    secret_key=settings.session_secret,
    session_cookie="session",
    max_age=24 * 60 * 60,
    same_site="lax",
)

calendar_bridge = CalendarBridge(settings)
scheduler_manager = SchedulerManager()


@app.on_event("startup")
def startup_event():
    init_db()
    with session_scope() as session:
        UserService(session).ensure_seed_user(
            settings.seed_username, settings.seed_password
        )
    if not settings.calendar_enabled:
        logger.warning("startup: Google OAuth credentials missing, calendar disabled")
    if not settings.push_enabled:
        logger.warning("startup: VAPID keys missing, push notifications disabled")
    scheduler_manager.start()


@app.on_event("shutdown")
def shutdown_event():
    scheduler_manager.stop()


def format_validation_errors(exc: RequestValidationError) -> str:
    parts = []
    for err in exc.errors():
        loc = ".".join(str(p) for p in err.get("loc", ()) if p != "body")
        parts.append(f"{loc}: {err.get('msg')}" if loc else str(err.get("msg")))
    return ", ".join(parts)


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    return JSONResponse(status_code=400, content={"detail": format_validation_errors(exc)})


def http_error(exc: ValueError) -> HTTPException:
    if isinstance(exc, NotFoundError):
        return HTTPException(status_code=404, detail=str(exc))
    if isinstance(exc, PermissionDenied):
        return HTTPException(status_code=403, detail=str(exc))
    if isinstance(exc, AuthenticationError):
        return HTTPException(status_code=401, detail=str(exc))
    return HTTPException(status_code=400, detail=str(exc))


def guard_project(
    db: Session, user: User, project_id: Optional[int], role: UserRole = UserRole.viewer
) -> None:
    if project_id is None:
        return
    try:
        ProjectService(db, user.id).require_access(project_id, role)
    except ValueError as exc:
        raise http_error(exc) from exc


def calendar_hooks(user: User) -> list:
    token = user.google_access_token
    if not token:
        return []

    def sync_to_calendar(todo: Todo) -> None:
        calendar_bridge.create_event(todo, token)

    return [sync_to_calendar]


@app.post("/api/login", response_model=UserOut)
def login(data: LoginIn, request: Request, db: Session = Depends(get_db)):
    try:
        user = UserService(db).authenticate(data.username, data.password)
    except AuthenticationError as exc:
        raise HTTPException(status_code=401, detail=str(exc)) from exc
    login_user(request, user)
    return user


@app.post("/api/register", response_model=UserOut)
def register(data: UserIn, request: Request, db: Session = Depends(get_db)):
    try:
        user = UserService(db).create(data)
    except ValueError as exc:
        raise http_error(exc) from exc
    login_user(request, user)
    return user


@app.post("/api/logout")
def logout(request: Request):
    logout_user(request)
    return {"message": "Logged out successfully"}


@app.get("/api/user", response_model=UserOut)
def get_user(user: User = Depends(require_user)):
    return user


@app.get("/api/categories", response_model=list[str])
def list_categories(
    project_id: Optional[int] = Query(default=None, alias="projectId"),
    db: Session = Depends(get_db),
    user: User = Depends(require_user),
):
    guard_project(db, user, project_id)
    return CategoryService(db).list_names(project_id)


@app.post("/api/categories", response_model=CategoryOut)
def create_category(
    data: CategoryIn, db: Session = Depends(get_db), user: User = Depends(require_user)
):
    guard_project(db, user, data.project_id, UserRole.editor)
    try:
        return CategoryService(db).create(data)
    except ValueError as exc:
        raise http_error(exc) from exc


def _guard_category(db: Session, user: User, category_id: int):
    try:
        category = CategoryService(db).get(category_id)
    except NotFoundError:
        return None
    guard_project(db, user, category.project_id, UserRole.editor)
    return category


@app.patch("/api/categories/{category_id}", response_model=CategoryOut)
def rename_category(
    category_id: int,
    data: CategoryRename,
    db: Session = Depends(get_db),
    user: User = Depends(require_user),
):
    _guard_category(db, user, category_id)
    try:
        return CategoryService(db).rename(category_id, data.name)
    except ValueError as exc:
        raise http_error(exc) from exc


@app.delete("/api/categories/{category_id}")
def delete_category(
    category_id: int, db: Session = Depends(get_db), user: User = Depends(require_user)
):
    _guard_category(db, user, category_id)
    try:
        CategoryService(db).delete(category_id)
    except ValueError as exc:
        raise http_error(exc) from exc
    return Response(status_code=204)


@app.patch("/api/categories/{category_id}/reassign", response_model=ReassignResult)
def reassign_category(
    category_id: int,
    data: CategoryReassignIn,
    db: Session = Depends(get_db),
    user: User = Depends(require_user),
):
    _guard_category(db, user, category_id)
    try:
        todos, expenses = CategoryService(db).reassign_category(
            category_id, data.new_category
        )
    except ValueError as exc:
        raise http_error(exc) from exc
    return ReassignResult(todos=todos, expenses=expenses)


@app.get("/api/projects/{project_id}/categories", response_model=list[CategoryOut])
def list_project_categories(
    project_id: int, db: Session = Depends(get_db), user: User = Depends(require_user)
):
    guard_project(db, user, project_id)
    return CategoryService(db).list_custom(project_id)


@app.post("/api/projects/{project_id}/categories", response_model=CategoryOut)
def create_project_category(
    project_id: int,
    data: CategoryRename,
    db: Session = Depends(get_db),
    user: User = Depends(require_user),
):
    guard_project(db, user, project_id, UserRole.editor)
    try:
        return CategoryService(db).create(
            CategoryIn(name=data.name, project_id=project_id)
        )
    except ValueError as exc:
        raise http_error(exc) from exc


@app.get("/api/todos", response_model=list[TodoOut])
def list_todos(
    project_id: Optional[int] = Query(default=None, alias="projectId"),
    db: Session = Depends(get_db),
    user: User = Depends(require_user),
):
    guard_project(db, user, project_id)
    return TodoService(db).list(project_id)


@app.get("/api/projects/{project_id}/todos", response_model=list[TodoOut])
def list_project_todos(
    project_id: int, db: Session = Depends(get_db), user: User = Depends(require_user)
):
    guard_project(db, user, project_id)
    return TodoService(db).list(project_id)


@app.post("/api/todos", response_model=TodoOut)
def create_todo(
    data: TodoIn, db: Session = Depends(get_db), user: User = Depends(require_user)
):
    guard_project(db, user, data.project_id, UserRole.editor)
    try:
        return TodoService(db, hooks=calendar_hooks(user)).create(data)
    except ValueError as exc:
        raise http_error(exc) from exc


def _load_todo(db: Session, user: User, todo_id: int, role: UserRole) -> Todo:
    try:
        todo = TodoService(db).get(todo_id)
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    guard_project(db, user, todo.project_id, role)
    return todo


@app.get("/api/todos/{todo_id}", response_model=TodoOut)
def get_todo(
    todo_id: int, db: Session = Depends(get_db), user: User = Depends(require_user)
):
    return _load_todo(db, user, todo_id, UserRole.viewer)


@app.patch("/api/todos/{todo_id}", response_model=TodoOut)
def update_todo(
    todo_id: int,
    data: TodoUpdate,
    db: Session = Depends(get_db),
    user: User = Depends(require_user),
):
    _load_todo(db, user, todo_id, UserRole.editor)
    guard_project(db, user, data.project_id, UserRole.editor)
    try:
        return TodoService(db).update(todo_id, data)
    except ValueError as exc:
        raise http_error(exc) from exc


@app.delete("/api/todos/{todo_id}")
def delete_todo(
    todo_id: int, db: Session = Depends(get_db), user: User = Depends(require_user)
):
    todo = db.get(Todo, todo_id)
    if todo is not None:
        guard_project(db, user, todo.project_id, UserRole.editor)
    TodoService(db).delete(todo_id)
    return Response(status_code=204)


@app.get("/api/expenses", response_model=list[ExpenseOut])
def list_expenses(
    project_id: Optional[int] = Query(default=None, alias="projectId"),
    db: Session = Depends(get_db),
    user: User = Depends(require_user),
):
    guard_project(db, user, project_id)
    return ExpenseService(db).list(project_id)


@app.get("/api/expenses/summary")
def expense_summary(
    project_id: Optional[int] = Query(default=None, alias="projectId"),
    db: Session = Depends(get_db),
    user: User = Depends(require_user),
):
    guard_project(db, user, project_id)
    summary = ExpenseService(db).summary(project_id)
    return {"planned": summary.planned, "paid": summary.paid, "total": summary.total}


@app.get("/api/projects/{project_id}/expenses", response_model=list[ExpenseOut])
def list_project_expenses(
    project_id: int, db: Session = Depends(get_db), user: User = Depends(require_user)
):
    guard_project(db, user, project_id)
    return ExpenseService(db).list(project_id)


@app.post("/api/expenses", response_model=ExpenseOut)
def create_expense(
    data: ExpenseIn, db: Session = Depends(get_db), user: User = Depends(require_user)
):
    guard_project(db, user, data.project_id, UserRole.editor)
    try:
        return ExpenseService(db).create(data)
    except ValueError as exc:
        raise http_error(exc) from exc


@app.get("/api/expenses/{expense_id}", response_model=ExpenseOut)
def get_expense(
    expense_id: int, db: Session = Depends(get_db), user: User = Depends(require_user)
):
    try:
        expense = ExpenseService(db).get(expense_id)
    except ValueError as exc:
        raise http_error(exc) from exc
    guard_project(db, user, expense.project_id)
    return expense


@app.patch("/api/expenses/{expense_id}", response_model=ExpenseOut)
def update_expense(
    expense_id: int,
    data: ExpenseUpdate,
    db: Session = Depends(get_db),
    user: User = Depends(require_user),
):
    service = ExpenseService(db)
    try:
        expense = service.get(expense_id)
    except ValueError as exc:
        raise http_error(exc) from exc
    guard_project(db, user, expense.project_id, UserRole.editor)
    guard_project(db, user, data.project_id, UserRole.editor)
    try:
        return service.update(expense_id, data)
    except ValueError as exc:
        raise http_error(exc) from exc


@app.delete("/api/expenses/{expense_id}")
def delete_expense(
    expense_id: int, db: Session = Depends(get_db), user: User = Depends(require_user)
):
    service = ExpenseService(db)
    try:
        expense = service.get(expense_id)
    except NotFoundError:
        expense = None
    if expense is not None:
        guard_project(db, user, expense.project_id, UserRole.editor)
    service.delete(expense_id)
    return Response(status_code=204)


@app.get("/api/projects", response_model=list[ProjectOut])
def list_projects(db: Session = Depends(get_db), user: User = Depends(require_user)):
    return ProjectService(db, user.id).list_for_user()


@app.post("/api/projects", response_model=ProjectOut)
def create_project(
    data: ProjectIn, db: Session = Depends(get_db), user: User = Depends(require_user)
):
    return ProjectService(db, user.id).create(data)


@app.get("/api/projects/{project_id}", response_model=ProjectOut)
def get_project(
    project_id: int, db: Session = Depends(get_db), user: User = Depends(require_user)
):
    try:
        return ProjectService(db, user.id).require_access(project_id)
    except ValueError as exc:
        raise http_error(exc) from exc


@app.patch("/api/projects/{project_id}", response_model=ProjectOut)
def update_project(
    project_id: int,
    data: ProjectUpdate,
    db: Session = Depends(get_db),
    user: User = Depends(require_user),
):
    try:
        return ProjectService(db, user.id).update(project_id, data)
    except ValueError as exc:
        raise http_error(exc) from exc


@app.delete("/api/projects/{project_id}")
def delete_project(
    project_id: int, db: Session = Depends(get_db), user: User = Depends(require_user)
):
    try:
        ProjectService(db, user.id).delete(project_id)
    except ValueError as exc:
        raise http_error(exc) from exc
    return Response(status_code=204)


@app.get("/api/projects/{project_id}/members", response_model=list[ProjectMemberOut])
def list_members(
    project_id: int, db: Session = Depends(get_db), user: User = Depends(require_user)
):
    try:
        return ProjectService(db, user.id).list_members(project_id)
    except ValueError as exc:
        raise http_error(exc) from exc


@app.post("/api/projects/{project_id}/members", response_model=ProjectMemberOut)
def add_member(
    project_id: int,
    data: ProjectMemberIn,
    db: Session = Depends(get_db),
    user: User = Depends(require_user),
):
    try:
        return ProjectService(db, user.id).add_member(project_id, data)
    except ValueError as exc:
        raise http_error(exc) from exc


@app.delete("/api/projects/{project_id}/members/{member_user_id}")
def remove_member(
    project_id: int,
    member_user_id: int,
    db: Session = Depends(get_db),
    user: User = Depends(require_user),
):
    try:
        ProjectService(db, user.id).remove_member(project_id, member_user_id)
    except ValueError as exc:
        raise http_error(exc) from exc
    return Response(status_code=204)


@app.get("/api/projects/{project_id}/notes", response_model=list[NoteOut])
def list_notes(
    project_id: int, db: Session = Depends(get_db), user: User = Depends(require_user)
):
    guard_project(db, user, project_id)
    return NoteService(db).list(project_id)


@app.get("/api/projects/{project_id}/notes/tag/{tag}", response_model=list[NoteOut])
def notes_by_tag(
    project_id: int,
    tag: str,
    db: Session = Depends(get_db),
    user: User = Depends(require_user),
):
    guard_project(db, user, project_id)
    return NoteService(db).by_tag(project_id, tag)


@app.get("/api/projects/{project_id}/notes/search", response_model=list[NoteOut])
def search_notes(
    project_id: int,
    q: str = "",
    db: Session = Depends(get_db),
    user: User = Depends(require_user),
):
    guard_project(db, user, project_id)
    try:
        return NoteService(db).search(project_id, q)
    except ValueError as exc:
        raise http_error(exc) from exc


@app.post("/api/notes", response_model=NoteOut)
def create_note(
    data: NoteIn, db: Session = Depends(get_db), user: User = Depends(require_user)
):
    guard_project(db, user, data.project_id, UserRole.editor)
    try:
        return NoteService(db).create(data)
    except ValueError as exc:
        raise http_error(exc) from exc


def _load_note(db: Session, user: User, note_id: int, role: UserRole):
    try:
        note = NoteService(db).get(note_id)
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    guard_project(db, user, note.project_id, role)
    return note


@app.get("/api/notes/{note_id}", response_model=NoteOut)
def get_note(
    note_id: int, db: Session = Depends(get_db), user: User = Depends(require_user)
):
    return _load_note(db, user, note_id, UserRole.viewer)


@app.patch("/api/notes/{note_id}", response_model=NoteOut)
def update_note(
    note_id: int,
    data: NoteUpdate,
    db: Session = Depends(get_db),
    user: User = Depends(require_user),
):
    _load_note(db, user, note_id, UserRole.editor)
    try:
        return NoteService(db).update(note_id, data)
    except ValueError as exc:
        raise http_error(exc) from exc


@app.delete("/api/notes/{note_id}")
def delete_note(
    note_id: int, db: Session = Depends(get_db), user: User = Depends(require_user)
):
    try:
        note = NoteService(db).get(note_id)
    except NotFoundError:
        note = None
    if note is not None:
        guard_project(db, user, note.project_id, UserRole.editor)
    NoteService(db).delete(note_id)
    return Response(status_code=204)


@app.get("/api/auth/google")
def google_auth(user: User = Depends(require_user)):
    if not settings.calendar_enabled:
        raise HTTPException(status_code=503, detail="Google Calendar is not configured")
    logger.info(f"google_auth: starting OAuth flow user_id={user.id}")
    url = calendar_bridge.get_authorization_url(state=generate_state(user.id))
    return RedirectResponse(url=url, status_code=302)


@app.get("/api/auth/google/callback")
def google_callback(
    code: Optional[str] = None,
    state: Optional[str] = None,
    error: Optional[str] = None,
    db: Session = Depends(get_db),
    user: Optional[User] = Depends(current_user),
):
    if error or not code:
        logger.info(f"google_callback: no authorization code error={error}")
        return RedirectResponse(url="/?error=google_auth_cancelled", status_code=302)
    if user is None:
        return RedirectResponse(url="/?error=not_authenticated", status_code=302)
    if read_state(state) != user.id:
        logger.warning(f"google_callback: state mismatch user_id={user.id}")
        return RedirectResponse(url="/?error=invalid_state", status_code=302)
    try:
        tokens = calendar_bridge.exchange_code(code)
        UserService(db).attach_google_tokens(
            user.id, tokens.access_token, tokens.refresh_token
        )
    except CalendarError as exc:
        logger.warning(f"google_callback: token exchange failed error={exc}")
        return RedirectResponse(url=f"/?error={quote(str(exc))}", status_code=302)
    logger.info(f"google_callback: calendar connected user_id={user.id}")
    return RedirectResponse(url="/", status_code=302)


@app.post("/api/sync-calendar")
def sync_calendar(db: Session = Depends(get_db), user: User = Depends(require_user)):
    if not user.google_access_token:
        raise HTTPException(status_code=401, detail="Google Calendar not connected")
    todos = TodoService(db).list_all()
    try:
        return calendar_bridge.sync_all(todos, user.google_access_token)
    except CalendarAuthExpired as exc:
        raise HTTPException(status_code=401, detail=str(exc)) from exc


@app.get("/api/push/vapidKey")
def vapid_key():
    return {"vapidKey": settings.vapid_public_key}


@app.post("/api/push/subscribe", response_model=PushSubscriptionOut)
def push_subscribe(
    data: PushSubscriptionIn,
    db: Session = Depends(get_db),
    user: User = Depends(require_user),
):
    return PushSubscriptionService(db).subscribe(user.id, data)


@app.post("/api/push/check-notifications")
def check_notifications(
    db: Session = Depends(get_db), user: User = Depends(require_user)
):
    if not settings.push_enabled:
        raise HTTPException(status_code=503, detail="Push notifications are not configured")
    try:
        sweep = NotificationSweep.from_settings(db, WebPushSender(settings), settings)
        result = sweep.run()
    except Exception as exc:
        logger.exception(f"check_notifications: sweep_failed user_id={user.id}")
        raise HTTPException(
            status_code=500, detail="Failed to check notifications"
        ) from exc
    return {
        "message": "Notifications check triggered successfully",
        "due": result.due,
        "sent": result.sent,
        "skipped": result.skipped,
        "failed": result.failed,
        "purged": result.purged,
    }


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=5000)
