"""initial move-in schema

Revision ID: 202610190900
Revises:
Create Date: 2026-10-19 09:00:00.000000

"""

from alembic import op
import sqlalchemy as sa


revision = "202610190900"
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    op.create_table(
        "users",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("username", sa.String(length=100), nullable=False),
        sa.Column("password", sa.String(length=255), nullable=False),
        sa.Column("google_access_token", sa.Text()),
        sa.Column("google_refresh_token", sa.Text()),
        sqlite_autoincrement=True,
    )

    op.create_table(
        "projects",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("name", sa.String(length=200), nullable=False),
        sa.Column("description", sa.Text()),
        sa.Column("user_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=False),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sqlite_autoincrement=True,
    )

    op.create_table(
        "project_members",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column(
            "project_id", sa.Integer(), sa.ForeignKey("projects.id"), nullable=False
        ),
        sa.Column("user_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=False),
        sa.Column("role", sa.String(length=20), nullable=False, server_default="viewer"),
        sa.Column("joined_at", sa.DateTime(), nullable=False),
        sa.UniqueConstraint("user_id", "project_id", name="uq_project_member_user"),
        sqlite_autoincrement=True,
    )

    op.create_table(
        "todos",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("title", sa.String(length=200), nullable=False),
        sa.Column("description", sa.Text()),
        sa.Column(
            "category", sa.String(length=100), nullable=False, server_default="Unassigned"
        ),
        sa.Column("completed", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("due_date", sa.DateTime()),
        sa.Column("priority", sa.Integer(), nullable=False, server_default="0"),
        sa.Column(
            "has_associated_expense", sa.Integer(), nullable=False, server_default="0"
        ),
        sa.Column("estimated_amount", sa.Float()),
        sa.Column("project_id", sa.Integer(), sa.ForeignKey("projects.id")),
        sqlite_autoincrement=True,
    )
    op.create_index("ix_todos_project_category", "todos", ["project_id", "category"])
    op.create_index("ix_todos_due_date", "todos", ["due_date"])

    op.create_table(
        "expenses",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("description", sa.Text(), nullable=False),
        sa.Column("amount", sa.Float(), nullable=False),
        sa.Column("category", sa.String(length=100), nullable=False),
        sa.Column("date", sa.DateTime(), nullable=False),
        sa.Column("todo_id", sa.Integer(), sa.ForeignKey("todos.id")),
        sa.Column("is_budget", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("completed_at", sa.DateTime()),
        sa.Column("project_id", sa.Integer(), sa.ForeignKey("projects.id")),
        sqlite_autoincrement=True,
    )
    op.create_index(
        "ix_expenses_project_category", "expenses", ["project_id", "category"]
    )
    op.create_index("ix_expenses_todo_id", "expenses", ["todo_id"])

    op.create_table(
        "custom_categories",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("name", sa.String(length=100), nullable=False),
        sa.Column("project_id", sa.Integer(), sa.ForeignKey("projects.id")),
        sqlite_autoincrement=True,
    )

    op.create_table(
        "notes",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("title", sa.String(length=200), nullable=False),
        sa.Column("content", sa.Text(), nullable=False),
        sa.Column("tags", sa.JSON(), nullable=False),
        sa.Column("markdown_content", sa.Text()),
        sa.Column("attachments", sa.JSON()),
        sa.Column(
            "project_id", sa.Integer(), sa.ForeignKey("projects.id"), nullable=False
        ),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sqlite_autoincrement=True,
    )

    op.create_table(
        "push_subscriptions",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=False),
        sa.Column("endpoint", sa.Text(), nullable=False),
        sa.Column("p256dh", sa.Text(), nullable=False),
        sa.Column("auth", sa.Text(), nullable=False),
        sa.Column("last_notified", sa.DateTime()),
        sqlite_autoincrement=True,
    )


def downgrade():
    op.drop_table("push_subscriptions")
    op.drop_table("notes")
    op.drop_table("custom_categories")
    op.drop_index("ix_expenses_todo_id", table_name="expenses")
    op.drop_index("ix_expenses_project_category", table_name="expenses")
    op.drop_table("expenses")
    op.drop_index("ix_todos_due_date", table_name="todos")
    op.drop_index("ix_todos_project_category", table_name="todos")
    op.drop_table("todos")
    op.drop_table("project_members")
    op.drop_table("projects")
    op.drop_table("users")
