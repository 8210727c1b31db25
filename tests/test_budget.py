from datetime import datetime

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import Session

from database import Base
from schemas import ExpenseIn, ExpenseUpdate, TodoIn, TodoUpdate
from services import ExpenseService, TodoService, ValidationFailed


def test_todo_with_estimate_creates_linked_budget_item() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        due = datetime(2026, 4, 1, 9, 0)
        todo = TodoService(session).create(
            TodoIn(
                title="Hire movers",
                category="Moving",
                due_date=due,
                has_associated_expense=1,
                estimated_amount=50,
            )
        )

        linked = ExpenseService(session).for_todo(todo.id)
        assert len(linked) == 1
        expense = linked[0]
        assert expense.amount == 50
        assert expense.description == "Hire movers"
        assert expense.category == "Moving"
        assert expense.date == due
        assert expense.is_budget == 1
        assert expense.completed_at is None


@pytest.mark.parametrize(
    "flag, amount",
    [(1, 0), (0, 50), (1, None)],
)
def test_no_budget_item_without_flag_and_positive_estimate(flag, amount) -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        TodoService(session).create(
            TodoIn(title="Clean oven", has_associated_expense=flag, estimated_amount=amount)
        )

        assert ExpenseService(session).list() == []


def test_completing_todo_pays_its_budget_items() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        todos = TodoService(session)
        todo = todos.create(
            TodoIn(title="Buy paint", has_associated_expense=1, estimated_amount=80)
        )

        todos.update(todo.id, TodoUpdate(completed=1))
        expense = ExpenseService(session).for_todo(todo.id)[0]
        assert expense.is_budget == 0
        assert expense.completed_at is not None

        todos.update(todo.id, TodoUpdate(completed=0))
        expense = ExpenseService(session).for_todo(todo.id)[0]
        assert expense.is_budget == 1
        assert expense.completed_at is None


def test_paying_linked_expense_completes_todo() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        todo = TodoService(session).create(
            TodoIn(title="Pay deposit", has_associated_expense=1, estimated_amount=900)
        )
        expenses = ExpenseService(session)
        expense = expenses.for_todo(todo.id)[0]

        paid = expenses.update(expense.id, ExpenseUpdate(is_budget=0))
        assert paid.completed_at is not None
        assert TodoService(session).get(todo.id).completed == 1

        planned = expenses.update(expense.id, ExpenseUpdate(is_budget=1))
        assert planned.completed_at is None
        assert TodoService(session).get(todo.id).completed == 0


def test_deleting_todo_removes_linked_expenses() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        todos = TodoService(session)
        todo = todos.create(
            TodoIn(title="Rent van", has_associated_expense=1, estimated_amount=120)
        )
        ExpenseService(session).create(
            ExpenseIn(
                description="Unrelated",
                amount=5,
                category="Moving",
                date=datetime(2026, 3, 1),
            )
        )

        todos.delete(todo.id)

        assert [e.description for e in ExpenseService(session).list()] == ["Unrelated"]


def test_expense_requires_existing_linked_todo() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        with pytest.raises(ValidationFailed):
            ExpenseService(session).create(
                ExpenseIn(
                    description="Orphan",
                    amount=5,
                    category="Moving",
                    date=datetime(2026, 3, 1),
                    todo_id=7,
                )
            )


def test_summary_splits_planned_and_paid() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        expenses = ExpenseService(session)
        for amount, is_budget in [(100, 1), (40, 0), (10.5, 0)]:
            expenses.create(
                ExpenseIn(
                    description="Item",
                    amount=amount,
                    category="Furniture",
                    date=datetime(2026, 3, 1),
                    is_budget=is_budget,
                )
            )

        summary = expenses.summary()

        assert summary.planned == 100
        assert summary.paid == 50.5
        assert summary.total == 150.5
