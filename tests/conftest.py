import datetime as dt
from decimal import Decimal

import pytest

from batch_categorizer.models import Category, Transaction


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


@pytest.fixture
def categories() -> list[Category]:
    return [
        Category(id="cat-groceries", name="Groceries", type="expense"),
        Category(id="cat-coffee", name="Coffee Shops", type="expense"),
        Category(id="cat-transport", name="Transport", type="expense"),
        Category(id="cat-salary", name="Salary", type="income"),
    ]


def make_tx(
    description: str,
    amount: str | int = "10.00",
    tx_type: str = "expense",
    date: str | None = "2025-03-01",
    **kwargs,
) -> Transaction:
    return Transaction(
        description=description,
        amount=Decimal(str(amount)),
        type=tx_type,
        date=dt.date.fromisoformat(date) if date else None,
        **kwargs,
    )
