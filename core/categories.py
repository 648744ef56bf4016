"""Tenant category table: defaults, slug lookup and atomic get-or-create."""

from __future__ import annotations

import datetime
from contextlib import closing
from typing import Any

from core.db import fetchall, fetchone, get_connection

# (name, slug, is_income) in display order.
DEFAULT_CATEGORIES = (
    ("Salary", "salary", True),
    ("Groceries", "groceries", False),
    ("Transport", "transport", False),
    ("Utilities", "utilities", False),
    ("Rent", "rent", False),
    ("Insurance", "insurance", False),
    ("Healthcare", "healthcare", False),
    ("Dining", "dining", False),
    ("Shopping", "shopping", False),
    ("Entertainment", "entertainment", False),
    ("Credit charges", "credit_charges", False),
    ("Other", "other", False),
)

# Display names for slugs the extraction step is known to emit.
KNOWN_SLUGS: dict[str, tuple[str, bool]] = {
    "groceries": ("Groceries", False),
    "transport": ("Transport", False),
    "utilities": ("Utilities", False),
    "rent": ("Rent", False),
    "insurance": ("Insurance", False),
    "healthcare": ("Healthcare", False),
    "dining": ("Dining", False),
    "shopping": ("Shopping", False),
    "entertainment": ("Entertainment", False),
    "other": ("Other", False),
    "salary": ("Salary", True),
    "income": ("Income", True),
    "credit_charges": ("Credit card charges", False),
    "transfers": ("Transfers", False),
    "fees": ("Fees", False),
    "subscriptions": ("Subscriptions", False),
    "education": ("Education", False),
    "pets": ("Pets", False),
    "gifts": ("Gifts", False),
    "childcare": ("Childcare", False),
    "savings": ("Savings", False),
    "pension": ("Pension", False),
    "investment": ("Investment", False),
    "bank_fees": ("Bank fees", False),
    "online_shopping": ("Online shopping", False),
    "loan_payment": ("Loan payment", False),
    "loan_interest": ("Loan interest", False),
    "standing_order": ("Standing order", False),
    "finance": ("Finance", False),
    "unknown": ("Uncategorized", False),
}


def slug_to_name(slug: str) -> str:
    """Readable name for an unknown slug ("car_wash" -> "Car Wash")."""
    return " ".join(word.capitalize() for word in slug.replace("_", " ").split())


def ensure_default_categories(tenant_id: str) -> None:
    """Seed the default categories once per tenant."""
    now = datetime.datetime.now(datetime.UTC).isoformat()
    with closing(get_connection()) as connection:
        existing = connection.execute(
            "SELECT COUNT(*) FROM categories WHERE tenant_id = ?", (tenant_id,)
        ).fetchone()[0]
        if existing:
            return
        connection.executemany(
            """
            INSERT OR IGNORE INTO categories (
                tenant_id, name, slug, is_income, is_default, sort_order, created_at
            )
            VALUES (?, ?, ?, ?, 1, ?, ?)
            """,
            [
                (tenant_id, name, slug, int(is_income), index, now)
                for index, (name, slug, is_income) in enumerate(DEFAULT_CATEGORIES)
            ],
        )
        connection.commit()


def list_categories(tenant_id: str) -> list[dict[str, Any]]:
    ensure_default_categories(tenant_id)
    return fetchall(
        "SELECT * FROM categories WHERE tenant_id = ? ORDER BY sort_order, name",
        (tenant_id,),
    )


def get_category(tenant_id: str, category_id: int) -> dict[str, Any] | None:
    return fetchone(
        "SELECT * FROM categories WHERE id = ? AND tenant_id = ?",
        (category_id, tenant_id),
    )


def get_category_by_slug(tenant_id: str, slug: str) -> dict[str, Any] | None:
    return fetchone(
        "SELECT * FROM categories WHERE tenant_id = ? AND slug = ?",
        (tenant_id, slug),
    )


def get_or_create_category(tenant_id: str, slug: str) -> int | None:
    """
    Category id for `slug`, creating the category when the tenant lacks it.

    Creation is INSERT OR IGNORE against UNIQUE(tenant_id, slug) followed by
    a read, so concurrent creators of the same slug converge on one row.
    """
    slug = (slug or "").strip()
    if not slug:
        return None
    existing = get_category_by_slug(tenant_id, slug)
    if existing is not None:
        return int(existing["id"])

    name, is_income = KNOWN_SLUGS.get(slug, (slug_to_name(slug), False))
    now = datetime.datetime.now(datetime.UTC).isoformat()
    with closing(get_connection()) as connection:
        connection.execute(
            """
            INSERT OR IGNORE INTO categories (
                tenant_id, name, slug, is_income, is_default, sort_order, created_at
            )
            VALUES (?, ?, ?, ?, 0, ?, ?)
            """,
            (tenant_id, name, slug, int(is_income), len(DEFAULT_CATEGORIES), now),
        )
        connection.commit()
        row = connection.execute(
            "SELECT id FROM categories WHERE tenant_id = ? AND slug = ?",
            (tenant_id, slug),
        ).fetchone()
    return int(row["id"]) if row is not None else None
