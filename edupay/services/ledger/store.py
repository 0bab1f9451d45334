"""Storage helpers shared by the intent, completion and polling services.

Every status change goes through `update_transaction_where` or
`update_purchases_where`: a single conditional UPDATE whose affected-row count
tells the caller whether it won. Both check the requested move against the
transition tables first.
"""

import json
from collections.abc import Iterable
from copy import deepcopy
from enum import Enum
from typing import Any

from sqlalchemy import String, cast, func, literal, literal_column, select, update
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Session, selectinload

from edupay.common.clock import utcnow
from edupay.common.state_machine import validate_purchase_transition, validate_transition
from edupay.services.ledger.models import Purchase, Transaction


def _values(statuses: Iterable[Enum | str]) -> list[str]:
    return [status.value if isinstance(status, Enum) else status for status in statuses]


def _check_moves(expected: list[str], values: dict[str, Any], validate) -> None:
    new_status = values.get("payment_status")
    if new_status is None:
        return
    new_status = new_status.value if isinstance(new_status, Enum) else new_status
    for current in expected:
        # rows already in the target status only get their other fields updated
        if current != new_status:
            validate(current, new_status)


def update_transaction_where(
    db: Session,
    transaction_id: str,
    expected_statuses: Iterable[Enum | str],
    values: dict[str, Any],
    *conditions,
    **extra_criteria,
) -> int:
    """Compare-and-swap on `payment_status`; returns the affected row count.

    `conditions` are extra SQL expressions; `extra_criteria` are column
    equality checks where `None` means IS NULL.
    """

    expected = _values(expected_statuses)
    _check_moves(expected, values, validate_transition)
    criteria = [
        Transaction.id == transaction_id,
        Transaction.payment_status.in_(expected),
        *conditions,
    ]
    for column, value in extra_criteria.items():
        attr = getattr(Transaction, column)
        criteria.append(attr.is_(None) if value is None else attr == value)
    result = db.execute(
        update(Transaction)
        .where(*criteria)
        .values(updated_at=utcnow(), **values)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount


def update_purchases_where(
    db: Session,
    transaction_id: str,
    expected_statuses: Iterable[Enum | str],
    values: dict[str, Any],
) -> int:
    """Conditionally move every purchase linked to a transaction."""

    expected = _values(expected_statuses)
    _check_moves(expected, values, validate_purchase_transition)
    result = db.execute(
        update(Purchase)
        .where(
            Purchase.transaction_id == transaction_id,
            Purchase.payment_status.in_(expected),
        )
        .values(updated_at=utcnow(), **values)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount


def get_transaction(db: Session, transaction_id: str, with_purchases: bool = False) -> Transaction | None:
    stmt = select(Transaction).where(Transaction.id == transaction_id).execution_options(populate_existing=True)
    if with_purchases:
        stmt = stmt.options(selectinload(Transaction.purchases))
    return db.execute(stmt).scalar_one_or_none()


def linked_purchases(db: Session, transaction_id: str) -> list[Purchase]:
    return list(
        db.execute(
            select(Purchase)
            .where(Purchase.transaction_id == transaction_id)
            .order_by(Purchase.created_at.asc())
            .execution_options(populate_existing=True)
        )
        .scalars()
        .all()
    )


def merge_path(document: dict | None, path: str, value: Any) -> dict:
    """Return a copy of `document` with dotted `path` set to `value`."""

    merged = deepcopy(document) if document else {}
    keys = path.split(".")
    cursor = merged
    for key in keys[:-1]:
        child = cursor.get(key)
        if not isinstance(child, dict):
            child = {}
            cursor[key] = child
        cursor = child
    cursor[keys[-1]] = value
    return merged


def _merged_document(dialect: str, key: str, value: Any):
    """SQL expression setting one top-level key of `gateway_response` in place."""

    if dialect == "postgresql":
        current = func.coalesce(Transaction.gateway_response, literal_column("'{}'::jsonb"))
        patch = json.dumps({key: value}, default=str)
        return current.op("||")(cast(literal(patch, String), JSONB))
    encoded = json.dumps(value, default=str)
    current = func.coalesce(Transaction.gateway_response, literal_column("'{}'"))
    return func.json_set(current, f"$.{key}", func.json(literal(encoded, String)))


def merge_transaction_metadata(db: Session, transaction_id: str, key: str, value: Any) -> None:
    """Set one top-level key of the transaction's gateway/metadata document.

    The merge happens inside the UPDATE, so concurrent writers of different
    keys never overwrite each other.
    """

    if "." in key:
        raise ValueError(f"metadata key must be top-level: {key}")
    dialect = db.get_bind().dialect.name
    if dialect in ("postgresql", "sqlite"):
        db.execute(
            update(Transaction)
            .where(Transaction.id == transaction_id)
            .values(gateway_response=_merged_document(dialect, key, value))
            .execution_options(synchronize_session=False)
        )
        return
    # other dialects: lock the row for the read-modify-write
    transaction = db.execute(
        select(Transaction).where(Transaction.id == transaction_id).with_for_update()
    ).scalar_one_or_none()
    if transaction is not None:
        transaction.gateway_response = merge_path(transaction.gateway_response, key, value)


def annotate_purchases(db: Session, purchases: Iterable[Purchase], path: str, value: Any) -> None:
    for purchase in purchases:
        purchase.meta = merge_path(purchase.meta, path, value)
