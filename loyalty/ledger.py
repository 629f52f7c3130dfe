"""Loyalty ledger: customers, point credits and balance reads.

``credit_points`` is the only writer of ``customers.points_balance``. Each
credit inserts exactly one ``transactions`` row whose ``transaction_hash``
(sha256 of "{customer external id}-{order id}") is unique, so replaying an
order can never credit it twice. The webhook dedup cache in front of the
queue is only a shortcut; this hash is the guard.

Rates: 1 unit of the accepted currency = 1 point, floored.
"""

from __future__ import annotations

import hashlib
import logging
import os
from dataclasses import asdict, dataclass
from datetime import datetime
from decimal import ROUND_FLOOR, Decimal, InvalidOperation
from typing import Any, Mapping

import psycopg

from loyalty.db import _get_conn, run_serializable
from loyalty.errors import InvalidOrderError

logger = logging.getLogger(__name__)

ACCEPTED_CURRENCY = os.environ.get("LOYALTY_ACCEPTED_CURRENCY", "EUR").upper()

REASON_UNSUPPORTED_CURRENCY = "unsupported_currency"
REASON_NO_POINTS = "no_points"
REASON_DUPLICATE = "duplicate"

_CUSTOMER_COLUMNS = "id, email, shopify_id, points_balance, created_at, updated_at"

# Column limits: BIGINT ids, NUMERIC(12, 2) amounts
_MAX_ID = 2**63 - 1
_MAX_AMOUNT = Decimal("1e10")
_CENT = Decimal("0.01")


# ---------------------------------------------------------------------------
# Inbound order
# ---------------------------------------------------------------------------


def _parse_positive_int(value: Any, field: str) -> int:
    if isinstance(value, bool) or value is None:
        raise InvalidOrderError(f"Order field '{field}' is missing or invalid", field)
    try:
        parsed = int(str(value).strip())
    except ValueError:
        raise InvalidOrderError(f"Order field '{field}' is not an integer: {value!r}", field)
    if parsed <= 0 or parsed > _MAX_ID:
        raise InvalidOrderError(f"Order field '{field}' must be positive and fit in 64 bits", field)
    return parsed


def normalize_email(email: str) -> str:
    return email.strip().lower()


@dataclass(frozen=True)
class OrderEvent:
    """An ``orders/create`` payload reduced to the fields the ledger needs."""

    order_id: int
    email: str
    amount: Decimal
    currency: str
    customer_external_id: int

    @property
    def points(self) -> int:
        return int(self.amount.to_integral_value(rounding=ROUND_FLOOR))

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> OrderEvent:
        """Validate a parsed webhook body.

        The external customer id comes from ``customer.id``; orders placed
        without a customer record fall back to the order id.
        Ids and amounts must fit their columns and amounts carry at most two
        decimal places. The currency code is kept as sent (only surrounding
        whitespace is stripped), so "eur" is not the accepted "EUR".

        Raises:
            InvalidOrderError: a required field is missing or malformed.
        """
        if not isinstance(payload, Mapping):
            raise InvalidOrderError("Order payload must be a JSON object")

        order_id = _parse_positive_int(payload.get("id"), "id")

        customer = payload.get("customer")
        if not isinstance(customer, Mapping):
            customer = {}

        email = payload.get("email") or customer.get("email") or ""
        if not isinstance(email, str) or "@" not in email:
            raise InvalidOrderError("Order field 'email' is missing or invalid", "email")

        raw_total = payload.get("total_price")
        if raw_total is None or isinstance(raw_total, bool):
            raise InvalidOrderError("Order field 'total_price' is missing", "total_price")
        try:
            amount = Decimal(str(raw_total).strip())
        except InvalidOperation:
            raise InvalidOrderError(
                f"Order field 'total_price' is not a number: {raw_total!r}", "total_price"
            )
        if not amount.is_finite():
            raise InvalidOrderError("Order field 'total_price' must be finite", "total_price")
        if abs(amount) >= _MAX_AMOUNT:
            raise InvalidOrderError("Order field 'total_price' is out of range", "total_price")
        if amount != amount.quantize(_CENT):
            raise InvalidOrderError(
                "Order field 'total_price' has more than 2 decimal places", "total_price"
            )

        currency = payload.get("currency")
        if not isinstance(currency, str) or not currency.strip():
            raise InvalidOrderError("Order field 'currency' is missing", "currency")

        if customer.get("id") is not None:
            customer_external_id = _parse_positive_int(customer.get("id"), "customer.id")
        else:
            customer_external_id = order_id

        return cls(
            order_id=order_id,
            email=normalize_email(email),
            amount=amount,
            currency=currency.strip(),
            customer_external_id=customer_external_id,
        )


# ---------------------------------------------------------------------------
# Ledger records
# ---------------------------------------------------------------------------


@dataclass
class Customer:
    id: int
    email: str
    external_id: int
    points_balance: int
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @staticmethod
    def from_row(row: Mapping[str, Any]) -> Customer:
        return Customer(
            id=row["id"],
            email=row["email"],
            external_id=row["shopify_id"],
            points_balance=row["points_balance"],
            created_at=row.get("created_at"),
            updated_at=row.get("updated_at"),
        )


@dataclass
class LedgerEntry:
    id: int
    order_id: int
    amount: Decimal
    currency: str
    points_added: int
    transaction_hash: str
    created_at: datetime | None = None


@dataclass
class CreditResult:
    """Outcome of ``credit_points``.

    ``credited`` is False for every rejection; ``reason`` says which one.
    ``new_balance`` is the customer's balance after the call, or 0 when the
    order was rejected before a customer was resolved.
    """

    credited: bool
    new_balance: int = 0
    transaction_id: int | None = None
    reason: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def transaction_fingerprint(customer_external_id: int, order_id: int) -> str:
    """Deterministic ledger key for one order of one customer."""
    data = f"{customer_external_id}-{order_id}"
    return hashlib.sha256(data.encode("utf-8")).hexdigest()


# ---------------------------------------------------------------------------
# Writes (SERIALIZABLE)
# ---------------------------------------------------------------------------


def _resolve_customer(conn: psycopg.Connection, email: str, external_id: int) -> Customer:
    row = conn.execute(
        f"SELECT {_CUSTOMER_COLUMNS} FROM customers WHERE email = %s",
        (email,),
    ).fetchone()
    if row is not None:
        return Customer.from_row(row)

    row = conn.execute(
        f"""INSERT INTO customers (email, shopify_id, points_balance)
            VALUES (%s, %s, 0)
            RETURNING {_CUSTOMER_COLUMNS}""",
        (email, external_id),
    ).fetchone()
    logger.info("New customer created: %s (ID: %s)", email, row["id"])
    return Customer.from_row(row)


def get_or_create_customer(email: str, external_id: int) -> Customer:
    """Return the customer for ``email``, creating it with a zero balance.

    Concurrent first orders for one email serialize on the unique email
    index; the loser retries and finds the winner's row.
    """
    email = normalize_email(email)
    return run_serializable(
        lambda conn: _resolve_customer(conn, email, external_id),
        name="get_or_create_customer",
    )


def credit_points(order: OrderEvent) -> CreditResult:
    """Credit ``floor(amount)`` points for ``order`` exactly once.

    Rejections (no state change, ``credited=False``):
    - currency other than ACCEPTED_CURRENCY
    - ``floor(amount) <= 0``
    - a transaction with the same fingerprint already exists

    The customer lookup/creation, the duplicate check, the balance increment
    and the ledger insert share one SERIALIZABLE transaction; an error
    anywhere rolls all of it back and propagates.
    """
    if order.currency != ACCEPTED_CURRENCY:
        logger.warning(
            "Unsupported currency %s for order %s. Only %s accepted.",
            order.currency,
            order.order_id,
            ACCEPTED_CURRENCY,
        )
        return CreditResult(credited=False, reason=REASON_UNSUPPORTED_CURRENCY)

    points = order.points
    if points <= 0:
        logger.info("No points to add for order %s (amount=%s)", order.order_id, order.amount)
        return CreditResult(credited=False, reason=REASON_NO_POINTS)

    def _credit(conn: psycopg.Connection) -> CreditResult:
        customer = _resolve_customer(conn, order.email, order.customer_external_id)
        tx_hash = transaction_fingerprint(customer.external_id, order.order_id)

        existing = conn.execute(
            "SELECT id FROM transactions WHERE transaction_hash = %s",
            (tx_hash,),
        ).fetchone()
        if existing is not None:
            return CreditResult(
                credited=False,
                new_balance=customer.points_balance,
                reason=REASON_DUPLICATE,
            )

        balance_row = conn.execute(
            """UPDATE customers
               SET points_balance = points_balance + %s, updated_at = now()
               WHERE id = %s
               RETURNING points_balance""",
            (points, customer.id),
        ).fetchone()

        tx_row = conn.execute(
            """INSERT INTO transactions
               (customer_id, order_id, amount, currency, points_added, transaction_hash)
               VALUES (%s, %s, %s, %s, %s, %s)
               RETURNING id""",
            (customer.id, order.order_id, order.amount, order.currency, points, tx_hash),
        ).fetchone()

        return CreditResult(
            credited=True,
            new_balance=balance_row["points_balance"],
            transaction_id=tx_row["id"],
        )

    result = run_serializable(_credit, name="credit_points")
    if result.credited:
        logger.info(
            "%d points added to %s for order %s. New balance: %d",
            points,
            order.email,
            order.order_id,
            result.new_balance,
        )
    else:
        logger.info("Duplicate transaction for order %s. Ignored.", order.order_id)
    return result


# ---------------------------------------------------------------------------
# Reads
# ---------------------------------------------------------------------------


def get_customer_balance(email: str) -> Customer | None:
    with _get_conn() as conn:
        row = conn.execute(
            f"SELECT {_CUSTOMER_COLUMNS} FROM customers WHERE email = %s",
            (normalize_email(email),),
        ).fetchone()
    return Customer.from_row(row) if row else None


def list_customers() -> list[Customer]:
    with _get_conn() as conn:
        rows = conn.execute(
            f"SELECT {_CUSTOMER_COLUMNS} FROM customers ORDER BY created_at DESC, id DESC"
        ).fetchall()
    return [Customer.from_row(r) for r in rows]


def list_transactions(email: str, limit: int = 50) -> list[LedgerEntry]:
    """Most recent ledger entries for a customer, newest first."""
    with _get_conn() as conn:
        rows = conn.execute(
            """SELECT t.id, t.order_id, t.amount, t.currency, t.points_added,
                      t.transaction_hash, t.created_at
               FROM transactions t
               JOIN customers c ON c.id = t.customer_id
               WHERE c.email = %s
               ORDER BY t.created_at DESC, t.id DESC
               LIMIT %s""",
            (normalize_email(email), limit),
        ).fetchall()
    return [LedgerEntry(**r) for r in rows]
