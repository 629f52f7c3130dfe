"""Tests for the loyalty ledger (loyalty/ledger.py).

Tests:
- OrderEvent parsing and validation
- Point computation (floor, non-positive amounts)
- Transaction fingerprint
- credit_points rejection paths (no DB access)
- credit_points / get_or_create_customer statement flow on a mocked connection
- Balance reads
"""

from __future__ import annotations

import hashlib
from datetime import datetime, timezone
from decimal import Decimal
from unittest.mock import MagicMock, patch

import pytest
from hypothesis import given
from hypothesis import strategies as st

from loyalty import ledger
from loyalty.errors import InvalidOrderError
from loyalty.ledger import (
    REASON_DUPLICATE,
    REASON_NO_POINTS,
    REASON_UNSUPPORTED_CURRENCY,
    CreditResult,
    OrderEvent,
    credit_points,
    get_customer_balance,
    get_or_create_customer,
    list_customers,
    list_transactions,
    transaction_fingerprint,
)

_NOW = datetime(2026, 1, 1, tzinfo=timezone.utc)


def _customer_row(balance: int = 0, shopify_id: int = 7001, email: str = "a@x.com") -> dict:
    return {
        "id": 11,
        "email": email,
        "shopify_id": shopify_id,
        "points_balance": balance,
        "created_at": _NOW,
        "updated_at": _NOW,
    }


def _mock_pg_conn(fetchone_values=None, rows=None):
    """Mock psycopg connection; successive execute() calls yield fetchone_values."""
    mock_conn = MagicMock()
    if fetchone_values is not None:
        cursors = []
        for value in fetchone_values:
            cursor = MagicMock()
            cursor.fetchone.return_value = value
            cursors.append(cursor)
        mock_conn.execute.side_effect = cursors
    else:
        cursor = MagicMock()
        cursor.fetchall.return_value = rows or []
        cursor.fetchone.return_value = rows[0] if rows else None
        mock_conn.execute.return_value = cursor
    mock_conn.__enter__ = lambda s: mock_conn
    mock_conn.__exit__ = lambda *a: None
    return mock_conn


def _order(**overrides) -> OrderEvent:
    payload = {
        "id": 1,
        "email": "a@x.com",
        "total_price": "10.00",
        "currency": "EUR",
        "customer": {"id": 7001},
    }
    payload.update(overrides)
    return OrderEvent.from_payload(payload)


# ── OrderEvent ───────────────────────────────────────────────────────────


class TestOrderEventParsing:
    def test_valid_payload(self, order_payload):
        order = OrderEvent.from_payload(order_payload)
        assert order.order_id == 1
        assert order.email == "a@x.com"
        assert order.amount == Decimal("10.00")
        assert order.currency == "EUR"
        assert order.customer_external_id == 7001

    def test_customer_id_falls_back_to_order_id(self, order_payload):
        del order_payload["customer"]
        assert OrderEvent.from_payload(order_payload).customer_external_id == 1

    def test_email_from_customer_record(self, order_payload):
        order_payload["email"] = None
        order_payload["customer"]["email"] = "b@y.com"
        assert OrderEvent.from_payload(order_payload).email == "b@y.com"

    def test_normalizes_email(self, order_payload):
        order_payload["email"] = "  A@X.com "
        assert OrderEvent.from_payload(order_payload).email == "a@x.com"

    def test_currency_kept_as_sent(self, order_payload):
        order_payload["currency"] = " eur "
        assert OrderEvent.from_payload(order_payload).currency == "eur"

    def test_trailing_zero_decimals_accepted(self, order_payload):
        order_payload["total_price"] = "10.990"
        assert OrderEvent.from_payload(order_payload).amount == Decimal("10.99")

    def test_largest_storable_values_accepted(self, order_payload):
        order_payload["id"] = 2**63 - 1
        order_payload["customer"] = {"id": 2**63 - 1}
        order_payload["total_price"] = "9999999999.99"
        order = OrderEvent.from_payload(order_payload)
        assert order.order_id == 2**63 - 1
        assert order.amount == Decimal("9999999999.99")

    def test_string_ids_accepted(self, order_payload):
        order_payload["id"] = "42"
        assert OrderEvent.from_payload(order_payload).order_id == 42

    @pytest.mark.parametrize(
        "field,value",
        [
            ("id", None),
            ("id", "abc"),
            ("id", 0),
            ("id", True),
            ("id", 2**63),
            ("id", 2**70),
            ("email", None),
            ("email", "not-an-email"),
            ("total_price", None),
            ("total_price", "ten"),
            ("total_price", "NaN"),
            ("total_price", "10000000000.00"),
            ("total_price", "-10000000000.00"),
            ("total_price", "10.999"),
            ("total_price", "1e-3"),
            ("currency", ""),
            ("currency", None),
        ],
    )
    def test_invalid_fields(self, order_payload, field, value):
        order_payload[field] = value
        with pytest.raises(InvalidOrderError) as exc_info:
            OrderEvent.from_payload(order_payload)
        assert exc_info.value.field == field

    @pytest.mark.parametrize("value", ["x", 0, 2**70])
    def test_invalid_customer_id(self, order_payload, value):
        order_payload["customer"] = {"id": value}
        with pytest.raises(InvalidOrderError) as exc_info:
            OrderEvent.from_payload(order_payload)
        assert exc_info.value.field == "customer.id"

    def test_non_object_payload(self):
        with pytest.raises(InvalidOrderError):
            OrderEvent.from_payload(["not", "an", "object"])

    def test_invalid_order_is_value_error(self):
        assert issubclass(InvalidOrderError, ValueError)


class TestPoints:
    @pytest.mark.parametrize(
        "total,points",
        [("10.00", 10), ("10.99", 10), ("0.99", 0), ("0.00", 0), ("-5.00", -5), ("1", 1)],
    )
    def test_floor(self, total, points):
        assert _order(total_price=total).points == points

    @given(
        amount=st.decimals(
            min_value=Decimal("-1000000"),
            max_value=Decimal("1000000"),
            places=2,
            allow_nan=False,
            allow_infinity=False,
        )
    )
    def test_points_never_exceed_amount(self, amount):
        points = _order(total_price=str(amount)).points
        assert points <= amount < points + 1


class TestTransactionFingerprint:
    def test_matches_sha256_of_ids(self):
        expected = hashlib.sha256(b"7001-1").hexdigest()
        assert transaction_fingerprint(7001, 1) == expected

    @given(
        customer=st.integers(min_value=1, max_value=2**62),
        order=st.integers(min_value=1, max_value=2**62),
    )
    def test_distinct_pairs_distinct_fingerprints(self, customer, order):
        fp = transaction_fingerprint(customer, order)
        assert fp == transaction_fingerprint(customer, order)
        assert fp != transaction_fingerprint(customer, order + 1)


# ── credit_points ────────────────────────────────────────────────────────


class TestCreditPointsRejections:
    """Rejections decided before any database work."""

    @patch("loyalty.ledger.run_serializable")
    def test_unsupported_currency(self, mock_run):
        result = credit_points(_order(total_price="100.00", currency="USD"))
        assert result == CreditResult(credited=False, reason=REASON_UNSUPPORTED_CURRENCY)
        mock_run.assert_not_called()

    @patch("loyalty.ledger.run_serializable")
    def test_currency_compared_strictly(self, mock_run):
        result = credit_points(_order(total_price="100.00", currency="eur"))
        assert result.reason == REASON_UNSUPPORTED_CURRENCY
        mock_run.assert_not_called()

    @pytest.mark.parametrize("total", ["0.00", "0.99", "-3.00"])
    @patch("loyalty.ledger.run_serializable")
    def test_no_points(self, mock_run, total):
        result = credit_points(_order(total_price=total))
        assert result.credited is False
        assert result.reason == REASON_NO_POINTS
        mock_run.assert_not_called()

    @patch("loyalty.ledger.ACCEPTED_CURRENCY", "USD")
    @patch("loyalty.ledger.run_serializable")
    def test_accepted_currency_configurable(self, mock_run):
        mock_run.return_value = CreditResult(credited=True, new_balance=100, transaction_id=1)
        assert credit_points(_order(total_price="100.00", currency="USD")).credited is True


@patch("loyalty.db._get_conn")
class TestCreditPointsTransaction:
    """Statement flow inside the serializable transaction."""

    def test_new_customer_credited(self, mock_get_conn):
        conn = _mock_pg_conn([
            None,                    # SELECT customer by email
            _customer_row(0),        # INSERT customer
            None,                    # SELECT transaction by hash
            {"points_balance": 10},  # UPDATE balance
            {"id": 99},              # INSERT transaction
        ])
        mock_get_conn.return_value = conn

        result = credit_points(_order())

        assert result == CreditResult(credited=True, new_balance=10, transaction_id=99)
        insert_params = conn.execute.call_args_list[4].args[1]
        assert insert_params == (
            11, 1, Decimal("10.00"), "EUR", 10, transaction_fingerprint(7001, 1)
        )
        update_params = conn.execute.call_args_list[3].args[1]
        assert update_params == (10, 11)

    def test_existing_customer_uses_stored_external_id(self, mock_get_conn):
        """Fingerprint comes from the customer row, not the payload."""
        conn = _mock_pg_conn([
            _customer_row(5, shopify_id=555),
            None,
            {"points_balance": 15},
            {"id": 100},
        ])
        mock_get_conn.return_value = conn

        result = credit_points(_order(customer={"id": 999}))

        assert result.new_balance == 15
        hash_lookup = conn.execute.call_args_list[1].args[1]
        assert hash_lookup == (transaction_fingerprint(555, 1),)

    def test_duplicate_order_not_credited(self, mock_get_conn):
        conn = _mock_pg_conn([
            _customer_row(10),
            {"id": 99},  # existing transaction with this hash
        ])
        mock_get_conn.return_value = conn

        result = credit_points(_order())

        assert result == CreditResult(
            credited=False, new_balance=10, transaction_id=None, reason=REASON_DUPLICATE
        )
        assert conn.execute.call_count == 2  # no UPDATE / INSERT

    def test_error_propagates(self, mock_get_conn):
        conn = _mock_pg_conn()
        conn.execute.side_effect = RuntimeError("insert failed")
        mock_get_conn.return_value = conn

        with pytest.raises(RuntimeError):
            credit_points(_order())


@patch("loyalty.db._get_conn")
class TestGetOrCreateCustomer:
    def test_existing(self, mock_get_conn):
        conn = _mock_pg_conn([_customer_row(25)])
        mock_get_conn.return_value = conn

        customer = get_or_create_customer("A@x.com", 7001)

        assert customer.points_balance == 25
        assert customer.external_id == 7001
        assert conn.execute.call_count == 1
        assert conn.execute.call_args.args[1] == ("a@x.com",)

    def test_creates_with_zero_balance(self, mock_get_conn):
        conn = _mock_pg_conn([None, _customer_row(0, shopify_id=42, email="new@x.com")])
        mock_get_conn.return_value = conn

        customer = get_or_create_customer("new@x.com", 42)

        assert customer.points_balance == 0
        assert customer.email == "new@x.com"
        assert conn.execute.call_args.args[1] == ("new@x.com", 42)


# ── Reads ────────────────────────────────────────────────────────────────


class TestReads:
    @patch("loyalty.ledger._get_conn")
    def test_get_customer_balance(self, mock_get_conn):
        mock_get_conn.return_value = _mock_pg_conn(rows=[_customer_row(10)])
        customer = get_customer_balance("a@x.com")
        assert customer.points_balance == 10
        assert customer.email == "a@x.com"

    @patch("loyalty.ledger._get_conn")
    def test_get_customer_balance_unknown(self, mock_get_conn):
        mock_get_conn.return_value = _mock_pg_conn(rows=[])
        assert get_customer_balance("nobody@x.com") is None

    @patch("loyalty.ledger._get_conn")
    def test_list_customers(self, mock_get_conn):
        mock_get_conn.return_value = _mock_pg_conn(
            rows=[_customer_row(3, email="b@x.com"), _customer_row(1)]
        )
        customers = list_customers()
        assert [c.email for c in customers] == ["b@x.com", "a@x.com"]

    @patch("loyalty.ledger._get_conn")
    def test_list_transactions(self, mock_get_conn):
        mock_get_conn.return_value = _mock_pg_conn(rows=[{
            "id": 99,
            "order_id": 1,
            "amount": Decimal("10.00"),
            "currency": "EUR",
            "points_added": 10,
            "transaction_hash": transaction_fingerprint(7001, 1),
            "created_at": _NOW,
        }])
        entries = list_transactions("a@x.com", limit=5)
        assert len(entries) == 1
        assert entries[0].points_added == 10

    def test_result_to_dict(self):
        assert CreditResult(credited=True, new_balance=10, transaction_id=1).to_dict() == {
            "credited": True,
            "new_balance": 10,
            "transaction_id": 1,
            "reason": None,
        }

    def test_module_default_currency(self):
        assert ledger.ACCEPTED_CURRENCY == "EUR"
