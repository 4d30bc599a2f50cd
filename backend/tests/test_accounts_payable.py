"""
Accounts payable tests.

Verifies:
- Outstanding and payment status are derived from payment rows only
- FX rate policy (base, booked, caller) and realized FX delta
- Overpayment, already-paid and not-received guards
- Reversals restore the outstanding balance exactly once
- Supplier summary, statement filters, CSV schema, reminders and aging
"""

import csv
import io
from datetime import date, timedelta

import pytest

from backoffice.models import PurchaseOrderPayment
from backoffice.services import purchase_ap_service as ap
from backoffice.services import purchase_service
from backoffice.services.errors import PurchaseServiceError, ServiceError
from backoffice.time_utils import utctoday
from backoffice.validation import ValidationError


def received_po(store, user, product, *, qty=10, unit_cost=100, currency="LAK", rate=None, supplier="Lao Beverage Co", due_date=None, **header):
    payload = {
        "supplier_name": supplier,
        "purchase_currency": currency,
        "items": [{"product_id": product.id, "qty_ordered": qty, "unit_cost_purchase": unit_cost}],
        "receive_immediately": True,
    }
    if rate is not None:
        payload["exchange_rate"] = rate
    if due_date is not None:
        payload["due_date"] = due_date.isoformat()
    payload.update(header)
    return purchase_service.create_purchase_order(store_id=store.id, user_id=user.id, payload=payload).purchase_order


def settle(store, user, po, **payload):
    return ap.settle_payment(po_id=po.id, store_id=store.id, user_id=user.id, payload=payload)


def reverse(store, user, po, payment_id, note=None):
    return ap.reverse_payment(po_id=po.id, payment_id=payment_id, store_id=store.id, user_id=user.id, note=note)


# =============================================================================
# PURE HELPERS
# =============================================================================


class TestApHelpers:

    @pytest.mark.parametrize(
        "grand_total,paid,expected",
        [
            (1000, 0, "UNPAID"),
            (1000, 1, "PARTIAL"),
            (1000, 1000, "PAID"),
            (0, 0, "PAID"),
        ],
    )
    def test_payment_status(self, grand_total, paid, expected):
        assert ap.payment_status_for(grand_total, paid) == expected

    def test_classify_due(self):
        today = date(2026, 10, 18)
        assert ap.classify_due(None, today, 7) == ("NO_DUE_DATE", None)
        assert ap.classify_due(date(2026, 10, 17), today, 7) == ("OVERDUE", -1)
        assert ap.classify_due(date(2026, 10, 18), today, 7) == ("DUE_SOON", 0)
        assert ap.classify_due(date(2026, 10, 25), today, 7) == ("DUE_SOON", 7)
        assert ap.classify_due(date(2026, 10, 26), today, 7) == ("NOT_DUE", 8)

    @pytest.mark.parametrize("age,bucket", [(0, "0_30"), (30, "0_30"), (31, "31_60"), (60, "31_60"), (61, "61_PLUS")])
    def test_aging_bucket(self, age, bucket):
        assert ap.aging_bucket(age) == bucket

    def test_supplier_key(self):
        assert ap.supplier_key("  Lao Beverage Co ") == "lao beverage co"
        assert ap.supplier_key("   ") == ap.UNSPECIFIED_SUPPLIER_KEY
        assert ap.supplier_display_name(None) == ap.UNSPECIFIED_SUPPLIER_NAME


# =============================================================================
# SETTLEMENT
# =============================================================================


class TestSettlement:

    def test_partial_then_full_payment_in_store_currency(self, store, admin_user, product):
        po = received_po(store, admin_user, product, qty=10, unit_cost=100)

        first = settle(store, admin_user, po, amount=400)
        assert first.before.outstanding_base == 1000
        assert first.after.outstanding_base == 600
        assert first.after.payment_status == "PARTIAL"
        assert first.payment.fx_rate_source == ap.RATE_SOURCE_BASE

        second = settle(store, admin_user, po, amount=600, reference="BANK-77")
        assert second.after.outstanding_base == 0
        assert second.body["outstanding"]["payment_status"] == "PAID"

        with pytest.raises(PurchaseServiceError) as exc:
            settle(store, admin_user, po, amount=1)
        assert exc.value.reason_code == "PO_ALREADY_PAID"
        assert exc.value.status == 409

    def test_overpayment_rejected(self, store, admin_user, product):
        po = received_po(store, admin_user, product, qty=10, unit_cost=100)
        with pytest.raises(PurchaseServiceError) as exc:
            settle(store, admin_user, po, amount=1001)
        assert exc.value.reason_code == "OVERPAYMENT"
        assert PurchaseOrderPayment.query.count() == 0

    def test_requires_received_po(self, store, admin_user, product):
        created = purchase_service.create_purchase_order(
            store_id=store.id,
            user_id=admin_user.id,
            payload={
                "supplier_name": "Lao Beverage Co",
                "purchase_currency": "LAK",
                "items": [{"product_id": product.id, "qty_ordered": 1, "unit_cost_purchase": 100}],
            },
        )
        with pytest.raises(PurchaseServiceError) as exc:
            settle(store, admin_user, created.purchase_order, amount=10)
        assert exc.value.reason_code == "PO_NOT_RECEIVED"

    def test_booked_rate_and_fx_delta(self, store, admin_user, product):
        # 10 x 100 THB at 600 LAK/THB = 600,000 LAK
        po = received_po(store, admin_user, product, qty=10, unit_cost=100, currency="THB", rate="600")
        assert po.grand_total_base == 600000

        first = settle(store, admin_user, po, amount=500, currency="THB")
        assert first.payment.fx_rate_source == ap.RATE_SOURCE_BOOKED
        assert first.payment.amount_base == 300000
        assert first.payment.fx_delta_base == 0

        # Outstanding moves by the converted amount, so 500 THB at 630 is too much
        with pytest.raises(PurchaseServiceError) as exc:
            settle(store, admin_user, po, amount=500, currency="THB", fx_rate_used="630")
        assert exc.value.reason_code == "OVERPAYMENT"

        second = settle(store, admin_user, po, amount=400, currency="THB", fx_rate_used="630")
        assert second.payment.fx_rate_source == ap.RATE_SOURCE_CALLER
        assert second.payment.amount_base == 252000
        assert second.payment.settled_base == 240000
        assert second.payment.fx_delta_base == 12000

        assert second.after.outstanding_base == 48000
        assert second.after.total_paid_base == 552000
        assert second.after.booked_paid_base == 540000
        assert second.after.fx_delta_base == 12000

    def test_caller_rate_reduces_outstanding_at_that_rate(self, store, admin_user, product):
        # 100 x 1 USD at 20,000 LAK/USD = 2,000,000 LAK
        po = received_po(store, admin_user, product, qty=100, unit_cost=1, currency="USD", rate="20000")

        result = settle(store, admin_user, po, amount=50, fx_rate_used="22000")
        assert result.payment.amount_base == 1100000
        assert result.payment.settled_base == 1000000
        assert result.payment.fx_delta_base == 100000
        assert result.after.outstanding_base == 900000
        assert result.after.payment_status == "PARTIAL"

    def test_rate_equal_to_booked_is_recorded_as_booked(self, store, admin_user, product):
        po = received_po(store, admin_user, product, qty=10, unit_cost=100, currency="THB", rate="600")
        result = settle(store, admin_user, po, amount=100, currency="THB", fx_rate_used="600.000")
        assert result.payment.fx_rate_source == ap.RATE_SOURCE_BOOKED
        assert result.payment.fx_delta_base == 0

    def test_full_invoice_at_fractional_rate_clears_exactly(self, store, admin_user, product):
        po = received_po(store, admin_user, product, qty=7, unit_cost=1001, currency="USD", rate="21500.3")
        assert po.total_cost_base == 150652602

        result = settle(store, admin_user, po, amount=7007, currency="USD")
        assert result.payment.amount_base == 150652602
        assert result.after.outstanding_base == 0
        assert result.after.payment_status == "PAID"
        assert result.after.fx_delta_base == 0

    def test_split_invoice_at_fractional_rate_clears_exactly(self, store, admin_user, product):
        po = received_po(store, admin_user, product, qty=7, unit_cost=1001, currency="USD", rate="21500.3")

        first = settle(store, admin_user, po, amount=3000)
        assert first.payment.amount_base == 64500900
        second = settle(store, admin_user, po, amount=4007)
        assert second.payment.amount_base == 86151702
        assert second.after.outstanding_base == 0
        assert second.after.payment_status == "PAID"

    def test_split_survives_reversal(self, store, admin_user, product):
        po = received_po(store, admin_user, product, qty=3, unit_cost=1, currency="USD", rate="21500.5")
        # round(3 x 21500.5) = 64,502
        assert po.total_cost_base == 64502

        first = settle(store, admin_user, po, amount=1)
        assert first.payment.amount_base == 21501
        reverse(store, admin_user, po, first.payment.id)

        paid = [settle(store, admin_user, po, amount=1).payment.amount_base for _ in range(3)]
        assert paid == [21501, 21500, 21501]
        assert ap.compute_outstanding(po).outstanding_base == 0

    def test_unlocked_rate_blocks_settlement(self, store, admin_user, product):
        po = received_po(store, admin_user, product, currency="THB", rate="600", lock_exchange_rate=False)
        with pytest.raises(PurchaseServiceError) as exc:
            settle(store, admin_user, po, amount=100, currency="THB")
        assert exc.value.reason_code == "RATE_NOT_LOCKED"
        assert PurchaseOrderPayment.query.count() == 0

        # Paying in store currency is refused too until the rate is final
        with pytest.raises(PurchaseServiceError) as exc:
            settle(store, admin_user, po, amount=100, currency="LAK")
        assert exc.value.reason_code == "RATE_NOT_LOCKED"

        purchase_service.finalize_exchange_rate(
            po_id=po.id, store_id=store.id, user_id=admin_user.id, payload={"exchange_rate": "610"},
        )
        result = settle(store, admin_user, po, amount=100, currency="THB")
        assert result.payment.fx_rate_used == 610
        assert result.after.outstanding_base == 610000 - 61000

    def test_rate_outside_tolerance_rejected(self, store, admin_user, product):
        po = received_po(store, admin_user, product, currency="THB", rate="600")
        with pytest.raises(PurchaseServiceError) as exc:
            settle(store, admin_user, po, amount=100, currency="THB", fx_rate_used="800")
        assert exc.value.reason_code == "FX_RATE_OUT_OF_RANGE"

    def test_third_currency_requires_rate(self, store, admin_user, product):
        po = received_po(store, admin_user, product, qty=1, unit_cost=100000)
        with pytest.raises(PurchaseServiceError) as exc:
            settle(store, admin_user, po, amount=2, currency="USD")
        assert exc.value.reason_code == "VALIDATION_ERROR"

        result = settle(store, admin_user, po, amount=2, currency="USD", fx_rate_used="21000")
        assert result.payment.amount_base == 42000
        assert result.payment.settled_base == 42000
        assert result.after.outstanding_base == 58000

    def test_store_currency_rate_must_be_one(self, store, admin_user, product):
        po = received_po(store, admin_user, product)
        with pytest.raises(PurchaseServiceError) as exc:
            settle(store, admin_user, po, amount=10, currency="LAK", fx_rate_used="2")
        assert exc.value.reason_code == "VALIDATION_ERROR"

    def test_unsupported_currency(self, store, admin_user, product):
        po = received_po(store, admin_user, product)
        with pytest.raises(ServiceError) as exc:
            settle(store, admin_user, po, amount=10, currency="EUR", fx_rate_used="25000")
        assert exc.value.reason_code == "UNSUPPORTED_CURRENCY"

    def test_amount_must_be_positive_integer(self, store, admin_user, product):
        po = received_po(store, admin_user, product)
        with pytest.raises(ValidationError):
            settle(store, admin_user, po, amount=0)
        with pytest.raises(ValidationError):
            settle(store, admin_user, po, amount="12.5")


class TestReversal:

    def test_reversal_restores_outstanding_once(self, db_session, store, admin_user, product):
        po = received_po(store, admin_user, product, qty=10, unit_cost=100)
        paid = settle(store, admin_user, po, amount=1000)
        assert paid.after.payment_status == "PAID"

        reversed_ = reverse(store, admin_user, po, paid.payment.id, note="Bounced transfer")
        assert reversed_.payment.entry_type == ap.ENTRY_REVERSAL
        assert reversed_.payment.reversed_payment_id == paid.payment.id
        assert reversed_.after.outstanding_base == 1000
        assert reversed_.after.payment_status == "UNPAID"

        with pytest.raises(PurchaseServiceError) as exc:
            reverse(store, admin_user, po, paid.payment.id)
        assert exc.value.reason_code == "PAYMENT_ALREADY_REVERSED"
        assert exc.value.status == 409

        with pytest.raises(PurchaseServiceError):
            reverse(store, admin_user, po, reversed_.payment.id)

        # Original row untouched, PO can be settled again
        assert db_session.get(PurchaseOrderPayment, paid.payment.id).amount == 1000
        assert settle(store, admin_user, po, amount=1000).after.outstanding_base == 0

    def test_reversal_nets_fx_delta(self, store, admin_user, product):
        po = received_po(store, admin_user, product, qty=1, unit_cost=100, currency="THB", rate="600")
        paid = settle(store, admin_user, po, amount=50, currency="THB", fx_rate_used="660")
        assert paid.after.fx_delta_base == 3000

        result = reverse(store, admin_user, po, paid.payment.id)
        assert result.after.fx_delta_base == 0
        assert result.after.total_paid_base == 0


# =============================================================================
# READ SIDE
# =============================================================================


class TestApReports:

    @pytest.fixture
    def ledger(self, store, admin_user, product):
        today = utctoday()
        overdue = received_po(store, admin_user, product, qty=1, unit_cost=5000, supplier="Lao Beverage Co", due_date=today - timedelta(days=45))
        soon = received_po(store, admin_user, product, qty=1, unit_cost=3000, supplier=" lao beverage co", due_date=today + timedelta(days=3))
        later = received_po(store, admin_user, product, qty=1, unit_cost=2000, supplier="Mekong Paper", due_date=today + timedelta(days=40))
        undated = received_po(store, admin_user, product, qty=1, unit_cost=1000, supplier="")
        paid = received_po(store, admin_user, product, qty=1, unit_cost=9000, supplier="Mekong Paper")
        settle(store, admin_user, soon, amount=1000)
        settle(store, admin_user, paid, amount=9000)
        return {"today": today, "overdue": overdue, "soon": soon, "later": later, "undated": undated, "paid": paid}

    def test_supplier_summary_groups_by_normalized_name(self, store, ledger):
        summary = ap.get_supplier_summary(store.id, today=ledger["today"], use_cache=False)
        by_key = {s["supplier_key"]: s for s in summary["suppliers"]}

        assert list(by_key) == ["lao beverage co", "mekong paper", ap.UNSPECIFIED_SUPPLIER_KEY]
        lao = by_key["lao beverage co"]
        assert lao["po_count"] == 2
        assert lao["total_outstanding_base"] == 7000
        assert lao["overdue_outstanding_base"] == 5000
        assert lao["due_soon_outstanding_base"] == 2000
        assert lao["partial_po_count"] == 1
        # Fully paid PO drops out of AP
        assert by_key["mekong paper"]["po_count"] == 1
        assert summary["total_outstanding_base"] == 10000
        assert summary["store_currency"] == "LAK"

    def test_statement_sorted_by_due_date(self, store, ledger):
        lao = ap.get_supplier_statement(store.id, supplier="Lao Beverage Co", today=ledger["today"])
        assert [row["po_number"] for row in lao["rows"]] == [ledger["overdue"].po_number, ledger["soon"].po_number]
        assert lao["summary"]["total_outstanding_base"] == 7000
        assert lao["summary"]["aging"]["31_60"] == 5000

        unspecified = ap.get_supplier_statement(store.id, supplier=ap.UNSPECIFIED_SUPPLIER_KEY, today=ledger["today"])
        assert unspecified["rows"][0]["supplier_name"] == ap.UNSPECIFIED_SUPPLIER_NAME
        assert unspecified["rows"][0]["due_status"] == "NO_DUE_DATE"

    def test_statement_filters(self, store, ledger):
        filters = ap.parse_statement_filters({"payment_status": "partial"})
        rows = ap.get_supplier_statement(store.id, supplier="lao beverage co", filters=filters, today=ledger["today"])["rows"]
        assert [row["po_number"] for row in rows] == [ledger["soon"].po_number]

        filters = ap.parse_statement_filters({"due_filter": "OVERDUE"})
        rows = ap.get_supplier_statement(store.id, supplier="lao beverage co", filters=filters, today=ledger["today"])["rows"]
        assert [row["po_number"] for row in rows] == [ledger["overdue"].po_number]

        with pytest.raises(ValidationError):
            ap.parse_statement_filters({"due_from": "18/10/2026"})
        with pytest.raises(ValidationError):
            ap.parse_statement_filters({"payment_status": "PAID"})

    def test_csv_export_schema(self, store, ledger):
        statement = ap.get_supplier_statement(store.id, supplier="lao beverage co", today=ledger["today"])
        text = ap.statement_to_csv(statement)
        rows = list(csv.reader(io.StringIO(text)))

        assert rows[0] == ap.STATEMENT_CSV_COLUMNS
        assert rows[0][0] == "supplier_name" and rows[0][-1] == "store_currency"
        assert len(rows) == 3
        assert rows[1][1] == ledger["overdue"].po_number
        assert rows[1][-1] == "LAK"
        assert not text.endswith("\n")

    def test_csv_filename(self):
        assert ap.statement_csv_filename("Lao Beverage Co", date(2026, 10, 18)) == "ap-statement-lao-beverage-co-2026-10-18.csv"
        assert ap.statement_csv_filename("", date(2026, 10, 18)) == "ap-statement-supplier-2026-10-18.csv"

    def test_due_reminders_overdue_first(self, store, ledger):
        reminders = ap.get_due_reminders(store.id, today=ledger["today"], use_cache=False)["summary"]
        assert reminders["overdue_count"] == 1
        assert reminders["due_soon_count"] == 1
        assert [item["due_status"] for item in reminders["items"]] == ["OVERDUE", "DUE_SOON"]
        assert reminders["due_soon_outstanding_base"] == 2000

    def test_aging_buckets(self, store, ledger):
        aging = ap.get_aging_summary(store.id, today=ledger["today"], use_cache=False)
        assert aging["buckets"]["31_60"] == {"po_count": 1, "outstanding_base": 5000}
        assert aging["buckets"]["0_30"]["po_count"] == 3
        assert aging["total_outstanding_base"] == 10000

    def test_summary_cache_invalidated_by_payment(self, store, admin_user, ledger):
        before = ap.get_supplier_summary(store.id, today=ledger["today"])
        settle(store, admin_user, ledger["later"], amount=2000)
        after = ap.get_supplier_summary(store.id, today=ledger["today"])
        assert after["total_outstanding_base"] == before["total_outstanding_base"] - 2000
