"""
Stock ledger and stock mutation tests.

Verifies:
- Balances are a fold over the movement ledger (SQL aggregate == Python fold)
- Quantity invariants for OUT / RESERVE / RELEASE / ADJUST
- Unit conversion into base quantities
- Rejected movements leave the ledger untouched
"""

import itertools
import random
from datetime import timedelta
from decimal import Decimal

import pytest

from backoffice.models import InventoryMovement, Product
from backoffice.services import inventory_service, stock_service
from backoffice.services.errors import NotFoundError, StockServiceError
from backoffice.services.inventory_service import StockBalance, fold_movements
from backoffice.services.permission_service import PermissionDeniedError
from backoffice.services.stock_service import StockMovementInput
from backoffice.time_utils import utcnow
from backoffice.validation import ValidationError


def post(store, user, product, unit, qty, movement_type, adjust_mode=None, note=None):
    return stock_service.post_stock_movement(
        store_id=store.id,
        user_id=user.id,
        data=StockMovementInput(
            product_id=product.id,
            unit_id=unit.id,
            qty=Decimal(qty),
            movement_type=movement_type,
            adjust_mode=adjust_mode,
            note=note,
        ),
    )


def ledger_rows(product):
    return [
        (m.type, m.qty_base)
        for m in InventoryMovement.query.filter_by(product_id=product.id).order_by(InventoryMovement.id)
    ]


# =============================================================================
# PURE FOLD
# =============================================================================


class TestFoldMovements:

    def test_empty_ledger_is_zero(self):
        assert fold_movements([]) == StockBalance(on_hand=0, reserved=0)

    def test_fold_applies_each_type(self):
        balance = fold_movements([
            ("IN", 10),
            ("RESERVE", 4),
            ("OUT", 5),
            ("RELEASE", 1),
            ("RETURN", 2),
            ("ADJUST", -3),
        ])
        assert balance.on_hand == 4
        assert balance.reserved == 3
        assert balance.available == 1

    def test_fold_ignores_order(self):
        rows = [("IN", 10), ("RESERVE", 4), ("OUT", 5), ("RELEASE", 1), ("ADJUST", -3)]
        expected = fold_movements(rows)
        assert {fold_movements(p) for p in itertools.permutations(rows)} == {expected}

    def test_unknown_type_rejected(self):
        with pytest.raises(ValueError):
            fold_movements([("TELEPORT", 1)])

    @pytest.mark.parametrize(
        "available,expected",
        [
            (0, inventory_service.STOCK_OUT),
            (-2, inventory_service.STOCK_OUT),
            (5, inventory_service.STOCK_LOW),
            (10, inventory_service.STOCK_LOW),
            (11, inventory_service.STOCK_OK),
        ],
    )
    def test_classify_stock_level(self, available, expected):
        assert inventory_service.classify_stock_level(available, 0, 10) == expected


# =============================================================================
# STOCK MUTATIONS
# =============================================================================


class TestStockMovements:

    def test_reserve_then_out_scenario(self, store, admin_user, product, units):
        pcs = units["pcs"]
        post(store, admin_user, product, pcs, 10, "IN")
        post(store, admin_user, product, pcs, 4, "RESERVE")
        result = post(store, admin_user, product, pcs, 5, "OUT")

        assert result.after == StockBalance(on_hand=5, reserved=4)
        assert result.after.available == 1
        assert result.body["balance"] == {"on_hand": 5, "reserved": 4, "available": 1}

        with pytest.raises(StockServiceError) as exc:
            post(store, admin_user, product, pcs, 2, "OUT")
        assert exc.value.reason_code == "INSUFFICIENT_STOCK"

        # Rejected OUT appended nothing
        assert len(ledger_rows(product)) == 3

    def test_sql_aggregate_matches_fold(self, store, admin_user, product, units):
        pcs = units["pcs"]
        post(store, admin_user, product, pcs, 20, "IN")
        post(store, admin_user, product, pcs, 6, "RESERVE")
        post(store, admin_user, product, pcs, 2, "RELEASE")
        post(store, admin_user, product, pcs, 3, "OUT")
        post(store, admin_user, product, pcs, 1, "RETURN")
        post(store, admin_user, product, pcs, 4, "ADJUST", adjust_mode="DECREASE", note="Damaged")

        assert inventory_service.get_balance(store.id, product.id) == fold_movements(ledger_rows(product))
        assert inventory_service.get_balances(store.id)[product.id] == fold_movements(ledger_rows(product))

    def test_sql_aggregate_ignores_insertion_order(self, db_session, store, units):
        rows = [("IN", 30), ("RESERVE", 8), ("OUT", 7), ("RELEASE", 3), ("RETURN", 2), ("ADJUST", -4), ("IN", 5)]
        expected = fold_movements(rows)
        rng = random.Random(20261018)
        start = utcnow()

        balances = []
        for n in range(6):
            shuffled = rows[:]
            rng.shuffle(shuffled)
            product = Product(store_id=store.id, sku=f"PERM-{n}", name=f"Permutation {n}", base_unit_id=units["pcs"].id)
            db_session.add(product)
            db_session.flush()
            for offset, (movement_type, qty) in enumerate(shuffled):
                db_session.add(InventoryMovement(
                    store_id=store.id,
                    product_id=product.id,
                    type=movement_type,
                    qty_base=qty,
                    ref_type="MANUAL",
                    # Timestamps shuffled independently of ids
                    created_at=start - timedelta(minutes=rng.randint(0, 600) + offset),
                ))
            db_session.commit()
            balances.append(inventory_service.get_balance(store.id, product.id))

        assert set(balances) == {expected}
        assert set(inventory_service.get_balances(store.id).values()) == {expected}

    def test_box_quantity_converted_to_base(self, store, admin_user, product, units):
        result = post(store, admin_user, product, units["box"], 2, "IN")
        assert result.body["qty_base"] == 24
        assert result.movement.qty_base == 24

    def test_fractional_box_must_be_whole_base_units(self, store, admin_user, product, units):
        result = post(store, admin_user, product, units["box"], "0.5", "IN")
        assert result.body["qty_base"] == 6

        with pytest.raises(StockServiceError) as exc:
            post(store, admin_user, product, units["pcs"], "1.5", "IN")
        assert exc.value.reason_code == "VALIDATION_ERROR"

    def test_unit_without_conversion_rejected(self, store, admin_user, second_product, units):
        with pytest.raises(StockServiceError) as exc:
            post(store, admin_user, second_product, units["box"], 1, "IN")
        assert exc.value.reason_code == "UNIT_NOT_CONVERTIBLE"

    def test_release_needs_reserved_stock(self, store, admin_user, product, units):
        pcs = units["pcs"]
        post(store, admin_user, product, pcs, 10, "IN")
        post(store, admin_user, product, pcs, 2, "RESERVE")
        with pytest.raises(StockServiceError) as exc:
            post(store, admin_user, product, pcs, 3, "RELEASE")
        assert exc.value.reason_code == "INSUFFICIENT_RESERVED"

    def test_reserve_limited_by_available(self, store, admin_user, product, units):
        pcs = units["pcs"]
        post(store, admin_user, product, pcs, 5, "IN")
        with pytest.raises(StockServiceError) as exc:
            post(store, admin_user, product, pcs, 6, "RESERVE")
        assert exc.value.reason_code == "INSUFFICIENT_STOCK"

    def test_adjust_is_stored_signed(self, store, admin_user, product, units):
        pcs = units["pcs"]
        post(store, admin_user, product, pcs, 10, "IN")
        post(store, admin_user, product, pcs, 3, "ADJUST", adjust_mode="DECREASE", note="Count correction")
        post(store, admin_user, product, pcs, 1, "ADJUST", adjust_mode="INCREASE", note="Found one")

        assert ledger_rows(product) == [("IN", 10), ("ADJUST", -3), ("ADJUST", 1)]
        assert inventory_service.get_balance(store.id, product.id).on_hand == 8

    def test_adjust_decrease_cannot_go_negative(self, store, admin_user, product, units):
        post(store, admin_user, product, units["pcs"], 2, "IN")
        with pytest.raises(StockServiceError) as exc:
            post(store, admin_user, product, units["pcs"], 3, "ADJUST", adjust_mode="DECREASE", note="Shrink")
        assert exc.value.reason_code == "INSUFFICIENT_STOCK"

    def test_inactive_product_rejected(self, db_session, store, admin_user, product, units):
        product.is_active = False
        db_session.commit()
        with pytest.raises(StockServiceError) as exc:
            post(store, admin_user, product, units["pcs"], 1, "IN")
        assert exc.value.reason_code == "PRODUCT_INACTIVE"

    def test_product_from_other_store_not_found(self, other_store, admin_user, product, units):
        with pytest.raises(NotFoundError):
            post(other_store, admin_user, product, units["pcs"], 1, "IN")

    def test_permission_checked_per_movement_type(self, store, clerk_user, product, units):
        post(store, clerk_user, product, units["pcs"], 5, "IN")
        with pytest.raises(PermissionDeniedError) as exc:
            post(store, clerk_user, product, units["pcs"], 1, "ADJUST", adjust_mode="DECREASE", note="x")
        assert exc.value.permission_code == "inventory.adjust"
        assert exc.value.status == 403


class TestStockPayloadParsing:

    def test_adjust_requires_mode_and_note(self):
        with pytest.raises(ValidationError):
            stock_service.parse_stock_movement_payload(
                {"product_id": 1, "unit_id": 1, "qty": 1, "type": "ADJUST", "note": "x"}
            )
        with pytest.raises(ValidationError):
            stock_service.parse_stock_movement_payload(
                {"product_id": 1, "unit_id": 1, "qty": 1, "type": "ADJUST", "adjust_mode": "INCREASE"}
            )

    def test_qty_must_be_positive(self):
        with pytest.raises(ValidationError):
            stock_service.parse_stock_movement_payload({"product_id": 1, "unit_id": 1, "qty": 0, "type": "IN"})

    def test_type_is_normalized(self):
        data = stock_service.parse_stock_movement_payload(
            {"product_id": "3", "unit_id": 2, "qty": "2.5", "type": "in"}
        )
        assert data.movement_type == "IN"
        assert data.product_id == 3
        assert data.qty == Decimal("2.5")


class TestStockReads:

    def test_low_stock_and_overview(self, store, admin_user, product, second_product, units):
        post(store, admin_user, product, units["pcs"], 50, "IN")
        post(store, admin_user, second_product, units["pcs"], 4, "IN")

        low = inventory_service.get_low_stock_products(store.id)
        assert [row["sku"] for row in low] == ["WATER-500"]
        assert low[0]["stock_level"] == inventory_service.STOCK_LOW

        overview = inventory_service.get_stock_overview(store.id, use_cache=False)
        assert overview["product_count"] == 2
        assert overview["low_stock_count"] == 1
        assert overview["total_on_hand"] == 54

    def test_movements_page_newest_first(self, store, admin_user, product, units):
        for qty in (1, 2, 3):
            post(store, admin_user, product, units["pcs"], qty, "IN")

        page = inventory_service.list_movements_page(store.id, page=1, page_size=2)
        assert page["total"] == 3
        assert page["page_count"] == 2
        assert [item["qty_base"] for item in page["items"]] == [3, 2]
        assert page["items"][0]["sku"] == "COLA-330"
