"""
Unit tests for the material consumption ledger.

Covers idempotent consumption, reversal symmetry, conservation between the
ledger and the canonical balance, and the append-only guarantee.
"""
import pytest
from decimal import Decimal

from shopfloor.exceptions import (
    ImmutableRecordError,
    InsufficientResourceError,
    InvalidStateError,
    NotFoundError,
    UnitUnavailableError,
    ValidationError,
)
from shopfloor.models.consumption import LedgerEntry
from shopfloor.models.production_order import BOMLine
from shopfloor.schemas.consumption import ConsumeRequest
from shopfloor.services import bom_service, consumption_service, inventory_service, serialized_unit_service

from tests.factories import (
    create_test_balance,
    create_test_bom_line,
    create_test_location,
    create_test_order,
    create_test_part,
    create_test_unit,
)


def _request(order, part, location, qty, **extra):
    return ConsumeRequest(
        production_order_id=order.id,
        part_id=part.id,
        location_id=location.id,
        qty=Decimal(str(qty)),
        **extra
    )


class TestConsume:

    def test_consume_records_entry_and_decrements_balance(self, db, stocked_part):
        part, location = stocked_part
        order = create_test_order(db)

        entry = consumption_service.consume(db, _request(order, part, location, 4))

        assert entry.qty == Decimal("4")
        assert entry.is_reversal is False
        assert entry.unit_cost == Decimal("2.50")
        assert entry.method == "manual"
        assert inventory_service.get_balance(db, part.id, location.id) == Decimal("11")

    def test_unit_cost_override(self, db, stocked_part):
        part, location = stocked_part
        order = create_test_order(db)

        entry = consumption_service.consume(
            db, _request(order, part, location, 1, unit_cost=Decimal("9.99"))
        )

        assert entry.unit_cost == Decimal("9.99")

    def test_same_key_consumes_once(self, db, stocked_part):
        part, location = stocked_part
        order = create_test_order(db)

        first = consumption_service.consume(
            db, _request(order, part, location, 3, idempotency_key="scan-42")
        )
        second = consumption_service.consume(
            db, _request(order, part, location, 3, idempotency_key="scan-42")
        )

        assert first.id == second.id
        assert db.query(LedgerEntry).count() == 1
        assert inventory_service.get_balance(db, part.id, location.id) == Decimal("12")

    @pytest.mark.parametrize("qty", ["0", "-1"])
    def test_non_positive_qty_rejected(self, db, stocked_part, qty):
        part, location = stocked_part
        order = create_test_order(db)

        with pytest.raises(ValidationError):
            consumption_service.consume(db, _request(order, part, location, qty))

    def test_over_request_leaves_state_untouched(self, db, stocked_part):
        part, location = stocked_part
        order = create_test_order(db)
        db.commit()

        with pytest.raises(InsufficientResourceError) as exc_info:
            consumption_service.consume(db, _request(order, part, location, 16))
        db.rollback()

        assert exc_info.value.available == Decimal("15")
        assert db.query(LedgerEntry).count() == 0
        assert inventory_service.get_balance(db, part.id, location.id) == Decimal("15")

    def test_unknown_order(self, db, stocked_part):
        part, location = stocked_part

        with pytest.raises(NotFoundError):
            consumption_service.consume(
                db,
                ConsumeRequest(production_order_id=999, part_id=part.id, location_id=location.id, qty=1),
            )

    def test_bom_line_is_aggregated(self, db, stocked_part):
        part, location = stocked_part
        order = create_test_order(db)
        line = create_test_bom_line(db, order, part, quantity_required=5, location=location)

        consumption_service.consume(db, _request(order, part, location, 2, bom_line_id=line.id))
        assert line.quantity_consumed == Decimal("2")
        assert line.is_consumed is False

        consumption_service.consume(db, _request(order, part, location, 3, bom_line_id=line.id))
        assert line.quantity_consumed == Decimal("5")
        assert line.is_consumed is True

    def test_bom_line_for_other_part_rejected(self, db, stocked_part):
        part, location = stocked_part
        other = create_test_part(db)
        order = create_test_order(db)
        line = create_test_bom_line(db, order, other, quantity_required=5, location=location)

        with pytest.raises(ValidationError):
            consumption_service.consume(db, _request(order, part, location, 1, bom_line_id=line.id))


class TestSerializedConsumption:

    @pytest.fixture
    def serialized(self, db):
        part = create_test_part(db, part_number="SER-1", is_serialized=True)
        location = create_test_location(db, code="CAGE")
        create_test_balance(db, part, location, quantity=2, unit_cost=100)
        unit = create_test_unit(db, part, location, serial_number="SN-A1", lot_number="LOT-7")
        order = create_test_order(db)
        db.commit()
        return part, location, unit, order

    def test_unit_consumed_with_qty_one(self, db, serialized):
        part, location, unit, order = serialized

        entry = consumption_service.consume(
            db, _request(order, part, location, 5, serialized_unit_id=unit.id)
        )

        assert entry.qty == Decimal("1")
        assert entry.lot_number == "LOT-7"
        assert unit.status == "consumed"
        assert unit.current_location_id is None
        assert inventory_service.get_balance(db, part.id, location.id) == Decimal("1")

    def test_unit_at_other_location_unavailable(self, db, serialized):
        part, location, unit, order = serialized
        elsewhere = create_test_location(db, code="DOCK")
        create_test_balance(db, part, elsewhere, quantity=1)

        with pytest.raises(UnitUnavailableError):
            consumption_service.consume(
                db, _request(order, part, elsewhere, 1, serialized_unit_id=unit.id)
            )

    def test_consumed_unit_unavailable(self, db, serialized):
        part, location, unit, order = serialized
        consumption_service.consume(db, _request(order, part, location, 1, serialized_unit_id=unit.id))

        other_order = create_test_order(db)
        with pytest.raises(UnitUnavailableError) as exc_info:
            consumption_service.consume(
                db, _request(other_order, part, location, 1, serialized_unit_id=unit.id)
            )
        assert exc_info.value.error_code == "UNIT_UNAVAILABLE"

    def test_consume_serialized_unit_derives_key(self, db, serialized):
        part, location, unit, order = serialized

        first = consumption_service.consume_serialized_unit(db, unit.id, order.id)
        again = consumption_service.consume_serialized_unit(db, unit.id, order.id)

        assert first.id == again.id
        assert first.idempotency_key == f"SERIAL:{unit.id}:{order.id}"
        assert first.method == "scan"

    def test_reversal_restores_unit(self, db, serialized):
        part, location, unit, order = serialized
        entry = consumption_service.consume(
            db, _request(order, part, location, 1, serialized_unit_id=unit.id)
        )

        consumption_service.reverse(db, entry.id, "wrong unit scanned")

        assert unit.status == "in_stock"
        assert unit.current_location_id == location.id
        assert inventory_service.get_balance(db, part.id, location.id) == Decimal("2")

    def test_registered_unit_can_be_consumed(self, db):
        part = create_test_part(db, part_number="SER-9", is_serialized=True)
        location = create_test_location(db, code="RACK-9")
        order = create_test_order(db)
        unit = serialized_unit_service.register_unit(db, part.id, "SN-900", location.id)

        assert inventory_service.get_balance(db, part.id, location.id) == Decimal("1")

        entry = consumption_service.consume_serialized_unit(db, unit.id, order.id)

        assert entry.qty == Decimal("1")
        assert unit.status == "consumed"
        assert inventory_service.get_balance(db, part.id, location.id) == Decimal("0")


class TestLockOrder:

    @pytest.fixture
    def lock_log(self, monkeypatch):
        calls = []

        def record(name, fn):
            def wrapper(*args, **kwargs):
                calls.append(name)
                return fn(*args, **kwargs)
            return wrapper

        monkeypatch.setattr(bom_service, "get_bom_line", record("bom_line", bom_service.get_bom_line))
        monkeypatch.setattr(
            serialized_unit_service, "lock_unit", record("unit", serialized_unit_service.lock_unit)
        )
        monkeypatch.setattr(
            inventory_service, "lock_balance", record("balance", inventory_service.lock_balance)
        )
        return calls

    def test_consume_and_reverse_lock_in_same_order(self, db, lock_log):
        part = create_test_part(db, part_number="SER-2", is_serialized=True)
        location = create_test_location(db, code="CAGE-2")
        create_test_balance(db, part, location, quantity=1)
        unit = create_test_unit(db, part, location, serial_number="SN-L1")
        order = create_test_order(db)
        line = create_test_bom_line(db, order, part, quantity_required=1, location=location)

        entry = consumption_service.consume(
            db, _request(order, part, location, 1, serialized_unit_id=unit.id, bom_line_id=line.id)
        )
        consume_order = _first_seen(lock_log)
        lock_log.clear()
        consumption_service.reverse(db, entry.id, "wrong unit")

        assert consume_order == ["bom_line", "unit", "balance"]
        assert _first_seen(lock_log) == consume_order


def _first_seen(calls):
    seen = []
    for name in calls:
        if name not in seen:
            seen.append(name)
    return seen


class TestReverse:

    def test_reverse_restores_balance_and_bom_line(self, db, stocked_part):
        part, location = stocked_part
        order = create_test_order(db)
        line = create_test_bom_line(db, order, part, quantity_required=4, location=location)
        entry = consumption_service.consume(
            db, _request(order, part, location, 4, bom_line_id=line.id, idempotency_key="k-1")
        )
        assert line.is_consumed is True

        reversal = consumption_service.reverse(db, entry.id, "counted wrong", actor="op-7")

        assert reversal.is_reversal is True
        assert reversal.qty == Decimal("-4")
        assert reversal.reversal_of_id == entry.id
        assert reversal.idempotency_key == "REVERSAL:k-1"
        assert reversal.consumed_by == "op-7"
        assert inventory_service.get_balance(db, part.id, location.id) == Decimal("15")
        assert line.quantity_consumed == Decimal("0")
        assert line.is_consumed is False

    def test_second_reverse_returns_same_reversal(self, db, stocked_part):
        part, location = stocked_part
        order = create_test_order(db)
        entry = consumption_service.consume(db, _request(order, part, location, 2))

        first = consumption_service.reverse(db, entry.id, "mistake")
        second = consumption_service.reverse(db, entry.id, "mistake again")

        assert first.id == second.id
        assert db.query(LedgerEntry).filter(LedgerEntry.is_reversal.is_(True)).count() == 1
        assert inventory_service.get_balance(db, part.id, location.id) == Decimal("15")

    def test_reverse_requires_reason(self, db, stocked_part):
        part, location = stocked_part
        order = create_test_order(db)
        entry = consumption_service.consume(db, _request(order, part, location, 2))

        with pytest.raises(ValidationError):
            consumption_service.reverse(db, entry.id, "  ")

    def test_reversal_cannot_be_reversed(self, db, stocked_part):
        part, location = stocked_part
        order = create_test_order(db)
        entry = consumption_service.consume(db, _request(order, part, location, 2))
        reversal = consumption_service.reverse(db, entry.id, "mistake")

        with pytest.raises(InvalidStateError):
            consumption_service.reverse(db, reversal.id, "undo the undo")

    def test_reverse_unknown_entry(self, db):
        with pytest.raises(NotFoundError):
            consumption_service.reverse(db, 12345, "missing")

    def test_bom_line_floor_at_zero(self, db, stocked_part):
        part, location = stocked_part
        order = create_test_order(db)
        line = create_test_bom_line(db, order, part, quantity_required=4, location=location)
        entry = consumption_service.consume(db, _request(order, part, location, 3, bom_line_id=line.id))
        line.quantity_consumed = Decimal("1")
        db.flush()

        consumption_service.reverse(db, entry.id, "recount")

        assert line.quantity_consumed == Decimal("0")

    def test_reverse_order_consumptions(self, db, stocked_part):
        part, location = stocked_part
        order = create_test_order(db)
        first = consumption_service.consume(db, _request(order, part, location, 2))
        consumption_service.consume(db, _request(order, part, location, 3))
        consumption_service.reverse(db, first.id, "already reversed")
        db.commit()

        result = consumption_service.reverse_order_consumptions(db, order.id, "order scrapped")

        assert result.reversed == 1
        assert result.errors == []
        assert consumption_service.get_net_consumed(db, order.id, part.id) == Decimal("0")
        assert inventory_service.get_balance(db, part.id, location.id) == Decimal("15")


class TestConservation:

    def test_balance_change_matches_ledger_sum(self, db, stocked_part):
        part, location = stocked_part
        order = create_test_order(db)
        start = inventory_service.get_balance(db, part.id, location.id)

        a = consumption_service.consume(db, _request(order, part, location, 4))
        consumption_service.consume(db, _request(order, part, location, Decimal("2.5")))
        consumption_service.reverse(db, a.id, "returned to stock")
        consumption_service.consume(db, _request(order, part, location, 1))

        net = consumption_service.get_net_consumed(db, order.id, part.id)
        end = inventory_service.get_balance(db, part.id, location.id)
        assert net == Decimal("3.5")
        assert start - end == net


class TestImmutability:

    def test_update_rejected(self, db, stocked_part):
        part, location = stocked_part
        order = create_test_order(db)
        entry = consumption_service.consume(db, _request(order, part, location, 1))
        db.commit()

        entry.qty = Decimal("100")
        with pytest.raises(ImmutableRecordError):
            db.flush()
        db.rollback()

        assert db.query(LedgerEntry).one().qty == Decimal("1")

    def test_delete_rejected(self, db, stocked_part):
        part, location = stocked_part
        order = create_test_order(db)
        entry = consumption_service.consume(db, _request(order, part, location, 1))
        db.commit()

        db.delete(entry)
        with pytest.raises(ImmutableRecordError):
            db.flush()
        db.rollback()

        assert db.query(LedgerEntry).count() == 1


class TestConsumeAllOutstanding:

    def test_consumes_each_line_with_deterministic_key(self, db, stocked_part):
        part, location = stocked_part
        order = create_test_order(db)
        line = create_test_bom_line(db, order, part, quantity_required=6, location=location)
        db.commit()

        result = consumption_service.consume_all_outstanding(db, order.id)

        assert [s.bom_line_id for s in result.succeeded] == [line.id]
        assert result.failed == []
        entry = db.query(LedgerEntry).one()
        assert entry.idempotency_key == consumption_service.generate_bom_idempotency_key(order.id, line.id)
        assert entry.idempotency_key == f"BOM:{order.id}:{line.id}"
        assert entry.method == "backflush"

    def test_partial_failure_keeps_successful_lines(self, db, stocked_part):
        part, location = stocked_part
        scarce = create_test_part(db, part_number="P-SCARCE")
        create_test_balance(db, scarce, location, quantity=1)
        order = create_test_order(db)
        ok_line = create_test_bom_line(db, order, part, quantity_required=5, location=location)
        short_line = create_test_bom_line(db, order, scarce, quantity_required=3, location=location)
        no_source = create_test_bom_line(db, order, part, quantity_required=1)
        db.commit()

        result = consumption_service.consume_all_outstanding(db, order.id)
        db.commit()

        assert [s.bom_line_id for s in result.succeeded] == [ok_line.id]
        failed = {f.bom_line_id: f for f in result.failed}
        assert failed[short_line.id].error == "INSUFFICIENT_INVENTORY"
        assert failed[no_source.id].error == "VALIDATION_ERROR"
        assert inventory_service.get_balance(db, part.id, location.id) == Decimal("10")
        assert inventory_service.get_balance(db, scarce.id, location.id) == Decimal("1")
        assert db.get(BOMLine, short_line.id).quantity_consumed == Decimal("0")

    def test_only_outstanding_quantity_is_consumed(self, db, stocked_part):
        part, location = stocked_part
        order = create_test_order(db)
        create_test_bom_line(db, order, part, quantity_required=5, location=location, quantity_consumed=2)
        db.commit()

        result = consumption_service.consume_all_outstanding(db, order.id)

        assert result.succeeded[0].qty == Decimal("3")
        assert inventory_service.get_balance(db, part.id, location.id) == Decimal("12")


class TestReporting:

    def test_summary_per_part(self, db, stocked_part):
        part, location = stocked_part
        order = create_test_order(db)
        a = consumption_service.consume(db, _request(order, part, location, 4))
        consumption_service.consume(db, _request(order, part, location, 2))
        consumption_service.reverse(db, a.id, "mistake")

        [summary] = consumption_service.get_consumption_summary(db, order.id)

        assert summary.part_number == "P-100"
        assert summary.total_consumed == Decimal("6")
        assert summary.total_reversed == Decimal("4")
        assert summary.net_consumed == Decimal("2")
        assert summary.total_cost == Decimal("5")
        assert summary.consumption_count == 2
        assert summary.reversal_count == 1

    def test_log_is_newest_first(self, db, stocked_part):
        part, location = stocked_part
        order = create_test_order(db)
        a = consumption_service.consume(db, _request(order, part, location, 1))
        b = consumption_service.consume(db, _request(order, part, location, 1))

        log = consumption_service.get_consumption_log(db, order.id)

        assert [e.id for e in log] == [b.id, a.id]
