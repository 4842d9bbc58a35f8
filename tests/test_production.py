"""Tests for the production order state machine."""

from datetime import date, datetime
from decimal import Decimal

import pytest

from production_ledger.exceptions import (
    InsufficientStock,
    InvalidBOM,
    InvalidQuantity,
    InvalidTransition,
    PersistenceFailure,
    ReferenceNotFound,
)
from production_ledger.models import MovementType, OrderStatus
from production_ledger.production import ProductionManager
from production_ledger.resolver import resolve
from production_ledger.utils.config import Settings


@pytest.fixture
def simple_bom(boms, stock_setup):
    """100 kg batch needing 20 kg flour."""
    return boms.create_bom(
        {"product_id": stock_setup["cookies"].id, "name": "Simple", "batch_size": 100},
        [{"product_id": stock_setup["flour"].id, "quantity": 20}],
    )


@pytest.fixture
def stocked(ledger, stock_setup):
    main = stock_setup["main"]
    ledger.record_receipt(main.id, stock_setup["flour"].id, 500)
    ledger.record_receipt(main.id, stock_setup["sugar"].id, 100)
    ledger.record_receipt(main.id, stock_setup["bag"].id, 1000)
    return stock_setup


def production_movements(ledger):
    return ledger.history(reference_type="production_order")


def test_create_order_is_scheduled(production, cookie_bom, stock_setup):
    order = production.create_order(
        cookie_bom.id, stock_setup["main"].id, 50,
        scheduled_start=datetime(2026, 3, 11, 6), scheduled_end=datetime(2026, 3, 11, 14),
        created_by="planner",
    )

    assert order.status == OrderStatus.SCHEDULED.value
    assert order.product_id == stock_setup["cookies"].id
    assert order.planned_quantity == Decimal("50")
    assert order.produced_quantity == Decimal("0")
    assert order.waste_quantity == Decimal("0")
    assert order.order_number == "OP-20260310-001"
    assert order.actual_start is None


def test_order_numbers_are_sequential(production, cookie_bom, stock_setup):
    numbers = [
        production.create_order(cookie_bom.id, stock_setup["main"].id, 10).order_number
        for _ in range(3)
    ]

    assert numbers == ["OP-20260310-001", "OP-20260310-002", "OP-20260310-003"]


def test_create_order_validation(production, boms, cookie_bom, stock_setup):
    main = stock_setup["main"]

    with pytest.raises(InvalidQuantity):
        production.create_order(cookie_bom.id, main.id, 0)
    with pytest.raises(InvalidQuantity):
        production.create_order(cookie_bom.id, main.id, 10 ** 23)
    with pytest.raises(InvalidQuantity):
        production.create_order(cookie_bom.id, main.id, Decimal("1000000000000"))
    with pytest.raises(ReferenceNotFound):
        production.create_order(9999, main.id, 10)
    with pytest.raises(ReferenceNotFound):
        production.create_order(cookie_bom.id, 9999, 10)

    boms.set_bom_active(cookie_bom.id, False)
    with pytest.raises(InvalidBOM):
        production.create_order(cookie_bom.id, main.id, 10)

    assert production.get_orders().empty


def test_full_lifecycle_scenario(production, ledger, simple_bom, stock_setup):
    main, flour, cookies = stock_setup["main"], stock_setup["flour"], stock_setup["cookies"]
    ledger.record_receipt(main.id, flour.id, 100)

    order = production.create_order(simple_bom.id, main.id, 50)
    started = production.transition_order(order.id, "in_progress")

    assert started.status == "in_progress"
    assert started.actual_start is not None
    consumed = production_movements(ledger)
    assert len(consumed) == 1
    assert consumed[0].movement_type == MovementType.PRODUCTION_CONSUME.value
    assert consumed[0].product_id == flour.id
    assert consumed[0].quantity == Decimal("-10")
    assert consumed[0].lot_id is None
    assert consumed[0].reference_id == order.id
    assert ledger.current_stock(main.id, flour.id) == Decimal("90")

    production.record_output(order.id, produced_quantity=48, waste_quantity=2)
    completed = production.transition_order(order.id, OrderStatus.COMPLETED)

    assert completed.status == "completed"
    assert completed.actual_end is not None
    assert completed.produced_quantity == Decimal("48")
    assert completed.waste_quantity == Decimal("2")

    lot = production.lots.get_lot_for_order(order.id)
    assert lot.product_id == cookies.id
    assert lot.initial_quantity == Decimal("48")
    assert lot.production_date == date(2026, 3, 10)
    # Shelf life of 30 days
    assert lot.expiry_date == date(2026, 4, 9)

    movements = production.get_order_movements(order.id)
    assert [m.movement_type for m in movements] == ["production_output", "production_consume"]
    output = movements[0]
    assert output.quantity == Decimal("48")
    assert output.lot_id == lot.id
    assert output.product_id == cookies.id

    assert ledger.current_stock(main.id, flour.id) == Decimal("90")
    assert ledger.current_stock(main.id, cookies.id, lot.id) == Decimal("48")
    # Nothing reflects the 2 kg of waste
    assert sum(m.quantity for m in movements) == Decimal("38")
    assert ledger.reconcile() == []


def test_consumption_matches_resolver_regardless_of_output(production, ledger, cookie_bom, stocked):
    main = stocked["main"]
    order = production.create_order(cookie_bom.id, main.id, Decimal("37.5"))

    production.transition_order(order.id, "in_progress")
    production.transition_order(order.id, "completed", produced_quantity=30, waste_quantity=7.5)

    expected = {r.material_product_id: r.required_quantity for r in resolve(cookie_bom, Decimal("37.5"))}
    consumed = {
        m.product_id: -m.quantity
        for m in ledger.history(reference_id=order.id, movement_type="production_consume")
    }
    assert consumed == expected
    assert expected[stocked["sugar"].id] == Decimal("2.8125")
    assert expected[stocked["bag"].id] == Decimal("15")


def test_completion_accepts_output_in_same_call(production, cookie_bom, stocked):
    order = production.create_order(cookie_bom.id, stocked["main"].id, 10)
    production.transition_order(order.id, "in_progress")

    done = production.transition_order(order.id, "completed", produced_quantity="9.75")

    assert done.produced_quantity == Decimal("9.75")
    assert production.lots.get_lot_for_order(order.id).initial_quantity == Decimal("9.75")


def test_completion_needs_positive_output(production, ledger, cookie_bom, stocked):
    order = production.create_order(cookie_bom.id, stocked["main"].id, 10)
    production.transition_order(order.id, "in_progress")
    before = len(ledger.history())

    with pytest.raises(InvalidQuantity):
        production.transition_order(order.id, "completed")

    assert production.get_order(order.id).status == "in_progress"
    assert production.lots.get_lot_for_order(order.id) is None
    assert len(ledger.history()) == before


@pytest.mark.parametrize("target", ["completed", "scheduled", "draft", "bogus"])
def test_invalid_transitions_from_scheduled_write_nothing(production, ledger, cookie_bom, stocked, target):
    order = production.create_order(cookie_bom.id, stocked["main"].id, 10)
    before = len(ledger.history())

    with pytest.raises(InvalidTransition) as exc:
        production.transition_order(order.id, target, produced_quantity=5)

    assert exc.value.current == "scheduled"
    unchanged = production.get_order(order.id)
    assert unchanged.status == "scheduled"
    assert unchanged.produced_quantity == Decimal("0")
    assert len(ledger.history()) == before
    assert production.lots.list_lots() == []


@pytest.mark.parametrize("target", ["scheduled", "in_progress", "cancelled", "completed"])
def test_terminal_states_are_final(production, cookie_bom, stocked, target):
    done = production.create_order(cookie_bom.id, stocked["main"].id, 10)
    production.transition_order(done.id, "in_progress")
    production.transition_order(done.id, "completed", produced_quantity=10)
    cancelled = production.create_order(cookie_bom.id, stocked["main"].id, 10)
    production.transition_order(cancelled.id, "cancelled")

    for order_id in (done.id, cancelled.id):
        with pytest.raises(InvalidTransition):
            production.transition_order(order_id, target)

    with pytest.raises(InvalidTransition):
        production.record_output(done.id, produced_quantity=1)


def test_cancel_scheduled_order_writes_nothing(production, ledger, cookie_bom, stocked):
    order = production.create_order(cookie_bom.id, stocked["main"].id, 10)
    before = len(ledger.history())

    cancelled = production.transition_order(order.id, "cancelled")

    assert cancelled.status == "cancelled"
    assert len(ledger.history()) == before
    assert production.get_order_movements(order.id) == []


def test_cancel_in_progress_order_fails(production, ledger, cookie_bom, stocked):
    order = production.create_order(cookie_bom.id, stocked["main"].id, 10)
    production.transition_order(order.id, "in_progress")
    before = len(ledger.history())

    with pytest.raises(InvalidTransition):
        production.transition_order(order.id, "cancelled")

    assert production.get_order(order.id).status == "in_progress"
    assert len(ledger.history()) == before


def test_draft_orders(production, cookie_bom, stocked):
    draft = production.create_order(cookie_bom.id, stocked["main"].id, 10, draft=True)
    assert draft.status == "draft"

    with pytest.raises(InvalidTransition):
        production.transition_order(draft.id, "in_progress")

    assert production.transition_order(draft.id, "scheduled").status == "scheduled"

    other = production.create_order(cookie_bom.id, stocked["main"].id, 10, draft=True)
    assert production.transition_order(other.id, "cancelled").status == "cancelled"


def test_starting_twice_consumes_once(production, ledger, cookie_bom, stocked):
    order = production.create_order(cookie_bom.id, stocked["main"].id, 10)
    production.transition_order(order.id, "in_progress")

    with pytest.raises(InvalidTransition):
        production.transition_order(order.id, "in_progress")

    assert len(ledger.history(reference_id=order.id, movement_type="production_consume")) == 3


def test_failed_line_rolls_back_whole_start(production, ledger, cookie_bom, stocked, monkeypatch):
    main = stocked["main"]
    order = production.create_order(cookie_bom.id, main.id, 10)
    real_append = ledger._append
    calls = []

    def flaky_append(conn, movement):
        calls.append(movement)
        if len(calls) == 2:
            raise PersistenceFailure("disk full")
        return real_append(conn, movement)

    monkeypatch.setattr(ledger, "_append", flaky_append)

    with pytest.raises(PersistenceFailure):
        production.transition_order(order.id, "in_progress")

    assert production.get_order(order.id).status == "scheduled"
    assert production.get_order_movements(order.id) == []
    assert ledger.current_stock(main.id, stocked["flour"].id) == Decimal("500")
    assert ledger.reconcile() == []

    # The whole transition can simply be retried
    monkeypatch.setattr(ledger, "_append", real_append)
    assert production.transition_order(order.id, "in_progress").status == "in_progress"
    assert ledger.current_stock(main.id, stocked["flour"].id) == Decimal("498")


def test_missing_material_fails_before_any_movement(production, ledger, db_engine, simple_bom, stock_setup):
    order = production.create_order(simple_bom.id, stock_setup["main"].id, 10)
    # Dangling line left behind by an out-of-band edit; the pragma only
    # takes effect outside a transaction, so go through the raw connection
    raw = db_engine.raw_connection()
    try:
        cursor = raw.cursor()
        cursor.execute("PRAGMA foreign_keys=OFF")
        cursor.execute(
            "INSERT INTO bom_lines (bom_id, product_id, quantity, unit_of_measure) VALUES (?, ?, ?, ?)",
            (simple_bom.id, 4242, 1000000, "kg"),
        )
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()
    finally:
        raw.close()

    with pytest.raises(ReferenceNotFound):
        production.transition_order(order.id, "in_progress")

    assert ledger.history() == []
    assert production.get_order(order.id).status == "scheduled"


def test_negative_stock_allowed_by_default(production, ledger, simple_bom, stock_setup):
    main = stock_setup["main"]
    order = production.create_order(simple_bom.id, main.id, 50)

    production.transition_order(order.id, "in_progress")

    assert ledger.current_stock(main.id, stock_setup["flour"].id) == Decimal("-10")


def test_availability_policy_blocks_start(db_engine, catalog, boms, ledger, lots, inventory, clock,
                                          simple_bom, stock_setup):
    strict = Settings(allow_negative_stock=False, _env_file=None)
    manager = ProductionManager(
        db_engine, strict, catalog=catalog, boms=boms, ledger=ledger,
        lots=lots, inventory=inventory, clock=clock,
    )
    main, flour = stock_setup["main"], stock_setup["flour"]
    ledger.record_receipt(main.id, flour.id, 4)
    order = manager.create_order(simple_bom.id, main.id, 50)

    with pytest.raises(InsufficientStock) as exc:
        manager.transition_order(order.id, "in_progress")

    assert exc.value.shortages[0]["material_id"] == flour.id
    assert exc.value.shortages[0]["shortage"] == Decimal("6")
    assert manager.get_order(order.id).status == "scheduled"
    assert ledger.current_stock(main.id, flour.id) == Decimal("4")

    ledger.record_receipt(main.id, flour.id, 6)
    assert manager.transition_order(order.id, "in_progress").status == "in_progress"
    assert ledger.current_stock(main.id, flour.id) == Decimal("0")


def test_lot_numbers_unique_on_same_day(production, cookie_bom, stocked):
    main = stocked["main"]
    numbers = []
    for _ in range(2):
        order = production.create_order(cookie_bom.id, main.id, 10)
        production.transition_order(order.id, "in_progress")
        production.transition_order(order.id, "completed", produced_quantity=10)
        numbers.append(production.lots.get_lot_for_order(order.id).lot_number)

    assert numbers[0] != numbers[1]
    assert all(n.startswith("LOT-20260310-FG-COOKIE-") for n in numbers)


def test_output_quantities_validated(production, cookie_bom, stocked):
    order = production.create_order(cookie_bom.id, stocked["main"].id, 10)

    with pytest.raises(InvalidQuantity):
        production.record_output(order.id, produced_quantity=-1)
    with pytest.raises(InvalidQuantity):
        production.record_output(order.id, waste_quantity=-0.5)

    updated = production.record_output(order.id, produced_quantity=8, waste_quantity=1)
    assert (updated.produced_quantity, updated.waste_quantity) == (Decimal("8"), Decimal("1"))


def test_order_reports(production, cookie_bom, stocked):
    main = stocked["main"]
    first = production.create_order(cookie_bom.id, main.id, 50)
    production.transition_order(first.id, "in_progress")
    production.transition_order(first.id, "completed", produced_quantity=45, waste_quantity=5)
    second = production.create_order(cookie_bom.id, main.id, 10)
    production.transition_order(second.id, "cancelled")
    production.create_order(cookie_bom.id, main.id, 20)

    orders = production.get_orders()
    assert orders["order_number"].tolist() == ["OP-20260310-003", "OP-20260310-002", "OP-20260310-001"]
    assert production.get_orders(status="completed")["id"].tolist() == [first.id]
    assert production.get_orders(from_date=date(2026, 3, 11)).empty
    assert len(production.get_orders(from_date=date(2026, 3, 10), to_date=date(2026, 3, 10))) == 3

    summary = production.get_production_summary(date(2026, 3, 1), date(2026, 3, 31))
    assert summary["total_orders"] == 3
    assert summary["completed_orders"] == 1
    assert summary["cancelled_orders"] == 1
    assert summary["scheduled_orders"] == 1
    assert summary["total_output"] == pytest.approx(45.0)
    assert summary["total_waste"] == pytest.approx(5.0)
    assert summary["yield_rate"] == pytest.approx(90.0)

    consumption = production.get_material_consumption(date(2026, 3, 10), date(2026, 3, 10))
    by_material = dict(zip(consumption["material_id"], consumption["total_consumed"].astype(float)))
    assert by_material[stocked["flour"].id] == pytest.approx(10.0)
    assert by_material[stocked["bag"].id] == pytest.approx(20.0)


def test_order_materials_view(production, cookie_bom, stocked):
    order = production.create_order(cookie_bom.id, stocked["main"].id, 50)

    before = production.get_order_materials(order.id)
    assert before["material_name"].tolist() == ["Wheat Flour", "Sugar", "Cookie Bag"]
    assert [Decimal(str(v)) for v in before["required"]] == [Decimal("10"), Decimal("3.75"), Decimal("20")]
    assert before["sufficient"].all()
    assert all(c == 0 for c in before["consumed"])

    production.transition_order(order.id, "in_progress")
    after = production.get_order_materials(order.id)
    assert [Decimal(str(v)) for v in after["consumed"]] == [Decimal("10"), Decimal("3.75"), Decimal("20")]
