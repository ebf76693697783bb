from __future__ import annotations

import asyncio

import pytest
from sqlalchemy.exc import IntegrityError

from tally import Error, Ok
from tally import cache as C
from tally.db import StockTable, open_database, utcnow
from tally.stock import OrderItem, StockLedger, Tracked, Untracked


def make_ledger(db) -> StockLedger:
    return StockLedger(db, C.LocalTier(), default_location="general")


def test_unknown_key_is_untracked(settings, run, ok) -> None:
    async def main() -> None:
        async with open_database(settings.database_url) as db:
            ledger = make_ledger(db)
            level = ok(await ledger.get_available_stock("p1"))
            assert isinstance(level, Untracked)
            assert not level.is_out_of_stock

    run(main)


def test_update_stock_creates_record(settings, run, ok) -> None:
    async def main() -> None:
        async with open_database(settings.database_url) as db:
            ledger = make_ledger(db)
            ok(await ledger.get_available_stock("p1"))  # cached as untracked
            ok(await ledger.update_stock("p1", 5))
            assert ok(await ledger.get_available_stock("p1")) == Tracked(stock=5, reserved=0)

    run(main)


def test_update_stock_clamps_negative_and_trims_reserved(settings, run, ok) -> None:
    async def main() -> None:
        async with open_database(settings.database_url) as db:
            ledger = make_ledger(db)
            ok(await ledger.update_stock("p1", 10))
            assert ok(await ledger.reserve_stock("p1", 4)) is True
            ok(await ledger.update_stock("p1", -3))

            level = ok(await ledger.get_available_stock("p1"))
            assert level == Tracked(stock=0, reserved=0)
            assert level.available == 0

    run(main)


def test_update_stock_keeps_reservations_that_still_fit(settings, run, ok) -> None:
    async def main() -> None:
        async with open_database(settings.database_url) as db:
            ledger = make_ledger(db)
            ok(await ledger.update_stock("p1", 10))
            ok(await ledger.reserve_stock("p1", 4))

            ok(await ledger.update_stock("p1", 6))
            assert ok(await ledger.get_available_stock("p1")) == Tracked(stock=6, reserved=4)

            ok(await ledger.update_stock("p1", 3))
            assert ok(await ledger.get_available_stock("p1")) == Tracked(stock=3, reserved=3)

    run(main)


def test_store_rejects_reserved_above_stock(settings, run) -> None:
    async def main() -> None:
        async with open_database(settings.database_url) as db:
            with pytest.raises(IntegrityError):
                async with db.engine.begin() as conn:
                    await conn.execute(
                        StockTable.__table__.insert().values(
                            product_id="p1", variant_id="", location="general", stock=1, reserved=2, updated_at=utcnow()
                        )
                    )

    run(main)


def test_reserve_more_than_available_leaves_record_unchanged(settings, run, ok) -> None:
    async def main() -> None:
        async with open_database(settings.database_url) as db:
            ledger = make_ledger(db)
            ok(await ledger.update_stock("p1", 5))
            assert ok(await ledger.reserve_stock("p1", 3)) is True

            assert ok(await ledger.reserve_stock("p1", 3)) is False
            assert ok(await ledger.get_available_stock("p1")) == Tracked(stock=5, reserved=3)

    run(main)


def test_reserve_untracked_always_succeeds(settings, run, ok) -> None:
    async def main() -> None:
        async with open_database(settings.database_url) as db:
            ledger = make_ledger(db)
            assert ok(await ledger.reserve_stock("p1", 1000)) is True
            assert isinstance(ok(await ledger.get_available_stock("p1")), Untracked)

    run(main)


def test_reserve_then_release_restores_reserved(settings, run, ok) -> None:
    async def main() -> None:
        async with open_database(settings.database_url) as db:
            ledger = make_ledger(db)
            ok(await ledger.update_stock("p1", 10))
            ok(await ledger.reserve_stock("p1", 1))
            before = ok(await ledger.get_available_stock("p1"))

            ok(await ledger.reserve_stock("p1", 4))
            ok(await ledger.release_stock("p1", 4))
            assert ok(await ledger.get_available_stock("p1")) == before

    run(main)


def test_release_never_goes_below_zero(settings, run, ok) -> None:
    async def main() -> None:
        async with open_database(settings.database_url) as db:
            ledger = make_ledger(db)
            ok(await ledger.update_stock("p1", 10))
            ok(await ledger.reserve_stock("p1", 2))
            ok(await ledger.release_stock("p1", 5))
            assert ok(await ledger.get_available_stock("p1")) == Tracked(stock=10, reserved=0)

    run(main)


def test_reserve_then_confirm(settings, run, ok) -> None:
    async def main() -> None:
        async with open_database(settings.database_url) as db:
            ledger = make_ledger(db)
            ok(await ledger.update_stock("p1", 10))
            ok(await ledger.reserve_stock("p1", 3))
            ok(await ledger.confirm_order([OrderItem("p1", 3)]))
            assert ok(await ledger.get_available_stock("p1")) == Tracked(stock=7, reserved=0)

    run(main)


def test_confirm_order_from_reserved_state(settings, run, ok) -> None:
    async def main() -> None:
        async with open_database(settings.database_url) as db:
            ledger = make_ledger(db)
            ok(await ledger.update_stock("p1", 10))
            ok(await ledger.reserve_stock("p1", 2))

            ok(await ledger.confirm_order([OrderItem(product_id="p1", quantity=2)]))
            assert ok(await ledger.get_available_stock("p1")) == Tracked(stock=8, reserved=0)

    run(main)


def test_confirm_order_clamps_and_skips_untracked(settings, run, ok) -> None:
    async def main() -> None:
        async with open_database(settings.database_url) as db:
            ledger = make_ledger(db)
            ok(await ledger.update_stock("p1", 1, variant_id="1kg"))
            ok(await ledger.confirm_order([
                OrderItem("p1", 3, variant_id="1kg"),
                OrderItem("ghost", 2),
            ]))
            assert ok(await ledger.get_available_stock("p1", "1kg")) == Tracked(stock=0, reserved=0)
            assert isinstance(ok(await ledger.get_available_stock("ghost")), Untracked)

    run(main)


def test_variants_and_locations_are_separate_keys(settings, run, ok) -> None:
    async def main() -> None:
        async with open_database(settings.database_url) as db:
            ledger = make_ledger(db)
            ok(await ledger.update_stock("p1", 4, variant_id="1kg"))
            ok(await ledger.update_stock("p1", 9, variant_id="1kg", location="depot"))

            assert isinstance(ok(await ledger.get_available_stock("p1")), Untracked)
            assert ok(await ledger.get_available_stock("p1", "1kg")).available == 4
            assert ok(await ledger.get_available_stock("p1", "1kg", "depot")).available == 9

    run(main)


def test_non_positive_quantity_is_a_caller_bug(settings, run) -> None:
    async def main() -> None:
        async with open_database(settings.database_url) as db:
            ledger = make_ledger(db)
            with pytest.raises(ValueError):
                await ledger.reserve_stock("p1", 0)
            with pytest.raises(ValueError):
                await ledger.release_stock("p1", -1)
            with pytest.raises(ValueError):
                await ledger.confirm_order([OrderItem("p1", 0)])

    run(main)


def test_concurrent_reservations_never_oversell(settings, run, ok) -> None:
    async def main() -> None:
        async with open_database(settings.database_url) as db:
            ledger = make_ledger(db)
            ok(await ledger.update_stock("last-units", 3))

            results = await asyncio.gather(*(ledger.reserve_stock("last-units", 1) for _ in range(8)))
            granted = [ok(r) for r in results]

            assert granted.count(True) == 3
            assert ok(await ledger.get_available_stock("last-units")) == Tracked(stock=3, reserved=3)

    run(main)


def test_list_stock_and_alerts(settings, run, ok) -> None:
    async def main() -> None:
        async with open_database(settings.database_url) as db:
            ledger = make_ledger(db)
            ok(await ledger.update_stock("a", 2))
            ok(await ledger.update_stock("b", 0))
            ok(await ledger.update_stock("c", 1))
            ok(await ledger.reserve_stock("c", 1))
            ok(await ledger.update_stock("d", 5, location="depot"))

            records = ok(await ledger.list_stock())
            assert [r.product_id for r in records] == ["a", "b", "c"]

            alerts = ok(await ledger.stock_alerts())
            assert [r.product_id for r in alerts] == ["b", "c"]
            assert all(r.available == 0 for r in alerts)

    run(main)


def test_store_failure_is_an_error_value(settings, run) -> None:
    async def main() -> None:
        async with open_database(settings.database_url) as db:
            ledger = make_ledger(db)
            async with db.engine.begin() as conn:
                await conn.exec_driver_sql("DROP TABLE stock")

            match await ledger.update_stock("p1", 1):
                case Ok(_):
                    pytest.fail("expected a store error")
                case Error(e):
                    assert "update stock" in e.message
                    assert e.cause is not None

    run(main)
