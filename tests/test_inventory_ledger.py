import threading

import pytest

from shopcore.exceptions import (
    InsufficientInventoryError,
    InventoryInvariantError,
    InventoryRecordExistsError,
    InventoryRecordNotFoundError,
    ValidationError,
)


def counters(ledger, product_id):
    record = ledger.get_record(product_id)
    return record.quantity_available, record.quantity_reserved


class TestReserve:

    def test_moves_units_to_reserved(self, ledger):
        ledger.create_record("p1", 10)
        ledger.reserve([("p1", 3)])
        assert counters(ledger, "p1") == (7, 3)

    def test_batch_is_all_or_nothing(self, ledger):
        ledger.create_record("p1", 5)
        ledger.create_record("p2", 1)
        ledger.create_record("p3", 5)

        with pytest.raises(InsufficientInventoryError) as exc_info:
            ledger.reserve([("p1", 2), ("p2", 2), ("p3", 2)])

        assert exc_info.value.product_id == "p2"
        assert exc_info.value.available == 1
        assert counters(ledger, "p1") == (5, 0)
        assert counters(ledger, "p2") == (1, 0)
        assert counters(ledger, "p3") == (5, 0)

    def test_duplicate_products_are_summed(self, ledger):
        ledger.create_record("p1", 4)
        with pytest.raises(InsufficientInventoryError):
            ledger.reserve([("p1", 3), ("p1", 2)])
        ledger.reserve([("p1", 2), ("p1", 2)])
        assert counters(ledger, "p1") == (0, 4)

    def test_unknown_product_has_no_stock(self, ledger):
        with pytest.raises(InsufficientInventoryError) as exc_info:
            ledger.reserve([("ghost", 1)])
        assert exc_info.value.product_id == "ghost"

    def test_rejects_non_positive_quantity(self, ledger):
        ledger.create_record("p1", 4)
        with pytest.raises(ValidationError):
            ledger.reserve([("p1", 0)])

    def test_concurrent_reservations_never_oversell(self, ledger):
        ledger.create_record("p1", 7)
        successes = []
        failures = []
        barrier = threading.Barrier(20)

        def worker():
            barrier.wait()
            try:
                ledger.reserve([("p1", 1)])
                successes.append(1)
            except InsufficientInventoryError:
                failures.append(1)

        threads = [threading.Thread(target=worker) for _ in range(20)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert len(successes) == 7
        assert len(failures) == 13
        assert counters(ledger, "p1") == (0, 7)


class TestSettle:

    def test_release_restores_available(self, ledger):
        ledger.create_record("p1", 10)
        ledger.reserve([("p1", 4)])
        ledger.release([("p1", 4)])
        assert counters(ledger, "p1") == (10, 0)

    def test_commit_removes_reserved_only(self, ledger):
        ledger.create_record("p1", 10)
        ledger.reserve([("p1", 4)])
        ledger.commit([("p1", 4)])
        assert counters(ledger, "p1") == (6, 0)
        assert ledger.get_record("p1").total_on_hand == 6

    def test_release_twice_is_rejected(self, ledger):
        ledger.create_record("p1", 10)
        ledger.reserve([("p1", 4)])
        ledger.release([("p1", 4)])

        with pytest.raises(InventoryInvariantError):
            ledger.release([("p1", 4)])
        assert counters(ledger, "p1") == (10, 0)

    def test_commit_beyond_reserved_changes_nothing(self, ledger):
        ledger.create_record("p1", 10)
        ledger.create_record("p2", 10)
        ledger.reserve([("p1", 2), ("p2", 2)])

        with pytest.raises(InventoryInvariantError) as exc_info:
            ledger.commit([("p1", 2), ("p2", 3)])

        assert exc_info.value.product_id == "p2"
        assert counters(ledger, "p1") == (8, 2)
        assert counters(ledger, "p2") == (8, 2)


class TestAvailability:

    def test_is_available_does_not_mutate(self, ledger):
        ledger.create_record("p1", 3)
        assert ledger.is_available("p1", 3)
        assert not ledger.is_available("p1", 4)
        assert counters(ledger, "p1") == (3, 0)

    def test_reserved_units_are_not_available(self, ledger):
        ledger.create_record("p1", 3)
        ledger.reserve([("p1", 2)])
        assert not ledger.is_available("p1", 2)
        assert ledger.is_available("p1", 1)

    def test_unknown_product_is_unavailable(self, ledger):
        assert not ledger.is_available("ghost", 1)


class TestAdministration:

    def test_create_twice_fails(self, ledger):
        ledger.create_record("p1", 3)
        with pytest.raises(InventoryRecordExistsError):
            ledger.create_record("p1", 5)

    def test_get_missing_record(self, ledger):
        with pytest.raises(InventoryRecordNotFoundError):
            ledger.get_record("ghost")

    def test_add_and_remove_stock(self, ledger):
        ledger.create_record("p1", 3)
        assert ledger.add_stock("p1", 5) == 8
        assert ledger.remove_stock("p1", 2) == 6

    def test_write_off_cannot_touch_reserved_units(self, ledger):
        ledger.create_record("p1", 3)
        ledger.reserve([("p1", 2)])
        with pytest.raises(InsufficientInventoryError):
            ledger.remove_stock("p1", 2)
        assert counters(ledger, "p1") == (1, 2)

    def test_adjusting_missing_record(self, ledger):
        with pytest.raises(InventoryRecordNotFoundError):
            ledger.add_stock("ghost", 1)

    def test_low_stock_and_statistics(self, ledger):
        ledger.create_record("p1", 2, reorder_level=5)
        ledger.create_record("p2", 50, reorder_level=5)
        ledger.create_record("p3", 0, reorder_level=1)

        assert [r.product_id for r in ledger.low_stock()] == ["p1", "p3"]
        assert [r.product_id for r in ledger.low_stock(["p2", "p3"])] == ["p3"]
        assert [r.product_id for r in ledger.out_of_stock()] == ["p3"]

        stats = ledger.statistics()
        assert stats.product_count == 3
        assert stats.low_stock_count == 2
        assert stats.out_of_stock_count == 1
        assert stats.total_available == 52

    def test_set_reorder_level(self, ledger):
        ledger.create_record("p1", 2)
        ledger.set_reorder_level("p1", 3)
        assert ledger.get_record("p1").is_low_stock
        with pytest.raises(InventoryRecordNotFoundError):
            ledger.set_reorder_level("ghost", 3)
