import pytest

from shopcore.config import Config
from shopcore.exceptions import LimitExceededError, MergeFailedError, RedisConnectionError
from shopcore.models import MergeResult, Owner


@pytest.fixture
def shopper():
    return Owner.user("u1")


@pytest.fixture
def session():
    return Owner.guest("guest-1")


def quantities(carts, owner):
    return {line.product_id: line.quantity for line in carts.lines_for(owner)}


def test_conflict_is_summed_and_capped_at_available(merger, carts, ledger, shopper, session):
    ledger.create_record("A", 4)
    carts.add_or_increment(session, "A", 2)
    carts.add_or_increment(shopper, "A", 3)

    result = merger.merge(session.id, shopper.id)

    assert quantities(carts, shopper) == {"A": 4}
    assert carts.lines_for(session) == []
    assert result == MergeResult(moved=0, conflicts=1, capped=1, dropped=0)


def test_conflict_within_stock_is_summed(merger, carts, ledger, shopper, session):
    ledger.create_record("A", 10)
    carts.add_or_increment(session, "A", 2)
    carts.add_or_increment(shopper, "A", 3)

    result = merger.merge(session.id, shopper.id)

    assert quantities(carts, shopper) == {"A": 5}
    assert result.capped == 0


def test_non_conflicting_lines_move_unchanged(merger, carts, ledger, shopper, session):
    ledger.create_record("A", 1)
    carts.add_or_increment(session, "A", 3)
    carts.add_or_increment(session, "B", 1)
    carts.add_or_increment(shopper, "C", 2)
    guest_added = {line.product_id: line.added_at for line in carts.lines_for(session)}

    result = merger.merge(session.id, shopper.id)

    merged = {line.product_id: line for line in carts.lines_for(shopper)}
    # Guest-only lines are not capped by stock
    assert merged["A"].quantity == 3
    assert merged["B"].quantity == 1
    assert merged["C"].quantity == 2
    assert merged["A"].added_at == guest_added["A"]
    assert result.moved == 2
    assert result.conflicts == 0
    assert carts.lines_for(session) == []


def test_conflict_with_no_stock_drops_line(merger, carts, ledger, shopper, session):
    ledger.create_record("A", 0)
    carts.add_or_increment(session, "A", 1)
    carts.add_or_increment(shopper, "A", 1)
    carts.add_or_increment(shopper, "B", 1)

    result = merger.merge(session.id, shopper.id)

    assert quantities(carts, shopper) == {"B": 1}
    assert result.dropped == 1


def test_merge_does_not_reserve_stock(merger, carts, ledger, shopper, session):
    ledger.create_record("A", 4)
    carts.add_or_increment(session, "A", 2)
    carts.add_or_increment(shopper, "A", 1)
    merger.merge(session.id, shopper.id)
    record = ledger.get_record("A")
    assert (record.quantity_available, record.quantity_reserved) == (4, 0)


def test_empty_guest_cart_is_noop(merger, carts, shopper, session):
    carts.add_or_increment(shopper, "A", 1)
    assert merger.merge(session.id, shopper.id) == MergeResult()
    assert quantities(carts, shopper) == {"A": 1}


def test_retries_when_guest_cart_changes(merger, carts, ledger, shopper, session, monkeypatch):
    ledger.create_record("A", 10)
    carts.add_or_increment(session, "A", 1)
    original = merger.scripts.merge_cart
    calls = []

    def racing_merge(**kwargs):
        if not calls:
            calls.append(1)
            carts.add_or_increment(session, "B", 1)
        return original(**kwargs)

    monkeypatch.setattr(merger.scripts, "merge_cart", racing_merge)

    result = merger.merge(session.id, shopper.id)

    assert quantities(carts, shopper) == {"A": 1, "B": 1}
    assert result.moved == 2


def test_gives_up_and_leaves_guest_cart_intact(merger, carts, shopper, session, monkeypatch):
    carts.add_or_increment(session, "A", 2)
    monkeypatch.setattr(merger.scripts, "merge_cart", lambda **kwargs: ["STALE"])

    with pytest.raises(MergeFailedError):
        merger.merge(session.id, shopper.id)

    assert quantities(carts, session) == {"A": 2}
    assert carts.lines_for(shopper) == []


def test_storage_failure_reports_merge_failed(merger, carts, shopper, session, monkeypatch):
    carts.add_or_increment(session, "A", 2)

    def broken(**kwargs):
        raise RedisConnectionError("connection reset")

    monkeypatch.setattr(merger.scripts, "merge_cart", broken)

    with pytest.raises(MergeFailedError) as exc_info:
        merger.merge(session.id, shopper.id)

    assert exc_info.value.guest_session_id == session.id
    assert quantities(carts, session) == {"A": 2}


def test_moved_lines_respect_item_limit(merger, carts, ledger, shopper, session, monkeypatch):
    carts.add_or_increment(shopper, "C", 1)
    carts.add_or_increment(session, "A", 1)
    carts.add_or_increment(session, "B", 1)
    monkeypatch.setattr(Config, "MAX_ITEMS_PER_CART", 2)

    with pytest.raises(LimitExceededError):
        merger.merge(session.id, shopper.id)

    assert quantities(carts, session) == {"A": 1, "B": 1}
    assert quantities(carts, shopper) == {"C": 1}


def test_conflicts_do_not_count_against_item_limit(merger, carts, ledger, shopper, session, monkeypatch):
    ledger.create_record("C", 10)
    carts.add_or_increment(shopper, "C", 1)
    carts.add_or_increment(shopper, "D", 1)
    carts.add_or_increment(session, "C", 2)
    monkeypatch.setattr(Config, "MAX_ITEMS_PER_CART", 2)

    result = merger.merge(session.id, shopper.id)

    assert quantities(carts, shopper) == {"C": 3, "D": 1}
    assert result.conflicts == 1
