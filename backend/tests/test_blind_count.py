"""Tests for blind count intake, phase advancement and counter views."""

import pytest
from decimal import Decimal

from app.models.counting import (
    AssignmentStatus,
    CountEntry,
    CountingStatus,
    ExecutionMode,
    ResolutionMethod,
)
from app.services.blind_count_service import BlindCountService
from app.services.counting_errors import (
    CountingUnauthorizedError,
    InvalidQuantityError,
    ItemAlreadyResolvedError,
    ItemNotInScopeError,
    SessionCancelledError,
    SessionNotFoundError,
)
from app.services.counting_reconciliation_service import CountingReconciliationService
from app.services.counting_session_service import CountingSessionService


@pytest.fixture
def two_item_session(session_factory, stock_factory, product, second_product, location):
    """Active parallel session over two stocked products."""
    stock_factory(product, location, 50)
    stock_factory(second_product, location, 20)
    return session_factory(
        activate=True,
        scope_filters={"product_ids": [product.id, second_product.id], "location_id": location.id},
    )


class TestSubmitCount:

    def test_first_count_recorded(self, db_session, session_factory, submit, alice):
        session = session_factory(activate=True)
        item = session.items[0]

        view = submit(session, item.id, alice, "12.5", notes="top shelf")

        assert view.is_counted is True
        assert view.my_count == Decimal("12.5")
        entry = db_session.query(CountEntry).filter_by(item_id=item.id).one()
        assert entry.count_number == 1
        assert entry.round == 1
        assert entry.submitted_by_user_id == alice.id
        assert entry.notes == "top shelf"

    def test_correction_overwrites_entry(self, db_session, two_item_session, submit, alice):
        item = two_item_session.items[0]
        submit(two_item_session, item.id, alice, 10)
        view = submit(two_item_session, item.id, alice, 11)

        entries = db_session.query(CountEntry).filter_by(item_id=item.id).all()
        assert len(entries) == 1
        assert entries[0].quantity == Decimal("11")
        assert entries[0].updated_at is not None
        assert view.my_count == Decimal("11")

    def test_unknown_session(self, db_session, alice):
        with pytest.raises(SessionNotFoundError):
            BlindCountService(db_session).submit_count(999, 1, alice.id, Decimal("1"))

    def test_unassigned_user_rejected(self, session_factory, submit, supervisor):
        session = session_factory(activate=True)
        with pytest.raises(CountingUnauthorizedError):
            submit(session, session.items[0].id, supervisor, 1)

    def test_third_counter_rejected_before_third_count(self, session_factory, submit, carol):
        session = session_factory(activate=True)
        with pytest.raises(CountingUnauthorizedError):
            submit(session, session.items[0].id, carol, 1)

    def test_draft_session_rejects_counts(self, session_factory, submit, alice):
        session = session_factory()
        with pytest.raises(CountingUnauthorizedError):
            submit(session, 1, alice, 1)

    def test_negative_quantity(self, session_factory, submit, alice):
        session = session_factory(activate=True)
        with pytest.raises(InvalidQuantityError):
            submit(session, session.items[0].id, alice, -1)

    def test_item_of_another_session(self, session_factory, submit, alice):
        first = session_factory(activate=True)
        second = session_factory(activate=True)
        with pytest.raises(ItemNotInScopeError):
            submit(second, first.items[0].id, alice, 1)

    def test_cancelled_session_checked_before_authorization(self, db_session, session_factory, submit, supervisor):
        session = session_factory(activate=True)
        CountingSessionService(db_session).cancel_session(session.id, "Stock moved")
        with pytest.raises(SessionCancelledError):
            submit(session, session.items[0].id, supervisor, 1)

    def test_resolved_item_same_value_is_noop(self, db_session, two_item_session, submit, alice, bob):
        item = two_item_session.items[0]
        submit(two_item_session, item.id, alice, 50)
        submit(two_item_session, item.id, bob, 50)
        db_session.refresh(item)
        assert item.resolution_method == ResolutionMethod.AUTO_ALL_MATCH
        events_before = len(two_item_session.events)

        view = submit(two_item_session, item.id, alice, 50)

        assert view.my_count == Decimal("50")
        db_session.refresh(two_item_session)
        assert len(two_item_session.events) == events_before

    def test_resolved_item_different_value_rejected(self, db_session, two_item_session, submit, alice, bob):
        item = two_item_session.items[0]
        submit(two_item_session, item.id, alice, 50)
        submit(two_item_session, item.id, bob, 50)

        with pytest.raises(ItemAlreadyResolvedError):
            submit(two_item_session, item.id, alice, 49)
        db_session.refresh(item)
        assert item.count_value(1) == Decimal("50")


class TestPhaseAdvancement:

    def test_parallel_counts_reach_pending_review(self, db_session, two_item_session, submit, alice, bob):
        session = two_item_session
        for item in session.items:
            submit(session, item.id, bob, 1)
        db_session.refresh(session)
        assert session.status == CountingStatus.COUNT_1_IN_PROGRESS

        for item in session.items:
            submit(session, item.id, alice, 1)
        db_session.refresh(session)
        assert session.status == CountingStatus.PENDING_REVIEW
        assert all(a.status == AssignmentStatus.COMPLETED for a in session.assignments)

    def test_sequential_mode_opens_count_2_after_count_1(
        self, db_session, session_factory, stock_factory, submit, product, location, alice, bob
    ):
        stock_factory(product, location, 8)
        session = session_factory(activate=True, execution_mode=ExecutionMode.SEQUENTIAL)
        item = session.items[0]

        with pytest.raises(CountingUnauthorizedError):
            submit(session, item.id, bob, 8)

        submit(session, item.id, alice, 8)
        db_session.refresh(session)
        assert session.status == CountingStatus.COUNT_2_IN_PROGRESS

        with pytest.raises(CountingUnauthorizedError):
            submit(session, item.id, alice, 9)

        submit(session, item.id, bob, 8)
        db_session.refresh(session)
        assert session.status == CountingStatus.PENDING_REVIEW

    def test_same_user_counts_twice_in_sequential_mode(
        self, db_session, session_factory, stock_factory, submit, product, location, alice
    ):
        stock_factory(product, location, 3)
        session = session_factory(
            activate=True,
            execution_mode=ExecutionMode.SEQUENTIAL,
            count_2_user_id=alice.id,
        )
        item = session.items[0]

        submit(session, item.id, alice, 3)
        submit(session, item.id, alice, 3)

        db_session.refresh(item)
        assert item.count_value(1) == Decimal("3")
        assert item.count_value(2) == Decimal("3")
        assert item.resolution_method == ResolutionMethod.AUTO_ALL_MATCH

    def test_closed_phase_rejects_corrections(self, db_session, session_factory, submit, alice, bob):
        session = session_factory(activate=True)
        item = session.items[0]
        submit(session, item.id, alice, 4)
        submit(session, item.id, bob, 5)
        db_session.refresh(session)
        assert session.status == CountingStatus.PENDING_REVIEW

        with pytest.raises(CountingUnauthorizedError):
            submit(session, item.id, alice, 5)


class TestCounterViews:

    def test_counter_view_is_blind(self, db_session, two_item_session, submit, alice, bob):
        item = two_item_session.items[0]
        submit(two_item_session, item.id, alice, 7)

        view = BlindCountService(db_session).counter_view(two_item_session.id, bob.id)
        payload = view.model_dump()

        assert view.my_count_number == 2
        assert view.can_count is True
        assert all(i.is_counted is False and i.my_count is None for i in view.items)
        assert view.progress.counted == 0
        assert "theoretical_qty" not in payload["items"][0]
        assert "count_1_qty" not in payload["items"][0]

    def test_counter_view_shows_own_count(self, db_session, two_item_session, submit, alice):
        item = two_item_session.items[0]
        submit(two_item_session, item.id, alice, 7)

        view = BlindCountService(db_session).counter_view(two_item_session.id, alice.id)
        mine = next(i for i in view.items if i.id == item.id)
        assert mine.my_count == Decimal("7")
        assert view.progress.counted == 1
        assert view.progress.total == 2
        assert view.progress.percentage == 50.0

    def test_counter_view_for_unassigned_user(self, db_session, two_item_session, supervisor):
        with pytest.raises(CountingUnauthorizedError):
            BlindCountService(db_session).counter_view(two_item_session.id, supervisor.id)

    def test_counter_item(self, db_session, two_item_session, alice):
        item = two_item_session.items[1]
        view = BlindCountService(db_session).counter_item(two_item_session.id, item.id, alice.id)
        assert view.id == item.id
        assert view.unit_of_measure == "pcs"
        assert view.location.code == "A1"

    def test_lookup_by_barcode_and_sku(self, db_session, two_item_session, product, alice):
        service = BlindCountService(db_session)

        by_barcode = service.lookup_by_barcode(two_item_session.id, alice.id, "1234567890123")
        by_sku = service.lookup_by_barcode(two_item_session.id, alice.id, "SW-1L")

        assert by_barcode.found is True
        assert by_barcode.item.product.id == product.id
        assert by_sku.item.id == by_barcode.item.id

    def test_lookup_unknown_code(self, db_session, two_item_session, alice):
        result = BlindCountService(db_session).lookup_by_barcode(two_item_session.id, alice.id, "000")
        assert result.found is False
        assert result.item is None

    def test_my_tasks(self, db_session, two_item_session, submit, alice):
        submit(two_item_session, two_item_session.items[0].id, alice, 1)

        tasks = BlindCountService(db_session).my_tasks(alice.id)

        assert len(tasks) == 1
        task = tasks[0]
        assert task.session_id == two_item_session.id
        assert task.count_number == 1
        assert task.can_count is True
        assert task.counted_items == 1
        assert task.total_items == 2
        assert task.progress_percentage == 50.0

    def test_third_counter_sees_only_round_items(self, db_session, two_item_session, submit, alice, bob, carol):
        disputed, agreed = two_item_session.items
        submit(two_item_session, disputed.id, alice, 40)
        submit(two_item_session, disputed.id, bob, 45)
        submit(two_item_session, agreed.id, alice, 20)
        submit(two_item_session, agreed.id, bob, 20)

        CountingReconciliationService(db_session).trigger_third_count(
            two_item_session.id, [disputed.id], two_item_session.created_by_user_id
        )

        view = BlindCountService(db_session).counter_view(two_item_session.id, carol.id)
        assert [i.id for i in view.items] == [disputed.id]
        assert view.my_count_number == 3
        assert view.round == 1
        with pytest.raises(ItemNotInScopeError):
            submit(two_item_session, agreed.id, carol, 20)
