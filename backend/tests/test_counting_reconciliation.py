"""Tests for the reconciliation engine: resolution rules, third counts, overrides."""

import pytest
from decimal import Decimal

from app.models.counting import (
    AssignmentStatus,
    CountableItem,
    CountingStatus,
    ExecutionMode,
    ResolutionMethod,
)
from app.services.blind_count_service import BlindCountService
from app.services.counting_audit_service import CountingAuditService, CountingEventType
from app.services.counting_errors import (
    CountingUnauthorizedError,
    InvalidQuantityError,
    InvalidStateTransitionError,
    ItemNotInScopeError,
    ManualOverrideRequiresNotesError,
    SequentialModeRequiredError,
    ThirdCountNotAvailableError,
    UnresolvedItemsError,
)
from app.services.counting_reconciliation_service import (
    CountingReconciliationConfig,
    CountingReconciliationService,
    decide_resolution,
    variance_flag_reason,
    variance_percentage,
)
from app.services.counting_session_service import CountingSessionService

D = Decimal


@pytest.fixture
def config():
    return CountingReconciliationConfig(flag_threshold_percent=D("5"), override_min_notes=10)


# ============== Pure resolution rules ==============

class TestDecideResolution:

    def test_incomplete_counts(self, config):
        assert decide_resolution(D("10"), None, None, None, True, config) is None
        assert decide_resolution(D("10"), D("10"), None, None, True, config) is None

    def test_all_match(self, config):
        outcome = decide_resolution(D("10"), D("10"), D("10"), None, True, config)
        assert outcome.method == ResolutionMethod.AUTO_ALL_MATCH
        assert outcome.final_qty == D("10")
        assert outcome.is_flagged is False

    def test_counters_agree_small_variance_not_flagged(self, config):
        outcome = decide_resolution(D("50"), D("48"), D("48"), None, True, config)
        assert outcome.method == ResolutionMethod.AUTO_COUNTERS_AGREE
        assert outcome.final_qty == D("48")
        assert outcome.is_flagged is False
        assert outcome.flag_reason is None

    def test_counters_agree_large_variance_flagged(self, config):
        outcome = decide_resolution(D("50"), D("40"), D("40"), None, True, config)
        assert outcome.method == ResolutionMethod.AUTO_COUNTERS_AGREE
        assert outcome.is_flagged is True
        assert outcome.flag_reason == "critical_variance"

    def test_threshold_is_exclusive(self, config):
        outcome = decide_resolution(D("100"), D("95"), D("95"), None, True, config)
        assert outcome.is_flagged is False

    def test_counters_agree_against_zero_theoretical(self, config):
        outcome = decide_resolution(D("0"), D("3"), D("3"), None, True, config)
        assert outcome.method == ResolutionMethod.AUTO_COUNTERS_AGREE
        assert outcome.is_flagged is True
        assert outcome.flag_reason == "variance_from_zero_theoretical"

    def test_both_count_zero_against_zero_theoretical(self, config):
        outcome = decide_resolution(D("0"), D("0"), D("0"), None, True, config)
        assert outcome.method == ResolutionMethod.AUTO_ALL_MATCH

    def test_disagreement_stays_pending(self, config):
        outcome = decide_resolution(D("50"), D("48"), D("52"), None, True, config)
        assert outcome.method == ResolutionMethod.PENDING
        assert outcome.is_flagged is True
        assert outcome.flag_reason == "counter_disagreement"

    def test_disagreement_with_one_matching_theoretical(self, config):
        outcome = decide_resolution(D("50"), D("50"), D("47"), None, True, config)
        assert outcome.method == ResolutionMethod.PENDING
        assert outcome.flag_reason == "counter_disagreement_one_matches_theoretical"

    def test_single_count_match(self, config):
        outcome = decide_resolution(D("7"), D("7"), None, None, False, config)
        assert outcome.method == ResolutionMethod.AUTO_ALL_MATCH

    def test_single_count_mismatch_is_flagged(self, config):
        outcome = decide_resolution(D("7"), D("6"), None, None, False, config)
        assert outcome.method == ResolutionMethod.AUTO_COUNTERS_AGREE
        assert outcome.final_qty == D("6")
        assert outcome.is_flagged is True
        assert outcome.flag_reason == "critical_variance"

    def test_third_count_breaks_tie(self, config):
        outcome = decide_resolution(D("50"), D("48"), D("52"), D("48"), True, config)
        assert outcome.method == ResolutionMethod.THIRD_COUNT_DECISIVE
        assert outcome.final_qty == D("48")
        assert outcome.flag_reason == "variance_confirmed_by_third_count"
        assert "count 2" in outcome.notes

    def test_third_count_proves_counter_wrong(self, config):
        outcome = decide_resolution(D("50"), D("50"), D("44"), D("50"), True, config)
        assert outcome.method == ResolutionMethod.THIRD_COUNT_DECISIVE
        assert outcome.final_qty == D("50")
        assert outcome.flag_reason == "counter_2_proven_wrong"

    def test_no_consensus(self, config):
        outcome = decide_resolution(D("50"), D("48"), D("52"), D("55"), True, config)
        assert outcome.method == ResolutionMethod.PENDING
        assert outcome.flag_reason == "no_consensus"

    @pytest.mark.parametrize("c1,c2,c3", [
        (D("48"), D("52"), D("48")),
        (D("52"), D("48"), D("48")),
        (D("48"), D("52"), D("52")),
        (D("1"), D("2"), D("3")),
    ])
    def test_order_of_first_two_counts_is_irrelevant(self, config, c1, c2, c3):
        forward = decide_resolution(D("50"), c1, c2, c3, True, config)
        backward = decide_resolution(D("50"), c2, c1, c3, True, config)
        assert forward.method == backward.method
        assert forward.final_qty == backward.final_qty

    def test_quantities_compared_after_quantizing(self, config):
        outcome = decide_resolution(D("10"), D("10.00001"), D("10"), None, True, config)
        assert outcome.method == ResolutionMethod.AUTO_ALL_MATCH


class TestVarianceHelpers:

    def test_percentage_rounds_half_up(self):
        assert variance_percentage(D("1"), D("8")) == D("12.50")
        assert variance_percentage(D("-1"), D("3")) == D("-33.33")

    def test_percentage_undefined_for_zero_theoretical(self):
        assert variance_percentage(D("5"), D("0")) is None

    @pytest.mark.parametrize("counted,reason", [
        (D("101"), "variance_from_theoretical"),
        (D("98"), "minor_variance"),
        (D("94"), "significant_variance"),
        (D("110"), "critical_variance"),
    ])
    def test_flag_bands(self, config, counted, reason):
        assert variance_flag_reason(counted, D("100"), config) == reason


# ============== End-to-end scenarios ==============

class TestReconciliationScenarios:

    def test_single_count_matching_theoretical(
        self, db_session, session_factory, stock_factory, submit, product, location, alice
    ):
        stock_factory(product, location, 50)
        session = session_factory(
            activate=True,
            requires_count_2=False,
            requires_count_3=False,
            count_2_user_id=None,
            count_3_user_id=None,
        )
        item = session.items[0]

        submit(session, item.id, alice, 50)

        db_session.refresh(session)
        db_session.refresh(item)
        assert session.status == CountingStatus.PENDING_REVIEW
        assert item.resolution_method == ResolutionMethod.AUTO_ALL_MATCH
        assert item.final_qty == D("50")
        assert item.variance == D("0")
        assert item.variance_percentage == D("0")

        session = CountingSessionService(db_session).finalize_session(session.id)
        assert session.status == CountingStatus.FINALIZED

    def test_two_counters_agree_below_theoretical(
        self, db_session, session_factory, stock_factory, submit, product, location, alice, bob
    ):
        stock_factory(product, location, 50)
        session = session_factory(activate=True)
        item = session.items[0]

        submit(session, item.id, alice, 48)
        submit(session, item.id, bob, 48)

        db_session.refresh(item)
        assert item.resolution_method == ResolutionMethod.AUTO_COUNTERS_AGREE
        assert item.final_qty == D("48")
        assert item.variance == D("-2")
        assert item.variance_percentage == D("-4.00")
        assert item.is_flagged is False
        assert len(item.resolutions) == 1

    def test_disagreement_resolved_by_third_count(
        self, db_session, session_factory, stock_factory, submit, product, location, alice, bob, carol, supervisor
    ):
        stock_factory(product, location, 50)
        session = session_factory(activate=True)
        item = session.items[0]

        submit(session, item.id, alice, 48)
        submit(session, item.id, bob, 52)

        db_session.refresh(item)
        assert item.resolution_method == ResolutionMethod.PENDING
        assert item.is_flagged is True
        assert item.flag_reason == "counter_disagreement"

        session = CountingReconciliationService(db_session).trigger_third_count(
            session.id, [item.id], supervisor.id
        )
        assert session.status == CountingStatus.COUNT_3_IN_PROGRESS
        assert session.third_count_round == 1
        third = [a for a in session.assignments if a.count_number == 3]
        assert len(third) == 1
        assert third[0].user_id == carol.id
        assert third[0].status == AssignmentStatus.IN_PROGRESS
        assert third[0].total_items == 1

        submit(session, item.id, carol, 48)

        db_session.refresh(session)
        db_session.refresh(item)
        assert session.status == CountingStatus.PENDING_REVIEW
        assert item.resolution_method == ResolutionMethod.THIRD_COUNT_DECISIVE
        assert item.final_qty == D("48")
        assert item.flag_reason == "variance_confirmed_by_third_count"

    def test_no_consensus_needs_manual_override(
        self, db_session, session_factory, stock_factory, submit, product, location, alice, bob, carol, supervisor
    ):
        stock_factory(product, location, 50)
        session = session_factory(activate=True)
        item = session.items[0]
        reconciliation = CountingReconciliationService(db_session)
        sessions = CountingSessionService(db_session)

        submit(session, item.id, alice, 48)
        submit(session, item.id, bob, 52)
        reconciliation.trigger_third_count(session.id, [item.id], supervisor.id)
        submit(session, item.id, carol, 55)

        db_session.refresh(item)
        assert item.resolution_method == ResolutionMethod.PENDING
        assert item.flag_reason == "no_consensus"
        with pytest.raises(UnresolvedItemsError):
            sessions.finalize_session(session.id)

        item = reconciliation.manual_override(
            item.id, D("50"), "Recounted with the shift lead, shelf label was wrong", supervisor.id
        )
        assert item.resolution_method == ResolutionMethod.MANUAL_OVERRIDE
        assert item.final_qty == D("50")
        assert item.variance == D("0")
        assert item.resolved_by_user_id == supervisor.id
        assert item.is_flagged is True

        session = sessions.finalize_session(session.id)
        assert session.status == CountingStatus.FINALIZED

    def test_same_counter_twice_in_parallel_rejected(self, session_factory, alice):
        with pytest.raises(SequentialModeRequiredError):
            session_factory(count_1_user_id=alice.id, count_2_user_id=alice.id)

    @pytest.mark.parametrize("c1,c2,theoretical", [
        (10, 10, 10),
        (9, 9, 10),
        (30, 30, 10),
        (8, 12, 10),
        (10, 7, 10),
        (5, 5, 0),
    ])
    def test_arrival_order_does_not_change_outcome(
        self, db_session, session_factory, stock_factory, submit, product, location, alice, bob, c1, c2, theoretical
    ):
        if theoretical:
            stock_factory(product, location, theoretical)
        first = session_factory(activate=True)
        second = session_factory(activate=True)

        submit(first, first.items[0].id, alice, c1)
        submit(first, first.items[0].id, bob, c2)
        submit(second, second.items[0].id, bob, c2)
        submit(second, second.items[0].id, alice, c1)

        a = db_session.get(CountableItem, first.items[0].id)
        b = db_session.get(CountableItem, second.items[0].id)
        assert a.resolution_method == b.resolution_method
        assert a.final_qty == b.final_qty
        assert a.is_flagged == b.is_flagged
        assert a.flag_reason == b.flag_reason


class TestThirdCount:

    @pytest.fixture
    def disputed(self, db_session, session_factory, stock_factory, submit, product, location, alice, bob):
        stock_factory(product, location, 50)
        session = session_factory(activate=True)
        item = session.items[0]
        submit(session, item.id, alice, 48)
        submit(session, item.id, bob, 52)
        db_session.refresh(session)
        return session, item

    def test_requires_pending_review(self, db_session, session_factory, supervisor):
        session = session_factory(activate=True)
        with pytest.raises(InvalidStateTransitionError):
            CountingReconciliationService(db_session).trigger_third_count(
                session.id, [session.items[0].id], supervisor.id
            )

    def test_requires_third_counter(
        self, db_session, session_factory, submit, alice, bob, supervisor
    ):
        session = session_factory(activate=True, requires_count_3=False, count_3_user_id=None)
        item = session.items[0]
        submit(session, item.id, alice, 1)
        submit(session, item.id, bob, 2)

        with pytest.raises(ThirdCountNotAvailableError):
            CountingReconciliationService(db_session).trigger_third_count(
                session.id, [item.id], supervisor.id
            )

    def test_unknown_item(self, db_session, disputed, supervisor):
        session, _ = disputed
        with pytest.raises(ItemNotInScopeError):
            CountingReconciliationService(db_session).trigger_third_count(session.id, [9999], supervisor.id)

    def test_resolved_item_is_not_a_candidate(
        self, db_session, session_factory, stock_factory, submit, product, location, alice, bob, supervisor
    ):
        stock_factory(product, location, 5)
        session = session_factory(activate=True)
        item = session.items[0]
        submit(session, item.id, alice, 5)
        submit(session, item.id, bob, 5)

        with pytest.raises(ThirdCountNotAvailableError):
            CountingReconciliationService(db_session).trigger_third_count(
                session.id, [item.id], supervisor.id
            )
        db_session.refresh(session)
        assert session.status == CountingStatus.PENDING_REVIEW

    def test_second_round_after_no_consensus(self, db_session, disputed, submit, carol, supervisor):
        session, item = disputed
        reconciliation = CountingReconciliationService(db_session)

        reconciliation.trigger_third_count(session.id, [item.id], supervisor.id)
        submit(session, item.id, carol, 55)
        session = reconciliation.trigger_third_count(session.id, [item.id], supervisor.id)

        assert session.third_count_round == 2
        assert sorted(a.round for a in session.assignments if a.count_number == 3) == [1, 2]

        submit(session, item.id, carol, 52)
        db_session.refresh(item)
        assert item.resolution_method == ResolutionMethod.THIRD_COUNT_DECISIVE
        assert item.final_qty == D("52")
        assert item.flag_reason == "variance_confirmed_by_third_count"
        assert {(e.count_number, e.round) for e in item.entries} == {(1, 1), (2, 1), (3, 1), (3, 2)}


class TestManualOverride:

    def test_notes_required(self, db_session, session_factory, supervisor):
        session = session_factory(activate=True)
        with pytest.raises(ManualOverrideRequiresNotesError):
            CountingReconciliationService(db_session).manual_override(
                session.items[0].id, D("1"), "too short", supervisor.id
            )

    def test_negative_quantity(self, db_session, session_factory, supervisor):
        session = session_factory(activate=True)
        with pytest.raises(InvalidQuantityError):
            CountingReconciliationService(db_session).manual_override(
                session.items[0].id, D("-1"), "Counted twice by supervisor", supervisor.id
            )

    def test_unknown_item(self, db_session, supervisor):
        with pytest.raises(ItemNotInScopeError):
            CountingReconciliationService(db_session).manual_override(
                9999, D("1"), "Counted twice by supervisor", supervisor.id
            )

    def test_cancelled_session_rejected(self, db_session, session_factory, stock_factory, product, location, supervisor):
        stock_factory(product, location, 5)
        session = session_factory(activate=True)
        item_id = session.items[0].id
        CountingSessionService(db_session).cancel_session(session.id, "Wrong scope")

        with pytest.raises(InvalidStateTransitionError):
            CountingReconciliationService(db_session).manual_override(
                item_id, D("5"), "Counted twice by supervisor", supervisor.id
            )

    def test_override_supersedes_automatic_resolution(
        self, db_session, session_factory, stock_factory, submit, product, location, alice, bob, supervisor
    ):
        stock_factory(product, location, 10)
        session = session_factory(activate=True)
        item = session.items[0]
        submit(session, item.id, alice, 10)
        submit(session, item.id, bob, 10)

        item = CountingReconciliationService(db_session).manual_override(
            item.id, D("12"), "Two cases found behind the pallet", supervisor.id
        )

        assert item.resolution_method == ResolutionMethod.MANUAL_OVERRIDE
        assert item.final_qty == D("12")
        assert item.variance == D("2")
        assert item.variance_percentage == D("20.00")
        assert [r.method for r in item.resolutions] == [
            ResolutionMethod.AUTO_ALL_MATCH,
            ResolutionMethod.MANUAL_OVERRIDE,
        ]

    def test_overridden_item_not_touched_by_bulk_reconcile(
        self, db_session, session_factory, submit, alice, bob, supervisor
    ):
        session = session_factory(activate=True)
        item = session.items[0]
        submit(session, item.id, alice, 3)
        submit(session, item.id, bob, 4)
        reconciliation = CountingReconciliationService(db_session)
        reconciliation.manual_override(item.id, D("3"), "Bob double counted one unit", supervisor.id)

        db_session.refresh(session)
        result = reconciliation.reconcile_session(session)

        assert result == {"resolved": 0, "pending": 0}
        db_session.refresh(item)
        assert item.resolution_method == ResolutionMethod.MANUAL_OVERRIDE

    def test_override_is_flagged_and_audited(
        self, db_session, session_factory, submit, alice, bob, supervisor
    ):
        session = session_factory(activate=True)
        item = session.items[0]
        submit(session, item.id, alice, 3)
        submit(session, item.id, bob, 4)

        item = CountingReconciliationService(db_session).manual_override(
            item.id, D("4"), "Alice skipped the top shelf", supervisor.id
        )

        assert item.is_flagged is True
        assert item.flag_reason == "manual_override"
        event = CountingAuditService(db_session).list_events(session.id)[-1]
        assert event.event_type == CountingEventType.ITEM_MANUALLY_OVERRIDDEN
        assert event.event_data["previous_method"] == "pending"
        assert event.event_data["previous_flag_reason"] == "counter_disagreement"

    @pytest.mark.parametrize("mode", [ExecutionMode.PARALLEL, ExecutionMode.SEQUENTIAL])
    def test_override_of_last_open_item_completes_phase(
        self, db_session, session_factory, alice, bob, supervisor, mode
    ):
        session = session_factory(activate=True, execution_mode=mode)
        item_id = session.items[0].id

        CountingReconciliationService(db_session).manual_override(
            item_id, D("7"), "Counted by the supervisor on site", supervisor.id
        )

        db_session.refresh(session)
        assert session.status == CountingStatus.PENDING_REVIEW
        assert all(a.status == AssignmentStatus.COMPLETED for a in session.assignments if a.count_number in (1, 2))
        with pytest.raises(CountingUnauthorizedError):
            BlindCountService(db_session).submit_count(session.id, item_id, alice.id, D("5"))

        session = CountingSessionService(db_session).finalize_session(session.id, user_id=supervisor.id)
        assert session.status == CountingStatus.FINALIZED

    def test_override_during_phase_counts_as_done_for_assignments(
        self, db_session, session_factory, stock_factory, submit,
        product, second_product, location, alice, bob, supervisor,
    ):
        stock_factory(product, location, 5)
        stock_factory(second_product, location, 8)
        session = session_factory(
            activate=True,
            scope_filters={"product_ids": [product.id, second_product.id], "location_id": location.id},
        )
        overridden, counted = session.items

        CountingReconciliationService(db_session).manual_override(
            overridden.id, D("5"), "Sealed case, verified by label", supervisor.id
        )
        db_session.refresh(session)
        assert session.status == CountingStatus.COUNT_1_IN_PROGRESS

        submit(session, counted.id, alice, 8)
        submit(session, counted.id, bob, 8)

        db_session.refresh(session)
        assert session.status == CountingStatus.PENDING_REVIEW
        assert {(a.count_number, a.counted_items, a.total_items) for a in session.assignments
                if a.count_number in (1, 2)} == {(1, 2, 2), (2, 2, 2)}
        db_session.refresh(counted)
        assert counted.resolution_method == ResolutionMethod.AUTO_ALL_MATCH
