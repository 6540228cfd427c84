"""
Tests for the negotiation service against a real (SQLite) database.

Covers the full request lifecycle, the single-winner rule under racing
sessions, expiry precedence and the read paths.
"""
from datetime import timedelta
from decimal import Decimal

import pytest
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.core import errors
from app.core.clock import utcnow
from app.db.models import AuditLog, CounterOffer, QuoteRequest, QuoteResponse, QuoteStatus
from app.services.negotiation import ledger, service, state_machine
from app.services.negotiation.service import Offer, RequestSubject, RequestTerms


# ============= HELPERS =============

def open_rfq(db: Session, world, **terms) -> QuoteRequest:
    """General RFQ open to every seller."""
    terms.setdefault("quantity", Decimal("10"))
    return service.submit_request(
        db,
        world.buyer.party_id,
        RequestSubject(title="Bathroom refit", category="Plumbing"),
        RequestTerms(**terms),
        acting_user_id=world.buyer.user_id,
    )


def bid(db: Session, request: QuoteRequest, actor, price="100", **offer) -> QuoteResponse:
    return service.submit_response(
        db, request.id, actor.party_id, Offer(price=Decimal(price), **offer), acting_user_id=actor.user_id,
    )


def make_overdue(db: Session, request: QuoteRequest):
    request.expires_at = utcnow() - timedelta(minutes=1)
    db.commit()


# ============= TESTS =============

class TestSubmitRequest:

    def test_creates_pending_request(self, db_session: Session, world):
        request = open_rfq(db_session, world)

        assert request.status == QuoteStatus.PENDING.value
        assert request.currency == "USD"
        assert request.target_party_id is None
        assert request.requested_by_user_id == world.buyer.user_id
        assert request.version == 1

    def test_product_request_defaults(self, db_session: Session, world):
        request = service.submit_request(
            db_session,
            world.buyer.party_id,
            RequestSubject(product_id=world.product.id),
            RequestTerms(quantity=Decimal("40")),
            acting_user_id=world.buyer.user_id,
        )

        assert request.target_party_id == world.supplier.party_id
        assert request.unit == "bag"
        assert request.title == "Concrete Mix 25kg"

    def test_currency_is_normalised(self, db_session: Session, world):
        request = open_rfq(db_session, world, currency="eur", target_price=Decimal("500"))

        assert request.currency == "EUR"

    def test_seller_cannot_request(self, db_session: Session, world):
        with pytest.raises(errors.ForbiddenError) as exc_info:
            service.submit_request(
                db_session, world.supplier.party_id,
                RequestSubject(title="x"), RequestTerms(),
                acting_user_id=world.supplier.user_id,
            )

        assert exc_info.value.code == errors.NOT_A_BUYER

    def test_user_must_belong_to_party(self, db_session: Session, world):
        with pytest.raises(errors.ForbiddenError) as exc_info:
            service.submit_request(
                db_session, world.buyer.party_id,
                RequestSubject(title="x"), RequestTerms(),
                acting_user_id=world.other_buyer.user_id,
            )

        assert exc_info.value.code == errors.ACCESS_DENIED

    @pytest.mark.parametrize("quantity", [Decimal("0"), Decimal("-3")])
    def test_quantity_must_be_positive(self, db_session: Session, world, quantity):
        with pytest.raises(errors.ValidationError) as exc_info:
            open_rfq(db_session, world, quantity=quantity)

        assert exc_info.value.code == errors.INVALID_QUANTITY

    def test_negative_target_price(self, db_session: Session, world):
        with pytest.raises(errors.ValidationError) as exc_info:
            open_rfq(db_session, world, target_price=Decimal("-1"))

        assert exc_info.value.code == errors.NEGATIVE_AMOUNT

    def test_expiry_in_the_past(self, db_session: Session, world):
        with pytest.raises(errors.ValidationError):
            open_rfq(db_session, world, expires_at=utcnow() - timedelta(days=1))

    def test_general_request_needs_title(self, db_session: Session, world):
        with pytest.raises(errors.ValidationError):
            service.submit_request(
                db_session, world.buyer.party_id, RequestSubject(), RequestTerms(),
                acting_user_id=world.buyer.user_id,
            )

    def test_target_must_be_seller(self, db_session: Session, world):
        with pytest.raises(errors.ValidationError) as exc_info:
            open_rfq(db_session, world, target_party_id=world.other_buyer.party_id)

        assert exc_info.value.code == errors.NOT_A_SELLER

    def test_nothing_persisted_on_failure(self, db_session: Session, world):
        with pytest.raises(errors.ValidationError):
            open_rfq(db_session, world, quantity=Decimal("0"))

        assert db_session.query(QuoteRequest).count() == 0
        assert db_session.query(AuditLog).count() == 0


class TestHappyPath:

    def test_request_respond_accept(self, db_session: Session, world):
        request = open_rfq(db_session, world)
        assert request.status == QuoteStatus.PENDING.value

        response = bid(db_session, request, world.supplier, "95.50")
        db_session.refresh(request)
        assert request.status == QuoteStatus.RESPONDED.value
        assert request.responding_party_id == world.supplier.party_id
        assert response.currency == "USD"
        assert response.is_accepted is False

        accepted = service.accept_response(
            db_session, request.id, response.id, world.buyer.party_id, acting_user_id=world.buyer.user_id,
        )
        assert accepted.status == QuoteStatus.ACCEPTED.value
        db_session.refresh(response)
        assert response.is_accepted is True
        assert response.accepted_at is not None

        with pytest.raises(errors.InvalidStateError) as exc_info:
            bid(db_session, request, world.provider, "80")
        assert exc_info.value.code == errors.ILLEGAL_TRANSITION

    def test_audit_trail(self, db_session: Session, world):
        request = open_rfq(db_session, world)
        response = bid(db_session, request, world.supplier)
        service.accept_response(db_session, request.id, response.id, world.buyer.party_id)

        actions = [
            a.action for a in db_session.query(AuditLog).filter(
                AuditLog.entity_type == "quote_request",
                AuditLog.entity_id == request.id,
            ).order_by(AuditLog.id)
        ]

        assert actions == ["submit_quote_request", "submit_quote_response", "accept_quote_response"]


class TestSubmitResponse:

    def test_unknown_request(self, db_session: Session, world):
        with pytest.raises(errors.NotFoundError) as exc_info:
            service.submit_response(
                db_session, 4242, world.supplier.party_id, Offer(price=Decimal("1")),
                acting_user_id=world.supplier.user_id,
            )

        assert exc_info.value.code == errors.QUOTE_REQUEST_NOT_FOUND

    def test_competing_bids_on_open_request(self, db_session: Session, world):
        request = open_rfq(db_session, world)

        bid(db_session, request, world.supplier, "120")
        bid(db_session, request, world.provider, "110")
        bid(db_session, request, world.supplier, "105")  # revised bid

        db_session.refresh(request)
        assert request.status == QuoteStatus.RESPONDED.value
        assert len(request.responses) == 3
        # First responder stays bound
        assert request.responding_party_id == world.supplier.party_id

    def test_targeted_request_rejects_other_sellers(self, db_session: Session, world):
        request = open_rfq(db_session, world, target_party_id=world.supplier.party_id)

        with pytest.raises(errors.ForbiddenError) as exc_info:
            bid(db_session, request, world.other_supplier)

        assert exc_info.value.code == errors.NOT_TARGET_SELLER

    def test_company_cannot_bid(self, db_session: Session, world):
        request = open_rfq(db_session, world)

        with pytest.raises(errors.ForbiddenError) as exc_info:
            bid(db_session, request, world.other_buyer)

        assert exc_info.value.code == errors.NOT_A_SELLER

    def test_negative_price(self, db_session: Session, world):
        request = open_rfq(db_session, world)

        with pytest.raises(errors.ValidationError) as exc_info:
            bid(db_session, request, world.supplier, "-0.01")

        assert exc_info.value.code == errors.NEGATIVE_AMOUNT

    def test_invalid_currency(self, db_session: Session, world):
        request = open_rfq(db_session, world)

        with pytest.raises(errors.ValidationError) as exc_info:
            bid(db_session, request, world.supplier, currency="US")

        assert exc_info.value.code == errors.INVALID_CURRENCY

    def test_zero_quantity(self, db_session: Session, world):
        request = open_rfq(db_session, world)

        with pytest.raises(errors.ValidationError) as exc_info:
            bid(db_session, request, world.supplier, quantity=Decimal("0"))

        assert exc_info.value.code == errors.INVALID_QUANTITY


class TestSingleWinner:

    def test_second_accept_conflicts(self, db_session: Session, world):
        request = open_rfq(db_session, world)
        first = bid(db_session, request, world.supplier, "100")
        second = bid(db_session, request, world.provider, "90")

        service.accept_response(db_session, request.id, first.id, world.buyer.party_id)

        with pytest.raises(errors.ConflictError) as exc_info:
            service.accept_response(db_session, request.id, second.id, world.buyer.party_id)

        assert exc_info.value.code == errors.RESPONSE_ALREADY_ACCEPTED
        assert exc_info.value.details["accepted_response_id"] == first.id
        accepted = db_session.query(QuoteResponse).filter(QuoteResponse.is_accepted == True).all()  # noqa: E712
        assert [r.id for r in accepted] == [first.id]

    def test_racing_sessions(self, db_session: Session, session_factory, world):
        """Two callers load the same request; only one accept succeeds."""
        request = open_rfq(db_session, world)
        first = bid(db_session, request, world.supplier, "100")
        second = bid(db_session, request, world.provider, "90")

        s1, s2 = session_factory(), session_factory()
        try:
            # Both callers have read the request before either writes
            assert service.get_request_for_party(s1, request.id, world.buyer.party_id).status == "responded"
            assert service.get_request_for_party(s2, request.id, world.buyer.party_id).status == "responded"

            service.accept_response(s1, request.id, first.id, world.buyer.party_id)
            with pytest.raises(errors.ConflictError):
                service.accept_response(s2, request.id, second.id, world.buyer.party_id)
        finally:
            s1.close()
            s2.close()

        db_session.expire_all()
        accepted = db_session.query(QuoteResponse).filter(
            QuoteResponse.quote_request_id == request.id,
            QuoteResponse.is_accepted == True,  # noqa: E712
        ).all()
        assert len(accepted) == 1

    def test_stale_writer_gets_conflict(self, db_session: Session, session_factory, world):
        request = open_rfq(db_session, world)

        stale_session = session_factory()
        try:
            stale = stale_session.get(QuoteRequest, request.id)
            service.cancel(db_session, request.id, world.buyer.party_id)

            with pytest.raises(errors.ConflictError) as exc_info:
                with ledger.atomic(stale_session):
                    stale.message = "written from an outdated copy"

            assert exc_info.value.code == errors.CONCURRENT_MODIFICATION
        finally:
            stale_session.close()

    def test_storage_backstop(self, db_session: Session, world):
        """The partial unique index refuses a second accepted bid."""
        request = open_rfq(db_session, world)
        first = bid(db_session, request, world.supplier, "100")
        second = bid(db_session, request, world.provider, "90")

        first.is_accepted = True
        second.is_accepted = True
        with pytest.raises(IntegrityError):
            db_session.commit()
        db_session.rollback()

        first.is_accepted = True
        second.is_accepted = True
        with pytest.raises(errors.ConflictError):
            with ledger.atomic(db_session):
                pass

    def test_rejected_bid_cannot_be_accepted(self, db_session: Session, world):
        request = open_rfq(db_session, world)
        first = bid(db_session, request, world.supplier, "100")
        bid(db_session, request, world.provider, "90")
        service.reject_response(db_session, request.id, first.id, world.buyer.party_id)

        with pytest.raises(errors.InvalidStateError) as exc_info:
            service.accept_response(db_session, request.id, first.id, world.buyer.party_id)

        assert exc_info.value.code == errors.QUOTE_RESPONSE_REJECTED

    def test_lapsed_bid_cannot_be_accepted(self, db_session: Session, world):
        request = open_rfq(db_session, world)
        response = bid(db_session, request, world.supplier, valid_until=utcnow() + timedelta(days=1))
        response.valid_until = utcnow() - timedelta(minutes=1)
        db_session.commit()

        with pytest.raises(errors.InvalidStateError) as exc_info:
            service.accept_response(db_session, request.id, response.id, world.buyer.party_id)

        assert exc_info.value.code == errors.QUOTE_RESPONSE_LAPSED

    def test_bid_of_other_request(self, db_session: Session, world):
        request = open_rfq(db_session, world)
        other = open_rfq(db_session, world)
        bid(db_session, request, world.supplier)
        stray = bid(db_session, other, world.supplier)

        with pytest.raises(errors.NotFoundError):
            service.accept_response(db_session, request.id, stray.id, world.buyer.party_id)

    def test_only_requester_accepts(self, db_session: Session, world):
        request = open_rfq(db_session, world)
        response = bid(db_session, request, world.supplier)

        with pytest.raises(errors.ForbiddenError) as exc_info:
            service.accept_response(db_session, request.id, response.id, world.other_buyer.party_id)

        assert exc_info.value.code == errors.NOT_REQUESTING_PARTY


class TestExpiry:

    def test_overdue_request_reads_expired(self, db_session: Session, world):
        request = open_rfq(db_session, world, expires_at=utcnow() + timedelta(days=1))
        make_overdue(db_session, request)

        assert request.status == QuoteStatus.PENDING.value
        assert state_machine.effective_status(request) == QuoteStatus.EXPIRED
        listed = service.list_for_party(db_session, world.buyer.party_id, status_filter=QuoteStatus.EXPIRED)
        assert [r.id for r in listed] == [request.id]
        assert service.list_for_party(db_session, world.buyer.party_id, status_filter=QuoteStatus.PENDING) == []

    def test_accept_on_overdue_request_fails_and_persists_expired(self, db_session: Session, world):
        request = open_rfq(db_session, world, expires_at=utcnow() + timedelta(days=1))
        response = bid(db_session, request, world.supplier)
        make_overdue(db_session, request)

        with pytest.raises(errors.InvalidStateError) as exc_info:
            service.accept_response(db_session, request.id, response.id, world.buyer.party_id)

        assert exc_info.value.code == errors.QUOTE_REQUEST_EXPIRED
        db_session.refresh(request)
        assert request.status == QuoteStatus.EXPIRED.value
        db_session.refresh(response)
        assert response.is_accepted is False

    def test_submit_response_on_overdue_request(self, db_session: Session, world):
        request = open_rfq(db_session, world, expires_at=utcnow() + timedelta(days=1))
        make_overdue(db_session, request)

        with pytest.raises(errors.InvalidStateError) as exc_info:
            bid(db_session, request, world.supplier)

        assert exc_info.value.code == errors.QUOTE_REQUEST_EXPIRED
        assert db_session.query(QuoteResponse).count() == 0

    def test_sweep_persists_expired(self, db_session: Session, world):
        overdue = open_rfq(db_session, world, expires_at=utcnow() + timedelta(days=1))
        fresh = open_rfq(db_session, world, expires_at=utcnow() + timedelta(days=1))
        make_overdue(db_session, overdue)

        assert service.sweep_expired(db_session) == 1
        assert service.sweep_expired(db_session) == 0

        db_session.refresh(overdue)
        db_session.refresh(fresh)
        assert overdue.status == QuoteStatus.EXPIRED.value
        assert fresh.status == QuoteStatus.PENDING.value


class TestCancel:

    def test_cancel_is_final(self, db_session: Session, world):
        request = open_rfq(db_session, world)
        response = bid(db_session, request, world.supplier)

        cancelled = service.cancel(db_session, request.id, world.buyer.party_id)
        assert cancelled.status == QuoteStatus.CANCELLED.value
        assert cancelled.closed_at is not None

        with pytest.raises(errors.InvalidStateError):
            bid(db_session, request, world.provider)
        with pytest.raises(errors.InvalidStateError):
            service.accept_response(db_session, request.id, response.id, world.buyer.party_id)
        with pytest.raises(errors.InvalidStateError):
            service.submit_counter(
                db_session, request.id, response.id, world.buyer.party_id, Decimal("50"),
                acting_user_id=world.buyer.user_id,
            )
        with pytest.raises(errors.InvalidStateError):
            service.cancel(db_session, request.id, world.buyer.party_id)

    def test_only_requester_cancels(self, db_session: Session, world):
        request = open_rfq(db_session, world)

        with pytest.raises(errors.ForbiddenError):
            service.cancel(db_session, request.id, world.supplier.party_id)


class TestReject:

    def test_rejecting_only_bid_returns_to_pending(self, db_session: Session, world):
        request = open_rfq(db_session, world)
        response = bid(db_session, request, world.supplier, "300")

        updated = service.reject_response(
            db_session, request.id, response.id, world.buyer.party_id, comment="Over budget",
        )

        assert updated.status == QuoteStatus.PENDING.value
        db_session.refresh(response)
        assert response.rejected_at is not None
        assert response.rejection_comment == "Over budget"

        # The seller may bid again
        bid(db_session, request, world.supplier, "250")
        db_session.refresh(request)
        assert request.status == QuoteStatus.RESPONDED.value

    def test_next_bidder_is_bound_after_reopening(self, db_session: Session, world):
        request = open_rfq(db_session, world)
        response = bid(db_session, request, world.supplier, "300")

        reopened = service.reject_response(db_session, request.id, response.id, world.buyer.party_id)
        assert reopened.responding_party_id is None
        assert reopened.responded_at is None

        bid(db_session, request, world.provider, "240")
        db_session.refresh(request)
        assert request.responding_party_id == world.provider.party_id
        assert request.responded_at is not None

    def test_rejecting_one_of_two_stays_responded(self, db_session: Session, world):
        request = open_rfq(db_session, world)
        first = bid(db_session, request, world.supplier)
        bid(db_session, request, world.provider)

        updated = service.reject_response(db_session, request.id, first.id, world.buyer.party_id)

        assert updated.status == QuoteStatus.RESPONDED.value

    def test_reject_twice(self, db_session: Session, world):
        request = open_rfq(db_session, world)
        first = bid(db_session, request, world.supplier)
        bid(db_session, request, world.provider)
        service.reject_response(db_session, request.id, first.id, world.buyer.party_id)

        with pytest.raises(errors.InvalidStateError) as exc_info:
            service.reject_response(db_session, request.id, first.id, world.buyer.party_id)

        assert exc_info.value.code == errors.QUOTE_RESPONSE_REJECTED

    def test_reject_request_closes_all_bids(self, db_session: Session, world):
        request = open_rfq(db_session, world)
        first = bid(db_session, request, world.supplier)
        second = bid(db_session, request, world.provider)

        updated = service.reject_request(db_session, request.id, world.buyer.party_id, comment="Project shelved")

        assert updated.status == QuoteStatus.REJECTED.value
        db_session.refresh(first)
        db_session.refresh(second)
        assert first.rejected_at is not None
        assert second.rejected_at is not None
        with pytest.raises(errors.InvalidStateError):
            bid(db_session, request, world.supplier)

    def test_reject_request_needs_bids(self, db_session: Session, world):
        request = open_rfq(db_session, world)

        with pytest.raises(errors.InvalidStateError):
            service.reject_request(db_session, request.id, world.buyer.party_id)


class TestCounterOffers:

    def test_counter_does_not_change_status(self, db_session: Session, world):
        request = open_rfq(db_session, world)
        response = bid(db_session, request, world.supplier, "120", currency="EUR")

        counter = service.submit_counter(
            db_session, request.id, response.id, world.buyer.party_id, Decimal("100"),
            message="Can you meet 100?", acting_user_id=world.buyer.user_id,
        )

        assert counter.currency == "EUR"
        assert counter.quote_response_id == response.id
        db_session.refresh(request)
        assert request.status == QuoteStatus.RESPONDED.value

    def test_unlimited_rounds(self, db_session: Session, world):
        request = open_rfq(db_session, world)
        response = bid(db_session, request, world.supplier, "120")

        for price in ("100", "105", "110"):
            service.submit_counter(
                db_session, request.id, response.id, world.buyer.party_id, Decimal(price),
                acting_user_id=world.buyer.user_id,
            )

        counters = db_session.query(CounterOffer).filter(
            CounterOffer.quote_request_id == request.id,
        ).order_by(CounterOffer.id).all()
        assert [c.counter_price for c in counters] == [Decimal("100"), Decimal("105"), Decimal("110")]

    def test_counter_on_pending_request(self, db_session: Session, world):
        request = open_rfq(db_session, world, currency="GBP")

        counter = service.submit_counter(
            db_session, request.id, None, world.buyer.party_id, Decimal("75"),
            acting_user_id=world.buyer.user_id,
        )

        assert counter.quote_response_id is None
        assert counter.currency == "GBP"

    def test_counter_on_rejected_bid(self, db_session: Session, world):
        request = open_rfq(db_session, world)
        first = bid(db_session, request, world.supplier)
        bid(db_session, request, world.provider)
        service.reject_response(db_session, request.id, first.id, world.buyer.party_id)

        with pytest.raises(errors.InvalidStateError):
            service.submit_counter(
                db_session, request.id, first.id, world.buyer.party_id, Decimal("1"),
                acting_user_id=world.buyer.user_id,
            )

    def test_only_requester_counters(self, db_session: Session, world):
        request = open_rfq(db_session, world)
        response = bid(db_session, request, world.supplier)

        with pytest.raises(errors.ForbiddenError):
            service.submit_counter(
                db_session, request.id, response.id, world.supplier.party_id, Decimal("1"),
                acting_user_id=world.supplier.user_id,
            )

    def test_negative_counter_price(self, db_session: Session, world):
        request = open_rfq(db_session, world)

        with pytest.raises(errors.ValidationError):
            service.submit_counter(
                db_session, request.id, None, world.buyer.party_id, Decimal("-5"),
                acting_user_id=world.buyer.user_id,
            )


class TestDelete:

    def test_delete_pending_request(self, db_session: Session, world):
        request = open_rfq(db_session, world)

        deleted = service.delete_request(db_session, request.id, world.buyer.party_id)

        assert deleted.status == QuoteStatus.DELETED.value
        assert db_session.query(QuoteRequest).count() == 1
        assert service.list_for_party(db_session, world.buyer.party_id) == []
        with pytest.raises(errors.NotFoundError):
            service.get_request_for_party(db_session, request.id, world.supplier.party_id)

    def test_cannot_delete_after_bids(self, db_session: Session, world):
        request = open_rfq(db_session, world)
        response = bid(db_session, request, world.supplier)
        service.reject_response(db_session, request.id, response.id, world.buyer.party_id)

        with pytest.raises(errors.InvalidStateError) as exc_info:
            service.delete_request(db_session, request.id, world.buyer.party_id)

        assert exc_info.value.code == errors.RESPONSES_EXIST


class TestReads:

    def test_visibility(self, db_session: Session, world):
        open_request = open_rfq(db_session, world)
        targeted = open_rfq(db_session, world, target_party_id=world.supplier.party_id)

        def visible(actor):
            return {r.id for r in service.list_for_party(db_session, actor.party_id)}

        assert visible(world.buyer) == {open_request.id, targeted.id}
        assert visible(world.other_buyer) == set()
        assert visible(world.supplier) == {open_request.id, targeted.id}
        assert visible(world.other_supplier) == {open_request.id}

        with pytest.raises(errors.ForbiddenError):
            service.get_request_for_party(db_session, targeted.id, world.other_supplier.party_id)
        with pytest.raises(errors.ForbiddenError):
            service.get_request_for_party(db_session, open_request.id, world.other_buyer.party_id)

    def test_list_newest_first(self, db_session: Session, world):
        first = open_rfq(db_session, world)
        second = open_rfq(db_session, world)

        listed = service.list_for_party(db_session, world.buyer.party_id)

        assert [r.id for r in listed] == [second.id, first.id]

    def test_statistics_use_derived_status(self, db_session: Session, world):
        open_rfq(db_session, world)
        responded = open_rfq(db_session, world)
        bid(db_session, responded, world.supplier)
        cancelled = open_rfq(db_session, world)
        service.cancel(db_session, cancelled.id, world.buyer.party_id)
        overdue = open_rfq(db_session, world, expires_at=utcnow() + timedelta(days=1))
        make_overdue(db_session, overdue)

        stats = service.quote_statistics(db_session, world.buyer.party_id)

        assert stats == {
            "pending": 1,
            "responded": 1,
            "accepted": 0,
            "rejected": 0,
            "expired": 1,
            "cancelled": 1,
            "total": 4,
        }
