"""
Negotiation service: the public operations on quote requests.

Each mutation is one atomic transaction: load and lock the request, run
the state machine guards, apply the transition, write the audit row,
commit. Errors from the state machine pass through unchanged.
"""
from collections import Counter
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, List, Optional

from sqlalchemy.orm import Session

from app.core import errors
from app.core.clock import ensure_utc, has_passed, utcnow
from app.core.config import settings
from app.core.logging import audit_logger, get_logger
from app.db.models import CounterOffer, Product, QuoteRequest, QuoteResponse, QuoteStatus
from app.core.rbac import is_seller
from app.services import validators
from app.services.negotiation import ledger, state_machine
from app.services.negotiation.state_machine import Transition

logger = get_logger(__name__)


@dataclass
class RequestSubject:
    """What is being priced: a catalog product or a free-form need."""
    product_id: Optional[int] = None
    title: Optional[str] = None
    description: Optional[str] = None
    category: Optional[str] = None


@dataclass
class RequestTerms:
    quantity: Optional[object] = None
    unit: Optional[str] = None
    target_price: Optional[object] = None
    currency: Optional[str] = None
    message: Optional[str] = None
    expires_at: Optional[datetime] = None
    target_party_id: Optional[int] = None


@dataclass
class Offer:
    """A seller's bid."""
    price: object
    currency: Optional[str] = None
    quantity: Optional[object] = None
    unit: Optional[str] = None
    valid_until: Optional[datetime] = None
    message: Optional[str] = None
    terms: Optional[str] = None


def _money(value) -> Optional[str]:
    return None if value is None else str(value)


def _log_transition(action: str, request: QuoteRequest, party_id: int, user_id: Optional[int], details: Optional[dict] = None):
    audit_logger.log(
        action=action,
        user_id=user_id,
        party_id=party_id,
        entity_type="quote_request",
        entity_id=request.id,
        details=details,
    )


def _load_for_transition(db: Session, request_id: int, now: datetime) -> QuoteRequest:
    """
    Lock the request row. An open request found past its deadline is
    persisted as expired before the expiry error is raised.
    """
    request = ledger.get_request(db, request_id, for_update=True)
    if state_machine.is_overdue(request, now):
        state_machine.apply_expire(request, now)
        ledger.record_audit(db, "expire_quote_request", request, details={"observed_at": now.isoformat()})
        db.commit()
        logger.info(
            f"Quote request {request.id} expired",
            extra={"quote_request_id": request.id, "status": QuoteStatus.EXPIRED.value},
        )
        raise state_machine.expired_error(request)
    return request


# ============= MUTATIONS =============

def submit_request(
    db: Session,
    requesting_party_id: int,
    subject: RequestSubject,
    terms: RequestTerms,
    acting_user_id: int,
) -> QuoteRequest:
    """Create a quote request in ``pending``."""
    now = utcnow()
    party = ledger.get_party(db, requesting_party_id)
    state_machine.require_buyer(party)
    ledger.check_user(db, acting_user_id, party, required=True)

    quantity = validators.validate_quantity(terms.quantity)
    target_price = validators.validate_optional_amount(terms.target_price, "target_price")
    currency = validators.validate_currency(terms.currency or settings.DEFAULT_CURRENCY)
    expires_at = ensure_utc(terms.expires_at)
    if expires_at is not None and has_passed(expires_at, now):
        raise errors.ValidationError("expires_at must be in the future", field="expires_at")

    target_party_id = terms.target_party_id
    unit = terms.unit
    title = subject.title

    if subject.product_id is not None:
        product = db.query(Product).filter(
            Product.id == subject.product_id,
            Product.is_active == True,  # noqa: E712
        ).first()
        if not product:
            raise errors.NotFoundError("Product not found", errors.PRODUCT_NOT_FOUND)
        if target_party_id is not None and target_party_id != product.supplier_id:
            raise errors.ValidationError(
                "A product quote request is addressed to the product's supplier",
                field="target_party_id",
            )
        target_party_id = product.supplier_id
        unit = unit or product.unit
        title = title or product.name
    else:
        if not subject.title:
            raise errors.ValidationError(
                "A general quote request needs a title",
                field="title",
            )
        if target_party_id is not None:
            target = ledger.get_party(db, target_party_id)
            if not is_seller(target.party_type):
                raise errors.ValidationError(
                    "Quote requests can only be addressed to suppliers or service providers",
                    code=errors.NOT_A_SELLER,
                    field="target_party_id",
                )

    with ledger.atomic(db):
        request = QuoteRequest(
            requesting_party_id=party.id,
            target_party_id=target_party_id,
            product_id=subject.product_id,
            title=title,
            description=subject.description,
            category=subject.category,
            quantity=quantity,
            unit=unit,
            target_price=target_price,
            currency=currency,
            message=terms.message,
            status=QuoteStatus.PENDING.value,
            expires_at=expires_at,
            requested_by_user_id=acting_user_id,
        )
        db.add(request)
        db.flush()
        ledger.record_audit(
            db, "submit_quote_request", request,
            party_id=party.id, user_id=acting_user_id,
            details={"product_id": subject.product_id, "target_party_id": target_party_id},
        )

    db.refresh(request)
    _log_transition("submit_quote_request", request, party.id, acting_user_id)
    return request


def submit_response(
    db: Session,
    request_id: int,
    seller_party_id: int,
    offer: Offer,
    acting_user_id: int,
) -> QuoteResponse:
    """Record a seller's bid; the request becomes ``responded``."""
    now = utcnow()
    seller = ledger.get_party(db, seller_party_id)
    ledger.check_user(db, acting_user_id, seller, required=True)

    price = validators.validate_amount(offer.price, "price")
    quantity = validators.validate_quantity(offer.quantity)
    valid_until = ensure_utc(offer.valid_until)
    if valid_until is not None and has_passed(valid_until, now):
        raise errors.ValidationError("valid_until must be in the future", field="valid_until")

    with ledger.atomic(db):
        request = _load_for_transition(db, request_id, now)
        state_machine.ensure_allowed(request, Transition.SUBMIT_RESPONSE, now)
        state_machine.require_bidder(request, seller)
        currency = validators.validate_currency(offer.currency or request.currency)

        response = QuoteResponse(
            responding_party_id=seller.id,
            responded_by_user_id=acting_user_id,
            price=price,
            currency=currency,
            quantity=quantity,
            unit=offer.unit or request.unit,
            valid_until=valid_until,
            message=offer.message,
            terms=offer.terms,
            is_accepted=False,
        )
        state_machine.apply_response(request, response, now)
        db.add(response)
        db.flush()
        ledger.record_audit(
            db, "submit_quote_response", request,
            party_id=seller.id, user_id=acting_user_id,
            details={"quote_response_id": response.id, "price": _money(price), "currency": currency},
        )

    db.refresh(response)
    _log_transition(
        "submit_quote_response", request, seller.id, acting_user_id,
        {"quote_response_id": response.id},
    )
    return response


def accept_response(
    db: Session,
    request_id: int,
    response_id: int,
    acting_party_id: int,
    acting_user_id: Optional[int] = None,
) -> QuoteRequest:
    """
    Accept one bid. Sibling bids are foreclosed.

    A request that already has an accepted bid fails with ConflictError;
    the partial unique index on accepted responses backs this up for
    writers that race past the check.
    """
    now = utcnow()
    party = ledger.get_party(db, acting_party_id)
    ledger.check_user(db, acting_user_id, party)

    with ledger.atomic(db):
        request = _load_for_transition(db, request_id, now)
        state_machine.require_requester(request, party)

        accepted = ledger.accepted_response_for(db, request.id)
        if accepted is not None:
            raise errors.ConflictError(
                "Another response has already been accepted for this request",
                errors.RESPONSE_ALREADY_ACCEPTED,
                guard="single_accepted",
                details={"quote_request_id": request.id, "accepted_response_id": accepted.id},
            )

        state_machine.ensure_allowed(request, Transition.ACCEPT_RESPONSE, now)
        response = ledger.get_response(db, response_id)
        state_machine.require_acceptable(request, response, now)

        foreclosed = state_machine.apply_accept(request, response, now)
        ledger.record_audit(
            db, "accept_quote_response", request,
            party_id=party.id, user_id=acting_user_id,
            details={
                "quote_response_id": response.id,
                "foreclosed_response_ids": [r.id for r in foreclosed],
            },
        )

    db.refresh(request)
    _log_transition(
        "accept_quote_response", request, party.id, acting_user_id,
        {"quote_response_id": response_id, "foreclosed": len(foreclosed)},
    )
    return request


def reject_response(
    db: Session,
    request_id: int,
    response_id: int,
    acting_party_id: int,
    comment: Optional[str] = None,
    acting_user_id: Optional[int] = None,
) -> QuoteRequest:
    """
    Close one bid. With no open bid left the request returns to
    ``pending`` so sellers may bid again.
    """
    now = utcnow()
    party = ledger.get_party(db, acting_party_id)
    ledger.check_user(db, acting_user_id, party)

    with ledger.atomic(db):
        request = _load_for_transition(db, request_id, now)
        state_machine.require_requester(request, party)
        state_machine.ensure_allowed(request, Transition.REJECT_RESPONSE, now)
        response = ledger.get_response(db, response_id)
        state_machine.require_open_response(request, response)

        new_status = state_machine.apply_reject_response(request, response, comment, now)
        ledger.record_audit(
            db, "reject_quote_response", request,
            party_id=party.id, user_id=acting_user_id,
            details={"quote_response_id": response.id, "status": new_status.value, "comment": comment},
        )

    db.refresh(request)
    _log_transition("reject_quote_response", request, party.id, acting_user_id, {"quote_response_id": response_id})
    return request


def reject_request(
    db: Session,
    request_id: int,
    acting_party_id: int,
    comment: Optional[str] = None,
    acting_user_id: Optional[int] = None,
) -> QuoteRequest:
    """Reject every bid and close the request."""
    now = utcnow()
    party = ledger.get_party(db, acting_party_id)
    ledger.check_user(db, acting_user_id, party)

    with ledger.atomic(db):
        request = _load_for_transition(db, request_id, now)
        state_machine.require_requester(request, party)
        state_machine.ensure_allowed(request, Transition.REJECT_REQUEST, now)

        closed = state_machine.apply_reject_request(request, comment, now)
        ledger.record_audit(
            db, "reject_quote_request", request,
            party_id=party.id, user_id=acting_user_id,
            details={"closed_response_ids": [r.id for r in closed], "comment": comment},
        )

    db.refresh(request)
    _log_transition("reject_quote_request", request, party.id, acting_user_id)
    return request


def submit_counter(
    db: Session,
    request_id: int,
    response_id: Optional[int],
    acting_party_id: int,
    counter_price,
    message: Optional[str] = None,
    acting_user_id: Optional[int] = None,
    currency: Optional[str] = None,
) -> CounterOffer:
    """
    Append a counter-offer, on one bid or on the request as a whole.

    Rounds are unlimited and never change the request status.
    """
    now = utcnow()
    party = ledger.get_party(db, acting_party_id)
    user = ledger.check_user(db, acting_user_id, party, required=True)
    price = validators.validate_amount(counter_price, "counter_price")

    with ledger.atomic(db):
        request = _load_for_transition(db, request_id, now)
        state_machine.require_requester(request, party)
        state_machine.ensure_allowed(request, Transition.SUBMIT_COUNTER, now)

        response = None
        if response_id is not None:
            response = ledger.get_response(db, response_id)
            state_machine.require_open_response(request, response)

        currency = validators.validate_currency(
            currency or (response.currency if response else request.currency)
        )
        counter = CounterOffer(
            quote_request=request,
            quote_response=response,
            counter_price=price,
            currency=currency,
            counter_message=message,
            created_by_user_id=user.id,
        )
        db.add(counter)
        db.flush()
        ledger.record_audit(
            db, "submit_counter_offer", request,
            party_id=party.id, user_id=user.id,
            details={
                "counter_offer_id": counter.id,
                "quote_response_id": response_id,
                "counter_price": _money(price),
                "currency": currency,
            },
        )

    db.refresh(counter)
    _log_transition("submit_counter_offer", request, party.id, user.id, {"counter_offer_id": counter.id})
    return counter


def cancel(
    db: Session,
    request_id: int,
    acting_party_id: int,
    acting_user_id: Optional[int] = None,
) -> QuoteRequest:
    now = utcnow()
    party = ledger.get_party(db, acting_party_id)
    ledger.check_user(db, acting_user_id, party)

    with ledger.atomic(db):
        request = _load_for_transition(db, request_id, now)
        state_machine.require_requester(request, party)
        state_machine.ensure_allowed(request, Transition.CANCEL, now)
        state_machine.apply_cancel(request, now)
        ledger.record_audit(db, "cancel_quote_request", request, party_id=party.id, user_id=acting_user_id)

    db.refresh(request)
    _log_transition("cancel_quote_request", request, party.id, acting_user_id)
    return request


def delete_request(
    db: Session,
    request_id: int,
    acting_party_id: int,
    acting_user_id: Optional[int] = None,
) -> QuoteRequest:
    """Soft delete a pending request nobody has bid on."""
    now = utcnow()
    party = ledger.get_party(db, acting_party_id)
    ledger.check_user(db, acting_user_id, party)

    with ledger.atomic(db):
        request = _load_for_transition(db, request_id, now)
        state_machine.require_requester(request, party)
        state_machine.ensure_allowed(request, Transition.DELETE, now)
        state_machine.apply_delete(request, now)
        ledger.record_audit(db, "delete_quote_request", request, party_id=party.id, user_id=acting_user_id)

    db.refresh(request)
    _log_transition("delete_quote_request", request, party.id, acting_user_id)
    return request


def sweep_expired(db: Session, now: Optional[datetime] = None) -> int:
    """Persist ``expired`` on overdue open requests. Returns how many changed."""
    now = ensure_utc(now) or utcnow()
    with ledger.atomic(db):
        overdue = ledger.overdue_requests(db, now)
        for request in overdue:
            state_machine.apply_expire(request, now)
            ledger.record_audit(db, "expire_quote_request", request, details={"observed_at": now.isoformat()})

    if overdue:
        logger.info(f"Expiry sweep marked {len(overdue)} quote request(s) expired")
    return len(overdue)


# ============= READS =============

def get_request_for_party(db: Session, request_id: int, party_id: int) -> QuoteRequest:
    party = ledger.get_party(db, party_id)
    request = ledger.get_request(db, request_id)
    if request.status == QuoteStatus.DELETED.value and request.requesting_party_id != party.id:
        raise errors.NotFoundError(
            "Quote request not found",
            errors.QUOTE_REQUEST_NOT_FOUND,
            details={"quote_request_id": request_id},
        )
    if not ledger.can_view(db, request, party):
        raise errors.ForbiddenError(
            "Not authorized to view this quote request",
            errors.ACCESS_DENIED,
            guard="visibility",
        )
    return request


def list_for_party(
    db: Session,
    party_id: int,
    status_filter: Optional[QuoteStatus] = None,
    now: Optional[datetime] = None,
    limit: Optional[int] = None,
    offset: int = 0,
) -> List[QuoteRequest]:
    """Requests visible to the party, filtered on the derived status."""
    party = ledger.get_party(db, party_id)
    if status_filter is not None:
        status_filter = QuoteStatus(status_filter)
    return ledger.requests_for_party(
        db, party, status_filter, ensure_utc(now) or utcnow(), limit=limit, offset=offset,
    )


def quote_statistics(db: Session, party_id: int, now: Optional[datetime] = None) -> Dict[str, int]:
    """Counts of visible requests per derived status, plus the total."""
    now = ensure_utc(now) or utcnow()
    requests = list_for_party(db, party_id, now=now)
    counts = Counter(state_machine.effective_status(r, now).value for r in requests)

    stats = {status.value: counts.get(status.value, 0) for status in QuoteStatus if status != QuoteStatus.DELETED}
    stats["total"] = len(requests)
    return stats
