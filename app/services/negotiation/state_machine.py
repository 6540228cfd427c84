"""
Negotiation state machine.

Validates a requested transition against the request's current status (as
derived from the clock) and the caller's party, then applies it to the
ledger records. Nothing here touches the session; persisting is the
service's job.

    pending -> responded -> accepted | rejected
    pending | responded -> cancelled
    pending -> deleted              (no responses yet)
    any non-terminal -> expired     (derived from expires_at)
"""
import enum
from datetime import datetime
from typing import Dict, FrozenSet, List, Optional

from app.core import errors
from app.core.clock import has_passed, utcnow
from app.core.rbac import PartyType, is_seller
from app.db.models import Party, QuoteRequest, QuoteResponse, QuoteStatus


OPEN_STATUSES: FrozenSet[QuoteStatus] = frozenset({QuoteStatus.PENDING, QuoteStatus.RESPONDED})
TERMINAL_STATUSES: FrozenSet[QuoteStatus] = frozenset({
    QuoteStatus.ACCEPTED,
    QuoteStatus.REJECTED,
    QuoteStatus.EXPIRED,
    QuoteStatus.CANCELLED,
    QuoteStatus.DELETED,
})


class Transition(str, enum.Enum):
    SUBMIT_RESPONSE = "submit_response"
    ACCEPT_RESPONSE = "accept_response"
    REJECT_RESPONSE = "reject_response"
    REJECT_REQUEST = "reject_request"
    SUBMIT_COUNTER = "submit_counter"
    CANCEL = "cancel"
    DELETE = "delete"


ALLOWED_FROM: Dict[Transition, FrozenSet[QuoteStatus]] = {
    Transition.SUBMIT_RESPONSE: OPEN_STATUSES,
    Transition.ACCEPT_RESPONSE: frozenset({QuoteStatus.RESPONDED}),
    Transition.REJECT_RESPONSE: frozenset({QuoteStatus.RESPONDED}),
    Transition.REJECT_REQUEST: frozenset({QuoteStatus.RESPONDED}),
    Transition.SUBMIT_COUNTER: OPEN_STATUSES,
    Transition.CANCEL: OPEN_STATUSES,
    Transition.DELETE: frozenset({QuoteStatus.PENDING}),
}


# ============= STATUS PROJECTION =============

def stored_status(request: QuoteRequest) -> QuoteStatus:
    return QuoteStatus(request.status)


def is_overdue(request: QuoteRequest, now: Optional[datetime] = None) -> bool:
    """Open request whose deadline has passed but whose row still says otherwise."""
    return stored_status(request) in OPEN_STATUSES and has_passed(request.expires_at, now)


def effective_status(request: QuoteRequest, now: Optional[datetime] = None) -> QuoteStatus:
    """
    The status every read path reports.

    The stored value is a cache: once ``expires_at`` has passed an open
    request reads as expired, whatever the row says.
    """
    if is_overdue(request, now):
        return QuoteStatus.EXPIRED
    return stored_status(request)


def open_responses(request: QuoteRequest) -> List[QuoteResponse]:
    """Bids that are neither rejected nor accepted."""
    return [r for r in request.responses if r.rejected_at is None and not r.is_accepted]


# ============= GUARDS =============

def expired_error(request: QuoteRequest) -> errors.InvalidStateError:
    return errors.InvalidStateError(
        "Quote request has expired",
        errors.QUOTE_REQUEST_EXPIRED,
        guard="not_expired",
        details={"quote_request_id": request.id, "expires_at": request.expires_at},
    )


def ensure_allowed(request: QuoteRequest, transition: Transition, now: Optional[datetime] = None) -> None:
    """Raise InvalidStateError unless ``transition`` is legal from the derived status."""
    status = effective_status(request, now)
    if status == QuoteStatus.EXPIRED:
        raise expired_error(request)
    if status not in ALLOWED_FROM[transition]:
        raise errors.InvalidStateError(
            f"Cannot {transition.value.replace('_', ' ')} a {status.value} quote request",
            errors.ILLEGAL_TRANSITION,
            guard="status",
            details={
                "quote_request_id": request.id,
                "status": status.value,
                "transition": transition.value,
            },
        )


def require_buyer(party: Party) -> None:
    if party.party_type != PartyType.COMPANY.value:
        raise errors.ForbiddenError(
            "Only companies can request quotes",
            errors.NOT_A_BUYER,
            guard="company_only",
        )


def require_requester(request: QuoteRequest, party: Party) -> None:
    if request.requesting_party_id != party.id:
        raise errors.ForbiddenError(
            "Only the requesting party can perform this action",
            errors.NOT_REQUESTING_PARTY,
            guard="requester_only",
            details={"quote_request_id": request.id},
        )


def require_bidder(request: QuoteRequest, party: Party) -> None:
    """Sellers bid; a targeted request only takes bids from its target."""
    if not is_seller(party.party_type):
        raise errors.ForbiddenError(
            "Only suppliers and service providers can respond to quote requests",
            errors.NOT_A_SELLER,
            guard="seller_only",
        )
    if request.requesting_party_id == party.id:
        raise errors.ForbiddenError(
            "A party cannot respond to its own quote request",
            errors.ACCESS_DENIED,
            guard="no_self_bid",
        )
    if request.target_party_id is not None and request.target_party_id != party.id:
        raise errors.ForbiddenError(
            "This quote request is addressed to another seller",
            errors.NOT_TARGET_SELLER,
            guard="target_seller_only",
            details={"quote_request_id": request.id},
        )


def require_open_response(request: QuoteRequest, response: QuoteResponse) -> None:
    """The bid belongs to this request and has not been rejected."""
    if response.quote_request_id != request.id:
        raise errors.NotFoundError(
            "Quote response not found for this request",
            errors.QUOTE_RESPONSE_NOT_FOUND,
            details={"quote_request_id": request.id, "quote_response_id": response.id},
        )
    if response.rejected_at is not None:
        raise errors.InvalidStateError(
            "Quote response has been rejected",
            errors.QUOTE_RESPONSE_REJECTED,
            guard="response_not_rejected",
            details={"quote_response_id": response.id},
        )


def require_acceptable(request: QuoteRequest, response: QuoteResponse, now: Optional[datetime] = None) -> None:
    require_open_response(request, response)
    if has_passed(response.valid_until, now):
        raise errors.InvalidStateError(
            "Quote response is no longer valid",
            errors.QUOTE_RESPONSE_LAPSED,
            guard="response_valid",
            details={"quote_response_id": response.id, "valid_until": response.valid_until},
        )


# ============= EFFECTS =============

def apply_response(request: QuoteRequest, response: QuoteResponse, now: Optional[datetime] = None) -> None:
    now = now or utcnow()
    response.quote_request = request
    response.responded_at = now
    if request.responding_party_id is None:
        request.responding_party_id = response.responding_party_id
        request.responded_at = now
    request.status = QuoteStatus.RESPONDED.value


def apply_accept(request: QuoteRequest, response: QuoteResponse, now: Optional[datetime] = None) -> List[QuoteResponse]:
    """Accept ``response``; returns the sibling bids this forecloses."""
    now = now or utcnow()
    foreclosed = [r for r in open_responses(request) if r.id != response.id]

    response.is_accepted = True
    response.accepted_at = now
    request.responding_party_id = response.responding_party_id
    request.status = QuoteStatus.ACCEPTED.value
    request.closed_at = now
    return foreclosed


def apply_reject_response(
    request: QuoteRequest,
    response: QuoteResponse,
    comment: Optional[str] = None,
    now: Optional[datetime] = None,
) -> QuoteStatus:
    """
    Close one bid. The request goes back to pending once no open bid is
    left, and the next bidder is bound as the responding party.
    """
    response.rejected_at = now or utcnow()
    response.rejection_comment = comment

    new_status = QuoteStatus.RESPONDED if open_responses(request) else QuoteStatus.PENDING
    if new_status == QuoteStatus.PENDING:
        request.responding_party_id = None
        request.responded_at = None
    request.status = new_status.value
    return new_status


def apply_reject_request(request: QuoteRequest, comment: Optional[str] = None, now: Optional[datetime] = None) -> List[QuoteResponse]:
    """Reject the request as a whole, closing every open bid."""
    now = now or utcnow()
    closed = open_responses(request)
    for response in closed:
        response.rejected_at = now
        response.rejection_comment = comment

    request.status = QuoteStatus.REJECTED.value
    request.closed_at = now
    return closed


def apply_cancel(request: QuoteRequest, now: Optional[datetime] = None) -> None:
    request.status = QuoteStatus.CANCELLED.value
    request.closed_at = now or utcnow()


def apply_delete(request: QuoteRequest, now: Optional[datetime] = None) -> None:
    if request.responses:
        raise errors.InvalidStateError(
            "Cannot delete a quote request that has responses",
            errors.RESPONSES_EXIST,
            guard="no_responses",
            details={"quote_request_id": request.id, "responses": len(request.responses)},
        )
    request.status = QuoteStatus.DELETED.value
    request.closed_at = now or utcnow()


def apply_expire(request: QuoteRequest, now: Optional[datetime] = None) -> None:
    request.status = QuoteStatus.EXPIRED.value
    request.closed_at = now or utcnow()
