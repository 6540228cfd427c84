"""
Negotiation ledger: lookups, visibility rules and the transaction boundary
over quote requests, responses and counter-offers.
"""
from contextlib import contextmanager
from datetime import datetime
from typing import List, Optional

from sqlalchemy import and_, desc, exists, or_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from app.core import errors
from app.core.clock import utcnow
from app.core.logging import get_logger
from app.core.rbac import is_seller
from app.db.models import AuditLog, Party, QuoteRequest, QuoteResponse, QuoteStatus, User
from app.services.negotiation.state_machine import OPEN_STATUSES

logger = get_logger(__name__)

_OPEN_VALUES = [s.value for s in OPEN_STATUSES]


@contextmanager
def atomic(db: Session):
    """
    One read-modify-write transaction.

    Commits on success and rolls back on any error. Lost races surface from
    the database as IntegrityError (partial unique index) or StaleDataError
    (version check) and are reported as ConflictError; nothing is retried.
    """
    try:
        yield db
        db.commit()
    except (IntegrityError, StaleDataError) as e:
        db.rollback()
        logger.warning(f"Concurrent modification detected: {e.__class__.__name__}")
        raise errors.ConflictError(
            "The quote request was modified concurrently; re-fetch it before retrying",
            errors.CONCURRENT_MODIFICATION,
            guard="single_writer",
        ) from e
    except Exception:
        db.rollback()
        raise


# ============= LOOKUPS =============

def get_party(db: Session, party_id: int) -> Party:
    party = db.query(Party).filter(Party.id == party_id, Party.is_active == True).first()  # noqa: E712
    if not party:
        raise errors.NotFoundError("Party not found or inactive", errors.PARTY_NOT_FOUND)
    return party


def check_user(db: Session, user_id: Optional[int], party: Party, required: bool = False) -> Optional[User]:
    """The acting user, if given, must be an active member of ``party``."""
    if user_id is None:
        if required:
            raise errors.ValidationError("The acting user is required", field="acting_user_id")
        return None
    user = db.query(User).filter(User.id == user_id, User.is_active == True).first()  # noqa: E712
    if not user or user.party_id != party.id:
        raise errors.ForbiddenError(
            "User does not act for this party",
            errors.ACCESS_DENIED,
            guard="user_in_party",
        )
    return user


def get_request(db: Session, request_id: int, for_update: bool = False) -> QuoteRequest:
    query = db.query(QuoteRequest).filter(QuoteRequest.id == request_id)
    if for_update:
        # Row lock where supported; always re-read the row over the identity map
        query = query.with_for_update().populate_existing()
    request = query.first()
    if not request:
        raise errors.NotFoundError(
            "Quote request not found",
            errors.QUOTE_REQUEST_NOT_FOUND,
            details={"quote_request_id": request_id},
        )
    return request


def get_response(db: Session, response_id: int) -> QuoteResponse:
    response = db.query(QuoteResponse).filter(QuoteResponse.id == response_id).first()
    if not response:
        raise errors.NotFoundError(
            "Quote response not found",
            errors.QUOTE_RESPONSE_NOT_FOUND,
            details={"quote_response_id": response_id},
        )
    return response


def accepted_response_for(db: Session, request_id: int) -> Optional[QuoteResponse]:
    """Asks the database, not the loaded collection, which bid won."""
    return db.query(QuoteResponse).filter(
        QuoteResponse.quote_request_id == request_id,
        QuoteResponse.is_accepted == True,  # noqa: E712
    ).first()


def has_bid_from(db: Session, request_id: int, party_id: int) -> bool:
    return db.query(
        exists().where(and_(
            QuoteResponse.quote_request_id == request_id,
            QuoteResponse.responding_party_id == party_id,
        ))
    ).scalar()


# ============= VISIBILITY =============

def can_view(db: Session, request: QuoteRequest, party: Party) -> bool:
    """
    Requesters see their own requests. Sellers see requests addressed to
    them, requests they bid on and open (untargeted) requests.
    """
    if request.requesting_party_id == party.id:
        return True
    if not is_seller(party.party_type) or request.status == QuoteStatus.DELETED.value:
        return False
    if request.target_party_id is None or request.target_party_id == party.id:
        return True
    return has_bid_from(db, request.id, party.id)


def visible_to(party: Party):
    """SQL counterpart of ``can_view``."""
    if not is_seller(party.party_type):
        return QuoteRequest.requesting_party_id == party.id

    bid_on = exists().where(and_(
        QuoteResponse.quote_request_id == QuoteRequest.id,
        QuoteResponse.responding_party_id == party.id,
    ))
    return and_(
        QuoteRequest.status != QuoteStatus.DELETED.value,
        or_(
            QuoteRequest.target_party_id == party.id,
            QuoteRequest.target_party_id == None,  # noqa: E711
            bid_on,
        ),
    )


def derived_status_is(status: QuoteStatus, now: datetime):
    """SQL filter matching requests whose derived status is ``status``."""
    overdue = and_(
        QuoteRequest.status.in_(_OPEN_VALUES),
        QuoteRequest.expires_at != None,  # noqa: E711
        QuoteRequest.expires_at <= now,
    )
    if status == QuoteStatus.EXPIRED:
        return or_(QuoteRequest.status == QuoteStatus.EXPIRED.value, overdue)
    if status in OPEN_STATUSES:
        return and_(
            QuoteRequest.status == status.value,
            or_(QuoteRequest.expires_at == None, QuoteRequest.expires_at > now),  # noqa: E711
        )
    return QuoteRequest.status == status.value


def requests_for_party(
    db: Session,
    party: Party,
    status: Optional[QuoteStatus] = None,
    now: Optional[datetime] = None,
    limit: Optional[int] = None,
    offset: int = 0,
) -> List[QuoteRequest]:
    now = now or utcnow()
    query = db.query(QuoteRequest).filter(visible_to(party))

    if status is not None:
        query = query.filter(derived_status_is(status, now))
    elif not is_seller(party.party_type):
        # Soft-deleted requests only show up when asked for
        query = query.filter(QuoteRequest.status != QuoteStatus.DELETED.value)

    query = query.order_by(desc(QuoteRequest.created_at), desc(QuoteRequest.id))
    if offset:
        query = query.offset(offset)
    if limit:
        query = query.limit(limit)
    return query.all()


def overdue_requests(db: Session, now: Optional[datetime] = None) -> List[QuoteRequest]:
    now = now or utcnow()
    return db.query(QuoteRequest).filter(
        QuoteRequest.status.in_(_OPEN_VALUES),
        QuoteRequest.expires_at != None,  # noqa: E711
        QuoteRequest.expires_at <= now,
    ).order_by(QuoteRequest.id).all()


# ============= AUDIT =============

def record_audit(
    db: Session,
    action: str,
    request: QuoteRequest,
    party_id: Optional[int] = None,
    user_id: Optional[int] = None,
    details: Optional[dict] = None,
) -> AuditLog:
    """Add the audit row to the current transaction."""
    entry = AuditLog(
        user_id=user_id,
        party_id=party_id,
        action=action,
        entity_type="quote_request",
        entity_id=request.id,
        details=details or {},
    )
    db.add(entry)
    return entry
