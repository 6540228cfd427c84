"""
Quote negotiation API routes - RFQs, bids and counter-offers.
"""
from typing import List, Optional
from datetime import datetime
from decimal import Decimal

from fastapi import APIRouter, Depends, Query, status
from pydantic import BaseModel, ConfigDict
from sqlalchemy.orm import Session

from app.db.session import get_db
from app.db.models import QuoteStatus
from app.core.rbac import get_current_party_context
from app.services import negotiation
from app.services.negotiation import views
from app.services.negotiation.state_machine import effective_status

router = APIRouter(prefix="/api/quotes", tags=["Quotes"])


# ============= SCHEMAS =============

class QuoteRequestCreate(BaseModel):
    product_id: Optional[int] = None
    title: Optional[str] = None
    description: Optional[str] = None
    category: Optional[str] = None
    quantity: Optional[Decimal] = None
    unit: Optional[str] = None
    target_price: Optional[Decimal] = None
    currency: Optional[str] = None
    message: Optional[str] = None
    expires_at: Optional[datetime] = None
    target_party_id: Optional[int] = None  # None = open to all sellers


class QuoteResponseCreate(BaseModel):
    price: Decimal
    currency: Optional[str] = None  # Defaults to the request currency
    quantity: Optional[Decimal] = None
    unit: Optional[str] = None
    valid_until: Optional[datetime] = None
    message: Optional[str] = None
    terms: Optional[str] = None


class RejectBody(BaseModel):
    comment: Optional[str] = None


class CounterOfferCreate(BaseModel):
    quote_response_id: Optional[int] = None
    counter_price: Decimal
    currency: Optional[str] = None
    counter_message: Optional[str] = None


class QuoteResponseOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    quote_request_id: int
    responding_party_id: int
    responded_by_user_id: int
    price: Decimal
    currency: str
    quantity: Optional[Decimal] = None
    unit: Optional[str] = None
    valid_until: Optional[datetime] = None
    message: Optional[str] = None
    terms: Optional[str] = None
    is_accepted: bool
    accepted_at: Optional[datetime] = None
    rejected_at: Optional[datetime] = None
    rejection_comment: Optional[str] = None
    responded_at: Optional[datetime] = None


class CounterOfferOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    quote_request_id: int
    quote_response_id: Optional[int] = None
    counter_price: Decimal
    currency: str
    counter_message: Optional[str] = None
    created_by_user_id: int
    created_at: Optional[datetime] = None


class EffectivePriceOut(BaseModel):
    amount: Decimal
    currency: str
    is_special: bool
    savings_percent: Optional[Decimal] = None


class QuoteRequestSummary(BaseModel):
    id: int
    requesting_party_id: int
    target_party_id: Optional[int]
    product_id: Optional[int]
    title: Optional[str]
    quantity: Optional[Decimal]
    unit: Optional[str]
    currency: str
    status: str
    expires_at: Optional[datetime]
    created_at: Optional[datetime]
    response_count: int


class QuoteRequestDetail(BaseModel):
    id: int
    requesting_party_id: int
    target_party_id: Optional[int]
    responding_party_id: Optional[int]
    product_id: Optional[int]
    title: Optional[str]
    description: Optional[str]
    category: Optional[str]
    quantity: Optional[Decimal]
    unit: Optional[str]
    target_price: Optional[Decimal]
    currency: str
    message: Optional[str]
    status: str
    expires_at: Optional[datetime]
    requested_by_user_id: int
    responded_at: Optional[datetime]
    closed_at: Optional[datetime]
    created_at: Optional[datetime]
    updated_at: Optional[datetime]
    responses: List[QuoteResponseOut]
    counter_offers: List[CounterOfferOut]
    lowest_open_bid_id: Optional[int]
    catalog_price: Optional[EffectivePriceOut]


# ============= ROUTES =============

@router.post("", response_model=QuoteRequestDetail, status_code=status.HTTP_201_CREATED)
async def create_quote_request(
    body: QuoteRequestCreate,
    party_context: dict = Depends(get_current_party_context),
    db: Session = Depends(get_db)
):
    """Submit a new quote request (companies only)."""
    request = negotiation.submit_request(
        db,
        requesting_party_id=party_context["party_id"],
        subject=negotiation.RequestSubject(
            product_id=body.product_id,
            title=body.title,
            description=body.description,
            category=body.category,
        ),
        terms=negotiation.RequestTerms(
            quantity=body.quantity,
            unit=body.unit,
            target_price=body.target_price,
            currency=body.currency,
            message=body.message,
            expires_at=body.expires_at,
            target_party_id=body.target_party_id,
        ),
        acting_user_id=party_context["user_id"],
    )
    return views.request_view(db, request, party_context["party_id"])


@router.get("", response_model=List[QuoteRequestSummary])
async def list_quote_requests(
    status_filter: Optional[QuoteStatus] = Query(None, alias="status", description="Filter by status"),
    limit: int = Query(50, ge=1, le=100),
    offset: int = Query(0, ge=0),
    party_context: dict = Depends(get_current_party_context),
    db: Session = Depends(get_db)
):
    """List quote requests visible to the calling party."""
    requests = negotiation.list_for_party(
        db,
        party_context["party_id"],
        status_filter=status_filter,
        limit=limit,
        offset=offset,
    )
    return [
        {
            "id": r.id,
            "requesting_party_id": r.requesting_party_id,
            "target_party_id": r.target_party_id,
            "product_id": r.product_id,
            "title": r.title,
            "quantity": r.quantity,
            "unit": r.unit,
            "currency": r.currency,
            "status": effective_status(r).value,
            "expires_at": r.expires_at,
            "created_at": r.created_at,
            "response_count": len(r.responses),
        }
        for r in requests
    ]


@router.get("/stats")
async def get_quote_statistics(
    party_context: dict = Depends(get_current_party_context),
    db: Session = Depends(get_db)
):
    """Quote request counts per status for the calling party."""
    return negotiation.quote_statistics(db, party_context["party_id"])


@router.get("/{request_id}", response_model=QuoteRequestDetail)
async def get_quote_request(
    request_id: int,
    party_context: dict = Depends(get_current_party_context),
    db: Session = Depends(get_db)
):
    """Get a quote request with its bids and counter-offers."""
    request = negotiation.get_request_for_party(db, request_id, party_context["party_id"])
    return views.request_view(db, request, party_context["party_id"])


@router.post(
    "/{request_id}/responses",
    response_model=QuoteResponseOut,
    status_code=status.HTTP_201_CREATED,
)
async def submit_quote_response(
    request_id: int,
    body: QuoteResponseCreate,
    party_context: dict = Depends(get_current_party_context),
    db: Session = Depends(get_db)
):
    """Submit a bid (suppliers and service providers)."""
    return negotiation.submit_response(
        db,
        request_id,
        party_context["party_id"],
        negotiation.Offer(
            price=body.price,
            currency=body.currency,
            quantity=body.quantity,
            unit=body.unit,
            valid_until=body.valid_until,
            message=body.message,
            terms=body.terms,
        ),
        acting_user_id=party_context["user_id"],
    )


@router.post("/{request_id}/responses/{response_id}/accept", response_model=QuoteRequestDetail)
async def accept_quote_response(
    request_id: int,
    response_id: int,
    party_context: dict = Depends(get_current_party_context),
    db: Session = Depends(get_db)
):
    """Accept one bid; the others are foreclosed."""
    request = negotiation.accept_response(
        db, request_id, response_id, party_context["party_id"],
        acting_user_id=party_context["user_id"],
    )
    return views.request_view(db, request, party_context["party_id"])


@router.post("/{request_id}/responses/{response_id}/reject", response_model=QuoteRequestDetail)
async def reject_quote_response(
    request_id: int,
    response_id: int,
    body: Optional[RejectBody] = None,
    party_context: dict = Depends(get_current_party_context),
    db: Session = Depends(get_db)
):
    request = negotiation.reject_response(
        db, request_id, response_id, party_context["party_id"],
        comment=body.comment if body else None,
        acting_user_id=party_context["user_id"],
    )
    return views.request_view(db, request, party_context["party_id"])


@router.post("/{request_id}/reject", response_model=QuoteRequestDetail)
async def reject_quote_request(
    request_id: int,
    body: Optional[RejectBody] = None,
    party_context: dict = Depends(get_current_party_context),
    db: Session = Depends(get_db)
):
    """Reject all bids and close the request."""
    request = negotiation.reject_request(
        db, request_id, party_context["party_id"],
        comment=body.comment if body else None,
        acting_user_id=party_context["user_id"],
    )
    return views.request_view(db, request, party_context["party_id"])


@router.post(
    "/{request_id}/counter-offers",
    response_model=CounterOfferOut,
    status_code=status.HTTP_201_CREATED,
)
async def create_counter_offer(
    request_id: int,
    body: CounterOfferCreate,
    party_context: dict = Depends(get_current_party_context),
    db: Session = Depends(get_db)
):
    return negotiation.submit_counter(
        db,
        request_id,
        body.quote_response_id,
        party_context["party_id"],
        body.counter_price,
        message=body.counter_message,
        acting_user_id=party_context["user_id"],
        currency=body.currency,
    )


@router.post("/{request_id}/cancel", response_model=QuoteRequestDetail)
async def cancel_quote_request(
    request_id: int,
    party_context: dict = Depends(get_current_party_context),
    db: Session = Depends(get_db)
):
    request = negotiation.cancel(
        db, request_id, party_context["party_id"],
        acting_user_id=party_context["user_id"],
    )
    return views.request_view(db, request, party_context["party_id"])


@router.delete("/{request_id}", response_model=QuoteRequestDetail)
async def delete_quote_request(
    request_id: int,
    party_context: dict = Depends(get_current_party_context),
    db: Session = Depends(get_db)
):
    """Soft delete a pending request that has no bids."""
    request = negotiation.delete_request(
        db, request_id, party_context["party_id"],
        acting_user_id=party_context["user_id"],
    )
    return views.request_view(db, request, party_context["party_id"])
