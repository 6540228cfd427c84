"""
Caller-visible projections of quote requests.

Pricing shows up here only: bids ranked by price and the buyer's own
catalog price for a product request. Neither feeds a transition.
"""
from datetime import datetime
from typing import Optional

from sqlalchemy.orm import Session

from app.core import errors
from app.core.clock import utcnow
from app.db.models import CounterOffer, QuoteRequest, QuoteResponse
from app.services import catalog_pricing
from app.services.negotiation import state_machine
from app.services.price_resolution import Money, rank_offers, round_money


def _bid_price(response: QuoteResponse) -> Money:
    return Money(amount=response.price, currency=response.currency)


def response_view(response: QuoteResponse) -> dict:
    return {
        "id": response.id,
        "quote_request_id": response.quote_request_id,
        "responding_party_id": response.responding_party_id,
        "responded_by_user_id": response.responded_by_user_id,
        "price": round_money(response.price),
        "currency": response.currency,
        "quantity": response.quantity,
        "unit": response.unit,
        "valid_until": response.valid_until,
        "message": response.message,
        "terms": response.terms,
        "is_accepted": response.is_accepted,
        "accepted_at": response.accepted_at,
        "rejected_at": response.rejected_at,
        "rejection_comment": response.rejection_comment,
        "responded_at": response.responded_at,
    }


def counter_offer_view(counter: CounterOffer) -> dict:
    return {
        "id": counter.id,
        "quote_request_id": counter.quote_request_id,
        "quote_response_id": counter.quote_response_id,
        "counter_price": round_money(counter.counter_price),
        "currency": counter.currency,
        "counter_message": counter.counter_message,
        "created_by_user_id": counter.created_by_user_id,
        "created_at": counter.created_at,
    }


def request_view(
    db: Session,
    request: QuoteRequest,
    viewer_party_id: int,
    now: Optional[datetime] = None,
) -> dict:
    """
    Project a request for one viewer.

    The requester sees every bid, lowest price first. A seller only sees
    its own bids, the counter-offers made on them and, when it may bid,
    the counter-offers addressed to the request as a whole. The lowest
    open bid is picked among bids in the request currency.
    """
    now = now or utcnow()
    is_requester = request.requesting_party_id == viewer_party_id

    responses = list(request.responses)
    counters = list(request.counter_offers)
    if not is_requester:
        responses = [r for r in responses if r.responding_party_id == viewer_party_id]
        own_ids = {r.id for r in responses}
        may_bid = request.target_party_id in (None, viewer_party_id)
        counters = [
            c for c in counters
            if c.quote_response_id in own_ids or (c.quote_response_id is None and may_bid)
        ]

    ranked = rank_offers(responses, _bid_price)
    open_bids = [
        r for r in ranked
        if r.rejected_at is None and not r.is_accepted and r.currency == request.currency
    ]

    view = {
        "id": request.id,
        "requesting_party_id": request.requesting_party_id,
        "target_party_id": request.target_party_id,
        "responding_party_id": request.responding_party_id,
        "product_id": request.product_id,
        "title": request.title,
        "description": request.description,
        "category": request.category,
        "quantity": request.quantity,
        "unit": request.unit,
        "target_price": None if request.target_price is None else round_money(request.target_price),
        "currency": request.currency,
        "message": request.message,
        "status": state_machine.effective_status(request, now).value,
        "expires_at": request.expires_at,
        "requested_by_user_id": request.requested_by_user_id,
        "responded_at": request.responded_at,
        "closed_at": request.closed_at,
        "created_at": request.created_at,
        "updated_at": request.updated_at,
        "responses": [response_view(r) for r in ranked],
        "counter_offers": [counter_offer_view(c) for c in counters],
        "lowest_open_bid_id": open_bids[0].id if open_bids else None,
        "catalog_price": None,
    }

    if is_requester and request.product_id is not None:
        try:
            effective = catalog_pricing.get_effective_price(db, request.product_id, viewer_party_id, now)
            view["catalog_price"] = effective.to_dict()
        except errors.NotFoundError:
            # Product delisted or never priced
            view["catalog_price"] = None

    return view
