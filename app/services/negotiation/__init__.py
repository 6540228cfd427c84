"""
RFQ negotiation: state machine, ledger and service operations.
"""
from app.services.negotiation.service import (
    Offer,
    RequestSubject,
    RequestTerms,
    accept_response,
    cancel,
    delete_request,
    get_request_for_party,
    list_for_party,
    quote_statistics,
    reject_request,
    reject_response,
    submit_counter,
    submit_request,
    submit_response,
    sweep_expired,
)
from app.services.negotiation.state_machine import effective_status

__all__ = [
    "Offer",
    "RequestSubject",
    "RequestTerms",
    "accept_response",
    "cancel",
    "delete_request",
    "effective_status",
    "get_request_for_party",
    "list_for_party",
    "quote_statistics",
    "reject_request",
    "reject_response",
    "submit_counter",
    "submit_request",
    "submit_response",
    "sweep_expired",
]
