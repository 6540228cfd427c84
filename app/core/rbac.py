"""
Caller context resolution and party-type access checks.
"""
from enum import Enum
from typing import FrozenSet
from fastapi import HTTPException, status, Depends
from fastapi.security import HTTPAuthorizationCredentials

from app.core.security import decode_token, security


class PartyType(str, Enum):
    COMPANY = "company"
    SUPPLIER = "supplier"
    SERVICE_PROVIDER = "service_provider"


SELLER_TYPES: FrozenSet[PartyType] = frozenset({PartyType.SUPPLIER, PartyType.SERVICE_PROVIDER})


def is_seller(party_type) -> bool:
    """True for suppliers and service providers (enum or raw string)."""
    try:
        return PartyType(party_type) in SELLER_TYPES
    except ValueError:
        return False


def _context_from_payload(payload: dict) -> dict:
    user_id_raw = payload.get("sub") or payload.get("user_id")
    party_id_raw = payload.get("party_id")
    if user_id_raw is None or party_id_raw is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid token: missing user or party identifier",
        )
    try:
        party_type = PartyType(payload.get("party_type"))
    except ValueError:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid token: unknown party type",
        )

    user_id = int(user_id_raw)
    return {
        "sub": str(user_id),
        "user_id": user_id,
        "email": payload.get("email"),
        "party_id": int(party_id_raw),
        "party_type": party_type,
    }


async def get_current_party_context(
    credentials: HTTPAuthorizationCredentials = Depends(security)
) -> dict:
    """Resolve the calling user and the party they act for."""
    return _context_from_payload(decode_token(credentials.credentials))


class PartyTypeChecker:
    """Dependency restricting a route to a set of party types."""

    def __init__(self, allowed: FrozenSet[PartyType]):
        self.allowed = allowed

    async def __call__(
        self,
        credentials: HTTPAuthorizationCredentials = Depends(security)
    ) -> dict:
        context = _context_from_payload(decode_token(credentials.credentials))

        if context["party_type"] not in self.allowed:
            allowed = ", ".join(sorted(p.value for p in self.allowed))
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail=f"Insufficient permissions. Required party type: {allowed}",
            )

        return context


# Convenience dependency for seller-only routes
require_seller = PartyTypeChecker(SELLER_TYPES)
