"""
Catalog price API routes - default prices, private prices and effective price lookup.
"""
from typing import List, Optional
from datetime import datetime
from decimal import Decimal

from fastapi import APIRouter, Depends, Query, status
from pydantic import BaseModel, ConfigDict
from sqlalchemy.orm import Session

from app.db.session import get_db
from app.core.rbac import get_current_party_context, require_seller
from app.services import catalog_pricing

router = APIRouter(prefix="/api/prices", tags=["Prices"])


# ============= SCHEMAS =============

class DefaultPriceSet(BaseModel):
    amount: Decimal
    currency: Optional[str] = None
    effective_from: Optional[datetime] = None
    effective_until: Optional[datetime] = None


class PrivatePriceCreate(BaseModel):
    party_id: int
    fixed_price: Optional[Decimal] = None
    discount_percentage: Optional[Decimal] = None
    currency: Optional[str] = None
    effective_from: Optional[datetime] = None
    effective_until: Optional[datetime] = None
    notes: Optional[str] = None


class PrivatePriceUpdate(BaseModel):
    fixed_price: Optional[Decimal] = None
    discount_percentage: Optional[Decimal] = None
    currency: Optional[str] = None
    effective_from: Optional[datetime] = None
    effective_until: Optional[datetime] = None
    notes: Optional[str] = None


class DefaultPriceOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    product_id: int
    amount: Decimal
    currency: str
    effective_from: Optional[datetime] = None
    effective_until: Optional[datetime] = None
    is_active: bool


class PrivatePriceOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    product_id: int
    party_id: int
    fixed_price: Optional[Decimal] = None
    discount_percentage: Optional[Decimal] = None
    currency: str
    effective_from: Optional[datetime] = None
    effective_until: Optional[datetime] = None
    notes: Optional[str] = None
    is_active: bool


class PriceHistoryOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    product_id: int
    price_type: str
    party_id: Optional[int] = None
    old_amount: Optional[Decimal] = None
    new_amount: Optional[Decimal] = None
    old_discount: Optional[Decimal] = None
    new_discount: Optional[Decimal] = None
    currency: Optional[str] = None
    changed_by: Optional[int] = None
    change_reason: Optional[str] = None
    changed_at: Optional[datetime] = None


class EffectivePriceOut(BaseModel):
    product_id: int
    amount: Decimal
    currency: str
    is_special: bool
    savings_percent: Optional[Decimal] = None


# ============= ROUTES =============

@router.get("/products/{product_id}/effective", response_model=EffectivePriceOut)
async def get_effective_price(
    product_id: int,
    party_context: dict = Depends(get_current_party_context),
    db: Session = Depends(get_db)
):
    """Price of a product as seen by the calling party."""
    effective = catalog_pricing.get_effective_price(db, product_id, party_context["party_id"])
    return {"product_id": product_id, **effective.to_dict()}


@router.put("/products/{product_id}/default", response_model=DefaultPriceOut)
async def set_default_price(
    product_id: int,
    body: DefaultPriceSet,
    party_context: dict = Depends(require_seller),
    db: Session = Depends(get_db)
):
    """Replace the product's public default price."""
    return catalog_pricing.set_default_price(
        db,
        product_id,
        party_context["party_id"],
        body.amount,
        currency=body.currency,
        effective_from=body.effective_from,
        effective_until=body.effective_until,
        acting_user_id=party_context["user_id"],
    )


@router.get("/products/{product_id}/private", response_model=List[PrivatePriceOut])
async def list_private_prices(
    product_id: int,
    party_context: dict = Depends(require_seller),
    db: Session = Depends(get_db)
):
    return catalog_pricing.list_private_prices(db, product_id, party_context["party_id"])


@router.post(
    "/products/{product_id}/private",
    response_model=PrivatePriceOut,
    status_code=status.HTTP_201_CREATED,
)
async def create_private_price(
    product_id: int,
    body: PrivatePriceCreate,
    party_context: dict = Depends(require_seller),
    db: Session = Depends(get_db)
):
    """
    Create a private price for one company.

    Replaces any active private price for the same product and company.
    """
    return catalog_pricing.create_private_price(
        db,
        product_id,
        party_context["party_id"],
        body.party_id,
        fixed_price=body.fixed_price,
        discount_percentage=body.discount_percentage,
        currency=body.currency,
        effective_from=body.effective_from,
        effective_until=body.effective_until,
        notes=body.notes,
        acting_user_id=party_context["user_id"],
    )


@router.patch("/private/{private_price_id}", response_model=PrivatePriceOut)
async def update_private_price(
    private_price_id: int,
    body: PrivatePriceUpdate,
    party_context: dict = Depends(require_seller),
    db: Session = Depends(get_db)
):
    return catalog_pricing.update_private_price(
        db,
        private_price_id,
        party_context["party_id"],
        fixed_price=body.fixed_price,
        discount_percentage=body.discount_percentage,
        currency=body.currency,
        effective_from=body.effective_from,
        effective_until=body.effective_until,
        notes=body.notes,
        acting_user_id=party_context["user_id"],
    )


@router.delete("/private/{private_price_id}", response_model=PrivatePriceOut)
async def delete_private_price(
    private_price_id: int,
    party_context: dict = Depends(require_seller),
    db: Session = Depends(get_db)
):
    """Deactivate a private price. The row is kept for the audit trail."""
    return catalog_pricing.delete_private_price(
        db, private_price_id, party_context["party_id"],
        acting_user_id=party_context["user_id"],
    )


@router.get("/products/{product_id}/history", response_model=List[PriceHistoryOut])
async def get_price_history(
    product_id: int,
    limit: int = Query(100, ge=1, le=500),
    party_context: dict = Depends(require_seller),
    db: Session = Depends(get_db)
):
    """Price change history for a product, newest first."""
    return catalog_pricing.price_history(db, product_id, party_context["party_id"], limit=limit)
