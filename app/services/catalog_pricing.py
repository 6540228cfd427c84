"""
Catalog pricing service: the write boundary for default and private prices
and the read path that feeds price resolution.
"""
from datetime import datetime
from typing import List, Optional

from sqlalchemy import and_, desc, or_
from sqlalchemy.orm import Session

from app.core import errors
from app.core.clock import ensure_utc, utcnow
from app.core.config import settings
from app.core.logging import audit_logger, get_logger
from app.core.rbac import PartyType, is_seller
from app.db.models import (
    DefaultPrice, Party, PriceAuditLog, PriceType, PrivatePrice, Product,
)
from app.services import validators
from app.services.price_resolution import (
    Discount, EffectivePrice, FixedPrice, Money, PriceOverride, resolve_price,
)

logger = get_logger(__name__)


def _get_party(db: Session, party_id: int) -> Party:
    party = db.query(Party).filter(Party.id == party_id, Party.is_active == True).first()  # noqa: E712
    if not party:
        raise errors.NotFoundError("Party not found or inactive", errors.PARTY_NOT_FOUND)
    return party


def _get_owned_product(db: Session, product_id: int, supplier_party_id: int) -> Product:
    """Load a product and check the caller is the seller that lists it."""
    product = db.query(Product).filter(Product.id == product_id).first()
    if not product:
        raise errors.NotFoundError("Product not found", errors.PRODUCT_NOT_FOUND)

    supplier = _get_party(db, supplier_party_id)
    if not is_seller(supplier.party_type):
        raise errors.ForbiddenError(
            "Only sellers can manage catalog prices",
            errors.NOT_A_SELLER,
            guard="seller_only",
        )
    if product.supplier_id != supplier.id:
        raise errors.ForbiddenError(
            "Not authorized to manage prices for this product",
            errors.NOT_PRODUCT_OWNER,
            guard="product_owner_only",
        )
    return product


def _effective_filter(model, now: datetime):
    return and_(
        model.is_active == True,  # noqa: E712
        or_(model.effective_from == None, model.effective_from <= now),  # noqa: E711
        or_(model.effective_until == None, model.effective_until >= now),  # noqa: E711
    )


def active_default_price(db: Session, product_id: int, now: Optional[datetime] = None) -> Optional[DefaultPrice]:
    now = ensure_utc(now) or utcnow()
    return db.query(DefaultPrice).filter(
        DefaultPrice.product_id == product_id,
        _effective_filter(DefaultPrice, now),
    ).order_by(desc(DefaultPrice.effective_from)).first()


def active_private_price(
    db: Session,
    product_id: int,
    party_id: int,
    now: Optional[datetime] = None,
) -> Optional[PrivatePrice]:
    now = ensure_utc(now) or utcnow()
    return db.query(PrivatePrice).filter(
        PrivatePrice.product_id == product_id,
        PrivatePrice.party_id == party_id,
        _effective_filter(PrivatePrice, now),
    ).order_by(desc(PrivatePrice.effective_from)).first()


def override_from_row(private_price: Optional[PrivatePrice]) -> Optional[PriceOverride]:
    """Map a stored private price to its tagged override variant."""
    if private_price is None:
        return None
    if private_price.fixed_price is not None:
        return FixedPrice(amount=private_price.fixed_price, currency=private_price.currency)
    return Discount(percent=private_price.discount_percentage)


def get_effective_price(
    db: Session,
    product_id: int,
    viewer_party_id: Optional[int],
    now: Optional[datetime] = None,
) -> EffectivePrice:
    """
    Price of ``product_id`` as seen by ``viewer_party_id``.

    Anonymous viewers (``None``) always get the default price.
    """
    product = db.query(Product).filter(Product.id == product_id, Product.is_active == True).first()  # noqa: E712
    if not product:
        raise errors.NotFoundError("Product not found", errors.PRODUCT_NOT_FOUND)

    default = active_default_price(db, product_id, now)
    if not default:
        raise errors.NotFoundError("No price available for this product", errors.PRICE_NOT_FOUND)

    private = None
    if viewer_party_id is not None:
        private = active_private_price(db, product_id, viewer_party_id, now)

    return resolve_price(
        Money(amount=default.amount, currency=default.currency),
        override_from_row(private),
    )


def set_default_price(
    db: Session,
    product_id: int,
    supplier_party_id: int,
    amount,
    currency: Optional[str] = None,
    effective_from: Optional[datetime] = None,
    effective_until: Optional[datetime] = None,
    acting_user_id: Optional[int] = None,
) -> DefaultPrice:
    """Replace the product's active default price."""
    product = _get_owned_product(db, product_id, supplier_party_id)
    new_amount = validators.validate_amount(amount, "amount")
    currency = validators.validate_currency(currency or settings.DEFAULT_CURRENCY)
    validators.validate_window(effective_from, effective_until)

    try:
        current = db.query(DefaultPrice).filter(
            DefaultPrice.product_id == product.id,
            DefaultPrice.is_active == True,  # noqa: E712
        ).first()
        old_amount = current.amount if current else None
        if current:
            current.is_active = False
            db.flush()

        default_price = DefaultPrice(
            product_id=product.id,
            amount=new_amount,
            currency=currency,
            effective_from=ensure_utc(effective_from) or utcnow(),
            effective_until=ensure_utc(effective_until),
            is_active=True,
        )
        db.add(default_price)
        db.add(PriceAuditLog(
            product_id=product.id,
            price_type=PriceType.DEFAULT.value,
            old_amount=old_amount,
            new_amount=new_amount,
            currency=currency,
            changed_by=acting_user_id,
            change_reason=f"Default price {'updated' if current else 'created'}",
        ))
        db.commit()
    except Exception:
        db.rollback()
        raise

    db.refresh(default_price)
    audit_logger.log(
        action="set_default_price",
        user_id=acting_user_id,
        party_id=supplier_party_id,
        entity_type="product",
        entity_id=product.id,
        details={"amount": str(new_amount), "currency": currency},
    )
    return default_price


def _resolve_override_input(fixed_price, discount_percentage):
    """Exactly one of fixed price / discount must be given."""
    has_price = fixed_price is not None
    has_discount = discount_percentage is not None
    if has_price == has_discount:
        raise errors.ValidationError(
            "Either fixed_price or discount_percentage must be provided, but not both",
            code=errors.PRICE_OVERRIDE_AMBIGUOUS,
        )
    if has_price:
        return validators.validate_amount(fixed_price, "fixed_price"), None
    return None, validators.validate_discount(discount_percentage)


def create_private_price(
    db: Session,
    product_id: int,
    supplier_party_id: int,
    counterpart_party_id: int,
    fixed_price=None,
    discount_percentage=None,
    currency: Optional[str] = None,
    effective_from: Optional[datetime] = None,
    effective_until: Optional[datetime] = None,
    notes: Optional[str] = None,
    acting_user_id: Optional[int] = None,
) -> PrivatePrice:
    """
    Create the private price for a (product, counterpart) pair.

    An active entry for the same pair is deactivated first, so a pair never
    has two live overrides.
    """
    product = _get_owned_product(db, product_id, supplier_party_id)
    counterpart = _get_party(db, counterpart_party_id)
    if counterpart.party_type != PartyType.COMPANY.value:
        raise errors.NotFoundError("Company not found", errors.PARTY_NOT_FOUND)

    fixed, discount = _resolve_override_input(fixed_price, discount_percentage)
    currency = validators.validate_currency(currency or settings.DEFAULT_CURRENCY)
    validators.validate_window(effective_from, effective_until)

    try:
        existing = db.query(PrivatePrice).filter(
            PrivatePrice.product_id == product.id,
            PrivatePrice.party_id == counterpart.id,
            PrivatePrice.is_active == True,  # noqa: E712
        ).first()
        if existing:
            existing.is_active = False
            db.flush()

        private_price = PrivatePrice(
            product_id=product.id,
            party_id=counterpart.id,
            fixed_price=fixed,
            discount_percentage=discount,
            currency=currency,
            effective_from=ensure_utc(effective_from) or utcnow(),
            effective_until=ensure_utc(effective_until),
            notes=notes,
            is_active=True,
        )
        db.add(private_price)

        reason = f"Private price {'updated' if existing else 'created'} for {counterpart.name}"
        if discount is not None:
            reason += f" ({discount}% discount)"
        db.add(PriceAuditLog(
            product_id=product.id,
            price_type=PriceType.PRIVATE.value,
            party_id=counterpart.id,
            old_amount=existing.fixed_price if existing else None,
            new_amount=fixed,
            old_discount=existing.discount_percentage if existing else None,
            new_discount=discount,
            currency=currency,
            changed_by=acting_user_id,
            change_reason=reason,
        ))
        db.commit()
    except Exception:
        db.rollback()
        raise

    db.refresh(private_price)
    audit_logger.log(
        action="create_private_price",
        user_id=acting_user_id,
        party_id=supplier_party_id,
        entity_type="private_price",
        entity_id=private_price.id,
        details={"product_id": product.id, "counterpart_party_id": counterpart.id, "replaced": bool(existing)},
    )
    return private_price


def _get_owned_private_price(db: Session, private_price_id: int, supplier_party_id: int) -> PrivatePrice:
    private_price = db.query(PrivatePrice).filter(PrivatePrice.id == private_price_id).first()
    if not private_price:
        raise errors.NotFoundError("Private price not found", errors.PRICE_NOT_FOUND)
    _get_owned_product(db, private_price.product_id, supplier_party_id)
    return private_price


def update_private_price(
    db: Session,
    private_price_id: int,
    supplier_party_id: int,
    fixed_price=None,
    discount_percentage=None,
    currency: Optional[str] = None,
    effective_from: Optional[datetime] = None,
    effective_until: Optional[datetime] = None,
    notes: Optional[str] = None,
    acting_user_id: Optional[int] = None,
) -> PrivatePrice:
    """
    Amend a private price in place.

    Setting one override kind clears the other; passing neither keeps the
    current pricing method.
    """
    private_price = _get_owned_private_price(db, private_price_id, supplier_party_id)
    if not private_price.is_active:
        raise errors.NotFoundError("Private price not found", errors.PRICE_NOT_FOUND)

    old_amount = private_price.fixed_price
    old_discount = private_price.discount_percentage

    if fixed_price is not None and discount_percentage is not None:
        raise errors.ValidationError(
            "Either fixed_price or discount_percentage must be provided, but not both",
            code=errors.PRICE_OVERRIDE_AMBIGUOUS,
        )
    if fixed_price is not None:
        private_price.fixed_price = validators.validate_amount(fixed_price, "fixed_price")
        private_price.discount_percentage = None
    elif discount_percentage is not None:
        private_price.discount_percentage = validators.validate_discount(discount_percentage)
        private_price.fixed_price = None

    if currency is not None:
        private_price.currency = validators.validate_currency(currency)
    if effective_from is not None:
        private_price.effective_from = ensure_utc(effective_from)
    if effective_until is not None:
        private_price.effective_until = ensure_utc(effective_until)
    validators.validate_window(private_price.effective_from, private_price.effective_until)
    if notes is not None:
        private_price.notes = notes

    try:
        changed = (
            private_price.fixed_price != old_amount
            or private_price.discount_percentage != old_discount
        )
        if changed:
            db.add(PriceAuditLog(
                product_id=private_price.product_id,
                price_type=PriceType.PRIVATE.value,
                party_id=private_price.party_id,
                old_amount=old_amount,
                new_amount=private_price.fixed_price,
                old_discount=old_discount,
                new_discount=private_price.discount_percentage,
                currency=private_price.currency,
                changed_by=acting_user_id,
                change_reason=notes or "Private price updated",
            ))
        db.commit()
    except Exception:
        db.rollback()
        raise

    db.refresh(private_price)
    audit_logger.log(
        action="update_private_price",
        user_id=acting_user_id,
        party_id=supplier_party_id,
        entity_type="private_price",
        entity_id=private_price.id,
        details={"product_id": private_price.product_id, "pricing_changed": changed},
    )
    return private_price


def delete_private_price(
    db: Session,
    private_price_id: int,
    supplier_party_id: int,
    acting_user_id: Optional[int] = None,
) -> PrivatePrice:
    """Soft delete: the row stays for the audit trail."""
    private_price = _get_owned_private_price(db, private_price_id, supplier_party_id)
    private_price.is_active = False
    db.commit()
    db.refresh(private_price)

    audit_logger.log(
        action="delete_private_price",
        user_id=acting_user_id,
        party_id=supplier_party_id,
        entity_type="private_price",
        entity_id=private_price.id,
    )
    return private_price


def list_private_prices(db: Session, product_id: int, supplier_party_id: int) -> List[PrivatePrice]:
    product = _get_owned_product(db, product_id, supplier_party_id)
    return db.query(PrivatePrice).filter(
        PrivatePrice.product_id == product.id,
        PrivatePrice.is_active == True,  # noqa: E712
    ).order_by(desc(PrivatePrice.effective_from)).all()


def price_history(
    db: Session,
    product_id: int,
    supplier_party_id: int,
    limit: Optional[int] = None,
) -> List[PriceAuditLog]:
    product = _get_owned_product(db, product_id, supplier_party_id)
    return db.query(PriceAuditLog).filter(
        PriceAuditLog.product_id == product.id,
    ).order_by(
        desc(PriceAuditLog.changed_at), desc(PriceAuditLog.id)
    ).limit(limit or settings.PRICE_HISTORY_LIMIT).all()
