import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import ROUND_HALF_UP, Decimal

from sqlalchemy import or_, select, update
from sqlalchemy.orm import Session

from app.errors import ValidationError
from app.models.coupon import Coupon, DiscountType
from app.observability import log_event, metrics_store

_CENT = Decimal("0.01")


@dataclass(frozen=True)
class CouponQuote:
    coupon: Coupon
    subtotal: Decimal
    discount: Decimal

    @property
    def total(self) -> Decimal:
        return self.subtotal - self.discount


def normalize_code(code: str) -> str:
    return code.strip().upper()


def _as_utc(value: datetime) -> datetime:
    # SQLite hands back naive datetimes even for timezone-aware columns
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def get_active_coupon(db: Session, code: str) -> Coupon:
    normalized = normalize_code(code)
    if not normalized:
        raise ValidationError("Coupon code is required", code="INVALID_COUPON")
    coupon = db.scalar(
        select(Coupon).where(Coupon.code == normalized, Coupon.is_active.is_(True))
    )
    if coupon is None:
        raise ValidationError("Invalid or expired coupon", code="INVALID_COUPON")
    return coupon


def ensure_coupon_applies(coupon: Coupon, subtotal: Decimal, now: datetime | None = None) -> None:
    now = now or datetime.now(timezone.utc)
    if not coupon.is_active:
        raise ValidationError("Invalid or expired coupon", code="INVALID_COUPON")
    if coupon.expires_at is not None and _as_utc(coupon.expires_at) < now:
        raise ValidationError("Coupon has expired", code="COUPON_EXPIRED")
    if coupon.max_uses is not None and coupon.current_uses >= coupon.max_uses:
        raise ValidationError("Coupon usage limit reached", code="COUPON_EXHAUSTED")
    if coupon.min_order_amount is not None and subtotal < coupon.min_order_amount:
        raise ValidationError(
            f"Minimum order of KES {coupon.min_order_amount:,.2f} required",
            code="COUPON_MINIMUM_NOT_MET",
        )


def compute_discount(coupon: Coupon, subtotal: Decimal) -> Decimal:
    if coupon.discount_type == DiscountType.PERCENTAGE:
        discount = subtotal * Decimal(coupon.discount_value) / Decimal("100")
    else:
        discount = Decimal(coupon.discount_value)
    discount = min(max(discount, Decimal("0")), subtotal)
    return discount.quantize(_CENT, rounding=ROUND_HALF_UP)


def quote_coupon(db: Session, code: str, subtotal: Decimal) -> CouponQuote:
    coupon = get_active_coupon(db, code)
    ensure_coupon_applies(coupon, subtotal)
    discount = compute_discount(coupon, subtotal)
    return CouponQuote(coupon=coupon, subtotal=subtotal, discount=discount)


def redeem_coupon(db: Session, coupon_id: uuid.UUID) -> None:
    """Atomically consume one use of the coupon inside the caller's transaction.

    The usage bound is re-checked by the UPDATE itself, so concurrent redemptions can never
    push current_uses past max_uses. The caller owns commit and rollback.
    """
    result = db.execute(
        update(Coupon)
        .where(
            Coupon.id == coupon_id,
            Coupon.is_active.is_(True),
            or_(Coupon.max_uses.is_(None), Coupon.current_uses < Coupon.max_uses),
        )
        .values(current_uses=Coupon.current_uses + 1)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        metrics_store.increment("coupon_redemption_rejected_total")
        log_event(f"coupon_redemption_rejected:{coupon_id}")
        raise ValidationError("Coupon usage limit reached", code="COUPON_EXHAUSTED")
    metrics_store.increment("coupon_redeemed_total")
