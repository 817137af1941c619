"""
Storefront: coupon ledger

``evaluate`` answers "how much would this coupon take off right now" without
touching any counter. ``commit_usage`` is called from inside the settlement
transaction and bumps the global and per-user counters with conditional
statements, so neither limit can be overrun by concurrent settlements.
"""

import logging
from datetime import datetime, timezone
from decimal import Decimal

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from .errors import CouponLimitReached, InvalidCoupon
from .models import ZERO, Coupon, CouponUsage, DiscountType, from_minor, to_minor, utcnow

logger = logging.getLogger(__name__)


def normalize_code(code: str | None) -> str:
    return (code or "").strip().upper()


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


async def find_by_code(session: AsyncSession, code: str) -> Coupon | None:
    result = await session.execute(
        text("SELECT * FROM coupons WHERE code = :code"),
        {"code": normalize_code(code)},
    )
    row = result.fetchone()
    if not row:
        return None
    m = row._mapping

    usages = await session.execute(
        text("""
            SELECT user_id, used_count, last_used
            FROM coupon_usages
            WHERE coupon_id = :coupon_id
        """),
        {"coupon_id": m["id"]},
    )
    return Coupon(
        id=m["id"],
        code=m["code"],
        description=m["description"],
        discount_type=DiscountType(m["discount_type"]),
        discount_value=Decimal(str(m["discount_value"])),
        minimum_order_amount=from_minor(m["minimum_order_minor"]),
        maximum_discount_amount=from_minor(m["maximum_discount_minor"]),
        start_date=datetime.fromisoformat(m["start_date"]),
        end_date=datetime.fromisoformat(m["end_date"]),
        usage_limit=m["usage_limit"],
        used_count=m["used_count"],
        user_usage_limit=m["user_usage_limit"],
        is_active=bool(m["is_active"]),
        used_by=[
            CouponUsage(
                user_id=u.user_id,
                used_count=u.used_count,
                last_used=datetime.fromisoformat(u.last_used),
            )
            for u in usages.fetchall()
        ],
    )


async def save(session: AsyncSession, coupon: Coupon) -> None:
    """
    Insert or update a coupon definition by code. Does not commit.

    Usage counters are left alone on update; only ``commit_usage`` moves them.
    """
    await session.execute(
        text("""
            INSERT INTO coupons
                (id, code, description, discount_type, discount_value,
                 minimum_order_minor, maximum_discount_minor, start_date, end_date,
                 usage_limit, used_count, user_usage_limit, is_active, updated_at)
            VALUES
                (:id, :code, :description, :discount_type, :discount_value,
                 :minimum_order_minor, :maximum_discount_minor, :start_date, :end_date,
                 :usage_limit, :used_count, :user_usage_limit, :is_active, :now)
            ON CONFLICT (code) DO UPDATE SET
                description = excluded.description,
                discount_type = excluded.discount_type,
                discount_value = excluded.discount_value,
                minimum_order_minor = excluded.minimum_order_minor,
                maximum_discount_minor = excluded.maximum_discount_minor,
                start_date = excluded.start_date,
                end_date = excluded.end_date,
                usage_limit = excluded.usage_limit,
                user_usage_limit = excluded.user_usage_limit,
                is_active = excluded.is_active,
                updated_at = excluded.updated_at
        """),
        {
            "id": coupon.id,
            "code": normalize_code(coupon.code),
            "description": coupon.description,
            "discount_type": coupon.discount_type.value,
            "discount_value": float(coupon.discount_value),
            "minimum_order_minor": to_minor(coupon.minimum_order_amount),
            "maximum_discount_minor": to_minor(coupon.maximum_discount_amount),
            "start_date": _as_utc(coupon.start_date).isoformat(),
            "end_date": _as_utc(coupon.end_date).isoformat(),
            "usage_limit": coupon.usage_limit,
            "used_count": coupon.used_count,
            "user_usage_limit": coupon.user_usage_limit,
            "is_active": int(coupon.is_active),
            "now": utcnow().isoformat(),
        },
    )


def check_applicable(coupon: Coupon | None, code: str, user_id: str, now: datetime) -> Coupon:
    """Return the coupon if ``user_id`` may use it now, else raise InvalidCoupon."""
    if coupon is None:
        raise InvalidCoupon(code, "unknown code")
    if not coupon.is_active:
        raise InvalidCoupon(code, "inactive")
    if now < coupon.start_date or now > coupon.end_date:
        raise InvalidCoupon(code, "outside its validity window")
    if not coupon.is_valid(now):
        raise InvalidCoupon(code, "usage limit reached")
    if not coupon.can_user_use(user_id, now):
        raise InvalidCoupon(code, "per-user usage limit reached")
    return coupon


async def evaluate(
    session: AsyncSession,
    code: str | None,
    user_id: str,
    subtotal: Decimal,
    now: datetime | None = None,
) -> Decimal:
    """
    Discount the coupon would give on ``subtotal``; 0 when it can't be used.

    An unusable coupon never blocks checkout, it just contributes nothing.
    """
    code = normalize_code(code)
    if not code:
        return ZERO
    now = now or utcnow()

    coupon = await find_by_code(session, code)
    try:
        coupon = check_applicable(coupon, code, user_id, now)
    except InvalidCoupon as exc:
        logger.info("Ignoring coupon for user %s: %s", user_id, exc.message)
        return ZERO
    return coupon.calculate_discount(subtotal)


async def commit_usage(
    session: AsyncSession,
    code: str,
    user_id: str,
    now: datetime | None = None,
) -> None:
    """
    Record one use of ``code`` by ``user_id``. Runs in the caller's transaction.

    Raises CouponLimitReached when the global or the per-user limit is
    already used up; the caller must roll back.
    """
    code = normalize_code(code)
    now_iso = (now or utcnow()).isoformat()

    result = await session.execute(
        text("SELECT id, user_usage_limit FROM coupons WHERE code = :code"),
        {"code": code},
    )
    row = result.fetchone()
    if not row:
        raise CouponLimitReached(code, "global")

    result = await session.execute(
        text("""
            UPDATE coupons
            SET used_count = used_count + 1, updated_at = :now
            WHERE id = :id AND (usage_limit = 0 OR used_count < usage_limit)
        """),
        {"id": row.id, "now": now_iso},
    )
    if result.rowcount != 1:
        raise CouponLimitReached(code, "global")

    result = await session.execute(
        text("""
            INSERT INTO coupon_usages (coupon_id, user_id, used_count, last_used)
            VALUES (:coupon_id, :user_id, 1, :now)
            ON CONFLICT (coupon_id, user_id) DO UPDATE SET
                used_count = coupon_usages.used_count + 1,
                last_used = excluded.last_used
            WHERE coupon_usages.used_count < :user_limit
        """),
        {
            "coupon_id": row.id,
            "user_id": user_id,
            "now": now_iso,
            "user_limit": row.user_usage_limit,
        },
    )
    if result.rowcount != 1:
        raise CouponLimitReached(code, "per-user")
