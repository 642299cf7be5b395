"""
优惠券业务服务层
price_order 是纯计算，不读写任何存储；使用次数只在对账事务中增加
"""

import logging
from typing import List, Optional
from datetime import datetime, timezone

from course_commerce.models.coupon import (
    Coupon,
    CouponCreate,
    CouponUpdate,
    CouponPricing,
    CouponRejection,
    CouponType,
    normalize_code,
)
from course_commerce.repositories.coupon_repository import CouponRepository
from course_commerce.services.common_cache import SimpleCache, coupon_cache

logger = logging.getLogger(__name__)


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """无时区的时间按UTC处理"""
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


def compute_discount(coupon: Coupon, order_amount: int) -> int:
    """计算折扣金额；百分比折扣四舍五入到最小货币单位"""
    if coupon.discount_type == CouponType.PERCENT:
        discount = (order_amount * coupon.value + 50) // 100
        if coupon.max_discount_amount > 0:
            discount = min(discount, coupon.max_discount_amount)
    else:
        discount = coupon.value
    return max(0, min(discount, order_amount))


def price_order(
    coupon: Coupon,
    order_amount: int,
    user_id: str,
    user_prior_redemptions: int,
    course_id: str,
    course_category: Optional[str] = None,
    now: Optional[datetime] = None
) -> CouponPricing:
    """
    校验优惠券并计算折后价
    按 有效期 -> 启用状态 -> 最低金额 -> 总次数 -> 单用户次数 -> 适用范围 的顺序检查
    """
    now = _as_utc(now) or datetime.now(timezone.utc)
    code = coupon.code

    valid_from = _as_utc(coupon.valid_from)
    valid_until = _as_utc(coupon.valid_until)
    if (valid_from and now < valid_from) or (valid_until and now > valid_until):
        return CouponPricing.rejected(CouponRejection.EXPIRED, order_amount, code)

    if not coupon.is_active:
        return CouponPricing.rejected(CouponRejection.INACTIVE, order_amount, code)

    if order_amount < coupon.min_order_amount:
        return CouponPricing.rejected(CouponRejection.BELOW_MINIMUM, order_amount, code)

    if coupon.usage_limit > 0 and coupon.used_count >= coupon.usage_limit:
        return CouponPricing.rejected(CouponRejection.GLOBAL_LIMIT_REACHED, order_amount, code)

    if coupon.usage_limit_per_user > 0 and user_prior_redemptions >= coupon.usage_limit_per_user:
        return CouponPricing.rejected(CouponRejection.PER_USER_LIMIT_REACHED, order_amount, code)

    if not coupon.is_applicable_to(course_id, course_category):
        return CouponPricing.rejected(CouponRejection.NOT_APPLICABLE, order_amount, code)

    discount = compute_discount(coupon, order_amount)
    return CouponPricing(
        valid=True,
        discount=discount,
        final_amount=max(order_amount - discount, 0),
        order_amount=order_amount,
        coupon_code=code
    )


class CouponService:
    """优惠券业务服务"""

    def __init__(self, coupon_repo: CouponRepository, cache: Optional[SimpleCache] = None):
        self.coupon_repo = coupon_repo
        self.cache = cache or coupon_cache
        self.cache_prefix = "coupon"
        self.cache_ttl = 1800  # 30分钟缓存

    async def get_coupon_by_code(self, coupon_code: str) -> Optional[Coupon]:
        """根据优惠券代码获取优惠券（不走缓存，保证使用次数实时）"""
        db_coupon = await self.coupon_repo.get_by_code(coupon_code)
        if not db_coupon:
            return None
        return self.coupon_repo.to_model(db_coupon)

    async def get_active_coupons(self, use_cache: bool = True) -> List[Coupon]:
        """获取当前有效的优惠券"""
        cache_key = f"{self.cache_prefix}:active:all"

        if use_cache:
            cached_coupons = await self.cache.get(cache_key)
            if cached_coupons:
                return [Coupon(**coupon_data) for coupon_data in cached_coupons]

        db_coupons = await self.coupon_repo.get_active_coupons()
        coupons = self.coupon_repo.to_models(db_coupons)

        if use_cache:
            await self.cache.set(
                cache_key,
                [coupon.model_dump(mode="json") for coupon in coupons],
                ttl=self.cache_ttl // 2  # 有效券缓存时间短一些
            )

        return coupons

    async def quote(
        self,
        coupon_code: str,
        user_id: str,
        course_id: str,
        order_amount: int,
        course_category: Optional[str] = None,
        now: Optional[datetime] = None
    ) -> CouponPricing:
        """为用户和课程计算优惠券报价"""
        coupon = await self.get_coupon_by_code(coupon_code)
        if coupon is None:
            return CouponPricing.rejected(CouponRejection.NOT_FOUND, order_amount, normalize_code(coupon_code))

        prior = 0
        if coupon.usage_limit_per_user > 0:
            prior = await self.coupon_repo.count_user_redemptions(user_id, coupon.coupon_id)

        pricing = price_order(
            coupon,
            order_amount=order_amount,
            user_id=user_id,
            user_prior_redemptions=prior,
            course_id=course_id,
            course_category=course_category,
            now=now
        )
        if not pricing.valid:
            logger.info(f"优惠券 {coupon.code} 不可用: user={user_id} course={course_id} reason={pricing.reason.value}")
        return pricing

    async def create_coupon(self, coupon_create: CouponCreate) -> Coupon:
        """创建优惠券（管理员）"""
        db_coupon = await self.coupon_repo.create_coupon(coupon_create)
        await self._clear_coupon_caches()
        logger.info(f"优惠券已创建: {db_coupon.coupon_code}")
        return self.coupon_repo.to_model(db_coupon)

    async def update_coupon(self, coupon_code: str, coupon_update: CouponUpdate) -> Optional[Coupon]:
        """更新优惠券（管理员）"""
        db_coupon = await self.coupon_repo.update_coupon(coupon_code, coupon_update)
        if not db_coupon:
            return None
        await self._clear_coupon_caches()
        return self.coupon_repo.to_model(db_coupon)

    async def _clear_coupon_caches(self) -> None:
        """清除优惠券相关缓存"""
        await self.cache.delete_pattern(f"{self.cache_prefix}:*")
