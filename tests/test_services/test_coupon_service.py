"""
优惠券定价与CouponService业务逻辑测试
"""

import pytest
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, MagicMock

from course_commerce.services.coupon_service import CouponService, compute_discount, price_order
from course_commerce.repositories.coupon_repository import CouponRepository
from course_commerce.models.coupon import Coupon, CouponCreate, CouponRejection, CouponType


NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


def make_coupon(**overrides) -> Coupon:
    data = {
        "coupon_id": "CPN_001",
        "code": "SAVE10",
        "name": "九折券",
        "discount_type": CouponType.PERCENT,
        "value": 10,
        "max_discount_amount": 500,
        "valid_from": NOW - timedelta(days=1),
        "valid_until": NOW + timedelta(days=30),
    }
    data.update(overrides)
    return Coupon(**data)


def price(coupon: Coupon, order_amount: int = 10000, prior: int = 0, course_id: str = "C1", category=None):
    return price_order(
        coupon,
        order_amount=order_amount,
        user_id="user_001",
        user_prior_redemptions=prior,
        course_id=course_id,
        course_category=category,
        now=NOW
    )


class TestPriceOrder:
    """优惠券定价纯函数测试"""

    def test_percent_discount_capped(self):
        """测试10%折扣受最大折扣限制"""
        pricing = price(make_coupon())
        assert pricing.valid is True
        assert pricing.discount == 500
        assert pricing.final_amount == 9500
        assert pricing.coupon_code == "SAVE10"

    def test_percent_discount_without_cap(self):
        pricing = price(make_coupon(max_discount_amount=0))
        assert pricing.discount == 1000
        assert pricing.final_amount == 9000

    def test_percent_rounds_half_up(self):
        """测试百分比折扣四舍五入到最小货币单位"""
        coupon = make_coupon(value=15, max_discount_amount=0)
        assert compute_discount(coupon, 333) == 50  # 49.95
        assert compute_discount(coupon, 330) == 50  # 49.5
        assert compute_discount(coupon, 329) == 49  # 49.35

    def test_flat_discount_never_exceeds_order(self):
        pricing = price(make_coupon(discount_type=CouponType.FLAT, value=20000, max_discount_amount=0))
        assert pricing.discount == 10000
        assert pricing.final_amount == 0

    def test_expired(self):
        coupon = make_coupon(valid_until=NOW - timedelta(seconds=1))
        assert price(coupon).reason == CouponRejection.EXPIRED

    def test_not_yet_valid(self):
        coupon = make_coupon(valid_from=NOW + timedelta(hours=1))
        assert price(coupon).reason == CouponRejection.EXPIRED

    def test_naive_window_treated_as_utc(self):
        coupon = make_coupon(valid_until=(NOW - timedelta(minutes=5)).replace(tzinfo=None))
        assert price(coupon).reason == CouponRejection.EXPIRED

    def test_inactive(self):
        assert price(make_coupon(is_active=False)).reason == CouponRejection.INACTIVE

    def test_below_minimum(self):
        pricing = price(make_coupon(min_order_amount=20000))
        assert pricing.valid is False
        assert pricing.reason == CouponRejection.BELOW_MINIMUM
        assert pricing.final_amount == 10000

    def test_global_limit_reached(self):
        pricing = price(make_coupon(usage_limit=5, used_count=5))
        assert pricing.reason == CouponRejection.GLOBAL_LIMIT_REACHED

    def test_per_user_limit_reached(self):
        pricing = price(make_coupon(usage_limit_per_user=1), prior=1)
        assert pricing.reason == CouponRejection.PER_USER_LIMIT_REACHED

    def test_not_applicable(self):
        coupon = make_coupon(applicable_courses=["C9"], applicable_categories=["design"])
        assert price(coupon, category="python").reason == CouponRejection.NOT_APPLICABLE
        assert price(coupon, category="design").valid is True

    def test_check_order(self):
        """测试多个条件同时不满足时按固定顺序报告第一个"""
        coupon = make_coupon(
            is_active=False,
            valid_until=NOW - timedelta(days=1),
            min_order_amount=99999
        )
        assert price(coupon).reason == CouponRejection.EXPIRED

        coupon = make_coupon(is_active=False, min_order_amount=99999)
        assert price(coupon).reason == CouponRejection.INACTIVE

        coupon = make_coupon(min_order_amount=99999, usage_limit=1, used_count=1)
        assert price(coupon).reason == CouponRejection.BELOW_MINIMUM

    def test_result_bounds(self):
        """测试折扣和折后价始终在合法范围内"""
        coupons = [
            make_coupon(value=v, max_discount_amount=cap)
            for v in (0, 1, 33, 50, 99, 100)
            for cap in (0, 1, 250)
        ] + [
            make_coupon(discount_type=CouponType.FLAT, value=v, max_discount_amount=0)
            for v in (0, 1, 4999, 10000, 10001)
        ]
        for coupon in coupons:
            for order_amount in (0, 1, 99, 5000, 10000, 123457):
                pricing = price(coupon, order_amount=order_amount)
                assert pricing.valid
                assert 0 <= pricing.discount <= order_amount
                assert pricing.final_amount == order_amount - pricing.discount


@pytest.mark.asyncio
class TestCouponService:
    """CouponService业务逻辑测试类"""

    @pytest.fixture
    def mock_coupon_repo(self):
        """模拟CouponRepository"""
        return AsyncMock(spec=CouponRepository)

    @pytest.fixture
    def mock_cache(self):
        """模拟缓存"""
        cache = AsyncMock()
        cache.get = AsyncMock(return_value=None)
        cache.set = AsyncMock()
        cache.delete_pattern = AsyncMock()
        return cache

    @pytest.fixture
    def coupon_service(self, mock_coupon_repo, mock_cache):
        """创建CouponService实例"""
        return CouponService(mock_coupon_repo, cache=mock_cache)

    @pytest.fixture
    def sample_coupon(self):
        return make_coupon(
            valid_from=datetime.now(timezone.utc) - timedelta(days=1),
            valid_until=datetime.now(timezone.utc) + timedelta(days=1)
        )

    async def test_quote_unknown_code(self, coupon_service, mock_coupon_repo):
        """测试优惠券不存在"""
        mock_coupon_repo.get_by_code.return_value = None

        pricing = await coupon_service.quote("nope", user_id="u1", course_id="C1", order_amount=10000)

        assert pricing.valid is False
        assert pricing.reason == CouponRejection.NOT_FOUND
        assert pricing.coupon_code == "NOPE"
        mock_coupon_repo.get_by_code.assert_called_once_with("nope")

    async def test_quote_valid(self, coupon_service, mock_coupon_repo, sample_coupon):
        """测试报价成功，不查询个人使用次数"""
        mock_coupon_repo.get_by_code.return_value = MagicMock()
        mock_coupon_repo.to_model.return_value = sample_coupon

        pricing = await coupon_service.quote("save10", user_id="u1", course_id="C1", order_amount=10000)

        assert pricing.valid is True
        assert pricing.final_amount == 9500
        mock_coupon_repo.count_user_redemptions.assert_not_called()
        mock_coupon_repo.try_increment_usage.assert_not_called()

    async def test_quote_per_user_limit(self, coupon_service, mock_coupon_repo, sample_coupon):
        """测试单用户使用次数限制"""
        coupon = sample_coupon.model_copy(update={"usage_limit_per_user": 1})
        mock_coupon_repo.get_by_code.return_value = MagicMock()
        mock_coupon_repo.to_model.return_value = coupon
        mock_coupon_repo.count_user_redemptions.return_value = 1

        pricing = await coupon_service.quote("SAVE10", user_id="u1", course_id="C1", order_amount=10000)

        assert pricing.reason == CouponRejection.PER_USER_LIMIT_REACHED
        mock_coupon_repo.count_user_redemptions.assert_called_once_with("u1", "CPN_001")

    async def test_get_active_coupons_cache_hit(self, coupon_service, mock_cache, mock_coupon_repo, sample_coupon):
        """测试从缓存获取有效优惠券"""
        mock_cache.get.return_value = [sample_coupon.model_dump(mode="json")]

        coupons = await coupon_service.get_active_coupons()

        assert [c.code for c in coupons] == ["SAVE10"]
        mock_cache.get.assert_called_once_with("coupon:active:all")
        mock_coupon_repo.get_active_coupons.assert_not_called()

    async def test_get_active_coupons_cache_miss(self, coupon_service, mock_cache, mock_coupon_repo, sample_coupon):
        """测试缓存未命中时查询数据库并回填缓存"""
        mock_coupon_repo.get_active_coupons.return_value = [MagicMock()]
        mock_coupon_repo.to_models.return_value = [sample_coupon]

        coupons = await coupon_service.get_active_coupons()

        assert coupons == [sample_coupon]
        mock_cache.set.assert_called_once_with(
            "coupon:active:all",
            [sample_coupon.model_dump(mode="json")],
            ttl=900
        )

    async def test_create_coupon_clears_cache(self, coupon_service, mock_cache, mock_coupon_repo, sample_coupon):
        """测试创建优惠券后清除缓存"""
        mock_coupon_repo.create_coupon.return_value = MagicMock(coupon_code="SAVE10")
        mock_coupon_repo.to_model.return_value = sample_coupon
        coupon_create = CouponCreate(code="save10", discount_type=CouponType.PERCENT, value=10)

        result = await coupon_service.create_coupon(coupon_create)

        assert result.code == "SAVE10"
        mock_coupon_repo.create_coupon.assert_called_once_with(coupon_create)
        mock_cache.delete_pattern.assert_called_once_with("coupon:*")

    async def test_update_missing_coupon(self, coupon_service, mock_cache, mock_coupon_repo):
        mock_coupon_repo.update_coupon.return_value = None

        from course_commerce.models.coupon import CouponUpdate
        assert await coupon_service.update_coupon("NONE", CouponUpdate(is_active=False)) is None
        mock_cache.delete_pattern.assert_not_called()
