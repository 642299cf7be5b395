"""
优惠券Repository数据库操作测试
"""

import pytest
from datetime import datetime, timedelta, timezone

from course_commerce.models.coupon import CouponCreate, CouponRedemption, CouponType, CouponUpdate
from course_commerce.repositories.coupon_repository import CouponRepository

from conftest import create_coupon


@pytest.mark.asyncio
class TestCouponRepository:
    """优惠券Repository数据库操作测试类"""

    async def test_create_and_get_coupon(self, db_session):
        """测试创建和获取优惠券，代码大小写不敏感"""
        coupon_repo = CouponRepository(db_session)
        created = await coupon_repo.create_coupon(CouponCreate(
            code="newyear",
            name="新年优惠券",
            discount_type=CouponType.PERCENT,
            value=20,
            min_order_amount=1000,
            max_discount_amount=5000,
            applicable_courses=["C1", "C2"]
        ))
        await db_session.commit()

        retrieved = await coupon_repo.get_by_code("NewYear")

        assert retrieved is not None
        assert retrieved.coupon_id == created.coupon_id
        assert retrieved.coupon_code == "NEWYEAR"
        assert retrieved.used_count == 0
        coupon = coupon_repo.to_model(retrieved)
        assert coupon.discount_type == CouponType.PERCENT
        assert coupon.applicable_courses == ["C1", "C2"]

    async def test_get_nonexistent_coupon(self, db_session):
        assert await CouponRepository(db_session).get_by_code("NONEXISTENT_COUPON") is None

    async def test_try_increment_usage_respects_limit(self, session_maker, db_session):
        """测试条件更新在达到上限后不再增加"""
        await create_coupon(session_maker, code="LIMIT2", usage_limit=2)
        coupon_repo = CouponRepository(db_session)

        assert await coupon_repo.try_increment_usage("limit2") is True
        assert await coupon_repo.try_increment_usage("LIMIT2") is True
        assert await coupon_repo.try_increment_usage("LIMIT2") is False
        await db_session.commit()

        async with session_maker() as session:
            coupon = await CouponRepository(session).get_by_code("LIMIT2")
            assert coupon.used_count == 2

    async def test_unlimited_coupon_always_increments(self, session_maker, db_session):
        await create_coupon(session_maker, code="FREEFLOW", usage_limit=0)
        coupon_repo = CouponRepository(db_session)

        for _ in range(5):
            assert await coupon_repo.try_increment_usage("FREEFLOW") is True

    async def test_active_coupons_filter(self, session_maker, db_session):
        """测试有效优惠券过滤：停用、过期、用完的不返回"""
        now = datetime.now(timezone.utc)
        await create_coupon(session_maker, code="ACTIVE")
        await create_coupon(session_maker, code="OPEN", valid_from=None, valid_until=None)
        await create_coupon(session_maker, code="DISABLED", is_active=False)
        await create_coupon(session_maker, code="OLD", valid_from=now - timedelta(days=10),
                            valid_until=now - timedelta(days=1))
        await create_coupon(session_maker, code="LATER", valid_from=now + timedelta(days=1),
                            valid_until=now + timedelta(days=10))
        used_up = await create_coupon(session_maker, code="USEDUP", usage_limit=1)
        await CouponRepository(db_session).try_increment_usage(used_up.coupon_code)
        await db_session.commit()

        coupons = await CouponRepository(db_session).get_active_coupons()

        assert sorted(c.coupon_code for c in coupons) == ["ACTIVE", "OPEN"]

    async def test_redemptions_counted_per_user(self, session_maker, db_session):
        db_coupon = await create_coupon(session_maker, code="ONCE", usage_limit_per_user=1)
        coupon_repo = CouponRepository(db_session)

        await coupon_repo.add_redemption(CouponRedemption(
            redemption_id="RDM_1",
            coupon_id=db_coupon.coupon_id,
            coupon_code="ONCE",
            user_id="user_001",
            course_id="C1",
            payment_id="PAY_1",
            original_amount=10000,
            discount_amount=500,
            final_amount=9500
        ))
        await db_session.commit()

        assert await coupon_repo.count_user_redemptions("user_001", db_coupon.coupon_id) == 1
        assert await coupon_repo.count_user_redemptions("user_002", db_coupon.coupon_id) == 0
        history = await coupon_repo.get_user_redemptions("user_001")
        assert history[0]["payment_id"] == "PAY_1"

    async def test_update_coupon(self, session_maker, db_session):
        await create_coupon(session_maker, code="EDIT")
        coupon_repo = CouponRepository(db_session)

        updated = await coupon_repo.update_coupon("edit", CouponUpdate(name="改名", is_active=False))

        assert updated.coupon_name == "改名"
        assert updated.is_active is False
        assert await coupon_repo.update_coupon("MISSING", CouponUpdate(name="x")) is None
