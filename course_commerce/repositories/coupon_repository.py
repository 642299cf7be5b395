"""
优惠券数据库操作层
"""

import uuid
from typing import List, Optional, Dict, Any
from datetime import datetime, timezone

from sqlalchemy import select, update, and_, or_, func
from sqlalchemy.ext.asyncio import AsyncSession

from course_commerce.models.coupon import Coupon, CouponCreate, CouponUpdate, CouponRedemption, normalize_code
from course_commerce.models.database.coupon_db import CouponDB, CouponRedemptionDB
from course_commerce.repositories.quarantine import parse_rows


class CouponRepository:
    """优惠券数据库操作类"""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def get_by_code(self, coupon_code: str) -> Optional[CouponDB]:
        """根据优惠券代码获取优惠券（大小写不敏感）"""
        result = await self.db.execute(
            select(CouponDB).where(CouponDB.coupon_code == normalize_code(coupon_code))
        )
        return result.scalar_one_or_none()

    async def get_active_coupons(self, current_time: Optional[datetime] = None) -> List[CouponDB]:
        """获取启用且未过期的优惠券，按到期时间排序"""
        if current_time is None:
            current_time = datetime.now(timezone.utc)

        query = select(CouponDB).where(
            and_(
                CouponDB.is_active.is_(True),
                or_(CouponDB.valid_from.is_(None), CouponDB.valid_from <= current_time),
                or_(CouponDB.valid_until.is_(None), CouponDB.valid_until >= current_time),
                or_(CouponDB.usage_limit == 0, CouponDB.used_count < CouponDB.usage_limit)
            )
        ).order_by(CouponDB.valid_until, CouponDB.coupon_code)

        result = await self.db.execute(query)
        return result.scalars().all()

    async def create_coupon(self, coupon_create: CouponCreate) -> CouponDB:
        """创建优惠券，使用次数从0开始"""
        db_coupon = CouponDB(
            coupon_id=f"CPN_{uuid.uuid4().hex[:12].upper()}",
            coupon_code=coupon_create.code,
            coupon_name=coupon_create.name,
            discount_type=coupon_create.discount_type.value,
            value=coupon_create.value,
            min_order_amount=coupon_create.min_order_amount,
            max_discount_amount=coupon_create.max_discount_amount,
            usage_limit=coupon_create.usage_limit,
            usage_limit_per_user=coupon_create.usage_limit_per_user,
            used_count=0,
            valid_from=coupon_create.valid_from,
            valid_until=coupon_create.valid_until,
            is_active=coupon_create.is_active,
            applicable_courses=coupon_create.applicable_courses,
            applicable_categories=coupon_create.applicable_categories,
            description=coupon_create.description
        )
        self.db.add(db_coupon)
        await self.db.flush()
        await self.db.refresh(db_coupon)
        return db_coupon

    async def update_coupon(self, coupon_code: str, coupon_update: CouponUpdate) -> Optional[CouponDB]:
        """更新优惠券"""
        db_coupon = await self.get_by_code(coupon_code)
        if not db_coupon:
            return None

        update_data = coupon_update.model_dump(exclude_unset=True)
        if "name" in update_data:
            update_data["coupon_name"] = update_data.pop("name")
        for field, value in update_data.items():
            setattr(db_coupon, field, value)

        await self.db.flush()
        await self.db.refresh(db_coupon)
        return db_coupon

    async def count_user_redemptions(self, user_id: str, coupon_id: str) -> int:
        """获取用户对特定优惠券的使用次数"""
        result = await self.db.execute(
            select(func.count(CouponRedemptionDB.redemption_id)).where(
                and_(
                    CouponRedemptionDB.user_id == user_id,
                    CouponRedemptionDB.coupon_id == coupon_id
                )
            )
        )
        return result.scalar() or 0

    async def try_increment_usage(self, coupon_code: str) -> bool:
        """
        原子增加使用次数
        条件更新在数据库侧完成，受影响行数为0说明总次数已达上限
        """
        result = await self.db.execute(
            update(CouponDB)
            .where(
                and_(
                    CouponDB.coupon_code == normalize_code(coupon_code),
                    or_(CouponDB.usage_limit == 0, CouponDB.used_count < CouponDB.usage_limit)
                )
            )
            .values(used_count=CouponDB.used_count + 1)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def add_redemption(self, redemption: CouponRedemption) -> CouponRedemptionDB:
        """记录一次优惠券使用"""
        db_redemption = CouponRedemptionDB(
            redemption_id=redemption.redemption_id,
            coupon_id=redemption.coupon_id,
            coupon_code=redemption.coupon_code,
            user_id=redemption.user_id,
            course_id=redemption.course_id,
            payment_id=redemption.payment_id,
            enrollment_id=redemption.enrollment_id,
            original_amount=redemption.original_amount,
            discount_amount=redemption.discount_amount,
            final_amount=redemption.final_amount
        )
        self.db.add(db_redemption)
        await self.db.flush()
        return db_redemption

    async def get_user_redemptions(self, user_id: str, limit: int = 20, offset: int = 0) -> List[Dict[str, Any]]:
        """获取用户优惠券使用历史"""
        query = select(CouponRedemptionDB).where(
            CouponRedemptionDB.user_id == user_id
        ).order_by(CouponRedemptionDB.redeemed_at.desc()).limit(limit).offset(offset)

        result = await self.db.execute(query)
        return [
            {
                "redemption_id": row.redemption_id,
                "coupon_code": row.coupon_code,
                "course_id": row.course_id,
                "payment_id": row.payment_id,
                "discount_amount": row.discount_amount,
                "redeemed_at": row.redeemed_at
            }
            for row in result.scalars().all()
        ]

    def to_model(self, db_coupon: CouponDB) -> Coupon:
        """转换为Pydantic模型"""
        return Coupon(
            coupon_id=db_coupon.coupon_id,
            code=db_coupon.coupon_code,
            name=db_coupon.coupon_name or "",
            discount_type=db_coupon.discount_type,
            value=db_coupon.value,
            min_order_amount=db_coupon.min_order_amount or 0,
            max_discount_amount=db_coupon.max_discount_amount or 0,
            usage_limit=db_coupon.usage_limit or 0,
            usage_limit_per_user=db_coupon.usage_limit_per_user or 0,
            used_count=db_coupon.used_count or 0,
            valid_from=db_coupon.valid_from,
            valid_until=db_coupon.valid_until,
            is_active=db_coupon.is_active,
            applicable_courses=db_coupon.applicable_courses or [],
            applicable_categories=db_coupon.applicable_categories or [],
            description=db_coupon.description,
            created_at=db_coupon.created_at,
            updated_at=db_coupon.updated_at
        )

    def to_models(self, db_coupons: List[CouponDB]) -> List[Coupon]:
        return parse_rows(db_coupons, self.to_model, "coupons")
