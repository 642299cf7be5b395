"""
HTTP接口测试：鉴权、错误响应格式、结账与报名流程
"""

import httpx
import pytest
import pytest_asyncio

from course_commerce.main import app
from course_commerce.api.dependencies import get_reconciler
from course_commerce.core.database import get_db_session

from conftest import create_coupon, make_token


@pytest_asyncio.fixture
async def api_client(session_maker, reconciler):
    """替换数据库会话和对账器依赖的测试客户端"""

    async def override_db_session():
        async with session_maker() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    app.dependency_overrides[get_db_session] = override_db_session
    app.dependency_overrides[get_reconciler] = lambda: reconciler

    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://testserver") as client:
        yield client

    app.dependency_overrides.clear()


def auth(uid: str = "user_001", admin: bool = False, expires_in: int = 3600) -> dict:
    return {"Authorization": f"Bearer {make_token(uid, admin=admin, expires_in=expires_in)}"}


def assert_error(response, status_code: int, error_type: str):
    assert response.status_code == status_code
    body = response.json()
    assert body["success"] is False
    assert body["errorType"] == error_type
    assert body["error"]
    assert body["timestamp"]


@pytest.mark.asyncio
class TestAuthentication:
    """鉴权测试类"""

    async def test_missing_token(self, api_client, seeded_course):
        response = await api_client.post("/coupons/quote", json={"code": "SAVE10", "course_id": "C1"})
        assert_error(response, 401, "AUTHENTICATION_ERROR")

    async def test_expired_token(self, api_client, seeded_course):
        response = await api_client.get("/enrollments/me", headers=auth(expires_in=-60))
        assert_error(response, 401, "AUTHENTICATION_ERROR")

    async def test_forged_token(self, api_client):
        headers = {"Authorization": f"Bearer {make_token('user_001', secret='a-different-signing-secret-for-tests')}"}
        response = await api_client.get("/enrollments/me", headers=headers)
        assert_error(response, 401, "AUTHENTICATION_ERROR")

    async def test_admin_route_requires_admin(self, api_client, seeded_course):
        response = await api_client.get("/admin/enrollments/stats", headers=auth())
        assert_error(response, 403, "AUTHORIZATION_ERROR")

        response = await api_client.get("/admin/enrollments/stats", headers=auth("admin_001", admin=True))
        assert response.status_code == 200
        assert response.json()["data"]["total"] == 0


@pytest.mark.asyncio
class TestCouponRoutes:
    """优惠券接口测试类"""

    async def test_quote(self, api_client, session_maker, seeded_course):
        await create_coupon(session_maker)

        response = await api_client.post("/coupons/quote", json={"code": "save10", "course_id": "C1"}, headers=auth())

        assert response.status_code == 200
        data = response.json()["data"]
        assert data["valid"] is True
        assert data["discount"] == 500
        assert data["final_amount"] == 9500

    async def test_quote_unknown_course(self, api_client, seeded_course):
        response = await api_client.post("/coupons/quote", json={"code": "X", "course_id": "NOPE"}, headers=auth())
        assert_error(response, 404, "NOT_FOUND_ERROR")

    async def test_active_coupons_and_admin_create(self, api_client, seeded_course):
        response = await api_client.post(
            "/coupons", json={"code": "flat5", "discount_type": "flat", "value": 500}, headers=auth()
        )
        assert_error(response, 403, "AUTHORIZATION_ERROR")

        response = await api_client.post(
            "/coupons",
            json={"code": "flat5", "discount_type": "flat", "value": 500},
            headers=auth("admin_001", admin=True)
        )
        assert response.status_code == 200
        assert response.json()["data"]["code"] == "FLAT5"

        response = await api_client.get("/coupons/active")
        assert [c["code"] for c in response.json()["data"]] == ["FLAT5"]

    async def test_request_validation_error(self, api_client):
        response = await api_client.post("/coupons/quote", json={"code": ""}, headers=auth())
        assert_error(response, 400, "VALIDATION_ERROR")
        assert response.json()["details"]["errors"]


@pytest.mark.asyncio
class TestCheckoutRoutes:
    """结账与报名接口测试类"""

    async def test_checkout_and_enroll(self, api_client, session_maker, seeded_course):
        """测试完整结账流程"""
        await create_coupon(session_maker)

        response = await api_client.post(
            "/checkout/start", json={"course_id": "C1", "coupon_code": "SAVE10"}, headers=auth()
        )
        assert response.status_code == 200
        quote = response.json()["data"]
        assert quote["amount"] == 9500

        response = await api_client.post(
            "/checkout/confirm",
            json={"course_id": "C1", "payment_id": "pay_gw_1", "order_id": quote["gateway_order_id"]},
            headers=auth()
        )
        assert response.status_code == 200
        data = response.json()["data"]
        assert data["alreadyEnrolled"] is False
        assert data["enrollment"]["status"] == "SUCCESS"
        assert data["enrollment"]["paid_amount"] == 9500

        response = await api_client.get("/enrollments/C1/status", headers=auth())
        assert response.json()["data"]["enrolled"] is True

        response = await api_client.get("/enrollments/me", headers=auth())
        assert len(response.json()["data"]) == 1

    async def test_reconciliation_failure_returns_202(self, api_client, seeded_course):
        """测试对账失败时返回202和明确的错误类型"""
        response = await api_client.post("/checkout/start", json={"course_id": "C1"}, headers=auth())
        quote = response.json()["data"]

        response = await api_client.post(
            "/checkout/confirm",
            json={"course_id": "C1", "payment_id": "pay_gw_1", "order_id": quote["gateway_order_id"], "amount": 1},
            headers=auth()
        )

        assert_error(response, 202, "ENROLLMENT_RECONCILIATION_FAILED")

    async def test_gateway_failure(self, api_client, seeded_course):
        response = await api_client.post("/checkout/start", json={"course_id": "C1"}, headers=auth())
        quote = response.json()["data"]

        response = await api_client.post(
            "/checkout/failure",
            json={"order_id": quote["gateway_order_id"], "code": "PAYMENT_FAILED", "description": "declined"},
            headers=auth()
        )

        assert response.status_code == 200
        assert response.json()["data"]["status"] == "failed"

    async def test_manual_enrollment_and_progress(self, api_client, seeded_course):
        """测试管理员手动报名后用户可以记录学习进度"""
        response = await api_client.post(
            "/progress/watch",
            json={"course_id": "C1", "module_id": "M1", "video_id": "V1", "watched_seconds": 500, "total_seconds": 600},
            headers=auth("user_050")
        )
        assert response.json()["data"]["reason"] == "NOT_ENROLLED"

        response = await api_client.post(
            "/admin/enrollments",
            json={"user_id": "user_050", "course_id": "C1", "method": "free"},
            headers=auth("admin_001", admin=True)
        )
        assert response.status_code == 200
        assert response.json()["data"]["enrolled_by"] == "admin_001"

        response = await api_client.post(
            "/progress/watch",
            json={"course_id": "C1", "module_id": "M1", "video_id": "V1", "watched_seconds": 500, "total_seconds": 600},
            headers=auth("user_050")
        )
        data = response.json()["data"]
        assert data["recorded"] is True
        assert data["video_complete"] is True

        response = await api_client.get("/progress/C1", headers=auth("user_050"))
        modules = response.json()["data"]["modules"]
        assert [m["is_unlocked"] for m in modules] == [True, False, False]

        response = await api_client.get("/progress/C1/videos/V2/access", headers=auth("user_050"))
        assert response.status_code == 200
        assert "signature=" in response.json()["data"]["url"]

    async def test_video_access_denied_without_enrollment(self, api_client, seeded_course):
        response = await api_client.get("/progress/C1/videos/V2/access", headers=auth("user_051"))
        assert_error(response, 403, "AUTHORIZATION_ERROR")

    async def test_unknown_route(self, api_client):
        response = await api_client.get("/does-not-exist")
        assert_error(response, 404, "NOT_FOUND_ERROR")


@pytest.mark.asyncio
class TestCourseRoutes:
    """课程接口测试类"""

    async def test_catalog_and_detail(self, api_client, seeded_course):
        response = await api_client.get("/courses")
        assert response.status_code == 200
        assert [c["course_id"] for c in response.json()["data"]] == ["C1"]

        response = await api_client.get("/courses/C1")
        assert response.status_code == 200
        assert response.json()["data"]["price"] == 10000

        response = await api_client.get("/courses/NOPE")
        assert_error(response, 404, "NOT_FOUND_ERROR")

    async def test_admin_update_course(self, api_client, seeded_course):
        response = await api_client.patch("/admin/courses/C1", json={"title": "新标题"}, headers=auth())
        assert_error(response, 403, "AUTHORIZATION_ERROR")

        response = await api_client.patch(
            "/admin/courses/C1", json={"title": "新标题"}, headers=auth("admin_001", admin=True)
        )
        assert response.status_code == 200
        assert response.json()["data"]["title"] == "新标题"

        response = await api_client.get("/courses/C1")
        assert response.json()["data"]["title"] == "新标题"

        response = await api_client.patch(
            "/admin/courses/NOPE", json={"title": "x"}, headers=auth("admin_001", admin=True)
        )
        assert_error(response, 404, "NOT_FOUND_ERROR")
