# tests/test_auth.py - Login, session payload and permission reload
import pytest
from httpx import AsyncClient
from sqlalchemy import select

from auth import AuthService
from models import AuditEventType, AuditLog, User, UserRole

from tests.conftest import create_user, get_auth_headers


@pytest.mark.asyncio
class TestLogin:
    async def test_login_success(self, client: AsyncClient, test_user, session_factory):
        res = await client.post("/api/v1/auth/login", json={
            "email": "testuser@letterdesk.dev",
            "password": "TestPassword123!",
        })
        assert res.status_code == 200
        data = res.json()
        assert data["token_type"] == "bearer"
        assert data["expires_in"] > 0
        assert data["user"]["email"] == "testuser@letterdesk.dev"
        assert data["user"]["is_admin"] is False
        assert data["user"]["branch_name"] == "Head Office"
        assert "view:letters" in data["user"]["permissions"]
        assert "delete:users" not in data["user"]["permissions"]
        assert "tasks" in data["user"]["categories"]
        assert "grants" not in data["user"]

        async with session_factory() as session:
            logins = (await session.execute(
                select(AuditLog).where(AuditLog.event_type == AuditEventType.USER_LOGIN)
            )).scalars().all()
            stored = await session.get(User, test_user.id)
        assert [log.user_id for log in logins] == [test_user.id]
        assert stored.last_login_at is not None

    async def test_login_token_works(self, client: AsyncClient, test_user):
        res = await client.post("/api/v1/auth/login", json={
            "email": "testuser@letterdesk.dev",
            "password": "TestPassword123!",
        })
        token = res.json()["access_token"]
        me = await client.get("/api/v1/auth/me", headers={"Authorization": f"Bearer {token}"})
        assert me.status_code == 200
        assert me.json()["id"] == test_user.id

    async def test_login_wrong_password(self, client: AsyncClient, test_user):
        res = await client.post("/api/v1/auth/login", json={
            "email": "testuser@letterdesk.dev",
            "password": "WrongPassword!",
        })
        assert res.status_code == 401

    async def test_login_unknown_email(self, client: AsyncClient):
        res = await client.post("/api/v1/auth/login", json={
            "email": "nobody@letterdesk.dev",
            "password": "Whatever123!",
        })
        assert res.status_code == 401

    async def test_inactive_user_cannot_login(self, client: AsyncClient, db_session, test_branch):
        await create_user(db_session, "former@letterdesk.dev", "Former Clerk", branch=test_branch, is_active=False)
        res = await client.post("/api/v1/auth/login", json={
            "email": "former@letterdesk.dev",
            "password": "TestPassword123!",
        })
        assert res.status_code == 401

    async def test_inactive_admin_keeps_access(self, client: AsyncClient, db_session, test_branch):
        await create_user(db_session, "oldadmin@letterdesk.dev", "Old Admin", role=UserRole.ADMIN,
                          branch=test_branch, is_active=False)
        res = await client.post("/api/v1/auth/login", json={
            "email": "oldadmin@letterdesk.dev",
            "password": "TestPassword123!",
        })
        assert res.status_code == 200
        assert res.json()["user"]["is_admin"] is True

    async def test_brute_force_lockout(self, client: AsyncClient):
        payload = {"email": "locked@letterdesk.dev", "password": "Nope123!"}
        for _ in range(5):
            res = await client.post("/api/v1/auth/login", json=payload)
            assert res.status_code == 401
        res = await client.post("/api/v1/auth/login", json=payload)
        assert res.status_code == 429


@pytest.mark.asyncio
class TestSession:
    async def test_me_requires_token(self, client: AsyncClient):
        res = await client.get("/api/v1/auth/me")
        assert res.status_code in (401, 403)

    async def test_me_rejects_bad_token(self, client: AsyncClient):
        res = await client.get("/api/v1/auth/me", headers={"Authorization": "Bearer not.a.token"})
        assert res.status_code == 401

    async def test_me_admin(self, client: AsyncClient, admin_user):
        res = await client.get("/api/v1/auth/me", headers=get_auth_headers(admin_user))
        assert res.status_code == 200
        data = res.json()
        assert data["is_admin"] is True
        assert "delete:users" in data["permissions"]

    async def test_deactivated_user_loses_session(self, client: AsyncClient, db_session, test_user):
        headers = get_auth_headers(test_user)
        assert (await client.get("/api/v1/auth/me", headers=headers)).status_code == 200

        test_user.is_active = False
        await db_session.commit()
        assert (await client.get("/api/v1/auth/me", headers=headers)).status_code == 401

    async def test_reload_picks_up_new_grants(self, client: AsyncClient, db_session, test_user):
        headers = get_auth_headers(test_user)
        before = await client.get("/api/v1/auth/me", headers=headers)
        assert "view:users" not in before.json()["permissions"]

        test_user.permissions = ["view:users"]
        await db_session.commit()

        res = await client.post("/api/v1/auth/reload-permissions", headers=headers)
        assert res.status_code == 200
        assert "view:users" in res.json()["permissions"]
        assert "users" in res.json()["categories"]


class TestPasswords:
    def test_hash_and_verify(self):
        hashed = AuthService.hash_password("CorrectHorse1!")
        assert hashed != "CorrectHorse1!"
        assert AuthService.verify_password("CorrectHorse1!", hashed)
        assert not AuthService.verify_password("WrongHorse1!", hashed)

    def test_token_round_trip(self):
        token = AuthService.create_access_token({"sub": "user-1"})
        payload = AuthService.verify_token(token)
        assert payload["sub"] == "user-1"
        assert payload["type"] == "access"
