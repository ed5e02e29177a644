# tests/test_10_mgmt.py
import pytest
from httpx import AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.crud import crud_auth_epoch

pytestmark = pytest.mark.asyncio

MGMT_API_KEY = settings.INTERNAL_API_KEY
INVALIDATE_URL = "/api/v1/mgmt/sessions/invalidate-all"


async def test_invalidate_all_requires_api_key(async_client: AsyncClient):
    response = await async_client.post(INVALIDATE_URL)
    assert response.status_code in (401, 403)

    response = await async_client.post(INVALIDATE_URL, headers={"X-API-Key": "wrong-key"})
    assert response.status_code == 401


async def test_invalidate_all_bumps_epoch(async_client: AsyncClient, db_session: AsyncSession):
    assert await crud_auth_epoch.get_current_epoch(db_session) == 0

    response = await async_client.post(INVALIDATE_URL, headers={"X-API-Key": MGMT_API_KEY})
    assert response.status_code == 200
    assert response.json() == {"epoch": 1}

    response = await async_client.post(INVALIDATE_URL, headers={"X-API-Key": MGMT_API_KEY})
    assert response.json() == {"epoch": 2}
    assert await crud_auth_epoch.get_current_epoch(db_session) == 2


async def test_sessions_issued_before_bump_are_rejected(async_client: AsyncClient, test_user, login):
    old_headers = await login(test_user.email)
    assert (await async_client.get("/api/v1/auth/me", headers=old_headers)).status_code == 200

    await async_client.post(INVALIDATE_URL, headers={"X-API-Key": MGMT_API_KEY})

    assert (await async_client.get("/api/v1/auth/me", headers=old_headers)).status_code == 401
    # Um novo login recebe a época atual
    new_headers = await login(test_user.email)
    assert (await async_client.get("/api/v1/auth/me", headers=new_headers)).status_code == 200
