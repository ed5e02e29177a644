import pytest
from httpx import AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession

from app.crud import crud_app_role

pytestmark = pytest.mark.asyncio

REDIRECT_URI = "https://app.example/cb"
TEST_PASSWORD = "Password123!"


async def test_full_authorization_code_flow(async_client: AsyncClient, admin_headers, create_user):
    user = await create_user("flow@example.com", full_name="Flow User")

    # 1. Registo do cliente C
    created = await async_client.post(
        "/oauth/clients", json={"name": "C", "redirect_uris": [REDIRECT_URI]}, headers=admin_headers
    )
    client_id, client_secret = created.json()["client_id"], created.json()["client_secret"]

    # 2. Authorize + CompleteLogin
    authorize = await async_client.get("/oauth/authorize", params={
        "response_type": "code", "client_id": client_id, "redirect_uri": REDIRECT_URI,
        "scope": "openid profile email", "state": "s1",
    })
    assert authorize.status_code == 200
    login = await async_client.post("/oauth/authorize/login", json={
        "email": user.email, "password": TEST_PASSWORD, "client_id": client_id,
        "redirect_uri": REDIRECT_URI, "scope": "openid profile email", "state": "s1",
    })
    assert login.status_code == 200
    code = login.json()["code"]

    # 3. Exchange -> A1 / R1
    exchanged = await async_client.post("/oauth/token", data={
        "grant_type": "authorization_code", "code": code, "redirect_uri": REDIRECT_URI,
        "client_id": client_id, "client_secret": client_secret,
    })
    assert exchanged.status_code == 200
    a1, r1 = exchanged.json()["access_token"], exchanged.json()["refresh_token"]

    # 4. RedeemRefresh(R1) -> A2 / R2
    refreshed = await async_client.post("/oauth/token", data={
        "grant_type": "refresh_token", "refresh_token": r1,
        "client_id": client_id, "client_secret": client_secret,
    })
    assert refreshed.status_code == 200
    a2, r2 = refreshed.json()["access_token"], refreshed.json()["refresh_token"]
    assert r2 != r1

    # R1 deixou de funcionar
    replay = await async_client.post("/oauth/token", data={
        "grant_type": "refresh_token", "refresh_token": r1, "client_id": client_id,
    })
    assert replay.json()["error"] == "invalid_grant"

    # 5. A1 continua válido (a rotação não revoga access tokens); A2 também
    for token in (a1, a2):
        info = await async_client.get("/oauth/userinfo", headers={"Authorization": f"Bearer {token}"})
        assert info.status_code == 200
        assert info.json()["sub"] == str(user.id)
        assert info.json()["email"] == user.email

    # 6. Depois de revogado, A1 deixa de ser aceite
    await async_client.post("/oauth/revoke", data={"token": a1, "token_type_hint": "access_token"})
    info = await async_client.get("/oauth/userinfo", headers={"Authorization": f"Bearer {a1}"})
    assert info.status_code == 401
    assert info.headers["www-authenticate"] == "Bearer"


async def test_userinfo_profile_fields(async_client: AsyncClient, db_session: AsyncSession, oauth_client, test_user):
    client, secret = oauth_client
    login = await async_client.post("/oauth/authorize/login", json={
        "email": test_user.email, "password": TEST_PASSWORD,
        "client_id": client.client_id, "redirect_uri": REDIRECT_URI,
    })
    tokens = (await async_client.post("/oauth/token", data={
        "grant_type": "authorization_code", "code": login.json()["code"],
        "client_id": client.client_id, "client_secret": secret,
    })).json()

    response = await async_client.get("/oauth/userinfo", headers={"Authorization": f"Bearer {tokens['access_token']}"})
    data = response.json()
    assert data["name"] == test_user.full_name
    assert data["client_id"] == client.client_id
    assert "app_role" not in data
    for secret_field in ("hashed_password", "password", "secret_key"):
        assert secret_field not in data

    await crud_app_role.assign(
        db_session, user_id=test_user.id, client_id=client.client_id, role="manager", permissions="audit:view bogus"
    )
    data = (await async_client.get(
        "/oauth/userinfo", headers={"Authorization": f"Bearer {tokens['access_token']}"}
    )).json()
    assert data["app_role"] == "manager"
    assert "audit:view" in data["app_permissions"]
    assert "tickets:manage" in data["app_permissions"]
    assert "bogus" not in data["app_permissions"]


async def test_userinfo_rejects_session_and_missing_tokens(async_client: AsyncClient, test_user, login):
    assert (await async_client.get("/oauth/userinfo")).status_code == 401
    session_headers = await login(test_user.email)
    # Um JWT de sessão não está na tabela de access tokens OAuth
    assert (await async_client.get("/oauth/userinfo", headers=session_headers)).status_code == 401


async def test_server_metadata(async_client: AsyncClient):
    response = await async_client.get("/.well-known/oauth-authorization-server")
    assert response.status_code == 200
    data = response.json()
    assert data["token_endpoint"].endswith("/oauth/token")
    assert data["response_types_supported"] == ["code"]
    assert set(data["grant_types_supported"]) == {"authorization_code", "refresh_token"}
