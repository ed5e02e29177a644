import asyncio
from urllib.parse import parse_qs, urlsplit

import pytest
from httpx import AsyncClient
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.exceptions import INVALID_GRANT_DESCRIPTION, InvalidGrantError
from app.core.security import hash_token
from app.crud import crud_authorization_code, crud_oauth_client
from app.models.oauth2_authorization_code import OAuth2AuthorizationCode

pytestmark = pytest.mark.asyncio

REDIRECT_URI = "https://app.example/cb"
TEST_PASSWORD = "Password123!"


async def _login_for_code(async_client: AsyncClient, client_id: str, email: str, **extra) -> dict:
    body = {
        "email": email,
        "password": TEST_PASSWORD,
        "client_id": client_id,
        "redirect_uri": REDIRECT_URI,
        "scope": "openid profile",
        "state": "xyz",
    }
    body.update(extra)
    return (await async_client.post("/oauth/authorize/login", json=body)).json()


async def _exchange(async_client: AsyncClient, client_id: str, secret: str, code: str, redirect_uri=REDIRECT_URI):
    data = {
        "grant_type": "authorization_code",
        "code": code,
        "client_id": client_id,
        "client_secret": secret,
    }
    if redirect_uri is not None:
        data["redirect_uri"] = redirect_uri
    return await async_client.post("/oauth/token", data=data)


# --- Authorize ---
async def test_authorize_returns_client_metadata(async_client: AsyncClient, oauth_client, db_session: AsyncSession):
    client, _ = oauth_client
    response = await async_client.get("/oauth/authorize", params={
        "response_type": "code", "client_id": client.client_id,
        "redirect_uri": REDIRECT_URI, "state": "abc",
    })
    assert response.status_code == 200
    data = response.json()
    assert data["client_name"] == "Example App"
    assert data["scope"] == "openid profile email"
    assert data["state"] == "abc"

    # Authorize não cria códigos
    codes = (await db_session.execute(select(OAuth2AuthorizationCode))).scalars().all()
    assert codes == []


@pytest.mark.parametrize(
    "params, error",
    [
        ({"response_type": "token"}, "unsupported_response_type"),
        ({"client_id": "ta_unknown"}, "invalid_client"),
        ({"redirect_uri": "https://evil.example/cb"}, "invalid_redirect_uri"),
        ({"redirect_uri": "https://app.example/cb-evil"}, "invalid_redirect_uri"),
        ({"scope": "openid admin"}, "invalid_scope"),
        ({"redirect_uri": None}, "invalid_request"),
    ],
)
async def test_authorize_errors(async_client: AsyncClient, oauth_client, params, error):
    client, _ = oauth_client
    query = {"response_type": "code", "client_id": client.client_id, "redirect_uri": REDIRECT_URI}
    query.update(params)
    query = {k: v for k, v in query.items() if v is not None}
    response = await async_client.get("/oauth/authorize", params=query)
    assert response.status_code == 400
    assert response.json()["error"] == error


# --- CompleteLogin / CompleteConsent ---
async def test_login_issues_code_in_redirect(async_client: AsyncClient, oauth_client, test_user, db_session: AsyncSession):
    client, _ = oauth_client
    data = await _login_for_code(async_client, client.client_id, test_user.email)

    redirect = urlsplit(data["redirect_url"])
    query = parse_qs(redirect.query)
    assert f"{redirect.scheme}://{redirect.netloc}{redirect.path}" == REDIRECT_URI
    assert query["code"] == [data["code"]]
    assert query["state"] == ["xyz"]

    stored = (await db_session.execute(select(OAuth2AuthorizationCode))).scalars().one()
    assert stored.code_hash == hash_token(data["code"])
    assert stored.redirect_uri == REDIRECT_URI
    assert stored.scope == "openid profile"
    assert not stored.is_used


async def test_login_with_bad_credentials(async_client: AsyncClient, oauth_client, test_user):
    client, _ = oauth_client
    for email, password in ((test_user.email, "WrongPassword1!"), ("ghost@example.com", TEST_PASSWORD)):
        response = await async_client.post("/oauth/authorize/login", json={
            "email": email, "password": password,
            "client_id": client.client_id, "redirect_uri": REDIRECT_URI,
        })
        assert response.status_code == 401
        assert response.json()["error"] == "invalid_credentials"


async def test_login_with_unregistered_redirect(async_client: AsyncClient, oauth_client, test_user):
    client, _ = oauth_client
    response = await async_client.post("/oauth/authorize/login", json={
        "email": test_user.email, "password": TEST_PASSWORD,
        "client_id": client.client_id, "redirect_uri": "https://evil.example/cb",
    })
    assert response.status_code == 400
    assert response.json()["error"] == "invalid_redirect_uri"


async def test_consent_with_session(async_client: AsyncClient, oauth_client, test_user, login):
    client, _ = oauth_client
    headers = await login(test_user.email)
    response = await async_client.post("/oauth/authorize/consent", json={
        "client_id": client.client_id, "redirect_uri": REDIRECT_URI + "/sub", "scope": "openid",
    }, headers=headers)
    assert response.status_code == 200
    data = response.json()
    assert data["redirect_url"].startswith(REDIRECT_URI + "/sub?code=")
    assert "state" not in parse_qs(urlsplit(data["redirect_url"]).query)


async def test_consent_requires_session(async_client: AsyncClient, oauth_client):
    client, _ = oauth_client
    response = await async_client.post("/oauth/authorize/consent", json={
        "client_id": client.client_id, "redirect_uri": REDIRECT_URI,
    })
    assert response.status_code in (401, 403)


# --- Consume ---
async def test_code_is_single_use(async_client: AsyncClient, oauth_client, test_user):
    client, secret = oauth_client
    code = (await _login_for_code(async_client, client.client_id, test_user.email))["code"]

    first = await _exchange(async_client, client.client_id, secret, code)
    assert first.status_code == 200

    second = await _exchange(async_client, client.client_id, secret, code)
    assert second.status_code == 400
    assert second.json() == {"error": "invalid_grant", "error_description": INVALID_GRANT_DESCRIPTION}


async def test_code_redirect_binding(async_client: AsyncClient, oauth_client, test_user):
    client, secret = oauth_client
    client_id = client.client_id
    code = (await _login_for_code(async_client, client_id, test_user.email))["code"]

    response = await _exchange(async_client, client_id, secret, code, redirect_uri=REDIRECT_URI + "/other")
    assert response.status_code == 400
    assert response.json()["error"] == "invalid_grant"

    # Uma tentativa falhada não consome o código
    response = await _exchange(async_client, client_id, secret, code)
    assert response.status_code == 200


async def test_code_redirect_uri_optional_at_exchange(async_client: AsyncClient, oauth_client, test_user):
    client, secret = oauth_client
    code = (await _login_for_code(async_client, client.client_id, test_user.email))["code"]
    response = await _exchange(async_client, client.client_id, secret, code, redirect_uri=None)
    assert response.status_code == 200


async def test_code_bound_to_client(async_client: AsyncClient, oauth_client, test_user, db_session: AsyncSession):
    client, _ = oauth_client
    other, other_secret = await crud_oauth_client.register(
        db_session, name="Other App", redirect_uris=[REDIRECT_URI]
    )
    code = (await _login_for_code(async_client, client.client_id, test_user.email))["code"]

    response = await _exchange(async_client, other.client_id, other_secret, code)
    assert response.status_code == 400
    assert response.json()["error"] == "invalid_grant"


async def test_every_failure_has_the_same_description(async_client: AsyncClient, oauth_client, test_user):
    client, secret = oauth_client
    client_id = client.client_id
    code = (await _login_for_code(async_client, client_id, test_user.email))["code"]
    unknown = await _exchange(async_client, client_id, secret, "not-a-real-code")
    mismatch = await _exchange(async_client, client_id, secret, code, redirect_uri="https://app.example/x")
    assert unknown.json() == mismatch.json()


@pytest.mark.parametrize("elapsed_seconds, ok", [(4 * 60 + 59, True), (5 * 60 + 1, False)])
async def test_code_expiry_boundary(db_session: AsyncSession, oauth_client, test_user, frozen_clock, elapsed_seconds, ok):
    client, _ = oauth_client
    code = await crud_authorization_code.issue(
        db_session, client_id=client.client_id, user_id=test_user.id, redirect_uri=REDIRECT_URI, scope="openid"
    )
    frozen_clock.advance(seconds=elapsed_seconds)

    if ok:
        user_id, scope = await crud_authorization_code.consume(
            db_session, code=code, client_id=client.client_id, redirect_uri=REDIRECT_URI
        )
        await db_session.commit()
        assert (user_id, scope) == (test_user.id, "openid")
    else:
        with pytest.raises(InvalidGrantError):
            await crud_authorization_code.consume(
                db_session, code=code, client_id=client.client_id, redirect_uri=REDIRECT_URI
            )
        await db_session.rollback()


async def test_concurrent_exchange_has_exactly_one_winner(
    db_session: AsyncSession, test_session_local, oauth_client, test_user
):
    client, _ = oauth_client
    code = await crud_authorization_code.issue(
        db_session, client_id=client.client_id, user_id=test_user.id, redirect_uri=REDIRECT_URI, scope="openid"
    )

    async def redeem() -> str:
        async with test_session_local() as session:
            try:
                await crud_authorization_code.consume(
                    session, code=code, client_id=client.client_id, redirect_uri=REDIRECT_URI
                )
                await session.commit()
                return "ok"
            except InvalidGrantError:
                await session.rollback()
                return "invalid_grant"

    results = await asyncio.gather(redeem(), redeem())
    assert sorted(results) == ["invalid_grant", "ok"]


async def test_prune_expired_codes(db_session: AsyncSession, oauth_client, test_user, frozen_clock):
    client, _ = oauth_client
    await crud_authorization_code.issue(
        db_session, client_id=client.client_id, user_id=test_user.id, redirect_uri=REDIRECT_URI, scope="openid"
    )
    assert await crud_authorization_code.prune_expired(db_session) == 0
    frozen_clock.advance(minutes=6)
    assert await crud_authorization_code.prune_expired(db_session) == 1
