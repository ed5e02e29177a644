import asyncio

import pytest
from httpx import AsyncClient
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.exceptions import RoleAssignmentException
from app.core.permissions import ALL_PERMISSIONS, PERMISSION_REGISTRY_VERSION
from app.crud import crud_app_role, crud_oauth_client
from app.models.app_role import AppRole, AppRolePermission, AppRoleAssignment

pytestmark = pytest.mark.asyncio

REDIRECT_URI = "https://app.example/cb"


async def test_default_roles_are_seeded_as_rows(db_session: AsyncSession):
    owner = (await db_session.execute(select(AppRole).where(AppRole.name == "product_owner"))).scalars().one()
    assert owner.is_singleton
    rows = (await db_session.execute(
        select(AppRolePermission.permission).where(AppRolePermission.role_id == owner.id)
    )).scalars().all()
    assert set(rows) == ALL_PERMISSIONS
    # Segunda execução não duplica
    assert await crud_app_role.seed_default_roles(db_session) == 0


async def test_permission_registry_endpoint(async_client: AsyncClient, test_user, login):
    headers = await login(test_user.email)
    response = await async_client.get("/oauth/permissions", headers=headers)
    assert response.status_code == 200
    data = response.json()
    assert data["version"] == PERMISSION_REGISTRY_VERSION
    assert set(data["permissions"]) == ALL_PERMISSIONS
    assert data["singleton_roles"] == ["product_owner"]


async def test_assign_and_list_user_apps(async_client: AsyncClient, admin_headers, oauth_client, test_user):
    client, _ = oauth_client
    response = await async_client.post(
        f"/oauth/users/{test_user.id}/apps",
        json={"client_id": client.client_id, "role": "user", "permissions": "documents:view"},
        headers=admin_headers,
    )
    assert response.status_code == 200
    assert response.json()["client_name"] == "Example App"
    assert set(response.json()["effective_permissions"]) == {"profile:read", "tickets:view", "documents:view"}

    # Upsert: a mesma (user, cliente) é atualizada, não duplicada
    response = await async_client.post(
        f"/oauth/users/{test_user.id}/apps",
        json={"client_id": client.client_id, "role": "manager"},
        headers=admin_headers,
    )
    assert response.json()["role"] == "manager"

    listing = await async_client.get(f"/oauth/users/{test_user.id}/apps", headers=admin_headers)
    assert listing.status_code == 200
    assert len(listing.json()) == 1
    assert listing.json()[0]["role"] == "manager"


async def test_assign_unknown_user_or_client(async_client: AsyncClient, admin_headers, oauth_client, test_user):
    client, _ = oauth_client
    unknown_user = await async_client.post(
        "/oauth/users/9999/apps", json={"client_id": client.client_id, "role": "user"}, headers=admin_headers
    )
    assert unknown_user.status_code == 404
    unknown_client = await async_client.post(
        f"/oauth/users/{test_user.id}/apps", json={"client_id": "ta_missing", "role": "user"}, headers=admin_headers
    )
    assert unknown_client.status_code == 404


async def test_singleton_role_has_one_holder_per_client(
    async_client: AsyncClient, admin_headers, db_session: AsyncSession, oauth_client, create_user
):
    client, _ = oauth_client
    other_client, _ = await crud_oauth_client.register(db_session, name="Second App", redirect_uris=[REDIRECT_URI])
    first = await create_user("owner1@example.com")
    second = await create_user("owner2@example.com")

    ok = await async_client.post(
        f"/oauth/users/{first.id}/apps", json={"client_id": client.client_id, "role": "product_owner"},
        headers=admin_headers,
    )
    assert ok.status_code == 200

    # Reatribuir ao mesmo titular é permitido
    again = await async_client.post(
        f"/oauth/users/{first.id}/apps", json={"client_id": client.client_id, "role": "product_owner"},
        headers=admin_headers,
    )
    assert again.status_code == 200

    conflict = await async_client.post(
        f"/oauth/users/{second.id}/apps", json={"client_id": client.client_id, "role": "product_owner"},
        headers=admin_headers,
    )
    assert conflict.status_code == 409
    assert conflict.json()["error"] == "singleton_role_taken"

    # Outro cliente tem o seu próprio titular
    elsewhere = await async_client.post(
        f"/oauth/users/{second.id}/apps", json={"client_id": other_client.client_id, "role": "product_owner"},
        headers=admin_headers,
    )
    assert elsewhere.status_code == 200


async def test_singleton_freed_when_holder_changes_role(db_session: AsyncSession, oauth_client, create_user):
    client, _ = oauth_client
    first = await create_user("a@example.com")
    second = await create_user("b@example.com")
    await crud_app_role.assign(db_session, user_id=first.id, client_id=client.client_id, role="product_owner")
    with pytest.raises(RoleAssignmentException):
        await crud_app_role.assign(db_session, user_id=second.id, client_id=client.client_id, role="product_owner")

    await crud_app_role.assign(db_session, user_id=first.id, client_id=client.client_id, role="admin")
    assignment = await crud_app_role.assign(
        db_session, user_id=second.id, client_id=client.client_id, role="product_owner"
    )
    assert assignment.role == "product_owner"


async def test_custom_singleton_role(db_session: AsyncSession, oauth_client, create_user):
    client, _ = oauth_client
    db_session.add(AppRole(name="billing_owner", is_singleton=True))
    await db_session.commit()
    first = await create_user("c@example.com")
    second = await create_user("d@example.com")
    await crud_app_role.assign(db_session, user_id=first.id, client_id=client.client_id, role="billing_owner")
    with pytest.raises(RoleAssignmentException) as exc:
        await crud_app_role.assign(db_session, user_id=second.id, client_id=client.client_id, role="billing_owner")
    assert exc.value.status_code == 409


async def test_set_role_permissions(async_client: AsyncClient, admin_headers, db_session: AsyncSession):
    response = await async_client.put(
        "/oauth/roles/auditor/permissions", json={"permissions": ["audit:view", "users:view"]}, headers=admin_headers
    )
    assert response.status_code == 200
    assert response.json() == {"role": "auditor", "is_singleton": False, "permissions": ["audit:view", "users:view"]}

    response = await async_client.put(
        "/oauth/roles/auditor/permissions", json={"permissions": ["audit:view"]}, headers=admin_headers
    )
    assert response.json()["permissions"] == ["audit:view"]
    assert await crud_app_role.get_role_permissions(db_session, role_name="auditor") == ["audit:view"]

    fetched = await async_client.get("/oauth/roles/auditor/permissions", headers=admin_headers)
    assert fetched.json()["permissions"] == ["audit:view"]


async def test_set_role_permissions_rejects_unknown(async_client: AsyncClient, admin_headers, db_session: AsyncSession):
    response = await async_client.put(
        "/oauth/roles/user/permissions", json={"permissions": ["profile:read", "root:everything"]},
        headers=admin_headers,
    )
    assert response.status_code == 400
    assert response.json()["error"] == "unknown_permission"
    # Permissões existentes ficam intactas
    assert "tickets:view" in await crud_app_role.get_role_permissions(db_session, role_name="user")


async def test_unknown_role_permissions(async_client: AsyncClient, admin_headers):
    response = await async_client.get("/oauth/roles/ghost/permissions", headers=admin_headers)
    assert response.status_code == 404


async def test_effective_permissions_without_assignment(db_session: AsyncSession, oauth_client, test_user):
    client, _ = oauth_client
    assert await crud_app_role.effective_permissions(db_session, user_id=test_user.id, client_id=client.client_id) == []


async def test_concurrent_singleton_assignment_has_one_winner(
    db_session: AsyncSession, test_session_local, oauth_client, create_user
):
    client, _ = oauth_client
    client_id = client.client_id
    user_ids = [(await create_user(f"owner{i}@example.com")).id for i in (1, 2)]

    async def claim(user_id: int) -> str:
        async with test_session_local() as session:
            try:
                await crud_app_role.assign(session, user_id=user_id, client_id=client_id, role="product_owner")
                return "ok"
            except RoleAssignmentException as exc:
                return exc.error

    results = await asyncio.gather(*(claim(user_id) for user_id in user_ids))
    assert sorted(results) == ["ok", "singleton_role_taken"]

    holders = (await db_session.execute(
        select(AppRoleAssignment.user_id).where(
            AppRoleAssignment.client_id == client_id, AppRoleAssignment.role == "product_owner"
        )
    )).scalars().all()
    assert len(holders) == 1


async def test_singleton_holder_column_tracks_role(db_session: AsyncSession, oauth_client, test_user):
    client, _ = oauth_client
    owner = await crud_app_role.assign(
        db_session, user_id=test_user.id, client_id=client.client_id, role="product_owner"
    )
    assert owner.singleton_role == "product_owner"
    demoted = await crud_app_role.assign(
        db_session, user_id=test_user.id, client_id=client.client_id, role="manager"
    )
    assert demoted.singleton_role is None
