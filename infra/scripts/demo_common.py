from __future__ import annotations

import asyncio
import time
from uuid import uuid4

import httpx


def assert_status(response: httpx.Response, expected: int | tuple[int, ...]) -> None:
    expected_codes = (expected,) if isinstance(expected, int) else expected
    if response.status_code not in expected_codes:
        raise RuntimeError(
            f"{response.request.method} {response.request.url} expected {expected_codes}, "
            f"got {response.status_code}: {response.text}"
        )


def auth_headers(token: str) -> dict[str, str]:
    return {"Authorization": f"Bearer {token}"}


async def wait_ok(client: httpx.AsyncClient, path: str, timeout_seconds: float = 60.0) -> None:
    deadline = time.monotonic() + timeout_seconds
    while time.monotonic() < deadline:
        try:
            response = await client.get(path)
            if response.status_code == 200:
                return
        except httpx.HTTPError:
            pass
        await asyncio.sleep(1.0)
    raise RuntimeError(f"timeout waiting for {path}")


async def login(client: httpx.AsyncClient, username: str, password: str) -> str:
    login_resp = await client.post(
        "/api/identity/dev-login",
        json={"username": username, "password": password},
    )
    assert_status(login_resp, 200)
    return login_resp.json()["access_token"]


async def bootstrap_admin(client: httpx.AsyncClient, prefix: str) -> tuple[str, str]:
    run_id = uuid4().hex[:8]
    username = f"{prefix}-admin-{run_id}"
    password = f"pass-{run_id}"

    bootstrap_resp = await client.post(
        "/api/identity/bootstrap-admin",
        json={"username": username, "password": password},
    )
    assert_status(bootstrap_resp, 201)
    admin_id = bootstrap_resp.json()["id"]
    return admin_id, await login(client, username, password)


async def create_user(client: httpx.AsyncClient, token: str, prefix: str) -> tuple[str, str, str]:
    run_id = uuid4().hex[:8]
    username = f"{prefix}-user-{run_id}"
    password = f"pass-{run_id}"
    user_resp = await client.post(
        "/api/identity/users",
        json={"username": username, "password": password, "display_name": username},
        headers=auth_headers(token),
    )
    assert_status(user_resp, 201)
    return user_resp.json()["id"], username, password


async def create_role(client: httpx.AsyncClient, token: str, name: str) -> str:
    role_resp = await client.post(
        "/api/identity/roles",
        json={"name": name},
        headers=auth_headers(token),
    )
    assert_status(role_resp, 201)
    return role_resp.json()["id"]
