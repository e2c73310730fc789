from __future__ import annotations

import asyncio
import os

import httpx
from demo_common import (
    assert_status,
    auth_headers,
    bootstrap_admin,
    create_role,
    create_user,
    login,
    wait_ok,
)


async def _run() -> None:
    base_url = os.getenv("APP_BASE_URL", "http://app:8000").rstrip("/")
    timeout = httpx.Timeout(20.0)
    async with httpx.AsyncClient(base_url=base_url, timeout=timeout) as client:
        await wait_ok(client, "/healthz")
        await wait_ok(client, "/readyz")

        _admin_id, admin_token = await bootstrap_admin(client, "pages")
        role_id = await create_role(client, admin_token, "Warehouse")
        user_id, username, password = await create_user(client, admin_token, "pages")

        bind_resp = await client.put(
            f"/api/identity/users/{user_id}/roles/{role_id}",
            headers=auth_headers(admin_token),
        )
        assert_status(bind_resp, 200)

        commit_resp = await client.post(
            "/api/matrix/commit",
            json={
                "changes": [
                    {"role_id": role_id, "page_key": "/inventory", "allowed": True},
                    {"role_id": role_id, "page_key": "/reports/", "allowed": True},
                ]
            },
            headers=auth_headers(admin_token),
        )
        assert_status(commit_resp, 200)
        if commit_resp.json()["errors"]:
            raise RuntimeError(f"matrix commit reported errors: {commit_resp.json()['errors']}")

        user_token = await login(client, username, password)
        allowed_resp = await client.get(
            "/api/access/check",
            params={"path": "/inventory"},
            headers=auth_headers(user_token),
        )
        assert_status(allowed_resp, 200)
        if not allowed_resp.json()["allowed"]:
            raise RuntimeError("expected /inventory to be allowed")

        denied_resp = await client.get(
            "/api/access/check",
            params={"path": "/dev"},
            headers=auth_headers(user_token),
        )
        assert_status(denied_resp, 200)
        if denied_resp.json()["allowed"]:
            raise RuntimeError("expected /dev to be denied")

        matrix_resp = await client.get("/api/matrix", headers=auth_headers(user_token))
        assert_status(matrix_resp, 403)

        nav_resp = await client.get("/api/access/navigation", headers=auth_headers(user_token))
        assert_status(nav_resp, 200)

    print("demo_page_access: ok")


def main() -> None:
    asyncio.run(_run())


if __name__ == "__main__":
    main()
