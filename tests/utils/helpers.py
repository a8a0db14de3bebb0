from typing import Any

import httpx


def set_access_token_cookie(client: httpx.AsyncClient, access_token: str) -> None:
    """Set only the access token cookie on the test client."""
    client.cookies.set("access_token", access_token)


def assert_error_response(response: httpx.Response, status_code: int, code: str) -> dict[str, Any]:
    """Assert the AppError envelope and return its error object."""
    assert response.status_code == status_code
    body = response.json()
    assert body["success"] is False
    assert body["error"]["code"] == code
    error: dict[str, Any] = body["error"]
    return error
