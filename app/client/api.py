"""Async HTTP client for the messaging API.

Responses are parsed into the same pydantic schemas the server returns and
error envelopes are turned back into the ``AppError`` hierarchy, so client
code handles ``NotFoundError`` or ``TransientStoreError`` exactly like the
services do.
"""

import logging
from typing import Any

import httpx

from app.core.config import settings
from app.core.exceptions import AppError, TransientStoreError, error_from_payload
from app.messaging.schemas.conversation import (
    ConversationListResponse,
    ConversationResponse,
)
from app.messaging.schemas.message import ConversationDetail, MessagePage, MessageResponse

logger = logging.getLogger(__name__)


class MessagingClient:
    def __init__(
        self,
        base_url: str,
        access_token: str | None = None,
        timeout: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        cookies = {"access_token": access_token} if access_token else None
        self._http = httpx.AsyncClient(
            base_url=f"{base_url.rstrip('/')}{settings.API_V1_PREFIX}/messages",
            cookies=cookies,
            timeout=timeout if timeout is not None else settings.SYNC_POLL_TIMEOUT_SECONDS,
            transport=transport,
        )

    async def __aenter__(self) -> "MessagingClient":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._http.aclose()

    async def _request(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        try:
            response = await self._http.request(method, path, **kwargs)
        except httpx.TimeoutException as e:
            raise TransientStoreError("Request timed out", operation=f"{method} {path}") from e
        except httpx.TransportError as e:
            logger.warning("Transport error on %s %s: %s", method, path, e)
            raise TransientStoreError("Server unreachable", operation=f"{method} {path}") from e

        if response.is_error:
            raise self._error_for(response)
        return response

    @staticmethod
    def _error_for(response: httpx.Response) -> AppError:
        try:
            payload = response.json()
        except ValueError:
            payload = None
        if not isinstance(payload, dict):
            payload = None
        return error_from_payload(response.status_code, payload)

    async def list_conversations(
        self, search: str | None = None, page: int = 1, limit: int = 20
    ) -> ConversationListResponse:
        params: dict[str, Any] = {"page": page, "limit": limit}
        if search:
            params["search"] = search
        response = await self._request("GET", "/conversations", params=params)
        return ConversationListResponse.model_validate(response.json())

    async def open_conversation(self, conversation_id: str, limit: int | None = None) -> ConversationDetail:
        params = {"limit": limit} if limit else None
        response = await self._request("GET", f"/conversations/{conversation_id}", params=params)
        return ConversationDetail.model_validate(response.json())

    async def list_messages(
        self,
        conversation_id: str,
        cursor: str | None = None,
        before: str | None = None,
        limit: int | None = None,
    ) -> MessagePage:
        params: dict[str, Any] = {}
        if cursor:
            params["cursor"] = cursor
        if before:
            params["before"] = before
        if limit:
            params["limit"] = limit
        response = await self._request(
            "GET", f"/conversations/{conversation_id}/messages", params=params
        )
        return MessagePage.model_validate(response.json())

    async def send_message(
        self,
        conversation_id: str,
        content: str,
        image_url: str | None = None,
        client_key: str | None = None,
    ) -> MessageResponse:
        body: dict[str, Any] = {"content": content}
        if image_url:
            body["image_url"] = image_url
        if client_key:
            body["client_key"] = client_key
        response = await self._request(
            "POST", f"/conversations/{conversation_id}/messages", json=body
        )
        return MessageResponse.model_validate(response.json())

    async def mark_read(self, conversation_id: str, up_to: str | None = None) -> int:
        params = {"up_to": up_to} if up_to else None
        response = await self._request(
            "PUT", f"/conversations/{conversation_id}/read", params=params
        )
        return int(response.json()["marked_read"])

    async def get_unread_count(self, conversation_id: str) -> int:
        response = await self._request("GET", f"/conversations/{conversation_id}/unread-count")
        return int(response.json()["unread_count"])

    async def get_total_unread_count(self) -> int:
        response = await self._request("GET", "/unread-count")
        return int(response.json()["unread_count"])

    async def start_direct_conversation(self, user_id: str) -> ConversationResponse:
        response = await self._request("POST", "/conversations/direct", json={"user_id": user_id})
        return ConversationResponse.model_validate(response.json())

    async def create_group_conversation(
        self, member_ids: list[str], name: str | None = None
    ) -> ConversationResponse:
        response = await self._request(
            "POST", "/conversations/group", json={"member_ids": member_ids, "name": name}
        )
        return ConversationResponse.model_validate(response.json())
