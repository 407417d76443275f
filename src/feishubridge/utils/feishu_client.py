"""Async HTTP client for the Feishu/Lark open platform messaging API."""

from __future__ import annotations

import json
from typing import Any, Awaitable, Callable, Dict, Optional

import httpx
from loguru import logger

from feishubridge.utils.config import FeishuConfig

TokenProvider = Callable[[], Awaitable[str]]


class FeishuAPIError(RuntimeError):
    """Raised when the platform rejects a request or the transport fails."""

    def __init__(
        self, endpoint: str, status: int, detail: str, code: Optional[int] = None
    ) -> None:
        super().__init__(f"{endpoint} failed with status {status} (code={code}): {detail}")
        self.endpoint = endpoint
        self.status = status
        self.detail = detail
        self.code = code


def static_token(token: Optional[str]) -> TokenProvider:
    """Token provider returning a fixed tenant access token."""

    async def _provide() -> str:
        return token or ""

    return _provide


class FeishuClient:
    """Thin wrapper over the ``/open-apis`` message, reaction and bot endpoints."""

    def __init__(
        self,
        base_url: str,
        *,
        token_provider: Optional[TokenProvider] = None,
        timeout: float = 10.0,
        http_client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self._token_provider = token_provider or static_token(None)
        self._http = http_client or httpx.AsyncClient(timeout=timeout)

    @classmethod
    def from_config(
        cls,
        config: FeishuConfig,
        *,
        token_provider: Optional[TokenProvider] = None,
        http_client: Optional[httpx.AsyncClient] = None,
    ) -> "FeishuClient":
        return cls(
            config.base_url,
            token_provider=token_provider or static_token(config.tenant_access_token),
            http_client=http_client,
        )

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    async def close(self) -> None:
        if self._http is not None:
            await self._http.aclose()
            self._http = None

    async def _request(
        self,
        method: str,
        path: str,
        *,
        params: Optional[Dict[str, Any]] = None,
        body: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        if self._http is None:
            raise RuntimeError("FeishuClient is closed")

        token = await self._token_provider()
        headers = {"Content-Type": "application/json; charset=utf-8"}
        if token:
            headers["Authorization"] = f"Bearer {token}"

        endpoint = f"{method} {path}"
        try:
            response = await self._http.request(
                method,
                f"{self.base_url}{path}",
                params=params,
                json=body,
                headers=headers,
            )
        except httpx.HTTPError as exc:
            raise FeishuAPIError(endpoint, 0, str(exc)) from exc

        try:
            data = response.json()
        except ValueError:
            data = {"code": -1, "msg": response.text or "invalid JSON"}
        if not isinstance(data, dict):
            data = {"code": -1, "msg": "unexpected response body"}

        code = data.get("code", 0)
        if response.is_error or code != 0:
            raise FeishuAPIError(
                endpoint,
                response.status_code,
                str(data.get("msg") or response.reason_phrase),
                code,
            )
        return data

    async def _send_message(
        self,
        chat_id: str,
        msg_type: str,
        content: Dict[str, Any],
        reply_to_message_id: Optional[str],
    ) -> str:
        encoded = json.dumps(content, ensure_ascii=False)
        if reply_to_message_id:
            data = await self._request(
                "POST",
                f"/open-apis/im/v1/messages/{reply_to_message_id}/reply",
                body={"msg_type": msg_type, "content": encoded},
            )
        else:
            data = await self._request(
                "POST",
                "/open-apis/im/v1/messages",
                params={"receive_id_type": "chat_id"},
                body={"receive_id": chat_id, "msg_type": msg_type, "content": encoded},
            )
        message_id = (data.get("data") or {}).get("message_id")
        if not message_id:
            raise FeishuAPIError("send message", 200, "response missing message_id")
        return message_id

    async def send_card(
        self,
        chat_id: str,
        card: Dict[str, Any],
        *,
        reply_to_message_id: Optional[str] = None,
    ) -> str:
        """Send an interactive card and return its message id."""
        return await self._send_message(chat_id, "interactive", card, reply_to_message_id)

    async def update_card(self, message_id: str, card: Dict[str, Any]) -> None:
        """Replace the content of a previously sent card."""
        await self._request(
            "PATCH",
            f"/open-apis/im/v1/messages/{message_id}",
            body={"content": json.dumps(card, ensure_ascii=False)},
        )

    async def send_text(
        self,
        chat_id: str,
        text: str,
        *,
        reply_to_message_id: Optional[str] = None,
    ) -> str:
        return await self._send_message(chat_id, "text", {"text": text}, reply_to_message_id)

    async def add_reaction(self, message_id: str, emoji_type: str) -> Optional[str]:
        data = await self._request(
            "POST",
            f"/open-apis/im/v1/messages/{message_id}/reactions",
            body={"reaction_type": {"emoji_type": emoji_type}},
        )
        return (data.get("data") or {}).get("reaction_id")

    async def delete_reaction(self, message_id: str, reaction_id: str) -> None:
        await self._request(
            "DELETE",
            f"/open-apis/im/v1/messages/{message_id}/reactions/{reaction_id}",
        )

    async def get_bot_open_id(self) -> Optional[str]:
        data = await self._request("GET", "/open-apis/bot/v3/info")
        bot = data.get("bot") or (data.get("data") or {}).get("bot") or {}
        open_id = bot.get("open_id")
        logger.debug(f"Bot info resolved: open_id={open_id}")
        return open_id
