"""
Order Service — ID プロバイダクライアント

uid からユーザー情報（表示名・メール）を取得する。
GET {base_url}/users/{uid} → {"uid", "email", "displayName"}
"""

import httpx

from .errors import IdentityLookupError
from .events import Actor, ActorRole


class IdentityClient:
    def __init__(
        self,
        base_url: str,
        timeout: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._client = httpx.AsyncClient(
            base_url=base_url, timeout=timeout, transport=transport
        )

    async def get_user(self, uid: str, role: ActorRole | None = None) -> Actor:
        """ユーザーを取得して Actor として返す。見つからない・通信失敗は IdentityLookupError。"""
        try:
            resp = await self._client.get(f"/users/{uid}")
        except httpx.HTTPError as e:
            raise IdentityLookupError(f"Identity provider unavailable: {e}") from e
        if resp.status_code == 404:
            raise IdentityLookupError(f"USER_NOT_FOUND: {uid}")
        try:
            resp.raise_for_status()
        except httpx.HTTPStatusError as e:
            raise IdentityLookupError(
                f"Identity provider error: {e.response.status_code}"
            ) from e
        user = resp.json()
        return Actor(
            uid=user.get("uid") or uid,
            display_name=user.get("displayName"),
            email=user.get("email"),
            role=role,
        )

    async def aclose(self) -> None:
        await self._client.aclose()
