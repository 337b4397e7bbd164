"""Twitch Helix API クライアント (配信中かどうかの確認のみ)."""

import asyncio
import logging

import httpx

from stream_webpage.errors import ExternalQueryError

logger = logging.getLogger(__name__)

TOKEN_URL = "https://id.twitch.tv/oauth2/token"
STREAMS_URL = "https://api.twitch.tv/helix/streams"
DEFAULT_TIMEOUT = 10.0


class TwitchClient:
    """アプリアクセストークンで Helix API を呼ぶ.

    トークンは最初の問い合わせ時に一度だけ取得し、プロセス終了までキャッシュする。

    Args:
        client_id: Twitch アプリのクライアント ID
        client_secret: Twitch アプリのクライアントシークレット
        http: 差し替え用の httpx.AsyncClient (省略時は内部で生成)
    """

    def __init__(
        self,
        client_id: str,
        client_secret: str,
        http: httpx.AsyncClient | None = None,
    ):
        self._client_id = client_id
        self._client_secret = client_secret
        self._http = http or httpx.AsyncClient(timeout=DEFAULT_TIMEOUT)
        self._owns_http = http is None
        self._token: str | None = None
        self._token_lock = asyncio.Lock()

    async def _access_token(self) -> str:
        async with self._token_lock:
            if self._token is not None:
                return self._token

            if not self._client_id or not self._client_secret:
                raise ExternalQueryError(
                    "Twitch client ID and client secret must be set"
                )

            try:
                resp = await self._http.post(
                    TOKEN_URL,
                    params={
                        "client_id": self._client_id,
                        "client_secret": self._client_secret,
                        "grant_type": "client_credentials",
                    },
                )
                resp.raise_for_status()
                token = resp.json()["access_token"]
            except (httpx.HTTPError, KeyError, ValueError) as e:
                raise ExternalQueryError(f"failed to get Twitch app access token: {e}") from e

            logger.info("Obtained Twitch app access token")
            self._token = token
            return token

    async def is_live(self, channel: str) -> bool:
        """チャンネルが配信中か確認する.

        Raises:
            ExternalQueryError: 認証または API 呼び出しに失敗した場合
        """
        token = await self._access_token()
        try:
            resp = await self._http.get(
                STREAMS_URL,
                params={"user_login": channel},
                headers={
                    "Client-Id": self._client_id,
                    "Authorization": f"Bearer {token}",
                },
            )
            resp.raise_for_status()
            streams = resp.json().get("data", [])
        except (httpx.HTTPError, ValueError, AttributeError) as e:
            raise ExternalQueryError(f"failed to get Twitch stream status: {e}") from e

        if not streams:
            return False
        logger.info("Stream is live: %s", streams[0].get("title", ""))
        return True

    async def aclose(self) -> None:
        if self._owns_http:
            await self._http.aclose()
