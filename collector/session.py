"""ストアフロントごとのセッション（Cookie / トークン）管理.

1 回の実行ごとに SessionStore を作り、ストアフロント単位で SessionContext を保持する。
SessionContext は専用の httpx.AsyncClient を持ち、その Cookie jar がアフィニティ情報となる。
"""

from __future__ import annotations

import asyncio
import base64
import json
import logging
import uuid
from dataclasses import dataclass, field
from urllib.parse import urlparse

import httpx

from collector.client import StorefrontClient
from collector.config import (
    COUNTRY_ISO3,
    DEFAULT_SALES_CHANNEL,
    PROXY_URL,
    REQUEST_TIMEOUT,
    USER_AGENT,
    WARMUP_PATHS,
)
from collector.models import Storefront

logger = logging.getLogger(__name__)

SEGMENT_COOKIE = "vtex_segment"


@dataclass
class SessionContext:
    """1 ストアフロント分のセッション状態."""

    storefront: Storefront
    domain: str
    http: httpx.AsyncClient
    sales_channel: int | None = None
    region_id: str | None = None
    last_request_at: float | None = None
    warmed_up: bool = False
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)

    @property
    def host(self) -> str:
        return self.storefront.host

    @property
    def cookies(self) -> httpx.Cookies:
        return self.http.cookies

    def cookie(self, name: str) -> str | None:
        for c in self.http.cookies.jar:
            if c.name == name:
                return c.value
        return None

    def set_cookie(self, name: str, value: str) -> None:
        """同名 Cookie をすべて取り除いてから設定する."""
        jar = self.http.cookies.jar
        for c in list(jar):
            if c.name == name:
                jar.clear(c.domain, c.path, c.name)
        self.http.cookies.set(name, value, domain=self.domain, path="/")


@dataclass(frozen=True)
class WarmupOutcome:
    """ウォームアップの結果（失敗しても例外にはしない）."""

    host: str
    succeeded: int
    failed: int

    @property
    def ok(self) -> bool:
        return self.failed == 0


def encode_segment(
    storefront: Storefront,
    sales_channel: int,
    region_id: str | None = None,
) -> str:
    """vtex_segment トークンを組み立てる.

    キー順は固定なので、同じ入力からは常に同じ値になる。
    """
    segment: dict[str, object] = {
        "campaigns": None,
        "channel": str(sales_channel),
        "priceTables": None,
    }
    if region_id:
        segment["regionId"] = region_id
    segment.update({
        "utm_campaign": None,
        "utm_source": None,
        "utmi_campaign": None,
        "currencyCode": storefront.currency_code,
        "currencySymbol": storefront.currency_symbol,
        "countryCode": COUNTRY_ISO3.get(storefront.country_code, storefront.country_code),
        "cultureInfo": storefront.locale,
        "admin_cultureInfo": storefront.locale,
        "channelPrivacy": "public",
    })
    raw = json.dumps(segment, separators=(",", ":"))
    return base64.b64encode(raw.encode("utf-8")).decode("ascii")


def decode_segment(token: str) -> dict:
    """encode_segment の逆変換."""
    return json.loads(base64.b64decode(token).decode("utf-8"))


def _accept_language(locale: str) -> str:
    lang = locale.split("-")[0]
    return f"{locale},{lang};q=0.9,en;q=0.8"


class SessionStore:
    """ストアフロント → SessionContext のレジストリ."""

    def __init__(
        self,
        client: StorefrontClient,
        transport: httpx.AsyncBaseTransport | None = None,
        timeout: float = REQUEST_TIMEOUT,
        proxy: str | None = PROXY_URL,
    ) -> None:
        self._client = client
        self._transport = transport
        self._timeout = timeout
        self._proxy = proxy
        self._contexts: dict[str, SessionContext] = {}

    def get_or_create(self, storefront: Storefront) -> SessionContext:
        """既存のコンテキストを返す。なければ既定 Cookie 付きで作成する（通信はしない）."""
        ctx = self._contexts.get(storefront.host)
        if ctx is not None:
            return ctx

        domain = urlparse(storefront.base_url).hostname or storefront.host
        ctx = SessionContext(
            storefront=storefront,
            domain=domain,
            http=self._build_http(storefront),
        )
        ctx.set_cookie("locale", storefront.locale)
        ctx.set_cookie("VtexWorkspace", "master:-")
        ctx.set_cookie("vtex-search-anonymous", uuid.uuid4().hex)
        ctx.set_cookie("vtex-search-session", uuid.uuid4().hex)
        if storefront.account_name:
            ctx.set_cookie("vtex_binding_address", f"{storefront.account_name}.myvtex.com/")

        default_channel = (
            storefront.sales_channels[0] if storefront.sales_channels else DEFAULT_SALES_CHANNEL
        )
        self.bind_sales_channel(ctx, default_channel)

        self._contexts[storefront.host] = ctx
        logger.debug("セッション作成: %s", storefront.host)
        return ctx

    def _build_http(self, storefront: Storefront) -> httpx.AsyncClient:
        headers = {
            "User-Agent": USER_AGENT,
            "Accept": "application/json, text/plain, */*",
            "Accept-Language": _accept_language(storefront.locale),
        }
        kwargs: dict = {
            "base_url": storefront.base_url,
            "headers": headers,
            "timeout": httpx.Timeout(self._timeout),
            "follow_redirects": True,
        }
        if self._transport is not None:
            kwargs["transport"] = self._transport
        elif self._proxy:
            kwargs["proxy"] = self._proxy
        return httpx.AsyncClient(**kwargs)

    async def warmup(self, storefront: Storefront, ctx: SessionContext) -> WarmupOutcome:
        """低リスクな GET を順に発行して Cookie を集める.

        各ステップの失敗はログに残して握りつぶす。既定 Cookie のままでも
        プローブが通ることがあるため、ここでは例外を投げない。
        """
        logger.info("ウォームアップ開始: %s", storefront.display_name)
        succeeded = 0
        failed = 0
        for path in WARMUP_PATHS:
            resp = await self._client.fetch(ctx, path)
            if resp is not None and resp.status_code < 400:
                succeeded += 1
            else:
                failed += 1
                status = resp.status_code if resp is not None else "network error"
                logger.warning("ウォームアップ失敗: %s%s (%s)", storefront.base_url, path, status)

        ctx.warmed_up = True
        logger.info(
            "ウォームアップ完了: %s 成功=%d 失敗=%d Cookie=%d 件",
            storefront.display_name, succeeded, failed, len(ctx.http.cookies.jar),
        )
        return WarmupOutcome(host=storefront.host, succeeded=succeeded, failed=failed)

    def bind_sales_channel(
        self,
        ctx: SessionContext,
        channel: int,
        region_id: str | None = None,
    ) -> bool:
        """セグメントトークンを指定チャネルで作り直す.

        Returns:
            トークンを書き換えた場合 True。同じチャネルが既に設定済みなら False。
        """
        token = encode_segment(ctx.storefront, channel, region_id)
        if (
            ctx.sales_channel == channel
            and ctx.region_id == region_id
            and ctx.cookie(SEGMENT_COOKIE) == token
        ):
            return False
        ctx.set_cookie(SEGMENT_COOKIE, token)
        ctx.sales_channel = channel
        ctx.region_id = region_id
        logger.debug("セグメント更新: %s sc=%d region=%s", ctx.host, channel, region_id)
        return True

    async def close(self) -> None:
        """全ストアフロントの HTTP クライアントを閉じる."""
        for ctx in self._contexts.values():
            await ctx.http.aclose()
        self._contexts.clear()

    async def __aenter__(self) -> SessionStore:
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()
