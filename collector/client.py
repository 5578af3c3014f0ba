"""ストアフロント API への HTTP 呼び出しと失敗分類.

すべてのリクエストは RateGovernor の実行権を 1 つ保持した状態で発行する。
"""

from __future__ import annotations

import json
import logging
from typing import TYPE_CHECKING, Any

import httpx

from collector.config import BLOCKED_MARKERS, BLOCKED_PAGE_MARKERS
from collector.errors import FailureKind, ProbeError
from collector.governor import RateGovernor

if TYPE_CHECKING:
    from collector.session import SessionContext

logger = logging.getLogger(__name__)

# 再試行で回復しうる 4xx
_RETRYABLE_CLIENT_STATUSES = {408, 429}


def find_blocked_marker(
    body: str | None, markers=BLOCKED_MARKERS + BLOCKED_PAGE_MARKERS,
) -> str | None:
    """本文中の anti-automation マーカーを探す."""
    if not body:
        return None
    lowered = body.lower()
    for marker in markers:
        if marker.lower() in lowered:
            return marker
    return None


def _looks_like_json(body: str) -> bool:
    return body.lstrip()[:1] in ("{", "[")


def classify_response(status_code: int, body: str | None) -> FailureKind | None:
    """HTTP レスポンスを失敗分類に振り分ける.

    チャレンジページの文言は、2xx の JSON 本文以外にだけ適用する。

    Returns:
        失敗分類。成功レスポンスなら None。
    """
    ok = 200 <= status_code < 300
    if find_blocked_marker(body, BLOCKED_MARKERS):
        return FailureKind.BLOCKED
    if body and not (ok and _looks_like_json(body)) and find_blocked_marker(body, BLOCKED_PAGE_MARKERS):
        return FailureKind.BLOCKED
    if ok:
        return None
    if status_code >= 500 or status_code in _RETRYABLE_CLIENT_STATUSES:
        return FailureKind.TRANSIENT
    return FailureKind.PERMANENT


def _excerpt(body: str | None, limit: int = 240) -> str:
    if not body:
        return ""
    return body if len(body) <= limit else body[:limit] + "..."


class StorefrontClient:
    """RateGovernor 経由でストアフロントにリクエストを送る."""

    def __init__(self, governor: RateGovernor) -> None:
        self.governor = governor

    async def _send(
        self,
        ctx: SessionContext,
        method: str,
        path: str,
        **kwargs: Any,
    ) -> httpx.Response:
        async with self.governor.acquire(ctx.host) as lease:
            ctx.last_request_at = lease.issued_at
            return await ctx.http.request(method, path, **kwargs)

    async def request(
        self,
        ctx: SessionContext,
        method: str,
        path: str,
        *,
        params: dict | None = None,
        json_body: Any = None,
        step: str = "",
    ) -> dict:
        """チェックアウト API を呼び出し、JSON オブジェクトを返す.

        Raises:
            ProbeError: 通信失敗・エラーステータス・ブロック・想定外のペイロード
        """
        step = step or f"{method} {path}"
        headers = {
            "Referer": f"{ctx.storefront.base_url}/",
            "X-Requested-With": "XMLHttpRequest",
        }
        try:
            resp = await self._send(
                ctx, method, path, params=params, json=json_body, headers=headers,
            )
        except httpx.TimeoutException as e:
            raise ProbeError(FailureKind.TRANSIENT, f"{step}: タイムアウト ({e!r})") from e
        except httpx.TransportError as e:
            raise ProbeError(FailureKind.TRANSIENT, f"{step}: 通信エラー ({e!r})") from e

        body = resp.text
        kind = classify_response(resp.status_code, body)
        if kind is FailureKind.BLOCKED:
            marker = find_blocked_marker(body)
            raise ProbeError(
                kind, f"{step}: ブロック検出 {marker} (HTTP {resp.status_code})",
                resp.status_code, body,
            )
        if kind is not None:
            raise ProbeError(
                kind, f"{step}: HTTP {resp.status_code} {_excerpt(body)}",
                resp.status_code, body,
            )

        try:
            payload = json.loads(body)
        except json.JSONDecodeError as e:
            raise ProbeError(
                FailureKind.PERMANENT, f"{step}: JSON ではないレスポンス", resp.status_code, body,
            ) from e
        if not isinstance(payload, dict):
            raise ProbeError(
                FailureKind.PERMANENT, f"{step}: 想定外のペイロード形状", resp.status_code, body,
            )
        return payload

    async def fetch(self, ctx: SessionContext, path: str) -> httpx.Response | None:
        """ウォームアップ用の GET。通信エラー時は None を返す."""
        try:
            return await self._send(ctx, "GET", path)
        except httpx.HTTPError as e:
            logger.debug("GET 失敗: %s%s error=%s", ctx.storefront.base_url, path, e)
            return None
