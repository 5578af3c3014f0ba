"""Supabase データベース操作モジュール.

全テーブルは availability_probe スキーマに配置。
Supabase client のスキーマ指定は .schema() で行う。

ストアフロント・追跡商品・カタログ対応表・拠点はカタログ同期側が管理しており、
このモジュールは読み取りと option id の書き戻し、在庫結果の upsert のみを行う。
"""

from __future__ import annotations

import asyncio
import logging

from supabase import Client, create_client

from collector import config
from collector.errors import ConfigError
from collector.models import (
    CatalogItem,
    FulfillmentMode,
    FulfillmentPoint,
    ProbeResult,
    Storefront,
    TrackedItem,
)

logger = logging.getLogger(__name__)

_client: Client | None = None


def _get_client() -> Client:
    """Supabase client を遅延生成する（認証情報がなければ ConfigError）."""
    global _client
    if _client is None:
        if not config.SUPABASE_URL or not config.SUPABASE_SECRET_KEY:
            raise ConfigError("SUPABASE_URL / SUPABASE_SECRET_KEY が設定されていません")
        _client = create_client(config.SUPABASE_URL, config.SUPABASE_SECRET_KEY)
    return _client


def _schema():
    """availability_probe スキーマを参照する."""
    return _get_client().schema(config.DB_SCHEMA)


def _table(name: str):
    """availability_probe スキーマのテーブルを参照する."""
    return _schema().table(name)


def _parse_sales_channels(raw) -> tuple[int, ...]:
    """"1,2" / [1, 2] / 1 のいずれの形式でも受け付ける。解釈できない値は 1 とみなす."""
    if raw is None or raw == "":
        return (config.DEFAULT_SALES_CHANNEL,)
    if isinstance(raw, (list, tuple)):
        parts = [str(p) for p in raw]
    else:
        parts = str(raw).split(",")
    channels = []
    for part in parts:
        part = part.strip()
        if not part:
            continue
        try:
            channels.append(int(part))
        except ValueError:
            channels.append(config.DEFAULT_SALES_CHANNEL)
    return tuple(dict.fromkeys(channels)) or (config.DEFAULT_SALES_CHANNEL,)


def _to_float(value) -> float | None:
    if value is None or value == "":
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def get_enabled_storefronts(host: str | None = None) -> list[Storefront]:
    """有効なストアフロントを取得する.

    Args:
        host: 指定すればそのホストだけに絞り込む
    """
    query = _table("storefronts").select("*").eq("enabled", True)
    if host:
        query = query.eq("host", host)
    resp = query.execute()

    storefronts = []
    for row in resp.data:
        try:
            mode = FulfillmentMode(row.get("fulfillment_mode") or config.FULFILLMENT_MODE)
        except ValueError:
            logger.warning("不明な fulfillment_mode を auto として扱います: %s", row.get("fulfillment_mode"))
            mode = FulfillmentMode.AUTO
        require_option = row.get("require_fulfillment_option")
        storefronts.append(Storefront(
            host=row["host"],
            sales_channels=_parse_sales_channels(row.get("sales_channels")),
            enabled=bool(row.get("enabled", True)),
            name=row.get("name") or "",
            account_name=row.get("account_name"),
            country_code=row.get("country_code") or config.DEFAULT_COUNTRY_CODE,
            currency_code=row.get("currency_code") or config.DEFAULT_CURRENCY_CODE,
            currency_symbol=row.get("currency_symbol") or config.DEFAULT_CURRENCY_SYMBOL,
            locale=row.get("locale") or config.DEFAULT_LOCALE,
            fulfillment_mode=mode,
            require_fulfillment_option=True if require_option is None else bool(require_option),
        ))
    return storefronts


def get_tracked_items() -> list[TrackedItem]:
    """追跡対象（track = true）の商品を取得する."""
    resp = (
        _table("tracked_items")
        .select("merchandise_key, name")
        .eq("track", True)
        .execute()
    )
    return [
        TrackedItem(merchandise_key=row["merchandise_key"], name=row.get("name"))
        for row in resp.data
        if row.get("merchandise_key")
    ]


def get_catalog_items(host: str, merchandise_keys: list[str]) -> list[CatalogItem]:
    """ストアフロントのカタログに存在する追跡商品を SKU / seller 付きで取得する."""
    if not merchandise_keys:
        return []
    resp = (
        _table("catalog_skus")
        .select("merchandise_key, sku_id, seller_id, name")
        .eq("storefront_host", host)
        .in_("merchandise_key", merchandise_keys)
        .execute()
    )

    seen: set[tuple[str, str]] = set()
    items = []
    for row in resp.data:
        item = CatalogItem(
            merchandise_key=row["merchandise_key"],
            sku_id=str(row["sku_id"]),
            seller_id=str(row["seller_id"]),
            name=row.get("name"),
        )
        if item.key in seen:
            continue
        seen.add(item.key)
        items.append(item)
    return items


def get_fulfillment_points(host: str) -> list[FulfillmentPoint]:
    """ストアフロントの有効な拠点を取得する（郵便番号も座標も option id もない拠点は除外）."""
    resp = (
        _table("fulfillment_points")
        .select("point_key, name, postal_code, latitude, longitude, option_id, city, state")
        .eq("storefront_host", host)
        .eq("active", True)
        .execute()
    )

    points = []
    for row in resp.data:
        point = FulfillmentPoint(
            key=str(row["point_key"]),
            postal_code=row.get("postal_code") or None,
            latitude=_to_float(row.get("latitude")),
            longitude=_to_float(row.get("longitude")),
            option_id=row.get("option_id") or None,
            name=row.get("name") or "",
            city=row.get("city"),
            state=row.get("state"),
        )
        if not (point.postal_code or point.has_geo or point.option_id):
            logger.warning("位置情報のない拠点をスキップ: %s/%s", host, point.key)
            continue
        points.append(point)
    return points


def update_fulfillment_option_id(host: str, point_key: str, option_id: str) -> None:
    """プローブで判明した option id を拠点に書き戻す."""
    (
        _table("fulfillment_points")
        .update({"option_id": option_id})
        .eq("storefront_host", host)
        .eq("point_key", point_key)
        .execute()
    )
    logger.info("option id を更新: %s/%s → %s", host, point_key, option_id)


def upsert_probe_result(row: dict) -> bool:
    """在庫結果を条件付きで upsert する.

    DB 側の関数が captured_at を比較し、保存済みより古い結果なら何もしない。

    Returns:
        書き込まれた場合 True
    """
    resp = _schema().rpc("upsert_probe_result", {"payload": row}).execute()
    return bool(resp.data)


class SupabaseCatalog:
    """オーケストレータ向けの非同期アダプタ（同期 client をスレッドで呼ぶ）."""

    async def get_enabled_storefronts(self, host: str | None = None) -> list[Storefront]:
        return await asyncio.to_thread(get_enabled_storefronts, host)

    async def get_tracked_items(self) -> list[TrackedItem]:
        return await asyncio.to_thread(get_tracked_items)

    async def get_catalog_items(
        self, storefront: Storefront, tracked: list[TrackedItem],
    ) -> list[CatalogItem]:
        keys = [t.merchandise_key for t in tracked]
        return await asyncio.to_thread(get_catalog_items, storefront.host, keys)

    async def get_fulfillment_points(self, storefront: Storefront) -> list[FulfillmentPoint]:
        return await asyncio.to_thread(get_fulfillment_points, storefront.host)

    async def report_option_id(
        self, storefront: Storefront, point: FulfillmentPoint, option_id: str,
    ) -> None:
        await asyncio.to_thread(update_fulfillment_option_id, storefront.host, point.key, option_id)


class SupabaseResultStore:
    """ResultSink の永続化先（Supabase）."""

    async def upsert(self, result: ProbeResult) -> bool:
        return await asyncio.to_thread(upsert_probe_result, result.to_row())
