"""在庫確認プロトコル（orderForm シミュレーション）の実行モジュール.

処理フロー（1 拠点 × N 商品を 1 セッションで確認する）:
  1. orderForm を作成して orderFormId を得る
  2. 商品明細を追加する（この時点で在庫なしの明細は確定）
  3. 配送情報を付与する（店舗受取 → 配送 の順に形状を試す）
  4. レスポンス（不足していれば orderForm を再取得）をパースする

単品確認は N=1 のバッチとして扱う。
"""

from __future__ import annotations

import json
import logging
from collections.abc import Callable
from dataclasses import replace
from enum import Enum

from collector.client import StorefrontClient
from collector.errors import FailureKind, ProbeError
from collector.models import (
    CatalogItem,
    FulfillmentMode,
    FulfillmentPoint,
    ItemOutcome,
    Storefront,
    Unparseable,
)
from collector.parser import (
    DELIVERY_CHANNEL,
    PICKUP_CHANNEL,
    needs_refresh,
    parse_order_form_id,
    parse_simulation,
    parse_staged_items,
)
from collector.session import SessionContext

logger = logging.getLogger(__name__)

ORDER_FORM_PATH = "/api/checkout/pub/orderForm"


class ProbeState(str, Enum):
    """プロトコルの状態."""

    INIT = "init"
    SESSION_OBTAINED = "session_obtained"
    ITEM_STAGED = "item_staged"
    FULFILLMENT_SIMULATED = "fulfillment_simulated"
    PARSED = "parsed"
    FAILED = "failed"


def _address(storefront: Storefront, point: FulfillmentPoint, address_type: str) -> dict:
    address: dict = {
        "addressType": address_type,
        "country": storefront.country_code,
    }
    if point.postal_code:
        address["postalCode"] = point.postal_code
    if point.has_geo:
        # VTEX は [経度, 緯度] の順
        address["geoCoordinates"] = [point.longitude, point.latitude]
    if point.city:
        address["city"] = point.city
    if point.state:
        address["state"] = point.state
    return address


def pickup_payload(
    storefront: Storefront, point: FulfillmentPoint, item_count: int,
) -> dict:
    """店舗受取の shippingData ペイロード."""
    return {
        "address": _address(storefront, point, "pickup"),
        "logisticsInfo": [
            {
                "itemIndex": index,
                "selectedSla": point.option_id,
                "selectedDeliveryChannel": PICKUP_CHANNEL,
            }
            for index in range(item_count)
        ],
    }


def delivery_payload(
    storefront: Storefront, point: FulfillmentPoint, item_count: int,
) -> dict:
    """郵便番号・座標による配送の shippingData ペイロード."""
    return {
        "address": _address(storefront, point, "residential"),
        "logisticsInfo": [
            {
                "itemIndex": index,
                "selectedDeliveryChannel": DELIVERY_CHANNEL,
            }
            for index in range(item_count)
        ],
    }


def candidate_shapes(
    mode: FulfillmentMode, point: FulfillmentPoint,
) -> list[tuple[str, Callable[[Storefront, FulfillmentPoint, int], dict]]]:
    """試す配送ペイロードの形状を優先順に返す."""
    if mode is FulfillmentMode.PICKUP:
        if not point.option_id:
            raise ProbeError(
                FailureKind.PERMANENT,
                f"拠点 {point.key} の option id が未解決のため店舗受取を試せません",
            )
        return [("pickup", pickup_payload)]
    if mode is FulfillmentMode.DELIVERY:
        return [("delivery", delivery_payload)]
    shapes = []
    if point.option_id:
        shapes.append(("pickup", pickup_payload))
    shapes.append(("delivery", delivery_payload))
    return shapes


class ProbeDriver:
    """1 拠点 × N 商品の在庫確認を最後まで実行する."""

    def __init__(self, client: StorefrontClient) -> None:
        self._client = client

    async def probe(
        self,
        ctx: SessionContext,
        point: FulfillmentPoint,
        items: list[CatalogItem],
        channel: int,
        mode: FulfillmentMode | None = None,
    ) -> dict[tuple[str, str], ItemOutcome]:
        """プロトコルを実行して商品キーごとの結果を返す.

        Raises:
            ProbeError: FAILED 状態で終了した場合（分類付き）
        """
        storefront = ctx.storefront
        mode = mode or storefront.fulfillment_mode
        state = ProbeState.INIT
        label = f"{storefront.host} point={point.key} sc={channel} items={len(items)}"
        params = {"sc": channel}
        shapes = candidate_shapes(mode, point)

        try:
            # 1. INIT → SESSION_OBTAINED
            created = await self._client.request(
                ctx, "POST", ORDER_FORM_PATH, params=params, json_body={}, step="orderForm 作成",
            )
            order_form_id = parse_order_form_id(created)
            if order_form_id is None:
                raise ProbeError(
                    FailureKind.PERMANENT, "orderForm 作成: orderFormId がありません", body=str(created),
                )
            state = ProbeState.SESSION_OBTAINED
            logger.debug("%s → %s orderFormId=%s", label, state.value, order_form_id)
            session_path = f"{ORDER_FORM_PATH}/{order_form_id}"

            # 2. SESSION_OBTAINED → ITEM_STAGED
            staged_payload = await self._client.request(
                ctx, "POST", f"{session_path}/items",
                params=params,
                json_body={
                    "orderItems": [
                        {"id": item.sku_id, "quantity": 1, "seller": item.seller_id}
                        for item in items
                    ],
                },
                step="明細追加",
            )
            staged = parse_staged_items(staged_payload, items, storefront.currency_code)
            self._raise_if_unparseable(staged, "明細追加")
            state = ProbeState.ITEM_STAGED

            outcomes: dict[tuple[str, str], ItemOutcome] = {
                key: outcome for key, outcome in staged.items() if outcome is not None
            }
            pending = [item for item in items if staged.get(item.key) is None]
            logger.debug("%s → %s 確定=%d 残り=%d", label, state.value, len(outcomes), len(pending))
            if not pending:
                # 全明細が在庫なしなら配送シミュレーションは不要
                state = ProbeState.PARSED
                return self._attach_raw(outcomes, staged_payload)

            # 3. ITEM_STAGED → FULFILLMENT_SIMULATED
            simulated = await self._attach_fulfillment(
                ctx, storefront, point, session_path, len(staged_payload.get("items") or items), shapes,
            )
            state = ProbeState.FULFILLMENT_SIMULATED
            logger.debug("%s → %s", label, state.value)

            # 4. FULFILLMENT_SIMULATED → PARSED
            if needs_refresh(simulated):
                simulated = await self._client.request(
                    ctx, "GET", session_path, params=params, step="orderForm 再取得",
                )
            parsed = parse_simulation(
                simulated, pending, point,
                default_currency=storefront.currency_code,
                require_option=storefront.require_fulfillment_option,
            )
            self._raise_if_unparseable(parsed, "配送シミュレーション")
            outcomes.update(self._attach_raw(parsed, simulated))
            state = ProbeState.PARSED
            logger.debug(
                "%s → %s 在庫あり=%d/%d", label, state.value,
                sum(1 for o in outcomes.values() if o.available), len(items),
            )
            return outcomes
        except ProbeError as e:
            logger.debug("%s → %s (from %s): %s", label, ProbeState.FAILED.value, state.value, e)
            raise

    async def _attach_fulfillment(
        self,
        ctx: SessionContext,
        storefront: Storefront,
        point: FulfillmentPoint,
        session_path: str,
        item_count: int,
        shapes: list,
    ) -> dict:
        """候補形状を順に試す. 5xx なら次の形状へ、それ以外の失敗はそのまま送出する."""
        for position, (shape, build) in enumerate(shapes):
            is_last = position == len(shapes) - 1
            try:
                return await self._client.request(
                    ctx, "POST", f"{session_path}/attachments/shippingData",
                    json_body=build(storefront, point, item_count),
                    step=f"配送情報付与({shape})",
                )
            except ProbeError as e:
                if is_last or not (e.kind is FailureKind.TRANSIENT and e.is_server_error):
                    raise
                logger.info("%s: %s が HTTP %s。次の形状を試します", storefront.host, shape, e.status_code)
        raise ProbeError(FailureKind.PERMANENT, "配送情報付与: 試せる形状がありません")

    @staticmethod
    def _raise_if_unparseable(parsed, step: str) -> None:
        if isinstance(parsed, Unparseable):
            raise ProbeError(FailureKind.PERMANENT, f"{step}: {parsed.reason}", body=parsed.raw)

    @staticmethod
    def _attach_raw(outcomes: dict, payload: dict) -> dict:
        # 診断用に生レスポンスを持たせる（長さの制限は ResultSink 側で行う）
        raw = json.dumps(payload, ensure_ascii=False)
        return {key: replace(outcome, raw=raw) for key, outcome in outcomes.items()}

