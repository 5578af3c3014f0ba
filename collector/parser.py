"""チェックアウト API レスポンスのパースモジュール.

orderForm の JSON を Available / Unavailable / Unparseable に変換する。
下流のコードが生の JSON 構造を直接分岐しないよう、判定はすべてここに集約する。

判定ルール:
  1. 明細の availability が "available" であること
  2. logisticsInfo に該当拠点の fulfillment option があること
  両方を満たした場合のみ在庫ありとする（storefront 側で 2 を無効化可能）。
"""

from __future__ import annotations

import logging
from decimal import Decimal, InvalidOperation

from collector.models import (
    Available,
    CatalogItem,
    FulfillmentPoint,
    ItemOutcome,
    Unavailable,
    Unparseable,
)

logger = logging.getLogger(__name__)

PICKUP_CHANNEL = "pickup-in-point"
DELIVERY_CHANNEL = "delivery"
NO_MATCHING_OPTION = "no matching fulfillment option"

_CENT = Decimal("0.01")


def _deep_get(d, *keys: str):
    """ネストされた dict から安全に値を取得する."""
    for key in keys:
        if not isinstance(d, dict):
            return None
        d = d.get(key)
    return d


def minor_to_decimal(value) -> Decimal | None:
    """最小通貨単位（センタボ）を通貨単位に変換する. 1999 → Decimal("19.99")."""
    if value is None or isinstance(value, bool):
        return None
    try:
        return (Decimal(str(value)) / 100).quantize(_CENT)
    except (InvalidOperation, ValueError):
        return None


def _to_int(value) -> int | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float) and value.is_integer():
        return int(value)
    return None


def parse_order_form_id(payload: dict) -> str | None:
    """orderForm 作成レスポンスから orderFormId を取り出す."""
    order_form_id = payload.get("orderFormId")
    if isinstance(order_form_id, str) and order_form_id:
        return order_form_id
    return None


def _find_line(lines: list, item: CatalogItem) -> tuple[int | None, dict | None]:
    """明細リストから SKU + seller が一致する行を探す（seller 不一致なら SKU のみで再検索）."""
    fallback: tuple[int | None, dict | None] = (None, None)
    for index, line in enumerate(lines):
        if not isinstance(line, dict) or str(line.get("id")) != item.sku_id:
            continue
        if str(line.get("seller")) == item.seller_id:
            return index, line
        if fallback[1] is None:
            fallback = (index, line)
    return fallback


def _line_prices(line: dict) -> tuple[Decimal | None, Decimal | None]:
    selling = line.get("sellingPrice")
    if selling is None:
        selling = line.get("price")
    return minor_to_decimal(selling), minor_to_decimal(line.get("listPrice"))


def _currency(payload: dict, default: str) -> str:
    code = _deep_get(payload, "storePreferencesData", "currencyCode")
    return code if isinstance(code, str) and code else default


def _shape_error(payload) -> str | None:
    if not isinstance(payload, dict):
        return "レスポンスが JSON オブジェクトではない"
    if "items" in payload and not isinstance(payload["items"], list):
        return "items が配列ではない"
    logistics = _logistics_raw(payload)
    if logistics is not None and not isinstance(logistics, list):
        return "logisticsInfo が配列ではない"
    return None


def parse_staged_items(
    payload: dict,
    items: list[CatalogItem],
    default_currency: str,
) -> dict[tuple[str, str], Unavailable | None] | Unparseable:
    """明細追加レスポンスを評価する.

    Returns:
        商品キー → Unavailable（この時点で在庫なしが確定）または None（配送シミュレーションへ進む）
    """
    problem = _shape_error(payload)
    if problem:
        return Unparseable(raw=str(payload), reason=problem)

    lines = payload.get("items")
    currency = _currency(payload, default_currency)
    staged: dict[tuple[str, str], Unavailable | None] = {}
    for item in items:
        if lines is None:
            staged[item.key] = Unavailable(
                reason="partial data: response has no items", currency=currency, partial_data=True,
            )
            continue
        _, line = _find_line(lines, item)
        if line is None:
            staged[item.key] = Unavailable(
                reason="partial data: line missing from session", currency=currency, partial_data=True,
            )
            continue
        availability = line.get("availability")
        if availability is None:
            # availability が返らない storefront もあるので配送シミュレーションで判断する
            staged[item.key] = None
            continue
        if availability != "available":
            price, list_price = _line_prices(line)
            staged[item.key] = Unavailable(
                reason=f"item availability: {availability}",
                price=price,
                list_price=list_price,
                quantity=_to_int(line.get("quantity")),
                currency=currency,
            )
            continue
        staged[item.key] = None
    return staged


def _logistics_raw(payload: dict):
    logistics = _deep_get(payload, "shippingData", "logisticsInfo")
    if logistics is None:
        logistics = payload.get("logisticsInfo")
    return logistics


def _logistics_for(logistics: list, index: int | None) -> dict | None:
    if index is None:
        return None
    for position, entry in enumerate(logistics):
        if not isinstance(entry, dict):
            continue
        entry_index = entry.get("itemIndex", position)
        if entry_index == index:
            return entry
    return None


def _options(entry: dict | None) -> list[dict]:
    if not entry:
        return []
    options = entry.get("slas")
    if options is None:
        options = entry.get("options")
    if not isinstance(options, list):
        return []
    return [o for o in options if isinstance(o, dict) and o.get("available", True) is not False]


def _option_matches(option: dict, option_id: str) -> bool:
    return option_id in (option.get("id"), option.get("pickupPointId"))


def select_option(options: list[dict], point: FulfillmentPoint) -> dict | None:
    """拠点に対応する fulfillment option を選ぶ.

    option id が既知ならそれに一致するもの。未知なら最寄りの店舗受取、
    なければ配送の option。
    """
    if point.option_id:
        for option in options:
            if _option_matches(option, point.option_id):
                return option
        return None

    pickups = [o for o in options if o.get("deliveryChannel") == PICKUP_CHANNEL]
    if pickups:
        return min(pickups, key=_distance)
    for option in options:
        if option.get("deliveryChannel", DELIVERY_CHANNEL) == DELIVERY_CHANNEL:
            return option
    return None


def _distance(option: dict) -> float:
    distance = option.get("pickupDistance")
    if isinstance(distance, (int, float)) and not isinstance(distance, bool):
        return float(distance)
    return float("inf")


def pickup_option_id(option: dict | None) -> str | None:
    """店舗受取 option であればその id を返す."""
    if option and option.get("deliveryChannel") == PICKUP_CHANNEL:
        option_id = option.get("id")
        return str(option_id) if option_id else None
    return None


def _item_errors(payload: dict) -> dict[int | None, str]:
    """status == error のメッセージを itemIndex ごとにまとめる（None は全体宛て）."""
    errors: dict[int | None, str] = {}
    for message in payload.get("messages") or []:
        if not isinstance(message, dict) or message.get("status") != "error":
            continue
        index = _to_int(_deep_get(message, "fields", "itemIndex"))
        errors.setdefault(index, message.get("text") or "checkout error")
    return errors


def needs_refresh(payload: dict) -> bool:
    """配送情報付与レスポンスに判定材料が揃っていなければ True."""
    return not isinstance(payload.get("items"), list) or not isinstance(_logistics_raw(payload), list)


def parse_simulation(
    payload,
    items: list[CatalogItem],
    point: FulfillmentPoint,
    *,
    default_currency: str,
    require_option: bool = True,
) -> dict[tuple[str, str], ItemOutcome] | Unparseable:
    """配送シミュレーション後の orderForm を商品ごとの結果に変換する."""
    problem = _shape_error(payload)
    if problem:
        return Unparseable(raw=str(payload), reason=problem)

    currency = _currency(payload, default_currency)
    lines = payload.get("items")
    logistics = _logistics_raw(payload) or []
    errors = _item_errors(payload)

    outcomes: dict[tuple[str, str], ItemOutcome] = {}
    for item in items:
        if lines is None:
            outcomes[item.key] = Unavailable(
                reason="partial data: response has no items", currency=currency, partial_data=True,
            )
            continue

        index, line = _find_line(lines, item)
        if line is None:
            outcomes[item.key] = Unavailable(
                reason="partial data: line missing from session", currency=currency, partial_data=True,
            )
            continue

        price, list_price = _line_prices(line)
        quantity = _to_int(line.get("quantity"))
        option = select_option(_options(_logistics_for(logistics, index)), point)
        option_id = pickup_option_id(option)
        common = dict(
            price=price, list_price=list_price, quantity=quantity,
            currency=currency, option_id=option_id,
        )

        error_text = errors.get(index) or errors.get(None)
        if error_text:
            outcomes[item.key] = Unavailable(reason=error_text, **common)
            continue

        availability = line.get("availability")
        if availability is None:
            outcomes[item.key] = Unavailable(
                reason="partial data: availability missing", partial_data=True, **common,
            )
            continue
        if availability != "available":
            outcomes[item.key] = Unavailable(reason=f"item availability: {availability}", **common)
            continue
        if option is None and require_option:
            outcomes[item.key] = Unavailable(reason=NO_MATCHING_OPTION, **common)
            continue

        outcomes[item.key] = Available(**common)

    return outcomes
