"""テスト共通のフィクスチャとチェックアウト API の偽物."""

import json

import httpx
import pytest

from collector.client import StorefrontClient
from collector.governor import RateGovernor
from collector.models import CatalogItem, FulfillmentPoint, Storefront
from collector.session import SessionStore

ORDER_FORM_PATH = "/api/checkout/pub/orderForm"
ORDER_FORM_ID = "of-1"  # 最初に発行される orderFormId


class FakeCheckout:
    """VTEX チェックアウト API の最小限の偽物（httpx.MockTransport 用）.

    属性を書き換えて各シナリオを作る:
      prices: sku → 価格（センタボ）
      availability: sku → 明細の availability（未指定は "available"）
      create_failures / shipping_failures: (status, body) のキュー。先頭から順に返す
      include_logistics: False なら配送情報付与レスポンスから logisticsInfo を落とす
    """

    def __init__(self) -> None:
        self.prices = {"42": 500}
        self.availability: dict[str, str] = {}
        self.option_id = "pp-1"
        self.pickup_distance = 1.5
        self.include_logistics = True
        self.create_failures: list[tuple[int, str]] = []
        self.shipping_failures: list[tuple[int, str]] = []
        self.requests: list[httpx.Request] = []
        self.shipping_payloads: list[dict] = []
        self._forms: dict[str, list[dict]] = {}  # orderFormId → 明細

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        method, path = request.method, request.url.path

        if method == "GET" and path in ("/", "/_v/segment", ORDER_FORM_PATH):
            return httpx.Response(200, json={})
        if method == "POST" and path == ORDER_FORM_PATH:
            if self.create_failures:
                status, body = self.create_failures.pop(0)
                return httpx.Response(status, text=body)
            form_id = f"of-{len(self._forms) + 1}"
            self._forms[form_id] = []
            return httpx.Response(200, json={"orderFormId": form_id})

        form_id, _, rest = path.removeprefix(f"{ORDER_FORM_PATH}/").partition("/")
        lines = self._forms.get(form_id)
        if lines is None:
            return httpx.Response(404, text="not found")
        if method == "POST" and rest == "items":
            body = json.loads(request.content)
            lines[:] = [self._line(o) for o in body["orderItems"]]
            return httpx.Response(200, json=self.order_form(form_id, lines, with_logistics=False))
        if method == "POST" and rest == "attachments/shippingData":
            self.shipping_payloads.append(json.loads(request.content))
            if self.shipping_failures:
                status, body = self.shipping_failures.pop(0)
                return httpx.Response(status, text=body)
            return httpx.Response(200, json=self.order_form(form_id, lines, self.include_logistics))
        if method == "GET" and rest == "":
            return httpx.Response(200, json=self.order_form(form_id, lines, with_logistics=True))
        return httpx.Response(404, text="not found")

    def _line(self, order_item: dict) -> dict:
        sku = order_item["id"]
        price = self.prices.get(sku, 1000)
        return {
            "id": sku,
            "seller": order_item["seller"],
            "quantity": order_item["quantity"],
            "availability": self.availability.get(sku, "available"),
            "sellingPrice": price,
            "listPrice": price,
        }

    def order_form(self, form_id: str, lines: list[dict], with_logistics: bool) -> dict:
        form = {
            "orderFormId": form_id,
            "items": lines,
            "storePreferencesData": {"currencyCode": "ARS"},
        }
        if with_logistics:
            form["shippingData"] = {
                "logisticsInfo": [
                    {
                        "itemIndex": index,
                        "slas": [
                            {
                                "id": self.option_id,
                                "deliveryChannel": "pickup-in-point",
                                "pickupPointId": f"1_{self.option_id}",
                                "pickupDistance": self.pickup_distance,
                            },
                        ],
                    }
                    for index in range(len(lines))
                ],
            }
        return form

    def paths(self, method: str) -> list[str]:
        return [r.url.path for r in self.requests if r.method == method]


@pytest.fixture
def storefront():
    return Storefront(host="https://a.example", name="A", account_name="storea")


@pytest.fixture
def point():
    return FulfillmentPoint(
        key="pp-1", postal_code="1425", latitude=-34.58, longitude=-58.42, option_id="pp-1",
    )


@pytest.fixture
def item():
    return CatalogItem(merchandise_key="7790000000042", sku_id="42", seller_id="1")


@pytest.fixture
def checkout():
    return FakeCheckout()


@pytest.fixture
def governor():
    return RateGovernor(global_limit=10, per_host_limit=4, min_interval=0)


@pytest.fixture
def client(governor):
    return StorefrontClient(governor)


@pytest.fixture
def sessions(client, checkout):
    return SessionStore(client, transport=httpx.MockTransport(checkout.handler))
