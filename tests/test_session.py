"""session モジュールのテスト."""

import httpx
import pytest

from collector.client import StorefrontClient
from collector.governor import RateGovernor
from collector.models import Storefront
from collector.session import SEGMENT_COOKIE, SessionStore, decode_segment, encode_segment


class TestSegment:
    """vtex_segment トークンのテスト."""

    def test_contents(self, storefront):
        segment = decode_segment(encode_segment(storefront, 2))
        assert segment["channel"] == "2"
        assert segment["currencyCode"] == "ARS"
        assert segment["countryCode"] == "ARG"
        assert segment["cultureInfo"] == "es-AR"
        assert "regionId" not in segment

    def test_region_id(self, storefront):
        segment = decode_segment(encode_segment(storefront, 1, region_id="v2.ABC"))
        assert segment["regionId"] == "v2.ABC"

    def test_deterministic(self, storefront):
        assert encode_segment(storefront, 1) == encode_segment(storefront, 1)

    def test_unknown_country_passthrough(self):
        storefront = Storefront(host="https://x.example", country_code="ES")
        assert decode_segment(encode_segment(storefront, 1))["countryCode"] == "ES"


class TestGetOrCreate:
    """SessionStore.get_or_create のテスト."""

    def test_default_cookies(self, sessions, storefront):
        ctx = sessions.get_or_create(storefront)

        assert ctx.domain == "a.example"
        assert ctx.cookie("locale") == "es-AR"
        assert ctx.cookie("VtexWorkspace") == "master:-"
        assert ctx.cookie("vtex_binding_address") == "storea.myvtex.com/"
        assert len(ctx.cookie("vtex-search-anonymous")) == 32
        assert decode_segment(ctx.cookie(SEGMENT_COOKIE))["channel"] == "1"
        assert ctx.sales_channel == 1

    def test_same_context_returned(self, sessions, storefront):
        assert sessions.get_or_create(storefront) is sessions.get_or_create(storefront)

    def test_first_sales_channel_is_default(self, sessions):
        storefront = Storefront(host="https://b.example", sales_channels=(3, 1))
        ctx = sessions.get_or_create(storefront)
        assert ctx.sales_channel == 3
        assert ctx.cookie("vtex_binding_address") is None


class TestBindSalesChannel:
    """SessionStore.bind_sales_channel のテスト."""

    def test_idempotent(self, sessions, storefront):
        ctx = sessions.get_or_create(storefront)
        before = ctx.cookie(SEGMENT_COOKIE)

        assert sessions.bind_sales_channel(ctx, 1) is False
        assert ctx.cookie(SEGMENT_COOKIE) == before

    def test_switch_channel(self, sessions, storefront):
        ctx = sessions.get_or_create(storefront)

        assert sessions.bind_sales_channel(ctx, 2) is True
        assert decode_segment(ctx.cookie(SEGMENT_COOKIE))["channel"] == "2"
        assert ctx.sales_channel == 2
        names = [c.name for c in ctx.cookies.jar]
        assert names.count(SEGMENT_COOKIE) == 1

    def test_region_change_rebinds(self, sessions, storefront):
        ctx = sessions.get_or_create(storefront)
        assert sessions.bind_sales_channel(ctx, 1, region_id="v2.XYZ") is True
        assert ctx.region_id == "v2.XYZ"


class TestWarmup:
    """SessionStore.warmup のテスト."""

    @pytest.mark.asyncio
    async def test_collects_cookies(self, storefront):
        def handler(request):
            if request.url.path == "/":
                return httpx.Response(200, headers={"Set-Cookie": "checkout.vtex.com=__ofid=abc; Path=/"})
            return httpx.Response(200, json={})

        sessions = SessionStore(
            StorefrontClient(RateGovernor(min_interval=0)), transport=httpx.MockTransport(handler),
        )
        ctx = sessions.get_or_create(storefront)

        outcome = await sessions.warmup(storefront, ctx)

        assert outcome.ok
        assert outcome.succeeded == 3
        assert ctx.warmed_up
        assert ctx.cookie("checkout.vtex.com") == "__ofid=abc"
        await sessions.close()

    @pytest.mark.asyncio
    async def test_failures_do_not_raise(self, storefront):
        """ウォームアップの失敗は例外にならず件数だけ返ること."""
        def handler(request):
            if request.url.path == "/":
                raise httpx.ConnectError("refused", request=request)
            return httpx.Response(503)

        sessions = SessionStore(
            StorefrontClient(RateGovernor(min_interval=0)), transport=httpx.MockTransport(handler),
        )
        ctx = sessions.get_or_create(storefront)

        outcome = await sessions.warmup(storefront, ctx)

        assert not outcome.ok
        assert outcome.succeeded == 0
        assert outcome.failed == 3
        await sessions.close()

    @pytest.mark.asyncio
    async def test_close(self, sessions, storefront):
        ctx = sessions.get_or_create(storefront)
        async with sessions:
            pass
        assert ctx.http.is_closed
