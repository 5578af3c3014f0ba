"""データモデル定義."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum

from collector.config import (
    DEFAULT_COUNTRY_CODE,
    DEFAULT_CURRENCY_CODE,
    DEFAULT_CURRENCY_SYMBOL,
    DEFAULT_LOCALE,
)
from collector.errors import FailureKind


class FulfillmentMode(str, Enum):
    """配送シミュレーションで試すペイロード形状."""

    PICKUP = "pickup"  # 店舗受取（option id 必須）
    DELIVERY = "delivery"  # 郵便番号・座標による配送
    AUTO = "auto"  # pickup → delivery の順に試す


@dataclass(frozen=True)
class Storefront:
    """外部ストアフロント（VTEX アカウント）."""

    host: str  # 例: https://www.vea.com.ar
    sales_channels: tuple[int, ...] = (1,)
    enabled: bool = True
    name: str = ""
    account_name: str | None = None  # vtex_binding_address 用
    country_code: str = DEFAULT_COUNTRY_CODE  # ISO-2
    currency_code: str = DEFAULT_CURRENCY_CODE
    currency_symbol: str = DEFAULT_CURRENCY_SYMBOL
    locale: str = DEFAULT_LOCALE
    fulfillment_mode: FulfillmentMode = FulfillmentMode.AUTO
    # False なら明細の availability だけで在庫ありと判定する
    require_fulfillment_option: bool = True

    @property
    def base_url(self) -> str:
        return self.host.rstrip("/")

    @property
    def display_name(self) -> str:
        return self.name or self.host


@dataclass(frozen=True)
class FulfillmentPoint:
    """商品を受け取れる物理拠点（店舗）."""

    key: str  # ストアフロント内で一意
    postal_code: str | None = None
    latitude: float | None = None
    longitude: float | None = None
    option_id: str | None = None  # 外部の pickup option id（未解決なら None）
    name: str = ""
    city: str | None = None
    state: str | None = None

    @property
    def has_geo(self) -> bool:
        return self.latitude is not None and self.longitude is not None


@dataclass(frozen=True)
class TrackedItem:
    """追跡対象の商品."""

    merchandise_key: str  # EAN / UPC
    name: str | None = None


@dataclass(frozen=True)
class CatalogItem:
    """ストアフロントのカタログ上で解決済みの追跡商品."""

    merchandise_key: str
    sku_id: str
    seller_id: str
    name: str | None = None

    @property
    def key(self) -> tuple[str, str]:
        return (self.sku_id, self.seller_id)


@dataclass(frozen=True)
class ProbeTask:
    """1 回のプローブ単位（永続化しない）."""

    storefront: Storefront
    point: FulfillmentPoint
    item: CatalogItem
    sales_channel: int


@dataclass(frozen=True)
class ProbeIdentity:
    """ProbeResult の複合キー."""

    storefront_host: str
    fulfillment_point_key: str
    sku_id: str
    seller_id: str
    sales_channel: int

    @classmethod
    def for_task(cls, task: ProbeTask) -> ProbeIdentity:
        return cls(
            storefront_host=task.storefront.host,
            fulfillment_point_key=task.point.key,
            sku_id=task.item.sku_id,
            seller_id=task.item.seller_id,
            sales_channel=task.sales_channel,
        )


# ================================
# プローブ結果（和型）
# ================================
@dataclass(frozen=True)
class Available:
    """在庫あり・配送/受取可能."""

    price: Decimal | None
    list_price: Decimal | None
    quantity: int | None
    currency: str
    option_id: str | None = None  # 選ばれた fulfillment option
    raw: str | None = None

    available = True


@dataclass(frozen=True)
class Unavailable:
    """在庫なし・受取不可（正常な結果でありエラーではない）."""

    reason: str
    price: Decimal | None = None
    list_price: Decimal | None = None
    quantity: int | None = None
    currency: str | None = None
    option_id: str | None = None
    partial_data: bool = False  # 期待フィールド欠落による判定
    raw: str | None = None

    available = False


@dataclass(frozen=True)
class Unparseable:
    """レスポンスの形が想定外."""

    raw: str
    reason: str


@dataclass(frozen=True)
class ProbeFailure:
    """リトライ後も失敗したプロトコル実行."""

    kind: FailureKind
    message: str
    attempts: int
    status_code: int | None = None
    raw: str | None = None

    available = False

    @property
    def error(self) -> str:
        return f"{self.kind.value}: {self.message}"


ItemOutcome = Available | Unavailable
ProbeOutcome = Available | Unavailable | ProbeFailure


@dataclass
class ProbeResult:
    """DB に書き込む在庫レコード."""

    identity: ProbeIdentity
    merchandise_key: str
    available: bool
    captured_at: datetime  # UTC
    quantity: int | None = None
    price: Decimal | None = None
    list_price: Decimal | None = None
    currency: str | None = None
    error: str | None = None
    failure_kind: FailureKind | None = None
    raw_excerpt: str | None = None
    attempts: int = 1
    postal_code: str | None = None

    @classmethod
    def from_outcome(
        cls,
        task: ProbeTask,
        outcome: ProbeOutcome,
        captured_at: datetime | None = None,
        attempts: int = 1,
    ) -> ProbeResult:
        """タスクと結果から永続化用レコードを組み立てる."""
        captured_at = captured_at or datetime.now(timezone.utc)
        base = dict(
            identity=ProbeIdentity.for_task(task),
            merchandise_key=task.item.merchandise_key,
            captured_at=captured_at,
            postal_code=task.point.postal_code,
            attempts=attempts,
        )
        if isinstance(outcome, Available):
            return cls(
                available=True,
                quantity=outcome.quantity,
                price=outcome.price,
                list_price=outcome.list_price,
                currency=outcome.currency,
                raw_excerpt=outcome.raw,
                **base,
            )
        if isinstance(outcome, Unavailable):
            return cls(
                available=False,
                quantity=outcome.quantity,
                price=outcome.price,
                list_price=outcome.list_price,
                currency=outcome.currency or task.storefront.currency_code,
                error=outcome.reason,
                failure_kind=FailureKind.PARTIAL_DATA if outcome.partial_data else None,
                raw_excerpt=outcome.raw,
                **base,
            )
        base["attempts"] = outcome.attempts
        return cls(
            available=False,
            currency=task.storefront.currency_code,
            error=outcome.error,
            failure_kind=outcome.kind,
            raw_excerpt=outcome.raw,
            **base,
        )

    def to_row(self) -> dict:
        """Supabase に渡す dict に変換する."""
        ident = self.identity
        return {
            "storefront_host": ident.storefront_host,
            "fulfillment_point_key": ident.fulfillment_point_key,
            "sku_id": ident.sku_id,
            "seller_id": ident.seller_id,
            "sales_channel": ident.sales_channel,
            "merchandise_key": self.merchandise_key,
            "is_available": self.available,
            "quantity": self.quantity,
            "price": str(self.price) if self.price is not None else None,
            "list_price": str(self.list_price) if self.list_price is not None else None,
            "currency": self.currency,
            "captured_at": self.captured_at.isoformat(),
            "error_message": self.error,
            "failure_kind": self.failure_kind.value if self.failure_kind else None,
            "raw_excerpt": self.raw_excerpt,
            "attempts": self.attempts,
            "postal_code": self.postal_code,
        }


# ================================
# 実行サマリ
# ================================
@dataclass
class StorefrontSummary:
    """1 ストアフロント分の集計."""

    host: str
    points_processed: int = 0
    checks: int = 0
    available: int = 0
    failed: int = 0
    blocked: int = 0
    discovered_options: int = 0
    warmup_ok: int = 0
    warmup_failed: int = 0
    error: str | None = None
    write_errors: list[str] = field(default_factory=list)  # 保存できなかった結果

    def record(self, result: ProbeResult) -> None:
        self.checks += 1
        if result.available:
            self.available += 1
        if result.failure_kind in (
            FailureKind.TRANSIENT,
            FailureKind.BLOCKED,
            FailureKind.PERMANENT,
        ):
            self.failed += 1
        if result.failure_kind is FailureKind.BLOCKED:
            self.blocked += 1

    def record_write_failure(self, message: str) -> None:
        """保存に失敗した結果は確認済みに数えず、失敗として残す."""
        self.failed += 1
        self.write_errors.append(message)


@dataclass
class RunSummary:
    """1 回のスイープ全体の集計."""

    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    completed_at: datetime | None = None
    total_storefronts: int = 0
    per_storefront: dict[str, StorefrontSummary] = field(default_factory=dict)
    errors: list[str] = field(default_factory=list)
    cancelled: bool = False

    @property
    def total_checks(self) -> int:
        return sum(s.checks for s in self.per_storefront.values())

    @property
    def total_available(self) -> int:
        return sum(s.available for s in self.per_storefront.values())

    @property
    def total_failed(self) -> int:
        return sum(s.failed for s in self.per_storefront.values())

    @property
    def duration_seconds(self) -> float:
        if self.completed_at is None:
            return 0.0
        return (self.completed_at - self.started_at).total_seconds()
