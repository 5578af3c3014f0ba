"""例外と失敗分類."""

from __future__ import annotations

from enum import Enum


class FailureKind(str, Enum):
    """プローブ失敗の分類."""

    TRANSIENT = "transient"  # ネットワーク・タイムアウト・5xx（リトライ対象）
    BLOCKED = "blocked"  # anti-automation マーカー検出（リトライしない）
    PERMANENT = "permanent"  # 4xx・想定外のペイロード（リトライしない）
    PARTIAL_DATA = "partial_data"  # パースはできたが期待フィールド欠落


class ConfigError(Exception):
    """ネットワークアクセス前に検出された設定エラー."""


class ProbeError(Exception):
    """ストアフロント API 呼び出しの失敗.

    Attributes:
        kind: 失敗分類
        status_code: HTTP ステータス（ネットワークエラー時は None）
        body: レスポンス本文（診断用）
    """

    def __init__(
        self,
        kind: FailureKind,
        message: str,
        status_code: int | None = None,
        body: str | None = None,
    ) -> None:
        super().__init__(message)
        self.kind = kind
        self.status_code = status_code
        self.body = body

    @property
    def is_server_error(self) -> bool:
        return self.status_code is not None and self.status_code >= 500

    def __str__(self) -> str:
        return f"{self.kind.value}: {self.args[0]}"
