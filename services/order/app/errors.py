"""
Order Service — 例外の分類 (Error taxonomy)

注文確定ワークフローが呼び出し元に返す失敗はすべてここで定義する。
HTTP 層はこれらを HTTPException に変換する。

  ValidationError       リクエスト不正。リトライしない。
  OutOfStock            在庫不足 (ビジネス上の失敗)。リトライしない。
  TransientFailure      一時的な障害。内部でリトライし、尽きたら昇格する。
  DependencyUnavailable サーキットオープン / リトライ枯渇。呼び出し元が後で再試行。
  PersistenceFailure    永続化失敗。補償 (在庫解放) の後に返す。
  PublishFailure        イベント発行失敗。注文自体は失敗させない (Outbox へ)。
"""

from uuid import UUID


class OrderPlacementError(Exception):
    """注文確定ワークフローの例外の基底クラス"""


class ValidationError(OrderPlacementError):
    def __init__(self, errors: list[str]):
        super().__init__("; ".join(errors))
        self.errors = errors


class OutOfStock(OrderPlacementError):
    def __init__(self, product_id: UUID, requested: int, available: int | None = None):
        detail = f"Insufficient stock for {product_id}: requested={requested}"
        if available is not None:
            detail += f", available={available}"
        super().__init__(detail)
        self.product_id = product_id
        self.requested = requested
        self.available = available


class TransientFailure(OrderPlacementError):
    """ネットワーク断・タイムアウト・5xx など、リトライで回復し得る失敗"""


class DependencyUnavailable(OrderPlacementError):
    def __init__(self, dependency: str, reason: str = "", retry_after: float | None = None):
        message = f"{dependency} is unavailable"
        if reason:
            message += f": {reason}"
        super().__init__(message)
        self.dependency = dependency
        self.retry_after = retry_after


class PersistenceFailure(OrderPlacementError):
    pass


class PublishFailure(OrderPlacementError):
    pass
