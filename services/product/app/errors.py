"""
Product Service — エラー分類

HTTP 層はこれらの例外をステータスコードに変換する（main.py の
exception handler）。TransientFulfillmentError と InvalidTransition は
コンシューマ内部でのみ使われ、クライアントには届かない。
"""


class ProductServiceError(Exception):
    status_code = 500
    code = "internal_error"

    def __init__(self, message: str = "") -> None:
        super().__init__(message)
        self.message = message


class ValidationError(ProductServiceError):
    """リクエストが不正（必須項目の欠落、ID 形式の誤りなど）"""

    status_code = 400
    code = "validation_error"


class Unauthorized(ProductServiceError):
    """トークンが無い、または検証に失敗した"""

    status_code = 401
    code = "unauthorized"


class NotFound(ProductServiceError):
    status_code = 404
    code = "not_found"


class StorageError(ProductServiceError):
    """永続化ストアに到達できない、または書き込みに失敗した"""

    status_code = 500
    code = "storage_error"


class PublishError(ProductServiceError):
    """
    リトライ上限までブローカーへの発行に失敗した。

    注文は pending のまま残り、Reconciler が後で再発行する。
    """

    status_code = 500
    code = "publish_error"

    def __init__(self, message: str = "", order_id: str | None = None) -> None:
        super().__init__(message)
        self.order_id = order_id


class TransientFulfillmentError(ProductServiceError):
    """一時的な障害。メッセージを ack せず、再配信に任せる。"""

    code = "transient_fulfillment_error"


class InvalidTransition(ProductServiceError):
    """状態遷移ルール違反（逆戻り・pending の飛ばし）"""

    code = "invalid_transition"
