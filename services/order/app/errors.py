"""
Order Service — 例外定義

status_code はコマンド系エンドポイントの例外ハンドラが
HTTP ステータスに変換するときに使う。
"""


class QRStockError(Exception):
    status_code = 500


class InvalidOrder(QRStockError):
    """入力検証エラー（メッセージは短いエラーコード）"""
    status_code = 400


class DocumentNotFound(QRStockError):
    status_code = 404

    def __init__(self, path: str) -> None:
        super().__init__(f"Document not found: {path}")
        self.path = path


class OrderNotFound(DocumentNotFound):
    def __init__(self, order_id: str) -> None:
        super().__init__(f"purchaseOrders/{order_id}")
        self.order_id = order_id


class ConfigurationError(QRStockError):
    """DB ハンドルが構築できない"""
    status_code = 503


class IdentityLookupError(QRStockError):
    """ID プロバイダでのユーザー検索に失敗した"""
    status_code = 502
