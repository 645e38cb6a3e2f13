"""
Invoice Service: エラー分類

チェックアウトが呼び出し側に返す失敗はすべて CheckoutError。
HTTP 層が status_code をレスポンスに対応付ける。
"""


class CheckoutError(Exception):
    status_code: int = 500

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class InvalidInput(CheckoutError):
    """リクエストのフィールドが不正または欠落"""
    status_code = 400


class NotFound(CheckoutError):
    """参照先の購入者・商品・注文が存在しない"""
    status_code = 404


class InsufficientStock(CheckoutError):
    status_code = 400


class StorageFailure(CheckoutError):
    """トランザクションまたは接続の失敗 (何も書き込まれていない)"""
    status_code = 500
