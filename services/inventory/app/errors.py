"""
Inventory Service — エラー定義

すべてのエラーは InventoryError を継承し、安定した kind と
HTTP ステータスを持つ。API 層はこれを {"error", "kind"} に変換する。

    InventoryError
    ├── AuthError            401  MissingToken / InvalidToken
    ├── InvalidCredentials   401
    ├── AccessDenied         403
    ├── NotFound             404  UserNotFound / ProductNotFound
    ├── Conflict             409  DuplicateUsername / DuplicateProduct
    ├── InvalidState         400  InsufficientStock / InvalidQuantity / InvalidPrice
    └── StoreUnavailable     503
"""


class InventoryError(Exception):
    kind = "InventoryError"
    status_code = 500
    default_message = "Inventory error"

    def __init__(self, message: str | None = None) -> None:
        self.message = message or self.default_message
        super().__init__(self.message)

    def to_dict(self) -> dict:
        return {"error": self.message, "kind": self.kind}


# ── 認証 ─────────────────────────────────────────


class AuthError(InventoryError):
    kind = "AuthError"
    status_code = 401
    default_message = "Authentication failed"


class MissingToken(AuthError):
    kind = "MissingToken"
    default_message = "No token provided"


class InvalidToken(AuthError):
    kind = "InvalidToken"
    default_message = "Failed to authenticate token"


class InvalidCredentials(InventoryError):
    kind = "InvalidCredentials"
    status_code = 401
    default_message = "Invalid password"


class AccessDenied(InventoryError):
    kind = "AccessDenied"
    status_code = 403
    default_message = "Access denied"


# ── 存在しない ───────────────────────────────────


class NotFound(InventoryError):
    kind = "NotFound"
    status_code = 404
    default_message = "Not found"


class UserNotFound(NotFound):
    kind = "UserNotFound"
    default_message = "User not found"


class ProductNotFound(NotFound):
    kind = "ProductNotFound"
    default_message = "Product not found"

    def __init__(self, product_ref: str | int | None = None) -> None:
        self.product_ref = product_ref
        message = f"Product {product_ref} not found" if product_ref is not None else None
        super().__init__(message)


# ── 競合 ─────────────────────────────────────────


class Conflict(InventoryError):
    kind = "Conflict"
    status_code = 409
    default_message = "Conflict"


class DuplicateUsername(Conflict):
    kind = "DuplicateUsername"
    default_message = "Username already exists"


class DuplicateProduct(Conflict):
    kind = "DuplicateProduct"
    default_message = "Product with this ID already exists"


# ── 在庫状態 ─────────────────────────────────────


class InvalidState(InventoryError):
    kind = "InvalidState"
    status_code = 400
    default_message = "Invalid state"


class InsufficientStock(InvalidState):
    kind = "InsufficientStock"
    default_message = "Insufficient quantity"

    def __init__(self, item_id: str | None = None) -> None:
        self.item_id = item_id
        message = f"Insufficient quantity for product {item_id}" if item_id else None
        super().__init__(message)


class InvalidQuantity(InvalidState):
    kind = "InvalidQuantity"
    default_message = "Quantity must not go below zero"


class InvalidPrice(InvalidState):
    kind = "InvalidPrice"
    default_message = "Price must not be negative"


class StoreUnavailable(InventoryError):
    kind = "StoreUnavailable"
    status_code = 503
    default_message = "Store unavailable"
