"""Custom exceptions for the bookstore API."""


class BookstoreError(Exception):
    """Base exception for all bookstore errors."""

    pass


class DatabaseNotConfiguredError(BookstoreError):
    """Raised when DATABASE_URL / DATABASE_NAME are not set."""

    def __init__(self):
        super().__init__("Database not configured")


class ValidationError(BookstoreError):
    """Raised when input is rejected before any write or provider call."""

    pass


class BookNotFoundError(BookstoreError):
    def __init__(self, book_id: str):
        self.book_id = book_id
        super().__init__(f"Book not found: {book_id}")


class OrderNotFoundError(BookstoreError):
    def __init__(self, order_id: str):
        self.order_id = order_id
        super().__init__(f"Order not found: {order_id}")


class OrderStateError(BookstoreError):
    """Raised when an order is not in a state that allows the operation."""

    def __init__(self, order_id: str, status: str, action: str):
        self.order_id = order_id
        self.status = status
        self.action = action
        super().__init__(f"Cannot {action} order {order_id} in status '{status}'")


class InsufficientStockError(BookstoreError):
    def __init__(self, book_id: str, requested: int, available: int):
        self.book_id = book_id
        self.requested = requested
        self.available = available
        super().__init__(
            f"Insufficient stock for book {book_id}: requested {requested}, available {available}"
        )


class PaymentProviderError(BookstoreError):
    """Raised when the payment provider fails or times out."""

    pass


class WebhookSignatureError(BookstoreError):
    """Raised when a provider notification fails signature verification."""

    pass


ERROR_STATUS_CODES = {
    DatabaseNotConfiguredError: 500,
    ValidationError: 400,
    BookNotFoundError: 404,
    OrderNotFoundError: 404,
    OrderStateError: 409,
    InsufficientStockError: 409,
    PaymentProviderError: 502,
    WebhookSignatureError: 400,
}
