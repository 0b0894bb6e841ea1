class OrderPipelineError(Exception):
    """Base class for order pipeline failures surfaced to callers."""


class NotFound(OrderPipelineError):
    def __init__(self, kind: str, ref):
        self.kind = kind
        self.ref = ref
        super().__init__(f"{kind} not found: {ref}")


class InvalidTransition(OrderPipelineError):
    def __init__(self, current: str, requested: str, allowed):
        self.current = current
        self.requested = requested
        self.allowed = list(allowed)
        valid = ", ".join(self.allowed) if self.allowed else "none"
        super().__init__(
            f"Cannot transition from {current} to {requested}. Valid transitions: {valid}"
        )


class SettlementUnavailable(OrderPipelineError):
    """Transactional scope could not be obtained within the retry budget."""

    def __init__(self, message: str, order_id=None):
        self.order_id = order_id
        super().__init__(message)


class PartialFailure(OrderPipelineError):
    """A side effect failed after others were applied without a transaction."""

    def __init__(self, message: str, order_id=None, effect: str | None = None):
        self.order_id = order_id
        self.effect = effect
        super().__init__(message)


class InsufficientStock(OrderPipelineError):
    def __init__(self, product_id, requested: int, available: int):
        self.product_id = product_id
        self.requested = requested
        self.available = available
        super().__init__(
            f"Insufficient stock for product {product_id}: requested {requested}, available {available}"
        )


class InsufficientBalance(OrderPipelineError):
    def __init__(self, payee_id, requested: float, available: float):
        self.payee_id = payee_id
        self.requested = requested
        self.available = available
        super().__init__(
            f"Insufficient balance for {payee_id}: requested {requested}, available {available}"
        )
