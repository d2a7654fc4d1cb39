"""Error taxonomy for the inventory core.

Every error carries the HTTP status it maps to and a short machine code.
Messages name the offending value (IPN, required status, quantities) so a
caller can diagnose the rejection from the response alone.
"""


class ZRPError(Exception):
    status_code = 500
    code = "internal_error"


class ValidationError(ZRPError):
    """Malformed input or quantities that do not add up."""

    status_code = 400
    code = "validation_error"


class NotFoundError(ZRPError):
    """Unknown id, or an inspection that has already been disposed."""

    status_code = 404
    code = "not_found"


class ConflictError(ZRPError):
    status_code = 409
    code = "conflict"


class InvalidTransitionError(ConflictError):
    code = "invalid_transition"

    def __init__(self, order_id: str, current: str, target: str, required: str | None) -> None:
        self.order_id = order_id
        self.current = current
        self.target = target
        self.required = required
        if required is None:
            message = f"invalid transition for {order_id}: no transition into {target} (currently {current})"
        else:
            message = (
                f"invalid transition for {order_id}: {target} requires status={required} "
                f"(currently {current})"
            )
        super().__init__(message)


class InsufficientInventoryError(ConflictError):
    code = "insufficient_inventory"

    def __init__(self, ipn: str, needed: float, available: float) -> None:
        self.ipn = ipn
        self.needed = needed
        self.available = available
        super().__init__(
            f"insufficient inventory for {ipn}: need {needed:g}, available {available:g}"
        )


class ConcurrentTransitionError(ConflictError):
    """The compare-and-swap on an order's status matched no row."""

    code = "concurrent_transition"


class StorageError(ZRPError):
    """Constraint violation or connection failure; the unit of work is rolled back."""

    code = "storage_error"
