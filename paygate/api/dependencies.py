"""
FastAPI Dependencies - access to the application's payment engine.

The coordinator is built once in the lifespan handler and stored on app.state;
tests override get_coordinator to inject one wired to a test database.
"""

from fastapi import Request

from paygate.exceptions import PaymentError
from paygate.services.coordinator import PaymentCoordinator


class EngineNotReadyError(PaymentError):
    """Raised when a request arrives before startup finished wiring the engine."""

    code = "SERVICE_STARTING"
    http_status = 503
    retryable = True

    def __init__(self) -> None:
        super().__init__("Payment engine is not ready")


def get_coordinator(request: Request) -> PaymentCoordinator:
    """
    FastAPI dependency returning the shared PaymentCoordinator.

    Usage:
        @router.post("/payments/initiate")
        async def initiate(coordinator: PaymentCoordinator = Depends(get_coordinator)):
            ...
    """
    coordinator: PaymentCoordinator | None = getattr(request.app.state, "coordinator", None)
    if coordinator is None:
        raise EngineNotReadyError()
    return coordinator
