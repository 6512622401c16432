from .checkout import CheckoutService
from .fulfillment import FulfillmentTrigger, PrintifyClient
from .orders import OrderService
from .payments import PaymentService
from .verification import PaymentPoller, VerificationEngine, evaluate_transaction

__all__ = [
    "CheckoutService",
    "FulfillmentTrigger",
    "OrderService",
    "PaymentPoller",
    "PaymentService",
    "PrintifyClient",
    "VerificationEngine",
    "evaluate_transaction",
]
