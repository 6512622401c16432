from .base import PaymentStore
from .memory import InMemoryPaymentStore
from .sql import SqlPaymentStore

__all__ = ["InMemoryPaymentStore", "PaymentStore", "SqlPaymentStore"]
