"""
Verification Engine.

Checks one submitted transaction against a pending payment request and
reports a verdict. The engine is the only writer of the pending -> confirmed
and pending -> failed transitions.
"""

import asyncio
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime

import structlog
from opentelemetry import trace

from solpay.crypto.interfaces import LedgerClient, LedgerTransaction
from solpay.crypto.tokens import TokenRegistry
from solpay.errors import (
    AlreadyFinalized,
    LedgerUnavailable,
    PaymentExpired,
    StaleStatus,
)
from solpay.models import (
    Confirmed,
    Indeterminate,
    PaymentRequest,
    PaymentStatus,
    Rejected,
    RejectionReason,
    Verdict,
)
from solpay.services.payments import PaymentService
from solpay.store.base import PaymentStore

logger = structlog.get_logger(__name__)
tracer = trace.get_tracer(__name__)


def evaluate_transaction(payment: PaymentRequest, tx: LedgerTransaction) -> Verdict:
    """
    Pure check of a found transaction against a payment request.

    Order of checks: on-chain status, recipient, amount, reference.
    Overpayment is accepted.
    """
    if not tx.succeeded:
        return Rejected(RejectionReason.ON_CHAIN_FAILURE, "on-chain failure")

    received = tx.delta_for(payment.recipient_address)
    if received is None:
        return Rejected(
            RejectionReason.WRONG_RECIPIENT,
            f"recipient {payment.recipient_address} not in transaction",
        )

    expected = payment.token_amount_base_units
    if received < expected:
        return Rejected(
            RejectionReason.UNDERPAYMENT,
            f"received {received} of {expected} base units",
            shortfall=expected - received,
        )

    if payment.reference not in tx.reference_keys_present:
        return Rejected(
            RejectionReason.MISSING_REFERENCE,
            f"reference {payment.reference} not in transaction",
        )

    return Confirmed(
        signature=tx.signature, amount=received, recipient=payment.recipient_address
    )


class VerificationEngine:
    def __init__(
        self,
        store: PaymentStore,
        ledger: LedgerClient,
        registry: TokenRegistry,
        payments: PaymentService,
        clock: Callable[[], datetime] | None = None,
    ):
        self.store = store
        self.ledger = ledger
        self.registry = registry
        self.payments = payments
        self.clock = clock or (lambda: datetime.now(UTC))

    async def verify(
        self, payment_id: str, signature: str, finalize_rejection: bool = True
    ) -> Verdict:
        """
        Verify a submitted transaction signature for a payment request.

        Args:
            payment_id: Payment request id
            signature: Transaction signature submitted by the wallet
            finalize_rejection: Mark the request failed on a Rejected verdict.
                When False the request stays pending and only the verdict
                is returned.

        Returns:
            Confirmed, Rejected or Indeterminate (retry later)

        Raises:
            NotFound: Unknown payment request
            AlreadyFinalized: The request is no longer pending
            PaymentExpired: The request's deadline has passed
        """
        with tracer.start_as_current_span("verify_payment") as span:
            span.set_attribute("payment_id", payment_id)

            payment = self.store.get_payment(payment_id)
            self.ensure_open(payment)

            token = self.registry.get(payment.token)
            try:
                tx = await self.ledger.get_transaction(signature, mint=token.mint)
            except LedgerUnavailable as e:
                logger.warning(
                    "ledger_unavailable", payment_id=payment_id, error=str(e)
                )
                span.set_attribute("verdict", "indeterminate")
                return Indeterminate("ledger unavailable")

            # The deadline is hard: a slow lookup does not extend it
            payment = self.store.get_payment(payment_id)
            self.ensure_open(payment)

            if not tx.found:
                logger.info("transaction_not_found", payment_id=payment_id, signature=signature)
                span.set_attribute("verdict", "indeterminate")
                return Indeterminate("transaction not found")

            verdict = evaluate_transaction(payment, tx)
            if isinstance(verdict, Rejected):
                if finalize_rejection:
                    self._reject(payment, signature, verdict)
            else:
                self._confirm(payment, verdict)
                if verdict.amount > payment.token_amount_base_units:
                    logger.info(
                        "payment_overpaid",
                        payment_id=payment_id,
                        excess=verdict.amount - payment.token_amount_base_units,
                    )

            span.set_attribute("verdict", type(verdict).__name__.lower())
            return verdict

    def ensure_open(self, payment: PaymentRequest) -> None:
        if payment.status != PaymentStatus.PENDING:
            raise AlreadyFinalized(
                f"Payment is {payment.status.value}",
                payment_id=payment.id,
                status=payment.status.value,
            )
        if payment.is_expired(self.clock()):
            current = self.payments.expire_if_overdue(payment)
            if current.status != PaymentStatus.EXPIRED:
                raise AlreadyFinalized(
                    f"Payment is {current.status.value}",
                    payment_id=payment.id,
                    status=current.status.value,
                )
            raise PaymentExpired(
                "Payment request expired",
                payment_id=payment.id,
                expires_at=payment.expires_at.isoformat(),
            )

    def _confirm(self, payment: PaymentRequest, verdict: Confirmed) -> None:
        try:
            self.store.update_payment_status(
                payment.id,
                PaymentStatus.PENDING,
                PaymentStatus.CONFIRMED,
                f"confirmed by {verdict.signature}",
                transaction_signature=verdict.signature,
                confirmed_at=self.clock(),
            )
        except StaleStatus as e:
            logger.info("confirmation_lost_race", payment_id=payment.id, actual=e.actual)
            raise AlreadyFinalized(
                f"Payment is {e.actual}", payment_id=payment.id, status=e.actual
            ) from e

        logger.info(
            "payment_verified",
            payment_id=payment.id,
            transaction_signature=verdict.signature,
            amount=verdict.amount,
            token=payment.token,
        )

    def _reject(self, payment: PaymentRequest, signature: str, verdict: Rejected) -> None:
        try:
            self.store.update_payment_status(
                payment.id,
                PaymentStatus.PENDING,
                PaymentStatus.FAILED,
                f"{verdict.reason.value}: {verdict.detail} ({signature})",
                failure_reason=verdict.reason.value,
            )
        except StaleStatus as e:
            raise AlreadyFinalized(
                f"Payment is {e.actual}", payment_id=payment.id, status=e.actual
            ) from e

        logger.info(
            "payment_rejected",
            payment_id=payment.id,
            signature=signature,
            reason=verdict.reason.value,
            shortfall=verdict.shortfall,
        )


class PaymentPoller:
    """
    Bounded retry loop around the Verification Engine.

    Polls at a fixed interval until a definitive verdict, the attempt ceiling
    or the request's deadline, whichever comes first. Breaching the ceiling
    expires the request.
    """

    def __init__(
        self,
        engine: VerificationEngine,
        interval: float = 2.0,
        max_attempts: int = 150,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self.engine = engine
        self.interval = interval
        self.max_attempts = max_attempts
        self.sleep = sleep

    async def poll(self, payment_id: str, signature: str | None = None) -> Verdict:
        """
        Poll until Confirmed or Rejected.

        Without a signature, candidate transactions are discovered through
        the request's reference key. Anyone can attach the reference to a
        transfer, so a discovered candidate that fails the checks is passed
        over rather than failing the request; only a Confirmed verdict, the
        deadline or the ceiling ends discovery.

        Raises:
            PaymentExpired: Deadline or attempt ceiling reached first
            AlreadyFinalized: The request was finalized elsewhere
        """
        passed_over: set[str] = set()
        for attempt in range(1, self.max_attempts + 1):
            payment = self.engine.store.get_payment(payment_id)
            if signature:
                candidates = [signature]
            else:
                discovered = await self._discover(payment)
                candidates = [s for s in discovered if s not in passed_over]

            for candidate in candidates:
                verdict = await self.engine.verify(
                    payment_id, candidate, finalize_rejection=signature is not None
                )
                if isinstance(verdict, Rejected) and not signature:
                    passed_over.add(candidate)
                    logger.info(
                        "candidate_passed_over",
                        payment_id=payment_id,
                        signature=candidate,
                        reason=verdict.reason.value,
                    )
                    continue
                if not isinstance(verdict, Indeterminate):
                    logger.info(
                        "poll_finished",
                        payment_id=payment_id,
                        attempts=attempt,
                        verdict=type(verdict).__name__,
                    )
                    return verdict
            if not candidates:
                # No verify call this round, so check the deadline here
                self.engine.ensure_open(payment)

            if attempt < self.max_attempts:
                await self.sleep(self.interval)

        payment = self.engine.payments.force_expire(
            payment_id, f"no confirmation after {self.max_attempts} attempts"
        )
        logger.info("poll_ceiling_reached", payment_id=payment_id, attempts=self.max_attempts)
        if payment.status != PaymentStatus.EXPIRED:
            raise AlreadyFinalized(
                f"Payment is {payment.status.value}",
                payment_id=payment_id,
                status=payment.status.value,
            )
        raise PaymentExpired("No confirmation before the poll ceiling", payment_id=payment_id)

    async def _discover(self, payment: PaymentRequest) -> list[str]:
        try:
            return await self.engine.ledger.find_signatures(payment.reference)
        except LedgerUnavailable as e:
            logger.warning("reference_lookup_failed", payment_id=payment.id, error=str(e))
            return []
