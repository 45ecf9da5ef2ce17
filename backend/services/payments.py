"""PaymentService — message-pack orders and their conversion into credits.

The payment provider's checkout is external; this service records the order,
verifies the provider's callback signature and tops up the ledger exactly once.
"""

from __future__ import annotations

import hashlib
import hmac
import logging
import math
import uuid

from sqlalchemy import func, select, update
from sqlalchemy.orm import Session

from config import settings
from models.payment import MessagePack, Payment
from models.user import User
from services.credits import CreditLedger
from services.errors import (
    InvalidPaymentSignature,
    InvalidPaymentState,
    InvalidRequest,
    PaymentNotFound,
)

logger = logging.getLogger(__name__)

PAYMENT_STATUSES = ("pending", "completed", "failed", "cancelled")


def new_order_id() -> str:
    return f"order_{uuid.uuid4().hex[:14]}"


def sign(order_id: str, payment_id: str, secret: str | None = None) -> str:
    """HMAC-SHA256 of ``order_id|payment_id`` as lowercase hex."""
    key = (settings.PAYMENT_KEY_SECRET if secret is None else secret).encode()
    return hmac.new(key, f"{order_id}|{payment_id}".encode(), hashlib.sha256).hexdigest()


class PaymentService:
    def __init__(self, db: Session, secret: str | None = None):
        self.db = db
        self.secret = settings.PAYMENT_KEY_SECRET if secret is None else secret

    def active_packs(self) -> list[MessagePack]:
        stmt = (
            select(MessagePack)
            .where(MessagePack.is_active.is_(True))
            .order_by(MessagePack.display_order, MessagePack.price)
        )
        return list(self.db.execute(stmt).scalars().all())

    def get_pack(self, pack_id: int) -> MessagePack:
        pack = self.db.get(MessagePack, pack_id)
        if pack is None or not pack.is_active:
            raise InvalidRequest("Message pack not found or not available")
        return pack

    def _get(self, order_id: str) -> Payment:
        stmt = (
            select(Payment)
            .where(Payment.order_id == order_id)
            .execution_options(populate_existing=True)
        )
        payment = self.db.execute(stmt).scalar_one_or_none()
        if payment is None:
            raise PaymentNotFound()
        return payment

    def get_for_user(self, order_id: str, user_id: int) -> Payment:
        payment = self._get(order_id)
        if payment.user_id != user_id:
            raise PaymentNotFound()
        return payment

    def record_order(
        self,
        user: User,
        pack: MessagePack,
        agent_id: int,
        order_id: str | None = None,
        quantity: int = 1,
    ) -> Payment:
        """Store a pending payment for an order opened with the provider."""
        if quantity < 1:
            raise InvalidRequest("Quantity must be at least 1")
        payment = Payment(
            user_id=user.id,
            message_pack_id=pack.id,
            agent_id=agent_id,
            quantity=quantity,
            order_id=order_id or new_order_id(),
            # Provider amounts are integer minor units
            amount=int(round(pack.discounted_price * quantity * 100)),
            currency=pack.currency,
            status="pending",
            metadata_={"pack_name": pack.name, "message_count": pack.message_count},
        )
        self.db.add(payment)
        self.db.commit()
        self.db.refresh(payment)
        logger.info("Recorded order %s for user=%s pack=%s", payment.order_id, user.id, pack.id)
        return payment

    def verify_and_credit(self, order_id: str, payment_id: str, signature: str) -> Payment:
        """Verify the provider signature and credit the purchase once.

        The status flip and the credit top-up commit together; if either
        fails the payment stays ``pending`` so the provider can retry.
        Verifying an already completed payment again returns it unchanged.
        """
        if not self.secret:
            logger.error("PAYMENT_KEY_SECRET is not set; refusing to verify order %s", order_id)
            raise InvalidPaymentSignature("Payment verification is not configured")
        expected = sign(order_id, payment_id, self.secret)
        if not hmac.compare_digest(expected, signature or ""):
            logger.warning("Rejected payment signature for order %s", order_id)
            raise InvalidPaymentSignature()

        payment = self._get(order_id)
        if payment.status == "completed" and payment.payment_id == payment_id:
            return payment
        if payment.status != "pending":
            raise InvalidPaymentState(f"Payment is {payment.status}")

        pack = self.db.get(MessagePack, payment.message_pack_id)
        ledger = CreditLedger(self.db)
        # Balance row is created (and committed) outside the credit transaction
        ledger.balance(payment.user_id, payment.agent_id)
        try:
            result = self.db.execute(
                update(Payment)
                .where(Payment.id == payment.id, Payment.status == "pending")
                .values(status="completed", payment_id=payment_id, signature=signature)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 0:
                # Completed by a concurrent verification
                self.db.rollback()
                return self._get(order_id)
            ledger.top_up(
                payment.user_id, payment.agent_id, pack.message_count * payment.quantity, commit=False,
            )
            self.db.commit()
        except Exception:
            self.db.rollback()
            logger.exception("Crediting order %s failed; payment left pending", order_id)
            raise
        logger.info("Payment %s completed for order %s", payment_id, order_id)
        return self._get(order_id)

    def cancel(self, order_id: str, user_id: int) -> Payment:
        payment = self.get_for_user(order_id, user_id)
        if payment.status != "pending":
            raise InvalidPaymentState(f"Cannot cancel a {payment.status} payment")
        payment.status = "cancelled"
        self.db.commit()
        return payment

    def history(self, user_id: int, page: int = 1, limit: int = 10, status: str | None = None) -> tuple[list[Payment], dict]:
        page = max(1, page)
        limit = min(100, max(1, limit))
        conditions = [Payment.user_id == user_id]
        if status:
            if status not in PAYMENT_STATUSES:
                raise InvalidRequest(f"Unknown payment status: {status}")
            conditions.append(Payment.status == status)

        total = self.db.execute(select(func.count(Payment.id)).where(*conditions)).scalar_one()
        rows = self.db.execute(
            select(Payment)
            .where(*conditions)
            .order_by(Payment.created_at.desc(), Payment.id.desc())
            .offset((page - 1) * limit)
            .limit(limit)
        ).scalars().all()
        pagination = {
            "page": page,
            "limit": limit,
            "total": total,
            "pages": math.ceil(total / limit) if total else 0,
        }
        return list(rows), pagination
