"""Message pack catalogue, orders and payment verification."""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from auth import get_current_user
from database import get_db
from models.user import User
from schemas.chat import dump
from schemas.payment import MessagePackOut, OrderIn, PaymentHistoryOut, PaymentOut, VerifyIn
from services.agents import AgentDirectory
from services.payments import PaymentService

logger = logging.getLogger(__name__)

packs_router = APIRouter()
router = APIRouter()


# ── Message packs ─────────────────────────────────────────────────────────────


@packs_router.get("/")
def list_packs(
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
):
    packs = PaymentService(db).active_packs()
    return {"items": [dump(MessagePackOut.model_validate(p)) for p in packs], "total": len(packs)}


@packs_router.post("/{pack_id}/orders/", status_code=201)
def create_order(
    pack_id: int,
    payload: OrderIn,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
):
    service = PaymentService(db)
    pack = service.get_pack(pack_id)
    AgentDirectory(db).get_active(payload.agent_id)
    payment = service.record_order(user, pack, payload.agent_id, quantity=payload.quantity)
    return dump(PaymentOut.model_validate(payment))


# ── Payments ──────────────────────────────────────────────────────────────────


@router.post("/verify/")
def verify_payment(
    payload: VerifyIn,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
):
    service = PaymentService(db)
    service.get_for_user(payload.order_id, user.id)
    payment = service.verify_and_credit(payload.order_id, payload.payment_id, payload.signature)
    return dump(PaymentOut.model_validate(payment))


@router.post("/{order_id}/cancel/")
def cancel_payment(
    order_id: str,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
):
    payment = PaymentService(db).cancel(order_id, user.id)
    return dump(PaymentOut.model_validate(payment))


@router.get("/")
def payment_history(
    page: int = Query(1),
    limit: int = Query(10),
    status: str | None = Query(None),
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
):
    payments, pagination = PaymentService(db).history(user.id, page, limit, status)
    return dump(PaymentHistoryOut(
        payments=[PaymentOut.model_validate(p) for p in payments],
        pagination=pagination,
    ))
