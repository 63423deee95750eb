"""
Escrow routes
Thin wrappers over the escrow coordinator; every state change goes through the chain first
"""

import logging

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from database import get_db
from middleware.auth_security import get_current_user, require_admin
from models import User
from schemas import CreateEscrowRequest, ResolveEscrowRequest
from services.escrow_coordinator import EscrowCoordinator, get_escrow_coordinator

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/escrows", tags=["escrows"])


@router.post("", status_code=201)
async def create_escrow(
    body: CreateEscrowRequest,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    coordinator: EscrowCoordinator = Depends(get_escrow_coordinator),
):
    return await coordinator.create_escrow(db, body.order_id, user)


@router.get("/wallet")
def get_wallet(
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    coordinator: EscrowCoordinator = Depends(get_escrow_coordinator),
):
    return coordinator.get_wallet(db, user)


@router.get("/{order_id}")
async def get_escrow(
    order_id: int,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    coordinator: EscrowCoordinator = Depends(get_escrow_coordinator),
):
    return await coordinator.get_escrow(db, order_id, user)


@router.post("/{order_id}/confirm-delivery")
async def confirm_delivery(
    order_id: int,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    coordinator: EscrowCoordinator = Depends(get_escrow_coordinator),
):
    return await coordinator.confirm_delivery(db, order_id, user)


@router.post("/{order_id}/release")
async def release_funds(
    order_id: int,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    coordinator: EscrowCoordinator = Depends(get_escrow_coordinator),
):
    return await coordinator.release_funds(db, order_id, user)


@router.post("/{order_id}/dispute")
async def raise_dispute(
    order_id: int,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    coordinator: EscrowCoordinator = Depends(get_escrow_coordinator),
):
    return await coordinator.raise_dispute(db, order_id, user)


@router.post("/{order_id}/resolve")
async def resolve_dispute(
    order_id: int,
    body: ResolveEscrowRequest,
    admin: User = Depends(require_admin),
    db: Session = Depends(get_db),
    coordinator: EscrowCoordinator = Depends(get_escrow_coordinator),
):
    return await coordinator.resolve_dispute(db, order_id, admin, body.winner)
