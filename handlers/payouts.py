"""
Payout routes
Balance, bank accounts, claims, burn history and admin payout operations
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from database import get_db
from middleware.auth_security import get_current_user, require_admin
from models import Payout, User
from schemas import AddBankDetailRequest, AdminPayoutStatusRequest, ClaimRequest, ManualCompleteRequest
from services.bank_detail_service import BankDetailService, get_bank_detail_service, serialize_bank_detail
from services.payout_service import PayoutService, get_payout_service, serialize_payout
from services.token_burn_service import serialize_burn

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/payouts", tags=["payouts"])


def _payout_brief(payout: Optional[Payout]):
    if payout is None:
        return None
    return {"id": payout.id, "status": payout.status, "failureReason": payout.failure_reason}


@router.get("/balance")
async def get_balance(
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    payouts: PayoutService = Depends(get_payout_service),
):
    return await payouts.get_balance(db, user)


# Bank accounts

@router.get("/banks")
def list_banks(
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    banks: BankDetailService = Depends(get_bank_detail_service),
):
    return {"bankDetails": [serialize_bank_detail(d) for d in banks.list_bank_details(db, user)]}


@router.post("/banks", status_code=201)
def add_bank(
    body: AddBankDetailRequest,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    banks: BankDetailService = Depends(get_bank_detail_service),
):
    detail = banks.add_bank_detail(
        db, user,
        account_holder_name=body.account_holder_name,
        account_number=body.account_number,
        ifsc_code=body.ifsc_code,
        bank_name=body.bank_name,
        account_type=body.account_type,
        is_default=body.is_default,
    )
    return {"message": "Bank details added successfully", "bankDetail": serialize_bank_detail(detail)}


@router.delete("/banks/{bank_detail_id}")
def delete_bank(
    bank_detail_id: int,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    banks: BankDetailService = Depends(get_bank_detail_service),
):
    banks.delete_bank_detail(db, user, bank_detail_id)
    return {"message": "Bank detail removed successfully"}


@router.patch("/banks/{bank_detail_id}/default")
def set_default_bank(
    bank_detail_id: int,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    banks: BankDetailService = Depends(get_bank_detail_service),
):
    detail = banks.set_default(db, user, bank_detail_id)
    return {"message": "Default bank account updated", "bankDetail": serialize_bank_detail(detail)}


# Claims and burns

@router.post("/claim", status_code=201)
async def claim_funds(
    body: ClaimRequest,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    payouts: PayoutService = Depends(get_payout_service),
):
    payout, burn, message = await payouts.claim_funds(db, user, body.amount_usd, body.bank_detail_id)
    return {
        "message": message,
        "claim": {
            **serialize_payout(payout),
            "burnTxHash": burn.tx_hash,
            "burnStatus": burn.status,
        },
    }


@router.get("/claims")
def list_claims(
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    payouts: PayoutService = Depends(get_payout_service),
):
    return payouts.list_claims(db, user, page, limit)


@router.get("/claims/{payout_id}")
async def get_claim(
    payout_id: int,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    payouts: PayoutService = Depends(get_payout_service),
):
    payout = await payouts.get_claim(db, user, payout_id)
    return {"claim": serialize_payout(payout, include_audit=True)}


@router.get("/burns")
def burn_history(
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    status: Optional[str] = None,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    payouts: PayoutService = Depends(get_payout_service),
):
    return payouts.burn_service.get_burn_history(db, user, page, limit, status)


@router.post("/burns/{burn_id}/retry")
async def retry_burn(
    burn_id: int,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    payouts: PayoutService = Depends(get_payout_service),
):
    burn, payout = await payouts.retry_user_burn(db, user, burn_id)
    return {
        "message": "Burn retried successfully",
        "txHash": burn.tx_hash,
        "blockNumber": burn.block_number,
        "amountUSD": serialize_burn(burn)["amountUSD"],
        "burn": serialize_burn(burn),
        "payout": _payout_brief(payout),
    }


@router.post("/burns/{burn_id}/verify")
async def verify_burn(
    burn_id: int,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    payouts: PayoutService = Depends(get_payout_service),
):
    burn, payout = await payouts.verify_user_burn(db, user, burn_id)
    return {
        "message": f"Burn status: {burn.status}",
        "burn": serialize_burn(burn),
        "payout": _payout_brief(payout),
    }


# Admin

@router.get("/admin/all")
def admin_all_payouts(
    status: Optional[str] = None,
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    admin: User = Depends(require_admin),
    db: Session = Depends(get_db),
    payouts: PayoutService = Depends(get_payout_service),
):
    return payouts.admin_list_payouts(db, status, page, limit)


@router.get("/admin/pending")
def admin_pending_payouts(
    admin: User = Depends(require_admin),
    db: Session = Depends(get_db),
    payouts: PayoutService = Depends(get_payout_service),
):
    pending = payouts.admin_pending_payouts(db)
    return {"payouts": [serialize_payout(p) for p in pending], "total": len(pending)}


@router.post("/admin/{payout_id}/retry")
async def admin_retry_payout(
    payout_id: int,
    admin: User = Depends(require_admin),
    db: Session = Depends(get_db),
    payouts: PayoutService = Depends(get_payout_service),
):
    payout = await payouts.admin_retry(db, admin, payout_id)
    return {
        "message": "Payout retry initiated",
        "razorpayPayoutId": payout.provider_payout_id,
        "status": payout.status,
        "payout": serialize_payout(payout, include_audit=True),
    }


@router.post("/admin/{payout_id}/complete")
def admin_complete_payout(
    payout_id: int,
    body: ManualCompleteRequest,
    admin: User = Depends(require_admin),
    db: Session = Depends(get_db),
    payouts: PayoutService = Depends(get_payout_service),
):
    payout = payouts.mark_manual_complete(db, admin, payout_id, body.utr, body.notes)
    return {"message": "Payout marked as completed", "payout": serialize_payout(payout, include_audit=True)}


@router.patch("/admin/{payout_id}/status")
def admin_update_payout_status(
    payout_id: int,
    body: AdminPayoutStatusRequest,
    admin: User = Depends(require_admin),
    db: Session = Depends(get_db),
    payouts: PayoutService = Depends(get_payout_service),
):
    payout = payouts.admin_update_status(db, admin, payout_id, body.status, body.note)
    return {
        "message": f"Payout status updated to {payout.status}",
        "payout": serialize_payout(payout, include_audit=True),
    }
