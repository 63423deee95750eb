"""
Dispute routes
Threads, evidence uploads, proof serving and admin arbitration
"""

import logging
from typing import List, Optional

from fastapi import APIRouter, Depends, File, Form, Query, UploadFile
from fastapi.responses import FileResponse
from sqlalchemy.orm import Session

from database import get_db
from middleware.auth_security import get_current_user, require_admin
from models import User
from schemas import (
    AssignDisputeRequest, CloseDisputeRequest, CreateDisputeRequest, ResolveDisputeRequest,
    UpdatePriorityRequest,
)
from services.dispute_resolution import (
    DisputeResolutionService, EvidenceUpload, get_dispute_resolution_service, serialize_dispute,
    serialize_message,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/disputes", tags=["disputes"])


@router.get("")
def list_disputes(
    status: Optional[str] = None,
    priority: Optional[str] = None,
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    disputes: DisputeResolutionService = Depends(get_dispute_resolution_service),
):
    return disputes.list_disputes(db, user, status, priority, page, limit)


@router.post("", status_code=201)
async def create_dispute(
    body: CreateDisputeRequest,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    disputes: DisputeResolutionService = Depends(get_dispute_resolution_service),
):
    dispute = await disputes.open_dispute(db, user, body.order_id, body.reason)
    return {"message": "Dispute created successfully", "dispute": serialize_dispute(dispute, user.id)}


@router.get("/order/{order_id}")
def get_dispute_by_order(
    order_id: int,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    disputes: DisputeResolutionService = Depends(get_dispute_resolution_service),
):
    dispute, role, auto_created = disputes.get_dispute_by_order(db, user, order_id)
    response = {"dispute": serialize_dispute(dispute, user.id), "userRole": role}
    if auto_created:
        response["autoCreated"] = True
    return response


@router.get("/proofs/{filename}")
def get_proof(
    filename: str,
    db: Session = Depends(get_db),
    disputes: DisputeResolutionService = Depends(get_dispute_resolution_service),
):
    """Public; the random filename is the only access control"""
    path, mime_type = disputes.get_proof(db, filename)
    return FileResponse(path, media_type=mime_type)


@router.get("/{dispute_id}")
def get_dispute(
    dispute_id: int,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    disputes: DisputeResolutionService = Depends(get_dispute_resolution_service),
):
    dispute, role = disputes.get_dispute(db, user, dispute_id)
    return {"dispute": serialize_dispute(dispute, user.id), "userRole": role}


@router.post("/{dispute_id}/messages", status_code=201)
async def send_message(
    dispute_id: int,
    content: Optional[str] = Form(None),
    images: List[UploadFile] = File(default=[]),
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    disputes: DisputeResolutionService = Depends(get_dispute_resolution_service),
):
    uploads = [
        EvidenceUpload(content=await image.read(), content_type=image.content_type, filename=image.filename)
        for image in images
    ]
    message = disputes.send_message(db, user, dispute_id, content, uploads)
    return {"message": "Message sent successfully", "chatMessage": serialize_message(message)}


@router.post("/{dispute_id}/resolve")
async def resolve_dispute(
    dispute_id: int,
    body: ResolveDisputeRequest,
    admin: User = Depends(require_admin),
    db: Session = Depends(get_db),
    disputes: DisputeResolutionService = Depends(get_dispute_resolution_service),
):
    result = await disputes.resolve_dispute(db, admin, dispute_id, body.winner, body.notes)
    return {
        "message": f"Dispute resolved in favor of {result.winner}",
        "dispute": serialize_dispute(result.dispute, admin.id),
        "chainResolution": {
            "success": result.success,
            "txHash": result.tx_hash,
            "error": result.error_message,
            "retried": result.retried,
        },
    }


@router.patch("/{dispute_id}/priority")
def update_priority(
    dispute_id: int,
    body: UpdatePriorityRequest,
    admin: User = Depends(require_admin),
    db: Session = Depends(get_db),
    disputes: DisputeResolutionService = Depends(get_dispute_resolution_service),
):
    dispute = disputes.update_priority(db, admin, dispute_id, body.priority)
    return {"message": "Priority updated", "dispute": serialize_dispute(dispute, admin.id)}


@router.patch("/{dispute_id}/assign")
def assign_admin(
    dispute_id: int,
    body: Optional[AssignDisputeRequest] = None,
    admin: User = Depends(require_admin),
    db: Session = Depends(get_db),
    disputes: DisputeResolutionService = Depends(get_dispute_resolution_service),
):
    dispute = disputes.assign_admin(db, admin, dispute_id, body.admin_id if body else None)
    return {"message": "Admin assigned", "dispute": serialize_dispute(dispute, admin.id)}


@router.post("/{dispute_id}/close")
def close_dispute(
    dispute_id: int,
    body: Optional[CloseDisputeRequest] = None,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    disputes: DisputeResolutionService = Depends(get_dispute_resolution_service),
):
    dispute = disputes.close_dispute(db, user, dispute_id, body.reason if body else None)
    return {"message": "Dispute closed", "dispute": serialize_dispute(dispute, user.id)}
