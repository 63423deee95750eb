"""
Dispute Resolution Service
Threaded disputes over orders, with the on-chain escrow kept in step
"""

import logging
import math
from dataclasses import dataclass
from typing import Any, Dict, List, NamedTuple, Optional, Tuple

from sqlalchemy import func, or_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from config import Config
from models import (
    Dispute, DisputeAttachment, DisputeMessage, DisputePriority, DisputeRole, DisputeStatus,
    EscrowState, Order, User,
)
from services.dispute_attachment_storage import DisputeAttachmentStorage, get_dispute_attachment_storage
from services.escrow_coordinator import EscrowCoordinator, get_escrow_coordinator
from utils.datetime_helpers import get_naive_utc_now, isoformat_or_none
from utils.exception_handler import (
    ConflictError, InvalidInputError, InvalidStateError, MarketplaceError, NotAuthorizedError, NotFoundError,
)
from utils.input_validation import InputValidator

logger = logging.getLogger(__name__)

AUTO_DISPUTE_REASON = "Dispute raised via escrow system"
CLOSED_STATES = (DisputeStatus.RESOLVED.value, DisputeStatus.CLOSED.value)
UNSETTLED_ESCROW_STATES = (EscrowState.LOCKED.value, EscrowState.RELEASE_PENDING.value, EscrowState.DISPUTED.value)


@dataclass
class EvidenceUpload:
    """An uploaded image as received by the HTTP layer"""
    content: bytes
    content_type: Optional[str]
    filename: Optional[str] = None


class ResolutionResult(NamedTuple):
    """Result of a dispute resolution"""

    success: bool
    dispute: Dispute
    winner: str
    tx_hash: Optional[str] = None
    error_message: Optional[str] = None
    retried: bool = False


def serialize_message(message: DisputeMessage) -> Dict[str, Any]:
    now = get_naive_utc_now()
    return {
        "id": message.id,
        "senderId": message.sender_id,
        "senderRole": message.sender_role,
        "content": message.content or "",
        "images": [
            {
                "filename": a.filename,
                "originalName": a.original_name,
                "mimeType": a.mime_type,
                "size": a.size,
                "url": f"/disputes/proofs/{a.filename}",
                "uploadedAt": isoformat_or_none(a.uploaded_at),
                "expiresAt": isoformat_or_none(a.expires_at),
                "expired": a.expires_at <= now,
            }
            for a in message.attachments
        ],
        "readBy": list(message.read_by or []),
        "createdAt": isoformat_or_none(message.created_at),
    }


def unread_count(dispute: Dispute, viewer_id: int) -> int:
    return sum(1 for m in dispute.messages if viewer_id not in (m.read_by or []))


def serialize_dispute(dispute: Dispute, viewer_id: Optional[int] = None, include_messages: bool = True) -> Dict[str, Any]:
    order = dispute.order
    data = {
        "id": dispute.id,
        "orderId": dispute.order_id,
        "orderNumber": order.order_number if order else None,
        "orderTotal": float(order.total) if order else None,
        "escrowStatus": order.escrow_status if order else None,
        "buyerId": dispute.buyer_id,
        "sellerId": dispute.seller_id,
        "raisedBy": dispute.raised_by_id,
        "raisedByRole": dispute.raised_by_role,
        "reason": dispute.reason,
        "status": dispute.status,
        "priority": dispute.priority,
        "assignedAdmin": dispute.assigned_admin_id,
        "resolution": {
            "winner": dispute.resolution_winner,
            "notes": dispute.resolution_notes,
            "resolvedBy": dispute.resolved_by_id,
            "resolvedAt": isoformat_or_none(dispute.resolved_at),
        } if dispute.resolution_winner else None,
        "lastActivityAt": isoformat_or_none(dispute.last_activity),
        "createdAt": isoformat_or_none(dispute.created_at),
        "closedAt": isoformat_or_none(dispute.closed_at),
    }
    if include_messages:
        data["messages"] = [serialize_message(m) for m in dispute.messages]
    if viewer_id is not None:
        data["unreadCount"] = unread_count(dispute, viewer_id)
    return data


class DisputeResolutionService:
    """Service for dispute threads and their escrow side effects"""

    def __init__(self, coordinator: Optional[EscrowCoordinator] = None,
                 storage: Optional[DisputeAttachmentStorage] = None):
        self._coordinator = coordinator
        self._storage = storage

    @property
    def coordinator(self) -> EscrowCoordinator:
        return self._coordinator or get_escrow_coordinator()

    @property
    def storage(self) -> DisputeAttachmentStorage:
        return self._storage or get_dispute_attachment_storage()

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _load(session: Session, dispute_id: int) -> Dispute:
        dispute = session.get(Dispute, dispute_id)
        if dispute is None:
            raise NotFoundError("Dispute not found")
        return dispute

    @staticmethod
    def participant_role(dispute: Dispute, user: User) -> Optional[str]:
        if dispute.buyer_id == user.id:
            return DisputeRole.BUYER.value
        if dispute.seller_id == user.id:
            return DisputeRole.SELLER.value
        return None

    def _viewer_role(self, dispute: Dispute, user: User) -> str:
        role = self.participant_role(dispute, user)
        if role is None and user.is_admin:
            return DisputeRole.ADMIN.value
        if role is None:
            raise NotAuthorizedError("Unauthorized")
        return role

    @staticmethod
    def _add_message(session: Session, dispute: Dispute, sender_id: Optional[int], role: str,
                     content: str) -> DisputeMessage:
        message = DisputeMessage(
            dispute=dispute,
            sender_id=sender_id,
            sender_role=role,
            content=content,
            read_by=[sender_id] if sender_id is not None else [],
        )
        session.add(message)
        dispute.last_activity = get_naive_utc_now()
        return message

    @staticmethod
    def _mark_read(session: Session, dispute: Dispute, user_id: int) -> None:
        changed = False
        for message in dispute.messages:
            readers = list(message.read_by or [])
            if user_id not in readers:
                message.read_by = readers + [user_id]
                changed = True
        if changed:
            session.commit()

    # ------------------------------------------------------------------
    # Opening and reading
    # ------------------------------------------------------------------

    async def open_dispute(self, session: Session, user: User, order_id: int, reason: str) -> Dispute:
        """Open the dispute thread and raise the dispute on the escrow when one is open"""
        order = session.get(Order, order_id)
        if order is None:
            raise NotFoundError("Order not found")

        if order.customer_id == user.id:
            role = DisputeRole.BUYER.value
        elif order.vendor_id == user.id:
            role = DisputeRole.SELLER.value
        else:
            raise NotAuthorizedError("Unauthorized to raise dispute")

        reason = InputValidator.validate_description(reason, 1000, "reason")

        existing = session.execute(select(Dispute.id).where(Dispute.order_id == order.id)).scalar_one_or_none()
        if existing is not None:
            raise ConflictError("A dispute already exists for this order")

        dispute = Dispute(
            order_id=order.id,
            buyer_id=order.customer_id,
            seller_id=order.vendor_id,
            raised_by_id=user.id,
            raised_by_role=role,
            reason=reason,
        )
        session.add(dispute)
        self._add_message(session, dispute, user.id, role, reason)
        try:
            session.commit()
        except IntegrityError:
            session.rollback()
            raise ConflictError("A dispute already exists for this order")

        logger.info(f"⚖️ DISPUTE_OPENED: dispute {dispute.id} order {order.id} by {role} {user.id}")

        if order.escrow_status in (EscrowState.LOCKED.value, EscrowState.RELEASE_PENDING.value):
            try:
                await self.coordinator.raise_dispute(session, order.id, user)
            except MarketplaceError as e:
                logger.warning(f"⚠️ DISPUTE_CHAIN_RAISE_FAILED: dispute {dispute.id} order {order.id}: {e.message}")
                self._add_message(
                    session, dispute, None, DisputeRole.SYSTEM.value,
                    f"On-chain dispute could not be raised: {e.message}. An admin will follow up.",
                )
                session.commit()

        session.refresh(dispute)
        return dispute

    def get_dispute_by_order(self, session: Session, user: User, order_id: int) -> Tuple[Dispute, str, bool]:
        """Dispute for an order, auto-creating the thread when the escrow is already Disputed"""
        dispute = session.execute(select(Dispute).where(Dispute.order_id == order_id)).scalar_one_or_none()
        if dispute is not None:
            role = self._viewer_role(dispute, user)
            self._mark_read(session, dispute, user.id)
            return dispute, role, False

        order = session.get(Order, order_id)
        if order is None:
            raise NotFoundError("Order not found")
        if order.customer_id == user.id:
            role, raised_by = DisputeRole.BUYER.value, order.customer_id
        elif order.vendor_id == user.id:
            role, raised_by = DisputeRole.SELLER.value, order.vendor_id
        elif user.is_admin:
            role, raised_by = DisputeRole.BUYER.value, order.customer_id
        else:
            raise NotAuthorizedError("Unauthorized")

        if order.escrow_status != EscrowState.DISPUTED.value:
            raise NotFoundError("No dispute found for this order")

        dispute = Dispute(
            order_id=order.id,
            buyer_id=order.customer_id,
            seller_id=order.vendor_id,
            raised_by_id=raised_by,
            raised_by_role=role,
            reason=AUTO_DISPUTE_REASON,
        )
        session.add(dispute)
        self._add_message(
            session, dispute, raised_by, role,
            f"{AUTO_DISPUTE_REASON}. Please describe the issue in detail.",
        )
        try:
            session.commit()
        except IntegrityError:
            # Concurrent reader created it first
            session.rollback()
            dispute = session.execute(select(Dispute).where(Dispute.order_id == order_id)).scalar_one()
            return dispute, self._viewer_role(dispute, user), False

        logger.info(f"⚖️ DISPUTE_AUTO_CREATED: dispute {dispute.id} for disputed escrow on order {order.id}")
        return dispute, DisputeRole.ADMIN.value if user.is_admin else role, True

    def get_dispute(self, session: Session, user: User, dispute_id: int) -> Tuple[Dispute, str]:
        dispute = self._load(session, dispute_id)
        role = self._viewer_role(dispute, user)
        self._mark_read(session, dispute, user.id)
        return dispute, role

    def list_disputes(self, session: Session, user: User, status: Optional[str] = None,
                      priority: Optional[str] = None, page: int = 1, limit: int = 10) -> Dict[str, Any]:
        page = max(1, int(page or 1))
        limit = max(1, min(100, int(limit or 10)))

        stmt = select(Dispute)
        if not user.is_admin:
            stmt = stmt.where(or_(Dispute.buyer_id == user.id, Dispute.seller_id == user.id))
        if status:
            stmt = stmt.where(Dispute.status == status)
        if priority and user.is_admin:
            stmt = stmt.where(Dispute.priority == priority)

        total = session.execute(select(func.count()).select_from(stmt.subquery())).scalar_one()
        disputes = session.execute(
            stmt.order_by(Dispute.last_activity.desc(), Dispute.id.desc()).offset((page - 1) * limit).limit(limit)
        ).scalars().all()

        return {
            "disputes": [serialize_dispute(d, user.id, include_messages=False) for d in disputes],
            "totalPages": math.ceil(total / limit) if total else 0,
            "currentPage": page,
            "total": total,
        }

    # ------------------------------------------------------------------
    # Messages and evidence
    # ------------------------------------------------------------------

    def send_message(self, session: Session, user: User, dispute_id: int, content: Optional[str],
                     images: Optional[List[EvidenceUpload]] = None) -> DisputeMessage:
        dispute = self._load(session, dispute_id)
        role = self._viewer_role(dispute, user)
        if dispute.status in CLOSED_STATES:
            raise InvalidStateError("Cannot send messages to a resolved dispute")

        images = images or []
        content = (content or "").strip()
        if not content and not images:
            raise InvalidInputError("Message must have content or images")
        if len(content) > 5000:
            raise InvalidInputError("Message too long (maximum 5000 characters)")
        if len(images) > Config.DISPUTE_MAX_IMAGES:
            raise InvalidInputError(
                f"At most {Config.DISPUTE_MAX_IMAGES} images per message",
                [{"field": "images", "message": f"max {Config.DISPUTE_MAX_IMAGES} files"}],
            )
        accepted = [InputValidator.validate_image_upload(img.content, img.content_type) for img in images]

        stored: List[str] = []
        try:
            message = self._add_message(session, dispute, user.id, role, content)
            expires_at = self.storage.expiry_from_now()
            for upload, (extension, mime_type) in zip(images, accepted):
                filename = self.storage.save(upload.content, extension)
                stored.append(filename)
                message.attachments.append(DisputeAttachment(
                    filename=filename,
                    original_name=InputValidator.sanitize_filename(upload.filename),
                    mime_type=mime_type,
                    size=len(upload.content),
                    expires_at=expires_at,
                ))

            if role == DisputeRole.ADMIN.value and dispute.status == DisputeStatus.OPEN.value:
                dispute.status = DisputeStatus.IN_PROGRESS.value
                if dispute.assigned_admin_id is None:
                    dispute.assigned_admin_id = user.id
            session.commit()
        except Exception:
            session.rollback()
            for filename in stored:
                self.storage.remove(filename)
            raise

        logger.info(
            f"💬 DISPUTE_MESSAGE: dispute {dispute.id} from {role} {user.id} with {len(stored)} image(s)"
        )
        return message

    def get_proof(self, session: Session, filename: str) -> Tuple[str, str]:
        """Path and mime type of a servable proof image"""
        attachment = self.storage.resolve_proof(session, filename)
        return self.storage.path_for(attachment.filename), attachment.mime_type

    # ------------------------------------------------------------------
    # Admin operations
    # ------------------------------------------------------------------

    async def resolve_dispute(self, session: Session, admin: User, dispute_id: int, winner: str,
                              notes: Optional[str] = None) -> ResolutionResult:
        """
        Record the resolution, then arbitrate the escrow.

        The dispute stays resolved even when the chain call fails; calling again
        with the same winner retries the on-chain resolution while the escrow is
        unsettled. An escrow whose dispute never reached the chain is first
        disputed on behalf of the participant who opened the thread.
        """
        if not admin.is_admin:
            raise NotAuthorizedError("Only an admin can resolve disputes")
        if winner not in ("buyer", "seller"):
            raise InvalidInputError("Winner must be 'buyer' or 'seller'",
                                    [{"field": "winner", "message": "must be buyer or seller"}])

        dispute = self._load(session, dispute_id)
        order = dispute.order
        retried = False

        if dispute.status == DisputeStatus.CLOSED.value:
            raise InvalidStateError("Dispute is already closed")
        if dispute.status == DisputeStatus.RESOLVED.value:
            if order.escrow_status not in UNSETTLED_ESCROW_STATES:
                raise InvalidStateError("Dispute is already resolved")
            if dispute.resolution_winner != winner:
                raise InvalidStateError(
                    f"Dispute was resolved in favor of {dispute.resolution_winner}; retry must use the same winner"
                )
            retried = True
            logger.info(f"🔁 DISPUTE_RESOLUTION_RETRY: dispute {dispute.id} order {order.id}")
        else:
            notes = (notes or "").strip() or None
            now = get_naive_utc_now()
            dispute.status = DisputeStatus.RESOLVED.value
            dispute.resolution_winner = winner
            dispute.resolution_notes = notes
            dispute.resolved_by_id = admin.id
            dispute.resolved_at = now
            self._add_message(
                session, dispute, admin.id, DisputeRole.ADMIN.value,
                f"Dispute resolved in favor of {winner}. {notes or ''}".strip(),
            )
            session.commit()
            logger.info(f"⚖️ DISPUTE_RESOLVED: dispute {dispute.id} winner {winner} by admin {admin.id}")

        if order.escrow_address is None:
            return ResolutionResult(success=True, dispute=dispute, winner=winner, retried=retried)

        try:
            if order.escrow_status in (EscrowState.LOCKED.value, EscrowState.RELEASE_PENDING.value):
                raiser = session.get(User, dispute.raised_by_id)
                if raiser is None:
                    raise InvalidStateError("The participant who opened this dispute no longer exists")
                await self.coordinator.raise_dispute(session, order.id, raiser)
                logger.info(f"⚖️ DISPUTE_CHAIN_RAISED_ON_RESOLVE: dispute {dispute.id} order {order.id}")
            result = await self.coordinator.resolve_dispute(session, order.id, admin, winner)
        except MarketplaceError as e:
            logger.error(f"❌ DISPUTE_CHAIN_RESOLVE_FAILED: dispute {dispute.id} order {order.id}: {e.message}")
            self._add_message(
                session, dispute, None, DisputeRole.SYSTEM.value,
                f"On-chain resolution failed: {e.message}. Retry the resolution to settle the escrow.",
            )
            session.commit()
            session.refresh(dispute)
            return ResolutionResult(success=False, dispute=dispute, winner=winner,
                                    error_message=e.message, retried=retried)

        session.refresh(dispute)
        return ResolutionResult(success=True, dispute=dispute, winner=winner,
                                tx_hash=result.get("txHash"), retried=retried)

    def update_priority(self, session: Session, admin: User, dispute_id: int, priority: str) -> Dispute:
        try:
            DisputePriority(priority)
        except ValueError:
            raise InvalidInputError("Invalid priority level", [{"field": "priority", "message": "low|medium|high|urgent"}])
        dispute = self._load(session, dispute_id)
        dispute.priority = priority
        session.commit()
        logger.info(f"🏷️ DISPUTE_PRIORITY: dispute {dispute.id} -> {priority} by admin {admin.id}")
        return dispute

    def assign_admin(self, session: Session, admin: User, dispute_id: int, admin_id: Optional[int] = None) -> Dispute:
        dispute = self._load(session, dispute_id)
        if dispute.status in CLOSED_STATES:
            raise InvalidStateError("Dispute is already closed")

        assignee_id = admin_id or admin.id
        if assignee_id != admin.id:
            assignee = session.get(User, assignee_id)
            if assignee is None or not assignee.is_admin:
                raise InvalidInputError("Assignee must be an admin", [{"field": "adminId", "message": "not an admin"}])

        dispute.assigned_admin_id = assignee_id
        dispute.status = DisputeStatus.IN_PROGRESS.value
        session.commit()
        logger.info(f"👮 DISPUTE_ASSIGNED: dispute {dispute.id} -> admin {assignee_id}")
        return dispute

    def close_dispute(self, session: Session, user: User, dispute_id: int, reason: Optional[str] = None) -> Dispute:
        dispute = self._load(session, dispute_id)
        if dispute.raised_by_id != user.id and not user.is_admin:
            raise NotAuthorizedError("Unauthorized to close this dispute")
        if dispute.status in CLOSED_STATES:
            raise InvalidStateError("Dispute is already closed")

        role = DisputeRole.ADMIN.value if user.is_admin and dispute.raised_by_id != user.id else dispute.raised_by_role
        dispute.status = DisputeStatus.CLOSED.value
        dispute.closed_at = get_naive_utc_now()
        self._add_message(session, dispute, user.id, role, f"Dispute closed. {(reason or '').strip()}".strip())
        session.commit()
        logger.info(f"📪 DISPUTE_CLOSED: dispute {dispute.id} by user {user.id}")
        return dispute


dispute_resolution_service = DisputeResolutionService()


def get_dispute_resolution_service() -> DisputeResolutionService:
    return dispute_resolution_service
