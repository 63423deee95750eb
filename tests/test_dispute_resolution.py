"""
Dispute engine tests: opening, threads with image evidence, resolution with escrow side effects
"""

import os
from datetime import timedelta

import pytest

from models import (
    DisputeAttachment, DisputeRole, DisputeStatus, EscrowState, OrderStatus, PaymentStatus, UserRole,
)
from services.dispute_resolution import AUTO_DISPUTE_REASON, EvidenceUpload, serialize_dispute
from utils.datetime_helpers import get_naive_utc_now
from utils.exception_handler import (
    ChainUnavailableError, ConflictError, GoneError, InvalidInputError, InvalidStateError,
    NotAuthorizedError, NotFoundError,
)
from conftest import make_user

PNG = b"\x89PNG\r\n\x1a\n" + b"\x00" * 64


class TestOpeningDisputes:

    @pytest.mark.asyncio
    async def test_buyer_opens_dispute_and_escrow_is_disputed(self, db_session, dispute_service, chain,
                                                               locked_order, customer):
        dispute = await dispute_service.open_dispute(db_session, customer, locked_order.id, "Item never arrived")

        db_session.refresh(locked_order)
        assert dispute.raised_by_role == DisputeRole.BUYER.value
        assert dispute.seller_id == locked_order.vendor_id
        assert dispute.messages[0].content == "Item never arrived"
        assert locked_order.escrow_status == EscrowState.DISPUTED.value
        assert chain.escrow_state(locked_order.escrow_address) == EscrowState.DISPUTED

    @pytest.mark.asyncio
    async def test_second_dispute_conflicts(self, db_session, dispute_service, locked_order, customer, vendor):
        await dispute_service.open_dispute(db_session, customer, locked_order.id, "Damaged")

        with pytest.raises(ConflictError):
            await dispute_service.open_dispute(db_session, vendor, locked_order.id, "Buyer is lying")

    @pytest.mark.asyncio
    async def test_stranger_cannot_open(self, db_session, dispute_service, locked_order):
        stranger = make_user(db_session, UserRole.CUSTOMER, "Stranger")

        with pytest.raises(NotAuthorizedError):
            await dispute_service.open_dispute(db_session, stranger, locked_order.id, "Not mine")

    @pytest.mark.asyncio
    async def test_chain_failure_keeps_thread_with_system_note(self, db_session, dispute_service, chain,
                                                               locked_order, customer):
        chain.failures.append(ChainUnavailableError("Blockchain RPC timed out"))

        dispute = await dispute_service.open_dispute(db_session, customer, locked_order.id, "Wrong size")

        db_session.refresh(locked_order)
        assert locked_order.escrow_status == EscrowState.LOCKED.value
        assert dispute.messages[-1].sender_role == DisputeRole.SYSTEM.value

    @pytest.mark.asyncio
    async def test_disputed_escrow_gets_thread_on_read(self, db_session, dispute_service, coordinator,
                                                       locked_order, vendor):
        await coordinator.raise_dispute(db_session, locked_order.id, vendor)

        dispute, role, created = dispute_service.get_dispute_by_order(db_session, vendor, locked_order.id)

        assert created is True
        assert role == DisputeRole.SELLER.value
        assert dispute.reason == AUTO_DISPUTE_REASON

        again, _, created_again = dispute_service.get_dispute_by_order(db_session, vendor, locked_order.id)
        assert again.id == dispute.id
        assert created_again is False

    @pytest.mark.asyncio
    async def test_no_dispute_for_undisputed_order(self, db_session, dispute_service, locked_order, customer):
        with pytest.raises(NotFoundError):
            dispute_service.get_dispute_by_order(db_session, customer, locked_order.id)


class TestDisputeThread:

    @pytest.fixture
    async def dispute(self, db_session, dispute_service, locked_order, customer):
        return await dispute_service.open_dispute(db_session, customer, locked_order.id, "Item never arrived")

    @pytest.mark.asyncio
    async def test_message_with_image_is_stored(self, db_session, dispute_service, storage, dispute, vendor):
        message = dispute_service.send_message(
            db_session, vendor, dispute.id, "Tracking shows delivered",
            [EvidenceUpload(content=PNG, content_type="image/png", filename="../receipt.png")],
        )

        attachment = message.attachments[0]
        assert attachment.filename.startswith("proof_")
        assert attachment.filename.endswith(".png")
        assert "/" not in attachment.original_name
        assert os.path.exists(storage.path_for(attachment.filename))

        path, mime = dispute_service.get_proof(db_session, attachment.filename)
        assert mime == "image/png"
        assert path == storage.path_for(attachment.filename)

    @pytest.mark.asyncio
    async def test_rejects_non_image(self, db_session, dispute_service, dispute, customer):
        with pytest.raises(InvalidInputError):
            dispute_service.send_message(
                db_session, customer, dispute.id, "see attached",
                [EvidenceUpload(content=b"%PDF", content_type="application/pdf", filename="x.pdf")],
            )

    @pytest.mark.asyncio
    async def test_rejects_markup_labelled_as_png(self, db_session, dispute_service, dispute, customer):
        with pytest.raises(InvalidInputError) as exc:
            dispute_service.send_message(
                db_session, customer, dispute.id, "photo",
                [EvidenceUpload(content=b"<html><script>alert(1)</script></html>", content_type="image/png",
                                filename="box.png")],
            )

        assert exc.value.message == "File content does not match its image type"
        assert db_session.query(DisputeAttachment).count() == 0

    @pytest.mark.asyncio
    async def test_rejects_jpeg_declared_as_png(self, db_session, dispute_service, dispute, customer):
        with pytest.raises(InvalidInputError):
            dispute_service.send_message(
                db_session, customer, dispute.id, "photo",
                [EvidenceUpload(content=b"\xff\xd8\xff" + b"\x00" * 32, content_type="image/png", filename="a.png")],
            )

    @pytest.mark.asyncio
    async def test_rejects_empty_message(self, db_session, dispute_service, dispute, customer):
        with pytest.raises(InvalidInputError):
            dispute_service.send_message(db_session, customer, dispute.id, "   ", [])

    @pytest.mark.asyncio
    async def test_admin_message_moves_dispute_in_progress(self, db_session, dispute_service, dispute, admin):
        dispute_service.send_message(db_session, admin, dispute.id, "Looking into it")

        db_session.refresh(dispute)
        assert dispute.status == DisputeStatus.IN_PROGRESS.value
        assert dispute.assigned_admin_id == admin.id

    @pytest.mark.asyncio
    async def test_reading_marks_messages_read(self, db_session, dispute_service, dispute, customer, vendor):
        dispute_service.send_message(db_session, vendor, dispute.id, "Please share a photo")
        assert serialize_dispute(dispute, customer.id)["unreadCount"] == 1

        dispute_service.get_dispute(db_session, customer, dispute.id)

        assert serialize_dispute(dispute, customer.id)["unreadCount"] == 0

    @pytest.mark.asyncio
    async def test_expired_proof_is_gone(self, db_session, dispute_service, storage, dispute, customer):
        message = dispute_service.send_message(
            db_session, customer, dispute.id, None,
            [EvidenceUpload(content=PNG, content_type="image/png", filename="box.png")],
        )
        attachment = message.attachments[0]
        attachment.expires_at = get_naive_utc_now() - timedelta(minutes=1)
        db_session.commit()

        with pytest.raises(GoneError):
            dispute_service.get_proof(db_session, attachment.filename)

        assert storage.purge_expired(db_session) == 1
        assert not os.path.exists(storage.path_for(attachment.filename))
        assert db_session.query(DisputeAttachment).count() == 1

    def test_unknown_proof_not_found(self, db_session, dispute_service):
        with pytest.raises(NotFoundError):
            dispute_service.get_proof(db_session, "../../etc/passwd")


class TestDisputeResolution:

    @pytest.fixture
    async def dispute(self, db_session, dispute_service, locked_order, customer):
        return await dispute_service.open_dispute(db_session, customer, locked_order.id, "Item never arrived")

    @pytest.mark.asyncio
    async def test_buyer_wins_refunds_escrow(self, db_session, dispute_service, dispute, locked_order, admin):
        result = await dispute_service.resolve_dispute(db_session, admin, dispute.id, "buyer", "Carrier lost it")

        db_session.refresh(locked_order)
        assert result.success is True
        assert result.tx_hash is not None
        assert result.dispute.status == DisputeStatus.RESOLVED.value
        assert locked_order.escrow_status == EscrowState.REFUNDED.value
        assert locked_order.status == OrderStatus.REFUNDED.value
        assert locked_order.payment_status == PaymentStatus.REFUNDED.value

    @pytest.mark.asyncio
    async def test_chain_failure_then_retry_with_same_winner(self, db_session, dispute_service, chain, dispute,
                                                             locked_order, admin):
        chain.failures.append(ChainUnavailableError("Blockchain RPC timed out"))

        failed = await dispute_service.resolve_dispute(db_session, admin, dispute.id, "seller")

        assert failed.success is False
        assert failed.dispute.status == DisputeStatus.RESOLVED.value
        db_session.refresh(locked_order)
        assert locked_order.escrow_status == EscrowState.DISPUTED.value

        with pytest.raises(InvalidStateError):
            await dispute_service.resolve_dispute(db_session, admin, dispute.id, "buyer")

        retried = await dispute_service.resolve_dispute(db_session, admin, dispute.id, "seller")
        db_session.refresh(locked_order)
        assert retried.success is True
        assert retried.retried is True
        assert locked_order.escrow_status == EscrowState.COMPLETE.value

    @pytest.mark.asyncio
    async def test_resolve_raises_dispute_that_never_reached_chain(self, db_session, dispute_service, chain,
                                                                  locked_order, customer, admin):
        chain.failures.append(ChainUnavailableError("Blockchain RPC timed out"))
        dispute = await dispute_service.open_dispute(db_session, customer, locked_order.id, "Wrong size")
        db_session.refresh(locked_order)
        assert locked_order.escrow_status == EscrowState.LOCKED.value

        result = await dispute_service.resolve_dispute(db_session, admin, dispute.id, "buyer")

        db_session.refresh(locked_order)
        assert result.success is True
        assert chain.escrow_state(locked_order.escrow_address) == EscrowState.REFUNDED
        assert locked_order.escrow_status == EscrowState.REFUNDED.value

    @pytest.mark.asyncio
    async def test_retry_after_failed_raise_on_resolve(self, db_session, dispute_service, chain, locked_order,
                                                       customer, admin):
        chain.failures.append(ChainUnavailableError("Blockchain RPC timed out"))
        dispute = await dispute_service.open_dispute(db_session, customer, locked_order.id, "Wrong size")
        chain.failures.append(ChainUnavailableError("Blockchain RPC timed out"))

        failed = await dispute_service.resolve_dispute(db_session, admin, dispute.id, "seller")
        db_session.refresh(locked_order)
        assert failed.success is False
        assert locked_order.escrow_status == EscrowState.LOCKED.value

        retried = await dispute_service.resolve_dispute(db_session, admin, dispute.id, "seller")

        db_session.refresh(locked_order)
        assert retried.success is True
        assert retried.retried is True
        assert locked_order.escrow_status == EscrowState.COMPLETE.value

    @pytest.mark.asyncio
    async def test_resolved_and_settled_cannot_resolve_again(self, db_session, dispute_service, dispute, admin):
        await dispute_service.resolve_dispute(db_session, admin, dispute.id, "buyer")

        with pytest.raises(InvalidStateError):
            await dispute_service.resolve_dispute(db_session, admin, dispute.id, "buyer")

    @pytest.mark.asyncio
    async def test_invalid_winner(self, db_session, dispute_service, dispute, admin):
        with pytest.raises(InvalidInputError):
            await dispute_service.resolve_dispute(db_session, admin, dispute.id, "platform")

    @pytest.mark.asyncio
    async def test_non_admin_cannot_resolve(self, db_session, dispute_service, dispute, customer):
        with pytest.raises(NotAuthorizedError):
            await dispute_service.resolve_dispute(db_session, customer, dispute.id, "buyer")

    @pytest.mark.asyncio
    async def test_priority_assign_and_close(self, db_session, dispute_service, dispute, admin, customer):
        dispute_service.update_priority(db_session, admin, dispute.id, "urgent")
        dispute_service.assign_admin(db_session, admin, dispute.id)
        closed = dispute_service.close_dispute(db_session, customer, dispute.id, "Sorted with seller")

        assert closed.priority == "urgent"
        assert closed.assigned_admin_id == admin.id
        assert closed.status == DisputeStatus.CLOSED.value
        with pytest.raises(InvalidStateError):
            dispute_service.send_message(db_session, customer, dispute.id, "one more thing")

    @pytest.mark.asyncio
    async def test_invalid_priority(self, db_session, dispute_service, dispute, admin):
        with pytest.raises(InvalidInputError):
            dispute_service.update_priority(db_session, admin, dispute.id, "critical")

    @pytest.mark.asyncio
    async def test_list_scoped_to_participants(self, db_session, dispute_service, dispute, customer, admin):
        stranger = make_user(db_session, UserRole.CUSTOMER, "Stranger")

        assert dispute_service.list_disputes(db_session, customer)["total"] == 1
        assert dispute_service.list_disputes(db_session, admin)["total"] == 1
        assert dispute_service.list_disputes(db_session, stranger)["total"] == 0
