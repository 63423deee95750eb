"""
Escrow coordinator tests: creation, role-gated transitions, failure handling and reconciliation
"""

from datetime import timedelta

import pytest

from config import Config
from models import (
    EscrowAction, EscrowState, EscrowTransaction, EscrowTransactionType, OrderStatus, PaymentStatus, UserRole,
)
from utils.datetime_helpers import get_naive_utc_now
from utils.decimal_precision import MonetaryDecimal
from utils.exception_handler import (
    ChainUnavailableError, EscrowAlreadyExistsError, InvalidStateError, NotAuthorizedError, StateTransitionError,
)
from conftest import make_user


def _tx_types(session, order):
    rows = session.query(EscrowTransaction).filter_by(order_id=order.id).order_by(EscrowTransaction.id).all()
    return [row.type for row in rows]


class TestEscrowCreation:
    """Escrow deployment runs at most once per order"""

    @pytest.mark.asyncio
    async def test_vendor_confirmation_creates_locked_escrow(self, db_session, chain, locked_order):
        assert locked_order.escrow_address in chain.escrows
        assert locked_order.escrow_amount == str(MonetaryDecimal.to_wei(locked_order.total))
        assert locked_order.escrow_pending_action is None
        assert _tx_types(db_session, locked_order) == [EscrowTransactionType.CREATED.value]

    @pytest.mark.asyncio
    async def test_escrow_parties_are_vault_addresses(self, db_session, vault, chain, locked_order):
        escrow = chain.escrows[locked_order.escrow_address]

        assert escrow["buyer"] == vault.get_address(db_session, locked_order.customer_id)
        assert escrow["seller"] == vault.get_address(db_session, locked_order.vendor_id)
        assert locked_order.escrow_buyer_address == escrow["buyer"]

    @pytest.mark.asyncio
    async def test_second_creation_conflicts(self, db_session, coordinator, locked_order, customer):
        with pytest.raises(EscrowAlreadyExistsError):
            await coordinator.create_escrow(db_session, locked_order.id, customer)

    @pytest.mark.asyncio
    async def test_stranger_cannot_create(self, db_session, coordinator, place_order, customer, product):
        order = place_order(customer, [(product, 1)])[0]
        stranger = make_user(db_session, UserRole.CUSTOMER, "Stranger")

        with pytest.raises(NotAuthorizedError):
            await coordinator.create_escrow(db_session, order.id, stranger)

    @pytest.mark.asyncio
    async def test_deploy_failure_releases_claim(self, db_session, coordinator, chain, place_order, customer, product):
        order = place_order(customer, [(product, 1)])[0]
        chain.failures.append(ChainUnavailableError("Blockchain RPC timed out"))

        with pytest.raises(ChainUnavailableError):
            await coordinator.create_escrow(db_session, order.id, customer)

        db_session.refresh(order)
        assert order.escrow_address is None
        assert order.escrow_pending_action is None

        result = await coordinator.create_escrow(db_session, order.id, customer)
        assert result["escrow"]["status"] == EscrowState.LOCKED.value

    @pytest.mark.asyncio
    async def test_unconfigured_chain_is_unavailable(self, db_session, coordinator, place_order, customer, product,
                                                     monkeypatch):
        order = place_order(customer, [(product, 1)])[0]
        monkeypatch.setattr(Config, "ESCROW_FACTORY_ADDRESS", "")

        with pytest.raises(ChainUnavailableError):
            await coordinator.create_escrow(db_session, order.id, customer)

    @pytest.mark.asyncio
    async def test_auto_create_failure_keeps_order_confirmed(self, db_session, order_service, chain, place_order,
                                                             customer, vendor, product):
        order = place_order(customer, [(product, 1)])[0]
        chain.failures.append(ChainUnavailableError("Blockchain RPC timed out"))

        updated = await order_service.update_order_status(db_session, vendor, order.id, OrderStatus.CONFIRMED.value)

        assert updated.status == OrderStatus.CONFIRMED.value
        assert updated.escrow_address is None


class TestEscrowTransitions:
    """Each edge is gated by role and by the persisted state"""

    @pytest.mark.asyncio
    async def test_only_buyer_confirms_delivery(self, db_session, coordinator, locked_order, vendor):
        with pytest.raises(NotAuthorizedError):
            await coordinator.confirm_delivery(db_session, locked_order.id, vendor)

    @pytest.mark.asyncio
    async def test_confirm_delivery_moves_to_release_pending(self, db_session, coordinator, chain, locked_order,
                                                             customer):
        result = await coordinator.confirm_delivery(db_session, locked_order.id, customer)

        db_session.refresh(locked_order)
        assert result["escrow"]["status"] == EscrowState.RELEASE_PENDING.value
        assert chain.escrow_state(locked_order.escrow_address) == EscrowState.RELEASE_PENDING
        assert locked_order.status == OrderStatus.DELIVERED.value
        assert locked_order.vendor_order.status == OrderStatus.DELIVERED.value
        assert result["txHash"] == _latest_tx(db_session, locked_order).tx_hash

    @pytest.mark.asyncio
    async def test_only_seller_releases(self, db_session, coordinator, locked_order, customer):
        await coordinator.confirm_delivery(db_session, locked_order.id, customer)

        with pytest.raises(NotAuthorizedError):
            await coordinator.release_funds(db_session, locked_order.id, customer)

    @pytest.mark.asyncio
    async def test_release_before_delivery_is_invalid(self, db_session, coordinator, chain, locked_order, vendor):
        sent_before = len(chain.sent)

        with pytest.raises(StateTransitionError):
            await coordinator.release_funds(db_session, locked_order.id, vendor)

        db_session.refresh(locked_order)
        assert locked_order.escrow_status == EscrowState.LOCKED.value
        assert len(chain.sent) == sent_before

    @pytest.mark.asyncio
    async def test_release_marks_order_paid(self, db_session, coordinator, locked_order, customer, vendor):
        await coordinator.confirm_delivery(db_session, locked_order.id, customer)
        await coordinator.release_funds(db_session, locked_order.id, vendor)

        db_session.refresh(locked_order)
        assert locked_order.escrow_status == EscrowState.COMPLETE.value
        assert locked_order.payment_status == PaymentStatus.PAID.value

    @pytest.mark.asyncio
    async def test_either_party_can_raise_dispute(self, db_session, coordinator, locked_order, vendor):
        result = await coordinator.raise_dispute(db_session, locked_order.id, vendor)

        assert result["escrow"]["status"] == EscrowState.DISPUTED.value

    @pytest.mark.asyncio
    async def test_resolve_requires_admin(self, db_session, coordinator, locked_order, customer):
        await coordinator.raise_dispute(db_session, locked_order.id, customer)

        with pytest.raises(NotAuthorizedError):
            await coordinator.resolve_dispute(db_session, locked_order.id, customer, "buyer")

    @pytest.mark.asyncio
    async def test_resolve_for_seller_completes(self, db_session, coordinator, chain, locked_order, customer, admin):
        await coordinator.raise_dispute(db_session, locked_order.id, customer)
        await coordinator.resolve_dispute(db_session, locked_order.id, admin, "seller")

        db_session.refresh(locked_order)
        assert locked_order.escrow_status == EscrowState.COMPLETE.value
        assert locked_order.payment_status == PaymentStatus.PAID.value
        assert chain.sent[-1]["from"] == "admin"
        assert _latest_tx(db_session, locked_order).winner == "seller"

    @pytest.mark.asyncio
    async def test_reverted_call_leaves_state_unchanged(self, db_session, coordinator, locked_order, customer, chain):
        chain.failures.append(InvalidStateError("Transaction would revert: not buyer"))

        with pytest.raises(InvalidStateError):
            await coordinator.confirm_delivery(db_session, locked_order.id, customer)

        db_session.refresh(locked_order)
        assert locked_order.escrow_status == EscrowState.LOCKED.value
        assert locked_order.escrow_pending_action is None
        assert _tx_types(db_session, locked_order) == [EscrowTransactionType.CREATED.value]

    @pytest.mark.asyncio
    async def test_in_flight_claim_blocks_second_transition(self, db_session, coordinator, locked_order, customer):
        locked_order.escrow_pending_action = EscrowAction.RAISE_DISPUTE.value
        locked_order.escrow_pending_since = get_naive_utc_now()
        db_session.commit()

        with pytest.raises(InvalidStateError):
            await coordinator.confirm_delivery(db_session, locked_order.id, customer)


class TestEscrowReads:

    @pytest.mark.asyncio
    async def test_get_escrow_includes_chain_details(self, db_session, coordinator, locked_order, customer):
        result = await coordinator.get_escrow(db_session, locked_order.id, customer)

        assert result["escrow"]["address"] == locked_order.escrow_address
        assert result["onChain"]["state"] == EscrowState.LOCKED.value

    @pytest.mark.asyncio
    async def test_get_escrow_hidden_from_strangers(self, db_session, coordinator, locked_order):
        stranger = make_user(db_session, UserRole.CUSTOMER, "Stranger")

        with pytest.raises(NotAuthorizedError):
            await coordinator.get_escrow(db_session, locked_order.id, stranger)

    def test_wallet_created_on_first_read(self, db_session, coordinator, customer):
        wallet = coordinator.get_wallet(db_session, customer)

        assert wallet["hasWallet"] is True
        assert wallet["address"].startswith("0x")


class TestReconciliation:
    """The persisted record converges on the contract state along valid edges"""

    @pytest.mark.asyncio
    async def test_reconcile_catches_up_missed_transitions(self, db_session, coordinator, chain, locked_order):
        chain.force_escrow_state(locked_order.escrow_address, EscrowState.DISPUTED)
        tx_hash = chain.force_escrow_state(locked_order.escrow_address, EscrowState.REFUNDED)

        written = await coordinator.reconcile(db_session, locked_order)

        db_session.refresh(locked_order)
        assert written == EscrowState.REFUNDED.value
        assert locked_order.escrow_status == EscrowState.REFUNDED.value
        assert locked_order.status == OrderStatus.REFUNDED.value
        assert locked_order.payment_status == PaymentStatus.REFUNDED.value
        latest = _latest_tx(db_session, locked_order)
        assert latest.tx_hash == tx_hash
        assert latest.winner == "buyer"

    @pytest.mark.asyncio
    async def test_reconcile_timeout_claim(self, db_session, coordinator, chain, locked_order):
        chain.force_escrow_state(locked_order.escrow_address, EscrowState.COMPLETE)

        await coordinator.reconcile(db_session, locked_order)

        assert _latest_tx(db_session, locked_order).type == EscrowTransactionType.TIMEOUT_CLAIMED.value

    @pytest.mark.asyncio
    async def test_reconcile_noop_when_in_sync(self, db_session, coordinator, locked_order):
        assert await coordinator.reconcile(db_session, locked_order) is None

    @pytest.mark.asyncio
    async def test_reconcile_never_moves_backwards(self, db_session, coordinator, chain, locked_order, customer):
        await coordinator.raise_dispute(db_session, locked_order.id, customer)
        chain.escrows[locked_order.escrow_address]["state"] = EscrowState.LOCKED

        assert await coordinator.reconcile(db_session, locked_order) is None
        db_session.refresh(locked_order)
        assert locked_order.escrow_status == EscrowState.DISPUTED.value

    @pytest.mark.asyncio
    async def test_fresh_claim_is_skipped(self, db_session, coordinator, chain, locked_order):
        chain.force_escrow_state(locked_order.escrow_address, EscrowState.DISPUTED)
        locked_order.escrow_pending_action = EscrowAction.RAISE_DISPUTE.value
        locked_order.escrow_pending_since = get_naive_utc_now()
        db_session.commit()

        assert await coordinator.reconcile(db_session, locked_order) is None

    @pytest.mark.asyncio
    async def test_stale_claim_is_cleared_and_state_adopted(self, db_session, coordinator, chain, locked_order):
        chain.force_escrow_state(locked_order.escrow_address, EscrowState.DISPUTED)
        locked_order.escrow_pending_action = EscrowAction.RAISE_DISPUTE.value
        locked_order.escrow_pending_since = get_naive_utc_now() - timedelta(
            seconds=Config.ESCROW_PENDING_ACTION_TTL + 60
        )
        db_session.commit()

        assert await coordinator.reconcile(db_session, locked_order) == EscrowState.DISPUTED.value
        db_session.refresh(locked_order)
        assert locked_order.escrow_pending_action is None


def _latest_tx(session, order):
    return (
        session.query(EscrowTransaction)
        .filter_by(order_id=order.id)
        .order_by(EscrowTransaction.id.desc())
        .first()
    )
