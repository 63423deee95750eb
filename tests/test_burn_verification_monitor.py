"""
Background verifier tests: burns confirmed after the fact, orphaned payouts,
provider sync, escrow reconciliation and proof expiry
"""

from datetime import timedelta
from decimal import Decimal

import pytest

from config import Config
from models import BurnRecord, BurnStatus, EscrowState, Payout, PayoutStatus
from services.dispute_resolution import EvidenceUpload
from utils.datetime_helpers import get_naive_utc_now
from utils.exception_handler import ChainUnavailableError


@pytest.fixture
def no_grace(monkeypatch):
    monkeypatch.setattr(Config, "BURN_VERIFY_GRACE_SECONDS", 0)
    monkeypatch.setattr(Config, "PAYOUT_SYNC_GRACE_SECONDS", 0)
    monkeypatch.setattr(Config, "ESCROW_RECONCILE_GRACE_SECONDS", 0)


@pytest.fixture
def bank(db_session, bank_service, customer):
    return bank_service.add_bank_detail(
        db_session, customer, "Asha Buyer", "123456789012", "HDFC0001234", "HDFC Bank"
    )


@pytest.fixture
def wallet(db_session, vault, chain, customer):
    address = vault.get_or_create(db_session, customer.id)
    chain.mint(address, 100)
    return address


class TestBurnVerification:
    """Submitted burns are confirmed and paid out once the receipt exists"""

    @pytest.mark.asyncio
    async def test_unmined_claim_is_paid_after_confirmation(self, db_session, monitor, chain, provider,
                                                            payout_service, wallet, bank, customer, no_grace):
        chain.mine_burns = False
        payout, burn, _ = await payout_service.claim_funds(db_session, customer, "25", bank.id)

        first = await monitor.run_verification_cycle(db_session)

        assert first.get_summary()["burns_checked"] == 1
        assert first.burns_confirmed == 0
        assert burn.status == BurnStatus.SUBMITTED.value
        assert payout.status == PayoutStatus.PENDING.value

        chain.mine(burn.tx_hash)
        second = await monitor.run_verification_cycle(db_session)

        db_session.refresh(payout)
        assert second.burns_confirmed == 1
        assert second.payouts_processed == 1
        assert burn.status == BurnStatus.CONFIRMED.value
        assert payout.status == PayoutStatus.PROCESSING.value
        assert payout.amount_usd == Decimal("25.00")
        assert payout.amount_inr == Decimal("2100.00")
        assert provider.payouts[0]["amount"] == 210000
        assert db_session.query(Payout).count() == 1

    @pytest.mark.asyncio
    async def test_confirmed_burn_goes_manual_without_provider(self, db_session, monitor, provider,
                                                               payout_service, wallet, bank, customer, no_grace):
        provider.available = False
        payout, burn, message = await payout_service.claim_funds(db_session, customer, "25", bank.id)

        await monitor.run_verification_cycle(db_session)

        db_session.refresh(payout)
        assert burn.status == BurnStatus.CONFIRMED.value
        assert payout.status == PayoutStatus.PENDING_MANUAL.value
        assert payout.amount_inr == Decimal("2100.00")

    @pytest.mark.asyncio
    async def test_reverted_burn_is_failed(self, db_session, monitor, chain, burn_service, wallet, customer,
                                           no_grace):
        chain.mine_burns = False
        burn = await burn_service.burn_tokens(db_session, customer, "25")
        receipt = chain.unmined.pop(burn.tx_hash)
        chain.receipts[burn.tx_hash] = dict(receipt, status=0)

        result = await monitor.run_verification_cycle(db_session)

        assert result.burns_failed == 1
        assert burn.status == BurnStatus.FAILED.value
        assert db_session.query(Payout).count() == 0

    @pytest.mark.asyncio
    async def test_fresh_burn_waits_for_grace_period(self, db_session, monitor, burn_service, wallet, customer):
        await burn_service.burn_tokens(db_session, customer, "25")

        result = await monitor.run_verification_cycle(db_session)

        assert result.burns_checked == 0

    @pytest.mark.asyncio
    async def test_backdated_burn_is_checked_without_patching(self, db_session, monitor, burn_service, wallet,
                                                              customer):
        burn = await burn_service.burn_tokens(db_session, customer, "25")
        burn.updated_at = get_naive_utc_now() - timedelta(minutes=5)
        db_session.commit()

        result = await monitor.run_verification_cycle(db_session)

        assert result.burns_confirmed == 1

    @pytest.mark.asyncio
    async def test_burn_older_than_max_age_still_converges(self, db_session, monitor, chain, payout_service,
                                                           wallet, bank, customer):
        chain.mine_burns = False
        payout, burn, _ = await payout_service.claim_funds(db_session, customer, "25", bank.id)
        two_days_ago = get_naive_utc_now() - timedelta(days=2)
        burn.created_at = two_days_ago
        burn.updated_at = two_days_ago
        payout.created_at = two_days_ago
        db_session.commit()
        chain.mine(burn.tx_hash)

        result = await monitor.run_verification_cycle(db_session)

        db_session.refresh(payout)
        assert result.burns_confirmed == 1
        assert burn.status == BurnStatus.CONFIRMED.value
        assert payout.status == PayoutStatus.PROCESSING.value

    @pytest.mark.asyncio
    async def test_old_unmined_burn_is_rechecked_later(self, db_session, monitor, chain, burn_service, wallet,
                                                       customer):
        chain.mine_burns = False
        burn = await burn_service.burn_tokens(db_session, customer, "25")
        burn.created_at = burn.updated_at = get_naive_utc_now() - timedelta(days=2)
        db_session.commit()

        first = await monitor.run_verification_cycle(db_session)
        second = await monitor.run_verification_cycle(db_session)

        assert first.burns_checked == 1
        assert second.burns_checked == 0
        assert burn.status == BurnStatus.SUBMITTED.value

    @pytest.mark.asyncio
    async def test_rpc_error_is_counted_and_cycle_continues(self, db_session, monitor, chain, burn_service,
                                                            wallet, customer, monkeypatch, no_grace):
        await burn_service.burn_tokens(db_session, customer, "25")

        async def _down(tx_hash):
            raise ChainUnavailableError("Blockchain RPC timed out")

        monkeypatch.setattr(chain, "get_receipt", _down)
        result = await monitor.run_verification_cycle(db_session)

        assert result.get_summary()["error_count"] == 1
        assert db_session.query(BurnRecord).one().status == BurnStatus.SUBMITTED.value


class TestPayoutRecovery:

    @pytest.mark.asyncio
    async def test_confirmed_burn_without_payout_gets_one(self, db_session, monitor, burn_service, wallet, bank,
                                                          customer):
        burn = await burn_service.burn_tokens(db_session, customer, "25", bank.id)
        burn_service.apply_verification(db_session, burn, await burn_service.verify_burn(burn.tx_hash))

        result = await monitor.run_verification_cycle(db_session)

        payout = db_session.query(Payout).one()
        assert result.payouts_created == 1
        assert payout.burn_record_id == burn.id
        assert payout.status == PayoutStatus.PROCESSING.value

    @pytest.mark.asyncio
    async def test_processing_payout_synced_from_provider(self, db_session, monitor, provider, burn_service,
                                                          payout_service, wallet, bank, customer, no_grace):
        burn = await burn_service.burn_tokens(db_session, customer, "25", bank.id)
        burn_service.apply_verification(db_session, burn, await burn_service.verify_burn(burn.tx_hash))
        payout = await payout_service.process_payout(
            db_session, payout_service.ensure_payout_for_burn(db_session, burn)
        )
        provider.remote[payout.provider_payout_id].update(status="processed", utr="UTR42")

        result = await monitor.run_verification_cycle(db_session)

        db_session.refresh(payout)
        assert result.payouts_synced == 1
        assert payout.status == PayoutStatus.COMPLETED.value
        assert payout.utr == "UTR42"


class TestEscrowAndProofs:

    @pytest.mark.asyncio
    async def test_escrow_moved_on_chain_is_reconciled(self, db_session, monitor, chain, locked_order, no_grace):
        chain.force_escrow_state(locked_order.escrow_address, EscrowState.RELEASE_PENDING)

        result = await monitor.run_verification_cycle(db_session)

        db_session.refresh(locked_order)
        assert result.escrows_reconciled == 1
        assert locked_order.escrow_status == EscrowState.RELEASE_PENDING.value

    @pytest.mark.asyncio
    async def test_escrow_in_sync_is_untouched(self, db_session, monitor, locked_order, no_grace):
        result = await monitor.run_verification_cycle(db_session)

        assert result.escrows_reconciled == 0
        assert result.get_summary()["error_count"] == 0

    @pytest.mark.asyncio
    async def test_expired_proofs_are_purged(self, db_session, monitor, dispute_service, locked_order, customer):
        dispute = await dispute_service.open_dispute(db_session, customer, locked_order.id, "Broken seal")
        message = dispute_service.send_message(
            db_session, customer, dispute.id, "photo",
            [EvidenceUpload(content=b"\xff\xd8\xff" + b"\x00" * 32, content_type="image/jpeg", filename="a.jpg")],
        )
        message.attachments[0].expires_at = get_naive_utc_now() - timedelta(seconds=1)
        db_session.commit()

        result = await monitor.run_verification_cycle(db_session)

        assert result.proofs_purged == 1


class TestCycleLock:

    @pytest.mark.asyncio
    async def test_overlapping_cycle_is_skipped(self, db_session, monitor):
        async with monitor._lock():
            result = await monitor.run_verification_cycle(db_session)

        assert result.skipped is True
        assert result.get_summary()["burns_checked"] == 0
