"""
Burn Verification Monitor
Background pass that drives burns, payouts and escrows forward to match the chain
and the payout provider
"""

import asyncio
import logging
from datetime import timedelta
from typing import Any, Dict, List, Optional

from sqlalchemy import and_, or_, select
from sqlalchemy.orm import Session

from config import Config
from database import SessionLocal, managed_session
from models import (
    BurnRecord, BurnStatus, Order, PENDING_TX_HASH, Payout, PayoutStatus,
)
from services.dispute_attachment_storage import DisputeAttachmentStorage, get_dispute_attachment_storage
from services.escrow_coordinator import EscrowCoordinator, get_escrow_coordinator
from services.payout_service import PayoutService, get_payout_service
from services.token_burn_service import TokenBurnService, get_token_burn_service
from utils.datetime_helpers import get_naive_utc_now
from utils.escrow_state_validator import EscrowStateValidator

logger = logging.getLogger(__name__)

TERMINAL_ESCROW_STATES = tuple(s.value for s in EscrowStateValidator.TERMINAL_STATES)


class VerificationCycleResult:
    """Counters for one verification pass"""

    def __init__(self):
        self.burns_checked = 0
        self.burns_confirmed = 0
        self.burns_failed = 0
        self.payouts_created = 0
        self.payouts_processed = 0
        self.payouts_synced = 0
        self.escrows_reconciled = 0
        self.proofs_purged = 0
        self.errors: List[str] = []
        self.skipped = False

    def add_error(self, error: str):
        self.errors.append(error)
        logger.error(f"❌ VERIFIER_ERROR: {error}")

    def get_summary(self) -> Dict[str, Any]:
        return {
            "burns_checked": self.burns_checked,
            "burns_confirmed": self.burns_confirmed,
            "burns_failed": self.burns_failed,
            "payouts_created": self.payouts_created,
            "payouts_processed": self.payouts_processed,
            "payouts_synced": self.payouts_synced,
            "escrows_reconciled": self.escrows_reconciled,
            "proofs_purged": self.proofs_purged,
            "error_count": len(self.errors),
            "skipped": self.skipped,
        }


class BurnVerificationMonitor:
    """
    One pass covers, in order: unverified burns, confirmed burns without a
    processed payout, provider status sync, escrow reconciliation and
    expired dispute proofs. Records only ever move forward.
    """

    def __init__(self, burn_service: Optional[TokenBurnService] = None,
                 payout_service: Optional[PayoutService] = None,
                 coordinator: Optional[EscrowCoordinator] = None,
                 storage: Optional[DisputeAttachmentStorage] = None,
                 session_factory=None):
        self._burn_service = burn_service
        self._payout_service = payout_service
        self._coordinator = coordinator
        self._storage = storage
        self._session_factory = session_factory or SessionLocal
        self._cycle_lock: Optional[asyncio.Lock] = None

    @property
    def burn_service(self) -> TokenBurnService:
        return self._burn_service or get_token_burn_service()

    @property
    def payout_service(self) -> PayoutService:
        return self._payout_service or get_payout_service()

    @property
    def coordinator(self) -> EscrowCoordinator:
        return self._coordinator or get_escrow_coordinator()

    @property
    def storage(self) -> DisputeAttachmentStorage:
        return self._storage or get_dispute_attachment_storage()

    def _lock(self) -> asyncio.Lock:
        if self._cycle_lock is None:
            self._cycle_lock = asyncio.Lock()
        return self._cycle_lock

    async def run_verification_cycle(self, session: Optional[Session] = None) -> VerificationCycleResult:
        """Run one pass; a pass already in progress makes this a no-op"""
        result = VerificationCycleResult()
        lock = self._lock()
        if lock.locked():
            logger.info("⏭️ VERIFIER_SKIPPED: previous cycle still running")
            result.skipped = True
            return result

        async with lock:
            if session is not None:
                await self._run_passes(session, result)
            else:
                with managed_session(self._session_factory) as owned:
                    await self._run_passes(owned, result)

        summary = result.get_summary()
        if any(v for k, v in summary.items() if k not in ("skipped",)):
            logger.info(f"🔍 VERIFIER_CYCLE_COMPLETE: {summary}")
        return result

    async def _run_passes(self, session: Session, result: VerificationCycleResult) -> None:
        if self.burn_service.is_available():
            await self._verify_burns(session, result)
            await self._process_orphaned_payouts(session, result)
            if self.coordinator.chain.is_escrow_configured():
                await self._reconcile_escrows(session, result)
        if self.payout_service.is_provider_available():
            await self._sync_payouts(session, result)
        self._purge_proofs(session, result)

    # ------------------------------------------------------------------
    # Burns
    # ------------------------------------------------------------------

    async def _verify_burns(self, session: Session, result: VerificationCycleResult) -> None:
        now = get_naive_utc_now()
        grace_cutoff = now - timedelta(seconds=Config.BURN_VERIFY_GRACE_SECONDS)
        age_cutoff = now - timedelta(hours=Config.BURN_MAX_AGE_HOURS)
        old_recheck_cutoff = now - timedelta(seconds=Config.BURN_OLD_RECHECK_SECONDS)

        # Burns past the max age are still verified, on a slower recheck cadence
        burns = session.execute(
            select(BurnRecord)
            .where(
                or_(
                    BurnRecord.status == BurnStatus.SUBMITTED.value,
                    and_(BurnRecord.status == BurnStatus.PENDING.value, BurnRecord.tx_hash != PENDING_TX_HASH),
                ),
                or_(
                    and_(BurnRecord.created_at >= age_cutoff, BurnRecord.updated_at <= grace_cutoff),
                    BurnRecord.updated_at <= old_recheck_cutoff,
                ),
            )
            .order_by(BurnRecord.updated_at.asc())
            .limit(Config.VERIFIER_BATCH_LIMIT)
        ).scalars().all()

        for burn in burns:
            result.burns_checked += 1
            try:
                verification = await self.burn_service.verify_burn(burn.tx_hash)
                if not verification.is_final:
                    if burn.created_at <= now - timedelta(hours=Config.BURN_STALE_LOG_HOURS):
                        logger.warning(
                            f"⏰ BURN_STILL_UNMINED: burn {burn.id} tx {burn.tx_hash} "
                            f"submitted at {burn.created_at} has no receipt"
                        )
                    # Rotate to the back of the batch order
                    burn.updated_at = get_naive_utc_now()
                    session.commit()
                    continue

                if not self.burn_service.apply_verification(session, burn, verification):
                    continue
                if burn.status == BurnStatus.FAILED.value:
                    result.burns_failed += 1
                    continue

                result.burns_confirmed += 1
                payout = self.payout_service.ensure_payout_for_burn(session, burn)
                await self.payout_service.process_payout(session, payout)
                result.payouts_processed += 1
            except Exception as e:
                session.rollback()
                result.add_error(f"burn {burn.id}: {e}")

    async def _process_orphaned_payouts(self, session: Session, result: VerificationCycleResult) -> None:
        orphans = session.execute(
            select(BurnRecord)
            .outerjoin(Payout, Payout.burn_record_id == BurnRecord.id)
            .where(BurnRecord.status == BurnStatus.CONFIRMED.value, Payout.id.is_(None))
            .order_by(BurnRecord.created_at.asc())
            .limit(Config.VERIFIER_BATCH_LIMIT)
        ).scalars().all()
        for burn in orphans:
            try:
                payout = self.payout_service.ensure_payout_for_burn(session, burn)
                result.payouts_created += 1
                await self.payout_service.process_payout(session, payout)
                result.payouts_processed += 1
                logger.info(f"🩹 ORPHAN_BURN_PAYOUT: burn {burn.id} -> payout {payout.id}")
            except Exception as e:
                session.rollback()
                result.add_error(f"orphan burn {burn.id}: {e}")

        waiting = session.execute(
            select(Payout)
            .join(BurnRecord, Payout.burn_record_id == BurnRecord.id)
            .where(
                Payout.status == PayoutStatus.PENDING.value,
                BurnRecord.status == BurnStatus.CONFIRMED.value,
            )
            .order_by(Payout.created_at.asc())
            .limit(Config.VERIFIER_BATCH_LIMIT)
        ).scalars().all()
        for payout in waiting:
            try:
                await self.payout_service.process_payout(session, payout)
                result.payouts_processed += 1
            except Exception as e:
                session.rollback()
                result.add_error(f"pending payout {payout.id}: {e}")

    # ------------------------------------------------------------------
    # Provider sync
    # ------------------------------------------------------------------

    async def _sync_payouts(self, session: Session, result: VerificationCycleResult) -> None:
        cutoff = get_naive_utc_now() - timedelta(seconds=Config.PAYOUT_SYNC_GRACE_SECONDS)
        payouts = session.execute(
            select(Payout)
            .where(
                Payout.status.in_([PayoutStatus.PROCESSING.value, PayoutStatus.SENT.value]),
                Payout.provider_payout_id.is_not(None),
                Payout.updated_at <= cutoff,
            )
            .order_by(Payout.updated_at.asc())
            .limit(Config.VERIFIER_BATCH_LIMIT)
        ).scalars().all()
        for payout in payouts:
            try:
                if await self.payout_service.sync_payout_status(session, payout):
                    result.payouts_synced += 1
            except Exception as e:
                session.rollback()
                result.add_error(f"payout sync {payout.id}: {e}")

    # ------------------------------------------------------------------
    # Escrows and proofs
    # ------------------------------------------------------------------

    async def _reconcile_escrows(self, session: Session, result: VerificationCycleResult) -> None:
        now = get_naive_utc_now()
        grace_cutoff = now - timedelta(seconds=Config.ESCROW_RECONCILE_GRACE_SECONDS)
        claim_cutoff = now - timedelta(seconds=Config.ESCROW_PENDING_ACTION_TTL)

        orders = session.execute(
            select(Order)
            .where(
                or_(
                    and_(
                        Order.escrow_address.is_not(None),
                        Order.escrow_status.not_in(TERMINAL_ESCROW_STATES),
                        Order.escrow_pending_action.is_(None),
                        Order.updated_at <= grace_cutoff,
                    ),
                    and_(
                        Order.escrow_pending_action.is_not(None),
                        Order.escrow_pending_since <= claim_cutoff,
                    ),
                )
            )
            .order_by(Order.updated_at.asc())
            .limit(Config.VERIFIER_BATCH_LIMIT)
        ).scalars().all()
        for order in orders:
            try:
                if await self.coordinator.reconcile(session, order):
                    result.escrows_reconciled += 1
            except Exception as e:
                session.rollback()
                result.add_error(f"escrow reconcile order {order.id}: {e}")

    def _purge_proofs(self, session: Session, result: VerificationCycleResult) -> None:
        try:
            result.proofs_purged = self.storage.purge_expired(session)
        except OSError as e:
            result.add_error(f"proof purge: {e}")


burn_verification_monitor = BurnVerificationMonitor()


def get_burn_verification_monitor() -> BurnVerificationMonitor:
    return burn_verification_monitor


async def run_burn_verification() -> Dict[str, Any]:
    """Scheduler entry point"""
    result = await get_burn_verification_monitor().run_verification_cycle()
    return result.get_summary()
