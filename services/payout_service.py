"""
Payout Service
==============

Turns confirmed burns into INR bank payouts through RazorpayX.

One Payout exists per burn. A payout is only sent to the provider once its
burn is confirmed on-chain; until then it waits in ``pending`` and the
background verifier picks it up. When the provider is unconfigured or
rejects the request the payout falls back to ``pending_manual`` for an
operator. The burn is never rolled back.
"""

import hashlib
import hmac
import json
import logging
import math
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from config import Config
from models import (
    BankDetail, BurnRecord, BurnStatus, Payout, PayoutAuditEntry, PayoutStatus, User,
)
from services.bank_detail_service import BankDetailService, get_bank_detail_service
from services.razorpay_payout_service import RazorpayPayoutService, get_razorpay_payout_service
from services.token_burn_service import TokenBurnService, get_token_burn_service, serialize_burn
from services.webhook_idempotency_service import (
    ProcessingResult, WebhookEventInfo, WebhookIdempotencyService, WebhookProvider,
)
from utils.atomic_transactions import compare_and_swap
from utils.datetime_helpers import get_naive_utc_now, isoformat_or_none
from utils.decimal_precision import MonetaryDecimal
from utils.exception_handler import (
    InvalidInputError, InvalidStateError, NotFoundError, PayoutUnavailableError, StateTransitionError,
)
from utils.payout_state_validator import PayoutStateValidator

logger = logging.getLogger(__name__)

MANUAL_UNCONFIGURED = "Razorpay Payouts API not configured. Manual bank transfer required."
MANUAL_NO_BANK = "No active bank account on file. Manual bank transfer required."
CLAIM_SUBMITTED = "Claim submitted successfully"
CLAIM_MANUAL = "Tokens burned successfully. Payout will be processed manually."

# Statuses polled against the provider
SYNCABLE_STATES = (PayoutStatus.PROCESSING.value, PayoutStatus.SENT.value)


def serialize_payout(payout: Payout, include_audit: bool = False) -> Dict[str, Any]:
    bank = payout.bank_detail
    data = {
        "id": payout.id,
        "userId": payout.user_id,
        "burnRecordId": payout.burn_record_id,
        "amountUSD": MonetaryDecimal.to_float(payout.amount_usd),
        "amountINR": MonetaryDecimal.to_float(payout.amount_inr),
        "exchangeRate": float(payout.exchange_rate),
        "status": payout.status,
        "razorpayPayoutId": payout.provider_payout_id,
        "providerStatus": payout.provider_status,
        "utr": payout.utr or payout.manual_utr,
        "failureReason": payout.failure_reason,
        "initiatedAt": isoformat_or_none(payout.initiated_at),
        "completedAt": isoformat_or_none(payout.completed_at),
        "manual": {
            "processedBy": payout.manual_processed_by,
            "processedAt": isoformat_or_none(payout.manual_processed_at),
            "utr": payout.manual_utr,
            "notes": payout.manual_notes,
        } if payout.manual_processed_at else None,
        "bankDetail": {
            "id": bank.id,
            "bankName": bank.bank_name,
            "accountNumberLast4": bank.account_number_last4,
            "ifscCode": bank.ifsc_code,
            "accountHolderName": bank.account_holder_name,
        } if bank else None,
        "burnRecord": serialize_burn(payout.burn_record) if payout.burn_record else None,
        "createdAt": isoformat_or_none(payout.created_at),
        "updatedAt": isoformat_or_none(payout.updated_at),
    }
    if include_audit:
        data["auditTrail"] = [
            {
                "note": entry.note,
                "addedBy": entry.added_by,
                "source": entry.source,
                "previousStatus": entry.previous_status,
                "newStatus": entry.new_status,
                "eventId": entry.event_id,
                "addedAt": isoformat_or_none(entry.added_at),
            }
            for entry in payout.audit_entries
        ]
    return data


def _pagination(page: int, limit: int, default_limit: int = 20) -> Tuple[int, int]:
    page = max(1, int(page or 1))
    limit = max(1, min(100, int(limit or default_limit)))
    return page, limit


class PayoutService:
    """Claims, provider payouts, webhooks and admin payout operations"""

    def __init__(self, burn_service: Optional[TokenBurnService] = None,
                 provider: Optional[RazorpayPayoutService] = None,
                 bank_service: Optional[BankDetailService] = None):
        self._burn_service = burn_service
        self._provider = provider
        self._bank_service = bank_service

    @property
    def burn_service(self) -> TokenBurnService:
        return self._burn_service or get_token_burn_service()

    @property
    def provider(self) -> RazorpayPayoutService:
        return self._provider or get_razorpay_payout_service()

    @property
    def bank_service(self) -> BankDetailService:
        return self._bank_service or get_bank_detail_service()

    @staticmethod
    def exchange_rate():
        return MonetaryDecimal.quantize_rate(Config.USD_TO_INR_RATE)

    def convert_usd_to_inr(self, amount_usd) -> Any:
        return MonetaryDecimal.quantize_money(MonetaryDecimal.to_decimal(amount_usd) * self.exchange_rate())

    def is_provider_available(self) -> bool:
        return self.provider.is_available()

    # ------------------------------------------------------------------
    # Status changes
    # ------------------------------------------------------------------

    @staticmethod
    def _audit(session: Session, payout: Payout, note: str, previous: Optional[str], source: str,
               added_by: Optional[int] = None, event_id: Optional[str] = None) -> None:
        session.add(PayoutAuditEntry(
            payout_id=payout.id,
            note=note,
            added_by=added_by,
            source=source,
            previous_status=previous,
            new_status=payout.status,
            event_id=event_id,
        ))

    def _set_status(self, session: Session, payout: Payout, new_status: PayoutStatus, note: str,
                    source: str = "system", added_by: Optional[int] = None, force: bool = False,
                    **fields) -> str:
        previous = PayoutStateValidator.validate_and_transition(payout, new_status, force=force)
        for name, value in fields.items():
            setattr(payout, name, value)
        if new_status == PayoutStatus.COMPLETED and payout.completed_at is None:
            payout.completed_at = get_naive_utc_now()
        if previous != payout.status:
            self._audit(session, payout, note, previous, source, added_by)
        session.commit()
        return previous

    def _route_to_manual(self, session: Session, payout: Payout, reason: str) -> Payout:
        self._set_status(session, payout, PayoutStatus.PENDING_MANUAL, reason, failure_reason=reason)
        logger.warning(f"🖐️ PAYOUT_MANUAL: payout {payout.id} -> pending_manual: {reason}")
        return payout

    # ------------------------------------------------------------------
    # Creation and processing
    # ------------------------------------------------------------------

    def ensure_payout_for_burn(self, session: Session, burn: BurnRecord) -> Payout:
        """The single Payout for ``burn``; created with a snapshotted rate if missing"""
        existing = session.execute(
            select(Payout).where(Payout.burn_record_id == burn.id)
        ).scalar_one_or_none()
        if existing is not None:
            return existing
        if burn.status not in (BurnStatus.SUBMITTED.value, BurnStatus.CONFIRMED.value):
            raise InvalidStateError(f"Burn {burn.id} is {burn.status}; no payout can be created")

        bank_detail_id = burn.bank_detail_id
        if bank_detail_id is None:
            default = self.bank_service.get_default(session, burn.user_id)
            bank_detail_id = default.id if default else None

        rate = self.exchange_rate()
        payout = Payout(
            user_id=burn.user_id,
            burn_record_id=burn.id,
            bank_detail_id=bank_detail_id,
            amount_usd=MonetaryDecimal.quantize_usd(burn.amount_usd),
            amount_inr=self.convert_usd_to_inr(burn.amount_usd),
            exchange_rate=rate,
            status=PayoutStatus.PENDING.value,
            payout_metadata={"burnTxHash": burn.tx_hash, "amountWei": burn.amount_wei},
        )
        session.add(payout)
        try:
            session.commit()
        except IntegrityError:
            session.rollback()
            logger.info(f"🔁 PAYOUT_EXISTS: burn {burn.id} payout created concurrently")
            return session.execute(select(Payout).where(Payout.burn_record_id == burn.id)).scalar_one()

        burn.payout_id = payout.id
        session.commit()
        logger.info(
            f"💰 PAYOUT_CREATED: payout {payout.id} burn {burn.id} "
            f"{payout.amount_usd} USD -> {payout.amount_inr} INR @ {rate}"
        )
        return payout

    async def _ensure_fund_account(self, session: Session, user: User, bank: BankDetail) -> str:
        if bank.provider_fund_account_id:
            return bank.provider_fund_account_id
        if not bank.provider_contact_id:
            bank.provider_contact_id = await self.provider.create_contact(user.id, user.name, user.email)
            session.commit()
        bank.provider_fund_account_id = await self.provider.create_fund_account(
            bank.provider_contact_id, bank.account_holder_name, bank.ifsc_code, bank.account_number
        )
        session.commit()
        return bank.provider_fund_account_id

    async def process_payout(self, session: Session, payout: Payout) -> Payout:
        """
        Send a pending or failed payout to the provider.

        Payouts whose burn is not yet confirmed are left pending. Provider
        unavailability or rejection routes the payout to manual processing.
        """
        if payout.status not in (PayoutStatus.PENDING.value, PayoutStatus.FAILED.value):
            logger.debug(f"⏭️ PAYOUT_SKIP: payout {payout.id} is {payout.status}")
            return payout

        burn = payout.burn_record
        if burn is None or burn.status != BurnStatus.CONFIRMED.value:
            logger.info(f"⏳ PAYOUT_DEFERRED: payout {payout.id} waits for burn confirmation")
            return payout

        if not self.is_provider_available():
            return self._route_to_manual(session, payout, MANUAL_UNCONFIGURED)

        bank = payout.bank_detail
        if bank is None or not bank.is_active:
            bank = self.bank_service.get_default(session, payout.user_id)
        if bank is None:
            return self._route_to_manual(session, payout, MANUAL_NO_BANK)

        previous = payout.status
        claimed = compare_and_swap(
            session, Payout, payout.id, {"status": previous},
            {
                "status": PayoutStatus.PROCESSING.value,
                "bank_detail_id": bank.id,
                "initiated_at": get_naive_utc_now(),
                "failure_reason": None,
            },
        )
        if not claimed:
            session.rollback()
            session.refresh(payout)
            return payout
        self._audit(session, payout, "Payout initiated with provider", previous, "system")
        session.commit()
        session.refresh(payout)

        try:
            fund_account_id = await self._ensure_fund_account(session, payout.user, bank)
            result = await self.provider.create_payout(
                fund_account_id,
                MonetaryDecimal.to_paise(payout.amount_inr),
                reference_id=str(payout.id),
                narration=f"Payout {payout.id}",
                notes={
                    "payoutId": str(payout.id),
                    "userId": str(payout.user_id),
                    "burnTxHash": burn.tx_hash,
                },
            )
        except PayoutUnavailableError:
            session.rollback()
            return self._route_to_manual(session, payout, MANUAL_UNCONFIGURED)
        except Exception as e:
            session.rollback()
            reason = f"Auto-payout failed: {self.provider.describe_error(e)}"
            logger.error(f"❌ PAYOUT_PROVIDER_ERROR: payout {payout.id}: {reason}", exc_info=True)
            return self._route_to_manual(session, payout, reason)

        new_status = self.provider.map_status(result.get("status"))
        payout.provider_payout_id = result.get("id")
        payout.provider_fund_account_id = fund_account_id
        payout.provider_status = result.get("status")
        payout.utr = result.get("utr") or payout.utr
        if new_status != PayoutStatus.PROCESSING:
            self._set_status(session, payout, new_status, f"Provider status {result.get('status')}")
        else:
            session.commit()

        logger.info(
            f"✅ PAYOUT_INITIATED: payout {payout.id} provider id {payout.provider_payout_id} "
            f"status {payout.status} amount {payout.amount_inr} INR"
        )
        return payout

    # ------------------------------------------------------------------
    # Claims
    # ------------------------------------------------------------------

    async def get_balance(self, session: Session, user: User) -> Dict[str, Any]:
        balance = await self.burn_service.get_balance(session, user)
        return {
            **balance,
            "tokenSymbol": Config.TOKEN_SYMBOL,
            "exchangeRate": float(self.exchange_rate()),
            "minClaimAmount": float(Config.MIN_CLAIM_AMOUNT_USD),
        }

    async def claim_funds(self, session: Session, user: User, amount_usd: Any,
                          bank_detail_id: Optional[int]) -> Tuple[Payout, BurnRecord, str]:
        """Burn tokens and open the payout; returns (payout, burn, message)"""
        bank = self.bank_service.get_active(session, user, bank_detail_id) if bank_detail_id else None
        if bank is None:
            raise InvalidInputError(
                "Please add bank details first", [{"field": "bankDetailId", "message": "no active bank account"}]
            )

        burn = await self.burn_service.burn_tokens(session, user, amount_usd, bank.id)
        payout = self.ensure_payout_for_burn(session, burn)
        payout = await self.process_payout(session, payout)

        manual = payout.status == PayoutStatus.PENDING_MANUAL.value or not self.is_provider_available()
        logger.info(
            f"📥 CLAIM_SUBMITTED: user {user.id} burn {burn.id} payout {payout.id} "
            f"{payout.amount_usd} USD manual={manual}"
        )
        return payout, burn, CLAIM_MANUAL if manual else CLAIM_SUBMITTED

    async def verify_user_burn(self, session: Session, user: User, burn_id: int) -> Tuple[BurnRecord, Optional[Payout]]:
        burn = await self.burn_service.verify_user_burn(session, user, burn_id)
        return burn, await self._payout_after_confirmation(session, burn)

    async def retry_user_burn(self, session: Session, user: User, burn_id: int) -> Tuple[BurnRecord, Optional[Payout]]:
        burn = await self.burn_service.retry_burn(session, user, burn_id)
        return burn, await self._payout_after_confirmation(session, burn)

    async def _payout_after_confirmation(self, session: Session, burn: BurnRecord) -> Optional[Payout]:
        if burn.status not in (BurnStatus.SUBMITTED.value, BurnStatus.CONFIRMED.value):
            return None
        payout = self.ensure_payout_for_burn(session, burn)
        return await self.process_payout(session, payout)

    def list_claims(self, session: Session, user: User, page: int = 1, limit: int = 20) -> Dict[str, Any]:
        page, limit = _pagination(page, limit)
        base = select(Payout).where(Payout.user_id == user.id)
        total = session.execute(select(func.count()).select_from(base.subquery())).scalar_one()
        payouts = session.execute(
            base.order_by(Payout.created_at.desc(), Payout.id.desc()).offset((page - 1) * limit).limit(limit)
        ).scalars().all()
        return {
            "claims": [serialize_payout(p) for p in payouts],
            "pagination": {"page": page, "limit": limit, "total": total,
                           "pages": math.ceil(total / limit) if total else 0},
        }

    async def get_claim(self, session: Session, user: User, payout_id: int) -> Payout:
        payout = session.get(Payout, payout_id)
        if payout is None or payout.user_id != user.id:
            raise NotFoundError("Claim not found")
        if payout.provider_payout_id and payout.status in SYNCABLE_STATES:
            try:
                await self.sync_payout_status(session, payout)
            except Exception as e:
                session.rollback()
                logger.warning(f"⚠️ PAYOUT_SYNC_ON_READ_FAILED: payout {payout.id}: {e}")
        return payout

    # ------------------------------------------------------------------
    # Provider updates
    # ------------------------------------------------------------------

    def local_status_for(self, provider_status: Optional[str]) -> PayoutStatus:
        """Provider status as seen by webhooks and polling; processed means completed"""
        if (provider_status or "").lower() == "processed":
            return PayoutStatus.COMPLETED
        return self.provider.map_status(provider_status)

    def apply_provider_update(self, session: Session, payout: Payout, provider_status: Optional[str],
                              utr: Optional[str] = None, failure_reason: Optional[str] = None,
                              source: str = "sync", event_id: Optional[str] = None) -> bool:
        """Apply a provider status report; returns True when the payout status changed"""
        new_status = self.local_status_for(provider_status)
        payout.provider_status = provider_status or payout.provider_status
        if utr:
            payout.utr = utr
        if failure_reason and new_status in (PayoutStatus.FAILED, PayoutStatus.REVERSED):
            payout.failure_reason = failure_reason

        current = PayoutStatus(payout.status)
        if new_status == current:
            session.commit()
            return False

        is_valid, reason = PayoutStateValidator.validate_transition(current, new_status, payout.id)
        if not is_valid:
            logger.warning(f"⚠️ PAYOUT_UPDATE_IGNORED: payout {payout.id} {reason} ({source})")
            session.commit()
            return False

        previous = payout.status
        payout.status = new_status.value
        if new_status == PayoutStatus.COMPLETED and payout.completed_at is None:
            payout.completed_at = get_naive_utc_now()
        self._audit(
            session, payout, f"Provider status {provider_status} via {source}", previous, source,
            event_id=event_id,
        )
        session.commit()
        logger.info(f"🔄 PAYOUT_STATUS_UPDATED: payout {payout.id} {previous} -> {payout.status} ({source})")
        return True

    async def sync_payout_status(self, session: Session, payout: Payout) -> bool:
        if not payout.provider_payout_id:
            return False
        data = await self.provider.fetch_payout(payout.provider_payout_id)
        return self.apply_provider_update(
            session, payout, data.get("status"), data.get("utr"), data.get("failure_reason"), source="sync"
        )

    @staticmethod
    def verify_webhook_signature(raw_body: bytes, signature: Optional[str]) -> bool:
        secret = Config.RAZORPAY_WEBHOOK_SECRET
        if not secret or not signature:
            return False
        expected = hmac.new(secret.encode("utf-8"), raw_body, hashlib.sha256).hexdigest()
        return hmac.compare_digest(expected, signature)

    def _find_webhook_payout(self, session: Session, entity: Dict[str, Any]) -> Optional[Payout]:
        reference_id = entity.get("reference_id")
        if reference_id and str(reference_id).isdigit():
            payout = session.get(Payout, int(reference_id))
            if payout is not None:
                return payout
        if entity.get("id"):
            return session.execute(
                select(Payout).where(Payout.provider_payout_id == entity["id"])
            ).scalar_one_or_none()
        return None

    async def _apply_webhook_event(self, session: Session, payload: Dict[str, Any], event_id: str) -> Dict[str, Any]:
        event_type = payload.get("event") or ""
        if not event_type.startswith("payout."):
            return {"status": "ignored", "reason": f"unhandled event {event_type}"}

        entity = ((payload.get("payload") or {}).get("payout") or {}).get("entity") or {}
        payout = self._find_webhook_payout(session, entity)
        if payout is None:
            logger.warning(f"⚠️ WEBHOOK_PAYOUT_NOT_FOUND: event {event_id} reference {entity.get('reference_id')}")
            return {"status": "ignored", "reason": "payout not found"}

        provider_status = entity.get("status") or event_type.split(".", 1)[1]
        if entity.get("id") and not payout.provider_payout_id:
            payout.provider_payout_id = entity["id"]
        failure_reason = entity.get("failure_reason") or (entity.get("status_details") or {}).get("description")
        changed = self.apply_provider_update(
            session, payout, provider_status, entity.get("utr"), failure_reason,
            source="webhook", event_id=event_id,
        )
        return {"status": "applied", "payoutId": payout.id, "changed": changed, "payoutStatus": payout.status}

    async def handle_webhook(self, session: Session, raw_body: bytes, signature: Optional[str],
                             event_id: Optional[str] = None) -> ProcessingResult:
        if not self.verify_webhook_signature(raw_body, signature):
            logger.critical("🚨 WEBHOOK_SIGNATURE_INVALID: Razorpay webhook rejected")
            raise InvalidInputError("Invalid webhook signature")
        try:
            payload = json.loads(raw_body.decode("utf-8"))
        except (ValueError, UnicodeDecodeError):
            raise InvalidInputError("Invalid webhook payload")
        if not isinstance(payload, dict):
            raise InvalidInputError("Invalid webhook payload")

        event_id = event_id or hashlib.sha256(raw_body).hexdigest()
        entity = ((payload.get("payload") or {}).get("payout") or {}).get("entity") or {}
        info = WebhookEventInfo(
            provider=WebhookProvider.RAZORPAY,
            event_id=event_id,
            event_type=payload.get("event") or "unknown",
            reference_id=str(entity["reference_id"]) if entity.get("reference_id") else None,
            payload=payload,
        )
        return await WebhookIdempotencyService.process_webhook_with_idempotency(
            session, info, self._apply_webhook_event, session, payload, event_id
        )

    # ------------------------------------------------------------------
    # Admin
    # ------------------------------------------------------------------

    @staticmethod
    def _load(session: Session, payout_id: int) -> Payout:
        payout = session.get(Payout, payout_id)
        if payout is None:
            raise NotFoundError("Payout not found")
        return payout

    def mark_manual_complete(self, session: Session, admin: User, payout_id: int, utr: Optional[str],
                             notes: Optional[str] = None) -> Payout:
        payout = self._load(session, payout_id)
        if PayoutStatus(payout.status) not in PayoutStateValidator.MANUAL_COMPLETE_STATES:
            raise InvalidStateError(f"Cannot complete a payout in status {payout.status}")
        if payout.burn_record is None or payout.burn_record.status != BurnStatus.CONFIRMED.value:
            raise InvalidStateError("Burn is not confirmed on-chain yet")
        utr = (utr or "").strip()
        if not utr:
            raise InvalidInputError("UTR is required", [{"field": "utr", "message": "required"}])

        now = get_naive_utc_now()
        previous = self._set_status(
            session, payout, PayoutStatus.COMPLETED,
            f"Manually completed by admin {admin.id} (UTR {utr}). {notes or ''}".strip(),
            source="admin", added_by=admin.id,
            manual_processed_by=admin.id, manual_processed_at=now, manual_utr=utr,
            manual_notes=notes, utr=payout.utr or utr, completed_at=now,
        )
        logger.info(f"✅ PAYOUT_MANUAL_COMPLETE: payout {payout.id} {previous} -> completed by admin {admin.id}")
        return payout

    def admin_update_status(self, session: Session, admin: User, payout_id: int, status: str,
                            note: Optional[str] = None) -> Payout:
        try:
            new_status = PayoutStatus(status)
        except ValueError:
            raise InvalidInputError("Invalid payout status", [{"field": "status", "message": "unknown status"}])
        payout = self._load(session, payout_id)
        try:
            previous = self._set_status(
                session, payout, new_status, note or f"Status set to {status} by admin {admin.id}",
                source="admin", added_by=admin.id,
            )
        except StateTransitionError:
            session.rollback()
            raise
        if previous == payout.status and note:
            self._audit(session, payout, note, previous, "admin", added_by=admin.id)
            session.commit()
        logger.info(f"🛠️ PAYOUT_ADMIN_STATUS: payout {payout.id} {previous} -> {payout.status} by admin {admin.id}")
        return payout

    async def admin_retry(self, session: Session, admin: User, payout_id: int) -> Payout:
        payout = self._load(session, payout_id)
        if PayoutStatus(payout.status) not in PayoutStateValidator.RETRYABLE_STATES:
            raise InvalidStateError(f"Cannot retry a payout in status {payout.status}")
        if payout.burn_record is None or payout.burn_record.status != BurnStatus.CONFIRMED.value:
            raise InvalidStateError("Burn is not confirmed on-chain yet")
        if payout.status == PayoutStatus.PENDING_MANUAL.value:
            self._set_status(session, payout, PayoutStatus.FAILED, f"Retry requested by admin {admin.id}",
                             source="admin", added_by=admin.id)
        logger.info(f"🔁 PAYOUT_ADMIN_RETRY: payout {payout.id} by admin {admin.id}")
        return await self.process_payout(session, payout)

    def admin_list_payouts(self, session: Session, status: Optional[str] = None, page: int = 1,
                           limit: int = 20) -> Dict[str, Any]:
        page, limit = _pagination(page, limit)
        base = select(Payout)
        if status:
            base = base.where(Payout.status == status)
        total = session.execute(select(func.count()).select_from(base.subquery())).scalar_one()
        payouts = session.execute(
            base.order_by(Payout.created_at.desc(), Payout.id.desc()).offset((page - 1) * limit).limit(limit)
        ).scalars().all()

        rows = session.execute(
            select(Payout.status, func.count(Payout.id), func.coalesce(func.sum(Payout.amount_inr), 0))
            .group_by(Payout.status)
        ).all()
        stats = {
            row[0]: {"count": row[1], "totalINR": MonetaryDecimal.to_float(row[2])} for row in rows
        }
        return {
            "payouts": [serialize_payout(p) for p in payouts],
            "stats": stats,
            "pagination": {"page": page, "limit": limit, "total": total,
                           "pages": math.ceil(total / limit) if total else 0},
        }

    def admin_pending_payouts(self, session: Session) -> List[Payout]:
        return session.execute(
            select(Payout)
            .where(Payout.status.in_([
                PayoutStatus.PENDING.value, PayoutStatus.PENDING_MANUAL.value, PayoutStatus.FAILED.value,
            ]))
            .order_by(Payout.created_at.asc(), Payout.id.asc())
        ).scalars().all()


payout_service = PayoutService()


def get_payout_service() -> PayoutService:
    return payout_service
