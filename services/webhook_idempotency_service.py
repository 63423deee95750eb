"""
Webhook Idempotency Service
Webhook idempotency protection so replayed provider callbacks never apply twice
"""

import json
import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional

from sqlalchemy import and_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from models import WebhookEventLedger
from utils.datetime_helpers import get_naive_utc_now

logger = logging.getLogger(__name__)


class WebhookProvider(Enum):
    """Supported webhook providers"""
    RAZORPAY = "razorpay"


class WebhookEventStatus(Enum):
    """Webhook event processing status"""
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    DUPLICATE = "duplicate"


@dataclass
class WebhookEventInfo:
    """Information about a webhook event for processing"""
    provider: WebhookProvider
    event_id: str
    event_type: str
    reference_id: Optional[str] = None
    payload: Optional[Dict[str, Any]] = None


@dataclass
class IdempotencyResult:
    """Result of idempotency check"""
    is_duplicate: bool
    webhook_event_id: Optional[int] = None
    previous_status: Optional[str] = None
    previous_result: Optional[str] = None
    error_message: Optional[str] = None


@dataclass
class ProcessingResult:
    """Result of webhook processing"""
    success: bool
    webhook_event_id: int
    duplicate: bool = False
    processing_duration_ms: Optional[int] = None
    result_data: Optional[Dict[str, Any]] = None
    error_message: Optional[str] = None


class WebhookIdempotencyService:
    """
    Ledger-backed webhook idempotency keyed on (provider, event_id).

    A completed event is never re-applied; a failed one may be retried by the
    provider's redelivery.
    """

    @staticmethod
    def _find(session: Session, webhook_info: WebhookEventInfo) -> Optional[WebhookEventLedger]:
        return (
            session.query(WebhookEventLedger)
            .filter(
                and_(
                    WebhookEventLedger.event_provider == webhook_info.provider.value,
                    WebhookEventLedger.event_id == webhook_info.event_id,
                )
            )
            .first()
        )

    @staticmethod
    def check_idempotency(session: Session, webhook_info: WebhookEventInfo) -> IdempotencyResult:
        """Check if a webhook event has already been processed"""
        existing_event = WebhookIdempotencyService._find(session, webhook_info)
        if existing_event is None:
            logger.info(
                f"✅ WEBHOOK_IDEMPOTENCY: New event - "
                f"Provider: {webhook_info.provider.value}, Event ID: {webhook_info.event_id}"
            )
            return IdempotencyResult(is_duplicate=False)

        if existing_event.status == WebhookEventStatus.FAILED.value:
            logger.info(
                f"🔄 WEBHOOK_RETRY_ALLOWED: Previous attempt failed - "
                f"Provider: {webhook_info.provider.value}, Event ID: {webhook_info.event_id}"
            )
            existing_event.status = WebhookEventStatus.PROCESSING.value
            existing_event.error_message = None
            session.commit()
            return IdempotencyResult(is_duplicate=False, webhook_event_id=existing_event.id)

        logger.info(
            f"🔍 WEBHOOK_IDEMPOTENCY: Duplicate detected - "
            f"Provider: {webhook_info.provider.value}, Event ID: {webhook_info.event_id}, "
            f"Previous Status: {existing_event.status}, Processed At: {existing_event.processed_at}"
        )
        return IdempotencyResult(
            is_duplicate=True,
            webhook_event_id=existing_event.id,
            previous_status=existing_event.status,
            previous_result=existing_event.processing_result,
            error_message=existing_event.error_message,
        )

    @staticmethod
    def record_webhook_event(session: Session, webhook_info: WebhookEventInfo) -> Optional[int]:
        """Insert the ledger row; None when a concurrent delivery recorded it first"""
        webhook_event = WebhookEventLedger(
            event_provider=webhook_info.provider.value,
            event_id=webhook_info.event_id,
            event_type=webhook_info.event_type,
            payload=webhook_info.payload or {},
            reference_id=webhook_info.reference_id,
            status=WebhookEventStatus.PROCESSING.value,
        )
        session.add(webhook_event)
        try:
            session.commit()
        except IntegrityError:
            session.rollback()
            logger.warning(
                f"⚠️ WEBHOOK_RACE_CONDITION: Concurrent event recording detected - "
                f"Provider: {webhook_info.provider.value}, Event ID: {webhook_info.event_id}"
            )
            return None

        logger.info(
            f"📝 WEBHOOK_LEDGER: Recorded new event - ID: {webhook_event.id}, "
            f"Provider: {webhook_info.provider.value}, Event ID: {webhook_info.event_id}, "
            f"Reference: {webhook_info.reference_id}"
        )
        return webhook_event.id

    @staticmethod
    def update_processing_status(
        session: Session,
        webhook_event_id: int,
        status: WebhookEventStatus,
        processing_duration_ms: Optional[int] = None,
        result_data: Optional[Dict[str, Any]] = None,
        error_message: Optional[str] = None,
    ) -> bool:
        webhook_event = session.get(WebhookEventLedger, webhook_event_id)
        if webhook_event is None:
            logger.error(f"❌ WEBHOOK_UPDATE: Event not found - ID: {webhook_event_id}")
            return False

        previous_status = webhook_event.status
        webhook_event.status = status.value
        webhook_event.processing_duration_ms = processing_duration_ms
        webhook_event.error_message = error_message
        if result_data:
            webhook_event.processing_result = json.dumps(result_data, default=str)
        if status in (WebhookEventStatus.COMPLETED, WebhookEventStatus.FAILED):
            webhook_event.completed_at = get_naive_utc_now()
        session.commit()

        logger.info(
            f"📊 WEBHOOK_UPDATE: Status updated - ID: {webhook_event_id}, "
            f"Event ID: {webhook_event.event_id}, Status: {previous_status} → {status.value}, "
            f"Duration: {processing_duration_ms}ms"
        )
        return True

    @classmethod
    async def process_webhook_with_idempotency(
        cls,
        session: Session,
        webhook_info: WebhookEventInfo,
        processing_function: Callable[..., Awaitable[Dict[str, Any]]],
        *args,
        **kwargs,
    ) -> ProcessingResult:
        """
        Check, record, process and finalize one webhook event.

        ``processing_function`` receives ``*args, **kwargs`` and returns a result
        dict that is stored on the ledger row.
        """
        start_time = time.time()

        idempotency_result = cls.check_idempotency(session, webhook_info)
        if idempotency_result.is_duplicate:
            previous_result: Dict[str, Any] = {}
            if idempotency_result.previous_result:
                try:
                    previous_result = json.loads(idempotency_result.previous_result)
                except ValueError:
                    previous_result = {"status": "success", "message": "Previously processed"}
            return ProcessingResult(
                success=idempotency_result.previous_status != WebhookEventStatus.FAILED.value,
                webhook_event_id=idempotency_result.webhook_event_id or 0,
                duplicate=True,
                result_data=previous_result,
                error_message=idempotency_result.error_message,
            )

        webhook_event_id = idempotency_result.webhook_event_id or cls.record_webhook_event(session, webhook_info)
        if webhook_event_id is None:
            # Another delivery of the same event is being processed
            return ProcessingResult(success=True, webhook_event_id=0, duplicate=True)

        try:
            result_data = await processing_function(*args, **kwargs)
        except Exception as e:
            session.rollback()
            duration_ms = int((time.time() - start_time) * 1000)
            logger.error(
                f"❌ WEBHOOK_PROCESSING_FAILED: Provider: {webhook_info.provider.value}, "
                f"Event ID: {webhook_info.event_id}: {e}",
                exc_info=True,
            )
            cls.update_processing_status(
                session, webhook_event_id, WebhookEventStatus.FAILED,
                processing_duration_ms=duration_ms, error_message=str(e),
            )
            return ProcessingResult(
                success=False,
                webhook_event_id=webhook_event_id,
                processing_duration_ms=duration_ms,
                error_message=str(e),
            )

        duration_ms = int((time.time() - start_time) * 1000)
        cls.update_processing_status(
            session, webhook_event_id, WebhookEventStatus.COMPLETED,
            processing_duration_ms=duration_ms, result_data=result_data,
        )
        return ProcessingResult(
            success=True,
            webhook_event_id=webhook_event_id,
            processing_duration_ms=duration_ms,
            result_data=result_data,
        )


webhook_idempotency_service = WebhookIdempotencyService()
