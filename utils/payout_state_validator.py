"""
Payout State Transition Validator
=================================

Payout lifecycle edges shared by the provider webhook, status polling and admin tools.
"""

import logging
from typing import Dict, Optional, Set, Tuple
from models import PayoutStatus
from utils.exception_handler import StateTransitionError

logger = logging.getLogger(__name__)


class PayoutStateValidator:

    VALID_TRANSITIONS: Dict[PayoutStatus, Set[PayoutStatus]] = {
        PayoutStatus.PENDING: {
            PayoutStatus.PROCESSING,
            PayoutStatus.SENT,
            PayoutStatus.PENDING_MANUAL,
            PayoutStatus.FAILED,
            PayoutStatus.COMPLETED,
        },
        PayoutStatus.PROCESSING: {
            PayoutStatus.SENT,
            PayoutStatus.COMPLETED,
            PayoutStatus.FAILED,
            PayoutStatus.REVERSED,
            PayoutStatus.PENDING_MANUAL,
        },
        PayoutStatus.SENT: {
            PayoutStatus.COMPLETED,
            PayoutStatus.FAILED,
            PayoutStatus.REVERSED,
        },
        PayoutStatus.FAILED: {
            PayoutStatus.PROCESSING,
            PayoutStatus.PENDING_MANUAL,
            PayoutStatus.COMPLETED,
        },
        PayoutStatus.PENDING_MANUAL: {
            PayoutStatus.PROCESSING,
            PayoutStatus.COMPLETED,
            PayoutStatus.FAILED,
        },
        PayoutStatus.COMPLETED: {
            PayoutStatus.REVERSED,
        },
        PayoutStatus.REVERSED: set(),
    }

    # States from which an admin may mark a payout manually completed
    MANUAL_COMPLETE_STATES: Set[PayoutStatus] = {
        PayoutStatus.PENDING_MANUAL,
        PayoutStatus.PENDING,
        PayoutStatus.PROCESSING,
        PayoutStatus.FAILED,
    }

    RETRYABLE_STATES: Set[PayoutStatus] = {
        PayoutStatus.FAILED,
        PayoutStatus.PENDING_MANUAL,
    }

    @classmethod
    def validate_transition(
        cls,
        from_status: PayoutStatus,
        to_status: PayoutStatus,
        payout_id: Optional[int] = None,
        force: bool = False
    ) -> Tuple[bool, str]:
        """
        Validate if a payout transition is allowed.

        Returns:
            Tuple[bool, str]: (is_valid, reason)
        """
        payout_ref = f"Payout {payout_id}" if payout_id else "Payout"

        if force:
            logger.critical(
                f"🚨 FORCED_TRANSITION: {payout_ref} {from_status.value} -> {to_status.value} "
                f"(ADMIN OVERRIDE - BYPASSED VALIDATION)"
            )
            return True, "Admin force override applied"

        if from_status == to_status:
            return True, "No status change required"

        if to_status in cls.VALID_TRANSITIONS.get(from_status, set()):
            logger.info(f"✅ VALID_TRANSITION: {payout_ref} {from_status.value} -> {to_status.value}")
            return True, "Valid state transition"

        logger.error(f"❌ INVALID_TRANSITION: {payout_ref} {from_status.value} -> {to_status.value}")
        return False, f"Invalid payout transition: {from_status.value} -> {to_status.value}"

    @classmethod
    def validate_and_transition(cls, payout, new_status: PayoutStatus, force: bool = False) -> str:
        """Apply a validated transition to a Payout row; returns the previous status"""
        previous = payout.status
        is_valid, reason = cls.validate_transition(PayoutStatus(previous), new_status, payout.id, force)
        if not is_valid:
            raise StateTransitionError(reason)
        payout.status = new_status.value
        return previous
