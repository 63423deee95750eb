"""
Escrow State Transition Validator
================================

Prevents invalid state transitions and keeps the persisted escrow record on the
same state machine as the on-chain contract.
"""

import logging
from typing import Dict, List, Optional, Set, Tuple
from models import EscrowState
from utils.exception_handler import StateTransitionError

logger = logging.getLogger(__name__)


class EscrowStateValidator:
    """
    Validates escrow state transitions.

    Edges:
    - Locked -> ReleasePending (buyer confirms delivery)
    - ReleasePending -> Complete (seller releases funds)
    - Locked/ReleasePending -> Disputed (either party)
    - Disputed -> Complete | Refunded (arbitrator)
    - Locked -> Complete (on-chain timeout claim, observed only)
    """

    VALID_TRANSITIONS: Dict[EscrowState, Set[EscrowState]] = {
        EscrowState.LOCKED: {
            EscrowState.RELEASE_PENDING,
            EscrowState.DISPUTED,
            EscrowState.COMPLETE,  # timeout claim
        },
        EscrowState.RELEASE_PENDING: {
            EscrowState.COMPLETE,
            EscrowState.DISPUTED,
        },
        EscrowState.DISPUTED: {
            EscrowState.COMPLETE,
            EscrowState.REFUNDED,
        },
        EscrowState.COMPLETE: set(),
        EscrowState.REFUNDED: set(),
    }

    TERMINAL_STATES: Set[EscrowState] = {
        EscrowState.COMPLETE,
        EscrowState.REFUNDED,
    }

    # Edges that only the chain may originate; user-facing operations never request them
    OBSERVED_ONLY: Set[Tuple[EscrowState, EscrowState]] = {
        (EscrowState.LOCKED, EscrowState.COMPLETE),
    }

    @classmethod
    def validate_transition(
        cls,
        from_status: EscrowState,
        to_status: EscrowState,
        order_id: Optional[int] = None,
        observed: bool = False
    ) -> Tuple[bool, str]:
        """
        Validate if a state transition is allowed.

        Args:
            from_status: Current persisted escrow state
            to_status: Desired new state
            order_id: Order ID for logging (optional)
            observed: True when the transition was observed on chain rather than requested

        Returns:
            Tuple[bool, str]: (is_valid, reason)
        """
        escrow_ref = f"Escrow(order={order_id})" if order_id else "Escrow"

        valid_next_states = cls.VALID_TRANSITIONS.get(from_status, set())

        if to_status in valid_next_states and (observed or (from_status, to_status) not in cls.OBSERVED_ONLY):
            logger.info(f"✅ VALID_TRANSITION: {escrow_ref} {from_status.value} -> {to_status.value}")
            return True, "Valid state transition"

        error_msg = (
            f"Invalid escrow transition: {from_status.value} -> {to_status.value}. "
            f"Valid transitions from {from_status.value}: "
            f"{sorted(s.value for s in valid_next_states)}"
        )
        logger.error(f"❌ INVALID_TRANSITION: {escrow_ref} {from_status.value} -> {to_status.value}")
        return False, error_msg

    @classmethod
    def require_transition(
        cls,
        from_status: Optional[str],
        to_status: EscrowState,
        order_id: Optional[int] = None
    ) -> EscrowState:
        """Raise StateTransitionError unless from_status -> to_status is a requestable edge"""
        if from_status is None:
            raise StateTransitionError("No escrow exists for this order")
        current = EscrowState(from_status)
        is_valid, reason = cls.validate_transition(current, to_status, order_id)
        if not is_valid:
            raise StateTransitionError(reason)
        return current

    @classmethod
    def reachable_path(cls, from_status: EscrowState, to_status: EscrowState) -> Optional[List[EscrowState]]:
        """Shortest forward path between two states, or None if unreachable"""
        if from_status == to_status:
            return [from_status]
        frontier = [[from_status]]
        seen = {from_status}
        while frontier:
            path = frontier.pop(0)
            for nxt in cls.VALID_TRANSITIONS.get(path[-1], set()):
                if nxt in seen:
                    continue
                if nxt == to_status:
                    return path + [nxt]
                seen.add(nxt)
                frontier.append(path + [nxt])
        return None
