"""
Escrow Coordinator
==================

Drives the per-order escrow contract through its state machine and keeps the
persisted escrow record consistent with the chain.

Every transition follows the same sequence:
1. authorize the caller for the requested edge
2. validate the edge against the persisted state
3. claim the order with a compare-and-swap on ``escrow_pending_action`` and commit
4. sign and send the contract call, then wait for the receipt
5. on success write the new state, the transaction log row and the order cascade
   in one transaction; on failure release the claim

A terminal escrow state is never written without a successful receipt.
"""

import logging
from datetime import timedelta
from typing import Any, Dict, List, Optional

from sqlalchemy import update
from sqlalchemy.orm import Session
from web3 import Web3

from config import Config
from models import (
    EscrowAction, EscrowState, EscrowTransaction, EscrowTransactionType, Order,
    OrderStatus, PaymentStatus, User, VendorOrder,
)
from services.chain_adapter import ChainAdapter, get_chain_adapter
from services.key_vault import KeyVault, get_key_vault
from utils.atomic_transactions import atomic_transaction, compare_and_swap
from utils.datetime_helpers import get_naive_utc_now, isoformat_or_none
from utils.decimal_precision import MonetaryDecimal
from utils.escrow_state_validator import EscrowStateValidator
from utils.exception_handler import (
    ChainUnavailableError, EscrowAlreadyExistsError, InvalidInputError, InvalidStateError,
    NotAuthorizedError, NotFoundError,
)

logger = logging.getLogger(__name__)


def serialize_escrow(order: Order) -> Optional[Dict[str, Any]]:
    """Persisted escrow record in wire format"""
    if order.escrow_address is None and order.escrow_pending_action is None:
        return None
    return {
        "address": order.escrow_address,
        "status": order.escrow_status,
        "buyerAddress": order.escrow_buyer_address,
        "sellerAddress": order.escrow_seller_address,
        "amount": order.escrow_amount,
        "createdAt": isoformat_or_none(order.escrow_created_at),
        "pendingAction": order.escrow_pending_action,
        "transactions": [
            {
                "type": tx.type,
                "txHash": tx.tx_hash,
                "blockNumber": tx.block_number,
                "timestamp": isoformat_or_none(tx.timestamp),
                "by": tx.by_user_id,
                "winner": tx.winner,
            }
            for tx in order.escrow_transactions
        ],
    }


def _cascade_values(order: Order, path: List[EscrowState]) -> Dict[str, Any]:
    """Order column updates implied by reaching the last state of ``path``"""
    values: Dict[str, Any] = {}
    target = path[-1]
    if EscrowState.RELEASE_PENDING in path[1:] and order.status in (
        OrderStatus.PENDING.value, OrderStatus.CONFIRMED.value, OrderStatus.SHIPPED.value
    ):
        values["status"] = OrderStatus.DELIVERED.value
    if target == EscrowState.COMPLETE:
        values["payment_status"] = PaymentStatus.PAID.value
    elif target == EscrowState.REFUNDED:
        values["status"] = OrderStatus.REFUNDED.value
        values["payment_status"] = PaymentStatus.REFUNDED.value
    return values


class EscrowCoordinator:
    """Escrow lifecycle for orders: create, confirm, release, dispute, resolve, reconcile"""

    def __init__(self, chain: Optional[ChainAdapter] = None, vault: Optional[KeyVault] = None):
        self._chain = chain
        self._vault = vault

    @property
    def chain(self) -> ChainAdapter:
        return self._chain or get_chain_adapter()

    @property
    def vault(self) -> KeyVault:
        return self._vault or get_key_vault()

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _load_order(session: Session, order_id: int) -> Order:
        order = session.get(Order, order_id)
        if order is None:
            raise NotFoundError("Order not found")
        return order

    @staticmethod
    def _is_customer(order: Order, user: User) -> bool:
        return order.customer_id == user.id

    @staticmethod
    def _is_vendor(order: Order, user: User) -> bool:
        return order.vendor_id is not None and order.vendor_id == user.id

    def _require_chain(self) -> None:
        if not self.chain.is_escrow_configured():
            raise ChainUnavailableError("Escrow service is not available")

    def _release_claim(self, session: Session, order: Order, action: EscrowAction) -> None:
        session.rollback()
        released = compare_and_swap(
            session, Order, order.id,
            {"escrow_pending_action": action.value},
            {"escrow_pending_action": None, "escrow_pending_since": None},
        )
        session.commit()
        if released:
            logger.info(f"🔓 ESCROW_CLAIM_RELEASED: order {order.id} action {action.value}")

    @staticmethod
    def _apply_vendor_order_cascade(session: Session, order: Order, values: Dict[str, Any]) -> None:
        if values.get("status") in (OrderStatus.DELIVERED.value, OrderStatus.REFUNDED.value):
            vendor_values: Dict[str, Any] = {"status": values["status"]}
            if values["status"] == OrderStatus.DELIVERED.value:
                vendor_values["delivered_at"] = get_naive_utc_now()
            session.execute(
                update(VendorOrder)
                .where(VendorOrder.order_id == order.id)
                .values(**vendor_values)
                .execution_options(synchronize_session="fetch")
            )

    # ------------------------------------------------------------------
    # Creation
    # ------------------------------------------------------------------

    async def create_escrow(self, session: Session, order_id: int, user: Optional[User] = None) -> Dict[str, Any]:
        """
        Deploy the escrow for an order, at most once.

        ``user`` is None when the order engine triggers creation on vendor
        confirmation; otherwise the caller must be a party to the order or an admin.
        """
        order = self._load_order(session, order_id)
        if user is not None and not (self._is_customer(order, user) or self._is_vendor(order, user) or user.is_admin):
            raise NotAuthorizedError("Unauthorized")
        if order.escrow_address is not None or order.escrow_pending_action is not None:
            raise EscrowAlreadyExistsError()
        if order.vendor_id is None:
            raise InvalidStateError("No vendor found for this order")
        self._require_chain()

        claimed = compare_and_swap(
            session, Order, order.id,
            {"escrow_address": None, "escrow_pending_action": None},
            {"escrow_pending_action": EscrowAction.CREATE.value, "escrow_pending_since": get_naive_utc_now()},
        )
        session.commit()
        if not claimed:
            raise EscrowAlreadyExistsError()

        try:
            buyer_address = self.vault.get_or_create(session, order.customer_id)
            seller_address = self.vault.get_or_create(session, order.vendor_id)
            amount_wei = MonetaryDecimal.to_wei(order.total)
            result = await self.chain.deploy_escrow(buyer_address, seller_address, amount_wei)
        except Exception as e:
            logger.error(f"❌ ESCROW_CREATE_FAILED: order {order.id}: {e}")
            self._release_claim(session, order, EscrowAction.CREATE)
            raise

        now = get_naive_utc_now()
        with atomic_transaction(session):
            written = compare_and_swap(
                session, Order, order.id,
                {"escrow_address": None, "escrow_pending_action": EscrowAction.CREATE.value},
                {
                    "escrow_address": result["escrow_address"],
                    "escrow_status": EscrowState.LOCKED.value,
                    "escrow_buyer_address": buyer_address,
                    "escrow_seller_address": seller_address,
                    "escrow_amount": str(amount_wei),
                    "escrow_created_at": now,
                    "escrow_pending_action": None,
                    "escrow_pending_since": None,
                },
            )
            if not written:
                # Claim was cleared as stale while the deploy was in flight
                logger.critical(
                    f"🚨 ESCROW_ORPHANED: order {order.id} deployed {result['escrow_address']} "
                    f"(tx {result['tx_hash']}) but the claim was lost"
                )
                raise InvalidStateError("Escrow claim lost during deployment; contact support")
            session.add(EscrowTransaction(
                order_id=order.id,
                type=EscrowTransactionType.CREATED.value,
                tx_hash=result["tx_hash"],
                block_number=result["block_number"],
                by_user_id=user.id if user else None,
                timestamp=now,
            ))

        session.refresh(order)
        logger.info(f"✅ ESCROW_CREATED: order {order.id} escrow {order.escrow_address} amount {amount_wei} wei")
        return {"message": "Escrow created successfully", "escrow": serialize_escrow(order)}

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    async def _transition(
        self,
        session: Session,
        order: Order,
        action: EscrowAction,
        target: EscrowState,
        fn_name: str,
        fn_args: List[Any],
        tx_type: EscrowTransactionType,
        signer_user_id: Optional[int],
        by_user_id: Optional[int],
        winner: Optional[str] = None,
    ) -> Dict[str, Any]:
        current = EscrowStateValidator.require_transition(order.escrow_status, target, order.id)
        self._require_chain()

        claimed = compare_and_swap(
            session, Order, order.id,
            {"escrow_status": current.value, "escrow_pending_action": None},
            {"escrow_pending_action": action.value, "escrow_pending_since": get_naive_utc_now()},
        )
        session.commit()
        if not claimed:
            raise InvalidStateError("Another escrow operation is in progress for this order")

        try:
            data = self.chain.encode_escrow_call(order.escrow_address, fn_name, *fn_args)
            if signer_user_id is None:
                tx_hash = await self.chain.send_admin_tx(order.escrow_address, data, Config.ESCROW_CALL_GAS_ESTIMATE)
            else:
                key = self.vault.decrypt(session, signer_user_id)
                await self.chain.fund_for_gas(key.address, Config.ESCROW_CALL_GAS_ESTIMATE)
                tx_hash = await self.chain.send_user_tx(
                    key.private_key, order.escrow_address, data, Config.ESCROW_CALL_GAS_ESTIMATE
                )
            receipt = await self.chain.wait_for_success(tx_hash, Config.ESCROW_RECEIPT_TIMEOUT)
        except Exception as e:
            logger.error(f"❌ ESCROW_{action.name}_FAILED: order {order.id}: {e}")
            self._release_claim(session, order, action)
            raise

        values = _cascade_values(order, [current, target])
        with atomic_transaction(session):
            written = compare_and_swap(
                session, Order, order.id,
                {"escrow_status": current.value, "escrow_pending_action": action.value},
                {
                    "escrow_status": target.value,
                    "escrow_pending_action": None,
                    "escrow_pending_since": None,
                    **values,
                },
            )
            if written:
                self._apply_vendor_order_cascade(session, order, values)
                session.add(EscrowTransaction(
                    order_id=order.id,
                    type=tx_type.value,
                    tx_hash=tx_hash,
                    block_number=int(receipt.get("blockNumber") or 0),
                    by_user_id=by_user_id,
                    winner=winner,
                ))

        session.refresh(order)
        if written:
            logger.info(f"✅ ESCROW_{action.name}: order {order.id} {current.value} -> {target.value} tx {tx_hash}")
        else:
            logger.warning(
                f"⚠️ ESCROW_ALREADY_RECONCILED: order {order.id} tx {tx_hash} landed after the record moved "
                f"to {order.escrow_status}"
            )
        return {"txHash": tx_hash, "escrow": serialize_escrow(order)}

    async def confirm_delivery(self, session: Session, order_id: int, user: User) -> Dict[str, Any]:
        order = self._load_order(session, order_id)
        if not self._is_customer(order, user):
            raise NotAuthorizedError("Only buyer can confirm delivery")
        result = await self._transition(
            session, order, EscrowAction.CONFIRM_DELIVERY, EscrowState.RELEASE_PENDING,
            "confirmDelivery", [], EscrowTransactionType.DELIVERY_CONFIRMED,
            signer_user_id=user.id, by_user_id=user.id,
        )
        return {"message": "Delivery confirmed successfully", **result}

    async def release_funds(self, session: Session, order_id: int, user: User) -> Dict[str, Any]:
        order = self._load_order(session, order_id)
        if not self._is_vendor(order, user):
            raise NotAuthorizedError("Only seller can release funds")
        result = await self._transition(
            session, order, EscrowAction.RELEASE_FUNDS, EscrowState.COMPLETE,
            "releaseFunds", [], EscrowTransactionType.FUNDS_RELEASED,
            signer_user_id=user.id, by_user_id=user.id,
        )
        return {"message": "Funds released successfully", **result}

    async def raise_dispute(self, session: Session, order_id: int, user: User) -> Dict[str, Any]:
        order = self._load_order(session, order_id)
        if not (self._is_customer(order, user) or self._is_vendor(order, user)):
            raise NotAuthorizedError("Only buyer or seller can raise dispute")
        result = await self._transition(
            session, order, EscrowAction.RAISE_DISPUTE, EscrowState.DISPUTED,
            "raiseDispute", [], EscrowTransactionType.DISPUTE_RAISED,
            signer_user_id=user.id, by_user_id=user.id,
        )
        return {"message": "Dispute raised successfully", **result}

    async def resolve_dispute(self, session: Session, order_id: int, user: User, winner: str) -> Dict[str, Any]:
        """Arbitrate a disputed escrow; seller wins -> Complete, buyer wins -> Refunded"""
        if not user.is_admin:
            raise NotAuthorizedError("Only an admin can resolve disputes")
        if winner not in ("buyer", "seller"):
            raise InvalidInputError(
                "Winner must be 'buyer' or 'seller'", [{"field": "winner", "message": "must be buyer or seller"}]
            )
        order = self._load_order(session, order_id)
        if order.escrow_address is None:
            raise InvalidStateError("No escrow found for this order")

        winner_address = order.escrow_seller_address if winner == "seller" else order.escrow_buyer_address
        target = EscrowState.COMPLETE if winner == "seller" else EscrowState.REFUNDED
        result = await self._transition(
            session, order, EscrowAction.RESOLVE_DISPUTE, target,
            "resolveDispute", [Web3.to_checksum_address(winner_address)],
            EscrowTransactionType.DISPUTE_RESOLVED,
            signer_user_id=None, by_user_id=user.id, winner=winner,
        )
        return {"message": f"Dispute resolved in favor of {winner}", **result}

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get_escrow(self, session: Session, order_id: int, user: User) -> Dict[str, Any]:
        order = self._load_order(session, order_id)
        if not (self._is_customer(order, user) or self._is_vendor(order, user) or user.is_admin):
            raise NotAuthorizedError("Unauthorized")
        if order.escrow_address is None:
            raise NotFoundError("No escrow found for this order")

        on_chain = None
        if self.chain.is_initialized:
            try:
                on_chain = await self.chain.get_escrow_details(order.escrow_address)
            except (ChainUnavailableError, InvalidStateError) as e:
                logger.warning(f"⚠️ ESCROW_DETAILS_UNAVAILABLE: order {order.id}: {e.message}")

        explorer_url = None
        if Config.BLOCK_EXPLORER_URL:
            explorer_url = f"{Config.BLOCK_EXPLORER_URL.rstrip('/')}/address/{order.escrow_address}"

        return {"escrow": serialize_escrow(order), "onChain": on_chain, "explorerUrl": explorer_url}

    def get_wallet(self, session: Session, user: User) -> Dict[str, Any]:
        record = user.key_record
        if record is not None:
            return {"address": record.address, "hasWallet": True, "createdAt": isoformat_or_none(record.created_at)}
        try:
            address = self.vault.get_or_create(session, user.id)
        except ChainUnavailableError:
            return {"address": None, "hasWallet": False, "message": "Escrow service not available"}
        return {"address": address, "hasWallet": True, "message": "New wallet created"}

    # ------------------------------------------------------------------
    # Reconciliation
    # ------------------------------------------------------------------

    @staticmethod
    def _claim_is_stale(order: Order) -> bool:
        if order.escrow_pending_action is None or order.escrow_pending_since is None:
            return False
        age = get_naive_utc_now() - order.escrow_pending_since
        return age > timedelta(seconds=Config.ESCROW_PENDING_ACTION_TTL)

    @staticmethod
    def _reconciled_tx_type(path: List[EscrowState]) -> EscrowTransactionType:
        if len(path) != 2:
            return EscrowTransactionType.RECONCILED
        source, target = path
        if target == EscrowState.RELEASE_PENDING:
            return EscrowTransactionType.DELIVERY_CONFIRMED
        if target == EscrowState.DISPUTED:
            return EscrowTransactionType.DISPUTE_RAISED
        if source == EscrowState.DISPUTED:
            return EscrowTransactionType.DISPUTE_RESOLVED
        if source == EscrowState.LOCKED and target == EscrowState.COMPLETE:
            return EscrowTransactionType.TIMEOUT_CLAIMED
        return EscrowTransactionType.FUNDS_RELEASED

    async def reconcile(self, session: Session, order: Order) -> Optional[str]:
        """
        Bring the persisted escrow record forward to the on-chain state.

        Returns the state written, or None when nothing changed. Orders with a
        fresh claim are skipped; stale claims are cleared.
        """
        stale = self._claim_is_stale(order)
        if order.escrow_pending_action is not None and not stale:
            return None

        if order.escrow_address is None:
            if stale:
                self._clear_stale_claim(session, order)
            return None

        on_chain = await self.chain.get_escrow_state(order.escrow_address)
        persisted = EscrowState(order.escrow_status)

        if on_chain == persisted:
            if stale:
                self._clear_stale_claim(session, order)
            return None

        path = EscrowStateValidator.reachable_path(persisted, on_chain)
        if path is None:
            logger.critical(
                f"🚨 ESCROW_DIVERGENCE: order {order.id} persisted {persisted.value} but chain reports "
                f"{on_chain.value}, which is not reachable"
            )
            return None

        latest = await self.chain.find_latest_escrow_transaction(order.escrow_address)
        if latest is None:
            logger.warning(f"⚠️ ESCROW_RECONCILE_NO_TX: order {order.id} chain {on_chain.value} without an observed log")
            return None

        winner = None
        if persisted == EscrowState.DISPUTED or EscrowState.DISPUTED in path[1:-1]:
            winner = "seller" if on_chain == EscrowState.COMPLETE else "buyer" if on_chain == EscrowState.REFUNDED else None

        values = _cascade_values(order, path)
        with atomic_transaction(session):
            written = compare_and_swap(
                session, Order, order.id,
                {"escrow_status": persisted.value, "escrow_pending_action": order.escrow_pending_action},
                {
                    "escrow_status": on_chain.value,
                    "escrow_pending_action": None,
                    "escrow_pending_since": None,
                    **values,
                },
            )
            if written:
                self._apply_vendor_order_cascade(session, order, values)
                session.add(EscrowTransaction(
                    order_id=order.id,
                    type=self._reconciled_tx_type(path).value,
                    tx_hash=latest["tx_hash"],
                    block_number=latest["block_number"],
                    winner=winner,
                ))

        if not written:
            return None
        logger.info(
            f"🔄 ESCROW_RECONCILED: order {order.id} {persisted.value} -> {on_chain.value} "
            f"via {' -> '.join(s.value for s in path)} tx {latest['tx_hash']}"
        )
        return on_chain.value

    @staticmethod
    def _clear_stale_claim(session: Session, order: Order) -> None:
        cleared = compare_and_swap(
            session, Order, order.id,
            {"escrow_pending_action": order.escrow_pending_action},
            {"escrow_pending_action": None, "escrow_pending_since": None},
        )
        session.commit()
        if cleared:
            logger.warning(f"🧹 ESCROW_STALE_CLAIM_CLEARED: order {order.id}")


escrow_coordinator = EscrowCoordinator()


def get_escrow_coordinator() -> EscrowCoordinator:
    return escrow_coordinator
