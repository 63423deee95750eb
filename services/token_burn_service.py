"""
Token Burn Service
Burns platform tokens through the burner contract on behalf of a user.

The BurnRecord is written before anything touches the chain and updated
with the real transaction hash as soon as the broadcast returns, so a crash
at any point leaves a record the background verifier can finish.
"""

import asyncio
import logging
import math
import weakref
from typing import Any, Dict, NamedTuple, Optional

from sqlalchemy import func, select
from sqlalchemy.orm import Session
from web3 import Web3

from config import Config
from models import BurnRecord, BurnStatus, PENDING_TX_HASH, User
from services.chain_adapter import ChainAdapter, get_chain_adapter, to_hex
from services.key_vault import DecryptedKey, KeyVault, get_key_vault
from utils.atomic_transactions import compare_and_swap
from utils.datetime_helpers import get_naive_utc_now, isoformat_or_none
from utils.decimal_precision import MonetaryDecimal
from utils.exception_handler import (
    ChainUnavailableError, EventDecodeError, InvalidInputError, InvalidStateError, MarketplaceError, NotFoundError,
)

logger = logging.getLogger(__name__)

DEAD_ADDRESS = "0x000000000000000000000000000000000000dead"
BURN_EVENT = "TokensBurned(address,uint256,uint256,uint256)"
TRANSFER_EVENT = "Transfer(address,address,uint256)"

# Forward-only burn edges
BURN_TRANSITIONS = {
    BurnStatus.PENDING: {BurnStatus.SUBMITTED, BurnStatus.CONFIRMED, BurnStatus.FAILED},
    BurnStatus.SUBMITTED: {BurnStatus.CONFIRMED, BurnStatus.FAILED},
    BurnStatus.FAILED: {BurnStatus.SUBMITTED, BurnStatus.CONFIRMED},
    BurnStatus.CONFIRMED: set(),
}


class BurnVerification(NamedTuple):
    """Outcome of reading a burn transaction back from the chain"""

    outcome: str  # verified | not_found | reverted | no_event
    reason: Optional[str] = None
    block_number: Optional[int] = None
    burner: Optional[str] = None
    amount_wei: Optional[str] = None
    note: Optional[str] = None

    @property
    def verified(self) -> bool:
        return self.outcome == "verified"

    @property
    def is_final(self) -> bool:
        return self.outcome != "not_found"


def serialize_burn(burn: BurnRecord) -> Dict[str, Any]:
    return {
        "id": burn.id,
        "amountUSD": MonetaryDecimal.to_float(burn.amount_usd),
        "amountWei": burn.amount_wei,
        "fromAddress": burn.from_address,
        "txHash": burn.tx_hash,
        "blockNumber": burn.block_number,
        "status": burn.status,
        "errorMessage": burn.error_message,
        "verifiedAt": isoformat_or_none(burn.verified_at),
        "bankDetailId": burn.bank_detail_id,
        "payoutId": burn.payout_id,
        "explorerUrl": (
            f"{Config.BLOCK_EXPLORER_URL.rstrip('/')}/tx/{burn.tx_hash}"
            if burn.has_tx_hash and Config.BLOCK_EXPLORER_URL else None
        ),
        "createdAt": isoformat_or_none(burn.created_at),
    }


def _error_text(exc: BaseException) -> str:
    if isinstance(exc, MarketplaceError):
        return exc.message if not exc.detail else f"{exc.message}: {exc.detail}"
    return str(exc) or type(exc).__name__


class TokenBurnService:
    """Burn, verify and retry token burns"""

    def __init__(self, chain: Optional[ChainAdapter] = None, vault: Optional[KeyVault] = None):
        self._chain = chain
        self._vault = vault
        # Entries disappear once no coroutine holds or waits on the lock
        self._address_locks: "weakref.WeakValueDictionary[str, asyncio.Lock]" = weakref.WeakValueDictionary()

    @property
    def chain(self) -> ChainAdapter:
        return self._chain or get_chain_adapter()

    @property
    def vault(self) -> KeyVault:
        return self._vault or get_key_vault()

    def is_available(self) -> bool:
        return self.chain.is_initialized and self.chain.is_token_configured()

    def _require(self) -> None:
        if not self.is_available():
            raise ChainUnavailableError("Token burn service is not available")

    def _lock_for(self, address: str) -> asyncio.Lock:
        lock = self._address_locks.get(address)
        if lock is None:
            lock = self._address_locks[address] = asyncio.Lock()
        return lock

    @staticmethod
    def _transition(session: Session, burn: BurnRecord, new_status: BurnStatus, values: Dict[str, Any]) -> bool:
        """Compare-and-swap a burn forward; False when the edge is invalid or a writer got there first"""
        current = BurnStatus(burn.status)
        if new_status not in BURN_TRANSITIONS[current]:
            logger.warning(f"🚫 BURN_TRANSITION_REJECTED: burn {burn.id} {current.value} -> {new_status.value}")
            return False
        values = dict(values, status=new_status.value, updated_at=get_naive_utc_now())
        swapped = compare_and_swap(session, BurnRecord, burn.id, {"status": current.value}, values)
        session.commit()
        if swapped:
            session.refresh(burn)
        return swapped

    # ------------------------------------------------------------------
    # Balances
    # ------------------------------------------------------------------

    async def get_balance(self, session: Session, user: User) -> Dict[str, Any]:
        self._require()
        address = self.vault.get_address(session, user.id)
        if address is None:
            return {"address": None, "balanceUSD": 0.0, "balanceWei": "0"}
        balance_wei = await self.chain.token_balance(address)
        return {
            "address": address,
            "balanceUSD": float(MonetaryDecimal.from_wei(balance_wei)),
            "balanceWei": str(balance_wei),
        }

    async def _read_balance_and_allowance(self, address: str) -> str:
        try:
            balance = MonetaryDecimal.from_wei(await self.chain.token_balance(address))
            allowance = MonetaryDecimal.from_wei(await self.chain.token_allowance(address))
        except ChainUnavailableError:
            return "Balance: unknown, Allowance: unknown"
        symbol = Config.TOKEN_SYMBOL
        return (
            f"Balance: {MonetaryDecimal.format_amount(balance)} {symbol}, "
            f"Allowance: {MonetaryDecimal.format_amount(allowance)} {symbol}"
        )

    # ------------------------------------------------------------------
    # Burn submission
    # ------------------------------------------------------------------

    async def _approve_if_needed(self, key: DecryptedKey, amount_wei: int) -> Optional[str]:
        allowance = await self.chain.token_allowance(key.address)
        if allowance >= amount_wei:
            logger.debug(f"✅ ALLOWANCE_SUFFICIENT: {key.address} allowance {allowance} wei")
            return None

        await self.chain.fund_for_gas(key.address, Config.APPROVE_GAS_ESTIMATE)
        data = self.chain.encode_token_call(
            "approve", Web3.to_checksum_address(self.chain.burner_address), amount_wei
        )
        try:
            approve_hash = await self.chain.send_user_tx(
                key.private_key, self.chain.token_address, data, Config.APPROVE_GAS_ESTIMATE
            )
            await self.chain.wait_for_success(approve_hash, Config.APPROVE_RECEIPT_TIMEOUT)
        except InvalidStateError as e:
            raise InvalidStateError(f"Token approval failed: {e.message}", e.detail) from e
        except ChainUnavailableError as e:
            raise ChainUnavailableError(f"Token approval failed: {e.message}", e.detail) from e
        logger.info(f"🔑 BURN_APPROVED: {key.address} approved {amount_wei} wei (tx {approve_hash})")

        # Let the approval propagate before the burn estimate reads it
        await asyncio.sleep(Config.APPROVE_PROPAGATION_DELAY)
        return approve_hash

    async def _submit_burn(self, key: DecryptedKey, amount_wei: int) -> str:
        await self.chain.fund_for_gas(key.address, Config.BURN_GAS_ESTIMATE)
        data = self.chain.encode_burner_call("burnTokens", amount_wei)
        try:
            return await self.chain.send_user_tx(
                key.private_key, self.chain.burner_address, data, Config.BURN_GAS_ESTIMATE
            )
        except InvalidStateError as e:
            # Estimation reverted; report what the chain sees
            snapshot = await self._read_balance_and_allowance(key.address)
            logger.error(f"❌ BURN_ESTIMATE_FAILED: {key.address} {snapshot}")
            raise InvalidStateError(f"Burn transaction would fail: {e.message}. {snapshot}") from e

    async def burn_tokens(self, session: Session, user: User, amount_usd: Any,
                          bank_detail_id: Optional[int] = None) -> BurnRecord:
        """
        Burn ``amount_usd`` tokens from the user's wallet.

        Returns the BurnRecord in ``submitted`` state; confirmation happens later
        through verification. Any failure before the broadcast marks the record
        failed, while cancellation leaves it pending.
        """
        self._require()
        try:
            amount = MonetaryDecimal.quantize_usd(amount_usd)
        except ValueError:
            raise InvalidInputError("Invalid amount", [{"field": "amountUSD", "message": "must be a number"}])
        if amount < Config.MIN_CLAIM_AMOUNT_USD:
            raise InvalidInputError(
                f"Minimum claim amount is {MonetaryDecimal.format_amount(Config.MIN_CLAIM_AMOUNT_USD)} USD",
                [{"field": "amountUSD", "message": "below minimum"}],
            )

        key = self.vault.decrypt(session, user.id)
        amount_wei = MonetaryDecimal.to_wei(amount)

        async with self._lock_for(key.address):
            balance_wei = await self.chain.token_balance(key.address)
            if balance_wei < amount_wei:
                raise InvalidInputError(
                    f"Insufficient balance. You have "
                    f"{MonetaryDecimal.format_amount(MonetaryDecimal.from_wei(balance_wei))} {Config.TOKEN_SYMBOL}"
                )

            burn = BurnRecord(
                user_id=user.id,
                bank_detail_id=bank_detail_id,
                amount_usd=amount,
                amount_wei=str(amount_wei),
                from_address=key.address,
                tx_hash=PENDING_TX_HASH,
                status=BurnStatus.PENDING.value,
            )
            session.add(burn)
            session.commit()
            logger.info(f"🔥 BURN_RECORD_CREATED: burn {burn.id} user {user.id} {amount} USD")

            try:
                await self._approve_if_needed(key, amount_wei)
                tx_hash = await self._submit_burn(key, amount_wei)
            except asyncio.CancelledError:
                logger.warning(f"⚠️ BURN_CANCELLED: burn {burn.id} left pending before broadcast")
                raise
            except Exception as e:
                session.rollback()
                self._transition(session, burn, BurnStatus.FAILED, {"error_message": _error_text(e)})
                logger.error(f"❌ BURN_FAILED: burn {burn.id} user {user.id}: {_error_text(e)}")
                raise

            self._transition(session, burn, BurnStatus.SUBMITTED, {"tx_hash": tx_hash, "error_message": None})

        logger.info(f"📤 BURN_SUBMITTED: burn {burn.id} tx {tx_hash} amount {amount} USD")
        return burn

    # ------------------------------------------------------------------
    # Verification
    # ------------------------------------------------------------------

    def _find_dead_transfer(self, receipt: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        token = (self.chain.token_address or "").lower()
        topic = self.chain.event_signature(TRANSFER_EVENT)
        for log in receipt.get("logs", []):
            topics = [to_hex(t) for t in log.get("topics", [])]
            if (
                to_hex(log.get("address", "")) == token
                and len(topics) >= 3
                and topics[0] == topic
                and topics[2][-40:] == DEAD_ADDRESS[2:]
            ):
                return {"topics": topics, "data": to_hex(log.get("data", "0x"))}
        return None

    async def verify_burn(self, tx_hash: str) -> BurnVerification:
        """Check that ``tx_hash`` succeeded and emitted a burn event"""
        self._require()
        receipt = await self.chain.get_receipt(tx_hash)
        if receipt is None:
            return BurnVerification("not_found", reason="Transaction not found")
        block_number = int(receipt.get("blockNumber") or 0) or None
        if receipt.get("status") != 1:
            return BurnVerification("reverted", reason="Transaction reverted on-chain", block_number=block_number)

        burn_topic = self.chain.event_signature(BURN_EVENT)
        if self.chain.find_log(receipt, self.chain.burner_address, burn_topic) is not None:
            try:
                event = self.chain.decode_event(
                    receipt, self.chain.burner_address, burn_topic, ("uint256", "uint256")
                )
            except EventDecodeError as e:
                logger.warning(f"⚠️ BURN_EVENT_UNDECODED: {tx_hash}: {e.message}")
                return BurnVerification(
                    "verified", block_number=block_number, burner="unknown", amount_wei="0",
                    note="Event found but could not decode parameters",
                )
            return BurnVerification(
                "verified",
                block_number=block_number,
                burner="0x" + event["topics"][1][-40:] if len(event["topics"]) > 1 else "unknown",
                amount_wei=str(event["data"][0]),
            )

        transfer = self._find_dead_transfer(receipt)
        if transfer is not None:
            amount_wei = str(int(transfer["data"], 16)) if transfer["data"] not in ("0x", "") else "0"
            return BurnVerification(
                "verified", block_number=block_number, burner="0x" + transfer["topics"][1][-40:],
                amount_wei=amount_wei,
            )

        return BurnVerification("no_event", reason="No burn event found in transaction", block_number=block_number)

    def apply_verification(self, session: Session, burn: BurnRecord, verification: BurnVerification) -> bool:
        """Move a burn forward according to a verification result"""
        if verification.verified:
            promoted = self._transition(session, burn, BurnStatus.CONFIRMED, {
                "block_number": verification.block_number,
                "verified_at": get_naive_utc_now(),
                "error_message": None,
            })
            if promoted:
                logger.info(f"✅ BURN_CONFIRMED: burn {burn.id} tx {burn.tx_hash} block {verification.block_number}")
            return promoted
        if verification.is_final and burn.status != BurnStatus.FAILED.value:
            failed = self._transition(session, burn, BurnStatus.FAILED, {
                "block_number": verification.block_number,
                "error_message": verification.reason,
            })
            if failed:
                logger.warning(f"❌ BURN_VERIFICATION_FAILED: burn {burn.id} tx {burn.tx_hash}: {verification.reason}")
            return failed
        return False

    @staticmethod
    def _load_user_burn(session: Session, user: User, burn_id: int) -> BurnRecord:
        burn = session.get(BurnRecord, burn_id)
        if burn is None or burn.user_id != user.id:
            raise NotFoundError("Burn record not found")
        return burn

    async def verify_user_burn(self, session: Session, user: User, burn_id: int) -> BurnRecord:
        """Re-read the receipt of a submitted or failed burn and promote it when the event is there"""
        burn = self._load_user_burn(session, user, burn_id)
        if burn.status == BurnStatus.CONFIRMED.value:
            return burn
        if not burn.has_tx_hash:
            raise InvalidStateError("Burn has no transaction to verify")

        verification = await self.verify_burn(burn.tx_hash)
        if not self.apply_verification(session, burn, verification) and not verification.verified:
            if verification.outcome == "not_found":
                raise InvalidStateError("Transaction not found on-chain yet; try again shortly")
            raise InvalidStateError(f"Burn could not be verified: {verification.reason}")
        return burn

    async def retry_burn(self, session: Session, user: User, burn_id: int) -> BurnRecord:
        """
        Re-submit a failed burn, updating the same record in place.

        A failed record whose transaction actually succeeded is promoted instead.
        The allowance is re-checked; an expired approval needs a fresh claim.
        """
        self._require()
        burn = self._load_user_burn(session, user, burn_id)
        if burn.status != BurnStatus.FAILED.value:
            raise InvalidStateError("Only failed burns can be retried")

        if burn.has_tx_hash:
            verification = await self.verify_burn(burn.tx_hash)
            if verification.verified:
                self.apply_verification(session, burn, verification)
                logger.info(f"🔁 BURN_RETRY_PROMOTED: burn {burn.id} was already on-chain")
                return burn
            if verification.outcome == "not_found":
                raise InvalidStateError("Previous burn transaction is still unknown on-chain; verify it before retrying")

        key = self.vault.decrypt(session, user.id)
        amount_wei = int(burn.amount_wei)

        async with self._lock_for(key.address):
            balance_wei = await self.chain.token_balance(key.address)
            if balance_wei < amount_wei:
                raise InvalidStateError(
                    f"Insufficient balance for retry. Have: "
                    f"{MonetaryDecimal.format_amount(MonetaryDecimal.from_wei(balance_wei))} {Config.TOKEN_SYMBOL}, "
                    f"Need: {MonetaryDecimal.format_amount(burn.amount_usd)} {Config.TOKEN_SYMBOL}"
                )
            allowance_wei = await self.chain.token_allowance(key.address)
            if allowance_wei < amount_wei:
                raise InvalidStateError(
                    f"Insufficient allowance. Need to re-approve or claim a fresh amount. Allowance: "
                    f"{MonetaryDecimal.format_amount(MonetaryDecimal.from_wei(allowance_wei))} {Config.TOKEN_SYMBOL}"
                )

            logger.info(f"🔁 BURN_RETRY: burn {burn.id} {burn.amount_usd} USD")
            try:
                tx_hash = await self._submit_burn(key, amount_wei)
            except Exception as e:
                session.rollback()
                compare_and_swap(
                    session, BurnRecord, burn.id, {"status": BurnStatus.FAILED.value},
                    {"error_message": f"Retry failed: {_error_text(e)}", "updated_at": get_naive_utc_now()},
                )
                session.commit()
                logger.error(f"❌ BURN_RETRY_FAILED: burn {burn.id}: {_error_text(e)}")
                raise

            self._transition(session, burn, BurnStatus.SUBMITTED, {
                "tx_hash": tx_hash, "error_message": None, "block_number": None,
            })

        logger.info(f"📤 BURN_RESUBMITTED: burn {burn.id} tx {tx_hash}")
        return burn

    # ------------------------------------------------------------------
    # History
    # ------------------------------------------------------------------

    @staticmethod
    def get_burn_history(session: Session, user: User, page: int = 1, limit: int = 20,
                         status: Optional[str] = None) -> Dict[str, Any]:
        page = max(1, int(page or 1))
        limit = max(1, min(100, int(limit or 20)))
        stmt = select(BurnRecord).where(BurnRecord.user_id == user.id)
        if status:
            stmt = stmt.where(BurnRecord.status == status)

        total = session.execute(select(func.count()).select_from(stmt.subquery())).scalar_one()
        burns = session.execute(
            stmt.order_by(BurnRecord.created_at.desc(), BurnRecord.id.desc()).offset((page - 1) * limit).limit(limit)
        ).scalars().all()
        return {
            "burns": [serialize_burn(b) for b in burns],
            "pagination": {
                "page": page,
                "limit": limit,
                "total": total,
                "pages": math.ceil(total / limit) if total else 0,
            },
        }


token_burn_service = TokenBurnService()


def get_token_burn_service() -> TokenBurnService:
    return token_burn_service
