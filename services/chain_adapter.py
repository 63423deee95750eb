"""
Chain Adapter
=============

Single choke point for blockchain RPC. Wraps a synchronous web3 HTTP provider;
every public method is a coroutine that runs the blocking call in a worker
thread. Admin-signed transactions share one nonce and are serialized through a
single asyncio.Lock; user-signed transactions run in parallel.
"""

import asyncio
import logging
import math
from decimal import Decimal
from typing import Any, Dict, List, Optional, Sequence

import requests
from eth_abi import decode as abi_decode
from web3 import Web3
from web3.exceptions import ContractLogicError, TimeExhausted, TransactionNotFound, Web3Exception
from web3.logs import DISCARD

from config import Config
from models import EscrowState
from services.circuit_breaker import CircuitOpenError, get_circuit_breaker
from services.contract_abis import load_abi
from utils.exception_handler import ChainUnavailableError, EventDecodeError, InvalidStateError

logger = logging.getLogger(__name__)

# Contract enum order for Escrow.currentState()
ESCROW_STATE_CODES = {
    0: EscrowState.LOCKED,
    1: EscrowState.RELEASE_PENDING,
    2: EscrowState.DISPUTED,
    3: EscrowState.COMPLETE,
    4: EscrowState.REFUNDED,
}

# Network-level failures that count against the RPC circuit breaker
RPC_NETWORK_ERRORS = (requests.exceptions.RequestException, OSError, asyncio.TimeoutError, TimeoutError)


def to_hex(value: Any) -> str:
    """Normalize HexBytes/bytes/str to a lowercase 0x string"""
    if isinstance(value, str):
        return value.lower() if value.startswith("0x") else "0x" + value.lower()
    return Web3.to_hex(value).lower()


def _ceil_mul(value: int, multiplier: Decimal) -> int:
    return int(math.ceil(Decimal(int(value)) * multiplier))


class ChainAdapter:
    """Blockchain RPC adapter for escrow, token and burner contracts"""

    def __init__(self, rpc_url: Optional[str] = None, admin_private_key: Optional[str] = None):
        self._rpc_url = rpc_url
        self._admin_private_key = admin_private_key
        self.web3: Optional[Web3] = None
        self.admin_account = None
        self._admin_lock: Optional[asyncio.Lock] = None
        self._chain_id: Optional[int] = None
        self._breaker = get_circuit_breaker(
            'blockchain_rpc', failure_threshold=5, recovery_timeout=30,
            expected_exception=RPC_NETWORK_ERRORS,
        )

    # ------------------------------------------------------------------
    # Initialization
    # ------------------------------------------------------------------

    @property
    def rpc_url(self) -> str:
        return self._rpc_url if self._rpc_url is not None else Config.WEB3_RPC_URL

    @property
    def admin_private_key(self) -> str:
        return self._admin_private_key if self._admin_private_key is not None else Config.ADMIN_PRIVATE_KEY

    def initialize(self) -> bool:
        """Connect the provider and load the admin account; False when unconfigured"""
        if self.web3 is not None:
            return True
        if not self.rpc_url or not self.admin_private_key:
            logger.warning("⚠️ CHAIN_ADAPTER: WEB3_RPC_URL or ADMIN_PRIVATE_KEY not configured")
            return False

        self.web3 = Web3(Web3.HTTPProvider(self.rpc_url, request_kwargs={"timeout": Config.RPC_TIMEOUT}))
        self.admin_account = self.web3.eth.account.from_key(self.admin_private_key)
        logger.info(f"✅ CHAIN_ADAPTER: initialized with admin {self.admin_account.address}")
        return True

    @property
    def is_initialized(self) -> bool:
        return self.initialize()

    @property
    def admin_address(self) -> str:
        self._require()
        return self.admin_account.address.lower()

    def _require(self) -> Web3:
        if not self.initialize():
            raise ChainUnavailableError("Blockchain service is not configured")
        return self.web3

    def _lock(self) -> asyncio.Lock:
        if self._admin_lock is None:
            self._admin_lock = asyncio.Lock()
        return self._admin_lock

    async def _rpc(self, func, *args, timeout: Optional[float] = None, **kwargs):
        """Run a blocking web3 call off the event loop with RPC error mapping"""
        try:
            return await asyncio.wait_for(
                self._breaker.call(func, *args, **kwargs),
                timeout=timeout or Config.RPC_TIMEOUT,
            )
        except ContractLogicError as e:
            raise InvalidStateError(f"Transaction would revert: {e}") from e
        except CircuitOpenError as e:
            raise ChainUnavailableError("Blockchain RPC temporarily unavailable", str(e)) from e
        except asyncio.TimeoutError as e:
            logger.error(f"⏱️ RPC_TIMEOUT: {getattr(func, '__name__', func)} exceeded {timeout or Config.RPC_TIMEOUT}s")
            raise ChainUnavailableError("Blockchain RPC timed out") from e
        except TimeExhausted as e:
            raise ChainUnavailableError("Timed out waiting for transaction receipt", str(e)) from e
        except (Web3Exception, ValueError, *RPC_NETWORK_ERRORS) as e:
            logger.error(f"❌ RPC_ERROR: {getattr(func, '__name__', func)}: {e}")
            raise ChainUnavailableError("Blockchain RPC error", str(e)) from e

    async def _chain_id_cached(self) -> int:
        if self._chain_id is None:
            w3 = self._require()
            self._chain_id = await self._rpc(lambda: w3.eth.chain_id)
        return self._chain_id

    # ------------------------------------------------------------------
    # Contracts
    # ------------------------------------------------------------------

    def _contract(self, address: str, abi_name: str):
        w3 = self._require()
        if not address:
            raise ChainUnavailableError(f"{abi_name} contract address is not configured")
        return w3.eth.contract(address=Web3.to_checksum_address(address), abi=load_abi(abi_name))

    def factory_contract(self):
        return self._contract(Config.ESCROW_FACTORY_ADDRESS, "EscrowFactory")

    def escrow_contract(self, escrow_address: str):
        return self._contract(escrow_address, "Escrow")

    def token_contract(self):
        return self._contract(Config.KOOSHCOIN_ADDRESS, "KooshCoin")

    def burner_contract(self):
        return self._contract(Config.KOOSH_BURNER_ADDRESS, "KooshBurner")

    @property
    def token_address(self) -> str:
        return (Config.KOOSHCOIN_ADDRESS or "").lower()

    @property
    def burner_address(self) -> str:
        return (Config.KOOSH_BURNER_ADDRESS or "").lower()

    def is_token_configured(self) -> bool:
        return bool(Config.KOOSHCOIN_ADDRESS and Config.KOOSH_BURNER_ADDRESS) and self.initialize()

    def is_escrow_configured(self) -> bool:
        return bool(Config.ESCROW_FACTORY_ADDRESS) and self.initialize()

    def encode_escrow_call(self, escrow_address: str, fn_name: str, *args) -> str:
        return self.escrow_contract(escrow_address).encode_abi(fn_name, args=list(args))

    def encode_token_call(self, fn_name: str, *args) -> str:
        return self.token_contract().encode_abi(fn_name, args=list(args))

    def encode_burner_call(self, fn_name: str, *args) -> str:
        return self.burner_contract().encode_abi(fn_name, args=list(args))

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get_native_balance(self, address: str) -> int:
        w3 = self._require()
        return await self._rpc(w3.eth.get_balance, Web3.to_checksum_address(address))

    async def token_balance(self, address: str) -> int:
        contract = self.token_contract()
        return await self._rpc(contract.functions.balanceOf(Web3.to_checksum_address(address)).call)

    async def token_allowance(self, owner: str, spender: Optional[str] = None) -> int:
        contract = self.token_contract()
        spender = spender or Config.KOOSH_BURNER_ADDRESS
        return await self._rpc(
            contract.functions.allowance(
                Web3.to_checksum_address(owner), Web3.to_checksum_address(spender)
            ).call
        )

    async def get_receipt(self, tx_hash: str) -> Optional[Dict[str, Any]]:
        """Receipt for a transaction, or None when not yet mined or unknown"""
        w3 = self._require()

        def _fetch():
            try:
                return w3.eth.get_transaction_receipt(tx_hash)
            except TransactionNotFound:
                return None

        receipt = await self._rpc(_fetch)
        return dict(receipt) if receipt is not None else None

    async def wait_for_receipt(self, tx_hash: str, timeout: Optional[int] = None) -> Dict[str, Any]:
        w3 = self._require()
        timeout = timeout or Config.ESCROW_RECEIPT_TIMEOUT
        receipt = await self._rpc(
            lambda: w3.eth.wait_for_transaction_receipt(tx_hash, timeout=timeout, poll_latency=1),
            timeout=timeout + 5,
        )
        return dict(receipt)

    async def get_escrow_state(self, escrow_address: str) -> EscrowState:
        contract = self.escrow_contract(escrow_address)
        code = await self._rpc(contract.functions.currentState().call)
        try:
            return ESCROW_STATE_CODES[int(code)]
        except KeyError:
            raise ChainUnavailableError(f"Unknown escrow state code {code}")

    async def get_escrow_details(self, escrow_address: str) -> Dict[str, Any]:
        contract = self.escrow_contract(escrow_address)
        fns = contract.functions

        def _read():
            return (
                fns.buyer().call(),
                fns.seller().call(),
                fns.arbitrator().call(),
                fns.amount().call(),
                fns.currentState().call(),
                fns.buyerConfirmedDelivery().call(),
                fns.getBalance().call(),
                fns.creationTimestamp().call(),
            )

        buyer, seller, arbitrator, amount, state_code, confirmed, balance, created = await self._rpc(_read)
        state = ESCROW_STATE_CODES.get(int(state_code))
        return {
            "buyer": buyer.lower(),
            "seller": seller.lower(),
            "arbitrator": arbitrator.lower(),
            "amount": str(amount),
            "state": state.value if state else "Unknown",
            "stateCode": int(state_code),
            "buyerConfirmedDelivery": bool(confirmed),
            "balance": str(balance),
            "creationTimestamp": int(created),
        }

    async def find_latest_escrow_transaction(self, escrow_address: str, from_block: int = 0) -> Optional[Dict[str, Any]]:
        """Hash and block of the newest log emitted by an escrow contract"""
        w3 = self._require()
        logs = await self._rpc(
            w3.eth.get_logs,
            {"address": Web3.to_checksum_address(escrow_address), "fromBlock": from_block, "toBlock": "latest"},
        )
        if not logs:
            return None
        latest = max(logs, key=lambda log: (log["blockNumber"], log["logIndex"]))
        return {"tx_hash": to_hex(latest["transactionHash"]), "block_number": int(latest["blockNumber"])}

    # ------------------------------------------------------------------
    # Event decoding
    # ------------------------------------------------------------------

    @staticmethod
    def find_log(receipt: Dict[str, Any], address: str, signature_hash: str) -> Optional[Dict[str, Any]]:
        address = (address or "").lower()
        signature_hash = signature_hash.lower()
        for log in receipt.get("logs", []):
            topics = [to_hex(t) for t in log.get("topics", [])]
            if to_hex(log.get("address", "")) == address and topics and topics[0] == signature_hash:
                return {"address": address, "topics": topics, "data": to_hex(log.get("data", "0x"))}
        return None

    def decode_event(
        self,
        receipt: Dict[str, Any],
        address: str,
        signature_hash: str,
        data_types: Sequence[str] = (),
    ) -> Dict[str, Any]:
        """
        Locate a log by emitting address and topic0, decoding its data section.

        Raises EventDecodeError when no matching log exists or the data does
        not decode as ``data_types``.
        """
        log = self.find_log(receipt, address, signature_hash)
        if log is None:
            raise EventDecodeError(f"Event {signature_hash[:10]} not found in receipt")
        decoded: List[Any] = []
        if data_types:
            try:
                decoded = list(abi_decode(list(data_types), bytes.fromhex(log["data"][2:])))
            except Exception as e:
                raise EventDecodeError(f"Failed to decode event data: {e}") from e
        return {"topics": log["topics"], "data": decoded, "raw_data": log["data"]}

    @staticmethod
    def event_signature(signature: str) -> str:
        return to_hex(Web3.keccak(text=signature))

    # ------------------------------------------------------------------
    # Transactions
    # ------------------------------------------------------------------

    async def _sign_and_send(self, private_key: str, tx: Dict[str, Any]) -> str:
        w3 = self._require()
        signed = w3.eth.account.sign_transaction(tx, private_key)
        tx_hash = await self._rpc(
            w3.eth.send_raw_transaction, signed.raw_transaction, timeout=Config.RPC_SUBMIT_TIMEOUT
        )
        return to_hex(tx_hash)

    async def _build_tx(self, sender: str, to: str, data: str, estimated_gas: int, value: int = 0,
                        gas_multiplier: Decimal = None) -> Dict[str, Any]:
        w3 = self._require()
        sender_cs = Web3.to_checksum_address(sender)
        to_cs = Web3.to_checksum_address(to)
        call = {"from": sender_cs, "to": to_cs, "data": data, "value": value}

        gas_estimate = await self._rpc(w3.eth.estimate_gas, call)
        gas_price = await self._rpc(lambda: w3.eth.gas_price)
        nonce = await self._rpc(w3.eth.get_transaction_count, sender_cs, "latest")
        multiplier = gas_multiplier or Config.GAS_LIMIT_MULTIPLIER

        return {
            "from": sender_cs,
            "to": to_cs,
            "data": data,
            "value": value,
            "gas": max(_ceil_mul(gas_estimate, multiplier), int(estimated_gas or 0)),
            "gasPrice": _ceil_mul(gas_price, Config.GAS_PRICE_MULTIPLIER),
            "nonce": nonce,
            "chainId": await self._chain_id_cached(),
        }

    async def fund_for_gas(self, user_address: str, estimated_gas: int) -> Optional[str]:
        """Top up a user's native balance to GAS_FUNDING_MULTIPLIER x gas cost; None when sufficient"""
        w3 = self._require()
        gas_price = await self._rpc(lambda: w3.eth.gas_price)
        required = Config.GAS_FUNDING_MULTIPLIER * int(estimated_gas) * int(gas_price)
        balance = await self.get_native_balance(user_address)
        if balance >= required:
            logger.debug(f"⛽ GAS_FUNDING_SKIPPED: {user_address} has {balance} wei (needs {required})")
            return None

        top_up = required - balance
        async with self._lock():
            admin = self.admin_account.address
            nonce = await self._rpc(w3.eth.get_transaction_count, admin, "pending")
            tx = {
                "from": admin,
                "to": Web3.to_checksum_address(user_address),
                "value": top_up,
                "gas": Config.GAS_TRANSFER_LIMIT,
                "gasPrice": int(gas_price),
                "nonce": nonce,
                "chainId": await self._chain_id_cached(),
            }
            tx_hash = await self._sign_and_send(self.admin_private_key, tx)
            receipt = await self.wait_for_receipt(tx_hash, Config.ESCROW_RECEIPT_TIMEOUT)

        if receipt.get("status") != 1:
            raise ChainUnavailableError(f"Gas funding transaction {tx_hash} reverted")
        logger.info(f"⛽ GAS_FUNDED: {user_address} +{top_up} wei (tx {tx_hash})")
        return tx_hash

    async def send_user_tx(self, private_key: str, to: str, data: str, estimated_gas: int) -> str:
        """Sign and broadcast a user transaction; returns the hash without waiting for inclusion"""
        w3 = self._require()
        sender = w3.eth.account.from_key(private_key).address
        tx = await self._build_tx(sender, to, data, estimated_gas)
        tx_hash = await self._sign_and_send(private_key, tx)
        logger.info(f"📤 USER_TX_SENT: from {sender.lower()} to {to.lower()} hash {tx_hash}")
        return tx_hash

    async def send_admin_tx(self, to: str, data: str, estimated_gas: int) -> str:
        """Admin-signed call (arbitration); serialized with all other admin transactions"""
        self._require()
        async with self._lock():
            tx = await self._build_tx(
                self.admin_account.address, to, data, estimated_gas, gas_multiplier=Config.ADMIN_GAS_MULTIPLIER
            )
            tx_hash = await self._sign_and_send(self.admin_private_key, tx)
        logger.info(f"📤 ADMIN_TX_SENT: to {to.lower()} hash {tx_hash}")
        return tx_hash

    async def deploy_escrow(self, buyer: str, seller: str, amount_wei: int) -> Dict[str, Any]:
        """Create an escrow through the factory; the contract starts Locked"""
        factory = self.factory_contract()
        arbitrator = self.admin_account.address
        data = factory.encode_abi(
            "createEscrow",
            args=[Web3.to_checksum_address(buyer), Web3.to_checksum_address(seller), arbitrator, int(amount_wei)],
        )

        async with self._lock():
            tx = await self._build_tx(arbitrator, factory.address, data, 0, gas_multiplier=Config.ADMIN_GAS_MULTIPLIER)
            tx_hash = await self._sign_and_send(self.admin_private_key, tx)

        receipt = await self.wait_for_receipt(tx_hash, Config.ESCROW_RECEIPT_TIMEOUT)
        if receipt.get("status") != 1:
            raise ChainUnavailableError(f"Escrow deployment {tx_hash} reverted")

        events = factory.events.NewEscrowCreated().process_receipt(receipt, errors=DISCARD)
        if not events:
            raise EventDecodeError(f"NewEscrowCreated event missing from {tx_hash}")
        escrow_address = events[0]["args"]["escrowContractAddress"].lower()

        logger.info(f"🏦 ESCROW_DEPLOYED: {escrow_address} buyer={buyer} seller={seller} tx={tx_hash}")
        return {
            "escrow_address": escrow_address,
            "tx_hash": tx_hash,
            "block_number": int(receipt.get("blockNumber") or 0),
        }

    async def wait_for_success(self, tx_hash: str, timeout: Optional[int] = None) -> Dict[str, Any]:
        """Receipt with status 1; reverts raise InvalidStateError, timeouts ChainUnavailableError"""
        receipt = await self.wait_for_receipt(tx_hash, timeout)
        if receipt.get("status") != 1:
            raise InvalidStateError(f"Transaction {tx_hash} reverted on-chain")
        return receipt


chain_adapter = ChainAdapter()


def get_chain_adapter() -> ChainAdapter:
    return chain_adapter
