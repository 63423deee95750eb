"""
Shared fixtures for the marketplace core test suite.

Key components:
1. Environment configured before any project import (in-memory SQLite, test secrets)
2. Fresh schema per test
3. In-memory chain and Razorpay fakes wired into real service instances
4. User, product and order factories
"""

import os

os.environ["DATABASE_URL"] = "sqlite://"
os.environ["JWT_SECRET"] = "test-jwt-secret-for-marketplace-core"
os.environ["KEY_ENCRYPTION_SECRET"] = "test-key-encryption-secret-0123456789abcdef"
os.environ["WEB3_RPC_URL"] = "http://127.0.0.1:8545"
os.environ["ADMIN_PRIVATE_KEY"] = "0x" + "11" * 32
os.environ["ESCROW_FACTORY_ADDRESS"] = "0x5FbDB2315678afecb367f032d93F642f64180aa3"
os.environ["KOOSHCOIN_ADDRESS"] = "0xe7f1725E7734CE288F8367e1Bb143E90bb3F0512"
os.environ["KOOSH_BURNER_ADDRESS"] = "0x9fE46736679d2D9a65F0992F25272dE9f3c7fa6e"
os.environ["RAZORPAY_WEBHOOK_SECRET"] = "test-razorpay-webhook-secret"
os.environ["RAZORPAY_KEY_ID"] = ""
os.environ["RAZORPAY_KEY_SECRET"] = ""
os.environ["ENABLE_BACKGROUND_VERIFIER"] = "false"
os.environ["APPROVE_PROPAGATION_DELAY"] = "0"
os.environ["ENVIRONMENT"] = "development"

import itertools
import logging
from decimal import Decimal
from typing import Any, Dict, List, Optional

import pytest
from eth_abi import encode as abi_encode
from eth_account import Account
from fastapi.testclient import TestClient

from config import Config
from database import SessionLocal, engine, get_db
from models import Base, EscrowState, OrderStatus, Product, User, UserRole
from services.bank_detail_service import BankDetailService, get_bank_detail_service
from services.chain_adapter import ChainAdapter, to_hex
from services.circuit_breaker import circuit_breakers
from services.dispute_attachment_storage import DisputeAttachmentStorage
from services.dispute_resolution import DisputeResolutionService, get_dispute_resolution_service
from services.escrow_coordinator import EscrowCoordinator, get_escrow_coordinator
from services.key_vault import KeyVault
from services.order_service import OrderService, get_order_service
from services.payout_service import PayoutService, get_payout_service
from services.razorpay_payout_service import RazorpayPayoutService
from services.token_burn_service import BURN_EVENT, TokenBurnService
from utils.decimal_precision import MonetaryDecimal
from utils.exception_handler import ChainUnavailableError, InvalidStateError
from jobs.burn_verification_monitor import BurnVerificationMonitor
from middleware.auth_security import create_access_token

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Chain fake
# ---------------------------------------------------------------------------

ESCROW_CALL_TARGETS = {
    "confirmDelivery": EscrowState.RELEASE_PENDING,
    "releaseFunds": EscrowState.COMPLETE,
    "raiseDispute": EscrowState.DISPUTED,
}


class FakeChainAdapter(ChainAdapter):
    """
    In-memory chain: escrow contracts, token balances, allowances and receipts.

    Encoded calls are readable markers; ``send_*`` applies their effect and
    records a receipt. ``failures`` queues exceptions raised by the next sends.
    Setting ``mine_burns`` False leaves burn transactions without a receipt.
    """

    def __init__(self):
        super().__init__(rpc_url="http://fake-rpc", admin_private_key=os.environ["ADMIN_PRIVATE_KEY"])
        self._counter = itertools.count(1)
        self.block_number = 100
        self.escrows: Dict[str, Dict[str, Any]] = {}
        self.latest_escrow_tx: Dict[str, Dict[str, Any]] = {}
        self.balances: Dict[str, int] = {}
        self.allowances: Dict[str, int] = {}
        self.receipts: Dict[str, Dict[str, Any]] = {}
        self.unmined: Dict[str, Dict[str, Any]] = {}
        self.sent: List[Dict[str, Any]] = []
        self.gas_funded: List[str] = []
        self.failures: List[Exception] = []
        self.mine_burns = True

    def initialize(self) -> bool:
        return True

    # helpers for tests

    def _next_hash(self) -> str:
        return "0x" + format(next(self._counter), "064x")

    def _next_block(self) -> int:
        self.block_number += 1
        return self.block_number

    def _raise_queued(self) -> None:
        if self.failures:
            raise self.failures.pop(0)

    def mint(self, address: str, amount_usd) -> None:
        address = address.lower()
        self.balances[address] = self.balances.get(address, 0) + MonetaryDecimal.to_wei(amount_usd)

    def escrow_state(self, escrow_address: str) -> EscrowState:
        return self.escrows[escrow_address]["state"]

    def force_escrow_state(self, escrow_address: str, state: EscrowState) -> str:
        """Move a contract behind the application's back and log the transaction"""
        tx_hash = self._next_hash()
        self.escrows[escrow_address]["state"] = state
        self.latest_escrow_tx[escrow_address] = {"tx_hash": tx_hash, "block_number": self._next_block()}
        return tx_hash

    def mine(self, tx_hash: str) -> None:
        self.receipts[tx_hash] = self.unmined.pop(tx_hash)

    def burn_receipt(self, sender: str, amount_wei: int, block: int, status: int = 1) -> Dict[str, Any]:
        return {
            "status": status,
            "blockNumber": block,
            "logs": [{
                "address": self.burner_address,
                "topics": [
                    self.event_signature(BURN_EVENT),
                    "0x" + "0" * 24 + sender.lower()[2:],
                    "0x" + format(block, "064x"),
                ],
                "data": to_hex(abi_encode(["uint256", "uint256"], [amount_wei, 1700000000])),
            }],
        }

    # encoding

    def encode_escrow_call(self, escrow_address: str, fn_name: str, *args) -> str:
        return "|".join(["escrow", fn_name] + [str(a) for a in args])

    def encode_token_call(self, fn_name: str, *args) -> str:
        return "|".join(["token", fn_name] + [str(a) for a in args])

    def encode_burner_call(self, fn_name: str, *args) -> str:
        return "|".join(["burner", fn_name] + [str(a) for a in args])

    # reads

    async def get_native_balance(self, address: str) -> int:
        return 10 ** 18

    async def token_balance(self, address: str) -> int:
        return self.balances.get(address.lower(), 0)

    async def token_allowance(self, owner: str, spender: Optional[str] = None) -> int:
        return self.allowances.get(owner.lower(), 0)

    async def get_receipt(self, tx_hash: str) -> Optional[Dict[str, Any]]:
        return self.receipts.get(tx_hash)

    async def wait_for_receipt(self, tx_hash: str, timeout: Optional[int] = None) -> Dict[str, Any]:
        receipt = self.receipts.get(tx_hash)
        if receipt is None:
            raise ChainUnavailableError("Timed out waiting for transaction receipt")
        return receipt

    async def get_escrow_state(self, escrow_address: str) -> EscrowState:
        return self.escrows[escrow_address]["state"]

    async def get_escrow_details(self, escrow_address: str) -> Dict[str, Any]:
        escrow = self.escrows[escrow_address]
        return {
            "buyer": escrow["buyer"],
            "seller": escrow["seller"],
            "amount": str(escrow["amount"]),
            "state": escrow["state"].value,
        }

    async def find_latest_escrow_transaction(self, escrow_address: str, from_block: int = 0):
        return self.latest_escrow_tx.get(escrow_address)

    # transactions

    async def fund_for_gas(self, user_address: str, estimated_gas: int) -> Optional[str]:
        self.gas_funded.append(user_address.lower())
        return None

    def _apply(self, sender: str, to: str, data: str) -> str:
        tx_hash = self._next_hash()
        block = self._next_block()
        parts = data.split("|")
        self.sent.append({"from": sender, "to": to, "call": parts[1], "hash": tx_hash})

        if parts[0] == "escrow":
            escrow = self.escrows[to]
            if parts[1] == "resolveDispute":
                winner = parts[2].lower()
                escrow["state"] = EscrowState.REFUNDED if winner == escrow["buyer"] else EscrowState.COMPLETE
            else:
                escrow["state"] = ESCROW_CALL_TARGETS[parts[1]]
            self.latest_escrow_tx[to] = {"tx_hash": tx_hash, "block_number": block}
            self.receipts[tx_hash] = {"status": 1, "blockNumber": block, "logs": []}
        elif parts[0] == "token" and parts[1] == "approve":
            self.allowances[sender] = int(parts[3])
            self.receipts[tx_hash] = {"status": 1, "blockNumber": block, "logs": []}
        elif parts[0] == "burner" and parts[1] == "burnTokens":
            amount = int(parts[2])
            self.balances[sender] = self.balances.get(sender, 0) - amount
            self.allowances[sender] = self.allowances.get(sender, 0) - amount
            receipt = self.burn_receipt(sender, amount, block)
            if self.mine_burns:
                self.receipts[tx_hash] = receipt
            else:
                self.unmined[tx_hash] = receipt
        return tx_hash

    async def send_user_tx(self, private_key: str, to: str, data: str, estimated_gas: int) -> str:
        self._raise_queued()
        sender = Account.from_key(private_key).address.lower()
        return self._apply(sender, to.lower(), data)

    async def send_admin_tx(self, to: str, data: str, estimated_gas: int) -> str:
        self._raise_queued()
        return self._apply("admin", to.lower(), data)

    async def deploy_escrow(self, buyer: str, seller: str, amount_wei: int) -> Dict[str, Any]:
        self._raise_queued()
        address = "0x" + format(0xE5C0 + len(self.escrows), "040x")
        tx_hash = self._next_hash()
        block = self._next_block()
        self.escrows[address] = {
            "buyer": buyer.lower(), "seller": seller.lower(), "amount": int(amount_wei), "state": EscrowState.LOCKED,
        }
        self.latest_escrow_tx[address] = {"tx_hash": tx_hash, "block_number": block}
        return {"escrow_address": address, "tx_hash": tx_hash, "block_number": block}

    async def wait_for_success(self, tx_hash: str, timeout: Optional[int] = None) -> Dict[str, Any]:
        receipt = await self.wait_for_receipt(tx_hash, timeout)
        if receipt.get("status") != 1:
            raise InvalidStateError(f"Transaction {tx_hash} reverted on-chain")
        return receipt


# ---------------------------------------------------------------------------
# Razorpay fake
# ---------------------------------------------------------------------------

class FakeRazorpayProvider(RazorpayPayoutService):
    """RazorpayX stand-in; keeps the real status mapping and error descriptions"""

    def __init__(self, available: bool = True):
        super().__init__()
        self.available = available
        self.payout_status = "processing"
        self.fail_with: Optional[Exception] = None
        self.contacts: List[int] = []
        self.fund_accounts: List[str] = []
        self.payouts: List[Dict[str, Any]] = []
        self.remote: Dict[str, Dict[str, Any]] = {}

    def is_available(self) -> bool:
        return self.available

    async def create_contact(self, user_id: int, name: str, email: str) -> str:
        self.contacts.append(user_id)
        return f"cont_{user_id}"

    async def create_fund_account(self, contact_id: str, holder_name: str, ifsc: str, account_number: str) -> str:
        self.fund_accounts.append(contact_id)
        return f"fa_{contact_id}"

    async def create_payout(self, fund_account_id: str, amount_paise: int, reference_id: str,
                            narration: str, notes: Dict[str, str]) -> Dict[str, Any]:
        if self.fail_with is not None:
            raise self.fail_with
        payout = {
            "id": f"pout_{reference_id}",
            "status": self.payout_status,
            "amount": amount_paise,
            "reference_id": reference_id,
            "utr": None,
        }
        self.payouts.append(payout)
        self.remote[payout["id"]] = dict(payout)
        return payout

    async def fetch_payout(self, provider_payout_id: str) -> Dict[str, Any]:
        data = self.remote[provider_payout_id]
        return {"id": data["id"], "status": data["status"], "utr": data.get("utr"),
                "failure_reason": data.get("failure_reason")}


# ---------------------------------------------------------------------------
# Database
# ---------------------------------------------------------------------------

@pytest.fixture(autouse=True)
def reset_circuit_breakers():
    yield
    for breaker in circuit_breakers.values():
        breaker.reset()


@pytest.fixture
def db_session():
    """Fresh schema and a session for every test"""
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.rollback()
        session.close()


# ---------------------------------------------------------------------------
# Services
# ---------------------------------------------------------------------------

@pytest.fixture
def chain():
    return FakeChainAdapter()


@pytest.fixture
def vault():
    return KeyVault()


@pytest.fixture
def provider():
    return FakeRazorpayProvider(available=True)


@pytest.fixture
def coordinator(chain, vault):
    return EscrowCoordinator(chain=chain, vault=vault)


@pytest.fixture
def order_service(coordinator):
    return OrderService(coordinator=coordinator)


@pytest.fixture
def storage(tmp_path):
    return DisputeAttachmentStorage(str(tmp_path / "proofs"))


@pytest.fixture
def dispute_service(coordinator, storage):
    return DisputeResolutionService(coordinator=coordinator, storage=storage)


@pytest.fixture
def burn_service(chain, vault):
    return TokenBurnService(chain=chain, vault=vault)


@pytest.fixture
def bank_service():
    return BankDetailService()


@pytest.fixture
def payout_service(burn_service, provider, bank_service):
    return PayoutService(burn_service=burn_service, provider=provider, bank_service=bank_service)


@pytest.fixture
def monitor(burn_service, payout_service, coordinator, storage, db_session):
    return BurnVerificationMonitor(
        burn_service=burn_service,
        payout_service=payout_service,
        coordinator=coordinator,
        storage=storage,
        session_factory=SessionLocal,
    )


# ---------------------------------------------------------------------------
# Factories
# ---------------------------------------------------------------------------

_emails = itertools.count(1)


def make_user(session, role: UserRole = UserRole.CUSTOMER, name: str = "Test User", **kwargs) -> User:
    defaults = {"is_approved": role == UserRole.VENDOR}
    defaults.update(kwargs)
    user = User(
        name=name,
        email=f"user{next(_emails)}@example.com",
        role=role.value,
        **defaults,
    )
    session.add(user)
    session.commit()
    return user


def make_product(session, vendor: User, price="100.00", quantity: int = 10, name: str = "Product",
                 track_quantity: bool = True) -> Product:
    product = Product(
        vendor_id=vendor.id,
        name=name,
        price=Decimal(str(price)),
        quantity=quantity,
        track_quantity=track_quantity,
    )
    session.add(product)
    session.commit()
    return product


def auth_headers(user: User) -> Dict[str, str]:
    return {"Authorization": f"Bearer {create_access_token(user.id, user.role)}"}


SHIPPING_ADDRESS = {"street": "1 Market Road", "city": "Pune", "country": "IN", "zipCode": "411001"}


@pytest.fixture
def customer(db_session):
    return make_user(db_session, UserRole.CUSTOMER, "Asha Buyer")


@pytest.fixture
def vendor(db_session):
    return make_user(db_session, UserRole.VENDOR, "Bala Seller", business_name="Bala Goods")


@pytest.fixture
def admin(db_session):
    return make_user(db_session, UserRole.ADMIN, "Ops Admin")


@pytest.fixture
def product(db_session, vendor):
    return make_product(db_session, vendor, price="100.00", quantity=10)


@pytest.fixture
def place_order(db_session, order_service):
    def _place(customer: User, lines, coupon_code: Optional[str] = None):
        items = [{"product": p.id, "quantity": q} for p, q in lines]
        return order_service.create_order(
            db_session, customer, items, SHIPPING_ADDRESS, None, "razorpay", coupon_code
        )
    return _place


@pytest.fixture
async def locked_order(db_session, order_service, place_order, customer, vendor, product):
    """Order confirmed by its vendor with a Locked escrow"""
    order = place_order(customer, [(product, 1)])[0]
    await order_service.update_order_status(db_session, vendor, order.id, OrderStatus.CONFIRMED.value)
    db_session.refresh(order)
    assert order.escrow_status == EscrowState.LOCKED.value
    return order


# ---------------------------------------------------------------------------
# HTTP
# ---------------------------------------------------------------------------

@pytest.fixture
def client(db_session, coordinator, order_service, dispute_service, payout_service, bank_service):
    """TestClient bound to the test session and the faked services"""
    from api_server import app

    def _db():
        yield db_session

    app.dependency_overrides[get_db] = _db
    app.dependency_overrides[get_escrow_coordinator] = lambda: coordinator
    app.dependency_overrides[get_order_service] = lambda: order_service
    app.dependency_overrides[get_dispute_resolution_service] = lambda: dispute_service
    app.dependency_overrides[get_payout_service] = lambda: payout_service
    app.dependency_overrides[get_bank_detail_service] = lambda: bank_service
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()


@pytest.fixture
def webhook_secret():
    return Config.RAZORPAY_WEBHOOK_SECRET
