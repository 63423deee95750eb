"""
Chain adapter tests: configuration gating, RPC error mapping and event decoding
"""

import pytest
import requests
from eth_abi import encode as abi_encode
from web3.exceptions import ContractLogicError

from services.chain_adapter import ChainAdapter, ESCROW_STATE_CODES, to_hex
from services.token_burn_service import BURN_EVENT
from models import EscrowState
from utils.exception_handler import ChainUnavailableError, EventDecodeError, InvalidStateError

BURNER = "0x9fe46736679d2d9a65f0992f25272de9f3c7fa6e"
USER = "0x70997970c51812dc3a010c7d01b50e0d17dc79c8"


@pytest.fixture
def adapter():
    adapter = ChainAdapter(rpc_url="", admin_private_key="")
    adapter._breaker.reset()
    yield adapter
    adapter._breaker.reset()


def _burn_receipt(amount_wei: int, address: str = BURNER):
    return {
        "status": 1,
        "blockNumber": 42,
        "logs": [
            {"address": "0x" + "12" * 20, "topics": ["0x" + "00" * 32], "data": "0x"},
            {
                "address": address,
                "topics": [
                    ChainAdapter.event_signature(BURN_EVENT),
                    "0x" + "0" * 24 + USER[2:],
                    "0x" + format(7, "064x"),
                ],
                "data": to_hex(abi_encode(["uint256", "uint256"], [amount_wei, 1700000000])),
            },
        ],
    }


class TestConfiguration:
    """An adapter without RPC settings reports unavailable instead of failing at import"""

    def test_initialize_without_rpc_returns_false(self, adapter):
        assert adapter.initialize() is False
        assert adapter.is_initialized is False

    def test_reads_raise_chain_unavailable(self, adapter):
        with pytest.raises(ChainUnavailableError):
            adapter.factory_contract()

    @pytest.mark.asyncio
    async def test_receipt_lookup_raises_chain_unavailable(self, adapter):
        with pytest.raises(ChainUnavailableError):
            await adapter.get_receipt("0x" + "ab" * 32)

    def test_escrow_state_codes_follow_contract_enum(self):
        assert [ESCROW_STATE_CODES[i] for i in range(5)] == [
            EscrowState.LOCKED, EscrowState.RELEASE_PENDING, EscrowState.DISPUTED,
            EscrowState.COMPLETE, EscrowState.REFUNDED,
        ]


class TestRpcErrorMapping:
    """Blocking calls are mapped onto the marketplace error kinds"""

    @pytest.mark.asyncio
    async def test_contract_revert_maps_to_invalid_state(self, adapter):
        def _call():
            raise ContractLogicError("execution reverted: not buyer")

        with pytest.raises(InvalidStateError):
            await adapter._rpc(_call)

    @pytest.mark.asyncio
    async def test_network_error_maps_to_chain_unavailable(self, adapter):
        def _call():
            raise requests.exceptions.ConnectionError("connection refused")

        with pytest.raises(ChainUnavailableError):
            await adapter._rpc(_call)

    @pytest.mark.asyncio
    async def test_successful_call_returns_value(self, adapter):
        assert await adapter._rpc(lambda: 7) == 7


class TestEventDecoding:
    """Logs are located by emitting address and topic0"""

    def test_to_hex_normalizes_inputs(self):
        assert to_hex("0xABCD") == "0xabcd"
        assert to_hex("abcd") == "0xabcd"
        assert to_hex(b"\x01\x02") == "0x0102"

    def test_event_signature_is_lowercase_keccak(self):
        signature = ChainAdapter.event_signature("Transfer(address,address,uint256)")

        assert signature == "0xddf252ad1be2c89b69c2b068fc378daa952ba7f163c4a11628f55a4df523b3ef"

    def test_find_log_matches_address_and_topic(self):
        receipt = _burn_receipt(25 * 10 ** 18)
        log = ChainAdapter.find_log(receipt, BURNER.upper().replace("0X", "0x"), ChainAdapter.event_signature(BURN_EVENT))

        assert log is not None
        assert log["topics"][1][-40:] == USER[2:]

    def test_find_log_ignores_other_emitters(self):
        receipt = _burn_receipt(25 * 10 ** 18, address="0x" + "34" * 20)

        assert ChainAdapter.find_log(receipt, BURNER, ChainAdapter.event_signature(BURN_EVENT)) is None

    def test_decode_event_reads_amount_and_timestamp(self, adapter):
        receipt = _burn_receipt(25 * 10 ** 18)
        event = adapter.decode_event(
            receipt, BURNER, ChainAdapter.event_signature(BURN_EVENT), ("uint256", "uint256")
        )

        assert event["data"] == [25 * 10 ** 18, 1700000000]

    def test_decode_event_missing_log(self, adapter):
        with pytest.raises(EventDecodeError):
            adapter.decode_event({"logs": []}, BURNER, ChainAdapter.event_signature(BURN_EVENT), ("uint256",))

    def test_decode_event_malformed_data(self, adapter):
        receipt = _burn_receipt(1)
        receipt["logs"][1]["data"] = "0x1234"

        with pytest.raises(EventDecodeError):
            adapter.decode_event(
                receipt, BURNER, ChainAdapter.event_signature(BURN_EVENT), ("uint256", "uint256")
            )
