"""
Contract ABIs for the escrow factory, escrow, token and burner contracts.

Compiled artifacts under ``CONTRACT_ARTIFACTS_DIR`` take precedence; the minimal
ABIs below cover every function and event the core calls.
"""

import json
import logging
import os
from typing import Any, Dict, List

from config import Config

logger = logging.getLogger(__name__)


def _fn(name: str, inputs: List[tuple] = (), outputs: List[str] = (), mutability: str = "nonpayable") -> Dict[str, Any]:
    return {
        "type": "function",
        "name": name,
        "inputs": [{"name": n, "type": t} for n, t in inputs],
        "outputs": [{"name": "", "type": t} for t in outputs],
        "stateMutability": mutability,
    }


def _event(name: str, inputs: List[tuple]) -> Dict[str, Any]:
    return {
        "type": "event",
        "name": name,
        "anonymous": False,
        "inputs": [{"name": n, "type": t, "indexed": indexed} for n, t, indexed in inputs],
    }


ESCROW_FACTORY_ABI = [
    _fn("createEscrow", [("buyer", "address"), ("seller", "address"), ("arbitrator", "address"), ("amount", "uint256")], ["address"]),
    _fn("owner", outputs=["address"], mutability="view"),
    _event("NewEscrowCreated", [
        ("escrowContractAddress", "address", False),
        ("buyer", "address", False),
        ("seller", "address", False),
        ("arbitrator", "address", False),
        ("amount", "uint256", False),
    ]),
]

ESCROW_ABI = [
    _fn("confirmDelivery"),
    _fn("releaseFunds"),
    _fn("raiseDispute"),
    _fn("resolveDispute", [("winner", "address")]),
    _fn("claimFundsAfterTimeout"),
    _fn("buyer", outputs=["address"], mutability="view"),
    _fn("seller", outputs=["address"], mutability="view"),
    _fn("arbitrator", outputs=["address"], mutability="view"),
    _fn("amount", outputs=["uint256"], mutability="view"),
    _fn("currentState", outputs=["uint8"], mutability="view"),
    _fn("buyerConfirmedDelivery", outputs=["bool"], mutability="view"),
    _fn("getBalance", outputs=["uint256"], mutability="view"),
    _fn("creationTimestamp", outputs=["uint256"], mutability="view"),
    _event("DeliveryConfirmed", [("buyer", "address", False)]),
    _event("FundsReleased", [("seller", "address", False), ("amount", "uint256", False)]),
    _event("DisputeRaised", [("by", "address", False)]),
    _event("DisputeResolved", [("arbitrator", "address", False), ("winner", "address", False), ("amount", "uint256", False)]),
]

TOKEN_ABI = [
    _fn("balanceOf", [("account", "address")], ["uint256"], "view"),
    _fn("allowance", [("owner", "address"), ("spender", "address")], ["uint256"], "view"),
    _fn("approve", [("spender", "address"), ("amount", "uint256")], ["bool"]),
    _event("Transfer", [("from", "address", True), ("to", "address", True), ("value", "uint256", False)]),
]

BURNER_ABI = [
    _fn("burnTokens", [("amount", "uint256")]),
    _event("TokensBurned", [
        ("user", "address", True),
        ("amount", "uint256", False),
        ("burnId", "uint256", True),
        ("timestamp", "uint256", False),
    ]),
]

# Artifact file names produced by the contract build
ARTIFACT_NAMES = {
    "EscrowFactory": ESCROW_FACTORY_ABI,
    "Escrow": ESCROW_ABI,
    "KooshCoin": TOKEN_ABI,
    "KooshBurner": BURNER_ABI,
}


def load_abi(name: str) -> List[Dict[str, Any]]:
    """ABI from ``<CONTRACT_ARTIFACTS_DIR>/<name>.json`` when present, else the bundled one"""
    fallback = ARTIFACT_NAMES[name]
    directory = Config.CONTRACT_ARTIFACTS_DIR
    if not directory:
        return fallback

    path = os.path.join(directory, f"{name}.json")
    if not os.path.exists(path):
        logger.debug(f"Artifact {path} not found, using bundled {name} ABI")
        return fallback

    with open(path, "r", encoding="utf-8") as handle:
        artifact = json.load(handle)
    abi = artifact.get("abi") if isinstance(artifact, dict) else artifact
    if not abi:
        logger.warning(f"⚠️ Artifact {path} has no ABI, using bundled {name} ABI")
        return fallback
    logger.info(f"📦 Loaded {name} ABI from {path}")
    return abi
