# chain/abi.py
"""
Registry contract interface.

The deployed ABI is loaded from CONTRACT_ABI_PATH at startup (config.load_abi).
REGISTRY_ABI below is the minimal surface the gateway relies on and is used
by tests and by tooling that has no artifact at hand.
"""
from __future__ import annotations

from typing import Any, Dict, List, Optional

VERIFY_ONE = "verifyUser"
REVOKE_ONE = "revokeUser"
VERIFY_MANY = "verifyUsers"
REVOKE_MANY = "revokeUsers"
IS_VERIFIED = "isVerified"

ZERO_ADDRESS = "0x0000000000000000000000000000000000000000"


def _fn(name: str, inputs: List[Dict[str, str]], outputs=None, mutability="nonpayable"):
    return {
        "type": "function",
        "name": name,
        "inputs": inputs,
        "outputs": outputs or [],
        "stateMutability": mutability,
    }


REGISTRY_ABI: List[Dict[str, Any]] = [
    _fn(VERIFY_ONE, [{"name": "user", "type": "address"}]),
    _fn(REVOKE_ONE, [{"name": "user", "type": "address"}]),
    _fn(VERIFY_MANY, [{"name": "users", "type": "address[]"}]),
    _fn(REVOKE_MANY, [{"name": "users", "type": "address[]"}]),
    _fn(
        IS_VERIFIED,
        [{"name": "user", "type": "address"}],
        [{"name": "", "type": "bool"}],
        "view",
    ),
]


def find_function(abi: List[Dict[str, Any]], name: str) -> Optional[Dict[str, Any]]:
    for entry in abi:
        if entry.get("type", "function") == "function" and entry.get("name") == name:
            return entry
    return None


def has_function(abi: List[Dict[str, Any]], name: str) -> bool:
    return find_function(abi, name) is not None
