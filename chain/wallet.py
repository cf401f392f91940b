# chain/wallet.py
from __future__ import annotations

import logging
import threading

from eth_account import Account
from web3 import Web3

logger = logging.getLogger(__name__)

FALLBACK_GAS = 250_000


def make_web3(rpc_url: str, request_timeout: float = 10.0) -> Web3:
    w3 = Web3(Web3.HTTPProvider(rpc_url, request_kwargs={"timeout": request_timeout}))

    # POA chains (Avalanche, Polygon, BSC) carry extra data in block headers.
    # web3.py v7 renamed the middleware.
    try:
        from web3.middleware import ExtraDataToPOAMiddleware
        w3.middleware_onion.inject(ExtraDataToPOAMiddleware, layer=0)
    except ImportError:
        from web3.middleware import geth_poa_middleware
        w3.middleware_onion.inject(geth_poa_middleware, layer=0)

    return w3


class Signer:
    """Signs and broadcasts transactions from the gateway's own account."""

    def __init__(self, w3: Web3, private_key: str):
        self.w3 = w3
        self.account = Account.from_key(private_key)
        # Nonce read + broadcast must not interleave between worker threads.
        self._nonce_lock = threading.Lock()

    @property
    def address(self) -> str:
        return self.account.address

    def sign_and_send(self, tx: dict) -> str:
        w3 = self.w3
        tx = dict(tx)
        tx.pop("gasPrice", None)
        tx.setdefault("from", self.account.address)

        try:
            base_fee = w3.eth.get_block("latest").baseFeePerGas
            priority = w3.eth.max_priority_fee * 150 // 100
            tx["type"] = 2
            tx["maxFeePerGas"] = base_fee * 2 + priority
            tx["maxPriorityFeePerGas"] = priority
        except Exception as e:
            logger.debug("EIP-1559 fee lookup failed, using legacy gasPrice: %s", e)
            tx.pop("type", None)
            tx["gasPrice"] = w3.eth.gas_price * 120 // 100

        tx["chainId"] = w3.eth.chain_id

        with self._nonce_lock:
            tx["nonce"] = w3.eth.get_transaction_count(self.account.address, "pending")

            if "gas" not in tx:
                try:
                    tx["gas"] = w3.eth.estimate_gas(tx) * 120 // 100
                except Exception as e:
                    logger.warning("Gas estimation failed, using %d: %s", FALLBACK_GAS, e)
                    tx["gas"] = FALLBACK_GAS

            signed = self.account.sign_transaction(tx)
            tx_hash = w3.eth.send_raw_transaction(signed.raw_transaction)

        return Web3.to_hex(tx_hash)
