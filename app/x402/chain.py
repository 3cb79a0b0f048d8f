# app/x402/chain.py
"""
Chain access for local verification.

ChainClient talks plain JSON-RPC to the configured endpoint (token balance
reads, contract code, read-only calls). The signature helpers are pure and
use eth_account for EIP-712 and EIP-191 recovery.
"""
import logging
from typing import Any, Dict, List, Optional

import requests
from eth_account import Account
from eth_account.messages import defunct_hash_message, encode_defunct, encode_typed_data
from web3 import Web3

logger = logging.getLogger(__name__)

# balanceOf(address)
BALANCE_OF_SELECTOR = "0x70a08231"

TRANSFER_WITH_AUTHORIZATION_TYPES = {
    "EIP712Domain": [
        {"name": "name", "type": "string"},
        {"name": "version", "type": "string"},
        {"name": "chainId", "type": "uint256"},
        {"name": "verifyingContract", "type": "address"},
    ],
    "TransferWithAuthorization": [
        {"name": "from", "type": "address"},
        {"name": "to", "type": "address"},
        {"name": "value", "type": "uint256"},
        {"name": "validAfter", "type": "uint256"},
        {"name": "validBefore", "type": "uint256"},
        {"name": "nonce", "type": "bytes32"},
    ],
}


class ChainRPCError(Exception):
    """JSON-RPC call failed or returned an error object."""


class ChainClient:
    """Minimal JSON-RPC client, shared across requests."""

    def __init__(self, rpc_url: str, timeout: float = 10.0, session: Optional[requests.Session] = None):
        self.rpc_url = rpc_url
        self.timeout = timeout
        self._session = session or requests.Session()

    def _rpc(self, method: str, params: List[Any]) -> Any:
        response = self._session.post(
            self.rpc_url,
            json={
                "jsonrpc": "2.0",
                "method": method,
                "params": params,
                "id": 1
            },
            timeout=self.timeout
        )
        response.raise_for_status()

        result = response.json()
        if "error" in result:
            raise ChainRPCError(f"RPC error: {result['error']}")

        if "result" not in result:
            raise ChainRPCError("Invalid RPC response: missing 'result' field")

        return result["result"]

    def call(self, to: str, data: str) -> str:
        """eth_call against the latest block; returns the hex result."""
        return self._rpc("eth_call", [{"to": to, "data": data}, "latest"])

    def get_code(self, address: str) -> str:
        return self._rpc("eth_getCode", [address, "latest"])

    def read_balance(self, token_address: str, account: str) -> int:
        """ERC-20 balanceOf(account) in token minor units."""
        padded = account.lower().replace("0x", "").rjust(64, "0")
        result = self.call(token_address, BALANCE_OF_SELECTOR + padded)
        # Empty result means no contract at token_address
        if result in (None, "0x", ""):
            raise ChainRPCError(f"No balanceOf result from token {token_address}")
        return int(result, 16)


def build_transfer_authorization(
    *,
    signer: str,
    recipient: str,
    value: int,
    valid_after: int,
    valid_before: int,
    nonce: str,
    token_name: str,
    token_version: str,
    chain_id: int,
    verifying_contract: str,
) -> Dict[str, Any]:
    """EIP-712 typed data for an ERC-3009 TransferWithAuthorization."""
    return {
        "types": TRANSFER_WITH_AUTHORIZATION_TYPES,
        "primaryType": "TransferWithAuthorization",
        "domain": {
            "name": token_name,
            "version": token_version,
            "chainId": chain_id,
            "verifyingContract": Web3.to_checksum_address(verifying_contract),
        },
        "message": {
            "from": Web3.to_checksum_address(signer),
            "to": Web3.to_checksum_address(recipient),
            "value": value,
            "validAfter": valid_after,
            "validBefore": valid_before,
            "nonce": bytes.fromhex(nonce[2:] if nonce.startswith("0x") else nonce),
        },
    }


def same_address(a: Optional[str], b: Optional[str]) -> bool:
    return bool(a) and bool(b) and a.lower() == b.lower()


def verify_typed_data_signature(typed_data: Dict[str, Any], signature: str, expected_signer: str) -> bool:
    """True when ``signature`` over ``typed_data`` recovers to ``expected_signer``."""
    try:
        signable = encode_typed_data(full_message=typed_data)
        recovered = Account.recover_message(signable, signature=signature)
    except Exception as e:
        logger.warning(f"Typed-data signature recovery failed: {e}")
        return False
    return same_address(recovered, expected_signer)


def verify_message_signature(message: str, signature: str, expected_signer: str) -> bool:
    """EIP-191 personal_sign recovery for an EOA."""
    try:
        recovered = Account.recover_message(encode_defunct(text=message), signature=signature)
    except Exception as e:
        logger.warning(f"Message signature recovery failed: {e}")
        return False
    return same_address(recovered, expected_signer)


def hash_personal_message(message: str) -> bytes:
    """EIP-191 hash of ``message`` (what a wallet signs for personal_sign)."""
    return bytes(defunct_hash_message(text=message))
