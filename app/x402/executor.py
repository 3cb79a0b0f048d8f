# app/x402/executor.py
"""
On-chain settlement executor.

Submits ERC-3009 transferWithAuthorization from a server-held wallet that
pays gas. The token contract checks the signature and marks the nonce as
used, so the same authorization can never move funds twice.
"""
import logging
from typing import Tuple

from eth_account import Account
from web3 import Web3

logger = logging.getLogger(__name__)

TRANSFER_WITH_AUTHORIZATION_ABI = [
    {
        "inputs": [
            {"name": "from", "type": "address"},
            {"name": "to", "type": "address"},
            {"name": "value", "type": "uint256"},
            {"name": "validAfter", "type": "uint256"},
            {"name": "validBefore", "type": "uint256"},
            {"name": "nonce", "type": "bytes32"},
            {"name": "v", "type": "uint8"},
            {"name": "r", "type": "bytes32"},
            {"name": "s", "type": "bytes32"}
        ],
        "name": "transferWithAuthorization",
        "outputs": [],
        "stateMutability": "nonpayable",
        "type": "function"
    },
]

DEFAULT_GAS_LIMIT = 120000
RECEIPT_TIMEOUT_SECONDS = 60


class SettlementExecutionError(Exception):
    """The settlement transaction could not be sent or was reverted."""


class SettlementReverted(SettlementExecutionError):
    """The settlement transaction was mined with a failed status."""


def split_signature(signature: str) -> Tuple[int, bytes, bytes]:
    """Split a 65-byte signature into (v, r, s)."""
    sig_bytes = bytes.fromhex(signature[2:] if signature.startswith("0x") else signature)
    if len(sig_bytes) != 65:
        raise SettlementExecutionError(f"Invalid signature length: {len(sig_bytes)} bytes")
    r = sig_bytes[:32]
    s = sig_bytes[32:64]
    v = sig_bytes[64]
    # Some signers use 0/1, the contract expects 27/28
    if v < 27:
        v += 27
    return v, r, s


class TransferWithAuthorizationExecutor:

    def __init__(self, rpc_url: str, private_key: str, chain_id: int, timeout: float = 10.0):
        self.w3 = Web3(Web3.HTTPProvider(rpc_url, request_kwargs={"timeout": timeout}))
        if not private_key.startswith("0x"):
            private_key = "0x" + private_key
        self.account = Account.from_key(private_key)
        self.chain_id = chain_id

    def transfer_with_authorization(
        self,
        *,
        token_address: str,
        signer: str,
        recipient: str,
        value: int,
        valid_after: int,
        valid_before: int,
        nonce: str,
        signature: str,
    ) -> str:
        """
        Send the transfer and wait for its receipt.

        Returns:
            The transaction hash, 0x-prefixed

        Raises:
            SettlementReverted: If the transaction reverts
        """
        v, r, s = split_signature(signature)
        contract = self.w3.eth.contract(
            address=Web3.to_checksum_address(token_address),
            abi=TRANSFER_WITH_AUTHORIZATION_ABI
        )

        tx = contract.functions.transferWithAuthorization(
            Web3.to_checksum_address(signer),
            Web3.to_checksum_address(recipient),
            value,
            valid_after,
            valid_before,
            bytes.fromhex(nonce[2:]),
            v,
            r,
            s
        ).build_transaction({
            'from': self.account.address,
            'gas': DEFAULT_GAS_LIMIT,
            'gasPrice': self.w3.eth.gas_price,
            'nonce': self.w3.eth.get_transaction_count(self.account.address),
            'chainId': self.chain_id
        })

        signed_tx = self.account.sign_transaction(tx)
        tx_hash = self.w3.eth.send_raw_transaction(signed_tx.raw_transaction)
        receipt = self.w3.eth.wait_for_transaction_receipt(tx_hash, timeout=RECEIPT_TIMEOUT_SECONDS)

        tx_ref = Web3.to_hex(tx_hash)
        if receipt['status'] != 1:
            raise SettlementReverted(f"Settlement transaction {tx_ref} reverted")

        logger.info(f"Settled transferWithAuthorization in tx {tx_ref} (block {receipt['blockNumber']})")
        return tx_ref
