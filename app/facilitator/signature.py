# app/facilitator/signature.py
"""
Signed-message verification for the facilitator's legacy /verify body.

65-byte signatures are EOA personal_sign signatures and are checked by
address recovery. Longer signatures must be ERC-6492 wrapped:

    abi.encode(address factory, bytes factoryCalldata, bytes signature) ++ MAGIC

The inner signature is then validated by the wallet contract itself via
ERC-1271 ``isValidSignature(bytes32 hash, bytes signature)``.
"""
import logging
from typing import Optional

import requests
from eth_abi import decode as abi_decode, encode as abi_encode
from eth_abi.exceptions import DecodingError, EncodingError
from web3 import Web3

from app.x402.chain import ChainClient, ChainRPCError, hash_personal_message, verify_message_signature

logger = logging.getLogger(__name__)

ERC6492_MAGIC_SUFFIX = "6492" * 16
ERC1271_MAGIC_VALUE = "0x1626ba7e"
# isValidSignature(bytes32,bytes)
IS_VALID_SIGNATURE_SELECTOR = "0x1626ba7e"
EOA_SIGNATURE_LENGTH = 65


def _strip_hex(value: str) -> str:
    return value[2:] if value.lower().startswith("0x") else value


def is_erc6492_signature(signature: str) -> bool:
    return _strip_hex(signature).lower().endswith(ERC6492_MAGIC_SUFFIX)


def unwrap_erc6492_signature(signature: str):
    """
    Split an ERC-6492 wrapper into (factory, factory_calldata, inner_signature).

    Raises:
        ValueError: If the signature is not a decodable ERC-6492 wrapper
    """
    body = _strip_hex(signature)
    if not body.lower().endswith(ERC6492_MAGIC_SUFFIX):
        raise ValueError("Signature does not carry the ERC-6492 magic suffix")
    wrapped = bytes.fromhex(body[: -len(ERC6492_MAGIC_SUFFIX)])
    factory, factory_calldata, inner = abi_decode(["address", "bytes", "bytes"], wrapped)
    return factory, factory_calldata, inner


def verify_erc1271_signature(chain: ChainClient, address: str, message_hash: bytes, signature: bytes) -> bool:
    """Ask the wallet contract at ``address`` whether ``signature`` is valid."""
    code = chain.get_code(address)
    if code in (None, "", "0x"):
        # Counterfactual wallets would need the factory deployment simulated first
        logger.warning(f"No contract code at {address}; cannot validate ERC-6492 signature")
        return False

    call_data = IS_VALID_SIGNATURE_SELECTOR + abi_encode(["bytes32", "bytes"], [message_hash, signature]).hex()
    result = chain.call(address, call_data)
    return _strip_hex(result or "")[:8].lower() == _strip_hex(ERC1271_MAGIC_VALUE)


def verify_signature(address: str, message: str, signature: str, chain: Optional[ChainClient] = None) -> bool:
    """
    Verify ``signature`` over ``message`` for ``address``.

    Returns False instead of raising for any malformed input.
    """
    if not Web3.is_address(address):
        return False

    try:
        body = _strip_hex(signature)
        signature_length = len(body) // 2

        if signature_length <= EOA_SIGNATURE_LENGTH:
            return verify_message_signature(message, signature, address)

        if not is_erc6492_signature(signature):
            logger.info(f"Rejecting {signature_length}-byte signature without ERC-6492 suffix")
            return False

        if chain is None:
            logger.warning("BASE_RPC_URL not configured - cannot verify ERC-6492 signature")
            return False

        factory, _, inner = unwrap_erc6492_signature(signature)
        logger.info(f"Verifying ERC-6492 signature for {address} (factory {factory})")
        return verify_erc1271_signature(
            chain,
            Web3.to_checksum_address(address),
            hash_personal_message(message),
            inner,
        )
    except (ValueError, DecodingError, EncodingError, ChainRPCError, requests.RequestException) as e:
        logger.warning(f"Signature verification error for {address}: {e}")
        return False
