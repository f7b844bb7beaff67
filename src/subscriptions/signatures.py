"""Wallet address and personal-message signature checks."""

from typing import Optional

from eth_account import Account
from eth_account.messages import encode_defunct
from eth_utils import is_address


def is_valid_address(value) -> bool:
    """Check that value is a well-formed 20-byte hex address.

    Mixed-case addresses must carry a valid EIP-55 checksum; all-lowercase and
    all-uppercase addresses are accepted as is.
    """
    return isinstance(value, str) and is_address(value)


def recover_signer(message: str, signature: str) -> Optional[str]:
    """Recover the address that signed a personal message (EIP-191).

    Args:
        message: The plain-text message that was signed.
        signature: Hex-encoded 65-byte signature.

    Returns:
        Checksummed signer address, or None if the signature cannot be recovered.
    """
    try:
        return Account.recover_message(encode_defunct(text=message), signature=signature)
    except Exception:
        return None


def verify_message_signature(message: str, signature: str, address: str) -> bool:
    """Return True if signature over message was produced by address."""
    recovered = recover_signer(message, signature)
    if recovered is None:
        return False
    return recovered.lower() == address.lower()
