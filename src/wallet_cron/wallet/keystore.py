"""Key generation helpers using eth-account."""

from __future__ import annotations

from eth_account import Account


def generate_keypair() -> tuple[str, str]:
    """Generate a new Ethereum keypair.

    Returns
    -------
    tuple[str, str]
        ``(private_key_hex, checksummed_address)``. The private key is
        ``0x``-prefixed.
    """
    acct = Account.create()
    key_hex = acct.key.hex()
    if not key_hex.startswith("0x"):
        key_hex = "0x" + key_hex
    return key_hex, acct.address


def address_from_key(private_key: str | bytes) -> str:
    """Return the checksummed address controlled by *private_key*."""
    return Account.from_key(private_key).address
