"""Utility functions"""

import importlib
from typing import Any, Union

import base58
from solders.pubkey import Pubkey


def validate_solana_address(address: str) -> bool:
    """
    Validate Solana address

    Args:
        address: Base58-encoded Solana address

    Returns:
        True if valid
    """
    try:
        decoded = base58.b58decode(address)
    except ValueError:
        return False
    return len(decoded) == 32


def parse_pubkey(address: Union[str, Pubkey]) -> Pubkey:
    """
    Parse a base58 address into a Pubkey

    Raises:
        ValueError: address is not a valid Solana address
    """
    if isinstance(address, Pubkey):
        return address
    if not validate_solana_address(address):
        raise ValueError(f"Invalid Solana address: {address}")
    return Pubkey.from_string(address)


def load_object(path: str) -> Any:
    """
    Import ``module:attribute``

    Used to plug in a crypto engine binding by name.
    """
    module_name, _, attribute = path.partition(":")
    if not module_name or not attribute:
        raise ValueError(f"Expected 'module:attribute', got {path!r}")
    module = importlib.import_module(module_name)
    return getattr(module, attribute)
