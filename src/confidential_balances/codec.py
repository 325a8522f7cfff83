"""
Balance codec

Decodes Token-2022 accounts carrying the confidential transfer extension
and turns their ciphertexts into plaintext balances (and back).

Account layout:
    base token account (165 bytes) | account type (1) | TLV extensions
where each extension is ``type: u16 | length: u16 | value``.
"""

import logging
import struct
from typing import Optional

from construct import Bytes, Flag, Int64ul, Struct
from solders.pubkey import Pubkey
from spl.token._layouts import ACCOUNT_LAYOUT, MINT_LAYOUT

from .crypto import CryptoEngine, decrypt_asym, decrypt_sym
from .errors import ConsistencyError, MalformedAccountError
from .types import (
    AvailableEncoding,
    BalanceBreakdown,
    ConfidentialAccountState,
    EncryptionKeyMaterial,
    MintConfidentialConfig,
    PendingSplit,
)

logger = logging.getLogger(__name__)

BASE_ACCOUNT_SIZE = ACCOUNT_LAYOUT.sizeof()
BASE_MINT_SIZE = MINT_LAYOUT.sizeof()
ACCOUNT_TYPE_OFFSET = BASE_ACCOUNT_SIZE
TLV_START = ACCOUNT_TYPE_OFFSET + 1
TLV_HEADER = struct.Struct("<HH")

ACCOUNT_TYPE_MINT = 1
ACCOUNT_TYPE_ACCOUNT = 2

EXTENSION_UNINITIALIZED = 0
EXTENSION_CONFIDENTIAL_TRANSFER_MINT = 4
EXTENSION_CONFIDENTIAL_TRANSFER_ACCOUNT = 5

ACCOUNT_STATE_INITIALIZED = 1

CONFIDENTIAL_TRANSFER_ACCOUNT_LAYOUT = Struct(
    "approved" / Flag,
    "elgamal_pubkey" / Bytes(32),
    "pending_balance_lo" / Bytes(64),
    "pending_balance_hi" / Bytes(64),
    "available_balance" / Bytes(64),
    "decryptable_available_balance" / Bytes(36),
    "allow_confidential_credits" / Flag,
    "allow_non_confidential_credits" / Flag,
    "pending_balance_credit_counter" / Int64ul,
    "maximum_pending_balance_credit_counter" / Int64ul,
    "expected_pending_balance_credit_counter" / Int64ul,
    "actual_pending_balance_credit_counter" / Int64ul,
)

CONFIDENTIAL_TRANSFER_MINT_LAYOUT = Struct(
    "authority" / Bytes(32),
    "auto_approve_new_accounts" / Flag,
    "auditor_elgamal_pubkey" / Bytes(32),
)

CONFIDENTIAL_TRANSFER_ACCOUNT_SIZE = CONFIDENTIAL_TRANSFER_ACCOUNT_LAYOUT.sizeof()
CONFIDENTIAL_TRANSFER_MINT_SIZE = CONFIDENTIAL_TRANSFER_MINT_LAYOUT.sizeof()

# Mint padded to the account size, account type, one TLV entry
CONFIDENTIAL_MINT_SIZE = TLV_START + TLV_HEADER.size + CONFIDENTIAL_TRANSFER_MINT_SIZE


def _extensions(raw: bytes, expected_type: int) -> dict[int, tuple[int, int]]:
    """Map extension type to (value offset, length)"""
    if len(raw) <= ACCOUNT_TYPE_OFFSET:
        return {}
    if raw[ACCOUNT_TYPE_OFFSET] != expected_type:
        raise MalformedAccountError(
            f"Unexpected account type {raw[ACCOUNT_TYPE_OFFSET]}, wanted {expected_type}"
        )
    found = {}
    offset = TLV_START
    while offset + TLV_HEADER.size <= len(raw):
        ext_type, length = TLV_HEADER.unpack_from(raw, offset)
        if ext_type == EXTENSION_UNINITIALIZED:
            break
        start = offset + TLV_HEADER.size
        if start + length > len(raw):
            raise MalformedAccountError(f"Extension {ext_type} is truncated")
        found[ext_type] = (start, length)
        offset = start + length
    return found


def _optional_key(value: bytes) -> Optional[bytes]:
    return None if value == bytes(len(value)) else value


def decode(address: Pubkey, raw: bytes) -> ConfidentialAccountState:
    """
    Decode a token account

    An account without the confidential transfer extension decodes with
    ``configured=False``.

    Raises:
        MalformedAccountError: base account or an extension is truncated
    """
    if len(raw) < BASE_ACCOUNT_SIZE:
        raise MalformedAccountError(
            f"Token account {address} is {len(raw)} bytes, need {BASE_ACCOUNT_SIZE}"
        )
    base = ACCOUNT_LAYOUT.parse(raw[:BASE_ACCOUNT_SIZE])
    state = ConfidentialAccountState(
        address=address,
        owner_authority=Pubkey(base.owner),
        mint=Pubkey(base.mint),
        public_balance=base.amount,
    )

    extensions = _extensions(raw, ACCOUNT_TYPE_ACCOUNT)
    if EXTENSION_CONFIDENTIAL_TRANSFER_ACCOUNT not in extensions:
        return state
    start, length = extensions[EXTENSION_CONFIDENTIAL_TRANSFER_ACCOUNT]
    if length < CONFIDENTIAL_TRANSFER_ACCOUNT_SIZE:
        raise MalformedAccountError(
            f"Confidential transfer extension of {address} is truncated"
        )
    ext = CONFIDENTIAL_TRANSFER_ACCOUNT_LAYOUT.parse(
        raw[start : start + CONFIDENTIAL_TRANSFER_ACCOUNT_SIZE]
    )
    return state.evolve(
        configured=True,
        approved=ext.approved,
        elgamal_pubkey=ext.elgamal_pubkey,
        pending_balance_lo=ext.pending_balance_lo,
        pending_balance_hi=ext.pending_balance_hi,
        available_balance=ext.available_balance,
        decryptable_available_balance=ext.decryptable_available_balance,
        allow_confidential_credits=ext.allow_confidential_credits,
        allow_non_confidential_credits=ext.allow_non_confidential_credits,
        pending_balance_credit_counter=ext.pending_balance_credit_counter,
        maximum_pending_balance_credit_counter=ext.maximum_pending_balance_credit_counter,
        expected_pending_balance_credit_counter=ext.expected_pending_balance_credit_counter,
        actual_pending_balance_credit_counter=ext.actual_pending_balance_credit_counter,
    )


def encode_extension(state: ConfidentialAccountState) -> bytes:
    """Serialize the confidential transfer extension value of ``state``"""
    return CONFIDENTIAL_TRANSFER_ACCOUNT_LAYOUT.build(
        {
            "approved": state.approved,
            "elgamal_pubkey": state.elgamal_pubkey or bytes(32),
            "pending_balance_lo": state.pending_balance_lo,
            "pending_balance_hi": state.pending_balance_hi,
            "available_balance": state.available_balance,
            "decryptable_available_balance": state.decryptable_available_balance,
            "allow_confidential_credits": state.allow_confidential_credits,
            "allow_non_confidential_credits": state.allow_non_confidential_credits,
            "pending_balance_credit_counter": state.pending_balance_credit_counter,
            "maximum_pending_balance_credit_counter": (
                state.maximum_pending_balance_credit_counter
            ),
            "expected_pending_balance_credit_counter": (
                state.expected_pending_balance_credit_counter
            ),
            "actual_pending_balance_credit_counter": (
                state.actual_pending_balance_credit_counter
            ),
        }
    )


def encode(state: ConfidentialAccountState, raw: Optional[bytes] = None) -> bytes:
    """
    Serialize ``state`` into account bytes

    When ``raw`` is given its other fields and extensions are preserved and
    only the public amount and the confidential extension are rewritten.
    """
    if raw is None:
        raw = ACCOUNT_LAYOUT.build(
            {
                "mint": bytes(state.mint),
                "owner": bytes(state.owner_authority),
                "amount": state.public_balance,
                "delegate_option": 0,
                "delegate": bytes(32),
                "state": ACCOUNT_STATE_INITIALIZED,
                "is_native_option": 0,
                "is_native": 0,
                "delegated_amount": 0,
                "close_authority_option": 0,
                "close_authority": bytes(32),
            }
        )
    data = bytearray(raw)
    struct.pack_into("<Q", data, 64, state.public_balance)
    if not state.configured:
        return bytes(data)

    if len(data) == BASE_ACCOUNT_SIZE:
        data.append(ACCOUNT_TYPE_ACCOUNT)
    value = encode_extension(state)
    extensions = _extensions(bytes(data), ACCOUNT_TYPE_ACCOUNT)
    if EXTENSION_CONFIDENTIAL_TRANSFER_ACCOUNT in extensions:
        start, _ = extensions[EXTENSION_CONFIDENTIAL_TRANSFER_ACCOUNT]
        data[start : start + len(value)] = value
    else:
        end = max((s + n for s, n in extensions.values()), default=TLV_START)
        entry = (
            TLV_HEADER.pack(EXTENSION_CONFIDENTIAL_TRANSFER_ACCOUNT, len(value)) + value
        )
        data[end : end + len(entry)] = entry
    return bytes(data)


def decode_mint(address: Pubkey, raw: bytes) -> MintConfidentialConfig:
    """
    Decode a Token-2022 mint and its confidential transfer configuration

    Raises:
        MalformedAccountError: mint is truncated or lacks the extension
    """
    if len(raw) < BASE_MINT_SIZE:
        raise MalformedAccountError(f"Mint {address} is truncated")
    base = MINT_LAYOUT.parse(raw[:BASE_MINT_SIZE])
    extensions = _extensions(raw, ACCOUNT_TYPE_MINT)
    if EXTENSION_CONFIDENTIAL_TRANSFER_MINT not in extensions:
        raise MalformedAccountError(
            f"Mint {address} has no confidential transfer extension"
        )
    start, length = extensions[EXTENSION_CONFIDENTIAL_TRANSFER_MINT]
    if length < CONFIDENTIAL_TRANSFER_MINT_SIZE:
        raise MalformedAccountError(
            f"Confidential transfer extension of mint {address} is truncated"
        )
    ext = CONFIDENTIAL_TRANSFER_MINT_LAYOUT.parse(
        raw[start : start + CONFIDENTIAL_TRANSFER_MINT_SIZE]
    )
    authority = _optional_key(ext.authority)
    return MintConfidentialConfig(
        address=address,
        decimals=base.decimals,
        authority=Pubkey(authority) if authority else None,
        auto_approve_new_accounts=ext.auto_approve_new_accounts,
        auditor_elgamal_pubkey=_optional_key(ext.auditor_elgamal_pubkey),
    )


def encode_mint(
    config: MintConfidentialConfig,
    supply: int = 0,
    mint_authority: Optional[Pubkey] = None,
) -> bytes:
    """Serialize a mint carrying the confidential transfer extension"""
    base = MINT_LAYOUT.build(
        {
            "mint_authority_option": 1 if mint_authority else 0,
            "mint_authority": bytes(mint_authority) if mint_authority else bytes(32),
            "supply": supply,
            "decimals": config.decimals,
            "is_initialized": True,
            "freeze_authority_option": 0,
            "freeze_authority": bytes(32),
        }
    )
    value = CONFIDENTIAL_TRANSFER_MINT_LAYOUT.build(
        {
            "authority": bytes(config.authority) if config.authority else bytes(32),
            "auto_approve_new_accounts": config.auto_approve_new_accounts,
            "auditor_elgamal_pubkey": config.auditor_elgamal_pubkey or bytes(32),
        }
    )
    padding = bytes(BASE_ACCOUNT_SIZE - len(base))
    return (
        base
        + padding
        + bytes([ACCOUNT_TYPE_MINT])
        + TLV_HEADER.pack(EXTENSION_CONFIDENTIAL_TRANSFER_MINT, len(value))
        + value
    )


def require_configured(state: ConfidentialAccountState) -> None:
    """Raise MalformedAccountError unless the extension is present"""
    if not state.configured:
        raise MalformedAccountError(
            f"Account {state.address} has no confidential transfer extension"
        )


def decrypt_pending(
    state: ConfidentialAccountState,
    keys: EncryptionKeyMaterial,
    engine: CryptoEngine,
) -> int:
    """Decrypt and combine the pending balance halves: lo + (hi << 16)"""
    require_configured(state)
    secret = keys.elgamal.secret
    lo = decrypt_asym(engine, state.pending_balance_lo, secret, "pending_balance_lo")
    hi = decrypt_asym(engine, state.pending_balance_hi, secret, "pending_balance_hi")
    return PendingSplit(lo=lo, hi=hi).combine()


def decrypt_available(
    state: ConfidentialAccountState,
    keys: EncryptionKeyMaterial,
    engine: CryptoEngine,
    cross_check: bool = True,
) -> int:
    """
    Decrypt the available balance

    Uses the AE ciphertext and, when ``cross_check`` is set, verifies it
    against the ElGamal ciphertext.

    Raises:
        DecryptionError: a ciphertext cannot be decrypted
        ConsistencyError: the two encodings disagree
    """
    require_configured(state)
    available = decrypt_sym(
        engine,
        state.decryptable_available_balance,
        keys.ae_key,
        "decryptable_available_balance",
    )
    if cross_check:
        verified = decrypt_asym(
            engine, state.available_balance, keys.elgamal.secret, "available_balance"
        )
        if verified != available:
            raise ConsistencyError(
                f"Available balance of {state.address} disagrees between "
                "ElGamal and AE encodings"
            )
    return available


def recover_available(
    state: ConfidentialAccountState,
    keys: EncryptionKeyMaterial,
    engine: CryptoEngine,
) -> int:
    """
    Decrypt the available balance from the ElGamal ciphertext alone

    After an apply that raced a credit, the ledger has folded every pending
    credit into the ElGamal ciphertext while the AE ciphertext only holds
    what the client knew about.
    """
    require_configured(state)
    return decrypt_asym(
        engine, state.available_balance, keys.elgamal.secret, "available_balance"
    )


def encode_new_available(
    amount: int, keys: EncryptionKeyMaterial, engine: CryptoEngine
) -> AvailableEncoding:
    """Encrypt the next available balance under both keys"""
    return AvailableEncoding(
        asym=engine.encrypt_asym(amount, keys.public_key),
        sym=engine.encrypt_sym(amount, keys.ae_key),
    )


def balances(
    state: ConfidentialAccountState,
    keys: EncryptionKeyMaterial,
    engine: CryptoEngine,
) -> BalanceBreakdown:
    """Plaintext public, pending and available balances of ``state``"""
    if not state.configured:
        return BalanceBreakdown(public=state.public_balance, pending=0, available=0)
    breakdown = BalanceBreakdown(
        public=state.public_balance,
        pending=decrypt_pending(state, keys, engine),
        available=decrypt_available(state, keys, engine),
    )
    logger.debug("Balances of %s: %s", state.address, breakdown.to_dict())
    return breakdown
