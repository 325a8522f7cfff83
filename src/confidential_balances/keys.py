"""
Encryption key derivation

Both keys of a token account are derived from a signature by the account
authority over a fixed prefix and the token account address. Ed25519
signatures are deterministic, so the same authority and address always
yield the same keys and nothing has to be stored.
"""

import hashlib
import logging

from solders.keypair import Keypair
from solders.pubkey import Pubkey
from solders.signature import Signature

from .crypto import CryptoEngine
from .errors import KeyDerivationError
from .types import ElGamalKeypair, EncryptionKeyMaterial

logger = logging.getLogger(__name__)

ELGAMAL_SEED_PREFIX = b"ElGamalSecretKey"
AE_SEED_PREFIX = b"AeKey"

# Order of the Ristretto255 group
GROUP_ORDER = 2**252 + 27742317777372353535851937790883648493

AE_KEY_LEN = 16


def _sign_seed(authority: Keypair, prefix: bytes, account_address: Pubkey) -> bytes:
    message = prefix + bytes(account_address)
    try:
        signature = authority.sign_message(message)
    except Exception as e:
        raise KeyDerivationError(f"Authority could not sign key seed: {e}") from e
    if signature == Signature.default():
        raise KeyDerivationError("Authority produced an empty signature")
    return bytes(signature)


def derive_elgamal_secret(authority: Keypair, account_address: Pubkey) -> bytes:
    """
    Derive the 32-byte ElGamal secret scalar for a token account

    Args:
        authority: Signer owning the token account
        account_address: Token account address (public seed)

    Returns:
        Little-endian scalar reduced modulo the group order
    """
    signature = _sign_seed(authority, ELGAMAL_SEED_PREFIX, account_address)
    wide = hashlib.sha3_512(signature).digest()
    scalar = int.from_bytes(wide, "little") % GROUP_ORDER
    if scalar == 0:
        raise KeyDerivationError("Derived ElGamal secret is zero")
    return scalar.to_bytes(32, "little")


def derive_ae_key(authority: Keypair, account_address: Pubkey) -> bytes:
    """Derive the 16-byte authenticated-encryption key for a token account"""
    signature = _sign_seed(authority, AE_SEED_PREFIX, account_address)
    return hashlib.sha3_512(signature).digest()[:AE_KEY_LEN]


def derive_key_material(
    authority: Keypair,
    account_address: Pubkey,
    engine: CryptoEngine,
) -> EncryptionKeyMaterial:
    """
    Derive the ElGamal keypair and AE key of a token account

    Args:
        authority: Signer owning the token account
        account_address: Token account address
        engine: Crypto engine computing the ElGamal public key

    Returns:
        Key material for ``account_address``
    """
    secret = derive_elgamal_secret(authority, account_address)
    public = engine.elgamal_public_key(secret)
    logger.debug("Derived encryption keys for %s", account_address)
    return EncryptionKeyMaterial(
        elgamal=ElGamalKeypair(public=public, secret=secret),
        ae_key=derive_ae_key(authority, account_address),
    )
