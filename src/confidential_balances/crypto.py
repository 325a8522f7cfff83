"""
Crypto engine interface

Encryption, decryption and proof generation are supplied by a binding to
a native zero-knowledge SDK. This module fixes the interface the rest of
the package consumes and the wrappers that normalise engine failures into
this package's error types.
"""

from typing import Any, Callable, Optional, Protocol, TypeVar

from .errors import ConfidentialBalanceError, DecryptionError, ProofGenerationError
from .types import ElGamalKeypair, ProofArtifact, ProofBundle

T = TypeVar("T")


class CryptoEngine(Protocol):
    """Primitives consumed by the key, codec and state machine layers"""

    def elgamal_public_key(self, secret: bytes) -> bytes:
        """Public key for a 32-byte ElGamal secret scalar"""

    def encrypt_asym(self, amount: int, public_key: bytes) -> bytes:
        """64-byte ElGamal ciphertext of ``amount``"""

    def decrypt_asym(self, ciphertext: bytes, secret: bytes) -> Optional[int]:
        """Decrypt an ElGamal ciphertext (None or DecryptionError on failure)"""

    def encrypt_sym(self, amount: int, key: bytes) -> bytes:
        """36-byte authenticated ciphertext of ``amount``"""

    def decrypt_sym(self, ciphertext: bytes, key: bytes) -> Optional[int]:
        """Decrypt an authenticated ciphertext (None or DecryptionError on failure)"""

    def generate_key_validity_proof(self, keypair: ElGamalKeypair) -> ProofArtifact:
        """Proof of knowledge of the secret behind ``keypair.public``"""

    def generate_withdraw_proof(
        self,
        available_ciphertext: bytes,
        amount: int,
        keypair: ElGamalKeypair,
        ae_key: bytes,
    ) -> ProofBundle:
        """Equality and range proofs for withdrawing ``amount``"""

    def generate_split_transfer_proof(
        self,
        available_ciphertext: bytes,
        amount: int,
        keypair: ElGamalKeypair,
        ae_key: bytes,
        recipient_public_key: bytes,
        auditor_public_key: Optional[bytes] = None,
    ) -> ProofBundle:
        """Equality, ciphertext validity and range proofs for a transfer"""


def decrypt_asym(
    engine: CryptoEngine, ciphertext: bytes, secret: bytes, label: str
) -> int:
    """Decrypt with the ElGamal secret, raising DecryptionError on failure"""
    return _decrypt(lambda: engine.decrypt_asym(ciphertext, secret), label)


def decrypt_sym(engine: CryptoEngine, ciphertext: bytes, key: bytes, label: str) -> int:
    """Decrypt with the AE key, raising DecryptionError on failure"""
    return _decrypt(lambda: engine.decrypt_sym(ciphertext, key), label)


def _decrypt(decrypt: Callable[[], Optional[int]], label: str) -> int:
    try:
        value = decrypt()
    except ConfidentialBalanceError:
        raise
    except (ValueError, TypeError, ArithmeticError) as e:
        raise DecryptionError(f"Failed to decrypt {label}: {e}") from e
    if value is None:
        raise DecryptionError(f"Failed to decrypt {label}")
    return value


def generate_proof(label: str, generate: Callable[..., T], *args: Any) -> T:
    """Run a proof generator, raising ProofGenerationError on failure"""
    try:
        return generate(*args)
    except ConfidentialBalanceError:
        raise
    except Exception as e:
        raise ProofGenerationError(f"Failed to generate {label} proof: {e}") from e
