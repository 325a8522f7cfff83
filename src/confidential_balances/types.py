"""Type definitions for confidential balances"""

from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Callable, Optional

from solders.instruction import Instruction
from solders.keypair import Keypair
from solders.pubkey import Pubkey

ELGAMAL_PUBKEY_LEN = 32
ELGAMAL_CIPHERTEXT_LEN = 64
AE_CIPHERTEXT_LEN = 36

ZERO_ELGAMAL_CIPHERTEXT = bytes(ELGAMAL_CIPHERTEXT_LEN)
ZERO_AE_CIPHERTEXT = bytes(AE_CIPHERTEXT_LEN)

# Pending balances are credited as two ciphertexts: the low 16 bits and
# the next 32 bits of the amount.
PENDING_BALANCE_LO_BIT_LENGTH = 16
PENDING_BALANCE_HI_BIT_LENGTH = 32
MAXIMUM_DEPOSIT_TRANSFER_AMOUNT = (
    1 << (PENDING_BALANCE_LO_BIT_LENGTH + PENDING_BALANCE_HI_BIT_LENGTH)
) - 1

U64_MAX = (1 << 64) - 1


class TransactionStatus(Enum):
    """Transaction status"""

    PENDING = "pending"
    CONFIRMED = "confirmed"
    FAILED = "failed"


class ProofKind(Enum):
    """ZK ElGamal proof program verify instructions used by this package"""

    PUBKEY_VALIDITY = 4
    CIPHERTEXT_COMMITMENT_EQUALITY = 3
    BATCHED_RANGE_PROOF_U64 = 6
    BATCHED_RANGE_PROOF_U128 = 7
    BATCHED_GROUPED_CIPHERTEXT_3_HANDLES_VALIDITY = 12


# Size of the verified context each proof leaves in a context state account
PROOF_CONTEXT_SIZES = {
    ProofKind.PUBKEY_VALIDITY: 32,
    ProofKind.CIPHERTEXT_COMMITMENT_EQUALITY: 128,
    ProofKind.BATCHED_RANGE_PROOF_U64: 264,
    ProofKind.BATCHED_RANGE_PROOF_U128: 264,
    ProofKind.BATCHED_GROUPED_CIPHERTEXT_3_HANDLES_VALIDITY: 352,
}

# authority (32) + proof type (1)
CONTEXT_STATE_HEADER_SIZE = 33


class OperationKind(Enum):
    """Operations that may need split proof submission"""

    WITHDRAW = "withdraw"
    TRANSFER = "transfer"


class SagaStage(Enum):
    """
    Stages of a split-proof operation

    Proofs are generated before the operation is handed to the
    choreographer, so a new operation starts at GENERATE.
    """

    GENERATE = "generate"
    POPULATE = "populate"
    EXECUTE = "execute"
    CLEANUP = "cleanup"
    DONE = "done"


class ContextStage(Enum):
    """Lifecycle of a proof context account"""

    ALLOCATED = "allocated"
    POPULATED = "populated"
    VERIFIED = "verified"
    REFERENCED = "referenced"
    CLOSED = "closed"


@dataclass(frozen=True)
class PendingSplit:
    """
    Pending balance as a radix-2^16 pair

    The value is ``lo + (hi << 16)``. ``lo`` may exceed 16 bits once
    several credits have been summed homomorphically on the ledger.
    """

    lo: int
    hi: int

    @classmethod
    def split(cls, amount: int) -> "PendingSplit":
        if amount < 0 or amount > MAXIMUM_DEPOSIT_TRANSFER_AMOUNT:
            raise ValueError(
                f"Amount must be between 0 and {MAXIMUM_DEPOSIT_TRANSFER_AMOUNT}"
            )
        mask = (1 << PENDING_BALANCE_LO_BIT_LENGTH) - 1
        return cls(lo=amount & mask, hi=amount >> PENDING_BALANCE_LO_BIT_LENGTH)

    def combine(self) -> int:
        if self.lo < 0 or self.hi < 0:
            raise ValueError("Pending balance components must be non-negative")
        return self.lo + (self.hi << PENDING_BALANCE_LO_BIT_LENGTH)


@dataclass(frozen=True)
class ElGamalKeypair:
    """Asymmetric keypair; ``secret`` is the 32-byte scalar"""

    public: bytes
    secret: bytes = field(repr=False)


@dataclass(frozen=True)
class EncryptionKeyMaterial:
    """Keys derived for one token account"""

    elgamal: ElGamalKeypair
    ae_key: bytes = field(repr=False)

    @property
    def public_key(self) -> bytes:
        return self.elgamal.public


@dataclass(frozen=True)
class ConfidentialAccountState:
    """Token account with its confidential transfer extension"""

    address: Pubkey
    owner_authority: Pubkey
    mint: Pubkey
    public_balance: int
    configured: bool = False
    approved: bool = False
    elgamal_pubkey: Optional[bytes] = None
    pending_balance_lo: bytes = ZERO_ELGAMAL_CIPHERTEXT
    pending_balance_hi: bytes = ZERO_ELGAMAL_CIPHERTEXT
    available_balance: bytes = ZERO_ELGAMAL_CIPHERTEXT
    decryptable_available_balance: bytes = ZERO_AE_CIPHERTEXT
    allow_confidential_credits: bool = False
    allow_non_confidential_credits: bool = True
    pending_balance_credit_counter: int = 0
    maximum_pending_balance_credit_counter: int = 0
    expected_pending_balance_credit_counter: int = 0
    actual_pending_balance_credit_counter: int = 0

    def evolve(self, **changes: Any) -> "ConfidentialAccountState":
        """Return a copy with ``changes`` applied"""
        return replace(self, **changes)


@dataclass(frozen=True)
class MintConfidentialConfig:
    """Confidential transfer settings of a mint"""

    address: Pubkey
    decimals: int
    authority: Optional[Pubkey] = None
    auto_approve_new_accounts: bool = True
    auditor_elgamal_pubkey: Optional[bytes] = None


@dataclass(frozen=True)
class AvailableEncoding:
    """Asymmetric and symmetric encodings of one available balance"""

    asym: bytes
    sym: bytes


@dataclass(frozen=True)
class BalanceBreakdown:
    """Plaintext view of the three balance buckets"""

    public: int
    pending: int
    available: int

    @property
    def total(self) -> int:
        return self.public + self.pending + self.available

    def to_dict(self) -> dict[str, int]:
        return {
            "public": self.public,
            "pending": self.pending,
            "available": self.available,
            "total": self.total,
        }


@dataclass(frozen=True)
class ProofArtifact:
    """Serialized proof data (context followed by proof)"""

    kind: ProofKind
    data: bytes

    @property
    def size(self) -> int:
        return len(self.data)

    @property
    def context_state_size(self) -> int:
        return CONTEXT_STATE_HEADER_SIZE + PROOF_CONTEXT_SIZES[self.kind]


@dataclass(frozen=True)
class ProofBundle:
    """Proofs for one withdraw or transfer plus the ciphertexts they produced"""

    equality: ProofArtifact
    range: ProofArtifact
    validity: Optional[ProofArtifact] = None
    auditor_ciphertext_lo: Optional[bytes] = None
    auditor_ciphertext_hi: Optional[bytes] = None

    def artifacts(self) -> list[tuple[str, ProofArtifact]]:
        """Artifacts in submission order"""
        ordered = [("equality", self.equality)]
        if self.validity is not None:
            ordered.append(("validity", self.validity))
        ordered.append(("range", self.range))
        return ordered

    @property
    def size(self) -> int:
        return sum(artifact.size for _, artifact in self.artifacts())


@dataclass
class ProofContextAccount:
    """
    Ephemeral account holding one verified proof

    Artifacts too large for a single write are staged in ``record`` first
    and verified from there into the context account.
    """

    label: str
    artifact: ProofArtifact
    keypair: Keypair = field(default_factory=Keypair, repr=False)
    record: Optional[Keypair] = field(default=None, repr=False)
    stage: ContextStage = ContextStage.ALLOCATED
    record_open: bool = False

    @property
    def address(self) -> Pubkey:
        return self.keypair.pubkey()

    @property
    def record_address(self) -> Optional[Pubkey]:
        return self.record.pubkey() if self.record is not None else None

    @property
    def chunked(self) -> bool:
        return self.record is not None


@dataclass
class ProofOperation:
    """
    Primary instruction whose proofs live in context accounts

    ``build_primary`` receives the context account address for every
    artifact label and returns the instructions to submit.
    """

    kind: OperationKind
    authority: Keypair
    artifacts: list[tuple[str, ProofArtifact]]
    build_primary: Callable[[dict[str, Pubkey]], list[Instruction]]
    stage: SagaStage = SagaStage.GENERATE


@dataclass(frozen=True)
class Transition:
    """Instructions for one lifecycle step and the state they should produce"""

    label: str
    instructions: list[Instruction]
    signers: list[Keypair]
    expected_state: ConfidentialAccountState
    balances: Optional[BalanceBreakdown] = None
    split: Optional[ProofOperation] = None
    expected_counterparty_state: Optional[ConfidentialAccountState] = None


@dataclass(frozen=True)
class Receipt:
    """Confirmed submission"""

    signature: str
    label: str = ""
    status: TransactionStatus = TransactionStatus.CONFIRMED

    def to_dict(self) -> dict[str, Any]:
        return {
            "signature": self.signature,
            "label": self.label,
            "status": self.status.value,
        }


@dataclass
class OperationResult:
    """Result of a client-level operation"""

    receipts: list[Receipt]
    expected_state: Optional[ConfidentialAccountState] = None
    balances: Optional[BalanceBreakdown] = None

    @property
    def signatures(self) -> list[str]:
        return [receipt.signature for receipt in self.receipts]

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary"""
        return {
            "receipts": [receipt.to_dict() for receipt in self.receipts],
            "balances": self.balances.to_dict() if self.balances else None,
        }
