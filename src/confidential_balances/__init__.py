"""
Confidential balances - Token-2022 confidential transfer SDK for Solana

Balance lifecycle (configure, deposit, apply pending, withdraw, transfer)
over encrypted token balances, with split-proof submission for proofs
that do not fit in a single transaction.
"""

__version__ = "0.1.0"

# Export main API
from .choreographer import ProofChoreographer
from .client import ConfidentialTransferClient
from .config import ClientConfig, load_payer
from .crypto import CryptoEngine
from .errors import (
    AccountNotFoundError,
    AlreadyConfiguredError,
    ConfidentialBalanceError,
    ConsistencyError,
    DecryptionError,
    InsufficientBalanceError,
    KeyDerivationError,
    MalformedAccountError,
    PendingCreditLimitError,
    ProofGenerationError,
    RecipientNotConfiguredError,
    RecoverableLeakError,
    SizeLimitError,
    StaleStateError,
    SubmissionError,
)
from .keys import derive_key_material
from .ledger import LedgerClient
from .solana_client import SolanaClient
from .state_machine import BalanceStateMachine
from .transfer import TransferOrchestrator
from .types import (
    BalanceBreakdown,
    ConfidentialAccountState,
    EncryptionKeyMaterial,
    OperationResult,
    PendingSplit,
    Receipt,
    SagaStage,
    TransactionStatus,
)
from .utils import parse_pubkey, validate_solana_address

__all__ = [
    # Main client
    "ConfidentialTransferClient",
    "ClientConfig",
    "load_payer",
    # Components
    "BalanceStateMachine",
    "ProofChoreographer",
    "TransferOrchestrator",
    "SolanaClient",
    "derive_key_material",
    # Interfaces
    "CryptoEngine",
    "LedgerClient",
    # Types
    "BalanceBreakdown",
    "ConfidentialAccountState",
    "EncryptionKeyMaterial",
    "OperationResult",
    "PendingSplit",
    "Receipt",
    "SagaStage",
    "TransactionStatus",
    # Errors
    "ConfidentialBalanceError",
    "AccountNotFoundError",
    "AlreadyConfiguredError",
    "ConsistencyError",
    "DecryptionError",
    "InsufficientBalanceError",
    "KeyDerivationError",
    "MalformedAccountError",
    "PendingCreditLimitError",
    "ProofGenerationError",
    "RecipientNotConfiguredError",
    "RecoverableLeakError",
    "SizeLimitError",
    "StaleStateError",
    "SubmissionError",
    # Utilities
    "parse_pubkey",
    "validate_solana_address",
    # Module info
    "__version__",
]
