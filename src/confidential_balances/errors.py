"""Error types for confidential balance operations"""

from typing import Any, Optional


class ConfidentialBalanceError(Exception):
    """Base class for every error raised by this package"""


class KeyDerivationError(ConfidentialBalanceError):
    """The authority could not sign the key derivation seed"""


class MalformedAccountError(ConfidentialBalanceError):
    """Account data is truncated or lacks the confidential transfer extension"""


class AccountNotFoundError(ConfidentialBalanceError):
    """Requested account does not exist on the ledger"""

    def __init__(self, address: Any):
        super().__init__(f"Account not found: {address}")
        self.address = address


class ConsistencyError(ConfidentialBalanceError):
    """The two encodings of the available balance disagree"""


class DecryptionError(ConfidentialBalanceError):
    """A ciphertext could not be decrypted with the given key"""


class InsufficientBalanceError(ConfidentialBalanceError):
    """Requested amount exceeds the balance it is drawn from"""

    def __init__(self, available: int, requested: int, bucket: str = "available"):
        super().__init__(
            f"Insufficient {bucket} balance: have {available}, need {requested}"
        )
        self.available = available
        self.requested = requested
        self.bucket = bucket


class ProofGenerationError(ConfidentialBalanceError):
    """The crypto engine failed to produce a proof"""


class AlreadyConfiguredError(ConfidentialBalanceError):
    """Account already carries a configured confidential transfer extension"""


class RecipientNotConfiguredError(ConfidentialBalanceError):
    """Destination account cannot receive confidential credits"""


class PendingCreditLimitError(ConfidentialBalanceError):
    """Pending credit counter reached its maximum; apply_pending is required"""

    def __init__(self, counter: int, maximum: int):
        super().__init__(
            f"Pending balance credit counter at {counter} of {maximum}, "
            "apply the pending balance first"
        )
        self.counter = counter
        self.maximum = maximum


class StaleStateError(ConfidentialBalanceError):
    """Ledger-side credit counter moved since the state was read"""

    def __init__(self, expected: int, actual: Optional[int] = None):
        detail = f", ledger has {actual}" if actual is not None else ""
        super().__init__(
            f"Stale pending balance credit counter: expected {expected}{detail}"
        )
        self.expected = expected
        self.actual = actual


class SubmissionError(ConfidentialBalanceError):
    """A submission failed to land or confirm"""

    def __init__(self, message: str, label: Optional[str] = None):
        super().__init__(f"[{label}] {message}" if label else message)
        self.label = label


class SizeLimitError(SubmissionError):
    """Serialized submission exceeds the ledger's per-transaction size"""

    def __init__(self, size: int, limit: int, label: Optional[str] = None):
        super().__init__(f"Transaction too large: {size} > {limit} bytes", label)
        self.size = size
        self.limit = limit


class RecoverableLeakError(ConfidentialBalanceError):
    """
    Closing proof context accounts failed

    Carries the accounts left open so cleanup can be retried with
    ``ProofChoreographer.close_context_accounts``. When the leak happened
    while compensating an earlier failure, that failure is kept in
    ``original_error`` and chained as ``__cause__``.
    """

    def __init__(
        self,
        stranded: list,
        cleanup_error: BaseException,
        original_error: Optional[BaseException] = None,
        receipts: Optional[list] = None,
    ):
        addresses = ", ".join(str(account.address) for account in stranded)
        message = f"Failed to close {len(stranded)} context account(s): {addresses}"
        if original_error is not None:
            message += f" (after: {original_error})"
        super().__init__(message)
        self.stranded = stranded
        self.cleanup_error = cleanup_error
        self.original_error = original_error
        self.receipts = receipts or []

    @property
    def stranded_addresses(self) -> list:
        addresses = [account.address for account in self.stranded]
        addresses.extend(
            account.record_address for account in self.stranded if account.record_open
        )
        return addresses
