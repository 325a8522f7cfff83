"""
Balance state machine

Each lifecycle step takes the freshly fetched account state and returns a
``Transition``: the instructions to submit and the state the ledger should
hold once they land. Nothing here talks to the ledger.

    Unconfigured --configure--> Configured
    public --deposit--> pending --apply_pending--> available
    available --withdraw--> public
    available --transfer--> counterparty pending
"""

import logging
from typing import Optional

from solders.instruction import Instruction
from solders.keypair import Keypair
from solders.pubkey import Pubkey

from .codec import (
    decrypt_available,
    decrypt_pending,
    encode_new_available,
    recover_available,
    require_configured,
)
from .config import DEFAULT_MAXIMUM_PENDING_BALANCE_CREDIT_COUNTER
from .crypto import CryptoEngine, generate_proof
from .errors import (
    AlreadyConfiguredError,
    InsufficientBalanceError,
    PendingCreditLimitError,
    ProofGenerationError,
    RecipientNotConfiguredError,
)
from .instructions import InstructionBuilder, ProofLocation
from .types import (
    MAXIMUM_DEPOSIT_TRANSFER_AMOUNT,
    ZERO_ELGAMAL_CIPHERTEXT,
    BalanceBreakdown,
    ConfidentialAccountState,
    EncryptionKeyMaterial,
    OperationKind,
    ProofOperation,
    Transition,
)

logger = logging.getLogger(__name__)


def _check_amount(amount: int) -> None:
    if amount <= 0:
        raise ValueError("Amount must be positive")
    if amount > MAXIMUM_DEPOSIT_TRANSFER_AMOUNT:
        raise ValueError(f"Amount must not exceed {MAXIMUM_DEPOSIT_TRANSFER_AMOUNT}")


def _check_owner(state: ConfidentialAccountState, authority: Keypair) -> None:
    if authority.pubkey() != state.owner_authority:
        raise ValueError(
            f"{authority.pubkey()} is not the owner of token account {state.address}"
        )


def _check_credit_room(state: ConfidentialAccountState) -> None:
    if state.pending_balance_credit_counter >= state.maximum_pending_balance_credit_counter:
        raise PendingCreditLimitError(
            state.pending_balance_credit_counter,
            state.maximum_pending_balance_credit_counter,
        )


class BalanceStateMachine:
    """Pure transitions over ``ConfidentialAccountState``"""

    def __init__(
        self,
        engine: CryptoEngine,
        builder: Optional[InstructionBuilder] = None,
        maximum_pending_balance_credit_counter: int = (
            DEFAULT_MAXIMUM_PENDING_BALANCE_CREDIT_COUNTER
        ),
    ):
        self.engine = engine
        self.builder = builder or InstructionBuilder()
        self.maximum_pending_balance_credit_counter = (
            maximum_pending_balance_credit_counter
        )

    def configure(
        self,
        state: ConfidentialAccountState,
        authority: Keypair,
        keys: EncryptionKeyMaterial,
        payer: Pubkey,
        auto_approve: bool = True,
    ) -> Transition:
        """
        Register the ElGamal public key on an unconfigured account

        The account is reallocated for the extension, then configured with a
        zero decryptable balance; the pubkey validity proof is verified by
        the instruction right after it.

        Raises:
            AlreadyConfiguredError: the account is already configured
        """
        if state.configured:
            raise AlreadyConfiguredError(
                f"Token account {state.address} is already configured"
            )
        _check_owner(state, authority)

        proof = generate_proof(
            "pubkey validity", self.engine.generate_key_validity_proof, keys.elgamal
        )
        zero_balance = self.engine.encrypt_sym(0, keys.ae_key)
        owner = authority.pubkey()

        instructions = [
            self.builder.reallocate(state.address, payer, owner),
            self.builder.configure_account(
                state.address,
                state.mint,
                zero_balance,
                self.maximum_pending_balance_credit_counter,
                owner,
                ProofLocation.inline(1),
            ),
            self.builder.verify_proof(proof),
        ]

        expected = state.evolve(
            configured=True,
            approved=auto_approve,
            elgamal_pubkey=keys.public_key,
            pending_balance_lo=ZERO_ELGAMAL_CIPHERTEXT,
            pending_balance_hi=ZERO_ELGAMAL_CIPHERTEXT,
            available_balance=ZERO_ELGAMAL_CIPHERTEXT,
            decryptable_available_balance=zero_balance,
            allow_confidential_credits=True,
            allow_non_confidential_credits=True,
            pending_balance_credit_counter=0,
            maximum_pending_balance_credit_counter=(
                self.maximum_pending_balance_credit_counter
            ),
            expected_pending_balance_credit_counter=0,
            actual_pending_balance_credit_counter=0,
        )
        return Transition(
            label="configure",
            instructions=instructions,
            signers=[authority],
            expected_state=expected,
            balances=BalanceBreakdown(public=state.public_balance, pending=0, available=0),
        )

    def deposit(
        self,
        state: ConfidentialAccountState,
        authority: Keypair,
        amount: int,
        decimals: int,
    ) -> Transition:
        """
        Move ``amount`` from the public balance into the pending balance

        The ledger adds the amount to the pending ciphertexts; locally only
        the public balance and credit counter are predicted.
        """
        _check_amount(amount)
        require_configured(state)
        _check_owner(state, authority)
        if amount > state.public_balance:
            raise InsufficientBalanceError(state.public_balance, amount, bucket="public")
        _check_credit_room(state)

        instruction = self.builder.deposit(
            state.address, state.mint, amount, decimals, authority.pubkey()
        )
        expected = state.evolve(
            public_balance=state.public_balance - amount,
            pending_balance_credit_counter=state.pending_balance_credit_counter + 1,
        )
        return Transition(
            label="deposit",
            instructions=[instruction],
            signers=[authority],
            expected_state=expected,
        )

    def apply_pending(
        self,
        state: ConfidentialAccountState,
        authority: Keypair,
        keys: EncryptionKeyMaterial,
    ) -> Transition:
        """
        Fold the pending balance into the available balance

        The instruction carries the credit counter read from ``state``. If a
        previous apply raced a credit, the AE ciphertext missed that credit,
        so the available balance is taken from the ElGamal ciphertext and
        the new decryptable balance repairs it.
        """
        require_configured(state)
        _check_owner(state, authority)

        expected_counter = state.pending_balance_credit_counter
        pending = decrypt_pending(state, keys, self.engine)
        if (
            state.expected_pending_balance_credit_counter
            != state.actual_pending_balance_credit_counter
        ):
            logger.info("Recovering available balance of %s", state.address)
            available = recover_available(state, keys, self.engine)
        else:
            available = decrypt_available(state, keys, self.engine)
        new_available = available + pending
        encoding = encode_new_available(new_available, keys, self.engine)

        instruction = self.builder.apply_pending_balance(
            state.address, expected_counter, encoding.sym, authority.pubkey()
        )
        expected = state.evolve(
            pending_balance_lo=ZERO_ELGAMAL_CIPHERTEXT,
            pending_balance_hi=ZERO_ELGAMAL_CIPHERTEXT,
            available_balance=encoding.asym,
            decryptable_available_balance=encoding.sym,
            pending_balance_credit_counter=(
                state.pending_balance_credit_counter - expected_counter
            ),
            expected_pending_balance_credit_counter=expected_counter,
            actual_pending_balance_credit_counter=expected_counter,
        )
        logger.debug(
            "Applying %d pending credits to %s", expected_counter, state.address
        )
        return Transition(
            label="apply_pending",
            instructions=[instruction],
            signers=[authority],
            expected_state=expected,
            balances=BalanceBreakdown(
                public=state.public_balance, pending=0, available=new_available
            ),
        )

    def withdraw(
        self,
        state: ConfidentialAccountState,
        authority: Keypair,
        amount: int,
        decimals: int,
        keys: EncryptionKeyMaterial,
    ) -> Transition:
        """
        Move ``amount`` from the available balance to the public balance

        ``instructions`` carry both proofs inline; ``split`` references
        context accounts instead for when the inline form is too large.

        Raises:
            InsufficientBalanceError: before any proof is generated
        """
        _check_amount(amount)
        require_configured(state)
        _check_owner(state, authority)

        available = decrypt_available(state, keys, self.engine)
        if amount > available:
            raise InsufficientBalanceError(available, amount)
        pending = decrypt_pending(state, keys, self.engine)

        bundle = generate_proof(
            "withdraw",
            self.engine.generate_withdraw_proof,
            state.available_balance,
            amount,
            keys.elgamal,
            keys.ae_key,
        )
        new_available = available - amount
        encoding = encode_new_available(new_available, keys, self.engine)
        owner = authority.pubkey()

        def build(equality: ProofLocation, range_proof: ProofLocation) -> Instruction:
            return self.builder.withdraw(
                state.address,
                state.mint,
                amount,
                decimals,
                encoding.sym,
                owner,
                equality,
                range_proof,
            )

        inline = [
            build(ProofLocation.inline(1), ProofLocation.inline(2)),
            self.builder.verify_proof(bundle.equality),
            self.builder.verify_proof(bundle.range),
        ]
        split = ProofOperation(
            kind=OperationKind.WITHDRAW,
            authority=authority,
            artifacts=bundle.artifacts(),
            build_primary=lambda contexts: [
                build(
                    ProofLocation.context(contexts["equality"]),
                    ProofLocation.context(contexts["range"]),
                )
            ],
        )
        expected = state.evolve(
            public_balance=state.public_balance + amount,
            available_balance=encoding.asym,
            decryptable_available_balance=encoding.sym,
        )
        return Transition(
            label="withdraw",
            instructions=inline,
            signers=[authority],
            expected_state=expected,
            balances=BalanceBreakdown(
                public=state.public_balance + amount,
                pending=pending,
                available=new_available,
            ),
            split=split,
        )

    def transfer(
        self,
        source: ConfidentialAccountState,
        destination: ConfidentialAccountState,
        authority: Keypair,
        amount: int,
        keys: EncryptionKeyMaterial,
        auditor_public_key: Optional[bytes] = None,
    ) -> Transition:
        """
        Plan a confidential transfer from ``source`` to ``destination``

        Transfer proofs never fit inline, so the transition only carries the
        ``split`` operation.

        Raises:
            RecipientNotConfiguredError: destination cannot take confidential credits
            InsufficientBalanceError: before any proof is generated
        """
        _check_amount(amount)
        require_configured(source)
        _check_owner(source, authority)
        if (
            not destination.configured
            or not destination.approved
            or not destination.allow_confidential_credits
            or destination.elgamal_pubkey is None
        ):
            raise RecipientNotConfiguredError(
                f"Token account {destination.address} cannot receive confidential transfers"
            )
        if source.mint != destination.mint:
            raise ValueError(
                f"Mint mismatch: {source.mint} cannot transfer to {destination.mint}"
            )
        _check_credit_room(destination)

        available = decrypt_available(source, keys, self.engine)
        if amount > available:
            raise InsufficientBalanceError(available, amount)
        pending = decrypt_pending(source, keys, self.engine)

        bundle = generate_proof(
            "transfer",
            self.engine.generate_split_transfer_proof,
            source.available_balance,
            amount,
            keys.elgamal,
            keys.ae_key,
            destination.elgamal_pubkey,
            auditor_public_key,
        )
        if bundle.validity is None:
            raise ProofGenerationError("Transfer proof bundle has no validity proof")

        new_available = available - amount
        encoding = encode_new_available(new_available, keys, self.engine)
        owner = authority.pubkey()

        def build_primary(contexts: dict[str, Pubkey]) -> list[Instruction]:
            return [
                self.builder.transfer(
                    source.address,
                    source.mint,
                    destination.address,
                    encoding.sym,
                    bundle.auditor_ciphertext_lo or ZERO_ELGAMAL_CIPHERTEXT,
                    bundle.auditor_ciphertext_hi or ZERO_ELGAMAL_CIPHERTEXT,
                    owner,
                    ProofLocation.context(contexts["equality"]),
                    ProofLocation.context(contexts["validity"]),
                    ProofLocation.context(contexts["range"]),
                )
            ]

        split = ProofOperation(
            kind=OperationKind.TRANSFER,
            authority=authority,
            artifacts=bundle.artifacts(),
            build_primary=build_primary,
        )
        return Transition(
            label="transfer",
            instructions=[],
            signers=[authority],
            expected_state=source.evolve(
                available_balance=encoding.asym,
                decryptable_available_balance=encoding.sym,
            ),
            balances=BalanceBreakdown(
                public=source.public_balance,
                pending=pending,
                available=new_available,
            ),
            split=split,
            expected_counterparty_state=destination.evolve(
                pending_balance_credit_counter=(
                    destination.pending_balance_credit_counter + 1
                ),
            ),
        )
