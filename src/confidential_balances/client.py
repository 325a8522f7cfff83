"""
Main client for confidential balances

Provides high-level API for Token-2022 confidential transfers on Solana.
"""

import logging
from typing import Optional, Sequence, Union

from solders.keypair import Keypair
from solders.pubkey import Pubkey

from . import codec
from .choreographer import ProofChoreographer
from .config import ClientConfig
from .crypto import CryptoEngine
from .errors import (
    AccountNotFoundError,
    SizeLimitError,
    StaleStateError,
    SubmissionError,
)
from .instructions import InstructionBuilder
from .keys import derive_key_material
from .ledger import LedgerClient
from .solana_client import SolanaClient
from .state_machine import BalanceStateMachine
from .token_utils import create_associated_token_account, get_associated_token_address
from .transfer import TransferOrchestrator
from .types import (
    BalanceBreakdown,
    ConfidentialAccountState,
    EncryptionKeyMaterial,
    MintConfidentialConfig,
    OperationResult,
    ProofContextAccount,
    Receipt,
    Transition,
)
from .utils import parse_pubkey

logger = logging.getLogger(__name__)


class ConfidentialTransferClient:
    """
    Main client for confidential balances on Solana

    Every operation re-fetches the account, derives the encryption keys
    from the owner and submits the resulting transition.

    Example:
        ```python
        client = ConfidentialTransferClient.connect(engine, payer)

        await client.configure(owner, mint)
        await client.deposit(owner, mint, 500_000_000)
        await client.apply_pending(owner, mint)

        result = await client.transfer(owner, mint, recipient, 100_000_000)
        print(result.signatures)
        ```
    """

    def __init__(
        self,
        ledger: LedgerClient,
        engine: CryptoEngine,
        config: Optional[ClientConfig] = None,
    ):
        """
        Initialize client

        Args:
            ledger: Ledger client used for reads and submissions
            engine: Crypto engine for encryption and proofs
            config: Client configuration (defaults if omitted)
        """
        self.config = config or ClientConfig()
        self.config.validate()
        self.ledger = ledger
        self.engine = engine
        self.builder = InstructionBuilder(self.config.token_program_id)
        self.state_machine = BalanceStateMachine(
            engine,
            self.builder,
            self.config.maximum_pending_balance_credit_counter,
        )
        self.choreographer = ProofChoreographer(
            ledger,
            self.builder,
            inline_proof_budget=self.config.inline_proof_budget,
            chunk_size=self.config.record_chunk_size,
        )
        self.transfers = TransferOrchestrator(
            ledger, self.state_machine, self.choreographer, self.config.token_program_id
        )

    @classmethod
    def connect(
        cls,
        engine: CryptoEngine,
        payer: Keypair,
        config: Optional[ClientConfig] = None,
    ) -> "ConfidentialTransferClient":
        """Create a client talking to the RPC node named in ``config``"""
        config = config or ClientConfig.from_env()
        ledger = SolanaClient(payer, config.rpc_url, config.commitment)
        return cls(ledger, engine, config)

    # =========================================================================
    # Lookups
    # =========================================================================

    def token_account(self, owner: Pubkey, mint: Pubkey) -> Pubkey:
        """Associated token account of ``owner`` for ``mint``"""
        return get_associated_token_address(owner, mint, self.config.token_program_id)

    def derive_keys(self, authority: Keypair, mint: Pubkey) -> EncryptionKeyMaterial:
        """Derive the encryption keys of ``authority``'s token account"""
        return derive_key_material(
            authority, self.token_account(authority.pubkey(), mint), self.engine
        )

    async def fetch_state(self, address: Pubkey) -> ConfidentialAccountState:
        """Fetch and decode a token account"""
        return codec.decode(address, await self.ledger.fetch(address))

    async def fetch_mint(self, mint: Pubkey) -> MintConfidentialConfig:
        """Fetch and decode a mint's confidential transfer configuration"""
        return codec.decode_mint(mint, await self.ledger.fetch(mint))

    async def _owned_state(
        self, authority: Keypair, mint: Pubkey
    ) -> ConfidentialAccountState:
        return await self.fetch_state(self.token_account(authority.pubkey(), mint))

    async def _submit(self, transition: Transition) -> OperationResult:
        receipt = await self.ledger.submit(
            transition.instructions, transition.signers, label=transition.label
        )
        return OperationResult(
            receipts=[receipt],
            expected_state=transition.expected_state,
            balances=transition.balances,
        )

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def create_token_account(self, owner: Pubkey, mint: Pubkey) -> OperationResult:
        """
        Create ``owner``'s associated token account if it does not exist

        Returns:
            Result with no receipts when the account already exists
        """
        address = self.token_account(owner, mint)
        try:
            await self.ledger.fetch(address)
            return OperationResult(receipts=[])
        except AccountNotFoundError:
            pass

        instruction = create_associated_token_account(
            self.ledger.payer, owner, mint, self.config.token_program_id
        )
        receipt = await self.ledger.submit([instruction], [], label="create_token_account")
        return OperationResult(receipts=[receipt])

    async def create_confidential_mint(
        self,
        mint: Keypair,
        mint_authority: Pubkey,
        decimals: int,
        auto_approve_new_accounts: bool = True,
        auditor_elgamal_pubkey: Optional[bytes] = None,
    ) -> OperationResult:
        """
        Create a Token-2022 mint with the confidential transfer extension

        Args:
            mint: Keypair of the new mint account
            mint_authority: Authority allowed to mint public tokens
            decimals: Token decimals
            auto_approve_new_accounts: Approve configured accounts without
                an authority signature
            auditor_elgamal_pubkey: Optional auditor key every transfer
                amount is also encrypted under
        """
        lamports = await self.ledger.minimum_balance_for_rent_exemption(
            codec.CONFIDENTIAL_MINT_SIZE
        )
        instructions = [
            self.builder.create_account(
                self.ledger.payer,
                mint.pubkey(),
                lamports,
                codec.CONFIDENTIAL_MINT_SIZE,
                self.config.token_program_id,
            ),
            self.builder.initialize_confidential_mint(
                mint.pubkey(),
                auto_approve_new_accounts=auto_approve_new_accounts,
                auditor_elgamal_pubkey=auditor_elgamal_pubkey,
            ),
            self.builder.initialize_mint(mint.pubkey(), decimals, mint_authority),
        ]
        receipt = await self.ledger.submit(
            instructions, [mint], label="create_confidential_mint"
        )
        logger.info("Created confidential mint %s", mint.pubkey())
        return OperationResult(receipts=[receipt])

    async def mint_to(
        self, mint_authority: Keypair, mint: Pubkey, owner: Pubkey, amount: int
    ) -> OperationResult:
        """Mint ``amount`` public tokens to ``owner``'s associated token account"""
        instruction = self.builder.mint_to(
            mint, self.token_account(owner, mint), mint_authority.pubkey(), amount
        )
        receipt = await self.ledger.submit([instruction], [mint_authority], label="mint_to")
        logger.info("Minted %d to %s", amount, owner)
        return OperationResult(receipts=[receipt])

    async def configure(self, authority: Keypair, mint: Pubkey) -> OperationResult:
        """
        Configure ``authority``'s token account for confidential transfers

        Raises:
            AlreadyConfiguredError: the account is already configured
        """
        mint_config = await self.fetch_mint(mint)
        state = await self._owned_state(authority, mint)
        transition = self.state_machine.configure(
            state,
            authority,
            self.derive_keys(authority, mint),
            self.ledger.payer,
            auto_approve=mint_config.auto_approve_new_accounts,
        )
        result = await self._submit(transition)
        logger.info("Configured %s for confidential transfers", state.address)
        return result

    async def deposit(
        self, authority: Keypair, mint: Pubkey, amount: int
    ) -> OperationResult:
        """Deposit ``amount`` from the public balance into the pending balance"""
        mint_config = await self.fetch_mint(mint)
        state = await self._owned_state(authority, mint)
        transition = self.state_machine.deposit(
            state, authority, amount, mint_config.decimals
        )
        result = await self._submit(transition)
        logger.info("Deposited %d to pending balance of %s", amount, state.address)
        return result

    async def apply_pending(self, authority: Keypair, mint: Pubkey) -> OperationResult:
        """
        Apply the pending balance to the available balance

        A credit can land between reading the account and the apply. The
        counter is re-read before submitting; a rejected submission is
        checked against the counter again; an accepted one is checked
        against the expected and actual counters the token program records.
        After an accepted stale apply, calling ``apply_pending`` again
        repairs the decryptable available balance.

        Raises:
            StaleStateError: a credit landed after the state was read; fetch
                again and retry
        """
        state = await self._owned_state(authority, mint)
        expected = state.pending_balance_credit_counter
        transition = self.state_machine.apply_pending(
            state, authority, self.derive_keys(authority, mint)
        )

        current = await self.fetch_state(state.address)
        if current.pending_balance_credit_counter != expected:
            raise StaleStateError(expected, current.pending_balance_credit_counter)

        try:
            result = await self._submit(transition)
        except SubmissionError as e:
            current = await self.fetch_state(state.address)
            if current.pending_balance_credit_counter != expected:
                raise StaleStateError(
                    expected, current.pending_balance_credit_counter
                ) from e
            raise

        applied = await self.fetch_state(state.address)
        if (
            applied.expected_pending_balance_credit_counter
            != applied.actual_pending_balance_credit_counter
        ):
            logger.warning(
                "Apply on %s raced a credit: expected %d, ledger had %d",
                state.address,
                applied.expected_pending_balance_credit_counter,
                applied.actual_pending_balance_credit_counter,
            )
            raise StaleStateError(
                applied.expected_pending_balance_credit_counter,
                applied.actual_pending_balance_credit_counter,
            )

        logger.info("Applied pending balance of %s", state.address)
        return result

    async def withdraw(
        self, authority: Keypair, mint: Pubkey, amount: int
    ) -> OperationResult:
        """
        Withdraw ``amount`` from the available balance to the public balance

        Proofs are sent inline when they fit in one transaction, otherwise
        through proof context accounts.
        """
        mint_config = await self.fetch_mint(mint)
        state = await self._owned_state(authority, mint)
        transition = self.state_machine.withdraw(
            state,
            authority,
            amount,
            mint_config.decimals,
            self.derive_keys(authority, mint),
        )

        try:
            result = await self._submit(transition)
        except SizeLimitError as e:
            logger.warning("Inline withdraw too large (%s), splitting proofs", e)
            receipts = await self.choreographer.execute(transition.split)
            result = OperationResult(
                receipts=receipts,
                expected_state=transition.expected_state,
                balances=transition.balances,
            )
        logger.info("Withdrew %d from %s", amount, state.address)
        return result

    async def transfer(
        self,
        authority: Keypair,
        mint: Pubkey,
        recipient: Union[str, Pubkey],
        amount: int,
    ) -> OperationResult:
        """
        Transfer ``amount`` confidentially to ``recipient``'s token account

        Args:
            authority: Sender (owner of the source token account)
            mint: Token mint
            recipient: Recipient wallet address (Pubkey or base58 string)
            amount: Amount to transfer

        Returns:
            Result with receipts for every proof, transfer and cleanup transaction
        """
        transition = await self.transfers.prepare(
            authority,
            self.derive_keys(authority, mint),
            mint,
            parse_pubkey(recipient),
            amount,
        )
        receipts = await self.transfers.execute(transition)
        return OperationResult(
            receipts=receipts,
            expected_state=transition.expected_state,
            balances=transition.balances,
        )

    async def get_balances(self, authority: Keypair, mint: Pubkey) -> BalanceBreakdown:
        """Decrypt the public, pending and available balances of a token account"""
        state = await self._owned_state(authority, mint)
        return codec.balances(state, self.derive_keys(authority, mint), self.engine)

    async def close_context_accounts(
        self, contexts: Sequence[ProofContextAccount], authority: Keypair
    ) -> list[Receipt]:
        """Retry closing accounts stranded by a ``RecoverableLeakError``"""
        return await self.choreographer.close_context_accounts(contexts, authority)

    async def close(self) -> None:
        """Close RPC connection"""
        close = getattr(self.ledger, "close", None)
        if close is not None:
            await close()
