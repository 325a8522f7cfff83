"""
Confidential transfer orchestration

Fetches both token accounts and the mint, plans the transfer with the
state machine and hands the split proofs to the choreographer.
"""

import logging

from solders.keypair import Keypair
from solders.pubkey import Pubkey
from spl.token.constants import TOKEN_2022_PROGRAM_ID

from . import codec
from .choreographer import ProofChoreographer
from .errors import SubmissionError
from .ledger import LedgerClient
from .state_machine import BalanceStateMachine
from .token_utils import get_associated_token_address
from .types import ConfidentialAccountState, EncryptionKeyMaterial, Receipt, Transition

logger = logging.getLogger(__name__)


class TransferOrchestrator:
    """Runs a confidential transfer end to end"""

    def __init__(
        self,
        ledger: LedgerClient,
        state_machine: BalanceStateMachine,
        choreographer: ProofChoreographer,
        token_program_id: Pubkey = TOKEN_2022_PROGRAM_ID,
    ):
        self.ledger = ledger
        self.state_machine = state_machine
        self.choreographer = choreographer
        self.token_program_id = token_program_id

    async def fetch_state(self, address: Pubkey) -> ConfidentialAccountState:
        return codec.decode(address, await self.ledger.fetch(address))

    async def prepare(
        self,
        sender_authority: Keypair,
        sender_keys: EncryptionKeyMaterial,
        mint: Pubkey,
        recipient: Pubkey,
        amount: int,
    ) -> Transition:
        """
        Fetch current state and plan the transfer

        Args:
            sender_authority: Owner of the source token account
            sender_keys: Key material of the source token account
            mint: Token mint
            recipient: Wallet owning the destination token account
            amount: Amount to transfer

        Returns:
            Transition whose ``split`` operation performs the transfer
        """
        source = get_associated_token_address(
            sender_authority.pubkey(), mint, self.token_program_id
        )
        destination = get_associated_token_address(recipient, mint, self.token_program_id)

        # Recipient key from its account, auditor key from the mint
        destination_state = await self.fetch_state(destination)
        mint_config = codec.decode_mint(mint, await self.ledger.fetch(mint))
        source_state = await self.fetch_state(source)

        return self.state_machine.transfer(
            source_state,
            destination_state,
            sender_authority,
            amount,
            sender_keys,
            auditor_public_key=mint_config.auditor_elgamal_pubkey,
        )

    async def execute(self, transition: Transition) -> list[Receipt]:
        """Submit a planned transfer through the choreographer"""
        if transition.split is None:
            raise SubmissionError("Transfer transition has no split operation", "transfer")
        logger.info("Executing confidential transfer from %s", transition.expected_state.address)
        return await self.choreographer.execute(transition.split)

    async def transfer(
        self,
        sender_authority: Keypair,
        sender_keys: EncryptionKeyMaterial,
        mint: Pubkey,
        recipient: Pubkey,
        amount: int,
    ) -> list[Receipt]:
        """
        Transfer ``amount`` confidentially to ``recipient``

        Returns:
            Receipts for proof population, the transfer and cleanup, in order
        """
        transition = await self.prepare(
            sender_authority, sender_keys, mint, recipient, amount
        )
        return await self.execute(transition)
