"""
Proof choreographer

Runs an operation whose proofs are too large for one transaction as a
sequence of confirmed submissions. The operation arrives at GENERATE
(proofs already produced) and moves through:

    POPULATE  one context account per artifact, verified on-ledger
              (large artifacts are first written in chunks to a record
              account and verified from there)
    EXECUTE   the primary instruction, referencing the context accounts
    CLEANUP   close every context and record account, returning rent
    DONE      all accounts closed

Cleanup also runs when POPULATE or EXECUTE fails or the task is
cancelled; the original error is then re-raised. If cleanup itself fails,
``RecoverableLeakError`` carries the accounts still open.
"""

import asyncio
import logging
from typing import Optional, Sequence

from solders.instruction import Instruction
from solders.keypair import Keypair

from .config import DEFAULT_INLINE_PROOF_BUDGET, DEFAULT_RECORD_CHUNK_SIZE
from .errors import AccountNotFoundError, RecoverableLeakError, SizeLimitError
from .instructions import (
    RECORD_HEADER_SIZE,
    RECORD_PROGRAM_ID,
    ZK_ELGAMAL_PROOF_PROGRAM_ID,
    InstructionBuilder,
)
from .ledger import LedgerClient
from .types import (
    ContextStage,
    ProofContextAccount,
    ProofOperation,
    Receipt,
    SagaStage,
)

logger = logging.getLogger(__name__)


class ProofChoreographer:
    """Submits split-proof operations with compensating cleanup"""

    def __init__(
        self,
        ledger: LedgerClient,
        builder: Optional[InstructionBuilder] = None,
        inline_proof_budget: int = DEFAULT_INLINE_PROOF_BUDGET,
        chunk_size: int = DEFAULT_RECORD_CHUNK_SIZE,
    ):
        if chunk_size <= 0:
            raise ValueError("Chunk size must be positive")
        self.ledger = ledger
        self.builder = builder or InstructionBuilder()
        self.inline_proof_budget = inline_proof_budget
        self.chunk_size = chunk_size

    async def execute(self, operation: ProofOperation) -> list[Receipt]:
        """
        Populate context accounts, submit the primary operation, clean up

        ``operation.stage`` follows the saga and ends at DONE on success;
        after a failure it is left at CLEANUP.

        Returns:
            Receipts of every submission, in order

        Raises:
            RecoverableLeakError: cleanup failed (wrapping any earlier failure)
        """
        receipts: list[Receipt] = []
        contexts: list[ProofContextAccount] = []
        operation.stage = SagaStage.POPULATE
        kind = operation.kind.value

        try:
            for label, artifact in operation.artifacts:
                context = ProofContextAccount(label=label, artifact=artifact)
                contexts.append(context)
                receipts.extend(
                    await self._populate(context, operation.authority, kind)
                )

            operation.stage = SagaStage.EXECUTE
            instructions = operation.build_primary(
                {context.label: context.address for context in contexts}
            )
            receipts.append(
                await self.ledger.submit(
                    instructions, [operation.authority], label=kind
                )
            )
            for context in contexts:
                context.stage = ContextStage.REFERENCED
        except (Exception, asyncio.CancelledError) as error:
            logger.warning("%s failed during %s: %s", kind, operation.stage.value, error)
            operation.stage = SagaStage.CLEANUP
            await self._compensate(contexts, operation.authority, kind, error, receipts)
            raise

        operation.stage = SagaStage.CLEANUP
        try:
            receipts.extend(
                await self.close_context_accounts(
                    contexts, operation.authority, label=f"{kind}:cleanup"
                )
            )
        except Exception as error:
            stranded = self._open(contexts)
            logger.warning(
                "%s succeeded but cleanup left %d context account(s) open",
                kind,
                len(stranded),
            )
            raise RecoverableLeakError(stranded, error, receipts=receipts) from error

        operation.stage = SagaStage.DONE
        logger.info("%s complete with %d transactions", kind, len(receipts))
        return receipts

    async def _compensate(
        self,
        contexts: list[ProofContextAccount],
        authority: Keypair,
        kind: str,
        original: BaseException,
        receipts: list[Receipt],
    ) -> None:
        try:
            receipts.extend(
                await self.close_context_accounts(
                    contexts, authority, label=f"{kind}:cleanup"
                )
            )
        except Exception as cleanup_error:
            raise RecoverableLeakError(
                self._open(contexts),
                cleanup_error,
                original_error=original,
                receipts=receipts,
            ) from original

    @staticmethod
    def _open(contexts: Sequence[ProofContextAccount]) -> list[ProofContextAccount]:
        return [
            context
            for context in contexts
            if context.stage is not ContextStage.CLOSED or context.record_open
        ]

    # =========================================================================
    # Populate
    # =========================================================================

    async def _populate(
        self, context: ProofContextAccount, authority: Keypair, kind: str
    ) -> list[Receipt]:
        if context.artifact.size <= self.inline_proof_budget:
            try:
                return [await self._populate_inline(context, authority, kind)]
            except SizeLimitError:
                logger.warning(
                    "%s proof of %d bytes does not fit one transaction, writing in chunks",
                    context.label,
                    context.artifact.size,
                )
        return await self._populate_chunked(context, authority, kind)

    async def _create_context_instruction(self, context: ProofContextAccount) -> Instruction:
        size = context.artifact.context_state_size
        lamports = await self.ledger.minimum_balance_for_rent_exemption(size)
        return self.builder.create_account(
            self.ledger.payer,
            context.address,
            lamports,
            size,
            ZK_ELGAMAL_PROOF_PROGRAM_ID,
        )

    async def _populate_inline(
        self, context: ProofContextAccount, authority: Keypair, kind: str
    ) -> Receipt:
        instructions = [
            await self._create_context_instruction(context),
            self.builder.verify_proof(
                context.artifact,
                context_account=context.address,
                context_authority=authority.pubkey(),
            ),
        ]
        receipt = await self.ledger.submit(
            instructions, [context.keypair], label=f"{kind}:{context.label}:context"
        )
        context.stage = ContextStage.VERIFIED
        return receipt

    async def _populate_chunked(
        self, context: ProofContextAccount, authority: Keypair, kind: str
    ) -> list[Receipt]:
        receipts = []
        data = context.artifact.data
        context.record = Keypair()
        record = context.record.pubkey()
        owner = authority.pubkey()

        record_size = RECORD_HEADER_SIZE + len(data)
        lamports = await self.ledger.minimum_balance_for_rent_exemption(record_size)
        receipts.append(
            await self.ledger.submit(
                [
                    self.builder.create_account(
                        self.ledger.payer, record, lamports, record_size, RECORD_PROGRAM_ID
                    ),
                    self.builder.initialize_record(record, owner),
                ],
                [context.record],
                label=f"{kind}:{context.label}:record",
            )
        )
        context.record_open = True

        for index, offset in enumerate(range(0, len(data), self.chunk_size)):
            chunk = data[offset : offset + self.chunk_size]
            receipts.append(
                await self.ledger.submit(
                    [self.builder.write_record(record, owner, offset, chunk)],
                    [authority],
                    label=f"{kind}:{context.label}:write:{index}",
                )
            )
        context.stage = ContextStage.POPULATED

        receipts.append(
            await self.ledger.submit(
                [
                    await self._create_context_instruction(context),
                    self.builder.verify_proof_from_account(
                        context.artifact.kind,
                        record,
                        RECORD_HEADER_SIZE,
                        context.address,
                        owner,
                    ),
                ],
                [context.keypair],
                label=f"{kind}:{context.label}:context",
            )
        )
        context.stage = ContextStage.VERIFIED
        return receipts

    # =========================================================================
    # Cleanup
    # =========================================================================

    async def _exists(self, address) -> bool:
        try:
            await self.ledger.fetch(address)
        except AccountNotFoundError:
            return False
        return True

    async def close_context_accounts(
        self,
        contexts: Sequence[ProofContextAccount],
        authority: Keypair,
        label: str = "cleanup",
    ) -> list[Receipt]:
        """
        Close context and record accounts, returning rent to the payer

        Accounts that were never created or are already closed are skipped,
        so this is safe to call again with the ``stranded`` accounts of a
        ``RecoverableLeakError``.

        Returns:
            Receipt of the close transaction, or nothing when no account was open
        """
        instructions = []
        closing = []
        payer = self.ledger.payer
        owner = authority.pubkey()

        for context in contexts:
            if context.stage is not ContextStage.CLOSED:
                if await self._exists(context.address):
                    instructions.append(
                        self.builder.close_context_state(context.address, payer, owner)
                    )
                    closing.append(context)
                else:
                    context.stage = ContextStage.CLOSED
            if context.record_open:
                if await self._exists(context.record_address):
                    instructions.append(
                        self.builder.close_record(context.record_address, owner, payer)
                    )
                    closing.append(context)
                else:
                    context.record_open = False

        if not instructions:
            return []

        receipt = await self.ledger.submit(instructions, [authority], label=label)
        for context in closing:
            context.stage = ContextStage.CLOSED
            context.record_open = False
        logger.info("Closed %d proof account(s)", len(instructions))
        return [receipt]
