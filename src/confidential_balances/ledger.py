"""Ledger interface consumed by the state machine and choreographer"""

from typing import Any, Protocol, Sequence

from solders.instruction import Instruction
from solders.keypair import Keypair
from solders.pubkey import Pubkey

from .types import Receipt


class LedgerClient(Protocol):
    """
    Submit-and-confirm access to the ledger

    ``submit`` returns only once the transaction is confirmed, so every
    later submission observes its effects. Implementations raise
    ``SizeLimitError`` for oversized transactions, ``SubmissionError``
    for other failures and ``AccountNotFoundError`` from ``fetch``.
    """

    @property
    def payer(self) -> Pubkey:
        """Fee payer, also funding and receiving rent of ephemeral accounts"""

    async def fetch(self, address: Pubkey) -> bytes:
        """Raw account data"""

    async def submit(
        self,
        instructions: Sequence[Instruction],
        signers: Sequence[Keypair],
        label: str = "",
    ) -> Receipt:
        """Submit instructions as one atomic transaction and wait for confirmation"""

    async def latest_ordering_token(self) -> Any:
        """Value making the next submission valid (recent blockhash)"""

    async def minimum_balance_for_rent_exemption(self, size: int) -> int:
        """Lamports an account of ``size`` bytes must hold"""
