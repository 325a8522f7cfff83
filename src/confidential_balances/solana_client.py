"""
Solana ledger client

Implements ``LedgerClient`` on top of the solana-py async RPC client:
- Transaction building, signing and size checking
- Submission with confirmation
- Account and rent lookups
"""

import logging
from typing import Optional, Sequence

from solana.exceptions import SolanaRpcException
from solana.rpc.async_api import AsyncClient
from solana.rpc.commitment import Commitment, Confirmed
from solana.rpc.core import (
    RPCException,
    TransactionExpiredBlockheightExceededError,
    UnconfirmedTxError,
)
from solana.rpc.types import TxOpts
from solders.hash import Hash
from solders.instruction import Instruction
from solders.keypair import Keypair
from solders.message import Message
from solders.pubkey import Pubkey
from solders.transaction import Transaction

from .config import DEFAULT_RPC_URL
from .errors import AccountNotFoundError, SizeLimitError, SubmissionError
from .types import Receipt, TransactionStatus

logger = logging.getLogger(__name__)

# Maximum serialized transaction size accepted by the network
PACKET_DATA_SIZE = 1232

RPC_ERRORS = (
    RPCException,
    SolanaRpcException,
    UnconfirmedTxError,
    TransactionExpiredBlockheightExceededError,
)


def build_transaction(
    instructions: Sequence[Instruction],
    payer: Keypair,
    signers: Sequence[Keypair],
    blockhash: Hash,
    label: Optional[str] = None,
) -> Transaction:
    """
    Build and sign a transaction, checking its serialized size

    Only keypairs whose signature the message requires are used; a
    required signer missing from ``signers`` is an error.

    Raises:
        SizeLimitError: serialized transaction exceeds PACKET_DATA_SIZE
        SubmissionError: a required signer was not supplied
    """
    message = Message.new_with_blockhash(list(instructions), payer.pubkey(), blockhash)
    required = list(message.account_keys[: message.header.num_required_signatures])

    available = {}
    for keypair in [payer, *signers]:
        available.setdefault(keypair.pubkey(), keypair)
    missing = [key for key in required if key not in available]
    if missing:
        raise SubmissionError(
            f"Missing signer(s): {', '.join(str(key) for key in missing)}", label
        )

    tx = Transaction([available[key] for key in required], message, blockhash)
    size = len(bytes(tx))
    if size > PACKET_DATA_SIZE:
        raise SizeLimitError(size, PACKET_DATA_SIZE, label)
    return tx


class SolanaClient:
    """
    Ledger client backed by a Solana RPC node

    Every submission is confirmed before ``submit`` returns.
    """

    def __init__(
        self,
        payer: Keypair,
        rpc_url: str = DEFAULT_RPC_URL,
        commitment: Commitment = Confirmed,
    ):
        """
        Initialize Solana client

        Args:
            payer: Fee payer keypair
            rpc_url: Solana RPC endpoint
            commitment: Commitment level for reads and confirmation
        """
        self.rpc_url = rpc_url
        self.commitment = commitment
        self.client = AsyncClient(rpc_url, commitment=commitment)
        self._payer = payer

    @property
    def payer(self) -> Pubkey:
        return self._payer.pubkey()

    async def latest_ordering_token(self) -> Hash:
        """Get recent blockhash for transaction"""
        try:
            response = await self.client.get_latest_blockhash(
                commitment=self.commitment
            )
        except RPC_ERRORS as e:
            raise SubmissionError(f"Failed to get blockhash: {e}") from e
        return response.value.blockhash

    async def fetch(self, address: Pubkey) -> bytes:
        """
        Get raw account data

        Raises:
            AccountNotFoundError: account does not exist
            SubmissionError: the RPC request failed
        """
        try:
            response = await self.client.get_account_info(
                address, commitment=self.commitment
            )
        except RPC_ERRORS as e:
            raise SubmissionError(f"Failed to fetch {address}: {e}") from e
        if response.value is None:
            raise AccountNotFoundError(address)
        return bytes(response.value.data)

    async def minimum_balance_for_rent_exemption(self, size: int) -> int:
        try:
            response = await self.client.get_minimum_balance_for_rent_exemption(
                size, commitment=self.commitment
            )
        except RPC_ERRORS as e:
            raise SubmissionError(f"Failed to get rent for {size} bytes: {e}") from e
        return response.value

    async def submit(
        self,
        instructions: Sequence[Instruction],
        signers: Sequence[Keypair],
        label: str = "",
    ) -> Receipt:
        """
        Send instructions as one transaction and wait for confirmation

        Returns:
            Receipt with the transaction signature
        """
        blockhash = await self.latest_ordering_token()
        tx = build_transaction(instructions, self._payer, signers, blockhash, label)

        try:
            response = await self.client.send_transaction(
                tx, opts=TxOpts(preflight_commitment=self.commitment)
            )
            signature = response.value
            confirmation = await self.client.confirm_transaction(
                signature, commitment=self.commitment
            )
        except RPC_ERRORS as e:
            raise SubmissionError(str(e), label) from e

        status = confirmation.value[0] if confirmation.value else None
        if status is not None and status.err is not None:
            raise SubmissionError(f"Transaction {signature} failed: {status.err}", label)

        logger.info("Confirmed %s: %s", label or "transaction", signature)
        return Receipt(
            signature=str(signature), label=label, status=TransactionStatus.CONFIRMED
        )

    async def close(self) -> None:
        """Close RPC connection"""
        await self.client.close()
