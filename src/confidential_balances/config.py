"""Client configuration"""

import json
import os
from dataclasses import dataclass
from typing import Mapping, Optional

from solana.rpc.commitment import Commitment, Confirmed
from solders.keypair import Keypair
from solders.pubkey import Pubkey
from spl.token.constants import TOKEN_2022_PROGRAM_ID

DEFAULT_RPC_URL = "http://127.0.0.1:8899"

# Maximum pending deposits/credits before apply_pending must be called
DEFAULT_MAXIMUM_PENDING_BALANCE_CREDIT_COUNTER = 65536

# Proof artifacts above this size are staged in a record account and
# written in chunks instead of being verified in a single transaction.
DEFAULT_INLINE_PROOF_BUDGET = 800
DEFAULT_RECORD_CHUNK_SIZE = 800


@dataclass
class ClientConfig:
    """Settings for ``ConfidentialTransferClient``"""

    rpc_url: str = DEFAULT_RPC_URL
    commitment: Commitment = Confirmed
    token_program_id: Pubkey = TOKEN_2022_PROGRAM_ID
    maximum_pending_balance_credit_counter: int = (
        DEFAULT_MAXIMUM_PENDING_BALANCE_CREDIT_COUNTER
    )
    inline_proof_budget: int = DEFAULT_INLINE_PROOF_BUDGET
    record_chunk_size: int = DEFAULT_RECORD_CHUNK_SIZE

    def validate(self) -> None:
        """Validate configuration"""
        if self.maximum_pending_balance_credit_counter <= 0:
            raise ValueError("Maximum pending balance credit counter must be positive")
        if self.record_chunk_size <= 0:
            raise ValueError("Record chunk size must be positive")
        if self.inline_proof_budget < 0:
            raise ValueError("Inline proof budget must not be negative")

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "ClientConfig":
        """
        Build configuration from environment variables

        Reads ``SOLANA_RPC_URL``, ``CT_MAX_PENDING_CREDITS``,
        ``CT_INLINE_PROOF_BUDGET`` and ``CT_CHUNK_SIZE``; unset variables
        keep their defaults.
        """
        env = os.environ if environ is None else environ
        config = cls(
            rpc_url=env.get("SOLANA_RPC_URL", DEFAULT_RPC_URL),
            maximum_pending_balance_credit_counter=int(
                env.get(
                    "CT_MAX_PENDING_CREDITS",
                    DEFAULT_MAXIMUM_PENDING_BALANCE_CREDIT_COUNTER,
                )
            ),
            inline_proof_budget=int(
                env.get("CT_INLINE_PROOF_BUDGET", DEFAULT_INLINE_PROOF_BUDGET)
            ),
            record_chunk_size=int(env.get("CT_CHUNK_SIZE", DEFAULT_RECORD_CHUNK_SIZE)),
        )
        config.validate()
        return config

    @property
    def is_local(self) -> bool:
        return "127.0.0.1" in self.rpc_url or "localhost" in self.rpc_url


def load_payer(environ: Optional[Mapping[str, str]] = None) -> Optional[Keypair]:
    """
    Load the fee payer from ``PAYER_KEYPAIR``

    The variable holds the JSON byte array written by ``solana-keygen``.

    Returns:
        Keypair, or None when the variable is unset
    """
    env = os.environ if environ is None else environ
    raw = env.get("PAYER_KEYPAIR")
    if not raw:
        return None
    key_bytes = json.loads(raw)
    if len(key_bytes) != 64:
        raise ValueError(f"Invalid keypair: expected 64 bytes, got {len(key_bytes)}")
    return Keypair.from_bytes(bytes(key_bytes))
