"""
Token account utilities

Associated token account derivation and creation for Token-2022 mints.
"""

from solders.instruction import Instruction
from solders.pubkey import Pubkey
from spl.token.constants import ASSOCIATED_TOKEN_PROGRAM_ID, TOKEN_2022_PROGRAM_ID
import spl.token.instructions as spl_token


def get_associated_token_address(
    owner: Pubkey,
    mint: Pubkey,
    token_program_id: Pubkey = TOKEN_2022_PROGRAM_ID,
) -> Pubkey:
    """
    Derive the associated token account address for an owner and mint.

    Args:
        owner: The owner's public key
        mint: The token mint public key
        token_program_id: Token program owning the mint

    Returns:
        The derived ATA public key
    """
    # Find PDA: [owner, token_program, mint]
    seeds = [
        bytes(owner),
        bytes(token_program_id),
        bytes(mint),
    ]
    ata, _ = Pubkey.find_program_address(seeds, ASSOCIATED_TOKEN_PROGRAM_ID)
    return ata


def create_associated_token_account(
    payer: Pubkey,
    owner: Pubkey,
    mint: Pubkey,
    token_program_id: Pubkey = TOKEN_2022_PROGRAM_ID,
) -> Instruction:
    """Build the instruction creating ``owner``'s associated token account"""
    return spl_token.create_associated_token_account(
        payer=payer,
        owner=owner,
        mint=mint,
        token_program_id=token_program_id,
    )
