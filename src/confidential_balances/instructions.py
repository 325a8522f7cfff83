"""
Instruction builders

Token-2022 confidential transfer instructions, ZK ElGamal proof program
verify/close instructions and record program instructions used to stage
large proofs.
"""

import struct
from dataclasses import dataclass
from enum import IntEnum
from typing import Optional

from solders.instruction import AccountMeta, Instruction
from solders.pubkey import Pubkey
from solders.system_program import ID as SYSTEM_PROGRAM_ID
from solders.system_program import CreateAccountParams, create_account
from solders.sysvar import INSTRUCTIONS as INSTRUCTIONS_SYSVAR_ID
from spl.token.constants import TOKEN_2022_PROGRAM_ID
import spl.token.instructions as spl_token

from .codec import EXTENSION_CONFIDENTIAL_TRANSFER_ACCOUNT
from .types import AE_CIPHERTEXT_LEN, ELGAMAL_CIPHERTEXT_LEN, ProofArtifact, ProofKind

ZK_ELGAMAL_PROOF_PROGRAM_ID = Pubkey.from_string(
    "ZkE1Gama1Proof11111111111111111111111111111"
)
RECORD_PROGRAM_ID = Pubkey.from_string("recr1L3PCGKLbckBqMNcJhuuyU1zoo8nBMtGHTTBtkJ")

# Token-2022 top-level instructions
TOKEN_INITIALIZE_MINT = 0
TOKEN_MINT_TO = 7
TOKEN_REALLOCATE = 29
TOKEN_CONFIDENTIAL_TRANSFER_EXTENSION = 27

# Proof program
CLOSE_CONTEXT_STATE = 0

# version (1) + authority (32)
RECORD_HEADER_SIZE = 33


class ConfidentialTransferInstruction(IntEnum):
    """Sub-instructions of the confidential transfer extension"""

    INITIALIZE_MINT = 0
    CONFIGURE_ACCOUNT = 2
    DEPOSIT = 5
    WITHDRAW = 6
    TRANSFER = 7
    APPLY_PENDING_BALANCE = 8


class RecordInstruction(IntEnum):
    """Record program instructions"""

    INITIALIZE = 0
    WRITE = 1
    CLOSE_ACCOUNT = 3


@dataclass(frozen=True)
class ProofLocation:
    """
    Where a consuming instruction finds its proof

    Either a verify instruction at a relative ``instruction_offset`` in the
    same transaction, or a verified ``context_account``.
    """

    instruction_offset: int = 0
    context_account: Optional[Pubkey] = None

    @classmethod
    def inline(cls, offset: int) -> "ProofLocation":
        if offset == 0:
            raise ValueError("Inline proof offset must be non-zero")
        return cls(instruction_offset=offset)

    @classmethod
    def context(cls, account: Pubkey) -> "ProofLocation":
        return cls(context_account=account)


def _check_len(value: bytes, expected: int, name: str) -> None:
    if len(value) != expected:
        raise ValueError(f"{name} must be {expected} bytes")


class InstructionBuilder:
    """Builds confidential transfer and proof instructions"""

    def __init__(self, token_program_id: Pubkey = TOKEN_2022_PROGRAM_ID):
        """
        Initialize instruction builder.

        Args:
            token_program_id: The token program owning confidential accounts
        """
        self.token_program_id = token_program_id

    # =========================================================================
    # Token program
    # =========================================================================

    def _token_instruction(
        self, sub: ConfidentialTransferInstruction, payload: bytes, accounts: list
    ) -> Instruction:
        data = bytes([TOKEN_CONFIDENTIAL_TRANSFER_EXTENSION, sub]) + payload
        return Instruction(self.token_program_id, data, accounts)

    @staticmethod
    def _proof_accounts(locations: list[ProofLocation]) -> list[AccountMeta]:
        accounts = []
        if any(location.context_account is None for location in locations):
            accounts.append(
                AccountMeta(INSTRUCTIONS_SYSVAR_ID, is_signer=False, is_writable=False)
            )
        for location in locations:
            if location.context_account is not None:
                accounts.append(
                    AccountMeta(
                        location.context_account, is_signer=False, is_writable=False
                    )
                )
        return accounts

    def initialize_confidential_mint(
        self,
        mint: Pubkey,
        authority: Optional[Pubkey] = None,
        auto_approve_new_accounts: bool = True,
        auditor_elgamal_pubkey: Optional[bytes] = None,
    ) -> Instruction:
        """
        Build the confidential transfer mint extension initializer

        Must precede the base mint initialization in the same transaction.
        """
        if auditor_elgamal_pubkey is not None:
            _check_len(auditor_elgamal_pubkey, 32, "Auditor ElGamal pubkey")
        accounts = [AccountMeta(mint, is_signer=False, is_writable=True)]

        # optional authority (32) + auto approve (bool) + optional auditor key (32)
        payload = (
            (bytes(authority) if authority else bytes(32))
            + bytes([auto_approve_new_accounts])
            + (auditor_elgamal_pubkey or bytes(32))
        )
        return self._token_instruction(
            ConfidentialTransferInstruction.INITIALIZE_MINT, payload, accounts
        )

    def initialize_mint(
        self,
        mint: Pubkey,
        decimals: int,
        mint_authority: Pubkey,
        freeze_authority: Optional[Pubkey] = None,
    ) -> Instruction:
        """Build base mint initialize instruction"""
        return spl_token.initialize_mint(
            spl_token.InitializeMintParams(
                decimals=decimals,
                program_id=self.token_program_id,
                mint=mint,
                mint_authority=mint_authority,
                freeze_authority=freeze_authority,
            )
        )

    def mint_to(
        self, mint: Pubkey, destination: Pubkey, mint_authority: Pubkey, amount: int
    ) -> Instruction:
        """Build mint to instruction crediting the public balance of ``destination``"""
        return spl_token.mint_to(
            spl_token.MintToParams(
                program_id=self.token_program_id,
                mint=mint,
                dest=destination,
                mint_authority=mint_authority,
                amount=amount,
            )
        )

    def reallocate(
        self, token_account: Pubkey, payer: Pubkey, owner: Pubkey
    ) -> Instruction:
        """Build reallocate instruction making room for the confidential extension"""
        accounts = [
            AccountMeta(token_account, is_signer=False, is_writable=True),
            AccountMeta(payer, is_signer=True, is_writable=True),
            AccountMeta(SYSTEM_PROGRAM_ID, is_signer=False, is_writable=False),
            AccountMeta(owner, is_signer=True, is_writable=False),
        ]
        data = bytes([TOKEN_REALLOCATE]) + struct.pack(
            "<H", EXTENSION_CONFIDENTIAL_TRANSFER_ACCOUNT
        )
        return Instruction(self.token_program_id, data, accounts)

    def configure_account(
        self,
        token_account: Pubkey,
        mint: Pubkey,
        decryptable_zero_balance: bytes,
        maximum_pending_balance_credit_counter: int,
        owner: Pubkey,
        proof: ProofLocation,
    ) -> Instruction:
        """Build configure account instruction"""
        _check_len(decryptable_zero_balance, AE_CIPHERTEXT_LEN, "Decryptable balance")

        accounts = [
            AccountMeta(token_account, is_signer=False, is_writable=True),
            AccountMeta(mint, is_signer=False, is_writable=False),
            *self._proof_accounts([proof]),
            AccountMeta(owner, is_signer=True, is_writable=False),
        ]

        # decryptable zero balance (36) + max pending credits (u64) + proof offset (i8)
        payload = (
            decryptable_zero_balance
            + struct.pack("<Q", maximum_pending_balance_credit_counter)
            + struct.pack("<b", proof.instruction_offset)
        )
        return self._token_instruction(
            ConfidentialTransferInstruction.CONFIGURE_ACCOUNT, payload, accounts
        )

    def deposit(
        self,
        token_account: Pubkey,
        mint: Pubkey,
        amount: int,
        decimals: int,
        owner: Pubkey,
    ) -> Instruction:
        """Build deposit instruction (public -> pending)"""
        accounts = [
            AccountMeta(token_account, is_signer=False, is_writable=True),
            AccountMeta(mint, is_signer=False, is_writable=False),
            AccountMeta(owner, is_signer=True, is_writable=False),
        ]
        payload = struct.pack("<QB", amount, decimals)
        return self._token_instruction(
            ConfidentialTransferInstruction.DEPOSIT, payload, accounts
        )

    def apply_pending_balance(
        self,
        token_account: Pubkey,
        expected_pending_balance_credit_counter: int,
        new_decryptable_available_balance: bytes,
        owner: Pubkey,
    ) -> Instruction:
        """Build apply pending balance instruction (pending -> available)"""
        _check_len(
            new_decryptable_available_balance, AE_CIPHERTEXT_LEN, "Decryptable balance"
        )
        accounts = [
            AccountMeta(token_account, is_signer=False, is_writable=True),
            AccountMeta(owner, is_signer=True, is_writable=False),
        ]
        payload = (
            struct.pack("<Q", expected_pending_balance_credit_counter)
            + new_decryptable_available_balance
        )
        return self._token_instruction(
            ConfidentialTransferInstruction.APPLY_PENDING_BALANCE, payload, accounts
        )

    def withdraw(
        self,
        token_account: Pubkey,
        mint: Pubkey,
        amount: int,
        decimals: int,
        new_decryptable_available_balance: bytes,
        owner: Pubkey,
        equality_proof: ProofLocation,
        range_proof: ProofLocation,
    ) -> Instruction:
        """Build withdraw instruction (available -> public)"""
        _check_len(
            new_decryptable_available_balance, AE_CIPHERTEXT_LEN, "Decryptable balance"
        )
        accounts = [
            AccountMeta(token_account, is_signer=False, is_writable=True),
            AccountMeta(mint, is_signer=False, is_writable=False),
            *self._proof_accounts([equality_proof, range_proof]),
            AccountMeta(owner, is_signer=True, is_writable=False),
        ]

        # amount (u64) + decimals (u8) + decryptable balance (36) + 2 proof offsets (i8)
        payload = (
            struct.pack("<QB", amount, decimals)
            + new_decryptable_available_balance
            + struct.pack(
                "<bb", equality_proof.instruction_offset, range_proof.instruction_offset
            )
        )
        return self._token_instruction(
            ConfidentialTransferInstruction.WITHDRAW, payload, accounts
        )

    def transfer(
        self,
        source: Pubkey,
        mint: Pubkey,
        destination: Pubkey,
        new_source_decryptable_available_balance: bytes,
        auditor_ciphertext_lo: bytes,
        auditor_ciphertext_hi: bytes,
        owner: Pubkey,
        equality_proof: ProofLocation,
        validity_proof: ProofLocation,
        range_proof: ProofLocation,
    ) -> Instruction:
        """Build confidential transfer instruction"""
        _check_len(
            new_source_decryptable_available_balance,
            AE_CIPHERTEXT_LEN,
            "Decryptable balance",
        )
        _check_len(auditor_ciphertext_lo, ELGAMAL_CIPHERTEXT_LEN, "Auditor ciphertext")
        _check_len(auditor_ciphertext_hi, ELGAMAL_CIPHERTEXT_LEN, "Auditor ciphertext")

        accounts = [
            AccountMeta(source, is_signer=False, is_writable=True),
            AccountMeta(mint, is_signer=False, is_writable=False),
            AccountMeta(destination, is_signer=False, is_writable=True),
            *self._proof_accounts([equality_proof, validity_proof, range_proof]),
            AccountMeta(owner, is_signer=True, is_writable=False),
        ]
        payload = (
            new_source_decryptable_available_balance
            + auditor_ciphertext_lo
            + auditor_ciphertext_hi
            + struct.pack(
                "<bbb",
                equality_proof.instruction_offset,
                validity_proof.instruction_offset,
                range_proof.instruction_offset,
            )
        )
        return self._token_instruction(
            ConfidentialTransferInstruction.TRANSFER, payload, accounts
        )

    # =========================================================================
    # Proof program
    # =========================================================================

    def verify_proof(
        self,
        artifact: ProofArtifact,
        context_account: Optional[Pubkey] = None,
        context_authority: Optional[Pubkey] = None,
    ) -> Instruction:
        """
        Build a verify instruction carrying the proof inline

        With ``context_account`` the verified context is stored there and
        owned by ``context_authority``.
        """
        accounts = self._context_accounts(context_account, context_authority)
        data = bytes([artifact.kind.value]) + artifact.data
        return Instruction(ZK_ELGAMAL_PROOF_PROGRAM_ID, data, accounts)

    def verify_proof_from_account(
        self,
        kind: ProofKind,
        proof_account: Pubkey,
        offset: int,
        context_account: Pubkey,
        context_authority: Pubkey,
    ) -> Instruction:
        """Build a verify instruction reading the proof from ``proof_account``"""
        accounts = [
            AccountMeta(proof_account, is_signer=False, is_writable=False),
            *self._context_accounts(context_account, context_authority),
        ]
        data = bytes([kind.value]) + struct.pack("<I", offset)
        return Instruction(ZK_ELGAMAL_PROOF_PROGRAM_ID, data, accounts)

    @staticmethod
    def _context_accounts(
        context_account: Optional[Pubkey], context_authority: Optional[Pubkey]
    ) -> list[AccountMeta]:
        if context_account is None:
            return []
        if context_authority is None:
            raise ValueError("Context authority required with a context account")
        return [
            AccountMeta(context_account, is_signer=False, is_writable=True),
            AccountMeta(context_authority, is_signer=False, is_writable=False),
        ]

    def close_context_state(
        self, context_account: Pubkey, destination: Pubkey, authority: Pubkey
    ) -> Instruction:
        """Build close context state instruction returning rent to ``destination``"""
        accounts = [
            AccountMeta(context_account, is_signer=False, is_writable=True),
            AccountMeta(destination, is_signer=False, is_writable=True),
            AccountMeta(authority, is_signer=True, is_writable=False),
        ]
        return Instruction(
            ZK_ELGAMAL_PROOF_PROGRAM_ID, bytes([CLOSE_CONTEXT_STATE]), accounts
        )

    # =========================================================================
    # Record program
    # =========================================================================

    def initialize_record(self, record: Pubkey, authority: Pubkey) -> Instruction:
        """Build record initialize instruction"""
        accounts = [
            AccountMeta(record, is_signer=False, is_writable=True),
            AccountMeta(authority, is_signer=False, is_writable=False),
        ]
        return Instruction(
            RECORD_PROGRAM_ID, bytes([RecordInstruction.INITIALIZE]), accounts
        )

    def write_record(
        self, record: Pubkey, authority: Pubkey, offset: int, chunk: bytes
    ) -> Instruction:
        """Build record write instruction for one chunk"""
        accounts = [
            AccountMeta(record, is_signer=False, is_writable=True),
            AccountMeta(authority, is_signer=True, is_writable=False),
        ]
        # offset (u64) + length-prefixed chunk
        data = (
            bytes([RecordInstruction.WRITE])
            + struct.pack("<QI", offset, len(chunk))
            + chunk
        )
        return Instruction(RECORD_PROGRAM_ID, data, accounts)

    def close_record(
        self, record: Pubkey, authority: Pubkey, destination: Pubkey
    ) -> Instruction:
        """Build record close instruction returning rent to ``destination``"""
        accounts = [
            AccountMeta(record, is_signer=False, is_writable=True),
            AccountMeta(authority, is_signer=True, is_writable=False),
            AccountMeta(destination, is_signer=False, is_writable=True),
        ]
        return Instruction(
            RECORD_PROGRAM_ID, bytes([RecordInstruction.CLOSE_ACCOUNT]), accounts
        )

    # =========================================================================
    # System program
    # =========================================================================

    @staticmethod
    def create_account(
        payer: Pubkey, account: Pubkey, lamports: int, space: int, owner: Pubkey
    ) -> Instruction:
        """Build system create account instruction"""
        return create_account(
            CreateAccountParams(
                from_pubkey=payer,
                to_pubkey=account,
                lamports=lamports,
                space=space,
                owner=owner,
            )
        )
