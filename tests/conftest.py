"""
Shared fixtures: an in-memory ledger and a deterministic crypto engine

The fake ledger runs the instructions produced by ``InstructionBuilder``
against account bytes encoded with the real codec, so tests exercise the
same wire format a validator would see. Every submission goes through
``build_transaction`` and is therefore size and signer checked.

The fake engine is not cryptography: an ElGamal "ciphertext" is the
public key followed by the plaintext, which lets the ledger add to it
the way the token program adds ciphertexts.
"""

import hashlib
import struct
from typing import Callable, Optional

import pytest
from solders.hash import Hash
from solders.instruction import Instruction
from solders.keypair import Keypair
from solders.pubkey import Pubkey
from solders.system_program import ID as SYSTEM_PROGRAM_ID
from spl.token.constants import ASSOCIATED_TOKEN_PROGRAM_ID, TOKEN_2022_PROGRAM_ID
from spl.token._layouts import MINT_LAYOUT

from confidential_balances import codec
from confidential_balances.client import ConfidentialTransferClient
from confidential_balances.errors import (
    AccountNotFoundError,
    SubmissionError,
)
from confidential_balances.instructions import (
    CLOSE_CONTEXT_STATE,
    RECORD_HEADER_SIZE,
    RECORD_PROGRAM_ID,
    TOKEN_CONFIDENTIAL_TRANSFER_EXTENSION,
    TOKEN_INITIALIZE_MINT,
    TOKEN_MINT_TO,
    TOKEN_REALLOCATE,
    ZK_ELGAMAL_PROOF_PROGRAM_ID,
    ConfidentialTransferInstruction,
    RecordInstruction,
)
from confidential_balances.solana_client import build_transaction
from confidential_balances.token_utils import get_associated_token_address
from confidential_balances.types import (
    CONTEXT_STATE_HEADER_SIZE,
    ELGAMAL_CIPHERTEXT_LEN,
    ZERO_ELGAMAL_CIPHERTEXT,
    ConfidentialAccountState,
    ElGamalKeypair,
    MintConfidentialConfig,
    ProofArtifact,
    ProofBundle,
    ProofKind,
    Receipt,
)

# =============================================================================
# Fake crypto engine
# =============================================================================


def fake_ciphertext(amount: int, public_key: bytes) -> bytes:
    return public_key + amount.to_bytes(8, "little") + bytes(24)


def fake_value(ciphertext: bytes) -> int:
    if ciphertext == ZERO_ELGAMAL_CIPHERTEXT:
        return 0
    return int.from_bytes(ciphertext[32:40], "little")


def fake_add(ciphertext: bytes, amount: int, public_key: bytes) -> bytes:
    return fake_ciphertext(fake_value(ciphertext) + amount, public_key)


def fake_sub(ciphertext: bytes, amount: int, public_key: bytes) -> bytes:
    return fake_ciphertext(fake_value(ciphertext) - amount, public_key)


class FakeCryptoEngine:
    """Deterministic stand-in for a zero-knowledge SDK binding"""

    def __init__(
        self,
        equality_size: int = 128,
        validity_size: int = 192,
        range_size: int = 256,
        fail_proofs: bool = False,
    ):
        self.equality_size = equality_size
        self.validity_size = validity_size
        self.range_size = range_size
        self.fail_proofs = fail_proofs
        self.proof_calls: list[str] = []

    def elgamal_public_key(self, secret: bytes) -> bytes:
        return hashlib.sha256(b"pub" + secret).digest()

    def encrypt_asym(self, amount: int, public_key: bytes) -> bytes:
        return fake_ciphertext(amount, public_key)

    def decrypt_asym(self, ciphertext: bytes, secret: bytes) -> Optional[int]:
        if ciphertext == ZERO_ELGAMAL_CIPHERTEXT:
            return 0
        if ciphertext[:32] != self.elgamal_public_key(secret):
            return None
        return fake_value(ciphertext)

    @staticmethod
    def _tag(key: bytes) -> bytes:
        return hashlib.sha256(b"ae" + key).digest()[:4]

    def encrypt_sym(self, amount: int, key: bytes) -> bytes:
        return self._tag(key) + amount.to_bytes(8, "little") + bytes(24)

    def decrypt_sym(self, ciphertext: bytes, key: bytes) -> Optional[int]:
        if ciphertext[:4] != self._tag(key):
            return None
        return int.from_bytes(ciphertext[4:12], "little")

    def _check(self, name: str) -> None:
        self.proof_calls.append(name)
        if self.fail_proofs:
            raise RuntimeError("prover unavailable")

    @staticmethod
    def _padded(prefix: bytes, size: int) -> bytes:
        return prefix + bytes(max(size - len(prefix), 0))

    def generate_key_validity_proof(self, keypair: ElGamalKeypair) -> ProofArtifact:
        self._check("key_validity")
        return ProofArtifact(ProofKind.PUBKEY_VALIDITY, self._padded(keypair.public, 64))

    def generate_withdraw_proof(self, available_ciphertext, amount, keypair, ae_key):
        self._check("withdraw")
        return ProofBundle(
            equality=ProofArtifact(
                ProofKind.CIPHERTEXT_COMMITMENT_EQUALITY,
                self._padded(b"E", self.equality_size),
            ),
            range=ProofArtifact(
                ProofKind.BATCHED_RANGE_PROOF_U64, self._padded(b"R", self.range_size)
            ),
        )

    def generate_split_transfer_proof(
        self,
        available_ciphertext,
        amount,
        keypair,
        ae_key,
        recipient_public_key,
        auditor_public_key=None,
    ):
        self._check("transfer")
        # The validity context carries the amount for the fake ledger to credit
        validity = b"V" + amount.to_bytes(8, "little") + recipient_public_key
        lo, hi = amount & 0xFFFF, amount >> 16
        return ProofBundle(
            equality=ProofArtifact(
                ProofKind.CIPHERTEXT_COMMITMENT_EQUALITY,
                self._padded(b"E", self.equality_size),
            ),
            validity=ProofArtifact(
                ProofKind.BATCHED_GROUPED_CIPHERTEXT_3_HANDLES_VALIDITY,
                self._padded(validity, self.validity_size),
            ),
            range=ProofArtifact(
                ProofKind.BATCHED_RANGE_PROOF_U128, self._padded(b"R", self.range_size)
            ),
            auditor_ciphertext_lo=(
                fake_ciphertext(lo, auditor_public_key) if auditor_public_key else None
            ),
            auditor_ciphertext_hi=(
                fake_ciphertext(hi, auditor_public_key) if auditor_public_key else None
            ),
        )


# =============================================================================
# Fake ledger
# =============================================================================


class FakeLedger:
    """
    In-memory ledger interpreting token, proof, record and system instructions

    Each submission applies atomically. ``fail_labels`` maps a submission
    label to an exception raised (once) instead of applying it, and
    ``on_submit`` to a callback run (once) just before it applies.

    A stale apply pending is accepted and recorded in the expected and
    actual counters, as the token program does; with
    ``reject_stale_apply`` it fails the transaction instead.
    """

    def __init__(self, payer: Optional[Keypair] = None, reject_stale_apply: bool = False):
        self._payer = payer or Keypair()
        self.blockhash = Hash.new_unique()
        self.accounts: dict[Pubkey, bytes] = {}
        self.programs: dict[Pubkey, Pubkey] = {}
        self.receipts: list[Receipt] = []
        self.fail_labels: dict[str, BaseException] = {}
        self.on_submit: dict[str, Callable[[], None]] = {}
        self.reject_stale_apply = reject_stale_apply

    # -- LedgerClient -------------------------------------------------------

    @property
    def payer(self) -> Pubkey:
        return self._payer.pubkey()

    async def fetch(self, address: Pubkey) -> bytes:
        if address not in self.accounts:
            raise AccountNotFoundError(address)
        return self.accounts[address]

    async def latest_ordering_token(self) -> Hash:
        return self.blockhash

    async def minimum_balance_for_rent_exemption(self, size: int) -> int:
        return (size + 128) * 6960

    async def submit(self, instructions, signers, label: str = "") -> Receipt:
        tx = build_transaction(instructions, self._payer, signers, self.blockhash, label)
        if label in self.fail_labels:
            raise self.fail_labels.pop(label)
        if label in self.on_submit:
            self.on_submit.pop(label)()

        accounts = dict(self.accounts)
        programs = dict(self.programs)
        for index, instruction in enumerate(instructions):
            self._execute(instructions, index, instruction, accounts, programs, label)
        self.accounts = accounts
        self.programs = programs

        receipt = Receipt(signature=str(tx.signatures[0]), label=label)
        self.receipts.append(receipt)
        return receipt

    # -- Setup helpers ------------------------------------------------------

    @property
    def labels(self) -> list[str]:
        return [receipt.label for receipt in self.receipts]

    def create_mint(
        self,
        decimals: int = 9,
        auto_approve: bool = True,
        auditor: Optional[bytes] = None,
    ) -> Pubkey:
        address = Keypair().pubkey()
        config = MintConfidentialConfig(
            address=address,
            decimals=decimals,
            auto_approve_new_accounts=auto_approve,
            auditor_elgamal_pubkey=auditor,
        )
        self.accounts[address] = codec.encode_mint(config)
        self.programs[address] = TOKEN_2022_PROGRAM_ID
        return address

    def create_token_account(self, owner: Pubkey, mint: Pubkey, amount: int = 0) -> Pubkey:
        address = get_associated_token_address(owner, mint)
        state = ConfidentialAccountState(
            address=address, owner_authority=owner, mint=mint, public_balance=amount
        )
        self.accounts[address] = codec.encode(state)
        self.programs[address] = TOKEN_2022_PROGRAM_ID
        return address

    def state(self, address: Pubkey) -> ConfidentialAccountState:
        return codec.decode(address, self.accounts[address])

    def credit(self, address: Pubkey, amount: int) -> None:
        """Land a confidential credit outside any client, as a concurrent sender would"""
        state = self.state(address)
        self.accounts[address] = codec.encode(
            self._credit_pending(state, amount), self.accounts[address]
        )

    def open_proof_accounts(self) -> list[Pubkey]:
        return [
            address
            for address, program in self.programs.items()
            if program in (ZK_ELGAMAL_PROOF_PROGRAM_ID, RECORD_PROGRAM_ID)
        ]

    # -- Interpreter --------------------------------------------------------

    @staticmethod
    def _fail(message: str, label: str):
        raise SubmissionError(message, label)

    def _execute(self, instructions, index, ix: Instruction, accounts, programs, label):
        program = ix.program_id
        if program == SYSTEM_PROGRAM_ID:
            self._system(ix, accounts, programs, label)
        elif program == ASSOCIATED_TOKEN_PROGRAM_ID:
            self._associated_token(ix, accounts, programs, label)
        elif program == RECORD_PROGRAM_ID:
            self._record(ix, accounts, programs, label)
        elif program == ZK_ELGAMAL_PROOF_PROGRAM_ID:
            self._proof(ix, accounts, programs, label)
        elif program == TOKEN_2022_PROGRAM_ID:
            self._token(instructions, index, ix, accounts, programs, label)
        else:
            self._fail(f"Unknown program {program}", label)

    def _system(self, ix, accounts, programs, label):
        _, _lamports, space = struct.unpack_from("<IQQ", bytes(ix.data))
        owner = Pubkey(bytes(ix.data)[20:52])
        new = ix.accounts[1].pubkey
        if new in accounts:
            self._fail(f"Account {new} already in use", label)
        accounts[new] = bytes(space)
        programs[new] = owner

    def _associated_token(self, ix, accounts, programs, label):
        address = ix.accounts[1].pubkey
        if address in accounts:
            self._fail(f"Token account {address} already exists", label)
        state = ConfidentialAccountState(
            address=address,
            owner_authority=ix.accounts[2].pubkey,
            mint=ix.accounts[3].pubkey,
            public_balance=0,
        )
        accounts[address] = codec.encode(state)
        programs[address] = TOKEN_2022_PROGRAM_ID

    def _record(self, ix, accounts, programs, label):
        data = bytes(ix.data)
        record = ix.accounts[0].pubkey
        if programs.get(record) != RECORD_PROGRAM_ID:
            self._fail(f"Record {record} does not exist", label)
        raw = bytearray(accounts[record])

        if data[0] == RecordInstruction.INITIALIZE:
            raw[0:RECORD_HEADER_SIZE] = b"\x01" + bytes(ix.accounts[1].pubkey)
            accounts[record] = bytes(raw)
            return
        if bytes(raw[1:RECORD_HEADER_SIZE]) != bytes(ix.accounts[1].pubkey):
            self._fail("Record authority mismatch", label)
        if data[0] == RecordInstruction.WRITE:
            offset, length = struct.unpack_from("<QI", data, 1)
            start = RECORD_HEADER_SIZE + offset
            if start + length > len(raw):
                self._fail("Record write out of bounds", label)
            raw[start : start + length] = data[13 : 13 + length]
            accounts[record] = bytes(raw)
        elif data[0] == RecordInstruction.CLOSE_ACCOUNT:
            del accounts[record]
            del programs[record]

    def _proof(self, ix, accounts, programs, label):
        data = bytes(ix.data)
        metas = ix.accounts
        if data[0] == CLOSE_CONTEXT_STATE:
            context = metas[0].pubkey
            if programs.get(context) != ZK_ELGAMAL_PROOF_PROGRAM_ID:
                self._fail(f"Context {context} does not exist", label)
            if accounts[context][:32] != bytes(metas[2].pubkey):
                self._fail("Context authority mismatch", label)
            del accounts[context]
            del programs[context]
            return

        kind = data[0]
        if len(metas) == 3:
            (offset,) = struct.unpack_from("<I", data, 1)
            proof = accounts[metas[0].pubkey][offset:]
            metas = metas[1:]
        else:
            proof = data[1:]
        if not proof:
            self._fail("Empty proof", label)
        if not metas:
            return

        context, authority = metas[0].pubkey, metas[1].pubkey
        if programs.get(context) != ZK_ELGAMAL_PROOF_PROGRAM_ID:
            self._fail(f"Context {context} not allocated", label)
        size = len(accounts[context])
        body = proof[: size - CONTEXT_STATE_HEADER_SIZE]
        accounts[context] = (
            bytes(authority) + bytes([kind]) + body + bytes(size - 33 - len(body))
        )

    # -- Token program ------------------------------------------------------

    @staticmethod
    def _credit_pending(state, amount):
        public_key = state.elgamal_pubkey
        return state.evolve(
            pending_balance_lo=fake_add(state.pending_balance_lo, amount & 0xFFFF, public_key),
            pending_balance_hi=fake_add(state.pending_balance_hi, amount >> 16, public_key),
            pending_balance_credit_counter=state.pending_balance_credit_counter + 1,
        )

    def _proofs(self, instructions, index, ix, offsets, kinds, accounts, programs, label):
        """Resolve proof data from inline verify instructions or context accounts"""
        contexts = [
            meta.pubkey
            for meta in ix.accounts
            if programs.get(meta.pubkey) == ZK_ELGAMAL_PROOF_PROGRAM_ID
        ]
        proofs = []
        for offset, kind in zip(offsets, kinds):
            if offset:
                verify = instructions[index + offset]
                data = bytes(verify.data)
                if verify.program_id != ZK_ELGAMAL_PROOF_PROGRAM_ID or data[0] != kind.value:
                    self._fail(f"Missing inline {kind.name} proof", label)
                proofs.append(data[1:])
            else:
                if not contexts:
                    self._fail(f"Missing {kind.name} context", label)
                raw = accounts[contexts.pop(0)]
                if raw[32] != kind.value:
                    self._fail(f"Context holds wrong proof for {kind.name}", label)
                proofs.append(raw[CONTEXT_STATE_HEADER_SIZE:])
        return proofs

    def _mint(self, ix, accounts, label):
        data = bytes(ix.data)
        mint = ix.accounts[0].pubkey
        raw = bytearray(accounts[mint])

        if data[0] == TOKEN_CONFIDENTIAL_TRANSFER_EXTENSION:
            if len(raw) != codec.CONFIDENTIAL_MINT_SIZE or any(raw):
                self._fail(f"Mint {mint} is not a fresh mint account", label)
            raw[codec.ACCOUNT_TYPE_OFFSET] = codec.ACCOUNT_TYPE_MINT
            entry = codec.TLV_HEADER.pack(
                codec.EXTENSION_CONFIDENTIAL_TRANSFER_MINT,
                codec.CONFIDENTIAL_TRANSFER_MINT_SIZE,
            )
            raw[codec.TLV_START :] = entry + data[2:]
        elif data[0] == TOKEN_INITIALIZE_MINT:
            base = MINT_LAYOUT.parse(bytes(raw[: codec.BASE_MINT_SIZE]))
            if base.is_initialized:
                self._fail(f"Mint {mint} already initialized", label)
            raw[: codec.BASE_MINT_SIZE] = MINT_LAYOUT.build(
                {
                    "mint_authority_option": 1,
                    "mint_authority": data[2:34],
                    "supply": 0,
                    "decimals": data[1],
                    "is_initialized": 1,
                    "freeze_authority_option": data[34],
                    "freeze_authority": data[35:67],
                }
            )
        else:
            (amount,) = struct.unpack_from("<Q", data, 1)
            base = MINT_LAYOUT.parse(bytes(raw[: codec.BASE_MINT_SIZE]))
            if bytes(base.mint_authority) != bytes(ix.accounts[2].pubkey):
                self._fail("Mint authority mismatch", label)
            destination = ix.accounts[1].pubkey
            if destination not in accounts:
                self._fail(f"Token account {destination} does not exist", label)
            state = codec.decode(destination, accounts[destination])
            accounts[destination] = codec.encode(
                state.evolve(public_balance=state.public_balance + amount),
                accounts[destination],
            )
            raw[: codec.BASE_MINT_SIZE] = MINT_LAYOUT.build(
                {
                    "mint_authority_option": base.mint_authority_option,
                    "mint_authority": base.mint_authority,
                    "supply": base.supply + amount,
                    "decimals": base.decimals,
                    "is_initialized": base.is_initialized,
                    "freeze_authority_option": base.freeze_authority_option,
                    "freeze_authority": base.freeze_authority,
                }
            )
        accounts[mint] = bytes(raw)

    def _token(self, instructions, index, ix, accounts, programs, label):
        data = bytes(ix.data)
        address = ix.accounts[0].pubkey
        if address not in accounts:
            self._fail(f"Token account {address} does not exist", label)
        if data[0] in (TOKEN_INITIALIZE_MINT, TOKEN_MINT_TO) or (
            data[0] == TOKEN_CONFIDENTIAL_TRANSFER_EXTENSION
            and data[1] == ConfidentialTransferInstruction.INITIALIZE_MINT
        ):
            self._mint(ix, accounts, label)
            return
        if data[0] == TOKEN_REALLOCATE:
            return
        if data[0] != TOKEN_CONFIDENTIAL_TRANSFER_EXTENSION:
            self._fail(f"Unsupported token instruction {data[0]}", label)

        state = codec.decode(address, accounts[address])
        if ix.accounts[-1].pubkey != state.owner_authority:
            self._fail("Owner mismatch", label)
        sub, payload = data[1], data[2:]
        if sub != ConfidentialTransferInstruction.CONFIGURE_ACCOUNT and not state.configured:
            self._fail(f"Token account {address} is not configured", label)

        if sub == ConfidentialTransferInstruction.CONFIGURE_ACCOUNT:
            if state.configured:
                self._fail("Account already configured", label)
            (maximum,) = struct.unpack_from("<Q", payload, 36)
            (offset,) = struct.unpack_from("<b", payload, 44)
            (proof,) = self._proofs(
                instructions,
                index,
                ix,
                [offset],
                [ProofKind.PUBKEY_VALIDITY],
                accounts,
                programs,
                label,
            )
            mint = codec.decode_mint(ix.accounts[1].pubkey, accounts[ix.accounts[1].pubkey])
            state = state.evolve(
                configured=True,
                approved=mint.auto_approve_new_accounts,
                elgamal_pubkey=proof[:32],
                decryptable_available_balance=payload[:36],
                allow_confidential_credits=True,
                allow_non_confidential_credits=True,
                maximum_pending_balance_credit_counter=maximum,
            )

        elif sub == ConfidentialTransferInstruction.DEPOSIT:
            amount, _decimals = struct.unpack_from("<QB", payload)
            if amount > state.public_balance:
                self._fail("Insufficient funds", label)
            if state.pending_balance_credit_counter >= state.maximum_pending_balance_credit_counter:
                self._fail("Maximum pending balance credit counter exceeded", label)
            state = self._credit_pending(state, amount).evolve(
                public_balance=state.public_balance - amount
            )

        elif sub == ConfidentialTransferInstruction.APPLY_PENDING_BALANCE:
            (expected,) = struct.unpack_from("<Q", payload)
            if self.reject_stale_apply and expected != state.pending_balance_credit_counter:
                self._fail(
                    "Pending balance credit counter mismatch: "
                    f"expected {expected}, ledger has {state.pending_balance_credit_counter}",
                    label,
                )
            pending = fake_value(state.pending_balance_lo) + (
                fake_value(state.pending_balance_hi) << 16
            )
            state = state.evolve(
                available_balance=fake_add(
                    state.available_balance, pending, state.elgamal_pubkey
                ),
                decryptable_available_balance=payload[8:44],
                pending_balance_lo=ZERO_ELGAMAL_CIPHERTEXT,
                pending_balance_hi=ZERO_ELGAMAL_CIPHERTEXT,
                pending_balance_credit_counter=0,
                expected_pending_balance_credit_counter=expected,
                actual_pending_balance_credit_counter=state.pending_balance_credit_counter,
            )

        elif sub == ConfidentialTransferInstruction.WITHDRAW:
            amount, _decimals = struct.unpack_from("<QB", payload)
            offsets = struct.unpack_from("<bb", payload, 45)
            self._proofs(
                instructions,
                index,
                ix,
                offsets,
                [ProofKind.CIPHERTEXT_COMMITMENT_EQUALITY, ProofKind.BATCHED_RANGE_PROOF_U64],
                accounts,
                programs,
                label,
            )
            if amount > fake_value(state.available_balance):
                self._fail("Insufficient confidential funds", label)
            state = state.evolve(
                public_balance=state.public_balance + amount,
                available_balance=fake_sub(
                    state.available_balance, amount, state.elgamal_pubkey
                ),
                decryptable_available_balance=payload[9:45],
            )

        elif sub == ConfidentialTransferInstruction.TRANSFER:
            offsets = struct.unpack_from("<bbb", payload, 36 + 2 * ELGAMAL_CIPHERTEXT_LEN)
            _, validity, _ = self._proofs(
                instructions,
                index,
                ix,
                offsets,
                [
                    ProofKind.CIPHERTEXT_COMMITMENT_EQUALITY,
                    ProofKind.BATCHED_GROUPED_CIPHERTEXT_3_HANDLES_VALIDITY,
                    ProofKind.BATCHED_RANGE_PROOF_U128,
                ],
                accounts,
                programs,
                label,
            )
            amount = int.from_bytes(validity[1:9], "little")
            destination_address = ix.accounts[2].pubkey
            destination = codec.decode(destination_address, accounts[destination_address])
            if not (
                destination.configured
                and destination.approved
                and destination.allow_confidential_credits
            ):
                self._fail("Destination cannot receive confidential credits", label)
            if bytes(validity[9:41]) != destination.elgamal_pubkey:
                self._fail("Validity proof is for another recipient", label)
            if (
                destination.pending_balance_credit_counter
                >= destination.maximum_pending_balance_credit_counter
            ):
                self._fail("Maximum pending balance credit counter exceeded", label)
            if amount > fake_value(state.available_balance):
                self._fail("Insufficient confidential funds", label)
            state = state.evolve(
                available_balance=fake_sub(
                    state.available_balance, amount, state.elgamal_pubkey
                ),
                decryptable_available_balance=payload[:36],
            )
            accounts[destination_address] = codec.encode(
                self._credit_pending(destination, amount),
                accounts[destination_address],
            )

        else:
            self._fail(f"Unsupported confidential transfer instruction {sub}", label)

        accounts[address] = codec.encode(state, accounts[address])


# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture
def engine():
    return FakeCryptoEngine()


@pytest.fixture
def ledger():
    return FakeLedger()


@pytest.fixture
def mint(ledger):
    return ledger.create_mint(decimals=9)


@pytest.fixture
def alice():
    return Keypair()


@pytest.fixture
def bob():
    return Keypair()


@pytest.fixture
def client(ledger, engine):
    return ConfidentialTransferClient(ledger, engine)
