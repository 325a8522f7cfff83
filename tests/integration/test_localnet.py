"""
Integration tests against a local validator

Requires solana-test-validator with Token-2022 and the ZK ElGamal proof
program, a funded PAYER_KEYPAIR and a crypto engine binding named by
CT_ENGINE ("module:attribute"). Skipped otherwise. Each test creates its
own confidential mint with the payer as mint authority.
"""

import os

import pytest
from solders.keypair import Keypair

from confidential_balances import ClientConfig, ConfidentialTransferClient, load_payer
from confidential_balances.utils import load_object

requires_localnet = pytest.mark.skipif(
    not (os.environ.get("PAYER_KEYPAIR") and os.environ.get("CT_ENGINE")),
    reason="Requires local validator, PAYER_KEYPAIR and CT_ENGINE",
)


async def funded_mint(client, owner, amount):
    """Create a confidential mint and mint ``amount`` public tokens to ``owner``"""
    mint = Keypair()
    await client.create_confidential_mint(mint, owner.pubkey(), 6)
    await client.create_token_account(owner.pubkey(), mint.pubkey())
    await client.mint_to(owner, mint.pubkey(), owner.pubkey(), amount)
    return mint.pubkey()


@pytest.mark.asyncio
@pytest.mark.integration
@requires_localnet
class TestLocalnet:
    """Full lifecycle on a local validator"""

    @pytest.fixture
    def client(self):
        engine = load_object(os.environ["CT_ENGINE"])()
        return ConfidentialTransferClient.connect(
            engine, load_payer(), ClientConfig.from_env()
        )

    async def test_lifecycle(self, client):
        """Configure, deposit, apply and withdraw on a new mint"""
        owner = load_payer()

        try:
            mint = await funded_mint(client, owner, 1_000)
            assert (await client.fetch_mint(mint)).decimals == 6

            await client.configure(owner, mint)
            await client.deposit(owner, mint, 1_000)
            await client.apply_pending(owner, mint)
            await client.withdraw(owner, mint, 250)
            after = await client.get_balances(owner, mint)

            assert after.pending == 0
            assert after.available == 750
            assert after.public == 250
        finally:
            await client.close()

    async def test_transfer_to_new_account(self, client):
        """Transfer to a freshly configured recipient"""
        owner = load_payer()
        recipient = Keypair()

        try:
            mint = await funded_mint(client, owner, 100)
            await client.configure(owner, mint)
            await client.deposit(owner, mint, 100)
            await client.apply_pending(owner, mint)
            await client.create_token_account(recipient.pubkey(), mint)
            await client.configure(recipient, mint)
            result = await client.transfer(owner, mint, recipient.pubkey(), 1)

            assert result.receipts[-1].label == "transfer:cleanup"
            assert (await client.get_balances(recipient, mint)).pending == 1
        finally:
            await client.close()
