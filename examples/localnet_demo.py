#!/usr/bin/env python3
"""
Confidential Balances Localnet Demo

This script runs the confidential balance lifecycle on a local Solana
validator: configure, deposit, apply pending, transfer, withdraw.

Prerequisites:
1. Start local validator: solana-test-validator
2. Install SDK: pip install -e .

Environment:
    PAYER_KEYPAIR   solana-keygen JSON array of the funded payer (and sender)
    CT_MINT         optional existing mint; a new confidential mint is created
                    (payer as mint authority) and funded when unset
    CT_ENGINE       crypto engine binding as "module:attribute"
    SOLANA_RPC_URL  optional, defaults to http://127.0.0.1:8899

Usage:
    python examples/localnet_demo.py
"""

import asyncio
import logging
import os

from solders.keypair import Keypair

from confidential_balances import (
    ClientConfig,
    ConfidentialTransferClient,
    RecoverableLeakError,
    load_payer,
    parse_pubkey,
)
from confidential_balances.utils import load_object


def print_balances(name, balances):
    print(
        f"    {name}: public={balances.public} pending={balances.pending} "
        f"available={balances.available}"
    )


async def main():
    logging.basicConfig(level=logging.INFO)

    print("=" * 60)
    print("Confidential Balances - Lifecycle Demo on Localnet")
    print("=" * 60)
    print()

    config = ClientConfig.from_env()
    payer = load_payer()
    if payer is None:
        raise SystemExit("PAYER_KEYPAIR is not set")
    engine = load_object(os.environ["CT_ENGINE"])()

    print("[1] Creating client...")
    client = ConfidentialTransferClient.connect(engine, payer, config)

    alice = payer
    bob = Keypair()
    print(f"    Alice: {alice.pubkey()}")
    print(f"    Bob:   {bob.pubkey()}")

    try:
        if os.environ.get("CT_MINT"):
            mint = parse_pubkey(os.environ["CT_MINT"])
        else:
            print()
            print("[1b] Creating confidential mint and minting 1000000...")
            mint_keypair = Keypair()
            mint = mint_keypair.pubkey()
            await client.create_confidential_mint(mint_keypair, alice.pubkey(), 6)
            await client.create_token_account(alice.pubkey(), mint)
            await client.mint_to(alice, mint, alice.pubkey(), 1_000_000)
        print(f"    Mint:  {mint}")

        # Step 1: Configure both accounts
        print()
        print("[2] Configuring token accounts...")
        state = await client.fetch_state(client.token_account(alice.pubkey(), mint))
        if state.configured:
            print("    Alice already configured (OK)")
        else:
            await client.configure(alice, mint)
        await client.create_token_account(bob.pubkey(), mint)
        await client.configure(bob, mint)

        balances = await client.get_balances(alice, mint)
        print_balances("Alice", balances)

        # Step 2: Deposit public tokens
        amount = min(balances.public, 1_000_000)
        print()
        print(f"[3] Depositing {amount} into pending balance...")
        result = await client.deposit(alice, mint, amount)
        print(f"    Transaction: {result.signatures[0]}")

        # Step 3: Apply pending
        print()
        print("[4] Applying pending balance...")
        result = await client.apply_pending(alice, mint)
        print(f"    Transaction: {result.signatures[0]}")
        print_balances("Alice", await client.get_balances(alice, mint))

        # Step 4: Confidential transfer to Bob
        print()
        print(f"[5] Transferring {amount // 2} to Bob...")
        result = await client.transfer(alice, mint, bob.pubkey(), amount // 2)
        for receipt in result.receipts:
            print(f"    {receipt.label:<32} {receipt.signature}")
        print_balances("Alice", await client.get_balances(alice, mint))
        print_balances("Bob", await client.get_balances(bob, mint))

        # Step 5: Withdraw the rest
        print()
        print(f"[6] Withdrawing {amount - amount // 2} to public balance...")
        result = await client.withdraw(alice, mint, amount - amount // 2)
        print(f"    Transactions: {len(result.receipts)}")
        print_balances("Alice", await client.get_balances(alice, mint))

        print()
        print("=" * 60)
        print("Demo complete! Confidential lifecycle executed successfully.")
        print("=" * 60)

    except RecoverableLeakError as e:
        print(f"\n[LEAK] {e}")
        print("Retrying cleanup of stranded proof accounts...")
        await client.close_context_accounts(e.stranded, alice)
        raise

    except Exception as e:
        print(f"\n[ERROR] {e}")
        print("\nTroubleshooting:")
        print("1. Ensure local validator is running: solana-test-validator")
        print("2. If CT_MINT is set, ensure it has the confidential transfer extension")
        print("3. Airdrop SOL to the payer: solana airdrop 10 <payer_pubkey>")
        raise

    finally:
        await client.close()


if __name__ == "__main__":
    asyncio.run(main())
