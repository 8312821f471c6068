# Copyright © Aptos Foundation
# SPDX-License-Identifier: Apache-2.0

import asyncio

from safe_sdk.account_address import AccountAddress
from safe_sdk.executor import (
    execute,
    prepare_transaction,
    sign_message_lib_payload,
    wait_for_message_approval,
)
from safe_sdk.packing import pack_signatures, packed_signers
from safe_sdk.safe_contract import ExecutionContext, SimulatedSafeContract
from safe_sdk.secp256k1_ecdsa import PrivateKey
from safe_sdk.signature_store import (
    MemorySignatureStore,
    SignatureSet,
    SigningContext,
    upsert,
)
from safe_sdk.threshold import coordination_state, ready
from safe_sdk.typed_data import MessagePayload
from safe_sdk.verifier import verify_onchain, verify_signature_set

from .common import SAFE_ADDRESS


async def main():
    alice = PrivateKey.random()
    bob = PrivateKey.random()
    chad = PrivateKey.random()
    executor = PrivateKey.random()
    owners = [alice.address(), bob.address(), chad.address()]

    print("\n=== Owners ===")
    print(f"Alice: {alice.address()}")
    print(f"Bob:   {bob.address()}")
    print(f"Chad:  {chad.address()}")

    safe = AccountAddress.from_str(SAFE_ADDRESS)
    contract = SimulatedSafeContract(safe, owners=owners, threshold=2)
    context = ExecutionContext.simulated(contract)
    chain_id = await context.contract.chain_id()

    # :!:>section_1
    signing_context = SigningContext(safe, chain_id, MessagePayload.from_text("hello"))
    store = MemorySignatureStore()
    signature_set = store.load_or_init("hello", signing_context)
    print("\n=== 2-of-3 message ===")
    print(f"Safe:   {safe}")
    print(f"Digest: {signing_context.digest}")  # <:!:section_1

    # :!:>section_2
    for name, key in [("Alice", alice), ("Chad", chad)]:
        signature = key.sign_digest(signing_context.digest.value)
        signature_set = upsert(signature_set, key.address(), signature)
        store.persist("hello", signature_set)
        report = await verify_signature_set(signature_set, owners)
        state = coordination_state(signature_set, report.valid_owner_count, 2)
        print(f"{name} signed: {report.summary()}, {state.value}")  # <:!:section_2

    # :!:>section_3
    packed = pack_signatures(signature_set)
    print("\n=== Packed signatures ===")
    print(f"Order:  {', '.join(packed_signers(signature_set))}")
    print(f"Length: {len(packed)} bytes")
    valid = await verify_onchain(signing_context.digest, packed, context.contract)
    print(f"isValidSignature: {valid}")  # <:!:section_3

    # :!:>section_4
    print("\n=== On-chain approval through SignMessageLib ===")
    approval = SigningContext(
        safe, chain_id, sign_message_lib_payload("goodbye", await contract.nonce())
    )
    approval_set = SignatureSet(approval)
    for key in (bob, chad):
        approval_set = upsert(
            approval_set, key.address(), key.sign_digest(approval.digest.value)
        )
    report = await verify_signature_set(approval_set, owners)
    assert ready(report.valid_owner_count, await contract.get_threshold())
    result = await execute(approval_set, context.contract, executor)
    print(f"Executed {result.receipt.transaction_hash}")

    message_digest = SigningContext(
        safe, chain_id, MessagePayload.from_text("goodbye")
    ).digest
    await wait_for_message_approval(contract, message_digest, attempts=1)
    print(f"'goodbye' approved as {message_digest}")  # <:!:section_4

    # :!:>section_5
    print("\n=== Value transfer ===")
    transfer = await prepare_transaction(context.contract, chad.address(), value=10**16)
    transfer_set = SignatureSet(transfer)
    for key in (alice, bob):
        transfer_set = upsert(
            transfer_set, key.address(), key.sign_digest(transfer.digest.value)
        )
    result = await execute(transfer_set, context.contract, executor)
    print(f"Nonce {transfer.payload.nonce} executed in block {result.receipt.block_number}")
    # <:!:section_5


if __name__ == "__main__":
    asyncio.run(main())
