# Copyright © Aptos Foundation
# SPDX-License-Identifier: Apache-2.0

import asyncio
import sys

from safe_sdk.account_address import AccountAddress
from safe_sdk.async_client import RpcClient
from safe_sdk.executor import execute, prepare_transaction
from safe_sdk.safe_contract import ExecutionContext, RpcSafeContract
from safe_sdk.secp256k1_ecdsa import PrivateKey
from safe_sdk.signature_store import FileSignatureStore, upsert
from safe_sdk.threshold import ready
from safe_sdk.verifier import verify_signature_set

from .common import EXECUTOR_KEY, OWNER_KEYS, RPC_URL, SAFE_ADDRESS

RECORD = "transfer.json"


async def main(recipient: str, value: int):
    client = RpcClient(RPC_URL)
    contract = RpcSafeContract(client, AccountAddress.from_str(SAFE_ADDRESS))
    context = ExecutionContext.live(contract)

    try:
        owners = await context.contract.get_owners()
        threshold = await context.contract.get_threshold()
        print(f"Safe {contract.address}: {threshold} of {len(owners)} owners")

        store = FileSignatureStore()
        signing_context = await prepare_transaction(
            context.contract, recipient, value=value
        )
        signature_set = store.load_or_init(RECORD, signing_context)
        print(f"Transaction hash: {signing_context.digest}")

        for owner_key in OWNER_KEYS:
            key = PrivateKey.from_str(owner_key)
            signature = key.sign_digest(signing_context.digest.value)
            signature_set = upsert(signature_set, key.address(), signature)
            store.persist(RECORD, signature_set)
            print(f"Signed by {key.address()}")

        report = await verify_signature_set(signature_set, owners)
        print(f"{report.summary()} signatures")
        if not ready(report.valid_owner_count, threshold) or EXECUTOR_KEY is None:
            print(f"Not executing; signatures are kept in {RECORD}")
            return

        result = await execute(
            signature_set, context.contract, PrivateKey.from_str(EXECUTOR_KEY)
        )
        store.persist(RECORD, result.signature_set)
        print(f"Executed {result.receipt.transaction_hash}")
        print(f"Block: {result.receipt.block_number}")
    finally:
        await client.close()


if __name__ == "__main__":
    asyncio.run(main(sys.argv[1], int(sys.argv[2])))
