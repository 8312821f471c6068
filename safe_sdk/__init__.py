# Copyright © Aptos Foundation
# SPDX-License-Identifier: Apache-2.0

"""
Safe Python SDK - signature coordination for Safe multi-signature accounts.

Owners of a Safe each sign the same EIP-712 digest. This SDK computes that
digest, collects and persists the signatures, packs them the way the Safe
contract expects, verifies them off-chain or through EIP-1271 and executes
transactions once the threshold is reached.

Modules:
- **typed_data**: digest computation for messages and Safe transactions
- **signature_store**: signature records, upsert and JSON persistence
- **packing**: canonical signature packing for ``execTransaction``
- **verifier**: off-chain recovery and on-chain ``isValidSignature`` checks
- **threshold**: readiness and coordination state
- **safe_contract**: the contract capability, live and simulated
- **executor**: transaction preparation, execution, on-chain message approval
- **async_client**: JSON-RPC client over httpx
- **cli**: ``python -m safe_sdk.cli``

Quick Start:
    Collect signatures for a message::

        from safe_sdk.secp256k1_ecdsa import PrivateKey
        from safe_sdk.signature_store import MemorySignatureStore, SigningContext, upsert
        from safe_sdk.typed_data import MessagePayload

        context = SigningContext(safe_address, 1, MessagePayload.from_text("hello"))
        store = MemorySignatureStore()
        signature_set = store.load_or_init("hello", context)

        key = PrivateKey.from_str(owner_key_hex)
        signature_set = upsert(
            signature_set, key.address(), key.sign_digest(context.digest.value)
        )
        store.persist("hello", signature_set)

    Verify and check readiness::

        from safe_sdk.threshold import ready
        from safe_sdk.verifier import verify_signature_set

        report = await verify_signature_set(signature_set, owners)
        print(report.summary(), ready(report.valid_owner_count, threshold))

License:
    Apache License 2.0
"""
