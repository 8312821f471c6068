# Copyright © Aptos Foundation
# SPDX-License-Identifier: Apache-2.0

"""
Command-line interface for coordinating Safe signatures.

Supported Commands:
- sign: sign a message (or the transaction in a record) with a private key
- collect: add a signature to a message record and report how many are valid
- verify: check one signature off-chain or through the Safe's EIP-1271 entry point
- transaction: create a transaction record, show its status, optionally sign it
- execute: submit a fully signed transaction record

Every command exits with 0 on success and 1 on a validation, consistency,
network or verification failure.

Examples:
    Sign a message and store the signature::

        python -m safe_sdk.cli sign \
            --safe 0x5aAeb6053F3E94C9b9A09f33669435E7Ef1BeAed \
            --chain-id 1 \
            --message "hello" \
            --key-file ./owner.key \
            --file ./hello.json

    Check the collected signatures against the live owners::

        python -m safe_sdk.cli collect \
            --safe 0x5aAeb6053F3E94C9b9A09f33669435E7Ef1BeAed \
            --message "hello" \
            --file ./hello.json \
            --rpc https://rpc.ankr.com/eth \
            --verify

    Rehearse an execution without a node::

        python -m safe_sdk.cli execute \
            --safe 0x5aAeb6053F3E94C9b9A09f33669435E7Ef1BeAed \
            --file ./transfer.json \
            --executor-key-file ./executor.key \
            --simulate --owner 0x... --owner 0x... --threshold 2

Environment Variables:
    SAFE_RPC_URL: default for ``--rpc``
    SAFE_ADDRESS: default for ``--safe``
    SAFE_CHAIN_ID: default for ``--chain-id``
"""

from __future__ import annotations

import argparse
import asyncio
import contextlib
import io
import json
import logging
import os
import sys
import tempfile
import unittest
from typing import List, Optional

from .account_address import AccountAddress
from .async_client import RpcClient
from .errors import SafeSdkError
from .executor import execute, prepare_transaction
from .safe_contract import (
    ExecutionContext,
    RpcSafeContract,
    SimulatedSafeContract,
)
from .secp256k1_ecdsa import PrivateKey, parse_hex_bytes, recover_signer
from .signature_store import (
    FileSignatureStore,
    SignatureEntry,
    SignatureSet,
    SigningContext,
    entries,
    upsert,
)
from .threshold import coordination_state
from .typed_data import MessagePayload, TransactionPayload
from .verifier import verify_offchain, verify_onchain, verify_signature_set

COMMANDS = ["sign", "collect", "verify", "transaction", "execute"]


def load_private_key(path: str) -> PrivateKey:
    with open(path) as f:
        return PrivateKey.from_str(f.read().strip())


def build_execution_context(parsed_args) -> Optional[ExecutionContext]:
    """Decide once whether commands talk to a node, a simulation or nothing."""
    if parsed_args.simulate:
        contract = SimulatedSafeContract(
            parsed_args.safe,
            owners=parsed_args.owner,
            threshold=parsed_args.threshold,
            current_nonce=parsed_args.safe_nonce,
            network_chain_id=parsed_args.chain_id or 1,
        )
        return ExecutionContext.simulated(contract)
    if parsed_args.rpc:
        return ExecutionContext.live(
            RpcSafeContract(RpcClient(parsed_args.rpc), parsed_args.safe)
        )
    return None


async def resolve_chain_id(parsed_args, context: Optional[ExecutionContext]) -> int:
    if parsed_args.chain_id is not None:
        return parsed_args.chain_id
    if context is None:
        raise SafeSdkError("--chain-id is required without --rpc or --simulate")
    return await context.contract.chain_id()


async def fallback_chain_id(
    parsed_args, context: Optional[ExecutionContext]
) -> Optional[int]:
    """Chain id for records written without one, when it can be known."""
    if parsed_args.chain_id is not None:
        return parsed_args.chain_id
    if context is not None:
        return await context.contract.chain_id()
    return None


def read_message(parsed_args) -> str:
    if parsed_args.message_file:
        with open(parsed_args.message_file) as f:
            return f.read().strip()
    if parsed_args.message is None:
        raise SafeSdkError("--message or --message-file is required")
    return parsed_args.message


def print_signatures(signature_set: SignatureSet):
    print(f"Safe: {signature_set.account}")
    print(f"Hash: {signature_set.digest}")
    print(f"Signatures: {len(signature_set)}")
    for index, entry in enumerate(entries(signature_set)):
        print(f"  {index + 1}. {entry.signer}")


async def sign(parsed_args, context: Optional[ExecutionContext]) -> int:
    if parsed_args.key_file is None:
        raise SafeSdkError("--key-file is required")
    key = load_private_key(parsed_args.key_file)
    store = FileSignatureStore()

    existing = (
        store.load(parsed_args.file, parsed_args.chain_id) if parsed_args.file else None
    )
    if existing is not None and isinstance(existing.payload, TransactionPayload):
        signing_context = existing.context
    else:
        chain_id = await resolve_chain_id(parsed_args, context)
        signing_context = SigningContext(
            parsed_args.safe, chain_id, MessagePayload.from_text(read_message(parsed_args))
        )

    signature = key.sign_digest(signing_context.digest.value)
    print(f"Safe: {signing_context.account}")
    print(f"Chain: {signing_context.chain_id}")
    print(f"Hash: {signing_context.digest}")
    print(f"Signature: {signature}")
    print(f"Signer: {key.address()}")

    if parsed_args.file:
        signature_set = store.load_or_init(parsed_args.file, signing_context)
        store.persist(parsed_args.file, upsert(signature_set, key.address(), signature))
        print(f"added signature from {key.address()} to {parsed_args.file}")
    return 0


async def report(
    signature_set: SignatureSet, context: Optional[ExecutionContext], onchain: bool
) -> int:
    if onchain and context is None:
        raise SafeSdkError("--onchain requires --rpc or --simulate")
    owners: List[AccountAddress] = []
    threshold = None
    if context is not None:
        owners = await context.contract.get_owners()
        threshold = await context.contract.get_threshold()
    result = await verify_signature_set(
        signature_set,
        owners,
        context.contract if context else None,
        onchain=onchain,
    )
    for verdict in result.verdicts:
        if verdict.is_valid:
            status = "valid"
        else:
            status = f"invalid ({verdict.failure.value if verdict.failure else 'unknown'})"
        ownership = "(owner)" if verdict.offchain.is_owner else "(not owner)"
        print(f"{verdict.entry.signer}: {status} {ownership}")
    print(f"{result.summary()} signatures")
    if threshold is not None:
        state = coordination_state(signature_set, result.valid_owner_count, threshold)
        print(f"Threshold: {threshold}, state: {state.value}")
    return 0


async def collect(parsed_args, context: Optional[ExecutionContext]) -> int:
    if parsed_args.file is None:
        raise SafeSdkError("--file is required")
    chain_id = await resolve_chain_id(parsed_args, context)
    signing_context = SigningContext(
        parsed_args.safe, chain_id, MessagePayload.from_text(read_message(parsed_args))
    )
    store = FileSignatureStore()
    signature_set = store.load_or_init(parsed_args.file, signing_context)

    if parsed_args.sig or parsed_args.signer:
        if not (parsed_args.sig and parsed_args.signer):
            raise SafeSdkError("--sig and --signer must be given together")
        signature_set = upsert(signature_set, parsed_args.signer, parsed_args.sig)
        store.persist(parsed_args.file, signature_set)
        print(f"added signature from {parsed_args.signer}")

    if parsed_args.verify:
        return await report(signature_set, context, parsed_args.onchain)
    print(f"Message: {signing_context.payload.text()}")
    print_signatures(signature_set)
    return 0


async def verify(parsed_args, context: Optional[ExecutionContext]) -> int:
    if parsed_args.sig is None:
        raise SafeSdkError("--sig is required")
    chain_id = await resolve_chain_id(parsed_args, context)
    signing_context = SigningContext(
        parsed_args.safe, chain_id, MessagePayload.from_text(read_message(parsed_args))
    )
    signature = parse_hex_bytes(parsed_args.sig, "signature")
    print(f"Hash: {signing_context.digest}")

    if parsed_args.onchain:
        if context is None:
            raise SafeSdkError("--onchain requires --rpc or --simulate")
        valid = await verify_onchain(signing_context.digest, signature, context.contract)
        print(f"On-chain: {'valid' if valid else 'invalid'}")
        return 0 if valid else 1

    owners = await context.contract.get_owners() if context else []
    if parsed_args.signer is None:
        recovered = recover_signer(signing_context.digest.value, signature)
        if recovered is None:
            print("Recovered: none, the signature is invalid")
            return 1
        print(f"Recovered: {recovered}")
        if owners:
            print(f"Owner: {'yes' if recovered in owners else 'no'}")
        return 0
    verdict = verify_offchain(
        signing_context.digest, SignatureEntry(parsed_args.signer, signature), owners
    )
    print(f"Recovered: {verdict.recovered_address}")
    print(f"Signature: {'valid' if verdict.is_valid_recovery else 'invalid'}")
    if owners:
        print(f"Owner: {'yes' if verdict.is_owner else 'no'}")
    return 0 if verdict.is_valid else 1


async def transaction(parsed_args, context: Optional[ExecutionContext]) -> int:
    if parsed_args.file is None:
        raise SafeSdkError("--file is required")
    store = FileSignatureStore()
    signature_set = store.load(
        parsed_args.file, await fallback_chain_id(parsed_args, context)
    )
    if signature_set is None:
        if parsed_args.to is None:
            raise SafeSdkError("--to is required to create a transaction record")
        if context is None:
            raise SafeSdkError("creating a transaction requires --rpc or --simulate")
        signing_context = await prepare_transaction(
            context.contract,
            parsed_args.to,
            parsed_args.value,
            parsed_args.data,
            parsed_args.operation,
            parsed_args.nonce,
        )
        signature_set = SignatureSet(signing_context)
        store.persist(parsed_args.file, signature_set)
        print(f"created transaction {signing_context.digest}")
    elif not isinstance(signature_set.payload, TransactionPayload):
        raise SafeSdkError(f"{parsed_args.file} is not a transaction record")

    if parsed_args.key_file:
        key = load_private_key(parsed_args.key_file)
        signature = key.sign_digest(signature_set.digest.value)
        signature_set = upsert(signature_set, key.address(), signature)
        store.persist(parsed_args.file, signature_set)
        print(f"signed with {key.address()}")

    payload = signature_set.payload
    print(f"To: {payload.to}")  # type: ignore[union-attr]
    print(f"Value: {payload.value} wei")  # type: ignore[union-attr]
    print(f"Nonce: {payload.nonce}")  # type: ignore[union-attr]
    print(f"Executed: {signature_set.executed}")
    print_signatures(signature_set)
    if context is not None:
        return await report(signature_set, context, False)
    return 0


async def execute_command(parsed_args, context: Optional[ExecutionContext]) -> int:
    if parsed_args.file is None:
        raise SafeSdkError("--file is required")
    if parsed_args.executor_key_file is None:
        raise SafeSdkError("--executor-key-file is required")
    if context is None:
        raise SafeSdkError("execute requires --rpc or --simulate")
    store = FileSignatureStore()
    signature_set = store.load(parsed_args.file, await context.contract.chain_id())
    if signature_set is None:
        raise SafeSdkError(f"No transaction record at {parsed_args.file}")

    executor = load_private_key(parsed_args.executor_key_file)
    result = await execute(signature_set, context.contract, executor)
    store.persist(parsed_args.file, result.signature_set)
    mode = " (simulated)" if context.is_simulated else ""
    print(f"executed {result.receipt.transaction_hash}{mode}")
    print(f"Block: {result.receipt.block_number}")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Safe signature coordination")
    parser.add_argument(
        "command", type=str, help="The command to execute", choices=COMMANDS
    )
    parser.add_argument(
        "--safe",
        help="The Safe account address",
        type=AccountAddress.from_str,
        default=os.getenv("SAFE_ADDRESS"),
    )
    parser.add_argument(
        "--chain-id",
        help="EIP-155 chain id; read from the node when omitted",
        type=int,
        default=os.getenv("SAFE_CHAIN_ID"),
    )
    parser.add_argument(
        "--rpc", help="JSON-RPC endpoint URL", type=str, default=os.getenv("SAFE_RPC_URL")
    )
    parser.add_argument(
        "--simulate",
        help="Use an in-memory Safe instead of a node",
        action="store_true",
    )
    parser.add_argument(
        "--owner",
        help="Owner of the simulated Safe (can be specified multiple times)",
        type=AccountAddress.from_str,
        action="append",
        default=[],
    )
    parser.add_argument(
        "--threshold", help="Threshold of the simulated Safe", type=int, default=1
    )
    parser.add_argument(
        "--safe-nonce", help="Nonce of the simulated Safe", type=int, default=0
    )
    parser.add_argument("--message", help="Message text", type=str)
    parser.add_argument("--message-file", help="File holding the message", type=str)
    parser.add_argument("--file", help="Signature record (JSON)", type=str)
    parser.add_argument("--key-file", help="File holding a signer's private key", type=str)
    parser.add_argument(
        "--executor-key-file",
        help="File holding the private key that pays for execution",
        type=str,
    )
    parser.add_argument("--sig", help="Signature as hex", type=str)
    parser.add_argument(
        "--signer",
        help="Expected signer of --sig; verify prints the recovered one when omitted",
        type=str,
    )
    parser.add_argument("--verify", help="Verify collected signatures", action="store_true")
    parser.add_argument(
        "--onchain", help="Verify through isValidSignature", action="store_true"
    )
    parser.add_argument(
        "--to", help="Transaction destination", type=AccountAddress.from_str
    )
    parser.add_argument("--value", help="Value in wei", type=int, default=0)
    parser.add_argument("--data", help="Call data as hex", type=str, default="0x")
    parser.add_argument(
        "--operation", help="0 for call, 1 for delegate call", type=int, default=0
    )
    parser.add_argument("--nonce", help="Safe nonce; read when omitted", type=int)
    parser.add_argument("-v", "--verbose", help="Log progress", action="store_true")
    return parser


async def main(args: List[str]) -> int:
    parser = build_parser()
    parsed_args = parser.parse_args(args)
    logging.basicConfig(
        level=logging.INFO if parsed_args.verbose else logging.WARNING,
        format="%(levelname)s %(message)s",
    )
    if parsed_args.safe is None:
        parser.error("Missing required argument '--safe' (or SAFE_ADDRESS)")

    context = build_execution_context(parsed_args)
    handler = {
        "sign": sign,
        "collect": collect,
        "verify": verify,
        "transaction": transaction,
        "execute": execute_command,
    }[parsed_args.command]
    try:
        return await handler(parsed_args, context)
    except (SafeSdkError, OSError) as e:
        logging.error(e)
        print(f"Error: {e}", file=sys.stderr)
        return 1
    finally:
        if context is not None and isinstance(context.contract, RpcSafeContract):
            await context.contract.client.close()


def run():
    sys.exit(asyncio.run(main(sys.argv[1:])))


class Test(unittest.IsolatedAsyncioTestCase):
    SAFE = "0x" + "aa" * 20

    def setUp(self):
        self.directory = tempfile.TemporaryDirectory()
        self.addCleanup(self.directory.cleanup)
        self.keys = [PrivateKey.from_hex("0x" + f"{i:02x}" * 32) for i in (1, 2)]
        self.key_files = []
        for index, key in enumerate(self.keys):
            path = self.path(f"owner{index}.key")
            with open(path, "w") as f:
                f.write(key.hex())
            self.key_files.append(path)

    def path(self, name: str) -> str:
        return os.path.join(self.directory.name, name)

    def owners(self) -> List[str]:
        args = []
        for key in self.keys:
            args += ["--owner", str(key.address())]
        return args

    async def run_cli(self, *args: str) -> int:
        output = io.StringIO()
        with contextlib.redirect_stdout(output):
            code = await main(["--safe", self.SAFE, *args])
        self.output = output.getvalue()
        return code

    async def test_message_flow(self):
        record = self.path("hello.json")
        for key_file in self.key_files:
            code = await self.run_cli(
                "sign", "--chain-id", "1", "--message", "hello",
                "--key-file", key_file, "--file", record,
            )
            self.assertEqual(code, 0)

        with open(record) as f:
            self.assertEqual(len(json.load(f)["signatures"]), 2)

        code = await self.run_cli(
            "collect", "--message", "hello", "--file", record, "--verify",
            "--simulate", "--threshold", "2", *self.owners(),
        )
        self.assertEqual(code, 0)

        # Same record, different message.
        code = await self.run_cli(
            "collect", "--chain-id", "1", "--message", "goodbye", "--file", record
        )
        self.assertEqual(code, 1)

    async def test_verify(self):
        context = SigningContext(self.SAFE, 1, MessagePayload.from_text("hello"))
        signature = self.keys[0].sign_digest(context.digest.value).hex()
        common = ["verify", "--chain-id", "1", "--message", "hello", "--sig", signature]
        self.assertEqual(
            await self.run_cli(*common, "--signer", str(self.keys[0].address())), 0
        )
        self.assertEqual(
            await self.run_cli(*common, "--signer", str(self.keys[1].address())), 1
        )

        self.assertEqual(await self.run_cli(*common), 0)
        self.assertIn(f"Recovered: {self.keys[0].address()}", self.output)

        unsupported = signature[:-2] + "05"
        common[-1] = unsupported
        self.assertEqual(await self.run_cli(*common), 1)
        self.assertIn("Recovered: none", self.output)

    async def test_legacy_transaction_file(self):
        record = self.path("legacy.json")
        simulated = ["--simulate", "--threshold", "2", *self.owners()]
        code = await self.run_cli(
            "transaction", "--file", record, "--to", "0x" + "11" * 20, *simulated
        )
        self.assertEqual(code, 0)
        with open(record) as f:
            legacy = json.load(f)
        legacy["txHash"] = legacy.pop("hash")
        for name in ("type", "chainId", "executionTxHash", "executionBlock"):
            del legacy[name]
        with open(record, "w") as f:
            json.dump(legacy, f)

        for key_file in self.key_files:
            code = await self.run_cli(
                "transaction", "--file", record, "--key-file", key_file, *simulated
            )
            self.assertEqual(code, 0)
        with open(record) as f:
            self.assertEqual(json.load(f)["chainId"], 1)

    async def test_transaction_flow(self):
        record = self.path("transfer.json")
        simulated = ["--simulate", "--threshold", "2", *self.owners()]
        for key_file in self.key_files:
            code = await self.run_cli(
                "transaction", "--file", record, "--to", "0x" + "11" * 20,
                "--value", "5", "--key-file", key_file, *simulated,
            )
            self.assertEqual(code, 0)

        executor = self.path("executor.key")
        with open(executor, "w") as f:
            f.write("0x" + "46" * 32)
        code = await self.run_cli(
            "execute", "--file", record, "--executor-key-file", executor, *simulated
        )
        self.assertEqual(code, 0)
        with open(record) as f:
            self.assertTrue(json.load(f)["executed"])

        code = await self.run_cli(
            "execute", "--file", record, "--executor-key-file", executor, *simulated
        )
        self.assertEqual(code, 1)


if __name__ == "__main__":
    run()
