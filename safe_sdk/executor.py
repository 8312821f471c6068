# Copyright © Aptos Foundation
# SPDX-License-Identifier: Apache-2.0

"""
Transaction preparation and execution.

:func:`prepare_transaction` builds the signing context of a Safe transaction
and cross-checks the locally computed digest against the contract's own
``getTransactionHash``. :func:`execute` submits ``execTransaction`` once enough
owners have signed and waits for the receipt.

A failed or unconfirmed execution never changes the signature set passed in;
only a confirmed execution returns a set marked as executed.

Messages can also be approved on-chain, without collecting signatures, by
executing a delegate call to SignMessageLib (:func:`sign_message_lib_payload`)
and then waiting for the Safe to report the message as signed
(:func:`wait_for_message_approval`).
"""

from __future__ import annotations

import asyncio
import logging
import unittest
from dataclasses import dataclass
from typing import Optional, Union

from .abi import Decoder, Encoder
from .account_address import AccountAddress
from .errors import (
    ConfirmationTimeoutError,
    ConsistencyError,
    ExecutionError,
    NetworkError,
)
from .packing import pack_signatures
from .safe_contract import (
    MAGIC_VALUE,
    SIGN_MESSAGE,
    SIGN_MESSAGE_LIB,
    SafeContract,
    SimulatedSafeContract,
)
from .secp256k1_ecdsa import PrivateKey
from .signature_store import (
    ExecutionReceipt,
    SignatureSet,
    SigningContext,
    mark_executed,
    upsert,
)
from .threshold import CoordinationState, ready
from .typed_data import Digest, MessagePayload, Operation, TransactionPayload
from .verifier import verify_signature_set


@dataclass(frozen=True)
class ExecutionResult:
    signature_set: SignatureSet
    receipt: ExecutionReceipt
    state: CoordinationState = CoordinationState.EXECUTED


async def prepare_transaction(
    contract: SafeContract,
    to: Union[AccountAddress, str],
    value: int = 0,
    data: Union[bytes, str] = b"",
    operation: Operation = Operation.CALL,
    nonce: Optional[int] = None,
) -> SigningContext:
    """Signing context for a Safe transaction.

    The nonce is read from the Safe when not given.

    Raises:
        InputValidationError: If a transaction field is malformed.
        ConsistencyError: If the Safe hashes the transaction differently.
        NetworkError: If the contract cannot be reached.
    """
    if nonce is None:
        nonce = await contract.nonce()
    payload = TransactionPayload(
        to=to, value=value, data=data, operation=operation, nonce=nonce
    )
    context = SigningContext(contract.address, await contract.chain_id(), payload)
    contract_hash = await contract.get_transaction_hash(payload)
    if contract_hash != context.digest:
        raise ConsistencyError(
            f"Safe transaction hash {contract_hash} does not match computed {context.digest}"
        )
    return context


async def execute(
    signature_set: SignatureSet, contract: SafeContract, executor_key: PrivateKey
) -> ExecutionResult:
    """Execute a signed Safe transaction.

    Only signatures that verify against the current owners are packed.

    Raises:
        ExecutionError: If the set is not an unexecuted transaction, has too
            few valid owner signatures, or the submission reverted.
        ConsistencyError: If the set belongs to another Safe or chain.
        ConfirmationTimeoutError: If the transaction was not confirmed in time.
    """
    payload = signature_set.payload
    if not isinstance(payload, TransactionPayload):
        raise ExecutionError("Only transaction records can be executed")
    if signature_set.executed:
        raise ExecutionError(
            "Transaction already executed",
            signature_set.execution.transaction_hash if signature_set.execution else None,
        )
    if signature_set.account != contract.address:
        raise ConsistencyError(
            f"Record belongs to Safe {signature_set.account}, not {contract.address}"
        )
    chain_id = await contract.chain_id()
    if signature_set.chain_id != chain_id:
        raise ConsistencyError(
            f"Record is for chain {signature_set.chain_id}, connected to {chain_id}"
        )

    owners = await contract.get_owners()
    threshold = await contract.get_threshold()
    report = await verify_signature_set(signature_set, owners)
    if not ready(report.valid_owner_count, threshold):
        raise ExecutionError(
            f"Not enough valid owner signatures: {report.valid_owner_count}/{threshold}"
        )

    signatures = pack_signatures(v.entry for v in report.verdicts if v.is_valid)
    try:
        txn_hash = await contract.exec_transaction(payload, signatures, executor_key)
    except NetworkError as e:
        logging.error(e, exc_info=True)
        raise ExecutionError(f"Submitting execTransaction failed: {e}")
    logging.info(f"{CoordinationState.SUBMITTED.value}: {txn_hash}")

    try:
        receipt = await contract.wait_for_receipt(txn_hash)
    except NetworkError as e:
        raise ExecutionError(f"Could not confirm {txn_hash}: {e}", txn_hash)
    logging.info(f"Executed {txn_hash} in block {receipt.block_number}")
    return ExecutionResult(mark_executed(signature_set, receipt), receipt)


def sign_message_lib_payload(message: Union[str, bytes], nonce: int) -> TransactionPayload:
    """Delegate call to ``SignMessageLib.signMessage(bytes)`` for ``message``."""
    encoder = Encoder()
    encoder.bytes(MessagePayload(message).message)
    return TransactionPayload(
        to=SIGN_MESSAGE_LIB,
        data=SIGN_MESSAGE + encoder.output(),
        operation=Operation.DELEGATE_CALL,
        nonce=nonce,
    )


async def wait_for_message_approval(
    contract: SafeContract,
    message_digest: Digest,
    attempts: int = 30,
    interval: float = 2.0,
) -> bool:
    """Poll ``isValidSignature(digest, 0x)`` until the Safe reports the message.

    Raises:
        ConfirmationTimeoutError: If the message is still not approved after
            ``attempts`` polls.
    """
    for attempt in range(attempts):
        try:
            if await contract.is_valid_signature(message_digest, b"") == MAGIC_VALUE:
                return True
        except NetworkError as e:
            logging.warning(f"Approval check {attempt + 1}/{attempts} failed: {e}")
        if attempt + 1 < attempts:
            await asyncio.sleep(interval)
    raise ConfirmationTimeoutError(
        f"message {message_digest} not approved after {attempts} attempts", attempts
    )


class Test(unittest.IsolatedAsyncioTestCase):
    SAFE = AccountAddress.from_str("0x" + "aa" * 20)
    RECIPIENT = AccountAddress.from_str("0x" + "11" * 20)

    def setUp(self):
        self.keys = [PrivateKey.from_hex("0x" + f"{i:02x}" * 32) for i in (1, 2, 3)]
        self.executor = PrivateKey.from_hex("0x" + "46" * 32)
        self.contract = SimulatedSafeContract(
            self.SAFE,
            owners=[key.address() for key in self.keys],
            threshold=2,
            current_nonce=7,
        )

    def sign(self, signature_set: SignatureSet, key: PrivateKey) -> SignatureSet:
        return upsert(
            signature_set, key.address(), key.sign_digest(signature_set.digest.value)
        )

    async def test_prepare_transaction(self):
        context = await prepare_transaction(self.contract, self.RECIPIENT, value=10)
        self.assertEqual(context.payload.nonce, 7)
        self.assertEqual(context.chain_id, 1)

        explicit = await prepare_transaction(self.contract, self.RECIPIENT, nonce=9)
        self.assertEqual(explicit.payload.nonce, 9)

    async def test_prepare_transaction_mismatch(self):
        class ForeignHash(SimulatedSafeContract):
            async def get_transaction_hash(self, payload):
                return Digest(b"\x00" * 32)

        with self.assertRaises(ConsistencyError):
            await prepare_transaction(ForeignHash(self.SAFE), self.RECIPIENT)

    async def test_execute(self):
        context = await prepare_transaction(self.contract, self.RECIPIENT, value=10)
        signature_set = SignatureSet(context)
        signature_set = self.sign(signature_set, self.keys[2])

        with self.assertRaises(ExecutionError):
            await execute(signature_set, self.contract, self.executor)
        self.assertEqual(self.contract.executed, [])

        signature_set = self.sign(signature_set, self.keys[0])
        result = await execute(signature_set, self.contract, self.executor)
        self.assertTrue(result.signature_set.executed)
        self.assertEqual(result.state, CoordinationState.EXECUTED)
        self.assertEqual(result.signature_set.execution, result.receipt)
        self.assertFalse(signature_set.executed)
        self.assertEqual(self.contract.executed, [context.payload])
        self.assertEqual(self.contract.current_nonce, 8)

        with self.assertRaises(ExecutionError):
            await execute(result.signature_set, self.contract, self.executor)

    async def test_execute_skips_invalid_signatures(self):
        context = await prepare_transaction(self.contract, self.RECIPIENT)
        signature_set = self.sign(SignatureSet(context), self.keys[0])
        signature_set = self.sign(signature_set, self.keys[1])
        outsider = PrivateKey.from_hex("0x" + "0d" * 32)
        signature_set = self.sign(signature_set, outsider)

        result = await execute(signature_set, self.contract, self.executor)
        self.assertTrue(result.signature_set.executed)

    async def test_execute_failures_leave_set_ready(self):
        context = await prepare_transaction(self.contract, self.RECIPIENT)
        signature_set = self.sign(SignatureSet(context), self.keys[0])
        signature_set = self.sign(signature_set, self.keys[1])

        self.contract.revert_executions = True
        with self.assertRaises(ExecutionError):
            await execute(signature_set, self.contract, self.executor)

        self.contract.revert_executions = False
        self.contract.confirm_executions = False
        with self.assertRaises(ConfirmationTimeoutError):
            await execute(signature_set, self.contract, self.executor)
        self.assertFalse(signature_set.executed)

    async def test_execute_rejects_messages(self):
        context = SigningContext(self.SAFE, 1, MessagePayload.from_text("hello"))
        with self.assertRaises(ExecutionError):
            await execute(SignatureSet(context), self.contract, self.executor)

    async def test_execute_rejects_other_chain(self):
        context = SigningContext(
            self.SAFE, 5, TransactionPayload(to=self.RECIPIENT, nonce=7)
        )
        with self.assertRaises(ConsistencyError):
            await execute(SignatureSet(context), self.contract, self.executor)

    def test_sign_message_lib_payload(self):
        payload = sign_message_lib_payload("hello", 3)
        self.assertEqual(payload.operation, Operation.DELEGATE_CALL)
        self.assertEqual(payload.to, SIGN_MESSAGE_LIB)
        self.assertEqual(payload.data[:4], SIGN_MESSAGE)
        self.assertEqual(Decoder(payload.data[4:]).bytes(), b"hello")

    async def test_message_approval(self):
        message_digest = SigningContext(
            self.SAFE, 1, MessagePayload.from_text("hello")
        ).digest
        with self.assertRaises(ConfirmationTimeoutError):
            await wait_for_message_approval(
                self.contract, message_digest, attempts=2, interval=0
            )

        context = SigningContext(self.SAFE, 1, sign_message_lib_payload("hello", 7))
        signature_set = self.sign(SignatureSet(context), self.keys[0])
        signature_set = self.sign(signature_set, self.keys[1])
        await execute(signature_set, self.contract, self.executor)

        self.assertTrue(
            await wait_for_message_approval(
                self.contract, message_digest, attempts=2, interval=0
            )
        )
