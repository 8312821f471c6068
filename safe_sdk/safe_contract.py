# Copyright © Aptos Foundation
# SPDX-License-Identifier: Apache-2.0

"""
The Safe contract surface used for verification and execution.

Signature coordination needs only a narrow set of contract calls: the owner set
and threshold, the nonce, the contract's own transaction hash, EIP-1271
``isValidSignature`` and ``execTransaction``. :class:`SafeContract` names that
capability so the rest of the SDK never depends on how it is provided.

Implementations:
    RpcSafeContract: ABI encoded calls against a live node through
        :class:`safe_sdk.async_client.RpcClient`.
    SimulatedSafeContract: an in-memory Safe with a fixed owner set. It hashes
        transactions locally, validates signatures the way the contract does
        and records executions instead of sending them.

Which one is used is decided once, when an :class:`ExecutionContext` is built
(for the CLI, from ``--simulate``), and carried explicitly afterwards.

Examples:
    Live::

        contract = RpcSafeContract(RpcClient(rpc_url), safe_address)
        context = ExecutionContext.live(contract)

    Offline::

        contract = SimulatedSafeContract(safe_address, owners=[alice, bob], threshold=2)
        context = ExecutionContext.simulated(contract)
"""

from __future__ import annotations

import logging
import unittest
import unittest.mock
from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional, Set, Tuple

from typing_extensions import Protocol

from .abi import Decoder, Encoder, function_selector, keccak256
from .account_address import AccountAddress
from .async_client import RpcClient
from .errors import ConfirmationTimeoutError, ExecutionError
from .secp256k1_ecdsa import PrivateKey, recover_signer
from .signature_store import ExecutionReceipt
from .typed_data import Digest, MessagePayload, Operation, TransactionPayload, digest

MAGIC_VALUE = function_selector("isValidSignature(bytes32,bytes)")

# SignMessageLib v1.3.0, called by delegate call to approve a message on-chain.
SIGN_MESSAGE_LIB = AccountAddress.from_str("0xa65387f16b013cf2af4605ad8aa5ec25a2cba3a2")
SIGN_MESSAGE = function_selector("signMessage(bytes)")

GET_OWNERS = function_selector("getOwners()")
GET_THRESHOLD = function_selector("getThreshold()")
NONCE = function_selector("nonce()")
IS_OWNER = function_selector("isOwner(address)")
IS_VALID_SIGNATURE = MAGIC_VALUE
GET_TRANSACTION_HASH = function_selector(
    "getTransactionHash(address,uint256,bytes,uint8,uint256,uint256,uint256,"
    "address,address,uint256)"
)
EXEC_TRANSACTION = function_selector(
    "execTransaction(address,uint256,bytes,uint8,uint256,uint256,uint256,"
    "address,address,bytes)"
)


class SafeContract(Protocol):
    address: AccountAddress

    async def chain_id(self) -> int:
        ...

    async def get_owners(self) -> List[AccountAddress]:
        ...

    async def get_threshold(self) -> int:
        ...

    async def nonce(self) -> int:
        ...

    async def is_owner(self, owner: AccountAddress) -> bool:
        ...

    async def get_transaction_hash(self, payload: TransactionPayload) -> Digest:
        ...

    async def is_valid_signature(self, message_digest: Digest, signature: bytes) -> bytes:
        """Raw ``bytes4`` answer of EIP-1271 ``isValidSignature``."""
        ...

    async def exec_transaction(
        self, payload: TransactionPayload, signatures: bytes, executor: PrivateKey
    ) -> str:
        """Submit ``execTransaction`` and return the submitted transaction hash."""
        ...

    async def wait_for_receipt(self, txn_hash: str) -> ExecutionReceipt:
        """
        :raises ExecutionError: If the transaction reverted
        :raises ConfirmationTimeoutError: If it was not mined in time
        """
        ...


class ExecutionMode(Enum):
    LIVE = "live"
    SIMULATED = "simulated"


@dataclass(frozen=True)
class ExecutionContext:
    mode: ExecutionMode
    contract: SafeContract

    @staticmethod
    def live(contract: SafeContract) -> ExecutionContext:
        return ExecutionContext(ExecutionMode.LIVE, contract)

    @staticmethod
    def simulated(contract: SafeContract) -> ExecutionContext:
        return ExecutionContext(ExecutionMode.SIMULATED, contract)

    @property
    def is_simulated(self) -> bool:
        return self.mode == ExecutionMode.SIMULATED


def _encode_transaction_fields(encoder: Encoder, payload: TransactionPayload):
    encoder.address(payload.to)
    encoder.uint(payload.value)
    encoder.bytes(payload.data)
    encoder.uint(int(payload.operation), 8)
    encoder.uint(payload.safe_tx_gas)
    encoder.uint(payload.base_gas)
    encoder.uint(payload.gas_price)
    encoder.address(payload.gas_token)
    encoder.address(payload.refund_receiver)


class RpcSafeContract:
    """A deployed Safe (v1.3 or later) reached over JSON-RPC."""

    address: AccountAddress
    client: RpcClient

    def __init__(self, client: RpcClient, address: AccountAddress):
        self.client = client
        self.address = address

    async def chain_id(self) -> int:
        return await self.client.chain_id()

    async def get_owners(self) -> List[AccountAddress]:
        result = await self.client.call(self.address, GET_OWNERS)
        return [AccountAddress(owner) for owner in Decoder(result).address_array()]

    async def get_threshold(self) -> int:
        return Decoder(await self.client.call(self.address, GET_THRESHOLD)).uint256()

    async def nonce(self) -> int:
        return Decoder(await self.client.call(self.address, NONCE)).uint256()

    async def is_owner(self, owner: AccountAddress) -> bool:
        encoder = Encoder()
        encoder.address(owner)
        result = await self.client.call(self.address, IS_OWNER + encoder.output())
        return Decoder(result).bool()

    async def get_transaction_hash(self, payload: TransactionPayload) -> Digest:
        encoder = Encoder()
        _encode_transaction_fields(encoder, payload)
        encoder.uint(payload.nonce)
        result = await self.client.call(
            self.address, GET_TRANSACTION_HASH + encoder.output()
        )
        return Digest(Decoder(result).bytes32())

    async def is_valid_signature(self, message_digest: Digest, signature: bytes) -> bytes:
        encoder = Encoder()
        encoder.bytes32(message_digest.value)
        encoder.bytes(signature)
        result = await self.client.call(
            self.address, IS_VALID_SIGNATURE + encoder.output()
        )
        return result[:4]

    async def exec_transaction(
        self, payload: TransactionPayload, signatures: bytes, executor: PrivateKey
    ) -> str:
        encoder = Encoder()
        _encode_transaction_fields(encoder, payload)
        encoder.bytes(signatures)
        return await self.client.send_transaction(
            executor, self.address, EXEC_TRANSACTION + encoder.output()
        )

    async def wait_for_receipt(self, txn_hash: str) -> ExecutionReceipt:
        receipt = await self.client.wait_for_transaction_receipt(txn_hash)
        if int(receipt.get("status", "0x0"), 16) != 1:
            raise ExecutionError(f"Transaction {txn_hash} reverted", txn_hash)
        return ExecutionReceipt(txn_hash, int(receipt["blockNumber"], 16))


@dataclass
class SimulatedSafeContract:
    """An in-memory Safe for dry runs and tests.

    ``is_valid_signature`` answers like the contract: the magic value when the
    packed signatures hold at least ``threshold`` distinct owners in ascending
    order, or when the digest was approved with :meth:`approve_message`.
    ``valid_signature_response`` overrides that answer when set.

    ``revert_executions`` and ``confirm_executions`` make submitted executions
    revert or never confirm.
    """

    address: AccountAddress
    owners: List[AccountAddress] = field(default_factory=list)
    threshold: int = 1
    current_nonce: int = 0
    network_chain_id: int = 1
    valid_signature_response: Optional[bytes] = None
    revert_executions: bool = False
    confirm_executions: bool = True
    executed: List[TransactionPayload] = field(default_factory=list)
    approved_messages: Set[bytes] = field(default_factory=set)
    block_number: int = 0
    last_submission: Optional[Tuple[str, bool]] = None

    async def chain_id(self) -> int:
        return self.network_chain_id

    async def get_owners(self) -> List[AccountAddress]:
        return list(self.owners)

    async def get_threshold(self) -> int:
        return self.threshold

    async def nonce(self) -> int:
        return self.current_nonce

    async def is_owner(self, owner: AccountAddress) -> bool:
        return owner in self.owners

    async def get_transaction_hash(self, payload: TransactionPayload) -> Digest:
        return digest(self.address, self.network_chain_id, payload)

    def approve_message(self, message_digest: Digest):
        self.approved_messages.add(message_digest.value)

    async def is_valid_signature(self, message_digest: Digest, signature: bytes) -> bytes:
        if self.valid_signature_response is not None:
            return self.valid_signature_response
        if not signature:
            valid = message_digest.value in self.approved_messages
        else:
            valid = self._check_signatures(message_digest.value, signature)
        return MAGIC_VALUE if valid else b"\x00" * 4

    def _check_signatures(self, data_hash: bytes, signatures: bytes) -> bool:
        if len(signatures) < 65 * self.threshold or len(signatures) % 65:
            return False
        last_owner = AccountAddress.ZERO  # type: ignore[attr-defined]
        for offset in range(0, len(signatures), 65):
            signer = recover_signer(data_hash, signatures[offset : offset + 65])
            if signer is None or signer not in self.owners or not last_owner < signer:
                return False
            last_owner = signer
        return True

    async def exec_transaction(
        self, payload: TransactionPayload, signatures: bytes, executor: PrivateKey
    ) -> str:
        data_hash = await self.get_transaction_hash(payload)
        txn_hash = f"0x{keccak256(data_hash.value + signatures).hex()}"
        if (
            self.revert_executions
            or payload.nonce != self.current_nonce
            or not self._check_signatures(data_hash.value, signatures)
        ):
            logging.info(f"Simulated execution {txn_hash} reverts")
            self.last_submission = (txn_hash, False)
            return txn_hash
        if (
            payload.to == SIGN_MESSAGE_LIB
            and payload.operation == Operation.DELEGATE_CALL
            and payload.data[:4] == SIGN_MESSAGE
        ):
            message = Decoder(payload.data[4:]).bytes()
            self.approve_message(
                digest(self.address, self.network_chain_id, MessagePayload(message))
            )
        self.executed.append(payload)
        self.current_nonce += 1
        self.last_submission = (txn_hash, True)
        logging.info(f"Simulated execution {txn_hash} by {executor.address()}")
        return txn_hash

    async def wait_for_receipt(self, txn_hash: str) -> ExecutionReceipt:
        if not self.confirm_executions:
            raise ConfirmationTimeoutError(f"transaction {txn_hash} not confirmed", 0)
        pending_hash, succeeded = self.last_submission or (None, False)
        if pending_hash != txn_hash or not succeeded:
            raise ExecutionError(f"Transaction {txn_hash} reverted", txn_hash)
        self.block_number += 1
        return ExecutionReceipt(txn_hash, self.block_number)


def _address_word(address: AccountAddress) -> bytes:
    return b"\x00" * 12 + bytes(address)


class Test(unittest.IsolatedAsyncioTestCase):
    SAFE = AccountAddress.from_str("0x" + "aa" * 20)

    def rpc_contract(self, result: bytes):
        client = unittest.mock.Mock(spec=RpcClient)
        client.call = unittest.mock.AsyncMock(return_value=result)
        return RpcSafeContract(client, self.SAFE), client

    async def test_rpc_reads(self):
        owners = [AccountAddress(b"\x01" * 20), AccountAddress(b"\x02" * 20)]
        result = (
            (32).to_bytes(32, "big")
            + (2).to_bytes(32, "big")
            + b"".join(_address_word(owner) for owner in owners)
        )
        contract, client = self.rpc_contract(result)
        self.assertEqual(await contract.get_owners(), owners)
        self.assertEqual(client.call.call_args.args, (self.SAFE, GET_OWNERS))

        contract, _ = self.rpc_contract((2).to_bytes(32, "big"))
        self.assertEqual(await contract.get_threshold(), 2)
        self.assertEqual(await contract.nonce(), 2)

        contract, _ = self.rpc_contract((1).to_bytes(32, "big"))
        self.assertTrue(await contract.is_owner(owners[0]))

    async def test_rpc_is_valid_signature(self):
        contract, client = self.rpc_contract(MAGIC_VALUE + b"\x00" * 28)
        message_digest = Digest(b"\x11" * 32)
        self.assertEqual(
            await contract.is_valid_signature(message_digest, b"\x22" * 65), MAGIC_VALUE
        )
        calldata = client.call.call_args.args[1]
        self.assertEqual(calldata[:4], IS_VALID_SIGNATURE)
        self.assertEqual(calldata[4:36], message_digest.value)

        contract, _ = self.rpc_contract(b"")
        self.assertEqual(await contract.is_valid_signature(message_digest, b""), b"")

    async def test_rpc_transaction_hash(self):
        contract, client = self.rpc_contract(b"\x33" * 32)
        payload = TransactionPayload(to="0x" + "11" * 20, value=1, nonce=4)
        self.assertEqual(
            await contract.get_transaction_hash(payload), Digest(b"\x33" * 32)
        )
        calldata = client.call.call_args.args[1]
        self.assertEqual(calldata[:4], GET_TRANSACTION_HASH)
        # Ten head words: nine fields plus the nonce.
        self.assertEqual(int.from_bytes(calldata[4 + 9 * 32 : 4 + 10 * 32], "big"), 4)

    async def test_rpc_receipt(self):
        client = unittest.mock.Mock(spec=RpcClient)
        client.wait_for_transaction_receipt = unittest.mock.AsyncMock(
            return_value={"status": "0x0", "blockNumber": "0x5"}
        )
        contract = RpcSafeContract(client, self.SAFE)
        with self.assertRaises(ExecutionError):
            await contract.wait_for_receipt("0x01")

        client.wait_for_transaction_receipt.return_value = {
            "status": "0x1",
            "blockNumber": "0x5",
        }
        self.assertEqual(
            await contract.wait_for_receipt("0x01"), ExecutionReceipt("0x01", 5)
        )

    async def test_simulated_signatures(self):
        keys = sorted(
            [PrivateKey.from_hex("0x" + "01" * 32), PrivateKey.from_hex("0x" + "02" * 32)],
            key=lambda key: key.address(),
        )
        contract = SimulatedSafeContract(
            self.SAFE, owners=[key.address() for key in keys], threshold=2
        )
        message_digest = Digest(b"\x44" * 32)
        signatures = [key.sign_digest(message_digest.value).data() for key in keys]

        self.assertEqual(
            await contract.is_valid_signature(message_digest, b"".join(signatures)),
            MAGIC_VALUE,
        )
        self.assertNotEqual(
            await contract.is_valid_signature(message_digest, signatures[0]), MAGIC_VALUE
        )
        self.assertNotEqual(
            await contract.is_valid_signature(
                message_digest, b"".join(reversed(signatures))
            ),
            MAGIC_VALUE,
        )
        self.assertNotEqual(
            await contract.is_valid_signature(message_digest, b""), MAGIC_VALUE
        )
        contract.approve_message(message_digest)
        self.assertEqual(await contract.is_valid_signature(message_digest, b""), MAGIC_VALUE)

    def test_execution_context(self):
        contract = SimulatedSafeContract(self.SAFE)
        self.assertTrue(ExecutionContext.simulated(contract).is_simulated)
        self.assertFalse(ExecutionContext.live(contract).is_simulated)
