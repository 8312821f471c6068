# Copyright © Aptos Foundation
# SPDX-License-Identifier: Apache-2.0

"""
Safe digest computation (EIP-712 structured hashing).

Every Safe owner signs the same 32-byte digest. The digest binds the payload
to one Safe account on one chain through an EIP-712 domain separator and has
to be computed exactly like the Safe contract does it, otherwise the contract
will never accept the collected signatures.

Domain:
    ``EIP712Domain(uint256 chainId,address verifyingContract)``

Payloads:
- :class:`MessagePayload` is hashed as ``SafeMessage(bytes message)``; text
  messages are UTF-8 encoded first.
- :class:`TransactionPayload` is hashed as ``SafeTx(address to,uint256 value,
  bytes data,uint8 operation,uint256 safeTxGas,uint256 baseGas,uint256
  gasPrice,address gasToken,address refundReceiver,uint256 nonce)``.

The digest is ``keccak256(0x1901 ‖ domainSeparator ‖ hashStruct(payload))``.

Examples:
    Message digest::

        safe = AccountAddress.from_str("0x" + "aa" * 20)
        message_digest = digest(safe, 1, MessagePayload.from_text("hello"))
        print(message_digest.hex())

    Transaction digest::

        payload = TransactionPayload(to=recipient, value=10**18, nonce=7)
        transaction_digest = digest(safe, 1, payload)

    Document for an external EIP-712 signer (browser wallet, hardware device)::

        document = typed_data(safe, 1, MessagePayload.from_text("hello"))
"""

from __future__ import annotations

import unittest
from dataclasses import dataclass, field
from enum import IntEnum
from typing import Any, Dict, Union

from .abi import MAX_U8, MAX_U256, Encoder, keccak256
from .account_address import AccountAddress, ParseAddressError
from .errors import InputValidationError
from .secp256k1_ecdsa import parse_hex_bytes

DOMAIN_SEPARATOR_TYPE = "EIP712Domain(uint256 chainId,address verifyingContract)"
SAFE_MESSAGE_TYPE = "SafeMessage(bytes message)"
SAFE_TX_TYPE = (
    "SafeTx(address to,uint256 value,bytes data,uint8 operation,uint256 safeTxGas,"
    "uint256 baseGas,uint256 gasPrice,address gasToken,address refundReceiver,"
    "uint256 nonce)"
)

DOMAIN_SEPARATOR_TYPEHASH = keccak256(DOMAIN_SEPARATOR_TYPE.encode("ascii"))
SAFE_MESSAGE_TYPEHASH = keccak256(SAFE_MESSAGE_TYPE.encode("ascii"))
SAFE_TX_TYPEHASH = keccak256(SAFE_TX_TYPE.encode("ascii"))


class Operation(IntEnum):
    CALL = 0
    DELEGATE_CALL = 1


@dataclass(frozen=True)
class Digest:
    """An immutable 32-byte Safe digest."""

    value: bytes

    LENGTH = 32

    def __post_init__(self):
        if not isinstance(self.value, bytes) or len(self.value) != Digest.LENGTH:
            raise InputValidationError("Expected a 32-byte digest")

    def __str__(self) -> str:
        return self.hex()

    def __bytes__(self) -> bytes:
        return self.value

    def hex(self) -> str:
        return f"0x{self.value.hex()}"

    @staticmethod
    def from_str(value: str) -> Digest:
        return Digest(parse_hex_bytes(value, "digest"))


@dataclass(frozen=True)
class MessagePayload:
    """An off-chain message attested by the Safe."""

    message: bytes

    def __post_init__(self):
        if isinstance(self.message, str):
            object.__setattr__(self, "message", self.message.encode("utf-8"))
        if not isinstance(self.message, bytes):
            raise InputValidationError("Message must be text or bytes")

    @staticmethod
    def from_text(text: str) -> MessagePayload:
        return MessagePayload(text.encode("utf-8"))

    def text(self) -> str:
        """The message as text; undecodable bytes are replaced for display."""
        return self.message.decode("utf-8", errors="replace")

    def struct_hash(self) -> bytes:
        encoder = Encoder()
        encoder.bytes32(SAFE_MESSAGE_TYPEHASH)
        encoder.bytes32(keccak256(self.message))
        return keccak256(encoder.output())

    def eip712_types(self) -> Dict[str, Any]:
        return {"SafeMessage": [{"name": "message", "type": "bytes"}]}

    def eip712_message(self) -> Dict[str, Any]:
        return {"message": f"0x{self.message.hex()}"}


def _address(value: Union[AccountAddress, str], name: str) -> AccountAddress:
    if isinstance(value, AccountAddress):
        return value
    try:
        return AccountAddress.from_str(value)
    except ParseAddressError as e:
        raise InputValidationError(f"Invalid {name} address: {e}")


def _unsigned(value: int, name: str, maximum: int = MAX_U256) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise InputValidationError(f"{name} must be an integer, got {value!r}")
    if value < 0 or value > maximum:
        raise InputValidationError(f"{name} out of range: {value}")
    return value


@dataclass(frozen=True)
class TransactionPayload:
    """A Safe transaction (``SafeTx``) awaiting owner signatures.

    Addresses may be given as strings and ``data`` as hex text; they are
    normalised on construction. All numeric fields are range checked against
    their Solidity types.
    """

    to: AccountAddress
    value: int = 0
    data: bytes = b""
    operation: Operation = Operation.CALL
    safe_tx_gas: int = 0
    base_gas: int = 0
    gas_price: int = 0
    gas_token: AccountAddress = field(
        default_factory=lambda: AccountAddress.ZERO  # type: ignore[attr-defined]
    )
    refund_receiver: AccountAddress = field(
        default_factory=lambda: AccountAddress.ZERO  # type: ignore[attr-defined]
    )
    nonce: int = 0

    def __post_init__(self):
        object.__setattr__(self, "to", _address(self.to, "destination"))
        object.__setattr__(self, "gas_token", _address(self.gas_token, "gas token"))
        object.__setattr__(
            self, "refund_receiver", _address(self.refund_receiver, "refund receiver")
        )
        object.__setattr__(self, "data", parse_hex_bytes(self.data, "call data"))
        operation = _unsigned(int(self.operation), "operation", MAX_U8)
        try:
            object.__setattr__(self, "operation", Operation(operation))
        except ValueError:
            raise InputValidationError(f"Unknown operation {operation}")
        for name in ("value", "safe_tx_gas", "base_gas", "gas_price", "nonce"):
            _unsigned(getattr(self, name), name)

    def struct_hash(self) -> bytes:
        encoder = Encoder()
        encoder.bytes32(SAFE_TX_TYPEHASH)
        encoder.address(self.to)
        encoder.uint(self.value)
        encoder.bytes32(keccak256(self.data))
        encoder.uint(int(self.operation), 8)
        encoder.uint(self.safe_tx_gas)
        encoder.uint(self.base_gas)
        encoder.uint(self.gas_price)
        encoder.address(self.gas_token)
        encoder.address(self.refund_receiver)
        encoder.uint(self.nonce)
        return keccak256(encoder.output())

    def eip712_types(self) -> Dict[str, Any]:
        return {
            "SafeTx": [
                {"name": "to", "type": "address"},
                {"name": "value", "type": "uint256"},
                {"name": "data", "type": "bytes"},
                {"name": "operation", "type": "uint8"},
                {"name": "safeTxGas", "type": "uint256"},
                {"name": "baseGas", "type": "uint256"},
                {"name": "gasPrice", "type": "uint256"},
                {"name": "gasToken", "type": "address"},
                {"name": "refundReceiver", "type": "address"},
                {"name": "nonce", "type": "uint256"},
            ]
        }

    def eip712_message(self) -> Dict[str, Any]:
        return {
            "to": str(self.to),
            "value": str(self.value),
            "data": f"0x{self.data.hex()}",
            "operation": int(self.operation),
            "safeTxGas": str(self.safe_tx_gas),
            "baseGas": str(self.base_gas),
            "gasPrice": str(self.gas_price),
            "gasToken": str(self.gas_token),
            "refundReceiver": str(self.refund_receiver),
            "nonce": str(self.nonce),
        }


Payload = Union[MessagePayload, TransactionPayload]


def domain_separator(account_address: Union[AccountAddress, str], chain_id: int) -> bytes:
    """``hashStruct(EIP712Domain)`` for a Safe on a chain.

    Raises:
        InputValidationError: If the address is malformed or the chain id is
            not an unsigned 256-bit integer.
    """
    account = _address(account_address, "account")
    _unsigned(chain_id, "chain id")
    encoder = Encoder()
    encoder.bytes32(DOMAIN_SEPARATOR_TYPEHASH)
    encoder.uint(chain_id)
    encoder.address(account)
    return keccak256(encoder.output())


def digest(
    account_address: Union[AccountAddress, str], chain_id: int, payload: Payload
) -> Digest:
    """Compute the digest every owner signs for ``payload`` on this Safe.

    Args:
        account_address: The Safe account (verifying contract).
        chain_id: EIP-155 chain id of the network the Safe lives on.
        payload: A :class:`MessagePayload` or :class:`TransactionPayload`.

    Returns:
        The 32-byte :class:`Digest`.

    Raises:
        InputValidationError: On a malformed address, chain id or payload.

    Example:
        >>> safe = "0x" + "aa" * 20
        >>> digest(safe, 1, MessagePayload.from_text("hello")) == digest(
        ...     safe, 1, MessagePayload.from_text("hello")
        ... )
        True
    """
    if not isinstance(payload, (MessagePayload, TransactionPayload)):
        raise InputValidationError(f"Unsupported payload type {type(payload)}")
    separator = domain_separator(account_address, chain_id)
    return Digest(keccak256(b"\x19\x01" + separator + payload.struct_hash()))


def typed_data(
    account_address: Union[AccountAddress, str], chain_id: int, payload: Payload
) -> Dict[str, Any]:
    """EIP-712 JSON document for ``eth_signTypedData_v4`` style signers."""
    account = _address(account_address, "account")
    _unsigned(chain_id, "chain id")
    types: Dict[str, Any] = {
        "EIP712Domain": [
            {"name": "chainId", "type": "uint256"},
            {"name": "verifyingContract", "type": "address"},
        ]
    }
    types.update(payload.eip712_types())
    return {
        "types": types,
        "primaryType": next(iter(payload.eip712_types())),
        "domain": {"chainId": chain_id, "verifyingContract": str(account)},
        "message": payload.eip712_message(),
    }


class Test(unittest.TestCase):
    SAFE = "0x" + "aa" * 20

    def test_type_hashes(self):
        self.assertEqual(
            DOMAIN_SEPARATOR_TYPEHASH.hex(),
            "47e79534a245952e8b16893a336b85a3d9ea9fa8c573f3d803afb92a79469218",
        )
        self.assertEqual(
            SAFE_TX_TYPEHASH.hex(),
            "bb8310d486368db6bd6f849402fdd73ad53d316b5a4b2644ad6efe0f941286d8",
        )
        self.assertEqual(
            SAFE_MESSAGE_TYPEHASH.hex(),
            "60b3cbf8b4a223d68d641b3b6ddf9a298e7f33710cf3d3a9d1146b5a6150fbca",
        )

    def test_message_digest_deterministic(self):
        first = digest(self.SAFE, 1, MessagePayload.from_text("hello"))
        second = digest(self.SAFE.upper().replace("0X", "0x"), 1, MessagePayload(b"hello"))
        self.assertEqual(first, second)
        self.assertEqual(len(first.value), 32)

    def test_message_digest_layout(self):
        separator = keccak256(
            DOMAIN_SEPARATOR_TYPEHASH
            + (1).to_bytes(32, "big")
            + b"\x00" * 12
            + b"\xaa" * 20
        )
        struct_hash = keccak256(SAFE_MESSAGE_TYPEHASH + keccak256(b"hello"))
        expected = keccak256(b"\x19\x01" + separator + struct_hash)
        self.assertEqual(
            digest(self.SAFE, 1, MessagePayload.from_text("hello")).value, expected
        )

    def test_digest_bound_to_context(self):
        payload = MessagePayload.from_text("hello")
        base = digest(self.SAFE, 1, payload)
        self.assertNotEqual(base, digest(self.SAFE, 5, payload))
        self.assertNotEqual(base, digest("0x" + "bb" * 20, 1, payload))
        self.assertNotEqual(base, digest(self.SAFE, 1, MessagePayload.from_text("hello!")))

    def test_transaction_digest(self):
        payload = TransactionPayload(
            to="0x" + "11" * 20, value=10, data="0x1234", operation=1, nonce=3
        )
        self.assertEqual(payload.operation, Operation.DELEGATE_CALL)
        self.assertEqual(payload.data, b"\x12\x34")
        first = digest(self.SAFE, 1, payload)
        bumped = TransactionPayload(
            to="0x" + "11" * 20, value=10, data="0x1234", operation=1, nonce=4
        )
        self.assertEqual(first, digest(self.SAFE, 1, payload))
        self.assertNotEqual(first, digest(self.SAFE, 1, bumped))

    def test_invalid_input(self):
        payload = MessagePayload.from_text("hello")
        self.assertRaises(InputValidationError, digest, "0x1234", 1, payload)
        self.assertRaises(InputValidationError, digest, self.SAFE, -1, payload)
        self.assertRaises(InputValidationError, digest, self.SAFE, 2**256, payload)
        self.assertRaises(InputValidationError, digest, self.SAFE, "1", payload)
        self.assertRaises(InputValidationError, digest, self.SAFE, True, payload)
        self.assertRaises(
            InputValidationError, TransactionPayload, to="0x" + "11" * 20, operation=2
        )
        self.assertRaises(
            InputValidationError, TransactionPayload, to="0x" + "11" * 20, value=-1
        )

    def test_typed_data_document(self):
        document = typed_data(self.SAFE, 1, MessagePayload.from_text("hello"))
        self.assertEqual(document["primaryType"], "SafeMessage")
        self.assertEqual(document["domain"]["chainId"], 1)
        self.assertEqual(document["message"]["message"], "0x" + b"hello".hex())
