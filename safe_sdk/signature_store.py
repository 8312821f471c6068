# Copyright © Aptos Foundation
# SPDX-License-Identifier: Apache-2.0

"""
Signature collection records.

A :class:`SignatureSet` gathers the signatures owners produced over one digest.
It is bound to its :class:`SigningContext` (Safe account, chain id and
payload) and is only ever combined with signatures for that same context.

Updates are functional: :func:`upsert` and :func:`mark_executed` return a new
set and leave the input untouched. Persistence is a plain read-modify-write
through a :class:`SignatureStore`; two writers updating the same record
concurrently can lose an update, no locking is attempted here.

Persisted records are JSON documents::

    {
        "type": "message",
        "safe": "0x...",
        "chainId": 1,
        "message": "hello",
        "hash": "0x...",
        "signatures": [{"signer": "0x...", "signature": "0x..."}],
        "executed": false,
        "executionTxHash": null,
        "executionBlock": null
    }

Transaction records carry the ``SafeTx`` fields (``to``, ``value``, ``data``,
``operation``, ``safeTxGas``, ``baseGas``, ``gasPrice``, ``gasToken``,
``refundReceiver``, ``nonce``) instead of ``message``. Older files without a
``type`` field, or with ``txHash`` instead of ``hash``, are still accepted;
older transaction files also lack ``chainId``, which is then taken from the
context the record is loaded for.
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
import unittest
from abc import ABC, abstractmethod
from dataclasses import dataclass, field, replace
from typing import Any, Dict, List, Mapping, Optional, Union

from .account_address import AccountAddress
from .errors import ConsistencyError, InputValidationError
from .secp256k1_ecdsa import PrivateKey, Signature, parse_hex_bytes
from .typed_data import (
    Digest,
    MessagePayload,
    Operation,
    Payload,
    TransactionPayload,
    digest,
)

MESSAGE = "message"
TRANSACTION = "transaction"


@dataclass(frozen=True)
class SignatureEntry:
    """One owner's signature. ``signer`` keeps the casing it was supplied in."""

    signer: str
    signature: bytes

    @property
    def key(self) -> str:
        return self.signer.lower()


@dataclass(frozen=True)
class ExecutionReceipt:
    transaction_hash: str
    block_number: Optional[int] = None


@dataclass(frozen=True)
class SigningContext:
    """What is being signed, where: the digest is derived on construction."""

    account: AccountAddress
    chain_id: int
    payload: Payload
    digest: Digest = field(init=False)

    def __post_init__(self):
        if isinstance(self.account, str):
            object.__setattr__(self, "account", AccountAddress.from_str(self.account))
        object.__setattr__(
            self, "digest", digest(self.account, self.chain_id, self.payload)
        )

    @property
    def kind(self) -> str:
        return MESSAGE if isinstance(self.payload, MessagePayload) else TRANSACTION


@dataclass(frozen=True)
class SignatureSet:
    context: SigningContext
    signatures: Mapping[str, SignatureEntry] = field(default_factory=dict)
    executed: bool = False
    execution: Optional[ExecutionReceipt] = None

    @property
    def digest(self) -> Digest:
        return self.context.digest

    @property
    def account(self) -> AccountAddress:
        return self.context.account

    @property
    def chain_id(self) -> int:
        return self.context.chain_id

    @property
    def payload(self) -> Payload:
        return self.context.payload

    def __len__(self) -> int:
        return len(self.signatures)


def upsert(
    signature_set: SignatureSet,
    signer_address: Union[AccountAddress, str],
    signature: Union[Signature, bytes, str],
) -> SignatureSet:
    """Add or replace the signature of ``signer_address``.

    Signers are matched case-insensitively; a second signature from the same
    signer replaces the first while keeping its position.

    Raises:
        InputValidationError: If the address is malformed or the signature is
            not 65 bytes.
    """
    entry = _validated_entry(signer_address, signature)
    signatures = dict(signature_set.signatures)
    signatures[entry.key] = entry
    return replace(signature_set, signatures=signatures)


def _validated_entry(
    signer_address: Union[AccountAddress, str],
    signature: Union[Signature, bytes, str],
) -> SignatureEntry:
    if isinstance(signer_address, AccountAddress):
        signer = str(signer_address)
    else:
        AccountAddress.from_str(signer_address)
        signer = signer_address
    if isinstance(signature, Signature):
        raw = signature.data()
    else:
        raw = parse_hex_bytes(signature, "signature")
    if len(raw) != Signature.LENGTH:
        raise InputValidationError(
            f"Expected a {Signature.LENGTH}-byte signature, got {len(raw)}"
        )
    return SignatureEntry(signer, raw)


def entries(signature_set: SignatureSet) -> List[SignatureEntry]:
    return list(signature_set.signatures.values())


def mark_executed(
    signature_set: SignatureSet, receipt: ExecutionReceipt
) -> SignatureSet:
    return replace(signature_set, executed=True, execution=receipt)


def _integer(value: Any, name: str) -> int:
    if isinstance(value, bool):
        raise ValueError(f"{name} must be an integer")
    if isinstance(value, str):
        return int(value, 0)
    if not isinstance(value, int):
        raise ValueError(f"{name} must be an integer, got {value!r}")
    return value


def to_record(signature_set: SignatureSet) -> Dict[str, Any]:
    """Serialize a set into its JSON record."""
    record: Dict[str, Any] = {
        "type": signature_set.context.kind,
        "safe": str(signature_set.account),
        "chainId": signature_set.chain_id,
    }
    payload = signature_set.payload
    if isinstance(payload, MessagePayload):
        try:
            record["message"] = payload.message.decode("utf-8")
        except UnicodeDecodeError:
            record["message"] = f"0x{payload.message.hex()}"
            record["messageEncoding"] = "hex"
    else:
        record.update(
            {
                "to": str(payload.to),
                "value": str(payload.value),
                "data": f"0x{payload.data.hex()}",
                "operation": int(payload.operation),
                "safeTxGas": str(payload.safe_tx_gas),
                "baseGas": str(payload.base_gas),
                "gasPrice": str(payload.gas_price),
                "gasToken": str(payload.gas_token),
                "refundReceiver": str(payload.refund_receiver),
                "nonce": payload.nonce,
            }
        )
    record["hash"] = signature_set.digest.hex()
    record["signatures"] = [
        {"signer": entry.signer, "signature": f"0x{entry.signature.hex()}"}
        for entry in entries(signature_set)
    ]
    record["executed"] = signature_set.executed
    record["executionTxHash"] = (
        signature_set.execution.transaction_hash if signature_set.execution else None
    )
    record["executionBlock"] = (
        signature_set.execution.block_number if signature_set.execution else None
    )
    return record


def from_record(
    record: Mapping[str, Any], chain_id: Optional[int] = None
) -> SignatureSet:
    """Parse a JSON record and check that its stored digest is its own.

    Transaction files written by earlier tooling carry no ``chainId``; for
    those ``chain_id`` is used instead, and the stored ``txHash`` then has to
    match the digest recomputed for that chain.

    Raises:
        ConsistencyError: If the record is malformed, has no stored digest, or
            its stored digest does not match the digest recomputed from its
            own fields.
    """
    try:
        kind = record.get("type") or (MESSAGE if MESSAGE in record else TRANSACTION)
        payload: Payload
        if kind == MESSAGE:
            if record.get("messageEncoding") == "hex":
                payload = MessagePayload(parse_hex_bytes(record["message"], "message"))
            else:
                payload = MessagePayload.from_text(record["message"])
        elif kind == TRANSACTION:
            payload = TransactionPayload(
                to=record["to"],
                value=_integer(record.get("value", 0), "value"),
                data=record.get("data") or b"",
                operation=Operation(_integer(record.get("operation", 0), "operation")),
                safe_tx_gas=_integer(record.get("safeTxGas", 0), "safeTxGas"),
                base_gas=_integer(record.get("baseGas", 0), "baseGas"),
                gas_price=_integer(record.get("gasPrice", 0), "gasPrice"),
                gas_token=record.get("gasToken") or AccountAddress.ZERO,  # type: ignore[attr-defined]
                refund_receiver=record.get("refundReceiver") or AccountAddress.ZERO,  # type: ignore[attr-defined]
                nonce=_integer(record["nonce"], "nonce"),
            )
        else:
            raise ValueError(f"Unknown record type {kind!r}")

        if "chainId" in record:
            record_chain_id = _integer(record["chainId"], "chainId")
        elif chain_id is not None:
            record_chain_id = chain_id
        else:
            raise ValueError("no chainId stored and none supplied")
        context = SigningContext(
            AccountAddress.from_str(record["safe"]), record_chain_id, payload
        )
        stored_hash = record.get("hash") or record.get("txHash")
        if not stored_hash:
            raise ValueError("no stored hash")
        stored = Digest.from_str(stored_hash)

        signatures: Dict[str, SignatureEntry] = {}
        for item in record.get("signatures") or []:
            entry = _validated_entry(item["signer"], item["signature"])
            signatures[entry.key] = entry

        execution = None
        if record.get("executionTxHash"):
            block = record.get("executionBlock")
            execution = ExecutionReceipt(
                record["executionTxHash"],
                None if block is None else _integer(block, "executionBlock"),
            )
        executed = record.get("executed", False)
        if not isinstance(executed, bool):
            raise ValueError(f"executed must be a boolean, got {executed!r}")
    except (KeyError, TypeError, ValueError, AttributeError) as e:
        raise ConsistencyError(f"Malformed signature record: {e}")

    if stored != context.digest:
        raise ConsistencyError(
            f"Stored digest {stored} does not match recomputed digest {context.digest}"
        )
    return SignatureSet(context, signatures, executed, execution)


class SignatureStore(ABC):
    """Keyed storage of signature records."""

    @abstractmethod
    def read(self, key: str) -> Optional[str]:
        ...

    @abstractmethod
    def write(self, key: str, content: str):
        ...

    def load(self, key: str, chain_id: Optional[int] = None) -> Optional[SignatureSet]:
        """Load a record without a context to compare against.

        ``chain_id`` is only used for records that do not store their own.
        """
        content = self.read(key)
        if content is None:
            return None
        try:
            record = json.loads(content)
        except ValueError as e:
            raise ConsistencyError(f"Signature record {key} is not valid JSON: {e}")
        if not isinstance(record, dict):
            raise ConsistencyError(f"Signature record {key} is not a JSON object")
        return from_record(record, chain_id)

    def load_or_init(self, key: str, context: SigningContext) -> SignatureSet:
        """Load the record under ``key`` or start an empty one for ``context``.

        Raises:
            ConsistencyError: If an existing record is corrupt or was created
                for a different account, chain or digest.
        """
        existing = self.load(key, context.chain_id)
        if existing is None:
            logging.info("Starting new signature record %s for %s", key, context.digest)
            return SignatureSet(context)
        if existing.account != context.account:
            raise ConsistencyError(
                f"Record {key} belongs to Safe {existing.account}, not {context.account}"
            )
        if existing.chain_id != context.chain_id:
            raise ConsistencyError(
                f"Record {key} is for chain {existing.chain_id}, not {context.chain_id}"
            )
        if existing.digest != context.digest:
            raise ConsistencyError(
                f"Record {key} signs {existing.digest}, not {context.digest}"
            )
        return existing

    def persist(self, key: str, signature_set: SignatureSet):
        self.write(key, json.dumps(to_record(signature_set), indent=2) + "\n")


class MemorySignatureStore(SignatureStore):
    records: Dict[str, str]

    def __init__(self):
        self.records = {}

    def read(self, key: str) -> Optional[str]:
        return self.records.get(key)

    def write(self, key: str, content: str):
        self.records[key] = content


class FileSignatureStore(SignatureStore):
    """One JSON file per record; the key is the file path."""

    def read(self, key: str) -> Optional[str]:
        if not os.path.exists(key):
            return None
        with open(key) as file:
            return file.read()

    def write(self, key: str, content: str):
        with open(key, "w") as file:
            file.write(content)


class Test(unittest.TestCase):
    SAFE = AccountAddress.from_str("0x" + "aa" * 20)
    KEY = "0xac0974bec39a17e36ba4a6b4d238ff944bacb478cbed5efcae784d7bf4f2ff80"

    def context(self, message: str = "hello", chain_id: int = 1) -> SigningContext:
        return SigningContext(self.SAFE, chain_id, MessagePayload.from_text(message))

    def signed(self, context: SigningContext) -> SignatureSet:
        key = PrivateKey.from_hex(self.KEY)
        return upsert(
            SignatureSet(context), key.address(), key.sign_digest(context.digest.value)
        )

    def test_upsert_is_pure_and_idempotent(self):
        context = self.context()
        empty = SignatureSet(context)
        once = self.signed(context)
        signer = entries(once)[0]
        twice = upsert(once, signer.signer.lower(), signer.signature)

        self.assertEqual(len(empty), 0)
        self.assertEqual(len(once), 1)
        self.assertEqual(len(twice), 1)
        self.assertEqual(entries(twice)[0].signature, signer.signature)

    def test_upsert_overwrites_case_insensitively(self):
        signer = "0x" + "bb" * 20
        first = upsert(SignatureSet(self.context()), signer, b"\x01" * 65)
        second = upsert(first, signer.upper().replace("0X", "0x"), b"\x02" * 65)
        self.assertEqual(len(second), 1)
        self.assertEqual(entries(second)[0].signature, b"\x02" * 65)
        self.assertEqual(entries(first)[0].signature, b"\x01" * 65)

    def test_upsert_validation(self):
        signature_set = SignatureSet(self.context())
        self.assertRaises(
            InputValidationError, upsert, signature_set, "0x1234", b"\x01" * 65
        )
        self.assertRaises(
            InputValidationError, upsert, signature_set, "0x" + "bb" * 20, b"\x01" * 64
        )

    def test_persist_and_load(self):
        store = MemorySignatureStore()
        context = self.context()
        signature_set = self.signed(context)
        store.persist("record", signature_set)

        loaded = store.load_or_init("record", context)
        self.assertEqual(loaded.digest, context.digest)
        self.assertEqual(entries(loaded), entries(signature_set))
        self.assertFalse(loaded.executed)

    def test_load_or_init_fresh(self):
        loaded = MemorySignatureStore().load_or_init("missing", self.context())
        self.assertEqual(len(loaded), 0)

    def test_load_or_init_mismatch(self):
        store = MemorySignatureStore()
        store.persist("record", SignatureSet(self.context("hello")))
        with self.assertRaises(ConsistencyError):
            store.load_or_init("record", self.context("goodbye"))
        with self.assertRaises(ConsistencyError):
            store.load_or_init("record", self.context("hello", chain_id=5))
        other_safe = SigningContext(
            AccountAddress.from_str("0x" + "bb" * 20), 1, MessagePayload.from_text("hello")
        )
        with self.assertRaises(ConsistencyError):
            store.load_or_init("record", other_safe)

    def test_corrupt_record(self):
        store = MemorySignatureStore()
        store.persist("record", SignatureSet(self.context()))
        record = json.loads(store.records["record"])
        record["hash"] = "0x" + "00" * 32
        store.records["record"] = json.dumps(record)
        with self.assertRaises(ConsistencyError):
            store.load_or_init("record", self.context())

        store.records["record"] = "{not json"
        with self.assertRaises(ConsistencyError):
            store.load("record")

        store.records["record"] = json.dumps({"type": "message"})
        with self.assertRaises(ConsistencyError):
            store.load("record")

    def test_transaction_record(self):
        payload = TransactionPayload(to="0x" + "11" * 20, value=5, data="0xdead", nonce=2)
        context = SigningContext(self.SAFE, 1, payload)
        executed = mark_executed(
            SignatureSet(context), ExecutionReceipt("0x" + "ff" * 32, 12)
        )
        record = to_record(executed)
        self.assertEqual(record["type"], TRANSACTION)
        self.assertEqual(record["value"], "5")

        # Older files used txHash and no type field.
        del record["type"]
        record["txHash"] = record.pop("hash")
        loaded = from_record(record)
        self.assertEqual(loaded.payload, payload)
        self.assertTrue(loaded.executed)
        self.assertEqual(loaded.execution, ExecutionReceipt("0x" + "ff" * 32, 12))

    def test_record_entries_are_validated(self):
        store = MemorySignatureStore()
        context = self.context()
        store.persist("record", self.signed(context))
        record = json.loads(store.records["record"])
        good = record["signatures"][0]

        for bad in (
            {"signer": "0x" + "11" * 20, "signature": good["signature"][:-2]},
            {"signer": "not-an-address", "signature": good["signature"]},
            {"signer": "0x" + "22" * 20},
        ):
            record["signatures"] = [good, bad]
            store.records["record"] = json.dumps(record)
            with self.assertRaises(ConsistencyError):
                store.load_or_init("record", context)

    def test_record_requires_hash_and_boolean_executed(self):
        store = MemorySignatureStore()
        context = self.context()
        store.persist("record", SignatureSet(context))
        record = json.loads(store.records["record"])

        without_hash = dict(record)
        del without_hash["hash"]
        store.records["record"] = json.dumps(without_hash)
        with self.assertRaises(ConsistencyError):
            store.load_or_init("record", context)

        for executed in ("false", 0, None):
            store.records["record"] = json.dumps(dict(record, executed=executed))
            with self.assertRaises(ConsistencyError):
                store.load_or_init("record", context)

        del record["executed"]
        store.records["record"] = json.dumps(record)
        self.assertFalse(store.load_or_init("record", context).executed)

    def test_transaction_file_without_chain_id(self):
        # Layout written by the earlier Node.js transaction tool.
        payload = TransactionPayload(to="0x" + "11" * 20, value=1000, nonce=3)
        context = SigningContext(self.SAFE, 11155111, payload)
        key = PrivateKey.from_hex(self.KEY)
        signature = key.sign_digest(context.digest.value)
        record = {
            "safe": str(self.SAFE),
            "to": "0x" + "11" * 20,
            "value": "1000",
            "data": "0x",
            "operation": 0,
            "safeTxGas": 0,
            "baseGas": 0,
            "gasPrice": 0,
            "gasToken": "0x" + "00" * 20,
            "refundReceiver": "0x" + "00" * 20,
            "nonce": 3,
            "txHash": context.digest.hex(),
            "signatures": [{"signer": str(key.address()), "signature": signature.hex()}],
            "executed": False,
        }
        store = MemorySignatureStore()
        store.records["tx.json"] = json.dumps(record, indent=2)

        loaded = store.load_or_init("tx.json", context)
        self.assertEqual(loaded.payload, payload)
        self.assertEqual(loaded.chain_id, 11155111)
        self.assertEqual(entries(loaded)[0].signature, signature.data())
        self.assertEqual(store.load("tx.json", 11155111).digest, context.digest)

        with self.assertRaises(ConsistencyError):
            store.load("tx.json")
        with self.assertRaises(ConsistencyError):
            store.load_or_init("tx.json", SigningContext(self.SAFE, 1, payload))

        store.persist("tx.json", loaded)
        self.assertEqual(json.loads(store.records["tx.json"])["chainId"], 11155111)

    def test_file_store(self):
        with tempfile.TemporaryDirectory() as directory:
            path = os.path.join(directory, "signatures.json")
            store = FileSignatureStore()
            self.assertIsNone(store.load(path))
            context = self.context()
            store.persist(path, self.signed(context))
            self.assertEqual(len(store.load_or_init(path, context)), 1)
