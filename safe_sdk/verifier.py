# Copyright © Aptos Foundation
# SPDX-License-Identifier: Apache-2.0

"""
Signature verification.

Two independent strategies check a collected signature:

- **Off-chain** (:func:`verify_offchain`): recover the signer address from the
  digest and the 65-byte signature and compare it with the claimed signer.
  Optionally check the claimed signer against the Safe's owners.
- **On-chain** (:func:`verify_onchain`): ask the Safe itself through EIP-1271
  ``isValidSignature(bytes32,bytes)`` and compare the answer with the magic
  value ``0x1626ba7e``.

Neither strategy raises for a bad signature. A rejected signature carries a
:class:`~safe_sdk.errors.VerificationFailure` reason instead, so a caller can
show "N/M valid" for a whole set with :func:`verify_signature_set`.

Signature types:
    ``v`` 27/28 is an ECDSA signature over the digest itself (EIP-712
    signing). ``v`` 31/32 is the deprecated ``eth_sign`` form, where the
    EIP-191 personal hash of the digest was signed. Contract signatures
    (``v`` 0) and approved hashes (``v`` 1) cannot be checked off-chain.
"""

from __future__ import annotations

import asyncio
import logging
import threading
import unittest
import unittest.mock
from dataclasses import dataclass
from typing import Iterable, List, Optional, Sequence

from .account_address import AccountAddress, ParseAddressError
from .errors import NetworkError, VerificationFailure
from .packing import pack_signatures
from .safe_contract import MAGIC_VALUE, SafeContract, SimulatedSafeContract
from .secp256k1_ecdsa import PrivateKey, Signature, SignatureRecoveryError
from .signature_store import SignatureEntry, SignatureSet, SigningContext, entries, upsert
from .threshold import ready
from .typed_data import Digest, MessagePayload

SUPPORTED_V = (27, 28, 31, 32)


@dataclass(frozen=True)
class OffchainVerdict:
    signer: str
    recovered_address: Optional[AccountAddress]
    is_valid_recovery: bool
    is_owner: bool
    failure: Optional[VerificationFailure] = None

    @property
    def is_valid(self) -> bool:
        return self.is_valid_recovery and self.is_owner


@dataclass(frozen=True)
class EntryVerification:
    entry: SignatureEntry
    offchain: OffchainVerdict
    onchain: Optional[bool] = None

    @property
    def is_valid(self) -> bool:
        if self.onchain is not None:
            return self.onchain and self.offchain.is_owner
        return self.offchain.is_valid

    @property
    def failure(self) -> Optional[VerificationFailure]:
        if self.onchain is False:
            return VerificationFailure.MAGIC_VALUE_MISMATCH
        if self.onchain and not self.offchain.is_owner:
            return VerificationFailure.NOT_OWNER
        if self.onchain is None:
            return self.offchain.failure
        return None


@dataclass(frozen=True)
class VerificationReport:
    verdicts: List[EntryVerification]
    valid_owner_count: int

    @property
    def total(self) -> int:
        return len(self.verdicts)

    def summary(self) -> str:
        return f"{self.valid_owner_count}/{self.total} valid"


def _claimed_address(signer: str) -> Optional[AccountAddress]:
    try:
        return AccountAddress.from_str(signer)
    except ParseAddressError:
        return None


def verify_offchain(
    message_digest: Digest,
    entry: SignatureEntry,
    owners: Iterable[AccountAddress] = (),
) -> OffchainVerdict:
    """Recover the signer of ``entry`` and compare it with the claimed signer.

    Args:
        message_digest: The digest every owner signed.
        entry: The claimed signer and its signature bytes.
        owners: Current Safe owners. Empty means ownership is not checked.

    Returns:
        An :class:`OffchainVerdict`. ``is_valid_recovery`` is False for any
        malformed or unsupported signature; this function does not raise for
        bad signatures.
    """
    owners = list(owners)
    claimed = _claimed_address(entry.signer)
    is_owner = not owners or (claimed is not None and claimed in owners)

    if len(entry.signature) != Signature.LENGTH:
        return OffchainVerdict(
            entry.signer, None, False, is_owner, VerificationFailure.MALFORMED_SIGNATURE
        )
    signature = Signature(entry.signature)
    if signature.v not in SUPPORTED_V:
        return OffchainVerdict(
            entry.signer,
            None,
            False,
            is_owner,
            VerificationFailure.UNSUPPORTED_SIGNATURE_TYPE,
        )
    if signature.is_eth_sign():
        logging.warning(
            f"Signature from {entry.signer} uses deprecated eth_sign; "
            "sign the EIP-712 digest directly instead"
        )
    try:
        recovered = signature.recover_address(message_digest.value)
    except SignatureRecoveryError as e:
        logging.info(f"Could not recover signer for {entry.signer}: {e}")
        return OffchainVerdict(
            entry.signer, None, False, is_owner, VerificationFailure.RECOVERY_FAILED
        )
    if claimed is None or recovered != claimed:
        return OffchainVerdict(
            entry.signer, recovered, False, is_owner, VerificationFailure.SIGNER_MISMATCH
        )
    failure = None if is_owner else VerificationFailure.NOT_OWNER
    return OffchainVerdict(entry.signer, recovered, True, is_owner, failure)


async def verify_onchain(
    message_digest: Digest, signature: bytes, contract: SafeContract
) -> bool:
    """True iff the Safe answers ``isValidSignature`` with the magic value.

    Reverts and network failures are logged and reported as False.
    """
    try:
        result = await contract.is_valid_signature(message_digest, signature)
    except (NetworkError, ValueError) as e:
        logging.warning(f"isValidSignature call failed for {message_digest}: {e}")
        return False
    return result == MAGIC_VALUE


async def verify_signature_set(
    signature_set: SignatureSet,
    owners: Sequence[AccountAddress] = (),
    contract: Optional[SafeContract] = None,
    onchain: bool = False,
    max_concurrency: int = 8,
) -> VerificationReport:
    """Verify every entry of a set concurrently and tally the valid owners.

    Off-chain recovery runs in worker threads, at most ``max_concurrency`` at
    a time, so the event loop stays free while the curve math runs.

    With ``onchain`` every signature is also checked by the Safe contract,
    which then decides validity; the owner check still applies.
    """
    if onchain and contract is None:
        raise ValueError("On-chain verification requires a contract")
    semaphore = asyncio.Semaphore(max_concurrency)

    async def verify(entry: SignatureEntry) -> EntryVerification:
        async with semaphore:
            offchain = await asyncio.to_thread(
                verify_offchain, signature_set.digest, entry, owners
            )
            if not onchain:
                return EntryVerification(entry, offchain)
            valid = await verify_onchain(
                signature_set.digest, entry.signature, contract  # type: ignore[arg-type]
            )
            return EntryVerification(entry, offchain, valid)

    verdicts = list(await asyncio.gather(*(verify(e) for e in entries(signature_set))))
    valid_owner_count = sum(1 for verdict in verdicts if verdict.is_valid)
    for verdict in verdicts:
        if not verdict.is_valid:
            logging.info(f"Signature from {verdict.entry.signer} rejected: {verdict.failure}")
    return VerificationReport(verdicts, valid_owner_count)


class Test(unittest.IsolatedAsyncioTestCase):
    SAFE = AccountAddress.from_str("0x" + "aa" * 20)

    def setUp(self):
        self.keys = sorted(
            [PrivateKey.from_hex("0x" + "0b" * 32), PrivateKey.from_hex("0x" + "0c" * 32)],
            key=lambda key: key.address(),
        )
        self.owners = [key.address() for key in self.keys]
        self.context = SigningContext(self.SAFE, 1, MessagePayload.from_text("hello"))

    def sign(self, key: PrivateKey) -> bytes:
        return key.sign_digest(self.context.digest.value).data()

    def entry(self, key: PrivateKey) -> SignatureEntry:
        return SignatureEntry(str(key.address()), self.sign(key))

    def test_offchain_valid(self):
        verdict = verify_offchain(self.context.digest, self.entry(self.keys[0]), self.owners)
        self.assertTrue(verdict.is_valid_recovery)
        self.assertTrue(verdict.is_owner)
        self.assertEqual(verdict.recovered_address, self.owners[0])
        self.assertIsNone(verdict.failure)

    def test_offchain_without_owners(self):
        outsider = PrivateKey.from_hex("0x" + "0d" * 32)
        verdict = verify_offchain(self.context.digest, self.entry(outsider))
        self.assertTrue(verdict.is_valid)

        verdict = verify_offchain(self.context.digest, self.entry(outsider), self.owners)
        self.assertTrue(verdict.is_valid_recovery)
        self.assertFalse(verdict.is_owner)
        self.assertEqual(verdict.failure, VerificationFailure.NOT_OWNER)

    def test_offchain_mismatch(self):
        entry = SignatureEntry(str(self.owners[1]), self.sign(self.keys[0]))
        verdict = verify_offchain(self.context.digest, entry, self.owners)
        self.assertFalse(verdict.is_valid_recovery)
        self.assertEqual(verdict.recovered_address, self.owners[0])
        self.assertEqual(verdict.failure, VerificationFailure.SIGNER_MISMATCH)

    def test_offchain_malformed(self):
        signer = str(self.owners[0])
        cases = [
            (b"\x01" * 64, VerificationFailure.MALFORMED_SIGNATURE),
            (b"\x01" * 64 + b"\x00", VerificationFailure.UNSUPPORTED_SIGNATURE_TYPE),
            (b"\x00" * 64 + b"\x1b", VerificationFailure.RECOVERY_FAILED),
        ]
        for signature, failure in cases:
            verdict = verify_offchain(self.context.digest, SignatureEntry(signer, signature))
            self.assertFalse(verdict.is_valid_recovery)
            self.assertIsNone(verdict.recovered_address)
            self.assertEqual(verdict.failure, failure)

    def test_offchain_eth_sign(self):
        signature = self.keys[0].sign_personal_digest(self.context.digest.value)
        entry = SignatureEntry(str(self.owners[0]), signature.data())
        with self.assertLogs(level="WARNING"):
            verdict = verify_offchain(self.context.digest, entry, self.owners)
        self.assertTrue(verdict.is_valid)

    async def test_onchain(self):
        signature = self.sign(self.keys[0])
        contract = SimulatedSafeContract(self.SAFE, valid_signature_response=MAGIC_VALUE)
        self.assertTrue(await verify_onchain(self.context.digest, signature, contract))

        contract.valid_signature_response = b"\xde\xad\xbe\xef"
        self.assertFalse(await verify_onchain(self.context.digest, signature, contract))

        contract.valid_signature_response = b""
        self.assertFalse(await verify_onchain(self.context.digest, signature, contract))

    async def test_onchain_call_failure(self):
        class FailingContract(SimulatedSafeContract):
            async def is_valid_signature(self, message_digest, signature):
                raise NetworkError("execution reverted")

        with self.assertLogs(level="WARNING"):
            self.assertFalse(
                await verify_onchain(
                    self.context.digest, b"\x00" * 65, FailingContract(self.SAFE)
                )
            )

    async def test_end_to_end_message(self):
        reference = SigningContext(
            "0x" + "AA" * 20, 1, MessagePayload.from_text("hello")
        ).digest
        self.assertEqual(self.context.digest, reference)

        # Collected higher address first; packing still puts the lower one first.
        signature_set = SignatureSet(self.context)
        signature_set = upsert(signature_set, self.owners[1], self.sign(self.keys[1]))
        signature_set = upsert(signature_set, self.owners[0], self.sign(self.keys[0]))
        packed = pack_signatures(signature_set)
        self.assertEqual(len(packed), 130)
        self.assertEqual(packed, self.sign(self.keys[0]) + self.sign(self.keys[1]))

        contract = SimulatedSafeContract(
            self.SAFE, owners=self.owners, threshold=2, valid_signature_response=MAGIC_VALUE
        )
        self.assertTrue(await verify_onchain(self.context.digest, packed, contract))
        contract.valid_signature_response = b"\x00\x00\x00\x01"
        self.assertFalse(await verify_onchain(self.context.digest, packed, contract))

        # Without a fixed response the simulated Safe checks the packed signatures.
        contract.valid_signature_response = None
        self.assertTrue(await verify_onchain(self.context.digest, packed, contract))

    async def test_end_to_end_threshold(self):
        signature_set = upsert(
            SignatureSet(self.context), self.owners[0], self.sign(self.keys[0])
        )
        report = await verify_signature_set(signature_set, self.owners)
        self.assertFalse(ready(report.valid_owner_count, 2))
        self.assertEqual(report.summary(), "1/1 valid")

        signature_set = upsert(signature_set, self.owners[1], self.sign(self.keys[1]))
        report = await verify_signature_set(signature_set, self.owners)
        self.assertTrue(ready(report.valid_owner_count, 2))
        self.assertEqual(report.summary(), "2/2 valid")

        signature_set = upsert(signature_set, self.owners[1], b"\x00" * 65)
        report = await verify_signature_set(signature_set, self.owners)
        self.assertFalse(ready(report.valid_owner_count, 2))
        self.assertEqual(report.summary(), "1/2 valid")

    async def test_signature_set_onchain(self):
        signature_set = upsert(
            SignatureSet(self.context), self.owners[0], self.sign(self.keys[0])
        )
        contract = SimulatedSafeContract(self.SAFE, owners=self.owners, threshold=1)
        report = await verify_signature_set(
            signature_set, self.owners, contract, onchain=True, max_concurrency=1
        )
        self.assertEqual(report.valid_owner_count, 1)
        self.assertTrue(report.verdicts[0].onchain)

        contract.valid_signature_response = b"\x00" * 4
        report = await verify_signature_set(signature_set, self.owners, contract, onchain=True)
        self.assertEqual(report.valid_owner_count, 0)
        self.assertEqual(
            report.verdicts[0].failure, VerificationFailure.MAGIC_VALUE_MISMATCH
        )

    async def test_offchain_checks_leave_the_event_loop(self):
        signature_set = upsert(
            SignatureSet(self.context), self.owners[0], self.sign(self.keys[0])
        )
        signature_set = upsert(signature_set, self.owners[1], self.sign(self.keys[1]))
        recover = verify_offchain
        threads = []

        def recording(*args):
            threads.append(threading.get_ident())
            return recover(*args)

        with unittest.mock.patch(
            "safe_sdk.verifier.verify_offchain", side_effect=recording
        ):
            report = await verify_signature_set(signature_set, self.owners)

        self.assertEqual(report.summary(), "2/2 valid")
        self.assertEqual(len(threads), 2)
        self.assertNotIn(threading.get_ident(), threads)
