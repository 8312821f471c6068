# Copyright © Aptos Foundation
# SPDX-License-Identifier: Apache-2.0

"""
Signature packing for ``execTransaction``.

The Safe contract walks the packed signature blob in 65-byte steps and requires
the recovered owners to be strictly increasing, so the blob has to be ordered
by ascending signer address. Ordering is done on the lowercase hex form of the
address, which for fixed-width hex is the same as numeric order.
"""

from __future__ import annotations

import unittest
from typing import Iterable, List, Union

from .secp256k1_ecdsa import Signature
from .signature_store import SignatureEntry, SignatureSet, entries

Signatures = Union[SignatureSet, Iterable[SignatureEntry]]


def _ordered(signatures: Signatures) -> List[SignatureEntry]:
    items = entries(signatures) if isinstance(signatures, SignatureSet) else signatures
    present = [
        entry
        for entry in items
        if entry.signer and len(entry.signature) == Signature.LENGTH
    ]
    return sorted(present, key=lambda entry: entry.key)


def pack_signatures(signatures: Signatures) -> bytes:
    """Concatenate signatures in ascending signer order.

    Entries without a signer, or whose signature is not exactly 65 bytes, are
    skipped so the result always splits into 65-byte chunks. The result does
    not depend on the order entries were collected in.

    Example:
        >>> pack_signatures([
        ...     SignatureEntry("0x" + "bb" * 20, b"\\x02" * 65),
        ...     SignatureEntry("0x" + "aa" * 20, b"\\x01" * 65),
        ... ]) == b"\\x01" * 65 + b"\\x02" * 65
        True
    """
    return b"".join(entry.signature for entry in _ordered(signatures))


def packed_signers(signatures: Signatures) -> List[str]:
    """Signer addresses in the order :func:`pack_signatures` emits them."""
    return [entry.signer for entry in _ordered(signatures)]


class Test(unittest.TestCase):
    LOW = SignatureEntry("0x" + "0a" * 20, b"\x01" * 65)
    MID = SignatureEntry("0x" + "AB" * 20, b"\x02" * 65)
    HIGH = SignatureEntry("0x" + "f0" * 20, b"\x03" * 65)

    def test_sorted_by_signer(self):
        expected = b"\x01" * 65 + b"\x02" * 65 + b"\x03" * 65
        self.assertEqual(pack_signatures([self.HIGH, self.LOW, self.MID]), expected)
        self.assertEqual(pack_signatures([self.MID, self.HIGH, self.LOW]), expected)
        self.assertEqual(
            packed_signers([self.HIGH, self.MID, self.LOW]),
            [self.LOW.signer, self.MID.signer, self.HIGH.signer],
        )

    def test_skips_incomplete_entries(self):
        packed = pack_signatures(
            [self.HIGH, SignatureEntry("", b"\x09" * 65), SignatureEntry(self.LOW.signer, b"")]
        )
        self.assertEqual(packed, b"\x03" * 65)

    def test_skips_wrong_length_signatures(self):
        short = SignatureEntry("0x" + "11" * 20, b"\x04" * 64)
        long = SignatureEntry("0x" + "22" * 20, b"\x05" * 66)
        packed = pack_signatures([self.HIGH, short, long, self.LOW])
        self.assertEqual(packed, b"\x01" * 65 + b"\x03" * 65)
        self.assertEqual(len(packed) % Signature.LENGTH, 0)
        self.assertEqual(packed_signers([short, self.LOW]), [self.LOW.signer])

    def test_empty(self):
        self.assertEqual(pack_signatures([]), b"")
