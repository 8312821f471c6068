# Copyright © Aptos Foundation
# SPDX-License-Identifier: Apache-2.0

"""
Ethereum legacy transactions with EIP-155 replay protection.

The executor account pays for ``execTransaction`` with an ordinary Ethereum
transaction. Legacy transactions are accepted by every EVM chain a Safe is
deployed on, so that is the only envelope produced here.
"""

from __future__ import annotations

import unittest
from dataclasses import dataclass
from typing import List, Optional

from . import rlp
from .abi import keccak256
from .account_address import AccountAddress
from .secp256k1_ecdsa import PrivateKey, Signature


@dataclass(frozen=True)
class LegacyTransaction:
    nonce: int
    gas_price: int
    gas_limit: int
    to: Optional[AccountAddress]
    value: int
    data: bytes
    chain_id: int

    def _fields(self) -> List[rlp.Item]:
        return [
            self.nonce,
            self.gas_price,
            self.gas_limit,
            b"" if self.to is None else bytes(self.to),
            self.value,
            self.data,
        ]

    def signing_payload(self) -> bytes:
        return rlp.encode(self._fields() + [self.chain_id, 0, 0])

    def signing_hash(self) -> bytes:
        return keccak256(self.signing_payload())

    def sign(self, key: PrivateKey) -> SignedTransaction:
        """Sign with ``v = recovery_id + 35 + 2 * chain_id``."""
        signature = key.sign_digest(self.signing_hash())
        v = signature.recovery_id() + 35 + 2 * self.chain_id
        return SignedTransaction(self, v, signature.r, signature.s)


@dataclass(frozen=True)
class SignedTransaction:
    transaction: LegacyTransaction
    v: int
    r: int
    s: int

    def raw(self) -> bytes:
        return rlp.encode(self.transaction._fields() + [self.v, self.r, self.s])

    def hash(self) -> str:
        return f"0x{keccak256(self.raw()).hex()}"

    def sender(self) -> AccountAddress:
        recovery_id = self.v - 35 - 2 * self.transaction.chain_id
        signature = Signature.from_components(self.r, self.s, 27 + recovery_id)
        return signature.recover_address(self.transaction.signing_hash())


class Test(unittest.TestCase):
    # Example transaction from EIP-155.
    TRANSACTION = LegacyTransaction(
        nonce=9,
        gas_price=20 * 10**9,
        gas_limit=21000,
        to=AccountAddress.from_str("0x3535353535353535353535353535353535353535"),
        value=10**18,
        data=b"",
        chain_id=1,
    )

    def test_signing_payload(self):
        self.assertEqual(
            self.TRANSACTION.signing_payload().hex(),
            "ec098504a817c800825208943535353535353535353535353535353535353535"
            "880de0b6b3a764000080018080",
        )
        self.assertEqual(
            self.TRANSACTION.signing_hash().hex(),
            "daf5a779ae972f972197303d7b574746c7ef83eadac0f2791ad23db92e4c8e53",
        )

    def test_sign(self):
        key = PrivateKey.from_hex("0x" + "46" * 32)
        signed = self.TRANSACTION.sign(key)
        self.assertIn(signed.v, (37, 38))
        self.assertEqual(signed.sender(), key.address())
        self.assertEqual(signed.raw()[0], 0xF8)
        self.assertEqual(signed.hash(), self.TRANSACTION.sign(key).hash())
