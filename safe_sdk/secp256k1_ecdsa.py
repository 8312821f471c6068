# Copyright © Aptos Foundation
# SPDX-License-Identifier: Apache-2.0

"""
secp256k1 ECDSA keys and recoverable signatures for Safe owners.

Safe owners are regular Ethereum accounts, so every owner signature is a
65-byte recoverable secp256k1 signature ``r ‖ s ‖ v`` over a 32-byte digest.
This module wraps the ``ecdsa`` library to provide deterministic signing,
signature normalisation and public-key recovery.

Key Features:
- **Deterministic Signatures**: RFC 6979 nonces (HMAC-SHA256), the same
  construction used by common Ethereum wallets.
- **Signature Normalization**: Low-s canonical signatures (s <= n/2).
- **Public Key Recovery**: Recover the signer's key, and thus its address,
  from ``(digest, signature)`` without knowing the key in advance.
- **Safe ``v`` Conventions**: ``v`` of 27/28 signs the digest directly,
  ``v`` of 31/32 marks a legacy ``eth_sign`` signature over the EIP-191
  personal hash of the digest.

Cryptographic Properties:
- Curve: secp256k1
- Key Sizes: 32-byte private keys, 64-byte uncompressed public keys
- Signature Size: 65 bytes (r, s, v)

Examples:
    Sign a Safe digest and recover the signer::

        from safe_sdk.secp256k1_ecdsa import PrivateKey

        private_key = PrivateKey.random()
        signature = private_key.sign_digest(digest)

        recovered = signature.recover(digest)
        assert recovered.address() == private_key.address()

Note:
    Only recovery ids 0 and 1 are produced or accepted. Ids 2 and 3 (an ``r``
    value larger than the group order) have negligible probability and are
    rejected by the Safe contract's ``ecrecover`` path as well.
"""

from __future__ import annotations

import hashlib
import logging
import unittest
from typing import List, Optional, Tuple

from ecdsa import SECP256k1, SigningKey, VerifyingKey, numbertheory, util
from ecdsa.ecdsa import InvalidPointError
from ecdsa.errors import MalformedPointError

from .abi import keccak256
from .account_address import AccountAddress
from .errors import InputValidationError

ETH_SIGNED_MESSAGE_PREFIX = b"\x19Ethereum Signed Message:\n"


class SignatureRecoveryError(InputValidationError):
    """The signature bytes are malformed or do not recover to a public key."""


def personal_message_hash(data: bytes) -> bytes:
    """EIP-191 (version 0x45) hash, as produced by ``eth_sign``/``personal_sign``."""
    return keccak256(ETH_SIGNED_MESSAGE_PREFIX + str(len(data)).encode("ascii") + data)


def parse_hex_bytes(value: str | bytes, name: str = "value") -> bytes:
    """Accept raw bytes or a hex string with an optional ``0x`` prefix."""
    if isinstance(value, (bytes, bytearray)):
        return bytes(value)
    if not isinstance(value, str):
        raise InputValidationError(f"Expected hex string for {name}, got {type(value)}")
    text = value.strip()
    if text.startswith(("0x", "0X")):
        text = text[2:]
    try:
        return bytes.fromhex(text)
    except ValueError:
        raise InputValidationError(f"{name} is not valid hex: {value!r}")


class PrivateKey:
    """secp256k1 private key of a Safe owner or transaction executor.

    Attributes:
        LENGTH: The byte length of secp256k1 private keys (32).
        key: The underlying ECDSA signing key object.
    """

    LENGTH: int = 32

    key: SigningKey

    def __init__(self, key: SigningKey):
        self.key = key

    def __eq__(self, other: object):
        if not isinstance(other, PrivateKey):
            return NotImplemented
        return self.key.to_string() == other.key.to_string()

    def __repr__(self):
        # Never print key material.
        return f"PrivateKey({self.address()})"

    @staticmethod
    def from_hex(value: str | bytes) -> PrivateKey:
        """Create a private key from a hex string (``0x`` optional) or raw bytes.

        Args:
            value: 32 bytes of key material, as bytes or 64 hex characters.

        Returns:
            A new PrivateKey instance.

        Raises:
            InputValidationError: If the key is not 32 bytes or is outside
                the valid scalar range ``[1, n - 1]``.

        Example:
            >>> key = PrivateKey.from_hex("0x" + "11" * 32)
        """
        parsed_value = parse_hex_bytes(value, "private key")
        if len(parsed_value) != PrivateKey.LENGTH:
            raise InputValidationError("Length mismatch")
        try:
            return PrivateKey(SigningKey.from_string(parsed_value, SECP256k1))
        except MalformedPointError as e:
            raise InputValidationError(f"Invalid private key: {e}")

    @staticmethod
    def from_str(value: str) -> PrivateKey:
        return PrivateKey.from_hex(value)

    @staticmethod
    def random() -> PrivateKey:
        return PrivateKey(SigningKey.generate(curve=SECP256k1))

    def hex(self) -> str:
        return f"0x{self.key.to_string().hex()}"

    def public_key(self) -> PublicKey:
        return PublicKey(self.key.verifying_key)

    def address(self) -> AccountAddress:
        return self.public_key().address()

    def sign_digest(self, digest: bytes) -> Signature:
        """Sign a 32-byte digest, returning a recoverable signature with v = 27/28.

        This is the signature the Safe contract checks with plain ``ecrecover``
        over the EIP-712 digest.

        Args:
            digest: The 32-byte digest to sign (not re-hashed).

        Returns:
            A low-s, 65-byte :class:`Signature`.

        Example:
            >>> signature = private_key.sign_digest(digest)
            >>> signature.v in (27, 28)
            True
        """
        r, s, recovery_id = self._sign_raw(digest)
        return Signature.from_components(r, s, 27 + recovery_id)

    def sign_personal_digest(self, digest: bytes) -> Signature:
        """Legacy ``eth_sign`` flow: sign the EIP-191 personal hash of the digest.

        The returned ``v`` is shifted by 4 (31/32), the marker the Safe contract
        uses to re-apply the EIP-191 prefix before ``ecrecover``. Prefer
        :meth:`sign_digest`; this path only exists for owners whose signing
        device cannot produce raw digest or EIP-712 signatures.
        """
        logging.warning(
            "signing the personal-message hash of a Safe digest is deprecated, "
            "sign the EIP-712 digest directly"
        )
        r, s, recovery_id = self._sign_raw(personal_message_hash(digest))
        return Signature.from_components(r, s, 31 + recovery_id)

    def _sign_raw(self, digest: bytes) -> Tuple[int, int, int]:
        if len(digest) != 32:
            raise InputValidationError(f"Expected a 32-byte digest, got {len(digest)}")
        raw = self.key.sign_digest_deterministic(
            digest, hashfunc=hashlib.sha256, sigencode=util.sigencode_string_canonize
        )
        n = SECP256k1.order
        r, s = util.sigdecode_string(raw, n)
        own_key = self.key.verifying_key.to_string()
        for recovery_id, candidate in enumerate(_recover_candidates(digest, r, s)):
            if candidate.to_string() == own_key:
                return r, s, recovery_id
        raise RuntimeError("Unable to determine the recovery id of a fresh signature")


class PublicKey:
    """Uncompressed secp256k1 public key.

    Attributes:
        LENGTH: Length of the raw ``x ‖ y`` encoding (64).
        LENGTH_WITH_PREFIX_LENGTH: Length of the SEC1 encoding with ``0x04`` (65).
    """

    LENGTH: int = 64
    LENGTH_WITH_PREFIX_LENGTH: int = 65

    key: VerifyingKey

    def __init__(self, key: VerifyingKey):
        self.key = key

    def __eq__(self, other: object):
        if not isinstance(other, PublicKey):
            return NotImplemented
        return self.key.to_string() == other.key.to_string()

    def __str__(self) -> str:
        return self.hex()

    @staticmethod
    def from_str(value: str) -> PublicKey:
        key = parse_hex_bytes(value, "public key")
        if len(key) == PublicKey.LENGTH_WITH_PREFIX_LENGTH:
            key = key[1:]
        if len(key) != PublicKey.LENGTH:
            raise InputValidationError("Length mismatch")
        try:
            return PublicKey(VerifyingKey.from_string(key, SECP256k1))
        except MalformedPointError as e:
            raise InputValidationError(f"Invalid public key: {e}")

    def hex(self) -> str:
        return f"0x04{self.key.to_string().hex()}"

    def to_crypto_bytes(self) -> bytes:
        return self.key.to_string()

    def address(self) -> AccountAddress:
        return AccountAddress.from_key(self)


class Signature:
    """65-byte recoverable signature ``r ‖ s ‖ v`` in the Safe wire layout.

    The constructor only checks the length; range checks happen on recovery
    so that a malformed signature loaded from a file can still be displayed.
    """

    LENGTH: int = 65

    signature: bytes

    def __init__(self, signature: bytes):
        if len(signature) != Signature.LENGTH:
            raise SignatureRecoveryError(
                f"Expected a {Signature.LENGTH}-byte signature, got {len(signature)}"
            )
        self.signature = bytes(signature)

    def __eq__(self, other: object):
        if not isinstance(other, Signature):
            return NotImplemented
        return self.signature == other.signature

    def __str__(self) -> str:
        return self.hex()

    def __bytes__(self) -> bytes:
        return self.signature

    @staticmethod
    def from_components(r: int, s: int, v: int) -> Signature:
        return Signature(r.to_bytes(32, "big") + s.to_bytes(32, "big") + bytes([v]))

    def hex(self) -> str:
        return f"0x{self.signature.hex()}"

    def data(self) -> bytes:
        return self.signature

    @property
    def r(self) -> int:
        return int.from_bytes(self.signature[:32], "big")

    @property
    def s(self) -> int:
        return int.from_bytes(self.signature[32:64], "big")

    @property
    def v(self) -> int:
        return self.signature[64]

    def is_eth_sign(self) -> bool:
        return self.v in (31, 32)

    def recovery_id(self) -> int:
        if self.v in (27, 28):
            return self.v - 27
        if self.v in (31, 32):
            return self.v - 31
        raise SignatureRecoveryError(f"Unsupported signature v value {self.v}")

    def recover(self, digest: bytes) -> PublicKey:
        """Recover the public key that produced this signature over ``digest``.

        For ``eth_sign`` signatures (v = 31/32) the EIP-191 personal hash of
        the digest is what was actually signed, mirroring the Safe contract.

        Raises:
            SignatureRecoveryError: If ``v`` is not a supported ECDSA value,
                ``r``/``s`` are out of range or no curve point matches ``r``.
        """
        if len(digest) != 32:
            raise SignatureRecoveryError(f"Expected a 32-byte digest, got {len(digest)}")
        signed_hash = personal_message_hash(digest) if self.is_eth_sign() else digest
        recovery_id = self.recovery_id()
        candidates = _recover_candidates(signed_hash, self.r, self.s)
        return PublicKey(candidates[recovery_id])

    def recover_address(self, digest: bytes) -> AccountAddress:
        return self.recover(digest).address()


def _recover_candidates(signed_hash: bytes, r: int, s: int) -> List[VerifyingKey]:
    """Both keys that verify ``(r, s)`` over ``signed_hash``; index 0 has an even-y ``R``."""
    n = SECP256k1.order
    if not (0 < r < n and 0 < s < n):
        raise SignatureRecoveryError("Signature r or s out of range")
    try:
        return VerifyingKey.from_public_key_recovery_with_digest(
            util.sigencode_string(r, s, n),
            signed_hash,
            SECP256k1,
            hashfunc=hashlib.sha256,
            sigdecode=util.sigdecode_string,
        )
    except (numbertheory.Error, InvalidPointError, MalformedPointError, TypeError) as e:
        # TypeError: a candidate at the point at infinity has no coordinates.
        raise SignatureRecoveryError(f"No public key recovers from this signature: {e}")


def recover_signer(digest: bytes, signature: bytes) -> Optional[AccountAddress]:
    """Address recovered from raw signature bytes, or None if recovery fails."""
    try:
        return Signature(signature).recover_address(digest)
    except SignatureRecoveryError:
        return None


class Test(unittest.TestCase):
    # Well-known development key (Hardhat/Anvil account #0).
    PRIVATE_KEY = "0xac0974bec39a17e36ba4a6b4d238ff944bacb478cbed5efcae784d7bf4f2ff80"
    ADDRESS = "0xf39Fd6e51aad88F6F4ce6aB8827279cffFb92266"

    def test_address_derivation(self):
        private_key = PrivateKey.from_str(self.PRIVATE_KEY)
        self.assertEqual(str(private_key.address()), self.ADDRESS)
        self.assertEqual(
            PrivateKey.from_hex(bytes.fromhex(self.PRIVATE_KEY[2:])), private_key
        )

    def test_sign_and_recover(self):
        private_key = PrivateKey.random()
        digest = keccak256(b"test_message")
        signature = private_key.sign_digest(digest)

        self.assertEqual(len(signature.data()), Signature.LENGTH)
        self.assertIn(signature.v, (27, 28))
        self.assertLessEqual(signature.s, SECP256k1.order // 2)
        self.assertEqual(signature.recover(digest), private_key.public_key())
        self.assertEqual(signature.recover_address(digest), private_key.address())

    def test_deterministic(self):
        private_key = PrivateKey.from_str(self.PRIVATE_KEY)
        digest = keccak256(b"deterministic")
        self.assertEqual(private_key.sign_digest(digest), private_key.sign_digest(digest))

    def test_personal_digest(self):
        private_key = PrivateKey.random()
        digest = keccak256(b"legacy")
        signature = private_key.sign_personal_digest(digest)

        self.assertIn(signature.v, (31, 32))
        self.assertEqual(signature.recover_address(digest), private_key.address())

    def test_wrong_digest_recovers_other_address(self):
        private_key = PrivateKey.random()
        signature = private_key.sign_digest(keccak256(b"one"))
        self.assertNotEqual(
            recover_signer(keccak256(b"two"), signature.data()), private_key.address()
        )

    def test_malformed(self):
        digest = keccak256(b"malformed")
        self.assertIsNone(recover_signer(digest, b"\x00" * 64))
        self.assertIsNone(recover_signer(digest, b"\x00" * 65))
        valid = PrivateKey.random().sign_digest(digest).data()
        self.assertIsNone(recover_signer(digest, valid[:64] + bytes([5])))
        self.assertRaises(InputValidationError, PrivateKey.from_hex, "0x1234")
        self.assertRaises(InputValidationError, PrivateKey.from_hex, "00" * 32)

    def test_public_key_round_trip(self):
        public_key = PrivateKey.random().public_key()
        self.assertEqual(PublicKey.from_str(public_key.hex()), public_key)

    def test_recovery_picks_candidate_by_v(self):
        private_key = PrivateKey.from_str(self.PRIVATE_KEY)
        digest = keccak256(b"candidates")
        signature = private_key.sign_digest(digest)
        candidates = VerifyingKey.from_public_key_recovery_with_digest(
            signature.data()[:64], digest, SECP256k1, sigdecode=util.sigdecode_string
        )
        self.assertEqual(PublicKey(candidates[signature.v - 27]), private_key.public_key())

        flipped = Signature.from_components(signature.r, signature.s, 55 - signature.v)
        self.assertEqual(flipped.recover(digest), PublicKey(candidates[28 - signature.v]))
        self.assertNotEqual(flipped.recover_address(digest), private_key.address())

        out_of_range = Signature.from_components(SECP256k1.order, signature.s, 27)
        self.assertIsNone(recover_signer(digest, out_of_range.data()))
