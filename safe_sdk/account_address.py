# Copyright © Aptos Foundation
# SPDX-License-Identifier: Apache-2.0

"""
Ethereum account address handling for the Safe SDK.

Addresses are 20-byte identifiers for externally owned accounts and contracts
such as the Safe itself. This module provides parsing, validation, EIP-55
checksum formatting and derivation from secp256k1 public keys.

Address Formats:
- **Canonical (lowercase)**: ``0x`` + 40 lowercase hex characters, used as the
  comparison and map key form throughout the SDK.
- **Checksummed (EIP-55)**: mixed case encoding of a keccak-256 checksum, used
  for display.

Comparison is case-insensitive: two addresses are equal when their raw bytes
are equal, regardless of the casing they were parsed from.

Examples:
    Parsing and formatting::

        owner = AccountAddress.from_str("0x5aaeb6053f3e94c9b9a09f33669435e7ef1beaed")
        str(owner)      # "0x5aAeb6053F3E94C9b9A09f33669435E7Ef1BeAed"
        owner.lower()   # "0x5aaeb6053f3e94c9b9a09f33669435e7ef1beaed"

    Deriving from a key::

        address = AccountAddress.from_key(private_key.public_key())
"""

from __future__ import annotations

import unittest

from .abi import keccak256
from .errors import InputValidationError


class ParseAddressError(InputValidationError):
    """Raised when a string or byte sequence is not a well-formed address.

    Examples:
        Catching parse errors::

            try:
                addr = AccountAddress.from_str("invalid")
            except ParseAddressError as e:
                print(f"Failed to parse address: {e}")
    """


class AccountAddress:
    """A 20-byte Ethereum account address.

    Attributes:
        address: The raw 20-byte address data.
        LENGTH: The required byte length of all addresses (20).
    """

    address: bytes
    LENGTH: int = 20

    def __init__(self, address: bytes):
        """Initialize an AccountAddress with raw address bytes.

        Args:
            address: The 20-byte address data.

        Raises:
            ParseAddressError: If the address is not exactly 20 bytes.
        """
        if not isinstance(address, (bytes, bytearray)):
            raise ParseAddressError(f"Expected address bytes, got {type(address)}")
        if len(address) != AccountAddress.LENGTH:
            raise ParseAddressError(
                f"Expected address of length {AccountAddress.LENGTH}, got {len(address)}"
            )
        self.address = bytes(address)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, AccountAddress):
            return NotImplemented
        return self.address == other.address

    def __hash__(self) -> int:
        return hash(self.address)

    def __lt__(self, other: AccountAddress) -> bool:
        return self.address < other.address

    def __bytes__(self) -> bytes:
        return self.address

    def __str__(self):
        """Get the EIP-55 checksummed representation of this address.

        Returns:
            ``0x`` followed by 40 hex characters whose letters are upper cased
            where the corresponding nibble of ``keccak256(lowercase hex)`` is 8
            or higher.
        """
        return f"0x{AccountAddress._checksum(self.address.hex())}"

    def __repr__(self):
        return f"AccountAddress({self.__str__()})"

    def lower(self) -> str:
        """Canonical lowercase form used for comparisons and map keys."""
        return f"0x{self.address.hex()}"

    def is_zero(self) -> bool:
        return not any(self.address)

    @staticmethod
    def _checksum(hex_lower: str) -> str:
        digest = keccak256(hex_lower.encode("ascii")).hex()
        return "".join(
            char.upper() if int(digest[i], 16) >= 8 else char
            for i, char in enumerate(hex_lower)
        )

    @staticmethod
    def from_str(address: str) -> AccountAddress:
        """Parse an address string strictly.

        The string must be ``0x`` followed by exactly 40 hex characters. All
        lowercase and all uppercase inputs are accepted as-is; a mixed case
        input must carry a valid EIP-55 checksum, which catches most typos.

        Args:
            address: The address string to parse.

        Returns:
            The parsed AccountAddress.

        Raises:
            ParseAddressError: If the string is malformed or its checksum is wrong.

        Examples:
            >>> AccountAddress.from_str("0x" + "aa" * 20).lower()
            '0xaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaa'
            >>> AccountAddress.from_str("0x1234")
            Traceback (most recent call last):
                ...
            ParseAddressError: Expected 40 hex characters after 0x, got 4
        """
        if not isinstance(address, str):
            raise ParseAddressError(f"Expected address string, got {type(address)}")
        if not address.startswith(("0x", "0X")):
            raise ParseAddressError("Hex string must start with a leading 0x.")
        body = address[2:]
        if len(body) != AccountAddress.LENGTH * 2:
            raise ParseAddressError(
                f"Expected {AccountAddress.LENGTH * 2} hex characters after 0x, got {len(body)}"
            )
        try:
            raw = bytes.fromhex(body)
        except ValueError:
            raise ParseAddressError(f"Address contains non-hex characters: {address}")
        if body != body.lower() and body != body.upper():
            if AccountAddress._checksum(body.lower()) != body:
                raise ParseAddressError(f"Bad EIP-55 checksum for address {address}")
        return AccountAddress(raw)

    @staticmethod
    def is_valid(address: str) -> bool:
        try:
            AccountAddress.from_str(address)
        except ParseAddressError:
            return False
        return True

    @staticmethod
    def from_key(key) -> AccountAddress:
        """Derive the address controlled by a secp256k1 public key.

        The address is the last 20 bytes of ``keccak256`` over the 64-byte
        uncompressed public key (without the ``0x04`` prefix).

        Args:
            key: A :class:`safe_sdk.secp256k1_ecdsa.PublicKey`.
        """
        return AccountAddress(keccak256(key.to_crypto_bytes())[-AccountAddress.LENGTH :])


AccountAddress.ZERO = AccountAddress(b"\x00" * AccountAddress.LENGTH)  # type: ignore[attr-defined]


class Test(unittest.TestCase):
    def test_checksum_vectors(self):
        for expected in [
            "0x5aAeb6053F3E94C9b9A09f33669435E7Ef1BeAed",
            "0xfB6916095ca1df60bB79Ce92cE3Ea74c37c5d359",
            "0xdbF03B407c01E7cD3CBea99509d93f8DDDC8C6FB",
            "0xD1220A0cf47c7B9Be7A2E6BA89F429762e7b9aDb",
        ]:
            self.assertEqual(str(AccountAddress.from_str(expected.lower())), expected)
            self.assertEqual(str(AccountAddress.from_str(expected)), expected)

    def test_case_insensitive_equality(self):
        lower = AccountAddress.from_str("0x5aaeb6053f3e94c9b9a09f33669435e7ef1beaed")
        upper = AccountAddress.from_str("0x5AAEB6053F3E94C9B9A09F33669435E7EF1BEAED")
        self.assertEqual(lower, upper)
        self.assertEqual(hash(lower), hash(upper))
        self.assertEqual(upper.lower(), "0x5aaeb6053f3e94c9b9a09f33669435e7ef1beaed")

    def test_from_str_rejects(self):
        self.assertRaises(ParseAddressError, AccountAddress.from_str, "0x1234")
        self.assertRaises(
            ParseAddressError,
            AccountAddress.from_str,
            "5aaeb6053f3e94c9b9a09f33669435e7ef1beaed",
        )
        self.assertRaises(
            ParseAddressError,
            AccountAddress.from_str,
            "0x5aaeb6053f3e94c9b9a09f33669435e7ef1beaeg",
        )
        # One letter flipped in a checksummed address.
        self.assertRaises(
            ParseAddressError,
            AccountAddress.from_str,
            "0x5AAeb6053F3E94C9b9A09f33669435E7Ef1BeAed",
        )
        self.assertRaises(ParseAddressError, AccountAddress, b"\x00" * 32)
        self.assertFalse(AccountAddress.is_valid("not an address"))

    def test_parse_error_is_input_validation(self):
        with self.assertRaises(InputValidationError):
            AccountAddress.from_str("0x")

    def test_zero(self):
        zero = AccountAddress.ZERO  # type: ignore[attr-defined]
        self.assertTrue(zero.is_zero())
        self.assertEqual(zero.lower(), "0x" + "00" * 20)
