# Copyright © Aptos Foundation
# SPDX-License-Identifier: Apache-2.0

"""
Shared configuration for the examples.

Every value can be overridden through the environment:

    SAFE_RPC_URL: JSON-RPC endpoint (default: a public Sepolia node)
    SAFE_ADDRESS: the Safe account to coordinate
    SAFE_CHAIN_ID: EIP-155 chain id (default: Sepolia, 11155111)
    SAFE_OWNER_KEYS: comma separated owner private keys for the live example
    SAFE_EXECUTOR_KEY: private key paying for execution in the live example

Example::

    export SAFE_RPC_URL="http://127.0.0.1:8545"
    export SAFE_CHAIN_ID=31337
    python -m examples.transfer 0x5aAeb6053F3E94C9b9A09f33669435E7Ef1BeAed 1000
"""

import os

RPC_URL = os.getenv("SAFE_RPC_URL", "https://ethereum-sepolia-rpc.publicnode.com")
SAFE_ADDRESS = os.getenv("SAFE_ADDRESS", "0x" + "aa" * 20)
CHAIN_ID = int(os.getenv("SAFE_CHAIN_ID", "11155111"))
OWNER_KEYS = [key for key in os.getenv("SAFE_OWNER_KEYS", "").split(",") if key]
EXECUTOR_KEY = os.getenv("SAFE_EXECUTOR_KEY")
