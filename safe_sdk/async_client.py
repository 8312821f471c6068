# Copyright © Aptos Foundation
# SPDX-License-Identifier: Apache-2.0

"""
Asynchronous JSON-RPC client for EVM nodes.

:class:`RpcClient` wraps the handful of ``eth_*`` methods the Safe SDK needs:
reading contract state with ``eth_call``, building and submitting the
executor's transaction, and polling for its receipt.

Examples:
    Reading a Safe's threshold::

        client = RpcClient("https://rpc.sepolia.org")
        calldata = function_selector("getThreshold()")
        result = await client.call(safe_address, calldata)
        await client.close()

    Submitting a transaction and waiting for it::

        txn_hash = await client.send_transaction(executor_key, safe_address, calldata)
        receipt = await client.wait_for_transaction_receipt(txn_hash)

Error Handling:
    - ApiError: the endpoint answered with an HTTP status >= 400
    - NetworkError: transport failure or a JSON-RPC error object
    - CallRevertedError: ``eth_call`` or gas estimation reverted
    - ConfirmationTimeoutError: the receipt did not appear in time

Note:
    Always call ``close()`` when done to release pooled connections.
"""

import asyncio
import logging
import unittest
import unittest.mock
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import httpx

from .account_address import AccountAddress
from .errors import CallRevertedError, ConfirmationTimeoutError, NetworkError
from .metadata import Metadata
from .secp256k1_ecdsa import PrivateKey, parse_hex_bytes
from .transactions import LegacyTransaction


@dataclass
class ClientConfig:
    """Configuration parameters for the JSON-RPC client.

    Network Parameters:
        http2: Enable HTTP/2 (default: True)
        api_key: Optional bearer token for authenticated endpoints (default: None)
        timeout: Per request timeout in seconds (default: 60)

    Confirmation Parameters:
        poll_interval: Seconds between receipt polls (default: 2)
        max_poll_attempts: Receipt polls before giving up (default: 30)

    Transaction Parameters:
        gas_limit_margin: Multiplier applied to ``eth_estimateGas`` (default: 1.2)

    Examples:
        Patient confirmation on a congested network::

            config = ClientConfig(poll_interval=5, max_poll_attempts=120)
            client = RpcClient(rpc_url, config)
    """

    http2: bool = True
    api_key: Optional[str] = None
    timeout: float = 60.0
    poll_interval: float = 2.0
    max_poll_attempts: int = 30
    gas_limit_margin: float = 1.2


class RpcClient:
    """JSON-RPC interface to an Ethereum compatible node."""

    _chain_id: Optional[int]
    _request_id: int
    client: httpx.AsyncClient
    client_config: ClientConfig
    rpc_url: str

    def __init__(self, rpc_url: str, client_config: ClientConfig = ClientConfig()):
        self.rpc_url = rpc_url
        # Default limits
        limits = httpx.Limits()
        timeout = httpx.Timeout(client_config.timeout, pool=None)
        headers = {Metadata.CLIENT_HEADER: Metadata.get_client_header_val()}
        self.client = httpx.AsyncClient(
            http2=client_config.http2,
            limits=limits,
            timeout=timeout,
            headers=headers,
        )
        self.client_config = client_config
        self._chain_id = None
        self._request_id = 0
        if client_config.api_key:
            self.client.headers["Authorization"] = f"Bearer {client_config.api_key}"

    async def close(self):
        await self.client.aclose()

    async def chain_id(self) -> int:
        """
        Get the chain ID of the network, cached after the first request.

        :return: The EIP-155 chain id (e.g., 1 for mainnet, 11155111 for Sepolia)
        :raises NetworkError: If the request fails
        """
        if self._chain_id is None:
            self._chain_id = int(await self._request("eth_chainId", []), 16)
        return self._chain_id

    async def call(
        self, to: AccountAddress, data: bytes, block: str = "latest"
    ) -> bytes:
        """
        Execute a read-only contract call.

        :param to: The contract address
        :param data: ABI encoded calldata including the selector
        :return: The raw return data
        :raises CallRevertedError: If the call reverted
        """
        result = await self._request(
            "eth_call", [{"to": to.lower(), "data": f"0x{data.hex()}"}, block]
        )
        return parse_hex_bytes(result or "0x", "call result")

    async def get_transaction_count(
        self, address: AccountAddress, block: str = "pending"
    ) -> int:
        return int(
            await self._request("eth_getTransactionCount", [address.lower(), block]), 16
        )

    async def gas_price(self) -> int:
        return int(await self._request("eth_gasPrice", []), 16)

    async def estimate_gas(
        self,
        sender: AccountAddress,
        to: AccountAddress,
        data: bytes,
        value: int = 0,
    ) -> int:
        request = {
            "from": sender.lower(),
            "to": to.lower(),
            "data": f"0x{data.hex()}",
            "value": hex(value),
        }
        return int(await self._request("eth_estimateGas", [request]), 16)

    async def send_raw_transaction(self, raw: bytes) -> str:
        return await self._request("eth_sendRawTransaction", [f"0x{raw.hex()}"])

    async def send_transaction(
        self, key: PrivateKey, to: AccountAddress, data: bytes, value: int = 0
    ) -> str:
        """
        Build, sign and submit a legacy transaction from ``key``.

        The gas limit is the node's estimate scaled by ``gas_limit_margin``.

        :return: The transaction hash
        """
        sender = key.address()
        gas_estimate = await self.estimate_gas(sender, to, data, value)
        transaction = LegacyTransaction(
            nonce=await self.get_transaction_count(sender),
            gas_price=await self.gas_price(),
            gas_limit=int(gas_estimate * self.client_config.gas_limit_margin),
            to=to,
            value=value,
            data=data,
            chain_id=await self.chain_id(),
        )
        signed = transaction.sign(key)
        txn_hash = await self.send_raw_transaction(signed.raw())
        logging.info(f"Submitted transaction {txn_hash} from {sender}")
        return txn_hash

    async def get_transaction_receipt(self, txn_hash: str) -> Optional[Dict[str, Any]]:
        """Receipt of a mined transaction, or None while it is pending."""
        return await self._request("eth_getTransactionReceipt", [txn_hash])

    async def wait_for_transaction_receipt(self, txn_hash: str) -> Dict[str, Any]:
        """
        Polls up to ``max_poll_attempts`` times, ``poll_interval`` seconds apart,
        for the receipt of a transaction.

        :raises ConfirmationTimeoutError: If no receipt appeared in time
        """
        attempts = self.client_config.max_poll_attempts
        for attempt in range(attempts):
            receipt = await self.get_transaction_receipt(txn_hash)
            if receipt is not None:
                return receipt
            if attempt + 1 < attempts:
                await asyncio.sleep(self.client_config.poll_interval)
        raise ConfirmationTimeoutError(
            f"transaction {txn_hash} not confirmed after {attempts} attempts", attempts
        )

    async def _request(self, method: str, params: List[Any]) -> Any:
        self._request_id += 1
        try:
            response = await self._post(
                {
                    "jsonrpc": "2.0",
                    "id": self._request_id,
                    "method": method,
                    "params": params,
                }
            )
        except httpx.HTTPError as e:
            raise NetworkError(f"{method} failed: {e}")
        if response.status_code >= 400:
            raise ApiError(f"{method}: {response.text}", response.status_code)
        try:
            body = response.json()
        except ValueError:
            raise NetworkError(f"{method} returned invalid JSON: {response.text}")

        error = body.get("error")
        if error is not None:
            message = error.get("message", "unknown error")
            data = error.get("data")
            if method in ("eth_call", "eth_estimateGas") and (
                "revert" in message.lower() or data
            ):
                revert_data = b""
                if isinstance(data, str):
                    try:
                        revert_data = parse_hex_bytes(data, "revert data")
                    except ValueError:
                        logging.warning(f"Unparseable revert data for {method}: {data}")
                raise CallRevertedError(f"{method} reverted: {message}", revert_data)
            raise NetworkError(f"{method} failed: {message} ({error.get('code')})")
        return body.get("result")

    async def _post(self, data: Dict[str, Any]) -> httpx.Response:
        return await self.client.post(url=self.rpc_url, json=data)


class ApiError(NetworkError):
    """The RPC endpoint returned a non-success status code, e.g., >= 400"""

    status_code: int

    def __init__(self, message: str, status_code: int):
        super().__init__(message, status_code)


def _response(result: Any = None, error: Optional[Dict[str, Any]] = None):
    body: Dict[str, Any] = {"jsonrpc": "2.0", "id": 1}
    if error is None:
        body["result"] = result
    else:
        body["error"] = error
    return httpx.Response(200, json=body)


class Test(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self):
        patcher = unittest.mock.patch(
            "safe_sdk.metadata.Metadata.get_client_header_val",
            return_value="safe-python-sdk/test",
        )
        patcher.start()
        self.addCleanup(patcher.stop)
        self.client = RpcClient(
            "http://localhost:8545", ClientConfig(http2=False, poll_interval=0)
        )

    async def asyncTearDown(self):
        await self.client.close()

    async def test_chain_id_cached(self):
        with unittest.mock.patch.object(
            self.client, "_post", return_value=_response("0xaa36a7")
        ) as post:
            self.assertEqual(await self.client.chain_id(), 11155111)
            self.assertEqual(await self.client.chain_id(), 11155111)
            self.assertEqual(post.call_count, 1)

    async def test_call(self):
        with unittest.mock.patch.object(
            self.client, "_post", return_value=_response("0x1626ba7e" + "00" * 28)
        ) as post:
            result = await self.client.call(AccountAddress.ZERO, b"\x12\x34")  # type: ignore[attr-defined]
            self.assertEqual(result[:4].hex(), "1626ba7e")
            request = post.call_args.args[0]
            self.assertEqual(request["method"], "eth_call")
            self.assertEqual(request["params"][0]["data"], "0x1234")

    async def test_call_reverted(self):
        error = {"code": 3, "message": "execution reverted", "data": "0x08c379a0"}
        with unittest.mock.patch.object(
            self.client, "_post", return_value=_response(error=error)
        ):
            with self.assertRaises(CallRevertedError) as context:
                await self.client.call(AccountAddress.ZERO, b"")  # type: ignore[attr-defined]
            self.assertEqual(context.exception.data, bytes.fromhex("08c379a0"))

    async def test_errors(self):
        with unittest.mock.patch.object(
            self.client, "_post", return_value=httpx.Response(503, text="unavailable")
        ):
            with self.assertRaises(ApiError) as context:
                await self.client.gas_price()
            self.assertEqual(context.exception.status_code, 503)

        error = {"code": -32000, "message": "nonce too low"}
        with unittest.mock.patch.object(
            self.client, "_post", return_value=_response(error=error)
        ):
            with self.assertRaises(NetworkError):
                await self.client.send_raw_transaction(b"\x01")

        with unittest.mock.patch.object(
            self.client, "_post", side_effect=httpx.ConnectError("refused")
        ):
            with self.assertRaises(NetworkError):
                await self.client.gas_price()

    async def test_wait_for_receipt(self):
        receipt = {"status": "0x1", "blockNumber": "0x10"}
        with unittest.mock.patch.object(
            self.client,
            "get_transaction_receipt",
            side_effect=[None, None, receipt],
        ):
            self.assertEqual(
                await self.client.wait_for_transaction_receipt("0x01"), receipt
            )

    async def test_wait_for_receipt_timeout(self):
        self.client.client_config.max_poll_attempts = 3
        with unittest.mock.patch.object(
            self.client, "get_transaction_receipt", return_value=None
        ) as receipts:
            with self.assertRaises(ConfirmationTimeoutError) as context:
                await self.client.wait_for_transaction_receipt("0x01")
            self.assertEqual(context.exception.attempts, 3)
            self.assertEqual(receipts.call_count, 3)

    async def test_send_transaction(self):
        key = PrivateKey.from_hex("0x" + "46" * 32)
        results = iter(["0x5208", "0x9", "0x4a817c800", "0x1", "0x" + "ab" * 32])

        async def post(data):
            return _response(next(results))

        with unittest.mock.patch.object(self.client, "_post", side_effect=post):
            txn_hash = await self.client.send_transaction(
                key, AccountAddress.from_str("0x" + "35" * 20), b""
            )
        self.assertEqual(txn_hash, "0x" + "ab" * 32)
