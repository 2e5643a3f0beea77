# Copyright © Aptos Foundation
# SPDX-License-Identifier: Apache-2.0

"""
Asynchronous ledger client.

The deployment pipeline talks to the ledger through the small
:class:`LedgerClient` capability: submit a signed transaction, poll for its
confirmation, read accounts and fetch the current validity window.
:class:`RpcClient` implements it over JSON-RPC using a single
connection-pooled ``httpx.AsyncClient`` that every concurrent writer shares.

Wire conventions of the RPC dialect:

- Transactions are sent base64 encoded.
- Addresses, blockhashes and signatures are ``0x`` prefixed hex strings.
- Account data is returned as ``[<base64>, "base64"]``.

Examples:
    Reading a program account::

        import asyncio
        from program_deploy.async_client import RpcClient
        from program_deploy.address import AccountAddress

        async def main():
            client = RpcClient("http://127.0.0.1:8899")
            info = await client.account_info(AccountAddress.from_str(program_id))
            print(info.owner, len(info.data))
            await client.close()

        asyncio.run(main())
"""

from __future__ import annotations

import asyncio
import base64
import itertools
import json
import logging
import time
import unittest
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import httpx
from typing_extensions import Protocol

from .address import AccountAddress
from .errors import SubmissionError
from .metadata import Metadata
from .transactions import Transaction


@dataclass
class ClientConfig:
    """Configuration for ledger clients.

    Attributes:
        commitment: Commitment level used for reads and confirmations.
        transaction_wait_in_seconds: Default confirmation deadline.
        poll_interval_in_seconds: Delay between signature status polls.
        http2: Enable HTTP/2 on the shared connection pool.
        api_key: Optional bearer token for authenticated RPC providers.
    """

    commitment: str = "confirmed"
    transaction_wait_in_seconds: int = 60
    poll_interval_in_seconds: float = 0.5
    http2: bool = True
    api_key: Optional[str] = None


@dataclass
class BlockhashInfo:
    """A validity window: transactions signed against ``blockhash`` are
    accepted until the block height passes ``last_valid_block_height``."""

    blockhash: bytes
    last_valid_block_height: int


@dataclass
class AccountInfo:
    lamports: int
    owner: AccountAddress
    data: bytes
    executable: bool = False


@dataclass
class SignatureStatus:
    slot: int
    confirmation_status: Optional[str]
    err: Optional[Any] = None

    def is_confirmed(self) -> bool:
        return self.confirmation_status in ("confirmed", "finalized")


class LedgerClient(Protocol):
    """The ledger capability consumed by the deployment pipeline.

    Implementations provide the primitive reads and writes; confirmation is
    built on top of :meth:`signature_status` and :meth:`block_height`.
    """

    client_config: ClientConfig

    async def send_transaction(self, txn: Transaction) -> str:
        ...

    async def signature_status(self, signature: str) -> Optional[SignatureStatus]:
        ...

    async def block_height(self) -> int:
        ...

    async def account_info(self, address: AccountAddress) -> AccountInfo:
        ...

    async def account_balance(self, address: AccountAddress) -> int:
        ...

    async def latest_blockhash(self) -> BlockhashInfo:
        ...

    async def minimum_balance_for_rent_exemption(self, size: int) -> int:
        ...

    async def recent_prioritization_fees(
        self, addresses: Optional[List[AccountAddress]] = None
    ) -> List[int]:
        ...

    async def close(self):
        ...

    async def confirm_transaction(
        self,
        signature: str,
        last_valid_block_height: int,
        timeout: Optional[float] = None,
    ) -> SignatureStatus:
        """Wait until ``signature`` is confirmed.

        Raises:
            SubmissionError: REJECTED if the transaction landed with an error,
                EXPIRED once the block height passes ``last_valid_block_height``
                without the transaction landing, TIMEOUT when ``timeout``
                seconds pass first.
        """
        timeout = (
            self.client_config.transaction_wait_in_seconds
            if timeout is None
            else timeout
        )
        deadline = time.monotonic() + timeout

        while True:
            status = await self.signature_status(signature)
            if status is not None:
                if status.err is not None:
                    raise SubmissionError(
                        SubmissionError.REJECTED, str(status.err), signature
                    )
                if status.is_confirmed():
                    return status
            elif await self.block_height() > last_valid_block_height:
                # One last look, the transaction may have landed in the final block
                status = await self.signature_status(signature)
                if status is None or not status.is_confirmed():
                    raise SubmissionError(
                        SubmissionError.EXPIRED,
                        f"block height passed {last_valid_block_height}",
                        signature,
                    )
                continue

            if time.monotonic() >= deadline:
                raise SubmissionError(
                    SubmissionError.TIMEOUT,
                    f"not confirmed within {timeout} seconds",
                    signature,
                )
            await asyncio.sleep(self.client_config.poll_interval_in_seconds)


class RpcClient(LedgerClient):
    """JSON-RPC implementation of :class:`LedgerClient`."""

    client: httpx.AsyncClient
    client_config: ClientConfig
    base_url: str

    def __init__(
        self,
        base_url: str,
        client_config: ClientConfig = ClientConfig(),
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = base_url
        # Default limits
        limits = httpx.Limits()
        # Default timeouts but do not set a pool timeout, since the idea is that jobs will wait as
        # long as progress is being made.
        timeout = httpx.Timeout(60.0, pool=None)
        headers = {Metadata.CLIENT_HEADER: Metadata.get_client_header_val()}
        self.client = httpx.AsyncClient(
            http2=client_config.http2,
            limits=limits,
            timeout=timeout,
            headers=headers,
            transport=transport,
        )
        self.client_config = client_config
        self._ids = itertools.count(1)
        if client_config.api_key:
            self.client.headers["Authorization"] = f"Bearer {client_config.api_key}"

    async def close(self):
        await self.client.aclose()

    #
    # Transactions
    #

    async def send_transaction(self, txn: Transaction) -> str:
        """Submit a signed transaction and return its signature.

        :raises ApiError: If the node rejects the transaction before admitting it.
        """
        encoded = base64.b64encode(txn.to_bytes()).decode()
        return await self._call(
            "sendTransaction",
            [
                encoded,
                {
                    "encoding": "base64",
                    "preflightCommitment": self.client_config.commitment,
                },
            ],
        )

    async def signature_status(self, signature: str) -> Optional[SignatureStatus]:
        result = await self._call(
            "getSignatureStatuses",
            [[signature], {"searchTransactionHistory": True}],
        )
        value = result["value"][0]
        if value is None:
            return None
        return SignatureStatus(
            slot=int(value["slot"]),
            confirmation_status=value.get("confirmationStatus"),
            err=value.get("err"),
        )

    async def block_height(self) -> int:
        return int(
            await self._call(
                "getBlockHeight", [{"commitment": self.client_config.commitment}]
            )
        )

    #
    # Accounts
    #

    async def account_info(self, address: AccountAddress) -> AccountInfo:
        """Fetch an account.

        :raises AccountNotFound: If no account exists at ``address``.
        """
        result = await self._call(
            "getAccountInfo",
            [
                str(address),
                {"encoding": "base64", "commitment": self.client_config.commitment},
            ],
        )
        value = result["value"]
        if value is None:
            raise AccountNotFound(f"{address}", address)
        data, encoding = value["data"]
        if encoding != "base64":
            raise ApiError(f"Unexpected account data encoding: {encoding}", 200)
        return AccountInfo(
            lamports=int(value["lamports"]),
            owner=AccountAddress.from_str_relaxed(value["owner"]),
            data=base64.b64decode(data),
            executable=bool(value.get("executable", False)),
        )

    async def account_balance(self, address: AccountAddress) -> int:
        result = await self._call(
            "getBalance",
            [str(address), {"commitment": self.client_config.commitment}],
        )
        return int(result["value"])

    async def latest_blockhash(self) -> BlockhashInfo:
        result = await self._call(
            "getLatestBlockhash", [{"commitment": self.client_config.commitment}]
        )
        value = result["value"]
        blockhash = value["blockhash"]
        if blockhash[0:2] == "0x":
            blockhash = blockhash[2:]
        return BlockhashInfo(
            blockhash=bytes.fromhex(blockhash),
            last_valid_block_height=int(value["lastValidBlockHeight"]),
        )

    async def minimum_balance_for_rent_exemption(self, size: int) -> int:
        return int(await self._call("getMinimumBalanceForRentExemption", [size]))

    async def recent_prioritization_fees(
        self, addresses: Optional[List[AccountAddress]] = None
    ) -> List[int]:
        params: List[Any] = []
        if addresses:
            params.append([str(address) for address in addresses])
        result = await self._call("getRecentPrioritizationFees", params)
        return [int(entry["prioritizationFee"]) for entry in result]

    async def _call(self, method: str, params: List[Any]) -> Any:
        request_id = next(self._ids)
        response = await self.client.post(
            url=self.base_url,
            json={
                "jsonrpc": "2.0",
                "id": request_id,
                "method": method,
                "params": params,
            },
        )
        if response.status_code >= 400:
            raise ApiError(response.text, response.status_code)
        body: Dict[str, Any] = response.json()
        if "error" in body:
            error = body["error"]
            logging.debug(f"{method} failed: {error}")
            raise ApiError(error.get("message", str(error)), int(error.get("code", 0)))
        return body["result"]


class ApiError(Exception):
    """The RPC returned a non-success HTTP status or a JSON-RPC error object."""

    status_code: int

    def __init__(self, message: str, status_code: int):
        # Call the base class constructor with the parameters it needs
        super().__init__(message)
        self.status_code = status_code


class AccountNotFound(Exception):
    """The account was not found"""

    account: AccountAddress

    def __init__(self, message: str, account: AccountAddress):
        # Call the base class constructor with the parameters it needs
        super().__init__(message)
        self.account = account


# Everything a ledger client call can raise besides AccountNotFound
TRANSPORT_ERRORS = (ApiError, httpx.HTTPError)


class Test(unittest.IsolatedAsyncioTestCase):
    def client(self, handler) -> RpcClient:
        return RpcClient(
            "http://127.0.0.1:8899",
            ClientConfig(poll_interval_in_seconds=0),
            transport=httpx.MockTransport(handler),
        )

    async def test_account_info(self):
        owner = "0x2"
        requests: List[Dict[str, Any]] = []

        def handler(request: httpx.Request) -> httpx.Response:
            body = json.loads(request.content)
            requests.append(body)
            return httpx.Response(
                200,
                json={
                    "jsonrpc": "2.0",
                    "id": body["id"],
                    "result": {
                        "context": {"slot": 1},
                        "value": {
                            "lamports": 1_000,
                            "owner": owner,
                            "data": [base64.b64encode(b"\x01\x02").decode(), "base64"],
                            "executable": False,
                        },
                    },
                },
            )

        client = self.client(handler)
        address = AccountAddress(b"\x07" * 32)
        info = await client.account_info(address)
        await client.close()

        self.assertEqual(info.owner, AccountAddress.from_str(owner))
        self.assertEqual(info.data, b"\x01\x02")
        self.assertEqual(requests[0]["method"], "getAccountInfo")
        self.assertEqual(requests[0]["params"][0], str(address))

    async def test_account_not_found(self):
        def handler(request: httpx.Request) -> httpx.Response:
            body = json.loads(request.content)
            return httpx.Response(
                200,
                json={"jsonrpc": "2.0", "id": body["id"], "result": {"value": None}},
            )

        client = self.client(handler)
        with self.assertRaises(AccountNotFound):
            await client.account_info(AccountAddress(b"\x07" * 32))
        await client.close()

    async def test_rpc_error(self):
        def handler(request: httpx.Request) -> httpx.Response:
            body = json.loads(request.content)
            return httpx.Response(
                200,
                json={
                    "jsonrpc": "2.0",
                    "id": body["id"],
                    "error": {"code": -32002, "message": "Blockhash not found"},
                },
            )

        client = self.client(handler)
        with self.assertRaises(ApiError) as cm:
            await client.minimum_balance_for_rent_exemption(100)
        await client.close()
        self.assertEqual(cm.exception.status_code, -32002)

    async def test_latest_blockhash(self):
        blockhashes = ["0x" + "ab" * 32, "cd" * 32]

        def handler(request: httpx.Request) -> httpx.Response:
            body = json.loads(request.content)
            return httpx.Response(
                200,
                json={
                    "jsonrpc": "2.0",
                    "id": body["id"],
                    "result": {
                        "value": {
                            "blockhash": blockhashes.pop(0),
                            "lastValidBlockHeight": 300,
                        }
                    },
                },
            )

        client = self.client(handler)
        first = await client.latest_blockhash()
        second = await client.latest_blockhash()
        await client.close()
        self.assertEqual(first, BlockhashInfo(b"\xab" * 32, 300))
        self.assertEqual(second, BlockhashInfo(b"\xcd" * 32, 300))

    async def test_confirm_transaction(self):
        statuses = [None, {"slot": 5, "confirmationStatus": "processed", "err": None}]
        statuses.append({"slot": 5, "confirmationStatus": "confirmed", "err": None})

        def handler(request: httpx.Request) -> httpx.Response:
            body = json.loads(request.content)
            if body["method"] == "getBlockHeight":
                result: Any = 10
            else:
                result = {"value": [statuses.pop(0)]}
            return httpx.Response(
                200, json={"jsonrpc": "2.0", "id": body["id"], "result": result}
            )

        client = self.client(handler)
        status = await client.confirm_transaction("0x01", 100, timeout=5)
        await client.close()
        self.assertTrue(status.is_confirmed())

    async def test_confirm_transaction_expired(self):
        def handler(request: httpx.Request) -> httpx.Response:
            body = json.loads(request.content)
            if body["method"] == "getBlockHeight":
                result: Any = 101
            else:
                result = {"value": [None]}
            return httpx.Response(
                200, json={"jsonrpc": "2.0", "id": body["id"], "result": result}
            )

        client = self.client(handler)
        with self.assertRaises(SubmissionError) as cm:
            await client.confirm_transaction("0x01", 100, timeout=5)
        await client.close()
        self.assertEqual(cm.exception.kind, SubmissionError.EXPIRED)

    async def test_confirm_transaction_rejected(self):
        def handler(request: httpx.Request) -> httpx.Response:
            body = json.loads(request.content)
            result = {
                "value": [
                    {"slot": 3, "confirmationStatus": "confirmed", "err": "Custom(1)"}
                ]
            }
            return httpx.Response(
                200, json={"jsonrpc": "2.0", "id": body["id"], "result": result}
            )

        client = self.client(handler)
        with self.assertRaises(SubmissionError) as cm:
            await client.confirm_transaction("0x01", 100, timeout=5)
        await client.close()
        self.assertEqual(cm.exception.kind, SubmissionError.REJECTED)

    async def test_confirm_transaction_timeout(self):
        def handler(request: httpx.Request) -> httpx.Response:
            body = json.loads(request.content)
            if body["method"] == "getBlockHeight":
                result: Any = 1
            else:
                result = {"value": [None]}
            return httpx.Response(
                200, json={"jsonrpc": "2.0", "id": body["id"], "result": result}
            )

        client = self.client(handler)
        with self.assertRaises(SubmissionError) as cm:
            await client.confirm_transaction("0x01", 100, timeout=0)
        await client.close()
        self.assertEqual(cm.exception.kind, SubmissionError.TIMEOUT)
