# Copyright © Aptos Foundation
# SPDX-License-Identifier: Apache-2.0

"""
Shared validity window management for concurrent transaction signing.

Every transaction is signed against a recent blockhash and is only accepted
while the block height stays at or below the hash's last valid block height.
When many writers sign concurrently they should share one window instead of
each asking the ledger for its own, and when a window expires exactly one of
them should fetch its replacement.

:class:`ValidityWindow` keeps the current window behind an ``asyncio.Lock``:

- :meth:`ValidityWindow.current` returns the cached window, fetching a new
  one when none is cached or the cached one is older than
  ``maximum_age`` seconds.
- :meth:`ValidityWindow.invalidate` drops the cached window, but only if it
  is still the window the caller signed against, so a burst of expirations
  from the same window triggers a single refresh.
- :meth:`ValidityWindow.fresh` waits until the ledger hands out a blockhash
  different from a stale one.

Examples:
    Signing with the shared window::

        window = ValidityWindow(client)
        info = await window.current()
        message = message.with_blockhash(info.blockhash)

    Replacing an expired window::

        await window.invalidate(info)
        info = await window.fresh(info)
"""

from __future__ import annotations

import asyncio
import logging
import time
import unittest
import unittest.mock
from typing import Optional

from .async_client import BlockhashInfo, LedgerClient, RpcClient


class ValidityWindowConfig:
    """Tuning for :class:`ValidityWindow`.

    Attributes:
        maximum_age: Seconds a fetched window is reused before refetching.
        maximum_wait_time: Seconds :meth:`ValidityWindow.fresh` waits for a
            new blockhash before settling for the current one.
        sleep_time: Seconds between polls while waiting.
    """

    maximum_age: float = 30.0
    maximum_wait_time: float = 30.0
    sleep_time: float = 0.4


class ValidityWindow:
    """A lock protected cache of the latest validity window."""

    _client: LedgerClient
    _lock: asyncio.Lock
    _maximum_age: float
    _maximum_wait_time: float
    _sleep_time: float
    _current: Optional[BlockhashInfo] = None
    _fetched_at: float = 0.0
    refreshes: int = 0

    def __init__(
        self,
        client: LedgerClient,
        config: ValidityWindowConfig = ValidityWindowConfig(),
    ):
        self._client = client
        self._lock = asyncio.Lock()
        self._maximum_age = config.maximum_age
        self._maximum_wait_time = config.maximum_wait_time
        self._sleep_time = config.sleep_time

    async def current(self) -> BlockhashInfo:
        async with self._lock:
            if (
                self._current is None
                or time.monotonic() - self._fetched_at > self._maximum_age
            ):
                await self._update()
            assert self._current is not None
            return self._current

    async def invalidate(self, stale: Optional[BlockhashInfo] = None):
        """Forget the cached window if it is ``stale`` (or unconditionally)."""
        async with self._lock:
            if stale is None or stale == self._current:
                self._current = None

    async def fresh(self, stale: BlockhashInfo) -> BlockhashInfo:
        """Return a window whose blockhash differs from ``stale``.

        Gives up after ``maximum_wait_time`` seconds and returns whatever the
        ledger currently reports.
        """
        async with self._lock:
            if self._current is not None and self._current.blockhash != stale.blockhash:
                return self._current

            start_time = time.monotonic()
            await self._update()
            assert self._current is not None
            while self._current.blockhash == stale.blockhash:
                if time.monotonic() - start_time >= self._maximum_wait_time:
                    logging.warning(
                        f"Blockhash unchanged after {self._maximum_wait_time} seconds, "
                        "reusing the current window"
                    )
                    break
                await asyncio.sleep(self._sleep_time)
                await self._update()
            return self._current

    async def _update(self):
        self._current = await self._client.latest_blockhash()
        self._fetched_at = time.monotonic()
        self.refreshes += 1


class Test(unittest.IsolatedAsyncioTestCase):
    async def test_common_path(self):
        first = BlockhashInfo(b"\x01" * 32, 150)
        second = BlockhashInfo(b"\x02" * 32, 300)

        patcher = unittest.mock.patch(
            "program_deploy.async_client.RpcClient.latest_blockhash",
            side_effect=[first, first, second],
        )
        patcher.start()

        client = RpcClient("http://127.0.0.1:8899")
        config = ValidityWindowConfig()
        config.sleep_time = 0
        window = ValidityWindow(client, config)

        results = await asyncio.gather(*[window.current() for _ in range(8)])
        self.assertEqual(results, [first] * 8)
        self.assertEqual(window.refreshes, 1)

        # A window that is no longer current is not invalidated twice
        await window.invalidate(second)
        self.assertEqual(await window.current(), first)
        self.assertEqual(window.refreshes, 1)

        await window.invalidate(first)
        self.assertEqual(await window.fresh(first), second)
        self.assertEqual(window.refreshes, 3)
        self.assertEqual(await window.current(), second)

        patcher.stop()
        await client.close()

    async def test_fresh_gives_up(self):
        stale = BlockhashInfo(b"\x01" * 32, 150)

        patcher = unittest.mock.patch(
            "program_deploy.async_client.RpcClient.latest_blockhash",
            return_value=stale,
        )
        patcher.start()

        client = RpcClient("http://127.0.0.1:8899")
        config = ValidityWindowConfig()
        config.sleep_time = 0
        config.maximum_wait_time = 0
        window = ValidityWindow(client, config)
        self.assertEqual(await window.fresh(stale), stale)

        patcher.stop()
        await client.close()
