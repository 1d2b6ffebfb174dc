"""Tests for the cancellation token."""

import asyncio

import pytest

from algaib.cancellation import CancellationToken
from algaib.errors import RunCancelled


class TestCancellationToken:
    @pytest.mark.asyncio
    async def test_cancel_keeps_first_reason(self):
        token = CancellationToken()

        token.cancel("first")
        token.cancel("second")

        assert token.cancelled
        assert token.reason == "first"

    @pytest.mark.asyncio
    async def test_raise_if_cancelled(self):
        token = CancellationToken()
        token.raise_if_cancelled()

        token.cancel("stop")

        with pytest.raises(RunCancelled, match="stop"):
            token.raise_if_cancelled()


class TestGuard:
    @pytest.mark.asyncio
    async def test_returns_result(self):
        token = CancellationToken()

        async def work():
            return 42

        assert await token.guard(work()) == 42

    @pytest.mark.asyncio
    async def test_cancel_interrupts_operation(self):
        token = CancellationToken()
        finished = False

        async def slow():
            nonlocal finished
            await asyncio.sleep(10)
            finished = True

        asyncio.get_running_loop().call_later(0.05, token.cancel, "user")

        with pytest.raises(RunCancelled):
            await asyncio.wait_for(token.guard(slow()), timeout=2)
        assert finished is False

    @pytest.mark.asyncio
    async def test_timeout(self):
        token = CancellationToken()

        with pytest.raises(asyncio.TimeoutError):
            await token.guard(asyncio.sleep(10), timeout=0.05)
        assert not token.cancelled

    @pytest.mark.asyncio
    async def test_already_cancelled_token_does_not_start_work(self):
        token = CancellationToken()
        token.cancel()
        coro = asyncio.sleep(0)

        with pytest.raises(RunCancelled):
            await token.guard(coro)
        coro.close()
