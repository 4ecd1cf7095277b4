"""
Unit tests for the shared session holder.
"""

import asyncio

import pytest

from services.auth.session_holder import SessionHolder
from tests.conftest import make_oauth_session


class TestSessionHolder:

    @pytest.mark.asyncio
    async def test_empty_until_replaced(self):
        holder = SessionHolder()
        assert holder.read() is None
        assert holder.version == 0

        session = make_oauth_session()
        await holder.replace(session)

        assert holder.read() is session
        assert holder.version == 1

    @pytest.mark.asyncio
    async def test_swap_requires_exclusive_section(self):
        holder = SessionHolder()

        with pytest.raises(RuntimeError):
            holder.swap(make_oauth_session())

        async with holder.exclusive():
            holder.swap(make_oauth_session(access_token="new"))

        assert holder.read().oauth_token.access_token == "new"
        assert holder.locked is False

    @pytest.mark.asyncio
    async def test_lock_released_on_error(self):
        holder = SessionHolder()

        with pytest.raises(ValueError):
            async with holder.exclusive():
                raise ValueError("refresh failed")

        assert holder.locked is False
        assert holder.read() is None

    @pytest.mark.asyncio
    async def test_lock_released_on_cancellation(self):
        holder = SessionHolder()
        entered = asyncio.Event()

        async def hold_forever():
            async with holder.exclusive():
                entered.set()
                await asyncio.Event().wait()

        task = asyncio.create_task(hold_forever())
        await asyncio.wait_for(entered.wait(), timeout=1.0)
        assert holder.locked is True

        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        assert holder.locked is False

    @pytest.mark.asyncio
    async def test_reads_do_not_block_on_writer(self):
        first = make_oauth_session(access_token="first")
        holder = SessionHolder(first)

        async with holder.exclusive():
            # A reader sees the previous value while the writer holds the lock
            assert holder.read() is first

    @pytest.mark.asyncio
    async def test_clear(self):
        holder = SessionHolder(make_oauth_session())

        await holder.clear()

        assert holder.read() is None
        assert holder.version == 2
