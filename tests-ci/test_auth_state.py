"""
Tests de l'AuthStateMachine (twitchapi/auth_state.py)
File FIFO pendant le refresh, état ERROR, un seul refresh en vol
"""
import asyncio

import pytest

from core.exceptions import AuthenticationError
from twitchapi.auth_state import AuthState, AuthStateMachine


@pytest.mark.unit
class TestAuthStateMachine:
    """READY → REFRESHING → READY | ERROR"""

    @pytest.mark.asyncio
    async def test_ready_runs_immediately(self):
        machine = AuthStateMachine()
        assert machine.state is AuthState.READY
        assert await machine.execute_when_ready(lambda: 42) == 42

        async def coro():
            return "async"

        assert await machine.execute_when_ready(coro) == "async"

    @pytest.mark.asyncio
    async def test_queued_operations_drain_fifo(self):
        machine = AuthStateMachine()
        order = []
        assert machine.start_refresh() is True
        assert machine.start_refresh() is False

        tasks = [
            asyncio.create_task(machine.execute_when_ready(lambda i=i: order.append(i) or i))
            for i in range(3)
        ]
        await asyncio.sleep(0)
        assert machine.queue_size() == 3

        machine.finish_refresh(True)
        assert await asyncio.gather(*tasks) == [0, 1, 2]
        assert order == [0, 1, 2]
        assert machine.state is AuthState.READY

    @pytest.mark.asyncio
    async def test_failed_refresh_rejects_queue_and_enters_error(self):
        machine = AuthStateMachine()
        machine.start_refresh()
        task = asyncio.create_task(machine.execute_when_ready(lambda: "never"))
        await asyncio.sleep(0)

        machine.finish_refresh(False)
        with pytest.raises(AuthenticationError, match="Authentication refresh failed"):
            await task
        assert machine.state is AuthState.ERROR

        with pytest.raises(AuthenticationError, match="Authentication is in error state"):
            await machine.execute_when_ready(lambda: "blocked")

    @pytest.mark.asyncio
    async def test_queued_failure_emits_auth_state(self):
        events = []
        machine = AuthStateMachine(on_event=lambda name, payload: events.append((name, payload)))
        machine.start_refresh()

        def boom():
            raise RuntimeError("Token validation failed")

        task = asyncio.create_task(machine.execute_when_ready(boom))
        await asyncio.sleep(0)
        machine.finish_refresh(True)

        with pytest.raises(RuntimeError):
            await task
        assert events[0][0] == "auth-state"
        assert events[0][1]["error"]["category"] == "authentication"

    @pytest.mark.asyncio
    async def test_run_refresh_single_flight(self):
        calls = []
        release = asyncio.Event()

        async def refresher():
            calls.append(1)
            await release.wait()
            return True

        machine = AuthStateMachine(refresher=refresher)
        first = asyncio.create_task(machine.run_refresh())
        second = asyncio.create_task(machine.run_refresh())
        await asyncio.sleep(0.01)
        assert machine.state is AuthState.REFRESHING

        release.set()
        assert await asyncio.gather(first, second) == [True, True]
        assert calls == [1]
        assert machine.state is AuthState.READY

    @pytest.mark.asyncio
    async def test_refresher_exception_is_a_failure(self):
        async def refresher():
            raise ConnectionError("boom")

        machine = AuthStateMachine(refresher=refresher)
        assert await machine.run_refresh() is False
        assert machine.state is AuthState.ERROR

        machine.reset()
        assert machine.get_state() == {"state": "READY", "queue_size": 0, "refreshing": False}

    @pytest.mark.asyncio
    async def test_run_refresh_without_refresher(self):
        with pytest.raises(AuthenticationError):
            await AuthStateMachine().run_refresh()
