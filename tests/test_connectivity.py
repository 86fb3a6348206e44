"""Tests for the connectivity monitor."""

import asyncio

import httpx
import pytest

from todo_sync.sync.connectivity import ConnectivityMonitor


class TestTransitions:
    """Test edge-triggered callbacks."""

    def test_callbacks_fire_only_on_change(self):
        monitor = ConnectivityMonitor(online=True)
        states = []
        restored = []
        monitor.add_listener(states.append)
        monitor.on_online(lambda: restored.append(True))

        monitor.set_online(True)
        monitor.set_online(False)
        monitor.set_online(False)
        monitor.set_online(True)

        assert states == [False, True]
        assert restored == [True]
        assert monitor.is_online()

    def test_callback_errors_are_contained(self):
        monitor = ConnectivityMonitor(online=False)
        calls = []

        def broken():
            raise RuntimeError("callback bug")

        monitor.on_online(broken)
        monitor.on_online(lambda: calls.append(1))
        monitor.set_online(True)

        assert calls == [1]
        assert monitor.online


@pytest.mark.asyncio
class TestProbe:
    """Test HTTP probing."""

    async def test_probe_success_marks_online(self):
        monitor = ConnectivityMonitor(online=False)
        client = httpx.AsyncClient(transport=httpx.MockTransport(lambda r: httpx.Response(404)))

        assert await monitor.probe("https://example.test/health", client) is True
        assert monitor.online
        await client.aclose()

    async def test_probe_failure_marks_offline(self):
        def handler(request):
            raise httpx.ConnectError("no route to host")

        monitor = ConnectivityMonitor(online=True)
        client = httpx.AsyncClient(transport=httpx.MockTransport(handler))

        assert await monitor.probe("https://example.test/health", client) is False
        assert not monitor.online
        await client.aclose()

    async def test_probe_loop_runs_until_stopped(self):
        requests = []

        def handler(request):
            requests.append(request)
            return httpx.Response(200)

        monitor = ConnectivityMonitor(online=False)
        client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        monitor.start_probing("https://example.test/health", interval=0.01, client=client)

        await asyncio.sleep(0.05)
        await monitor.stop_probing()

        assert len(requests) >= 2
        assert monitor.online
        await client.aclose()
