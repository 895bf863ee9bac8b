import asyncio

import aiohttp
import pytest
from aiohttp.test_utils import TestClient, TestServer

from capifleet._core.engines.metrics import Diagnostics, Metrics
from capifleet._core.engines.probing import make_app, server


@pytest.fixture()
def metrics():
    return Metrics()


@pytest.fixture()
def diagnostics():
    return Diagnostics()


@pytest.fixture()
async def client(metrics, diagnostics):
    app = make_app(metrics=metrics, diagnostics=diagnostics)
    async with TestClient(TestServer(app)) as client:
        yield client


async def test_health(client):
    response = await client.get('/health')
    assert response.status == 200
    assert await response.json() == "healthy"


async def test_metrics(client, metrics):
    with metrics.count_and_measure():
        pass

    response = await client.get('/metrics')
    assert response.status == 200
    assert response.headers['Content-Type'].startswith('text/plain')
    assert 'caapf_controller_reconciliations_total 1.0' in await response.text()


async def test_diagnostics(client, diagnostics):
    diagnostics.touch()

    response = await client.get('/')
    assert response.status == 200
    assert await response.json() == {'last_event': diagnostics.last_event.isoformat()}


async def test_unknown_paths(client):
    response = await client.get('/unknown')
    assert response.status == 404


async def test_server_serves_until_cancelled(metrics, diagnostics, unused_tcp_port):
    ready_flag = asyncio.Event()
    task = asyncio.create_task(server(f'http://localhost:{unused_tcp_port}',
                                      metrics=metrics, diagnostics=diagnostics,
                                      ready_flag=ready_flag))
    try:
        await asyncio.wait_for(ready_flag.wait(), timeout=1)
        async with aiohttp.ClientSession() as session:
            async with session.get(f'http://localhost:{unused_tcp_port}/health') as response:
                assert response.status == 200
    finally:
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass  # cancellations are expected at this point


async def test_server_rejects_unsupported_schemes(metrics, diagnostics):
    with pytest.raises(ValueError, match=r"Unsupported scheme"):
        await server('https://localhost:8443', metrics=metrics, diagnostics=diagnostics)
