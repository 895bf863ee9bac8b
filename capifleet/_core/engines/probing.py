"""
The operator's own HTTP server: liveness, metrics, and diagnostics.

* ``/health`` responds as long as the process runs; it does not depend on
  the readiness of the controllers (otherwise, the pod would be restarted
  while waiting for the watches at startup).
* ``/metrics`` exposes the metrics in the Prometheus text format.
* ``/`` shows the diagnostics (e.g. when the last reconciliation happened).
"""
import asyncio
import logging
import urllib.parse
from typing import Optional

import aiohttp.web
from prometheus_client import CONTENT_TYPE_LATEST

from capifleet._core.engines import metrics

logger = logging.getLogger(__name__)

LOCALHOST: str = 'localhost'
HTTP_PORT: int = 80


def make_app(
        *,
        metrics: metrics.Metrics,
        diagnostics: metrics.Diagnostics,
) -> aiohttp.web.Application:

    async def get_health(request: aiohttp.web.Request) -> aiohttp.web.Response:
        return aiohttp.web.json_response("healthy")

    async def get_metrics(request: aiohttp.web.Request) -> aiohttp.web.Response:
        response = aiohttp.web.Response(body=metrics.render())
        response.headers['Content-Type'] = CONTENT_TYPE_LATEST
        return response

    async def get_diagnostics(request: aiohttp.web.Request) -> aiohttp.web.Response:
        return aiohttp.web.json_response(diagnostics.as_dict())

    app = aiohttp.web.Application()
    app.add_routes([
        aiohttp.web.get('/health', get_health),
        aiohttp.web.get('/metrics', get_metrics),
        aiohttp.web.get('/', get_diagnostics),
    ])
    return app


async def server(
        endpoint: str,
        *,
        metrics: metrics.Metrics,
        diagnostics: metrics.Diagnostics,
        ready_flag: Optional[asyncio.Event] = None,  # used for testing
) -> None:
    """
    Serve the health, metrics, and diagnostics until cancelled.
    """
    parts = urllib.parse.urlsplit(endpoint)
    if parts.scheme == 'http':
        host = parts.hostname or LOCALHOST
        port = parts.port or HTTP_PORT
    else:
        raise ValueError(f"Unsupported scheme: {endpoint}")

    app = make_app(metrics=metrics, diagnostics=diagnostics)
    runner = aiohttp.web.AppRunner(app, handle_signals=False, shutdown_timeout=1.0)
    await runner.setup()

    site = aiohttp.web.TCPSite(runner, host, port)
    await site.start()

    # Log with the actual URL: normalised, with hostname/port set.
    url = urllib.parse.urlunsplit([parts.scheme, f'{host}:{port}', '', '', ''])
    logger.debug(f"Serving health, metrics, and diagnostics at {url}")
    if ready_flag is not None:
        ready_flag.set()

    try:
        await asyncio.Event().wait()
    finally:
        await asyncio.shield(runner.cleanup())
