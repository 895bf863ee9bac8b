import asyncio
import collections
import dataclasses
import json
import logging
import re
import urllib.parse
from contextvars import ContextVar
from typing import Any, Callable, Dict, List, Optional, Union

import aiohttp.web
import pytest
from aiohttp.test_utils import TestServer

from capifleet._cogs.aiokits.aiobarriers import Barrier
from capifleet._cogs.clients import auth
from capifleet._cogs.clients.watching import Bookmark
from capifleet._cogs.configs.configuration import OperatorSettings
from capifleet._cogs.structs.credentials import ConnectionInfo
from capifleet._core.engines.metrics import Diagnostics, Metrics
from capifleet._core.reactor.dispatching import Dispatcher
from capifleet._core.reactor.registry import WatchRegistry
from capifleet._core.reactor.running import Context


@pytest.fixture()
def settings():
    """ The settings with no delays, so that the tests run fast. """
    settings = OperatorSettings()
    settings.networking.error_backoffs = [0]
    settings.watching.reconnect_backoff = 0
    settings.watching.error_backoff = 0.01
    settings.queueing.idle_timeout = 0.1
    settings.reconciling.error_backoff = 0.1
    settings.server.endpoint = None
    return settings


#
# A fake K8s API: a local HTTP server with the pre-registered responses.
# No external calls must be made under any circumstances:
# the tests must be fully isolated from the environment.
#

@dataclasses.dataclass(frozen=True)
class Request:
    method: str
    path: str
    query: Dict[str, str]
    headers: Dict[str, str]
    data: Any


Responder = Callable[[Request], Union[aiohttp.web.StreamResponse, Any]]


@dataclasses.dataclass
class Route:
    method: str
    url: str
    payload: Any = None
    status: int = 200
    lines: Optional[List[Any]] = None  # for the watch-streams: one JSON per line.
    once: bool = False
    requests: List[Request] = dataclasses.field(default_factory=list)

    @property
    def called(self) -> bool:
        return bool(self.requests)

    @property
    def call_count(self) -> int:
        return len(self.requests)

    @property
    def data(self) -> Any:
        """ The payload of the latest request. """
        return self.requests[-1].data

    def matches(self, request: Request) -> bool:
        if self.once and self.requests:
            return False
        if self.method != request.method:
            return False
        parts = urllib.parse.urlsplit(self.url)
        if parts.path != request.path:
            return False
        return not parts.query or dict(urllib.parse.parse_qsl(parts.query, keep_blank_values=True)) == request.query

    def respond(self, request: Request) -> aiohttp.web.StreamResponse:
        if self.lines is not None:
            text = ''.join(json.dumps(line) + '\n' for line in self.lines)
            return aiohttp.web.Response(text=text, status=self.status)
        payload = self.payload(request) if callable(self.payload) else self.payload
        if isinstance(payload, aiohttp.web.StreamResponse):
            return payload
        return aiohttp.web.json_response(payload if payload is not None else {}, status=self.status)


class FakeKubeAPI:
    """
    The responses are registered per method & URL (with or without the query).

    The routes are matched in the order of registration. The routes marked
    as ``once`` are used only once, so that the sequences can be simulated.
    The unmatched requests get "404 Not Found", as for the absent objects.

    Sample usage::

        async def test_me(kubeapi):
            route = kubeapi.add('get', '/api/v1/namespaces/ns/configmaps/cm', {'data': {}})
            await do_something()
            assert route.call_count == 1
    """

    def __init__(self) -> None:
        super().__init__()
        self.routes: List[Route] = []
        self.requests: List[Request] = []

    def add(
            self,
            method: str,
            url: str,
            payload: Union[Responder, Any] = None,
            *,
            status: int = 200,
            lines: Optional[List[Any]] = None,
            once: bool = False,
    ) -> Route:
        route = Route(method=method.upper(), url=url, payload=payload,
                      status=status, lines=lines, once=once)
        self.routes.append(route)
        return route

    def make_app(self) -> aiohttp.web.Application:
        app = aiohttp.web.Application()
        app.router.add_route('*', '/{path:.*}', self._handle)
        return app

    async def _handle(self, raw_request: aiohttp.web.Request) -> aiohttp.web.StreamResponse:
        text = await raw_request.text()
        try:
            data = json.loads(text) if text else None
        except json.JSONDecodeError:
            data = text
        request = Request(
            method=raw_request.method,
            path=raw_request.path,
            query=dict(raw_request.query),
            headers=dict(raw_request.headers),
            data=data,
        )
        self.requests.append(request)
        for route in self.routes:
            if route.matches(request):
                route.requests.append(request)
                return route.respond(request)
        return aiohttp.web.json_response(
            {'kind': 'Status', 'code': 404, 'status': 'Failure', 'reason': 'NotFound',
             'message': f'{request.method} {request.path} is not registered'},
            status=404)


@pytest.fixture()
async def kubeapi(mocker):
    """
    Serve the fake K8s API and make all the API calls go to it.

    The session is made the default one for all the contexts of the test,
    including the tasks spawned from it, same as it is done by the operator.
    """
    api = FakeKubeAPI()
    server = TestServer(api.make_app())
    await server.start_server()
    context = auth.APIContext(ConnectionInfo(server=str(server.make_url('/')),
                                             default_namespace='default'))
    mocker.patch.object(auth, 'api_context_var', ContextVar('api_context_var', default=context))
    try:
        yield api
    finally:
        await context.close()
        await server.close()


#
# Logging: assert on the logged messages, as the users see them.
#

@pytest.fixture()
def assert_logs(caplog):
    """
    Assert that the messages are logged (in any order), matched by regexps.
    """
    caplog.set_level(logging.DEBUG)

    def assert_logs_fn(patterns, prohibited=()):
        messages = [record.getMessage() for record in caplog.records]
        for pattern in patterns:
            assert any(re.search(pattern, message) for message in messages), \
                f"Not logged: {pattern!r}; logged: {messages!r}"
        for pattern in prohibited:
            assert not any(re.search(pattern, message) for message in messages), \
                f"Unexpectedly logged: {pattern!r}"
    return assert_logs_fn


#
# The operator's shared context, as for the controllers, but with no running tasks.
#

@pytest.fixture()
def registry(settings):
    return WatchRegistry(settings=settings)


@pytest.fixture()
def context(settings, registry):
    return Context(
        settings=settings,
        metrics=Metrics(),
        diagnostics=Diagnostics(),
        registry=registry,
        dispatcher=Dispatcher(registry, settings=settings),
        barrier=Barrier(1),
        version=30,
    )


#
# The watch-streams & the tasks, as consumed by the dispatcher & the controllers.
#

class FakeStreams:
    """
    The watch-streams fed manually by the tests, one queue per descriptor.

    The streams are created anew on every (re)start, and fed from the same queue.
    """

    def __init__(self) -> None:
        super().__init__()
        self.queues = collections.defaultdict(asyncio.Queue)
        self.started = []
        self.closed = []

    def feed(self, descriptor, *items):
        for item in items:
            self.queues[descriptor].put_nowait(item)

    async def __call__(self, descriptor):
        self.started.append(descriptor)
        try:
            yield Bookmark.LISTED
            while True:
                yield await self.queues[descriptor].get()
        finally:
            self.closed.append(descriptor)


@pytest.fixture()
def streams():
    return FakeStreams()


async def stop_task(task):
    task.cancel()
    try:
        await task
    except asyncio.CancelledError:
        pass  # cancellations are expected at this point


@pytest.fixture()
def stop():
    return stop_task
