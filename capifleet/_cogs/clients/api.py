import asyncio
import itertools
import json
from typing import Any, AsyncIterator, Mapping, Optional

import aiohttp

from capifleet._cogs.aiokits import aiotasks
from capifleet._cogs.clients import auth, errors
from capifleet._cogs.configs import configuration
from capifleet._cogs.helpers import typedefs


@auth.authenticated
async def request(
        method: str,
        url: str,  # relative to the server/api root.
        *,
        settings: configuration.OperatorSettings,
        payload: Optional[object] = None,
        headers: Optional[Mapping[str, str]] = None,
        timeout: Optional[aiohttp.ClientTimeout] = None,
        context: Optional[auth.APIContext] = None,  # injected by the decorator
        logger: typedefs.Logger,
) -> aiohttp.ClientResponse:
    """
    Perform a request with retries on the connectivity and server-side errors.

    Other errors (HTTP 4xx) are raised immediately, as they will not be fixed
    by retrying the same request. The response is checked but not parsed.
    """
    if context is None:  # for type-checking!
        raise RuntimeError("API instance is not injected by the decorator.")

    if '://' not in url:
        url = context.server.rstrip('/') + '/' + url.lstrip('/')

    if timeout is None:
        timeout = aiohttp.ClientTimeout(
            total=settings.networking.request_timeout,
            sock_connect=settings.networking.connect_timeout,
        )

    backoffs = list(settings.networking.error_backoffs)
    count = len(backoffs) + 1
    what = f"{method.upper()} {url}"
    for attempt, backoff in enumerate(itertools.chain(backoffs, [None]), start=1):
        try:
            if attempt > 1:
                logger.debug(f"Request attempt #{attempt}/{count}: {what}")

            response = await context.session.request(
                method=method,
                url=url,
                json=payload,
                headers=headers,
                timeout=timeout,
            )
            await errors.check_response(response)

        except (aiohttp.ClientConnectionError, errors.APIServerError, asyncio.TimeoutError) as e:
            if backoff is None:
                logger.error(f"Request attempt #{attempt}/{count} failed; escalating: {what} -> {e!r}")
                raise
            else:
                logger.error(f"Request attempt #{attempt}/{count} failed; will retry: {what} -> {e!r}")
                await asyncio.sleep(backoff)
        else:
            return response

    raise RuntimeError("Broken retryable routine.")  # impossible, but needed for type-checking.


async def _call(method: str, url: str, **kwargs: Any) -> Any:
    response = await request(method=method, url=url, **kwargs)
    async with response:
        return await response.json()


async def get(
        url: str,
        *,
        settings: configuration.OperatorSettings,
        headers: Optional[Mapping[str, str]] = None,
        timeout: Optional[aiohttp.ClientTimeout] = None,
        logger: typedefs.Logger,
) -> Any:
    return await _call('get', url, settings=settings, headers=headers,
                       timeout=timeout, logger=logger)


async def post(
        url: str,
        *,
        settings: configuration.OperatorSettings,
        payload: Optional[object] = None,
        headers: Optional[Mapping[str, str]] = None,
        timeout: Optional[aiohttp.ClientTimeout] = None,
        logger: typedefs.Logger,
) -> Any:
    return await _call('post', url, settings=settings, payload=payload, headers=headers,
                       timeout=timeout, logger=logger)


async def patch(
        url: str,
        *,
        settings: configuration.OperatorSettings,
        payload: Optional[object] = None,
        headers: Optional[Mapping[str, str]] = None,
        timeout: Optional[aiohttp.ClientTimeout] = None,
        logger: typedefs.Logger,
) -> Any:
    return await _call('patch', url, settings=settings, payload=payload, headers=headers,
                       timeout=timeout, logger=logger)


async def delete(
        url: str,
        *,
        settings: configuration.OperatorSettings,
        payload: Optional[object] = None,
        headers: Optional[Mapping[str, str]] = None,
        timeout: Optional[aiohttp.ClientTimeout] = None,
        logger: typedefs.Logger,
) -> Any:
    return await _call('delete', url, settings=settings, payload=payload, headers=headers,
                       timeout=timeout, logger=logger)


async def stream(
        url: str,
        *,
        settings: configuration.OperatorSettings,
        headers: Optional[Mapping[str, str]] = None,
        timeout: Optional[aiohttp.ClientTimeout] = None,
        stopper: Optional[aiotasks.Future] = None,
        logger: typedefs.Logger,
) -> AsyncIterator[Any]:
    """
    Stream the JSON lines of a long-running response (i.e. a watch).

    The stream ends either when the server closes the connection,
    or when the stopper (if any) is resolved, e.g. when the watch is replaced.
    """
    response = await request(
        method='get',
        url=url,
        headers=headers,
        timeout=timeout,
        settings=settings,
        logger=logger,
    )
    response_close_callback = lambda _: response.close()  # to remove the positional arg.
    if stopper is not None:
        stopper.add_done_callback(response_close_callback)
    try:
        async with response:
            async for line in iter_jsonlines(response.content):
                yield json.loads(line.decode('utf-8'))
    except aiohttp.ClientConnectionError:
        if stopper is None or not stopper.done():
            raise
    finally:
        if stopper is not None:
            stopper.remove_done_callback(response_close_callback)


async def iter_jsonlines(
        content: aiohttp.StreamReader,
        chunk_size: int = 1024 * 1024,
) -> AsyncIterator[bytes]:
    """
    Iterate line by line over the response's content.

    The built-in line iteration of aiohttp fails on lines above 128 KB,
    while the Kubernetes objects (e.g. with the template values) can be
    much longer. So, the lines are split from the big raw chunks manually.
    """
    buffer = b''
    async for data in content.iter_chunked(chunk_size):
        buffer += data
        del data

        start = 0
        index = buffer.find(b'\n', start)
        while index >= 0:
            line = buffer[start:index]
            if line:
                yield line
            del line
            start = index + 1
            index = buffer.find(b'\n', start)

        if start > 0:
            buffer = buffer[start:]

    if buffer:
        yield buffer
