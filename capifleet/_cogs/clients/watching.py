"""
Watching and streaming the watch-events.

Two modes of watching are supported, chosen once at startup by the server's
capabilities:

* The legacy mode: list the objects, then watch them from the list's
  resource version. The listed objects are simulated as events with
  type ``None``; the end of the listing is marked with `Bookmark.LISTED`.

* The streaming lists (Kubernetes 1.32+): one watch request that sends
  the initial state as synthetic ``ADDED`` events, and marks its end
  with a bookmark annotated ``k8s.io/initial-events-end``.

In both modes, the consumers get the same type-erased events:
the raw objects always carry their ``apiVersion`` & ``kind``,
so that the streams of different resources can be merged into one.

The streams are infinite: a disconnected or expired (``410 Gone``) stream
is restarted transparently. The other errors are raised to the consumer.
"""
import asyncio
import enum
import logging
from typing import Any, AsyncIterator, Dict, Mapping, Optional, Union, cast

import aiohttp

from capifleet._cogs.aiokits import aiotasks
from capifleet._cogs.clients import api, errors, fetching
from capifleet._cogs.configs import configuration
from capifleet._cogs.structs import bodies, references

logger = logging.getLogger(__name__)

DEFAULT_RETRY_DELAY_SECONDS = 1
INITIAL_EVENTS_END_ANNOTATION = 'k8s.io/initial-events-end'


class WatchingError(Exception):
    """
    Raised when an unexpected error happens in the watch-stream API.
    """


class SerializationError(WatchingError):
    """
    Raised when an object in the stream cannot be made into a type-erased event.
    """


class Bookmark(enum.Enum):
    """ Special marks sent in the stream among raw events. """
    LISTED = enum.auto()  # the listing is over, now streaming.


def to_dynamic_event(
        raw_input: Mapping[str, Any],
        resource: references.Resource,
        *,
        metadata_only: bool = False,
) -> bodies.RawEvent:
    """
    Convert a typed watch-event into a type-erased one.

    The objects of a known resource get its ``apiVersion`` & ``kind``
    if they are missing or replaced by the metadata-only projection.
    """
    raw_object = raw_input.get('object')
    if not isinstance(raw_object, Mapping) or not isinstance(raw_object.get('metadata'), Mapping):
        raise SerializationError(f"Cannot serialize the {resource.kind} event: {raw_input!r}")

    body = fetching.restore_type(dict(raw_object), resource, metadata_only=metadata_only)
    if not body.get('metadata', {}).get('name'):
        raise SerializationError(f"The {resource.kind} object has no name: {raw_object!r}")
    return {'type': raw_input.get('type'), 'object': body}


async def infinite_watch(
        *,
        settings: configuration.OperatorSettings,
        resource: references.Resource,
        namespace: references.Namespace,
        labels: Optional[str] = None,
        fields: Optional[str] = None,
        metadata_only: bool = False,
        streaming: bool = False,
        _iterations: Optional[int] = None,  # used in tests/mocks/fixtures
) -> AsyncIterator[Union[Bookmark, bodies.RawEvent]]:
    """
    Stream the watch-events infinitely.

    This routine never ends gracefully. If a watcher's stream fails,
    a new one is recreated, and the stream continues.
    It only exits with unrecoverable exceptions.
    """
    where = f'in {namespace!r}' if namespace is not None else 'cluster-wide'
    how = 'streaming list' if streaming else 'list-watch'
    logger.debug(f"Starting the watch-stream ({how}) for {resource} {where}.")
    try:
        while _iterations is None or _iterations > 0:  # equivalent to `while True` in non-test mode
            _iterations = None if _iterations is None else _iterations - 1
            stopper: aiotasks.Future = asyncio.Future()
            watcher = streaming_watch if streaming else continuous_watch
            stream = watcher(
                settings=settings,
                resource=resource,
                namespace=namespace,
                labels=labels,
                fields=fields,
                metadata_only=metadata_only,
                stopper=stopper,
            )
            try:
                async for raw_event in stream:
                    yield raw_event
            except errors.APITooManyRequestsError as e:
                retry_after = e.details.get('retryAfterSeconds') if e.details else None
                retry_wait = retry_after or DEFAULT_RETRY_DELAY_SECONDS
                logger.warning(f"Receiving `too many requests` error from server, "
                               f"will retry after {retry_wait} seconds. Error details: {e}")
                await asyncio.sleep(retry_wait)
            finally:
                stopper.cancel()
            await asyncio.sleep(settings.watching.reconnect_backoff)
    finally:
        logger.debug(f"Stopping the watch-stream for {resource} {where}.")


async def continuous_watch(
        *,
        settings: configuration.OperatorSettings,
        resource: references.Resource,
        namespace: references.Namespace,
        labels: Optional[str] = None,
        fields: Optional[str] = None,
        metadata_only: bool = False,
        stopper: aiotasks.Future,
) -> AsyncIterator[Union[Bookmark, bodies.RawEvent]]:

    # First, list the resources regularly, and get the list's resource version.
    try:
        objs, resource_version = await fetching.list_objs(
            logger=logger,
            settings=settings,
            resource=resource,
            namespace=namespace,
            labels=labels,
            fields=fields,
            metadata_only=metadata_only,
        )
        for obj in objs:
            yield {'type': None, 'object': obj}

    except (aiohttp.ClientConnectionError, aiohttp.ClientPayloadError, asyncio.TimeoutError):
        return

    # Notify the watcher that the initial listing is over, even if there was nothing yielded.
    yield Bookmark.LISTED

    # Repeat through disconnects of the watch as long as the resource version is valid (no errors).
    while not stopper.done():
        params = _build_params(settings, labels=labels, fields=fields)
        params['allowWatchBookmarks'] = 'true'
        if resource_version:
            params['resourceVersion'] = resource_version
        async for raw_input in watch_objs(
            settings=settings,
            resource=resource,
            namespace=namespace,
            params=params,
            metadata_only=metadata_only,
            stopper=stopper,
        ):
            if _is_expired(raw_input, resource=resource, namespace=namespace):
                return  # out of the regular stream, to the infinite stream.

            raw_object = cast(bodies.RawBody, raw_input['object'])
            resource_version = raw_object.get('metadata', {}).get('resourceVersion', resource_version)
            if raw_input['type'] == 'BOOKMARK':
                continue
            elif raw_input['type'] not in ['ADDED', 'MODIFIED', 'DELETED']:
                logger.warning(f"Ignoring an unsupported event type: {raw_input!r}")
                continue

            yield to_dynamic_event(raw_input, resource, metadata_only=metadata_only)


async def streaming_watch(
        *,
        settings: configuration.OperatorSettings,
        resource: references.Resource,
        namespace: references.Namespace,
        labels: Optional[str] = None,
        fields: Optional[str] = None,
        metadata_only: bool = False,
        stopper: aiotasks.Future,
) -> AsyncIterator[Union[Bookmark, bodies.RawEvent]]:

    # The initial state comes as events in the same watch request, till the special bookmark.
    # After reconnects, the stream continues from the last seen version, with no initial state.
    resource_version: Optional[str] = None
    while not stopper.done():
        params = _build_params(settings, labels=labels, fields=fields)
        params['allowWatchBookmarks'] = 'true'
        if resource_version is None:
            params['sendInitialEvents'] = 'true'
            params['resourceVersionMatch'] = 'NotOlderThan'
            params['resourceVersion'] = ''
        else:
            params['resourceVersion'] = resource_version

        async for raw_input in watch_objs(
            settings=settings,
            resource=resource,
            namespace=namespace,
            params=params,
            metadata_only=metadata_only,
            stopper=stopper,
        ):
            if _is_expired(raw_input, resource=resource, namespace=namespace):
                return  # out of the regular stream, to the infinite stream.

            raw_object = cast(bodies.RawBody, raw_input['object'])
            metadata = raw_object.get('metadata', {})
            if raw_input['type'] == 'BOOKMARK':
                initially_listed = resource_version is None
                resource_version = metadata.get('resourceVersion', resource_version)
                annotations = metadata.get('annotations') or {}
                if initially_listed and annotations.get(INITIAL_EVENTS_END_ANNOTATION) == 'true':
                    yield Bookmark.LISTED
                continue
            elif raw_input['type'] not in ['ADDED', 'MODIFIED', 'DELETED']:
                logger.warning(f"Ignoring an unsupported event type: {raw_input!r}")
                continue

            # Until the initial state is over, do not continue from the initial events' versions:
            # they are not ordered, and reconnecting with them can miss the objects.
            if resource_version is not None:
                resource_version = metadata.get('resourceVersion', resource_version)
            yield to_dynamic_event(raw_input, resource, metadata_only=metadata_only)


def _build_params(
        settings: configuration.OperatorSettings,
        *,
        labels: Optional[str],
        fields: Optional[str],
) -> Dict[str, str]:
    params: Dict[str, str] = {'watch': 'true'}
    if labels:
        params['labelSelector'] = labels
    if fields:
        params['fieldSelector'] = fields
    if settings.watching.server_timeout is not None:
        params['timeoutSeconds'] = str(settings.watching.server_timeout)
    return params


def _is_expired(
        raw_input: bodies.RawInput,
        *,
        resource: references.Resource,
        namespace: references.Namespace,
) -> bool:
    """
    Check for the errors in the stream: expiration is normal, others are raised.
    """
    if raw_input['type'] != 'ERROR':
        return False

    # "410 Gone" is for the "resource version too old" error, we must restart watching.
    # The resource versions are lost by k8s after a few minutes (5 as per the official doc).
    raw_error = cast(errors.RawStatus, raw_input['object'])
    code = raw_error.get('code')
    if code == 410:
        where = f'in {namespace!r}' if namespace is not None else 'cluster-wide'
        logger.debug(f"Restarting the watch-stream for {resource} {where}.")
        return True
    elif code == 429:
        raise errors.APITooManyRequestsError(raw_error, status=429)
    else:
        raise WatchingError(f"Error in the watch-stream: {raw_error}")


async def watch_objs(
        *,
        settings: configuration.OperatorSettings,
        resource: references.Resource,
        namespace: references.Namespace,
        params: Mapping[str, str],
        metadata_only: bool = False,
        stopper: aiotasks.Future,
) -> AsyncIterator[bodies.RawInput]:
    """
    Watch the objects of a specific resource type with the given query params.

    If the namespace is ``None``, the objects of all namespaces are watched.
    """
    connect_timeout = (
        settings.watching.connect_timeout if settings.watching.connect_timeout is not None else
        settings.networking.connect_timeout if settings.networking.connect_timeout is not None else
        settings.networking.request_timeout
    )

    # Stream the parsed events from the response until it is closed server-side,
    # or until it is closed client-side by the stopper's callbacks.
    try:
        async for raw_input in api.stream(
            url=resource.get_url(namespace=namespace, params=params),
            headers={'Accept': fetching.METADATA_ACCEPT} if metadata_only else None,
            logger=logger,
            settings=settings,
            stopper=stopper,
            timeout=aiohttp.ClientTimeout(
                total=settings.watching.client_timeout,
                sock_connect=connect_timeout,
            ),
        ):
            yield raw_input

    except (aiohttp.ClientConnectionError, aiohttp.ClientPayloadError, asyncio.TimeoutError):
        pass
