import copy
import datetime
from typing import Optional

from capifleet._cogs.clients import api, auth
from capifleet._cogs.configs import configuration
from capifleet._cogs.helpers import typedefs
from capifleet._cogs.structs import bodies, references

MAX_MESSAGE_LENGTH = 1024
CUT_MESSAGE_INFIX = '...'


@auth.authenticated
async def get_default_namespace(
        *,
        context: Optional[auth.APIContext] = None,
) -> Optional[str]:
    if context is None:
        raise RuntimeError("API instance is not injected by the decorator.")
    return context.default_namespace


def shorten_message(message: str) -> str:
    if len(message) <= MAX_MESSAGE_LENGTH:
        return message
    infix = CUT_MESSAGE_INFIX
    prefix = message[:MAX_MESSAGE_LENGTH // 2 - (len(infix) // 2)]
    suffix = message[-MAX_MESSAGE_LENGTH // 2 + (len(infix) - len(infix) // 2):]
    return f'{prefix}{infix}{suffix}'


async def post_event(
        *,
        ref: bodies.ObjectReference,
        type: str,
        reason: str,
        action: str,
        message: str = '',
        settings: configuration.OperatorSettings,
        logger: typedefs.Logger,
) -> None:
    """
    Issue a core v1 event for the object.

    The API errors are raised to the caller: it decides which ones are tolerable.
    """
    # For cluster-scoped objects, use the operator's own namespace.
    namespace_name: str = ref.get('namespace') or (await get_default_namespace()) or 'default'
    namespace = references.NamespaceName(namespace_name)
    full_ref: bodies.ObjectReference = copy.copy(ref)
    full_ref['namespace'] = namespace

    now = datetime.datetime.now(datetime.timezone.utc)
    body = {
        'metadata': {
            'namespace': namespace,
            'generateName': settings.posting.event_name_prefix,
        },

        'action': action,
        'type': type,
        'reason': reason,
        'message': shorten_message(message),

        'reportingComponent': settings.posting.reporting_component,
        'reportingInstance': settings.posting.reporting_instance,
        'source': {'component': settings.posting.reporting_component},  # the "From" in `kubectl describe`.

        'involvedObject': full_ref,

        'firstTimestamp': now.isoformat(),  # seen in `kubectl describe ...`
        'lastTimestamp': now.isoformat(),  # seen in `kubectl get events`
        'eventTime': now.isoformat(),
    }

    await api.post(
        url=references.EVENTS.get_url(namespace=namespace),
        headers={'Content-Type': 'application/json'},
        payload=body,
        logger=logger,
        settings=settings,
    )
