from typing import Any, Mapping, cast

from capifleet._cogs.clients import api
from capifleet._cogs.configs import configuration
from capifleet._cogs.helpers import typedefs
from capifleet._cogs.structs import bodies, references


async def create_obj(
        *,
        settings: configuration.OperatorSettings,
        resource: references.Resource,
        body: Mapping[str, Any],
        logger: typedefs.Logger,
) -> bodies.RawBody:
    """
    Create an object; the namespace is taken from the object itself.

    Raises :class:`errors.APIConflictError` if the object already exists.
    """
    namespace = cast(references.Namespace, body.get('metadata', {}).get('namespace'))
    created_body: bodies.RawBody = await api.post(
        url=resource.get_url(namespace=namespace),
        payload=dict(body),
        logger=logger,
        settings=settings,
    )
    return created_body
