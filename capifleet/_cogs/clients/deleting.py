from typing import Any, Optional

from capifleet._cogs.clients import api, errors
from capifleet._cogs.configs import configuration
from capifleet._cogs.helpers import typedefs
from capifleet._cogs.structs import references


async def delete_obj(
        *,
        settings: configuration.OperatorSettings,
        resource: references.Resource,
        namespace: references.Namespace,
        name: str,
        logger: typedefs.Logger,
) -> Optional[Any]:
    """
    Delete an object; return ``None`` if it is already absent.

    The deletion is only requested: the object can remain for some time
    if it has finalizers. The server's status or the object is returned.
    """
    try:
        return await api.delete(
            url=resource.get_url(namespace=namespace, name=name),
            payload={'propagationPolicy': 'Background'},
            logger=logger,
            settings=settings,
        )
    except errors.APINotFoundError:
        return None
