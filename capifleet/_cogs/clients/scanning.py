import re
from typing import Any, Mapping, Optional

from capifleet._cogs.clients import api, errors
from capifleet._cogs.configs import configuration
from capifleet._cogs.helpers import typedefs
from capifleet._cogs.structs import references


async def read_version(
        *,
        settings: configuration.OperatorSettings,
        logger: typedefs.Logger,
) -> int:
    """
    Get the minor version of the API server, e.g. ``32`` for ``1.32``.

    Some distributions report it with suffixes, e.g. ``"32+"`` in EKS/GKE.
    Unparseable versions are treated as ``0``, i.e. as the oldest capabilities.
    """
    rsp: Mapping[str, str] = await api.get('/version', settings=settings, logger=logger)
    match = re.match(r'\d+', str(rsp.get('minor', '')))
    return int(match.group()) if match else 0


async def discover_resource(
        *,
        group: str,
        version: Optional[str],
        kind: str,
        settings: configuration.OperatorSettings,
        logger: typedefs.Logger,
) -> Optional[references.Resource]:
    """
    Resolve a kind to its resource (namely, the plural name for the URLs).

    If the version is not known (e.g. references by an API group only),
    the server's preferred version of the group is used.
    Returns ``None`` if the group, the version, or the kind are not served.
    """
    try:
        if version is None:
            if not group:
                version = 'v1'
            else:
                rsp = await api.get(f'/apis/{group}', settings=settings, logger=logger)
                version = rsp.get('preferredVersion', {}).get('version')
                if version is None:
                    return None

        url = f'/api/{version}' if not group else f'/apis/{group}/{version}'
        rsp = await api.get(url, settings=settings, logger=logger)
    except errors.APINotFoundError:
        return None

    resource: Mapping[str, Any]
    for resource in rsp.get('resources', []):
        if resource.get('kind') == kind and '/' not in resource.get('name', ''):
            return references.Resource(
                group=group,
                version=version,
                plural=resource['name'],
                kind=kind,
                namespaced=resource.get('namespaced', True),
            )
    return None
