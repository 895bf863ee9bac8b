from typing import Any, Collection, Dict, List, Optional, Tuple

from capifleet._cogs.clients import api, errors
from capifleet._cogs.configs import configuration
from capifleet._cogs.helpers import typedefs
from capifleet._cogs.structs import bodies, references

# The server-side projection of the objects to their metadata only.
METADATA_ACCEPT = 'application/json;as=PartialObjectMetadata;g=meta.k8s.io;v=v1'
METADATA_LIST_ACCEPT = 'application/json;as=PartialObjectMetadataList;g=meta.k8s.io;v=v1'


def restore_type(
        body: Dict[str, Any],
        resource: references.Resource,
        *,
        metadata_only: bool = False,
) -> bodies.RawBody:
    """
    Put the resource's ``apiVersion`` & ``kind`` into the object.

    The list items usually come without them. The metadata-only objects come
    with the meta-API's own kind, which is of no use for the type-erased events.
    """
    if metadata_only:
        body['apiVersion'] = resource.api_version
        body['kind'] = resource.kind
    else:
        body.setdefault('apiVersion', resource.api_version)
        body.setdefault('kind', resource.kind)
    return body  # type: ignore[return-value]


async def read_obj(
        *,
        settings: configuration.OperatorSettings,
        resource: references.Resource,
        namespace: references.Namespace,
        name: str,
        metadata_only: bool = False,
        logger: typedefs.Logger,
) -> Optional[bodies.RawBody]:
    """
    Read one object by its name; return ``None`` if it does not exist.
    """
    try:
        body = await api.get(
            url=resource.get_url(namespace=namespace, name=name),
            headers={'Accept': METADATA_ACCEPT} if metadata_only else None,
            logger=logger,
            settings=settings,
        )
    except errors.APINotFoundError:
        return None
    return restore_type(body, resource, metadata_only=metadata_only)


async def list_objs(
        *,
        settings: configuration.OperatorSettings,
        resource: references.Resource,
        namespace: references.Namespace,
        labels: Optional[str] = None,
        fields: Optional[str] = None,
        metadata_only: bool = False,
        logger: typedefs.Logger,
) -> Tuple[Collection[bodies.RawBody], str]:
    """
    List the objects of a specific resource type, optionally filtered.

    If the namespace is ``None``, the objects of all namespaces are listed.
    Returns the objects and the resource version of the whole list
    (to continue watching from it).
    """
    params: Dict[str, str] = {}
    if labels:
        params['labelSelector'] = labels
    if fields:
        params['fieldSelector'] = fields

    rsp = await api.get(
        url=resource.get_url(namespace=namespace, params=params),
        headers={'Accept': METADATA_LIST_ACCEPT} if metadata_only else None,
        logger=logger,
        settings=settings,
    )

    items: List[bodies.RawBody] = []
    resource_version = rsp.get('metadata', {}).get('resourceVersion', None)
    for item in rsp.get('items', []):
        items.append(restore_type(item, resource, metadata_only=metadata_only))
    return items, resource_version
