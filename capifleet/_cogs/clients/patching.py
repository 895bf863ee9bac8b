"""
Two kinds of patches are used, for two distinct purposes.

The merge-patches (RFC 7386) are for the finalizers of the source objects:
the list is replaced as a whole, guarded by the object's resource version.

The server-side apply is for the derived objects: the server merges
the fields owned by a named writer (the field manager). Repeated applies
by the same writer never conflict with themselves.
"""
from typing import Any, Dict, Mapping, Optional

from capifleet._cogs.clients import api, errors
from capifleet._cogs.configs import configuration
from capifleet._cogs.helpers import typedefs
from capifleet._cogs.structs import bodies, references


async def merge_patch_obj(
        *,
        settings: configuration.OperatorSettings,
        resource: references.Resource,
        namespace: references.Namespace,
        name: str,
        patch: Mapping[str, Any],
        logger: typedefs.Logger,
) -> Optional[bodies.RawBody]:
    """
    Merge-patch an object; return ``None`` if it is absent (e.g. just deleted).
    """
    try:
        patched_body: bodies.RawBody = await api.patch(
            url=resource.get_url(namespace=namespace, name=name),
            headers={'Content-Type': 'application/merge-patch+json'},
            payload=dict(patch),
            settings=settings,
            logger=logger,
        )
        return patched_body
    except errors.APINotFoundError:
        return None


async def apply_obj(
        *,
        settings: configuration.OperatorSettings,
        resource: references.Resource,
        body: Mapping[str, Any],
        field_manager: Optional[str] = None,
        force: bool = False,
        logger: typedefs.Logger,
) -> bodies.RawBody:
    """
    Server-side-apply an object, creating it if absent.

    The JSON payload is valid YAML, so it goes as the apply-patch as it is.
    The type-meta (``apiVersion`` & ``kind``) is required by the server.
    """
    metadata = body.get('metadata', {})
    params: Dict[str, str] = {'fieldManager': field_manager or settings.reconciling.field_manager}
    if force:
        params['force'] = 'true'

    payload = dict(body)
    payload.setdefault('apiVersion', resource.api_version)
    payload.setdefault('kind', resource.kind)

    applied_body: bodies.RawBody = await api.patch(
        url=resource.get_url(namespace=metadata.get('namespace'), name=metadata.get('name'),
                             params=params),
        headers={'Content-Type': 'application/apply-patch+yaml'},
        payload=payload,
        settings=settings,
        logger=logger,
    )
    return applied_body
