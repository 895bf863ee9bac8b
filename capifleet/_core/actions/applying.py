"""
Idempotent writes of the derived objects: the only way the operator writes them.

Both primitives check the live state first and write only when needed,
so that a repeated sync of an unchanged bundle costs only the reads:

* :func:`get_or_create` never updates an existing object.
* :func:`patch_if_different` applies the object only if the live one differs
  (see :mod:`capifleet._cogs.structs.comparison` for what "differs" means).

There is a race window between the read and the write: e.g. two bundles
with the same object reconciled at the same time. For creation, the loser
gets HTTP 409 and treats it as if the object existed before. For patching,
the server-side apply under the same field manager converges to the same state.
"""
import logging
from typing import Any, Mapping, Optional

from capifleet._cogs.clients import creating, fetching, patching
from capifleet._cogs.clients import errors as api_errors
from capifleet._cogs.configs import configuration
from capifleet._cogs.helpers import typedefs
from capifleet._cogs.structs import bodies, comparison, references
from capifleet._core.actions import errors, results
from capifleet._core.engines import posting

logger = logging.getLogger(__name__)


async def get_or_create(
        resource: references.Resource,
        body: Mapping[str, Any],
        *,
        settings: configuration.OperatorSettings,
        logger: typedefs.Logger = logger,
) -> results.Action:
    name = bodies.get_name(body)
    namespace = bodies.get_namespace(body)
    try:
        existing = await fetching.read_obj(
            resource=resource,
            namespace=references.NamespaceName(namespace) if namespace else None,
            name=name,
            metadata_only=True,
            settings=settings,
            logger=logger,
        )
    except api_errors.API_FAILURES as e:
        raise errors.GetOrCreateError('lookup', e) from e

    if existing is not None:
        return results.Action.await_change()

    try:
        await creating.create_obj(resource=resource, body=body, settings=settings, logger=logger)
    except api_errors.APIConflictError:
        logger.debug(f"{resource.kind} {name!r} is already created by someone else.")
        return results.Action.await_change()
    except api_errors.API_FAILURES as e:
        raise errors.GetOrCreateError('create', e) from e

    logger.info(f"Created {resource.kind} {name!r} in {namespace!r}.")
    await posting.publish(
        _with_type(body, resource),
        reason='Created',
        note=f"Created fleet object `{name}` in `{namespace or ''}`",
        action='Creating',
        settings=settings,
        logger=logger,
    )
    return results.Action.await_change()


async def patch_if_different(
        resource: references.Resource,
        body: Mapping[str, Any],
        *,
        field_manager: Optional[str] = None,
        force: bool = False,
        settings: configuration.OperatorSettings,
        logger: typedefs.Logger = logger,
) -> results.Action:
    name = bodies.get_name(body)
    namespace = bodies.get_namespace(body)

    # The managed fields are the server's bookkeeping; they are never applied.
    desired = dict(body)
    desired['metadata'] = {key: val for key, val in body.get('metadata', {}).items()
                           if key != 'managedFields'}

    try:
        live = await fetching.read_obj(
            resource=resource,
            namespace=references.NamespaceName(namespace) if namespace else None,
            name=name,
            settings=settings,
            logger=logger,
        )
    except api_errors.API_FAILURES as e:
        raise errors.PatchError('get', e) from e

    if live is not None and not comparison.differs(resource, desired, live):
        return results.Action.await_change()

    try:
        await patching.apply_obj(
            resource=resource,
            body=desired,
            field_manager=field_manager,
            force=force,
            settings=settings,
            logger=logger,
        )
    except api_errors.API_FAILURES as e:
        raise errors.PatchError('patch', e) from e

    logger.info(f"Updated {resource.kind} {name!r} in {namespace!r}.")
    await posting.publish(
        _with_type(desired, resource),
        reason='Updated',
        note=f"Updated `{resource.api_version}/{resource.kind}` object "
             f"`{name}` in `{namespace or 'cluster scope'}`",
        action='Creating',
        settings=settings,
        logger=logger,
    )
    return results.Action.await_change()


def _with_type(body: Mapping[str, Any], resource: references.Resource) -> Mapping[str, Any]:
    return dict(body, apiVersion=resource.api_version, kind=resource.kind)
