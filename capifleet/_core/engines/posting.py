"""
The audit events for the objects created or updated by the operator.

The events are informational and best-effort in one specific case only:
when the namespace of the object is being deleted, the server forbids
new events in it, which is expected and tolerated. All other failures
are the errors of the reconciliation, which is then retried.
"""
import logging
from typing import Any, Mapping

from capifleet._cogs.clients import errors as api_errors
from capifleet._cogs.clients import events
from capifleet._cogs.configs import configuration
from capifleet._cogs.helpers import typedefs
from capifleet._cogs.structs import bodies
from capifleet._core.actions import errors

logger = logging.getLogger(__name__)


async def publish(
        body: Mapping[str, Any],
        *,
        reason: str,
        note: str,
        action: str,
        settings: configuration.OperatorSettings,
        logger: typedefs.Logger = logger,
) -> None:
    """
    Publish one normal audit event for the object.
    """
    ref = bodies.build_object_reference(body)
    try:
        await events.post_event(
            ref=ref,
            type='Normal',
            reason=reason,
            action=action,
            message=note,
            settings=settings,
            logger=logger,
        )
    except api_errors.APIForbiddenError as e:
        logger.debug(f"Ignoring the forbidden audit event {reason!r} for {ref}: {e}")
    except Exception as e:
        raise errors.EventPublishError(f"Failed to publish the audit event {reason!r}: {e}") from e
