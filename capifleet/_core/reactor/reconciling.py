"""
The reconciliation core: the finalizer-driven lifecycle of the source objects.

Every source object (e.g. a cluster) has a downstream bundle (e.g. the fleet
objects for that cluster). The bundle is derived from the object and the
operator's configuration on every reconciliation, and is never stored.
The lifecycle of an object is a two-state machine:

* Apply: the object exists and is not being deleted. The bundle is derived.
  If there is no bundle (e.g. the feature is disabled, or the object is
  not ready yet), nothing happens. Otherwise, the finalizer is added
  to the object (if not yet), and the bundle is synced downstream.

* Cleanup: the object is being deleted and still has the finalizer.
  The bundle is cleaned up, and only then the finalizer is removed.
  The bundle can defer its cleanup (e.g. while its downstream objects
  are still used by other objects): the finalizer then stays.
  The objects with no bundle (e.g. with the feature disabled) get an audit event instead:
  their downstream objects are deleted by Kubernetes via the owner references.

The objects being deleted with no finalizer are left as they are:
they are not ours anymore.

All the errors are handled by the error policy: they are logged, counted,
and the object is reconciled again after a fixed delay. The sync must be
safe to repeat: nothing is remembered between the attempts.
"""
import logging
from typing import Any, ClassVar, Generic, Mapping, Optional, Type, TypeVar

from capifleet._cogs.clients import errors as api_errors
from capifleet._cogs.clients import patching
from capifleet._cogs.helpers import typedefs
from capifleet._cogs.structs import bodies, finalizers, references
from capifleet._core.actions import errors, loggers, results
from capifleet._core.engines import posting
from capifleet._core.reactor import controlling, running

logger = logging.getLogger(__name__)

Action = results.Action


class FleetBundle:
    """
    The downstream objects of one source object, as derived at one moment.

    Subclasses implement the sync; the cleanup is optional.
    """

    async def sync(self, context: running.Context, logger: typedefs.Logger) -> Action:
        raise NotImplementedError

    async def cleanup(self, context: running.Context, logger: typedefs.Logger) -> Action:
        return Action.await_change()


_BundleT = TypeVar('_BundleT', bound=FleetBundle)


class FleetController(Generic[_BundleT]):
    """
    The lifecycle of one source object: apply or clean up its bundle.

    The instances are made per reconciliation with the latest state of the object.
    """

    resource: ClassVar[references.Resource]

    def __init__(
            self,
            body: bodies.RawBody,
            *,
            context: running.Context,
            logger: Optional[typedefs.Logger] = None,
    ) -> None:
        super().__init__()
        self.body = body
        self.context = context
        self.logger: typedefs.Logger = logger if logger is not None else loggers.ObjectLogger(body=body)

    @property
    def name(self) -> str:
        return bodies.get_name(self.body)

    @property
    def namespace(self) -> Optional[str]:
        return bodies.get_namespace(self.body)

    async def to_bundle(self) -> Optional[_BundleT]:
        """
        Derive the bundle; ``None`` if there is nothing to manage downstream.
        """
        raise NotImplementedError

    async def reconcile(self) -> Action:
        self.context.diagnostics.touch()
        finalizer = self.context.settings.reconciling.finalizer
        deletion_ongoing = finalizers.is_deletion_ongoing(self.body)
        deletion_blocked = finalizers.is_deletion_blocked(self.body, finalizer)
        self.logger.debug("Reconciling")

        if deletion_ongoing and deletion_blocked:
            action = await self.cleanup()
            if action.deferred:
                self.logger.debug("The cleanup is deferred; the deletion stays blocked.")
                return action
            await self._patch_finalizers(finalizers.allow_deletion(self.body, finalizer), stage='remove')
            self.logger.debug("The cleanup is done; the deletion is allowed.")
            return action

        elif deletion_ongoing:
            return Action.await_change()

        bundle = await self.to_bundle()
        if bundle is None:
            return Action.await_change()

        if not deletion_blocked:
            await self._patch_finalizers(finalizers.block_deletion(self.body, finalizer), stage='add')
            self.logger.debug("The deletion is blocked until the cleanup is done.")

        return await bundle.sync(self.context, self.logger)

    async def cleanup(self) -> Action:
        bundle = await self.to_bundle()
        if bundle is not None:
            return await bundle.cleanup(self.context, self.logger)

        # The downstream objects are deleted by their owner references.
        await posting.publish(
            self.body,
            reason='DeleteRequested',
            note=f"Delete `{self.name}`",
            action='Deleting',
            settings=self.context.settings,
            logger=self.logger,
        )
        return Action.await_change()

    async def _patch_finalizers(self, patch: Mapping[str, Any], *, stage: str) -> None:
        namespace = references.NamespaceName(self.namespace) if self.namespace else None
        try:
            await patching.merge_patch_obj(
                resource=self.resource,
                namespace=namespace,
                name=self.name,
                patch=patch,
                settings=self.context.settings,
                logger=self.logger,
            )
        except api_errors.API_FAILURES as e:
            raise errors.FinalizerError(stage, e) from e


def error_policy(context: running.Context) -> controlling.ErrorPolicy:
    """
    Make the error policy of the controllers: log, count, retry after a delay.
    """
    backoff = context.settings.reconciling.error_backoff

    def policy(body: bodies.RawBody, error: Exception) -> Action:
        objlogger = loggers.ObjectLogger(body=body)
        objlogger.warning(f"Reconciliation has failed: {error}")
        context.metrics.reconcile_failure(body, error)
        return Action.requeue(backoff)

    return policy


def reconciler(
        controller_cls: Type[FleetController[Any]],
        context: running.Context,
) -> controlling.Reconciler:
    """
    Make a reconciler function of a controller class, as accepted by the controllers.
    """
    async def reconcile(body: bodies.RawBody) -> Action:
        return await controller_cls(body, context=context).reconcile()

    return measured(reconcile, context)


def measured(fn: controlling.Reconciler, context: running.Context) -> controlling.Reconciler:
    """
    Count the reconciliations and measure their duration, failed ones included.
    """
    async def reconcile(body: bodies.RawBody) -> Action:
        with context.metrics.count_and_measure():
            return await fn(body)

    return reconcile
