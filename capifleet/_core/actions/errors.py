"""
The operator's own errors, as raised from the reconciliations.

All the errors of the reconciliations are subclasses of :class:`Error`.
They are never fatal for the controller loops: the error policy logs them,
counts them in the metrics by their class (the "coarse label"),
and retries the reconciliation after a fixed delay.

The low-level errors (the API failures, the network issues) are not raised
as they are, but are wrapped into the errors of the operation that failed,
with the original error chained as the cause (``raise ... from e``).
"""
from typing import Optional


class Error(Exception):
    """ The base class for all the reconciliation errors. """

    @property
    def metric_label(self) -> str:
        return type(self).__name__


class _StagedError(Error):
    """ An error of a multi-step operation, remembering at which step it failed. """

    def __init__(self, stage: str, cause: Optional[BaseException] = None) -> None:
        message = f"{stage.capitalize()} error: {cause}" if cause is not None else stage
        super().__init__(message)
        self.stage = stage


class GetOrCreateError(_StagedError):
    """ Failed to look up (``stage='lookup'``) or create (``stage='create'``) an object. """


class PatchError(_StagedError):
    """ Failed to get (``stage='get'``) or apply (``stage='patch'``) an object. """


class FinalizerError(_StagedError):
    """ Failed to add (``stage='add'``) or remove (``stage='remove'``) the finalizer. """


class EventPublishError(Error):
    """ Failed to publish an audit event (except for the tolerated cases). """


class SerializationError(Error):
    """ An object did not fit the type-erased representation. """


class DynamicWatcherError(Error):
    """ Failed to reconfigure the dynamic watches (e.g. a malformed selector). """


class ConfigFetchError(Error):
    """ Failed to read the operator's configuration object. """


class BundleError(Error):
    """ Failed to derive the downstream bundle from the source object. """


class SyncError(Error):
    """ Failed to sync or to clean up the downstream bundle. """


class ClusterSyncError(SyncError):
    """ Failed to sync the downstream objects of a cluster. """


class GroupSyncError(SyncError):
    """ Failed to sync a cluster group of a cluster class. """


class AddonConfigSyncError(SyncError):
    """ Failed to sync Fleet's own configuration with the API server's URL & CA. """
