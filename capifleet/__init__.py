"""
The operator that imports the Cluster API clusters into Fleet.

The public names are for embedding the operator into other processes
(e.g. for testing), as the CLI does it.
"""
# isort: skip_file

from capifleet._cogs.configs.configuration import (
    OperatorSettings,
)
from capifleet._cogs.helpers.typedefs import (
    Logger,
)
from capifleet._cogs.helpers.versions import (
    version as __version__,
)
from capifleet._core.actions.errors import (
    Error,
    GetOrCreateError,
    PatchError,
    FinalizerError,
    EventPublishError,
    SerializationError,
    DynamicWatcherError,
    ConfigFetchError,
    BundleError,
    SyncError,
    ClusterSyncError,
    GroupSyncError,
    AddonConfigSyncError,
)
from capifleet._core.actions.loggers import (
    LogFormat,
    configure as configure_logging,
)
from capifleet._core.actions.results import (
    Action,
)
from capifleet._core.reactor.running import (
    Context,
    run,
    operator,
)

__all__ = [
    'OperatorSettings',
    'Logger',
    'Error',
    'GetOrCreateError',
    'PatchError',
    'FinalizerError',
    'EventPublishError',
    'SerializationError',
    'DynamicWatcherError',
    'ConfigFetchError',
    'BundleError',
    'SyncError',
    'ClusterSyncError',
    'GroupSyncError',
    'AddonConfigSyncError',
    'LogFormat',
    'configure_logging',
    'Action',
    'Context',
    'run',
    'operator',
]
