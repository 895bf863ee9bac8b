"""
All configuration flags, options, settings to fine-tune the operator.

All settings are grouped semantically just for convenience
(instead of a flat mega-object with all the values in it).

Some of the settings are flags, some are scalars, some are optional,
some are not (but all of them have reasonable defaults). The CLI overrides
only a few of them; the rest can be changed in code before the operator starts.

The settings are process-wide and fixed once the operator runs. The runtime
configuration of the fleet integration itself comes from the cluster,
from the ``FleetAddonConfig`` object (see :mod:`capifleet.fleet.config`).
"""
import dataclasses
from typing import Iterable, Optional

from capifleet._cogs.helpers import versions


@dataclasses.dataclass
class NetworkingSettings:

    request_timeout: Optional[float] = 5 * 60  # == aiohttp.client.DEFAULT_TIMEOUT
    """
    A timeout for the regular (non-watching) API requests, in seconds.
    """

    connect_timeout: Optional[float] = None
    """
    A timeout for establishing a TCP connection to the API, in seconds.
    """

    error_backoffs: Iterable[float] = (1, 1, 2, 3, 5, 8)
    """
    Delays between retries of API requests failed due to connectivity issues
    or server-side errors (HTTP 5xx). The last failure is escalated.
    """


@dataclasses.dataclass
class WatchingSettings:

    server_timeout: Optional[float] = None
    """
    The maximum duration of one streaming request, as requested from the server.
    If ``None``, then obey the server-side timeouts (they seem to be random).
    """

    client_timeout: Optional[float] = None
    """
    An HTTP/HTTPS session timeout to use in watch requests.
    """

    connect_timeout: Optional[float] = None
    """
    An HTTP/HTTPS connection timeout to use in watch requests.
    """

    reconnect_backoff: float = 0.1
    """
    How long should a pause be between watch requests (to prevent API flooding).
    """

    error_backoff: float = 5.0
    """
    How long to wait before restarting a watch-stream that failed with an error.
    The dispatcher restarts such streams instead of dropping them silently.
    """

    streaming_min_version: int = 32
    """
    The minimal minor version of the API server to use the streaming lists
    (``sendInitialEvents=true``) instead of the list-then-watch sequence.
    """


@dataclasses.dataclass
class QueueingSettings:
    """
    Settings for the per-object reconciliation queues.
    """

    idle_timeout: float = 5.0
    """
    How soon an idle worker is exited and garbage-collected if no keys arrive.
    """

    exit_timeout: Optional[float] = None
    """
    How long to wait for the running reconciliations to finish on exit.
    ``None`` means waiting for as long as they run (they are never cancelled).
    """


@dataclasses.dataclass
class ReconcilingSettings:

    finalizer: str = 'fleet.addons.cluster.x-k8s.io'
    """
    The finalizer that blocks the deletion of the source objects
    while their downstream objects may exist.
    """

    field_manager: str = 'addon-provider-fleet'
    """
    The writer identity for the server-side apply of the downstream objects.
    """

    error_backoff: float = 10.0
    """
    A fixed delay before retrying a failed reconciliation, in seconds.
    """


@dataclasses.dataclass
class DispatchingSettings:

    capacity: int = 128
    """
    How many events the broadcast channel keeps for the slow subscribers.
    Subscribers lagging behind by more than this skip the lost events.
    """

    barrier_parties: int = 3
    """
    How many controller loops must reach the readiness barrier
    before any of them starts reconciling.
    """


@dataclasses.dataclass
class PostingSettings:

    reporting_component: str = 'caapf-controller'
    """
    A component name for the audit events' ``source`` and ``reportingComponent``.
    """

    reporting_instance: str = f'capifleet-{versions.version or "dev"}'
    """
    An instance name for the audit events' ``reportingInstance``.
    """

    event_name_prefix: str = 'caapf-event-'
    """
    A prefix for the audit events' ``metadata.generateName``.
    """


@dataclasses.dataclass
class ServerSettings:

    endpoint: Optional[str] = 'http://0.0.0.0:8443'
    """
    Where to serve the health, metrics, and diagnostics. ``None`` disables it.
    """


@dataclasses.dataclass
class FleetSettings:

    config_name: str = 'fleet-addon-config'
    """
    The name of the cluster-scoped ``FleetAddonConfig`` singleton.
    """

    system_namespace: str = 'cattle-fleet-system'
    """
    The namespace where Fleet itself is installed (its controller's config map).
    """

    controller_config_name: str = 'fleet-controller'
    """
    The name of Fleet's own configuration map, synced with the API server's URL & CA.
    """


@dataclasses.dataclass
class OperatorSettings:
    networking: NetworkingSettings = dataclasses.field(default_factory=NetworkingSettings)
    watching: WatchingSettings = dataclasses.field(default_factory=WatchingSettings)
    queueing: QueueingSettings = dataclasses.field(default_factory=QueueingSettings)
    reconciling: ReconcilingSettings = dataclasses.field(default_factory=ReconcilingSettings)
    dispatching: DispatchingSettings = dataclasses.field(default_factory=DispatchingSettings)
    posting: PostingSettings = dataclasses.field(default_factory=PostingSettings)
    server: ServerSettings = dataclasses.field(default_factory=ServerSettings)
    fleet: FleetSettings = dataclasses.field(default_factory=FleetSettings)
