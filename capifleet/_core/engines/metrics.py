"""
The operator's metrics and diagnostics, as exposed by the server (see `probing`).

The metrics live in their own registry rather than in the process-global one:
this keeps the exposition limited to the operator's own metrics, and lets
the tests create as many independent instances as needed.
"""
import contextlib
import dataclasses
import datetime
import time
from typing import Any, Dict, Iterator, Mapping, Optional

from prometheus_client import CollectorRegistry, Counter, Histogram, generate_latest

from capifleet._cogs.structs import bodies
from capifleet._core.actions import errors

DURATION_BUCKETS = (0.01, 0.1, 0.25, 0.5, 1.0, 5.0, 15.0, 60.0)


class Metrics:

    def __init__(self, registry: Optional[CollectorRegistry] = None) -> None:
        super().__init__()
        self.registry = registry if registry is not None else CollectorRegistry()

        # The counters get the "_total" suffix on exposition.
        self.reconciliations = Counter(
            'caapf_controller_reconciliations',
            'reconciliations',
            registry=self.registry,
        )
        self.failures = Counter(
            'caapf_controller_reconciliation_errors',
            'reconciliation errors',
            ['instance', 'error'],
            registry=self.registry,
        )
        self.reconcile_duration = Histogram(
            'caapf_controller_reconcile_duration_seconds',
            'The duration of reconcile to complete in seconds',
            buckets=DURATION_BUCKETS,
            registry=self.registry,
        )

    def reconcile_failure(self, body: Mapping[str, Any], error: BaseException) -> None:
        label = error.metric_label if isinstance(error, errors.Error) else type(error).__name__
        self.failures.labels(instance=bodies.get_name(body), error=label).inc()

    @contextlib.contextmanager
    def count_and_measure(self) -> Iterator[None]:
        self.reconciliations.inc()
        started = time.monotonic()
        try:
            yield
        finally:
            self.reconcile_duration.observe(time.monotonic() - started)

    def render(self) -> bytes:
        return generate_latest(self.registry)


@dataclasses.dataclass
class Diagnostics:
    """ The operator's liveliness info, as shown at the server's root. """
    last_event: datetime.datetime = dataclasses.field(
        default_factory=lambda: datetime.datetime.now(datetime.timezone.utc))
    reporter: str = 'caapf-controller'

    def touch(self) -> None:
        self.last_event = datetime.datetime.now(datetime.timezone.utc)

    def as_dict(self) -> Dict[str, Any]:
        return {'last_event': self.last_event.isoformat()}
