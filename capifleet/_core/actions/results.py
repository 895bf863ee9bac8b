import dataclasses
from typing import Optional


@dataclasses.dataclass(frozen=True)
class Action:
    """
    What to do after a reconciliation: wait for changes, or retry in a while.

    Waiting for changes is not polling: the object is reconciled again only
    when a relevant watch-event arrives (for it, or for its owned objects).

    A deferred cleanup also waits for changes, but keeps the object's
    deletion blocked: the downstream objects are still in use by others.
    """
    requeue_after: Optional[float] = None
    deferred: bool = False

    @classmethod
    def await_change(cls) -> "Action":
        return cls()

    @classmethod
    def requeue(cls, delay: float) -> "Action":
        return cls(requeue_after=delay)

    @classmethod
    def defer(cls) -> "Action":
        return cls(deferred=True)
