"""
The root coroutines of the operator, one per group of controllers.

All of them pass the readiness barrier together: the controllers start
consuming the events only when the watches are configured from
the operator's configuration, and all the subscriptions are made.
"""
from capifleet._core.reactor import running
from capifleet.fleet import addonconfig, cluster, clusterclass


def roots(context: running.Context) -> running.RootCoroutines:
    return [
        ('addon-config controller', addonconfig.run(context)),
        ('cluster controller', cluster.run(context)),
        ('cluster class controller', clusterclass.run(context)),
    ]
