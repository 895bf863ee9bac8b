"""
The diff predicates: whether a desired object differs from its live counterpart.

The live objects are never expected to be equal to the desired ones: the server
adds its own metadata, other actors add their labels/annotations/owners.
So, the metadata is compared as a superset: every desired label, annotation,
and owner must be present in the live object; the extra ones are ignored.
The kind-specific fields that the operator manages are compared exactly.

All predicates return ``True`` if the live object needs a patch.
"""
from typing import Any, Callable, Mapping, Optional

from capifleet._cogs.structs import bodies, references

DiffPredicate = Callable[[Mapping[str, Any], Mapping[str, Any]], bool]


def is_superset(live: Optional[Mapping[str, Any]], desired: Optional[Mapping[str, Any]]) -> bool:
    """ Check if every desired key is present in the live mapping with an equal value. """
    live = live or {}
    return all(key in live and live[key] == val for key, val in (desired or {}).items())


def meta_differs(desired: Mapping[str, Any], live: Mapping[str, Any]) -> bool:
    return (
        not is_superset(bodies.get_labels(live), bodies.get_labels(desired)) or
        not is_superset(bodies.get_annotations(live), bodies.get_annotations(desired)) or
        not bodies.get_owner_uids(desired) <= bodies.get_owner_uids(live)
    )


def fleet_cluster_differs(desired: Mapping[str, Any], live: Mapping[str, Any]) -> bool:
    # A freshly created cluster is not yet processed by Fleet; re-apply it once it is.
    if live.get('status') is None:
        return True

    desired_spec = desired.get('spec') or {}
    live_spec = live.get('spec') or {}
    if not is_superset(live_spec.get('templateValues'), desired_spec.get('templateValues')):
        return True
    for field in ['agentNamespace', 'hostNetwork', 'agentEnvVars', 'agentTolerations']:
        if desired_spec.get(field) != live_spec.get(field):
            return True
    return meta_differs(desired, live)


def cluster_group_differs(desired: Mapping[str, Any], live: Mapping[str, Any]) -> bool:
    return desired.get('spec') != live.get('spec') or meta_differs(desired, live)


def mapping_differs(desired: Mapping[str, Any], live: Mapping[str, Any]) -> bool:
    # The mapping has no spec: its selectors are at the top level.
    for field in ['bundleSelector', 'namespaceSelector']:
        if desired.get(field) != live.get(field):
            return True
    return meta_differs(desired, live)


_PREDICATES: Mapping[references.Resource, DiffPredicate] = {
    references.FLEET_CLUSTERS: fleet_cluster_differs,
    references.FLEET_CLUSTER_GROUPS: cluster_group_differs,
    references.FLEET_BUNDLE_NS_MAPPINGS: mapping_differs,
}


def get_predicate(resource: references.Resource) -> DiffPredicate:
    return _PREDICATES.get(resource, meta_differs)


def differs(
        resource: references.Resource,
        desired: Mapping[str, Any],
        live: Mapping[str, Any],
) -> bool:
    return get_predicate(resource)(desired, live)
