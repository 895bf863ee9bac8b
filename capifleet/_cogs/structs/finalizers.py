"""
All the functions to manipulate the object finalization and deletion.

Finalizers are used to block the actual deletion until the finalizers
are removed, meaning that the operator has done all its duties
to "release" the object (i.e. the cleanup of the downstream objects).

The finalizers are mutated with merge-patches, which replace the list as a whole.
So, the patches always carry the full new list and the resource version
of the object it was computed from: a concurrent change fails with HTTP 409.
"""
from typing import Any, Dict, List, Mapping


def is_deletion_ongoing(
        body: Mapping[str, Any],
) -> bool:
    return body.get('metadata', {}).get('deletionTimestamp', None) is not None


def is_deletion_blocked(
        body: Mapping[str, Any],
        finalizer: str,
) -> bool:
    finalizers = body.get('metadata', {}).get('finalizers', None) or []
    return finalizer in finalizers


def block_deletion(body: Mapping[str, Any], finalizer: str) -> Dict[str, Any]:
    """ Build a merge-patch that adds the finalizer to the end of the list. """
    finalizers: List[str] = list(body.get('metadata', {}).get('finalizers', None) or [])
    if finalizer not in finalizers:
        finalizers.append(finalizer)
    return _build_patch(body, finalizers)


def allow_deletion(body: Mapping[str, Any], finalizer: str) -> Dict[str, Any]:
    """ Build a merge-patch that removes all occurrences of the finalizer. """
    finalizers: List[str] = list(body.get('metadata', {}).get('finalizers', None) or [])
    finalizers = [value for value in finalizers if value != finalizer]
    return _build_patch(body, finalizers)


def _build_patch(body: Mapping[str, Any], finalizers: List[str]) -> Dict[str, Any]:
    metadata: Dict[str, Any] = {'finalizers': finalizers}
    resource_version = body.get('metadata', {}).get('resourceVersion')
    if resource_version is not None:
        metadata['resourceVersion'] = resource_version
    return {'metadata': metadata}
