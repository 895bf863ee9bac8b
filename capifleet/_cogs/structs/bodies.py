"""
All the structures coming from/to the Kubernetes API.

The objects are kept as the plain JSON-decoded dicts, as received from the API.
There are no typed models per resource kind: the operator mostly passes them
through, and only touches a few well-known fields via the helpers below.

For stricter type-checking, the well-known fields are detailed in `TypedDict`s.
The objects can have arbitrary other fields at runtime, which are not declared.
"""
from typing import Any, Collection, List, Mapping, Optional, Set, Union, cast

from typing_extensions import Literal, TypedDict

Labels = Mapping[str, str]
Annotations = Mapping[str, str]

#
# Everything marked "raw" is a plain unwrapped unprocessed data as JSON-decoded
# from Kubernetes API, usually as retrieved in watching or fetching API calls.
# "Input" is a parsed JSON as is, while "event" is an "input" without "errors".
#

# ``None`` is used for the listing, when the pseudo-watch-stream is simulated.
RawInputType = Literal[None, 'ADDED', 'MODIFIED', 'DELETED', 'BOOKMARK', 'ERROR']
RawEventType = Literal[None, 'ADDED', 'MODIFIED', 'DELETED']


class OwnerReference(TypedDict, total=False):
    controller: bool
    blockOwnerDeletion: bool
    apiVersion: str
    kind: str
    name: str
    uid: str


class RawMeta(TypedDict, total=False):
    uid: str
    name: str
    namespace: str
    labels: Labels
    annotations: Annotations
    finalizers: List[str]
    ownerReferences: List[OwnerReference]
    managedFields: List[Any]
    generation: int
    resourceVersion: str
    deletionTimestamp: str
    creationTimestamp: str


class RawBody(TypedDict, total=False):
    apiVersion: str
    kind: str
    metadata: RawMeta
    spec: Mapping[str, Any]
    status: Mapping[str, Any]


# A special payload for type==ERROR (this is not a connection or client error).
class RawError(TypedDict, total=False):
    apiVersion: str     # usually: Literal['v1']
    kind: str           # usually: Literal['Status']
    metadata: Mapping[Any, Any]
    code: int
    reason: str
    status: str
    message: str


# As received from the stream before processing the errors and special cases.
class RawInput(TypedDict, total=True):
    type: RawInputType
    object: Union[RawBody, RawError]


# As passed to the dispatcher & controllers after processing the errors and special cases.
# The object is type-erased: it always carries its own ``apiVersion`` & ``kind``.
class RawEvent(TypedDict, total=True):
    type: RawEventType
    object: RawBody


class ObjectReference(TypedDict, total=False):
    apiVersion: str
    kind: str
    namespace: Optional[str]
    name: str
    uid: str


def get_name(body: Mapping[str, Any]) -> str:
    return cast(str, body.get('metadata', {}).get('name', ''))


def get_namespace(body: Mapping[str, Any]) -> Optional[str]:
    return cast(Optional[str], body.get('metadata', {}).get('namespace'))


def get_labels(body: Mapping[str, Any]) -> Labels:
    return cast(Labels, body.get('metadata', {}).get('labels') or {})


def get_annotations(body: Mapping[str, Any]) -> Annotations:
    return cast(Annotations, body.get('metadata', {}).get('annotations') or {})


def get_owner_references(body: Mapping[str, Any]) -> Collection[OwnerReference]:
    return cast(Collection[OwnerReference], body.get('metadata', {}).get('ownerReferences') or [])


def get_owner_uids(body: Mapping[str, Any]) -> Set[str]:
    return {ref['uid'] for ref in get_owner_references(body) if ref.get('uid')}


def build_object_reference(
        body: Mapping[str, Any],
) -> ObjectReference:
    """
    Construct an object reference for the events.

    Keep in mind that some fields can be absent: e.g. ``namespace``
    for cluster resources, or ``uid`` for the objects not yet created.
    """
    ref = dict(
        apiVersion=body.get('apiVersion'),
        kind=body.get('kind'),
        name=body.get('metadata', {}).get('name'),
        uid=body.get('metadata', {}).get('uid'),
        namespace=body.get('metadata', {}).get('namespace'),
    )
    return cast(ObjectReference, {key: val for key, val in ref.items() if val})


def build_owner_reference(
        body: Mapping[str, Any],
        *,
        controller: bool = False,
) -> OwnerReference:
    """
    Construct an owner reference object for the parent-children relationships.

    The owner is referenced weakly by its identifiers & UID, never embedded.
    See https://kubernetes.io/docs/concepts/workloads/controllers/garbage-collection/
    """
    ref = dict(
        controller=controller,
        apiVersion=body.get('apiVersion'),
        kind=body.get('kind'),
        name=body.get('metadata', {}).get('name'),
        uid=body.get('metadata', {}).get('uid'),
    )
    return cast(OwnerReference, {key: val for key, val in ref.items() if val})
