"""
The Fleet integration of the CAPI clusters: the domain of the operator.

Everything here is built on the generic reconciliation machinery
of :mod:`capifleet._core`, and knows nothing of its internals.
"""
