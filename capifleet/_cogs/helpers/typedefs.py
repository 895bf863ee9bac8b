"""
Type aliases shared across the codebase.

Some standard classes are generic only in the type stubs, not at runtime
(e.g. `logging.LoggerAdapter`), so they are aliased here once for all users.
"""
import logging
from typing import TYPE_CHECKING, Any, Union

if TYPE_CHECKING:
    LoggerAdapter = logging.LoggerAdapter[Any]
else:
    LoggerAdapter = logging.LoggerAdapter

# Anything that can be logged to: a plain logger or an object-aware adapter.
Logger = Union[logging.Logger, LoggerAdapter]
