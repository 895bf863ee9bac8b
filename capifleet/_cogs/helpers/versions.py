"""
The operator's own version, as installed.

Used in the User-Agent header and in the CLI's ``--version`` output.
It is detected once at import time; a source checkout has no version.
"""
import importlib.metadata
from typing import Optional

version: Optional[str] = None

try:
    name, *_ = __name__.split('.')
    version = importlib.metadata.version(name)
except importlib.metadata.PackageNotFoundError:
    pass
