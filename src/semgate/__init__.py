from __future__ import annotations

from .constants import VERSION as __version__
from .pipeline import ScanPipeline

__all__ = ["ScanPipeline", "__version__"]
