"""
Shipwright: phased, memory-backed coding workflows

Drives an external code-generation assistant through planned phases of
generate/verify/review task attempts with checkpoint commits, and keeps a
citation-backed memory of repository facts that feeds future runs.
"""

__version__ = "0.1.0"

from shipwright.core.exceptions import ShipwrightError

__all__ = ["ShipwrightError", "__version__"]
