"""
Shared Kernel Module
====================

Generic infrastructure used by the SLA notifications module: logging,
keyed locks, metrics export and API middleware.

DO NOT add SLA business logic to the shared kernel.
"""

__version__ = "1.0.0"
