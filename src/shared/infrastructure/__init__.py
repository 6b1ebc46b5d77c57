"""
Infrastructure Layer
=====================

Low-level technical concerns:
- Logging setup
- Keyed async locks
- Metrics export
"""
