"""
dbkeeper - package root

File: src/dbkeeper/__init__.py

Purpose
- Provision and migrate embedded SQLite databases by logical name.

Functional requirements
- Must not have side effects at import time (no config loading, no logging init).
"""

__version__ = "0.1.0"

__all__ = ["__version__"]
