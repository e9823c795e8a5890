"""
execguard — secure distributed execution core

File: src/execguard/__init__.py

Purpose
- Package root. Coordinates exclusive and shared access to named resources through a
  shared coordination store and runs untrusted payloads inside bounded sandboxes.

Import boundary rules
- Must not have side effects at import time (no config loading, no logging init).
- Heavy submodules (redis, psutil) are imported by the modules that need them.
"""

from __future__ import annotations

__version__ = "0.1.0"

__all__ = ["__version__"]
