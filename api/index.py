"""
Serverless entry point for the Lifecycle Engine API.

The Python runtime imports this module and serves the module-level `app`.
The application itself lives in backend/main.py; this file only makes the
backend importable from the repository root.
"""

import os
import sys

_backend_dir = os.path.join(os.path.dirname(os.path.dirname(os.path.abspath(__file__))), "backend")
if _backend_dir not in sys.path:
    sys.path.insert(0, _backend_dir)

from main import API_PREFIX, app  # noqa: E402

__all__ = ["app", "API_PREFIX"]
