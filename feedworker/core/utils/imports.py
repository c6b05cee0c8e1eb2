"""
Module import utilities for locating job handlers.

- import_file_path(): Import from file path with explicit sys.path setup
- setup_sys_path_from_cwd(): Put a project root on sys.path for convenience

No implicit heuristics - the caller controls sys.path and module naming.
"""

from __future__ import annotations

import hashlib
import importlib.util
import os
import sys
from typing import Any

from feedworker.core.logging import get_logger

logger = get_logger("imports")


def find_project_root(start_dir: str) -> str | None:
    """
    Check if start_dir itself contains pyproject.toml, setup.cfg, or setup.py.

    Does NOT traverse up; in monorepos a parent pyproject.toml could cause
    module collisions between services.
    """
    start_dir = os.path.abspath(start_dir)
    for marker in ("pyproject.toml", "setup.cfg", "setup.py"):
        if os.path.exists(os.path.join(start_dir, marker)):
            return start_dir
    return None


def setup_sys_path_from_cwd() -> str | None:
    """
    If cwd contains pyproject.toml (not parent dirs), add cwd to sys.path.

    Returns cwd if it was added to sys.path, None otherwise.
    """
    cwd = os.getcwd()
    if find_project_root(cwd) and cwd not in sys.path:
        sys.path.insert(0, cwd)
        logger.debug(f"Added cwd to sys.path: {cwd}")
        return cwd
    return None


def _compute_synthetic_module_name(path: str) -> str:
    """Stable module name for a standalone file, derived from its realpath."""
    realpath = os.path.realpath(path)
    hash_prefix = hashlib.sha256(realpath.encode()).hexdigest()[:12]
    return f"feedworker._dynamic.{hash_prefix}"


def import_file_path(file_path: str, module_name: str | None = None) -> Any:
    """
    Import a module from a file path, adding its directory to sys.path.

    Raises:
        FileNotFoundError: If the file doesn't exist
        ImportError: If the module can't be loaded
    """
    file_path = os.path.realpath(file_path)

    if not os.path.exists(file_path):
        raise FileNotFoundError(f"Module file not found: {file_path}")

    # Already loaded under any name?
    for mod in list(sys.modules.values()):
        mod_file = getattr(mod, "__file__", None)
        if mod_file and os.path.realpath(mod_file) == file_path:
            return mod

    parent_dir = os.path.dirname(file_path)
    if parent_dir not in sys.path:
        sys.path.insert(0, parent_dir)

    if module_name is None:
        module_name = _compute_synthetic_module_name(file_path)

    spec = importlib.util.spec_from_file_location(module_name, file_path)
    if spec is None or spec.loader is None:
        raise ImportError(f"Could not load module from path: {file_path}")

    mod = importlib.util.module_from_spec(spec)
    sys.modules[module_name] = mod
    spec.loader.exec_module(mod)
    return mod
