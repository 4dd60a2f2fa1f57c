"""Locate and import LLDB's Python module.

LLDB ships its bindings with the toolchain rather than as a regular
distribution, so the module directory is added to ``sys.path`` when a plain
import fails: first an explicit path, then ``lldb -P``, then the macOS
command line tools location.
"""

import importlib
import logging
import os
import subprocess
import sys

from ..errors import LldbUnavailableError

logger = logging.getLogger(__name__)

MACOS_LLDB_PYTHON_PATH = "/Library/Developer/CommandLineTools/Library/PrivateFrameworks/LLDB.framework/Resources/Python"
LLDB_EXECUTABLE = os.environ.get("LLDB_EXEC", "lldb")

_lldb = None


def _lldb_reported_path():
    try:
        output = subprocess.check_output([LLDB_EXECUTABLE, "-P"], encoding="utf-8",
                                         errors="ignore", stderr=subprocess.DEVNULL, timeout=30)
    except (OSError, subprocess.SubprocessError) as e:
        logger.debug(f"'{LLDB_EXECUTABLE} -P' failed: {e}")
        return None
    path = output.strip().splitlines()[-1] if output.strip() else None
    return path


def candidate_paths(explicit_path=None):
    paths = []
    if explicit_path:
        paths.append(explicit_path)
    env_path = os.environ.get("LLDB_PYTHON_PATH")
    if env_path:
        paths.append(env_path)
    reported = _lldb_reported_path()
    if reported:
        paths.append(reported)
    paths.append(MACOS_LLDB_PYTHON_PATH)
    return paths


def import_lldb(explicit_path=None):
    global _lldb
    if _lldb is not None:
        return _lldb

    try:
        _lldb = importlib.import_module("lldb")
        return _lldb
    except ImportError:
        pass

    for path in candidate_paths(explicit_path):
        if not os.path.isdir(path):
            continue
        if path not in sys.path:
            sys.path.insert(0, path)
            logger.debug(f"'{path}' added to sys.path.")
        try:
            _lldb = importlib.import_module("lldb")
        except ImportError as e:
            logger.debug(f"import lldb from {path} failed: {e}")
            continue
        logger.debug(f"lldb imported from {getattr(_lldb, '__file__', path)}")
        return _lldb

    raise LldbUnavailableError(
        "LLDB Python module not found. Install LLDB, or point LLDB_PYTHON_PATH / "
        "lldb_python_path at the directory printed by 'lldb -P'.")
