"""
User hook scripts run on completion (--on-done) and on exit (--on-exit).
"""

from __future__ import annotations

import logging
import os
import subprocess
from pathlib import Path

from .errors import InputError

logger = logging.getLogger(__name__)


def validate_hook(script: str) -> str:
    """
    Check that a hook script exists and is executable.

    Returns:
        The script's absolute real path

    Raises:
        InputError: If the script is missing or not executable
    """
    path = Path(script)
    if not path.exists():
        raise InputError(f'Script "{script}" does not exist')
    if not path.is_file() or not os.access(path, os.X_OK):
        raise InputError(f'Script "{script}" is not executable')
    return os.path.realpath(path)


def run_detached(script: str) -> bool:
    """
    Start a hook without waiting for it. The hook outlives torrentcast if it
    has to; failures to start are logged and otherwise ignored.

    Returns:
        True if the script was started
    """
    logger.debug(f"Running hook {script}")
    try:
        subprocess.Popen(
            [script],
            stdin=subprocess.DEVNULL,
            stdout=subprocess.DEVNULL,
            stderr=subprocess.DEVNULL,
            start_new_session=True,
        )
    except OSError as e:
        logger.warning(f"Hook {script} could not be started: {e}")
        return False
    return True
