"""
Process launcher.

Finds a Python interpreter that really is the command-line interpreter and
starts the background runner detached from the web request that asked for it.
"""

import logging
import os
import shlex
import shutil
import subprocess
import sys
from pathlib import Path
from typing import Iterable, List, Optional, Sequence

from deploy_console.exceptions import ConfigurationError

logger = logging.getLogger(__name__)

# A CLI interpreter runs -c code and prints exactly this. Embedding servers
# (uWSGI, mod_wsgi hosts) set sys.executable to their own binary, which
# answers -c with usage text or tries to start a server instead.
PROBE_CODE = "import sys; sys.stdout.write('cli')"
PROBE_MARKER = "cli"
PROBE_TIMEOUT_SECONDS = 10

# Detaches the wrapper: the grandchild is reparented to init and the
# launching shell exits right after printing its PID.
DETACH_SNIPPET = 'nohup /bin/bash "$0" >>"$1" 2>&1 </dev/null & echo $!'


def candidate_interpreters(extra_locations: Iterable[str] = ()) -> List[str]:
    """The running interpreter, then PATH, then well-known locations; de-duplicated."""
    candidates: List[Optional[str]] = [
        sys.executable,
        shutil.which("python3"),
        shutil.which("python"),
        *extra_locations,
    ]
    seen = set()
    ordered = []
    for candidate in candidates:
        if candidate and candidate not in seen:
            seen.add(candidate)
            ordered.append(candidate)
    return ordered


def is_cli_interpreter(candidate: str) -> bool:
    if not (os.path.isfile(candidate) and os.access(candidate, os.X_OK)):
        return False
    try:
        result = subprocess.run(
            [candidate, "-c", PROBE_CODE],
            capture_output=True,
            text=True,
            timeout=PROBE_TIMEOUT_SECONDS,
            stdin=subprocess.DEVNULL,
        )
    except (OSError, subprocess.TimeoutExpired) as e:
        logger.debug(f"Interpreter probe failed for {candidate}: {e}")
        return False
    return result.returncode == 0 and result.stdout.strip().lower() == PROBE_MARKER


def resolve_interpreter(extra_locations: Iterable[str] = ()) -> str:
    """
    First candidate that identifies itself as the CLI interpreter.

    Raises:
        ConfigurationError: if no candidate qualifies
    """
    candidates = candidate_interpreters(extra_locations)
    for candidate in candidates:
        if is_cli_interpreter(candidate):
            logger.info(f"Selected Python interpreter for background runner: {candidate}")
            return candidate
        logger.debug(f"Rejected interpreter candidate {candidate}")

    raise ConfigurationError(
        "No Python CLI interpreter found. Install Python 3 and make sure 'python3' is "
        "available in PATH or at a standard location "
        f"(tried: {', '.join(candidates) or 'nothing'})."
    )


def write_wrapper(wrapper_path: Path, command: Sequence[str], cwd: Path) -> Path:
    """Write a one-line bash wrapper that runs `command` from `cwd`."""
    wrapper_path = Path(wrapper_path)
    wrapper_path.parent.mkdir(parents=True, exist_ok=True)
    line = f"cd {shlex.quote(str(cwd))} && exec {shlex.join(command)}"
    wrapper_path.write_text(f"#!/bin/bash\n{line}\n", encoding="utf-8")
    wrapper_path.chmod(0o755)
    return wrapper_path


def launch_detached(command: Sequence[str], wrapper_path: Path, log_file: Path, cwd: Path) -> Optional[int]:
    """
    Start `command` in the background with stdout/stderr appended to log_file.

    Returns the PID of the detached process, or None if it could not be read.
    """
    write_wrapper(wrapper_path, command, cwd)
    log_file = Path(log_file)
    log_file.parent.mkdir(parents=True, exist_ok=True)

    result = subprocess.run(
        ["/bin/bash", "-c", DETACH_SNIPPET, str(wrapper_path), str(log_file)],
        capture_output=True,
        text=True,
        cwd=str(cwd),
        stdin=subprocess.DEVNULL,
    )
    if result.returncode != 0:
        logger.error(f"Launching {wrapper_path} failed: {result.stderr.strip()}")

    pid_text = result.stdout.strip().splitlines()[-1] if result.stdout.strip() else ""
    pid = int(pid_text) if pid_text.isdigit() else None
    logger.info(f"Background runner started: {wrapper_path} (PID {pid if pid else 'unknown'})")
    return pid


def kill_matching(pattern: str) -> bool:
    """
    Best-effort kill of every process whose command line contains `pattern`.

    Returns True if at least one process was signalled.
    """
    try:
        result = subprocess.run(
            ["pkill", "-f", pattern],
            capture_output=True,
            text=True,
            stdin=subprocess.DEVNULL,
        )
    except OSError as e:
        logger.warning(f"pkill unavailable, cannot stop '{pattern}': {e}")
        return False
    # pkill: 0 = matched, 1 = nothing matched
    return result.returncode == 0
