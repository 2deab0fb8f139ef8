"""
Interpreter Discovery and Resolution
====================================

Picks the Python interpreter that backs the background Jupyter server and
provides the host capabilities the lifecycle manager consumes around it:

- Probing an interpreter for the kernel support packages
- Installing missing packages with pip
- Registering a kernelspec under a deterministic, path-derived name
- Resolving the activation environment variables of an interpreter
- Discovering the active and known environments (venv, conda, PATH)

Resolution order is saved path -> active environment -> known environments,
first candidate that exists on disk and passes the probe wins.
"""

import os
import sys
import json
import asyncio
import hashlib
import shutil
import subprocess
from pathlib import Path
from typing import Callable, Awaitable, Dict, List, Optional, Sequence

import structlog

from .config import settings as default_settings, SlideKernelSettings
from .errors import NoInterpreterFound, PackageInstallFailed, KernelRegistrationFailed

logger = structlog.get_logger(__name__)

# Variables describing the host user; the host value always wins when merging
HOST_IDENTITY_VARS = ("HOME", "USER", "USERPROFILE", "LOGNAME")


def kernel_name_for_interpreter(
    interpreter_path: str, prefix: Optional[str] = None
) -> str:
    """
    Deterministic kernelspec name for an interpreter.

    The same path always maps to the same name, so a kernel registered once is
    found again on the next server start without re-registering.
    """
    if prefix is None:
        prefix = default_settings.KERNEL_NAME_PREFIX
    digest = hashlib.sha256(interpreter_path.encode("utf-8")).hexdigest()[:16]
    return f"{prefix}{digest}"


def _python_in(prefix: Path) -> Path:
    if os.name == "nt":
        return prefix / "python.exe" if (prefix / "python.exe").exists() else prefix / "Scripts" / "python.exe"
    return prefix / "bin" / "python"


async def _run_interpreter(
    interpreter: str, args: Sequence[str], timeout: float
) -> tuple:
    """Run `interpreter *args`, returning (returncode, stdout, stderr)."""
    proc = await asyncio.create_subprocess_exec(
        interpreter,
        *args,
        stdin=asyncio.subprocess.DEVNULL,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
    )
    try:
        stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=timeout)
    except asyncio.TimeoutError:
        proc.kill()
        await proc.wait()
        raise
    return (
        proc.returncode,
        stdout.decode("utf-8", errors="replace"),
        stderr.decode("utf-8", errors="replace"),
    )


async def has_required_packages(
    interpreter: str,
    packages: Optional[Sequence[str]] = None,
    timeout: Optional[float] = None,
) -> bool:
    """
    True iff `interpreter -c "import <packages>"` exits with status 0.

    A missing or non-executable interpreter, or a probe that hangs past the
    timeout, resolves to False rather than raising.
    """
    if packages is None:
        packages = default_settings.REQUIRED_PACKAGES
    if timeout is None:
        timeout = default_settings.PROBE_TIMEOUT
    check = "import " + ", ".join(packages) if packages else "pass"

    try:
        returncode, _, stderr = await _run_interpreter(interpreter, ["-c", check], timeout)
    except (OSError, ValueError) as e:
        logger.debug(f"[ENV] Probe could not run {interpreter}: {e}")
        return False
    except asyncio.TimeoutError:
        logger.warning(f"[ENV] Probe of {interpreter} timed out after {timeout}s")
        return False

    if returncode != 0:
        logger.info(f"[ENV] {interpreter} is missing required packages", stderr=stderr.strip()[-300:])
    return returncode == 0


async def install_packages(
    interpreter: str, packages: Sequence[str], timeout: float = 600.0
) -> None:
    """pip-install packages into the interpreter's environment."""
    logger.info(f"[ENV] Installing {list(packages)} into {interpreter}")
    try:
        returncode, _, stderr = await _run_interpreter(
            interpreter, ["-m", "pip", "install", *packages], timeout
        )
    except (OSError, asyncio.TimeoutError) as e:
        raise PackageInstallFailed(f"Failed to run pip for {interpreter}: {e}") from e
    if returncode != 0:
        raise PackageInstallFailed(
            f"pip install {' '.join(packages)} failed (exit {returncode}): {stderr.strip()}"
        )


async def register_kernel(
    interpreter: str,
    display_name: Optional[str] = None,
    settings: Optional[SlideKernelSettings] = None,
    timeout: float = 120.0,
) -> str:
    """
    Register a user kernelspec for the interpreter and return its name.

    Re-registering the same interpreter overwrites the spec in place.
    """
    settings = settings or default_settings
    name = kernel_name_for_interpreter(interpreter, settings.KERNEL_NAME_PREFIX)
    if display_name is None:
        display_name = f"Python ({describe_interpreter(interpreter)})"

    try:
        returncode, _, stderr = await _run_interpreter(
            interpreter,
            [
                "-m", "ipykernel", "install", "--user",
                "--name", name,
                "--display-name", display_name,
            ],
            timeout,
        )
    except (OSError, asyncio.TimeoutError) as e:
        raise KernelRegistrationFailed(f"Failed to register kernel for {interpreter}: {e}") from e
    if returncode != 0:
        raise KernelRegistrationFailed(
            f"Kernel registration for {interpreter} failed (exit {returncode}): {stderr.strip()}"
        )
    logger.info(f"[ENV] Registered kernel {name}", display_name=display_name)
    return name


def describe_interpreter(interpreter: str) -> str:
    env_type, env_name = detect_environment_type(interpreter)
    if env_type == "system":
        return Path(interpreter).name
    return f"{env_type}: {env_name}"


def detect_environment_type(python_path: str) -> tuple:
    """
    Detects the type of Python environment.

    Returns:
        Tuple of (env_type, env_name)
        env_type: 'venv', 'virtualenv', 'conda', 'pyenv', 'system'
    """
    python_path_obj = Path(python_path).absolute()
    lowered = str(python_path_obj).lower()

    if "conda" in lowered or "miniforge" in lowered:
        parts = python_path_obj.parts
        for i, part in enumerate(parts):
            if part == "envs" and i + 1 < len(parts):
                return ("conda", parts[i + 1])
        return ("conda", "base")

    for parent in (python_path_obj.parent.parent, python_path_obj.parent.parent.parent):
        if (parent / "pyvenv.cfg").exists():
            return ("venv", parent.name)
        if (parent / "bin" / "activate").exists() or (parent / "Scripts" / "activate").exists():
            return ("virtualenv", parent.name)

    if "pyenv" in lowered:
        return ("pyenv", python_path_obj.parent.name)

    return ("system", "system")


def get_activated_env_vars(interpreter: str) -> Dict[str, str]:
    """
    Environment variables an activation script would set for the interpreter.

    Derived from the on-disk layout: VIRTUAL_ENV for venvs, CONDA_PREFIX for
    conda prefixes, and the interpreter's bin directory prepended to PATH.
    """
    exe = Path(interpreter)
    bin_dir = exe.parent
    prefix = bin_dir.parent if bin_dir.name in ("bin", "Scripts") else bin_dir
    resolved: Dict[str, str] = {}

    if (prefix / "pyvenv.cfg").exists():
        resolved["VIRTUAL_ENV"] = str(prefix)
    if (prefix / "conda-meta").exists():
        resolved["CONDA_PREFIX"] = str(prefix)
        resolved["CONDA_DEFAULT_ENV"] = prefix.name

    path_dirs = [str(bin_dir)]
    if os.name == "nt" and (prefix / "Library" / "bin").exists():
        path_dirs.append(str(prefix / "Library" / "bin"))
    resolved["PATH"] = os.pathsep.join(path_dirs + [os.environ.get("PATH", "")])
    return resolved


def merge_environment(
    resolved: Optional[Dict[str, str]], base: Optional[Dict[str, str]] = None
) -> Dict[str, str]:
    """
    Overlay resolved interpreter variables on the host environment.

    Resolved values override same-named host values, except for the host
    identity variables (HOME, USER, ...) which keep the host value.
    """
    env = dict(os.environ if base is None else base)
    for key, value in (resolved or {}).items():
        if key in HOST_IDENTITY_VARS and key in env:
            continue
        env[key] = value
    return env


# ---------------------------------------------------------------------------
# Discovery
# ---------------------------------------------------------------------------


def find_conda_environments() -> List[str]:
    """Interpreters of all conda environments (conda CLI + common locations)."""
    found: List[str] = []

    conda_exe = shutil.which("conda")
    if conda_exe:
        try:
            result = subprocess.run(
                [conda_exe, "env", "list", "--json"],
                capture_output=True,
                text=True,
                timeout=10,
            )
            if result.returncode == 0:
                for env_path in json.loads(result.stdout).get("envs", []):
                    python_exe = _python_in(Path(env_path))
                    if python_exe.exists():
                        found.append(str(python_exe))
        except (OSError, subprocess.SubprocessError, ValueError) as e:
            logger.debug(f"[ENV] conda env list failed: {e}")

    home = Path.home()
    for location in (home / "miniconda3" / "envs", home / "anaconda3" / "envs", home / "miniforge3" / "envs"):
        if location.is_dir():
            for env_dir in location.iterdir():
                python_exe = _python_in(env_dir)
                if env_dir.is_dir() and python_exe.exists():
                    found.append(str(python_exe))

    return found


def find_venv_environments(search_root: Optional[Path] = None) -> List[str]:
    """Interpreters of venvs in the working directory and common locations."""
    home = Path.home()
    cwd = search_root or Path.cwd()
    found: List[str] = []

    for location in (cwd / ".venv", cwd / "venv", cwd / "env", home / "venvs"):
        python_exe = _python_in(location)
        if python_exe.exists():
            found.append(str(python_exe))

    virtualenvs_dir = home / ".virtualenvs"
    if virtualenvs_dir.is_dir():
        for env_dir in virtualenvs_dir.iterdir():
            python_exe = _python_in(env_dir)
            if env_dir.is_dir() and python_exe.exists():
                found.append(str(python_exe))

    return found


def find_path_interpreters() -> List[str]:
    """python/python3 executables on PATH."""
    found: List[str] = []
    for path_dir in os.environ.get("PATH", "").split(os.pathsep):
        if not path_dir or not os.path.isdir(path_dir):
            continue
        for name in ("python3", "python", "python.exe", "python3.exe"):
            exe_path = os.path.join(path_dir, name)
            if os.path.isfile(exe_path) and os.access(exe_path, os.X_OK):
                found.append(exe_path)
    return found


class EnvironmentProvider:
    """
    Host interpreter-discovery capability.

    The editor host backs this with its own Python environment service; the
    default implementation inspects the local machine.
    """

    async def get_active_environment_path(self, document_path: Optional[str]) -> Optional[str]:
        """Interpreter the host considers active for the document."""
        if document_path:
            notebook_dir = Path(document_path).parent
            for venv_name in (".venv", "venv", "env"):
                python_exe = _python_in(notebook_dir / venv_name)
                if python_exe.exists():
                    return str(python_exe)

        for var in ("VIRTUAL_ENV", "CONDA_PREFIX"):
            prefix = os.environ.get(var)
            if prefix:
                python_exe = _python_in(Path(prefix))
                if python_exe.exists():
                    return str(python_exe)

        return sys.executable

    async def known_environments(self) -> List[str]:
        """Every discoverable interpreter, deduplicated by real path."""
        candidates = await asyncio.to_thread(self._discover)
        seen = set()
        unique: List[str] = []
        for candidate in candidates:
            real = os.path.realpath(candidate)
            if real not in seen:
                seen.add(real)
                unique.append(candidate)
        return unique

    def _discover(self) -> List[str]:
        return (
            [sys.executable]
            + find_venv_environments()
            + find_conda_environments()
            + find_path_interpreters()
        )

    async def resolve_environment(self, interpreter: str) -> Optional[Dict[str, str]]:
        """Activation variables for the interpreter, or None if it is missing."""
        if not Path(interpreter).exists():
            return None
        return get_activated_env_vars(interpreter)


Probe = Callable[[str], Awaitable[bool]]


class InterpreterResolver:
    """Chooses the interpreter for a document, first success wins."""

    def __init__(
        self,
        provider: Optional[EnvironmentProvider] = None,
        probe: Optional[Probe] = None,
    ):
        self.provider = provider or EnvironmentProvider()
        self.probe = probe or has_required_packages

    async def _usable(self, candidate: Optional[str]) -> bool:
        if not candidate or not Path(candidate).exists():
            return False
        return await self.probe(candidate)

    async def resolve(self, saved_path: Optional[str], document_path: Optional[str] = None) -> str:
        if await self._usable(saved_path):
            logger.info(f"[ENV] Using saved interpreter {saved_path}")
            return saved_path

        active = await self.provider.get_active_environment_path(document_path)
        if await self._usable(active):
            logger.info(f"[ENV] Using active environment {active}")
            return active

        for candidate in await self.provider.known_environments():
            if await self._usable(candidate):
                logger.info(f"[ENV] Using discovered environment {candidate}")
                return candidate

        raise NoInterpreterFound(
            "No Python interpreter with ipykernel and jupyter_server was found. "
            "Select an environment to configure a kernel."
        )
