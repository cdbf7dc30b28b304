"""
Discovery of the external renderer (asciidoctor) and e-book converter (ebook-convert).

Discovery runs once at startup. The result is an immutable capability value the
conversion service reads on every request; a missing renderer leaves the
service degraded instead of aborting startup.
"""

import glob
import os
import shutil
import subprocess
from dataclasses import dataclass, field
from typing import Dict, Iterable, Iterator, List, Optional, Tuple

from asciidoctor_api.core.config import Settings
from asciidoctor_api.core.error_handling import ErrorKind, InitializationError
from asciidoctor_api.core.logging_config import get_logger

logger = get_logger("converter")

RENDERER_NAME = "asciidoctor"
EBOOK_CONVERT_NAME = "ebook-convert"

WELL_KNOWN_RENDERER_PATHS = [
    "/usr/local/bin/asciidoctor",
    "/usr/bin/asciidoctor",
]

WELL_KNOWN_EBOOK_CONVERT_PATHS = [
    "/usr/bin/ebook-convert",
    "/usr/local/bin/ebook-convert",
]


@dataclass(frozen=True)
class RendererCapability:
    """How to invoke asciidoctor. Resolved once, read-only afterwards."""
    command: Tuple[str, ...]
    strategy: str
    version: str = ""
    env: Dict[str, str] = field(default_factory=dict)
    cwd: Optional[str] = None

    @property
    def path(self) -> str:
        return self.command[0]

    def environment(self) -> Optional[Dict[str, str]]:
        """Process environment for a renderer run, or None to inherit."""
        if not self.env:
            return None
        merged = dict(os.environ)
        merged.update(self.env)
        return merged


@dataclass(frozen=True)
class EbookConverterCapability:
    """Path of Calibre's ebook-convert."""
    path: str
    version: str = ""


def is_executable(path: str) -> bool:
    return os.path.isfile(path) and os.access(path, os.X_OK)


def probe_version(
    command: Iterable[str],
    timeout: float,
    env: Optional[Dict[str, str]] = None,
    cwd: Optional[str] = None,
) -> Optional[str]:
    """
    Run ``<command> --version``.

    Returns the first line of output on success, None if the command fails,
    times out or cannot be started.
    """
    args = [*command, "--version"]
    try:
        completed = subprocess.run(
            args,
            capture_output=True,
            text=True,
            timeout=timeout,
            env=env,
            cwd=cwd,
        )
    except subprocess.TimeoutExpired:
        logger.debug("Version probe timed out", {"command": " ".join(args), "timeout": timeout})
        return None
    except OSError as e:
        logger.debug("Version probe could not start", {"command": " ".join(args), "error": str(e)})
        return None

    if completed.returncode != 0:
        logger.debug(
            "Version probe failed",
            {"command": " ".join(args), "exit_code": completed.returncode, "output": completed.stderr.strip()},
        )
        return None

    output = (completed.stdout or completed.stderr or "").strip()
    return output.splitlines()[0] if output else "unknown"


def _bundle_env(settings: Settings) -> Tuple[Dict[str, str], Optional[str]]:
    """Bundler environment and Gemfile directory, empty when the Gemfile is missing."""
    gemfile = os.path.abspath(settings.bundle_gemfile)
    if not os.path.isfile(gemfile):
        return {}, None
    return {"BUNDLE_GEMFILE": gemfile, "BUNDLE_PATH": settings.bundle_path}, os.path.dirname(gemfile)


def bundle_binary_paths(bundle_path: str) -> List[str]:
    """Locations where ``bundle install --path`` places the asciidoctor binstub."""
    paths = [os.path.join(bundle_path, "bin", RENDERER_NAME)]
    paths.extend(sorted(glob.glob(os.path.join(bundle_path, "ruby", "*", "bin", RENDERER_NAME))))
    paths.append(os.path.join(bundle_path, "ruby", "bin", RENDERER_NAME))
    return paths


def _search_path_candidates(search_paths: Iterable[str]) -> Iterator[str]:
    for entry in search_paths:
        if os.path.isdir(entry):
            yield os.path.join(entry, RENDERER_NAME)
        else:
            yield entry


def _renderer_candidates(settings: Settings) -> Iterator[RendererCapability]:
    """Candidate invocations in priority order; unverified."""
    env, gemfile_dir = _bundle_env(settings)

    bundle = shutil.which("bundle")
    if bundle:
        yield RendererCapability(
            command=(bundle, "exec", RENDERER_NAME),
            strategy="bundle-exec",
            env=env,
            cwd=gemfile_dir,
        )

    for path in bundle_binary_paths(settings.bundle_path):
        yield RendererCapability(command=(path,), strategy="bundle-bin", env=env)

    for path in _search_path_candidates(settings.search_paths):
        yield RendererCapability(command=(path,), strategy="search-path")

    for path in WELL_KNOWN_RENDERER_PATHS:
        yield RendererCapability(command=(path,), strategy="well-known")

    found = shutil.which(RENDERER_NAME)
    if found:
        yield RendererCapability(command=(found,), strategy="path")


def discover_renderer(settings: Settings) -> Optional[RendererCapability]:
    """
    Locate a working asciidoctor.

    Returns the first candidate that is executable and answers ``--version``
    within ``settings.probe_timeout``, or None when there is none.
    """
    checked: List[str] = []
    for candidate in _renderer_candidates(settings):
        if candidate.strategy != "bundle-exec" and not is_executable(candidate.path):
            checked.append(candidate.path)
            continue

        label = " ".join(candidate.command)
        checked.append(label)
        version = probe_version(
            candidate.command,
            settings.probe_timeout,
            env=candidate.environment(),
            cwd=candidate.cwd,
        )
        if version is None:
            continue

        capability = RendererCapability(
            command=candidate.command,
            strategy=candidate.strategy,
            version=version,
            env=candidate.env,
            cwd=candidate.cwd,
        )
        logger.info(
            "Found asciidoctor",
            {"strategy": capability.strategy, "command": label, "version": version},
        )
        return capability

    logger.error(
        "Failed to find asciidoctor, service starts degraded",
        InitializationError(
            "asciidoctor command not found in bundle, search paths or PATH",
            component="converter",
            operation="discover_renderer",
        ),
        {"bundle_path": settings.bundle_path, "checked": checked},
        kind=ErrorKind.INITIALIZATION_ERROR,
    )
    return None


def discover_ebook_converter(settings: Settings) -> Optional[EbookConverterCapability]:
    """Locate Calibre's ebook-convert, verified with ``--version``."""
    candidates: List[str] = []
    if settings.ebook_convert_path:
        candidates.append(settings.ebook_convert_path)
    candidates.extend(WELL_KNOWN_EBOOK_CONVERT_PATHS)
    found = shutil.which(EBOOK_CONVERT_NAME)
    if found:
        candidates.append(found)

    for path in candidates:
        if not is_executable(path):
            continue
        version = probe_version([path], settings.probe_timeout)
        if version is not None:
            logger.info("Found ebook-convert", {"path": path, "version": version})
            return EbookConverterCapability(path=path, version=version)

    logger.warning(
        "ebook-convert not found, MOBI and AZW3 conversion unavailable",
        {"checked": candidates},
        error=InitializationError("ebook-convert command not found (install Calibre)", component="converter"),
        kind=ErrorKind.INITIALIZATION_ERROR,
    )
    return None
