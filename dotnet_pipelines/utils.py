from __future__ import annotations

import hashlib
import json
import logging
import os
import subprocess
from pathlib import Path, PurePosixPath
from typing import Mapping, Sequence

from .errors import ConfigurationError, PipelineError

logger = logging.getLogger(__name__)


class CommandError(PipelineError):
    """Raised when a subprocess exits with a non-zero status code."""

    def __init__(self, command: Sequence[str], returncode: int, stdout: str, stderr: str) -> None:
        self.command = list(command)
        self.returncode = returncode
        self.stdout = stdout
        self.stderr = stderr
        super().__init__(
            f"Command {' '.join(command)} failed with exit code {returncode}\nSTDOUT:{stdout}\nSTDERR:{stderr}"
        )


def run_command(
    command: Sequence[str],
    *,
    cwd: str | Path | None = None,
    env: Mapping[str, str] | None = None,
    check: bool = True,
    redact: Sequence[str] = (),
) -> subprocess.CompletedProcess[str]:
    """Execute a subprocess command and return the completed process.

    Values listed in ``redact`` are masked in the debug log and in the
    ``CommandError`` raised on failure.
    """

    process_env = os.environ.copy()
    if env:
        process_env.update(env)

    shown = [_mask(part, redact) for part in command]
    logger.debug("Running %s (cwd=%s)", " ".join(shown), cwd or ".")
    result = subprocess.run(
        list(command),
        cwd=str(cwd) if cwd else None,
        env=process_env,
        stdout=subprocess.PIPE,
        stderr=subprocess.PIPE,
        text=True,
        check=False,
    )
    if check and result.returncode != 0:
        raise CommandError(shown, result.returncode, _mask(result.stdout, redact), _mask(result.stderr, redact))
    return result


def _mask(text: str, secrets: Sequence[str]) -> str:
    for secret in secrets:
        if secret:
            text = text.replace(secret, "***")
    return text


def ensure_directory(path: str | Path) -> Path:
    """Create a directory and return its Path object."""

    path = Path(path)
    path.mkdir(parents=True, exist_ok=True)
    return path


def resolve_within(root: str | Path, relative: str) -> Path:
    """Resolve ``relative`` against ``root``, refusing paths that leave it."""

    if not is_contained_path(relative):
        raise ConfigurationError(f"Path '{relative}' must resolve within the checkout")
    root = Path(root).resolve()
    candidate = (root / relative).resolve()
    if candidate != root and root not in candidate.parents:
        raise ConfigurationError(f"Path '{relative}' must resolve within the checkout")
    return candidate


def is_contained_path(relative: str) -> bool:
    """Lexically check that a path is relative and never climbs above its root."""

    path = PurePosixPath(relative.replace("\\", "/"))
    if path.is_absolute() or (path.parts and path.parts[0].endswith(":")):
        return False
    depth = 0
    for part in path.parts:
        if part == "..":
            depth -= 1
            if depth < 0:
                return False
        elif part != ".":
            depth += 1
    return True


def sha256_file(path: str | Path) -> str:
    """Compute the SHA256 hash of the provided file."""

    digest = hashlib.sha256()
    with open(path, "rb") as file_handle:
        for chunk in iter(lambda: file_handle.read(8192), b""):
            digest.update(chunk)
    return digest.hexdigest()


def dump_json(path: str | Path, payload: Mapping[str, object], *, indent: int = 2) -> None:
    """Write structured JSON to disk with a trailing newline for readability."""

    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(payload, indent=indent, sort_keys=True) + "\n")
