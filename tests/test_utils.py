from __future__ import annotations

import sys
from pathlib import Path

import pytest

from dotnet_pipelines.errors import ConfigurationError
from dotnet_pipelines.utils import CommandError, is_contained_path, resolve_within, run_command


@pytest.mark.parametrize(
    "path, expected",
    [
        (".", True),
        ("src/Lib/Lib.csproj", True),
        ("src/../tests", True),
        ("..", False),
        ("src/../../x", False),
        ("/etc/passwd", False),
        ("C:/Windows", False),
        ("..\\outside", False),
    ],
)
def test_is_contained_path(path: str, expected: bool) -> None:
    assert is_contained_path(path) is expected


def test_resolve_within(tmp_path: Path) -> None:
    assert resolve_within(tmp_path, "a/b") == tmp_path.resolve() / "a" / "b"
    assert resolve_within(tmp_path, ".") == tmp_path.resolve()
    with pytest.raises(ConfigurationError):
        resolve_within(tmp_path, "../sibling")


def test_resolve_within_follows_symlinks(tmp_path: Path) -> None:
    outside = tmp_path / "outside"
    outside.mkdir()
    root = tmp_path / "root"
    root.mkdir()
    (root / "link").symlink_to(outside, target_is_directory=True)
    with pytest.raises(ConfigurationError):
        resolve_within(root, "link")


def test_run_command_redacts_secrets_on_failure() -> None:
    with pytest.raises(CommandError) as excinfo:
        run_command(
            [sys.executable, "-c", "import sys; print(sys.argv[1]); sys.exit(3)", "s3cr3t"],
            redact=["s3cr3t"],
        )
    assert excinfo.value.returncode == 3
    assert "s3cr3t" not in str(excinfo.value)
    assert "***" in excinfo.value.stdout
