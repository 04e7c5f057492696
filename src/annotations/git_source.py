import logging
import subprocess
from pathlib import Path
from typing import Callable

from .tag_history import FIELD_SEPARATOR, TagHistoryError


LOGGER = logging.getLogger(__name__)

TagHistorySource = Callable[[str], str]

_DEFAULT_BINARY = "git"
_DEFAULT_TIMEOUT_SECONDS = 120
TAG_FORMAT = FIELD_SEPARATOR.join(
    ["%(refname:short)", "%(creatordate:unix)", "%(subject)"]
)


def _resolve_binary_name(git_binary: str) -> str:
    return git_binary.strip() or _DEFAULT_BINARY


def fetch_tag_history(
    repo_path: str,
    git_binary: str = _DEFAULT_BINARY,
    timeout_seconds: int = _DEFAULT_TIMEOUT_SECONDS,
) -> str:
    command = [
        _resolve_binary_name(git_binary),
        "-C",
        repo_path,
        "tag",
        "-l",
        f"--format={TAG_FORMAT}",
    ]
    LOGGER.debug("running %s", " ".join(command))
    try:
        completed = subprocess.run(
            command,
            capture_output=True,
            text=True,
            timeout=timeout_seconds,
            check=False,
        )
    except (OSError, subprocess.TimeoutExpired) as exc:
        raise TagHistoryError(f"git tag command failed for {repo_path}: {exc}") from exc
    if completed.returncode != 0:
        raise TagHistoryError(
            f"git tag command failed for {repo_path}: {completed.stderr.strip()}"
        )
    return completed.stdout


def git_tag_source(repos_dir: str, git_binary: str = _DEFAULT_BINARY) -> TagHistorySource:
    """Tag history callable resolving ``org/repo`` names under ``repos_dir``."""

    def source(repo: str) -> str:
        return fetch_tag_history(str(Path(repos_dir) / repo), git_binary=git_binary)

    return source
