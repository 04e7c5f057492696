import logging
from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path
from typing import Optional


_TRUE_VALUES = {"1", "true", "yes", "y", "on"}


def _flag(environ: Mapping[str, str], name: str) -> bool:
    return environ.get(name, "").strip().lower() in _TRUE_VALUES


def _log_level(environ: Mapping[str, str]) -> str:
    level = (environ.get("TSDB_LOG_LEVEL") or "INFO").strip().upper()
    if not isinstance(logging.getLevelName(level), int):
        raise ValueError(f"invalid TSDB_LOG_LEVEL: {level}")
    return level


@dataclass(frozen=True)
class Settings:
    dsn: str = ""
    shared_dsn: str = ""
    project: str = ""
    skip_tsdb: bool = False
    enable_metrics_drop: bool = False
    log_level: str = "INFO"
    repos_dir: str = "."
    git_binary: str = "git"
    exclude_bots_sql: str = "''"

    @classmethod
    def from_env(cls, environ: Mapping[str, str]) -> "Settings":
        exclude_bots_sql = cls.exclude_bots_sql
        exclude_bots_file = environ.get("TSDB_EXCLUDE_BOTS_FILE", "").strip()
        if exclude_bots_file:
            exclude_bots_sql = Path(exclude_bots_file).read_text(encoding="utf-8").strip()

        return cls(
            dsn=environ.get("DATABASE_URL") or environ.get("PG_DSN") or "",
            shared_dsn=environ.get("SHARED_DATABASE_URL", ""),
            project=environ.get("TSDB_PROJECT", ""),
            skip_tsdb=_flag(environ, "TSDB_SKIP_WRITE"),
            enable_metrics_drop=_flag(environ, "TSDB_ENABLE_METRICS_DROP"),
            log_level=_log_level(environ),
            repos_dir=environ.get("TSDB_REPOS_DIR") or ".",
            git_binary=environ.get("TSDB_GIT_BIN") or "git",
            exclude_bots_sql=exclude_bots_sql,
        )

    def require_dsn(self) -> str:
        if not self.dsn:
            raise ValueError("DATABASE_URL or PG_DSN is required")
        return self.dsn

    def shared_or_none(self) -> Optional[str]:
        return self.shared_dsn or None
