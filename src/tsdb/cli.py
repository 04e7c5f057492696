import argparse
import json
import logging
import os
import sys
from collections.abc import Mapping
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional, Union

import psycopg2

from src.annotations.git_source import git_tag_source
from src.annotations.job import run_annotations
from src.annotations.models import MilestoneDates
from src.annotations.tag_history import TagHistoryError
from src.metrics.contracts import MetricSpec, parse_metric_options
from src.metrics.runner import run_metric_batch

from .config import Settings
from .postgres_repository import PostgresRepository
from .repository import InMemoryRepository


LOGGER = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"

Repository = Union[PostgresRepository, InMemoryRepository]


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="tsdb")
    subparsers = parser.add_subparsers(dest="command", required=True)

    annotations = subparsers.add_parser("annotations")
    _ = annotations.add_argument("--project")
    _ = annotations.add_argument("--main-repo", default="")
    _ = annotations.add_argument("--regexp")
    _ = annotations.add_argument("--tags-file")
    _ = annotations.add_argument("--start")
    _ = annotations.add_argument("--join")
    _ = annotations.add_argument("--incubating")
    _ = annotations.add_argument("--graduated")
    _ = annotations.add_argument("--archived")

    calc_metric = subparsers.add_parser("calc-metric")
    _ = calc_metric.add_argument("--series", required=True)
    _ = calc_metric.add_argument("--sql-file", required=True)
    _ = calc_metric.add_argument("--period", required=True, help="h|d|w|m|q|y, a quick range suffix or range:FROM,TO")
    _ = calc_metric.add_argument("--from", dest="from_time", required=True)
    _ = calc_metric.add_argument("--to", dest="to_time", required=True)
    _ = calc_metric.add_argument("--options", default="")
    _ = calc_metric.add_argument("--name", default="")

    calc_metrics = subparsers.add_parser("calc-metrics")
    _ = calc_metrics.add_argument("--file", required=True)
    _ = calc_metrics.add_argument("--from", dest="from_time", required=True)
    _ = calc_metrics.add_argument("--to", dest="to_time", required=True)

    return parser


def _parse_datetime(raw: Optional[str], field_name: str) -> Optional[datetime]:
    if raw is None or not raw.strip():
        return None
    normalized = raw.strip()
    if normalized.endswith("Z"):
        normalized = normalized[:-1] + "+00:00"
    try:
        value = datetime.fromisoformat(normalized)
    except ValueError as exc:
        raise ValueError(f"{field_name} must be an ISO-8601 date or datetime") from exc
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _required_datetime(raw: str, field_name: str) -> datetime:
    value = _parse_datetime(raw, field_name)
    if value is None:
        raise ValueError(f"{field_name} is required")
    return value


def _window(args: argparse.Namespace) -> tuple[datetime, datetime]:
    from_time = _required_datetime(args.from_time, "from")
    to_time = _required_datetime(args.to_time, "to")
    if to_time < from_time:
        raise ValueError("to must not be before from")
    return from_time, to_time


def _build_repository(dsn: str) -> Repository:
    if dsn:
        return PostgresRepository(dsn=dsn)
    LOGGER.warning("no database configured, using an in-memory repository")
    return InMemoryRepository()


def annotations_command(settings: Settings, args: argparse.Namespace) -> dict[str, object]:
    project = args.project or settings.project
    if not project:
        raise ValueError("project is required (--project or TSDB_PROJECT)")

    dates = MilestoneDates(
        start=_parse_datetime(args.start, "start"),
        join=_parse_datetime(args.join, "join"),
        incubating=_parse_datetime(args.incubating, "incubating"),
        graduated=_parse_datetime(args.graduated, "graduated"),
        archived=_parse_datetime(args.archived, "archived"),
    )

    if args.tags_file:
        tags_path = Path(args.tags_file)

        def tag_source(_repo: str) -> str:
            return tags_path.read_text(encoding="utf-8")

    else:
        tag_source = git_tag_source(settings.repos_dir, settings.git_binary)

    shared_dsn = settings.shared_or_none()
    result = run_annotations(
        project=project,
        dates=dates,
        repository=_build_repository(settings.dsn),
        main_repo=args.main_repo,
        annotation_regexp=args.regexp,
        tag_source=tag_source,
        shared_repository=PostgresRepository(dsn=shared_dsn) if shared_dsn else None,
        skip_tsdb=settings.skip_tsdb,
    )
    return result.to_dict()


def _load_metric_specs(path: Path) -> list[MetricSpec]:
    try:
        payload = json.loads(path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as exc:
        raise ValueError(f"metrics file must be valid JSON: {exc.msg}") from exc
    if not isinstance(payload, list):
        raise ValueError("metrics file must be a JSON array")

    specs: list[MetricSpec] = []
    for entry in payload:
        if not isinstance(entry, Mapping):
            raise ValueError("each metric must be a JSON object")
        if "sql" in entry:
            sql_template = str(entry["sql"])
        else:
            sql_path = path.parent / str(entry["sql_file"])
            sql_template = sql_path.read_text(encoding="utf-8")
        specs.append(
            parse_metric_options(
                series_name=str(entry["series"]),
                sql_template=sql_template,
                period=str(entry["period"]),
                options=str(entry.get("options", "")),
                name=str(entry.get("name", "")),
            )
        )
    return specs


def calc_metrics_command(
    settings: Settings,
    specs: list[MetricSpec],
    window: tuple[datetime, datetime],
    command: str,
) -> list[dict[str, object]]:
    return run_metric_batch(
        specs,
        window[0],
        window[1],
        _build_repository(settings.dsn),
        exclude_bots=settings.exclude_bots_sql,
        enable_drop=settings.enable_metrics_drop,
        skip_tsdb=settings.skip_tsdb,
        command=command,
    )


def main(argv: Optional[list[str]] = None, environ: Optional[Mapping[str, str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    env = os.environ if environ is None else environ
    try:
        settings = Settings.from_env(env)
    except (ValueError, OSError) as error:
        logging.basicConfig(format=LOG_FORMAT)
        project = getattr(args, "project", None) or env.get("TSDB_PROJECT") or "-"
        LOGGER.error("%s failed for project %s: invalid settings: %s", args.command, project, error)
        return 1
    logging.basicConfig(level=settings.log_level, format=LOG_FORMAT)
    command_line = " ".join(sys.argv if argv is None else ["tsdb", *argv])

    if args.command == "annotations":
        try:
            summary = annotations_command(settings, args)
        except (TagHistoryError, ValueError, OSError, psycopg2.Error) as error:
            LOGGER.error("annotations failed for project %s: %s", args.project or settings.project, error)
            return 1
        print(json.dumps(summary))
        return 0

    if args.command == "calc-metric":
        try:
            window = _window(args)
            spec = parse_metric_options(
                series_name=args.series,
                sql_template=Path(args.sql_file).read_text(encoding="utf-8"),
                period=args.period,
                options=args.options,
                name=args.name or Path(args.sql_file).stem,
            )
        except (ValueError, OSError) as error:
            LOGGER.error("invalid metric %s: %s", args.series, error)
            return 1
        records = calc_metrics_command(settings, [spec], window, command_line)
        print(json.dumps(records, default=str))
        return 1 if any(record["status"] == "failed" for record in records) else 0

    if args.command == "calc-metrics":
        try:
            window = _window(args)
            specs = _load_metric_specs(Path(args.file))
        except (KeyError, ValueError, OSError) as error:
            LOGGER.error("invalid metrics file %s: %s", args.file, error)
            return 1
        records = calc_metrics_command(settings, specs, window, command_line)
        print(json.dumps(records, default=str))
        return 1 if any(record["status"] == "failed" for record in records) else 0

    parser.error(f"unsupported command: {args.command}")
    return 2


if __name__ == "__main__":
    raise SystemExit(main())
