from datetime import datetime, timezone
import importlib


runner = importlib.import_module("src.metrics.runner")
contracts = importlib.import_module("src.metrics.contracts")
repository_mod = importlib.import_module("src.tsdb.repository")
points_mod = importlib.import_module("src.tsdb.points")

materialize_metric = runner.materialize_metric
run_metric_batch = runner.run_metric_batch
parse_metric_options = contracts.parse_metric_options
InMemoryRepository = repository_mod.InMemoryRepository
new_point = points_mod.new_point

FROM = datetime(2026, 10, 1, tzinfo=timezone.utc)
TO = datetime(2026, 10, 3, 12, tzinfo=timezone.utc)
NOW = datetime(2026, 10, 19, tzinfo=timezone.utc)


def _constant_handler(sql):
    return ["value"], [(2,)]


def test_daily_metric_runs_one_query_per_day():
    repo = InMemoryRepository(query_handler=_constant_handler)
    spec = parse_metric_options("events", "select count(*) where d >= '{{from}}'", "d", "scale:3")

    result = materialize_metric(spec, FROM, TO, repo, now=NOW)

    assert result.queries == 3
    assert result.written == 3
    assert repo.queries[0] == "select count(*) where d >= '2026-10-01 00:00:00'"
    rows = repo.rows("sevents_d")
    assert [row["value"] for row in rows] == [6.0, 6.0, 6.0]
    assert [row["time"] for row in rows] == [
        datetime(2026, 10, 1),
        datetime(2026, 10, 2),
        datetime(2026, 10, 3),
    ]


def test_merge_series_writes_into_shared_table():
    repo = InMemoryRepository(query_handler=lambda sql: (["names", "a", "b"], [("alice,bob", 1, 2)]))
    spec = parse_metric_options("people", "select 1", "m", "merge_series:all_people")

    materialize_metric(spec, FROM, FROM, repo, now=NOW)

    rows = repo.rows("sall_people")
    assert [(row["series"], row["value"]) for row in rows] == [("alice_m_0", 1.0), ("bob_m_1", 2.0)]


def test_histogram_replaces_rows_of_its_period():
    repo = InMemoryRepository(query_handler=lambda sql: (["name", "value"], [("alice", 4)]))
    repo.write_points(
        [
            new_point("top", "w", datetime(2011, 1, 1, tzinfo=timezone.utc), fields={"name": "old", "value": 1.0}),
            new_point("top", "d", datetime(2011, 1, 1, tzinfo=timezone.utc), fields={"name": "day", "value": 1.0}),
        ]
    )
    spec = parse_metric_options("top", "select 1", "w", "hist")

    result = materialize_metric(spec, FROM, TO, repo, now=NOW)

    assert result.queries == 1
    assert sorted((row["period"], row["name"]) for row in repo.rows("stop")) == [
        ("d", "day"),
        ("w", "alice"),
    ]


def test_drop_tables_only_truncated_when_enabled():
    repo = InMemoryRepository(query_handler=_constant_handler)
    repo.write_points([new_point("stale", "d", FROM, fields={"value": 1.0})])
    spec = parse_metric_options("events", "select 1", "d", "drop:sstale")

    disabled = materialize_metric(spec, FROM, FROM, repo, now=NOW)
    assert disabled.truncated == []
    assert len(repo.rows("sstale")) == 1

    enabled = materialize_metric(spec, FROM, FROM, repo, enable_drop=True, now=NOW)
    assert enabled.truncated == ["sstale"]
    assert repo.rows("sstale") == []


def test_skip_tsdb_runs_queries_without_writing():
    repo = InMemoryRepository(query_handler=_constant_handler)
    spec = parse_metric_options("events", "select 1", "d")

    result = materialize_metric(spec, FROM, TO, repo, skip_tsdb=True, now=NOW)

    assert result.points == 3
    assert result.written == 0
    assert repo.tables == {}


def test_failing_metric_does_not_stop_its_siblings():
    def handler(sql):
        if "broken" in sql:
            raise RuntimeError("relation does not exist")
        return ["value"], [(1,)]

    repo = InMemoryRepository(query_handler=handler)
    specs = [
        parse_metric_options("first", "select 1", "d", name="first"),
        parse_metric_options("broken", "select broken", "d", name="broken"),
        parse_metric_options("last", "select 1", "d", name="last"),
    ]

    records = run_metric_batch(specs, FROM, FROM, repo, command="tsdb calc-metrics", now=NOW)

    assert [record["status"] for record in records] == ["success", "failed", "success"]
    assert records[1]["error_message"] == "relation does not exist"
    assert "sfirst_d" in repo.tables and "slast_d" in repo.tables
    assert sorted(repo.last_computed) == ["first d", "last d"]
    assert repo.last_computed["first d"]["command"] == "tsdb calc-metrics"


def test_shape_error_is_reported_as_failed_metric():
    repo = InMemoryRepository(query_handler=lambda sql: (["n", "a"], [("x,y", 1)]))
    spec = parse_metric_options("wide", "select 1", "d")

    (record,) = run_metric_batch([spec], FROM, FROM, repo, now=NOW)

    assert record["status"] == "failed"
    assert repo.last_computed == {}


def test_histogram_with_empty_result_clears_previous_rows():
    results = [[("alice", 5.0), ("bob", 3.0)], []]
    repo = InMemoryRepository(query_handler=lambda sql: (["name", "value"], results.pop(0)))
    spec = parse_metric_options("hist_top", "select 1", "w", "hist")

    materialize_metric(spec, FROM, TO, repo, now=NOW)
    assert len(repo.rows("shist_top")) == 2

    result = materialize_metric(spec, FROM, TO, repo, now=NOW)

    assert result.points == 0
    assert repo.rows("shist_top") == []


def test_merged_histogram_with_empty_result_clears_its_series():
    results = [[("alice", 5.0)], []]
    repo = InMemoryRepository(query_handler=lambda sql: (["name", "value"], results.pop(0)))
    repo.write_points(
        [new_point("other", "w", FROM, fields={"name": "keep", "value": 1.0})],
        merge_series="all_hist",
    )
    spec = parse_metric_options("hist_top", "select 1", "w", "hist,merge_series:all_hist")

    materialize_metric(spec, FROM, TO, repo, now=NOW)
    materialize_metric(spec, FROM, TO, repo, now=NOW)

    assert [(row["series"], row["name"]) for row in repo.rows("sall_hist")] == [("other", "keep")]


def _quick_range_point(hour, data):
    return new_point(
        "quick_ranges",
        "",
        datetime(2012, 7, 1, hour, tzinfo=timezone.utc),
        tags={"quick_ranges_suffix": data.split(";")[0], "quick_ranges_name": "", "quick_ranges_data": data},
    )


def _repo_with_quick_ranges(handler):
    repo = InMemoryRepository(query_handler=handler)
    repo.write_points(
        [
            _quick_range_point(0, "m;1 month;;"),
            _quick_range_point(1, "a_0_1;;2026-01-01 00:00:00;2026-03-01 00:00:00"),
        ]
    )
    return repo


def test_annotation_range_histogram_uses_the_quick_range_window():
    repo = _repo_with_quick_ranges(lambda sql: (["name", "value"], [("alice", 2)]))
    template = "select a, {{range}} from t where {{period:created_at}} and {{from}} < {{to}}"
    spec = parse_metric_options("top", template, "a_0_1", "hist,annotations_ranges")

    materialize_metric(spec, FROM, TO, repo, now=NOW)

    assert repo.queries[-1] == (
        "select a, 1416.000000 from t where "
        " (created_at >= '2026-01-01 00:00:00' and created_at < '2026-03-01 00:00:00') "
        " and '2026-01-01 00:00:00' < '2026-03-01 00:00:00'"
    )
    assert [(row["period"], row["name"]) for row in repo.rows("stop")] == [("a_0_1", "alice")]
    assert repo.is_computed("top a_0_1", datetime(2026, 3, 1, tzinfo=timezone.utc))


def test_annotation_range_with_duration_is_anchored_at_now():
    repo = _repo_with_quick_ranges(lambda sql: (["name", "value"], []))
    spec = parse_metric_options("top", "where {{period:c}} -- {{range}}", "m", "hist,annotations_ranges")

    materialize_metric(spec, FROM, TO, repo, now=NOW)

    assert repo.queries[-1] == "where  (c >= now() - '1 month'::interval)  -- 730.500000"
    assert repo.computed == set()


def test_unknown_quick_range_fails_the_metric():
    repo = _repo_with_quick_ranges(_constant_handler)
    spec = parse_metric_options("top", "select 1", "y7", "hist,annotations_ranges", name="top")

    (record,) = run_metric_batch([spec], FROM, TO, repo, now=NOW)

    assert record["status"] == "failed"
    assert "quick range not found" in record["error_message"]


def test_skip_past_skips_already_computed_ranges():
    repo = _repo_with_quick_ranges(lambda sql: (["name", "value"], [("alice", 2)]))
    spec = parse_metric_options("top", "select 1", "a_0_1", "hist,annotations_ranges,skip_past")

    first = materialize_metric(spec, FROM, TO, repo, now=NOW)
    second = materialize_metric(spec, FROM, TO, repo, now=NOW)

    assert first.skipped is False and first.queries == 1
    assert second.skipped is True and second.queries == 0
    assert len(repo.queries) == 1

    (record,) = run_metric_batch([spec], FROM, TO, repo, now=NOW)
    assert record["status"] == "skipped"


def test_range_period_histogram_stores_normalized_label():
    repo = InMemoryRepository(query_handler=lambda sql: (["name", "value"], [("alice", 1)]))
    spec = parse_metric_options("top", "where {{period:c}} -- {{range}}", "range:2026-01-01,2026-01-02", "hist")

    materialize_metric(spec, FROM, TO, repo, now=NOW)

    assert repo.queries[-1] == (
        "where  (c >= '2026-01-01 00:00:00' and c < '2026-01-02 00:00:00')  -- 24.000000"
    )
    assert [row["period"] for row in repo.rows("stop")] == [
        "range:2026-01-01 00:00:00,2026-01-02 00:00:00"
    ]


def test_project_scale_is_substituted():
    repo = InMemoryRepository(query_handler=_constant_handler)
    spec = parse_metric_options("events", "select {{project_scale}} * 2", "d", "project_scale:2.5")

    materialize_metric(spec, FROM, FROM, repo, now=NOW)

    assert repo.queries == ["select 2.500000 * 2"]
