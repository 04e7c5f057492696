from datetime import datetime, timedelta, timezone
from decimal import Decimal
import importlib
import random

import pytest


calc_metric = importlib.import_module("src.metrics.calc_metric")
contracts = importlib.import_module("src.metrics.contracts")

interpret_rows = calc_metric.interpret_rows
interpret_histogram_rows = calc_metric.interpret_histogram_rows
render_sql = calc_metric.render_sql
MetricShapeError = calc_metric.MetricShapeError
parse_metric_options = contracts.parse_metric_options

DAY = datetime(2026, 10, 18, tzinfo=timezone.utc)


def _spec(options="", series="activity", period="d"):
    return parse_metric_options(series, "select 1", period, options)


def _values(points):
    return {p.series_name: p.fields["value"] for p in points}


def test_wide_row_names_each_value_column():
    points = interpret_rows(_spec("scale:2.0"), [("alice,bob", 3.5, 7.0)], DAY)

    assert _values(points) == {"alice_d_0": 7.0, "bob_d_1": 14.0}
    assert all(p.event_time == DAY and p.period == "d" for p in points)


def test_wide_row_with_mismatched_names_is_a_shape_error():
    with pytest.raises(MetricShapeError):
        interpret_rows(_spec(), [("alice,bob,carol", 1.0, 2.0)], DAY)


def test_single_column_value_is_scaled_exactly():
    rng = random.Random(3)
    for _ in range(200):
        value = rng.uniform(-1e6, 1e6)
        (point,) = interpret_rows(_spec(), [(value,)], DAY)
        assert point.series_name == "activity_d"
        assert point.fields["value"] == value * 1.0

    (scaled,) = interpret_rows(_spec("scale:0.5"), [(Decimal("8"),)], DAY)
    assert scaled.fields["value"] == 4.0


def test_null_single_value_becomes_zero():
    (point,) = interpret_rows(_spec(), [(None,)], DAY)

    assert point.fields["value"] == 0.0


def test_plain_key_rows_are_suffixed_with_key_and_period():
    points = interpret_rows(_spec(), [("issues", 3), ("prs", 4)], DAY)

    assert _values(points) == {"activity_issues_d": 3.0, "activity_prs_d": 4.0}


def test_escape_value_name_and_name_map_apply_to_keys():
    spec = _spec("escape_value_name,series_name_map:map[kubernetes:k8s]")

    points = interpret_rows(spec, [("Kubernetes SIG-Node", 1), ("???", 2)], DAY)

    assert _values(points) == {"activity_k8s_sig_node_d": 1.0}


def test_multivalue_folds_keys_into_one_point():
    spec = _spec("multivalue,escape_value_name")

    points = interpret_rows(spec, [("Go", 10), ("Python", 5)], DAY)

    assert len(points) == 1
    assert points[0].series_name == "activity_d"
    assert points[0].fields == {"go": 10.0, "python": 5.0}


def test_time_diff_description_is_added():
    (point,) = interpret_rows(_spec("desc:time_diff_as_string"), [(30,)], DAY)

    assert point.fields == {"value": 30.0, "descr": "1 day 6 hours"}


def test_non_numeric_value_is_a_shape_error():
    with pytest.raises(MetricShapeError):
        interpret_rows(_spec(), [("key", "not a number")], DAY)


def test_two_column_histogram_uses_series_name_and_steps_back_in_time():
    spec = _spec("hist,scale:10")

    points = interpret_histogram_rows(spec, [("alice", 5), ("bob", 3)])

    assert [p.series_name for p in points] == ["activity", "activity"]
    assert [p.fields for p in points] == [
        {"name": "alice", "value": 5.0},
        {"name": "bob", "value": 3.0},
    ]
    epoch = datetime(2012, 7, 1, tzinfo=timezone.utc)
    assert [p.event_time for p in points] == [epoch, epoch - timedelta(hours=1)]


def test_three_column_histogram_splits_series_by_key():
    spec = _spec("hist,escape_value_name,scale:2,scale_histogram")

    points = interpret_histogram_rows(spec, [("Repo A", "alice", 5), ("Repo B", "bob", 1)])

    assert [p.series_name for p in points] == ["activity_repo_a", "activity_repo_b"]
    assert points[0].fields == {"name": "alice", "value": 10.0}


def test_histogram_row_with_one_column_is_a_shape_error():
    with pytest.raises(MetricShapeError):
        interpret_histogram_rows(_spec("hist"), [("only",)])


def test_render_sql_substitutes_placeholders_verbatim():
    template = (
        "select count(*) from events where created_at >= '{{from}}' and created_at < '{{to}}' "
        "and login not in ({{exclude_bots}}) -- {{period}} {{n}} {{range}}"
    )

    sql = render_sql(template, DAY, DAY + timedelta(days=1), "d", exclude_bots="'bot'")

    assert sql == (
        "select count(*) from events where created_at >= '2026-10-18 00:00:00' "
        "and created_at < '2026-10-19 00:00:00' and login not in ('bot') "
        "-- 1 day 1.0 24.000000"
    )


def test_render_sql_substitutes_project_scale_and_random_token():
    sql = render_sql("select {{project_scale}} as s, '{{rnd}}' as a, '{{rnd}}' as b", DAY, DAY, "d", project_scale=0.25)

    prefix, token_a, _, token_b, _ = sql.split("'")
    assert prefix == "select 0.250000 as s, "
    assert token_a == token_b
    assert token_a and all(char in "0123456789abcdef" for char in token_a)


def test_quick_range_query_with_duration_is_relative_to_now():
    sql, hours = calc_metric.prepare_quick_range_query(
        "where {{period:e.created_at}} and x > {{from}} and x <= {{to}}", duration="3 months"
    )

    assert sql == (
        "where  (e.created_at >= now() - '3 months'::interval)  "
        "and x > (now() -'3 months'::interval) and x <= (now())"
    )
    assert hours == "2191.500000"


def test_quick_range_query_with_bounds_uses_a_half_open_window():
    sql, hours = calc_metric.prepare_quick_range_query(
        "{{period:a}} or {{period:b}}",
        from_time=DAY,
        to_time=DAY + timedelta(hours=6),
    )

    assert sql == (
        " (a >= '2026-10-18 00:00:00' and a < '2026-10-18 06:00:00')  or "
        " (b >= '2026-10-18 00:00:00' and b < '2026-10-18 06:00:00') "
    )
    assert hours == "6.000000"


def test_quick_range_query_needs_duration_or_bounds():
    with pytest.raises(ValueError):
        calc_metric.prepare_quick_range_query("{{period:a}}", from_time=DAY)


def test_histogram_period_label_can_be_overridden():
    points = interpret_histogram_rows(_spec("hist"), [("alice", 1)], period="range:x,y")

    assert [p.period for p in points] == ["range:x,y"]
