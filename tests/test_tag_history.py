from datetime import datetime, timezone
import importlib
import logging

import pytest


tag_history = importlib.import_module("src.annotations.tag_history")
extract_annotations = tag_history.extract_annotations
clean_subject = tag_history.clean_subject
TagHistoryError = tag_history.TagHistoryError


def _line(name, timestamp, subject):
    return "♂♀".join([name, timestamp, subject])


def test_two_releases_on_different_days_are_both_kept():
    raw = "\n".join(
        [
            _line("v1.0", "1341100800", "Initial release"),
            _line(
                "v1.1",
                "1341187200",
                "Second release with a very long commit subject line exceeding forty chars",
            ),
        ]
    )

    annotations = extract_annotations(raw)

    assert [a.name for a in annotations] == ["v1.0", "v1.1"]
    assert annotations[0].timestamp == datetime(2012, 7, 1, tzinfo=timezone.utc)
    assert annotations[1].timestamp == datetime(2012, 7, 2, tzinfo=timezone.utc)
    assert annotations[0].description == "Initial release"
    assert annotations[1].description == "Second release with a very long commit s"
    assert len(annotations[1].description) == 40


def test_subject_is_truncated_before_whitespace_is_replaced():
    subject = "a\tb\nc\rd" + "x" * 50

    cleaned = clean_subject(subject)

    assert cleaned.startswith("a b c d")
    assert len(cleaned) == 40
    assert "\t" not in cleaned and "\n" not in cleaned


def test_blank_lines_are_ignored():
    raw = "\n   \n" + _line("v2.0", "1400000000", "x") + "\n\n"

    assert [a.name for a in extract_annotations(raw)] == ["v2.0"]


def test_line_with_wrong_field_count_is_fatal():
    raw = _line("v1.0", "1400000000", "ok") + "\nbroken-line-without-separators"

    with pytest.raises(TagHistoryError):
        extract_annotations(raw, repo="org/repo")


def test_empty_timestamp_is_dropped_at_debug(caplog):
    caplog.set_level(logging.DEBUG, logger="src.annotations.tag_history")
    raw = _line("v1.0", "", "no date") + "\n" + _line("v1.1", "1400000000", "dated")

    annotations = extract_annotations(raw, repo="org/repo")

    assert [a.name for a in annotations] == ["v1.1"]
    assert any("empty time" in record.getMessage() for record in caplog.records)


def test_non_integer_timestamp_is_dropped_with_warning(caplog):
    caplog.set_level(logging.WARNING, logger="src.annotations.tag_history")
    raw = _line("v1.0", "yesterday", "bad date") + "\n" + _line("v1.1", "1400000000", "dated")

    annotations = extract_annotations(raw)

    assert [a.name for a in annotations] == ["v1.1"]
    assert any(record.levelno == logging.WARNING for record in caplog.records)


@pytest.mark.parametrize("raw_timestamp", ["1_341_100_800", " +1341100800", "+1341100800", "1341100800.0"])
def test_timestamp_must_be_plain_decimal_digits(caplog, raw_timestamp):
    caplog.set_level(logging.WARNING, logger="src.annotations.tag_history")
    raw = _line("v1.0", raw_timestamp, "loose digits") + "\n" + _line("v1.1", "1400000000", "dated")

    annotations = extract_annotations(raw)

    assert [a.name for a in annotations] == ["v1.1"]
    assert any("invalid time" in record.getMessage() for record in caplog.records)


def test_tags_before_epoch_floor_are_dropped():
    raw = "\n".join(
        [
            _line("v0.1", "1341100799", "one second too early"),
            _line("v0.2", "1341100800", "exactly on the floor"),
        ]
    )

    assert [a.name for a in extract_annotations(raw)] == ["v0.2"]


def test_filter_regexp_uses_search_semantics():
    raw = "\n".join(
        [
            _line("v1.0.0", "1400000000", "release"),
            _line("v1.0.0-rc1", "1400003600", "candidate"),
            _line("nightly", "1400007200", "nightly"),
        ]
    )

    annotations = extract_annotations(raw, filter_regexp=r"^v\d+\.\d+\.\d+$")

    assert [a.name for a in annotations] == ["v1.0.0"]


def test_invalid_filter_regexp_is_fatal():
    with pytest.raises(TagHistoryError):
        extract_annotations(_line("v1", "1400000000", "x"), filter_regexp="(unclosed")


def test_discovery_order_is_preserved():
    raw = "\n".join(
        [
            _line("later", "1500000000", "b"),
            _line("earlier", "1400000000", "a"),
        ]
    )

    assert [a.name for a in extract_annotations(raw)] == ["later", "earlier"]
