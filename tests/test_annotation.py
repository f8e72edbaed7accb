import pytest

from shardkv.annotation import (
    COLOR_FAULT,
    COLOR_INFO,
    COLOR_SUCCESS,
    COLOR_USER,
    TAG_CHECKER,
    TAG_INFO,
    TAG_PARTITION,
    Annotator,
    FailureTracker,
    timestamp,
)


@pytest.fixture
def annotator():
    return Annotator()


def test_timestamp_monotone_nonzero():
    a = timestamp()
    b = timestamp()
    assert a > 0
    assert b >= a


def test_point_recorded(annotator):
    before = timestamp()
    annotator.annotate_point("tag", "desc", "more", COLOR_USER)
    [a] = annotator.finalize()
    assert (a.tag, a.description, a.details, a.background_color) == (
        "tag", "desc", "more", COLOR_USER,
    )
    assert a.start >= before
    assert a.end == 0


def test_interval_keeps_start(annotator):
    start = timestamp()
    annotator.annotate_interval("t", start, "d", "x", COLOR_USER)
    [a] = annotator.finalize()
    assert a.start == start
    assert a.end >= start


def test_continuous_replaced_closes_previous(annotator):
    annotator.annotate_continuous("t", "first", "f", COLOR_USER)
    annotator.annotate_continuous("t", "second", "s", COLOR_USER)
    result = annotator.finalize()
    assert [a.description for a in result] == ["first", "second"]
    assert result[0].end == result[1].start


def test_continuous_end(annotator):
    annotator.annotate_continuous("t", "on", "on", COLOR_USER)
    annotator.annotate_continuous_end("t")
    annotator.annotate_continuous_end("t")
    result = annotator.finalize()
    assert len(result) == 1
    assert result[0].end >= result[0].start


def test_finalize_marks_and_clear_resets(annotator):
    annotator.annotate_point("t", "d", "d", COLOR_USER)
    assert annotator.is_finalized() is False
    annotator.finalize()
    assert annotator.is_finalized() is True
    annotator.clear()
    assert annotator.is_finalized() is False
    assert annotator.finalize() == []


def test_finalize_with_appends_info(annotator):
    annotator.annotate_continuous("t", "on", "on", COLOR_USER)
    result = annotator.finalize_with("test passed")
    assert len(result) == 2
    last = result[-1]
    assert (last.tag, last.description, last.background_color) == (
        TAG_INFO, "test passed", COLOR_INFO,
    )


def test_shutdown_text(annotator):
    ft = FailureTracker(annotator, 3)
    ft.shutdown([2])
    [a] = annotator.finalize()
    assert a.tag == TAG_PARTITION
    assert a.description == "partition = [0 1] / crash = [2]"
    assert a.background_color == COLOR_FAULT


def test_shutdown_twice_no_change(annotator):
    ft = FailureTracker(annotator, 3)
    ft.shutdown([1])
    ft.shutdown([1])
    assert len(annotator.finalize()) == 1


def test_restart_all_ends_fault(annotator):
    ft = FailureTracker(annotator, 3)
    ft.shutdown_all()
    ft.restart_all()
    result = annotator.finalize()
    assert len(result) == 1
    assert "crash" in result[0].description
    assert result[0].end >= result[0].start


def test_connection_unchanged_is_silent(annotator):
    ft = FailureTracker(annotator, 3)
    ft.connection([True, True, True])
    assert annotator.finalize() == []


def test_connection_disconnected_text(annotator):
    ft = FailureTracker(annotator, 3)
    ft.connection([True, False, True])
    [a] = annotator.finalize()
    assert a.description == "partition = [1] [0 2]"


def test_two_partitions_and_clear(annotator):
    ft = FailureTracker(annotator, 3)
    ft.two_partitions([0, 1], [2])
    ft.clear_failure()
    result = annotator.finalize()
    assert len(result) == 1
    assert result[0].description == "partition = [0 1] [2]"


def test_checker_point_without_begin(annotator):
    ft = FailureTracker(annotator, 1)
    ft.checker_end("ok", "details", COLOR_SUCCESS)
    [a] = annotator.finalize()
    assert (a.tag, a.details, a.end) == (TAG_CHECKER, "details", 0)


def test_checker_interval_after_begin(annotator):
    ft = FailureTracker(annotator, 1)
    ft.checker_begin("linearizability")
    ft.checker_end("ok", "fine", COLOR_SUCCESS)
    ft.checker_end("again", "point", COLOR_SUCCESS)
    first, second = annotator.finalize()
    assert first.details == "linearizability: fine"
    assert first.end >= first.start > 0
    assert second.end == 0
    assert second.details == "point"