"""
Tests for FilterState: criteria events, page reset, snapshots, summaries.
"""

import pytest

from campus_admin.services.filter_state import (
    DateBucket,
    FilterCriteria,
    FilterState,
    Page,
    SortDirection,
)


def test_defaults():
    state = FilterState()

    assert state.criteria == FilterCriteria()
    assert state.page == Page(1, 10)
    assert state.has_active_filters is False
    assert state.filter_summary() == ""


@pytest.mark.parametrize(
    "change",
    [
        lambda s: s.set_search_text("math"),
        lambda s: s.set_filter("faculty", "Science"),
        lambda s: s.set_filters({"faculty": "Arts"}),
        lambda s: s.set_date_bucket("upcoming"),
        lambda s: s.set_sort("title", "desc"),
        lambda s: s.sort_by("title"),
    ],
)
def test_any_criteria_change_resets_page(change):
    state = FilterState()
    state.set_page(4)

    change(state)

    assert state.page.index == 1


def test_page_change_keeps_criteria():
    state = FilterState()
    state.set_search_text("math")
    criteria = state.criteria

    state.set_page(3)

    assert state.criteria is criteria
    assert state.page.index == 3


def test_set_filter_empty_value_removes_filter():
    state = FilterState()
    state.set_filter("faculty", "Science")
    state.set_filter("year", "2")

    state.set_filter("faculty", "")

    assert state.criteria.filters == {"year": "2"}


def test_sort_by_toggles_direction_on_same_column():
    state = FilterState()

    state.sort_by("title")
    assert state.criteria.sort.direction == SortDirection.ASC

    state.sort_by("title")
    assert state.criteria.sort.direction == SortDirection.DESC

    state.sort_by("start")
    assert state.criteria.sort.field == "start"
    assert state.criteria.sort.direction == SortDirection.ASC


def test_set_page_size_resets_page():
    state = FilterState(page_size=10)
    state.set_page(5)

    state.set_page_size(25)

    assert state.page == Page(1, 25)


def test_invalid_page_size_rejected():
    state = FilterState()

    with pytest.raises(ValueError):
        state.set_page_size(0)


def test_reset_restores_defaults():
    state = FilterState(page_size=20)
    state.set_search_text("x")
    state.set_date_bucket("past")
    state.set_page(3)

    state.reset()

    assert state.criteria == FilterCriteria()
    assert state.page == Page(1, 20)


def test_snapshot_is_hashable_and_changes_with_criteria():
    state = FilterState()
    first = state.snapshot()
    hash(first)

    state.set_search_text("math")

    assert state.snapshot() != first


def test_equality_filters_normalized_regardless_of_insertion_order():
    a = FilterCriteria.build(filters={"b": "2", "a": "1"})
    b = FilterCriteria.build(filters={"a": "1", "b": "2", "c": ""})

    assert a == b
    assert hash(a) == hash(b)


def test_unknown_bucket_and_direction_rejected():
    with pytest.raises(ValueError):
        DateBucket.parse("someday")
    with pytest.raises(ValueError):
        SortDirection.parse("sideways")

    assert DateBucket.parse("") == DateBucket.NONE
    assert SortDirection.parse("Descending") == SortDirection.DESC


def test_filter_summary_and_descriptor():
    state = FilterState()
    state.set_search_text("  data  ")
    state.set_filter("faculty", "Science")
    state.set_date_bucket("this_week")

    summary = state.filter_summary({"faculty": "Faculty"})

    assert summary == 'Search: "data", Faculty: Science, Date: this_week'
    assert state.descriptor() == {"search": "data", "faculty": "Science", "date": "this_week"}
    assert state.has_active_filters is True


def test_sort_alone_is_not_an_active_filter():
    state = FilterState()
    state.set_sort("title")

    assert state.has_active_filters is False
