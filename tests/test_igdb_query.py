import pytest

from igdb.query import build_query, format_filter_value, resolve_igdb_page_size


def test_build_query_renders_filter_limit_offset_and_sort():
    query = build_query(
        ["id", "name", "summary"],
        filter_field="platforms",
        filter_value=6,
        limit=500,
        offset=1000,
    )

    assert query == (
        "fields id,name,summary; where platforms = (6); limit 500; offset 1000; sort id asc;"
    )


def test_build_query_without_filter_omits_where_clause():
    assert build_query("id,name", limit=10) == "fields id,name; limit 10; offset 0; sort id asc;"


def test_build_query_combines_static_predicate_with_filter():
    query = build_query(
        ["id"],
        where="category = (1,5)",
        filter_field="id",
        filter_value=[3, 4],
    )

    assert "where category = (1,5) & id = (3,4);" in query


@pytest.mark.parametrize(
    "requested, expected",
    [(1000, 500), (500, 500), (1, 1), (0, 500), (-3, 500), ("abc", 500), (None, 500)],
)
def test_page_size_is_clamped_to_api_maximum(requested, expected):
    assert resolve_igdb_page_size(requested) == expected
    assert f"limit {expected};" in build_query(["id"], limit=requested)


def test_negative_offset_is_treated_as_zero():
    assert "offset 0;" in build_query(["id"], offset=-10)


def test_format_filter_value_handles_sequences_and_floats():
    assert format_filter_value([1, 2.0, "3"]) == "1,2,3"
    assert format_filter_value(7.0) == "7"
    assert format_filter_value("48") == "48"
