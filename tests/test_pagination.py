import pytest

from carebot.schemas.domain import Page
from carebot.services.pagination import build_cursor, render, resolve_target, total_pages_for


@pytest.mark.parametrize(
    "command, current, total, expected",
    [
        ("next", 2, 5, 3),
        ("next", 5, 5, None),
        ("previous", 1, 5, None),
        ("previous", 3, 5, 2),
        ("3", 1, 5, 3),
        ("9", 1, 5, None),
        ("0", 1, 5, None),
        ("hello", 1, 5, None),
        ("  NEXT ", 1, 5, 2),
        ("Previous", 2, 2, 1),
        ("", 1, 5, None),
        (None, 1, 5, None),
    ],
)
def test_resolve_target(command, current, total, expected):
    assert resolve_target(command, current, total) == expected


def test_render_first_of_many_pages():
    text = render([{"name": "Paracetamol"}, {"name": "Ibuprofen"}], 1, 3, title="Medicines")

    assert text.startswith("Medicines (Page 1/3)")
    assert "1. Paracetamol" in text
    assert "2. Ibuprofen" in text
    assert '"Next" to go to page 2' in text
    assert "Previous" not in text
    assert "(1-3)" in text


def test_render_last_page_only_offers_previous():
    text = render([{"name": "Zinc"}], 3, 3, title="Medicines")
    assert '"Previous" to go to page 2' in text
    assert "Next" not in text


def test_render_single_page_has_no_hints():
    text = render([{"name": "Zinc"}], 1, 1, title="Medicines", formatter=lambda i: i["name"].upper())
    assert "1. ZINC" in text
    assert "Next" not in text
    assert "Previous" not in text
    assert "page number" not in text


def test_total_pages_for():
    assert total_pages_for(0, 5) == 1
    assert total_pages_for(5, 5) == 1
    assert total_pages_for(6, 5) == 2
    assert total_pages_for(10, 0) == 1


def test_build_cursor_clamps_page_and_keeps_filters():
    page = Page(items=[{"id": 1}], page=7, totalPages=2, pageSize=5)
    cursor = build_cursor(page, {"search": "zinc"})
    assert cursor.current_page == 2
    assert cursor.total_pages == 2
    assert cursor.filters == {"search": "zinc"}
    assert cursor.items == [{"id": 1}]


def test_empty_page_has_one_total_page():
    cursor = build_cursor(Page(items=[], page=1, totalPages=0))
    assert cursor.total_pages == 1
    assert cursor.current_page == 1
