import pytest

from siteorganizer.services.normalize import (
    VALID_PRICING,
    EntityRef,
    normalize_import_row,
    normalize_pricing,
    split_delimited,
)


@pytest.mark.parametrize(
    "raw, expected",
    [
        ("paid", "paid"),
        ("Free Trial", "free_trial"),
        ("free-trial", "free_trial"),
        ("FullyFree", "fully_free"),
        ("Besplatno", "fully_free"),
        ("Premium plan", "paid"),
        ("14 day trial", "free_trial"),
        ("freemium model", "freemium"),
        ("completely free", "fully_free"),
        ("costs money", "paid"),
        ("???", None),
        ("", None),
        (None, None),
    ],
)
def test_normalize_pricing(raw, expected):
    assert normalize_pricing(raw) == expected


def test_normalize_pricing_is_idempotent():
    samples = ["Free Trial", "PAID", "gratis", "Freemium", "nesto se placa", *VALID_PRICING]
    for raw in samples:
        once = normalize_pricing(raw)
        assert once in VALID_PRICING
        assert normalize_pricing(once) == once


def test_split_delimited_accepts_mixed_separators():
    assert split_delimited("a, b;c|d\ne;;") == ["a", "b", "c", "d", "e"]
    assert split_delimited(None) == []


def test_normalize_row_prefers_entity_arrays_with_colors():
    row = normalize_import_row(
        {
            "name": "  GitHub ",
            "url": " https://github.com ",
            "pricing": "Free",
            "categories_array": [{"name": "Dev", "color": "#000000"}, {"name": ""}],
            "category": "Ignored",
            "tags": "git; code",
            "is_favorite": "true",
            "is_pinned": 1,
        },
        index=3,
    )

    assert row.index == 3
    assert row.name == "GitHub"
    assert row.url == "https://github.com"
    assert row.pricing == "fully_free"
    assert row.categories == [EntityRef("Dev", "#000000")]
    assert row.tags == [EntityRef("git"), EntityRef("code")]
    assert row.is_favorite is True
    assert row.is_pinned is True


def test_normalize_row_defaults():
    row = normalize_import_row({"title": "Docs", "link": "https://docs.example.com", "Category": "A|B"}, 0)

    assert row.name == "Docs"
    assert row.pricing == "freemium"
    assert [ref.name for ref in row.categories] == ["A", "B"]
    assert row.tags == []
    assert row.is_favorite is False
    assert row.is_pinned is False
    assert row.created_at is None
