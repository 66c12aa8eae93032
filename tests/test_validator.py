import pytest

from ensoul.errors import ValidationFailed
from ensoul.profile import Dimension
from ensoul.validator import validate_batch


def item(dim, n=60, pad=""):
    return {"dimension": dim, "content": pad + "x" * n + pad}


def codes_of(items):
    with pytest.raises(ValidationFailed) as exc:
        validate_batch(items)
    return exc.value.code, exc.value


def test_valid_batch_is_normalised():
    drafts = validate_batch([item(" Personality "), item("KNOWLEDGE"), item("stance", pad="   ")])
    assert [d.dimension for d in drafts] == [Dimension.PERSONALITY, Dimension.KNOWLEDGE, Dimension.STANCE]
    assert drafts[2].content == "x" * 60


@pytest.mark.parametrize(
    "items",
    [
        "not a list",
        {"dimension": "style", "content": "x" * 60},
        [item("style"), "oops", item("stance")],
        [item("style"), {"dimension": "knowledge"}, item("stance")],
        [item("style"), {"dimension": 3, "content": "x" * 60}, item("stance")],
    ],
)
def test_shape_errors(items):
    code, _ = codes_of(items)
    assert code == "invalid_shape"


def test_shape_is_checked_before_size():
    code, _ = codes_of([1, 2])
    assert code == "invalid_shape"


@pytest.mark.parametrize("count", [0, 2, 7])
def test_batch_size_bounds(count):
    dims = Dimension.values() + ["personality"]
    code, _ = codes_of([item(d) for d in dims[:count]])
    assert code == "batch_size"


def test_six_items_is_the_upper_bound():
    assert len(validate_batch([item(d) for d in Dimension.values()])) == 6


def test_unknown_dimension_lists_valid_values():
    code, err = codes_of([item("personality"), item("vibes"), item("stance")])
    assert code == "unknown_dimension"
    assert err.to_body()["valid_dimensions"] == Dimension.values()


def test_duplicate_dimension_is_case_insensitive():
    code, _ = codes_of([item("style"), item("Style"), item("stance")])
    assert code == "duplicate_dimension"


def test_unknown_dimension_wins_over_content_length():
    code, _ = codes_of([item("personality", n=5), item("vibes"), item("stance")])
    assert code == "unknown_dimension"


def test_content_length_is_measured_after_trimming():
    code, _ = codes_of([item("personality", n=49, pad="      "), item("knowledge"), item("stance")])
    assert code == "content_length"


def test_content_length_bounds_are_inclusive():
    drafts = validate_batch([item("personality", n=50), item("knowledge", n=5000), item("stance")])
    assert len(drafts) == 3
    code, _ = codes_of([item("personality", n=5001), item("knowledge"), item("stance")])
    assert code == "content_length"


def test_content_length_counts_code_points():
    # 50 non-ASCII code points are more than 50 bytes but still valid
    drafts = validate_batch([{"dimension": "style", "content": "é" * 50}, item("knowledge"), item("stance")])
    assert drafts[0].content == "é" * 50
