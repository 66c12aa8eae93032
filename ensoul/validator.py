# ensoul/validator.py
from dataclasses import dataclass
from typing import Any, List

from ensoul.errors import ValidationFailed
from ensoul.profile import Dimension
from ensoul.settings import Tuning


@dataclass(frozen=True)
class FragmentDraft:
    dimension: Dimension
    content: str


def validate_batch(items: Any, tuning: Tuning | None = None) -> List[FragmentDraft]:
    """
    Check a batch of {dimension, content} items without touching any state.

    Returns the fully valid batch or raises ValidationFailed naming the first
    violation. Checks run in this order: shape, batch size, dimension
    membership, intra-batch uniqueness, content length.
    """
    tuning = tuning or Tuning()

    if not isinstance(items, list):
        raise ValidationFailed("fragments must be a list of {dimension, content} objects", code="invalid_shape")

    for idx, item in enumerate(items):
        if not isinstance(item, dict):
            raise ValidationFailed(f"fragments[{idx}] must be an object", code="invalid_shape")
        if not isinstance(item.get("dimension"), str) or not isinstance(item.get("content"), str):
            raise ValidationFailed(
                f"fragments[{idx}] requires string fields 'dimension' and 'content'",
                code="invalid_shape",
            )

    if not tuning.min_batch_size <= len(items) <= tuning.max_batch_size:
        raise ValidationFailed(
            f"a batch must contain between {tuning.min_batch_size} and {tuning.max_batch_size} fragments, got {len(items)}",
            code="batch_size",
        )

    dims: List[Dimension] = []
    for idx, item in enumerate(items):
        dim = Dimension.parse(item["dimension"].strip().lower())
        if dim is None:
            raise ValidationFailed(
                f"fragments[{idx}]: unknown dimension '{item['dimension']}'",
                code="unknown_dimension",
                valid_dimensions=Dimension.values(),
            )
        dims.append(dim)

    seen: set[Dimension] = set()
    for idx, dim in enumerate(dims):
        if dim in seen:
            raise ValidationFailed(
                f"fragments[{idx}]: dimension '{dim.value}' appears more than once in the batch",
                code="duplicate_dimension",
            )
        seen.add(dim)

    drafts: List[FragmentDraft] = []
    for idx, (item, dim) in enumerate(zip(items, dims)):
        content = item["content"].strip()
        if not tuning.min_content_length <= len(content) <= tuning.max_content_length:
            raise ValidationFailed(
                f"fragments[{idx}]: content must be {tuning.min_content_length}-{tuning.max_content_length} "
                f"characters, got {len(content)}",
                code="content_length",
            )
        drafts.append(FragmentDraft(dimension=dim, content=content))

    return drafts
