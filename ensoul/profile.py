# ensoul/profile.py
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Dict, Mapping


class Dimension(str, Enum):
    """The closed set of soul dimensions."""
    PERSONALITY = "personality"
    KNOWLEDGE = "knowledge"
    STANCE = "stance"
    STYLE = "style"
    RELATIONSHIP = "relationship"
    TIMELINE = "timeline"

    @classmethod
    def values(cls) -> list[str]:
        return [d.value for d in cls]

    @classmethod
    def parse(cls, raw: Any) -> "Dimension | None":
        try:
            return cls(raw)
        except ValueError:
            return None


MAX_SCORE = 100


@dataclass(frozen=True)
class DimensionEntry:
    score: int = 0
    summary: str = ""

    @classmethod
    def from_raw(cls, raw: Any) -> "DimensionEntry":
        if not isinstance(raw, Mapping):
            return cls()
        try:
            score = int(round(float(raw.get("score", 0) or 0)))
        except (TypeError, ValueError):
            score = 0
        summary = raw.get("summary") or ""
        return cls(score=clamp_score(score), summary=str(summary).strip())


def clamp_score(score: int) -> int:
    return max(0, min(MAX_SCORE, int(score)))


@dataclass(frozen=True)
class DimensionProfile:
    """
    One (score, summary) entry per dimension. Stored on Soul.dimensions as a
    plain JSON object keyed by dimension value.
    """
    personality: DimensionEntry = field(default_factory=DimensionEntry)
    knowledge: DimensionEntry = field(default_factory=DimensionEntry)
    stance: DimensionEntry = field(default_factory=DimensionEntry)
    style: DimensionEntry = field(default_factory=DimensionEntry)
    relationship: DimensionEntry = field(default_factory=DimensionEntry)
    timeline: DimensionEntry = field(default_factory=DimensionEntry)

    def get(self, dim: Dimension) -> DimensionEntry:
        return getattr(self, dim.value)

    def with_entry(self, dim: Dimension, entry: DimensionEntry) -> "DimensionProfile":
        return replace(self, **{dim.value: entry})

    def to_json(self) -> Dict[str, Dict[str, Any]]:
        return {
            d.value: {"score": self.get(d).score, "summary": self.get(d).summary}
            for d in Dimension
        }

    @classmethod
    def from_json(cls, raw: Any) -> "DimensionProfile":
        raw = raw if isinstance(raw, Mapping) else {}
        return cls(**{d.value: DimensionEntry.from_raw(raw.get(d.value)) for d in Dimension})

    def merged_with(self, raw: Any) -> "DimensionProfile":
        """Entries present in raw replace ours; absent ones are kept."""
        raw = raw if isinstance(raw, Mapping) else {}
        out = self
        for d in Dimension:
            if isinstance(raw.get(d.value), Mapping):
                out = out.with_entry(d, DimensionEntry.from_raw(raw[d.value]))
        return out
