from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


class Vibe(str, Enum):
    chill = "chill"
    adventurous = "adventurous"
    intellectual = "intellectual"
    social = "social"
    creative = "creative"
    romantic = "romantic"
    ambitious = "ambitious"
    unspecified = "unspecified"


class HardFilters(BaseModel):
    """Non-negotiable constraints. Candidates that fail any of them are excluded."""
    model_config = ConfigDict(frozen=True)

    age_min: Optional[int] = Field(None, ge=16, le=99)
    age_max: Optional[int] = Field(None, ge=16, le=99)
    university: Optional[str] = None
    course: Optional[str] = None
    same_course: bool = False
    gender: list[str] = []
    year_of_study: list[int] = []
    religion: Optional[str] = None
    smoking: Optional[str] = None
    drinking: Optional[str] = None

    @field_validator("religion", "smoking", "drinking")
    @classmethod
    def _lower_text(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return None
        return str(v).strip().lower() or None

    @field_validator("gender")
    @classmethod
    def _lower_genders(cls, v: list[str]) -> list[str]:
        return sorted({g.strip().lower() for g in v if g and g.strip()})

    @field_validator("year_of_study")
    @classmethod
    def _sorted_years(cls, v: list[int]) -> list[int]:
        return sorted({y for y in v if 1 <= y <= 7})

    @model_validator(mode="after")
    def _ordered_age_range(self) -> "HardFilters":
        if self.age_min is not None and self.age_max is not None and self.age_min > self.age_max:
            raise ValueError("age_min must not exceed age_max")
        return self

    def is_empty(self) -> bool:
        return self == HardFilters()

    def set_fields(self) -> dict:
        """Only the constraints that were actually specified."""
        return self.model_dump(exclude_defaults=True)


class Intent(BaseModel):
    """Structured reading of what a user is looking for. Immutable once built."""
    model_config = ConfigDict(frozen=True)

    raw_query: str
    semantic_query: str = Field(min_length=1)
    vibe: Vibe = Vibe.unspecified
    hard_filters: HardFilters = HardFilters()
    traits: list[str] = []
    interests: list[str] = []
    # Soft preferences: scored by the ranker, never used to exclude
    looking_for: Optional[str] = None
    communication_style: Optional[str] = None
    love_language: Optional[str] = None
    confidence: float = Field(0.5, ge=0.0, le=1.0)
    is_refinement: bool = False

    @field_validator("looking_for", "communication_style", "love_language")
    @classmethod
    def _blank_is_none(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return None
        return str(v).strip().lower() or None

    @field_validator("traits", "interests")
    @classmethod
    def _dedupe_terms(cls, v: list[str]) -> list[str]:
        seen: list[str] = []
        for term in v:
            term = term.strip().lower()
            if term and term not in seen:
                seen.append(term)
        return seen

    def content_key(self) -> str:
        return f"{self.semantic_query}|{self.vibe.value}"
