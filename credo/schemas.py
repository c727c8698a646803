"""Pydantic schemas: structured AI outputs, pipeline payloads and API responses."""
from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, Field, field_validator

from credo.categories import EvaluationCategory

UNKNOWN = "Unknown"
UNCERTAIN = "UNCERTAIN"


def _or_unknown(value: Any) -> str:
    text = str(value).strip() if value is not None else ""
    return text or UNKNOWN


# ---------------------------------------------------------------------------
# Structured AI outputs (used as response formats, so every field is required)
# ---------------------------------------------------------------------------


class FoundingMember(BaseModel):
    name: str = Field(description="Founder or team member name, or 'Unknown' if not found")
    role: str = Field(description="Their role/title, or 'Unknown' if not found")
    description: str = Field(
        description="Brief description of their background and expertise, or 'Unknown' if not found",
    )

    @field_validator("name", "role", "description", mode="before")
    @classmethod
    def blank_is_unknown(cls, v: Any) -> str:
        return _or_unknown(v)


class DealAnalysis(BaseModel):
    deal_name: str = Field(description="The company or deal name, or 'Unknown' if not found")
    deal_description: str = Field(
        description=(
            "A comprehensive description of the company, business model, and value "
            "proposition, or 'Unknown' if not found"
        ),
    )
    deal_founding_team: list[FoundingMember] = Field(description="Array of founding team members")

    @field_validator("deal_name", "deal_description", mode="before")
    @classmethod
    def blank_is_unknown(cls, v: Any) -> str:
        return _or_unknown(v)

    @field_validator("deal_founding_team")
    @classmethod
    def team_never_empty(cls, v: list[FoundingMember]) -> list[FoundingMember]:
        return v or [FoundingMember(name=UNKNOWN, role=UNKNOWN, description=UNKNOWN)]


class CompetitorProfile(BaseModel):
    name: str = Field(description="Competitor name")
    description: str | None = Field(description="Short description of what they do")
    website: str | None = Field(description="Official website URL if known")
    relevance: str | None = Field(description="Why this company competes with the target in this category")


class CompetitorList(BaseModel):
    competitors: list[CompetitorProfile] = Field(description="Array of competitor profiles")


class CompetitorEvaluation(BaseModel):
    score: float | Literal["UNCERTAIN"]
    competitor_category: EvaluationCategory
    short_justification: str
    detailed_justification: str


# ---------------------------------------------------------------------------
# Pipeline payloads
# ---------------------------------------------------------------------------


class SourceFile(BaseModel):
    """A document already in blob storage, ready for ingestion."""
    url: str
    original_filename: str
    mime_type: str = "application/pdf"
    size: int = 0


# ---------------------------------------------------------------------------
# API requests / responses
# ---------------------------------------------------------------------------


class DealCreate(BaseModel):
    company_name: str
    description: str = ""


class DealFileOut(BaseModel):
    id: str
    filename: str
    original_name: str
    mime_type: str
    size: int
    url: str
    ai_file_id: str | None = None


class CompetitorOut(BaseModel):
    id: str
    name: str
    description: str | None = None
    website: str | None = None
    relevance: str | None = None
    competitor_source: str
    score: str | None = None
    competitor_category: str | None = None
    short_justification: str | None = None
    detailed_justification: str | None = None


class DealOut(BaseModel):
    id: str
    company_name: str
    description: str
    uploaded_text: str
    founding_team: list[FoundingMember] = []
    owner_id: str
    created_at: str | None = None
    updated_at: str | None = None
    files: list[DealFileOut] = []


class DealDetail(DealOut):
    competitors: list[CompetitorOut] = []


class RunOut(BaseModel):
    id: str
    deal_id: str
    status: str
    label: str
    progress: int
    output: dict[str, Any] | None = None
    error: str | None = None
    created_at: str | None = None
    finished_at: str | None = None


class UploadResponse(BaseModel):
    success: bool
    deal: DealDetail
    run_id: str


class RunTokenOut(BaseModel):
    run_id: str
    token: str


class CategoryOut(BaseModel):
    slug: str
    name: str
    description: str


class PersonOut(BaseModel):
    id: str
    leadspicker_id: int
    full_name: str | None = None
    email: str | None = None
    position: str | None = None
    linkedin_url: str | None = None
    company_name: str | None = None
    company_website_url: str | None = None
    country: str | None = None
