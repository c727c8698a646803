"""Competitor categories: discovery segments and evaluation buckets."""
from __future__ import annotations

from dataclasses import dataclass
from enum import Enum


class CompetitorCategory(str, Enum):
    """Segments searched by the discovery fan-out, one branch each."""
    YC_COMPANIES = "yc-companies"
    OPEN_SOURCE = "open-source"
    EARLY_STAGE_VC = "early-stage-vc"
    WELL_FUNDED_VC = "well-funded-vc"
    INCUMBENTS = "incumbents"


class EvaluationCategory(str, Enum):
    """Bucket assigned to a competitor by the evaluation step."""
    EARLY_STAGE = "early-stage"
    WELL_FUNDED = "well-funded"
    INCUMBENT = "incumbent"


@dataclass(frozen=True)
class CategoryConfig:
    slug: CompetitorCategory
    name: str
    description: str


CATEGORY_CONFIGS: dict[CompetitorCategory, CategoryConfig] = {
    CompetitorCategory.YC_COMPANIES: CategoryConfig(
        slug=CompetitorCategory.YC_COMPANIES,
        name="Y Combinator Companies",
        description=(
            "Current or former Y Combinator portfolio companies operating in the same or "
            "adjacent space, typically early to growth stage startups with YC backing"
        ),
    ),
    CompetitorCategory.OPEN_SOURCE: CategoryConfig(
        slug=CompetitorCategory.OPEN_SOURCE,
        name="Open Source Solutions",
        description=(
            "Open source projects, tools, libraries, or platforms that provide similar "
            "functionality or solve similar problems, regardless of commercial backing"
        ),
    ),
    CompetitorCategory.EARLY_STAGE_VC: CategoryConfig(
        slug=CompetitorCategory.EARLY_STAGE_VC,
        name="Early Stage VC-Backed Companies",
        description=(
            "Early-stage startups that have raised venture capital funding, typically "
            "pre-Series A to Series A, with less than $10M total raised"
        ),
    ),
    CompetitorCategory.WELL_FUNDED_VC: CategoryConfig(
        slug=CompetitorCategory.WELL_FUNDED_VC,
        name="Well-Funded VC-Backed Companies",
        description=(
            "Well-funded startups that have raised significant venture capital, typically "
            "Series B and beyond, with $10M+ raised and established market presence"
        ),
    ),
    CompetitorCategory.INCUMBENTS: CategoryConfig(
        slug=CompetitorCategory.INCUMBENTS,
        name="Incumbent Companies",
        description=(
            "Large established enterprises, public companies, or market leaders "
            "(e.g., Microsoft, Google, IBM) with existing products or divisions in this space"
        ),
    ),
}

ALL_CATEGORIES: tuple[CategoryConfig, ...] = tuple(CATEGORY_CONFIGS.values())
