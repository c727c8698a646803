from __future__ import annotations

import json
import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from mcp.server.fastmcp import FastMCP
from sqlalchemy import select

from credo import services
from credo.categories import ALL_CATEGORIES
from credo.config import get_settings
from credo.db import init_db, session_scope
from credo.models import Deal, PipelineRun

log = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def credo_lifespan(server: FastMCP) -> AsyncIterator[None]:
    init_db(get_settings().db_path)
    yield


mcp = FastMCP(
    "Credo",
    instructions=(
        "Credo holds venture deals analysed from pitch decks: company profile, founding "
        "team and scored competitors. Start with list_deals(owner_id) to browse, then "
        "get_deal(deal_id) for full details, and get_run(run_id) to check an analysis."
    ),
    lifespan=credo_lifespan,
    json_response=True,
)


# ---------------------------------------------------------------------------
# Resource
# ---------------------------------------------------------------------------


@mcp.resource("credo://overview")
def credo_overview() -> str:
    """Overview of Credo: data model, analysis workflow and competitor categories."""
    return json.dumps({
        "system": "Credo: deal analysis for venture investors",
        "data_model": {
            "deal": "A company under evaluation: name, description, founding team, uploaded files.",
            "competitor": "A rival found by discovery in one category, later scored 0-10 or UNCERTAIN.",
            "run": "One analysis of a deal: status, progress (0-100) and the final deal snapshot.",
        },
        "workflow": [
            "1. list_deals(owner_id) to see a user's deals.",
            "2. get_deal(deal_id) for the profile, files and scored competitors.",
            "3. get_run(run_id) to follow or inspect an analysis run.",
        ],
        "run_states": [
            "initializing", "ingesting", "synthesizing+discovering",
            "evaluating", "finalizing", "completed", "failed",
        ],
        "competitor_categories": [c.slug.value for c in ALL_CATEGORIES],
        "evaluation_categories": ["early-stage", "well-funded", "incumbent"],
    }, indent=2)


# ---------------------------------------------------------------------------
# Tools
# ---------------------------------------------------------------------------


@mcp.tool()
def list_deals(owner_id: str) -> list[dict]:
    """List a user's deals (soft-deleted ones excluded), newest first."""
    with session_scope() as session:
        return [services.deal_summary(d) for d in services.list_deals(session, owner_id)]


@mcp.tool()
def get_deal(deal_id: str) -> dict:
    """Get a deal with its files and competitors, including scores and justifications."""
    with session_scope() as session:
        deal = session.execute(
            select(Deal).where(Deal.id == deal_id, Deal.deleted.is_(False))
        ).scalars().first()
        if deal is None:
            return {"error": f"Deal {deal_id} not found"}
        return services.deal_detail(deal)


@mcp.tool()
def get_run(run_id: str) -> dict:
    """Get the status, progress, label and (when completed) the output of an analysis run."""
    with session_scope() as session:
        run = session.get(PipelineRun, run_id)
        if run is None:
            return {"error": f"Run {run_id} not found"}
        return services.run_summary(run)


@mcp.tool()
def list_competitor_categories() -> list[dict]:
    """The categories searched during competitor discovery."""
    return [{"slug": c.slug.value, "name": c.name, "description": c.description} for c in ALL_CATEGORIES]


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------


def main():
    """Run the Credo MCP server over stdio."""
    logging.basicConfig(level=get_settings().log_level)
    mcp.run()


if __name__ == "__main__":
    main()
