from __future__ import annotations

import pytest

from credo.analysis import (
    PipelineValidationError,
    build_synthesis_prompt,
    fallback_analysis,
    synthesize_deal,
)
from credo.llm import LLMCallError
from credo.schemas import UNKNOWN, DealAnalysis, FoundingMember

from conftest import FakeLLM


def _analysis(**overrides) -> DealAnalysis:
    data = {
        "deal_name": "Acme Robotics",
        "deal_description": "Robots for vertical farms.",
        "deal_founding_team": [{"name": "Ada", "role": "CEO", "description": "Ex-Boston Dynamics"}],
    }
    data.update(overrides)
    return DealAnalysis.model_validate(data)


class TestSynthesisPrompt:
    def test_without_free_text(self):
        assert "Additional context" not in build_synthesis_prompt(None)

    def test_with_free_text(self):
        prompt = build_synthesis_prompt("  Seed round, 2M  ")
        assert prompt.endswith("Additional context provided: Seed round, 2M")


class TestDealAnalysisSchema:
    def test_blank_fields_become_unknown(self):
        result = _analysis(deal_name="  ", deal_description=None,
                           deal_founding_team=[{"name": "", "role": None, "description": "x"}])
        assert result.deal_name == UNKNOWN
        assert result.deal_description == UNKNOWN
        assert result.deal_founding_team[0].name == UNKNOWN
        assert result.deal_founding_team[0].role == UNKNOWN

    def test_empty_team_becomes_one_unknown_member(self):
        result = _analysis(deal_founding_team=[])
        assert result.deal_founding_team == [FoundingMember(name=UNKNOWN, role=UNKNOWN, description=UNKNOWN)]


class TestSynthesizeDeal:
    @pytest.mark.asyncio
    async def test_no_input_is_validation_error(self):
        llm = FakeLLM(analysis=_analysis())
        with pytest.raises(PipelineValidationError):
            await synthesize_deal(llm, [], "   ")
        llm.parse.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_files_are_attached(self):
        llm = FakeLLM(analysis=_analysis())
        result = await synthesize_deal(llm, ["f-1", "", "f-2"], None)

        assert result.deal_name == "Acme Robotics"
        call = llm.parse.await_args
        assert call.kwargs["file_ids"] == ["f-1", "f-2"]
        assert "web_search" not in call.kwargs

    @pytest.mark.asyncio
    async def test_free_text_only(self):
        llm = FakeLLM(analysis=_analysis())
        await synthesize_deal(llm, [], "We build robots")

        call = llm.parse.await_args
        assert call.kwargs["file_ids"] == []
        assert "We build robots" in call.args[1]

    @pytest.mark.asyncio
    async def test_provider_failure_falls_back(self):
        llm = FakeLLM(analysis=LLMCallError("boom", retryable=True))
        result = await synthesize_deal(llm, ["f-1"], None)
        assert result == fallback_analysis()
        assert result.deal_name == UNKNOWN
        assert result.deal_description == UNKNOWN
        assert len(result.deal_founding_team) == 1
