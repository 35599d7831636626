"""LLM tasks of the market pipeline, each with a typed JSON result.

Prompts are deliberately short; what matters to the pipeline is the shape of
the answer, which is validated here so stage workers only ever see typed
results. A reply that does not fit its model raises ``LLMError`` and the
delivery is retried by the broker.
"""

from __future__ import annotations

import json
from typing import Any, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from models.messages import ResolutionRules
from services.ai.llm_provider import LLMClient, LLMError, LLMResponse


class _Result(BaseModel):
    model_config = ConfigDict(extra="ignore")


class ExtractedEntity(_Result):
    name: str
    type: str = "event"


class ExtractionResult(_Result):
    is_market_worthy: bool
    event_type: str = "misc"
    category: str = "misc"
    entities: list[ExtractedEntity] = Field(default_factory=list)
    confidence: float = Field(0.0, ge=0.0, le=1.0)
    reasoning: str = ""


class GeneratedMarket(_Result):
    title: str = Field(..., min_length=1, max_length=256)
    description: str = ""
    category: str = "misc"
    resolution: dict[str, Any]
    confidence_score: float = Field(..., ge=0.0, le=1.0)


class ValidationResult(_Result):
    has_ambiguity: bool = False
    ambiguity_details: list[str] = Field(default_factory=list)
    is_deterministic: bool = True
    determinism_issues: list[str] = Field(default_factory=list)
    is_fair: bool = True
    fairness_issues: list[str] = Field(default_factory=list)
    is_forbidden: bool = False
    forbidden_reason: list[str] = Field(default_factory=list)
    overall_valid: bool
    recommendation: Literal["approved", "rejected", "needs_human"]
    suggested_improvements: list[str] = Field(default_factory=list)


class ConditionResult(_Result):
    condition: str
    met: bool
    evidence: str = ""


class ExclusionResult(_Result):
    condition: str
    triggered: bool
    evidence: Optional[str] = None


class ResolutionVerdict(_Result):
    must_meet_all_results: list[ConditionResult] = Field(default_factory=list)
    must_not_count_results: list[ExclusionResult] = Field(default_factory=list)
    all_conditions_met: bool = False
    any_exclusions_triggered: bool = False
    final_result: Literal["YES", "NO"]
    reasoning: str = ""


class DisputeVerdict(_Result):
    decision: Literal["upheld", "overturned", "escalate"]
    reasoning: str = ""
    original_resolution_correct: bool = True
    new_evidence_relevant: bool = False
    new_evidence_analysis: str = ""
    new_result: Optional[Literal["YES", "NO"]] = None
    confidence: float = Field(0.0, ge=0.0, le=1.0)
    escalation_reason: Optional[str] = None


EXTRACTION_PROMPT = """You are an entity extractor for prediction markets.
Decide whether the news item describes a specific, verifiable event with a
deadline that official sources can settle as YES or NO.
Answer with: is_market_worthy, event_type, category, entities[{name,type}],
confidence (0-1), reasoning."""

GENERATION_PROMPT = """You convert news events or user proposals into
machine-resolvable binary prediction markets.
Answer with: title (max 64 chars), description, category (one of {categories}),
resolution {{type: "binary", exact_question, criteria {{must_meet_all[],
must_not_count[], allowed_sources[{{name,url,method,condition}}]}}, expiry (ISO 8601)}},
confidence_score (0-1). Only official sources; no markets about violence,
death or illegal activity."""

VALIDATION_PROMPT = """You validate prediction market definitions for
ambiguity, deterministic resolvability, fairness and safety.
Answer with: has_ambiguity, ambiguity_details[], is_deterministic,
determinism_issues[], is_fair, fairness_issues[], is_forbidden,
forbidden_reason[], overall_valid, recommendation (approved|rejected|needs_human),
suggested_improvements[]."""

RESOLUTION_PROMPT = """You resolve a binary prediction market strictly from
the supplied evidence. Check every must_meet_all condition and every
must_not_count exclusion.
Answer with: must_meet_all_results[{condition,met,evidence}],
must_not_count_results[{condition,triggered,evidence}], all_conditions_met,
any_exclusions_triggered, final_result (YES|NO), reasoning."""

DISPUTE_PROMPT = """You review a user dispute of a market resolution.
Compare the original evaluation with the re-fetched sources and the evidence
the user supplied.
Answer with: decision (upheld|overturned|escalate), reasoning,
original_resolution_correct, new_evidence_relevant, new_evidence_analysis,
new_result (YES|NO|null), confidence (0-1), escalation_reason."""


async def _ask(
    llm: LLMClient, model: str, system: str, user: str, result_type: type[_Result]
):
    data, response = await llm.complete_json(system=system, user=user, model=model)
    try:
        return result_type.model_validate(data), response
    except ValidationError as exc:
        raise LLMError(f"LLM returned an unexpected {result_type.__name__}: {exc}") from exc


async def extract_candidate(
    llm: LLMClient, model: str, *, title: str, content: str
) -> tuple[ExtractionResult, LLMResponse]:
    user = f"TITLE: {title}\n\nCONTENT: {content[:2000]}"
    return await _ask(llm, model, EXTRACTION_PROMPT, user, ExtractionResult)


async def generate_market(
    llm: LLMClient,
    model: str,
    *,
    categories: list[str],
    relevant_text: str,
    entities: list[str],
    event_type: str,
    category_hint: str,
) -> tuple[GeneratedMarket, LLMResponse]:
    user = json.dumps(
        {
            "entities": entities,
            "event_type": event_type,
            "category": category_hint,
            "relevant_text": relevant_text,
        },
        indent=2,
    )
    system = GENERATION_PROMPT.format(categories=", ".join(categories))
    generated, response = await _ask(llm, model, system, user, GeneratedMarket)
    try:
        ResolutionRules.from_stored(generated.resolution)
    except ValidationError as exc:
        raise LLMError(f"Generated resolution rules are malformed: {exc}") from exc
    return generated, response


async def validate_market(
    llm: LLMClient, model: str, market: dict[str, Any]
) -> tuple[ValidationResult, LLMResponse]:
    user = "Please validate this market definition:\n\n" + json.dumps(market, indent=2, default=str)
    return await _ask(llm, model, VALIDATION_PROMPT, user, ValidationResult)


async def resolve_market(
    llm: LLMClient,
    model: str,
    *,
    title: str,
    rules: ResolutionRules,
    evidence: str,
    fetched_at: str,
) -> tuple[ResolutionVerdict, LLMResponse]:
    user = json.dumps(
        {
            "market_title": title,
            "exact_question": rules.exact_question,
            "must_meet_all": rules.must_meet_all,
            "must_not_count": rules.must_not_count,
            "allowed_sources": [s.model_dump() for s in rules.allowed_sources],
            "fetch_time": fetched_at,
        },
        indent=2,
    )
    user += "\n\nEVIDENCE:\n" + evidence
    return await _ask(llm, model, RESOLUTION_PROMPT, user, ResolutionVerdict)


async def review_dispute(
    llm: LLMClient,
    model: str,
    *,
    title: str,
    rules: ResolutionRules,
    original: dict[str, Any],
    dispute_reason: str,
    evidence_urls: list[str],
    evidence: str,
) -> tuple[DisputeVerdict, LLMResponse]:
    user = json.dumps(
        {
            "market_title": title,
            "exact_question": rules.exact_question,
            "must_meet_all": rules.must_meet_all,
            "must_not_count": rules.must_not_count,
            "original_resolution": original,
            "dispute_reason": dispute_reason,
            "dispute_evidence_urls": evidence_urls,
        },
        indent=2,
        default=str,
    )
    user += "\n\nRE-FETCHED EVIDENCE:\n" + evidence
    return await _ask(llm, model, DISPUTE_PROMPT, user, DisputeVerdict)
