"""
Text Analysis Service
Structured clinical judgments from the LLM with deterministic fallbacks

Every public call either returns a schema-validated result or its documented
fallback (``is_fallback=True``). Timeouts, transport errors, non-JSON output
and schema mismatches never reach the caller as exceptions.
"""

import asyncio
import json
import logging
from typing import Any, Dict, List, Literal, Optional, Protocol, Sequence, Type, TypeVar

import requests
from pydantic import BaseModel, ConfigDict, Field, field_validator

from config import settings
from services.llm_service import LLMService, llm_service


logger = logging.getLogger(__name__)


# ==================== PROMPTS ====================

SIDE_EFFECT_SYSTEM_PROMPT = (
    "You are a medical AI assistant specializing in drug side effect analysis. "
    "Provide accurate, helpful assessments while being cautious about medical advice. "
    "Always recommend consulting healthcare providers for serious concerns."
)

INTERACTION_SYSTEM_PROMPT = (
    "You are a clinical pharmacist AI assistant specializing in drug interaction analysis. "
    "Provide accurate assessments of potential drug interactions based on pharmacological "
    "principles. Be conservative in your assessments."
)

INSIGHTS_SYSTEM_PROMPT = (
    "You are a medical data analyst AI assistant. Analyze aggregated drug side effect "
    "statistics to identify concerning patterns and safety issues. Focus on actionable insights."
)

SIDE_EFFECT_SCHEMA_HINT = {
    "concernLevel": "low | moderate | high | critical",
    "isConcerning": False,
    "urgency": "routine | soon | urgent | emergency",
    "recommendations": ["consult doctor"],
    "suggestedActions": ["monitor symptoms"],
    "reasoning": "analysis summary",
}

INTERACTION_SCHEMA_HINT = {
    "hasInteraction": False,
    "severity": "minor | moderate | major | contraindicated",
    "description": "no significant interaction detected",
    "clinicalEffect": "minimal clinical significance",
    "management": "monitor patient",
    "confidence": 0.5,
}

INSIGHTS_SCHEMA_HINT = {
    "patterns": ["pattern description"],
    "alerts": ["safety concern"],
    "summary": "overall summary",
}


# ==================== RESULT SCHEMAS ====================

def _lower(value: Any) -> Any:
    return value.strip().lower() if isinstance(value, str) else value


class SideEffectAssessment(BaseModel):
    """Concern judgment for a single side-effect report"""
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    concern_level: Literal["low", "moderate", "high", "critical"] = Field(alias="concernLevel")
    is_concerning: bool = Field(alias="isConcerning")
    urgency: Literal["routine", "soon", "urgent", "emergency"] = "routine"
    recommendations: List[str] = Field(default_factory=list)
    suggested_actions: List[str] = Field(default_factory=list, alias="suggestedActions")
    reasoning: str = ""
    is_fallback: bool = False

    @field_validator("concern_level", "urgency", mode="before")
    @classmethod
    def _normalize_levels(cls, value: Any) -> Any:
        return _lower(value)


class InteractionJudgment(BaseModel):
    """Probabilistic judgment about an interaction between two drugs"""
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    has_interaction: bool = Field(alias="hasInteraction")
    severity: Literal["minor", "moderate", "major", "contraindicated"]
    description: str = ""
    clinical_effect: Optional[str] = Field(default=None, alias="clinicalEffect")
    management: Optional[str] = None
    confidence: float = Field(ge=0.0, le=1.0)
    is_fallback: bool = False

    @field_validator("severity", mode="before")
    @classmethod
    def _normalize_severity(cls, value: Any) -> Any:
        value = _lower(value)
        return "contraindicated" if value == "severe" else value


class InsightsResult(BaseModel):
    """Narrative insights for the analytics report"""
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    patterns: List[str] = Field(default_factory=list)
    alerts: List[str] = Field(default_factory=list)
    summary: str = ""
    is_fallback: bool = False


class TextAnalysisClient(Protocol):
    """Interface the detectors depend on"""

    async def analyze_side_effect(
        self,
        description: str,
        severity: str,
        impact_on_daily_life: Optional[str] = None,
        drug_name: str = "",
        patient_age: Optional[int] = None,
        other_medications: Optional[Sequence[str]] = None
    ) -> SideEffectAssessment: ...

    async def analyze_drug_interaction(
        self,
        drug1: Dict[str, Any],
        drug2: Dict[str, Any],
        descriptions: Sequence[str]
    ) -> InteractionJudgment: ...

    async def generate_insights(
        self,
        drug_stats: List[Dict[str, Any]],
        window_days: int
    ) -> InsightsResult: ...


# ==================== FALLBACKS ====================

def fallback_side_effect_assessment(
    severity: str,
    impact_on_daily_life: Optional[str] = None,
    reasoning: str = "Basic assessment without AI analysis"
) -> SideEffectAssessment:
    """Conservative judgment used whenever the LLM cannot answer"""
    severe = severity == "severe"
    return SideEffectAssessment(
        concern_level="moderate",
        is_concerning=severe or impact_on_daily_life == "severe",
        urgency="urgent" if severe else "routine",
        recommendations=["Consult your healthcare provider"],
        suggested_actions=["Monitor symptoms"],
        reasoning=reasoning,
        is_fallback=True,
    )


def fallback_interaction_judgment(reason: str) -> InteractionJudgment:
    return InteractionJudgment(
        has_interaction=False,
        severity="minor",
        description=reason,
        management="Consult healthcare provider",
        confidence=0.0,
        is_fallback=True,
    )


def fallback_insights() -> InsightsResult:
    return InsightsResult(patterns=[], alerts=[], summary="", is_fallback=True)


ModelT = TypeVar("ModelT", bound=BaseModel)

# Failures that degrade to a fallback instead of propagating
_RECOVERABLE_ERRORS = (
    asyncio.TimeoutError,
    requests.RequestException,
    RuntimeError,
    ValueError,  # includes JSON decode and schema validation errors
    TypeError,
    AttributeError,
)


class TextAnalysisService:
    """
    Text-analysis client backed by the LLM transport
    """

    def __init__(
        self,
        llm: Optional[LLMService] = None,
        timeout_seconds: Optional[float] = None
    ):
        self.llm = llm or llm_service
        self.timeout_seconds = timeout_seconds or settings.LLM_TIMEOUT_SECONDS

    async def _ask(
        self,
        prompt: str,
        system_prompt: str,
        schema_hint: Dict[str, Any],
        result_model: Type[ModelT],
        max_tokens: Optional[int] = None
    ) -> ModelT:
        raw = await asyncio.wait_for(
            self.llm.generate_json(
                prompt,
                schema_hint=schema_hint,
                system_prompt=system_prompt,
                max_tokens=max_tokens,
            ),
            timeout=self.timeout_seconds,
        )
        result = result_model.model_validate(raw)
        return result.model_copy(update={"is_fallback": False})

    async def analyze_side_effect(
        self,
        description: str,
        severity: str,
        impact_on_daily_life: Optional[str] = None,
        drug_name: str = "",
        patient_age: Optional[int] = None,
        other_medications: Optional[Sequence[str]] = None
    ) -> SideEffectAssessment:
        """
        Assess how concerning a reported side effect is

        Returns:
            SideEffectAssessment, or the severity-based fallback
        """
        if not self.llm.is_configured:
            return fallback_side_effect_assessment(severity, impact_on_daily_life)

        prompt = f"""Analyze this side effect:

Side Effect: {description}
Severity: {severity}
Impact on daily life: {impact_on_daily_life or 'Not specified'}
Drug: {drug_name}
Age: {patient_age or 'Not specified'}
Other Meds: {', '.join(other_medications) if other_medications else 'None'}"""

        try:
            return await self._ask(
                prompt, SIDE_EFFECT_SYSTEM_PROMPT, SIDE_EFFECT_SCHEMA_HINT, SideEffectAssessment
            )
        except _RECOVERABLE_ERRORS as e:
            logger.warning(f"Side effect analysis failed, using fallback: {type(e).__name__}: {e}")
            return fallback_side_effect_assessment(
                severity,
                impact_on_daily_life,
                reasoning="AI analysis unavailable, using basic assessment",
            )

    async def analyze_drug_interaction(
        self,
        drug1: Dict[str, Any],
        drug2: Dict[str, Any],
        descriptions: Sequence[str]
    ) -> InteractionJudgment:
        """
        Judge whether two drugs interact, given patient-reported side effects

        Args:
            drug1: {"name": .., "description": ..}
            drug2: {"name": .., "description": ..}
            descriptions: side-effect report texts observed on the combination

        Returns:
            InteractionJudgment; the fallback has confidence 0.0
        """
        if not self.llm.is_configured:
            return fallback_interaction_judgment("No LLM available for interaction detection")

        reports = "\n".join(f"- {text}" for text in descriptions) or "- None reported"
        prompt = f"""Analyze the potential interaction between these drugs:

Drug 1: {drug1.get('name')}
Drug 1 Description: {drug1.get('description') or 'Not available'}

Drug 2: {drug2.get('name')}
Drug 2 Description: {drug2.get('description') or 'Not available'}

Side effects reported by patients taking both:
{reports}"""

        try:
            return await self._ask(
                prompt, INTERACTION_SYSTEM_PROMPT, INTERACTION_SCHEMA_HINT, InteractionJudgment,
                max_tokens=800,
            )
        except _RECOVERABLE_ERRORS as e:
            logger.warning(
                f"Interaction analysis failed for {drug1.get('name')} + {drug2.get('name')}, "
                f"using fallback: {type(e).__name__}: {e}"
            )
            return fallback_interaction_judgment("Unable to analyze interaction")

    async def generate_insights(
        self,
        drug_stats: List[Dict[str, Any]],
        window_days: int
    ) -> InsightsResult:
        """Summarize per-drug statistics into narrative patterns and alerts"""
        if not self.llm.is_configured:
            return fallback_insights()

        data = {"window_days": window_days, "drug_stats": drug_stats}
        prompt = f"Analyze these drug side effect statistics:\n\n{json.dumps(data, indent=2, default=str)}"

        try:
            return await self._ask(
                prompt, INSIGHTS_SYSTEM_PROMPT, INSIGHTS_SCHEMA_HINT, InsightsResult,
                max_tokens=1500,
            )
        except _RECOVERABLE_ERRORS as e:
            logger.warning(f"Insight generation failed, using fallback: {type(e).__name__}: {e}")
            return fallback_insights()


# Singleton instance
text_analysis_service = TextAnalysisService()
