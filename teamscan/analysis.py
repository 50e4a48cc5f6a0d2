"""Founding-team diagnostic pipeline.

Architecture
------------
One report is produced per run, in four steps:

- **Aggregate**: ``prepare_analysis_input`` reads the startup, its founders,
  every survey answer (joined with the question's dimension and text) and every
  interview transcript (joined with the founder's name).
- **Prompt**: ``build_prompts`` renders that bundle as labeled plain text and
  appends the verbatim JSON template the model must fill in.
- **Invoke**: ``LLMClient.complete`` makes one bounded JSON-mode call.
- **Validate**: ``validate_analysis`` parses and shape-checks the output;
  ``ensure_executive_summary`` makes the single planned follow-up call when the
  narrative summary is missing.

``generate_report`` drives the steps as a small state machine and adds one new
``DiagnosticReport`` row. Nothing is persisted mid-run; a failed or cancelled
run leaves no trace and is simply started again by the caller.
"""
from __future__ import annotations

import enum
import json
import logging
import re
import time
from dataclasses import dataclass, field
from typing import Annotated, Any, Callable, Literal

from pydantic import BaseModel, BeforeValidator, ConfigDict, Field, ValidationError
from sqlalchemy import select
from sqlalchemy.orm import Session

from teamscan.config import Settings
from teamscan.errors import InsufficientData, MalformedOutput, NoFounders, NotFound, UpstreamError
from teamscan.llm import LLMClient
from teamscan.models import DiagnosticReport, Founder, InterviewTranscript, Startup, SurveyQuestion, SurveyResponse
from teamscan.utils import preview, utcnow

log = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Aggregated input bundle
# ---------------------------------------------------------------------------


@dataclass
class StartupProfile:
    company_name: str
    industry: str | None = None
    stage: str | None = None
    raise_amount: float | None = None


@dataclass
class FounderProfile:
    id: int
    full_name: str
    email: str
    role: str | None = None
    equity_percentage: float | None = None
    full_time_status: bool = True
    years_known_cofounders: int | None = None
    prior_startup_experience: bool = False
    previously_worked_together: bool = False
    is_ceo: bool = False


@dataclass
class SurveyAnswer:
    founder_name: str
    dimension: str
    question_text: str
    response_value: int


@dataclass
class TranscriptExcerpt:
    founder_name: str
    text: str


@dataclass
class AnalysisInput:
    startup: StartupProfile
    founders: list[FounderProfile]
    survey_responses: list[SurveyAnswer] = field(default_factory=list)
    interview_transcripts: list[TranscriptExcerpt] = field(default_factory=list)

    def data_summary(self) -> dict[str, int]:
        return {
            "founders": len(self.founders),
            "survey_responses": len(self.survey_responses),
            "interview_transcripts": len(self.interview_transcripts),
        }


def prepare_analysis_input(
    session: Session,
    startup_id: int,
    *,
    min_survey_responses: int = 0,
    min_transcripts: int = 0,
) -> AnalysisInput:
    """Gather everything the model needs about one startup.

    Raises ``NotFound`` for an unknown startup, ``NoFounders`` when the roster is
    empty and ``InsufficientData`` when the configured minimums are not met.
    """
    startup = session.get(Startup, startup_id)
    if startup is None:
        raise NotFound(f"Startup {startup_id} not found")

    founders = session.execute(
        select(Founder).where(Founder.startup_id == startup_id)
    ).scalars().all()
    if not founders:
        raise NoFounders(f"No founders found for startup '{startup.company_name}'")
    founder_ids = [f.id for f in founders]

    response_rows = session.execute(
        select(SurveyResponse.response_value, SurveyQuestion.dimension,
               SurveyQuestion.question_text, Founder.full_name)
        .join(SurveyQuestion, SurveyResponse.question_id == SurveyQuestion.id)
        .join(Founder, SurveyResponse.founder_id == Founder.id)
        .where(SurveyResponse.founder_id.in_(founder_ids))
    ).all()
    transcript_rows = session.execute(
        select(InterviewTranscript.raw_text, Founder.full_name)
        .join(Founder, InterviewTranscript.founder_id == Founder.id)
        .where(InterviewTranscript.founder_id.in_(founder_ids))
    ).all()

    if len(response_rows) < min_survey_responses:
        raise InsufficientData(
            f"At least {min_survey_responses} survey responses are required, found {len(response_rows)}"
        )
    if len(transcript_rows) < min_transcripts:
        raise InsufficientData(
            f"At least {min_transcripts} interview transcripts are required, found {len(transcript_rows)}"
        )

    bundle = AnalysisInput(
        startup=StartupProfile(
            company_name=startup.company_name,
            industry=startup.industry,
            stage=startup.stage,
            raise_amount=startup.raise_amount,
        ),
        founders=[
            FounderProfile(
                id=f.id, full_name=f.full_name, email=f.email, role=f.role,
                equity_percentage=f.equity_percentage, full_time_status=f.full_time_status,
                years_known_cofounders=f.years_known_cofounders,
                prior_startup_experience=f.prior_startup_experience,
                previously_worked_together=f.previously_worked_together,
                is_ceo=f.is_ceo,
            )
            for f in founders
        ],
        survey_responses=[
            SurveyAnswer(founder_name=name or "Unknown", dimension=dim or "unknown",
                         question_text=text or "", response_value=value)
            for value, dim, text, name in response_rows
        ],
        interview_transcripts=[
            TranscriptExcerpt(founder_name=name or "Unknown", text=raw or "")
            for raw, name in transcript_rows
        ],
    )
    log.info("Prepared analysis input for %s: %s", startup.company_name, bundle.data_summary())
    return bundle


# ---------------------------------------------------------------------------
# Prompts
# ---------------------------------------------------------------------------

SYSTEM_PROMPT = """\
You are an expert venture capital analyst specializing in founding team assessment.
Analyze the provided data about a startup's founding team and generate a comprehensive diagnostic report.

Focus on:
1. Team alignment and cohesion
2. Commitment levels and asymmetry
3. Decision-making architecture and centralization risks
4. Functional gaps in the team
5. Conflict patterns and productivity
6. Red flags that could impact investment
7. Contradictions between founders' responses
8. Ownership and equity concerns
9. Fragile dependencies (single points of failure)

Be objective, data-driven, and specific. Provide actionable insights."""

OUTPUT_TEMPLATE = """\
{
  "team_strength_index": <number 0-100>,
  "functional_gap_analysis": {
    "gaps": [<array of gap descriptions>],
    "severity": "<low|medium|high>"
  },
  "decision_architecture_risk": {
    "score": <number 0-100>,
    "centralization_level": "<high|medium|low>",
    "issues": [<array of issues>]
  },
  "commitment_asymmetry_score": <number 0-100>,
  "leadership_centralization_risk": {
    "score": <number 0-100>,
    "concerns": [<array of concerns>]
  },
  "conflict_productivity_assessment": {
    "score": <number 0-100>,
    "patterns": [<array of patterns>]
  },
  "red_flags": [
    {
      "severity": "<critical|high|medium|low>",
      "description": "<description>",
      "evidence": [<array of evidence points>]
    }
  ],
  "investment_implications": {
    "overall_risk": "<low|medium|high|critical>",
    "recommendation": "<proceed|proceed_with_conditions|reconsider|decline>",
    "rationale": "<detailed rationale>"
  },
  "suggested_interventions": [<array of intervention suggestions>],
  "contradictions_detected": [
    {
      "founders_involved": [<array of founder names>],
      "issue": "<description>",
      "evidence": "<evidence>"
    }
  ],
  "ownership_overlaps": [
    {
      "description": "<description>",
      "risk_level": "<low|medium|high>"
    }
  ],
  "fragile_dependencies": [
    {
      "description": "<description>",
      "impact": "<impact description>"
    }
  ],
  "executive_summary": "<2-3 paragraph executive summary synthesizing key findings>"
}"""

SUMMARY_PROMPT = """\
Based on the analysis above, provide a concise 2-3 paragraph executive summary highlighting:
1. Overall team strength assessment
2. Key risks and concerns
3. Investment recommendation and rationale

Respond with plain prose only."""

_NA = "N/A"


@dataclass(frozen=True)
class PromptPair:
    system: str
    user: str

    @property
    def total_length(self) -> int:
        return len(self.system) + len(self.user)


def _yes_no(value: bool) -> str:
    return "Yes" if value else "No"


def _or_na(value: Any) -> Any:
    return _NA if value is None or value == "" else value


def _format_founder(f: FounderProfile) -> str:
    equity = f"{f.equity_percentage:g}%" if f.equity_percentage is not None else _NA
    return "\n".join([
        f"- {f.full_name} ({_or_na(f.role)})",
        f"  - Email: {f.email}",
        f"  - Equity: {equity}",
        f"  - Full-time: {_yes_no(f.full_time_status)}",
        f"  - CEO: {_yes_no(f.is_ceo)}",
        f"  - Years known co-founders: {_or_na(f.years_known_cofounders)}",
        f"  - Prior startup experience: {_yes_no(f.prior_startup_experience)}",
        f"  - Previously worked together: {_yes_no(f.previously_worked_together)}",
    ])


def build_prompts(bundle: AnalysisInput, *, transcript_chars: int = 1000) -> PromptPair:
    """Render the bundle into the system and user instructions.

    Transcripts are cut to their first ``transcript_chars`` characters to bound
    the prompt size.
    """
    s = bundle.startup
    raise_amount = f"${s.raise_amount:,.0f}" if s.raise_amount else _NA
    sections = [
        "Analyze this founding team:",
        "",
        "STARTUP:",
        f"- Company: {s.company_name}",
        f"- Industry: {_or_na(s.industry)}",
        f"- Stage: {_or_na(s.stage)}",
        f"- Raise Amount: {raise_amount}",
        "",
        "FOUNDERS:",
        "\n".join(_format_founder(f) for f in bundle.founders),
        "",
        "SURVEY RESPONSES:",
    ]
    if bundle.survey_responses:
        sections.extend(
            f'- {r.founder_name} | {r.dimension} | "{r.question_text}": {r.response_value}/10'
            for r in bundle.survey_responses
        )
    else:
        sections.append("(No survey responses available)")

    sections += ["", "INTERVIEW TRANSCRIPTS:"]
    if bundle.interview_transcripts:
        excerpts = []
        for t in bundle.interview_transcripts:
            text = t.text[:transcript_chars]
            if len(t.text) > transcript_chars:
                text += "..."
            excerpts.append(f"{t.founder_name}:\n{text}")
        sections.append("\n\n---\n\n".join(excerpts))
    else:
        sections.append("(No interview transcripts available)")

    sections += [
        "",
        "Generate a JSON response with this exact structure. "
        "You MUST return valid JSON only - no text outside the JSON object:",
        OUTPUT_TEMPLATE,
        "",
        "Return ONLY the JSON object. Do not include any text before or after the JSON.",
    ]
    return PromptPair(system=SYSTEM_PROMPT, user="\n".join(sections))


# ---------------------------------------------------------------------------
# Output schema and validation
# ---------------------------------------------------------------------------


def _normalize_choice(value: Any, allowed: tuple[str, ...], default: str) -> str:
    """Lower-case and snake-case an enumerated value; fall back to *default* if unknown."""
    v = str(value or "").strip().lower().replace(" ", "_").replace("-", "_")
    if v not in allowed:
        log.warning("Unrecognized value %r (expected one of %s), defaulting to %s", value, allowed, default)
        return default
    return v


def _clamp_score(value: Any) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValueError("score must be a number")
    return max(0.0, min(100.0, float(value)))


def _as_str_list(value: Any) -> list[str]:
    if value is None:
        return []
    if isinstance(value, str):
        return [value]
    if not isinstance(value, list):
        raise ValueError("expected a list")
    return [str(v) for v in value]


def _choice(allowed: tuple[str, ...], default: str) -> BeforeValidator:
    return BeforeValidator(lambda v: _normalize_choice(v, allowed, default))


Score = Annotated[float, BeforeValidator(_clamp_score)]
StrList = Annotated[list[str], BeforeValidator(_as_str_list)]
Level = Annotated[Literal["low", "medium", "high"], _choice(("low", "medium", "high"), "medium")]
Severity = Annotated[
    Literal["critical", "high", "medium", "low"],
    _choice(("critical", "high", "medium", "low"), "medium"),
]
Recommendation = Annotated[
    Literal["proceed", "proceed_with_conditions", "reconsider", "decline"],
    _choice(("proceed", "proceed_with_conditions", "reconsider", "decline"), "reconsider"),
]


class _Open(BaseModel):
    model_config = ConfigDict(extra="allow")


class FunctionalGapAnalysis(_Open):
    gaps: StrList = []
    severity: Level = "medium"


class DecisionArchitectureRisk(_Open):
    score: Score
    centralization_level: Level = "medium"
    issues: StrList = []


class LeadershipCentralizationRisk(_Open):
    score: Score = 0.0
    concerns: StrList = []


class ConflictProductivityAssessment(_Open):
    score: Score = 0.0
    patterns: StrList = []


class RedFlag(_Open):
    severity: Severity = "medium"
    description: str = ""
    evidence: StrList = []


class InvestmentImplications(_Open):
    overall_risk: Severity = "medium"
    recommendation: Recommendation = "reconsider"
    rationale: str = ""


class Contradiction(_Open):
    founders_involved: StrList = []
    issue: str = ""
    evidence: str = ""


class OwnershipOverlap(_Open):
    description: str = ""
    risk_level: Level = "medium"


class FragileDependency(_Open):
    description: str = ""
    impact: str = ""


class DiagnosticAnalysis(_Open):
    """Structured model output. ``decision_architecture_risk.score`` is mandatory."""

    team_strength_index: Score = 0.0
    functional_gap_analysis: FunctionalGapAnalysis = Field(default_factory=FunctionalGapAnalysis)
    decision_architecture_risk: DecisionArchitectureRisk
    commitment_asymmetry_score: Score = 0.0
    leadership_centralization_risk: LeadershipCentralizationRisk = Field(default_factory=LeadershipCentralizationRisk)
    conflict_productivity_assessment: ConflictProductivityAssessment = Field(default_factory=ConflictProductivityAssessment)
    red_flags: list[RedFlag] = []
    investment_implications: InvestmentImplications = Field(default_factory=InvestmentImplications)
    suggested_interventions: StrList = []
    contradictions_detected: list[Contradiction] = []
    ownership_overlaps: list[OwnershipOverlap] = []
    fragile_dependencies: list[FragileDependency] = []


_FENCE_RE = re.compile(r"```(?:json)?\s*(\{.*\})\s*```", re.DOTALL)


def validate_analysis(raw_text: str) -> tuple[DiagnosticAnalysis, str | None]:
    """Parse and shape-check the model's JSON answer.

    Returns the analysis and the executive summary (``None`` when absent or
    blank). Raises ``MalformedOutput`` with a preview of the offending text.
    """
    text = raw_text.strip()
    m = _FENCE_RE.search(text)
    if m:
        text = m.group(1)
    try:
        parsed = json.loads(text)
    except json.JSONDecodeError as exc:
        raise MalformedOutput(f"Model did not return valid JSON. Response preview: {preview(raw_text)}") from exc
    if not isinstance(parsed, dict):
        raise MalformedOutput(f"Model returned JSON that is not an object. Response preview: {preview(raw_text)}")

    if "error" in parsed and "decision_architecture_risk" not in parsed:
        raise MalformedOutput(f"Model returned an error instead of an analysis: {preview(str(parsed['error']))}")

    dar = parsed.get("decision_architecture_risk")
    score = dar.get("score") if isinstance(dar, dict) else None
    if isinstance(score, bool) or not isinstance(score, (int, float)):
        raise MalformedOutput(
            "Model response is missing numeric decision_architecture_risk.score. "
            f"Response preview: {preview(raw_text)}"
        )

    summary = parsed.pop("executive_summary", None)
    try:
        analysis = DiagnosticAnalysis.model_validate(parsed)
    except ValidationError as exc:
        raise MalformedOutput(
            f"Model response failed shape validation ({exc.error_count()} errors). "
            f"Response preview: {preview(raw_text)}"
        ) from exc

    summary = summary.strip() if isinstance(summary, str) else ""
    return analysis, summary or None


async def ensure_executive_summary(
    client: LLMClient,
    analysis: DiagnosticAnalysis,
    summary: str | None,
) -> str:
    """Return *summary*, or obtain it with exactly one supplementary model call."""
    if summary:
        return summary
    log.info("Executive summary missing from analysis, requesting it separately")
    history = [{"role": "assistant", "content": analysis.model_dump_json()}]
    try:
        text = await client.complete(SYSTEM_PROMPT, SUMMARY_PROMPT, json_mode=False, history=history)
    except UpstreamError as exc:
        raise MalformedOutput(f"Executive summary generation failed: {exc.message}") from exc
    text = text.strip()
    if not text:
        raise MalformedOutput("Executive summary generation returned no text")
    return text


# ---------------------------------------------------------------------------
# Pipeline driver
# ---------------------------------------------------------------------------


class PipelineState(str, enum.Enum):
    IDLE = "idle"
    AGGREGATING = "aggregating"
    PROMPTING = "prompting"
    INVOKING = "invoking"
    VALIDATING = "validating"
    DONE = "done"
    FAILED = "failed"


class AnalysisRun:
    """Tracks one pipeline run's state for logging and failure reporting."""

    def __init__(self, startup_id: int):
        self.startup_id = startup_id
        self.state = PipelineState.IDLE
        self.failure_kind: str | None = None
        self._started = time.monotonic()
        self._step_started = self._started

    def advance(self, state: PipelineState) -> None:
        now = time.monotonic()
        log.info("Analysis run startup=%s: %s -> %s (%.0fms)", self.startup_id,
                 self.state.value, state.value, (now - self._step_started) * 1000)
        self.state = state
        self._step_started = now

    def fail(self, kind: str) -> None:
        log.warning("Analysis run startup=%s failed in %s: %s", self.startup_id, self.state.value, kind)
        self.failure_kind = kind
        self.state = PipelineState.FAILED

    @property
    def elapsed_ms(self) -> float:
        return (time.monotonic() - self._started) * 1000


async def generate_report(
    session: Session,
    startup_id: int,
    get_client: Callable[[], LLMClient],
    *,
    settings: Settings,
    created_by: str | None = None,
    run: AnalysisRun | None = None,
) -> DiagnosticReport:
    """Run the full pipeline and add a new report row (caller must commit).

    ``get_client`` is called only after the input has been gathered and the
    prompts built.
    """
    run = run or AnalysisRun(startup_id)
    try:
        run.advance(PipelineState.AGGREGATING)
        bundle = prepare_analysis_input(
            session, startup_id,
            min_survey_responses=settings.min_survey_responses,
            min_transcripts=settings.min_transcripts,
        )

        run.advance(PipelineState.PROMPTING)
        prompts = build_prompts(bundle, transcript_chars=settings.transcript_prompt_chars)

        run.advance(PipelineState.INVOKING)
        client = get_client()
        raw = await client.complete(prompts.system, prompts.user, json_mode=True)

        run.advance(PipelineState.VALIDATING)
        analysis, summary = validate_analysis(raw)
        summary = await ensure_executive_summary(client, analysis, summary)
    except Exception as exc:
        run.fail(getattr(exc, "code", type(exc).__name__))
        raise

    report = DiagnosticReport(
        startup_id=startup_id,
        analysis_json=analysis.model_dump_json(),
        executive_summary=summary,
        llm_model=client.model,
        created_at=utcnow(),
        created_by=created_by,
    )
    session.add(report)
    run.advance(PipelineState.DONE)
    log.info("Analysis run startup=%s completed in %.0fms", startup_id, run.elapsed_ms)
    return report
