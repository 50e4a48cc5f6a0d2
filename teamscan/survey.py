"""Founder survey: question versions, tokens, autosave and submission."""
from __future__ import annotations

import logging
import secrets
from collections import defaultdict
from datetime import datetime, timedelta

from sqlalchemy import delete, func, select
from sqlalchemy.orm import Session

from teamscan.config import Settings
from teamscan.errors import InvalidInput, NotFound, SurveyAlreadyCompleted, TokenExpired
from teamscan.models import Founder, SurveyQuestion, SurveyResponse
from teamscan.utils import as_utc, utcnow

log = logging.getLogger(__name__)

# (dimension, question_text), seeded as version 1.
DEFAULT_QUESTIONS: list[tuple[str, str]] = [
    ("commitment", "I am prepared to work on this company full-time for at least the next five years."),
    ("commitment", "My co-founders are as committed to this company as I am."),
    ("decision_making", "Important decisions are made jointly rather than by one founder alone."),
    ("decision_making", "When we disagree, we have a clear process for reaching a final decision."),
    ("conflict", "I can openly challenge my co-founders' ideas without damaging our relationship."),
    ("conflict", "Disagreements between founders usually lead to better outcomes."),
    ("vision_alignment", "All founders share the same long-term vision for the company."),
    ("vision_alignment", "We agree on the kind of exit or outcome we are building toward."),
    ("role_clarity", "Each founder's responsibilities are clearly defined and understood."),
    ("role_clarity", "There is little overlap or ambiguity in who owns which area of the business."),
    ("trust", "I trust my co-founders to act in the best interest of the company."),
    ("trust", "I am comfortable with how equity is currently split among the founders."),
]


def new_survey_token() -> str:
    return secrets.token_urlsafe(32)


def token_expiry(settings: Settings, now: datetime | None = None) -> datetime:
    return (now or utcnow()) + timedelta(days=settings.survey_token_ttl_days)


def survey_url(settings: Settings, token: str) -> str:
    return f"{settings.app_base_url.rstrip('/')}/survey/{token}"


# ---------------------------------------------------------------------------
# Questions
# ---------------------------------------------------------------------------


def current_version(session: Session) -> int:
    return session.execute(select(func.max(SurveyQuestion.version))).scalar() or 1


def current_questions(session: Session) -> list[SurveyQuestion]:
    """Active questions of the highest version, in display order."""
    version = current_version(session)
    return list(session.execute(
        select(SurveyQuestion)
        .where(SurveyQuestion.version == version, SurveyQuestion.active.is_(True))
        .order_by(SurveyQuestion.question_order)
    ).scalars().all())


def publish_question_version(session: Session, questions: list[tuple[str, str]]) -> list[SurveyQuestion]:
    """Add a new question version; it becomes current immediately (caller must commit).

    Earlier versions stay in place so existing responses keep their question text.
    """
    if not questions:
        raise InvalidInput("At least one question is required")
    version = (session.execute(select(func.max(SurveyQuestion.version))).scalar() or 0) + 1
    rows = [
        SurveyQuestion(version=version, dimension=dimension, question_text=text,
                       question_order=order, active=True)
        for order, (dimension, text) in enumerate(questions, start=1)
    ]
    session.add_all(rows)
    session.flush()
    log.info("Published survey question version %d (%d questions)", version, len(rows))
    return rows


# ---------------------------------------------------------------------------
# Tokens
# ---------------------------------------------------------------------------


def resolve_token(session: Session, token: str, now: datetime | None = None) -> Founder:
    """Return the founder owning *token* if the survey is still open.

    Raises ``NotFound`` for an unknown token, ``TokenExpired`` past the expiry
    and ``SurveyAlreadyCompleted`` once the survey has been submitted.
    """
    if not token:
        raise InvalidInput("Survey token is required")
    founder = session.execute(
        select(Founder).where(Founder.survey_token == token)
    ).scalar_one_or_none()
    if founder is None:
        raise NotFound("Invalid survey token")
    expires_at = as_utc(founder.survey_token_expires_at)
    if expires_at is not None and expires_at < (now or utcnow()):
        raise TokenExpired("Survey token has expired")
    if founder.survey_status == "completed":
        raise SurveyAlreadyCompleted("Survey already completed")
    return founder


# ---------------------------------------------------------------------------
# Responses
# ---------------------------------------------------------------------------


def save_responses(session: Session, founder: Founder, responses: list[tuple[int, int]]) -> int:
    """Upsert ``(question_id, value)`` pairs for *founder* (caller must commit).

    A repeated question id within one call keeps the last value. Returns the
    number of distinct questions written.
    """
    if not responses:
        raise InvalidInput("At least one response is required")
    latest: dict[int, int] = {}
    for question_id, value in responses:
        if not 1 <= value <= 10:
            raise InvalidInput(f"Response value for question {question_id} must be between 1 and 10")
        latest[question_id] = value

    # Only the current version's active questions accept answers
    known = set(session.execute(
        select(SurveyQuestion.id).where(
            SurveyQuestion.id.in_(latest),
            SurveyQuestion.version == current_version(session),
            SurveyQuestion.active.is_(True),
        )
    ).scalars().all())
    unknown = sorted(set(latest) - known)
    if unknown:
        raise InvalidInput(f"Unknown or retired question id(s): {', '.join(map(str, unknown))}")

    existing = {
        r.question_id: r
        for r in session.execute(
            select(SurveyResponse).where(
                SurveyResponse.founder_id == founder.id,
                SurveyResponse.question_id.in_(latest),
            )
        ).scalars().all()
    }
    now = utcnow()
    for question_id, value in latest.items():
        row = existing.get(question_id)
        if row is None:
            session.add(SurveyResponse(founder_id=founder.id, question_id=question_id,
                                       response_value=value, submitted_at=now))
        else:
            row.response_value = value
            row.submitted_at = now
    session.flush()
    return len(latest)


def submit_survey(session: Session, founder: Founder, responses: list[tuple[int, int]]) -> int:
    """Final save; the token is single-use afterwards (caller must commit)."""
    count = save_responses(session, founder, responses)
    founder.survey_status = "completed"
    log.info("Founder %s completed the survey (%d answers)", founder.id, count)
    return count


# ---------------------------------------------------------------------------
# Admin operations
# ---------------------------------------------------------------------------


def send_survey(session: Session, founder: Founder, settings: Settings) -> dict:
    """Return the survey link; marks the founder ``sent`` unless answers already exist."""
    has_responses = session.execute(
        select(SurveyResponse.id).where(SurveyResponse.founder_id == founder.id).limit(1)
    ).first() is not None
    if not has_responses and founder.survey_status != "completed":
        founder.survey_status = "sent"
    return {
        "founder_id": founder.id,
        "survey_status": founder.survey_status,
        "survey_url": survey_url(settings, founder.survey_token),
        "has_existing_responses": has_responses,
    }


def reset_survey(session: Session, founder: Founder, settings: Settings) -> dict:
    """Drop all answers and issue a fresh token; the old link stops working."""
    removed = session.execute(
        delete(SurveyResponse).where(SurveyResponse.founder_id == founder.id)
    ).rowcount
    founder.survey_token = new_survey_token()
    founder.survey_status = "pending"
    founder.survey_token_expires_at = None
    session.flush()
    log.info("Reset survey for founder %s (%d responses removed)", founder.id, removed or 0)
    return {
        "founder_id": founder.id,
        "survey_status": founder.survey_status,
        "survey_url": survey_url(settings, founder.survey_token),
        "message": "Survey responses have been reset. A new survey link has been generated.",
    }


def survey_comparison(session: Session, startup_id: int) -> dict:
    """Mean answer per (founder, dimension) for founders who completed the survey."""
    founders = session.execute(
        select(Founder)
        .where(Founder.startup_id == startup_id, Founder.survey_status == "completed")
        .order_by(Founder.id)
    ).scalars().all()
    if not founders:
        return {"founders": [], "dimensions": []}

    rows = session.execute(
        select(SurveyResponse.founder_id, SurveyQuestion.dimension, SurveyResponse.response_value)
        .join(SurveyQuestion, SurveyResponse.question_id == SurveyQuestion.id)
        .where(SurveyResponse.founder_id.in_([f.id for f in founders]))
    ).all()
    values: dict[int, dict[str, list[int]]] = defaultdict(lambda: defaultdict(list))
    for founder_id, dimension, value in rows:
        values[founder_id][dimension or "unknown"].append(value)

    dimensions: list[str] = []
    result = []
    for f in founders:
        averages = {dim: sum(vs) / len(vs) for dim, vs in values[f.id].items()}
        for dim in averages:
            if dim not in dimensions:
                dimensions.append(dim)
        result.append({"founder_id": f.id, "founder_name": f.full_name, "dimensions": averages})
    return {"founders": result, "dimensions": dimensions}
