"""Shared business logic for the teamscan API."""
from __future__ import annotations

import logging
from typing import Any

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from teamscan.config import Settings
from teamscan.errors import NotFound
from teamscan.models import DiagnosticReport, Founder, InterviewTranscript, Startup
from teamscan.survey import new_survey_token, token_expiry
from teamscan.utils import isoformat, json_parse, preview

log = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Shared field tuples
# ---------------------------------------------------------------------------

STARTUP_FIELDS = (
    "company_name", "industry", "stage", "geography", "raise_amount",
    "planned_close_date", "board_structure_description", "deal_partner",
)

FOUNDER_FIELDS = (
    "full_name", "role", "email", "equity_percentage", "full_time_status",
    "years_known_cofounders", "prior_startup_experience",
    "previously_worked_together", "is_ceo",
)

_CRM_FIELDS = ("pipedrive_deal_id", "pipedrive_stage_id", "pipedrive_pipeline_id")

# ---------------------------------------------------------------------------
# Serialization helpers
# ---------------------------------------------------------------------------


def startup_summary(s: Startup) -> dict:
    return {
        "id": s.id,
        **{f: getattr(s, f) for f in STARTUP_FIELDS if f != "planned_close_date"},
        "planned_close_date": isoformat(s.planned_close_date),
        **{f: getattr(s, f) for f in _CRM_FIELDS},
        "pipedrive_deal_created_at": isoformat(s.pipedrive_deal_created_at),
        "pipedrive_deal_updated_at": isoformat(s.pipedrive_deal_updated_at),
        "founder_count": len(s.founders),
        "report_count": len(s.reports),
        "created_at": isoformat(s.created_at),
        "updated_at": isoformat(s.updated_at),
    }


def founder_summary(f: Founder) -> dict:
    return {
        "id": f.id, "startup_id": f.startup_id,
        **{k: getattr(f, k) for k in FOUNDER_FIELDS},
        "survey_status": f.survey_status, "interview_status": f.interview_status,
        "survey_token": f.survey_token,
        "survey_token_expires_at": isoformat(f.survey_token_expires_at),
        "created_at": isoformat(f.created_at),
    }


def transcript_summary(t: InterviewTranscript) -> dict:
    return {
        "id": t.id, "founder_id": t.founder_id, "file_name": t.file_name,
        "file_url": t.file_url, "uploaded_at": isoformat(t.uploaded_at),
        "uploaded_by": t.uploaded_by, "text_length": len(t.raw_text or ""),
        "preview": preview(t.raw_text),
    }


def report_summary(r: DiagnosticReport) -> dict:
    return {
        "id": r.id, "startup_id": r.startup_id,
        "analysis": json_parse(r.analysis_json, {}),
        "executive_summary": r.executive_summary or "",
        "llm_model": r.llm_model or "",
        "created_at": isoformat(r.created_at),
        "created_by": r.created_by,
    }


# ---------------------------------------------------------------------------
# Mutation helpers
# ---------------------------------------------------------------------------


def apply_updates(obj, updates: dict[str, Any], fields: tuple[str, ...]) -> None:
    """Apply non-None values from updates dict to an ORM object."""
    for field in fields:
        val = updates.get(field)
        if val is not None:
            setattr(obj, field, val)


def get_entity(session: Session, model, entity_id: int, label: str = "Entity"):
    obj = session.get(model, entity_id)
    if obj is None:
        raise NotFound(f"{label} not found")
    return obj


# ---------------------------------------------------------------------------
# Operations
# ---------------------------------------------------------------------------


def create_founder(session: Session, data: dict[str, Any], settings: Settings) -> Founder:
    """Add a founder with a fresh survey token (caller must commit)."""
    get_entity(session, Startup, data["startup_id"], "Startup")
    founder = Founder(
        startup_id=data["startup_id"],
        **{f: data[f] for f in FOUNDER_FIELDS if f in data},
        survey_status="pending",
        interview_status="pending",
        survey_token=new_survey_token(),
        survey_token_expires_at=token_expiry(settings),
    )
    session.add(founder)
    session.flush()
    return founder


def list_founders(session: Session, startup_id: int | None = None) -> list[Founder]:
    query = select(Founder)
    if startup_id is not None:
        query = query.where(Founder.startup_id == startup_id)
    return list(session.execute(query.order_by(Founder.created_at.desc(), Founder.id.desc())).scalars().all())


def latest_report(session: Session, startup_id: int) -> DiagnosticReport | None:
    return session.execute(
        select(DiagnosticReport)
        .where(DiagnosticReport.startup_id == startup_id)
        .order_by(DiagnosticReport.created_at.desc(), DiagnosticReport.id.desc())
        .limit(1)
    ).scalars().first()


def report_history(session: Session, startup_id: int) -> list[DiagnosticReport]:
    return list(session.execute(
        select(DiagnosticReport)
        .where(DiagnosticReport.startup_id == startup_id)
        .order_by(DiagnosticReport.created_at.desc(), DiagnosticReport.id.desc())
    ).scalars().all())


def compute_stats(session: Session) -> dict:
    by_status = dict(session.execute(
        select(Founder.survey_status, func.count()).group_by(Founder.survey_status)
    ).all())
    return {
        "total_startups": session.execute(select(func.count()).select_from(Startup)).scalar() or 0,
        "total_founders": sum(by_status.values()),
        "completed_surveys": by_status.get("completed", 0),
        "pending_surveys": by_status.get("pending", 0) + by_status.get("sent", 0),
    }
