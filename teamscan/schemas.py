"""Pydantic request/response schemas for the teamscan API."""
from __future__ import annotations

from datetime import date
from typing import Any

from pydantic import BaseModel, EmailStr, Field


# ---------------------------------------------------------------------------
# Startups
# ---------------------------------------------------------------------------


class StartupCreate(BaseModel):
    company_name: str = Field(min_length=1)
    industry: str | None = None
    stage: str | None = None
    geography: str | None = None
    raise_amount: float | None = Field(default=None, gt=0)
    planned_close_date: date | None = None
    board_structure_description: str | None = None
    deal_partner: str | None = None


class StartupUpdate(BaseModel):
    company_name: str | None = Field(default=None, min_length=1)
    industry: str | None = None
    stage: str | None = None
    geography: str | None = None
    raise_amount: float | None = Field(default=None, gt=0)
    planned_close_date: date | None = None
    board_structure_description: str | None = None
    deal_partner: str | None = None


class StartupOut(BaseModel):
    id: int
    company_name: str
    industry: str | None = None
    stage: str | None = None
    geography: str | None = None
    raise_amount: float | None = None
    planned_close_date: str | None = None
    board_structure_description: str | None = None
    deal_partner: str | None = None
    pipedrive_deal_id: int | None = None
    pipedrive_stage_id: int | None = None
    pipedrive_pipeline_id: int | None = None
    pipedrive_deal_created_at: str | None = None
    pipedrive_deal_updated_at: str | None = None
    founder_count: int = 0
    report_count: int = 0
    created_at: str | None = None
    updated_at: str | None = None


class PipedriveImport(BaseModel):
    deal_id: int
    pipeline_id: int | None = None
    stage_id: int | None = None


# ---------------------------------------------------------------------------
# Founders
# ---------------------------------------------------------------------------


class FounderCreate(BaseModel):
    startup_id: int
    full_name: str = Field(min_length=1)
    role: str | None = None
    email: EmailStr
    equity_percentage: float | None = Field(default=None, ge=0, le=100)
    full_time_status: bool = True
    years_known_cofounders: int | None = Field(default=None, ge=0)
    prior_startup_experience: bool = False
    previously_worked_together: bool = False
    is_ceo: bool = False


class FounderUpdate(BaseModel):
    full_name: str | None = Field(default=None, min_length=1)
    role: str | None = None
    email: EmailStr | None = None
    equity_percentage: float | None = Field(default=None, ge=0, le=100)
    full_time_status: bool | None = None
    years_known_cofounders: int | None = Field(default=None, ge=0)
    prior_startup_experience: bool | None = None
    previously_worked_together: bool | None = None
    is_ceo: bool | None = None


class FounderOut(BaseModel):
    id: int
    startup_id: int
    full_name: str
    role: str | None = None
    email: str
    equity_percentage: float | None = None
    full_time_status: bool
    years_known_cofounders: int | None = None
    prior_startup_experience: bool
    previously_worked_together: bool
    is_ceo: bool
    survey_status: str
    interview_status: str
    survey_token: str
    survey_token_expires_at: str | None = None
    created_at: str | None = None


class SurveyLinkOut(BaseModel):
    founder_id: int
    survey_status: str
    survey_url: str
    has_existing_responses: bool | None = None
    message: str | None = None


class TranscriptOut(BaseModel):
    id: int
    founder_id: int
    file_name: str | None = None
    file_url: str | None = None
    uploaded_at: str | None = None
    uploaded_by: str | None = None
    text_length: int
    preview: str


class UploadItemOut(BaseModel):
    file_name: str
    status: str
    transcript_id: int | None = None
    error: str | None = None
    code: str | None = None


class BatchUploadOut(BaseModel):
    outcome: str
    succeeded: int
    failed: int
    items: list[UploadItemOut]


# ---------------------------------------------------------------------------
# Survey
# ---------------------------------------------------------------------------


class QuestionOut(BaseModel):
    id: int
    version: int
    dimension: str
    question_text: str
    question_order: int


class QuestionIn(BaseModel):
    dimension: str = Field(min_length=1)
    question_text: str = Field(min_length=1)


class QuestionVersionCreate(BaseModel):
    questions: list[QuestionIn] = Field(min_length=1)


class SurveyTokenOut(BaseModel):
    founder_id: int
    founder_name: str
    survey_status: str


class SurveyAnswerIn(BaseModel):
    question_id: int
    response_value: int = Field(ge=1, le=10)


class SurveySubmission(BaseModel):
    token: str = Field(min_length=1)
    responses: list[SurveyAnswerIn] = Field(min_length=1)


class SurveySaveResult(BaseModel):
    success: bool = True
    saved: int
    message: str


class DimensionComparison(BaseModel):
    founder_id: int
    founder_name: str
    dimensions: dict[str, float]


class SurveyComparisonOut(BaseModel):
    founders: list[DimensionComparison]
    dimensions: list[str]


# ---------------------------------------------------------------------------
# Analysis
# ---------------------------------------------------------------------------


class GenerateRequest(BaseModel):
    startup_id: int


class ReportOut(BaseModel):
    id: int
    startup_id: int
    analysis: dict[str, Any]
    executive_summary: str
    llm_model: str
    created_at: str | None = None
    created_by: str | None = None


class PromptPreviewOut(BaseModel):
    system_prompt: str
    user_prompt: str
    total_length: int
    data_summary: dict[str, int]


class StatsOut(BaseModel):
    total_startups: int
    total_founders: int
    completed_surveys: int
    pending_surveys: int
