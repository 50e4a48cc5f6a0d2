from __future__ import annotations

from datetime import date, datetime

from sqlalchemy import (
    Boolean, Date, DateTime, Float, ForeignKey, Integer, String, Text, UniqueConstraint, func,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship

SURVEY_STATUSES = ("pending", "sent", "completed")
INTERVIEW_STATUSES = ("pending", "completed")


class Base(DeclarativeBase):
    pass


class Startup(Base):
    __tablename__ = "startups"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    company_name: Mapped[str] = mapped_column(String(300), nullable=False)
    industry: Mapped[str | None] = mapped_column(String(200), nullable=True)
    stage: Mapped[str | None] = mapped_column(String(100), nullable=True)
    geography: Mapped[str | None] = mapped_column(String(200), nullable=True)
    raise_amount: Mapped[float | None] = mapped_column(Float, nullable=True)
    planned_close_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    board_structure_description: Mapped[str | None] = mapped_column(Text, nullable=True)
    deal_partner: Mapped[str | None] = mapped_column(String(200), nullable=True)
    pipedrive_deal_id: Mapped[int | None] = mapped_column(Integer, unique=True, nullable=True)
    pipedrive_stage_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    pipedrive_pipeline_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    pipedrive_deal_created_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    pipedrive_deal_updated_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now(), onupdate=func.now())

    founders: Mapped[list[Founder]] = relationship("Founder", back_populates="startup", cascade="all, delete-orphan")
    reports: Mapped[list[DiagnosticReport]] = relationship("DiagnosticReport", back_populates="startup", cascade="all, delete-orphan")


class Founder(Base):
    __tablename__ = "founders"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    startup_id: Mapped[int] = mapped_column(Integer, ForeignKey("startups.id", ondelete="CASCADE"), nullable=False)
    full_name: Mapped[str] = mapped_column(String(300), nullable=False)
    role: Mapped[str | None] = mapped_column(String(200), nullable=True)
    email: Mapped[str] = mapped_column(String(300), nullable=False)
    equity_percentage: Mapped[float | None] = mapped_column(Float, nullable=True)
    full_time_status: Mapped[bool] = mapped_column(Boolean, default=True)
    years_known_cofounders: Mapped[int | None] = mapped_column(Integer, nullable=True)
    prior_startup_experience: Mapped[bool] = mapped_column(Boolean, default=False)
    previously_worked_together: Mapped[bool] = mapped_column(Boolean, default=False)
    is_ceo: Mapped[bool] = mapped_column(Boolean, default=False)
    survey_status: Mapped[str] = mapped_column(String(20), default="pending")  # pending | sent | completed
    interview_status: Mapped[str] = mapped_column(String(20), default="pending")  # pending | completed
    survey_token: Mapped[str] = mapped_column(String(100), unique=True, nullable=False, index=True)
    survey_token_expires_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now(), onupdate=func.now())

    startup: Mapped[Startup] = relationship("Startup", back_populates="founders")
    survey_responses: Mapped[list[SurveyResponse]] = relationship("SurveyResponse", back_populates="founder", cascade="all, delete-orphan")
    transcripts: Mapped[list[InterviewTranscript]] = relationship("InterviewTranscript", back_populates="founder", cascade="all, delete-orphan")


class SurveyQuestion(Base):
    __tablename__ = "survey_questions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    version: Mapped[int] = mapped_column(Integer, default=1, index=True)
    dimension: Mapped[str] = mapped_column(String(100), nullable=False)
    question_text: Mapped[str] = mapped_column(Text, nullable=False)
    question_order: Mapped[int] = mapped_column(Integer, nullable=False)
    active: Mapped[bool] = mapped_column(Boolean, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())


class SurveyResponse(Base):
    __tablename__ = "survey_responses"
    __table_args__ = (UniqueConstraint("founder_id", "question_id", name="uq_response_founder_question"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    founder_id: Mapped[int] = mapped_column(Integer, ForeignKey("founders.id", ondelete="CASCADE"), nullable=False)
    question_id: Mapped[int] = mapped_column(Integer, ForeignKey("survey_questions.id"), nullable=False)
    response_value: Mapped[int] = mapped_column(Integer, nullable=False)  # 1-10
    submitted_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())

    founder: Mapped[Founder] = relationship("Founder", back_populates="survey_responses")
    question: Mapped[SurveyQuestion] = relationship("SurveyQuestion")


class InterviewTranscript(Base):
    __tablename__ = "interview_transcripts"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    founder_id: Mapped[int] = mapped_column(Integer, ForeignKey("founders.id", ondelete="CASCADE"), nullable=False)
    raw_text: Mapped[str] = mapped_column(Text, nullable=False)
    file_url: Mapped[str | None] = mapped_column(String(500), nullable=True)
    file_name: Mapped[str | None] = mapped_column(String(300), nullable=True)
    uploaded_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())
    uploaded_by: Mapped[str | None] = mapped_column(String(100), nullable=True)

    founder: Mapped[Founder] = relationship("Founder", back_populates="transcripts")


class DiagnosticReport(Base):
    __tablename__ = "diagnostic_reports"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    startup_id: Mapped[int] = mapped_column(Integer, ForeignKey("startups.id", ondelete="CASCADE"), nullable=False)
    analysis_json: Mapped[str] = mapped_column(Text, default="{}")
    executive_summary: Mapped[str] = mapped_column(Text, default="")
    llm_model: Mapped[str] = mapped_column(String(100), default="")
    created_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())
    created_by: Mapped[str | None] = mapped_column(String(100), nullable=True)

    startup: Mapped[Startup] = relationship("Startup", back_populates="reports")
