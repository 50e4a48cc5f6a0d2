"""Integration tests for the FastAPI endpoints.

Uses TestClient against an in-memory database with the LLM and the
transcript store replaced by fakes.
"""
from __future__ import annotations

import json
from datetime import UTC, datetime, timedelta
from unittest.mock import AsyncMock, MagicMock

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine, func, select
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from teamscan.config import Settings
from teamscan.errors import UpstreamTruncated
from teamscan.llm import LLMClient
from teamscan.pipedrive import PipedriveClient
from teamscan.models import (
    Base, DiagnosticReport, Founder, InterviewTranscript, Startup, SurveyQuestion, SurveyResponse,
)

ADMIN = {"Authorization": "Bearer test-admin-key"}


def _analysis_payload() -> dict:
    return {
        "team_strength_index": 70,
        "functional_gap_analysis": {"gaps": ["No sales lead"], "severity": "medium"},
        "decision_architecture_risk": {"score": 45, "centralization_level": "High", "issues": []},
        "commitment_asymmetry_score": 20,
        "leadership_centralization_risk": {"score": 50, "concerns": []},
        "conflict_productivity_assessment": {"score": 60, "patterns": []},
        "red_flags": [],
        "investment_implications": {"overall_risk": "medium", "recommendation": "proceed"},
        "suggested_interventions": [],
        "contradictions_detected": [],
        "ownership_overlaps": [],
        "fragile_dependencies": [],
        "executive_summary": "Balanced team with a centralized decision process.",
    }


@pytest.fixture()
def test_db():
    """In-memory SQLite shared across connections, with the default questions seeded."""
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    from teamscan.db import seed_survey_questions
    seed_survey_questions(engine)
    TestSession = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    return engine, TestSession


@pytest.fixture()
def llm():
    fake = MagicMock(spec=LLMClient)
    fake.model = "gpt-4o"
    fake.complete = AsyncMock(return_value=json.dumps(_analysis_payload()))
    return fake


@pytest.fixture()
def client(test_db, llm, tmp_path):
    """FastAPI TestClient using the in-memory database and a fake LLM."""
    _, TestSession = test_db
    from teamscan.app import app, db_session, get_llm_client, get_transcript_store
    from teamscan.transcripts import TranscriptStore

    def override_db_session():
        session = TestSession()
        try:
            yield session
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    app.state.settings = Settings(
        _env_file=None,
        database_url="sqlite:///:memory:",
        admin_api_key="test-admin-key",
        app_base_url="https://teamscan.test",
    )
    app.dependency_overrides[db_session] = override_db_session
    app.dependency_overrides[get_llm_client] = lambda: (lambda: llm)
    app.dependency_overrides[get_transcript_store] = lambda: TranscriptStore(tmp_path / "uploads")
    with TestClient(app, raise_server_exceptions=True) as c:
        yield c, TestSession
    app.dependency_overrides.clear()
    app.state.settings = None


@pytest.fixture()
def seeded_client(client):
    """Client with one startup and one founder created through the API."""
    c, TestSession = client
    startup = c.post("/api/startups", json={"company_name": "Acme", "industry": "Fintech",
                                            "raise_amount": 2_000_000}, headers=ADMIN).json()
    founder = c.post("/api/founders", json={"startup_id": startup["id"], "full_name": "Ada Lovelace",
                                            "email": "ada@acme.io", "is_ceo": True}, headers=ADMIN).json()
    return c, TestSession, startup, founder


def _answer_all(c, token: str, value: int = 7) -> None:
    questions = c.get("/api/survey/questions").json()
    resp = c.post("/api/survey/submit", json={
        "token": token,
        "responses": [{"question_id": q["id"], "response_value": value} for q in questions],
    })
    assert resp.status_code == 200


class TestAuth:
    def test_missing_key(self, client):
        c, _ = client
        resp = c.get("/api/startups")
        assert resp.status_code == 401

    def test_wrong_key(self, client):
        c, _ = client
        resp = c.get("/api/startups", headers={"Authorization": "Bearer nope"})
        assert resp.status_code == 401
        assert "test-admin-key" not in resp.text

    def test_survey_questions_are_public(self, client):
        c, _ = client
        resp = c.get("/api/survey/questions")
        assert resp.status_code == 200
        assert len(resp.json()) == 12

    def test_unconfigured_key_rejects_everything(self, client):
        c, _ = client
        from teamscan.app import app
        app.state.settings = Settings(_env_file=None, database_url="sqlite:///:memory:")
        assert c.get("/api/startups", headers={"Authorization": "Bearer "}).status_code == 401
        assert c.get("/api/startups", headers=ADMIN).status_code == 401


class TestStartupEndpoints:
    def test_create_and_get(self, client):
        c, _ = client
        resp = c.post("/api/startups", json={"company_name": "Acme", "stage": "Seed",
                                             "planned_close_date": "2025-03-31"}, headers=ADMIN)
        assert resp.status_code == 201
        startup = resp.json()
        assert startup["founder_count"] == 0
        assert startup["planned_close_date"].startswith("2025-03-31")
        got = c.get(f"/api/startups/{startup['id']}", headers=ADMIN).json()
        assert got["company_name"] == "Acme"

    def test_create_requires_name(self, client):
        c, _ = client
        assert c.post("/api/startups", json={"company_name": ""}, headers=ADMIN).status_code == 422

    def test_update_ignores_nulls(self, seeded_client):
        c, _, startup, _ = seeded_client
        resp = c.put(f"/api/startups/{startup['id']}", json={"stage": "Series A", "industry": None},
                     headers=ADMIN)
        assert resp.status_code == 200
        assert resp.json()["stage"] == "Series A"
        assert resp.json()["industry"] == "Fintech"

    def test_not_found_body_shape(self, client):
        c, _ = client
        resp = c.get("/api/startups/999", headers=ADMIN)
        assert resp.status_code == 404
        assert resp.json() == {"detail": "Startup not found", "code": "not_found"}

    def test_delete_cascades(self, seeded_client):
        c, TestSession, startup, founder = seeded_client
        _answer_all(c, founder["survey_token"])
        c.post("/api/interviews/upload", data={"founder_id": str(founder["id"])},
               files={"file": ("notes.txt", b"Interview notes", "text/plain")}, headers=ADMIN)
        assert c.post("/api/analysis/generate", json={"startup_id": startup["id"]},
                      headers=ADMIN).status_code == 201

        from teamscan.app import app, get_pipedrive_client
        crm = MagicMock(spec=PipedriveClient)
        app.dependency_overrides[get_pipedrive_client] = lambda: crm

        resp = c.delete(f"/api/startups/{startup['id']}", headers=ADMIN)
        assert resp.status_code == 200
        session = TestSession()
        try:
            for model in (Startup, Founder, SurveyResponse, InterviewTranscript, DiagnosticReport):
                assert session.execute(select(func.count()).select_from(model)).scalar() == 0
        finally:
            session.close()
        assert crm.mock_calls == []

    def test_list_newest_first(self, client):
        c, _ = client
        c.post("/api/startups", json={"company_name": "First"}, headers=ADMIN)
        c.post("/api/startups", json={"company_name": "Second"}, headers=ADMIN)
        names = [s["company_name"] for s in c.get("/api/startups", headers=ADMIN).json()]
        assert names == ["Second", "First"]


class TestFounderEndpoints:
    def test_create_issues_token(self, seeded_client):
        _, _, _, founder = seeded_client
        assert len(founder["survey_token"]) >= 32
        assert founder["survey_status"] == "pending"
        assert founder["survey_token_expires_at"] is not None

    def test_create_rejects_bad_email(self, seeded_client):
        c, _, startup, _ = seeded_client
        resp = c.post("/api/founders", json={"startup_id": startup["id"], "full_name": "X",
                                             "email": "not-an-email"}, headers=ADMIN)
        assert resp.status_code == 422

    def test_update_rejects_bad_email(self, seeded_client):
        c, _, _, founder = seeded_client
        resp = c.put(f"/api/founders/{founder['id']}", json={"email": "ada@"}, headers=ADMIN)
        assert resp.status_code == 422
        assert c.get("/api/founders", headers=ADMIN).json()[0]["email"] == "ada@acme.io"

    def test_create_for_unknown_startup(self, client):
        c, _ = client
        resp = c.post("/api/founders", json={"startup_id": 404, "full_name": "X", "email": "x@y.io"},
                      headers=ADMIN)
        assert resp.status_code == 404

    def test_list_by_startup(self, seeded_client):
        c, _, startup, founder = seeded_client
        other = c.post("/api/startups", json={"company_name": "Other"}, headers=ADMIN).json()
        c.post("/api/founders", json={"startup_id": other["id"], "full_name": "Bob", "email": "b@o.io"},
               headers=ADMIN)
        rows = c.get("/api/founders", params={"startup_id": startup["id"]}, headers=ADMIN).json()
        assert [f["id"] for f in rows] == [founder["id"]]

    def test_update(self, seeded_client):
        c, _, _, founder = seeded_client
        resp = c.put(f"/api/founders/{founder['id']}", json={"role": "CEO", "equity_percentage": 60},
                     headers=ADMIN)
        assert resp.json()["role"] == "CEO"
        assert resp.json()["equity_percentage"] == 60

    def test_send_and_reset_survey(self, seeded_client):
        c, _, _, founder = seeded_client
        sent = c.post(f"/api/founders/{founder['id']}/send-survey", headers=ADMIN).json()
        assert sent["survey_url"] == f"https://teamscan.test/survey/{founder['survey_token']}"
        assert sent["survey_status"] == "sent"

        _answer_all(c, founder["survey_token"])
        reset = c.post(f"/api/founders/{founder['id']}/reset-survey", headers=ADMIN).json()
        assert reset["survey_status"] == "pending"
        assert founder["survey_token"] not in reset["survey_url"]
        assert c.get(f"/api/survey/token/{founder['survey_token']}").status_code == 404


class TestSurveyEndpoints:
    def test_resolve_token(self, seeded_client):
        c, _, _, founder = seeded_client
        resp = c.get(f"/api/survey/token/{founder['survey_token']}")
        assert resp.json() == {"founder_id": founder["id"], "founder_name": "Ada Lovelace",
                               "survey_status": "pending"}

    def test_unknown_token(self, client):
        c, _ = client
        assert c.get("/api/survey/token/does-not-exist").status_code == 404

    def test_expired_token(self, seeded_client):
        c, TestSession, _, founder = seeded_client
        session = TestSession()
        row = session.get(Founder, founder["id"])
        row.survey_token_expires_at = datetime.now(UTC) - timedelta(minutes=1)
        session.commit()
        session.close()
        resp = c.get(f"/api/survey/token/{founder['survey_token']}")
        assert resp.status_code == 410
        assert resp.json()["code"] == "token_expired"
        assert c.post("/api/survey/save", json={
            "token": founder["survey_token"], "responses": [{"question_id": 1, "response_value": 5}],
        }).status_code == 410

    def test_save_upserts(self, seeded_client):
        c, TestSession, _, founder = seeded_client
        qid = c.get("/api/survey/questions").json()[0]["id"]
        for value in (3, 8):
            resp = c.post("/api/survey/save", json={
                "token": founder["survey_token"], "responses": [{"question_id": qid, "response_value": value}],
            })
            assert resp.json()["saved"] == 1
        session = TestSession()
        rows = session.execute(select(SurveyResponse)).scalars().all()
        session.close()
        assert [r.response_value for r in rows] == [8]

    def test_value_out_of_range(self, seeded_client):
        c, _, _, founder = seeded_client
        resp = c.post("/api/survey/save", json={
            "token": founder["survey_token"], "responses": [{"question_id": 1, "response_value": 0}],
        })
        assert resp.status_code == 422

    def test_submit_then_locked(self, seeded_client):
        c, _, _, founder = seeded_client
        _answer_all(c, founder["survey_token"])
        resp = c.get(f"/api/survey/token/{founder['survey_token']}")
        assert resp.status_code == 410
        assert resp.json()["code"] == "survey_completed"

    def test_publish_question_version(self, client):
        c, _ = client
        resp = c.post("/api/survey/questions", json={"questions": [
            {"dimension": "trust", "question_text": "I trust my co-founders with hard news."},
        ]}, headers=ADMIN)
        assert resp.status_code == 201
        current = c.get("/api/survey/questions").json()
        assert [q["version"] for q in current] == [2]

    def test_save_rejects_previous_version_question(self, seeded_client):
        c, _, _, founder = seeded_client
        old_id = c.get("/api/survey/questions").json()[0]["id"]
        c.post("/api/survey/questions", json={"questions": [
            {"dimension": "trust", "question_text": "I trust my co-founders with hard news."},
        ]}, headers=ADMIN)
        resp = c.post("/api/survey/save", json={
            "token": founder["survey_token"], "responses": [{"question_id": old_id, "response_value": 5}],
        })
        assert resp.status_code == 400
        assert resp.json()["code"] == "validation_error"

    def test_comparison_and_stats(self, seeded_client):
        c, _, startup, founder = seeded_client
        c.post("/api/founders", json={"startup_id": startup["id"], "full_name": "Grace",
                                      "email": "g@acme.io"}, headers=ADMIN)
        _answer_all(c, founder["survey_token"], value=6)

        comparison = c.get(f"/api/startups/{startup['id']}/survey-comparison", headers=ADMIN).json()
        assert [f["founder_name"] for f in comparison["founders"]] == ["Ada Lovelace"]
        assert set(comparison["founders"][0]["dimensions"].values()) == {6.0}
        assert "trust" in comparison["dimensions"]

        stats = c.get("/api/admin/stats", headers=ADMIN).json()
        assert stats == {"total_startups": 1, "total_founders": 2,
                         "completed_surveys": 1, "pending_surveys": 1}


class TestInterviewEndpoints:
    def test_upload_single(self, seeded_client):
        c, _, _, founder = seeded_client
        resp = c.post("/api/interviews/upload", data={"founder_id": str(founder["id"])},
                      files={"file": ("notes.txt", b"We split roles early.", "text/plain")}, headers=ADMIN)
        assert resp.status_code == 201
        assert resp.json()["preview"] == "We split roles early."
        listed = c.get(f"/api/founders/{founder['id']}/transcripts", headers=ADMIN).json()
        assert len(listed) == 1
        founders = c.get("/api/founders", headers=ADMIN).json()
        assert founders[0]["interview_status"] == "completed"

    def test_upload_doc_rejected(self, seeded_client):
        c, _, _, founder = seeded_client
        resp = c.post("/api/interviews/upload", data={"founder_id": str(founder["id"])},
                      files={"file": ("old.doc", b"\xd0\xcf\x11\xe0", "application/msword")}, headers=ADMIN)
        assert resp.status_code == 400
        assert resp.json()["code"] == "unsupported_file_type"

    def test_batch_partial_success(self, seeded_client):
        c, _, _, founder = seeded_client
        files = [
            ("files", ("one.txt", b"First interview", "text/plain")),
            ("files", ("two.doc", b"\xd0\xcf\x11\xe0", "application/msword")),
            ("files", ("three.txt", b"Third interview", "text/plain")),
        ]
        resp = c.post("/api/interviews/upload-batch", data={"founder_id": str(founder["id"])},
                      files=files, headers=ADMIN)
        assert resp.status_code == 200
        body = resp.json()
        assert body["outcome"] == "partial_success"
        assert [i["status"] for i in body["items"]] == ["succeeded", "failed", "succeeded"]
        assert len(c.get(f"/api/founders/{founder['id']}/transcripts", headers=ADMIN).json()) == 2

    def test_batch_all_failed(self, seeded_client):
        c, _, _, founder = seeded_client
        resp = c.post("/api/interviews/upload-batch", data={"founder_id": str(founder["id"])},
                      files=[("files", ("x.doc", b"x", "application/msword"))], headers=ADMIN)
        assert resp.status_code == 400
        assert resp.json()["outcome"] == "failed"

    def test_delete_transcript(self, seeded_client):
        c, _, _, founder = seeded_client
        t = c.post("/api/interviews/upload", data={"founder_id": str(founder["id"])},
                   files={"file": ("notes.txt", b"text", "text/plain")}, headers=ADMIN).json()
        resp = c.delete(f"/api/founders/{founder['id']}/transcripts/{t['id']}", headers=ADMIN)
        assert resp.status_code == 200
        assert c.get(f"/api/founders/{founder['id']}/transcripts", headers=ADMIN).json() == []

    def test_delete_transcript_of_other_founder(self, seeded_client):
        c, _, _, founder = seeded_client
        t = c.post("/api/interviews/upload", data={"founder_id": str(founder["id"])},
                   files={"file": ("notes.txt", b"text", "text/plain")}, headers=ADMIN).json()
        resp = c.delete(f"/api/founders/{founder['id'] + 1}/transcripts/{t['id']}", headers=ADMIN)
        assert resp.status_code == 404


class TestAnalysisEndpoints:
    def test_preconditions_checked_before_llm_config(self, client):
        c, _ = client
        from teamscan.app import app, get_llm_client
        del app.dependency_overrides[get_llm_client]
        app.state.settings = app.state.settings.model_copy(
            update={"llm_provider": "azure", "azure_ai_endpoint": "", "azure_ai_api_key": None})
        startup = c.post("/api/startups", json={"company_name": "Ghost"}, headers=ADMIN).json()

        resp = c.post("/api/analysis/generate", json={"startup_id": startup["id"]}, headers=ADMIN)
        assert resp.status_code == 422
        assert resp.json()["code"] == "no_founders"

        resp = c.post("/api/analysis/generate", json={"startup_id": 9999}, headers=ADMIN)
        assert resp.status_code == 404

        c.post("/api/founders", json={"startup_id": startup["id"], "full_name": "Ada",
                                      "email": "ada@ghost.io"}, headers=ADMIN)
        resp = c.post("/api/analysis/generate", json={"startup_id": startup["id"]}, headers=ADMIN)
        assert resp.status_code == 503
        assert resp.json()["code"] == "upstream_config"

    def test_generate_and_fetch(self, seeded_client, llm):
        c, _, startup, founder = seeded_client
        _answer_all(c, founder["survey_token"])
        resp = c.post("/api/analysis/generate", json={"startup_id": startup["id"]}, headers=ADMIN)
        assert resp.status_code == 201
        report = resp.json()
        assert report["analysis"]["decision_architecture_risk"]["score"] == 45
        assert report["analysis"]["decision_architecture_risk"]["centralization_level"] == "high"
        assert report["executive_summary"].startswith("Balanced team")
        assert report["created_by"] == "admin"

        latest = c.get(f"/api/reports/{startup['id']}", headers=ADMIN).json()
        assert latest["id"] == report["id"]
        c.post("/api/analysis/generate", json={"startup_id": startup["id"]}, headers=ADMIN)
        history = c.get(f"/api/reports/{startup['id']}/history", headers=ADMIN).json()
        assert len(history) == 2
        assert history[0]["id"] > history[1]["id"]

    def test_generate_without_founders(self, client, llm):
        c, _ = client
        startup = c.post("/api/startups", json={"company_name": "Ghost"}, headers=ADMIN).json()
        resp = c.post("/api/analysis/generate", json={"startup_id": startup["id"]}, headers=ADMIN)
        assert resp.status_code == 422
        assert resp.json()["code"] == "no_founders"
        llm.complete.assert_not_called()

    def test_truncated_output(self, seeded_client, llm):
        c, _, startup, _ = seeded_client
        llm.complete.side_effect = UpstreamTruncated("Response truncated. Prompt too large.")
        resp = c.post("/api/analysis/generate", json={"startup_id": startup["id"]}, headers=ADMIN)
        assert resp.status_code == 502
        assert resp.json()["code"] == "upstream_truncated"
        assert c.get(f"/api/reports/{startup['id']}/history", headers=ADMIN).json() == []

    def test_malformed_output(self, seeded_client, llm):
        c, _, startup, _ = seeded_client
        llm.complete.return_value = "I am not JSON"
        resp = c.post("/api/analysis/generate", json={"startup_id": startup["id"]}, headers=ADMIN)
        assert resp.status_code == 502
        assert resp.json()["code"] == "malformed_output"

    def test_no_report_yet(self, seeded_client):
        c, _, startup, _ = seeded_client
        assert c.get(f"/api/reports/{startup['id']}", headers=ADMIN).status_code == 404

    def test_prompt_preview(self, seeded_client):
        c, _, startup, founder = seeded_client
        _answer_all(c, founder["survey_token"])
        resp = c.get(f"/api/startups/{startup['id']}/prompt", headers=ADMIN)
        assert resp.status_code == 200
        body = resp.json()
        assert "Acme" in body["user_prompt"]
        assert "- Raise Amount: $2,000,000" in body["user_prompt"]
        assert body["total_length"] == len(body["system_prompt"]) + len(body["user_prompt"])
        assert body["data_summary"]["founders"] == 1


class TestSeededQuestions:
    def test_default_questions_cover_dimensions(self, test_db):
        _, TestSession = test_db
        session = TestSession()
        dims = set(session.execute(select(SurveyQuestion.dimension)).scalars().all())
        session.close()
        assert dims == {"commitment", "decision_making", "conflict", "vision_alignment", "role_clarity", "trust"}


class TestGenerateDisconnect:
    @pytest.mark.asyncio
    async def test_client_disconnect_cancels_run(self, test_db, llm):
        import asyncio

        from fastapi import HTTPException

        from teamscan.app import generate_analysis
        from teamscan.schemas import GenerateRequest

        _, TestSession = test_db
        session = TestSession()
        startup = Startup(company_name="Acme")
        session.add(startup)
        session.flush()
        session.add(Founder(startup_id=startup.id, full_name="Ada", email="ada@acme.io", survey_token="tok"))
        session.commit()

        async def slow_complete(*args, **kwargs):
            await asyncio.sleep(10)
            return json.dumps(_analysis_payload())

        llm.complete = AsyncMock(side_effect=slow_complete)
        request = MagicMock()
        request.is_disconnected = AsyncMock(return_value=True)

        try:
            with pytest.raises(HTTPException) as exc_info:
                await generate_analysis(
                    GenerateRequest(startup_id=startup.id), request, session=session,
                    settings=Settings(_env_file=None), get_client=lambda: llm, identity="admin",
                )
            assert exc_info.value.status_code == 499
            llm.complete.assert_awaited_once()
            assert session.execute(select(func.count()).select_from(DiagnosticReport)).scalar() == 0
        finally:
            session.close()
