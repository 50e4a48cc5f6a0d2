from __future__ import annotations

import asyncio
import hmac
import logging
from contextlib import asynccontextmanager, suppress
from functools import partial
from typing import Callable, Generator

from fastapi import Depends, FastAPI, File, Form, HTTPException, Query, Request, UploadFile
from fastapi.responses import JSONResponse
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy import select
from sqlalchemy.orm import Session

from teamscan import analysis, services, survey, transcripts
from teamscan.config import Settings
from teamscan.db import get_session, init_db
from teamscan.errors import Conflict, InvalidInput, NotFound, TeamscanError
from teamscan.llm import LLMClient
from teamscan.models import Founder, InterviewTranscript, Startup
from teamscan.pipedrive import PipedriveClient, import_deal, sync_startup
from teamscan.schemas import (
    BatchUploadOut,
    FounderCreate,
    FounderOut,
    FounderUpdate,
    GenerateRequest,
    PipedriveImport,
    PromptPreviewOut,
    QuestionOut,
    QuestionVersionCreate,
    ReportOut,
    StartupCreate,
    StartupOut,
    StartupUpdate,
    StatsOut,
    SurveyComparisonOut,
    SurveyLinkOut,
    SurveySaveResult,
    SurveySubmission,
    SurveyTokenOut,
    TranscriptOut,
)

log = logging.getLogger(__name__)

_DISCONNECT_POLL_SECONDS = 0.25


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = getattr(app.state, "settings", None) or Settings()
    app.state.settings = settings
    init_db(settings.resolved_database_url)
    log.info("teamscan started (database=%s, llm_provider=%s)",
             settings.resolved_database_url.split("://")[0], settings.llm_provider)
    yield


app = FastAPI(
    title="teamscan",
    version="0.1.0",
    description=(
        "Founding-team diagnostics for venture capital deal teams. "
        "Manage startups and founders, collect founder surveys and interview "
        "transcripts, import deals from Pipedrive and generate LLM diagnostic reports. "
        "Admin endpoints require `Authorization: Bearer <ADMIN_API_KEY>`; "
        "survey endpoints are authenticated by the founder's survey token."
    ),
    lifespan=lifespan,
    openapi_tags=[
        {"name": "Startups", "description": "Create, browse and update portfolio startups."},
        {"name": "Founders", "description": "Manage founders, survey links and transcripts."},
        {"name": "Interviews", "description": "Upload interview transcripts (.txt, .pdf, .docx)."},
        {"name": "Analysis", "description": "LLM founding-team diagnostics. Requires AZURE_AI_* or OPENAI_* settings."},
        {"name": "Survey", "description": "Public founder survey, authenticated by survey token."},
        {"name": "Pipedrive", "description": "Read-only Pipedrive CRM proxy and deal import."},
        {"name": "Admin", "description": "Aggregate statistics."},
    ],
)


# ---------------------------------------------------------------------------
# Dependencies & Helpers
# ---------------------------------------------------------------------------

_bearer = HTTPBearer(auto_error=False)


def get_settings(request: Request) -> Settings:
    settings = getattr(request.app.state, "settings", None)
    if settings is None:
        settings = request.app.state.settings = Settings()
    return settings


def db_session() -> Generator[Session, None, None]:
    session = get_session()
    try:
        yield session
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def require_admin(
    credentials: HTTPAuthorizationCredentials | None = Depends(_bearer),
    settings: Settings = Depends(get_settings),
) -> str:
    """Check the admin bearer key; returns the caller identity recorded as ``created_by``."""
    expected = settings.admin_api_key.get_secret_value() if settings.admin_api_key else ""
    supplied = credentials.credentials if credentials else ""
    if not expected or not supplied or not hmac.compare_digest(supplied.encode(), expected.encode()):
        raise HTTPException(401, "Unauthorized", headers={"WWW-Authenticate": "Bearer"})
    return "admin"


def get_llm_client(
    settings: Settings = Depends(get_settings), _admin: str = Depends(require_admin),
) -> Callable[[], LLMClient]:
    """Deferred client construction; configuration is validated when the run reaches the model."""
    return partial(LLMClient.from_settings, settings)


def get_pipedrive_client(
    settings: Settings = Depends(get_settings), _admin: str = Depends(require_admin),
) -> PipedriveClient:
    return PipedriveClient.from_settings(settings)


def get_transcript_store(settings: Settings = Depends(get_settings)) -> transcripts.TranscriptStore:
    return transcripts.TranscriptStore(settings.transcript_dir)


@app.exception_handler(TeamscanError)
async def teamscan_error_handler(request: Request, exc: TeamscanError):
    if exc.status_code >= 500:
        log.error("%s %s failed: %s (%s)", request.method, request.url.path, exc.message, exc.code)
    else:
        log.warning("%s %s rejected: %s (%s)", request.method, request.url.path, exc.message, exc.code)
    body = {"detail": exc.message, "code": exc.code}
    if isinstance(exc, Conflict) and exc.existing_id is not None:
        body["existing_id"] = exc.existing_id
    return JSONResponse(status_code=exc.status_code, content=body)


# ---------------------------------------------------------------------------
# Routes: Startups
# ---------------------------------------------------------------------------


@app.post("/api/startups", response_model=StartupOut, status_code=201,
          tags=["Startups"], summary="Create a startup")
async def create_startup(body: StartupCreate, session: Session = Depends(db_session),
                         _admin: str = Depends(require_admin)):
    startup = Startup(**body.model_dump())
    session.add(startup)
    session.commit()
    return services.startup_summary(startup)


@app.get("/api/startups", response_model=list[StartupOut],
         tags=["Startups"], summary="List startups, newest first")
async def list_startups(session: Session = Depends(db_session), _admin: str = Depends(require_admin)):
    rows = session.execute(select(Startup).order_by(Startup.created_at.desc(), Startup.id.desc())).scalars().all()
    return [services.startup_summary(s) for s in rows]


@app.post("/api/startups/import-pipedrive", response_model=StartupOut, status_code=201,
          tags=["Startups", "Pipedrive"], summary="Create a startup from a Pipedrive deal")
async def import_pipedrive_deal(
    body: PipedriveImport,
    session: Session = Depends(db_session),
    client: PipedriveClient = Depends(get_pipedrive_client),
    _admin: str = Depends(require_admin),
):
    startup = await import_deal(session, client, body.deal_id,
                                pipeline_id=body.pipeline_id, stage_id=body.stage_id)
    session.commit()
    return services.startup_summary(startup)


@app.get("/api/startups/{startup_id}", response_model=StartupOut,
         tags=["Startups"], summary="Get a startup")
async def get_startup(startup_id: int, session: Session = Depends(db_session),
                      _admin: str = Depends(require_admin)):
    return services.startup_summary(services.get_entity(session, Startup, startup_id, "Startup"))


@app.put("/api/startups/{startup_id}", response_model=StartupOut,
         tags=["Startups"], summary="Update startup fields (only non-null values are applied)")
async def update_startup(startup_id: int, body: StartupUpdate, session: Session = Depends(db_session),
                         _admin: str = Depends(require_admin)):
    startup = services.get_entity(session, Startup, startup_id, "Startup")
    services.apply_updates(startup, body.model_dump(exclude_unset=True), services.STARTUP_FIELDS)
    session.commit()
    return services.startup_summary(startup)


@app.delete("/api/startups/{startup_id}", tags=["Startups"],
            summary="Delete a startup with its founders, responses, transcripts and reports")
async def delete_startup(startup_id: int, session: Session = Depends(db_session),
                         _admin: str = Depends(require_admin)):
    startup = services.get_entity(session, Startup, startup_id, "Startup")
    session.delete(startup)
    session.commit()
    log.info("Deleted startup %s", startup_id)
    return {"ok": True}


@app.get("/api/startups/{startup_id}/survey-comparison", response_model=SurveyComparisonOut,
         tags=["Startups", "Survey"], summary="Average survey answer per founder and dimension")
async def startup_survey_comparison(startup_id: int, session: Session = Depends(db_session),
                                    _admin: str = Depends(require_admin)):
    services.get_entity(session, Startup, startup_id, "Startup")
    return survey.survey_comparison(session, startup_id)


@app.get("/api/startups/{startup_id}/prompt", response_model=PromptPreviewOut,
         tags=["Startups", "Analysis"], summary="Preview the analysis prompts without calling the model")
async def preview_prompt(startup_id: int, session: Session = Depends(db_session),
                         settings: Settings = Depends(get_settings), _admin: str = Depends(require_admin)):
    bundle = analysis.prepare_analysis_input(session, startup_id)
    prompts = analysis.build_prompts(bundle, transcript_chars=settings.transcript_prompt_chars)
    return {
        "system_prompt": prompts.system,
        "user_prompt": prompts.user,
        "total_length": prompts.total_length,
        "data_summary": bundle.data_summary(),
    }


@app.post("/api/startups/{startup_id}/sync-pipedrive", response_model=StartupOut,
          tags=["Startups", "Pipedrive"], summary="Refresh CRM fields from the linked Pipedrive deal")
async def sync_pipedrive(
    startup_id: int,
    session: Session = Depends(db_session),
    client: PipedriveClient = Depends(get_pipedrive_client),
    _admin: str = Depends(require_admin),
):
    startup = services.get_entity(session, Startup, startup_id, "Startup")
    await sync_startup(session, client, startup)
    session.commit()
    return services.startup_summary(startup)


# ---------------------------------------------------------------------------
# Routes: Founders
# ---------------------------------------------------------------------------


@app.post("/api/founders", response_model=FounderOut, status_code=201,
          tags=["Founders"], summary="Add a founder (issues a survey token)")
async def create_founder(body: FounderCreate, session: Session = Depends(db_session),
                         settings: Settings = Depends(get_settings), _admin: str = Depends(require_admin)):
    founder = services.create_founder(session, body.model_dump(), settings)
    session.commit()
    return services.founder_summary(founder)


@app.get("/api/founders", response_model=list[FounderOut],
         tags=["Founders"], summary="List founders, optionally for one startup")
async def list_founders(startup_id: int | None = Query(None), session: Session = Depends(db_session),
                        _admin: str = Depends(require_admin)):
    return [services.founder_summary(f) for f in services.list_founders(session, startup_id)]


@app.put("/api/founders/{founder_id}", response_model=FounderOut,
         tags=["Founders"], summary="Update founder fields (only non-null values are applied)")
async def update_founder(founder_id: int, body: FounderUpdate, session: Session = Depends(db_session),
                         _admin: str = Depends(require_admin)):
    founder = services.get_entity(session, Founder, founder_id, "Founder")
    services.apply_updates(founder, body.model_dump(exclude_unset=True), services.FOUNDER_FIELDS)
    session.commit()
    return services.founder_summary(founder)


@app.delete("/api/founders/{founder_id}", tags=["Founders"],
            summary="Delete a founder with their responses and transcripts")
async def delete_founder(founder_id: int, session: Session = Depends(db_session),
                         _admin: str = Depends(require_admin)):
    founder = services.get_entity(session, Founder, founder_id, "Founder")
    session.delete(founder)
    session.commit()
    return {"ok": True}


@app.post("/api/founders/{founder_id}/send-survey", response_model=SurveyLinkOut,
          tags=["Founders", "Survey"], summary="Get the founder's survey link and mark it sent")
async def send_survey(founder_id: int, session: Session = Depends(db_session),
                      settings: Settings = Depends(get_settings), _admin: str = Depends(require_admin)):
    founder = services.get_entity(session, Founder, founder_id, "Founder")
    result = survey.send_survey(session, founder, settings)
    session.commit()
    return result


@app.post("/api/founders/{founder_id}/reset-survey", response_model=SurveyLinkOut,
          tags=["Founders", "Survey"], summary="Delete survey answers and issue a new survey link")
async def reset_survey(founder_id: int, session: Session = Depends(db_session),
                       settings: Settings = Depends(get_settings), _admin: str = Depends(require_admin)):
    founder = services.get_entity(session, Founder, founder_id, "Founder")
    result = survey.reset_survey(session, founder, settings)
    session.commit()
    return result


@app.get("/api/founders/{founder_id}/transcripts", response_model=list[TranscriptOut],
         tags=["Founders", "Interviews"], summary="List a founder's interview transcripts")
async def list_transcripts(founder_id: int, session: Session = Depends(db_session),
                           _admin: str = Depends(require_admin)):
    founder = services.get_entity(session, Founder, founder_id, "Founder")
    rows = sorted(founder.transcripts, key=lambda t: (t.uploaded_at, t.id), reverse=True)
    return [services.transcript_summary(t) for t in rows]


@app.delete("/api/founders/{founder_id}/transcripts/{transcript_id}", tags=["Founders", "Interviews"],
            summary="Delete a transcript and its stored file")
async def delete_transcript(
    founder_id: int,
    transcript_id: int,
    session: Session = Depends(db_session),
    store: transcripts.TranscriptStore = Depends(get_transcript_store),
    _admin: str = Depends(require_admin),
):
    transcript = session.get(InterviewTranscript, transcript_id)
    if transcript is None or transcript.founder_id != founder_id:
        raise NotFound("Transcript not found")
    transcripts.delete_transcript(session, transcript, store)
    session.commit()
    return {"ok": True}


# ---------------------------------------------------------------------------
# Routes: Interviews
# ---------------------------------------------------------------------------


@app.post("/api/interviews/upload", response_model=TranscriptOut, status_code=201,
          tags=["Interviews"], summary="Upload one interview transcript for a founder")
async def upload_interview(
    file: UploadFile = File(...),
    founder_id: int = Form(...),
    session: Session = Depends(db_session),
    store: transcripts.TranscriptStore = Depends(get_transcript_store),
    identity: str = Depends(require_admin),
):
    founder = services.get_entity(session, Founder, founder_id, "Founder")
    data = await file.read()
    transcript = transcripts.save_transcript(
        session, founder, filename=file.filename or "", content_type=file.content_type,
        data=data, store=store, uploaded_by=identity,
    )
    session.commit()
    return services.transcript_summary(transcript)


@app.post("/api/interviews/upload-batch", response_model=BatchUploadOut,
          tags=["Interviews"], summary="Upload several transcripts; each file succeeds or fails on its own")
async def upload_interview_batch(
    files: list[UploadFile] = File(...),
    founder_id: int = Form(...),
    session: Session = Depends(db_session),
    store: transcripts.TranscriptStore = Depends(get_transcript_store),
    identity: str = Depends(require_admin),
):
    uploads = [
        transcripts.UploadFile(filename=f.filename or "", content_type=f.content_type, data=await f.read())
        for f in files
    ]
    result = transcripts.upload_batch(session, founder_id, uploads, store=store, uploaded_by=identity)
    if not result.succeeded:
        return JSONResponse(status_code=400, content=result.to_dict())
    return result.to_dict()


# ---------------------------------------------------------------------------
# Routes: Analysis
# ---------------------------------------------------------------------------


async def _wait_for_disconnect(request: Request) -> None:
    while not await request.is_disconnected():
        await asyncio.sleep(_DISCONNECT_POLL_SECONDS)


@app.post("/api/analysis/generate", response_model=ReportOut, status_code=201,
          tags=["Analysis"], summary="Generate a new diagnostic report for a startup via LLM")
async def generate_analysis(
    body: GenerateRequest,
    request: Request,
    session: Session = Depends(db_session),
    settings: Settings = Depends(get_settings),
    get_client: Callable[[], LLMClient] = Depends(get_llm_client),
    identity: str = Depends(require_admin),
):
    run = analysis.AnalysisRun(body.startup_id)
    task = asyncio.create_task(analysis.generate_report(
        session, body.startup_id, get_client, settings=settings, created_by=identity, run=run,
    ))
    watcher = asyncio.create_task(_wait_for_disconnect(request))
    done, _ = await asyncio.wait({task, watcher}, return_when=asyncio.FIRST_COMPLETED)
    if task not in done:
        task.cancel()
        with suppress(asyncio.CancelledError):
            await task
        session.rollback()
        log.info("Client disconnected; analysis for startup %s cancelled in %s", body.startup_id, run.state.value)
        raise HTTPException(499, "Client closed request")
    watcher.cancel()
    with suppress(asyncio.CancelledError):
        await watcher
    report = task.result()
    session.commit()
    return services.report_summary(report)


@app.get("/api/reports/{startup_id}", response_model=ReportOut,
         tags=["Analysis"], summary="Get the latest diagnostic report for a startup")
async def get_latest_report(startup_id: int, session: Session = Depends(db_session),
                            _admin: str = Depends(require_admin)):
    services.get_entity(session, Startup, startup_id, "Startup")
    report = services.latest_report(session, startup_id)
    if report is None:
        raise NotFound("No report has been generated for this startup yet")
    return services.report_summary(report)


@app.get("/api/reports/{startup_id}/history", response_model=list[ReportOut],
         tags=["Analysis"], summary="List all diagnostic reports for a startup, newest first")
async def get_report_history(startup_id: int, session: Session = Depends(db_session),
                             _admin: str = Depends(require_admin)):
    services.get_entity(session, Startup, startup_id, "Startup")
    return [services.report_summary(r) for r in services.report_history(session, startup_id)]


# ---------------------------------------------------------------------------
# Routes: Survey (public, token-authenticated)
# ---------------------------------------------------------------------------


def _question_out(q) -> dict:
    return {"id": q.id, "version": q.version, "dimension": q.dimension,
            "question_text": q.question_text, "question_order": q.question_order}


@app.get("/api/survey/questions", response_model=list[QuestionOut],
         tags=["Survey"], summary="Current survey questions in display order")
async def get_survey_questions(session: Session = Depends(db_session)):
    return [_question_out(q) for q in survey.current_questions(session)]


@app.post("/api/survey/questions", response_model=list[QuestionOut], status_code=201,
          tags=["Survey"], summary="Publish a new survey question version")
async def publish_survey_questions(body: QuestionVersionCreate, session: Session = Depends(db_session),
                                   _admin: str = Depends(require_admin)):
    rows = survey.publish_question_version(session, [(q.dimension, q.question_text) for q in body.questions])
    session.commit()
    return [_question_out(q) for q in rows]


@app.get("/api/survey/token/{token}", response_model=SurveyTokenOut,
         tags=["Survey"], summary="Resolve a survey token to its founder")
async def resolve_survey_token(token: str, session: Session = Depends(db_session)):
    founder = survey.resolve_token(session, token)
    return {"founder_id": founder.id, "founder_name": founder.full_name,
            "survey_status": founder.survey_status}


@app.post("/api/survey/save", response_model=SurveySaveResult,
          tags=["Survey"], summary="Autosave survey answers (upsert)")
async def save_survey(body: SurveySubmission, session: Session = Depends(db_session)):
    founder = survey.resolve_token(session, body.token)
    saved = survey.save_responses(session, founder, [(r.question_id, r.response_value) for r in body.responses])
    session.commit()
    return {"success": True, "saved": saved, "message": "Progress saved"}


@app.post("/api/survey/submit", response_model=SurveySaveResult,
          tags=["Survey"], summary="Submit the survey; the link cannot be used afterwards")
async def submit_survey(body: SurveySubmission, session: Session = Depends(db_session)):
    founder = survey.resolve_token(session, body.token)
    saved = survey.submit_survey(session, founder, [(r.question_id, r.response_value) for r in body.responses])
    session.commit()
    return {"success": True, "saved": saved, "message": "Survey submitted"}


# ---------------------------------------------------------------------------
# Routes: Pipedrive (read-only proxy)
# ---------------------------------------------------------------------------


@app.get("/api/pipedrive/pipelines", tags=["Pipedrive"], summary="List Pipedrive pipelines")
async def pipedrive_pipelines(client: PipedriveClient = Depends(get_pipedrive_client),
                              _admin: str = Depends(require_admin)):
    return await client.get_pipelines()


@app.get("/api/pipedrive/pipelines/{pipeline_id}/stages", tags=["Pipedrive"],
         summary="List the stages of a pipeline")
async def pipedrive_stages(pipeline_id: int, client: PipedriveClient = Depends(get_pipedrive_client),
                           _admin: str = Depends(require_admin)):
    return await client.get_pipeline_stages(pipeline_id)


@app.get("/api/pipedrive/pipelines/{pipeline_id}/deals", tags=["Pipedrive"],
         summary="All in-progress deals of a pipeline (won and lost deals excluded)")
async def pipedrive_pipeline_deals(
    pipeline_id: int,
    status: str | None = Query(None),
    limit: int = Query(500, ge=1, le=500),
    start: int = Query(0, ge=0),
    client: PipedriveClient = Depends(get_pipedrive_client),
    _admin: str = Depends(require_admin),
):
    deals = await client.get_active_pipeline_deals(pipeline_id, status=status, limit=limit, start=start)
    return {"deals": deals, "count": len(deals)}


@app.get("/api/pipedrive/pipelines/{pipeline_id}/companies", tags=["Pipedrive"],
         summary="Unique organizations referenced by a pipeline's deals")
async def pipedrive_pipeline_companies(
    pipeline_id: int,
    status: str | None = Query(None),
    client: PipedriveClient = Depends(get_pipedrive_client),
    _admin: str = Depends(require_admin),
):
    companies = await client.get_companies_from_pipeline(pipeline_id, status=status)
    return {"companies": companies, "count": len(companies)}


@app.get("/api/pipedrive/deals/{deal_id}", tags=["Pipedrive"], summary="Get a Pipedrive deal")
async def pipedrive_deal(deal_id: int, client: PipedriveClient = Depends(get_pipedrive_client),
                         _admin: str = Depends(require_admin)):
    return await client.get_deal(deal_id)


@app.get("/api/pipedrive/companies", tags=["Pipedrive"],
         summary="List Pipedrive organizations, or search them with `term`")
async def pipedrive_companies(
    term: str | None = Query(None),
    limit: int | None = Query(None, ge=1, le=500),
    start: int | None = Query(None, ge=0),
    client: PipedriveClient = Depends(get_pipedrive_client),
    _admin: str = Depends(require_admin),
):
    if term:
        if len(term.strip()) < 2:
            raise InvalidInput("Search term must be at least 2 characters")
        return {"companies": await client.search_companies(term.strip(), limit=limit, start=start)}
    return {"companies": await client.get_companies(limit=limit, start=start)}


@app.get("/api/pipedrive/companies/{company_id}", tags=["Pipedrive"],
         summary="Get a Pipedrive organization, optionally with its deals and persons")
async def pipedrive_company(
    company_id: int,
    include_deals: bool = Query(False),
    include_persons: bool = Query(False),
    client: PipedriveClient = Depends(get_pipedrive_client),
    _admin: str = Depends(require_admin),
):
    result: dict = {"company": await client.get_company(company_id)}
    if include_deals:
        result["deals"] = await client.get_company_deals(company_id)
    if include_persons:
        result["persons"] = await client.get_company_persons(company_id)
    return result


# ---------------------------------------------------------------------------
# Routes: Stats
# ---------------------------------------------------------------------------


@app.get("/api/admin/stats", response_model=StatsOut,
         tags=["Admin"], summary="Startup, founder and survey counts")
async def get_stats(session: Session = Depends(db_session), _admin: str = Depends(require_admin)):
    return services.compute_stats(session)


# ---------------------------------------------------------------------------
# Startup
# ---------------------------------------------------------------------------


def main():
    import uvicorn
    settings = Settings()
    logging.basicConfig(
        level=settings.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    uvicorn.run("teamscan.app:app", host="127.0.0.1", port=8000)


if __name__ == "__main__":
    main()
