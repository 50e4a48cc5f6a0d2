"""Pipedrive CRM (API v1) client and deal import.

Read-only: nothing here creates, changes or deletes CRM records. The API
token travels in the ``x-api-token`` header, so it never appears in URLs or
logs.
"""
from __future__ import annotations

import logging
from typing import Any

import httpx
from sqlalchemy import select
from sqlalchemy.orm import Session

from teamscan.config import PipedriveConfig, Settings
from teamscan.errors import Conflict, InvalidInput, NotFound, PipedriveError, UpstreamTimeout
from teamscan.models import Startup
from teamscan.utils import parse_amount, parse_timestamp

log = logging.getLogger(__name__)

_TIMEOUT = 30.0
PAGE_LIMIT = 500
_CLOSED_STATUSES = {"won", "lost"}


class PipedriveClient:
    def __init__(self, config: PipedriveConfig, transport: httpx.AsyncBaseTransport | None = None):
        self.config = config
        self._transport = transport

    @classmethod
    def from_settings(cls, settings: Settings) -> PipedriveClient:
        return cls(settings.pipedrive_config())

    async def _get(self, path: str, params: dict[str, Any] | None = None) -> Any:
        """GET *path* and unwrap the ``{success, data}`` envelope."""
        query = {k: v for k, v in (params or {}).items() if v is not None}
        headers = {
            "x-api-token": self.config.api_token.get_secret_value(),
            "Accept": "application/json",
        }
        try:
            async with httpx.AsyncClient(
                base_url=self.config.base_url,
                timeout=httpx.Timeout(_TIMEOUT),
                headers=headers,
                transport=self._transport,
            ) as client:
                resp = await client.get(path, params=query)
        except httpx.TimeoutException as exc:
            raise UpstreamTimeout(f"Pipedrive request timed out: {path}") from exc
        except httpx.HTTPError as exc:
            raise PipedriveError(f"Unable to reach Pipedrive: {type(exc).__name__}", retryable=True) from exc

        try:
            body = resp.json()
        except ValueError:
            body = None

        if resp.status_code >= 400:
            message = None
            if isinstance(body, dict):
                message = body.get("error") or body.get("error_info")
            log.warning("Pipedrive %s returned %d", path, resp.status_code)
            if resp.status_code == 404:
                raise NotFound(message or f"Pipedrive resource not found: {path}")
            raise PipedriveError(
                message or f"Pipedrive API error: {resp.status_code} {resp.reason_phrase}",
                retryable=resp.status_code == 429 or resp.status_code >= 500,
            )
        if not isinstance(body, dict):
            raise PipedriveError(f"Pipedrive returned a non-JSON response for {path}")
        if body.get("success") is False:
            raise PipedriveError(body.get("error") or "Pipedrive API request failed")
        return body.get("data")

    # -- Organizations -------------------------------------------------------

    async def get_companies(self, *, limit: int | None = None, start: int | None = None,
                            filter_id: int | None = None) -> list[dict]:
        return await self._get("/organizations", {"limit": limit, "start": start, "filter_id": filter_id}) or []

    async def get_company(self, company_id: int) -> dict:
        data = await self._get(f"/organizations/{company_id}")
        if not data:
            raise NotFound(f"Pipedrive organization {company_id} not found")
        return data

    async def search_companies(self, term: str, *, limit: int | None = None,
                               start: int | None = None) -> list[dict]:
        data = await self._get("/organizations/search", {"term": term, "limit": limit, "start": start})
        # Search wraps hits as {"items": [{"item": {...}, "result_score": ...}]}
        if isinstance(data, dict):
            return [hit.get("item", hit) for hit in data.get("items") or []]
        return data or []

    async def get_company_deals(self, company_id: int, *, limit: int | None = None,
                                start: int | None = None) -> list[dict]:
        return await self._get(f"/organizations/{company_id}/deals", {"limit": limit, "start": start}) or []

    async def get_company_persons(self, company_id: int, *, limit: int | None = None,
                                  start: int | None = None) -> list[dict]:
        return await self._get(f"/organizations/{company_id}/persons", {"limit": limit, "start": start}) or []

    # -- Deals and pipelines ---------------------------------------------------

    async def get_deals(self, *, limit: int | None = None, start: int | None = None,
                        status: str | None = None, pipeline_id: int | None = None,
                        stage_id: int | None = None, filter_id: int | None = None) -> list[dict]:
        return await self._get("/deals", {
            "limit": limit, "start": start, "status": status,
            "pipeline_id": pipeline_id, "stage_id": stage_id, "filter_id": filter_id,
        }) or []

    async def get_deal(self, deal_id: int) -> dict:
        data = await self._get(f"/deals/{deal_id}")
        if not data:
            raise PipedriveError(f"Invalid deal data from Pipedrive for deal {deal_id}")
        return data

    async def get_pipelines(self) -> list[dict]:
        return await self._get("/pipelines") or []

    async def get_pipeline_stages(self, pipeline_id: int) -> list[dict]:
        return await self._get("/stages", {"pipeline_id": pipeline_id}) or []

    async def iter_pipeline_deals(self, pipeline_id: int, *, status: str = "all_not_deleted",
                                  limit: int = PAGE_LIMIT, start: int = 0):
        """Yield every deal of a pipeline, page by page, until a short page."""
        while True:
            page = await self.get_deals(pipeline_id=pipeline_id, limit=limit, start=start, status=status)
            for deal in page:
                yield deal
            if len(page) < limit:
                return
            start += limit

    async def get_active_pipeline_deals(self, pipeline_id: int, *, status: str | None = None,
                                        limit: int = PAGE_LIMIT, start: int = 0) -> list[dict]:
        """All deals of a pipeline that are neither won nor lost."""
        return [
            d async for d in self.iter_pipeline_deals(
                pipeline_id, status=status or "all_not_deleted", limit=limit, start=start)
            if str(d.get("status") or "").lower() not in _CLOSED_STATUSES
        ]

    async def get_companies_from_pipeline(self, pipeline_id: int, *, status: str | None = None,
                                          limit: int = PAGE_LIMIT) -> list[dict]:
        """Unique organizations referenced by the pipeline's deals.

        Organizations that cannot be fetched (typically deleted) are logged and skipped.
        """
        company_ids: list[int] = []
        deal_count = 0
        async for deal in self.iter_pipeline_deals(pipeline_id, status=status or "all_not_deleted", limit=limit):
            deal_count += 1
            org_id = org_id_of(deal)
            if org_id is not None and org_id not in company_ids:
                company_ids.append(org_id)
        log.info("Pipeline %s: %d deals, %d unique companies", pipeline_id, deal_count, len(company_ids))

        companies: list[dict] = []
        failed: list[int] = []
        for company_id in company_ids:
            try:
                company = await self.get_company(company_id)
            except (NotFound, PipedriveError) as exc:
                failed.append(company_id)
                log.warning("Failed to fetch company %s: %s", company_id, exc.message)
                continue
            if company.get("id"):
                companies.append(company)
        if failed:
            log.info("Fetched %d companies, %d failed (likely deleted): %s",
                     len(companies), len(failed), failed[:10])
        return companies


def org_id_of(deal: dict) -> int | None:
    """Organization id of a deal; ``org_id`` may be a number or an embedded ``{value: id}`` record."""
    raw = deal.get("org_id") or deal.get("organization_id")
    if isinstance(raw, dict):
        raw = raw.get("value")
    if isinstance(raw, bool) or not isinstance(raw, int) or raw <= 0:
        return None
    return raw


def _owner_name(deal: dict) -> str | None:
    owner = deal.get("owner_name")
    if not owner and isinstance(deal.get("user_id"), dict):
        owner = deal["user_id"].get("name")
    return owner or None


async def _stage_name(client: PipedriveClient, deal: dict, pipeline_id: int | None) -> str | None:
    stage_id = deal.get("stage_id")
    pid = deal.get("pipeline_id") or pipeline_id
    if not stage_id or not pid:
        return None
    try:
        stages = await client.get_pipeline_stages(pid)
    except (NotFound, PipedriveError, UpstreamTimeout) as exc:
        log.warning("Could not fetch stage name for stage %s: %s", stage_id, exc.message)
        return None
    return next((s.get("name") for s in stages if s.get("id") == stage_id), None)


# ---------------------------------------------------------------------------
# Import / sync
# ---------------------------------------------------------------------------


async def import_deal(
    session: Session,
    client: PipedriveClient,
    deal_id: int,
    *,
    pipeline_id: int | None = None,
    stage_id: int | None = None,
) -> Startup:
    """Create a startup from a Pipedrive deal (caller must commit).

    Raises ``Conflict`` when the deal has already been imported.
    """
    if not deal_id:
        raise InvalidInput("Deal ID is required")
    existing = session.execute(
        select(Startup.id).where(Startup.pipedrive_deal_id == deal_id)
    ).scalar_one_or_none()
    if existing is not None:
        raise Conflict("Startup already exists for this deal", existing_id=existing)

    deal = await client.get_deal(deal_id)
    stage_name = await _stage_name(client, deal, pipeline_id)

    company_name = deal.get("title") or deal.get("name") or "Unknown Company"
    org_name = deal.get("org_name")
    org_id = org_id_of(deal)
    if org_name:
        company_name = org_name
    elif org_id is not None:
        try:
            company = await client.get_company(org_id)
        except (NotFound, PipedriveError, UpstreamTimeout) as exc:
            log.warning("Could not fetch organization %s for deal %s: %s", org_id, deal_id, exc.message)
        else:
            company_name = company.get("name") or company_name

    deal_stage = deal.get("stage_id")
    startup = Startup(
        company_name=company_name,
        pipedrive_deal_id=deal_id,
        pipedrive_stage_id=stage_id or deal_stage,
        pipedrive_pipeline_id=pipeline_id or deal.get("pipeline_id"),
        pipedrive_deal_created_at=parse_timestamp(deal.get("add_time")),
        pipedrive_deal_updated_at=parse_timestamp(deal.get("update_time")),
        stage=stage_name or (f"Stage {deal_stage}" if deal_stage else None),
        raise_amount=parse_amount(deal.get("value")),
        deal_partner=_owner_name(deal),
    )
    session.add(startup)
    session.flush()
    log.info("Imported Pipedrive deal %s as startup %s (%s)", deal_id, startup.id, company_name)
    return startup


async def sync_startup(session: Session, client: PipedriveClient, startup: Startup) -> Startup:
    """Refresh CRM-derived fields from the linked deal; unknown values keep their current value."""
    if not startup.pipedrive_deal_id:
        raise InvalidInput("This startup was not imported from Pipedrive")
    deal = await client.get_deal(startup.pipedrive_deal_id)
    stage_name = await _stage_name(client, deal, startup.pipedrive_pipeline_id)

    startup.pipedrive_stage_id = deal.get("stage_id") or startup.pipedrive_stage_id
    startup.pipedrive_pipeline_id = deal.get("pipeline_id") or startup.pipedrive_pipeline_id
    startup.pipedrive_deal_created_at = parse_timestamp(deal.get("add_time")) or startup.pipedrive_deal_created_at
    startup.pipedrive_deal_updated_at = parse_timestamp(deal.get("update_time")) or startup.pipedrive_deal_updated_at
    startup.stage = stage_name or startup.stage
    amount = parse_amount(deal.get("value"))
    startup.raise_amount = amount if amount is not None else startup.raise_amount
    startup.deal_partner = _owner_name(deal) or startup.deal_partner
    session.flush()
    log.info("Synced startup %s with Pipedrive deal %s", startup.id, startup.pipedrive_deal_id)
    return startup
