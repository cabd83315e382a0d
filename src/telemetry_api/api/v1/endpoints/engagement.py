"""Engagement, property interest and activity endpoints for agents reviewing their clients."""

from __future__ import annotations

from typing import Any, Literal

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from telemetry_api.api.dependencies.security import require_admin_api_key
from telemetry_api.api.dependencies.services import get_listing_lookup
from telemetry_api.db.session import get_session
from telemetry_api.services.analytics.listings import ListingLookup
from telemetry_api.services.engagement import ClientActivityTimeline, EngagementScorer, PropertyInterestTracker

router = APIRouter(
    prefix="/engagement",
    tags=["Engagement"],
    dependencies=[Depends(require_admin_api_key)],
)

SortField = Literal["score", "last_activity_at", "days_since_activity", "trend_change"]


@router.get("/scores/{user_id}", summary="Current engagement score for a client")
async def get_score(
    user_id: int,
    calculate_if_missing: bool = Query(True),
    session: AsyncSession = Depends(get_session),
) -> dict[str, Any]:
    score = await EngagementScorer(session).get_score(user_id, calculate_if_missing=calculate_if_missing)
    if score is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Score not found")
    return {"success": True, "data": score}


@router.get("/agents/{agent_id}/clients", summary="Scores for an agent's active clients")
async def agent_client_scores(
    agent_id: int,
    sort_by: SortField = Query("score"),
    order: Literal["asc", "desc"] = Query("desc"),
    session: AsyncSession = Depends(get_session),
) -> dict[str, Any]:
    clients = await EngagementScorer(session).get_agent_client_scores(agent_id, sort_by=sort_by, order=order)
    return {"success": True, "data": {"agent_id": agent_id, "clients": clients, "total": len(clients)}}


@router.get("/clients/{user_id}/properties", summary="Listings a client is most interested in")
async def client_properties(
    user_id: int,
    limit: int = Query(10, ge=1, le=50),
    session: AsyncSession = Depends(get_session),
    listing_lookup: ListingLookup = Depends(get_listing_lookup),
) -> dict[str, Any]:
    tracker = PropertyInterestTracker(session, listing_lookup=listing_lookup)
    summary = await tracker.get_summary(user_id)
    properties = await tracker.get_top_properties(user_id, limit=limit)
    return {"success": True, "data": {"user_id": user_id, "summary": summary, "properties": properties}}


@router.get("/clients/{user_id}/cities", summary="Cities a client keeps looking at")
async def client_cities(
    user_id: int,
    limit: int = Query(5, ge=1, le=20),
    session: AsyncSession = Depends(get_session),
) -> dict[str, Any]:
    cities = await PropertyInterestTracker(session).get_cities_of_interest(user_id, limit=limit)
    return {"success": True, "data": {"user_id": user_id, "cities": cities}}


@router.get("/clients/{user_id}/timeline", summary="Newest-first activity for a client")
async def client_timeline(
    user_id: int,
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    session: AsyncSession = Depends(get_session),
) -> dict[str, Any]:
    timeline = await ClientActivityTimeline(session).get(user_id, limit=limit, offset=offset)
    return {"success": True, "data": timeline}
