"""Plan job routes — polling and the cross-session resume path."""

from typing import Optional

from fastapi import APIRouter, Depends, Request

from backend.auth import current_user_id
from backend.conversation.models import PlannerMode
from backend.services.jobs import PlanJobView

router = APIRouter()


@router.get("/jobs/recent-completed", response_model=Optional[PlanJobView])
async def get_recent_completed_job(
    request: Request,
    mode: PlannerMode = PlannerMode.CREATE,
    user_id: str = Depends(current_user_id),
):
    """Most recent finished job not yet shown to the user, or null.

    Each completion is returned once; the call acknowledges it.
    """
    return request.app.state.jobs.get_recent_completed_job(user_id, mode)


@router.get("/jobs/{job_id}", response_model=PlanJobView)
async def get_job_status(job_id: str, request: Request, user_id: str = Depends(current_user_id)):
    return request.app.state.jobs.get_job(job_id, user_id)
