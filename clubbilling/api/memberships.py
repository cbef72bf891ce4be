import logging

from fastapi import APIRouter, BackgroundTasks, Depends

from clubbilling.services.container import Services
from clubbilling.utils.deps import get_current_uid, get_services

log = logging.getLogger(__name__)

router = APIRouter(prefix="/clubs", tags=["memberships"])


@router.post("/{club_id}/join-free")
async def join_free(
    club_id: str,
    uid: str = Depends(get_current_uid),
    services: Services = Depends(get_services),
):
    result = await services.memberships.join_free(club_id, uid)
    return result.model_dump()


@router.post("/{club_id}/leave")
async def leave_club(
    club_id: str,
    uid: str = Depends(get_current_uid),
    services: Services = Depends(get_services),
):
    result = await services.memberships.leave_club(club_id, uid)
    return result.model_dump()


@router.post("/{club_id}/checkout")
async def create_checkout(
    club_id: str,
    uid: str = Depends(get_current_uid),
    services: Services = Depends(get_services),
):
    session = await services.checkout.create_member_checkout(club_id, uid)
    return session.model_dump()


async def resume_enforcement(services: Services, club_id: str, host_uid: str) -> None:
    """Keep running the enforcement job after the response went out, until it completes."""
    max_resumes = services.settings.ENFORCEMENT_MAX_RESUMES
    for attempt in range(1, max_resumes + 1):
        try:
            async with services.lock(
                f"require-payment:{club_id}", timeout=services.settings.LOCK_TIMEOUT, retry_count=1
            ):
                result = await services.enforcement.enforce(club_id, host_uid)
        except Exception:
            log.exception("[RequirePayment] resume failed club=%s attempt=%d", club_id, attempt)
            return
        if not result.partial:
            log.info("[RequirePayment] resume complete club=%s attempts=%d", club_id, attempt)
            return
    log.warning("[RequirePayment] resume gave up club=%s after %d attempts", club_id, max_resumes)


@router.post("/{club_id}/require-payment")
async def require_payment(
    club_id: str,
    background: BackgroundTasks,
    uid: str = Depends(get_current_uid),
    services: Services = Depends(get_services),
):
    """
    Called after the host sets a price on a free club.

    Runs the enforcement job inline; if it runs out of time the rest continues
    in the background and ``partial`` tells the host the change is not final yet.
    """
    async with services.lock(
        f"require-payment:{club_id}", timeout=services.settings.LOCK_TIMEOUT, retry_count=1
    ):
        result = await services.enforcement.enforce(club_id, uid)

    if result.partial:
        background.add_task(resume_enforcement, services, club_id, uid)
    return {"ok": True, **result.model_dump(), "resume_scheduled": result.partial}
