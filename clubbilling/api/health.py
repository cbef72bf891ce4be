from fastapi import APIRouter, Depends
from sqlalchemy import text

from clubbilling.services.container import Services
from clubbilling.utils.deps import get_services

router = APIRouter(tags=["health"])


@router.get("/health")
async def health(services: Services = Depends(get_services)):
    async with services.session_factory() as db:
        await db.execute(text("SELECT 1"))
    return {"ok": True}
