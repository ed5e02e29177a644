# auth_server/app/api/endpoints/mgmt.py
# Endpoints internos, protegidos por X-API-Key (dependência aplicada no main.py)
from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from app.crud import crud_auth_epoch
from app.db.session import get_db
from app.services import audit_service

router = APIRouter()


@router.post("/sessions/invalidate-all")
async def invalidate_all_sessions(db: AsyncSession = Depends(get_db)):
    """
    Incrementa a época global: todas as sessões, access tokens e refresh
    tokens emitidos até agora deixam de ser aceites.
    """
    new_epoch = await crud_auth_epoch.bump_epoch(db)
    audit_service.record("sessions_invalidated", "AuthEpoch", new_epoch, "All sessions invalidated")
    return {"epoch": new_epoch}
