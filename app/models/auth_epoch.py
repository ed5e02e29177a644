# auth_server/app/models/auth_epoch.py
from datetime import datetime

from sqlalchemy import Integer, DateTime, func
from sqlalchemy.orm import Mapped, mapped_column

from app.db.base import Base

GLOBAL_EPOCH_ID = 1


class AuthEpoch(Base):
    """
    Época global de sessões (linha única). Um token só é válido se a
    época gravada na emissão for >= à época atual; incrementar a época
    invalida todos os tokens e sessões emitidos antes.
    """
    __tablename__ = "auth_epochs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    value: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=func.now(), onupdate=func.now())
