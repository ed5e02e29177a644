# auth_server/app/models/oauth2_client.py
from datetime import datetime
from typing import List, Optional
from urllib.parse import urlsplit

from sqlalchemy import String, Text, DateTime, ForeignKey, func
from sqlalchemy.orm import Mapped, mapped_column

from app.db.base import Base

CLIENT_STATUS_ACTIVE = "active"
CLIENT_STATUS_DISABLED = "disabled"


def _path_within(path: str, registered_path: str) -> bool:
    if path == registered_path:
        return True
    return path.startswith(registered_path.rstrip("/") + "/")


class OAuth2Client(Base):
    """
    Representa uma aplicação cliente registrada que pode usar
    esta API como servidor de autorização OAuth2.
    """
    __tablename__ = "oauth2_clients"

    id: Mapped[int] = mapped_column(primary_key=True)
    # client_id é público; do secret só guardamos o hash (mostrado uma única vez no registo)
    client_id: Mapped[str] = mapped_column(String(48), unique=True, index=True, nullable=False)
    client_secret_hash: Mapped[str] = mapped_column(String(255), nullable=False)

    client_name: Mapped[str] = mapped_column(String(200), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(String(500))
    logo_url: Mapped[Optional[str]] = mapped_column(String(500))
    homepage_url: Mapped[Optional[str]] = mapped_column(String(500))
    # Prefixos de redirect URI permitidos, separados por espaço
    redirect_uris_str: Mapped[str] = mapped_column(Text, nullable=False, default="")
    # Scopes que este cliente pode pedir, separados por espaço
    scope_str: Mapped[str] = mapped_column(Text, nullable=False, default="openid profile email roles")
    status: Mapped[str] = mapped_column(String(20), nullable=False, default=CLIENT_STATUS_ACTIVE)

    created_by: Mapped[Optional[int]] = mapped_column(
        ForeignKey("users.id", ondelete="SET NULL"), nullable=True
    )
    created_at: Mapped[datetime] = mapped_column(DateTime, default=func.now())
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=func.now(), onupdate=func.now())

    @property
    def redirect_uris(self) -> List[str]:
        return self.redirect_uris_str.split() if self.redirect_uris_str else []

    @property
    def scopes(self) -> List[str]:
        return self.scope_str.split() if self.scope_str else []

    @property
    def is_active(self) -> bool:
        return self.status == CLIENT_STATUS_ACTIVE

    def check_redirect_uri(self, redirect_uri: str) -> bool:
        """
        Um URI pedido é aceite se o scheme e o host[:porta] forem iguais aos
        de um URI registado e o path for o registado ou estiver abaixo dele
        (fronteira de segmento: /cb aceita /cb/x mas não /cb-x).
        """
        if not redirect_uri:
            return False
        requested = urlsplit(redirect_uri)
        if not requested.scheme or not requested.netloc or requested.fragment:
            return False
        for registered_uri in self.redirect_uris:
            registered = urlsplit(registered_uri)
            if (
                requested.scheme.lower() == registered.scheme.lower()
                and requested.netloc.lower() == registered.netloc.lower()
                and _path_within(requested.path, registered.path)
            ):
                return True
        return False

    def check_scope(self, scope: str) -> bool:
        # Verifica se todos os scopes pedidos estão nos scopes permitidos
        requested_scopes = set(scope.split())
        allowed_scopes = set(self.scopes)
        return requested_scopes.issubset(allowed_scopes)
