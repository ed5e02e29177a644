# Importar todos os modelos para registar as tabelas em Base.metadata
from app.models import (  # noqa: F401
    user,
    oauth2_client,
    oauth2_authorization_code,
    oauth2_token,
    two_factor,
    app_role,
    auth_epoch,
)
