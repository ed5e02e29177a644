# auth_server/app/db/initial_data.py
import asyncio
import logging
import sys

from app.db.base import Base
from app.db.session import dispose_engine, get_async_engine, get_session_factory
from app.crud import crud_app_role
import app.models  # noqa: F401

logging.basicConfig(
    level=logging.INFO, format="%(asctime)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)


async def init_db(drop_existing: bool = False) -> None:
    """Cria as tabelas e as roles de aplicação por defeito."""
    engine = get_async_engine()
    async with engine.begin() as conn:
        if drop_existing:
            logger.info("Removendo todas as tabelas existentes (DROP ALL)...")
            await conn.run_sync(Base.metadata.drop_all)
        logger.info("Criando todas as tabelas definidas nos modelos...")
        await conn.run_sync(Base.metadata.create_all)

    async with get_session_factory()() as db:
        created = await crud_app_role.seed_default_roles(db)
        logger.info(f"Roles por defeito criadas: {created}")

    logger.info("Processo de inicialização do banco de dados concluído.")
    await dispose_engine()


async def main() -> None:
    await init_db(drop_existing="--reset" in sys.argv)


if __name__ == "__main__":
    if sys.platform == "win32":
        asyncio.set_event_loop_policy(asyncio.WindowsSelectorEventLoopPolicy())  # type: ignore [attr-defined]
    asyncio.run(main())
