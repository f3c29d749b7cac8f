from sqlalchemy import create_engine
from sqlalchemy.orm import declarative_base, sessionmaker

from isp_support.config import settings

Base = declarative_base()


def build_engine(database_url: str | None = None, **kwargs):
    return create_engine(database_url or settings.database_url, pool_pre_ping=True, **kwargs)


engine = build_engine()
SessionLocal = sessionmaker(autocommit=False, autoflush=False, expire_on_commit=False, bind=engine)
