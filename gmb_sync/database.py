"""
Configuration de la base de données SQLAlchemy
"""
from sqlalchemy import create_engine
from sqlalchemy.orm import declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool
from .config import settings


def _normalize_url(url: str) -> str:
    # Heroku/Render/Supabase fournissent postgres:// ; SQLAlchemy veut postgresql+psycopg://
    if url.startswith("postgres://"):
        url = url.replace("postgres://", "postgresql+psycopg://", 1)
    elif url.startswith("postgresql://"):
        url = url.replace("postgresql://", "postgresql+psycopg://", 1)

    # SSL obligatoire pour Postgres managé
    if url.startswith("postgresql") and "sslmode=" not in url:
        separator = "&" if "?" in url else "?"
        url = f"{url}{separator}sslmode=require"
    return url


database_url = _normalize_url(settings.DATABASE_URL)

engine_kwargs = {"echo": settings.DEBUG and settings.ENVIRONMENT != "test"}
if database_url.startswith("sqlite"):
    # SQLite (tests/dev): une seule connexion partagée pour la base in-memory
    engine_kwargs["connect_args"] = {"check_same_thread": False}
    if ":memory:" in database_url or database_url in ("sqlite://", "sqlite+pysqlite://"):
        engine_kwargs["poolclass"] = StaticPool
else:
    engine_kwargs["pool_pre_ping"] = True  # Vérifie la connexion avant utilisation

engine = create_engine(database_url, **engine_kwargs)

# Session factory
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

# Base pour les modèles
Base = declarative_base()


def get_db():
    """
    Dependency injection pour FastAPI
    Usage: def my_route(db: Session = Depends(get_db))
    """
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def init_db() -> None:
    """Crée les tables manquantes (dev/tests, pas de migrations)"""
    from . import models  # noqa: F401  (enregistre les modèles sur Base)

    Base.metadata.create_all(bind=engine)
