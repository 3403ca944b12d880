from sqlalchemy import create_engine, text
from sqlalchemy.orm import sessionmaker
from marketpay.config import settings

# SQLite needs cross-thread access for the scheduler thread and TestClient
_connect_args = {"check_same_thread": False} if settings.database_url.startswith("sqlite") else {}

engine = create_engine(settings.database_url, pool_pre_ping=True, connect_args=_connect_args)
SessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False)

def ping_db() -> bool:
    with engine.connect() as conn:
        conn.execute(text("SELECT 1"))
    return True
