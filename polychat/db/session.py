from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from polychat.core import config
DATABASE_URL = config.DATABASE_URL

# SQLite connections are shared across FastAPI's worker threads
connect_args = {"check_same_thread": False} if DATABASE_URL.startswith("sqlite") else {}

engine = create_engine(DATABASE_URL, pool_pre_ping=True, connect_args=connect_args)
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)
