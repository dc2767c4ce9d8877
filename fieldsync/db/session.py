from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from fieldsync.core.config import settings

DATABASE_URL = settings.SQLALCHEMY_DATABASE_URI

# SQLite needs special connect args; other engines do not
connect_args = {"check_same_thread": False} if DATABASE_URL.startswith("sqlite") else {}

engine = create_engine(DATABASE_URL, pool_pre_ping=True, connect_args=connect_args)

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
