from sqlalchemy import create_engine
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker

from dynacrud.core.config import settings

# SQLite connections are handed between FastAPI worker threads
connect_args = {"check_same_thread": False} if settings.DATABASE_URL.startswith("sqlite") else {}

engine = create_engine(settings.DATABASE_URL, echo=settings.SQL_ECHO, connect_args=connect_args)

# Sessions keep loaded values after commit so results can still be read
SessionLocal = sessionmaker(bind=engine, class_=Session, expire_on_commit=False)


# This is the "Bridge" that gives the routes access to the database
def get_db():
    with SessionLocal() as session:
        yield session


# Bookkeeping tables (audit log, workflow history) are declared on this Base
class Base(DeclarativeBase):
    pass
