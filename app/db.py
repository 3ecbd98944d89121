import logging

from sqlalchemy import create_engine, event
from sqlalchemy.orm import sessionmaker, declarative_base

from app.config import DATABASE_URL

logger = logging.getLogger(__name__)


def configure_sqlite(engine):
    """Make every SQLite transaction take the write lock up front.

    pysqlite defers BEGIN until the first write, which lets two bookings read
    the same free slot before either inserts. BEGIN IMMEDIATE serializes them.
    """
    @event.listens_for(engine, "connect")
    def _on_connect(dbapi_connection, _connection_record):
        dbapi_connection.isolation_level = None
        dbapi_connection.execute("PRAGMA foreign_keys=ON")

    @event.listens_for(engine, "begin")
    def _on_begin(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")

    return engine


def make_engine(url: str):
    if url.startswith("sqlite"):
        engine = create_engine(url, connect_args={"check_same_thread": False, "timeout": 30})
        return configure_sqlite(engine)
    return create_engine(url, pool_pre_ping=True)


engine = make_engine(DATABASE_URL)
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

Base = declarative_base()

def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()

def init_db(bind=None):
    # Import models here to create tables
    from app.models import Reservation, TimeBlock, PaymentTransaction  # noqa: F401
    Base.metadata.create_all(bind=bind or engine)
    logger.info("Database tables ready")
