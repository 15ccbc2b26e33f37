from sqlalchemy import create_engine, event
from sqlalchemy.orm import sessionmaker
from models import Base
import config


def _enable_sqlite_savepoints(engine):
    """pysqlite не умеет SAVEPOINT без явного BEGIN"""

    @event.listens_for(engine, "connect")
    def do_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def do_begin(conn):
        conn.exec_driver_sql("BEGIN")


def get_session(database_url: str = None, **engine_kwargs):
    """Создает и возвращает фабрику сессий SQLAlchemy и движок базы данных"""
    url = database_url or config.DATABASE_URL
    is_sqlite = url.startswith("sqlite")
    connect_args = {"check_same_thread": False} if is_sqlite else {}

    engine = create_engine(url, connect_args=connect_args, echo=config.DATABASE_ECHO, **engine_kwargs)
    if is_sqlite:
        _enable_sqlite_savepoints(engine)

    session_factory = sessionmaker(bind=engine)
    return session_factory, engine


def init_tables(engine):
    """Инициализирует таблицы базы данных"""
    Base.metadata.create_all(engine)


Session, _engine = get_session()
