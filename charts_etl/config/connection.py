import os
from dotenv import load_dotenv
import sqlalchemy as sa
from sqlalchemy.orm import sessionmaker

load_dotenv()

db_config = {
    "host": os.environ.get("DB_HOST", "localhost"),
    "port": int(os.environ.get("DB_PORT", 5432)),
    "database": os.environ.get("DB_NAME", "spotify_charts"),
    "user": os.environ.get("DB_USER", "postgres"),
    "password": os.environ.get("DB_PASSWORD", "postgres"),
    "connect_timeout": 60,
    "application_name": "charts_etl",
}


def get_connection_string() -> str:
    """DATABASE_URL wins over the individual DB_* variables"""
    if url := os.environ.get("DATABASE_URL"):
        return url
    return f"postgresql://{db_config['user']}:{db_config['password']}@{db_config['host']}:{db_config['port']}/{db_config['database']}"


_engine = None
_session_factory = None


def get_engine():
    global _engine
    if _engine is None:
        connection_string = get_connection_string()
        if connection_string.startswith("postgresql"):
            _engine = sa.create_engine(
                connection_string,
                pool_size=10,
                max_overflow=20,
                pool_timeout=60,
                pool_recycle=1800,
                pool_pre_ping=True,
                connect_args={
                    "connect_timeout": db_config["connect_timeout"],
                    "application_name": db_config["application_name"],
                },
            )
        else:
            _engine = sa.create_engine(connection_string, pool_pre_ping=True)
    return _engine


def get_session_factory():
    global _session_factory
    if _session_factory is None:
        _session_factory = sessionmaker(bind=get_engine())
    return _session_factory


def get_session():
    return get_session_factory()()
