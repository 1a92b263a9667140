import logging

from sqlalchemy import inspect

from charts_etl.config.connection import get_engine
from charts_etl.models.database import Base

logger = logging.getLogger(__name__)

REQUIRED_TABLES = ['artist', 'track', 'chart_entry', 'ingestion_record', 'chart_config', 'setting']


def drop_and_create_schema(engine=None):
    """Drop existing tables and recreate the schema"""
    engine = engine or get_engine()
    logger.info("Dropping existing chart tables...")
    Base.metadata.drop_all(engine)

    logger.info("Creating new schema...")
    Base.metadata.create_all(engine)
    logger.info("Schema created successfully!")


def ensure_schema_exists(engine=None):
    """Check if schema exists and create it if not"""
    engine = engine or get_engine()
    inspector = inspect(engine)

    existing = inspector.get_table_names()
    tables_exist = all(table in existing for table in REQUIRED_TABLES)

    if not tables_exist:
        logger.info("Some tables are missing, creating schema...")
        Base.metadata.create_all(engine)
        logger.info("Schema created successfully!")
