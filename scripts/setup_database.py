#!/usr/bin/env python3
"""
Database setup script for the charts ETL pipeline
This script creates all necessary tables and the default settings
"""

import argparse
import sys

from sqlalchemy import inspect, text
from sqlalchemy.exc import SQLAlchemyError

from charts_etl.config.connection import get_engine, get_session
from charts_etl.config.settings import DEDUP_SETTING_KEY, LEAD_SCORE_CATEGORY, SettingsStore
from charts_etl.models.schema import REQUIRED_TABLES, drop_and_create_schema, ensure_schema_exists

# (category, key) -> value, written only where no value exists yet
DEFAULT_SETTINGS = {
    ('csv_upload', DEDUP_SETTING_KEY): 'show-warning',
    ('json_api', DEDUP_SETTING_KEY): 'skip',
    ('playlist', DEDUP_SETTING_KEY): 'skip',
    ('cron', 'enabled'): False,
    ('json_api', 'enabled'): False,
    ('playlist', 'enabled'): False,
    ('playlist', 'regions'): ['global'],
    (LEAD_SCORE_CATEGORY, 'daysTop10Multiplier'): 15,
    (LEAD_SCORE_CATEGORY, 'daysTop20Multiplier'): 8,
    (LEAD_SCORE_CATEGORY, 'avgPositionMultiplier'): 10,
    (LEAD_SCORE_CATEGORY, 'bestPositionMultiplier'): 5,
}


def test_connection():
    """Test database connection"""
    print("Testing database connection...")
    try:
        session = get_session()
        result = session.execute(text("SELECT 1 as test")).fetchone()
        session.close()

        if result and result[0] == 1:
            print("✓ Database connection successful")
            return True
        else:
            print("✗ Database query failed")
            return False

    except SQLAlchemyError as e:
        print(f"✗ Database connection failed: {e}")
        return False


def check_tables():
    """Check which tables exist"""
    print("Checking existing tables...")
    existing_tables = inspect(get_engine()).get_table_names()

    for table in REQUIRED_TABLES:
        if table in existing_tables:
            print(f"✓ {table} table exists")
        else:
            print(f"✗ {table} table missing")

    return all(table in existing_tables for table in REQUIRED_TABLES)


def insert_default_settings():
    """Insert default settings that are not configured yet"""
    print("Inserting default settings...")
    session = get_session()
    settings = SettingsStore(session)
    inserted = 0
    try:
        for (category, key), value in DEFAULT_SETTINGS.items():
            if settings.get(category, key) is None:
                settings.set(category, key, value)
                inserted += 1
    except SQLAlchemyError as e:
        print(f"✗ Error inserting settings: {e}")
        return False
    finally:
        session.close()

    print(f"✓ Inserted {inserted} settings ({len(DEFAULT_SETTINGS) - inserted} already configured)")
    return True


def main():
    """Main setup function"""
    parser = argparse.ArgumentParser(description='Charts ETL database setup')
    parser.add_argument('--reset', action='store_true', help='Drop and recreate all tables')
    args = parser.parse_args()

    print("=== Charts ETL Database Setup ===")
    print()

    # Test connection first
    if not test_connection():
        print("\nDatabase connection failed. Please check your configuration:")
        print("1. Make sure PostgreSQL is running")
        print("2. Check your .env file has correct database credentials")
        sys.exit(1)

    print()

    if args.reset:
        drop_and_create_schema()
    else:
        ensure_schema_exists()

    if not check_tables():
        print("\nSome tables are missing. Please check for errors above.")
        sys.exit(1)

    print()

    if not insert_default_settings():
        print("\nFailed to insert settings. Exiting.")
        sys.exit(1)

    print()
    print("=== Database Setup Complete ===")
    print()
    print("You can now run:")
    print("python scripts/run_etl_pipeline.py")
    print("or")
    print("python -m charts_etl.pipelines.orchestrator --mode cron")


if __name__ == "__main__":
    main()
