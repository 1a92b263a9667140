import logging
from datetime import datetime

from sqlalchemy import func
from sqlalchemy.exc import SQLAlchemyError

from charts_etl.config.connection import get_session
from charts_etl.exceptions import PersistenceFailure
from charts_etl.models.canonical import IngestionStatus, SnapshotKey
from charts_etl.models.database import Artist, ChartConfig, ChartEntry, IngestionRecord, Track

logger = logging.getLogger(__name__)


def region_filter(column, region):
    """Global charts are stored as NULL, so they need IS NULL rather than = 'global'"""
    if region is None:
        return column.is_(None)
    return column == region


class PostgresLoader:
    """Handles all database reads and writes for chart ingestion

    Args:
        session: SQLAlchemy session; one is opened from the configured engine when omitted
    """

    def __init__(self, session=None):
        self.session = session
        self._owns_session = session is None

    def get_session(self):
        """Get or create database session"""
        if not self.session:
            self.session = get_session()
            self._owns_session = True
        return self.session

    def close_session(self):
        """Close database session if this loader opened it"""
        if self.session and self._owns_session:
            self.session.close()
            self.session = None

    def commit(self):
        session = self.get_session()
        try:
            session.commit()
        except SQLAlchemyError as e:
            session.rollback()
            raise PersistenceFailure(f"Commit failed: {e}") from e

    def rollback(self):
        self.get_session().rollback()

    # snapshot queries

    @staticmethod
    def _snapshot_filters(key: SnapshotKey) -> list:
        return [
            ChartEntry.date == key.date,
            ChartEntry.chart_type == key.chart_type.value,
            ChartEntry.chart_period == key.chart_period.value,
            ChartEntry.platform == key.platform,
            region_filter(ChartEntry.region, key.region),
        ]

    def _snapshot_query(self, key: SnapshotKey):
        return self.get_session().query(ChartEntry).filter(*self._snapshot_filters(key))

    def count_snapshot(self, key: SnapshotKey) -> int:
        try:
            return self._snapshot_query(key).count()
        except SQLAlchemyError as e:
            self.rollback()
            raise PersistenceFailure(f"Error checking existing entries for {key}: {e}") from e

    def sample_snapshot(self, key: SnapshotKey, limit: int = 10) -> list:
        """A few existing entries of a snapshot, best positions first"""
        session = self.get_session()
        try:
            rows = (
                session.query(ChartEntry.position, Track.name, Artist.name)
                .join(Track, ChartEntry.track_id == Track.id)
                .join(Artist, ChartEntry.artist_id == Artist.id)
                .filter(*self._snapshot_filters(key))
                .order_by(ChartEntry.position.asc())
                .limit(limit)
                .all()
            )
        except SQLAlchemyError as e:
            self.rollback()
            raise PersistenceFailure(f"Error sampling entries for {key}: {e}") from e
        return [
            {'position': position, 'trackName': track_name or 'Unknown', 'artistName': artist_name or 'Unknown'}
            for position, track_name, artist_name in rows
        ]

    def snapshot_track_ids(self, key: SnapshotKey) -> set:
        return {track_id for (track_id,) in self._snapshot_query(key).with_entities(ChartEntry.track_id)}

    def delete_snapshot(self, key: SnapshotKey, keep_track_ids=None) -> int:
        """Deletes a snapshot's entries, optionally keeping the given tracks

        Returns:
            int: number of deleted entries
        """
        session = self.get_session()
        query = self._snapshot_query(key)
        if keep_track_ids:
            query = query.filter(ChartEntry.track_id.notin_(list(keep_track_ids)))
        try:
            deleted = query.delete(synchronize_session=False)
            session.commit()
        except SQLAlchemyError as e:
            session.rollback()
            raise PersistenceFailure(f"Failed to delete existing entries for {key}: {e}") from e
        logger.info(f"Deleted {deleted} entries for {key}")
        return deleted

    # entries

    def find_entry(self, key: SnapshotKey, track_id: str):
        """Point lookup by natural key"""
        return self._snapshot_query(key).filter(ChartEntry.track_id == track_id).one_or_none()

    def latest_entry_before(self, key: SnapshotKey, track_id: str):
        """Most recent entry strictly before the snapshot date for the same chart variant and track"""
        return (
            self.get_session().query(ChartEntry)
            .filter(
                ChartEntry.track_id == track_id,
                ChartEntry.chart_type == key.chart_type.value,
                ChartEntry.chart_period == key.chart_period.value,
                ChartEntry.platform == key.platform,
                region_filter(ChartEntry.region, key.region),
                ChartEntry.date < key.date,
            )
            .order_by(ChartEntry.date.desc())
            .first()
        )

    def add_entry(self, entry: ChartEntry) -> ChartEntry:
        session = self.get_session()
        session.add(entry)
        session.flush()
        return entry

    # artists and tracks

    def find_artist_by_external_id(self, external_id: str):
        return self.get_session().query(Artist).filter(Artist.external_id == external_id).first()

    def find_artist_by_name(self, name: str):
        return (
            self.get_session().query(Artist)
            .filter(func.lower(Artist.name) == name.lower())
            .order_by(Artist.created_at.asc(), Artist.id.asc())
            .first()
        )

    def create_artist(self, name: str, external_id: str = None) -> Artist:
        artist = Artist(name=name, external_id=external_id, platform='spotify')
        session = self.get_session()
        session.add(artist)
        session.flush()
        return artist

    def get_artist(self, artist_id: str):
        return self.get_session().get(Artist, artist_id)

    def find_track_by_external_id(self, external_id: str):
        return self.get_session().query(Track).filter(Track.external_id == external_id).first()

    def find_track_by_name(self, name: str, artist_id: str):
        return (
            self.get_session().query(Track)
            .filter(Track.name == name, Track.artist_id == artist_id)
            .order_by(Track.created_at.asc(), Track.id.asc())
            .first()
        )

    def create_track(self, name: str, artist_id: str, external_id: str = None, uri: str = None) -> Track:
        track = Track(name=name, artist_id=artist_id, external_id=external_id, uri=uri, platform='spotify')
        session = self.get_session()
        session.add(track)
        session.flush()
        return track

    def get_track(self, track_id: str):
        return self.get_session().get(Track, track_id)

    # ingestion audit

    def open_ingestion_record(self, source_name: str, source_class: str, key: SnapshotKey) -> IngestionRecord:
        """Creates the audit row in `processing` state

        Raises:
            PersistenceFailure: the snapshot cannot be processed without its audit row
        """
        session = self.get_session()
        record = IngestionRecord(
            source_name=source_name,
            source_class=source_class,
            chart_type=key.chart_type.value,
            chart_period=key.chart_period.value,
            date=key.date,
            region=key.region,
            region_type=key.region_type,
            status=IngestionStatus.PROCESSING.value,
        )
        try:
            session.add(record)
            session.commit()
        except SQLAlchemyError as e:
            session.rollback()
            raise PersistenceFailure(f"Failed to create ingestion record for {source_name}: {e}") from e
        return record

    def finalize_ingestion_record(self, record_id: str, status: IngestionStatus, processed: int = 0,
                                  created: int = 0, updated: int = 0, skipped: int = 0, error: str = None):
        session = self.get_session()
        try:
            record = session.get(IngestionRecord, record_id)
            if record is None:
                raise PersistenceFailure(f"Ingestion record {record_id} disappeared")
            record.status = IngestionStatus(status).value
            record.records_processed = processed
            record.records_created = created
            record.records_updated = updated
            record.records_skipped = skipped
            record.error = error
            record.completed_at = datetime.utcnow()
            session.commit()
        except SQLAlchemyError as e:
            session.rollback()
            raise PersistenceFailure(f"Failed to update ingestion record {record_id}: {e}") from e
        return record

    # chart configs

    def get_chart_config(self, config_id: str):
        return self.get_session().get(ChartConfig, config_id)

    def enabled_chart_configs(self) -> list:
        return (
            self.get_session().query(ChartConfig)
            .filter(ChartConfig.enabled.is_(True))
            .order_by(ChartConfig.created_at.asc())
            .all()
        )

    def create_chart_config(self, name: str, chart_type: str, chart_period: str, region: str = None,
                            region_type: str = None, enabled: bool = True) -> ChartConfig:
        session = self.get_session()
        existing = (
            session.query(ChartConfig)
            .filter(
                ChartConfig.chart_type == chart_type,
                ChartConfig.chart_period == chart_period,
                region_filter(ChartConfig.region, region),
            )
            .first()
        )
        if existing:
            raise ValueError("Configuration with these settings already exists")

        config = ChartConfig(name=name, chart_type=chart_type, chart_period=chart_period, region=region,
                             region_type=region_type, enabled=enabled)
        try:
            session.add(config)
            session.commit()
        except SQLAlchemyError as e:
            session.rollback()
            raise PersistenceFailure(f"Failed to create chart configuration: {e}") from e
        return config

    def mark_config_run(self, config: ChartConfig, last_run: datetime, next_run: datetime = None):
        session = self.get_session()
        try:
            config.last_run = last_run
            if next_run is not None:
                config.next_run = next_run
            session.commit()
        except SQLAlchemyError as e:
            session.rollback()
            raise PersistenceFailure(f"Failed to update chart configuration {config.id}: {e}") from e

    # reporting

    def position_history(self, start_date=None, end_date=None, chart_type=None, chart_period=None,
                         region=None, all_regions: bool = False) -> list:
        """Entries joined with track and artist names, for scoring

        Returns:
            list: dicts with track/artist ids and names, chart variant, date and position
        """
        query = (
            self.get_session()
            .query(ChartEntry.track_id, Track.name, ChartEntry.artist_id, Artist.name,
                   ChartEntry.chart_type, ChartEntry.chart_period, ChartEntry.region,
                   ChartEntry.date, ChartEntry.position)
            .join(Track, ChartEntry.track_id == Track.id)
            .join(Artist, ChartEntry.artist_id == Artist.id)
        )
        if start_date is not None:
            query = query.filter(ChartEntry.date >= start_date)
        if end_date is not None:
            query = query.filter(ChartEntry.date <= end_date)
        if chart_type is not None:
            query = query.filter(ChartEntry.chart_type == chart_type)
        if chart_period is not None:
            query = query.filter(ChartEntry.chart_period == chart_period)
        if not all_regions:
            query = query.filter(region_filter(ChartEntry.region, region))

        columns = ['track_id', 'track_name', 'artist_id', 'artist_name', 'chart_type', 'chart_period',
                   'region', 'date', 'position']
        return [dict(zip(columns, row)) for row in query.order_by(ChartEntry.date.asc()).all()]
