import logging
from dataclasses import dataclass, field

from sqlalchemy.exc import SQLAlchemyError

from charts_etl.exceptions import ChartsETLError, PersistenceFailure, ResolutionFailure
from charts_etl.loaders.postgres_loader import PostgresLoader
from charts_etl.models.canonical import CanonicalRow, DedupAction, IngestionStatus, ParsedChart, SnapshotKey
from charts_etl.models.database import ChartEntry
from charts_etl.transformers.chart_transformer import extract_spotify_track_id

logger = logging.getLogger(__name__)


@dataclass
class ProcessResult:
    artists_created: int = 0
    artists_updated: int = 0
    tracks_created: int = 0
    tracks_updated: int = 0
    entries_created: int = 0
    entries_updated: int = 0
    entries_deleted: int = 0
    errors: list = field(default_factory=list)
    created_artist_ids: list = field(default_factory=list)
    created_track_ids: list = field(default_factory=list)

    @property
    def entries_written(self) -> int:
        return self.entries_created + self.entries_updated

    def add(self, other: "ProcessResult"):
        self.artists_created += other.artists_created
        self.artists_updated += other.artists_updated
        self.tracks_created += other.tracks_created
        self.tracks_updated += other.tracks_updated
        self.entries_created += other.entries_created
        self.entries_updated += other.entries_updated
        self.entries_deleted += other.entries_deleted
        self.errors.extend(other.errors)

    def to_dict(self) -> dict:
        return {
            'artistsCreated': self.artists_created,
            'artistsUpdated': self.artists_updated,
            'tracksCreated': self.tracks_created,
            'tracksUpdated': self.tracks_updated,
            'entriesCreated': self.entries_created,
            'entriesUpdated': self.entries_updated,
            'errors': list(self.errors),
        }


@dataclass
class _RowOutcome:
    track_id: str
    artist_id: str
    artist_created: bool = False
    artist_updated: bool = False
    track_created: bool = False
    track_updated: bool = False
    entry_created: bool = False


def ingestion_status(result: ProcessResult) -> IngestionStatus:
    """success: no errors; partial: errors but something written; failed: nothing written"""
    if result.entries_written == 0:
        return IngestionStatus.FAILED
    if result.errors:
        return IngestionStatus.PARTIAL
    return IngestionStatus.SUCCESS


class ChartProcessor:
    """Reconciles canonical rows with stored artists, tracks and chart entries

    Rows are handled in source order and committed one at a time, so a bad
    row only loses its own writes.

    Args:
        loader (PostgresLoader): persistence surface
    """

    def __init__(self, loader: PostgresLoader):
        self.loader = loader

    def _resolve_artist(self, row: CanonicalRow, artist_cache: dict):
        name = row.primary_artist
        external_id = row.primary_artist_external_id
        created = updated = False

        artist = None
        if external_id:
            cached_id = artist_cache.get(('external', external_id))
            artist = (self.loader.get_artist(cached_id) if cached_id
                      else self.loader.find_artist_by_external_id(external_id))

        if artist is None:
            cached_id = artist_cache.get(('name', name.lower()))
            artist = self.loader.get_artist(cached_id) if cached_id else self.loader.find_artist_by_name(name)
            if artist is not None and external_id:
                if artist.external_id is None:
                    artist.external_id = external_id
                    updated = True
                elif artist.external_id != external_id:
                    # same name, different catalog artist
                    artist = None

        if artist is None:
            artist = self.loader.create_artist(name, external_id)
            created = True

        return artist, created, updated

    def _resolve_track(self, row: CanonicalRow, artist_id: str):
        external_id = extract_spotify_track_id(row.track_external_ref)
        created = updated = False

        track = self.loader.find_track_by_external_id(external_id) if external_id else None
        if track is None:
            track = self.loader.find_track_by_name(row.track_name, artist_id)
            if track is not None and external_id and track.external_id not in (None, external_id):
                track = None

        if track is None:
            track = self.loader.create_track(row.track_name, artist_id, external_id, row.track_external_ref)
            return track, True, False

        if external_id and track.external_id is None:
            track.external_id = external_id
            updated = True
        if row.track_external_ref and track.uri != row.track_external_ref:
            track.uri = row.track_external_ref
            updated = True
        return track, created, updated

    def _derive_fields(self, row: CanonicalRow, key: SnapshotKey, track_id: str) -> dict:
        """previous rank, peak rank and days on chart from the latest stored entry before the snapshot"""
        prior = self.loader.latest_entry_before(key, track_id)
        if prior is None:
            return {'previous_rank': None, 'peak_rank': row.position, 'days_on_chart': 1}

        prior_peak = prior.peak_rank if prior.peak_rank is not None else prior.position
        return {
            'previous_rank': prior.position,
            'peak_rank': min(row.position, prior_peak),
            'days_on_chart': (prior.days_on_chart or 0) + 1,
        }

    def _process_row(self, row: CanonicalRow, key: SnapshotKey, upload_id, artist_cache: dict) -> _RowOutcome:
        try:
            artist, artist_created, artist_updated = self._resolve_artist(row, artist_cache)
            track, track_created, track_updated = self._resolve_track(row, artist.id)
        except SQLAlchemyError as e:
            raise ResolutionFailure(f"Could not resolve artist/track for {row.track_name!r}: {e}") from e

        values = {
            'position': row.position,
            'region_type': key.region_type,
            'artist_id': track.artist_id,
            'streams': str(row.streams) if row.streams is not None else None,
            'source': row.origin.value,
            'label': row.source_label,
            'upload_id': upload_id,
            **self._derive_fields(row, key, track.id),
        }

        entry = self.loader.find_entry(key, track.id)
        entry_created = entry is None
        if entry_created:
            entry = ChartEntry(
                date=key.date,
                chart_type=key.chart_type.value,
                chart_period=key.chart_period.value,
                region=key.region,
                track_id=track.id,
                platform=key.platform,
                **values,
            )
            self.loader.add_entry(entry)
        else:
            for attribute, value in values.items():
                setattr(entry, attribute, value)

        return _RowOutcome(
            track_id=track.id,
            artist_id=artist.id,
            artist_created=artist_created,
            artist_updated=artist_updated,
            track_created=track_created,
            track_updated=track_updated,
            entry_created=entry_created,
        )

    def _stored_track_id(self, row: CanonicalRow):
        """Id of the stored track a row refers to, without creating anything"""
        external_id = extract_spotify_track_id(row.track_external_ref)
        track = self.loader.find_track_by_external_id(external_id) if external_id else None
        if track is None:
            artist = self.loader.find_artist_by_name(row.primary_artist)
            track = self.loader.find_track_by_name(row.track_name, artist.id) if artist is not None else None
        return track.id if track is not None else None

    def _remove_stale_entries(self, key: SnapshotKey, written_track_ids: set, failed_rows: list,
                              result: ProcessResult):
        """Deletes entries of `key` whose track is in neither the written nor the failed rows"""
        if not written_track_ids:
            logger.warning(f"[ChartProcessor] Nothing written for {key}, keeping existing entries")
            return

        keep_track_ids = set(written_track_ids)
        try:
            for row in failed_rows:
                track_id = self._stored_track_id(row)
                if track_id is not None:
                    keep_track_ids.add(track_id)
        except SQLAlchemyError as e:
            self.loader.rollback()
            logger.warning(f"[ChartProcessor] Could not identify tracks of failed rows for {key}, "
                           f"keeping existing entries: {e}")
            return

        result.entries_deleted = self.loader.delete_snapshot(key, keep_track_ids=keep_track_ids)

    def reconcile(self, rows: list, key: SnapshotKey, action=DedupAction.UPDATE, upload_id: str = None) -> ProcessResult:
        """Upserts rows into the snapshot identified by `key`

        Args:
            rows (list): CanonicalRow objects in source order
            key (SnapshotKey): the snapshot being written
            action (DedupAction): `replace` also removes stored entries for tracks not in `rows`
            upload_id (str): ingestion record to stamp on written entries

        Returns:
            ProcessResult: counts and per-row errors
        """
        action = DedupAction(action)
        result = ProcessResult()
        artist_cache = {}
        written_track_ids = set()
        failed_rows = []

        logger.info(f"[ChartProcessor] Processing {len(rows)} chart entries for {key}")

        for index, row in enumerate(rows, start=1):
            try:
                outcome = self._process_row(row, key, upload_id, artist_cache)
                self.loader.commit()
            except (ChartsETLError, SQLAlchemyError) as e:
                self.loader.rollback()
                message = f"Row {index} ({row.track_name}): {e}"
                logger.warning(f"[ChartProcessor] {message}")
                result.errors.append(message)
                failed_rows.append(row)
                continue

            artist_cache[('name', row.primary_artist.lower())] = outcome.artist_id
            if row.primary_artist_external_id:
                artist_cache[('external', row.primary_artist_external_id)] = outcome.artist_id
            written_track_ids.add(outcome.track_id)

            result.artists_created += outcome.artist_created
            result.artists_updated += outcome.artist_updated
            result.tracks_created += outcome.track_created
            result.tracks_updated += outcome.track_updated
            if outcome.entry_created:
                result.entries_created += 1
            else:
                result.entries_updated += 1
            if outcome.artist_created:
                result.created_artist_ids.append(outcome.artist_id)
            if outcome.track_created:
                result.created_track_ids.append(outcome.track_id)

        if action == DedupAction.REPLACE:
            self._remove_stale_entries(key, written_track_ids, failed_rows, result)

        logger.info(f"[ChartProcessor] Processing complete for {key}: "
                    f"artists={result.artists_created + result.artists_updated}, "
                    f"tracks={result.tracks_created + result.tracks_updated}, "
                    f"entries={result.entries_written}, deleted={result.entries_deleted}, "
                    f"errors={len(result.errors)}")
        return result

    def process(self, parsed: ParsedChart, key: SnapshotKey, action, source_name: str, source_class) -> tuple:
        """Reconciles a parsed chart and keeps its ingestion record up to date

        Returns:
            tuple: (ProcessResult, ingestion record id)

        Raises:
            PersistenceFailure: the ingestion record could not be written, or the snapshot could not be finalized
        """
        record = self.loader.open_ingestion_record(source_name, getattr(source_class, 'value', source_class), key)
        record_id = record.id

        try:
            result = self.reconcile(parsed.rows, key, action, upload_id=record_id)
        except (ChartsETLError, SQLAlchemyError) as e:
            self.loader.rollback()
            self.loader.finalize_ingestion_record(record_id, IngestionStatus.FAILED,
                                                  processed=len(parsed.rows), error=str(e))
            if isinstance(e, ChartsETLError):
                raise
            raise PersistenceFailure(str(e)) from e

        status = ingestion_status(result)
        self.loader.finalize_ingestion_record(
            record_id,
            status,
            processed=len(parsed.rows),
            created=result.entries_created + result.artists_created + result.tracks_created,
            updated=result.entries_updated + result.artists_updated + result.tracks_updated,
            skipped=len(parsed.warnings) + len(result.errors),
            error='; '.join(parsed.warnings + result.errors) or None,
        )
        return result, record_id
