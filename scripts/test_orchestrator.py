#!/usr/bin/env python3
"""
Ingestion orchestrator tests: uploads, fetches, backfills and scheduled runs
"""

import itertools
from datetime import date, datetime, timedelta

import pytest
from sqlalchemy.exc import SQLAlchemyError

from charts_etl.exceptions import InvalidRequest, PersistenceFailure, RemoteFetchFailure
from charts_etl.models.canonical import SnapshotKey
from charts_etl.models.database import ChartConfig, ChartEntry, IngestionRecord

FILENAME = "regional-global-daily-2025-01-01.csv"


class FakeDownloader:
    """Stands in for the CSV download endpoint"""

    def __init__(self, csv_text, failing_dates=()):
        self.csv_text = csv_text
        self.failing_dates = set(failing_dates)
        self.calls = []

    def __call__(self, key: SnapshotKey):
        self.calls.append(key)
        if key.date in self.failing_dates:
            raise RemoteFetchFailure(f"Failed to download CSV for {key}: 503 Service Unavailable")
        return self.csv_text


class FakeEnrichmentQueue:
    def __init__(self):
        self.artists = []
        self.tracks = []

    def submit_artists(self, artist_ids):
        self.artists.extend(artist_ids)

    def submit_tracks(self, track_ids):
        self.tracks.extend(track_ids)

    def shutdown(self, wait=True):
        pass


@pytest.fixture
def two_row_csv(chart_csv):
    return chart_csv((1, 't1', 'Artist A', 'Song One'), (2, 't2', 'Artist B', 'Song Two'))


@pytest.fixture
def downloader(two_row_csv):
    return FakeDownloader(two_row_csv)


@pytest.fixture
def sleeps():
    return []


@pytest.fixture
def orchestrator(session, downloader, feed_payload, playlist_items, sleeps):
    from charts_etl.pipelines.orchestrator import PipelineOrchestrator

    def fetch_playlist(region):
        if region == 'us':
            raise RemoteFetchFailure("Spotify API error while fetching playlist: 404")
        return playlist_items

    return PipelineOrchestrator(session=session, download_csv=downloader, fetch_feed=lambda: feed_payload,
                                fetch_playlist=fetch_playlist, sleep=sleeps.append)


class TestFileUpload:
    """Test uploading chart CSV files"""

    def test_ingest_files(self, session, orchestrator, two_row_csv):
        results = orchestrator.ingest_files([(FILENAME, two_row_csv)], action='update')

        assert len(results) == 1
        result = results[0]
        assert result.success is True
        assert result.records_processed == 2
        assert result.result.entries_created == 2

        data = result.to_dict()
        assert data['fileOrFetchId'] == FILENAME
        assert data['uploadId'] == result.upload_id
        assert data['result']['entriesCreated'] == 2
        assert 'skipped' not in data and 'duplicate' not in data

        record = session.get(IngestionRecord, result.upload_id)
        assert record.status == 'success'
        assert record.source_name == FILENAME
        assert record.region is None

    def test_skip_duplicate_writes_nothing(self, session, orchestrator, two_row_csv, chart_csv):
        orchestrator.ingest_files([(FILENAME, two_row_csv)], action='update')
        changed = chart_csv((1, 't9', 'Artist Z', 'Other Song'))

        result = orchestrator.ingest_files([(FILENAME, changed)], action='skip')[0]

        assert result.skipped is True
        assert result.success is True
        assert result.to_dict()['skipped'] is True
        assert result.records_processed == 0
        assert session.query(ChartEntry).count() == 2
        assert session.query(IngestionRecord).count() == 1

    def test_show_warning_is_the_upload_default(self, session, orchestrator, two_row_csv):
        orchestrator.ingest_files([(FILENAME, two_row_csv)], action='update')

        result = orchestrator.ingest_files([(FILENAME, two_row_csv)])[0]

        assert result.duplicate is True
        assert result.success is False
        assert result.duplicate_info['existingCount'] == 2
        assert [e['position'] for e in result.duplicate_info['sampleEntries']] == [1, 2]
        assert result.to_dict()['duplicateInfo']['date'] == '2025-01-01'
        assert session.query(IngestionRecord).count() == 1

    def test_malformed_filename_is_rejected(self, session, orchestrator, two_row_csv):
        results = orchestrator.ingest_files([("chart.csv", two_row_csv), (FILENAME, two_row_csv)],
                                            action='update')

        rejected, accepted = results
        assert rejected.success is False
        assert rejected.records_processed == 0
        assert "Invalid filename" in rejected.error
        assert accepted.success is True
        assert session.query(IngestionRecord).count() == 1

    def test_malformed_csv_is_reported_per_file(self, session, orchestrator):
        result = orchestrator.ingest_files([(FILENAME, "position,track\n1,x\n")], action='update')[0]
        assert result.success is False
        assert "headers" in result.error
        assert session.query(ChartEntry).count() == 0

    def test_file_with_no_written_rows_fails(self, session, orchestrator, two_row_csv, monkeypatch):
        def failing_create_track(*args, **kwargs):
            raise SQLAlchemyError("insert failed")

        monkeypatch.setattr(orchestrator.loader, 'create_track', failing_create_track)
        result = orchestrator.ingest_files([(FILENAME, two_row_csv)], action='update')[0]

        assert result.success is False
        assert result.error == "No chart entries were written"
        assert len(result.result.errors) == 2
        assert session.get(IngestionRecord, result.upload_id).status == 'failed'

    def test_audit_failure_only_fails_its_file(self, session, orchestrator, two_row_csv, monkeypatch):
        open_record = orchestrator.loader.open_ingestion_record
        calls = []

        def flaky_open_record(source_name, source_class, key):
            calls.append(source_name)
            if len(calls) == 1:
                raise PersistenceFailure(f"Failed to create ingestion record for {source_name}: connection lost")
            return open_record(source_name, source_class, key)

        monkeypatch.setattr(orchestrator.loader, 'open_ingestion_record', flaky_open_record)
        second = "regional-global-daily-2025-01-02.csv"
        first_result, second_result = orchestrator.ingest_files([(FILENAME, two_row_csv), (second, two_row_csv)],
                                                                action='update')

        assert first_result.success is False
        assert "connection lost" in first_result.error
        assert second_result.success is True
        assert session.query(ChartEntry).filter(ChartEntry.date == date(2025, 1, 1)).count() == 0
        assert session.query(ChartEntry).filter(ChartEntry.date == date(2025, 1, 2)).count() == 2

    def test_unreadable_file_does_not_stop_upload(self, session, orchestrator, two_row_csv, tmp_path):
        from charts_etl.pipelines.orchestrator import upload_files

        broken = tmp_path / "regional-us-daily-2025-01-01.csv"
        broken.write_bytes(b"rank,uri\n1,\xff\xfe\n")
        good = tmp_path / FILENAME
        good.write_text(two_row_csv, encoding='utf-8')

        results = upload_files(orchestrator, [str(broken), str(good), str(tmp_path / "missing.csv")],
                               action='update')

        assert [r.source_id for r in results] == [broken.name, FILENAME, "missing.csv"]
        assert results[0].success is False
        assert "Could not read file" in results[0].error
        assert results[1].success is True
        assert results[2].success is False
        assert session.query(ChartEntry).count() == 2

    def test_invalid_requests(self, orchestrator, two_row_csv):
        with pytest.raises(InvalidRequest):
            orchestrator.ingest_files([], action='update')
        with pytest.raises(InvalidRequest):
            orchestrator.ingest_files([(FILENAME, two_row_csv)], action='merge')

    def test_new_entities_are_enriched(self, session, downloader, two_row_csv):
        from charts_etl.pipelines.orchestrator import PipelineOrchestrator

        queue = FakeEnrichmentQueue()
        orchestrator = PipelineOrchestrator(session=session, download_csv=downloader, enrichment=queue)
        orchestrator.ingest_files([(FILENAME, two_row_csv)], action='update')

        assert len(queue.artists) == 2
        assert len(queue.tracks) == 2


class TestRemoteFetch:
    """Test fetching charts from remote sources"""

    def test_fetch_chart_checks_duplicates_before_download(self, orchestrator, downloader):
        first = orchestrator.fetch_chart('regional', 'daily', 'us', '2025-01-01')
        second = orchestrator.fetch_chart('regional', 'daily', 'us', '2025-01-01')

        assert first.success is True
        assert first.result.entries_created == 2
        assert second.skipped is True
        assert len(downloader.calls) == 1
        assert downloader.calls[0].region == 'us'

    def test_fetch_chart_replace(self, session, orchestrator, downloader, chart_csv):
        orchestrator.fetch_chart('regional', 'daily', None, '2025-01-01')
        downloader.csv_text = chart_csv((1, 't1', 'Artist A', 'Song One'), (2, 't3', 'Artist C', 'Song Three'))

        result = orchestrator.fetch_chart('regional', 'daily', None, '2025-01-01', action='replace')

        assert result.success is True
        assert result.result.entries_deleted == 1
        assert session.query(ChartEntry).count() == 2

    def test_fetch_chart_remote_failure(self, orchestrator, downloader):
        downloader.failing_dates.add(date(2025, 1, 1))
        result = orchestrator.fetch_chart('regional', 'daily', None, '2025-01-01')
        assert result.success is False
        assert "503" in result.error

    def test_fetch_chart_invalid_request(self, orchestrator, downloader):
        with pytest.raises(InvalidRequest):
            orchestrator.fetch_chart('top50', 'daily', None, '2025-01-01')
        with pytest.raises(InvalidRequest):
            orchestrator.fetch_chart('regional', 'daily', None, '2025/01/01')
        assert downloader.calls == []

    def test_feed_ingestion(self, session, orchestrator):
        results = orchestrator.fetch_feed_charts()

        assert [r.success for r in results] == [True]
        assert results[0].source_id == 'regional-global-weekly-2025-01-02'
        entries = session.query(ChartEntry).order_by(ChartEntry.position).all()
        assert [e.chart_period for e in entries] == ['weekly', 'weekly']
        assert entries[0].label == 'Label One'
        assert entries[0].source == 'feed'

        again = orchestrator.fetch_feed_charts()
        assert again[0].skipped is True

    def test_feed_failure(self, session):
        from charts_etl.pipelines.orchestrator import PipelineOrchestrator

        def broken_feed():
            raise RemoteFetchFailure("Failed to fetch chart feed: 500")

        results = PipelineOrchestrator(session=session, fetch_feed=broken_feed).fetch_feed_charts()
        assert results[0].success is False
        assert "500" in results[0].error

    def test_malformed_feed_is_reported(self, session):
        from charts_etl.pipelines.orchestrator import PipelineOrchestrator

        orchestrator = PipelineOrchestrator(session=session, fetch_feed=lambda: ['not', 'an', 'object'])
        results = orchestrator.fetch_feed_charts()

        assert len(results) == 1
        assert results[0].success is False
        assert "JSON object" in results[0].error
        assert session.query(ChartEntry).count() == 0

    def test_playlist_ingestion(self, session, orchestrator):
        result = orchestrator.ingest_playlist('global', '2025-01-05')

        assert result.success is True
        assert result.records_processed == 2
        entries = session.query(ChartEntry).order_by(ChartEntry.position).all()
        assert [(e.chart_type, e.chart_period, e.position) for e in entries] == [
            ('viral', 'daily', 1), ('viral', 'daily', 2)]
        assert entries[0].source == 'playlist'

    def test_playlist_failure(self, orchestrator):
        result = orchestrator.ingest_playlist('us', '2025-01-05')
        assert result.success is False
        assert "404" in result.error


class TestBackfill:
    """Test date range backfills"""

    def test_backfill_dates(self):
        from charts_etl.pipelines.orchestrator import backfill_dates

        assert backfill_dates(date(2025, 1, 1), date(2025, 1, 3), 'daily') == [
            date(2025, 1, 1), date(2025, 1, 2), date(2025, 1, 3)]
        # 2025-01-08 is a Wednesday; weekly dates start on the Monday before
        assert backfill_dates(date(2025, 1, 8), date(2025, 1, 20), 'weekly') == [
            date(2025, 1, 6), date(2025, 1, 13), date(2025, 1, 20)]

    def test_backfill_daily(self, session, orchestrator, sleeps):
        result = orchestrator.backfill('2025-01-01', '2025-01-03', chart_type='regional', chart_period='daily',
                                       delay=1)

        assert result.total_dates == 3
        assert result.processed_dates == 3
        assert result.successful_dates == ['2025-01-01', '2025-01-02', '2025-01-03']
        assert result.failed_dates == []
        assert result.unprocessed_dates == []
        assert result.summary.entries_created == 6
        assert result.to_dict()['summary']['entriesCreated'] == 6
        assert sleeps == [1, 1]

        last = session.query(ChartEntry).filter(ChartEntry.date == date(2025, 1, 3)).all()
        assert {e.days_on_chart for e in last} == {3}

    def test_backfill_skips_stored_dates_without_fetching(self, orchestrator, downloader):
        orchestrator.backfill('2025-01-01', '2025-01-02', chart_type='regional', chart_period='daily', delay=0)
        result = orchestrator.backfill('2025-01-01', '2025-01-02', chart_type='regional', chart_period='daily',
                                       delay=0)

        assert result.skipped_dates == ['2025-01-01', '2025-01-02']
        assert len(downloader.calls) == 2

    def test_backfill_reports_failed_dates(self, orchestrator, downloader):
        downloader.failing_dates.add(date(2025, 1, 2))
        result = orchestrator.backfill('2025-01-01', '2025-01-03', chart_type='regional', chart_period='daily',
                                       delay=0)

        assert result.successful_dates == ['2025-01-01', '2025-01-03']
        assert result.failed_dates[0]['date'] == '2025-01-02'
        assert "503" in result.failed_dates[0]['error']

    def test_backfill_duration_budget(self, session, downloader, two_row_csv):
        from charts_etl.pipelines.orchestrator import PipelineOrchestrator

        ticks = itertools.chain([0, 0, 200, 400], itertools.repeat(400))
        orchestrator = PipelineOrchestrator(session=session, download_csv=downloader, sleep=lambda s: None,
                                            clock=lambda: next(ticks))

        result = orchestrator.backfill('2025-01-01', '2025-01-04', chart_type='regional', chart_period='daily',
                                       max_duration=300)

        assert result.processed_dates == 2
        assert result.unprocessed_dates == ['2025-01-03', '2025-01-04']
        assert result.to_dict()['unprocessedDates'] == ['2025-01-03', '2025-01-04']

    def test_backfill_from_config(self, session, orchestrator, loader, downloader):
        config = loader.create_chart_config('US weekly', 'regional', 'weekly', 'us', 'country')

        result = orchestrator.backfill('2025-01-08', '2025-01-14', config_id=config.id, delay=0)

        assert result.successful_dates == ['2025-01-06', '2025-01-13']
        assert {key.region for key in downloader.calls} == {'us'}
        assert session.get(ChartConfig, config.id).last_run is not None

    def test_backfill_invalid_requests(self, orchestrator):
        with pytest.raises(InvalidRequest):
            orchestrator.backfill('2025-01-05', '2025-01-01', chart_type='regional', chart_period='daily')
        with pytest.raises(InvalidRequest):
            orchestrator.backfill('2025-01-01', '2025-01-05', config_id='missing')
        with pytest.raises(InvalidRequest):
            orchestrator.backfill('2025-01-01', None, chart_type='regional', chart_period='daily')
        with pytest.raises(InvalidRequest):
            orchestrator.backfill('2025-01-01', '2025-01-02')


class TestScheduledRun:
    """Test the scheduled pass"""

    NOW = datetime(2025, 1, 10, 2, 0)

    def test_disabled(self, orchestrator, downloader):
        result = orchestrator.run_scheduled(now=self.NOW)
        assert result['skipped'] is True
        assert downloader.calls == []

    def test_scheduled_run(self, session, orchestrator, settings, loader, downloader):
        settings.set('cron', 'enabled', True)
        settings.set('playlist', 'enabled', True)
        settings.set('playlist', 'regions', ['global', 'us'])
        settings.set('json_api', 'enabled', True)
        daily = loader.create_chart_config('US daily', 'regional', 'daily', 'us', 'country')
        weekly = loader.create_chart_config('Global weekly', 'regional', 'weekly', None, None)

        results = orchestrator.run_scheduled(now=self.NOW, delay=0)

        assert results['playlists']['successful'] == ['global']
        assert results['playlists']['failed'][0]['region'] == 'us'
        assert results['weekly'] == {'processed': True, 'success': True, 'error': None}
        assert results['configs']['processed'] == 2
        assert results['configs']['failed'] == []

        fetched = sorted((key.region or 'global', key.date) for key in downloader.calls)
        assert fetched == [('global', date(2025, 1, 3)), ('us', date(2025, 1, 9))]

        assert session.get(ChartConfig, daily.id).next_run == self.NOW + timedelta(days=1)
        assert session.get(ChartConfig, weekly.id).next_run == self.NOW + timedelta(days=7)

    def test_malformed_feed_does_not_stop_the_run(self, session, settings, loader, downloader,
                                                  playlist_items):
        from charts_etl.pipelines.orchestrator import PipelineOrchestrator

        settings.set('cron', 'enabled', True)
        settings.set('playlist', 'enabled', True)
        settings.set('json_api', 'enabled', True)
        config = loader.create_chart_config('US daily', 'regional', 'daily', 'us', 'country')
        orchestrator = PipelineOrchestrator(session=session, download_csv=downloader,
                                            fetch_feed=lambda: ['not', 'an', 'object'],
                                            fetch_playlist=lambda region: playlist_items, sleep=lambda s: None)

        results = orchestrator.run_scheduled(now=self.NOW, delay=0)

        assert results['playlists']['successful'] == ['global']
        assert results['weekly']['processed'] is True
        assert results['weekly']['success'] is False
        assert "JSON object" in results['weekly']['error']
        assert results['configs']['successful'] == [config.id]

    def test_failed_config_is_not_marked(self, session, orchestrator, settings, loader, downloader):
        settings.set('cron', 'enabled', True)
        config = loader.create_chart_config('US daily', 'regional', 'daily', 'us', 'country')
        downloader.failing_dates.add(date(2025, 1, 9))

        results = orchestrator.run_scheduled(now=self.NOW, delay=0)

        assert results['configs']['failed'][0]['configId'] == config.id
        assert session.get(ChartConfig, config.id).last_run is None
