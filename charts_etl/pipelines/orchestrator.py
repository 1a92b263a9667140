import logging
import os
import sys
import time
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from functools import partial

import schedule
from dateutil.rrule import DAILY, WEEKLY, rrule
from tqdm import tqdm

from charts_etl.config.settings import BACKFILL_DELAY_SECONDS, CRON_DELAY_SECONDS, MAX_DURATION_SECONDS, SettingsStore
from charts_etl.exceptions import ChartsETLError, DuplicateSnapshot, InvalidRequest
from charts_etl.extractors.spotify_charts_extractor import (construct_chart_url, download_chart_csv,
                                                            fetch_weekly_chart_data)
from charts_etl.loaders.postgres_loader import PostgresLoader
from charts_etl.models.canonical import ChartPeriod, ChartType, DedupAction, IngestionStatus, ParsedChart, \
    SnapshotKey, SourceClass
from charts_etl.pipelines.chart_processor import ChartProcessor, ProcessResult, ingestion_status
from charts_etl.pipelines.deduplication import DeduplicationPolicy, coerce_action
from charts_etl.transformers.chart_transformer import build_snapshot_key, parse_chart_date, parse_chart_filename
from charts_etl.transformers.csv_transformer import parse_chart_csv
from charts_etl.transformers.feed_transformer import parse_chart_feed, parse_playlist_items

logger = logging.getLogger(__name__)


def setup_logging(log_file: str = 'pipeline.log', level=logging.INFO):
    logging.basicConfig(
        level=level,
        format='%(asctime)s - %(levelname)s - %(message)s',
        handlers=[
            logging.FileHandler(log_file),
            logging.StreamHandler(sys.stdout)
        ]
    )


@dataclass
class IngestionResult:
    """Outcome of one uploaded file or one fetched snapshot"""
    source_id: str
    success: bool = False
    skipped: bool = False
    duplicate: bool = False
    duplicate_info: dict = None
    error: str = None
    upload_id: str = None
    records_processed: int = 0
    result: ProcessResult = field(default_factory=ProcessResult)

    @classmethod
    def from_duplicate(cls, source_id: str, error: DuplicateSnapshot) -> "IngestionResult":
        if error.skipped:
            return cls(source_id, success=True, skipped=True, error=str(error))
        return cls(
            source_id,
            success=False,
            duplicate=True,
            error=str(error),
            duplicate_info={
                'existingCount': error.existing_count,
                'sampleEntries': error.sample,
                'date': error.key.date.isoformat(),
                'chartType': error.key.chart_type.value,
                'chartPeriod': error.key.chart_period.value,
                'region': error.key.region,
            },
        )

    def to_dict(self) -> dict:
        data = {
            'fileOrFetchId': self.source_id,
            'success': self.success,
            'recordsProcessed': self.records_processed,
            'result': self.result.to_dict(),
        }
        if self.skipped:
            data['skipped'] = True
        if self.duplicate:
            data['duplicate'] = True
            data['duplicateInfo'] = self.duplicate_info
        if self.error:
            data['error'] = self.error
        if self.upload_id:
            data['uploadId'] = self.upload_id
        return data


@dataclass
class BackfillResult:
    total_dates: int = 0
    processed_dates: int = 0
    successful_dates: list = field(default_factory=list)
    skipped_dates: list = field(default_factory=list)
    failed_dates: list = field(default_factory=list)
    unprocessed_dates: list = field(default_factory=list)
    summary: ProcessResult = field(default_factory=ProcessResult)

    def to_dict(self) -> dict:
        summary = self.summary.to_dict()
        summary.pop('errors')
        return {
            'totalDates': self.total_dates,
            'processedDates': self.processed_dates,
            'successfulDates': list(self.successful_dates),
            'skippedDates': list(self.skipped_dates),
            'failedDates': list(self.failed_dates),
            'unprocessedDates': list(self.unprocessed_dates),
            'summary': summary,
        }


def backfill_dates(start_date: date, end_date: date, chart_period) -> list:
    """Dates to fetch between start and end, inclusive

    Weekly charts start from the Monday on or before `start_date` and step 7 days.
    """
    if ChartPeriod(chart_period) == ChartPeriod.WEEKLY:
        start_date = start_date - timedelta(days=start_date.weekday())
        frequency = WEEKLY
    else:
        frequency = DAILY
    return [dt.date() for dt in rrule(frequency, dtstart=datetime.combine(start_date, datetime.min.time()),
                                      until=datetime.combine(end_date, datetime.min.time()))]


class PipelineOrchestrator:
    """Sequences parsing, deduplication and reconciliation per file or date

    Args:
        session: SQLAlchemy session, opened from the configured engine when omitted
        download_csv: callable(SnapshotKey) -> csv text
        fetch_feed: callable() -> chart feed payload
        fetch_playlist: callable(region) -> playlist items; a Spotify API client is built on first use when omitted
        enrichment (EnrichmentQueue): receives newly created artists and tracks
        sleep: blocking delay function
        clock: monotonic time source for duration budgets
    """

    def __init__(self, session=None, download_csv=None, fetch_feed=None, fetch_playlist=None, enrichment=None,
                 sleep=time.sleep, clock=time.monotonic):
        self.loader = PostgresLoader(session)
        self.settings = SettingsStore(self.loader.get_session())
        self.policy = DeduplicationPolicy(self.loader, self.settings)
        self.processor = ChartProcessor(self.loader)
        self.download_csv = download_csv or download_chart_csv
        self.fetch_feed = fetch_feed or fetch_weekly_chart_data
        self.fetch_playlist = fetch_playlist
        self.enrichment = enrichment
        self.sleep = sleep
        self.clock = clock

    def close(self):
        if self.enrichment is not None:
            self.enrichment.shutdown(wait=False)
        self.loader.close_session()

    def _playlist_items(self, region: str) -> list:
        if self.fetch_playlist is None:
            from charts_etl.extractors.spotify_api_extractor import SpotifyAPIExtractor
            self.fetch_playlist = partial(SpotifyAPIExtractor().fetch_viral50, settings=self.settings)
        return self.fetch_playlist(region or 'global')

    def _write(self, source_id: str, parsed: ParsedChart, key: SnapshotKey, action: DedupAction,
               source_name: str, source_class: SourceClass) -> IngestionResult:
        """Runs the reconciliation engine for a snapshot the dedup policy already let through"""
        write_action = action if action in (DedupAction.UPDATE, DedupAction.REPLACE) else DedupAction.UPDATE
        process_result, record_id = self.processor.process(parsed, key, write_action, source_name, source_class)

        if self.enrichment is not None:
            self.enrichment.submit_artists(process_result.created_artist_ids)
            self.enrichment.submit_tracks(process_result.created_track_ids)

        success = ingestion_status(process_result) != IngestionStatus.FAILED
        return IngestionResult(
            source_id,
            success=success,
            error=None if success else "No chart entries were written",
            upload_id=record_id,
            records_processed=len(parsed.rows),
            result=process_result,
        )

    def _guarded(self, source_id: str, operation) -> IngestionResult:
        """Turns snapshot level failures into a failed result so a batch can continue"""
        try:
            return operation()
        except DuplicateSnapshot as e:
            logger.info(f"[Ingestion] {source_id}: {e}")
            return IngestionResult.from_duplicate(source_id, e)
        except ChartsETLError as e:
            logger.error(f"[Ingestion] {source_id} failed: {e}")
            return IngestionResult(source_id, success=False, error=str(e))

    # uploads

    def ingest_file(self, filename: str, csv_text: str, action: DedupAction) -> IngestionResult:
        action = coerce_action(action)

        def operation():
            key = parse_chart_filename(filename)
            parsed = parse_chart_csv(csv_text, key.chart_type, key.chart_period, key.date, region=key.region)
            self.policy.enforce(key, action)
            return self._write(filename, parsed, key, action, filename, SourceClass.CSV_UPLOAD)

        logger.info(f"[Upload] Processing file: {filename}")
        return self._guarded(filename, operation)

    def ingest_files(self, files: list, action=None) -> list:
        """Ingests uploaded chart files one by one

        Args:
            files (list): (filename, csv text) pairs
            action: dedup action; the csv_upload default from settings when omitted

        Returns:
            list: one IngestionResult per file

        Raises:
            InvalidRequest: no files or an unknown action
        """
        if not files:
            raise InvalidRequest("No files provided")
        action = self.policy.resolve_action(action, SourceClass.CSV_UPLOAD)
        return [self.ingest_file(filename, csv_text, action) for filename, csv_text in files]

    # remote sources

    def fetch_chart(self, chart_type, chart_period, region, chart_date, action=None,
                    unattended: bool = True) -> IngestionResult:
        """Downloads and ingests one CSV snapshot; duplicates are checked before the download

        Raises:
            InvalidRequest: bad chart type, period, date or action
        """
        key = build_snapshot_key(chart_type, chart_period, region, chart_date)
        action = self.policy.resolve_action(action, SourceClass.CSV_UPLOAD, unattended=unattended)
        source_name = construct_chart_url(key)

        def operation():
            self.policy.enforce(key, action)
            csv_text = self.download_csv(key)
            parsed = parse_chart_csv(csv_text, key.chart_type, key.chart_period, key.date, region=key.region)
            return self._write(str(key), parsed, key, action, source_name, SourceClass.CSV_UPLOAD)

        return self._guarded(str(key), operation)

    def ingest_feed(self, payload: dict, action=None, unattended: bool = True) -> list:
        """Ingests every view of a chart feed payload as its own global snapshot"""
        action = self.policy.resolve_action(action, SourceClass.JSON_API, unattended=unattended)
        try:
            charts = parse_chart_feed(payload)
        except ChartsETLError as e:
            logger.error(f"[ChartFeed] {e}")
            return [IngestionResult('json_api', success=False, error=str(e))]

        results = []
        for parsed in charts:
            key = SnapshotKey(parsed.date, parsed.chart_type, parsed.chart_period, parsed.region)

            def operation(parsed=parsed, key=key):
                self.policy.enforce(key, action)
                return self._write(str(key), parsed, key, action, f"json_api:{key}", SourceClass.JSON_API)

            results.append(self._guarded(str(key), operation))
        return results

    def fetch_feed_charts(self, action=None, unattended: bool = True) -> list:
        action = self.policy.resolve_action(action, SourceClass.JSON_API, unattended=unattended)
        try:
            payload = self.fetch_feed()
        except ChartsETLError as e:
            logger.error(f"[ChartFeed] {e}")
            return [IngestionResult('json_api', success=False, error=str(e))]
        return self.ingest_feed(payload, action, unattended=unattended)

    def ingest_playlist(self, region: str = None, chart_date=None, action=None,
                        unattended: bool = True) -> IngestionResult:
        """Fetches and ingests a Viral 50 playlist as the daily viral chart of `chart_date`"""
        key = build_snapshot_key(ChartType.VIRAL, ChartPeriod.DAILY, region, chart_date or date.today())
        action = self.policy.resolve_action(action, SourceClass.PLAYLIST, unattended=unattended)
        source_name = f"playlist:{key.region or 'global'}"

        def operation():
            self.policy.enforce(key, action)
            items = self._playlist_items(key.region)
            parsed = parse_playlist_items(items, key.date, region=key.region)
            return self._write(str(key), parsed, key, action, source_name, SourceClass.PLAYLIST)

        return self._guarded(str(key), operation)

    # backfill

    def backfill(self, start_date, end_date, config_id: str = None, chart_type=None, chart_period=None,
                 region=None, action=None, max_duration: float = MAX_DURATION_SECONDS,
                 delay: float = BACKFILL_DELAY_SECONDS) -> BackfillResult:
        """Fetches every date of a range for one chart variant, sequentially

        Dates not started within `max_duration` seconds are returned as
        unprocessed; calling again with that range resumes the backfill.

        Args:
            start_date: first date, YYYY-MM-DD or date
            end_date: last date, inclusive
            config_id (str): chart configuration to backfill; otherwise chart_type/chart_period/region
            action: dedup action for dates that already have entries
            max_duration (float): wall clock budget in seconds
            delay (float): pause between fetches in seconds

        Returns:
            BackfillResult: per date outcome and summed counts

        Raises:
            InvalidRequest: missing/invalid parameters or unknown configuration
        """
        if start_date is None or end_date is None:
            raise InvalidRequest("Missing required fields: startDate, endDate")
        start, end = parse_chart_date(start_date), parse_chart_date(end_date)
        if start > end:
            raise InvalidRequest("startDate must be before endDate")

        config = None
        if config_id is not None:
            config = self.loader.get_chart_config(config_id)
            if config is None:
                raise InvalidRequest(f"Configuration not found: {config_id}")
            chart_type, chart_period, region = config.chart_type, config.chart_period, config.region
        elif chart_type is None or chart_period is None:
            raise InvalidRequest("Missing required fields: configId or chartType and chartPeriod")

        # validates the variant before any fetch
        build_snapshot_key(chart_type, chart_period, region, start)
        action = self.policy.resolve_action(action, SourceClass.CSV_UPLOAD, unattended=True)

        dates = backfill_dates(start, end, chart_period)
        result = BackfillResult(total_dates=len(dates))
        logger.info(f"[Backfill] Starting backfill of {chart_type}-{region or 'global'}-{chart_period} "
                    f"from {start} to {end} ({len(dates)} dates)")

        started = self.clock()
        for index, chart_date in enumerate(tqdm(dates, desc="Backfilling charts")):
            if self.clock() - started >= max_duration:
                result.unprocessed_dates = [d.isoformat() for d in dates[index:]]
                logger.warning(f"[Backfill] Duration budget of {max_duration}s reached, "
                               f"{len(result.unprocessed_dates)} dates left unprocessed")
                break
            if index and delay:
                self.sleep(delay)

            outcome = self.fetch_chart(chart_type, chart_period, region, chart_date, action=action)
            result.processed_dates += 1
            if outcome.skipped:
                result.skipped_dates.append(chart_date.isoformat())
            elif outcome.success:
                result.successful_dates.append(chart_date.isoformat())
                result.summary.add(outcome.result)
            else:
                result.failed_dates.append({'date': chart_date.isoformat(), 'error': outcome.error})

        if config is not None:
            self.loader.mark_config_run(config, datetime.utcnow())

        logger.info(f"[Backfill] Completed: {result.processed_dates}/{result.total_dates} dates processed, "
                    f"{len(result.failed_dates)} failed")
        return result

    # scheduled runs

    def run_scheduled(self, now: datetime = None, delay: float = CRON_DELAY_SECONDS) -> dict:
        """One scheduled pass: Viral 50 playlists, the chart feed and enabled chart configurations"""
        now = now or datetime.utcnow()
        if not self.settings.is_enabled('cron'):
            logger.info("[Cron] Scheduled runs are disabled in settings")
            return {'skipped': True, 'message': 'Cron jobs are disabled in settings'}

        logger.info("[Cron] Starting scheduled chart fetch")
        results = {
            'playlists': {'processed': 0, 'successful': [], 'failed': []},
            'weekly': {'processed': False, 'success': False, 'error': None},
            'configs': {'processed': 0, 'successful': [], 'failed': []},
        }

        if self.settings.is_enabled('playlist'):
            regions = self.settings.get('playlist', 'regions', ['global']) or ['global']
            for index, region in enumerate(regions):
                if index and delay:
                    self.sleep(delay)
                logger.info(f"[Cron] Fetching Viral 50 playlist for region: {region}")
                try:
                    outcome = self.ingest_playlist(region, now.date())
                except InvalidRequest as e:
                    outcome = IngestionResult(str(region), success=False, error=str(e))
                if outcome.success:
                    results['playlists']['successful'].append(region)
                    results['playlists']['processed'] += 1
                else:
                    results['playlists']['failed'].append({'region': region, 'error': outcome.error})

        if self.settings.is_enabled('json_api'):
            logger.info("[Cron] Fetching weekly charts from JSON API")
            outcomes = self.fetch_feed_charts()
            errors = [outcome.error for outcome in outcomes if not outcome.success]
            results['weekly']['processed'] = True
            results['weekly']['success'] = not errors
            results['weekly']['error'] = '; '.join(errors) or None

        for config in self.loader.enabled_chart_configs():
            days_back = 7 if config.chart_period == ChartPeriod.WEEKLY.value else 1
            fetch_date = now.date() - timedelta(days=days_back)
            logger.info(f"[Cron] Processing config {config.name} for date {fetch_date}")
            try:
                outcome = self.fetch_chart(config.chart_type, config.chart_period, config.region, fetch_date)
            except InvalidRequest as e:
                outcome = IngestionResult(config.id, success=False, error=str(e))

            if not outcome.success:
                results['configs']['failed'].append({'configId': config.id, 'error': outcome.error})
                continue
            try:
                self.loader.mark_config_run(config, now, now + timedelta(days=days_back))
            except ChartsETLError as e:
                results['configs']['failed'].append({'configId': config.id, 'error': str(e)})
                continue
            results['configs']['successful'].append(config.id)
            results['configs']['processed'] += 1
            if delay:
                self.sleep(delay)

        logger.info(f"[Cron] Completed: playlists={results['playlists']['processed']}, "
                    f"weekly={results['weekly']['success']}, configs={results['configs']['processed']}")
        return results

    def run_scheduler(self):
        """Run the scheduled pass daily at 02:00"""
        try:
            schedule.every().day.at("02:00").do(self.run_scheduled)
            logger.info("Pipeline scheduler started. Daily runs at 2 AM.")
            logger.info("Press Ctrl+C to stop the scheduler")

            while True:
                schedule.run_pending()
                time.sleep(60)  # Check every minute

        except KeyboardInterrupt:
            logger.info("Pipeline scheduler manually stopped")


def _build_enrichment():
    if not (os.getenv("SPOTIFY_CLIENT_ID") and os.getenv("SPOTIFY_CLIENT_SECRET")):
        return None
    from charts_etl.pipelines.enrichment_pipeline import EnrichmentPipeline, EnrichmentQueue
    return EnrichmentQueue(EnrichmentPipeline())


def upload_files(orchestrator: PipelineOrchestrator, paths: list, action=None) -> list:
    """Ingests chart files from disk in order

    A file that cannot be read as UTF-8 gets a failed result and the
    remaining files are still ingested.

    Raises:
        InvalidRequest: no paths or an unknown action
    """
    if not paths:
        raise InvalidRequest("No files provided")
    action = orchestrator.policy.resolve_action(action, SourceClass.CSV_UPLOAD)

    results = []
    for path in paths:
        filename = path.replace('\\', '/').rsplit('/', 1)[-1]
        try:
            with open(path, encoding='utf-8') as f:
                csv_text = f.read()
        except (OSError, UnicodeDecodeError) as e:
            logger.error(f"[Upload] Could not read {path}: {e}")
            results.append(IngestionResult(filename, success=False, error=f"Could not read file: {e}"))
            continue
        results.append(orchestrator.ingest_file(filename, csv_text, action))
    return results


def main(argv=None):
    """Main entry point for pipeline orchestration"""
    import argparse
    import json

    parser = argparse.ArgumentParser(description='Spotify Charts ETL Pipeline Orchestrator')
    parser.add_argument(
        '--mode',
        choices=['upload', 'fetch', 'feed', 'playlist', 'backfill', 'cron', 'scheduler', 'scores', 'setup-db'],
        default='cron',
        help='Pipeline mode to run'
    )
    parser.add_argument('--files', nargs='*', default=[], help='Chart CSV files to upload')
    parser.add_argument('--action', choices=[a.value for a in DedupAction], help='Deduplication action')
    parser.add_argument('--chart-type', default=ChartType.REGIONAL.value)
    parser.add_argument('--chart-period', default=ChartPeriod.DAILY.value)
    parser.add_argument('--region', default=None, help='Region code, omit for global')
    parser.add_argument('--date', default=None, help='Chart date, YYYY-MM-DD')
    parser.add_argument('--start-date', default=None)
    parser.add_argument('--end-date', default=None)
    parser.add_argument('--config-id', default=None)
    parser.add_argument('--max-duration', type=float, default=MAX_DURATION_SECONDS)
    parser.add_argument('--output', default=None, help='CSV file for lead scores')
    parser.add_argument('--all-regions', action='store_true')

    args = parser.parse_args(argv)
    setup_logging()

    if args.mode == 'setup-db':
        from charts_etl.models.schema import ensure_schema_exists
        ensure_schema_exists()
        return

    orchestrator = PipelineOrchestrator(enrichment=_build_enrichment())
    try:
        if args.mode == 'upload':
            output = [r.to_dict() for r in upload_files(orchestrator, args.files, args.action)]
        elif args.mode == 'fetch':
            output = orchestrator.fetch_chart(args.chart_type, args.chart_period, args.region,
                                              args.date or date.today() - timedelta(days=1),
                                              args.action).to_dict()
        elif args.mode == 'feed':
            output = [r.to_dict() for r in orchestrator.fetch_feed_charts(args.action)]
        elif args.mode == 'playlist':
            output = orchestrator.ingest_playlist(args.region, args.date, args.action).to_dict()
        elif args.mode == 'backfill':
            output = orchestrator.backfill(args.start_date, args.end_date, config_id=args.config_id,
                                           chart_type=args.chart_type, chart_period=args.chart_period,
                                           region=args.region, action=args.action,
                                           max_duration=args.max_duration).to_dict()
        elif args.mode == 'cron':
            output = orchestrator.run_scheduled()
        elif args.mode == 'scheduler':
            orchestrator.run_scheduler()
            return
        else:
            from charts_etl.pipelines.lead_score_pipeline import LeadScorePipeline
            pipeline = LeadScorePipeline(orchestrator.loader, orchestrator.settings)
            scores = pipeline.track_scores(chart_type=args.chart_type, chart_period=args.chart_period,
                                           region=args.region, all_regions=args.all_regions)
            if args.output:
                pipeline.export_csv(scores, args.output)
            output = scores.head(20).to_dict(orient='records')

        print(json.dumps(output, indent=2, default=str))

    except (ChartsETLError, OSError) as e:
        logger.error(f"Pipeline execution failed: {str(e)}")
        sys.exit(1)
    finally:
        orchestrator.close()


if __name__ == "__main__":
    main()
