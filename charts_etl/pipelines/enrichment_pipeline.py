import concurrent.futures
import logging
from functools import partial

from sqlalchemy.exc import SQLAlchemyError

from charts_etl.config.connection import get_session_factory
from charts_etl.extractors.spotify_api_extractor import SpotifyAPIExtractor
from charts_etl.models.database import Artist, Track
from charts_etl.transformers.chart_transformer import extract_spotify_track_id

logger = logging.getLogger(__name__)

# failures of background enrichment are reported here only
enrichment_logger = logging.getLogger("charts_etl.enrichment")

# newly created entities enriched per ingestion
ENRICH_LIMIT = 5


def _first_image(images):
    return images[0].get('url') if images else None


class EnrichmentPipeline:
    """Fills artist and track metadata from the Spotify Web API

    Each call opens its own session so it can run on a worker thread.

    Args:
        extractor (SpotifyAPIExtractor): Spotify API access
        session_factory: callable returning a new SQLAlchemy session
    """

    def __init__(self, extractor: SpotifyAPIExtractor = None, session_factory=None):
        self.extractor = extractor or SpotifyAPIExtractor()
        self.session_factory = session_factory or get_session_factory()

    def enrich_artist(self, artist_id: str) -> bool:
        """Returns True when the artist was updated"""
        session = self.session_factory()
        try:
            artist = session.get(Artist, artist_id)
            if artist is None:
                logger.info(f"[Enrichment] Artist {artist_id} not found, skipping")
                return False
            if artist.image_url and artist.external_id:
                return False

            data = (self.extractor.get_artist(artist.external_id) if artist.external_id
                    else self.extractor.search_artist(artist.name))
            if not data:
                logger.info(f"[Enrichment] Artist {artist.name!r} not found on Spotify")
                return False

            spotify_id = data.get('id')
            if spotify_id and artist.external_id is None:
                owner = session.query(Artist).filter(Artist.external_id == spotify_id).first()
                if owner is None:
                    artist.external_id = spotify_id
            artist.image_url = _first_image(data.get('images'))
            artist.genres = data.get('genres') or []
            artist.popularity = data.get('popularity')
            followers = (data.get('followers') or {}).get('total')
            if followers:
                artist.followers = str(followers)

            session.commit()
            logger.info(f"[Enrichment] Enriched artist: {artist.name}")
            return True
        except SQLAlchemyError:
            session.rollback()
            raise
        finally:
            session.close()

    def enrich_track(self, track_id: str) -> bool:
        """Returns True when the track was updated"""
        session = self.session_factory()
        try:
            track = session.get(Track, track_id)
            if track is None:
                return False
            if track.image_url and track.external_id:
                return False

            data = None
            spotify_id = extract_spotify_track_id(track.uri) or track.external_id
            if spotify_id:
                data = self.extractor.get_track(spotify_id)
            if not data and track.artist is not None:
                data = self.extractor.search_track(track.name, track.artist.name)
            if not data:
                return False

            if data.get('id') and track.external_id is None:
                owner = session.query(Track).filter(Track.external_id == data['id']).first()
                if owner is None:
                    track.external_id = data['id']
            album = data.get('album') or {}
            track.image_url = _first_image(album.get('images'))
            track.album_name = album.get('name')
            track.preview_url = data.get('preview_url')
            track.duration_ms = data.get('duration_ms')
            track.popularity = data.get('popularity')

            session.commit()
            logger.info(f"[Enrichment] Enriched track: {track.name}")
            return True
        except SQLAlchemyError:
            session.rollback()
            raise
        finally:
            session.close()


class EnrichmentQueue:
    """Runs enrichment on a thread pool without blocking ingestion

    Errors never reach the submitter; they are logged on the
    `charts_etl.enrichment` logger.

    Args:
        pipeline (EnrichmentPipeline): does the actual work
        max_workers (int): thread pool size
        limit (int): entities enriched per submit call
    """

    def __init__(self, pipeline: EnrichmentPipeline, max_workers: int = 2, limit: int = ENRICH_LIMIT):
        self.pipeline = pipeline
        self.limit = limit
        self.executor = concurrent.futures.ThreadPoolExecutor(max_workers=max_workers,
                                                              thread_name_prefix="enrichment")

    def _log_outcome(self, kind: str, entity_id: str, future: concurrent.futures.Future):
        error = future.exception()
        if error is not None:
            enrichment_logger.warning(f"[Enrichment] Failed for {kind} {entity_id}: {error}")

    def _submit(self, kind: str, method, entity_ids) -> list:
        futures = []
        for entity_id in list(entity_ids)[:self.limit]:
            future = self.executor.submit(method, entity_id)
            future.add_done_callback(partial(self._log_outcome, kind, entity_id))
            futures.append(future)
        return futures

    def submit_artists(self, artist_ids) -> list:
        return self._submit('artist', self.pipeline.enrich_artist, artist_ids)

    def submit_tracks(self, track_ids) -> list:
        return self._submit('track', self.pipeline.enrich_track, track_ids)

    def shutdown(self, wait: bool = True):
        self.executor.shutdown(wait=wait)

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_value, traceback):
        self.shutdown()
