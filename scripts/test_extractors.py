#!/usr/bin/env python3
"""
Extractor and enrichment tests; the network test only runs with -m network
"""

import logging
from datetime import date

import pytest
import requests
from spotipy.exceptions import SpotifyException

from charts_etl.exceptions import RemoteFetchFailure
from charts_etl.models.canonical import SnapshotKey
from charts_etl.models.database import Artist, Track


class FakeResponse:
    def __init__(self, text, status_code=200, payload=None):
        self.text = text
        self.status_code = status_code
        self.reason = "OK" if status_code < 400 else "Error"
        self.encoding = None
        self._payload = payload

    @property
    def ok(self):
        return self.status_code < 400

    def raise_for_status(self):
        if not self.ok:
            raise requests.HTTPError(f"{self.status_code} {self.reason}")

    def json(self):
        if self._payload is None:
            raise ValueError("No JSON object could be decoded")
        return self._payload


class FakeHTTPSession:
    def __init__(self, response):
        self.response = response
        self.urls = []

    def get(self, url, headers=None, timeout=None):
        self.urls.append(url)
        if isinstance(self.response, Exception):
            raise self.response
        return self.response


class FakeSpotifyClient:
    """Two playlist pages, plus artist/track lookups"""

    def __init__(self, missing_playlists=()):
        self.missing_playlists = set(missing_playlists)
        self.searches = []

    def playlist_items(self, playlist_id, market=None, limit=100):
        if playlist_id in self.missing_playlists:
            raise SpotifyException(404, -1, "Resource not found")
        return {'items': [{'track': {'id': f'{playlist_id}-1'}}], 'next': 'page-2'}

    def next(self, page):
        return {'items': [{'track': {'id': 'second-page'}}], 'next': None}

    def search(self, q, type, limit):
        self.searches.append(q)
        if type == 'playlist':
            return {'playlists': {'items': [None, {'id': 'other', 'name': 'Top Hits'},
                                            {'id': 'found', 'name': 'Viral 50 - Global'}]}}
        if type == 'artist':
            return {'artists': {'items': [{'id': 'sp-artist', 'images': [{'url': 'http://img/a'}],
                                           'genres': ['pop'], 'popularity': 70,
                                           'followers': {'total': 1234}}]}}
        return {'tracks': {'items': []}}

    def track(self, track_id):
        return {'id': track_id, 'album': {'name': 'Album', 'images': [{'url': 'http://img/t'}]},
                'preview_url': None, 'duration_ms': 200000, 'popularity': 55}


class TestSpotifyChartsExtractor:
    """Test the chart CSV download and chart feed"""

    KEY = SnapshotKey(date(2025, 12, 3), 'regional', 'daily', 'us')

    def test_construct_chart_url(self):
        from charts_etl.extractors.spotify_charts_extractor import construct_chart_url

        assert construct_chart_url(self.KEY, "https://charts.example/v1/charts/") == \
            "https://charts.example/v1/charts/regional-us-daily-2025-12-03"
        global_key = SnapshotKey(date(2025, 12, 3), 'viral', 'weekly')
        assert construct_chart_url(global_key, "https://charts.example").endswith("/viral-global-weekly-2025-12-03")

    def test_download_chart_csv(self, chart_csv):
        from charts_etl.extractors.spotify_charts_extractor import download_chart_csv

        text = chart_csv((1, 't1', 'Artist A', 'Song One'))
        session = FakeHTTPSession(FakeResponse(text))

        assert download_chart_csv(self.KEY, session=session) == text
        assert session.urls[0].endswith("regional-us-daily-2025-12-03")

    @pytest.mark.parametrize("response", [
        FakeResponse("<!DOCTYPE html><html></html>"),
        FakeResponse("   "),
        FakeResponse("position,track\n1,x\n"),
        FakeResponse("Not Found", status_code=404),
        requests.ConnectionError("connection refused"),
    ])
    def test_download_chart_csv_failures(self, response):
        from charts_etl.extractors.spotify_charts_extractor import download_chart_csv

        with pytest.raises(RemoteFetchFailure):
            download_chart_csv(self.KEY, session=FakeHTTPSession(response))

    def test_fetch_weekly_chart_data(self, feed_payload):
        from charts_etl.extractors.spotify_charts_extractor import fetch_weekly_chart_data

        session = FakeHTTPSession(FakeResponse("{}", payload=feed_payload))
        assert fetch_weekly_chart_data(session=session, url="https://feed.example") == feed_payload

        with pytest.raises(RemoteFetchFailure):
            fetch_weekly_chart_data(session=FakeHTTPSession(FakeResponse("oops", status_code=500)))
        with pytest.raises(RemoteFetchFailure):
            fetch_weekly_chart_data(session=FakeHTTPSession(FakeResponse("<html>")))

    def test_fetch_weekly_chart_data_rejects_non_object_body(self):
        from charts_etl.extractors.spotify_charts_extractor import fetch_weekly_chart_data

        session = FakeHTTPSession(FakeResponse('["a"]', payload=['a']))
        with pytest.raises(RemoteFetchFailure, match="instead of a JSON object"):
            fetch_weekly_chart_data(session=session, url="https://feed.example")

    @pytest.mark.network
    def test_live_chart_feed(self):
        from charts_etl.extractors.spotify_charts_extractor import fetch_weekly_chart_data
        from charts_etl.transformers.feed_transformer import parse_chart_feed

        charts = parse_chart_feed(fetch_weekly_chart_data())
        assert charts
        assert charts[0].rows[0].position == 1


class TestSpotifyAPIExtractor:
    """Test playlist and metadata lookups against a fake client"""

    def test_playlist_pagination(self):
        from charts_etl.extractors.spotify_api_extractor import SpotifyAPIExtractor

        extractor = SpotifyAPIExtractor(client=FakeSpotifyClient(), rate_limit=0)
        items = extractor.fetch_playlist_items('pl')
        assert [item['track']['id'] for item in items] == ['pl-1', 'second-page']

    def test_viral50_playlist_id(self, settings):
        from charts_etl.extractors.spotify_api_extractor import DEFAULT_VIRAL_50_PLAYLIST_IDS, viral50_playlist_id

        assert viral50_playlist_id(None) == DEFAULT_VIRAL_50_PLAYLIST_IDS['global']
        assert viral50_playlist_id('us', settings) is None

        settings.set('playlist', 'viral50_playlist_us', 'us-playlist')
        assert viral50_playlist_id('US', settings) == 'us-playlist'

    def test_viral50_falls_back_to_search(self):
        from charts_etl.extractors.spotify_api_extractor import DEFAULT_VIRAL_50_PLAYLIST_IDS, SpotifyAPIExtractor

        client = FakeSpotifyClient(missing_playlists={DEFAULT_VIRAL_50_PLAYLIST_IDS['global']})
        items = SpotifyAPIExtractor(client=client, rate_limit=0).fetch_viral50('global')

        assert client.searches == ['Viral 50 Global']
        assert items[0]['track']['id'] == 'found-1'

    def test_viral50_unknown_region(self):
        from charts_etl.extractors.spotify_api_extractor import SpotifyAPIExtractor

        with pytest.raises(RemoteFetchFailure):
            SpotifyAPIExtractor(client=FakeSpotifyClient(), rate_limit=0).fetch_viral50('zz')

    def test_api_errors_are_wrapped(self):
        from charts_etl.extractors.spotify_api_extractor import SpotifyAPIExtractor

        client = FakeSpotifyClient(missing_playlists={'gone'})
        with pytest.raises(RemoteFetchFailure) as excinfo:
            SpotifyAPIExtractor(client=client, rate_limit=0).fetch_playlist_items('gone')
        assert isinstance(excinfo.value.__cause__, SpotifyException)


class TestEnrichment:
    """Test metadata enrichment and its background queue"""

    def test_enrich_artist(self, session, session_factory, loader):
        from charts_etl.extractors.spotify_api_extractor import SpotifyAPIExtractor
        from charts_etl.pipelines.enrichment_pipeline import EnrichmentPipeline

        artist = loader.create_artist('Artist A')
        session.commit()

        pipeline = EnrichmentPipeline(SpotifyAPIExtractor(client=FakeSpotifyClient(), rate_limit=0),
                                      session_factory=session_factory)
        assert pipeline.enrich_artist(artist.id) is True

        session.expire_all()
        enriched = session.get(Artist, artist.id)
        assert enriched.external_id == 'sp-artist'
        assert enriched.image_url == 'http://img/a'
        assert enriched.genres == ['pop']
        assert enriched.followers == '1234'

        # complete artists are left alone
        assert pipeline.enrich_artist(artist.id) is False
        assert pipeline.enrich_artist('missing') is False

    def test_enrich_artist_keeps_external_id_unique(self, session, session_factory, loader):
        from charts_etl.extractors.spotify_api_extractor import SpotifyAPIExtractor
        from charts_etl.pipelines.enrichment_pipeline import EnrichmentPipeline

        loader.create_artist('Artist A', external_id='sp-artist')
        duplicate = loader.create_artist('Artist A (alias)')
        session.commit()

        pipeline = EnrichmentPipeline(SpotifyAPIExtractor(client=FakeSpotifyClient(), rate_limit=0),
                                      session_factory=session_factory)
        assert pipeline.enrich_artist(duplicate.id) is True

        session.expire_all()
        assert session.get(Artist, duplicate.id).external_id is None

    def test_enrich_track(self, session, session_factory, loader):
        from charts_etl.extractors.spotify_api_extractor import SpotifyAPIExtractor
        from charts_etl.pipelines.enrichment_pipeline import EnrichmentPipeline

        artist = loader.create_artist('Artist A')
        track = loader.create_track('Song One', artist.id, uri='spotify:track:t1')
        session.commit()

        pipeline = EnrichmentPipeline(SpotifyAPIExtractor(client=FakeSpotifyClient(), rate_limit=0),
                                      session_factory=session_factory)
        assert pipeline.enrich_track(track.id) is True

        session.expire_all()
        enriched = session.get(Track, track.id)
        assert enriched.external_id == 't1'
        assert enriched.album_name == 'Album'
        assert enriched.duration_ms == 200000

    def test_queue_logs_failures(self, caplog):
        from charts_etl.pipelines.enrichment_pipeline import EnrichmentQueue

        class BrokenPipeline:
            def __init__(self):
                self.seen = []

            def enrich_artist(self, artist_id):
                self.seen.append(artist_id)
                raise RemoteFetchFailure("Spotify API error while fetching artist: 429")

            def enrich_track(self, track_id):
                return True

        pipeline = BrokenPipeline()
        with caplog.at_level(logging.WARNING, logger="charts_etl.enrichment"):
            with EnrichmentQueue(pipeline, max_workers=1) as queue:
                futures = queue.submit_artists([f'a{i}' for i in range(7)])
                queue.submit_tracks(['t1'])

        assert len(futures) == 5
        assert sorted(pipeline.seen) == ['a0', 'a1', 'a2', 'a3', 'a4']
        failures = [r for r in caplog.records if r.name == "charts_etl.enrichment"]
        assert len(failures) == 5
        assert "429" in failures[0].getMessage()
