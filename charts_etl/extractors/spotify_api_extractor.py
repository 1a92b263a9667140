import logging
import os
import time

import requests
import spotipy
from spotipy.exceptions import SpotifyException
from spotipy.oauth2 import SpotifyClientCredentials

from charts_etl.exceptions import RemoteFetchFailure

logger = logging.getLogger(__name__)

# Viral 50 playlists per region; more can be configured as playlist/viral50_playlist_<region>
DEFAULT_VIRAL_50_PLAYLIST_IDS = {
    'global': '37i9dQZEVXbLiRSasKsNU9',
}

# client credentials need an explicit market for playlist content
DEFAULT_MARKET = 'US'


def viral50_playlist_id(region: str, settings=None):
    """Configured playlist id for a region, else the built-in default, else None"""
    region = (region or 'global').lower()
    if settings is not None:
        configured = settings.get('playlist', f'viral50_playlist_{region}')
        if configured and isinstance(configured, str):
            logger.info(f"[SpotifyPlaylists] Using configured playlist ID for {region}: {configured}")
            return configured

    playlist_id = DEFAULT_VIRAL_50_PLAYLIST_IDS.get(region)
    if not playlist_id:
        logger.warning(f"[SpotifyPlaylists] No playlist ID found for region: {region}")
    return playlist_id


class SpotifyAPIExtractor:
    """Extractor for Spotify Web API data (playlists, artists and tracks)

    Args:
        client (spotipy.Spotify): preconfigured client; built from SPOTIFY_CLIENT_ID/SECRET when omitted
        rate_limit (float): seconds to wait before each API call
    """

    def __init__(self, client: spotipy.Spotify = None, rate_limit: float = 1):
        if client is None:
            credentials = SpotifyClientCredentials(
                client_id=os.getenv("SPOTIFY_CLIENT_ID"),
                client_secret=os.getenv("SPOTIFY_CLIENT_SECRET")
            )
            client = spotipy.Spotify(client_credentials_manager=credentials)
        self.sp = client
        self.rate_limit = rate_limit

    def _call(self, description: str, method, *args, **kwargs):
        if self.rate_limit:
            time.sleep(self.rate_limit)  # Rate limiting
        try:
            return method(*args, **kwargs)
        except (SpotifyException, requests.RequestException) as e:
            raise RemoteFetchFailure(f"Spotify API error while {description}: {e}") from e

    def search_playlist(self, query: str, limit: int = 5):
        """Best "Viral 50" match for a search query, or None"""
        results = self._call(f"searching playlists for {query!r}", self.sp.search, q=query, type='playlist',
                             limit=limit)
        playlists = [p for p in ((results or {}).get('playlists') or {}).get('items') or [] if p and p.get('name')]
        if not playlists:
            return None

        wants_global = 'global' in query.lower()
        for playlist in playlists:
            name = playlist['name'].lower()
            if 'viral 50' in name and (not wants_global or 'global' in name):
                return playlist
        return playlists[0]

    def fetch_playlist_items(self, playlist_id: str, market: str = DEFAULT_MARKET) -> list:
        """All track items of a playlist, following pagination

        Returns:
            list: playlist items in playlist order
        """
        page = self._call(f"fetching playlist {playlist_id}", self.sp.playlist_items, playlist_id, market=market,
                          limit=100)
        items = list(page.get('items') or [])
        while page.get('next'):
            page = self._call(f"paging playlist {playlist_id}", self.sp.next, page)
            items.extend(page.get('items') or [])
        logger.info(f"[SpotifyPlaylists] Fetched {len(items)} items from playlist {playlist_id}")
        return items

    def fetch_viral50(self, region: str, settings=None) -> list:
        """Playlist items of the Viral 50 playlist for a region

        Falls back to a playlist search when the configured id is not found.

        Raises:
            RemoteFetchFailure: no playlist id is known for the region or the playlist cannot be fetched
        """
        region = (region or 'global').lower()
        playlist_id = viral50_playlist_id(region, settings)
        if not playlist_id:
            raise RemoteFetchFailure(f"No playlist ID found for region: {region}. "
                                     f"Configure playlist/viral50_playlist_{region} in settings.")

        logger.info(f"[SpotifyPlaylists] Fetching Viral 50 chart for region: {region}, playlistId: {playlist_id}")
        try:
            return self.fetch_playlist_items(playlist_id)
        except RemoteFetchFailure as e:
            cause = e.__cause__
            if not (isinstance(cause, SpotifyException) and cause.http_status == 404):
                raise

        query = 'Viral 50 Global' if region == 'global' else f'Viral 50 {region.upper()}'
        logger.info(f"[SpotifyPlaylists] Playlist {playlist_id} not found, searching for {query!r}")
        match = self.search_playlist(query)
        if not match or not match.get('id'):
            raise RemoteFetchFailure(f"Playlist {playlist_id} not found and no {query!r} playlist could be found "
                                     f"via search. Verify the playlist ID in settings.")

        logger.info(f"[SpotifyPlaylists] Found playlist via search: {match['name']} (ID: {match['id']})")
        return self.fetch_playlist_items(match['id'])

    def get_artist(self, artist_id: str):
        return self._call(f"fetching artist {artist_id}", self.sp.artist, artist_id)

    def search_artist(self, name: str):
        results = self._call(f"searching artist {name!r}", self.sp.search, q=f'artist:{name}', type='artist',
                             limit=1)
        items = ((results or {}).get('artists') or {}).get('items') or []
        return items[0] if items else None

    def get_track(self, track_id: str):
        return self._call(f"fetching track {track_id}", self.sp.track, track_id)

    def search_track(self, track_name: str, artist_name: str):
        results = self._call(f"searching track {track_name!r}", self.sp.search,
                             q=f'track:{track_name} artist:{artist_name}', type='track', limit=1)
        items = ((results or {}).get('tracks') or {}).get('items') or []
        return items[0] if items else None
