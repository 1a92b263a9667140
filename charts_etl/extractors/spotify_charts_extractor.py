import logging

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from charts_etl.config.settings import SPOTIFY_CHARTS_BASE_URL, SPOTIFY_CHARTS_JSON_API
from charts_etl.exceptions import RemoteFetchFailure
from charts_etl.models.canonical import SnapshotKey

logger = logging.getLogger(__name__)

USER_AGENT = "Mozilla/5.0 (compatible; charts-etl/1.0)"

retry_strategy = Retry(
    total=3,
    backoff_factor=1,
    status_forcelist=[429, 500, 502, 503, 504]
)
adapter = HTTPAdapter(max_retries=retry_strategy)
http = requests.Session()
http.mount("https://", adapter)
http.mount("http://", adapter)


def construct_chart_url(key: SnapshotKey, base_url: str = SPOTIFY_CHARTS_BASE_URL) -> str:
    """Builds the CSV download url, e.g. .../regional-global-daily-2025-12-03

    Args:
        key (SnapshotKey): snapshot to download; a global chart uses "global" as region
        base_url (str): charts service base url

    Returns:
        str: the download url
    """
    chart_name = f"{key.chart_type.value}-{key.region or 'global'}-{key.chart_period.value}-{key.date.isoformat()}"
    return f"{base_url.rstrip('/')}/{chart_name}"


def download_chart_csv(key: SnapshotKey, session: requests.Session = None, timeout: int = 30) -> str:
    """Downloads the CSV file of one chart snapshot

    Args:
        key (SnapshotKey): snapshot to download
        session (requests.Session): http session, the module retrying session by default
        timeout (int): request timeout in seconds

    Returns:
        str: raw csv text

    Raises:
        RemoteFetchFailure: on network errors, non-success status or a non-csv body
    """
    session = session or http
    url = construct_chart_url(key)
    logger.info(f"[SpotifyCharts] Downloading CSV from: {url}")

    try:
        response = session.get(url, headers={'Accept': 'text/csv', 'User-Agent': USER_AGENT}, timeout=timeout)
        response.raise_for_status()
    except requests.RequestException as e:
        raise RemoteFetchFailure(f"Failed to download CSV for {key}: {e}") from e

    response.encoding = "utf-8"
    csv_text = response.text
    stripped = csv_text.strip()

    if stripped.startswith('<!DOCTYPE') or stripped.startswith('<html'):
        raise RemoteFetchFailure("Received HTML instead of CSV. CSV download endpoint may not be available.")
    if not stripped:
        raise RemoteFetchFailure("Downloaded CSV is empty")
    if not stripped.startswith('rank,'):
        raise RemoteFetchFailure("Response does not appear to be a valid CSV file")

    logger.info(f"[SpotifyCharts] Downloaded CSV ({len(csv_text)} bytes)")
    return csv_text


def fetch_weekly_chart_data(session: requests.Session = None, url: str = SPOTIFY_CHARTS_JSON_API,
                            timeout: int = 30) -> dict:
    """Fetches the public chart feed

    Returns:
        dict: the decoded feed payload with `chartEntryViewResponses`

    Raises:
        RemoteFetchFailure: on network errors, non-success status or an undecodable body
    """
    session = session or http
    logger.info(f"[SpotifyCharts] Fetching chart feed from: {url}")

    try:
        response = session.get(url, headers={'Accept': 'application/json', 'User-Agent': USER_AGENT},
                               timeout=timeout)
    except requests.RequestException as e:
        raise RemoteFetchFailure(f"Failed to fetch chart feed: {e}") from e

    if not response.ok:
        raise RemoteFetchFailure(f"Failed to fetch chart feed: {response.status_code} {response.reason}. "
                                 f"Response: {response.text[:200]}")

    try:
        payload = response.json()
    except ValueError as e:
        raise RemoteFetchFailure(f"Chart feed returned invalid JSON: {e}") from e
    if not isinstance(payload, dict):
        raise RemoteFetchFailure(f"Chart feed returned {type(payload).__name__} instead of a JSON object")

    views = payload.get('chartEntryViewResponses')
    logger.info(f"[SpotifyCharts] Fetched chart feed ({len(views) if isinstance(views, list) else 0} views)")
    return payload
