import logging
import re
from datetime import date, datetime
from typing import Optional

from charts_etl.exceptions import InvalidRequest, MalformedInput
from charts_etl.models.canonical import MAX_STREAMS, ChartPeriod, ChartType, SnapshotKey

logger = logging.getLogger(__name__)

FILENAME_PATTERN = re.compile(r'^([^-]+)-([^-]+)-([^-]+)-(\d{4}-\d{2}-\d{2})\.csv$')


def parse_number(text) -> Optional[int]:
    """Transforms text to number

    Args:
        text (str): the text to transform, e.g. "1,234,567" or "100+"

    Returns:
        int: the transformed number, None for empty or "-" cells
    """
    if text is None:
        return None
    if isinstance(text, int):
        return text
    text = str(text).strip().strip('"')
    if not text or text == '-':
        return None
    return int(text.replace(",", "").replace("+", ""))


def clamp_streams(value: Optional[int]) -> Optional[int]:
    """Saturates stream counts to the unsigned 64-bit range"""
    if value is None:
        return None
    if value < 0:
        raise MalformedInput(f"negative stream count: {value}")
    if value > MAX_STREAMS:
        logger.warning(f"Stream count {value} exceeds 64-bit range, saturating to {MAX_STREAMS}")
        return MAX_STREAMS
    return value


def extract_spotify_track_id(uri: Optional[str]) -> Optional[str]:
    """Extracts the track id from a spotify:track:<id> URI or open.spotify.com URL"""
    if not uri:
        return None
    if match := re.search(r'spotify:track:([a-zA-Z0-9]+)', uri):
        return match.group(1)
    if match := re.search(r'open\.spotify\.com/track/([a-zA-Z0-9]+)', uri):
        return match.group(1)
    return None


def extract_spotify_artist_id(uri: Optional[str]) -> Optional[str]:
    if not uri:
        return None
    if match := re.search(r'spotify:artist:([a-zA-Z0-9]+)', uri):
        return match.group(1)
    if match := re.search(r'open\.spotify\.com/artist/([a-zA-Z0-9]+)', uri):
        return match.group(1)
    return None


def split_artist_names(artist_names: str) -> list:
    """Splits "A, B" credits; the first name is the primary artist"""
    return [name.strip() for name in artist_names.split(', ') if name.strip()]


def normalize_region(region: Optional[str]) -> Optional[str]:
    """'global' and empty values become None, other codes are lowercased"""
    if region is None:
        return None
    region = region.strip().lower()
    if region in ('', 'global'):
        return None
    return region


def get_region_type(region: Optional[str]) -> Optional[str]:
    """2-letter codes are countries, longer codes are cities"""
    region = normalize_region(region)
    if not region:
        return None
    return 'country' if len(region) == 2 else 'city'


def parse_chart_date(value) -> date:
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if not isinstance(value, str) or not re.fullmatch(r'\d{4}-\d{2}-\d{2}', value.strip()):
        raise InvalidRequest(f"Invalid date format: {value!r}. Must be YYYY-MM-DD")
    try:
        return datetime.strptime(value.strip(), '%Y-%m-%d').date()
    except ValueError:
        raise InvalidRequest(f"Invalid date: {value!r}")


def build_snapshot_key(chart_type, chart_period, region, chart_date) -> SnapshotKey:
    """Validates request parameters and builds the snapshot key

    Raises:
        InvalidRequest: when the chart type, period or date is not valid
    """
    try:
        chart_type = ChartType(chart_type)
    except ValueError:
        raise InvalidRequest(f'Invalid chartType: {chart_type!r}. Must be "regional" or "viral"')
    try:
        chart_period = ChartPeriod(chart_period)
    except ValueError:
        raise InvalidRequest(f'Invalid chartPeriod: {chart_period!r}. Must be "daily" or "weekly"')
    return SnapshotKey(
        date=parse_chart_date(chart_date),
        chart_type=chart_type,
        chart_period=chart_period,
        region=normalize_region(region),
    )


def parse_chart_filename(filename: str) -> SnapshotKey:
    """Parses {chartType}-{region}-{chartPeriod}-{YYYY-MM-DD}.csv

    Args:
        filename (str): e.g. regional-global-daily-2025-12-03.csv

    Returns:
        SnapshotKey: the snapshot the file describes

    Raises:
        MalformedInput: when the name does not follow the contract
    """
    match = FILENAME_PATTERN.match(filename or '')
    if not match:
        raise MalformedInput(
            f"Invalid filename format: {filename!r}. Expected: {{chartType}}-{{region}}-{{period}}-{{date}}.csv")

    chart_type, region, chart_period, chart_date = match.groups()
    if chart_type not in [t.value for t in ChartType]:
        raise MalformedInput(f"Invalid chart type: {chart_type}. Must be 'regional' or 'viral'")
    if chart_period not in [p.value for p in ChartPeriod]:
        raise MalformedInput(f"Invalid chart period: {chart_period}. Must be 'daily' or 'weekly'")
    try:
        parsed_date = datetime.strptime(chart_date, '%Y-%m-%d').date()
    except ValueError:
        raise MalformedInput(f"Invalid date in filename: {chart_date}")

    return SnapshotKey(
        date=parsed_date,
        chart_type=ChartType(chart_type),
        chart_period=ChartPeriod(chart_period),
        region=normalize_region(region),
    )
