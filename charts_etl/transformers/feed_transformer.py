import logging

from charts_etl.exceptions import EmptyResult, InvalidRequest, MalformedInput
from charts_etl.models.canonical import CanonicalRow, ChartPeriod, ChartType, ParsedChart, RowOrigin
from charts_etl.transformers.chart_transformer import extract_spotify_artist_id, parse_chart_date

logger = logging.getLogger(__name__)


def classify_alias(alias: str) -> tuple:
    """Maps a chart metadata alias to (chart type, chart period)

    Args:
        alias (str): e.g. "REGIONAL_GLOBAL_WEEKLY" or "VIRAL_GLOBAL_DAILY"

    Returns:
        tuple: (ChartType, ChartPeriod)
    """
    alias = (alias or '').upper()
    chart_type = ChartType.VIRAL if 'VIRAL' in alias else ChartType.REGIONAL
    chart_period = ChartPeriod.WEEKLY if 'WEEKLY' in alias else ChartPeriod.DAILY
    return chart_type, chart_period


def _positive_or_none(value):
    if isinstance(value, int) and not isinstance(value, bool) and value > 0:
        return value
    return None


def _build_feed_row(entry: dict) -> CanonicalRow:
    metadata = entry.get('trackMetadata') or {}
    chart_data = entry.get('chartEntryData') or {}
    artists = metadata.get('artists') or []
    labels = metadata.get('labels') or []

    return CanonicalRow(
        position=chart_data.get('currentRank'),
        track_name=metadata.get('trackName') or '',
        artist_names=tuple(artist.get('name') or '' for artist in artists),
        origin=RowOrigin.FEED,
        track_external_ref=metadata.get('trackUri') or None,
        artist_external_ids=tuple(extract_spotify_artist_id(artist.get('spotifyUri')) for artist in artists),
        previous_rank=_positive_or_none(chart_data.get('previousRank')),
        peak_rank=_positive_or_none(chart_data.get('peakRank')),
        days_on_chart=_positive_or_none(chart_data.get('appearancesOnChart')),
        source_label=labels[0].get('name') if labels else None,
    )


def parse_chart_feed(payload: dict) -> list:
    """Parses the Spotify charts JSON feed into one ParsedChart per chart view

    Args:
        payload (dict): decoded JSON with a `chartEntryViewResponses` list

    Returns:
        list: ParsedChart objects for every view that has usable entries

    Raises:
        MalformedInput: when the payload or one of its views is not a JSON object
        EmptyResult: when there is no chart view or no view carries entries
    """
    if payload is None:
        payload = {}
    if not isinstance(payload, dict):
        raise MalformedInput(f"Chart feed must be a JSON object, got {type(payload).__name__}")

    views = payload.get('chartEntryViewResponses') or []
    if not isinstance(views, list):
        raise MalformedInput(f"chartEntryViewResponses must be a list, got {type(views).__name__}")
    if not views:
        raise EmptyResult("No chart entry view responses in API response")

    charts = []
    for index, view in enumerate(views):
        if not isinstance(view, dict):
            raise MalformedInput(f"Chart view {index + 1} must be a JSON object, got {type(view).__name__}")
        display_chart = view.get('displayChart') or {}
        alias = (display_chart.get('chartMetadata') or {}).get('alias', '')
        chart_type, chart_period = classify_alias(alias)

        entries = view.get('entries') or []
        if not entries:
            logger.warning(f"[ChartParser] Chart view {alias or '?'} has no entries")
            continue

        try:
            chart_date = parse_chart_date(display_chart.get('date'))
        except InvalidRequest as e:
            logger.warning(f"[ChartParser] Skipping chart view {alias or '?'}: {e}")
            continue

        rows = []
        warnings = []
        for index, entry in enumerate(entries):
            try:
                rows.append(_build_feed_row(entry))
            except (MalformedInput, AttributeError, TypeError) as e:
                warnings.append(f"Entry {index + 1}: {e}")
                logger.warning(f"[ChartParser] Skipping invalid entry {index + 1}: {e}")

        if not rows:
            continue

        logger.info(f"[ChartParser] Parsed {len(rows)} entries for {alias} on {chart_date}")
        charts.append(ParsedChart(
            rows=rows,
            date=chart_date,
            chart_type=chart_type,
            chart_period=chart_period,
            region=None,
            warnings=warnings,
        ))

    if not charts:
        raise EmptyResult("No entries found in chart response")
    return charts


def parse_playlist_items(items: list, chart_date, chart_type=ChartType.VIRAL,
                         chart_period=ChartPeriod.DAILY, region=None) -> ParsedChart:
    """Turns Viral 50 playlist items into chart rows, position = playlist order

    Args:
        items (list): playlist track items as returned by the Spotify Web API
        chart_date: the date the playlist snapshot represents

    Returns:
        ParsedChart: one row per playable track
    """
    rows = []
    warnings = []
    tracks = [item.get('track') for item in items or [] if item and item.get('track')]

    for index, track in enumerate(tracks):
        artists = track.get('artists') or []
        uri = track.get('uri') or (f"spotify:track:{track['id']}" if track.get('id') else None)
        try:
            rows.append(CanonicalRow(
                position=index + 1,
                track_name=track.get('name') or '',
                artist_names=tuple(artist.get('name') or '' for artist in artists),
                origin=RowOrigin.PLAYLIST,
                track_external_ref=uri,
                artist_external_ids=tuple(artist.get('id') for artist in artists),
            ))
        except MalformedInput as e:
            warnings.append(f"Track {index + 1}: {e}")

    if not rows:
        raise EmptyResult("Playlist contained no tracks")

    logger.info(f"[SpotifyPlaylists] Parsed {len(rows)} tracks from playlist")
    return ParsedChart(
        rows=rows,
        date=parse_chart_date(chart_date),
        chart_type=ChartType(chart_type),
        chart_period=ChartPeriod(chart_period),
        region=region,
        warnings=warnings,
    )
