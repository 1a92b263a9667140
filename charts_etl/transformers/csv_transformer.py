import csv
import logging
from io import StringIO

from charts_etl.exceptions import EmptyResult, MalformedInput
from charts_etl.models.canonical import CanonicalRow, ChartPeriod, ChartType, ParsedChart, RowOrigin
from charts_etl.transformers.chart_transformer import (clamp_streams, parse_chart_date, parse_number,
                                                       split_artist_names)

logger = logging.getLogger(__name__)

REQUIRED_COLUMNS = ['rank', 'uri', 'artist_names', 'track_name']
OPTIONAL_COLUMNS = ['source', 'peak_rank', 'previous_rank', 'days_on_chart', 'streams']


def _optional_positive(value):
    number = parse_number(value)
    return number if number and number > 0 else None


def _build_row(values: list, columns: dict) -> CanonicalRow:
    def cell(name):
        index = columns.get(name)
        if index is None:
            return None
        return values[index].strip() or None

    rank = parse_number(cell('rank'))
    if rank is None:
        raise MalformedInput("missing rank")

    return CanonicalRow(
        position=rank,
        track_name=cell('track_name') or '',
        artist_names=tuple(split_artist_names(cell('artist_names') or '')),
        origin=RowOrigin.TABULAR,
        track_external_ref=cell('uri'),
        streams=clamp_streams(parse_number(cell('streams'))),
        previous_rank=_optional_positive(cell('previous_rank')),
        peak_rank=_optional_positive(cell('peak_rank')),
        days_on_chart=_optional_positive(cell('days_on_chart')),
        source_label=cell('source'),
    )


def parse_chart_csv(csv_text: str, chart_type, chart_period, chart_date, region=None) -> ParsedChart:
    """Parses a downloaded Spotify charts CSV into canonical rows

    Args:
        csv_text (str): header row followed by data rows
        chart_type: regional or viral
        chart_period: daily or weekly
        chart_date: the chart date (date or YYYY-MM-DD)
        region (str): region code, None for global

    Returns:
        ParsedChart: rows in file order; skipped rows are listed in `warnings`

    Raises:
        MalformedInput: when the header does not match the expected columns
        EmptyResult: when no data row could be used
    """
    if not csv_text or not csv_text.strip():
        raise MalformedInput("CSV file is empty")

    reader = csv.reader(StringIO(csv_text.strip()))
    try:
        header = next(reader)
    except csv.Error as e:
        raise MalformedInput(f"Could not read CSV header: {e}")

    normalized = [column.strip().lower() for column in header]
    missing = [column for column in REQUIRED_COLUMNS if column not in normalized]
    if missing:
        raise MalformedInput(
            f"CSV headers don't match expected format. Missing: {', '.join(missing)}. "
            f"Expected: {', '.join(REQUIRED_COLUMNS + OPTIONAL_COLUMNS)}")

    columns = {column: index for index, column in enumerate(normalized)}

    rows = []
    warnings = []
    try:
        for values in reader:
            line = reader.line_num
            if not values or all(not value.strip() for value in values):
                continue
            if len(values) != len(header):
                warnings.append(f"Row {line}: expected {len(header)} columns, got {len(values)}")
                continue
            try:
                rows.append(_build_row(values, columns))
            except (MalformedInput, ValueError) as e:
                warnings.append(f"Row {line}: {e}")
    except csv.Error as e:
        warnings.append(f"Row {reader.line_num}: {e}")

    for warning in warnings:
        logger.warning(f"[CSVParser] Skipping {warning}")

    if not rows:
        raise EmptyResult(f"No valid chart rows in CSV ({len(warnings)} rows skipped)")

    logger.info(f"[CSVParser] Parsed {len(rows)} rows from CSV")

    return ParsedChart(
        rows=rows,
        date=parse_chart_date(chart_date),
        chart_type=ChartType(chart_type),
        chart_period=ChartPeriod(chart_period),
        region=region,
        warnings=warnings,
    )
