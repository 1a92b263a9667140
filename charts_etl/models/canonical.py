from dataclasses import dataclass, field
from datetime import date
from enum import Enum
from typing import Optional

from charts_etl.exceptions import MalformedInput

PLATFORM = "spotify"
MAX_STREAMS = 2 ** 64 - 1


class ChartType(str, Enum):
    REGIONAL = "regional"
    VIRAL = "viral"


class ChartPeriod(str, Enum):
    DAILY = "daily"
    WEEKLY = "weekly"


class DedupAction(str, Enum):
    SKIP = "skip"
    UPDATE = "update"
    REPLACE = "replace"
    SHOW_WARNING = "show-warning"


class SourceClass(str, Enum):
    """Ingestion path, used to pick the default dedup action"""
    CSV_UPLOAD = "csv_upload"
    JSON_API = "json_api"
    PLAYLIST = "playlist"


class RowOrigin(str, Enum):
    TABULAR = "tabular"
    FEED = "feed"
    PLAYLIST = "playlist"


class IngestionStatus(str, Enum):
    PROCESSING = "processing"
    SUCCESS = "success"
    PARTIAL = "partial"
    FAILED = "failed"


def _optional_rank(name: str, value) -> Optional[int]:
    if value is None:
        return None
    if not isinstance(value, int) or isinstance(value, bool) or value < 1:
        raise MalformedInput(f"{name} must be a positive integer, got {value!r}")
    return value


@dataclass(frozen=True)
class CanonicalRow:
    """One chart position, independent of the source format.

    Every parser produces these; anything that does not fit raises
    MalformedInput at construction so downstream code only sees valid rows.
    """

    position: int
    track_name: str
    artist_names: tuple
    origin: RowOrigin
    track_external_ref: Optional[str] = None
    artist_external_ids: tuple = ()
    streams: Optional[int] = None
    previous_rank: Optional[int] = None
    peak_rank: Optional[int] = None
    days_on_chart: Optional[int] = None
    source_label: Optional[str] = None

    def __post_init__(self):
        if not isinstance(self.position, int) or isinstance(self.position, bool) or self.position < 1:
            raise MalformedInput(f"position must be a positive integer, got {self.position!r}")
        if not self.track_name or not self.track_name.strip():
            raise MalformedInput("track name is required")
        names = tuple(name.strip() for name in self.artist_names if name and name.strip())
        if not names:
            raise MalformedInput(f"no artist names for track {self.track_name!r}")
        object.__setattr__(self, "artist_names", names)
        object.__setattr__(self, "track_name", self.track_name.strip())
        object.__setattr__(self, "artist_external_ids", tuple(self.artist_external_ids))
        object.__setattr__(self, "origin", RowOrigin(self.origin))
        if self.streams is not None and not 0 <= self.streams <= MAX_STREAMS:
            raise MalformedInput(f"streams out of range: {self.streams}")
        _optional_rank("previous_rank", self.previous_rank)
        _optional_rank("peak_rank", self.peak_rank)
        _optional_rank("days_on_chart", self.days_on_chart)

    @property
    def primary_artist(self) -> str:
        return self.artist_names[0]

    @property
    def primary_artist_external_id(self) -> Optional[str]:
        return self.artist_external_ids[0] if self.artist_external_ids else None


@dataclass
class ParsedChart:
    """Parser output: rows in source order plus snapshot metadata"""

    rows: list
    date: date
    chart_type: ChartType
    chart_period: ChartPeriod
    region: Optional[str] = None
    warnings: list = field(default_factory=list)


@dataclass(frozen=True)
class SnapshotKey:
    """(date, chartType, chartPeriod, region) - one ingestion unit.

    region is None for the global chart, never the string "global".
    """

    date: date
    chart_type: ChartType
    chart_period: ChartPeriod
    region: Optional[str] = None
    platform: str = PLATFORM

    def __post_init__(self):
        object.__setattr__(self, "chart_type", ChartType(self.chart_type))
        object.__setattr__(self, "chart_period", ChartPeriod(self.chart_period))
        if self.region in ("", "global"):
            object.__setattr__(self, "region", None)

    @property
    def region_type(self) -> Optional[str]:
        if not self.region:
            return None
        return "country" if len(self.region) == 2 else "city"

    def __str__(self):
        return (f"{self.chart_type.value}-{self.region or 'global'}-"
                f"{self.chart_period.value}-{self.date.isoformat()}")
