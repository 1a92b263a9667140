import uuid
from datetime import datetime

from sqlalchemy import (Boolean, Column, Date, DateTime, ForeignKey, Index, Integer, JSON, PrimaryKeyConstraint,
                        String, Text, func)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import declarative_base, relationship
from sqlalchemy.schema import UniqueConstraint


Base = declarative_base()

# JSONB on postgres, plain JSON elsewhere (sqlite in tests)
JsonType = JSON().with_variant(JSONB(), "postgresql")


def new_id():
    return str(uuid.uuid4())


class Artist(Base):
    __tablename__ = 'artist'

    id = Column(String, primary_key=True, default=new_id)
    name = Column(String, nullable=False)
    external_id = Column(String, nullable=True, unique=True)
    platform = Column(String, nullable=False, default='spotify')
    image_url = Column(String, nullable=True)
    genres = Column(JsonType, nullable=True)
    popularity = Column(Integer, nullable=True)
    followers = Column(String, nullable=True)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    tracks = relationship('Track', back_populates='artist')

    __table_args__ = (
        Index('ix_artist_name_lower', func.lower(name)),
    )

    def __repr__(self):
        return f"<Artist(id='{self.id}', name='{self.name}')>"


class Track(Base):
    __tablename__ = 'track'

    id = Column(String, primary_key=True, default=new_id)
    name = Column(String, nullable=False)
    artist_id = Column(String, ForeignKey('artist.id'), nullable=False)
    external_id = Column(String, nullable=True, unique=True)
    uri = Column(String, nullable=True)
    platform = Column(String, nullable=False, default='spotify')
    album_name = Column(String, nullable=True)
    image_url = Column(String, nullable=True)
    preview_url = Column(String, nullable=True)
    duration_ms = Column(Integer, nullable=True)
    popularity = Column(Integer, nullable=True)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    artist = relationship('Artist', back_populates='tracks')

    __table_args__ = (
        Index('ix_track_name_artist', name, artist_id),
    )

    def __repr__(self):
        return f"<Track(id='{self.id}', name='{self.name}')>"


class IngestionRecord(Base):
    __tablename__ = 'ingestion_record'

    id = Column(String, primary_key=True, default=new_id)
    source_name = Column(String, nullable=False)
    source_class = Column(String, nullable=False)
    chart_type = Column(String, nullable=False)
    chart_period = Column(String, nullable=False)
    date = Column(Date, nullable=False)
    region = Column(String, nullable=True)
    region_type = Column(String, nullable=True)
    status = Column(String, nullable=False, default='processing')
    records_processed = Column(Integer, nullable=False, default=0)
    records_created = Column(Integer, nullable=False, default=0)
    records_updated = Column(Integer, nullable=False, default=0)
    records_skipped = Column(Integer, nullable=False, default=0)
    error = Column(Text, nullable=True)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    completed_at = Column(DateTime, nullable=True)

    def __repr__(self):
        return f"<IngestionRecord(source_name='{self.source_name}', status='{self.status}')>"


class ChartEntry(Base):
    __tablename__ = 'chart_entry'

    id = Column(String, primary_key=True, default=new_id)
    date = Column(Date, nullable=False)
    chart_type = Column(String, nullable=False)
    chart_period = Column(String, nullable=False)
    region = Column(String, nullable=True)
    region_type = Column(String, nullable=True)
    track_id = Column(String, ForeignKey('track.id'), nullable=False)
    artist_id = Column(String, ForeignKey('artist.id'), nullable=False)
    platform = Column(String, nullable=False, default='spotify')

    position = Column(Integer, nullable=False)
    previous_rank = Column(Integer, nullable=True)
    peak_rank = Column(Integer, nullable=False)
    days_on_chart = Column(Integer, nullable=False)
    # decimal string, unsigned 64-bit range
    streams = Column(String(20), nullable=True)
    # ingestion path: tabular, feed or playlist
    source = Column(String, nullable=True)
    label = Column(String, nullable=True)
    upload_id = Column(String, ForeignKey('ingestion_record.id', ondelete='SET NULL'), nullable=True)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    last_updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    track = relationship('Track')
    artist = relationship('Artist')

    __table_args__ = (
        # NULL region is the global chart; coalesce so it still collides
        Index('uq_chart_entry_natural_key', date, chart_type, chart_period,
              func.coalesce(region, ''), track_id, platform, unique=True),
        Index('ix_chart_entry_history', track_id, chart_type, chart_period, date),
        Index('ix_chart_entry_upload', upload_id),
    )

    def __repr__(self):
        return f"<ChartEntry(track_id='{self.track_id}', date='{self.date}', position='{self.position}')>"


class ChartConfig(Base):
    __tablename__ = 'chart_config'

    id = Column(String, primary_key=True, default=new_id)
    name = Column(String, nullable=False)
    chart_type = Column(String, nullable=False)
    chart_period = Column(String, nullable=False)
    region = Column(String, nullable=True)
    region_type = Column(String, nullable=True)
    enabled = Column(Boolean, nullable=False, default=True)
    last_run = Column(DateTime, nullable=True)
    next_run = Column(DateTime, nullable=True)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    __table_args__ = (
        Index('uq_chart_config_variant', chart_type, chart_period,
              func.coalesce(region, ''), unique=True),
    )

    def __repr__(self):
        return f"<ChartConfig(name='{self.name}', chart_type='{self.chart_type}', region='{self.region}')>"


class Setting(Base):
    __tablename__ = 'setting'

    category = Column(String, nullable=False)
    key = Column(String, nullable=False)
    value = Column(Text, nullable=False)

    __table_args__ = (
        UniqueConstraint('category', 'key', name='uq_setting'),
        PrimaryKeyConstraint('category', 'key'),
    )

    def __repr__(self):
        return f"<Setting(category='{self.category}', key='{self.key}')>"
