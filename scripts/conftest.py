import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

CSV_HEADER = "rank,uri,artist_names,track_name,source,peak_rank,previous_rank,days_on_chart,streams"


@pytest.fixture
def engine():
    """In-memory SQLite database shared by every session of a test"""
    from charts_etl.models.database import Base

    engine = create_engine("sqlite://", connect_args={"check_same_thread": False}, poolclass=StaticPool)
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine)


@pytest.fixture
def session(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def loader(session):
    from charts_etl.loaders.postgres_loader import PostgresLoader
    return PostgresLoader(session)


@pytest.fixture
def settings(session):
    from charts_etl.config.settings import SettingsStore
    return SettingsStore(session)


@pytest.fixture
def chart_csv():
    """Builds chart CSV text from (rank, track id, artist names, track name) tuples"""
    def build(*rows):
        lines = [CSV_HEADER]
        for rank, track_id, artist_names, track_name in rows:
            lines.append(f'{rank},spotify:track:{track_id},"{artist_names}","{track_name}",Label,{rank},,1,"1,000"')
        return "\n".join(lines) + "\n"
    return build


@pytest.fixture
def make_row():
    """Builds a tabular CanonicalRow"""
    from charts_etl.models.canonical import CanonicalRow, RowOrigin

    def build(position, track_id, track_name, artist='Artist A', artist_ids=(), streams=None):
        return CanonicalRow(
            position=position,
            track_name=track_name,
            artist_names=(artist,),
            origin=RowOrigin.TABULAR,
            track_external_ref=f"spotify:track:{track_id}" if track_id else None,
            artist_external_ids=artist_ids,
            streams=streams,
        )
    return build


@pytest.fixture
def feed_payload():
    return {
        'chartEntryViewResponses': [{
            'displayChart': {
                'date': '2025-01-02',
                'chartMetadata': {'alias': 'REGIONAL_GLOBAL_WEEKLY'},
            },
            'entries': [
                {
                    'trackMetadata': {
                        'trackName': 'Song One',
                        'trackUri': 'spotify:track:t1',
                        'artists': [{'name': 'Artist A', 'spotifyUri': 'spotify:artist:a1'},
                                    {'name': 'Guest', 'spotifyUri': 'spotify:artist:g1'}],
                        'labels': [{'name': 'Label One'}],
                    },
                    'chartEntryData': {'currentRank': 1, 'previousRank': 2, 'peakRank': 1,
                                       'appearancesOnChart': 5},
                },
                {
                    'trackMetadata': {
                        'trackName': 'Song Two',
                        'trackUri': 'spotify:track:t2',
                        'artists': [{'name': 'Artist B', 'spotifyUri': 'spotify:artist:b1'}],
                    },
                    'chartEntryData': {'currentRank': 2},
                },
            ],
        }],
    }


@pytest.fixture
def playlist_items():
    return [
        {'track': {'id': 't9', 'name': 'Viral Song', 'uri': 'spotify:track:t9',
                   'artists': [{'id': 'a9', 'name': 'Viral Artist'}]}},
        {'track': None},
        {'track': {'id': 't8', 'name': 'Second Viral', 'uri': 'spotify:track:t8',
                   'artists': [{'id': 'a8', 'name': 'Other Artist'}]}},
    ]
