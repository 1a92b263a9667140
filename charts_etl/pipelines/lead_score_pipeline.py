import logging

import pandas as pd

from charts_etl.config.settings import LEAD_SCORE_CATEGORY, SettingsStore
from charts_etl.loaders.postgres_loader import PostgresLoader
from charts_etl.transformers.stats_transformer import (MultiplierCache, artist_lead_score, consistency_score,
                                                       has_upward_trend, lead_score)

logger = logging.getLogger(__name__)

HISTORY_COLUMNS = ['track_id', 'track_name', 'artist_id', 'artist_name', 'chart_type', 'chart_period',
                   'region', 'date', 'position']

TRACK_SCORE_COLUMNS = ['track_id', 'track_name', 'artist_id', 'artist_name', 'chart_type', 'chart_period',
                       'region', 'lead_score', 'days_in_top10', 'days_in_top20', 'average_position',
                       'best_position', 'total_days', 'trending_up', 'consistency', 'first_date', 'last_date']

ARTIST_SCORE_COLUMNS = ['artist_id', 'artist_name', 'lead_score', 'tracks', 'best_position']


class LeadScorePipeline:
    """Scores stored chart history per track and per artist

    Args:
        loader (PostgresLoader): source of position history
        settings (SettingsStore): lead_score multipliers; writes to that category drop the cache
        cache (MultiplierCache): multiplier cache, built over `settings` when omitted
    """

    def __init__(self, loader: PostgresLoader, settings: SettingsStore = None, cache: MultiplierCache = None):
        self.loader = loader
        self.settings = settings
        self.cache = cache or MultiplierCache(self._load_multiplier_settings)
        if settings is not None:
            settings.on_change(self.cache.invalidate)

    def _load_multiplier_settings(self) -> dict:
        if self.settings is None:
            return {}
        return self.settings.get_category(LEAD_SCORE_CATEGORY)

    def history_frame(self, **filters) -> pd.DataFrame:
        """Position history as a DataFrame, global region labelled `global`"""
        history = pd.DataFrame(self.loader.position_history(**filters), columns=HISTORY_COLUMNS)
        history['region'] = history['region'].fillna('global')
        return history

    def track_scores(self, start_date=None, end_date=None, chart_type=None, chart_period=None, region=None,
                     all_regions: bool = False) -> pd.DataFrame:
        """Lead score, trend and consistency per track and chart variant

        Returns:
            pd.DataFrame: one row per (track, chart type, chart period, region), best score first
        """
        history = self.history_frame(start_date=start_date, end_date=end_date, chart_type=chart_type,
                                     chart_period=chart_period, region=region, all_regions=all_regions)
        if history.empty:
            return pd.DataFrame(columns=TRACK_SCORE_COLUMNS)

        multipliers = self.cache.get()
        records = []
        history = history.sort_values('date', kind='stable')
        for _, group in history.groupby(['track_id', 'chart_type', 'chart_period', 'region'], sort=False):
            positions = group['position'].astype(int).tolist()
            score = lead_score(positions, multipliers)
            first = group.iloc[0]
            records.append({
                'track_id': first['track_id'],
                'track_name': first['track_name'],
                'artist_id': first['artist_id'],
                'artist_name': first['artist_name'],
                'chart_type': first['chart_type'],
                'chart_period': first['chart_period'],
                'region': first['region'],
                'lead_score': score.score,
                'days_in_top10': score.breakdown.days_in_top10,
                'days_in_top20': score.breakdown.days_in_top20,
                'average_position': score.breakdown.average_position,
                'best_position': score.breakdown.best_position,
                'total_days': score.breakdown.total_days,
                'trending_up': has_upward_trend(positions),
                'consistency': consistency_score(positions),
                'first_date': group['date'].iloc[0],
                'last_date': group['date'].iloc[-1],
            })

        logger.info(f"Scored {len(records)} tracks from {len(history)} chart entries")
        scores = pd.DataFrame(records, columns=TRACK_SCORE_COLUMNS)
        return scores.sort_values('lead_score', ascending=False, kind='stable').reset_index(drop=True)

    def artist_scores(self, track_scores: pd.DataFrame) -> pd.DataFrame:
        """Sums track scores per artist"""
        if track_scores.empty:
            return pd.DataFrame(columns=ARTIST_SCORE_COLUMNS)

        artists = (
            track_scores.groupby(['artist_id', 'artist_name'], sort=False)
            .agg(lead_score=('lead_score', artist_lead_score),
                 tracks=('track_id', 'nunique'),
                 best_position=('best_position', 'min'))
            .reset_index()
        )
        return artists.sort_values('lead_score', ascending=False, kind='stable').reset_index(drop=True)

    def export_csv(self, scores: pd.DataFrame, path: str):
        scores.to_csv(path, index=False)
        logger.info(f"Exported {len(scores)} rows to {path}")
