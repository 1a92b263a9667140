import logging
from dataclasses import dataclass, field

from charts_etl.config.settings import DEDUP_SETTING_KEY, SettingsStore
from charts_etl.exceptions import DuplicateSnapshot, InvalidRequest
from charts_etl.loaders.postgres_loader import PostgresLoader
from charts_etl.models.canonical import DedupAction, SnapshotKey, SourceClass

logger = logging.getLogger(__name__)


@dataclass
class DuplicateCheck:
    key: SnapshotKey
    exists: bool
    existing_count: int = 0
    sample: list = field(default_factory=list)


def fallback_action(source_class: SourceClass) -> DedupAction:
    """Manual uploads ask the user; unattended sources skip"""
    if SourceClass(source_class) == SourceClass.CSV_UPLOAD:
        return DedupAction.SHOW_WARNING
    return DedupAction.SKIP


def coerce_action(action) -> DedupAction:
    try:
        return DedupAction(action)
    except ValueError:
        raise InvalidRequest(f"Invalid deduplication action: {action!r}. "
                             f"Must be one of {', '.join(a.value for a in DedupAction)}")


class DeduplicationPolicy:
    """Decides whether an already populated snapshot is skipped, updated or replaced

    Args:
        loader (PostgresLoader): persistence surface
        settings (SettingsStore): source of the per-source default actions
    """

    def __init__(self, loader: PostgresLoader, settings: SettingsStore = None):
        self.loader = loader
        self.settings = settings

    def check_existing(self, key: SnapshotKey, with_sample: bool = False) -> DuplicateCheck:
        count = self.loader.count_snapshot(key)
        sample = self.existing_sample(key) if with_sample and count else []
        return DuplicateCheck(key=key, exists=count > 0, existing_count=count, sample=sample)

    def existing_sample(self, key: SnapshotKey, limit: int = 10) -> list:
        return self.loader.sample_snapshot(key, limit=limit)

    def default_action(self, source_class: SourceClass) -> DedupAction:
        """Configured default for a source class, falling back to the built-in default"""
        source_class = SourceClass(source_class)
        if self.settings is None:
            return fallback_action(source_class)

        value = self.settings.get(source_class.value, DEDUP_SETTING_KEY)
        if value is None:
            return fallback_action(source_class)
        try:
            return DedupAction(value)
        except ValueError:
            logger.warning(f"[Deduplication] Invalid default action {value!r} for {source_class.value}, "
                           f"using {fallback_action(source_class).value}")
            return fallback_action(source_class)

    def resolve_action(self, action, source_class: SourceClass, unattended: bool = False) -> DedupAction:
        """Explicit action wins over the configured default

        show-warning needs someone to answer it, so unattended jobs get skip instead.
        """
        resolved = coerce_action(action) if action else self.default_action(source_class)
        if unattended and resolved == DedupAction.SHOW_WARNING:
            logger.info(f"[Deduplication] show-warning is not usable for {SourceClass(source_class).value} jobs, "
                        f"using skip")
            return DedupAction.SKIP
        return resolved

    def enforce(self, key: SnapshotKey, action: DedupAction) -> DuplicateCheck:
        """Checks the snapshot and applies the action

        Returns:
            DuplicateCheck: the check result when processing may proceed

        Raises:
            DuplicateSnapshot: existing entries found and action is skip or show-warning
        """
        action = DedupAction(action)
        check = self.check_existing(key, with_sample=action == DedupAction.SHOW_WARNING)
        if not check.exists:
            return check

        if action == DedupAction.SKIP:
            logger.info(f"[Deduplication] Skipping duplicate entries for {key}")
            raise DuplicateSnapshot(key, check.existing_count, skipped=True)
        if action == DedupAction.SHOW_WARNING:
            raise DuplicateSnapshot(key, check.existing_count, skipped=False, sample=check.sample)

        logger.info(f"[Deduplication] {check.existing_count} existing entries for {key}, proceeding with "
                    f"{action.value}")
        return check
