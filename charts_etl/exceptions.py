class ChartsETLError(Exception):
    """Base class for chart ingestion errors"""


class InvalidRequest(ChartsETLError):
    """Request is missing required parameters or carries invalid ones"""


class MalformedInput(ChartsETLError):
    """Source could not be parsed (bad header, bad filename, bad row shape)"""


class EmptyResult(ChartsETLError):
    """Source was well formed but contained no chart entries"""


class ResolutionFailure(ChartsETLError):
    """Artist or track for a row could not be matched or created"""


class PersistenceFailure(ChartsETLError):
    """Store read or write failed"""


class RemoteFetchFailure(ChartsETLError):
    """Remote source unreachable or returned a non-success status"""


class DuplicateSnapshot(ChartsETLError):
    """Dedup policy declined to write an already populated snapshot

    Args:
        key: the snapshot key that already has entries
        existing_count (int): number of stored entries for the key
        skipped (bool): True for the `skip` action, False for `show-warning`
        sample (list): a few existing entries for the caller to review
    """

    def __init__(self, key, existing_count: int, skipped: bool, sample: list = None):
        self.key = key
        self.existing_count = existing_count
        self.skipped = skipped
        self.sample = sample or []
        if skipped:
            message = f"Skipped {key}: {existing_count} entries already stored"
        else:
            message = (f"Duplicate entries found. {existing_count} existing entries for this "
                       f"date/chart combination will be overwritten if you proceed.")
        super().__init__(message)
