# transcribe_pipeline/services/quarantine.py
import logging
import time

from transcribe_pipeline.config import QUARANTINE_NAMESPACE
from transcribe_pipeline.errors import QuarantineError, StorageError, ArtifactNotFoundError

logger = logging.getLogger(__name__)


class Quarantine:
    """
    Holding area for artifacts whose processing permanently failed.

    Artifacts are copied first and only then removed from primary storage,
    so a failed copy never loses the last copy. Nothing here ever deletes
    from the quarantine namespace.
    """

    def __init__(self, storage, namespace: str = QUARANTINE_NAMESPACE):
        self.storage = storage
        self.namespace = namespace

    def quarantine_key(self, artifact_key: str) -> str:
        name = artifact_key.rsplit("/", 1)[-1]
        return f"{self.namespace}/{int(time.time())}-{name}"

    def copy_to_quarantine(self, artifact_key: str) -> str:
        """Move ``artifact_key`` into quarantine. Returns the quarantine key."""
        target = self.quarantine_key(artifact_key)

        try:
            self.storage.copy(artifact_key, target)
        except (StorageError, ArtifactNotFoundError) as e:
            raise QuarantineError(f"Could not quarantine {artifact_key}: {e}")

        if not self.storage.exists(target):
            raise QuarantineError(f"Quarantine copy of {artifact_key} is missing")

        try:
            self.storage.delete(artifact_key)
        except StorageError as e:
            # both copies survive; an operator can clean up the primary one
            logger.error("Quarantined %s but could not remove original: %s", artifact_key, e)

        logger.info("Moved %s to quarantine as %s", artifact_key, target)
        return target
