"""Wiring of the reconciliation services around one repository.

LedgerServices is built once in the app lifespan (and by the maintenance
CLI) and stored on ``app.state.ledger``; tests build it around an in-memory
repository.
"""

from __future__ import annotations

import random

from src.dealops.config import Settings
from src.dealops.ledger.csv_import import CsvFileStorage, CsvImporter, ImportJobRunner
from src.dealops.ledger.distribution import BatchDistributor
from src.dealops.ledger.duplicates import DuplicateActivityDetector
from src.dealops.ledger.orphans import OrphanPromoter
from src.dealops.ledger.replication import ReplicationEngine


class LedgerServices:
    """Container for the repository and every routine that uses it."""

    def __init__(
        self,
        repository,
        settings: Settings,
        rng: random.Random | None = None,
    ) -> None:
        self.settings = settings
        self.repository = repository
        self.orphan_promoter = OrphanPromoter(
            repository,
            net_value_factor=settings.ORPHAN_NET_VALUE_FACTOR,
            speculative_prefix=settings.SPECULATIVE_PREFIX,
            lookback_days=settings.ORPHAN_LOOKBACK_DAYS,
            match_window_days=settings.ORPHAN_MATCH_WINDOW_DAYS,
        )
        self.duplicate_detector = DuplicateActivityDetector(
            repository,
            gap_seconds=settings.DUPLICATE_GAP_SECONDS,
            lookback_days=settings.DUPLICATE_LOOKBACK_DAYS,
        )
        self.replication_engine = ReplicationEngine(
            repository,
            max_attempts=settings.REPLICATION_MAX_ATTEMPTS,
            batch_size=settings.REPLICATION_QUEUE_BATCH_SIZE,
            claim_timeout_seconds=settings.REPLICATION_CLAIM_TIMEOUT_SECONDS,
        )
        self.distributor = BatchDistributor(
            repository,
            roster=settings.DISTRIBUTION_ROSTER,
            origin_id=settings.DISTRIBUTION_ORIGIN_ID or None,
            tag=settings.DISTRIBUTION_TAG,
            rng=rng,
        )
        self.csv_importer = CsvImporter(
            repository,
            chunk_size=settings.IMPORT_CHUNK_SIZE,
            chunk_delay=settings.IMPORT_CHUNK_DELAY_SECONDS,
            max_error_details=settings.IMPORT_MAX_STORED_ERRORS,
        )
        self.import_runner = ImportJobRunner(
            repository,
            importer=self.csv_importer,
            storage=CsvFileStorage(settings.IMPORT_STORAGE_DIR),
            chunk_size=settings.IMPORT_JOB_CHUNK_SIZE,
            max_stored_errors=settings.IMPORT_MAX_STORED_ERRORS,
            max_attempts=settings.IMPORT_JOB_MAX_ATTEMPTS,
        )
