"""Orphan transaction promotion.

Speculative transactions (external id prefixed ``newsale-``) are written by
the sales webhook before the payment provider confirms them. Most of them
are later mirrored by an authoritative record under a different id; the rest
are "true orphans" that would otherwise never reach the dashboards.

For each speculative record in the window the promoter looks for an
authoritative twin of the same product category sold within +/- N days:
first by case-insensitive email, then by first+last name token. Records with
no twin get ``net_value = price * factor`` and ``count_in_dashboard = true``.

Promotion is a conditional update on ``count_in_dashboard = false``, so a
second run (or an overlapping one) never promotes a record twice.
"""

from __future__ import annotations

import time
from datetime import datetime, timedelta, timezone

import structlog

from src.dealops.core.monitoring import (
    reconciliation_run_duration_seconds,
    record_reconciliation,
)
from src.dealops.ledger.errors import InvalidInputError
from src.dealops.ledger.matching import emails_match, names_match
from src.dealops.ledger.schemas import (
    OrphanMatch,
    OrphanPromotionReport,
    PromotedTransaction,
    TransactionRead,
)

logger = structlog.get_logger(__name__)

OPERATION = "orphan_promotion"


def _as_utc(value: datetime) -> datetime:
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


def _to_match(tx: TransactionRead, twin: TransactionRead) -> OrphanMatch:
    return OrphanMatch(
        transaction_id=tx.id,
        external_id=tx.external_id,
        customer_name=tx.customer_name,
        customer_email=tx.customer_email,
        product_price=tx.product_price,
        matched_transaction_id=twin.id,
        matched_external_id=twin.external_id,
    )


class OrphanPromoter:
    """Promotes speculative transactions that have no authoritative twin.

    Args:
        repository: LedgerRepository (or any object with the same transaction methods).
        net_value_factor: Default multiplier applied to the sale price.
        speculative_prefix: External id prefix that marks speculative records.
        lookback_days: Default window length when no start date is given.
        match_window_days: Allowed sale-date distance between twins.
    """

    def __init__(
        self,
        repository,
        net_value_factor: float = 0.88,
        speculative_prefix: str = "newsale-",
        lookback_days: int = 30,
        match_window_days: int = 1,
    ) -> None:
        self._repo = repository
        self._factor = net_value_factor
        self._prefix = speculative_prefix
        self._lookback = timedelta(days=lookback_days)
        self._window = timedelta(days=match_window_days)

    def find_twin(
        self, tx: TransactionRead, authoritative: list[TransactionRead]
    ) -> tuple[str, TransactionRead] | None:
        """Return ("email" | "name", twin) for the first authoritative match, else None."""
        nearby = [
            a
            for a in authoritative
            if a.product_category == tx.product_category
            and abs(_as_utc(a.sale_date) - _as_utc(tx.sale_date)) <= self._window
        ]
        for candidate in nearby:
            if emails_match(tx.customer_email, candidate.customer_email):
                return "email", candidate
        for candidate in nearby:
            if names_match(tx.customer_name, candidate.customer_name):
                return "name", candidate
        return None

    async def promote(
        self,
        start_date: datetime | None = None,
        end_date: datetime | None = None,
        dry_run: bool = False,
        net_value_factor: float | None = None,
    ) -> OrphanPromotionReport:
        """Scan the window and promote every true orphan.

        Args:
            start_date: Window start (default: end_date minus the lookback).
            end_date: Window end (default: now).
            dry_run: Compute the full report without writing anything.
            net_value_factor: Override for the configured factor.

        Returns:
            OrphanPromotionReport with counts and per-record detail lists.

        Raises:
            InvalidInputError: If the window is inverted or the factor is not positive.
        """
        end = _as_utc(end_date) if end_date else datetime.now(timezone.utc)
        start = _as_utc(start_date) if start_date else end - self._lookback
        if start > end:
            raise InvalidInputError("start_date must not be after end_date")
        factor = self._factor if net_value_factor is None else net_value_factor
        if factor <= 0:
            raise InvalidInputError("net_value_factor must be positive")

        started = time.perf_counter()
        report = OrphanPromotionReport(
            dry_run=dry_run,
            net_value_factor=factor,
            start_date=start,
            end_date=end,
        )

        # Fetch failures abort the whole run
        candidates = await self._repo.list_speculative_transactions(start, end, self._prefix)
        authoritative: list[TransactionRead] = []
        if candidates:
            authoritative = await self._repo.list_authoritative_transactions(
                start - self._window,
                end + self._window,
                self._prefix,
                {tx.product_category for tx in candidates},
            )

        summary = report.summary
        summary.total_newsale_candidates = len(candidates)
        net_total = 0.0

        for tx in candidates:
            twin = self.find_twin(tx, authoritative)
            if twin is not None:
                kind, match = twin
                if kind == "email":
                    report.skipped_by_email.append(_to_match(tx, match))
                    summary.skipped_by_email_match += 1
                else:
                    report.skipped_by_name.append(_to_match(tx, match))
                    summary.skipped_by_name_match += 1
                continue

            summary.total_true_orphans += 1
            net_value = round((tx.product_price or 0.0) * factor, 2)

            if not dry_run:
                try:
                    promoted = await self._repo.promote_transaction(tx.id, net_value)
                except Exception as exc:
                    logger.warning(
                        "orphans.promote_failed",
                        transaction_id=tx.id,
                        external_id=tx.external_id,
                        exc_info=True,
                    )
                    report.errors.append(f"{tx.external_id}: {exc}")
                    continue
                if not promoted:
                    logger.info(
                        "orphans.already_promoted",
                        transaction_id=tx.id,
                        external_id=tx.external_id,
                    )
                    continue

            report.promoted_transactions.append(
                PromotedTransaction(
                    transaction_id=tx.id,
                    external_id=tx.external_id,
                    customer_name=tx.customer_name,
                    customer_email=tx.customer_email,
                    product_price=tx.product_price,
                    net_value=net_value,
                    sale_date=tx.sale_date,
                )
            )
            summary.total_promoted += 1
            net_total += net_value

        summary.total_net_value_added = round(net_total, 2)

        if not dry_run:
            record_reconciliation(OPERATION, "promoted", summary.total_promoted)
            record_reconciliation(OPERATION, "skipped_email", summary.skipped_by_email_match)
            record_reconciliation(OPERATION, "skipped_name", summary.skipped_by_name_match)
            record_reconciliation(OPERATION, "error", len(report.errors))
        reconciliation_run_duration_seconds.labels(operation=OPERATION).observe(
            time.perf_counter() - started
        )

        logger.info(
            "orphans.run_completed",
            dry_run=dry_run,
            candidates=summary.total_newsale_candidates,
            skipped_by_email=summary.skipped_by_email_match,
            skipped_by_name=summary.skipped_by_name_match,
            promoted=summary.total_promoted,
            net_value_added=summary.total_net_value_added,
            errors=len(report.errors),
        )
        return report
