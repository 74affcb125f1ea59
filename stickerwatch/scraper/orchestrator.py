"""Drive the catalog through the executor, one item at a time.

Two layouts are supported. ``run`` keeps every result in the single progress
ledger and uploads completed results at the end. ``run_grouped`` writes one
batch file per ``(collection, rarity)`` and uploads each group as soon as it
has been scraped.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass
from datetime import date
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence

from . import config
from .batches import (
    BatchFile,
    active_run_date,
    batch_path,
    clear_active_run_date,
    set_active_run_date,
)
from .browser import PageSession
from .catalog import Catalog, Item
from .executor import Outcome, UnitOfWorkExecutor, UnitStatus
from .ledger import ProgressLedger, ResultStore
from .logging_utils import _scraper_event
from .pacing import Pacer
from .uploader import UploadReconciler
from .utils import log_line

ProgressCallback = Callable[[Dict[str, Any]], None]


@dataclass
class RunSummary:
    mode: str
    items_total: int = 0
    items_skipped: int = 0
    items_processed: int = 0
    units_fetched: int = 0
    units_pruned: int = 0
    units_unknown: int = 0
    units_repaired: int = 0
    rate_limit_hits: int = 0
    groups_total: int = 0
    groups_skipped: int = 0
    groups_uploaded: int = 0
    uploads_ok: int = 0
    uploads_failed: int = 0

    def absorb(self, outcomes: Iterable[Outcome]) -> None:
        for outcome in outcomes:
            if outcome.fetched:
                self.units_fetched += 1
            if outcome.status == UnitStatus.PRUNED:
                self.units_pruned += 1
            elif outcome.status == UnitStatus.UNKNOWN:
                self.units_unknown += 1
            self.rate_limit_hits += outcome.rate_limit_hits

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class BatchOrchestrator:
    def __init__(
        self,
        executor: UnitOfWorkExecutor,
        session: PageSession,
        *,
        application_counts: Optional[Sequence[int]] = None,
        batch_size: Optional[int] = None,
        batch_sleep_seconds: Optional[float] = None,
        pacer: Optional[Pacer] = None,
        reconciler: Optional[UploadReconciler] = None,
        repair: bool = True,
        progress_callback: Optional[ProgressCallback] = None,
    ) -> None:
        self.executor = executor
        self.session = session
        self.application_counts = list(
            application_counts if application_counts is not None else config.application_counts()
        )
        self.batch_size = config.BATCH_SIZE if batch_size is None else batch_size
        self.batch_sleep_seconds = (
            config.BATCH_SLEEP_SECONDS if batch_sleep_seconds is None else batch_sleep_seconds
        )
        self.pacer = pacer or executor.pacer
        self.reconciler = reconciler
        self.repair = repair
        self.progress_callback = progress_callback

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _progress(self, **fields: Any) -> None:
        _scraper_event("progress", **fields)
        if self.progress_callback is not None:
            try:
                self.progress_callback(dict(fields))
            except Exception as exc:  # noqa: BLE001
                log_line(f"[PROGRESS][WARN] progress callback failed: {exc}")

    def _batch_pause(self, processed: int, remaining: int) -> None:
        """Sleep after every ``batch_size`` processed items unless nothing is left."""

        if self.batch_size <= 0 or self.batch_sleep_seconds <= 0:
            return
        if processed % self.batch_size != 0 or remaining <= 0:
            return
        log_line(
            f"[BATCH] Processed {processed} items; sleeping {self.batch_sleep_seconds:g}s "
            "before the next batch"
        )
        self.pacer.sleep(self.batch_sleep_seconds, reason="batch cool-down", countdown=True)

    def _scrape_item(
        self,
        item: Item,
        counts: Sequence[int],
        store: ResultStore,
        summary: RunSummary,
    ) -> List[Outcome]:
        outcomes = self.executor.resolve_item(item, counts, self.session, store)
        summary.absorb(outcomes)
        return outcomes

    def _repair_unknowns(
        self,
        catalog: Catalog,
        store: ResultStore,
        summary: RunSummary,
        *,
        phase: str,
    ) -> None:
        targets = []
        for result in store.results_with_unknowns():
            item = catalog.get(result.sticker_id)
            if item is not None:
                targets.append((item, result))
        if not targets:
            return
        log_line(f"[REPAIR] Re-checking {len(targets)} results with Unknown counts")
        for index, (item, result) in enumerate(targets, start=1):
            unknown = result.unknown_counts()
            self._progress(
                phase=phase,
                item=item.name,
                sticker_id=item.id,
                index=index,
                total=len(targets),
                counts=unknown,
            )
            outcomes = self._scrape_item(item, unknown, store, summary)
            summary.units_repaired += sum(1 for o in outcomes if o.count is not None)
            self._batch_pause(index, len(targets) - index)

    def _reconcile(self, store: ResultStore, ids: Sequence[str], summary: RunSummary) -> bool:
        if self.reconciler is None or not ids:
            return False
        ok = self.reconciler.reconcile(store.snapshot(ids), store=store)
        if ok:
            summary.uploads_ok += 1
        else:
            summary.uploads_failed += 1
        return ok

    # ------------------------------------------------------------------
    # Flat layout
    # ------------------------------------------------------------------

    def run(self, catalog: Catalog, ledger: ProgressLedger) -> RunSummary:
        """Scrape every catalog item not yet completed in ``ledger``."""

        counts = self.application_counts
        summary = RunSummary(mode="flat", items_total=len(catalog))
        pending = [item for item in catalog if not ledger.is_complete(item.id)]
        summary.items_skipped = len(catalog) - len(pending)
        log_line(
            f"[PLAN] {len(catalog)} stickers in catalog; {summary.items_skipped} already complete; "
            f"{len(pending)} to scrape"
        )

        for index, item in enumerate(pending, start=1):
            missing = ledger.pending_counts(item.id, counts)
            self._progress(
                phase="scrape",
                item=item.name,
                sticker_id=item.id,
                collection=item.collection,
                index=index,
                total=len(pending),
                completed=summary.items_skipped + index - 1,
                catalog_total=len(catalog),
            )
            log_line(f"[SCRAPE] [{index}/{len(pending)}] {item.name} ({item.collection})")
            if missing:
                self._scrape_item(item, missing, ledger, summary)
            ledger.mark_item_complete(item.id, counts)
            summary.items_processed += 1
            self._batch_pause(index, len(pending) - index)

        if self.repair:
            self._repair_unknowns(catalog, ledger, summary, phase="repair")

        if self.reconciler is not None:
            wanted = {item.id for item in catalog}
            ids = [
                r.sticker_id
                for r in ledger.completed_results()
                if not r.uploaded and r.sticker_id in wanted
            ]
            self._reconcile(ledger, ids, summary)

        self._progress(phase="done", **summary.to_dict())
        return summary

    # ------------------------------------------------------------------
    # Grouped layout
    # ------------------------------------------------------------------

    def run_grouped(
        self,
        catalog: Catalog,
        batch_dir: Optional[Path] = None,
        *,
        run_date: Optional[str] = None,
    ) -> RunSummary:
        """Scrape the catalog into one batch file per ``(collection, rarity)``.

        Without ``run_date`` the run continues in the folder of the last
        grouped run that did not finish, so a restart on a later day resumes
        instead of starting over. The folder is released once every group is
        scraped and uploaded.
        """

        counts = self.application_counts
        resumed = active_run_date(batch_dir) if run_date is None else None
        run_date = run_date or resumed or date.today().isoformat()
        if resumed:
            log_line(f"[BATCH] Resuming unfinished run folder {run_date}")
        set_active_run_date(run_date, batch_dir)
        groups = catalog.groups()
        summary = RunSummary(mode="grouped", items_total=len(catalog), groups_total=len(groups))
        processed = 0
        remaining = len(catalog)
        groups_done = 0

        for group_index, ((collection, rarity), items) in enumerate(groups.items(), start=1):
            path = batch_path(collection, rarity, run_date=run_date, batch_dir=batch_dir)
            batch = BatchFile.load(path)

            if batch.is_complete(items, counts):
                log_line(f"[BATCH] {path.name}: complete and uploaded; skipping")
                summary.groups_skipped += 1
                summary.items_skipped += len(items)
                remaining -= len(items)
                groups_done += 1
                continue

            if batch.is_scraped(items, counts):
                log_line(f"[BATCH] {path.name}: scraped but not uploaded; reconciling")
                summary.items_skipped += len(items)
                remaining -= len(items)
            else:
                log_line(
                    f"[BATCH] [{group_index}/{len(groups)}] {collection} / {rarity}: "
                    f"{len(items)} stickers"
                )
                for item in items:
                    remaining -= 1
                    if batch.covers(item.id, counts):
                        summary.items_skipped += 1
                        continue
                    processed += 1
                    self._progress(
                        phase="scrape",
                        item=item.name,
                        sticker_id=item.id,
                        collection=collection,
                        rarity=rarity,
                        group=group_index,
                        groups=len(groups),
                        processed=processed,
                    )
                    self._scrape_item(item, batch.pending_counts(item.id, counts), batch, summary)
                    summary.items_processed += 1
                    self._batch_pause(processed, remaining)

            if self.repair:
                self._repair_unknowns(catalog, batch, summary, phase="repair")

            if self._reconcile(batch, [r.sticker_id for r in batch.not_uploaded()], summary):
                summary.groups_uploaded += 1
            if batch.is_complete(items, counts):
                groups_done += 1

        if groups_done == len(groups):
            clear_active_run_date(run_date, batch_dir)
        self._progress(phase="done", run_date=run_date, **summary.to_dict())
        return summary


__all__ = ["BatchOrchestrator", "RunSummary", "ProgressCallback"]
