"""
alerts.py — Stock Alert Sweeper and Scheduler

This module scans the stock ledger for low and critical records, decides per
record whether its alert frequency allows another alert, and hands alerts to
the notification queue.

Responsibilities:
    • sweep(): one scan; at most one alert per record per run, notifier failures
      are recorded per record and never abort the run
    • generate_report() / send_report(): read-only inventory summary
    • AlertScheduler: background thread running the sweep on a fixed interval
      and on demand (e.g. after an order changed stock)
"""

import threading
from datetime import datetime, timedelta
from typing import Callable, Optional

from .clients import Notifier
from .config import ALERT_SWEEP_INTERVAL_MINUTES
from .database import as_utc, utcnow
from .ledger import StockLedger
from .logging_config import get_logger
from .models import (
    AlertFrequency, AlertOutcome, InventoryReport, NotificationKind, StockRecordView, StockStatus, SweepReport,
)

log = get_logger(__name__)

ALERT_WINDOWS = {
    AlertFrequency.IMMEDIATE: timedelta(0),
    AlertFrequency.DAILY: timedelta(hours=24),
    AlertFrequency.WEEKLY: timedelta(days=7),
    AlertFrequency.MONTHLY: timedelta(days=30),
}


def should_alert(record: StockRecordView, now: datetime) -> bool:
    """
    Decides whether a record may be alerted again.

    Args:
        record (StockRecordView): Record with `alert_frequency` and `last_alert_sent_at`.
        now (datetime): Current time (timezone-aware).
    Returns:
        bool: True if never alerted or the frequency window has elapsed.
    """
    if record.last_alert_sent_at is None:
        return True
    window = ALERT_WINDOWS.get(AlertFrequency(record.alert_frequency), ALERT_WINDOWS[AlertFrequency.DAILY])
    return as_utc(now) - as_utc(record.last_alert_sent_at) >= window


def _alert_payload(record: StockRecordView) -> dict:
    return {
        "recordId": record.id,
        "productId": record.product_id,
        "status": record.status.value,
        "currentStock": record.current_stock,
        "minimumStock": record.minimum_stock,
        "maximumStock": record.maximum_stock,
        "alertThreshold": record.alert_threshold,
        "unit": record.unit.value,
        "supplier": record.supplier.model_dump() if record.supplier else None,
    }


class AlertSweeper:
    """
    Runs stock alert sweeps against the ledger.

    Args:
        ledger (StockLedger): Source of stock records.
        notifier (Notifier): Receives `critical_stock`, `low_stock` and `report` notifications.
        clock (Callable): Returns the current time; replaceable in tests.
    """

    def __init__(self, ledger: StockLedger, notifier: Notifier, clock: Callable[[], datetime] = utcnow):
        self.ledger = ledger
        self.notifier = notifier
        self.clock = clock
        self._running = threading.Lock()

    @property
    def is_running(self) -> bool:
        return self._running.locked()

    def sweep(self) -> SweepReport:
        """
        Checks critical and low stock records and sends due alerts.

        A sweep that is already in progress turns this call into a no-op
        (`skipped=True`); calls are never queued or run in parallel.

        Returns:
            SweepReport: Counts, sent alerts and per-record failures.
        """
        started_at = self.clock()
        if not self._running.acquire(blocking=False):
            log.info("Bestandsprüfung läuft bereits, überspringe.")
            return SweepReport(started_at=started_at, skipped=True)

        try:
            log.info("Prüfe Lagerbestände...")
            # Out of stock is at or below every alert threshold, so it is alerted as critical.
            critical = (self.ledger.list_by_status(StockStatus.OUT_OF_STOCK)
                        + self.ledger.list_by_status(StockStatus.CRITICAL))
            critical_ids = {record.id for record in critical}
            low = [r for r in self.ledger.list_by_status(StockStatus.LOW) if r.id not in critical_ids]

            report = SweepReport(started_at=started_at, critical_checked=len(critical), low_checked=len(low))
            log.info(f"{len(low)} Artikel mit niedrigem Bestand, {len(critical)} kritische Artikel gefunden.")

            for record in critical:
                self._process(record, NotificationKind.CRITICAL_STOCK, report)
            for record in low:
                self._process(record, NotificationKind.LOW_STOCK, report)

            report.finished_at = self.clock()
            log.info(f"Bestandsprüfung abgeschlossen: {len(report.alerts_sent)} Alarme gesendet, "
                     f"{len(report.failures)} fehlgeschlagen.")
            return report
        finally:
            self._running.release()

    def _process(self, record: StockRecordView, kind: NotificationKind, report: SweepReport):
        if not record.alert_enabled:
            return
        now = self.clock()
        if not should_alert(record, now):
            return

        outcome = AlertOutcome(record_id=record.id, product_id=record.product_id, status=record.status,
                               notified=False)
        try:
            delivered = self.notifier.notify(kind, _alert_payload(record))
        except Exception as e:
            log.error(f"[Stock: {record.product_id}] Alarm '{kind.value}' fehlgeschlagen: {e}")
            outcome.error = str(e) or e.__class__.__name__
            report.failures.append(outcome)
            return
        if not delivered:
            log.error(f"[Stock: {record.product_id}] Alarm '{kind.value}' wurde vom Notifier abgelehnt.")
            outcome.error = "notifier reported failure"
            report.failures.append(outcome)
            return

        self.ledger.mark_alert_sent(record.id, now)
        outcome.notified = True
        report.alerts_sent.append(outcome)
        log.warning(f"[Stock: {record.product_id}] Alarm '{kind.value}' gesendet (Bestand: {record.current_stock}).")

    def generate_report(self) -> InventoryReport:
        """
        Builds an inventory summary. Pure read; safe to call while a sweep runs.

        The three lists are disjoint and follow `classify`: a record appears only
        under its own status.
        """
        low = self.ledger.list_by_status(StockStatus.LOW)
        critical = self.ledger.list_by_status(StockStatus.CRITICAL)
        out_of_stock = self.ledger.list_by_status(StockStatus.OUT_OF_STOCK)
        return InventoryReport(
            generated_at=self.clock(),
            total_active=self.ledger.count_active(),
            low_count=len(low),
            critical_count=len(critical),
            out_of_stock_count=len(out_of_stock),
            low=low,
            critical=critical,
            out_of_stock=out_of_stock,
        )

    def send_report(self) -> bool:
        """Generates the inventory report and sends it as a `report` notification."""
        report = self.generate_report()
        payload = {
            "generatedAt": report.generated_at.isoformat(),
            "summary": {
                "totalItems": report.total_active,
                "lowStock": report.low_count,
                "criticalStock": report.critical_count,
                "outOfStock": report.out_of_stock_count,
            },
            "lowStock": [_alert_payload(r) for r in report.low],
            "criticalStock": [_alert_payload(r) for r in report.critical],
            "outOfStock": [_alert_payload(r) for r in report.out_of_stock],
        }
        try:
            return bool(self.notifier.notify(NotificationKind.REPORT, payload))
        except Exception as e:
            log.error(f"Versand des Inventarberichts fehlgeschlagen: {e}")
            return False


class AlertScheduler:
    """
    Background thread that runs `sweep()` every `interval_minutes` and on `trigger()`.

    Behavior:
        - Runs an initial sweep right after `start()`.
        - `trigger()` wakes the thread early; triggers arriving during a sweep
          collapse into at most one follow-up run.
        - `stop()` lets an in-flight sweep finish, then ends the thread.
    """

    def __init__(self, sweeper: AlertSweeper, interval_minutes: float = ALERT_SWEEP_INTERVAL_MINUTES):
        self.sweeper = sweeper
        self.interval_seconds = interval_minutes * 60
        self._wakeup = threading.Event()
        self._stopping = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def start(self):
        if self._thread and self._thread.is_alive():
            return
        self._stopping.clear()
        self._wakeup.set()  # initial run
        self._thread = threading.Thread(target=self._run, name="stock-alert-scheduler", daemon=True)
        self._thread.start()
        log.info(f"Periodische Bestandsprüfung alle {self.interval_seconds / 60:g} Minuten gestartet.")

    def trigger(self):
        self._wakeup.set()

    def stop(self, timeout: Optional[float] = None):
        self._stopping.set()
        self._wakeup.set()
        if self._thread:
            self._thread.join(timeout)
        log.info("Periodische Bestandsprüfung gestoppt.")

    def _run(self):
        while not self._stopping.is_set():
            self._wakeup.wait(self.interval_seconds)
            if self._stopping.is_set():
                break
            self._wakeup.clear()
            try:
                self.sweeper.sweep()
            except Exception as e:
                log.critical(f"Bestandsprüfung abgebrochen: {e}", exc_info=True)
