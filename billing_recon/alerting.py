"""Operator alerts raised from reconciliation passes.

A pass can produce three kinds of alert:

* ``discrepancy``: computed and server totals disagree beyond tolerance
* ``computation``: the ledger could not be read, the page shows the server figure
* ``truncation``: the page cap stopped the scan early

Alerts are keyed on ``(kind, month)`` for throttling, so a repeated
discrepancy in March is suppressed while the first one in April still goes
out.  Delivery is to the log, a JSON webhook and/or a JSON-lines file.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field, asdict
from datetime import datetime, timedelta, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple
from urllib import request

from pydantic import BaseModel, Field

from billing_recon.models import ReconciliationReport

LOGGER = logging.getLogger(__name__)

DISCREPANCY = "discrepancy"
COMPUTATION = "computation"
TRUNCATION = "truncation"


class AlertSeverity(str, Enum):
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


class AlertChannel(str, Enum):
    CONSOLE = "console"
    WEBHOOK = "webhook"
    FILE = "file"


_SEVERITY_BY_KIND = {
    DISCREPANCY: AlertSeverity.WARNING,
    COMPUTATION: AlertSeverity.ERROR,
    TRUNCATION: AlertSeverity.INFO,
}

_LOG_LEVEL = {
    AlertSeverity.INFO: logging.INFO,
    AlertSeverity.WARNING: logging.WARNING,
    AlertSeverity.ERROR: logging.ERROR,
    AlertSeverity.CRITICAL: logging.CRITICAL,
}


class AlertConfig(BaseModel):
    """Routing for reconciliation alerts."""

    enabled: bool = Field(default=True)
    channels: List[AlertChannel] = Field(default=[AlertChannel.CONSOLE])
    webhook_url: Optional[str] = None
    alert_file_path: Optional[Path] = None
    throttle_minutes: int = 5
    severity_filter: List[AlertSeverity] = Field(
        default=[AlertSeverity.WARNING, AlertSeverity.ERROR, AlertSeverity.CRITICAL]
    )

    @classmethod
    def from_channel_config(cls, section) -> "AlertConfig":
        """Translate the ``alerting`` section of ``ReconConfig``."""
        channels = [
            channel
            for channel, wanted in (
                (AlertChannel.CONSOLE, section.console),
                (AlertChannel.WEBHOOK, section.webhook),
                (AlertChannel.FILE, section.file),
            )
            if wanted
        ]
        return cls(
            enabled=bool(channels),
            channels=channels,
            webhook_url=section.webhook_url,
            alert_file_path=Path(section.file_path) if section.file_path else None,
            throttle_minutes=section.throttle_minutes,
            severity_filter=[AlertSeverity(s) for s in section.severity_filter],
        )


@dataclass
class ReconAlert:
    """One alert about one reconciliation pass."""

    kind: str
    severity: AlertSeverity
    month: str
    summary: str
    raised_at: datetime
    sequence: Optional[int] = None
    details: Dict[str, Any] = field(default_factory=dict)

    @property
    def alert_id(self) -> str:
        return f"{self.kind}-{self.month}-{self.sequence if self.sequence is not None else 0}"

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["alert_id"] = self.alert_id
        data["severity"] = self.severity.value
        data["raised_at"] = self.raised_at.isoformat()
        return data


def month_label(report: ReconciliationReport) -> str:
    """``YYYY-MM`` of the window the pass reconciled."""
    window = report.computed.window
    return window.start.strftime("%Y-%m") if window else "unknown"


def _summarize(kind: str, report: ReconciliationReport) -> str:
    computed = report.computed
    if kind == DISCREPANCY:
        outcome = report.outcome
        return (
            f"computed {computed.total} vs server {report.server_total} "
            f"(diff {outcome.difference} > threshold {outcome.threshold})"
        )
    if kind == COMPUTATION:
        return f"{computed.error}; showing server total {report.server_total}"
    return f"stopped after {computed.pages_fetched} pages; total may be incomplete"


class AlertManager:
    """Turns reconciliation reports into alerts on the configured channels."""

    def __init__(self, config: AlertConfig):
        self.config = config
        self.alert_history: List[ReconAlert] = []
        self._last_sent: Dict[Tuple[str, str], datetime] = {}
        self._senders: Dict[AlertChannel, Callable[[ReconAlert], None]] = {
            AlertChannel.CONSOLE: self._to_console,
            AlertChannel.WEBHOOK: self._to_webhook,
            AlertChannel.FILE: self._to_file,
        }

    def notify(self, report: ReconciliationReport, include_discrepancy: bool = True) -> List[ReconAlert]:
        """Raise every alert the pass calls for; returns the ones delivered."""
        kinds = []
        if report.computed.failed:
            kinds.append(COMPUTATION)
        if report.computed.truncated:
            kinds.append(TRUNCATION)
        if include_discrepancy and report.discrepancy_flagged:
            kinds.append(DISCREPANCY)
        sent = (self.raise_alert(kind, report) for kind in kinds)
        return [alert for alert in sent if alert is not None]

    def raise_alert(self, kind: str, report: ReconciliationReport) -> Optional[ReconAlert]:
        """
        Deliver a ``kind`` alert for ``report``

        Returns ``None`` when alerting is off, the severity is filtered out,
        or the same kind was already sent for that month within the
        throttle window.
        """
        if not self.config.enabled:
            return None

        severity = _SEVERITY_BY_KIND[kind]
        if severity not in self.config.severity_filter:
            LOGGER.debug("%s alert below severity filter", kind)
            return None

        month = month_label(report)
        now = datetime.now(timezone.utc)
        last = self._last_sent.get((kind, month))
        if last is not None and now - last < timedelta(minutes=self.config.throttle_minutes):
            LOGGER.debug("%s alert for %s throttled", kind, month)
            return None

        window = report.computed.window
        alert = ReconAlert(
            kind=kind,
            severity=severity,
            month=month,
            summary=_summarize(kind, report),
            raised_at=now,
            sequence=report.sequence,
            details={
                "window_start": window.start.isoformat() if window else None,
                "window_end": window.end.isoformat() if window else None,
                "pages_fetched": report.computed.pages_fetched,
            },
        )

        for channel in self.config.channels:
            try:
                self._senders[channel](alert)
            except Exception as e:
                LOGGER.error("Failed to send %s alert via %s: %s", kind, channel.value, e)

        self._last_sent[(kind, month)] = now
        self.alert_history.append(alert)
        return alert

    def _to_console(self, alert: ReconAlert) -> None:
        LOGGER.log(
            _LOG_LEVEL[alert.severity],
            "ALERT [%s] %s %s: %s",
            alert.severity.value.upper(),
            alert.kind,
            alert.month,
            alert.summary,
        )

    def _to_webhook(self, alert: ReconAlert) -> None:
        """POST the alert as JSON (Slack-compatible ``text`` field)."""
        if not self.config.webhook_url:
            return
        payload = {
            "text": f"*{alert.severity.value.upper()}* billing {alert.kind} for {alert.month}: {alert.summary}",
            "alert": alert.to_dict(),
        }
        req = request.Request(
            self.config.webhook_url,
            data=json.dumps(payload).encode("utf-8"),
            headers={"Content-Type": "application/json"},
            method="POST",
        )
        # urlopen raises HTTPError for 4xx/5xx
        with request.urlopen(req, timeout=10):
            pass

    def _to_file(self, alert: ReconAlert) -> None:
        if not self.config.alert_file_path:
            return
        path = Path(self.config.alert_file_path)
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, "a", encoding="utf-8") as f:
            f.write(json.dumps(alert.to_dict()) + "\n")
