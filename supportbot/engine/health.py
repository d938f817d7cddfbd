"""
Engine health state surfaced to the dashboard as {ok, issues}
"""
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from loguru import logger

from supportbot.core.errors import CriticalExecutionGap


class EngineHealth:
    """Accumulates cycle, reconciliation and execution problems"""

    def __init__(self):
        self.running = False
        self.critical_gaps: List[Dict[str, Any]] = []
        self.config_error: Optional[str] = None
        self.last_cycle_error: Optional[str] = None
        self.last_cycle_at: Optional[datetime] = None
        self.consecutive_failures = 0
        self.reconciliation_error: Optional[str] = None
        self.last_reconciliation_at: Optional[datetime] = None

    def record_critical_gap(self, gap: CriticalExecutionGap) -> None:
        self.critical_gaps.append({
            "symbol": gap.symbol,
            "entry_order_id": gap.entry_order_id,
            "quantity": gap.quantity,
            "cause": gap.cause,
            "at": datetime.now(timezone.utc).isoformat(),
        })

    def acknowledge_critical(self) -> int:
        count = len(self.critical_gaps)
        self.critical_gaps.clear()
        if count:
            logger.info(f"Operator acknowledged {count} critical execution gap(s)")
        return count

    def record_cycle_success(self) -> None:
        self.last_cycle_at = datetime.now(timezone.utc)
        self.last_cycle_error = None
        self.config_error = None
        self.consecutive_failures = 0

    def record_cycle_failure(self, error: str) -> None:
        self.last_cycle_at = datetime.now(timezone.utc)
        self.last_cycle_error = error
        self.consecutive_failures += 1

    def record_config_error(self, error: str) -> None:
        self.config_error = error

    def record_reconciliation(self, error: Optional[str] = None) -> None:
        self.last_reconciliation_at = datetime.now(timezone.utc)
        self.reconciliation_error = error

    def snapshot(self) -> Dict[str, Any]:
        issues: List[str] = []
        if not self.running:
            issues.append("engine is not running")
        for gap in self.critical_gaps:
            issues.append(
                f"CRITICAL: {gap['symbol']} entry {gap['entry_order_id']} "
                f"({gap['quantity']}) has no take-profit order: {gap['cause']}"
            )
        if self.config_error:
            issues.append(f"configuration error: {self.config_error}")
        if self.last_cycle_error:
            issues.append(
                f"last cycle failed ({self.consecutive_failures} consecutive): {self.last_cycle_error}"
            )
        if self.reconciliation_error:
            issues.append(f"reconciliation failed: {self.reconciliation_error}")
        return {"ok": not issues, "issues": issues}
