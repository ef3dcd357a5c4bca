"""Immutable decision audit trail.

Each decision is written once under
``audit/<session>/decisions/<date>/<id>.json``. Its realized outcome is
a separate ``<id>.outcome.json`` object so the original record is
never rewritten.
"""

from typing import Optional

from core.errors import PersistenceFailure
from core.journal import Journal, utc_date_str, utc_iso_str
from core.logging_utils import get_logger
from core.models import DecisionOutcome, EnsembleDecision
from core.storage import BackgroundSaver, get_json, put_json
from core.trading_interfaces import IObjectStore

logger = get_logger(__name__)


class AuditLog:
    def __init__(self, session_id: str, store: IObjectStore,
                 saver: Optional[BackgroundSaver] = None, journal: Optional[Journal] = None):
        self.session_id = session_id
        self.store = store
        self.saver = saver
        self.journal = journal
        self._written: set[str] = set()

    def decision_path(self, decision: EnsembleDecision) -> str:
        day = utc_date_str(decision.created_at)
        return f"audit/{self.session_id}/decisions/{day}/{decision.decision_id}.json"

    def outcome_path(self, decision: EnsembleDecision) -> str:
        return self.decision_path(decision)[: -len(".json")] + ".outcome.json"

    async def record(self, decision: EnsembleDecision) -> bool:
        """Write the decision once. Returns False if the write failed."""
        if decision.decision_id in self._written:
            return True
        payload = {"session_id": self.session_id, **decision.to_dict()}
        if self.journal is not None:
            self.journal.decision({"ts": utc_iso_str(), "type": "decision", **payload})
        try:
            await put_json(self.store, self.decision_path(decision), payload,
                           {"session_id": self.session_id, "symbol": decision.symbol})
        except PersistenceFailure as e:
            logger.error("[AUDIT] Decision %s not persisted: %s", decision.decision_id, e.cause)
            return False
        self._written.add(decision.decision_id)
        return True

    def record_outcome(self, decision: EnsembleDecision, outcome: DecisionOutcome) -> None:
        payload = {
            "decision_id": decision.decision_id,
            "session_id": self.session_id,
            "symbol": decision.symbol,
            "pnl": outcome.pnl,
            "success": outcome.success,
            "closed_at": outcome.closed_at.isoformat(),
        }
        if self.journal is not None:
            self.journal.decision({"ts": utc_iso_str(), "type": "outcome", **payload})
        if self.saver is not None:
            self.saver.submit(self.outcome_path(decision), payload)

    async def load(self, decision: EnsembleDecision) -> Optional[dict]:
        return await get_json(self.store, self.decision_path(decision))
