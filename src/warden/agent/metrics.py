"""Counters a worker reports to the orchestrator."""

from dataclasses import asdict, dataclass


@dataclass
class WorkerMetrics:
    messages_processed: int = 0
    spam_detected: int = 0
    spam_archived: int = 0
    spam_blocked: int = 0
    rate_limit_hits: int = 0

    @property
    def spam_rate(self) -> float:
        if not self.messages_processed:
            return 0.0
        return self.spam_detected / self.messages_processed

    def as_payload(self) -> dict:
        return {**asdict(self), "spam_rate": self.spam_rate}
