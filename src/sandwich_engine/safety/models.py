"""Safety verdict data models."""
import time
from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import Any, Mapping, Optional


class VerdictOutcome(str, Enum):
    APPROVED = "approved"
    REJECTED = "rejected"


def _freeze(evidence: Optional[Mapping[str, Any]]) -> Mapping[str, str]:
    return MappingProxyType({str(key): str(value) for key, value in (evidence or {}).items()})


@dataclass(frozen=True)
class SafetyVerdict:
    """
    Screening result for one token.

    `evidence` is a read-only snapshot of what the deciding stages observed
    (matched selector, probe amounts, liquidity figures), rendered as strings.
    """
    token: str
    outcome: VerdictOutcome
    reason: Optional[str] = None
    stage: Optional[str] = None
    evidence: Mapping[str, str] = field(default_factory=dict, hash=False)
    checked_at: float = field(default_factory=time.time)

    def __post_init__(self):
        object.__setattr__(self, "token", self.token.lower())
        object.__setattr__(self, "evidence", _freeze(self.evidence))

    @property
    def is_approved(self) -> bool:
        return self.outcome == VerdictOutcome.APPROVED

    @classmethod
    def approve(
        cls,
        token: str,
        stage: Optional[str] = None,
        evidence: Optional[Mapping[str, Any]] = None
    ) -> "SafetyVerdict":
        return cls(token=token, outcome=VerdictOutcome.APPROVED, stage=stage, evidence=evidence or {})

    @classmethod
    def reject(
        cls,
        token: str,
        reason: str,
        stage: Optional[str] = None,
        evidence: Optional[Mapping[str, Any]] = None
    ) -> "SafetyVerdict":
        return cls(
            token=token,
            outcome=VerdictOutcome.REJECTED,
            reason=reason,
            stage=stage,
            evidence=evidence or {}
        )

    def __str__(self) -> str:
        if self.is_approved:
            return "Approved"
        return f'Rejected("{self.reason}")'
