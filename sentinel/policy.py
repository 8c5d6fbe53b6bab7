"""
Policy Model

Persisted rule descriptors and the derived global enforcement mode.
The console enforces iff every enabled policy is in ENFORCE mode;
otherwise it monitors (violations become alerts, not blocks).
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Iterable, Mapping


class PolicyMode(str, Enum):
    ENFORCE = "ENFORCE"
    MONITOR = "MONITOR"


class Severity(str, Enum):
    CRITICAL = "CRITICAL"
    HIGH = "HIGH"
    MEDIUM = "MEDIUM"
    LOW = "LOW"


@dataclass
class Policy:
    name: str
    description: str = ""
    enabled: bool = True
    mode: PolicyMode = PolicyMode.MONITOR
    rule_type: str = ""
    severity: Severity = Severity.LOW

    @classmethod
    def from_record(cls, record: Mapping[str, Any]) -> "Policy":
        return cls(
            name=record.get("name", ""),
            description=record.get("description", "") or "",
            enabled=bool(record.get("enabled", True)),
            mode=PolicyMode(record.get("mode", PolicyMode.MONITOR.value)),
            rule_type=record.get("rule_type", "") or "",
            severity=Severity(record.get("severity", Severity.LOW.value)),
        )

    def to_record(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "description": self.description,
            "enabled": self.enabled,
            "mode": self.mode.value,
            "rule_type": self.rule_type,
            "severity": self.severity.value,
        }


DEFAULT_POLICIES = [
    Policy(
        name="Block Unlimited Approvals",
        description="Deny approvals that grant the max-uint256 allowance.",
        enabled=True,
        mode=PolicyMode.ENFORCE,
        rule_type="UNLIMITED_APPROVAL",
        severity=Severity.CRITICAL,
    ),
    Policy(
        name="Malicious Contract Detection",
        description="Deny approvals to spenders on the malicious list.",
        enabled=True,
        mode=PolicyMode.ENFORCE,
        rule_type="MALICIOUS_CONTRACT",
        severity=Severity.CRITICAL,
    ),
]


def is_enforcing(policies: Iterable[Policy | Mapping[str, Any]]) -> bool:
    """True iff every enabled policy is in ENFORCE mode.

    Disabled policies do not count; an empty policy set enforces.
    """
    for policy in policies:
        if not isinstance(policy, Policy):
            policy = Policy.from_record(policy)
        if policy.enabled and policy.mode != PolicyMode.ENFORCE:
            return False
    return True
