from fraud.rule_engine import (
    CheckContext,
    FraudRule,
    FraudScorer,
    RiskAction,
    RiskAssessment,
    RiskLevel,
    RiskSubject,
    RuleRegistry,
    classify,
)
from fraud.checks import create_default_rules, default_registry

__all__ = [
    "CheckContext", "FraudRule", "FraudScorer", "RiskAction", "RiskAssessment",
    "RiskLevel", "RiskSubject", "RuleRegistry", "classify",
    "create_default_rules", "default_registry",
]
