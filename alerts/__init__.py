"""Alert rules, evaluation, lifecycle and storage."""
from alerts.engine import AlertEngine, decide, make_fingerprint
from alerts.lifecycle import Action, Decision, Transition
from alerts.rule_store import RuleStore, StaticRuleSource, YamlRuleSource, parse_rules
from alerts.service import AlertService
from alerts.store import AlertStore
