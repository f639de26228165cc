from monitor.scheduler import EvaluationScheduler, RuleStatus, TickResult, extract_samples
from monitor.sources import SourceRegistry
