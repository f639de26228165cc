"""Typed failures raised across the monitor."""


class InfrawatchError(Exception):
    """Base class for all infrawatch errors."""


class ConfigError(InfrawatchError, ValueError):
    """Malformed configuration or rule set.

    ``errors`` holds one diagnostic line per structural violation so a
    rejected reload can report everything that is wrong at once.
    """

    def __init__(self, message, errors=None):
        self.errors = list(errors or [])
        if self.errors:
            message = f"{message}: " + "; ".join(self.errors)
        super().__init__(message)


class QueryError(InfrawatchError):
    """A data source adapter failed to answer a query."""

    TIMEOUT = "timeout"
    BACKEND_ERROR = "backend_error"
    INVALID_QUERY = "invalid_query"
    KINDS = (TIMEOUT, BACKEND_ERROR, INVALID_QUERY)

    def __init__(self, kind, message, source=None, status_code=None):
        if kind not in self.KINDS:
            raise ValueError(f"Unknown query error kind: {kind}")
        super().__init__(message)
        self.kind = kind
        self.source = source
        self.status_code = status_code

    def __str__(self):
        base = super().__str__()
        where = f" [{self.source}]" if self.source else ""
        return f"{self.kind}{where}: {base}"


class AdapterError(InfrawatchError):
    """The insight adapter could not produce insights. Never fatal."""


class NotFoundError(InfrawatchError, KeyError):
    """Unknown alert, insight or rule id."""

    def __init__(self, entity, entity_id):
        super().__init__(f"{entity} not found: {entity_id}")
        self.entity = entity
        self.entity_id = entity_id

    def __str__(self):
        return self.args[0]


class InvalidTransitionError(InfrawatchError):
    """Lifecycle operation not allowed from the alert's current status."""

    def __init__(self, alert_id, current, action):
        cur = current.value if hasattr(current, "value") else str(current)
        super().__init__(f"Cannot {action} alert {alert_id} in status '{cur}'")
        self.alert_id = alert_id
        self.current = current
        self.action = action
