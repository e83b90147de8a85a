"""Lab error taxonomy.

Validation errors are fail-closed: the candidate or bot is rejected, never
saved with a fallback. Malformed generator output is reported as a value by
src.lab.generator, not raised.
"""

from __future__ import annotations


class LabError(Exception):
    """Base class for all Strategy Lab errors."""


class ValidationError(LabError):
    def __init__(self, code: str, field: str, message: str, severity: str = "SEV-1") -> None:
        super().__init__(message)
        self.code = code
        self.field = field
        self.message = message
        self.severity = severity

    def to_dict(self) -> dict:
        return {
            "code": self.code,
            "field": self.field,
            "message": self.message,
            "severity": self.severity,
        }


class ArchetypeInvalid(ValidationError):
    def __init__(self, archetype_name: str) -> None:
        super().__init__(
            "ARCHETYPE_INVALID",
            "archetype_name",
            f"Archetype '{archetype_name}' is not a recognized strategy type.",
        )


class ArchetypeUndeterminable(ValidationError):
    def __init__(self, strategy_name: str) -> None:
        super().__init__(
            "ARCHETYPE_UNDETERMINABLE",
            "archetype_name",
            f"Cannot determine archetype for strategy '{strategy_name}'. Provide an explicit "
            "archetype or use a strategy name that matches a known archetype pattern.",
        )


class GeneratorError(LabError):
    """Upstream candidate generator failed or was unavailable."""


class BotCreationError(LabError):
    """Bot row could not be created; the candidate must be reverted to QUEUED."""


class InvalidTransition(LabError):
    def __init__(self, tracking_id: str, current: str, target: str) -> None:
        super().__init__(f"Feedback loop {tracking_id}: illegal transition {current} -> {target}")
        self.tracking_id = tracking_id
        self.current = current
        self.target = target


def format_validation_errors(errors: list[ValidationError]) -> str:
    """Group errors by severity into a single operator-readable line."""
    if not errors:
        return "Validation passed"
    labels = {"SEV-0": "Critical", "SEV-1": "High", "SEV-2": "Medium"}
    parts = []
    for sev, label in labels.items():
        messages = [e.message for e in errors if e.severity == sev]
        if messages:
            parts.append(f"{sev} ({label}): {'; '.join(messages)}")
    return " | ".join(parts)
