from __future__ import annotations


class CallAuditError(Exception):
    pass


class ConfigError(CallAuditError):
    pass


class TranscriptionFailed(CallAuditError):
    def __init__(self, cause: object) -> None:
        self.cause = cause
        super().__init__(f"Transcription failed: {cause}")


class MetricsDegraded(CallAuditError):
    """A single audio measurement could not be taken; callers fall back to a default."""

    def __init__(self, metric: str, cause: object) -> None:
        self.metric = metric
        self.cause = cause
        super().__init__(f"Metric '{metric}' degraded: {cause}")


class ScoringFailed(CallAuditError):
    def __init__(self, cause: object) -> None:
        self.cause = cause
        super().__init__(f"Scoring failed: {cause}")


class SchemaViolation(ScoringFailed):
    def __init__(self, errors: list[str]) -> None:
        self.errors = errors
        super().__init__("scorer output does not match schema: " + "; ".join(errors[:5]))


class RubricInvalid(CallAuditError):
    pass


class JobNotFound(CallAuditError):
    pass


class JobStateError(CallAuditError):
    pass


class PipelineFailed(CallAuditError):
    def __init__(self, stage: str, cause: BaseException) -> None:
        self.stage = stage
        self.cause = cause
        super().__init__(f"Pipeline failed at '{stage}': {cause}")
