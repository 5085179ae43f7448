"""
Error taxonomy for the generation engine.

Admission errors are raised synchronously by ``JobScheduler.submit`` and never
mutate engine state. Execution errors are captured into a job's failure
history and drive the retry state machine. Recovery errors surface from
``JobScheduler.recover_job``.
"""

from typing import Any, Dict, List, Optional


class EngineError(Exception):
    """Base class carrying the error envelope rendered by the API"""
    code = "ENGINE_ERROR"
    status_code = 500
    hint = "Check server logs for details"
    retryable = False

    def __init__(self, message: str, job_id: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.job_id = job_id

    def to_dict(self) -> Dict[str, Any]:
        return {
            "code": self.code,
            "message": self.message,
            "hint": self.hint,
            "retryable": self.retryable,
        }


class ConfigurationError(EngineError):
    code = "INVALID_CONFIGURATION"

    def __init__(self, errors: List[str]):
        super().__init__(f"Invalid configuration: {', '.join(errors)}")
        self.errors = errors


# Admission errors

class AdmissionError(EngineError):
    """A submission was refused before any job was created"""


class ValidationError(AdmissionError):
    code = "VALIDATION_ERROR"
    status_code = 400
    hint = "Provide a non-empty job_id and at least one model id"


class DuplicateJobError(AdmissionError):
    code = "DUPLICATE_JOB"
    status_code = 409
    hint = "Wait for the existing job to finish or cancel it first"


class ResourceExhaustedError(AdmissionError):
    code = "RESOURCES_EXHAUSTED"
    status_code = 503
    hint = "Back off and resubmit once resource pressure drops"
    retryable = True


class QueueFullError(AdmissionError):
    code = "QUEUE_FULL"
    status_code = 429
    hint = "Generation queue is full. Please try again later"
    retryable = True


class CircuitOpenError(AdmissionError):
    code = "CIRCUIT_OPEN"
    status_code = 503
    hint = "The generation pipeline is failing repeatedly; retry after the cool-down"
    retryable = True


# Execution errors

class ExecutionError(EngineError):
    """A work unit failed while the job was processing"""
    code = "EXECUTION_ERROR"

    def __init__(self, message: str, job_id: Optional[str] = None,
                 unit: Optional[str] = None, retryable: bool = True):
        super().__init__(message, job_id=job_id)
        self.unit = unit
        self.retryable = retryable


class MissingInputError(ExecutionError):
    """Required input (e.g. the model file) is absent; retrying cannot help"""
    code = "MISSING_INPUT"

    def __init__(self, message: str, job_id: Optional[str] = None, unit: Optional[str] = None):
        super().__init__(message, job_id=job_id, unit=unit, retryable=False)


# Recovery errors

class JobNotFoundError(EngineError):
    code = "JOB_NOT_FOUND"
    status_code = 404
    hint = "Check the job id"


class JobNotRecoverableError(EngineError):
    code = "JOB_NOT_RECOVERABLE"
    status_code = 409
    hint = "Only interrupted or failed jobs with retries left can be recovered"


class RetryLimitExceededError(JobNotRecoverableError):
    code = "RETRY_LIMIT_EXCEEDED"
    hint = "Submit a new job; this one has used all of its retries"
