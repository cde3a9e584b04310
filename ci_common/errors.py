class PipelineError(Exception):
    """Base class for all errors raised by the CI pipeline."""

    pass


class DescriptorError(PipelineError, ValueError):
    """Raised when a task descriptor or one of its values is invalid."""

    pass


class TemplateBindingError(PipelineError):
    """Raised when a template references a variable the event cannot supply."""

    def __init__(self, variable: str, reason: str = "has no value on the event"):
        self.variable = variable
        super().__init__(f"Template variable {variable!r} {reason}")


class ProvisioningError(PipelineError):
    """Raised when an execution environment cannot be created from an image."""

    pass


class ExecutionTimeout(PipelineError):
    """Raised when a run exceeds its maximum run time."""

    def __init__(self, max_run_time: int):
        self.max_run_time = max_run_time
        super().__init__(f"Run exceeded maxRunTime of {max_run_time}s")


class InvalidTransitionError(PipelineError):
    """Raised on a run state transition the lifecycle does not allow."""

    pass
