class PipelineError(RuntimeError):
    code = "PIPELINE_ERROR"


class ValidationError(PipelineError):
    code = "VALIDATION_ERROR"


class InsufficientBalance(PipelineError):
    code = "INSUFFICIENT_BALANCE"


class DownloadError(PipelineError):
    code = "DOWNLOAD_ERROR"


class TransformError(PipelineError):
    code = "TRANSFORM_ERROR"


class ExternalToolError(TransformError):
    code = "TOOL_ERROR"

    def __init__(self, message: str, stderr: str = "", returncode: int | None = None) -> None:
        super().__init__(message)
        self.stderr = stderr
        self.returncode = returncode


class ExternalToolTimeout(ExternalToolError):
    code = "TOOL_TIMEOUT"


class StorageError(RuntimeError):
    pass
