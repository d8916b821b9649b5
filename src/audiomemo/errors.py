from __future__ import annotations


class AudiomemoError(Exception):
    """Base class for every error raised by audiomemo."""


class ConfigurationError(AudiomemoError, ValueError):
    """Bad or missing configuration, detected before any external call."""


class MissingAPIKeyError(ConfigurationError):
    def __init__(self, backend: str, env_var: str) -> None:
        self.backend = backend
        self.env_var = env_var
        super().__init__(f"{backend} API key not configured (set {env_var} or config)")


class UnsupportedOptionError(ConfigurationError):
    def __init__(self, backend: str, option: str) -> None:
        self.backend = backend
        self.option = option
        super().__init__(f"{backend} backend does not support --{option.replace('_', '-')}")


class DeviceResolutionError(ConfigurationError):
    def __init__(self, message: str, group: str, alias: str | None = None) -> None:
        self.group = group
        self.alias = alias
        super().__init__(message)


class UnknownBackendError(ConfigurationError):
    def __init__(self, name: str) -> None:
        self.name = name
        super().__init__(f"unknown backend: {name}")


class ExecutableNotFoundError(AudiomemoError, RuntimeError):
    def __init__(self, executable: str, hint: str = "") -> None:
        self.executable = executable
        message = f"{executable!r} not found on PATH"
        if hint:
            message = f"{message}. {hint}"
        super().__init__(message)


class BackendCallError(AudiomemoError, RuntimeError):
    """An external call (HTTP request or local process) failed."""


class BackendAPIError(BackendCallError):
    def __init__(self, backend: str, status_code: int, body: str) -> None:
        self.backend = backend
        self.status_code = status_code
        self.body = body
        super().__init__(f"{backend} API error ({status_code}): {body}")


class BackendRequestError(BackendCallError):
    def __init__(self, backend: str, cause: Exception) -> None:
        self.backend = backend
        super().__init__(f"{backend} request failed: {cause}")


class BackendProcessError(BackendCallError):
    def __init__(self, backend: str, returncode: int, stderr_tail: str = "") -> None:
        self.backend = backend
        self.returncode = returncode
        self.stderr_tail = stderr_tail
        tail = stderr_tail or "<no stderr>"
        super().__init__(f"{backend} failed (exit status {returncode}): {tail}")


class BackendParseError(AudiomemoError, ValueError):
    def __init__(self, backend: str, detail: str) -> None:
        self.backend = backend
        super().__init__(f"failed to parse {backend} output: {detail}")


class OperationCanceled(AudiomemoError):
    """The caller canceled an in-flight request or process."""


class DeadlineExceeded(OperationCanceled):
    """The caller's deadline passed before the call finished."""


class CaptureError(AudiomemoError, RuntimeError):
    """The encoder process could not be started or exited with a failure."""


class InvalidCaptureState(CaptureError):
    pass
