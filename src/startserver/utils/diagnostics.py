from typing import Iterable, Optional
from pydantic import BaseModel

class SupervisorDiagnostic(BaseModel):
    """
    Standardized record for build errors and supervisor problems shown on the console.
    """
    file_path: str
    error_code: str
    message: str
    severity: str = "error" # 'error', 'warning', 'critical'
    suggestion: Optional[str] = None
    line_number: Optional[int] = None

    def __str__(self) -> str:
        loc = f"{self.file_path}"
        if self.line_number:
            loc += f":{self.line_number}"
        return f"[{self.error_code}] {self.message} (at {loc})"


class StartServerError(Exception):
    """Base class for every error raised or reported by startserver."""

    error_code = "ERR_STARTSERVER"

    def to_diagnostic(self, file_path: str = "<supervisor>", severity: str = "error") -> SupervisorDiagnostic:
        return SupervisorDiagnostic(
            file_path=file_path,
            error_code=self.error_code,
            message=str(self),
            severity=severity,
        )


class ConfigurationError(StartServerError):
    """Options could not be turned into a valid supervisor configuration."""

    error_code = "ERR_CONFIGURATION"


class UnknownEntry(StartServerError):
    """
    The requested entry is not part of the build output.
    The message enumerates every entry the build does know about.
    """

    error_code = "ERR_UNKNOWN_ENTRY"

    def __init__(self, entry_name: str, known_entries: Iterable[str]):
        self.entry_name = entry_name
        self.known_entries = sorted(known_entries)
        known = ", ".join(self.known_entries) or "<none>"
        super().__init__(f'Requested entry "{entry_name}" does not exist, try one of: {known}')


class NoOutputProduced(StartServerError):
    """The entry exists but the build emitted no file for it."""

    error_code = "ERR_NO_OUTPUT"

    def __init__(self, entry_name: str):
        self.entry_name = entry_name
        super().__init__(f'Entry "{entry_name}" produced no output file')


class SpawnFailure(StartServerError):
    error_code = "ERR_SPAWN_FAILURE"


class TerminationFailed(StartServerError):
    error_code = "ERR_TERMINATION_FAILED"

    def __init__(self, pid: int, cause: BaseException):
        self.pid = pid
        self.cause = cause
        super().__init__(f"Could not terminate worker pid={pid}: {cause}")


class ReloadRejected(StartServerError):
    error_code = "ERR_RELOAD_REJECTED"


class ReloadTimedOut(ReloadRejected):
    error_code = "ERR_RELOAD_TIMEOUT"


class UnexpectedExit(StartServerError):
    """Worker exited before confirming load, or while the run-once policy is active."""

    error_code = "ERR_UNEXPECTED_EXIT"

    def __init__(self, pid: Optional[int], code: Optional[int], signal_name: Optional[str]):
        self.pid = pid
        self.code = code
        self.signal_name = signal_name
        parts = []
        if code is not None:
            parts.append(f"code {code}")
        if signal_name:
            parts.append(f"signal {signal_name}")
        detail = " and ".join(parts) or "no status"
        super().__init__(f"Worker pid={pid} exited with {detail}")


class HotUpdateRejected(StartServerError):
    """A module declined a live update; raised inside the worker."""

    error_code = "ERR_HOT_DECLINED"


class HotUpdateFailed(StartServerError):
    error_code = "ERR_HOT_FAILED"


class InvalidManifest(StartServerError):
    """The build manifest is missing, unreadable or does not describe a build."""

    error_code = "ERR_INVALID_MANIFEST"
