import enum
from dataclasses import dataclass


class Stage(enum.Enum):
    FETCH = "fetch"
    EXTRACT = "extract"
    CONFIGURE = "configure"
    BUILD = "build"
    INSTALL = "install"
    CLEANUP = "cleanup"

    def __str__(self) -> str:
        return self.value


@dataclass
class StageResult:
    """Outcome of one pipeline stage.

    `returncode` is the external tool's exit status (or the HTTP status for
    fetch). `stdout` and `stderr` hold the tail of the captured output.
    """

    stage: Stage
    returncode: int | None
    stdout: str = ""
    stderr: str = ""

    @property
    def ok(self) -> bool:
        return self.returncode == 0


class OsslVendorError(Exception):
    exit_code = 1


class ConfigError(OsslVendorError, ValueError):
    exit_code = 2


class StageError(OsslVendorError):
    stage: Stage

    def __init__(self, message: str, returncode: int | None = None, output: str = ""):
        super().__init__(message)
        self.returncode = returncode
        self.output = output

    @classmethod
    def from_result(cls, result: StageResult, message: str) -> "StageError":
        return cls(message, returncode=result.returncode, output=result.stderr or result.stdout)


class FetchError(StageError):
    stage = Stage.FETCH
    exit_code = 10


class ExtractError(StageError):
    stage = Stage.EXTRACT
    exit_code = 11


class ConfigureError(StageError):
    stage = Stage.CONFIGURE
    exit_code = 12


class BuildError(StageError):
    stage = Stage.BUILD
    exit_code = 13


class InstallError(StageError):
    stage = Stage.INSTALL
    exit_code = 14


class Cancelled(StageError):
    exit_code = 130

    def __init__(self, stage: Stage, returncode: int | None = None, output: str = ""):
        super().__init__(f"Interrupted during {stage}", returncode=returncode, output=output)
        self.stage = stage


class CleanupWarning(UserWarning):
    pass


ERROR_FOR_STAGE: dict[Stage, type[StageError]] = {
    Stage.FETCH: FetchError,
    Stage.EXTRACT: ExtractError,
    Stage.CONFIGURE: ConfigureError,
    Stage.BUILD: BuildError,
    Stage.INSTALL: InstallError,
}
