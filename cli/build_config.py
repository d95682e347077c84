from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Mapping
import os

from constants import (
    DEFAULT_COMMIT,
    DEFAULT_DOWNLOAD_TIMEOUT_S,
    DEFAULT_INSTALL_TARGET,
    DEFAULT_OPENSSLDIR,
    DEFAULT_PREFIX_RELATIVE,
    ENV_COMMIT,
    ENV_MAKE,
    ENV_OPENSSLDIR,
    ENV_PREFIX,
    UPSTREAM_REPO_URL,
)
from stages import ConfigError


def detected_jobs() -> int:
    return os.cpu_count() or 1


@dataclass(frozen=True)
class BuildConfig:
    """Everything one fetch-build-install run needs.

    Built once at the boundary by `resolve_config()`; nothing downstream
    reads the environment for these values.
    """

    reference: str
    prefix: Path
    openssldir: str
    scratch_root: Path
    jobs: int = field(default_factory=detected_jobs)
    make_program: str = "make"
    install_target: str = DEFAULT_INSTALL_TARGET
    upstream: str = UPSTREAM_REPO_URL
    configure_args: tuple[str, ...] = ()
    download_timeout: float = DEFAULT_DOWNLOAD_TIMEOUT_S
    keep_scratch: bool = False

    @property
    def archive_url(self) -> str:
        return f"{self.upstream.rstrip('/')}/archive/{self.reference}.tar.gz"

    @property
    def archive_name(self) -> str:
        # Branch names may contain slashes; keep the archive a single file.
        return self.reference.replace("/", "-") + ".tar.gz"

    def describe(self) -> list[tuple[str, str]]:
        return [
            ("commit", self.reference),
            ("prefix", str(self.prefix)),
            ("openssldir", self.openssldir),
            ("archive", self.archive_url),
            ("scratch", str(self.scratch_root)),
            ("jobs", str(self.jobs)),
            ("make", self.make_program),
            ("install", self.install_target),
        ]


def _nonempty(name: str, value: str) -> str:
    if not value or not value.strip():
        raise ConfigError(f"{name} must be a non-empty string")
    return value


def resolve_config(
    environ: Mapping[str, str],
    workdir: Path,
    *,
    reference: str | None = None,
    prefix: str | os.PathLike[str] | None = None,
    openssldir: str | None = None,
    **overrides,
) -> BuildConfig:
    """Resolve inputs: explicit argument, then environment, then default.

    `overrides` are passed through to `BuildConfig` for the remaining
    fields; a `None` value means "not given".
    """
    workdir = Path(workdir).absolute()

    # As with the shell's ${VAR:-default}, an empty variable counts as unset.
    if reference is None:
        reference = environ.get(ENV_COMMIT) or DEFAULT_COMMIT
    ref = _nonempty("commit", reference)

    if prefix is None:
        prefix = environ.get(ENV_PREFIX) or str(workdir / DEFAULT_PREFIX_RELATIVE)
    _nonempty("prefix", os.fspath(prefix))
    # ./Configure insists on an absolute --prefix.
    resolved_prefix = workdir / Path(prefix).expanduser()

    if openssldir is None:
        openssldir = environ.get(ENV_OPENSSLDIR) or DEFAULT_OPENSSLDIR
    ossldir = _nonempty("openssldir", openssldir)

    config = BuildConfig(
        reference=ref,
        prefix=resolved_prefix,
        openssldir=ossldir,
        scratch_root=workdir,
        make_program=environ.get(ENV_MAKE) or "make",
    )

    given = {k: v for k, v in overrides.items() if v is not None}
    if "scratch_root" in given:
        given["scratch_root"] = workdir / Path(given["scratch_root"]).expanduser()
    if "configure_args" in given:
        given["configure_args"] = tuple(given["configure_args"])
    try:
        config = replace(config, **given)
    except TypeError as e:
        raise ConfigError(str(e)) from e

    if config.jobs < 1:
        raise ConfigError(f"jobs must be at least 1, got {config.jobs}")
    if config.download_timeout <= 0:
        raise ConfigError(f"timeout must be positive, got {config.download_timeout}")
    _nonempty("make", config.make_program)
    _nonempty("install target", config.install_target)

    return config
