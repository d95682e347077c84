from pathlib import Path
import re
import shlex
import shutil
import subprocess
import tarfile
import tempfile
import warnings
from dataclasses import dataclass, field

from packaging.version import InvalidVersion, Version
import click
import requests

import hermetic
from build_config import BuildConfig
from constants import RPATH_LINKER_FLAG, SCRATCH_DIR_PREFIX
from stages import (
    ERROR_FOR_STAGE,
    Cancelled,
    CleanupWarning,
    FetchError,
    Stage,
    StageResult,
)


def sez(msg: str, ctx: str, err=False):
    click.echo("OSSL-VENDOR SEZ: " + ctx + msg, err=err)


@dataclass
class RunReport:
    config: BuildConfig
    results: list[StageResult] = field(default_factory=list)
    installed_version: str | None = None
    cleanup_warnings: list[CleanupWarning] = field(default_factory=list)

    @property
    def cleaned_up(self) -> bool:
        return not self.cleanup_warnings

    def stages_run(self) -> list[Stage]:
        return [r.stage for r in self.results]


def download(url: str, filename: Path, timeout: float) -> StageResult:
    """Stream `url` into `filename`.

    Never retries; a flaky network is the caller's problem. On failure the
    partial file is removed and the result carries the HTTP status, if any.
    """
    try:
        with requests.get(url, stream=True, timeout=timeout) as response:
            response.raise_for_status()
            if response.status_code // 100 != 2:
                # e.g. a 304, or a redirect requests could not follow.
                raise requests.exceptions.HTTPError(
                    f"{response.status_code} Unexpected response for url: {url}", response=response
                )
            with open(filename, "wb") as f:
                for chunk in response.iter_content(chunk_size=1 << 16):
                    f.write(chunk)
            return StageResult(Stage.FETCH, 0, stdout=f"{response.status_code} {url}\n")
    except requests.exceptions.HTTPError as e:
        filename.unlink(missing_ok=True)
        status = e.response.status_code if e.response is not None else None
        return StageResult(Stage.FETCH, status, stderr=f"Server returned error {e}\n")
    except (requests.exceptions.RequestException, OSError) as e:
        filename.unlink(missing_ok=True)
        return StageResult(Stage.FETCH, None, stderr=f"{e}\n")


def is_empty_dir(path: Path) -> bool:
    return path.is_dir() and next(path.iterdir(), None) is None


def extract_tarball(tarball_path: Path, target_dir: Path) -> StageResult:
    """Extract the given tarball into a fresh `target_dir`."""
    try:
        target_dir.mkdir(parents=True, exist_ok=False)
        with tarfile.open(str(tarball_path), "r:*") as tar:
            tar.extractall(path=target_dir, filter="tar")
    except (tarfile.TarError, OSError) as e:
        return StageResult(Stage.EXTRACT, 1, stderr=f"{tarball_path.name}: {e}\n")

    if is_empty_dir(target_dir):
        return StageResult(Stage.EXTRACT, 1, stderr=f"{tarball_path.name}: archive is empty\n")

    return StageResult(Stage.EXTRACT, 0)


def locate_source_tree(extracted: Path) -> Path:
    # GitHub archives hold one top-level directory, but its name is not the
    # reference verbatim: tag v3.2.0 unpacks to openssl-3.2.0/. So we take
    # whatever single directory we find.
    contents = list(extracted.iterdir())
    if len(contents) == 1 and contents[0].is_dir():
        return contents[0]
    return extracted


def configure_command(config: BuildConfig) -> list[str]:
    return [
        "./Configure",
        f"--prefix={config.prefix}",
        f"--openssldir={config.openssldir}",
        RPATH_LINKER_FLAG,
        *config.configure_args,
    ]


def build_command(config: BuildConfig) -> list[str]:
    return [*shlex.split(config.make_program), "-j", str(config.jobs)]


def install_command(config: BuildConfig) -> list[str]:
    return [*shlex.split(config.make_program), config.install_target]


def run_tool_stage(
    stage: Stage, command: list[str], source_dir: Path, scratch: Path
) -> StageResult:
    return hermetic.run_command_with_progress(
        stage,
        command,
        stdout_file=scratch / f"{stage}.log",
        stderr_file=scratch / f"{stage}.err",
        cwd=source_dir,
    )


def make_scratch_dir(config: BuildConfig) -> Path:
    safe_ref = re.sub(r"[^A-Za-z0-9._-]", "-", config.reference)
    try:
        config.scratch_root.mkdir(parents=True, exist_ok=True)
        scratch = tempfile.mkdtemp(
            prefix=f"{SCRATCH_DIR_PREFIX}{safe_ref}-", dir=config.scratch_root
        )
        return Path(scratch)
    except OSError as e:
        # Without a workspace there is nowhere to put the download.
        raise FetchError(f"Cannot create scratch workspace under {config.scratch_root}: {e}") from e


def remove_scratch(scratch: Path) -> CleanupWarning | None:
    if not scratch.exists():
        return None
    try:
        shutil.rmtree(scratch)
    except OSError as e:
        return CleanupWarning(f"Could not remove scratch workspace {scratch}: {e}")
    return None


def clean_scratch(scratch_root: Path) -> list[Path]:
    """Remove workspaces left behind by killed or --keep-scratch runs."""
    removed = []
    for leftover in sorted(scratch_root.glob(f"{SCRATCH_DIR_PREFIX}*")):
        if leftover.is_dir() and not leftover.is_symlink():
            shutil.rmtree(leftover)
            removed.append(leftover)
    return removed


_COMMIT_HASH_RE = re.compile(r"^[0-9a-f]{7,40}$")


def version_from_reference(reference: str) -> Version | None:
    """The release a reference names, if it names one.

    Accepts `3.2.0`, `v3.2.0`, `openssl-3.2.0`, `OpenSSL_1_1_1` and branch
    names like `openssl-3.2`. Commit hashes and `master` yield None.
    """
    if _COMMIT_HASH_RE.match(reference):
        return None
    candidate = reference
    for prefix in ("openssl-", "OpenSSL_", "v"):
        if candidate.startswith(prefix):
            candidate = candidate.removeprefix(prefix)
            break
    candidate = candidate.replace("_", ".")
    try:
        return Version(candidate)
    except InvalidVersion:
        return None


def version_from_openssl_output(output: str) -> Version | None:
    # e.g. "OpenSSL 3.2.0 23 Nov 2023 (Library: OpenSSL 3.2.0 23 Nov 2023)"
    match output.split():
        case ["OpenSSL", version, *_]:
            try:
                return Version(version)
            except InvalidVersion:
                # Letter releases like 1.1.1w are not PEP 440.
                return None
        case _:
            return None


def versions_agree(wanted: Version, installed: Version) -> bool:
    # A branch reference like openssl-3.2 is satisfied by any 3.2.x.
    return installed == wanted or installed.release[: len(wanted.release)] == wanted.release


def check_installed_version(config: BuildConfig) -> str | None:
    """Report what `<prefix>/bin/openssl version` says, warning on mismatch.

    This is advisory only; it never fails the run.
    """

    def say(msg: str, err=False):
        sez(msg, ctx="(verify) ", err=err)

    openssl_bin = config.prefix / "bin" / "openssl"
    if not openssl_bin.is_file():
        return None

    try:
        out = hermetic.check_output([str(openssl_bin), "version"]).decode("utf-8", errors="replace")
    except (OSError, subprocess.CalledProcessError) as e:
        say(f"warning: could not run {openssl_bin}: {e}", err=True)
        return None

    out = out.strip()
    say(f"Installed {out}")

    wanted = version_from_reference(config.reference)
    installed = version_from_openssl_output(out)
    if wanted is not None and installed is not None and not versions_agree(wanted, installed):
        say(
            f"warning: reference {config.reference!r} suggests {wanted},"
            f" but {installed} was installed",
            err=True,
        )
    return out


def run(config: BuildConfig) -> RunReport:
    """Fetch, extract, configure, build and install one OpenSSL revision.

    Stops at the first failing stage by raising the matching StageError.
    The scratch workspace is removed afterwards whether or not the run
    succeeded, unless `config.keep_scratch` is set.
    """
    report = RunReport(config)

    sez(f"prefix    : {config.prefix}", ctx="")
    sez(f"openssldir: {config.openssldir}", ctx="")

    def record(result: StageResult, failure: str):
        report.results.append(result)
        if not result.ok:
            error = ERROR_FOR_STAGE[result.stage].from_result(result, failure)
            if result.stage in (Stage.FETCH, Stage.EXTRACT) and result.stderr:
                # Tool stages already had their stderr echoed by hermetic.
                sez(result.stderr.strip(), ctx=f"({result.stage}) ", err=True)
            sez(f"{error} (status {result.returncode})", ctx=f"({result.stage}) ", err=True)
            raise error

    scratch = make_scratch_dir(config)
    stage = Stage.FETCH
    try:
        archive = scratch / config.archive_name
        sez(f"Downloading {config.archive_url}...", ctx="(fetch) ")
        record(
            download(config.archive_url, archive, timeout=config.download_timeout),
            f"Failed to download {config.archive_url}",
        )

        stage = Stage.EXTRACT
        extracted = scratch / "src"
        sez(f"Extracting to {extracted}...", ctx="(extract) ")
        record(extract_tarball(archive, extracted), f"Failed to extract {archive.name}")
        archive.unlink()
        source_dir = locate_source_tree(extracted)

        for stage, command, verb in (
            (Stage.CONFIGURE, configure_command(config), "Configuring"),
            (Stage.BUILD, build_command(config), f"Building with {config.jobs} jobs"),
            (Stage.INSTALL, install_command(config), f"Installing into {config.prefix}"),
        ):
            sez(f"{verb}...", ctx=f"({stage}) ")
            record(
                run_tool_stage(stage, command, source_dir, scratch),
                f"`{hermetic.shellize(command)}` failed",
            )

        report.installed_version = check_installed_version(config)
    except KeyboardInterrupt:
        raise Cancelled(stage) from None
    finally:
        if config.keep_scratch:
            sez(f"Keeping scratch workspace {scratch}", ctx="(cleanup) ")
        else:
            warning = remove_scratch(scratch)
            if warning is not None:
                report.cleanup_warnings.append(warning)
                sez(f"warning: {warning}", ctx="(cleanup) ", err=True)
                warnings.warn(warning, stacklevel=2)

    sez(f"OpenSSL {config.reference} installed into {config.prefix}", ctx="")
    return report
