import hashlib
import subprocess
from pathlib import Path

import pytest
import requests

import hermetic
import provisioning
from stages import (
    BuildError,
    Cancelled,
    CleanupWarning,
    ConfigureError,
    ExtractError,
    FetchError,
    InstallError,
    Stage,
)
from test_fixtures import pack_source_tarball


def scratch_leftovers(root: Path) -> list[Path]:
    return list(root.glob("ossl-vendor-*"))


def installed_digest(prefix: Path) -> dict[str, str]:
    return {
        str(p.relative_to(prefix)): hashlib.sha256(p.read_bytes()).hexdigest()
        for p in sorted(prefix.rglob("*"))
        if p.is_file()
    }


def test_successful_run_installs_and_leaves_no_scratch(workdir, make_config, fake_upstream):
    fake_upstream.serve("openssl-3.2.0", pack_source_tarball())
    config = make_config("openssl-3.2.0")

    report = provisioning.run(config)

    assert report.stages_run() == [
        Stage.FETCH,
        Stage.EXTRACT,
        Stage.CONFIGURE,
        Stage.BUILD,
        Stage.INSTALL,
    ]
    assert all(r.ok for r in report.results)
    assert report.cleaned_up
    assert (config.prefix / "lib" / "libcrypto.a").is_file()
    assert (config.prefix / "include" / "openssl" / "opensslv.h").is_file()
    assert scratch_leftovers(workdir) == []
    assert not (workdir / "openssl-3.2.0.tar.gz").exists()
    assert fake_upstream.requested == [config.archive_url]


def test_configure_and_make_receive_expected_arguments(
    workdir, make_config, fake_upstream, record_dir
):
    fake_upstream.serve("openssl-3.2.0", pack_source_tarball())
    config = make_config(
        "openssl-3.2.0",
        openssldir="/etc/ossl",
        jobs=7,
        configure_args=["no-docs"],
        install_target="install_sw",
    )

    provisioning.run(config)

    configure_args = (record_dir / "configure.args").read_text().splitlines()
    assert configure_args == [
        f"--prefix={config.prefix}",
        "--openssldir=/etc/ossl",
        "-Wl,--enable-new-dtags,-rpath,$(LIBRPATH)",
        "no-docs",
    ]
    make_calls = (record_dir / "make.calls").read_text().splitlines()
    assert make_calls == ["-j 7", "install_sw"]


def test_source_tree_found_when_top_directory_differs_from_reference(
    workdir, make_config, fake_upstream
):
    # GitHub strips the leading "v" from tags: v3.2.0 unpacks to openssl-3.2.0/.
    fake_upstream.serve("v3.2.0", pack_source_tarball(topdir="openssl-3.2.0"))
    config = make_config("v3.2.0")

    provisioning.run(config)

    assert (config.prefix / "lib").is_dir()


def test_fetch_404_stops_before_any_other_stage(workdir, make_config, fake_upstream, record_dir):
    config = make_config("no-such-tag")

    with pytest.raises(FetchError) as excinfo:
        provisioning.run(config)

    assert excinfo.value.stage == Stage.FETCH
    assert excinfo.value.returncode == 404
    assert not (record_dir / "configure.args").exists()
    assert not (record_dir / "make.calls").exists()
    assert not config.prefix.exists()
    assert scratch_leftovers(workdir) == []


@pytest.mark.parametrize("status", [304, 307])
def test_non_success_status_below_400_is_fetch_error(
    workdir, make_config, fake_upstream, record_dir, status
):
    fake_upstream.serve("openssl-3.2.0", pack_source_tarball(), status=status)
    config = make_config()

    with pytest.raises(FetchError) as excinfo:
        provisioning.run(config)

    assert excinfo.value.returncode == status
    assert not (record_dir / "configure.args").exists()
    assert scratch_leftovers(workdir) == []


def test_fetch_network_failure_is_fetch_error(workdir, make_config, fake_upstream):
    fake_upstream.fail_with = requests.exceptions.ConnectionError("unreachable host")
    config = make_config()

    with pytest.raises(FetchError) as excinfo:
        provisioning.run(config)

    assert excinfo.value.returncode is None
    assert "unreachable host" in excinfo.value.output
    assert scratch_leftovers(workdir) == []


def test_corrupt_archive_is_extract_error(workdir, make_config, fake_upstream, record_dir):
    fake_upstream.serve("openssl-3.2.0", b"this is not a tarball")
    config = make_config()

    with pytest.raises(ExtractError):
        provisioning.run(config)

    assert not (record_dir / "configure.args").exists()
    assert scratch_leftovers(workdir) == []


def test_configure_failure_skips_build_and_install(workdir, make_config, fake_upstream, record_dir):
    fake_upstream.serve("openssl-3.2.0", pack_source_tarball(configure_exit=3))
    config = make_config()

    with pytest.raises(ConfigureError) as excinfo:
        provisioning.run(config)

    assert excinfo.value.returncode == 3
    assert "target not supported" in excinfo.value.output
    assert not (record_dir / "make.calls").exists()
    assert not config.prefix.exists()
    assert scratch_leftovers(workdir) == []


def test_build_failure_skips_install(workdir, make_config, fake_upstream, record_dir, monkeypatch):
    monkeypatch.setenv("FAKE_MAKE_FAIL", "build")
    fake_upstream.serve("openssl-3.2.0", pack_source_tarball())
    config = make_config()

    with pytest.raises(BuildError) as excinfo:
        provisioning.run(config)

    assert excinfo.value.returncode == 2
    assert (record_dir / "make.calls").read_text().splitlines() == ["-j 2"]
    assert not config.prefix.exists()
    assert scratch_leftovers(workdir) == []


def test_install_failure_is_install_error(workdir, make_config, fake_upstream, monkeypatch):
    monkeypatch.setenv("FAKE_MAKE_FAIL", "install")
    fake_upstream.serve("openssl-3.2.0", pack_source_tarball())

    with pytest.raises(InstallError):
        provisioning.run(make_config())

    assert scratch_leftovers(workdir) == []


def test_missing_build_tool_is_build_error(workdir, make_config, fake_upstream, tmp_path):
    fake_upstream.serve("openssl-3.2.0", pack_source_tarball())
    config = make_config(make_program=str(tmp_path / "no-such-make"))

    with pytest.raises(BuildError) as excinfo:
        provisioning.run(config)

    assert excinfo.value.returncode == 127


def test_keep_scratch_leaves_workspace(workdir, make_config, fake_upstream):
    fake_upstream.serve("openssl-3.2.0", pack_source_tarball())

    provisioning.run(make_config(keep_scratch=True))

    leftovers = scratch_leftovers(workdir)
    assert len(leftovers) == 1
    assert (leftovers[0] / "build.log").is_file()
    assert provisioning.clean_scratch(workdir) == leftovers
    assert scratch_leftovers(workdir) == []


def test_cleanup_failure_is_only_a_warning(workdir, make_config, fake_upstream, monkeypatch):
    fake_upstream.serve("openssl-3.2.0", pack_source_tarball())

    def refuse(path, *args, **kwargs):
        raise PermissionError(f"cannot remove {path}")

    monkeypatch.setattr(provisioning.shutil, "rmtree", refuse)

    with pytest.warns(CleanupWarning, match="cannot remove"):
        report = provisioning.run(make_config())

    assert not report.cleaned_up
    assert "cannot remove" in str(report.cleanup_warnings[0])
    assert (report.config.prefix / "lib").is_dir()


def test_interrupt_during_build_is_cancelled(workdir, make_config, fake_upstream, monkeypatch):
    monkeypatch.setenv("FAKE_MAKE_SLEEP", "build")
    fake_upstream.serve("openssl-3.2.0", pack_source_tarball())
    config = make_config()
    interrupted = []

    class InterruptOncePopen(subprocess.Popen):
        def poll(self):
            if not interrupted:
                interrupted.append(self.args)
                raise KeyboardInterrupt
            return super().poll()

    original_run_stage = provisioning.run_tool_stage

    def run_stage(stage, command, source_dir, scratch):
        if stage == Stage.BUILD:
            monkeypatch.setattr(hermetic.subprocess, "Popen", InterruptOncePopen)
        return original_run_stage(stage, command, source_dir, scratch)

    monkeypatch.setattr(provisioning, "run_tool_stage", run_stage)

    with pytest.raises(Cancelled) as excinfo:
        provisioning.run(config)

    assert excinfo.value.stage == Stage.BUILD
    assert interrupted and interrupted[0][-2:] == ["-j", "2"]
    assert not config.prefix.exists()
    assert scratch_leftovers(workdir) == []


def test_rerun_is_idempotent(workdir, make_config, fake_upstream):
    fake_upstream.serve("openssl-3.2.0", pack_source_tarball())
    config = make_config()

    provisioning.run(config)
    first = installed_digest(config.prefix)
    provisioning.run(config)

    assert installed_digest(config.prefix) == first
    assert first


def test_end_to_end_scenario(tmp_path, workdir, make_config, fake_upstream):
    fake_upstream.serve("v3.2.0", pack_source_tarball())
    prefix = tmp_path / "ossl"
    config = make_config(
        "v3.2.0",
        prefix=str(prefix),
        openssldir=str(prefix / "conf"),
        scratch_root=str(tmp_path),
    )

    provisioning.run(config)

    assert (prefix / "lib").is_dir()
    assert (prefix / "include").is_dir()
    assert not (tmp_path / "v3.2.0.tar.gz").exists()
    assert scratch_leftovers(tmp_path) == []


@pytest.mark.parametrize(
    "reference, expected",
    [
        ("3.2.0", "3.2.0"),
        ("v3.2.0", "3.2.0"),
        ("openssl-3.2.0", "3.2.0"),
        ("openssl-3.2", "3.2"),
        ("OpenSSL_1_1_1", "1.1.1"),
        ("master", None),
        ("613d3f5a7ef568aecb1681ef5960f956c1ed7344", None),
        ("1234567", None),
        ("OpenSSL_1_1_1w", None),
    ],
)
def test_version_from_reference(reference, expected):
    version = provisioning.version_from_reference(reference)
    assert (str(version) if version is not None else None) == expected


def test_version_from_openssl_output():
    out = "OpenSSL 3.2.0 23 Nov 2023 (Library: OpenSSL 3.2.0 23 Nov 2023)"
    assert str(provisioning.version_from_openssl_output(out)) == "3.2.0"
    assert provisioning.version_from_openssl_output("OpenSSL 1.1.1w  11 Sep 2023") is None
    assert provisioning.version_from_openssl_output("LibreSSL 3.8.2") is None
    assert provisioning.version_from_openssl_output("") is None


def test_versions_agree():
    V = provisioning.Version
    assert provisioning.versions_agree(V("3.2.0"), V("3.2.0"))
    assert provisioning.versions_agree(V("3.2"), V("3.2.1"))
    assert not provisioning.versions_agree(V("3.2.0"), V("3.1.4"))


def test_installed_version_mismatch_only_warns(workdir, make_config, capsys):
    config = make_config("openssl-3.2.0")
    bindir = config.prefix / "bin"
    bindir.mkdir(parents=True)
    fake_openssl = bindir / "openssl"
    fake_openssl.write_text("#!/bin/sh\necho 'OpenSSL 3.1.4 24 Oct 2023'\n")
    fake_openssl.chmod(0o755)

    assert provisioning.check_installed_version(config) == "OpenSSL 3.1.4 24 Oct 2023"
    assert "suggests 3.2.0" in capsys.readouterr().err


def test_installed_version_absent(workdir, make_config):
    assert provisioning.check_installed_version(make_config()) is None
