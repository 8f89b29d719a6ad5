from unittest.mock import Mock

import pytest

from buildphp import (
    AcquisitionMethod,
    AutoPrompt,
    CommandTimeout,
    DependencyError,
    DependencyResolver,
    DirectDownload,
    DownloadError,
    LibraryDependency,
    LibraryState,
    SPC_DOWNLOAD_ENV,
    StreamedDownload,
)

MISSING = (["Building required lib [libxml2]", "...not downloaded or not locked..."], 1)


def method(name, side_effect=None):
    m = Mock(spec=AcquisitionMethod)
    m.name = name
    m.acquire.side_effect = side_effect
    return m


@pytest.fixture
def resolver(toolchain, policy):
    return DependencyResolver(toolchain, policy=policy, prompt=AutoPrompt(False))


def test_present_library_is_not_downloaded(resolver, runner):
    resolution = resolver.ensure_libraries(["zlib"])
    assert resolution.get("zlib").state is LibraryState.PRESENT
    assert runner.commands() == ["build-library zlib"]
    assert not resolution.degraded


def test_creates_download_dir_and_passes_env(resolver, runner, toolchain):
    resolver.ensure_libraries(["zlib"])
    assert toolchain.downloads.is_dir()
    args, cwd, env, timeout = runner.calls[0]
    assert env == {SPC_DOWNLOAD_ENV: str(toolchain.downloads)}
    assert cwd == toolchain.path


def test_missing_library_is_downloaded(resolver, runner):
    runner.expect("build-library libxml2", MISSING)
    resolution = resolver.ensure_libraries(["libxml2"])
    assert resolution.get("libxml2").state is LibraryState.DOWNLOADED
    assert runner.commands() == ["build-library libxml2", "download libxml2"]


def test_failing_probe_counts_as_missing(resolver, runner):
    runner.expect("build-library xz", (["error: something"], 2))
    resolution = resolver.ensure_libraries(["xz"])
    assert resolution.get("xz").state is LibraryState.DOWNLOADED


def test_probe_stops_at_signature(resolver, runner):
    runner.expect(
        "build-library libxml2",
        (["Building required lib [libxml2]", "not downloaded or not locked", "never read"], 1),
    )
    assert resolver.probe("libxml2") is True


def test_primary_fails_fallback_succeeds(toolchain, policy, sleeps):
    primary = method("primary", DownloadError("nope"))
    fallback = method("fallback")
    resolver = DependencyResolver(
        toolchain, policy=policy, prompt=AutoPrompt(False), methods=[primary, fallback]
    )
    lib = resolver.ensure_library("libxml2")
    assert lib.state is LibraryState.DOWNLOADED
    assert primary.acquire.call_count == 3
    assert fallback.acquire.call_count == 1
    assert lib.attempts == 4
    assert sleeps == [2, 2]


def test_fallback_with_scripted_toolchain(resolver, runner):
    runner.expect("build-library libxml2", MISSING)
    runner.expect(
        "download libxml2",
        (["timeout"], 1),
        (["timeout"], 1),
        (["timeout"], 1),
        (["Downloading libxml2", "done"], 0),
    )
    resolution = resolver.ensure_libraries(["libxml2"])
    assert resolution.get("libxml2").state is LibraryState.DOWNLOADED
    assert runner.count("download libxml2") == 4


def test_exhaustion_raises_dependency_error(resolver, runner):
    runner.expect("build-library libxml2", MISSING)
    runner.expect("download libxml2", (["404 not found"], 1))
    with pytest.raises(DependencyError) as excinfo:
        resolver.ensure_libraries(["libxml2", "zlib"])
    assert excinfo.value.library == "libxml2"
    assert excinfo.value.output_tail == ["404 not found"]
    assert runner.count("download libxml2") == 6
    assert "build-library zlib" not in runner.commands()


def test_operator_may_continue_without_library(toolchain, policy, runner):
    prompt = Mock()
    prompt.confirm.return_value = True
    resolver = DependencyResolver(toolchain, policy=policy, prompt=prompt)
    runner.expect("build-library libxml2", MISSING)
    runner.expect("download libxml2", ([], 1))
    resolution = resolver.ensure_libraries(["libxml2", "zlib"])
    assert resolution.missing == ["libxml2"]
    assert resolution.degraded
    assert resolution.get("libxml2").state is LibraryState.FAILED
    assert resolution.get("zlib").state is LibraryState.PRESENT
    assert "libxml2" in prompt.confirm.call_args.args[0]


def test_allow_missing_does_not_ask(toolchain, policy, runner):
    prompt = Mock()
    resolver = DependencyResolver(toolchain, policy=policy, prompt=prompt, allow_missing=True)
    runner.expect("build-library libxml2", MISSING)
    runner.expect("download libxml2", ([], 1))
    resolution = resolver.ensure_libraries(["libxml2"])
    assert resolution.missing == ["libxml2"]
    prompt.confirm.assert_not_called()


def test_probe_timeout_is_retried(resolver, runner):
    runner.expect(
        "build-library zlib",
        CommandTimeout("too slow", command=["spc"]),
        ([], 0),
    )
    resolution = resolver.ensure_libraries(["zlib"])
    assert resolution.get("zlib").state is LibraryState.PRESENT
    assert runner.count("build-library zlib") == 2


def test_existing_library_objects_are_updated(resolver):
    lib = LibraryDependency("zlib")
    resolver.ensure_libraries([lib])
    assert lib.state is LibraryState.PRESENT


def test_prepare_sources_downloads_then_extracts(resolver, runner):
    resolution = resolver.prepare_sources(["zlib", "curl"])
    assert runner.commands() == [
        "download zlib",
        "extract zlib",
        "download curl",
        "extract curl",
    ]
    assert all(lib.state is LibraryState.DOWNLOADED for lib in resolution.libraries)


def test_prepare_sources_failure_raises(resolver, runner):
    runner.expect("extract zlib", (["bad archive"], 1))
    with pytest.raises(DependencyError) as excinfo:
        resolver.prepare_sources(["zlib"])
    assert excinfo.value.library == "zlib"


def test_streamed_download_fails_on_signature(toolchain, runner):
    runner.expect("download curl", (["source [curl] not downloaded or not locked"], 0))
    with pytest.raises(DownloadError):
        StreamedDownload().acquire(toolchain, "curl")


def test_direct_download_wraps_timeout(toolchain, runner):
    runner.expect("download curl", CommandTimeout("slow", command=["spc"]))
    with pytest.raises(DownloadError) as excinfo:
        DirectDownload().acquire(toolchain, "curl")
    assert isinstance(excinfo.value.__cause__, CommandTimeout)


def test_give_up_reports_attempts_of_every_method(toolchain, policy, runner):
    prompt = Mock()
    prompt.confirm.return_value = True
    resolver = DependencyResolver(toolchain, policy=policy, prompt=prompt)
    runner.expect("build-library libxml2", MISSING)
    runner.expect("download libxml2", (["404 not found"], 1))
    resolution = resolver.ensure_libraries(["libxml2"])
    assert resolution.get("libxml2").attempts == 6
    assert "after 6 attempts" in prompt.confirm.call_args.args[0]


def test_library_check_timeout_is_chained_into_dependency_error(resolver, runner):
    timeout = CommandTimeout("too slow", command=["spc"], output_tail=["compiling"])
    runner.expect("build-library zlib", timeout)
    with pytest.raises(DependencyError) as excinfo:
        resolver.ensure_libraries(["zlib"])
    assert excinfo.value.__cause__ is timeout
    assert excinfo.value.output_tail == ["compiling"]
    assert runner.count("build-library zlib") == 3
