import shutil
from pathlib import Path

import pytest

from imbue.sshd_fixture.errors import ExecutableNotFoundError
from imbue.sshd_fixture.executables import ExecutableResolver
from imbue.sshd_fixture.executables import build_default_search_path
from imbue.sshd_fixture.executables import looks_like_binary
from imbue.sshd_fixture.executables import parse_openssh_version

# A real binary that prints its arguments stands in for the OpenSSH tools: passing
# the expected version string as the "version flag" makes it report that version.
_ECHO_PATH = shutil.which("echo")

pytestmark = pytest.mark.skipif(_ECHO_PATH is None, reason="echo executable not found")


def _write_fake_binary(directory: Path, name: str) -> Path:
    assert _ECHO_PATH is not None
    directory.mkdir(parents=True, exist_ok=True)
    path = directory / name
    shutil.copyfile(Path(_ECHO_PATH).resolve(), path)
    path.chmod(0o755)
    return path


def _write_script(directory: Path, name: str) -> Path:
    directory.mkdir(parents=True, exist_ok=True)
    path = directory / name
    path.write_text("#!/bin/sh\necho 'OpenSSH_9.6p1'\n")
    path.chmod(0o755)
    return path


def test_looks_like_binary_rejects_scripts_and_text() -> None:
    assert looks_like_binary(b"#!/bin/sh\nexec ssh\n") is False
    assert looks_like_binary(b"plain text\n") is False
    assert looks_like_binary(b"") is False


def test_looks_like_binary_accepts_elf_like_content() -> None:
    assert looks_like_binary(b"\x7fELF\x02\x01\x01\x00\x00\x00") is True
    assert looks_like_binary(bytes(range(128, 256))) is True


@pytest.mark.parametrize(
    ("output", "expected"),
    [
        ("OpenSSH_9.6p1 Ubuntu-3ubuntu13, OpenSSL 3.0.13", ("OpenSSH_9.6p1", 9)),
        ("unknown option -- z\nOpenSSH_8.9p1, LibreSSL 3.3.6\nusage: sshd", ("OpenSSH_8.9p1", 8)),
        ("OpenSSH_9.7, LibreSSL 3.3.6", ("OpenSSH_9.7", 9)),
        ("Dropbear v2022.83", None),
    ],
)
def test_parse_openssh_version(output: str, expected: tuple[str, int] | None) -> None:
    assert parse_openssh_version(output) == expected


def test_build_default_search_path_drops_missing_and_duplicate_dirs(tmp_path: Path) -> None:
    existing = tmp_path / "bin"
    existing.mkdir()
    missing = tmp_path / "missing"

    search_path = build_default_search_path(f"{existing}:{missing}:{existing}")

    assert search_path[0] == existing
    assert missing not in search_path
    assert search_path.count(existing) == 1


def test_resolve_without_version_returns_first_binary(tmp_path: Path) -> None:
    first = _write_fake_binary(tmp_path / "a", "ssh-keygen")
    _write_fake_binary(tmp_path / "b", "ssh-keygen")
    resolver = ExecutableResolver([tmp_path / "a", tmp_path / "b"], timeout=5.0)

    assert resolver.resolve("ssh-keygen") == first.resolve()


def test_resolve_skips_wrapper_scripts(tmp_path: Path) -> None:
    _write_script(tmp_path / "wrapper", "ssh")
    binary = _write_fake_binary(tmp_path / "real", "ssh")
    resolver = ExecutableResolver([tmp_path / "wrapper", tmp_path / "real"], timeout=5.0)

    assert resolver.resolve("ssh", min_version=5, version_flag="OpenSSH_9.6p1") == binary.resolve()


def test_resolve_skips_non_executable_files(tmp_path: Path) -> None:
    candidate = _write_fake_binary(tmp_path, "ssh-keygen")
    candidate.chmod(0o644)
    resolver = ExecutableResolver([tmp_path], timeout=5.0)

    with pytest.raises(ExecutableNotFoundError):
        resolver.resolve("ssh-keygen")


def test_resolve_requires_minimum_version(tmp_path: Path) -> None:
    _write_fake_binary(tmp_path, "ssh")

    assert ExecutableResolver([tmp_path], timeout=5.0).resolve("ssh", 5, "OpenSSH_7.4p1") is not None
    with pytest.raises(ExecutableNotFoundError):
        ExecutableResolver([tmp_path], timeout=5.0).resolve("ssh", 5, "OpenSSH_4.3p2")


def test_resolve_skips_candidates_without_openssh_signature(tmp_path: Path) -> None:
    _write_fake_binary(tmp_path, "ssh")
    resolver = ExecutableResolver([tmp_path], timeout=5.0)

    with pytest.raises(ExecutableNotFoundError) as exc_info:
        resolver.resolve("ssh", min_version=5, version_flag="Dropbear_2022.83")

    assert exc_info.value.command_name == "ssh"
    assert exc_info.value.min_version == 5


def test_resolve_raises_for_empty_search_path() -> None:
    with pytest.raises(ExecutableNotFoundError):
        ExecutableResolver([], timeout=5.0).resolve_sshd()


def test_resolve_caches_result(tmp_path: Path) -> None:
    binary = _write_fake_binary(tmp_path, "ssh-keygen")
    resolver = ExecutableResolver([tmp_path], timeout=5.0)

    first = resolver.resolve("ssh-keygen")
    binary.unlink()

    assert resolver.resolve("ssh-keygen") == first
    assert resolver.get_cached("ssh-keygen") == first


def test_resolved_ssh_directory_is_searched_first(tmp_path: Path) -> None:
    client_dir = tmp_path / "openssh" / "bin"
    _write_fake_binary(client_dir, "ssh")
    sibling_sshd = _write_fake_binary(tmp_path / "openssh" / "sbin", "sshd")
    _write_fake_binary(tmp_path / "system", "sshd")
    resolver = ExecutableResolver([tmp_path / "system", client_dir], timeout=5.0)

    resolver.resolve("ssh", 5, "OpenSSH_9.6p1")

    assert resolver.resolve("sshd", 5, "OpenSSH_9.6p1") == sibling_sshd.resolve()
