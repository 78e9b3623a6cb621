"""Containment tests for PathGuard (pure path algebra, both path flavors)."""

import ntpath
from pathlib import Path
import posixpath

import pytest

from rootfs_mcp.tools.fs import InvalidPathError, PathGuard, PathSecurityError


@pytest.fixture
def guard() -> PathGuard:
    return PathGuard("/base", pathmod=posixpath)


@pytest.mark.parametrize("requested", ["", "   ", ".", None, " . "])
def test_empty_and_dot_resolve_to_base(guard, requested):
    assert guard.resolve(requested) == "/base"


@pytest.mark.parametrize(
    "requested, expected",
    [
        ("a.txt", "/base/a.txt"),
        ("sub/dir/f.txt", "/base/sub/dir/f.txt"),
        ("sub/", "/base/sub"),
        ("sub//dir///f.txt", "/base/sub/dir/f.txt"),
        ("./sub/./f.txt", "/base/sub/f.txt"),
        ("sub/../f.txt", "/base/f.txt"),
        # exits and re-enters the base: normalized before the check
        ("../base/f.txt", "/base/f.txt"),
        ("a/../../base/x", "/base/x"),
        ("/base", "/base"),
        ("/base/", "/base"),
        ("/base/sub/../x", "/base/x"),
        ("  padded.txt  ", "/base/padded.txt"),
    ],
)
def test_contained_paths(guard, requested, expected):
    assert guard.resolve(requested) == expected


@pytest.mark.parametrize(
    "requested",
    [
        "..",
        "../etc/passwd",
        "sub/../../etc",
        "/etc/passwd",
        "/",
        "/bas",
        # shares the base's string prefix but not the separator boundary
        "../baseEvil/x",
        "/baseEvil",
        "/base/../baseEvil",
        "/base/..",
    ],
)
def test_escapes_are_rejected(guard, requested):
    with pytest.raises(PathSecurityError) as exc_info:
        guard.resolve(requested)
    err = exc_info.value
    assert err.root == "/base"
    assert err.path is not None
    assert "Path not allowed" in str(err)
    assert "allowed base: /base" in str(err)


def test_rejection_carries_normalized_path(guard):
    with pytest.raises(PathSecurityError) as exc_info:
        guard.resolve("sub/../../baseEvil//x")
    assert exc_info.value.path == "/baseEvil/x"


def test_null_byte_rejected(guard):
    with pytest.raises(InvalidPathError):
        guard.resolve("a\x00b")


def test_non_string_rejected(guard):
    with pytest.raises(InvalidPathError):
        guard.resolve(42)  # type: ignore[arg-type]


def test_backslash_is_a_filename_character_on_posix(guard):
    assert guard.resolve("a\\..\\..\\x") == "/base/a\\..\\..\\x"


def test_base_must_be_absolute():
    with pytest.raises(ValueError):
        PathGuard("relative/dir", pathmod=posixpath)


def test_base_is_normalized():
    g = PathGuard("/srv//data/../base/", pathmod=posixpath)
    assert g.root == "/srv/base"
    assert g.resolve("x") == "/srv/base/x"


def test_filesystem_root_as_base():
    g = PathGuard("/", pathmod=posixpath)
    assert g.resolve("etc/passwd") == "/etc/passwd"
    assert g.resolve("../..") == "/"


@pytest.mark.parametrize(
    "requested",
    ["", "a.txt", "sub/dir/f.txt", "sub/../x", "/base/deep/er/file", "a/../../base/y"],
)
def test_resolve_is_idempotent_over_relative_form(guard, requested):
    resolved = guard.resolve(requested)
    assert resolved == "/base" or resolved.startswith("/base/")
    assert guard.resolve(guard.relative(resolved)) == resolved


def test_resolution_never_touches_filesystem(tmp_path, monkeypatch):
    g = PathGuard(str(tmp_path / "does-not-exist"))

    def boom(*args, **kwargs):
        raise AssertionError("filesystem accessed")

    monkeypatch.setattr(Path, "exists", boom)
    monkeypatch.setattr(Path, "resolve", boom)
    assert g.resolve("x/y").endswith("x/y")


class TestWindowsFlavor:
    """Windows-style paths checked with ntpath on any host."""

    @pytest.fixture
    def win(self) -> PathGuard:
        return PathGuard("C:\\base", pathmod=ntpath)

    def test_mixed_separators(self, win):
        assert win.resolve("sub/dir\\f.txt") == "C:\\base\\sub\\dir\\f.txt"

    def test_forward_slash_absolute(self, win):
        assert win.resolve("C:/base/x") == "C:\\base\\x"

    def test_trailing_separator(self, win):
        assert win.resolve("sub\\") == "C:\\base\\sub"

    @pytest.mark.parametrize(
        "requested",
        [
            "D:\\base\\x",  # same layout, other drive
            "D:\\",
            "D:foo",  # drive-relative, must not be read as relative to the base
            "..\\baseEvil\\x",
            "C:\\baseEvil",
            "\\windows\\system32",
            "\\\\server\\share\\x",
        ],
    )
    def test_rejected(self, win, requested):
        with pytest.raises(PathSecurityError):
            win.resolve(requested)

    def test_drive_root_as_base(self):
        g = PathGuard("C:\\", pathmod=ntpath)
        assert g.resolve("x\\y") == "C:\\x\\y"
        with pytest.raises(PathSecurityError):
            g.resolve("D:\\x")
