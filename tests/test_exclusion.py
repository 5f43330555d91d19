from pathlib import Path

from workspace_rag.ingestion.exclusion import Excluder, PathExcluder, is_binary_content


def make_excluder(**kwargs) -> PathExcluder:
    defaults = dict(excluded_dirs=["build", "node_modules", ".git"], max_file_size_bytes=64)
    defaults.update(kwargs)
    return PathExcluder(**defaults)


def test_path_excluder_satisfies_protocol():
    assert isinstance(make_excluder(), Excluder)


def test_excluded_directory_component():
    excluder = make_excluder()

    assert excluder.excludes_path(Path("build/classes/App.java")) == "excluded directory"
    assert excluder.excludes_path(Path("web/node_modules/lib/index.js")) == "excluded directory"
    assert excluder.excludes_path(Path("src/App.java")) is None


def test_excludes_dir_by_name():
    excluder = make_excluder()

    assert excluder.excludes_dir(Path("/workspace/.git"))
    assert not excluder.excludes_dir(Path("/workspace/src"))


def test_include_patterns_restrict_paths():
    excluder = make_excluder(include_patterns=["src/main"])

    assert excluder.excludes_path(Path("src/main/App.java")) is None
    assert excluder.excludes_path(Path("docs/readme.md")) == "not matched by include patterns"


def test_binary_extension():
    assert make_excluder().excludes_path(Path("assets/logo.PNG")) == "binary extension"


def test_size_ceiling_is_checked_on_the_path():
    excluder = make_excluder()

    assert excluder.excludes_path(Path("a.txt"), 64) is None
    assert excluder.excludes_path(Path("a.txt"), 65) == "larger than 64 bytes"
    assert excluder.excludes_path(Path("a.txt")) is None
    assert excluder.excludes_content(Path("a.txt"), b"x" * 65) is None


def test_binary_content_detection():
    assert is_binary_content(b"abc\x00def")
    assert is_binary_content(b"\xff\xfe\xfa")
    assert not is_binary_content("héllo wörld".encode("utf-8"))
    assert not is_binary_content(b"")


def test_multibyte_sequence_cut_by_sample_is_text():
    content = b"a" * 7 + "é".encode("utf-8")
    assert not is_binary_content(content, sample_size=8)

    # Same truncated bytes as the whole file are invalid
    assert is_binary_content(content[:8], sample_size=8)
