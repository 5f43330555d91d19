import pytest

from workspace_rag.ingestion.exclusion import PathExcluder
from workspace_rag.retrieval.editor import (
    UNTITLED,
    EditorContext,
    EditorContextReader,
    focused_window,
)

BODY = "def load_settings(path):\n    return parse(path.read_text())\n"


@pytest.fixture
def root(tmp_path):
    project = tmp_path / "project"
    project.mkdir()
    (project / "settings.py").write_text(BODY)
    return project


def make_reader(root, **kwargs) -> EditorContextReader:
    return EditorContextReader(PathExcluder(excluded_dirs=["build"]), lambda: [root], **kwargs)


@pytest.mark.asyncio
async def test_pinned_file_is_read_whole(root):
    entries = await make_reader(root).collect(
        EditorContext(pinned_paths=[str(root / "settings.py")])
    )

    assert [(e.entry.path, e.entry.text) for e in entries] == [
        ((root / "settings.py").as_posix(), BODY)
    ]


@pytest.mark.asyncio
async def test_pinned_duplicates_are_read_once(root):
    path = str(root / "settings.py")

    entries = await make_reader(root).collect(EditorContext(pinned_paths=[path, path]))

    assert len(entries) == 1


@pytest.mark.asyncio
async def test_pinned_files_outside_roots_are_ignored(root, tmp_path):
    outside = tmp_path / "secrets.txt"
    outside.write_text("password = hunter2 and a few more characters\n")

    entries = await make_reader(root).collect(EditorContext(pinned_paths=[str(outside)]))

    assert entries == []


@pytest.mark.asyncio
async def test_pinned_files_follow_exclusion_rules(root):
    (root / "image.bin").write_bytes(b"\x89PNG\x00\x00" + b"x" * 100)
    (root / "build").mkdir()
    (root / "build" / "out.py").write_text(BODY)
    (root / "big.py").write_text(BODY * 20)

    entries = await make_reader(root, max_file_bytes=len(BODY) * 10).collect(
        EditorContext(pinned_paths=[
            str(root / "image.bin"),
            str(root / "build" / "out.py"),
            str(root / "big.py"),
            str(root / "missing.py"),
        ])
    )

    assert entries == []


@pytest.mark.asyncio
async def test_short_entries_are_dropped(root):
    (root / "tiny.py").write_text("x = 1\n")

    entries = await make_reader(root).collect(
        EditorContext(
            pinned_paths=[str(root / "tiny.py")],
            focused_path=str(root / "other.py"),
            focused_text="   y = 2   ",
        )
    )

    assert entries == []


def test_focused_window_is_centred_on_the_caret():
    text = "".join(str(n % 10) for n in range(100))

    start, window = focused_window(text, caret_offset=50, width=20)

    assert (start, window) == (40, text[40:60])
    assert focused_window(text, caret_offset=3, width=20) == (0, text[0:13])
    assert focused_window(text, caret_offset=None, width=20) == (40, text[40:60])
    assert focused_window(text, caret_offset=1000, width=20) == (90, text[90:])


@pytest.mark.asyncio
async def test_focused_window_follows_pinned_files(root):
    focused = "class Scheduler:\n    def tick(self):\n        pass\n" * 3

    entries = await make_reader(root).collect(
        EditorContext(
            pinned_paths=[str(root / "settings.py")],
            focused_path=str(root / "scheduler.py"),
            focused_text=focused,
            caret_offset=10,
        )
    )

    assert [e.entry.path for e in entries] == [
        (root / "settings.py").as_posix(),
        (root / "scheduler.py").as_posix(),
    ]
    assert entries[1].entry.text == focused


@pytest.mark.asyncio
async def test_pinned_focused_file_is_not_repeated(root):
    entries = await make_reader(root).collect(
        EditorContext(
            pinned_paths=[str(root / "settings.py")],
            focused_path=str(root / "settings.py"),
            focused_text=BODY,
        )
    )

    assert len(entries) == 1


@pytest.mark.asyncio
async def test_unsaved_buffer_is_labelled(root):
    entries = await make_reader(root).collect(
        EditorContext(focused_text="scratch notes about the scheduler refactor")
    )

    assert [e.entry.path for e in entries] == [UNTITLED]
