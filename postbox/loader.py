from concurrent.futures import FIRST_EXCEPTION, ThreadPoolExecutor, wait
from pathlib import Path
from typing import Iterable

import pytest

from postbox.errors import FilenameError, HeaderSchemaError, PostboxError, PostLoadError, PostReadError
from postbox.post import MarkdownConverter, Post, markdown_to_html


def iter_post_paths(posts_dir: Path) -> list[Path]:
    try:
        entries = list(posts_dir.iterdir())
    except OSError as e:
        raise PostReadError(f"Failed to list posts directory {posts_dir.as_posix()}: {e}") from e

    # Enumeration order is up to the OS; sort for reproducible progress output and error reports
    return sorted(p for p in entries if p.is_file() and not p.name.startswith("."))


def sort_posts(posts: Iterable[Post]) -> list[Post]:
    """Most recent first. The date fields are zero-padded text, so they compare correctly as strings."""
    return sorted(posts, key=lambda p: p.sort_key, reverse=True)


def _load_post(path: Path, converter: MarkdownConverter) -> Post:
    print(f"Loading {path.name}")
    return Post.from_file(path, converter=converter)


def _load_serially(paths: list[Path], converter: MarkdownConverter, collect_errors: bool) -> list[Post]:
    posts = []
    errors = []
    for path in paths:
        try:
            posts.append(_load_post(path, converter))
        except PostboxError as e:
            if not collect_errors:
                raise
            errors.append(e)
    if errors:
        raise PostLoadError(errors)
    return posts


def _load_in_parallel(
    paths: list[Path], converter: MarkdownConverter, collect_errors: bool, workers: int
) -> list[Post]:
    with ThreadPoolExecutor(max_workers=workers) as executor:
        futures = [executor.submit(_load_post, path, converter) for path in paths]
        if not collect_errors:
            done, _ = wait(futures, return_when=FIRST_EXCEPTION)
            for future in futures:
                if future in done and (error := future.exception()):
                    # Stop whatever hasn't started yet, then surface the failure
                    executor.shutdown(wait=True, cancel_futures=True)
                    raise error
            return [f.result() for f in futures]

        posts = []
        errors = []
        for future in futures:
            try:
                posts.append(future.result())
            except PostboxError as e:
                errors.append(e)
    if errors:
        raise PostLoadError(errors)
    return posts


def load_posts(
    posts_dir: Path,
    workers: int = 1,
    collect_errors: bool = False,
    converter: MarkdownConverter = markdown_to_html,
) -> list[Post]:
    """Load every post in `posts_dir`, most recent first.

    By default the first broken post aborts the load. With `collect_errors`, every post is attempted
    and a single PostLoadError describing all the failures is raised at the end.
    """
    paths = iter_post_paths(posts_dir)
    if workers > 1 and len(paths) > 1:
        posts = _load_in_parallel(paths, converter, collect_errors, workers)
    else:
        posts = _load_serially(paths, converter, collect_errors)
    return sort_posts(posts)


def _write_post(posts_dir: Path, name: str, title: str, author: str = "Author", body: str = "hello") -> Path:
    path = posts_dir / name
    path.write_text(f"---\ntitle: {title}\nauthor: {author}\n---\n\n{body}")
    return path


class TestPostLoader:
    def test_most_recent_first(self, tmp_path: Path):
        _write_post(tmp_path, "2021-05-01-first.md", "First")
        _write_post(tmp_path, "2021-06-10-second.md", "Second")
        _write_post(tmp_path, "2020-12-31-oldest.md", "Oldest")
        posts = load_posts(tmp_path)
        assert [p.title for p in posts] == ["Second", "First", "Oldest"]
        assert posts[0].contents == "<p>hello</p>"

    def test_sort_ignores_input_order(self):
        def make(year: str, month: str, day: str, filename: str) -> Post:
            return Post(filename=filename, title=filename, author="A", year=year, month=month, day=day, contents="")

        posts = [
            make("2021", "01", "02", "b"),
            make("2022", "01", "01", "a"),
            make("2021", "01", "02", "c"),
            make("2021", "01", "01", "z"),
        ]
        expected = ["a", "c", "b", "z"]
        assert [p.filename for p in sort_posts(posts)] == expected
        assert [p.filename for p in sort_posts(reversed(posts))] == expected

    def test_skips_directories_and_dotfiles(self, tmp_path: Path):
        _write_post(tmp_path, "2021-05-01-first.md", "First")
        (tmp_path / ".DS_Store").write_bytes(b"\0\0")
        (tmp_path / "drafts").mkdir()
        assert [p.title for p in load_posts(tmp_path)] == ["First"]

    def test_fail_fast(self, tmp_path: Path):
        _write_post(tmp_path, "2021-05-01-first.md", "First")
        (tmp_path / "notes.md").write_text("---\ntitle: T\nauthor: A\n---\n\nBODY")
        with pytest.raises(FilenameError):
            load_posts(tmp_path)

    def test_collect_errors(self, tmp_path: Path):
        _write_post(tmp_path, "2021-05-01-first.md", "First")
        (tmp_path / "notes.md").write_text("---\ntitle: T\nauthor: A\n---\n\nBODY")
        (tmp_path / "2021-05-02-second.md").write_text("---\ntitle: T\n---\n\nBODY")
        with pytest.raises(PostLoadError) as e:
            load_posts(tmp_path, collect_errors=True)
        assert [type(err) for err in e.value.errors] == [HeaderSchemaError, FilenameError]
        assert "notes.md" in str(e.value)
        assert "2021-05-02-second.md" in str(e.value)

    def test_parallel(self, tmp_path: Path):
        for day in range(1, 21):
            _write_post(tmp_path, f"2021-05-{day:02d}-post-{day}.md", f"Post {day}")
        posts = load_posts(tmp_path, workers=4)
        assert [p.title for p in posts] == [f"Post {day}" for day in range(20, 0, -1)]

    def test_parallel_fail_fast(self, tmp_path: Path):
        for day in range(1, 6):
            _write_post(tmp_path, f"2021-05-{day:02d}-post.md", f"Post {day}")
        (tmp_path / "2021-05-06-broken.md").write_text("no header here")
        with pytest.raises(PostboxError):
            load_posts(tmp_path, workers=3)

    def test_parallel_collect_errors(self, tmp_path: Path):
        _write_post(tmp_path, "2021-05-01-first.md", "First")
        (tmp_path / "a.md").write_text("")
        (tmp_path / "b.md").write_text("")
        with pytest.raises(PostLoadError) as e:
            load_posts(tmp_path, workers=2, collect_errors=True)
        assert len(e.value.errors) == 2

    def test_missing_directory(self, tmp_path: Path):
        with pytest.raises(PostReadError):
            load_posts(tmp_path / "nope")
