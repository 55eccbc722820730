from dataclasses import dataclass, field
from pathlib import Path, PurePath
from typing import Callable, NamedTuple, Optional, Self

import markdown
import pytest

from postbox.errors import FilenameError, HeaderSchemaError, PostReadError
from postbox.header import extract_body, parse_header

FILENAME_DELIMITER = "-"

MarkdownConverter = Callable[[str], str]


class FilenameParts(NamedTuple):
    year: str
    month: str
    day: str
    slug: str


def decode_filename(name: str) -> FilenameParts:
    # The slug is allowed to contain dashes, so split off at most three date fields
    parts = name.split(FILENAME_DELIMITER, 3)
    if len(parts) != 4:
        raise FilenameError(name)
    return FilenameParts(*parts)


def markdown_to_html(text: str) -> str:
    return markdown.markdown(text)


def post_url(year: str, month: str, day: str, filename: str) -> str:
    return f"{year}/{month}/{day}/{filename}.html"


@dataclass(frozen=True)
class Post:
    filename: str
    title: str
    author: str
    year: str
    month: str
    day: str
    contents: str
    url: str = field(init=False)
    source: Optional[Path] = field(default=None, compare=False)

    def __post_init__(self) -> None:
        object.__setattr__(self, "url", post_url(self.year, self.month, self.day, self.filename))

    def __repr__(self) -> str:
        return f"Post(url={self.url}, title={self.title!r}, author={self.author!r})"

    @property
    def sort_key(self) -> tuple[str, str, str, str]:
        return self.year, self.month, self.day, self.filename

    @classmethod
    def from_file(cls, path: Path, converter: MarkdownConverter = markdown_to_html) -> Self:
        year, month, day, slug = decode_filename(path.name)

        try:
            text = path.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError) as e:
            raise PostReadError(f"Failed to read {path.as_posix()}: {e}") from e

        header, header_end = parse_header(text, source=path)
        contents = converter(extract_body(text, header_end))

        return cls(
            # Drop the extension, like the output page swaps it for .html
            filename=PurePath(slug).stem,
            title=header.title,
            author=header.author,
            year=year,
            month=month,
            day=day,
            contents=contents,
            source=path,
        )


class TestFilenameDecoder:
    def test_decode(self):
        assert decode_filename("2021-05-01-first.md") == FilenameParts("2021", "05", "01", "first.md")

    def test_slug_keeps_dashes(self):
        assert decode_filename("2019-1-09-a-post-with-dashes.md") == FilenameParts(
            "2019", "1", "09", "a-post-with-dashes.md"
        )

    def test_too_few_fields(self):
        for name in ["abc", "2020-01-02", "2020-01", ""]:
            with pytest.raises(FilenameError) as e:
                decode_filename(name)
            assert e.value.name == name


class TestPost:
    def test_url(self):
        for year, month, day, filename in [
            ("2021", "01", "02", "first"),
            ("2021", "1", "2", "second"),
            ("1999", "12", "31", "with-dashes"),
        ]:
            post = Post(
                filename=filename, title="T", author="A", year=year, month=month, day=day, contents="<p>x</p>"
            )
            assert post.url == f"{year}/{month}/{day}/{filename}.html"

    def test_url_is_not_an_argument(self):
        with pytest.raises(TypeError):
            Post(filename="x", title="T", author="A", year="2021", month="01", day="01", contents="", url="other")

    def test_from_file(self, tmp_path: Path):
        path = tmp_path / "2021-05-01-hello-world.md"
        path.write_text("---\ntitle: Hello\nauthor: Me\n---\n\n# Heading\n\nSome *text*.\n")
        post = Post.from_file(path)
        assert post.filename == "hello-world"
        assert post.title == "Hello"
        assert post.author == "Me"
        assert (post.year, post.month, post.day) == ("2021", "05", "01")
        assert post.url == "2021/05/01/hello-world.html"
        assert "<h1>Heading</h1>" in post.contents
        assert "<em>text</em>" in post.contents
        assert "title:" not in post.contents
        assert post.source == path

    def test_from_file_converter_sees_body_only(self, tmp_path: Path):
        path = tmp_path / "2021-05-01-x.md"
        path.write_text("---\ntitle: T\nauthor: A\n---\n\nBODY")
        seen = []

        def converter(text: str) -> str:
            seen.append(text)
            return text.lower()

        assert Post.from_file(path, converter=converter).contents == "body"
        assert seen == ["BODY"]

    def test_from_file_bad_header(self, tmp_path: Path):
        path = tmp_path / "2021-05-01-x.md"
        path.write_text("---\ntitle: T\n---\n\nBODY")
        with pytest.raises(HeaderSchemaError) as e:
            Post.from_file(path)
        assert e.value.source == path

    def test_from_file_not_utf8(self, tmp_path: Path):
        path = tmp_path / "2021-05-01-x.md"
        path.write_bytes(b"---\ntitle: \xff\nauthor: A\n---\n\nBODY")
        with pytest.raises(PostReadError):
            Post.from_file(path)
