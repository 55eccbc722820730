import re
from pathlib import Path
from typing import Optional

import pytest
import yaml
from pydantic import BaseModel, ConfigDict, ValidationError

from postbox.errors import HeaderError, HeaderSchemaError, MissingHeaderError, UnterminatedHeaderError

OPEN_MARKER = "---\n"
CLOSE_MARKER = "---"
# The closing marker must sit on its own line
CLOSE_MARKER_LINE = re.compile(r"^---[ \t]*\r?$", re.MULTILINE)
BLANK_LINES = re.compile(r"\A(?:[ \t]*\r?\n)*")


class PostHeader(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    title: str
    author: str


def find_header_end(text: str, source: Optional[Path] = None) -> int:
    """Returns the offset of the closing marker."""
    if not text.startswith(OPEN_MARKER):
        raise MissingHeaderError(f'expected the file to begin with "{OPEN_MARKER.strip()}"', source, 0)

    # Never match the opening marker itself
    match = CLOSE_MARKER_LINE.search(text, len(OPEN_MARKER))
    if not match:
        raise UnterminatedHeaderError(
            f'could not find the closing "{CLOSE_MARKER}" of the header', source, len(OPEN_MARKER)
        )
    return match.start()


def parse_header(text: str, source: Optional[Path] = None) -> tuple[PostHeader, int]:
    header_end = find_header_end(text, source)
    raw_header = text[len(OPEN_MARKER) : header_end]
    try:
        # Keep every scalar as written: no numbers, booleans or dates
        header_dict = yaml.load(raw_header, Loader=yaml.BaseLoader)
    except yaml.YAMLError as e:
        offset = len(OPEN_MARKER)
        mark = getattr(e, "problem_mark", None)
        if mark is not None:
            offset += mark.index
        raise HeaderError(f"header is not valid YAML: {e}", source, offset) from e

    if header_dict is None:
        header_dict = {}
    if not isinstance(header_dict, dict):
        raise HeaderSchemaError(
            [], [], source, len(OPEN_MARKER), detail=f"expected key/value pairs, found {type(header_dict).__name__}"
        )

    try:
        header = PostHeader.model_validate(header_dict)
    except ValidationError as e:
        missing = []
        unexpected = []
        other = []
        for error in e.errors():
            field_name = ".".join(str(part) for part in error["loc"])
            if error["type"] == "missing":
                missing.append(field_name)
            elif error["type"] == "extra_forbidden":
                unexpected.append(field_name)
            else:
                other.append(f"{field_name}: {error['msg']}")
        raise HeaderSchemaError(missing, unexpected, source, len(OPEN_MARKER), detail="; ".join(other)) from e

    return header, header_end


def extract_body(text: str, header_end: int) -> str:
    # Skip the closing marker and however many blank lines follow it
    after_marker = text[header_end + len(CLOSE_MARKER) :]
    return BLANK_LINES.sub("", after_marker, count=1)


class TestHeaderParser:
    def test_parse(self):
        text = "---\ntitle: T\nauthor: A\n---\n\nBODY"
        header, header_end = parse_header(text)
        assert header == PostHeader(title="T", author="A")
        assert header_end == 23
        assert extract_body(text, header_end) == "BODY"

    def test_body_blank_lines(self):
        assert extract_body("---\ntitle: T\nauthor: A\n---\nBODY", 23) == "BODY"
        assert extract_body("---\ntitle: T\nauthor: A\n---\n\n\n\nBODY\n", 23) == "BODY\n"
        assert extract_body("---\ntitle: T\nauthor: A\n---", 23) == ""
        # Indentation of the first body line is kept
        assert extract_body("---\ntitle: T\nauthor: A\n---\n\n    code\n", 23) == "    code\n"

    def test_closing_marker_not_the_opening_one(self):
        with pytest.raises(UnterminatedHeaderError) as e:
            parse_header("---\ntitle: T\nauthor: A\n\nBODY")
        assert e.value.offset == 4

    def test_dashes_inside_a_value(self):
        header, _ = parse_header("---\ntitle: before --- after\nauthor: A\n---\n\nBODY")
        assert header.title == "before --- after"

    def test_missing_opening_marker(self):
        with pytest.raises(MissingHeaderError):
            parse_header("title: T\nauthor: A\n---\n\nBODY")

    def test_third_field(self):
        with pytest.raises(HeaderSchemaError) as e:
            parse_header("---\ntitle: T\nauthor: A\ndate: 2021-01-01\n---\n\nBODY")
        assert e.value.unexpected == ["date"]
        assert e.value.missing == []

    def test_missing_author(self):
        with pytest.raises(HeaderSchemaError) as e:
            parse_header("---\ntitle: T\n---\n\nBODY", source=Path("posts/2021-01-01-x.md"))
        assert e.value.missing == ["author"]
        assert "posts/2021-01-01-x.md" in str(e.value)
        assert "author" in str(e.value)

    def test_not_a_mapping(self):
        with pytest.raises(HeaderSchemaError):
            parse_header("---\n- title\n- author\n---\n\nBODY")

    def test_invalid_yaml(self):
        with pytest.raises(HeaderError) as e:
            parse_header("---\ntitle: [T\nauthor: A\n---\n\nBODY")
        assert e.value.offset is not None and e.value.offset >= 4

    def test_scalars_are_kept_verbatim(self):
        for raw in ["2021", "1.10", "010", "No", "on", "2021-01-01"]:
            header, _ = parse_header(f"---\ntitle: {raw}\nauthor: {raw}\n---\n\nBODY")
            assert header.title == raw
            assert header.author == raw
