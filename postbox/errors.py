from pathlib import Path
from typing import Optional, Sequence


class PostboxError(Exception):
    pass


class ConfigError(PostboxError, ValueError):
    pass


class FilenameError(PostboxError, ValueError):
    def __init__(self, name: str) -> None:
        self.name = name
        super().__init__(f'Post filename "{name}" does not look like YYYY-MM-DD-slug.ext')


class HeaderError(PostboxError, ValueError):
    def __init__(self, message: str, source: Optional[Path] = None, offset: Optional[int] = None) -> None:
        self.source = source
        self.offset = offset
        location = source.as_posix() if source else "<text>"
        if offset is not None:
            location += f" (offset {offset})"
        super().__init__(f"{location}: {message}")


class MissingHeaderError(HeaderError):
    pass


class UnterminatedHeaderError(HeaderError):
    pass


class HeaderSchemaError(HeaderError):
    def __init__(
        self,
        missing: Sequence[str],
        unexpected: Sequence[str],
        source: Optional[Path] = None,
        offset: Optional[int] = None,
        detail: str = "",
    ) -> None:
        self.missing = list(missing)
        self.unexpected = list(unexpected)
        problems = []
        if self.missing:
            problems.append(f"missing field(s) {', '.join(self.missing)}")
        if self.unexpected:
            problems.append(f"unexpected field(s) {', '.join(self.unexpected)}")
        if detail:
            problems.append(detail)
        super().__init__(f"header must contain exactly title and author: {'; '.join(problems)}", source, offset)


class PostReadError(PostboxError, OSError):
    pass


class PostLoadError(PostboxError):
    """Raised once a collect-all load is finished, carrying every per-file failure."""

    def __init__(self, errors: Sequence[PostboxError]) -> None:
        self.errors = list(errors)
        lines = "\n".join(f"  {e}" for e in self.errors)
        super().__init__(f"Failed to load {len(self.errors)} post(s):\n{lines}")


class TemplateError(PostboxError):
    def __init__(self, template: str, message: str) -> None:
        self.template = template
        super().__init__(f'Template "{template}": {message}')


class RenderError(PostboxError, OSError):
    pass
