from pathlib import Path
from typing import Any, Optional, Self

import pytest
import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from postbox.env import CONFIG_FILENAME, DEFAULT_OUTPUT_DIR, DEFAULT_POSTS_DIR, DEFAULT_TITLE
from postbox.errors import ConfigError


class SiteConfig(BaseModel):
    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    # Passed to every template as `title`
    title: str = Field(default=DEFAULT_TITLE)
    posts_dir: Path = Field(default=DEFAULT_POSTS_DIR, alias="posts")
    # None means the templates shipped with postbox
    templates_dir: Optional[Path] = Field(default=None, alias="templates")
    out_dir: Path = Field(default=DEFAULT_OUTPUT_DIR, alias="output")
    workers: int = Field(default=1, ge=1)
    # Report every broken post instead of stopping at the first one
    collect_errors: bool = Field(default=False, alias="collect-errors")
    # Render into a staging directory and swap it in on success
    atomic: bool = Field(default=False)
    strict: bool = Field(default=True)

    def __str__(self) -> str:
        return (
            f"SiteConfig(title={self.title!r}, posts={self.posts_dir}, templates={self.templates_dir}, "
            f"output={self.out_dir}, workers={self.workers})"
        )

    def relative_to(self, base: Path) -> Self:
        """Resolve relative directories against `base`, the directory holding the config file."""
        return self.model_copy(
            update={
                "posts_dir": base / self.posts_dir,
                "templates_dir": base / self.templates_dir if self.templates_dir else None,
                "out_dir": base / self.out_dir,
            }
        )

    def with_overrides(self, **overrides: Any) -> Self:
        # Options left unset on the command line keep the configured value
        return self.model_copy(update={k: v for k, v in overrides.items() if v is not None})


def load_config(path: Optional[Path] = None) -> SiteConfig:
    if path is None:
        path = Path(CONFIG_FILENAME)
        if not path.exists():
            return SiteConfig()

    try:
        raw_config = yaml.load(path.read_text(encoding="utf-8"), Loader=yaml.SafeLoader)
    except (OSError, UnicodeDecodeError) as e:
        raise ConfigError(f"Failed to read config file {path}: {e}") from e
    except yaml.YAMLError as e:
        raise ConfigError(f"Config file {path} is not valid YAML: {e}") from e

    if raw_config is None:
        raw_config = {}
    if not isinstance(raw_config, dict):
        raise ConfigError(f"Config file {path} must contain key/value pairs")

    try:
        config = SiteConfig.model_validate(raw_config)
    except ValidationError as e:
        raise ConfigError(f"Invalid config file {path}:\n{e}") from e
    return config.relative_to(path.parent)


class TestConfig:
    def test_defaults(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch):
        monkeypatch.chdir(tmp_path)
        config = load_config()
        assert config == SiteConfig()
        assert config.posts_dir == Path("posts")
        assert config.out_dir == Path("site")
        assert config.templates_dir is None
        assert config.strict

    def test_load(self, tmp_path: Path):
        path = tmp_path / "postbox.yaml"
        path.write_text(
            "title: My Blog\n"
            "posts: content/posts\n"
            "templates: theme\n"
            "output: public\n"
            "workers: 4\n"
            "collect-errors: true\n"
            "atomic: true\n"
        )
        config = load_config(path)
        assert config.title == "My Blog"
        assert config.posts_dir == tmp_path / "content" / "posts"
        assert config.templates_dir == tmp_path / "theme"
        assert config.out_dir == tmp_path / "public"
        assert config.workers == 4
        assert config.collect_errors
        assert config.atomic
        assert config.strict

    def test_absolute_paths_are_kept(self, tmp_path: Path):
        path = tmp_path / "postbox.yaml"
        path.write_text(f"output: {tmp_path / 'elsewhere'}\n")
        assert load_config(path).out_dir == tmp_path / "elsewhere"

    def test_unknown_key(self, tmp_path: Path):
        path = tmp_path / "postbox.yaml"
        path.write_text("title: My Blog\ntheme: dark\n")
        with pytest.raises(ConfigError) as e:
            load_config(path)
        assert "theme" in str(e.value)

    def test_invalid_workers(self, tmp_path: Path):
        path = tmp_path / "postbox.yaml"
        path.write_text("workers: 0\n")
        with pytest.raises(ConfigError):
            load_config(path)

    def test_missing_explicit_file(self, tmp_path: Path):
        with pytest.raises(ConfigError):
            load_config(tmp_path / "nope.yaml")

    def test_overrides(self):
        config = SiteConfig(title="From file", workers=2)
        overridden = config.with_overrides(title="From flag", workers=None, out_dir=Path("out"))
        assert overridden.title == "From flag"
        assert overridden.workers == 2
        assert overridden.out_dir == Path("out")
