import shutil
import tempfile
from concurrent.futures import ThreadPoolExecutor, as_completed
from pathlib import Path
from typing import Any, Optional, TextIO

import jinja2
import pytest

from postbox.config import SiteConfig
from postbox.env import BUNDLED_TEMPLATES_DIR, DEFAULT_TITLE, INDEX_TEMPLATE, POST_TEMPLATE, TEMPLATE_SUFFIX
from postbox.errors import RenderError, TemplateError
from postbox.loader import load_posts
from postbox.post import Post

TemplateName = str
TemplateContext = dict[str, Any]


class TemplateRegistry:
    """Every `*.html` file in the templates directory, registered under its stem."""

    def __init__(self, templates_dir: Optional[Path] = None, strict: bool = True) -> None:
        self.templates_dir = templates_dir or BUNDLED_TEMPLATES_DIR
        try:
            entries = sorted(self.templates_dir.iterdir())
        except OSError as e:
            raise TemplateError(self.templates_dir.as_posix(), f"could not read the templates directory: {e}") from e
        self.templates: dict[TemplateName, str] = {
            p.stem: p.name for p in entries if p.is_file() and p.suffix == TEMPLATE_SUFFIX
        }
        self.env = jinja2.Environment(
            loader=jinja2.FileSystemLoader(self.templates_dir),
            # Refuse to render when the context lacks a field the template references
            undefined=jinja2.StrictUndefined if strict else jinja2.Undefined,
            autoescape=jinja2.select_autoescape([TEMPLATE_SUFFIX.lstrip(".")]),
            keep_trailing_newline=True,
        )

    def render_to(self, name: TemplateName, context: TemplateContext, fp: TextIO) -> None:
        if name not in self.templates:
            available = ", ".join(self.templates) or "none"
            raise TemplateError(name, f"not found in {self.templates_dir} (available: {available})")
        try:
            self.env.get_template(self.templates[name]).stream(context).dump(fp)
        except jinja2.TemplateSyntaxError as e:
            raise TemplateError(name, f"syntax error in {e.name or e.filename} line {e.lineno}: {e.message}") from e
        except jinja2.TemplateNotFound as e:
            raise TemplateError(name, f"could not find {e.name}") from e
        except jinja2.TemplateError as e:
            # Undefined names under strict mode land here too
            raise TemplateError(name, e.message or str(e)) from e
        except (TypeError, ValueError) as e:
            # Raised from inside the template, e.g. by a filter given the wrong type
            raise TemplateError(name, f"{type(e).__name__}: {e}") from e


class SiteRenderer:
    def __init__(
        self,
        posts: list[Post],
        out_dir: Path,
        templates: TemplateRegistry,
        title: str = DEFAULT_TITLE,
        workers: int = 1,
    ) -> None:
        self.posts = posts
        self.out_dir = out_dir
        self.templates = templates
        self.title = title
        self.workers = workers

    def render(self, atomic: bool = False) -> None:
        if atomic:
            self.render_staged()
            return

        try:
            self.out_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise RenderError(f"Failed to create output directory {self.out_dir}: {e}") from e
        self.render_index()
        self.render_posts()

    def render_index(self) -> None:
        context = {
            "title": self.title,
            "posts": self.posts,
        }
        self.render_template(Path("index.html"), INDEX_TEMPLATE, context)

    def render_post(self, post: Post) -> None:
        context = {
            "title": self.title,
            "post": post,
        }
        self.render_template(Path(post.url), POST_TEMPLATE, context)

    def render_posts(self) -> None:
        if self.workers <= 1 or len(self.posts) <= 1:
            for post in self.posts:
                self.render_post(post)
            return

        # Every page has its own path, so the writes never contend
        with ThreadPoolExecutor(max_workers=self.workers) as executor:
            futures = [executor.submit(self.render_post, post) for post in self.posts]
            for future in as_completed(futures):
                if error := future.exception():
                    executor.shutdown(wait=True, cancel_futures=True)
                    raise error

    def render_template(self, relative_path: Path, template: TemplateName, context: TemplateContext) -> None:
        out_file = self.out_dir / relative_path
        print(f"Rendering {relative_path.as_posix()}")
        try:
            # Posts sharing a date share a directory; creating it again is a no-op
            out_file.parent.mkdir(parents=True, exist_ok=True)
            with out_file.open("w", encoding="utf-8") as f:
                self.templates.render_to(template, context, f)
        except OSError as e:
            raise RenderError(f"Failed to write {out_file}: {e}") from e

    def render_staged(self) -> None:
        """Render into a sibling directory and swap it in only once every page rendered.

        The whole output directory is replaced, so anything not produced by the renderer is dropped.
        """
        parent = self.out_dir.parent
        try:
            parent.mkdir(parents=True, exist_ok=True)
            staging = Path(tempfile.mkdtemp(prefix=f".{self.out_dir.name}-", dir=parent))
            staging.chmod(0o755)
        except OSError as e:
            raise RenderError(f"Failed to create a staging directory next to {self.out_dir}: {e}") from e

        try:
            SiteRenderer(self.posts, staging, self.templates, self.title, self.workers).render()
        except Exception:
            shutil.rmtree(staging, ignore_errors=True)
            raise

        previous = staging.with_name(f"{staging.name}.old")
        try:
            if self.out_dir.exists():
                self.out_dir.rename(previous)
            staging.rename(self.out_dir)
        except OSError as e:
            # Put the previous site back before giving up
            if previous.exists() and not self.out_dir.exists():
                previous.rename(self.out_dir)
            shutil.rmtree(staging, ignore_errors=True)
            raise RenderError(f"Failed to move the rendered site into {self.out_dir}: {e}") from e
        shutil.rmtree(previous, ignore_errors=True)


def build_site(config: SiteConfig) -> list[Post]:
    templates = TemplateRegistry(config.templates_dir, strict=config.strict)
    posts = load_posts(config.posts_dir, workers=config.workers, collect_errors=config.collect_errors)
    renderer = SiteRenderer(posts, config.out_dir, templates, title=config.title, workers=config.workers)
    renderer.render(atomic=config.atomic)
    print(f"Rendered {len(posts)} post(s) to {config.out_dir}")
    return posts


def _write_post(posts_dir: Path, name: str, title: str, body: str = "hello") -> None:
    posts_dir.mkdir(parents=True, exist_ok=True)
    (posts_dir / name).write_text(f"---\ntitle: {title}\nauthor: Someone\n---\n\n{body}")


def _read_tree(root: Path) -> dict[str, bytes]:
    return {p.relative_to(root).as_posix(): p.read_bytes() for p in sorted(root.rglob("*")) if p.is_file()}


class TestSiteRenderer:
    @pytest.fixture
    def site(self, tmp_path: Path) -> SiteConfig:
        _write_post(tmp_path / "posts", "2021-05-01-first.md", "First post")
        _write_post(tmp_path / "posts", "2021-06-10-second.md", "Second post")
        templates = tmp_path / "templates"
        templates.mkdir()
        (templates / "index.html").write_text(
            "{{ title }}\n{% for post in posts %}{{ post.title }} {{ post.url }}\n{% endfor %}"
        )
        (templates / "post.html").write_text("{{ title }}: {{ post.title }} by {{ post.author }}\n{{ post.contents | safe }}")
        return SiteConfig(
            title="Test Blog",
            posts_dir=tmp_path / "posts",
            templates_dir=templates,
            out_dir=tmp_path / "site",
        )

    def test_end_to_end(self, site: SiteConfig):
        posts = build_site(site)
        assert [p.title for p in posts] == ["Second post", "First post"]

        index = (site.out_dir / "index.html").read_text()
        assert index == (
            "Test Blog\n"
            "Second post 2021/06/10/second.html\n"
            "First post 2021/05/01/first.html\n"
        )
        first = site.out_dir / "2021" / "05" / "01" / "first.html"
        assert first.read_text() == "Test Blog: First post by Someone\n<p>hello</p>"
        assert (site.out_dir / "2021" / "06" / "10" / "second.html").is_file()

    def test_idempotent(self, site: SiteConfig):
        build_site(site)
        first_run = _read_tree(site.out_dir)
        build_site(site)
        assert _read_tree(site.out_dir) == first_run

    def test_shared_date_directory(self, site: SiteConfig):
        _write_post(site.posts_dir, "2021-05-01-another.md", "Another")
        build_site(site)
        assert sorted(p.name for p in (site.out_dir / "2021" / "05" / "01").iterdir()) == ["another.html", "first.html"]

    def test_parallel_render(self, site: SiteConfig):
        for day in range(1, 11):
            _write_post(site.posts_dir, f"2022-01-{day:02d}-day.md", f"Day {day}")
        build_site(site.model_copy(update={"workers": 4}))
        assert len(list((site.out_dir / "2022" / "01").iterdir())) == 10

    def test_strict_undefined(self, site: SiteConfig):
        (site.templates_dir / "post.html").write_text("{{ post.subtitle }}")
        with pytest.raises(TemplateError) as e:
            build_site(site)
        assert e.value.template == "post"
        assert "subtitle" in str(e.value)

    def test_lenient_undefined(self, site: SiteConfig):
        (site.templates_dir / "post.html").write_text("[{{ post.subtitle }}]")
        build_site(site.model_copy(update={"strict": False}))
        assert (site.out_dir / "2021" / "05" / "01" / "first.html").read_text() == "[]"

    def test_missing_template(self, site: SiteConfig):
        (site.templates_dir / "post.html").unlink()
        with pytest.raises(TemplateError) as e:
            build_site(site)
        assert "available: index" in str(e.value)

    def test_template_syntax_error(self, site: SiteConfig):
        (site.templates_dir / "index.html").write_text("{% for post in posts %}")
        with pytest.raises(TemplateError):
            build_site(site)

    def test_template_runtime_error(self, site: SiteConfig):
        (site.templates_dir / "post.html").write_text("{{ post.title + 1 }}")
        with pytest.raises(TemplateError) as e:
            build_site(site)
        assert e.value.template == "post"
        assert "TypeError" in str(e.value)

    def test_staged_render_keeps_previous_output_on_failure(self, site: SiteConfig):
        build_site(site)
        before = _read_tree(site.out_dir)

        (site.templates_dir / "post.html").write_text("{{ post.missing }}")
        with pytest.raises(TemplateError):
            build_site(site.model_copy(update={"atomic": True}))
        assert _read_tree(site.out_dir) == before
        assert [p.name for p in site.out_dir.parent.iterdir() if p.name.startswith(".site")] == []

    def test_staged_render_restores_output_when_the_swap_fails(
        self, site: SiteConfig, monkeypatch: pytest.MonkeyPatch
    ):
        atomic = site.model_copy(update={"atomic": True})
        build_site(atomic)
        before = _read_tree(site.out_dir)

        real_rename = Path.rename

        def rename(self: Path, target: Path) -> Path:
            # Only the staging directory moving into place fails
            if Path(target) == site.out_dir and not self.name.endswith(".old"):
                raise OSError("No space left on device")
            return real_rename(self, target)

        monkeypatch.setattr(Path, "rename", rename)
        with pytest.raises(RenderError):
            build_site(atomic)
        assert _read_tree(site.out_dir) == before
        assert [p.name for p in site.out_dir.parent.iterdir() if p.name.startswith(".site")] == []

    def test_staged_render_replaces_output(self, site: SiteConfig):
        site.out_dir.mkdir()
        (site.out_dir / "stale.html").write_text("stale")
        build_site(site.model_copy(update={"atomic": True}))
        assert not (site.out_dir / "stale.html").exists()
        assert (site.out_dir / "index.html").is_file()
        assert (site.out_dir / "2021" / "06" / "10" / "second.html").is_file()

    def test_bundled_templates(self, site: SiteConfig):
        build_site(site.model_copy(update={"templates_dir": None}))
        index = (site.out_dir / "index.html").read_text()
        assert '<a href="2021/06/10/second.html">Second post</a>' in index
        assert index.index("Second post") < index.index("First post")
        page = (site.out_dir / "2021" / "05" / "01" / "first.html").read_text()
        assert "<p>hello</p>" in page
        assert '<a href="../../../index.html">Test Blog</a>' in page
