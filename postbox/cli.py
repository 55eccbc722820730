import argparse
import sys
from pathlib import Path
from typing import Optional

import pytest

from postbox.config import SiteConfig, load_config
from postbox.errors import PostboxError
from postbox.render import build_site


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="postbox", description="Render a directory of dated markdown posts.")
    subparsers = parser.add_subparsers(dest="command", required=True)

    site_options = argparse.ArgumentParser(add_help=False)
    site_options.add_argument("--config", type=Path, help="Site config file (default: ./postbox.yaml if present)")
    site_options.add_argument("--posts", type=Path, help="Directory of YYYY-MM-DD-slug.md posts")
    site_options.add_argument("--templates", type=Path, help="Directory holding index.html and post.html")
    site_options.add_argument("--output", type=Path, help="Directory the site is rendered into")
    site_options.add_argument("--title", help="Site title passed to the templates")
    site_options.add_argument("--workers", type=int, help="Load and render posts on this many threads")
    site_options.add_argument(
        "--collect-errors",
        action="store_true",
        default=None,
        help="Report every broken post instead of stopping at the first one",
    )
    site_options.add_argument(
        "--atomic",
        action="store_true",
        default=None,
        help="Render into a staging directory and replace the output directory only on success",
    )
    site_options.add_argument(
        "--no-strict",
        dest="strict",
        action="store_false",
        default=None,
        help="Render undefined template variables as empty strings",
    )

    subparsers.add_parser("build", parents=[site_options], help="Render the site once")
    subparsers.add_parser("watch", parents=[site_options], help="Render the site, then again on every change")
    return parser


def config_from_args(args: argparse.Namespace) -> SiteConfig:
    config = load_config(args.config)
    config = config.with_overrides(
        posts_dir=args.posts,
        templates_dir=args.templates,
        out_dir=args.output,
        title=args.title,
        workers=args.workers,
        collect_errors=args.collect_errors,
        atomic=args.atomic,
        strict=args.strict,
    )
    if config.workers < 1:
        raise PostboxError(f"--workers must be at least 1, got {config.workers}")
    return config


def main(argv: Optional[list[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    try:
        config = config_from_args(args)
        if args.command == "watch":
            # Only pull in watchdog when it's needed
            from postbox.hot_reload import watch

            watch(config)
        else:
            build_site(config)
    except PostboxError as e:
        print(f"error: {e}", file=sys.stderr)
        return 1
    return 0


def _write_site(root: Path) -> None:
    posts = root / "posts"
    posts.mkdir()
    (posts / "2021-05-01-first.md").write_text("---\ntitle: First\nauthor: A\n---\n\nhello")
    (posts / "2021-06-10-second.md").write_text("---\ntitle: Second\nauthor: B\n---\n\nhello")


class TestCli:
    def test_build(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch):
        _write_site(tmp_path)
        monkeypatch.chdir(tmp_path)
        assert main(["build", "--title", "CLI Blog"]) == 0
        index = (tmp_path / "site" / "index.html").read_text()
        assert "CLI Blog" in index
        assert "First" in index and "Second" in index
        assert (tmp_path / "site" / "2021" / "05" / "01" / "first.html").is_file()

    def test_flags_override_config(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch):
        _write_site(tmp_path)
        (tmp_path / "postbox.yaml").write_text("title: From file\noutput: public\n")
        monkeypatch.chdir(tmp_path)
        assert main(["build", "--output", str(tmp_path / "out")]) == 0
        assert "From file" in (tmp_path / "out" / "index.html").read_text()
        assert not (tmp_path / "public").exists()

    def test_broken_post_exit_status(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch, capsys):
        _write_site(tmp_path)
        (tmp_path / "posts" / "2021-07-01-broken.md").write_text("---\ntitle: Broken\n---\n\nhello")
        monkeypatch.chdir(tmp_path)
        assert main(["build"]) == 1
        err = capsys.readouterr().err
        assert err.startswith("error: ")
        assert "2021-07-01-broken.md" in err
        assert "author" in err

    def test_collect_errors(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch, capsys):
        _write_site(tmp_path)
        (tmp_path / "posts" / "bad-name.md").write_text("")
        (tmp_path / "posts" / "2021-07-01-broken.md").write_text("no header")
        monkeypatch.chdir(tmp_path)
        assert main(["build", "--collect-errors"]) == 1
        err = capsys.readouterr().err
        assert "Failed to load 2 post(s)" in err
        assert not (tmp_path / "site").exists()

    def test_invalid_workers(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch):
        monkeypatch.chdir(tmp_path)
        assert main(["build", "--workers", "0"]) == 1

    def test_requires_command(self):
        with pytest.raises(SystemExit):
            main([])
