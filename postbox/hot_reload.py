import time
from pathlib import Path

from watchdog.events import (
    EVENT_TYPE_CREATED,
    EVENT_TYPE_DELETED,
    EVENT_TYPE_MODIFIED,
    EVENT_TYPE_MOVED,
    DirModifiedEvent,
    FileClosedEvent,
    FileModifiedEvent,
    FileOpenedEvent,
    FileSystemEvent,
    FileSystemEventHandler,
)
from watchdog.observers import Observer

from postbox.config import SiteConfig
from postbox.env import BUNDLED_TEMPLATES_DIR
from postbox.errors import PostboxError
from postbox.render import build_site


# Opening or closing a file changes nothing, and a save already reports "modified"
REBUILD_EVENT_TYPES = {EVENT_TYPE_CREATED, EVENT_TYPE_DELETED, EVENT_TYPE_MODIFIED, EVENT_TYPE_MOVED}


class RebuildHandler(FileSystemEventHandler):
    def __init__(self, config: SiteConfig) -> None:
        super().__init__()
        self.config = config

    def on_any_event(self, event: FileSystemEvent) -> None:
        # Saving a file also touches its directory; one rebuild per save is enough
        if isinstance(event, DirModifiedEvent) or event.event_type not in REBUILD_EVENT_TYPES:
            return
        print(f"Rebuilding in response to {event.event_type} {event.src_path}...")
        try:
            build_site(self.config)
        except PostboxError as e:
            # Keep watching; the next save may fix it
            print(f"Failed to rebuild: {e}")


def watch(config: SiteConfig) -> None:
    build_site(config)

    event_handler = RebuildHandler(config)
    observer = Observer()
    observer.schedule(event_handler, config.posts_dir.as_posix(), recursive=False)
    observer.schedule(event_handler, (config.templates_dir or BUNDLED_TEMPLATES_DIR).as_posix(), recursive=True)
    observer.start()
    print(f"Watching {config.posts_dir} for changes, press Ctrl-C to stop")
    try:
        while True:
            time.sleep(1)
    except KeyboardInterrupt:
        observer.stop()
    observer.join()


class TestRebuildHandler:
    def _config(self, root: Path) -> SiteConfig:
        posts = root / "posts"
        posts.mkdir()
        (posts / "2021-05-01-first.md").write_text("---\ntitle: First\nauthor: A\n---\n\nhello")
        return SiteConfig(posts_dir=posts, out_dir=root / "site")

    def test_rebuilds_on_change(self, tmp_path: Path):
        config = self._config(tmp_path)
        handler = RebuildHandler(config)
        post = config.posts_dir / "2021-05-02-second.md"
        post.write_text("---\ntitle: Second\nauthor: A\n---\n\nhello")
        handler.on_any_event(FileModifiedEvent(post.as_posix()))
        assert (config.out_dir / "2021" / "05" / "02" / "second.html").is_file()

    def test_ignores_directory_events(self, tmp_path: Path):
        config = self._config(tmp_path)
        RebuildHandler(config).on_any_event(DirModifiedEvent(config.posts_dir.as_posix()))
        assert not config.out_dir.exists()

    def test_ignores_open_and_close(self, tmp_path: Path):
        config = self._config(tmp_path)
        handler = RebuildHandler(config)
        post = (config.posts_dir / "2021-05-01-first.md").as_posix()
        handler.on_any_event(FileOpenedEvent(post))
        handler.on_any_event(FileClosedEvent(post))
        assert not config.out_dir.exists()

    def test_keeps_watching_after_a_failure(self, tmp_path: Path, capsys):
        config = self._config(tmp_path)
        broken = config.posts_dir / "broken.md"
        broken.write_text("")
        RebuildHandler(config).on_any_event(FileModifiedEvent(broken.as_posix()))
        assert "Failed to rebuild" in capsys.readouterr().out
