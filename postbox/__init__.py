from postbox.config import SiteConfig, load_config
from postbox.loader import load_posts
from postbox.post import Post, decode_filename
from postbox.render import SiteRenderer, TemplateRegistry, build_site

__all__ = [
    "Post",
    "SiteConfig",
    "SiteRenderer",
    "TemplateRegistry",
    "build_site",
    "decode_filename",
    "load_config",
    "load_posts",
]
