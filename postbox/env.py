from pathlib import Path

PACKAGE_ROOT = Path(__file__).parent
BUNDLED_TEMPLATES_DIR = PACKAGE_ROOT / "templates"

CONFIG_FILENAME = "postbox.yaml"
DEFAULT_POSTS_DIR = Path("posts")
DEFAULT_OUTPUT_DIR = Path("site")
DEFAULT_TITLE = "Blog"

TEMPLATE_SUFFIX = ".html"
INDEX_TEMPLATE = "index"
POST_TEMPLATE = "post"
