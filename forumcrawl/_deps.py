"""Dependency check run by the CLI before it imports the crawler modules."""

import importlib.util
import sys

# (import_name, distribution_name)
REQUIRED = [
    ("httpx", "httpx"),
    ("bs4", "beautifulsoup4"),
    ("lxml", "lxml"),
    ("sqlalchemy", "SQLAlchemy"),
    ("tqdm", "tqdm"),
]

INSTALL_HINT = """\
forumcrawl is missing required packages: {missing}

  From the project directory:
    pip install -e .
  Or just the missing packages:
    pip install {missing_args}
"""


def missing_required() -> list[str]:
    """Distribution names of required packages that cannot be found."""
    return [dist for module, dist in REQUIRED if importlib.util.find_spec(module) is None]


def check_required() -> bool:
    missing = missing_required()
    if not missing:
        return True
    print(
        INSTALL_HINT.format(missing=", ".join(missing), missing_args=" ".join(missing)),
        file=sys.stderr,
    )
    sys.exit(1)
