"""Buildpack detection.

Detection is a prioritized list of pure predicates over the top-level
file listing of a checked-out repository. The first match wins.
"""

from typing import Callable, Iterable, List, Optional, Sequence, Tuple

BuildpackRule = Tuple[str, Callable[[frozenset], bool]]


def _any_of(*names: str) -> Callable[[frozenset], bool]:
    return lambda files: any(name in files for name in names)


BUILDPACK_RULES: List[BuildpackRule] = [
    ("heroku/nodejs", _any_of("package.json")),
    ("heroku/python", _any_of("requirements.txt", "Pipfile")),
    ("heroku/ruby", _any_of("Gemfile")),
    ("heroku/php", _any_of("composer.json", "index.php")),
    ("heroku/go", _any_of("go.mod")),
    ("heroku/java", _any_of("pom.xml", "build.gradle")),
]

# Dependency manifests per buildpack, lockfiles first
MANIFESTS = {
    "heroku/nodejs": ("package-lock.json", "yarn.lock", "pnpm-lock.yaml", "package.json"),
    "heroku/python": ("Pipfile.lock", "poetry.lock", "requirements.txt", "Pipfile"),
    "heroku/ruby": ("Gemfile.lock", "Gemfile"),
    "heroku/php": ("composer.lock", "composer.json"),
    "heroku/go": ("go.sum", "go.mod"),
    "heroku/java": ("pom.xml", "build.gradle"),
}

ALL_MANIFESTS: Sequence[str] = tuple(
    dict.fromkeys(name for names in MANIFESTS.values() for name in names)
)


def detect_buildpack(
    files: Iterable[str],
    default: str,
    rules: Optional[List[BuildpackRule]] = None,
) -> str:
    listing = frozenset(files)
    for buildpack, matches in rules or BUILDPACK_RULES:
        if matches(listing):
            return buildpack
    return default


def manifest_files(buildpack: str, files: Iterable[str]) -> List[str]:
    """Manifests present in the listing that bear on this buildpack's cache."""
    listing = frozenset(files)
    candidates = MANIFESTS.get(buildpack, ALL_MANIFESTS)
    return [name for name in candidates if name in listing]


def buildpack_url(buildpack: str) -> str:
    """
    >>> buildpack_url("heroku/python")
    'https://github.com/heroku/heroku-buildpack-python'
    """
    if buildpack.startswith("http://") or buildpack.startswith("https://"):
        return buildpack
    if buildpack.startswith("heroku/"):
        name = buildpack.split("/", 1)[1]
        return f"https://github.com/heroku/heroku-buildpack-{name}"
    return buildpack
