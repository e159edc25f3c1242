"""
Config file discovery and loading for member-sync.

member-sync reads its ``downstream``, ``sync`` and ``logging`` sections from
YAML.  Up to three files contribute, highest precedence first:

1. the file named by ``MEMBER_SYNC_CONFIG``,
2. ``.member_sync/config.yml`` next to the state database (CWD),
3. ``~/.config/member_sync/config.yml`` for per-operator defaults.

A higher file replaces whole top-level sections of a lower one, so a project
can point ``sync.database`` elsewhere without restating the profile store
credentials kept in the global file.

Profile store secrets stay out of the files: ``${PROFILE_STORE_PASSWORD}``
(or ``${VAR:-fallback}``) is expanded from the environment after merging.
A shared ``downstream`` block can be pulled in with
``downstream: !include profile-store.yml``.

Usage:
    from member_sync.config_loader import load_hierarchical_config

    raw = load_hierarchical_config()
"""

import logging
import os
import re
from pathlib import Path
from typing import Any

import yaml

logger = logging.getLogger(__name__)

CONFIG_ENV_VAR = "MEMBER_SYNC_CONFIG"
PROJECT_CONFIG = Path(".member_sync") / "config.yml"
GLOBAL_CONFIG = Path(".config") / "member_sync" / "config.yml"

# ---------------------------------------------------------------------------
# Secrets from the environment
# ---------------------------------------------------------------------------

# ${PROFILE_STORE_PASSWORD} or ${PROFILE_STORE_URL:-https://...}
_ENV_REF = re.compile(r"\$\{([^}:]+?)(?::-(.*?))?\}")


def interpolate_env_vars(value: str) -> str:
    """Expand ``${VAR}`` and ``${VAR:-fallback}`` references in *value*.

    An unset or empty variable expands to its fallback, or to ``""`` when
    the reference has none.  An unterminated ``${`` is kept as written.
    """

    def _expand(match: re.Match) -> str:
        name, fallback = match.groups()
        return os.environ.get(name) or (fallback or "")

    return _ENV_REF.sub(_expand, value)


def _expand_secrets(node: Any) -> Any:
    if isinstance(node, str):
        return interpolate_env_vars(node)
    if isinstance(node, dict):
        return {key: _expand_secrets(val) for key, val in node.items()}
    if isinstance(node, list):
        return [_expand_secrets(item) for item in node]
    return node


# ---------------------------------------------------------------------------
# Shared sections via !include
# ---------------------------------------------------------------------------


class IncludeLoader(yaml.SafeLoader):
    """SafeLoader that understands ``!include <file>``.

    Each instance carries the chain of files being loaded, so an include
    cycle is reported instead of recursing forever.
    """

    chain: tuple[Path, ...] = ()


def _include(loader: IncludeLoader, node: yaml.ScalarNode) -> Any:
    """Load the file named by an ``!include`` tag.

    Relative names resolve against the directory of the including file.
    """
    here = Path(loader.name).resolve()
    target = (here.parent / loader.construct_scalar(node)).resolve()

    if target in loader.chain:
        cycle = " -> ".join(str(p) for p in (*loader.chain, target))
        raise ValueError(f"Circular include detected: {cycle}")
    if not target.exists():
        raise FileNotFoundError(
            f"Include file not found: {target} (referenced from {here})"
        )
    return load_config_file(target, chain=loader.chain)


IncludeLoader.add_constructor("!include", _include)


def load_config_file(path: Path, chain: tuple[Path, ...] = ()) -> Any:
    """Parse one config file, following its ``!include`` tags.

    Secrets are not expanded here; that happens once, after merging.
    """
    path = path.resolve()
    with open(path, "r", encoding="utf-8") as fh:
        loader = IncludeLoader(fh)
        loader.chain = (*chain, path)
        try:
            return loader.get_single_data()
        finally:
            loader.dispose()


# ---------------------------------------------------------------------------
# Discovery
# ---------------------------------------------------------------------------


def discover_config_files() -> list[Path]:
    """Return the config files present on disk, highest precedence first."""
    candidates: list[Path] = []

    explicit = os.environ.get(CONFIG_ENV_VAR)
    if explicit:
        candidates.append(Path(explicit).expanduser().resolve())
    candidates.append(Path.cwd() / PROJECT_CONFIG)
    candidates.append(Path.home() / GLOBAL_CONFIG)

    return [p for p in candidates if p.exists()]


def resolve_config_path() -> Path:
    """Config file in effect: the highest existing one, else the project path.

    Nothing is created; see ``ensure_config()``.
    """
    existing = discover_config_files()
    return existing[0] if existing else Path.cwd() / PROJECT_CONFIG


# ---------------------------------------------------------------------------
# Starter file (``member-sync init-config``)
# ---------------------------------------------------------------------------

_STARTER_CONFIG = """\
# member-sync configuration
#
# Profile store credentials can also be set via environment variables:
#   PROFILE_STORE_URL, PROFILE_STORE_USERNAME, PROFILE_STORE_PASSWORD
#
# downstream:
#   url: https://profiles.example.org/api
#   username: sync-bot
#   password: ${PROFILE_STORE_PASSWORD}
#   timeout: 60
#   max_retries: 3
#   per_page: 100
#
# sync:
#   database: .member_sync/sync.db
#   grace_period_ms: 5000
#   detection_start: "2020-01-01T00:00:00Z"
#
# logging:
#   level: INFO
#   file: null
"""


def ensure_config(target: Path | None = None) -> Path:
    """Return the config file in effect, writing the starter file if none.

    Args:
        target: Where to write the starter file.  Defaults to
            ``resolve_config_path()``.
    """
    existing = discover_config_files()
    if existing:
        logger.debug("Config file already exists: %s", existing[0])
        return existing[0]

    path = target or resolve_config_path()
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(_STARTER_CONFIG, encoding="utf-8")
    logger.info("Created starter config: %s", path)
    return path


# ---------------------------------------------------------------------------
# Merge
# ---------------------------------------------------------------------------


def load_hierarchical_config() -> dict[str, Any]:
    """Merge every discovered config file into one raw section mapping.

    Lower-precedence files load first; each later file replaces whole
    top-level sections.  Returns ``{}`` when no file exists, which gives
    the schema defaults plus whatever the environment provides.
    """
    paths = discover_config_files()
    if not paths:
        logger.debug("No config files found, using defaults")
        return {}

    merged: dict[str, Any] = {}
    for path in reversed(paths):
        logger.debug("Loading config: %s", path)
        try:
            data = load_config_file(path)
        except Exception:
            logger.exception("Failed to load config file %s", path)
            raise

        if isinstance(data, dict):
            merged.update(data)
        elif data is not None:
            logger.warning(
                "Config file %s has non-dict root (%s), skipping",
                path,
                type(data).__name__,
            )

    return _expand_secrets(merged)
