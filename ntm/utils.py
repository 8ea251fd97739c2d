"""Utility functions for NTM."""

import os
import re
from pathlib import Path

from instrukt_ai_logging import get_logger

logger = get_logger(__name__)

_NON_ALNUM = re.compile(r"[^a-zA-Z0-9]+")


def expand_env_vars(config: object) -> object:
    """Recursively expand environment variables in config.

    Replaces ${VAR} patterns with environment variable values.

    Args:
        config: Configuration object (dict, list, str, or primitive)

    Returns:
        Configuration with all ${VAR} patterns replaced
    """
    if isinstance(config, dict):
        return {k: expand_env_vars(v) for k, v in config.items()}  # type: ignore[misc]
    if isinstance(config, list):
        return [expand_env_vars(item) for item in config]
    if isinstance(config, str):

        def replace_env_var(match: re.Match[str]) -> str:
            return os.getenv(match.group(1), match.group(0))

        return re.sub(r"\$\{([^}]+)\}", replace_env_var, config)
    return config


def user_config_dir() -> Path:
    """Return the per-user configuration directory (XDG_CONFIG_HOME or ~/.config)."""
    xdg = os.getenv("XDG_CONFIG_HOME")
    if xdg:
        return Path(xdg)
    home = os.getenv("HOME") or str(Path.home())
    return Path(home) / ".config"


def ntm_config_dir() -> Path:
    return user_config_dir() / "ntm"


def sanitize_session_name(name: str) -> str:
    """Convert a session name into a lowercase path component.

    Non-alphanumeric runs become underscores. A name with no usable
    characters is hex-encoded so it still maps to a stable directory.
    """
    sanitized = _NON_ALNUM.sub("_", name).strip("_").lower()
    if not sanitized:
        return "hex_" + name.encode("utf-8").hex()
    return sanitized


def project_slug(project_path: str) -> str:
    """Derive a slug from a project directory path.

    The slug is the lowercased basename with non-alphanumeric runs collapsed
    to dashes; empty when the path has no usable basename.
    """
    cleaned = project_path.rstrip("/\\")
    if not cleaned:
        return ""
    base = os.path.basename(cleaned)
    return _NON_ALNUM.sub("-", base).strip("-").lower()


def atomic_write_file(path: Path, data: bytes, mode: int = 0o600) -> None:
    """Write bytes atomically: temp file in the same directory, fsync, rename.

    Args:
        path: Destination file.
        data: File contents.
        mode: Permission bits applied to the temp file before the rename.
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = path.with_name(f".{path.name}.{os.getpid()}.tmp")
    try:
        with open(tmp_path, "wb") as tmp:
            tmp.write(data)
            tmp.flush()
            os.fsync(tmp.fileno())
        os.chmod(tmp_path, mode)
        os.replace(tmp_path, path)
    except Exception:
        if tmp_path.exists():
            tmp_path.unlink()
        raise


def truncate(text: str, limit: int, suffix: str = "...") -> str:
    """Cut text to at most `limit` characters, marking the cut with `suffix`."""
    if len(text) <= limit:
        return text
    return text[: max(0, limit - len(suffix))] + suffix
