"""Provider credentials and the persisted login session.

Credentials (project URL and anon key), in priority order:
1. Environment variables: SUPABASE_URL, SUPABASE_ANON_KEY
2. JSON file: explicit path, SUPABASE_CONFIG_PATH, or ~/.supabase_config.json

Paths may contain ``~`` and ``${VAR}`` references, as in the YAML config.

The anon key is a public client key; row-level security on the provider side
is what actually protects profile data. The session file is not public: it
holds a refresh token and is written readable by the owner only.
"""
import json
import os
from pathlib import Path
from typing import NamedTuple, Optional

from .config import interpolate_env
from .logging_setup import logger
from .models import Session

DEFAULT_CONFIG_PATH = "~/.supabase_config.json"


class SupabaseCredentials(NamedTuple):
    url: str
    anon_key: str


def resolve_path(path: str) -> Path:
    """Expand ``${VAR}`` references and ``~`` in a user-supplied path."""
    return Path(interpolate_env(path)).expanduser()


def _write_private_json(path: Path, data: dict) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    with path.open("w") as f:
        json.dump(data, f, indent=2)
    try:
        path.chmod(0o600)
    except OSError:
        pass  # chmod unsupported on this filesystem


def load_credentials(config_path: Optional[str] = None) -> SupabaseCredentials:
    """Load provider credentials from env or config file.

    Values found in the environment win; a missing one is taken from the file.

    Raises:
        ValueError: If credentials are not found, incomplete or unreadable
    """
    url = os.getenv("SUPABASE_URL")
    anon_key = os.getenv("SUPABASE_ANON_KEY")
    if url and anon_key:
        return SupabaseCredentials(url=url, anon_key=anon_key)

    config_file = resolve_path(config_path or os.getenv("SUPABASE_CONFIG_PATH") or DEFAULT_CONFIG_PATH)
    if config_file.exists():
        try:
            cfg = json.loads(config_file.read_text())
        except (OSError, ValueError) as e:
            raise ValueError(f"Failed to load config from {config_file}: {e}")
        url = url or cfg.get("url")
        anon_key = anon_key or cfg.get("anon_key")

    if not url or not anon_key:
        raise ValueError(
            "Missing Supabase credentials. Provide via:\n"
            "  - Environment: SUPABASE_URL, SUPABASE_ANON_KEY\n"
            f"  - Config file: {config_file}\n"
            "  - SUPABASE_CONFIG_PATH env var to override config location"
        )

    return SupabaseCredentials(url=url, anon_key=anon_key)


def save_config(config_path: str, url: str, anon_key: str) -> None:
    """Save credentials to a config file readable only by the owner."""
    _write_private_json(resolve_path(config_path), {"url": url, "anon_key": anon_key})


def load_session(session_path: str) -> Optional[Session]:
    """Return the session saved at session_path, or None.

    An unreadable or malformed file counts as signed out; the caller will
    simply have to log in again.
    """
    path = resolve_path(session_path)
    if not path.exists():
        return None
    try:
        return Session.from_dict(json.loads(path.read_text()))
    except (OSError, ValueError, KeyError, TypeError) as e:
        logger.warning(f"Ignoring unreadable session file | path={path} error={e!r}")
        return None


def save_session(session_path: str, session: Session) -> None:
    _write_private_json(resolve_path(session_path), session.to_dict())


def clear_session(session_path: str) -> None:
    path = resolve_path(session_path)
    if path.exists():
        path.unlink()
