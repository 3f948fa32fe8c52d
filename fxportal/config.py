"""Configuration loader for the portal client.

Supports YAML format with environment variable interpolation.
"""
import os
from dataclasses import dataclass, field
from decimal import Decimal
from pathlib import Path
from typing import Optional

import yaml


def interpolate_env(text: str) -> str:
    """Replace ${VAR_NAME} references with values from the environment.

    Unknown variables are left in place.
    """
    for key, value in os.environ.items():
        text = text.replace(f"${{{key}}}", value)
    return text


@dataclass
class SupabaseConfig:
    """Hosted auth/database provider settings."""
    url: str = "http://localhost:54321"
    anon_key: str = ""
    timeout: int = 10
    max_retries: int = 5
    max_backoff_seconds: float = 30.0
    session_file: Optional[str] = "~/.supabase_session.json"  # None disables persistence


@dataclass
class SessionConfig:
    """Session synchronization and profile settings."""
    session_timeout: float = 5.0  # bound on the start-up session fetch
    avatar_bucket: str = "avatars"
    max_avatar_bytes: int = 5 * 1024 * 1024
    starting_balance: Decimal = Decimal('10000.00')


@dataclass
class SiteConfig:
    """Public site settings used in emailed links."""
    site_url: str = "http://localhost:3000"


@dataclass
class LoggingConfig:
    log_file: Optional[str] = "fxportal.log"
    log_level: str = "INFO"


@dataclass
class PortalConfig:
    """Complete client configuration."""
    supabase: SupabaseConfig = field(default_factory=SupabaseConfig)
    session: SessionConfig = field(default_factory=SessionConfig)
    site: SiteConfig = field(default_factory=SiteConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    @classmethod
    def from_yaml(cls, config_path: str) -> "PortalConfig":
        """Load configuration from YAML file with env var interpolation.

        Args:
            config_path: Path to YAML config file

        Returns:
            PortalConfig instance

        Example YAML:
            supabase:
              url: "${SUPABASE_URL}"
              anon_key: "${SUPABASE_ANON_KEY}"
            session:
              session_timeout: 5
              starting_balance: 10000.00
            site:
              site_url: https://fx.example.com
        """
        config_file = Path(config_path)
        if not config_file.exists():
            raise FileNotFoundError(f"Config file not found: {config_path}")

        with config_file.open("r") as f:
            raw = f.read()

        data = yaml.safe_load(interpolate_env(raw)) or {}

        supabase = SupabaseConfig(**data.get("supabase", {}))
        session = SessionConfig(**{
            k: Decimal(str(v)) if k == "starting_balance" else v
            for k, v in data.get("session", {}).items()
        })
        site = SiteConfig(**data.get("site", {}))
        logging_cfg = LoggingConfig(**data.get("logging", {}))

        return cls(supabase=supabase, session=session, site=site, logging=logging_cfg)

    def to_yaml(self, output_path: str) -> None:
        """Save configuration to YAML file (the anon key is written as-is)."""
        data = {
            "supabase": {
                "url": self.supabase.url,
                "anon_key": self.supabase.anon_key,
                "timeout": self.supabase.timeout,
                "max_retries": self.supabase.max_retries,
                "max_backoff_seconds": self.supabase.max_backoff_seconds,
                "session_file": self.supabase.session_file,
            },
            "session": {
                "session_timeout": self.session.session_timeout,
                "avatar_bucket": self.session.avatar_bucket,
                "max_avatar_bytes": self.session.max_avatar_bytes,
                "starting_balance": str(self.session.starting_balance),
            },
            "site": {
                "site_url": self.site.site_url,
            },
            "logging": {
                "log_file": self.logging.log_file,
                "log_level": self.logging.log_level,
            },
        }

        output_file = Path(output_path)
        output_file.parent.mkdir(parents=True, exist_ok=True)
        with output_file.open("w") as f:
            yaml.dump(data, f, default_flow_style=False, sort_keys=False)
