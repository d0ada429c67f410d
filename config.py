#!/usr/bin/env python3
"""
Configuration management for the Feed Reader.

This module centralizes configuration loading, validation, and logging setup.
Scalar settings come from environment variables (optionally seeded from a
.env file and a YAML secrets file); the feed list and polling defaults come
from feeds.yaml. Environment values win over feeds.yaml values.
"""

from os import environ, path, access, R_OK
from typing import Dict, Any, Optional
from logging import getLogger, basicConfig, StreamHandler, INFO, DEBUG, WARNING, ERROR
import sys
import yaml
from dotenv import load_dotenv

DEFAULT_USER_AGENT = (
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_8_5) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/31.0.1650.63 Safari/537.36"
)
DEFAULT_ACCEPT = "text/html,application/xhtml+xml"


def _setup_global_logger():
    """Setup a single global logger for the entire application.

    Environment Variables:
        LOG_LEVEL: Set log level (DEBUG, INFO, WARNING, ERROR) - defaults to INFO
        LOG_TIMESTAMPS: Enable/disable timestamps in logs (true/false) - defaults to true

    All modules should use get_logger() to create module-specific loggers that
    inherit this configuration.
    """
    level_str = environ.get("LOG_LEVEL", "INFO").upper()
    level_map = {
        "DEBUG": DEBUG,
        "INFO": INFO,
        "WARNING": WARNING,
        "ERROR": ERROR
    }
    level = level_map.get(level_str, INFO)

    show_timestamps = environ.get("LOG_TIMESTAMPS", "true").lower() != "false"
    if show_timestamps:
        log_format = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    else:
        log_format = '%(name)s - %(levelname)s - %(message)s'

    basicConfig(
        level=level,
        format=log_format,
        handlers=[StreamHandler(sys.stdout)],
        force=True  # Force reconfiguration if already configured
    )

    # aiohttp access/client chatter is rarely useful at INFO
    getLogger("aiohttp").setLevel(max(level, WARNING))

    return getLogger("FeedReader")


def get_logger(name: str):
    """Get a module-specific logger with the unified configuration.

    Args:
        name: The logger name (e.g., "fetcher", "scheduler", "queues")

    Returns:
        A logger named "FeedReader.{name}"
    """
    return getLogger(f"FeedReader.{name}")


logger = _setup_global_logger()


def _parse_bool(value: Any) -> Optional[bool]:
    """Interpret YAML/env style booleans; None when the value is not recognised."""
    if isinstance(value, bool):
        return value
    if value is None:
        return None
    text = str(value).strip().lower()
    if text in ("1", "true", "yes", "on"):
        return True
    if text in ("0", "false", "no", "off"):
        return False
    return None


class Config:
    """Configuration manager for the Feed Reader.

    Loading order:
    1. Environment variables
    2. .env file (if present)
    3. YAML secrets file (if SECRETS_FILE is set)
    4. feeds.yaml (feed list, interval, queue and read-tracking defaults)

    Example feeds.yaml:
    ```yaml
    interval: 900            # seconds; 0 disables scheduling
    enable_queues: false
    enable_read_tracking: true
    feeds:
      news: https://news.example.com/rss
      blog:
        url: https://blog.example.com/atom.xml
        headers:
          Accept-Language: en
    ```
    """

    def __init__(self):
        """Initialize configuration with environment variables and validation."""
        self._load_environment()
        self._validate_and_set_config()
        self._load_feed_sources()

    def _load_environment(self):
        """Load environment variables from .env file and secrets file if present."""
        dotenv_path = path.join(path.dirname(path.abspath(__file__)), '.env')
        if path.exists(dotenv_path):
            load_dotenv(dotenv_path)
            logger.info(f"Loaded environment variables from {dotenv_path}")

        self._load_secrets_file()

    def _validate_positive_int(self, env_var: str, default: int, min_val: int = 1) -> int:
        """Validate and parse a positive integer environment variable."""
        try:
            value = int(environ.get(env_var, str(default)))
            if value < min_val:
                logger.warning(f"{env_var} must be at least {min_val}, using default {default}")
                return default
            return value
        except (ValueError, TypeError):
            logger.warning(f"Invalid {env_var} value, using default {default}")
            return default

    def _validate_and_set_config(self):
        """Validate and set all environment-driven configuration values."""
        base_dir = path.dirname(path.abspath(__file__))

        self.DATABASE_PATH = environ.get("DATABASE_PATH", "feedreader.db")
        self.USER_AGENT = environ.get("USER_AGENT", DEFAULT_USER_AGENT)
        self.ACCEPT_HEADER = DEFAULT_ACCEPT

        # Task queue
        self.QUEUE_CONCURRENCY = self._validate_positive_int("QUEUE_CONCURRENCY", 4, 1)

        # 0 means no timeout; a hung response stalls only that feed
        self.HTTP_TIMEOUT = self._validate_positive_int("HTTP_TIMEOUT", 0, 0)

        self.SCHEMA_FILE_PATH = path.join(base_dir, "schema.sql")
        self.SCHEMA_FILE_SIZE_LIMIT_MB = 1
        self.FEEDS_CONFIG_PATH = environ.get("FEEDS_CONFIG_PATH", path.join(base_dir, "feeds.yaml"))

    def _load_secrets_file(self):
        """Load environment variable overrides from a YAML secrets file.

        Both a top-level mapping and a mapping nested under `environment`
        are accepted.
        """
        secrets_file_path = environ.get("SECRETS_FILE")
        if not secrets_file_path:
            logger.debug("SECRETS_FILE not set; relying on environment/.env")
            return

        secrets_config = self._safe_read_yaml(secrets_file_path, 2 * 1024 * 1024, 'secrets')
        if not isinstance(secrets_config, dict):
            if secrets_config is not None:
                logger.warning(f"Secrets file {secrets_file_path} must be a YAML mapping at the top level")
            return

        env_vars = secrets_config
        if isinstance(secrets_config.get('environment'), dict):
            env_vars = secrets_config['environment']

        secrets_loaded = 0
        for key, value in env_vars.items():
            if isinstance(key, str) and value is not None:
                environ[key] = str(value)
                secrets_loaded += 1
            else:
                logger.warning(f"Skipping invalid environment variable in secrets file: {key}")
        logger.info(f"Loaded {secrets_loaded} environment variables from secrets file {secrets_file_path}")

    def _safe_read_yaml(self, file_path: str, max_size: int, kind: str) -> Any | None:
        """Safely read a YAML file with consistent validation.

        Args:
            file_path: Path to the YAML file
            max_size: Maximum allowed file size in bytes
            kind: Short label for logging context (e.g. 'secrets', 'feeds')

        Returns:
            Parsed YAML or None on failure.
        """
        try:
            if not path.isfile(file_path):
                logger.warning(f"{kind.capitalize()} file not found at {file_path}")
                return None
            if not access(file_path, R_OK):
                logger.error(f"No read permission for {kind} file at {file_path}")
                return None
            size = path.getsize(file_path)
            if size > max_size:
                logger.error(f"{kind.capitalize()} file too large: {size} bytes (limit: {max_size} bytes)")
                return None
            with open(file_path, 'r') as f:
                data = yaml.safe_load(f)
            if not data:
                logger.warning(f"Empty or invalid YAML in {kind} file {file_path}")
                return None
            return data
        except yaml.YAMLError as e:
            logger.error(f"Error parsing YAML in {kind} file {file_path}: {e}")
        except OSError as e:
            logger.error(f"Error loading {kind} file {file_path}: {e}")
        return None

    def _resolve_interval(self, yaml_value: Any) -> int:
        raw = environ.get("FEEDREADER_INTERVAL")
        source = "FEEDREADER_INTERVAL"
        if raw is None:
            raw, source = yaml_value, "interval"
        if raw is None:
            return 0
        try:
            value = int(str(raw).strip())
        except ValueError:
            logger.warning(f"Invalid {source} value '{raw}'; scheduling disabled")
            return 0
        if value < 0:
            logger.warning(f"{source} must be >= 0 (got {value}); scheduling disabled")
            return 0
        return value

    def _resolve_flag(self, env_var: str, yaml_value: Any, default: bool) -> bool:
        raw = environ.get(env_var)
        value = _parse_bool(raw) if raw is not None else _parse_bool(yaml_value)
        if value is None:
            if raw is not None or yaml_value is not None:
                logger.warning(f"Invalid boolean for {env_var}; using default {default}")
            return default
        return value

    def _load_feed_sources(self) -> None:
        """Populate feed sources and polling flags from feeds.yaml.

        Any failure results in an empty feed mapping and default flags.
        """
        feeds_path = self.FEEDS_CONFIG_PATH
        config_data = self._safe_read_yaml(feeds_path, 5 * 1024 * 1024, 'feeds')
        if not isinstance(config_data, dict):
            config_data = {}

        self.INTERVAL_SECONDS = self._resolve_interval(config_data.get('interval'))
        self.ENABLE_QUEUES = self._resolve_flag("FEEDREADER_ENABLE_QUEUES", config_data.get('enable_queues'), False)
        self.ENABLE_READ_TRACKING = self._resolve_flag(
            "FEEDREADER_ENABLE_READ_TRACKING", config_data.get('enable_read_tracking'), True
        )

        feeds_section = config_data.get('feeds')
        new_sources: Dict[str, Dict[str, Any]] = {}
        if isinstance(feeds_section, dict):
            for ident, feed_cfg in feeds_section.items():
                if isinstance(feed_cfg, str) and feed_cfg.strip():
                    new_sources[str(ident)] = {'url': feed_cfg.strip()}
                elif isinstance(feed_cfg, dict) and feed_cfg.get('url'):
                    new_sources[str(ident)] = dict(feed_cfg)
                else:
                    logger.warning(f"Skipping invalid feed configuration for '{ident}': {feed_cfg}")
        elif feeds_section is not None:
            logger.warning(f"'feeds' in {feeds_path} must be a mapping of ident to URL")

        self.FEED_SOURCES = new_sources
        logger.info(f"Loaded {len(self.FEED_SOURCES)} feeds from {feeds_path}")

    def get_config_summary(self) -> Dict[str, Any]:
        """Get a summary of current configuration for logging/debugging."""
        return {
            "database_path": self.DATABASE_PATH,
            "interval_seconds": self.INTERVAL_SECONDS,
            "enable_queues": self.ENABLE_QUEUES,
            "enable_read_tracking": self.ENABLE_READ_TRACKING,
            "queue_concurrency": self.QUEUE_CONCURRENCY,
            "http_timeout": self.HTTP_TIMEOUT,
            "feed_count": len(self.FEED_SOURCES),
            "secrets_file_configured": bool(environ.get("SECRETS_FILE")),
        }


# Global configuration instance
config = Config()
