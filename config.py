#!/usr/bin/env python3
"""
Configuration management for the EPUB digest builder.

This module centralizes all configuration loading, validation, and management.
It handles environment variables, the feeds.yaml run inputs, and provides a
clean interface for accessing configuration values throughout the application.
"""

from os import environ, path, access, R_OK
from typing import Dict, Any, List
from logging import getLogger, basicConfig, StreamHandler, INFO, DEBUG, WARNING, ERROR
import sys
import yaml
from dotenv import load_dotenv

from models import DomainOverride, FeedSpec, ReadItLaterItem, RunOptions

DEFAULT_USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/124.0.0.0 Safari/537.36"
)


def _setup_global_logger():
    """Setup a single global logger for the entire application.

    Environment Variables:
        LOG_LEVEL: Set log level (DEBUG, INFO, WARNING, ERROR) - defaults to INFO
        LOG_TIMESTAMPS: Enable/disable timestamps in logs (true/false) - defaults to true

    The logger outputs to stdout with line buffering for real-time logging.
    All modules should use get_logger() to create module-specific loggers that inherit this configuration.
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

    sys.stdout.reconfigure(line_buffering=True)
    sys.stderr.reconfigure(line_buffering=True)

    # Keep noisy libraries quiet unless explicitly asked for
    for name in ("PIL", "azure", "azure.monitor.opentelemetry.exporter"):
        getLogger(name).setLevel(max(level, WARNING))

    return getLogger("FeedEpub")


def get_logger(name: str):
    """Get a module-specific logger with the unified configuration.

    This function creates a logger with a name in the format "FeedEpub.{name}".

    Args:
        name: The logger name (e.g., "fetcher", "images", "epub_writer")

    Returns:
        A logger instance with the unified configuration
    """
    return getLogger(f"FeedEpub.{name}")


# Create single global logger instance
logger = _setup_global_logger()


class Config:
    """Configuration manager for the digest builder.

    Values are loaded from, in order:
    1. Environment variables
    2. .env file (if present)
    3. YAML secrets file (if SECRETS_FILE environment variable is set)
    4. feeds.yaml (feeds, domain overrides, read-it-later queue, settings)

    Explicit environment variables win over the ``settings:`` block of
    feeds.yaml, which in turn wins over built-in defaults.
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

    def _validate_positive_float(self, env_var: str, default: float, min_val: float = 0.1) -> float:
        """Validate and parse a positive float environment variable."""
        try:
            value = float(environ.get(env_var, str(default)))
            if value < min_val:
                logger.warning(f"{env_var} must be at least {min_val}, using default {default}")
                return default
            return value
        except (ValueError, TypeError):
            logger.warning(f"Invalid {env_var} value, using default {default}")
            return default

    def _validate_color(self, value: str) -> str:
        color = (value or "white").strip().lower()
        if color not in ("white", "black"):
            logger.warning(f"cover_date_color must be 'white' or 'black', got '{value}'; using white")
            return "white"
        return color

    def _validate_and_set_config(self):
        """Validate and set all configuration values."""
        self.PRODUCT_NAME = environ.get("PRODUCT_NAME", "FeedEpub")
        self.USER_AGENT = environ.get("USER_AGENT", DEFAULT_USER_AGENT)

        # HTTP request configuration
        self.HTTP_TIMEOUT = self._validate_positive_int("HTTP_TIMEOUT", 45, 1)
        self.IMAGE_TIMEOUT_SECONDS = self._validate_positive_float("IMAGE_TIMEOUT_SECONDS", 45.0, 1.0)

        # Article window and landing-page concurrency
        self.FETCH_SINCE_HOURS = self._validate_positive_int("FETCH_SINCE_HOURS", 24, 1)
        self.READ_IT_LATER_CONCURRENCY = self._validate_positive_int("READ_IT_LATER_CONCURRENCY", 4, 1)

        # Cover
        self.ADD_DATE_IN_COVER = environ.get("ADD_DATE_IN_COVER", "false").lower() == "true"
        self.COVER_DATE_COLOR = self._validate_color(environ.get("COVER_DATE_COLOR", "white"))

        # File paths
        base_dir = path.dirname(path.abspath(__file__))
        self.BASE_DIR = base_dir
        # DATA_PATH: base folder for generated artifacts (defaults to repo root)
        self.DATA_PATH = environ.get("DATA_PATH", base_dir)
        # OUTPUT_DIR: where finished books are written (defaults to $DATA_PATH/epubs)
        self.OUTPUT_DIR = environ.get("OUTPUT_DIR", path.join(self.DATA_PATH, "epubs"))
        self.FEEDS_CONFIG_PATH = environ.get("FEEDS_CONFIG_PATH", path.join(base_dir, "feeds.yaml"))
        self.TEMPLATES_DIR = path.join(base_dir, "templates")
        self.COVER_PATH = environ.get("COVER_PATH", path.join(base_dir, "static", "cover.jpg"))
        self.COVER_FONT_PATH = environ.get(
            "COVER_FONT_PATH", path.join(base_dir, "static", "fonts", "DejaVuSans.ttf")
        )

    def _load_secrets_file(self):
        """Load environment variable overrides from a YAML secrets file.

        If SECRETS_FILE is set, loads the specified YAML file and sets
        environment variables from it. Both a top-level mapping and a mapping
        nested under ``environment`` are accepted.
        """
        secrets_file_path = environ.get("SECRETS_FILE")
        if not secrets_file_path:
            logger.debug("SECRETS_FILE not set; relying on environment/.env")
            return

        secrets_config = self._safe_read_yaml(secrets_file_path, 2 * 1024 * 1024, 'secrets')
        if not secrets_config:
            return
        if not isinstance(secrets_config, dict):
            logger.warning(f"Secrets file {secrets_file_path} must be a YAML mapping at the top level")
            return

        env_vars = secrets_config.get('environment') if isinstance(secrets_config.get('environment'), dict) else secrets_config

        secrets_loaded = 0
        for key, value in env_vars.items():
            if isinstance(key, str) and value is not None:
                environ[key] = str(value)
                secrets_loaded += 1
            else:
                logger.warning(f"Skipping invalid environment variable in secrets file: {key}")
        logger.info(f"Successfully loaded {secrets_loaded} environment variables from secrets file {secrets_file_path}")

    def _safe_read_yaml(self, file_path: str, max_size: int, kind: str) -> Any | None:
        """Safely read a YAML file with consistent validation.

        Args:
            file_path: Path to the YAML file
            max_size: Maximum allowed file size in bytes
            kind: Short label for logging context (e.g. 'secrets', 'feeds')

        Returns:
            Parsed YAML (mapping/list/primitive) or None on failure.
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

    def _load_feed_sources(self) -> None:
        """Populate FEEDS, DOMAIN_OVERRIDES and READ_IT_LATER from feeds.yaml.

        Invalid entries are skipped with a warning; any failure results in
        empty collections rather than an exception.
        """
        self.FEEDS: List[FeedSpec] = []
        self.DOMAIN_OVERRIDES: Dict[str, DomainOverride] = {}
        self.READ_IT_LATER: List[ReadItLaterItem] = []

        feeds_path = self.FEEDS_CONFIG_PATH
        config_data = self._safe_read_yaml(feeds_path, 5 * 1024 * 1024, 'feeds')
        if not isinstance(config_data, dict):
            return

        feeds_section = config_data.get('feeds') or []
        if isinstance(feeds_section, dict):
            # Keyed form: {slug: {url: ..., ...}}; the slug doubles as default name
            feeds_section = [
                dict(cfg, name=cfg.get('name') or slug) if isinstance(cfg, dict) else cfg
                for slug, cfg in feeds_section.items()
            ]
        for index, feed_cfg in enumerate(feeds_section):
            try:
                self.FEEDS.append(FeedSpec.from_mapping(feed_cfg))
            except (ValueError, TypeError) as e:
                logger.warning(f"Skipping invalid feed configuration #{index} in {feeds_path}: {e}")

        overrides_section = config_data.get('domain_overrides') or {}
        if isinstance(overrides_section, dict):
            for host, override_cfg in overrides_section.items():
                try:
                    self.DOMAIN_OVERRIDES[str(host).strip().lower()] = DomainOverride.from_mapping(override_cfg)
                except (ValueError, TypeError) as e:
                    logger.warning(f"Skipping invalid domain override for '{host}': {e}")
        else:
            logger.warning(f"domain_overrides in {feeds_path} must be a mapping of host -> extractor")

        for value in config_data.get('read_it_later') or []:
            try:
                self.READ_IT_LATER.append(ReadItLaterItem.from_value(value))
            except ValueError as e:
                logger.warning(f"Skipping read-it-later entry: {e}")

        settings_section = config_data.get('settings')
        if isinstance(settings_section, dict):
            self._apply_yaml_settings(settings_section)

        logger.info(
            "Loaded %d feeds, %d domain overrides, %d read-it-later items from %s",
            len(self.FEEDS),
            len(self.DOMAIN_OVERRIDES),
            len(self.READ_IT_LATER),
            feeds_path,
        )

    def _apply_yaml_settings(self, settings: Dict[str, Any]) -> None:
        """Apply feeds.yaml ``settings:`` values where no env var was given."""
        numeric = {
            'fetch_since_hours': ('FETCH_SINCE_HOURS', int, 1),
            'image_timeout_seconds': ('IMAGE_TIMEOUT_SECONDS', float, 1.0),
            'http_timeout': ('HTTP_TIMEOUT', int, 1),
            'read_it_later_concurrency': ('READ_IT_LATER_CONCURRENCY', int, 1),
        }
        for key, (attr, cast, min_val) in numeric.items():
            if key not in settings or attr in environ:
                continue
            raw = settings[key]
            try:
                value = cast(str(raw).strip())
            except (TypeError, ValueError):
                logger.warning(f"Invalid {key} value '{raw}' in feeds.yaml; keeping {getattr(self, attr)}")
                continue
            if value < min_val:
                logger.warning(f"{key} must be >= {min_val}; keeping {getattr(self, attr)} (got {raw})")
                continue
            setattr(self, attr, value)

        if 'add_date_in_cover' in settings and 'ADD_DATE_IN_COVER' not in environ:
            self.ADD_DATE_IN_COVER = str(settings['add_date_in_cover']).strip().lower() in ('true', '1', 'yes')
        if 'cover_date_color' in settings and 'COVER_DATE_COLOR' not in environ:
            self.COVER_DATE_COLOR = self._validate_color(str(settings['cover_date_color']))

    def run_options(self) -> RunOptions:
        """Snapshot the settings a single pipeline run needs."""
        return RunOptions(
            fetch_since_hours=self.FETCH_SINCE_HOURS,
            image_timeout_seconds=self.IMAGE_TIMEOUT_SECONDS,
            http_timeout_seconds=self.HTTP_TIMEOUT,
            user_agent=self.USER_AGENT,
            product_name=self.PRODUCT_NAME,
            cover_path=self.COVER_PATH,
            cover_font_path=self.COVER_FONT_PATH,
            add_date_in_cover=self.ADD_DATE_IN_COVER,
            cover_date_color=self.COVER_DATE_COLOR,
            read_it_later_concurrency=self.READ_IT_LATER_CONCURRENCY,
        )

    def get_config_summary(self) -> Dict[str, Any]:
        """Get a summary of current configuration for logging/debugging."""
        return {
            "output_dir": self.OUTPUT_DIR,
            "feeds_config_path": self.FEEDS_CONFIG_PATH,
            "feed_count": len(self.FEEDS),
            "domain_override_count": len(self.DOMAIN_OVERRIDES),
            "read_it_later_count": len(self.READ_IT_LATER),
            "fetch_since_hours": self.FETCH_SINCE_HOURS,
            "http_timeout": self.HTTP_TIMEOUT,
            "image_timeout_seconds": self.IMAGE_TIMEOUT_SECONDS,
            "cover_path": self.COVER_PATH,
            "cover_present": path.isfile(self.COVER_PATH),
            "add_date_in_cover": self.ADD_DATE_IN_COVER,
            "cover_date_color": self.COVER_DATE_COLOR,
            "secrets_file_configured": bool(environ.get("SECRETS_FILE")),
        }


# Global configuration instance
config = Config()
