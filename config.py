#!/usr/bin/env python3
"""
Configuration for the channel digest.

Reads environment variables (optionally from .env or a YAML secrets file),
the channel list in channels.yaml, and turns them into the DigestSettings a
pipeline run is started with. Also owns process-wide logging setup.
"""

from os import environ, path, access, R_OK
from typing import Callable, Dict, Any, List, Optional, TypeVar
from logging import getLogger, basicConfig, StreamHandler, getLevelName, INFO, WARNING
import sys
import yaml
from dotenv import load_dotenv

from models import Channel, DigestSettings, DEFAULT_SYSTEM_PROMPT, DEFAULT_TEMPERATURE

LOG_FORMAT = '%(name)s - %(levelname)s - %(message)s'

Number = TypeVar("Number", int, float)


def _setup_global_logger():
    """Send every ChannelDigest.* logger to stdout, line buffered.

    LOG_LEVEL picks the level (DEBUG, INFO, WARNING, ERROR; INFO otherwise) and
    LOG_TIMESTAMPS=false drops the timestamp column, which is handy under
    journald or container runtimes that add their own.
    """
    # Child processes inherit unbuffered I/O
    environ["PYTHONUNBUFFERED"] = "1"

    level = getLevelName(environ.get("LOG_LEVEL", "INFO").upper())
    if not isinstance(level, int):
        level = INFO

    log_format = LOG_FORMAT
    if environ.get("LOG_TIMESTAMPS", "true").lower() != "false":
        log_format = '%(asctime)s - ' + LOG_FORMAT

    basicConfig(level=level, format=log_format, handlers=[StreamHandler(sys.stdout)], force=True)

    # Pytest replaces stdout with capture objects that lack reconfigure()
    for stream in (sys.stdout, sys.stderr):
        reconfigure = getattr(stream, "reconfigure", None)
        if callable(reconfigure):
            reconfigure(line_buffering=True)

    # The openai SDK logs every request at INFO through httpx
    for name in ("httpx", "openai"):
        getLogger(name).setLevel(max(level, WARNING))

    return getLogger("ChannelDigest")


def get_logger(name: str):
    """Logger for one module, e.g. get_logger("fetcher") -> ChannelDigest.fetcher."""
    return getLogger(f"ChannelDigest.{name}")


logger = _setup_global_logger()

# Discord caps the messages endpoint at 100 per page
MAX_PAGE_SIZE = 100


def _bare_host(endpoint: Optional[str]) -> Optional[str]:
    """Strip scheme and slashes so "https://x.openai.azure.com/" becomes "x.openai.azure.com"."""
    if not endpoint or not endpoint.strip():
        return None
    host = endpoint.strip()
    for scheme in ("https://", "http://"):
        if host.lower().startswith(scheme):
            host = host[len(scheme):]
            break
    return host.strip("/") or None


class Config:
    """Process-wide settings for the channel digest.

    Sources, later ones overriding earlier ones:
    1. the process environment
    2. a .env file next to this module (never overrides variables already set)
    3. the YAML mapping named by SECRETS_FILE, exported into the environment

    channels.yaml supplies the channel list, the lookback window and the schedule.

    A secrets file looks like:
    ```yaml
    DISCORD_API_TOKEN: "your-bot-token"
    OPENAI_API_KEY: "sk-..."
    ```
    """

    def __init__(self):
        self._load_environment()
        self._validate_and_set_config()
        self._load_channels()

    def _load_environment(self):
        dotenv_path = path.join(path.dirname(path.abspath(__file__)), '.env')
        if path.exists(dotenv_path):
            load_dotenv(dotenv_path)
            logger.info(f"Loaded {dotenv_path}")
        self._load_secrets_file()

    @staticmethod
    def _env_number(env_var: str, default: Number, min_val: Number, cast: Callable[[str], Number]) -> Number:
        raw = environ.get(env_var)
        if raw is None or not raw.strip():
            return default
        try:
            value = cast(raw.strip())
        except ValueError:
            logger.warning(f"{env_var}={raw!r} is not a number; using {default}")
            return default
        if value < min_val:
            logger.warning(f"{env_var} must be >= {min_val} (got {value}); using {default}")
            return default
        return value

    def _validate_positive_int(self, env_var: str, default: int, min_val: int = 1) -> int:
        return self._env_number(env_var, default, min_val, int)

    def _validate_positive_float(self, env_var: str, default: float, min_val: float = 0.1) -> float:
        return self._env_number(env_var, default, min_val, float)

    def _validate_and_set_config(self):
        """Validate and set all configuration values."""
        self.USER_AGENT = environ.get("USER_AGENT", "DiscordBot (https://github.com/channel-digest, 1.0)")

        # Message source (Discord REST API)
        self.DISCORD_API_TOKEN = environ.get("DISCORD_API_TOKEN")
        self.DISCORD_API_BASE = environ.get("DISCORD_API_BASE", "https://discord.com/api/v10").rstrip("/")
        self.PAGE_SIZE = self._validate_positive_int("PAGE_SIZE", MAX_PAGE_SIZE, 1)
        if self.PAGE_SIZE > MAX_PAGE_SIZE:
            logger.warning(f"PAGE_SIZE capped at {MAX_PAGE_SIZE} (got {self.PAGE_SIZE})")
            self.PAGE_SIZE = MAX_PAGE_SIZE
        self.HTTP_TIMEOUT = self._validate_positive_int("HTTP_TIMEOUT", 30, 5)

        # Rate limit handling: wait retry_after + margin; 0 retries means unbounded
        self.RATE_LIMIT_MARGIN = self._validate_positive_float("RATE_LIMIT_MARGIN", 0.1, 0.0)
        self.RATE_LIMIT_MAX_RETRIES = self._validate_positive_int("RATE_LIMIT_MAX_RETRIES", 0, 0)

        # Lookback window (channels.yaml may override)
        self.LOOKBACK_DAYS = self._validate_positive_int("LOOKBACK_DAYS", 7, 1)

        # Summarization service
        self.OPENAI_API_KEY = environ.get("OPENAI_API_KEY")
        self.OPENAI_MODEL = environ.get("OPENAI_MODEL", "gpt-4-turbo")
        self.OPENAI_BASE_URL = environ.get("OPENAI_BASE_URL")
        self.OPENAI_TEMPERATURE = self._validate_positive_float("OPENAI_TEMPERATURE", DEFAULT_TEMPERATURE, 0.0)
        if self.OPENAI_TEMPERATURE > 2.0:
            logger.warning(f"OPENAI_TEMPERATURE must be at most 2.0, using default {DEFAULT_TEMPERATURE}")
            self.OPENAI_TEMPERATURE = DEFAULT_TEMPERATURE

        # Optional Azure OpenAI deployment (OPENAI_MODEL is then the deployment name)
        self.AZURE_ENDPOINT = _bare_host(environ.get("AZURE_ENDPOINT"))
        self.OPENAI_API_VERSION = environ.get("OPENAI_API_VERSION")

        # Summarizer retries: 0 means a single request
        self.SUMMARIZER_HTTP_TIMEOUT = self._validate_positive_int("SUMMARIZER_HTTP_TIMEOUT", 120, 10)
        self.SUMMARIZER_MAX_RETRIES = self._validate_positive_int("SUMMARIZER_MAX_RETRIES", 0, 0)
        self.SUMMARIZER_RETRY_DELAY_BASE = self._validate_positive_float("SUMMARIZER_RETRY_DELAY_BASE", 1.0, 0.1)
        self.SUMMARIZER_REQUESTS_PER_MINUTE = self._validate_positive_int("SUMMARIZER_REQUESTS_PER_MINUTE", 60, 0)

        # Per-channel pipeline deadline in seconds; 0 disables it
        self.PIPELINE_TIMEOUT = self._validate_positive_int("PIPELINE_TIMEOUT", 0, 0)

        # HTTP trigger
        self.SERVER_HOST = environ.get("SERVER_HOST", "0.0.0.0")
        self.SERVER_PORT = self._validate_positive_int("SERVER_PORT", 8080, 1)

        # Scheduler configuration
        self.SCHEDULER_TIMEZONE = environ.get("SCHEDULER_TIMEZONE", "UTC")
        self.SCHEDULER_RUN_IMMEDIATELY = environ.get("SCHEDULER_RUN_IMMEDIATELY", "false").lower() == "true"

        # File paths
        base_dir = path.dirname(path.abspath(__file__))
        self.DATA_PATH = environ.get("DATA_PATH", base_dir)
        self.PUBLIC_DIR = environ.get("PUBLIC_DIR", path.join(self.DATA_PATH, "public"))
        self.CHANNELS_CONFIG_PATH = environ.get("CHANNELS_CONFIG_PATH", path.join(base_dir, "channels.yaml"))
        self.PROMPT_CONFIG_PATH = environ.get("PROMPT_CONFIG_PATH", path.join(base_dir, "prompt.yaml"))

    def _load_secrets_file(self):
        """Load environment variable overrides from a YAML secrets file.

        If SECRETS_FILE is set, loads the YAML mapping it points at and exports
        each entry as an environment variable. Both a top-level mapping and a
        mapping nested under `environment` are accepted.
        """
        secrets_file_path = environ.get("SECRETS_FILE")
        if not secrets_file_path:
            logger.debug("SECRETS_FILE not set; relying on environment/.env for secrets")
            return

        secrets_config = self._safe_read_yaml(secrets_file_path, 2 * 1024 * 1024, 'secrets')
        if not secrets_config:
            return

        if not isinstance(secrets_config, dict):
            logger.warning(f"Secrets file {secrets_file_path} must be a YAML mapping at the top level")
            return
        if isinstance(secrets_config.get('environment'), dict):
            env_vars = secrets_config['environment']
        else:
            env_vars = secrets_config

        secrets_loaded = 0
        for key, value in env_vars.items():
            if isinstance(key, str) and value is not None:
                environ[key] = str(value)
                secrets_loaded += 1
                logger.debug(f"Set environment variable {key} from secrets file")
            else:
                logger.warning(f"Skipping invalid entry in secrets file: {key}")

        logger.info(f"Successfully loaded {secrets_loaded} environment variables from secrets file {secrets_file_path}")

    def _safe_read_yaml(self, file_path: str, max_size: int, kind: str) -> Any | None:
        """Safely read a YAML file with consistent validation.

        Args:
            file_path: Path to the YAML file
            max_size: Maximum allowed file size in bytes
            kind: Short label for logging context (e.g. 'secrets', 'channels')

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
            with open(file_path, 'r', encoding='utf-8') as f:
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

    def _load_channels(self) -> None:
        """Populate self.CHANNELS (and the lookback override) from channels.yaml.

        Any failure results in an empty channel list; the caller decides
        whether that is fatal.
        """
        self.CHANNELS = []
        config_data = self._safe_read_yaml(self.CHANNELS_CONFIG_PATH, 1024 * 1024, 'channels')
        if not isinstance(config_data, dict):
            if config_data is not None:
                logger.warning(f"{self.CHANNELS_CONFIG_PATH} must be a YAML mapping with a 'channels' list")
            return

        self.CHANNELS = parse_channels(config_data.get('channels'))
        logger.info(f"Loaded {len(self.CHANNELS)} channels from {self.CHANNELS_CONFIG_PATH}")

        raw_days = config_data.get('lookback_days')
        if raw_days is not None and "LOOKBACK_DAYS" not in environ:
            try:
                days = int(str(raw_days).strip())
                if days >= 1:
                    self.LOOKBACK_DAYS = days
                else:
                    logger.warning(f"lookback_days must be >=1; keeping {self.LOOKBACK_DAYS} (got {raw_days})")
            except ValueError:
                logger.warning(f"Invalid lookback_days value '{raw_days}'; keeping {self.LOOKBACK_DAYS}")

    def reload_channels(self):
        """Reload the channel list from channels.yaml."""
        logger.info("Reloading channel configuration")
        self._load_channels()

    def build_settings(self, lookback_days: Optional[int] = None, only: Optional[List[str]] = None,
                       system_prompt: Optional[str] = None) -> DigestSettings:
        """Build the explicit settings object for one pipeline run.

        Args:
            lookback_days: Override for the configured lookback window
            only: Restrict the run to channels matching these names or ids
            system_prompt: Instruction prompt; defaults to the built-in prompt
        """
        channels = list(self.CHANNELS)
        if only:
            wanted = {value.lstrip('#') for value in only}
            channels = [c for c in channels if c.id in wanted or c.name.lstrip('#') in wanted]
        return DigestSettings(
            channels=channels,
            lookback_days=lookback_days or self.LOOKBACK_DAYS,
            page_size=self.PAGE_SIZE,
            model=self.OPENAI_MODEL,
            temperature=self.OPENAI_TEMPERATURE,
            system_prompt=system_prompt or DEFAULT_SYSTEM_PROMPT,
            rate_limit_margin=self.RATE_LIMIT_MARGIN,
            max_rate_limit_retries=self.RATE_LIMIT_MAX_RETRIES,
        )

    def get_config_summary(self) -> Dict[str, Any]:
        """Get a summary of current configuration for logging/debugging."""
        return {
            "channels": [c.name for c in self.CHANNELS],
            "lookback_days": self.LOOKBACK_DAYS,
            "page_size": self.PAGE_SIZE,
            "model": self.OPENAI_MODEL,
            "temperature": self.OPENAI_TEMPERATURE,
            "azure_endpoint": self.AZURE_ENDPOINT,
            "rate_limit_margin": self.RATE_LIMIT_MARGIN,
            "rate_limit_max_retries": self.RATE_LIMIT_MAX_RETRIES,
            "summarizer_max_retries": self.SUMMARIZER_MAX_RETRIES,
            "pipeline_timeout": self.PIPELINE_TIMEOUT,
        }


def parse_channels(raw: Any) -> List[Channel]:
    """Parse the `channels` section of channels.yaml.

    Accepts a list of `{name, id}` mappings or a mapping of name -> id.
    Invalid entries are skipped with a warning; duplicate ids keep the first entry.
    """
    if isinstance(raw, dict):
        raw = [{'name': name, 'id': cid} for name, cid in raw.items()]
    if not isinstance(raw, list):
        if raw is not None:
            logger.warning("'channels' must be a list of {name, id} entries")
        return []

    channels: List[Channel] = []
    seen = set()
    for entry in raw:
        if not isinstance(entry, dict) or entry.get('id') in (None, ''):
            logger.warning(f"Skipping invalid channel entry: {entry}")
            continue
        channel_id = str(entry['id']).strip()
        if channel_id in seen:
            logger.warning(f"Skipping duplicate channel id {channel_id}")
            continue
        seen.add(channel_id)
        name = str(entry.get('name') or channel_id).strip()
        channels.append(Channel(name=name, id=channel_id))
    return channels


config = Config()
