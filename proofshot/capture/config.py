"""Configuration models and loader for the capture pipeline.

Settings are merged from several sources, lowest to highest precedence:
defaults, a YAML (or JSON) config file with optional per-environment
overrides, PROOFSHOT_* environment variables, and explicit overrides passed
by the caller (typically CLI flags).
"""

import json
import logging
import os
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml
from pydantic import BaseModel, Field, field_validator

from ..models.capture import CaptureMode, RetryPolicy

logger = logging.getLogger(__name__)


DEFAULT_USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
)


class ConfigLoadError(Exception):
    """Exception raised when configuration loading fails."""
    pass


class SessionConfig(BaseModel):
    """Browser session settings."""

    headless: bool = Field(default=True, description="Run Chromium without a window")
    viewport_width: int = Field(default=1440, ge=320, description="Viewport width in pixels")
    viewport_height: int = Field(default=900, ge=240, description="Viewport height in pixels")
    user_agent: str = Field(default=DEFAULT_USER_AGENT, description="User-Agent header")
    locale: Optional[str] = Field(default="en-US", description="Browser locale")
    extra_launch_args: List[str] = Field(default_factory=list, description="Additional Chromium flags")
    profile_base_dir: Optional[Path] = Field(
        default=None,
        description="Directory for per-session profiles (system temp dir when unset)"
    )
    profile_prefix: str = Field(default="proofshot-profile-", description="Profile directory name prefix")
    extension_path: Optional[Path] = Field(
        default=None,
        description="Unpacked page stabilizer extension to load"
    )
    default_timeout_ms: int = Field(default=30000, ge=1000, description="Default action timeout")
    block_service_workers: bool = Field(default=True, description="Block service worker registration")
    browser_channel: Optional[str] = Field(
        default=None,
        description="Chromium channel, e.g. 'chromium' for extension support in headless mode"
    )

    @property
    def viewport(self) -> Dict[str, int]:
        return {'width': self.viewport_width, 'height': self.viewport_height}

    def to_launch_args(self, extension_dir: Optional[Path] = None) -> List[str]:
        """Chromium command-line flags for a session."""
        args = [
            '--no-sandbox',
            '--disable-setuid-sandbox',
            '--disable-dev-shm-usage',
            '--disable-blink-features=AutomationControlled',
            '--disable-features=IsolateOrigins,site-per-process',
        ]
        if extension_dir is not None:
            args.append(f'--disable-extensions-except={extension_dir}')
            args.append(f'--load-extension={extension_dir}')

        for arg in self.extra_launch_args:
            if arg not in args:
                args.append(arg)
        return args

    def to_context_options(self, extension_dir: Optional[Path] = None) -> Dict[str, Any]:
        """Convert to launch_persistent_context() options."""
        options: Dict[str, Any] = {
            'headless': self.headless,
            'args': self.to_launch_args(extension_dir),
            'ignore_default_args': ['--enable-automation'],
            'viewport': self.viewport,
            'user_agent': self.user_agent,
        }

        if self.locale:
            options['locale'] = self.locale

        if self.block_service_workers:
            options['service_workers'] = 'block'

        if self.browser_channel:
            options['channel'] = self.browser_channel

        return options


class ConsentConfig(BaseModel):
    """Consent defense layer toggles and extensions."""

    network_interception_enabled: bool = Field(default=True, description="Layer 1: block consent scripts")
    consent_state_enabled: bool = Field(default=True, description="Layer 2: pre-inject consent state")
    cmp_api_stubs_enabled: bool = Field(default=True, description="Layer 2: stub vendor consent APIs")
    suppression_styles_enabled: bool = Field(default=True, description="Layer 3: hide overlays with CSS")
    element_targeting_enabled: bool = Field(default=True, description="Layer 4: target content container")

    extra_provider_patterns: List[str] = Field(default_factory=list)
    extra_overlay_selectors: List[str] = Field(default_factory=list)
    min_container_width: int = Field(default=300, ge=0)
    min_container_height: int = Field(default=200, ge=0)

    def layer_enabled(self, layer: int) -> bool:
        return {
            1: self.network_interception_enabled,
            2: self.consent_state_enabled,
            3: self.suppression_styles_enabled,
            4: self.element_targeting_enabled,
        }.get(layer, False)


class OrchestratorConfig(BaseModel):
    """Per-capture timing and behaviour settings."""

    navigation_timeout_ms: int = Field(default=60000, ge=1000, description="Timeout per navigation attempt")
    post_load_wait_ms: int = Field(default=2000, ge=0, description="Settle time after navigation")
    stabilizer_timeout_ms: int = Field(default=3000, ge=0, description="Max wait for stabilizer readiness")
    challenge_timeout_ms: int = Field(default=30000, ge=0, description="Max wait for a bot challenge to clear")
    challenge_poll_interval_ms: int = Field(default=1000, ge=100)
    locate_timeout_ms: int = Field(default=5000, ge=0, description="Timeout for library text queries")

    crash_retries: int = Field(default=2, ge=0, description="Capture retries after a session crash")
    crash_retry_delay_ms: int = Field(default=2000, ge=0, description="Pause before a crash retry")

    popup_sweep_enabled: bool = Field(default=True)
    popup_click_timeout_ms: int = Field(default=1000, ge=0)
    scroll_reveal_enabled: bool = Field(default=True)
    scroll_step_px: int = Field(default=800, ge=50)
    scroll_max_steps: int = Field(default=20, ge=0)
    scroll_step_delay_ms: int = Field(default=150, ge=0)
    highlight_enabled: bool = Field(default=True)

    capture_mode: CaptureMode = Field(default=CaptureMode.CLIP, description="clip or viewport")


class ProofshotSettings(BaseModel):
    """Complete settings for a capture run."""

    environment: str = Field(default="production", description="Active environment name")
    log_level: str = Field(default="INFO", description="Root logging level")

    session: SessionConfig = Field(default_factory=SessionConfig)
    consent: ConsentConfig = Field(default_factory=ConsentConfig)
    orchestrator: OrchestratorConfig = Field(default_factory=OrchestratorConfig)
    batch: RetryPolicy = Field(default_factory=RetryPolicy)

    loaded_from: List[str] = Field(default_factory=list, description="Configuration sources")

    @field_validator('log_level')
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        level = v.upper()
        if level not in ('DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL'):
            raise ValueError(f"Invalid log level: {v}")
        return level


ENV_PREFIX = "PROOFSHOT_"

ENV_MAPPING = {
    f"{ENV_PREFIX}ENVIRONMENT": "environment",
    f"{ENV_PREFIX}LOG_LEVEL": "log_level",
    f"{ENV_PREFIX}HEADLESS": "session.headless",
    f"{ENV_PREFIX}VIEWPORT_WIDTH": "session.viewport_width",
    f"{ENV_PREFIX}VIEWPORT_HEIGHT": "session.viewport_height",
    f"{ENV_PREFIX}USER_AGENT": "session.user_agent",
    f"{ENV_PREFIX}PROFILE_DIR": "session.profile_base_dir",
    f"{ENV_PREFIX}EXTENSION_PATH": "session.extension_path",
    f"{ENV_PREFIX}NETWORK_INTERCEPTION": "consent.network_interception_enabled",
    f"{ENV_PREFIX}CONSENT_STATE": "consent.consent_state_enabled",
    f"{ENV_PREFIX}SUPPRESSION_STYLES": "consent.suppression_styles_enabled",
    f"{ENV_PREFIX}ELEMENT_TARGETING": "consent.element_targeting_enabled",
    f"{ENV_PREFIX}NAVIGATION_TIMEOUT_MS": "orchestrator.navigation_timeout_ms",
    f"{ENV_PREFIX}CHALLENGE_TIMEOUT_MS": "orchestrator.challenge_timeout_ms",
    f"{ENV_PREFIX}CRASH_RETRIES": "orchestrator.crash_retries",
    f"{ENV_PREFIX}CAPTURE_MODE": "orchestrator.capture_mode",
    f"{ENV_PREFIX}BATCH_SIZE": "batch.batch_size",
    f"{ENV_PREFIX}MAX_RETRIES": "batch.max_retries",
    f"{ENV_PREFIX}RETRY_DELAY_MS": "batch.base_delay_ms",
}

_BOOL_SUFFIXES = ('.headless', '_enabled')
_INT_SUFFIXES = (
    '.viewport_width', '.viewport_height', '_ms', '.crash_retries',
    '.batch_size', '.max_retries',
)
_PATH_SUFFIXES = ('.profile_base_dir', '.extension_path')


def load_settings(
    config_file: Optional[Path] = None,
    environment: Optional[str] = None,
    overrides: Optional[Dict[str, Any]] = None,
) -> ProofshotSettings:
    """Load settings with proper precedence.

    Args:
        config_file: Optional YAML or JSON file. May contain an ``environments``
            mapping whose entry for the active environment is merged on top.
        environment: Environment name; falls back to PROOFSHOT_ENVIRONMENT,
            then the file's ``environment`` key, then "production".
        overrides: Highest-precedence nested overrides (e.g. from CLI flags).

    Returns:
        Validated ProofshotSettings.

    Raises:
        ConfigLoadError: If the file cannot be read or the result is invalid.
    """
    loaded_from = ["defaults"]
    config_data: Dict[str, Any] = {}

    if config_file is not None:
        config_file = Path(config_file)
        if not config_file.exists():
            raise ConfigLoadError(f"Config file not found: {config_file}")
        config_data = _load_config_file(config_file)
        loaded_from.append(f"config file: {config_file}")

    environments = config_data.pop("environments", None) or {}
    env_name = (
        environment
        or os.getenv(f"{ENV_PREFIX}ENVIRONMENT")
        or config_data.get("environment")
        or "production"
    )
    if env_name in environments:
        config_data = _deep_merge(config_data, environments[env_name])
        loaded_from.append(f"environment overrides: {env_name}")
        logger.info(f"Applied environment overrides for: {env_name}")
    config_data["environment"] = env_name

    env_config = _load_environment_variables()
    if env_config:
        config_data = _deep_merge(config_data, env_config)
        loaded_from.append("environment variables")

    if overrides:
        config_data = _deep_merge(config_data, overrides)
        loaded_from.append("overrides")

    config_data["loaded_from"] = loaded_from

    try:
        return ProofshotSettings(**config_data)
    except Exception as e:
        raise ConfigLoadError(f"Invalid configuration: {e}")


def _load_config_file(config_path: Path) -> Dict[str, Any]:
    """Read a YAML or JSON configuration file into a dict."""
    try:
        content = config_path.read_text(encoding='utf-8')
    except OSError as e:
        raise ConfigLoadError(f"Failed to read config file {config_path}: {e}")

    try:
        if config_path.suffix.lower() == '.json':
            data = json.loads(content)
        else:
            data = yaml.safe_load(content)
    except yaml.YAMLError as e:
        raise ConfigLoadError(f"Failed to parse YAML config {config_path}: {e}")
    except json.JSONDecodeError as e:
        raise ConfigLoadError(f"Failed to parse JSON config {config_path}: {e}")

    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigLoadError("Config file must contain a mapping at the top level")
    return data


def _load_environment_variables() -> Dict[str, Any]:
    """Collect PROOFSHOT_* environment variables into a nested dict."""
    config: Dict[str, Any] = {}

    for env_var, config_path in ENV_MAPPING.items():
        env_value = os.getenv(env_var)
        if env_value is None or config_path == "environment":
            continue
        try:
            converted = _convert_env_value(env_value, config_path)
        except ValueError as e:
            raise ConfigLoadError(f"Invalid value for {env_var}: {e}")
        _set_nested_value(config, config_path, converted)

    return config


def _convert_env_value(value: str, config_path: str) -> Any:
    """Convert an environment variable string to the field's type."""
    if config_path.endswith(_BOOL_SUFFIXES):
        return value.strip().lower() in ('true', '1', 'yes', 'on')

    if config_path.endswith(_INT_SUFFIXES):
        return int(value)

    if config_path.endswith(_PATH_SUFFIXES):
        return Path(value) if value else None

    return value


def _set_nested_value(config: Dict[str, Any], path: str, value: Any) -> None:
    """Set a nested configuration value using dot notation."""
    keys = path.split('.')
    current = config

    for key in keys[:-1]:
        current = current.setdefault(key, {})

    current[keys[-1]] = value


def _deep_merge(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    """Deep merge two dictionaries, with override taking precedence."""
    result = base.copy()

    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = _deep_merge(result[key], value)
        else:
            result[key] = value

    return result


def dump_settings(settings: ProofshotSettings, format: str = "yaml") -> str:
    """Render settings as YAML or JSON for display.

    Args:
        settings: Settings to render
        format: "yaml" or "json"

    Returns:
        Formatted settings string
    """
    data = settings.model_dump(mode="json", exclude={'loaded_from'})

    if format.lower() == "json":
        return json.dumps(data, indent=2)
    return yaml.safe_dump(data, default_flow_style=False, sort_keys=True)
