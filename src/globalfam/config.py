"""Configuration for globalfam."""

from __future__ import annotations

import dataclasses
import os
from typing import Any

from globalfam.exceptions import GlobalFamConfigError


def _env_bool(value: str | None, default: bool) -> bool:
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "y", "on"}:
        return True
    if normalized in {"0", "false", "no", "n", "off"}:
        return False
    return default


@dataclasses.dataclass(frozen=True)
class GlobalFamConfig:
    """Runtime configuration.

    Parameters
    ----------
    mqtt_host : str
        Broker host carrying the live profile and status documents.
    mqtt_port : int
        Broker port.
    mqtt_tls : bool
        Connect with TLS using the system trust store.
    mqtt_username : str or None
        Broker username, if the broker requires authentication.
    mqtt_password : str or None
        Broker password.
    mqtt_keepalive : int
        MQTT keepalive in seconds.
    mqtt_client_id : str
        MQTT client id. An empty string lets the broker assign one.
    topic_prefix : str
        Root of the document topic tree (``<prefix>/profiles/<id>``,
        ``<prefix>/statuses/<id>``).
    read_timeout : float
        Seconds a one-shot document read waits for the first delivery.
    geocoder_enabled : bool
        Use the HTTP geocoder. When disabled only the offline gazetteer and
        the deterministic fallback are used.
    geocoder_base_url : str
        Base URL of a Nominatim compatible search API.
    geocoder_user_agent : str
        User agent sent to the geocoder (Nominatim's usage policy requires one).
    geocoder_timeout : float
        Total HTTP timeout for a single lookup, in seconds.
    geocode_cache_size : int
        Number of resolved places kept in memory.
    status_history_size : int
        Number of the session user's own recent statuses kept, most recent first.
    directed_zoom : float
        Zoom used when the map jumps to a freshly posted status.
    status_max_length : int
        Maximum length of a status text.
    """

    mqtt_host: str = "localhost"
    mqtt_port: int = 1883
    mqtt_tls: bool = False
    mqtt_username: str | None = None
    mqtt_password: str | None = None
    mqtt_keepalive: int = 60
    mqtt_client_id: str = ""
    topic_prefix: str = "globalfam"
    read_timeout: float = 5.0
    geocoder_enabled: bool = True
    geocoder_base_url: str = "https://nominatim.openstreetmap.org"
    geocoder_user_agent: str = "globalfam/0 (+https://github.com/globalfam)"
    geocoder_timeout: float = 10.0
    geocode_cache_size: int = 512
    status_history_size: int = 5
    directed_zoom: float = 12.0
    status_max_length: int = 280

    def __post_init__(self) -> None:
        if not self.topic_prefix.strip("/"):
            raise GlobalFamConfigError("topic_prefix must be non-empty")
        if self.geocode_cache_size <= 0:
            raise GlobalFamConfigError("geocode_cache_size must be positive")
        if self.status_history_size <= 0:
            raise GlobalFamConfigError("status_history_size must be positive")
        if self.status_max_length <= 0:
            raise GlobalFamConfigError("status_max_length must be positive")
        if self.read_timeout <= 0:
            raise GlobalFamConfigError("read_timeout must be positive")

    @classmethod
    def from_env(cls, **overrides: Any) -> GlobalFamConfig:
        """Create configuration from environment variables.

        Reads optional ``GLOBALFAM_*`` variables. Explicit keyword arguments
        override environment values.

        Parameters
        ----------
        **overrides
            Explicit field values that take precedence over env vars.

        Returns
        -------
        GlobalFamConfig
            Populated configuration.
        """
        env = os.environ

        _ENV_STR_MAP = {
            "GLOBALFAM_MQTT_HOST": "mqtt_host",
            "GLOBALFAM_MQTT_USERNAME": "mqtt_username",
            "GLOBALFAM_MQTT_PASSWORD": "mqtt_password",
            "GLOBALFAM_MQTT_CLIENT_ID": "mqtt_client_id",
            "GLOBALFAM_TOPIC_PREFIX": "topic_prefix",
            "GLOBALFAM_GEOCODER_BASE_URL": "geocoder_base_url",
            "GLOBALFAM_GEOCODER_USER_AGENT": "geocoder_user_agent",
        }
        _ENV_INT_MAP = {
            "GLOBALFAM_MQTT_PORT": "mqtt_port",
            "GLOBALFAM_MQTT_KEEPALIVE": "mqtt_keepalive",
            "GLOBALFAM_GEOCODE_CACHE_SIZE": "geocode_cache_size",
            "GLOBALFAM_STATUS_HISTORY_SIZE": "status_history_size",
            "GLOBALFAM_STATUS_MAX_LENGTH": "status_max_length",
        }
        _ENV_FLOAT_MAP = {
            "GLOBALFAM_READ_TIMEOUT": "read_timeout",
            "GLOBALFAM_GEOCODER_TIMEOUT": "geocoder_timeout",
            "GLOBALFAM_DIRECTED_ZOOM": "directed_zoom",
        }

        config_kwargs: dict[str, Any] = {}
        for env_key, field_name in _ENV_STR_MAP.items():
            val = env.get(env_key)
            if val is not None and field_name not in overrides:
                config_kwargs[field_name] = val

        for env_key, field_name in _ENV_INT_MAP.items():
            val = env.get(env_key)
            if val is not None and field_name not in overrides:
                try:
                    config_kwargs[field_name] = int(val)
                except ValueError as exc:
                    raise GlobalFamConfigError(f"{env_key} must be an integer, got {val!r}") from exc

        for env_key, field_name in _ENV_FLOAT_MAP.items():
            val = env.get(env_key)
            if val is not None and field_name not in overrides:
                try:
                    config_kwargs[field_name] = float(val)
                except ValueError as exc:
                    raise GlobalFamConfigError(f"{env_key} must be a number, got {val!r}") from exc

        if "mqtt_tls" not in overrides:
            config_kwargs["mqtt_tls"] = _env_bool(env.get("GLOBALFAM_MQTT_TLS"), False)

        if "geocoder_enabled" not in overrides:
            config_kwargs["geocoder_enabled"] = _env_bool(env.get("GLOBALFAM_GEOCODER_ENABLED"), True)

        config_kwargs.update(overrides)

        return cls(**config_kwargs)
