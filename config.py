import json
import os
from typing import Any, Dict

CONFIG_PATH = "config.json"

BACKEND_CHOICES = ["client", "pkce", "proxy", "pkce_proxy", "client_credentials"]

# Default configuration values
DEFAULT_CONFIG = {
    # Spotify Web API authorization
    "spotify_backend": "pkce",
    "spotify_client_id": "",
    # Only used by the "client" and "client_credentials" backends.
    "spotify_client_secret": "",
    "spotify_redirect_uri": "http://127.0.0.1:8888/callback",
    "spotify_scopes": [
        "playlist-read-private",
        "playlist-read-collaborative",
        "user-library-read",
    ],
    "spotify_token_url": "https://accounts.spotify.com/api/token",
    # Proxy backends: the server that holds the client secret.
    "spotify_proxy_token_url": "",
    "spotify_proxy_refresh_url": "",

    # Token lifetime handling
    "spotify_refresh_margin": 300,
    "spotify_http_timeout": 30,
    "spotify_auto_refresh": True,

    # Token cache
    "spotify_cache_tokens": True,
    "spotify_token_cache_path": "data/spotify_auth.json",
    "spotify_persist_secrets": False,

    "log_level": "INFO",
}

# Validation rules for config fields
CONFIG_SCHEMA = {
    "spotify_backend": {"type": str, "required": True, "choices": BACKEND_CHOICES},
    "spotify_client_id": {"type": str, "required": True},
    "spotify_client_secret": {"type": str, "required": False},
    "spotify_redirect_uri": {"type": str, "required": False},
    "spotify_scopes": {"type": list, "required": False, "element_type": str},
    "spotify_token_url": {"type": str, "required": False},
    "spotify_proxy_token_url": {"type": str, "required": False},
    "spotify_proxy_refresh_url": {"type": str, "required": False},

    "spotify_refresh_margin": {"type": (int, float), "required": False, "min": 0, "max": 3600},
    "spotify_http_timeout": {"type": (int, float), "required": False, "min": 1, "max": 300},
    "spotify_auto_refresh": {"type": bool, "required": False},

    "spotify_cache_tokens": {"type": bool, "required": False},
    "spotify_token_cache_path": {"type": str, "required": False},
    "spotify_persist_secrets": {"type": bool, "required": False},

    "log_level": {"type": str, "required": False, "choices": ["DEBUG", "INFO", "WARNING", "ERROR"]},
}


def load_config(path: str = CONFIG_PATH) -> Dict[str, Any]:
    """Load configuration from file, applying defaults for missing fields."""
    if not os.path.exists(path):
        raise FileNotFoundError(f"Config file {path} not found.")

    with open(path, "r", encoding="utf-8") as f:
        config = json.load(f)

    # Apply defaults for missing fields
    for key, value in DEFAULT_CONFIG.items():
        if key not in config:
            config[key] = value

    return config


def save_config(config: Dict[str, Any], path: str = CONFIG_PATH) -> bool:
    """Save configuration to file."""
    try:
        with open(path, "w", encoding="utf-8") as f:
            json.dump(config, f, indent=2)
        return True
    except OSError as e:
        raise IOError(f"Failed to save config: {e}") from e


def validate_config(config: Dict[str, Any]) -> tuple[bool, list[str]]:
    """
    Validate configuration against schema.
    Returns (is_valid, list_of_errors).
    """
    errors = []

    for key, rules in CONFIG_SCHEMA.items():
        # Check required fields
        if rules.get("required", False) and key not in config:
            errors.append(f"Missing required field: {key}")
            continue

        if key not in config:
            continue

        value = config[key]

        # Type check (bool is an int subclass, so it never counts as a number here)
        expected_type = rules.get("type")
        if expected_type and (
            not isinstance(value, expected_type)
            or (isinstance(value, bool) and expected_type is not bool)
        ):
            type_names = expected_type.__name__ if not isinstance(expected_type, tuple) else "/".join(t.__name__ for t in expected_type)
            errors.append(f"Field '{key}' must be {type_names}, got {type(value).__name__}")
            continue

        # List element type check (when schema uses: {"type": list, "element_type": ...})
        if isinstance(value, list) and "element_type" in rules:
            elem_type = rules["element_type"]
            bad_elems = [v for v in value if not isinstance(v, elem_type)]
            if bad_elems:
                errors.append(
                    f"Field '{key}' must be a list of {elem_type.__name__}, got invalid elements: {bad_elems}"
                )
                continue

        # Choices check
        if "choices" in rules and value not in rules["choices"]:
            errors.append(f"Field '{key}' must be one of {rules['choices']}, got '{value}'")

        # Range check for numeric values
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            if "min" in rules and value < rules["min"]:
                errors.append(f"Field '{key}' must be >= {rules['min']}, got {value}")
            if "max" in rules and value > rules["max"]:
                errors.append(f"Field '{key}' must be <= {rules['max']}, got {value}")

    # Cross-field rules per backend
    backend = config.get("spotify_backend")
    if backend in ("client", "client_credentials") and not config.get("spotify_client_secret"):
        errors.append(f"Backend '{backend}' requires spotify_client_secret")
    if backend in ("proxy", "pkce_proxy"):
        for key in ("spotify_proxy_token_url", "spotify_proxy_refresh_url"):
            if not config.get(key):
                errors.append(f"Backend '{backend}' requires {key}")
    if "spotify_client_id" in config and not str(config.get("spotify_client_id") or "").strip():
        errors.append("Field 'spotify_client_id' must not be empty")

    return len(errors) == 0, errors


def update_config(key: str, value: Any, path: str = CONFIG_PATH) -> tuple[bool, str]:
    """
    Update a single config field with validation.
    Returns (success, message).
    """
    config = load_config(path)

    # Check if key is valid
    if key not in CONFIG_SCHEMA:
        return False, f"Unknown config key: {key}"

    # Create temporary config with new value
    test_config = config.copy()
    test_config[key] = value

    # Validate the change
    is_valid, errors = validate_config(test_config)
    if not is_valid:
        return False, f"Validation failed: {', '.join(errors)}"

    # Save the updated config
    config[key] = value
    save_config(config, path)

    return True, f"Updated '{key}' to '{value}'"


def reset_to_defaults(path: str = CONFIG_PATH) -> tuple[bool, str]:
    """Reset configuration to default values."""
    try:
        save_config(DEFAULT_CONFIG.copy(), path)
        return True, "Configuration reset to defaults"
    except IOError as e:
        return False, f"Failed to reset config: {e}"


def get_config_value(key: str, default: Any = None, path: str = CONFIG_PATH) -> Any:
    """Get a single config value with optional default."""
    try:
        config = load_config(path)
    except (OSError, json.JSONDecodeError):
        return default
    return config.get(key, default)
