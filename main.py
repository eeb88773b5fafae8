import json
import sys

import questionary

from config import load_config, validate_config
from menus.auth_menu import auth_menu
from menus.config_menu import config_menu
from spotify_auth.factory import manager_from_config, signer_from_config, token_cache_from_config
from spotify_auth.transport import HttpxTransport
from utils.logger import setup_logging, log_info, log_error


def main_menu() -> str:
    return questionary.select(
        "🎵 Spotify Auth — Main Menu",
        choices=["Authorization Menu", "Config Menu", "Exit"]
    ).ask()


def main() -> int:
    setup_logging()

    try:
        config = load_config()
    except FileNotFoundError as e:
        log_error(f"Config file not found: {e}")
        log_error("Please create config.json with required settings.")
        return 1
    except json.JSONDecodeError as e:
        log_error(f"Config file contains invalid JSON: {e}")
        return 1

    setup_logging(config.get("log_level", "INFO"))

    is_valid, errors = validate_config(config)
    if not is_valid:
        for error in errors:
            log_error(error)
        return 1

    transport = HttpxTransport(timeout=float(config.get("spotify_http_timeout", 30)))
    try:
        manager = manager_from_config(config, transport=transport, cache=token_cache_from_config(config))
    except ValueError as e:
        transport.close()
        log_error(f"Cannot set up Spotify authorization: {e}")
        return 1

    try:
        while True:
            choice = main_menu()

            # Authorization Menu
            if choice == "Authorization Menu":
                auth_menu(manager, config, signer_from_config(manager, config))

            # Config Menu
            elif choice == "Config Menu":
                config = config_menu(config)

            # Exit
            elif choice in ("Exit", None):
                log_info("Exiting program...")
                break
    finally:
        transport.close()

    return 0


if __name__ == "__main__":
    sys.exit(main())
