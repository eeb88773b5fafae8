import time
from typing import Any, Dict, Optional

import questionary

from spotify_auth import (
    AuthError, AuthorizationManager, RequestSigner, SpotifyAPIError, TransportError,
    generate_pkce_pair, generate_state,
)
from utils.logger import log_info, log_error, log_success, log_warning


def auth_menu(manager: AuthorizationManager, config: dict, signer: Optional[RequestSigner] = None) -> None:
    """
    Display the Spotify authorization menu.

    The authorization URL is printed, never opened; the user pastes back the
    URL Spotify redirected to.
    """
    # state / code_verifier of the authorization request currently pending
    session: Dict[str, Any] = {}

    while True:
        choices = ["Show authorization status"]
        if manager.backend.supports_authorization_code:
            choices += ["Start authorization", "Paste redirect URL"]
        else:
            choices += ["Request app token"]
        choices += ["Refresh tokens", "Test API access", "Deauthorize", "Back"]

        choice = questionary.select(
            "🔑 Spotify Authorization — What would you like to do?",
            choices=choices
        ).ask()

        if choice == "Show authorization status":
            show_status(manager)

        elif choice == "Start authorization":
            start_authorization(manager, config, session)

        elif choice == "Paste redirect URL":
            finish_authorization(manager, config, session)

        elif choice == "Request app token":
            _run("Authorization", manager.authorize)

        elif choice == "Refresh tokens":
            _run("Token refresh", manager.refresh_tokens)

        elif choice == "Test API access":
            check_api_access(signer or RequestSigner(manager))

        elif choice == "Deauthorize":
            confirm = questionary.confirm("Forget the stored Spotify tokens?", default=False).ask()
            if confirm:
                manager.deauthorize()
                log_success("Deauthorized.")

        elif choice in ("Back", None):
            break


def describe_status(manager: AuthorizationManager, *, now: Optional[float] = None) -> str:
    creds = manager.credentials
    if not manager.is_authorized():
        return "Not authorized."

    now_ts = time.time() if now is None else now
    lines = [f"Authorized ({type(manager.backend).__name__})."]
    if creds.expires_at is not None:
        remaining = int(creds.expires_at - now_ts)
        if remaining > 0:
            lines.append(f"Access token expires in {remaining // 60} min {remaining % 60} s.")
        else:
            lines.append("Access token has expired.")
    lines.append(f"Refresh token: {'yes' if creds.refresh_token else 'no'}")
    lines.append(f"Scopes: {', '.join(sorted(creds.scopes)) or '(none)'}")
    return "\n".join(lines)


def show_status(manager: AuthorizationManager):
    print("\n" + "=" * 50)
    print(describe_status(manager))
    print("=" * 50)


def start_authorization(manager: AuthorizationManager, config: dict, session: Dict[str, Any]) -> Optional[str]:
    """Print the authorization URL and remember state (and PKCE verifier) for the redirect."""
    session.clear()
    session["state"] = generate_state()

    code_challenge = None
    if manager.backend.uses_pkce:
        pkce = generate_pkce_pair()
        session["code_verifier"] = pkce.code_verifier
        code_challenge = pkce.code_challenge

    try:
        url = manager.make_authorization_url(
            redirect_uri=config.get("spotify_redirect_uri", ""),
            scopes=config.get("spotify_scopes", []),
            state=session["state"],
            show_dialog=True,
            code_challenge=code_challenge,
        )
    except ValueError as e:
        log_error(str(e))
        session.clear()
        return None

    log_info("Open this URL in your browser and approve access:")
    print(f"\n{url}\n")
    return url


def finish_authorization(manager: AuthorizationManager, config: dict, session: Dict[str, Any]) -> bool:
    if "state" not in session:
        log_warning("Start authorization first.")
        return False

    redirect_url = questionary.text("Paste the full URL you were redirected to:").ask()
    if not redirect_url:
        return False

    ok = _run(
        "Authorization",
        manager.authorize_from_redirect,
        redirect_url,
        state=session.get("state"),
        code_verifier=session.get("code_verifier"),
        scopes=config.get("spotify_scopes") or None,
    )
    if ok:
        session.clear()
    return ok


def check_api_access(signer: RequestSigner) -> bool:
    """Call GET /me to check that the stored token is accepted."""
    try:
        profile = signer.request_json("GET", "/me")
    except (AuthError, SpotifyAPIError, TransportError) as e:
        log_error(f"API check failed: {e}")
        return False

    name = profile.get("display_name") or profile.get("id") or "unknown user"
    log_success(f"Token accepted for {name}.")
    return True


def _run(label: str, func, *args, **kwargs) -> bool:
    try:
        func(*args, **kwargs)
    except (AuthError, ValueError) as e:
        log_error(f"{label} failed: {e}")
        return False

    log_success(f"{label} succeeded.")
    return True
