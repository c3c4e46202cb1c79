from typing import Any, Dict

from google.auth.exceptions import GoogleAuthError
from google.auth.transport import requests as google_requests
from google.oauth2 import id_token as google_id_token

# Shared transport for certificate fetches.
_transport = google_requests.Request()


class GoogleTokenError(Exception):
    pass


def verify_google_id_token(id_token: str, client_id: str) -> Dict[str, Any]:
    """Validate a Google ID token and return its claims (``sub``, ``email``, ``name`` ...).

    Signature, expiry, audience and issuer are checked by google-auth.
    """
    if not id_token:
        raise GoogleTokenError("An ID token is required.")

    try:
        claims = google_id_token.verify_oauth2_token(id_token, _transport, client_id)
    except (ValueError, GoogleAuthError) as exc:
        raise GoogleTokenError(f"Google rejected the ID token: {exc}") from exc

    if not claims.get("sub") or not claims.get("email"):
        raise GoogleTokenError("The ID token is missing the account identity.")

    if str(claims.get("email_verified", True)).lower() != "true":
        raise GoogleTokenError("The Google account email is not verified.")

    return claims
