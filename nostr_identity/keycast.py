# nostr_identity/keycast.py
"""
Keycast client: email/password accounts on a hosted NIP-46 signer.

Keycast hands back a JWT and, from that, a ``bunker://`` URL that feeds the
remote-initiated bunker flow.
"""

import asyncio
import logging
import time

import requests

from nostr_identity.bunker import login_with_bunker
from nostr_identity.config import KEYCAST_MAX_RETRIES, KEYCAST_TIMEOUT, KEYCAST_URL
from nostr_identity.errors import KeycastError
from nostr_identity.storage import delete_key, read_json, write_json

logger = logging.getLogger(__name__)

CREDENTIALS_KEY = "keycast_credentials"


def _with_retry(func):
    """
    Execute *func* with exponential-backoff retry on transient errors.
    Anything else (including 4xx responses) is raised immediately.
    """
    last_exc = None
    for attempt in range(KEYCAST_MAX_RETRIES):
        try:
            return func()
        except (requests.exceptions.Timeout, requests.exceptions.ConnectionError) as exc:
            last_exc = exc
            if attempt < KEYCAST_MAX_RETRIES - 1:
                wait = 2 ** attempt
                logger.warning(
                    "Keycast retry %d/%d in %ds: %s", attempt + 1, KEYCAST_MAX_RETRIES, wait, exc
                )
                time.sleep(wait)
        except requests.exceptions.RequestException as exc:
            raise KeycastError(f"Keycast request error: {exc}") from exc

    raise KeycastError(
        f"Failed to connect to Keycast after {KEYCAST_MAX_RETRIES} attempts: {last_exc}"
    ) from last_exc


def _error_message(r: requests.Response, fallback: str) -> str:
    try:
        return r.json().get("error") or fallback
    except ValueError:
        return fallback


def _check(r: requests.Response, fallback: str) -> dict:
    if not r.ok:
        raise KeycastError(_error_message(r, fallback), status_code=r.status_code)
    return r.json()


# -----------------------------------------------------------
# HTTP calls
# -----------------------------------------------------------

def get_bunker_url(token: str) -> str:
    """
    Fetch the NIP-46 bunker URL for the account behind *token*.
    """
    def _get():
        r = requests.get(
            f"{KEYCAST_URL}/api/user/bunker",
            headers={"Authorization": f"Bearer {token}"},
            timeout=KEYCAST_TIMEOUT,
        )
        return _check(r, "Failed to get bunker URL")["bunker_url"]

    return _with_retry(_get)


def login(email: str, password: str) -> dict:
    def _post():
        r = requests.post(
            f"{KEYCAST_URL}/api/auth/login",
            json={"email": email, "password": password},
            timeout=KEYCAST_TIMEOUT,
        )
        return _check(r, "Login failed")

    data = _with_retry(_post)
    logger.info("Keycast login OK for %s", email)
    return {"token": data["token"], "pubkey": data.get("pubkey"), "bunker_url": get_bunker_url(data["token"])}


def register(email: str, password: str, nsec: str | None = None) -> dict:
    """
    Create an account, optionally importing *nsec*. If the key or email is
    already registered, log in instead.
    """
    body = {"email": email, "password": password}
    if nsec:
        body["nsec"] = nsec

    def _post():
        return requests.post(f"{KEYCAST_URL}/api/auth/register", json=body, timeout=KEYCAST_TIMEOUT)

    r = _with_retry(_post)
    if not r.ok:
        message = _error_message(r, "Registration failed")
        if "already registered" in message:
            logger.info("Keycast account already registered, logging in instead")
            return login(email, password)
        raise KeycastError(message, status_code=r.status_code)

    data = r.json()
    logger.info("Keycast account registered for %s", email)
    return {"token": data["token"], "pubkey": data.get("pubkey"), "bunker_url": get_bunker_url(data["token"])}


# -----------------------------------------------------------
# Stored credentials
# -----------------------------------------------------------

def store_credentials(email: str, token: str, bunker_url: str):
    write_json(CREDENTIALS_KEY, {"email": email, "token": token, "bunker_url": bunker_url})


def get_credentials() -> dict | None:
    return read_json(CREDENTIALS_KEY)


def clear_credentials():
    delete_key(CREDENTIALS_KEY)


# -----------------------------------------------------------
# Login flow
# -----------------------------------------------------------

async def login_with_keycast(store, transport, email: str, password: str, create: bool = False, nsec: str | None = None, **session_options):
    """
    Authenticate with Keycast, connect to the bunker it issues, and make that
    bunker the current identity.
    """
    if create:
        account = await asyncio.to_thread(register, email, password, nsec)
    else:
        account = await asyncio.to_thread(login, email, password)

    session = await login_with_bunker(store, transport, account["bunker_url"], **session_options)
    store_credentials(email, account["token"], account["bunker_url"])
    return session
