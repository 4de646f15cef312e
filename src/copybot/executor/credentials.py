from __future__ import annotations

import json
import logging
import os
from pathlib import Path

from py_clob_client.clob_types import ApiCreds

from copybot.config import PolymarketConfig

_log = logging.getLogger(__name__)


def configured_credentials(polymarket: PolymarketConfig) -> ApiCreds | None:
    if polymarket.api_key and polymarket.api_secret and polymarket.api_passphrase:
        return ApiCreds(
            api_key=polymarket.api_key,
            api_secret=polymarket.api_secret,
            api_passphrase=polymarket.api_passphrase,
        )
    return None


def load_credentials(path: str) -> ApiCreds | None:
    cred_path = Path(path)
    if not cred_path.exists():
        return None
    raw = json.loads(cred_path.read_text(encoding="utf-8"))
    key = raw.get("key") or raw.get("api_key")
    secret = raw.get("secret") or raw.get("api_secret")
    passphrase = raw.get("passphrase") or raw.get("api_passphrase")
    if not (key and secret and passphrase):
        _log.warning("credential_file_incomplete path=%s", path)
        return None
    return ApiCreds(api_key=key, api_secret=secret, api_passphrase=passphrase)


def save_credentials(path: str, creds: ApiCreds) -> None:
    cred_path = Path(path)
    cred_path.parent.mkdir(parents=True, exist_ok=True)
    payload = {
        "key": creds.api_key,
        "secret": creds.api_secret,
        "passphrase": creds.api_passphrase,
    }
    cred_path.write_text(json.dumps(payload, indent=2), encoding="utf-8")
    os.chmod(cred_path, 0o600)
    _log.info("credential_saved path=%s", path)
