import logging
import os
from typing import Mapping, Optional

from dotenv import load_dotenv
from pydantic import BaseModel, ValidationError

from vending_relay.errors import ConfigurationError

load_dotenv()

DEFAULT_ROOT = "Vending-System"
DEFAULT_PORT = 3000

# Timing, in seconds
LOCK_WINDOW = 180.0
POLL_INTERVAL = 10.0
POLL_INITIAL_DELAY = 3.0
POLL_DEADLINE = 180.0

REQUIRED_ENV = {
    "payway_api_url": "ABA_PAYWAY_API_URL",
    "payway_check_url": "ABA_PAYWAY_CHECK_URL",
    "merchant_id": "ABA_PAYWAY_MERCHANT_ID",
    "api_key": "ABA_PAYWAY_API_KEY",
    "server_url": "SERVER_URL",
    "firebase_db_url": "FIREBASE_DB_URL",
}

FIREBASE_ACCOUNT_ENV = {
    "type": "FIREBASE_TYPE",
    "project_id": "FIREBASE_PROJECT_ID",
    "private_key_id": "FIREBASE_PRIVATE_KEY_ID",
    "private_key": "FIREBASE_PRIVATE_KEY",
    "client_email": "FIREBASE_CLIENT_EMAIL",
    "client_id": "FIREBASE_CLIENT_ID",
    "auth_uri": "FIREBASE_AUTH_URI",
    "token_uri": "FIREBASE_TOKEN_URI",
    "auth_provider_x509_cert_url": "FIREBASE_AUTH_PROVIDER_X509_CERT_URL",
    "client_x509_cert_url": "FIREBASE_CLIENT_X509_CERT_URL",
}


class Settings(BaseModel):
    payway_api_url: str
    payway_check_url: str
    merchant_id: str
    api_key: str
    server_url: str
    port: int = DEFAULT_PORT
    root: str = DEFAULT_ROOT
    log_level: str = "INFO"
    firebase_db_url: str
    firebase_account: dict

    def callback_url(self, machine: str) -> str:
        return f"{self.server_url.rstrip('/')}/{self.root}/{machine}/callback.json"


def load_settings(environ: Optional[Mapping[str, str]] = None) -> Settings:
    """Build settings from the environment, failing on anything missing.

    All absent variables are reported together so a broken deployment can be
    fixed in one pass.
    """
    env = os.environ if environ is None else environ

    missing = []

    def required(name):
        value = (env.get(name) or "").strip()
        if not value:
            missing.append(name)
        return value

    values = {field: required(name) for field, name in REQUIRED_ENV.items()}
    account = {key: required(name) for key, name in FIREBASE_ACCOUNT_ENV.items()}
    if missing:
        raise ConfigurationError(
            "Missing required environment variables: " + ", ".join(missing)
        )

    account["private_key"] = account["private_key"].replace("\\n", "\n")
    account["universe_domain"] = env.get("FIREBASE_UNIVERSE_DOMAIN") or "googleapis.com"

    try:
        return Settings(
            **values,
            port=env.get("PORT") or DEFAULT_PORT,
            root=env.get("VENDING_ROOT") or DEFAULT_ROOT,
            log_level=(env.get("LOG_LEVEL") or "INFO").upper(),
            firebase_account=account,
        )
    except ValidationError as e:
        raise ConfigurationError(f"Invalid configuration: {e}") from e


def configure_logging(level: str = "INFO"):
    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )
