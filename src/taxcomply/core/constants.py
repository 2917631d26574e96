"""Global constants for the referral service."""

from __future__ import annotations

SERVICE_NAME = "taxcomply-referrals"
DEFAULT_TIMEZONE = "UTC"
REQUEST_ID_HEADER = "X-Request-ID"
REQUEST_ID_CTX_KEY = "request_id"
USER_ID_HEADER = "X-User-Id"
DEFAULT_ENV_FILE = ".env"
SECRETS_DIR = "/run/secrets"
NGN_CURRENCY = "NGN"
MONNIFY_SIGNATURE_HEADER = "monnify-signature"
