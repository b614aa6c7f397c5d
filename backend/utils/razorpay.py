import base64
import hashlib
import hmac
import json
from urllib import error, request

from config.env import RAZORPAY_KEY_ID, RAZORPAY_KEY_SECRET, RAZORPAY_WEBHOOK_SECRET
from utils.errors import ConfigurationError, ExternalGatewayError

RAZORPAY_API_BASE = "https://api.razorpay.com/v1"
RAZORPAY_TIMEOUT_SECONDS = 15


def _require_razorpay_config() -> tuple[str, str]:
    if not RAZORPAY_KEY_ID or not RAZORPAY_KEY_SECRET:
        raise ConfigurationError("Razorpay keys are not configured")
    return RAZORPAY_KEY_ID, RAZORPAY_KEY_SECRET


def _basic_auth_header(key_id: str, key_secret: str) -> str:
    token = f"{key_id}:{key_secret}".encode("utf-8")
    return "Basic " + base64.b64encode(token).decode("utf-8")


def _provider_message(details: str) -> str:
    try:
        return json.loads(details)["error"]["description"]
    except (ValueError, KeyError, TypeError):
        return details or "unknown error"


def create_refund(payment_id: str, amount_paise: int, notes: dict | None = None) -> dict:
    """
    Refund (part of) a captured payment. Blocking; call through asyncio.to_thread.
    Returns the Razorpay refund entity ({"id": "rfnd_...", "status": ...}).
    """
    key_id, key_secret = _require_razorpay_config()

    payload = {
        "amount": amount_paise,
        "speed": "normal",
        "notes": notes or {},
    }

    req = request.Request(
        url=f"{RAZORPAY_API_BASE}/payments/{payment_id}/refund",
        data=json.dumps(payload).encode("utf-8"),
        headers={
            "Content-Type": "application/json",
            "Authorization": _basic_auth_header(key_id, key_secret),
        },
        method="POST",
    )

    try:
        with request.urlopen(req, timeout=RAZORPAY_TIMEOUT_SECONDS) as resp:
            body = resp.read().decode("utf-8")
            return json.loads(body)
    except error.HTTPError as e:
        details = e.read().decode("utf-8", errors="ignore")
        raise ExternalGatewayError(
            f"Razorpay refund failed: {_provider_message(details)}",
            payment_id=payment_id,
            status=e.code,
        )
    except (error.URLError, TimeoutError, ValueError) as e:
        raise ExternalGatewayError(f"Razorpay refund failed: {e}", payment_id=payment_id)


def verify_webhook_signature(*, raw_body: bytes, received_signature: str) -> bool:
    if not RAZORPAY_WEBHOOK_SECRET:
        raise ConfigurationError("Razorpay webhook secret is not configured")
    expected = hmac.new(RAZORPAY_WEBHOOK_SECRET.encode("utf-8"), raw_body, hashlib.sha256).hexdigest()
    return hmac.compare_digest(expected, received_signature or "")
