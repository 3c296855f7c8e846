"""
Webhook signature validation - verify incoming delivery reports are authentic.

Supported schemes:
- Meta: HMAC-SHA256 via X-Hub-Signature-256 ("sha256=" prefix)
- Gupshup: HMAC-SHA256 via X-Gupshup-Signature
- Twilio: HMAC-SHA1 via X-Twilio-Signature (RequestValidator, needs public URL)
- Generic implementers: HMAC-SHA256 via X-Webhook-Signature
- Any provider: "Authorization: Bearer <secret>" when no signature header is sent
"""
import hashlib
import hmac
import logging
from typing import Mapping, Optional, Union

from pydantic import BaseModel, ConfigDict, Field

logger = logging.getLogger(__name__)

SCHEME_HMAC_SHA256 = "hmac_sha256"
SCHEME_TWILIO = "twilio"
SCHEME_BEARER = "bearer"

# provider -> (signature header, scheme)
PROVIDER_SIGNATURES: dict[str, tuple[str, str]] = {
    "meta": ("X-Hub-Signature-256", SCHEME_HMAC_SHA256),
    "gupshup": ("X-Gupshup-Signature", SCHEME_HMAC_SHA256),
    "twilio": ("X-Twilio-Signature", SCHEME_TWILIO),
    "generic": ("X-Webhook-Signature", SCHEME_HMAC_SHA256),
}
_DEFAULT_SIGNATURE = PROVIDER_SIGNATURES["generic"]


def validate_twilio_signature(
    auth_token: str,
    signature: str,
    url: str,
    params: Union[dict, str],
) -> bool:
    """
    Validate Twilio webhook signature using their RequestValidator.
    params is the form dict, or the raw body string for JSON callbacks.
    Returns True if valid, False if invalid or on error.
    """
    if not signature:
        logger.warning("Missing X-Twilio-Signature header")
        return False

    try:
        from twilio.request_validator import RequestValidator
        validator = RequestValidator(auth_token)
        return validator.validate(url, params, signature)
    except Exception as e:
        logger.error("Twilio signature validation error: %s", str(e))
        return False


def validate_hmac_sha256(
    secret: str,
    signature: str,
    body: bytes,
    header_prefix: str = "sha256=",
) -> bool:
    """
    Validate generic HMAC-SHA256 webhook signature.
    Handles signatures with optional prefix (e.g., "sha256=...").
    Returns True if valid, False if invalid.
    """
    if not secret or not signature:
        return False

    sig = signature
    if sig.startswith(header_prefix):
        sig = sig[len(header_prefix):]

    try:
        expected = hmac.new(
            secret.encode("utf-8"),
            body,
            hashlib.sha256,
        ).hexdigest()
        return hmac.compare_digest(expected, sig.strip().lower())
    except Exception as e:
        logger.error("HMAC-SHA256 validation error: %s", str(e))
        return False


def validate_bearer_token(secret: str, authorization: str) -> bool:
    """Constant-time comparison of an "Authorization: Bearer <token>" header."""
    if not secret or not authorization:
        return False
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token:
        return False
    return hmac.compare_digest(token.strip().encode("utf-8"), secret.encode("utf-8"))


async def get_webhook_url(request) -> str:
    """
    Reconstruct the public URL for Twilio signature validation.
    Behind a reverse proxy, request.url is the internal URL but Twilio
    signs against the public one, so X-Forwarded-Proto/Host win.
    """
    proto = request.headers.get("x-forwarded-proto", "https")
    host = request.headers.get("x-forwarded-host") or request.headers.get("host", "")
    path = request.url.path
    query = request.url.query
    base = f"{proto}://{host}{path}"
    if query:
        return f"{base}?{query}"
    return base


def _get_header(headers: Mapping[str, str], name: str) -> str:
    wanted = name.lower()
    for key, value in headers.items():
        if key.lower() == wanted:
            return value or ""
    return ""


class WebhookSecurityConfig(BaseModel):
    """Secrets and policy the verifier is built with. Assembled at the HTTP edge."""
    model_config = ConfigDict(frozen=True)

    secrets: dict[str, str] = Field(default_factory=dict)  # provider -> secret
    fallback_secret: str = ""
    verify_token: str = ""
    require_signatures: bool = False

    @classmethod
    def from_settings(cls, settings) -> "WebhookSecurityConfig":
        return cls(
            secrets={
                "gupshup": settings.webhook_secret_gupshup,
                "meta": settings.webhook_secret_meta,
                "twilio": settings.twilio_auth_token,
                "generic": settings.webhook_secret,
            },
            fallback_secret=settings.webhook_secret,
            verify_token=settings.webhook_verify_token,
            require_signatures=settings.require_webhook_signatures,
        )

    def secret_for(self, provider: str) -> str:
        return self.secrets.get(provider) or self.fallback_secret


class SignatureResult(BaseModel):
    """Outcome of one verification. authenticated=False means no secret was checked."""
    valid: bool
    scheme: Optional[str] = None
    authenticated: bool = False
    header: Optional[str] = None
    signature: Optional[str] = None

    @property
    def receipt_flag(self) -> Optional[bool]:
        """Tri-state for WebhookReceipt.signature_valid: None when nothing was verified."""
        if self.valid and not self.authenticated:
            return None
        return self.valid


class SignatureVerifier:
    """Per-provider webhook verification. Pure over its inputs and config."""

    def __init__(self, config: WebhookSecurityConfig):
        self.config = config

    def verify(
        self,
        provider: str,
        raw_body: bytes,
        headers: Mapping[str, str],
        url: Optional[str] = None,
        params: Union[dict, str, None] = None,
    ) -> SignatureResult:
        header_name, scheme = PROVIDER_SIGNATURES.get(provider, _DEFAULT_SIGNATURE)
        secret = self.config.secret_for(provider)

        if not secret:
            if self.config.require_signatures:
                logger.error(
                    "No webhook secret configured for provider '%s' - rejecting",
                    provider, extra={"provider": provider},
                )
                return SignatureResult(valid=False)
            logger.warning(
                "No webhook secret configured for provider '%s' - accepting unauthenticated webhook",
                provider, extra={"provider": provider},
            )
            return SignatureResult(valid=True, authenticated=False)

        signature = _get_header(headers, header_name)
        if signature:
            if scheme == SCHEME_TWILIO:
                if not url:
                    logger.warning("Twilio signature present but no public URL to validate against")
                    valid = False
                else:
                    twilio_params = params if params is not None else raw_body.decode("utf-8", errors="replace")
                    valid = validate_twilio_signature(secret, signature, url, twilio_params)
            else:
                valid = validate_hmac_sha256(secret, signature, raw_body)
            return SignatureResult(
                valid=valid, scheme=scheme, authenticated=True,
                header=header_name, signature=signature,
            )

        authorization = _get_header(headers, "Authorization")
        if authorization:
            valid = validate_bearer_token(secret, authorization)
            return SignatureResult(
                valid=valid, scheme=SCHEME_BEARER, authenticated=True,
                header="Authorization", signature=None,
            )

        logger.warning(
            "Webhook from '%s' carried no %s or Authorization header",
            provider, header_name, extra={"provider": provider},
        )
        return SignatureResult(valid=False, scheme=scheme, authenticated=True, header=header_name)
