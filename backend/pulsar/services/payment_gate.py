"""Payment gate: x402 payment requirements, credential decoding and facilitator calls.

Flow used by the submission service:

    requirement = gate.build_requirement(resource_url)
    credential = decode_credential(request.headers["X-PAYMENT"])
    verification = await gate.verify(credential, requirement)
    ...  # validate business input before moving any money
    settlement = await gate.settle(credential, requirement)

``verify`` and ``settle`` POST to the facilitator's ``/verify`` and ``/settle``
endpoints. A transport failure raises ``FacilitatorUnreachableError``. A
facilitator that answers but rejects the payment produces a negative result
(``valid=False`` / ``success=False``) carrying the facilitator's reason;
call ``raise_for_failure()`` on it to turn that into ``VerificationFailedError``
or ``SettlementFailedError``.

The raw credential is never logged; use ``DecodedCredential.summary()``.
"""

import base64
import binascii
import json
import logging
from dataclasses import dataclass, field
from typing import Any

import httpx

from pulsar.errors import (
    FacilitatorUnreachableError,
    MalformedCredentialError,
    SettlementFailedError,
    VerificationFailedError,
)

logger = logging.getLogger(__name__)

X402_VERSION = 1

_DESCRIPTION = (
    "Generate royalty-free instrumental music. Returns 2 unique tracks per request. "
    "Styles: lo-fi, ambient, cinematic, chiptune, synthwave, and more."
)

NO_TRANSACTION_REASON = "Settlement returned no transaction reference"

# Discovery metadata for x402 indexers; stripped before verify/settle.
_BAZAAR_EXTENSION = {
    "bazaar": {
        "info": {
            "input": {
                "type": "http",
                "method": "POST",
                "bodyType": "json",
                "body": {"title": "Stellar Drift", "style": "lo-fi, jazzy, chill beats, relaxed"},
            },
            "output": {
                "type": "json",
                "example": {
                    "success": True,
                    "jobId": "a1b2c3d4e5f6a7b8",
                    "status": "queued",
                    "position": 1,
                    "estimatedWaitSeconds": 90,
                    "statusUrl": "/api/status/a1b2c3d4e5f6a7b8",
                },
            },
        }
    }
}


# ---------------------------------------------------------------------------
# Value types
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class PaymentTerms:
    """Static pricing configuration the requirement is derived from."""

    pay_to: str
    amount: str
    asset: str
    network: str = "base"
    scheme: str = "exact"
    max_timeout_seconds: int = 300
    asset_name: str = "USD Coin"
    asset_version: str = "2"
    description: str = _DESCRIPTION


@dataclass(frozen=True)
class PaymentRequirement:
    scheme: str
    network: str
    amount: str
    pay_to: str
    asset: str
    resource: str
    max_timeout_seconds: int
    description: str = ""
    mime_type: str = "application/json"
    extra: dict[str, str] = field(default_factory=dict)

    def to_dict(self, *, include_extensions: bool = False) -> dict[str, Any]:
        """x402 wire representation.

        ``amount`` and ``maxAmountRequired`` carry the same value so both
        x402 v1 and v2 clients can read it.
        """
        data: dict[str, Any] = {
            "scheme": self.scheme,
            "network": self.network,
            "amount": self.amount,
            "maxAmountRequired": self.amount,
            "resource": self.resource,
            "description": self.description,
            "mimeType": self.mime_type,
            "payTo": self.pay_to,
            "maxTimeoutSeconds": self.max_timeout_seconds,
            "asset": self.asset,
            "extra": dict(self.extra),
        }
        if include_extensions:
            data["extensions"] = _BAZAAR_EXTENSION
        return data


@dataclass(frozen=True)
class DecodedCredential:
    """A parsed ``X-PAYMENT`` header."""

    payload: dict[str, Any]
    header_length: int = 0

    @property
    def scheme(self) -> str | None:
        return self.payload.get("scheme")

    @property
    def network(self) -> str | None:
        return self.payload.get("network")

    @property
    def authorization(self) -> dict[str, Any]:
        inner = self.payload.get("payload")
        if isinstance(inner, dict) and isinstance(inner.get("authorization"), dict):
            return inner["authorization"]
        return {}

    @property
    def claimed_payer(self) -> str | None:
        return self.authorization.get("from") or self.payload.get("from")

    def summary(self) -> dict[str, Any]:
        """Log-safe description: structure only, no signature or nonce values."""
        inner = self.payload.get("payload")
        inner = inner if isinstance(inner, dict) else {}
        return {
            "header_length": self.header_length,
            "top_keys": sorted(self.payload),
            "scheme": self.scheme,
            "network": self.network,
            "payload_keys": sorted(inner),
            "authorization_keys": sorted(self.authorization),
            "has_signature": bool(inner.get("signature")),
            "claimed_payer": self.claimed_payer,
        }


@dataclass(frozen=True)
class VerificationResult:
    valid: bool
    payer: str | None = None
    reason: str | None = None
    status_code: int | None = None

    def raise_for_failure(self) -> None:
        if not self.valid:
            raise VerificationFailedError(
                self.reason or "Payment verification failed", self.status_code
            )


@dataclass(frozen=True)
class SettlementResult:
    success: bool
    tx_ref: str | None = None
    payer: str | None = None
    network: str | None = None
    reason: str | None = None
    status_code: int | None = None

    def raise_for_failure(self) -> None:
        if not self.success:
            raise SettlementFailedError(self.reason or "Payment settlement failed", self.status_code)
        if not self.tx_ref:
            raise SettlementFailedError(NO_TRANSACTION_REASON, self.status_code)


# ---------------------------------------------------------------------------
# Credential decoding
# ---------------------------------------------------------------------------


def decode_credential(raw: str) -> DecodedCredential:
    """Decode a base64 JSON ``X-PAYMENT`` header value.

    Accepts standard and URL-safe alphabets with or without padding.

    Raises:
        MalformedCredentialError: not base64, not UTF-8 JSON, or not a JSON object.
    """
    value = (raw or "").strip()
    if not value:
        raise MalformedCredentialError("Payment header is empty")

    padded = value + "=" * (-len(value) % 4)
    try:
        if "-" in value or "_" in value:
            decoded = base64.urlsafe_b64decode(padded)
        else:
            decoded = base64.b64decode(padded, validate=True)
        payload = json.loads(decoded.decode("utf-8"))
    except (binascii.Error, ValueError) as exc:
        # json.JSONDecodeError and UnicodeDecodeError are both ValueErrors
        raise MalformedCredentialError(f"Payment header is not base64 JSON: {exc}") from exc

    if not isinstance(payload, dict):
        raise MalformedCredentialError("Payment payload must be a JSON object")
    return DecodedCredential(payload=payload, header_length=len(value))


def encode_settlement_header(settlement: SettlementResult) -> str:
    """Build the base64 ``X-PAYMENT-RESPONSE`` header value."""
    body = {
        "success": settlement.success,
        "transaction": settlement.tx_ref,
        "network": settlement.network,
        "payer": settlement.payer,
    }
    return base64.b64encode(json.dumps(body).encode("utf-8")).decode("ascii")


def _failure_reason(data: dict[str, Any], *keys: str, default: str) -> str:
    for key in keys:
        value = data.get(key)
        if value:
            return str(value)
    return default


# ---------------------------------------------------------------------------
# Gate
# ---------------------------------------------------------------------------


class PaymentGate:
    """Builds payment requirements and talks to the x402 facilitator."""

    def __init__(
        self,
        terms: PaymentTerms,
        facilitator_url: str,
        *,
        api_key: str = "",
        timeout: float = 30.0,
    ) -> None:
        self._terms = terms
        self._facilitator_url = facilitator_url.rstrip("/")
        self._api_key = api_key
        self._timeout = timeout

    @property
    def terms(self) -> PaymentTerms:
        return self._terms

    def build_requirement(self, resource: str) -> PaymentRequirement:
        """Derive the requirement for ``resource`` from the configured terms."""
        t = self._terms
        return PaymentRequirement(
            scheme=t.scheme,
            network=t.network,
            amount=t.amount,
            pay_to=t.pay_to,
            asset=t.asset,
            resource=resource,
            max_timeout_seconds=t.max_timeout_seconds,
            description=t.description,
            extra={"name": t.asset_name, "version": t.asset_version},
        )

    async def verify(
        self, credential: DecodedCredential, requirement: PaymentRequirement
    ) -> VerificationResult:
        status_code, data = await self._post("verify", credential, requirement)
        if status_code >= 400 or not data.get("isValid"):
            return VerificationResult(
                valid=False,
                payer=data.get("payer"),
                reason=_failure_reason(
                    data,
                    "invalidReason",
                    "error",
                    "message",
                    default=f"Payment verification failed ({status_code})",
                ),
                status_code=status_code,
            )
        return VerificationResult(valid=True, payer=data.get("payer"), status_code=status_code)

    async def settle(
        self, credential: DecodedCredential, requirement: PaymentRequirement
    ) -> SettlementResult:
        status_code, data = await self._post("settle", credential, requirement)
        if status_code >= 400 or not data.get("success"):
            return SettlementResult(
                success=False,
                payer=data.get("payer"),
                reason=_failure_reason(
                    data,
                    "errorReason",
                    "error",
                    "message",
                    default="Payment settlement failed",
                ),
                status_code=status_code,
            )
        if not data.get("transaction"):
            return SettlementResult(
                success=False,
                payer=data.get("payer"),
                reason=NO_TRANSACTION_REASON,
                status_code=status_code,
            )
        return SettlementResult(
            success=True,
            tx_ref=data["transaction"],
            payer=data.get("payer"),
            network=data.get("network") or requirement.network,
            status_code=status_code,
        )

    async def _post(
        self,
        action: str,
        credential: DecodedCredential,
        requirement: PaymentRequirement,
    ) -> tuple[int, dict[str, Any]]:
        """POST to the facilitator and return ``(status_code, json_body)``."""
        url = f"{self._facilitator_url}/{action}"
        body = {
            "x402Version": X402_VERSION,
            "paymentPayload": credential.payload,
            "paymentRequirements": requirement.to_dict(),
        }
        headers = {"Content-Type": "application/json"}
        if self._api_key:
            headers["Authorization"] = f"Bearer {self._api_key}"

        try:
            async with httpx.AsyncClient(timeout=self._timeout) as client:
                resp = await client.post(url, json=body, headers=headers)
        except httpx.HTTPError as exc:
            logger.error("Facilitator %s unreachable: %s", action, exc)
            raise FacilitatorUnreachableError(f"Payment facilitator unreachable: {exc}") from exc

        try:
            data = resp.json() if resp.text else {}
        except ValueError:
            data = {"raw": resp.text}
        if not isinstance(data, dict):
            data = {"raw": data}

        logger.info(
            "Facilitator %s returned %d",
            action,
            resp.status_code,
            extra={"facilitator_action": action, "facilitator_status": resp.status_code},
        )
        return resp.status_code, data


# ---------------------------------------------------------------------------
# Singleton factory
# ---------------------------------------------------------------------------

_payment_gate: PaymentGate | None = None


def get_payment_gate() -> PaymentGate:
    """Return the module-level PaymentGate built from app settings."""
    global _payment_gate
    if _payment_gate is None:
        from pulsar.config import settings

        _payment_gate = PaymentGate(
            PaymentTerms(
                pay_to=settings.pay_to,
                amount=settings.price_atomic,
                asset=settings.asset_address,
                network=settings.payment_network,
                scheme=settings.payment_scheme,
                max_timeout_seconds=settings.max_timeout_seconds,
                asset_name=settings.asset_name,
                asset_version=settings.asset_version,
            ),
            settings.facilitator_url,
            api_key=settings.facilitator_api_key,
            timeout=settings.facilitator_timeout_seconds,
        )
    return _payment_gate
