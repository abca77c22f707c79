"""
Signed payload verification for App Store JWS data.

Apple signs App Store Server Notifications v2 and StoreKit 2 transactions as
compact JWS tokens with an ES256 signature and an x5c certificate chain in the
header. Chain building against the trusted roots, Apple's marker extensions,
OCSP revocation checks, the signature and the app identity are all checked by
appstoreserverlibrary's SignedDataVerifier.

The library binds each verifier to one App Store environment, so one verifier
is kept per environment and a payload is routed by the environment it claims;
the library then confirms that claim on the signed data.
"""

from collections.abc import Sequence
from pathlib import Path

import jwt
from appstoreserverlibrary.models.Environment import Environment
from appstoreserverlibrary.signed_data_verifier import SignedDataVerifier, VerificationException
from cryptography import x509
from cryptography.hazmat.primitives import serialization
from structlog import get_logger

from adfree.config import Settings
from adfree.exceptions import SignatureVerificationError
from adfree.models.apple import AppleNotification, AppleSignedTransaction

logger = get_logger(__name__)

_SUPPORTED_ENVIRONMENTS = (Environment.PRODUCTION, Environment.SANDBOX)


def load_certificate(data: bytes) -> x509.Certificate:
    """Load a PEM or DER encoded certificate."""
    if b"-----BEGIN CERTIFICATE-----" in data:
        return x509.load_pem_x509_certificate(data)
    return x509.load_der_x509_certificate(data)


def _unverified_claims(token: object) -> dict[str, object]:
    if not isinstance(token, str) or token.count(".") != 2:
        raise SignatureVerificationError("Not a compact JWS token")
    try:
        jwt.get_unverified_header(token)
        claims: dict[str, object] = jwt.decode(token, options={"verify_signature": False})
    except jwt.exceptions.InvalidTokenError as exc:
        raise SignatureVerificationError(f"Malformed JWS: {exc}") from exc
    return claims


def _rejected(what: str, exc: VerificationException) -> SignatureVerificationError:
    status = getattr(exc, "status", None)
    reason = status.name if status is not None else "VERIFICATION_FAILURE"
    return SignatureVerificationError(f"{what} failed verification: {reason}")


class SignedPayloadVerifier:
    """Verifies App Store JWS payloads and maps them into our models."""

    def __init__(
        self,
        root_certificates: Sequence[bytes],
        bundle_id: str,
        app_apple_id: int | None = None,
        enable_online_checks: bool = True,
    ) -> None:
        roots = [
            load_certificate(data).public_bytes(serialization.Encoding.DER)
            for data in root_certificates
        ]
        self.bundle_id = bundle_id
        self._has_roots = bool(roots)
        self._verifiers: dict[Environment, SignedDataVerifier] = {
            Environment.SANDBOX: SignedDataVerifier(
                roots, enable_online_checks, Environment.SANDBOX, bundle_id
            ),
        }
        # The library requires the numeric app id to verify production data
        if app_apple_id is not None:
            self._verifiers[Environment.PRODUCTION] = SignedDataVerifier(
                roots, enable_online_checks, Environment.PRODUCTION, bundle_id, app_apple_id
            )
        else:
            logger.warning("production_payloads_unverifiable", reason="apple_app_apple_id not set")

        if not roots:
            logger.warning("signed_payload_verifier_has_no_trusted_roots")

    @classmethod
    def from_settings(cls, settings: Settings) -> "SignedPayloadVerifier":
        return cls(
            root_certificates=[
                Path(path).read_bytes() for path in settings.apple_root_certificate_paths
            ],
            bundle_id=settings.apple_bundle_id,
            app_apple_id=settings.apple_app_apple_id,
            enable_online_checks=settings.apple_enable_online_checks,
        )

    def _verifier_for(self, claimed: object) -> SignedDataVerifier:
        if not self._has_roots:
            raise SignatureVerificationError("No trusted root certificates configured")
        try:
            environment = Environment(str(claimed or Environment.PRODUCTION.value))
        except ValueError:
            environment = None
        if environment not in _SUPPORTED_ENVIRONMENTS:
            raise SignatureVerificationError(f"Unsupported App Store environment {claimed!r}")
        verifier = self._verifiers.get(environment)
        if verifier is None:
            raise SignatureVerificationError(f"{environment.value} payloads cannot be verified here")
        return verifier

    def verify_transaction(self, signed_transaction: str) -> AppleSignedTransaction:
        """
        Verify a signedTransactionInfo JWS and parse it.

        Raises:
            SignatureVerificationError: If the token cannot be authenticated
        """
        claims = _unverified_claims(signed_transaction)
        verifier = self._verifier_for(claims.get("environment"))
        try:
            decoded = verifier.verify_and_decode_signed_transaction(signed_transaction)
        except VerificationException as exc:
            raise _rejected("Signed transaction", exc) from exc

        try:
            return AppleSignedTransaction.from_decoded(decoded)
        except ValueError as exc:
            raise SignatureVerificationError(f"Incomplete transaction payload: {exc}") from exc

    def verify_notification(self, signed_payload: str) -> AppleNotification:
        """Verify a notification signedPayload and its nested signed transaction."""
        claims = _unverified_claims(signed_payload)
        scope = claims.get("data") or claims.get("summary")
        claimed = scope.get("environment") if isinstance(scope, dict) else None

        try:
            decoded = self._verifier_for(claimed).verify_and_decode_notification(signed_payload)
        except VerificationException as exc:
            raise _rejected("Notification", exc) from exc

        transaction: AppleSignedTransaction | None = None
        if decoded.data is not None and decoded.data.signedTransactionInfo:
            transaction = self.verify_transaction(decoded.data.signedTransactionInfo)

        try:
            return AppleNotification.from_decoded(decoded, transaction, self.bundle_id)
        except ValueError as exc:
            raise SignatureVerificationError(f"Incomplete notification payload: {exc}") from exc
