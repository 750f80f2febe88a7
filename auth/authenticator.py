"""
Authentication module — certificate, client-secret and delegated auth.
Uses MSAL for token acquisition against Microsoft Identity Platform.
"""

from __future__ import annotations

import asyncio
import base64
import binascii
import getpass
import logging
import os
import time
from typing import Optional

from cryptography.hazmat.primitives.serialization import pkcs12, Encoding, PrivateFormat, NoEncryption
from cryptography.hazmat.primitives.hashes import SHA1
import msal

from ..config import (
    AuthConfig,
    LOGIN_AUTHORITY,
    REQUIRED_PERMISSIONS,
    TOKEN_EXPIRY_SKEW_SECONDS,
)

logger = logging.getLogger("m365_admin.auth")

# Default scopes for app-only auth
APP_SCOPES = ["https://graph.microsoft.com/.default"]


class AuthenticationError(Exception):
    """Raised when authentication fails."""
    pass


def read_pfx(cert_path: str) -> bytes:
    """PFX bytes from a binary .pfx or a base64 text export of one."""
    try:
        with open(cert_path, "rb") as f:
            raw = f.read()
    except FileNotFoundError:
        raise AuthenticationError(
            f"Certificate file not found: {cert_path}. "
            "Point --cert-path at a PFX or base64-encoded PFX."
        )
    except OSError as e:
        raise AuthenticationError(f"Cannot read certificate file {cert_path}: {e}")

    try:
        return base64.b64decode(b"".join(raw.split()), validate=True)
    except (binascii.Error, ValueError):
        # Not base64 text: a DER-encoded PFX as exported by Windows
        return raw


def load_certificate(cert_path: str, password: str) -> tuple[str, str]:
    """
    Load a PFX (binary or base64-encoded).
    Returns (private_key_pem, sha1_thumbprint_hex).
    """
    cert_bytes = read_pfx(cert_path)
    try:
        password_bytes = password.encode("utf-8") if password else None
        private_key, certificate, _ = pkcs12.load_key_and_certificates(
            cert_bytes, password_bytes
        )
    except ValueError as e:
        raise AuthenticationError(f"Failed to load certificate: {e}")

    if private_key is None or certificate is None:
        raise AuthenticationError("Certificate file holds no private key/certificate pair.")

    private_key_pem = private_key.private_bytes(
        Encoding.PEM, PrivateFormat.PKCS8, NoEncryption()
    ).decode("utf-8")
    thumbprint = certificate.fingerprint(SHA1()).hex()
    return private_key_pem, thumbprint


class Authenticator:
    """
    Handles MSAL-based authentication for Microsoft Graph.
    Supports:
      - Certificate-based app-only authentication
      - Client-secret app-only authentication
      - Delegated interactive authentication (device code flow)
    Tokens are cached until shortly before they expire.
    """

    def __init__(self, config: AuthConfig):
        self.config = config
        self._access_token: Optional[str] = None
        self._token_expiry: Optional[float] = None
        self._app: Optional[msal.ClientApplication] = None

    async def acquire_token(self) -> str:
        """Acquire an access token based on configured auth mode."""
        if self._access_token and self._token_expiry and time.time() < self._token_expiry:
            return self._access_token

        acquire = {
            "certificate": self._acquire_certificate_token,
            "secret": self._acquire_secret_token,
            "delegated": self._acquire_delegated_token,
        }.get(self.config.mode)
        if acquire is None:
            raise AuthenticationError(f"Unknown auth mode: {self.config.mode}")

        # MSAL calls block
        result = await asyncio.to_thread(acquire)
        return self._store(result)

    def _store(self, result: dict) -> str:
        if "access_token" not in result:
            error = result.get("error_description", result.get("error", "Unknown"))
            raise AuthenticationError(f"{self.config.mode.capitalize()} auth failed: {error}")

        self._access_token = result["access_token"]
        expires_in = int(result.get("expires_in", 3600))
        self._token_expiry = time.time() + max(0, expires_in - TOKEN_EXPIRY_SKEW_SECONDS)
        logger.info(f"{self.config.mode.capitalize()} authentication successful.")
        return self._access_token

    def _acquire_certificate_token(self) -> dict:
        """Acquire token using certificate-based client credentials."""
        cert_config = self.config.certificate
        if not cert_config:
            raise AuthenticationError("Certificate auth config not provided.")

        if self._app is None:
            logger.info("Authenticating with certificate-based app credentials...")
            password = cert_config.certificate_password
            if not password:
                password = os.environ.get("M365_CERT_PASSWORD", "")
            if not password:
                password = getpass.getpass("Enter the certificate password: ")

            private_key_pem, thumbprint = load_certificate(
                cert_config.certificate_path, password
            )
            logger.info(f"Certificate loaded. Thumbprint: {thumbprint}")

            self._app = msal.ConfidentialClientApplication(
                client_id=cert_config.client_id,
                authority=f"{LOGIN_AUTHORITY}/{cert_config.tenant_id}",
                client_credential={
                    "thumbprint": thumbprint,
                    "private_key": private_key_pem,
                },
            )

        return self._app.acquire_token_for_client(scopes=APP_SCOPES)

    def _acquire_secret_token(self) -> dict:
        """Acquire token using a client secret."""
        secret_config = self.config.secret
        if not secret_config:
            raise AuthenticationError("Client secret auth config not provided.")

        client_secret = secret_config.client_secret or os.environ.get("AZURE_CLIENT_SECRET", "")
        if not client_secret:
            raise AuthenticationError(
                "No client secret configured. Set AZURE_CLIENT_SECRET or add it to the config file."
            )

        if self._app is None:
            logger.info("Authenticating with client secret...")
            self._app = msal.ConfidentialClientApplication(
                client_id=secret_config.client_id,
                authority=f"{LOGIN_AUTHORITY}/{secret_config.tenant_id}",
                client_credential=client_secret,
            )

        return self._app.acquire_token_for_client(scopes=APP_SCOPES)

    def _acquire_delegated_token(self) -> dict:
        """Acquire token using delegated (device code) flow."""
        deleg_config = self.config.delegated
        if not deleg_config:
            raise AuthenticationError("Delegated auth config not provided.")

        if self._app is None:
            self._app = msal.PublicClientApplication(
                client_id=deleg_config.client_id,
                authority=f"{LOGIN_AUTHORITY}/{deleg_config.tenant_id}",
            )

        # Silent refresh from the MSAL cache after the first sign-in
        accounts = self._app.get_accounts()
        if accounts:
            result = self._app.acquire_token_silent(deleg_config.scopes, account=accounts[0])
            if result and "access_token" in result:
                return result

        logger.info("Initiating device code authentication flow...")
        flow = self._app.initiate_device_flow(scopes=deleg_config.scopes)
        if "user_code" not in flow:
            raise AuthenticationError(
                f"Device code flow failed: {flow.get('error_description', 'Unknown')}"
            )

        print(f"\n{'='*60}")
        print(f"  To sign in, open: {flow['verification_uri']}")
        print(f"  Enter code: {flow['user_code']}")
        print(f"{'='*60}\n")

        return self._app.acquire_token_by_device_flow(flow)

    @property
    def access_token(self) -> Optional[str]:
        return self._access_token

    @staticmethod
    def list_required_permissions() -> dict[str, str]:
        """Return the map of required Graph API permissions."""
        return REQUIRED_PERMISSIONS
