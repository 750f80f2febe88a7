"""
Configuration module for the M365 Admin Toolkit.
Defines tunable thresholds, Graph API settings, and authentication options.
"""

from __future__ import annotations

import os
import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional
from datetime import datetime

from dotenv import load_dotenv


class ConfigError(Exception):
    """Raised when configuration is missing or malformed."""
    pass


# ─── Tenant Authentication ───────────────────────────────────────────────────

@dataclass
class CertificateAuth:
    """Certificate-based app-only authentication configuration."""
    tenant_id: str
    client_id: str
    certificate_path: str          # Path to base64-encoded PFX
    certificate_password: str = "" # Will be prompted if empty
    thumbprint: str = ""

@dataclass
class SecretAuth:
    """Client-secret app-only authentication configuration."""
    tenant_id: str
    client_id: str
    client_secret: str = ""

@dataclass
class DelegatedAuth:
    """Delegated (interactive) authentication configuration."""
    tenant_id: str
    client_id: str
    scopes: list[str] = field(default_factory=lambda: [
        "https://graph.microsoft.com/.default"
    ])

@dataclass
class AuthConfig:
    """Authentication configuration — certificate, secret, or delegated."""
    mode: str = "certificate"
    certificate: Optional[CertificateAuth] = None
    secret: Optional[SecretAuth] = None
    delegated: Optional[DelegatedAuth] = None


AUTH_MODES = ("certificate", "secret", "delegated")


# ─── Graph API Settings ─────────────────────────────────────────────────────

GRAPH_BASE_URL = "https://graph.microsoft.com"
GRAPH_API_VERSION = "v1.0"
GRAPH_BETA_VERSION = "beta"
LOGIN_AUTHORITY = "https://login.microsoftonline.com"

# Rate limiting / throttling
MAX_CONCURRENT_REQUESTS = 4
MAX_RETRIES = 5
INITIAL_BACKOFF_SECONDS = 2.0
MAX_BACKOFF_SECONDS = 120.0
BACKOFF_MULTIPLIER = 2.0

# Pagination
DEFAULT_PAGE_SIZE = 999
MAX_PAGES_PER_ENDPOINT = 10000

# Graph $batch max is 20 requests
BATCH_SIZE = 20

# Tokens are refreshed this many seconds before they actually expire
TOKEN_EXPIRY_SKEW_SECONDS = 300


# ─── Task Settings ──────────────────────────────────────────────────────────

@dataclass
class TaskConfig:
    """Thresholds and switches shared by the admin tasks."""
    inactive_days: int = 90
    include_disabled: bool = False
    include_guests: bool = False
    guest_inactive_days: int = 90
    guest_pending_days: int = 30
    guest_excluded_domains: list[str] = field(default_factory=list)
    guest_excluded_users: list[str] = field(default_factory=list)
    max_deletions: int = 50
    stale_device_days: int = 30
    password_max_age_days: int = 90
    password_warning_days: int = 14
    password_length: int = 16
    force_change_password: bool = True
    revoke_sessions: bool = False
    include_user_licenses: bool = False
    quiet_start_hour: int = 22
    quiet_end_hour: int = 7
    default_timezone: str = "UTC"


# ─── Health Score Weights ───────────────────────────────────────────────────

@dataclass
class HealthWeights:
    """Relative weight of each category in the tenant health score."""
    mfa_coverage: float = 0.25
    conditional_access: float = 0.20
    device_compliance: float = 0.20
    inactive_accounts: float = 0.15
    license_utilization: float = 0.10
    guest_hygiene: float = 0.10

    def as_dict(self) -> dict[str, float]:
        return {
            "mfa_coverage": self.mfa_coverage,
            "conditional_access": self.conditional_access,
            "device_compliance": self.device_compliance,
            "inactive_accounts": self.inactive_accounts,
            "license_utilization": self.license_utilization,
            "guest_hygiene": self.guest_hygiene,
        }


# ─── Output Configuration ───────────────────────────────────────────────────

@dataclass
class OutputConfig:
    """Output directory and format settings."""
    base_dir: str = ""
    timestamp: str = ""
    formats: list[str] = field(default_factory=lambda: ["json", "csv"])

    def __post_init__(self):
        if not self.timestamp:
            self.timestamp = datetime.utcnow().strftime("%Y%m%dT%H%M%SZ")
        if not self.base_dir:
            self.base_dir = os.path.join(os.getcwd(), "m365_admin_output")

    @property
    def run_dir(self) -> Path:
        return Path(self.base_dir)

    @property
    def journal_dir(self) -> Path:
        return self.run_dir / ".journal"


# ─── Monitoring Proxy ───────────────────────────────────────────────────────

@dataclass
class ProxyConfig:
    """Grafana JSON datasource / Graph proxy settings."""
    host: str = "0.0.0.0"
    port: int = 3001
    active_days: int = 30


# ─── Master Configuration ───────────────────────────────────────────────────

@dataclass
class ToolkitConfig:
    """Top-level configuration for the toolkit."""
    auth: AuthConfig = field(default_factory=AuthConfig)
    tasks: TaskConfig = field(default_factory=TaskConfig)
    weights: HealthWeights = field(default_factory=HealthWeights)
    output: OutputConfig = field(default_factory=OutputConfig)
    proxy: ProxyConfig = field(default_factory=ProxyConfig)
    journal_enabled: bool = True
    cache_ttl_hours: int = 1
    apply: bool = False
    verbose: bool = False

    @classmethod
    def from_file(cls, path: str | Path) -> "ToolkitConfig":
        """Load configuration from a JSON file."""
        try:
            with open(path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            raise ConfigError(f"Cannot read config file {path}: {e}")

        config = cls()
        if "auth" in data:
            auth_data = data["auth"]
            config.auth.mode = auth_data.get("mode", "certificate")
            try:
                if "certificate" in auth_data:
                    c = auth_data["certificate"]
                    config.auth.certificate = CertificateAuth(
                        tenant_id=c["tenant_id"],
                        client_id=c["client_id"],
                        certificate_path=c.get("certificate_path", "./base64.txt"),
                        certificate_password=c.get("certificate_password", ""),
                        thumbprint=c.get("thumbprint", ""),
                    )
                if "secret" in auth_data:
                    s = auth_data["secret"]
                    config.auth.secret = SecretAuth(
                        tenant_id=s["tenant_id"],
                        client_id=s["client_id"],
                        client_secret=s.get("client_secret", ""),
                    )
                if "delegated" in auth_data:
                    d = auth_data["delegated"]
                    config.auth.delegated = DelegatedAuth(
                        tenant_id=d["tenant_id"],
                        client_id=d["client_id"],
                    )
            except KeyError as e:
                raise ConfigError(f"Missing auth setting in {path}: {e}")
            if config.auth.mode not in AUTH_MODES:
                raise ConfigError(f"Unknown auth mode: {config.auth.mode}")

        for section, target in (
            ("tasks", config.tasks),
            ("weights", config.weights),
            ("output", config.output),
            ("proxy", config.proxy),
        ):
            for k, v in data.get(section, {}).items():
                if hasattr(target, k):
                    setattr(target, k, v)

        config.journal_enabled = data.get("journal_enabled", True)
        config.cache_ttl_hours = data.get("cache_ttl_hours", 1)
        config.verbose = data.get("verbose", False)
        return config

    @classmethod
    def from_env(cls, dotenv_path: Optional[str] = None) -> "ToolkitConfig":
        """
        Build configuration from environment variables (and a .env file).
        Client-secret mode is selected when AZURE_CLIENT_SECRET is present.
        """
        load_dotenv(dotenv_path)
        config = cls()
        tenant_id = os.environ.get("AZURE_TENANT_ID", "")
        client_id = os.environ.get("AZURE_CLIENT_ID", "")
        client_secret = os.environ.get("AZURE_CLIENT_SECRET", "")

        if tenant_id and client_id:
            if client_secret:
                config.auth.mode = "secret"
                config.auth.secret = SecretAuth(tenant_id, client_id, client_secret)
            else:
                config.auth.certificate = CertificateAuth(
                    tenant_id=tenant_id,
                    client_id=client_id,
                    certificate_path=os.environ.get("M365_CERT_PATH", "./base64.txt"),
                )

        port = os.environ.get("PORT")
        if port:
            try:
                config.proxy.port = int(port)
            except ValueError:
                raise ConfigError(f"PORT must be an integer, got {port!r}")
        return config


# ─── Graph API Permissions (Least Privilege per Task) ─────────────────────

REQUIRED_PERMISSIONS = {
    # Reports
    "User.Read.All": "Read user profiles and license assignments",
    "AuditLog.Read.All": "Read signInActivity for inactive-user and guest reports",
    "Reports.Read.All": "Read usage reports and MFA registration details",
    "Organization.Read.All": "Read subscribed SKUs",
    "Policy.Read.All": "Read Conditional Access policies",
    "DeviceManagementManagedDevices.Read.All": "Read Intune managed devices",

    # Mutating tasks (only used with --apply)
    "User.ReadWrite.All": "Delete guests, remove licenses",
    "User-PasswordProfile.ReadWrite.All": "Reset user passwords",
    "Mail.Send": "Send password expiry notifications",
}

# Permissions each mutating task needs on top of the read set
WRITE_PERMISSIONS = {
    "license-remove": ["User.ReadWrite.All"],
    "guest-cleanup": ["User.ReadWrite.All"],
    "password-reset": ["User-PasswordProfile.ReadWrite.All"],
    "password-expiry-notify": ["Mail.Send"],
}
