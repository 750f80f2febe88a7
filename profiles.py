"""
Tenant profiles for multi-tenant administration.

Profiles are stored in:
    ~/.m365_admin/profiles.json

Each profile names the tenant, the app registration and the auth mode to sign
in with. Admins looking after several tenants switch between them with
`--profile <name>`. Profiles are checked when they are added; a bad entry
already on disk is skipped with a warning instead of hiding the others.
"""

from __future__ import annotations

import json
import re
import uuid
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

from .config import AUTH_MODES


CONFIG_DIR = Path.home() / ".m365_admin"
PROFILES_FILENAME = "profiles.json"

_NAME_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]{0,63}$")
_DOMAIN_RE = re.compile(r"^(?=.{4,253}$)([A-Za-z0-9]([A-Za-z0-9-]{0,61}[A-Za-z0-9])?\.)+[A-Za-z]{2,63}$")


def profiles_file() -> Path:
    return CONFIG_DIR / PROFILES_FILENAME


def is_guid(value: str) -> bool:
    try:
        uuid.UUID(value)
    except (ValueError, AttributeError, TypeError):
        return False
    return True


@dataclass
class TenantProfile:
    """A named tenant and the app registration used to reach it."""
    name: str
    tenant_id: str                     # GUID or verified domain (contoso.onmicrosoft.com)
    client_id: str                     # App registration GUID
    auth_mode: str = "certificate"
    cert_path: str = ""                # PFX or base64 PFX, certificate mode only
    tenant_display_name: str = ""
    notes: str = ""

    def __post_init__(self):
        self.name = self.name.strip()
        self.tenant_id = self.tenant_id.strip().lower()
        self.client_id = self.client_id.strip().lower()
        if self.auth_mode not in AUTH_MODES:
            raise ValueError(
                f"Unknown auth mode {self.auth_mode!r}; expected one of {', '.join(AUTH_MODES)}"
            )

    @classmethod
    def from_dict(cls, name: str, data: dict) -> "TenantProfile":
        return cls(
            name=name,
            tenant_id=data["tenant_id"],
            client_id=data["client_id"],
            auth_mode=data.get("auth_mode", "certificate"),
            cert_path=data.get("cert_path", ""),
            tenant_display_name=data.get("tenant_display_name", ""),
            notes=data.get("notes", ""),
        )

    def to_dict(self) -> dict:
        data = {
            "tenant_id": self.tenant_id,
            "client_id": self.client_id,
            "auth_mode": self.auth_mode,
        }
        # Optional fields are written only when set
        for key in ("cert_path", "tenant_display_name", "notes"):
            if getattr(self, key):
                data[key] = getattr(self, key)
        return data

    def problems(self) -> list[str]:
        """Everything that would stop this profile from signing in."""
        found = []
        if not _NAME_RE.match(self.name):
            found.append(
                f"profile name {self.name!r} may only use letters, digits, '.', '_' and '-'"
            )
        if not (is_guid(self.tenant_id) or _DOMAIN_RE.match(self.tenant_id)):
            found.append(f"tenant ID {self.tenant_id!r} is neither a GUID nor a domain")
        if not is_guid(self.client_id):
            found.append(f"client ID {self.client_id!r} is not a GUID")
        if self.auth_mode == "certificate" and not self.cert_path:
            found.append("certificate mode needs a certificate path")
        return found

    def resolve_cert_path(self) -> str:
        """Absolute certificate path with ~ expanded; empty when unset."""
        if not self.cert_path:
            return ""
        p = Path(self.cert_path).expanduser()
        if not p.is_absolute():
            p = Path.cwd() / p
        return str(p)


@dataclass
class ProfileStore:
    """The profiles file, loaded into memory."""
    profiles: dict[str, TenantProfile] = field(default_factory=dict)
    default_profile: str = ""
    skipped: list[str] = field(default_factory=list)

    @classmethod
    def load(cls) -> "ProfileStore":
        path = profiles_file()
        if not path.exists():
            return cls()
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as e:
            print(f"  ⚠  Failed to read {path}: {e}")
            return cls()

        store = cls()
        for name, pdata in (data.get("profiles") or {}).items():
            try:
                store.profiles[name] = TenantProfile.from_dict(name, pdata)
            except (KeyError, TypeError, ValueError, AttributeError) as e:
                print(f"  ⚠  Skipping profile '{name}' in {path}: {e}")
                store.skipped.append(name)
        default = data.get("default_profile", "")
        store.default_profile = default if default in store.profiles else ""
        return store

    def save(self) -> None:
        path = profiles_file()
        path.parent.mkdir(parents=True, exist_ok=True)
        data = {
            "default_profile": self.default_profile,
            "profiles": {name: p.to_dict() for name, p in sorted(self.profiles.items())},
        }
        tmp = path.with_suffix(".tmp")
        tmp.write_text(json.dumps(data, indent=2) + "\n", encoding="utf-8")
        tmp.replace(path)

    def add(self, profile: TenantProfile, set_default: bool = False) -> None:
        """
        Add or overwrite a profile. The first profile becomes the default.
        Raises ValueError listing every problem when the profile is not usable.
        """
        problems = profile.problems()
        if problems:
            raise ValueError("; ".join(problems))
        # Same name in another case replaces the old entry
        existing = self.get(profile.name)
        if existing and existing.name != profile.name:
            del self.profiles[existing.name]
            if self.default_profile == existing.name:
                self.default_profile = profile.name
        self.profiles[profile.name] = profile
        if set_default or not self.default_profile:
            self.default_profile = profile.name
        self.save()

    def remove(self, name: str) -> bool:
        profile = self.get(name)
        if not profile:
            return False
        del self.profiles[profile.name]
        if self.default_profile == profile.name:
            self.default_profile = min(self.profiles, default="")
        self.save()
        return True

    def get(self, name: str) -> Optional[TenantProfile]:
        """Case-insensitive lookup."""
        key = name.lower()
        return next((p for n, p in self.profiles.items() if n.lower() == key), None)

    def get_default(self) -> Optional[TenantProfile]:
        if self.default_profile:
            return self.profiles.get(self.default_profile)
        if len(self.profiles) == 1:
            return next(iter(self.profiles.values()))
        return None

    def set_default(self, name: str) -> bool:
        profile = self.get(name)
        if not profile:
            return False
        self.default_profile = profile.name
        self.save()
        return True

    def list_profiles(self) -> list[TenantProfile]:
        return sorted(self.profiles.values(), key=lambda p: p.name.lower())


def resolve_profile(profile_name: Optional[str] = None) -> Optional[TenantProfile]:
    """
    The named profile, or the default one when no name is given.
    None when nothing matches.
    """
    store = ProfileStore.load()
    if profile_name:
        return store.get(profile_name)
    return store.get_default()
