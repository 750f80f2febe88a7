from .base import BaseTask, TaskResult
from .inactive_users import InactiveUsersReport
from .licenses import LicenseReport, LicenseRemoval
from .guests import GuestCleanup
from .passwords import PasswordReset
from .mfa import MfaRegistrationReport
from .devices import DeviceComplianceReport
from .conditional_access import ConditionalAccessReport
from .notifications import PasswordExpiryNotifier

# Read-only tasks feeding the tenant health score
HEALTH_TASKS = [
    MfaRegistrationReport,
    ConditionalAccessReport,
    DeviceComplianceReport,
    InactiveUsersReport,
    LicenseReport,
    GuestCleanup,
]

__all__ = [
    "BaseTask",
    "TaskResult",
    "InactiveUsersReport",
    "LicenseReport",
    "LicenseRemoval",
    "GuestCleanup",
    "PasswordReset",
    "MfaRegistrationReport",
    "DeviceComplianceReport",
    "ConditionalAccessReport",
    "PasswordExpiryNotifier",
    "HEALTH_TASKS",
]
