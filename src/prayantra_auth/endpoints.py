"""Role-scoped backend endpoints.

Administrators authenticate under ``/admin-auth``; standard users under
``/auth``. OTP delivery, session validation, device trust and web pairing
are shared.
"""

from dataclasses import dataclass
from enum import Enum


class UserRole(str, Enum):
    ADMIN = 'admin'
    USER = 'user'


@dataclass(frozen=True)
class RoleEndpoints:
    """Paths and field names for one user class."""

    login_initiate: str
    verify_otp: str
    setup_mpin: str
    verify_mpin: str
    refresh: str
    forgot_mpin: str
    forgot_mpin_verify: str
    change_mpin: str
    logout: str
    otp_purpose: str
    id_field: str


ENDPOINTS = {
    UserRole.ADMIN: RoleEndpoints(
        login_initiate='/admin-auth/login/initiate',
        verify_otp='/admin-auth/login/verify-otp',
        setup_mpin='/admin-auth/mpin/setup',
        verify_mpin='/admin-auth/login/verify-mpin',
        refresh='/admin-auth/refresh',
        forgot_mpin='/admin-auth/mpin/forgot',
        forgot_mpin_verify='/admin-auth/mpin/forgot/verify',
        change_mpin='/admin-auth/mpin/change',
        logout='/admin-auth/logout',
        otp_purpose='admin_login',
        id_field='admin_id',
    ),
    UserRole.USER: RoleEndpoints(
        login_initiate='/auth/login/initiate',
        verify_otp='/auth/login/verify-otp',
        setup_mpin='/auth/mpin/setup',
        verify_mpin='/auth/login/verify-mpin',
        # Both roles renew tokens through the admin refresh endpoint
        refresh='/admin-auth/refresh',
        forgot_mpin='/auth/mpin/forgot',
        forgot_mpin_verify='/auth/mpin/forgot/verify',
        change_mpin='/auth/mpin/change',
        logout='/auth/logout',
        otp_purpose='login',
        id_field='user_id',
    ),
}

SEND_OTP = '/otp/send'
VALIDATE_SESSION = '/auth/validate'
DEVICE_TRUST_STATUS = '/admin-auth/device/trust-status'
DEVICE_REVOKE_TRUST = '/admin-auth/device/revoke-trust'
WEB_PAIR = '/web/login/pair'


def endpoints_for(role: UserRole) -> RoleEndpoints:
    return ENDPOINTS[UserRole(role)]
